"""GEPAEvolver: reflect -> propose -> test -> select cycles over routing strategy.

Phases (each persisted before the next starts, so an interrupted cycle
resumes where it stopped):
1. REFLECT: summarise recent failures (quality < 0.7, escalated,
   exhausted, budget-exceeded), grouped by domain
2. PROPOSE: ask a model for exactly ``gepa_proposal_count`` strategy
   proposals; malformed or missing ones are replaced by built-in fallbacks.
   Each becomes a RUNNING experiment on its own traffic slice
3. TEST: once every experiment has enough decisions, compare its average
   cost and quality with the control traffic
4. SELECT: adopt the best cost/quality ratio (ties: lower cost), merge its
   parameters into the live routing config, reject the rest
"""

from __future__ import annotations

from collections import defaultdict
from collections.abc import Callable
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime, timedelta
import hashlib
import json
from typing import TYPE_CHECKING, Any

from arbiter.config.models import LearningConfig
from arbiter.core.errors import ArbiterError, LearningCycleError, ValidationError
from arbiter.core.types import Result
from arbiter.learning.models import (
    Experiment,
    ExperimentMetrics,
    ExperimentStatus,
    GepaCycle,
    GepaPhase,
)
from arbiter.observability.logging import get_logger
from arbiter.providers.base import CompletionConfig, LLMAdapter, Message, MessageRole
from arbiter.routing.models import DecisionStatus, RoutingDecision
from arbiter.routing.registry import RoutingConfigHolder

if TYPE_CHECKING:
    from arbiter.persistence.store import ArbiterStore

log = get_logger(__name__)

LOW_QUALITY_THRESHOLD = 0.7
BUCKETS = 100


def _utcnow() -> datetime:
    return datetime.now(UTC)


def traffic_bucket(request_key: str) -> int:
    """Stable bucket in [0, 100) for a request key."""
    digest = hashlib.sha256(request_key.encode("utf-8")).hexdigest()
    return int(digest[:8], 16) % BUCKETS


@dataclass(frozen=True, slots=True)
class StrategyProposal:
    """A candidate routing strategy: parameter overrides plus a rationale."""

    name: str
    hypothesis: str
    parameters: dict[str, Any] = field(default_factory=dict)
    expected_impact: str = ""

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> StrategyProposal:
        """Build from model output. Raises ValidationError for unusable entries."""
        if not isinstance(data, dict):
            raise ValidationError("Proposal must be an object", field="proposal")
        name = str(data.get("name", "")).strip()
        parameters = data.get("parameters")
        if not name or not isinstance(parameters, dict) or not parameters:
            raise ValidationError("Proposal needs a name and parameters", field="proposal")
        impact = data.get("expected_impact", data.get("expectedImpact", ""))
        return cls(
            name=name,
            hypothesis=str(data.get("hypothesis", "")),
            parameters=parameters,
            expected_impact=impact if isinstance(impact, str) else json.dumps(impact),
        )


FALLBACK_PROPOSALS = (
    StrategyProposal(
        name="Complexity Threshold Adjustment",
        hypothesis="Keeping tier-1 models for simple queries only cuts escalations on moderate ones",
        parameters={"tier1_max_complexity": 0.35},
        expected_impact="fewer escalations, slightly higher average cost",
    ),
    StrategyProposal(
        name="Domain-Specific Routing",
        hypothesis="Code queries need a higher quality floor to avoid failed cheap attempts",
        parameters={"domain_min_quality": {"code": 0.75}},
        expected_impact="higher code quality at a small cost increase",
    ),
    StrategyProposal(
        name="Confidence-Based Cascade",
        hypothesis="A stricter acceptance threshold escalates weak cheap answers sooner",
        parameters={"acceptance_threshold": 0.85},
        expected_impact="higher quality, more escalations",
    ),
)

_PROPOSE_PROMPT = """You tune an AI request router that cascades queries from cheap to premium models.

Recent failure analysis (JSON):
{reflection}

Current strategy parameters (JSON):
{parameters}

Tunable parameters: max_chain_length (1-3), acceptance_threshold (0-1),
quality_floor_offset (-0.5-0.5), tier1_max_complexity (0-1),
domain_min_quality (object of domain -> 0-1; domains: chat, code, reasoning, summarization, bulk).

Propose exactly {count} alternative strategies that improve the cost/quality ratio.
Respond with only a JSON array of objects:
[{{"name": str, "hypothesis": str, "parameters": {{...}}, "expected_impact": str}}]"""


def _failed(decision: RoutingDecision) -> bool:
    return (
        (decision.final_quality is not None and decision.final_quality < LOW_QUALITY_THRESHOLD)
        or decision.escalations > 0
        or decision.status in (DecisionStatus.EXHAUSTED, DecisionStatus.BUDGET_EXCEEDED)
    )


def summarize_failures(decisions: list[RoutingDecision]) -> dict[str, Any]:
    """The REFLECT report: failure counts and per-domain patterns."""
    failures = [d for d in decisions if _failed(d)]
    grouped: dict[str, list[RoutingDecision]] = defaultdict(list)
    for decision in failures:
        grouped[decision.domain.value].append(decision)

    patterns = sorted(
        (
            {
                "domain": domain,
                "failures": len(items),
                "avg_complexity": sum(d.classification.complexity for d in items) / len(items),
                "avg_cost": sum(d.total_cost for d in items) / len(items),
                "failure_rate": len(items) / len(decisions),
            }
            for domain, items in grouped.items()
        ),
        key=lambda p: p["failures"],
        reverse=True,
    )
    return {
        "total_decisions": len(decisions),
        "total_failures": len(failures),
        "low_quality": sum(
            1
            for d in decisions
            if d.final_quality is not None and d.final_quality < LOW_QUALITY_THRESHOLD
        ),
        "escalated": sum(1 for d in decisions if d.escalations > 0),
        "exhausted": sum(1 for d in decisions if d.status == DecisionStatus.EXHAUSTED),
        "budget_exceeded": sum(1 for d in decisions if d.status == DecisionStatus.BUDGET_EXCEEDED),
        "patterns": patterns[:5],
    }


def measure(decisions: list[RoutingDecision]) -> tuple[float, float]:
    """(average total cost, average observed quality)."""
    if not decisions:
        return 0.0, 0.0
    cost = sum(d.total_cost for d in decisions) / len(decisions)
    quality = sum(d.final_quality or 0.0 for d in decisions) / len(decisions)
    return cost, quality


class GEPAEvolver:
    """Runs resumable GEPA cycles against the live routing configuration.

    Example:
        evolver = GEPAEvolver(store, holder, adapter, config.learning)
        await evolver.refresh()
        experiment = evolver.assign(decision_id)
        result = await evolver.run_cycle()
    """

    def __init__(
        self,
        store: ArbiterStore,
        holder: RoutingConfigHolder,
        adapter: LLMAdapter | None,
        config: LearningConfig,
        *,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._store = store
        self._holder = holder
        self._adapter = adapter
        self._config = config
        self._clock = clock
        self._running: tuple[Experiment, ...] = ()

    async def refresh(self) -> None:
        """Reload the running experiments used for traffic assignment."""
        self._running = tuple(
            await self._store.list_experiments(statuses=[ExperimentStatus.RUNNING])
        )

    async def restore_adopted(self) -> int:
        """Re-apply adopted parameters to a fresh holder, oldest first."""
        adopted = await self._store.list_experiments(statuses=[ExperimentStatus.ADOPTED])
        adopted.sort(key=lambda e: e.concluded_at or e.created_at)
        for experiment in adopted:
            self._holder.apply(experiment.parameters, source=f"gepa:{experiment.id}")
        return len(adopted)

    def assign(self, request_key: str) -> Experiment | None:
        """The running experiment owning this request's traffic slice, if any."""
        if not self._running:
            return None
        bucket = traffic_bucket(request_key)
        for experiment in self._running:
            if experiment.owns_bucket(bucket):
                return experiment
        return None

    async def is_due(self) -> bool:
        cycle = await self._store.latest_cycle()
        if cycle is None or not cycle.is_complete:
            return True
        finished = cycle.completed_at or cycle.updated_at
        return self._clock() - finished >= timedelta(days=self._config.gepa_interval_days)

    async def get_experiments(self) -> list[Experiment]:
        return await self._store.list_experiments()

    async def run_cycle(self) -> Result[GepaCycle, LearningCycleError]:
        """Advance the current cycle as far as it can go.

        Returns the cycle in its latest persisted phase; a cycle waiting
        for experiment samples stays in TEST and is resumed on the next call.
        """
        cycle = await self._store.latest_cycle()
        if cycle is None or cycle.is_complete:
            now = self._clock()
            cycle = GepaCycle(started_at=now, updated_at=now)
            await self._store.save_cycle(cycle)
            log.info("gepa.cycle.started", cycle_id=cycle.id)
        else:
            log.info("gepa.cycle.resumed", cycle_id=cycle.id, phase=cycle.phase.value)

        try:
            while not cycle.is_complete:
                advanced = await self._advance(cycle)
                if advanced is None:
                    log.info("gepa.test.waiting", cycle_id=cycle.id)
                    return Result.ok(cycle)
                cycle = replace(advanced, updated_at=self._clock(), error=None)
                await self._store.save_cycle(cycle)
                log.info("gepa.phase.completed", cycle_id=cycle.id, next_phase=cycle.phase.value)
        except ArbiterError as e:
            log.error(
                "gepa.cycle.failed",
                cycle_id=cycle.id,
                phase=cycle.phase.value,
                error=e.message,
            )
            await self._store.save_cycle(replace(cycle, error=e.message, updated_at=self._clock()))
            error = LearningCycleError(
                f"GEPA cycle failed in {cycle.phase.value}: {e.message}",
                job="gepa.cycle",
                phase=cycle.phase.value,
                details={"cycle_id": cycle.id},
            )
            error.__cause__ = e
            return Result.err(error)

        return Result.ok(cycle)

    async def _advance(self, cycle: GepaCycle) -> GepaCycle | None:
        if cycle.phase == GepaPhase.REFLECT:
            since = self._clock() - timedelta(days=self._config.gepa_reflect_days)
            reflection = summarize_failures(await self._store.list_decisions(since=since))
            log.info(
                "gepa.reflect.completed",
                failures=reflection["total_failures"],
                decisions=reflection["total_decisions"],
            )
            return replace(cycle, reflection=reflection, phase=GepaPhase.PROPOSE)

        if cycle.phase == GepaPhase.PROPOSE:
            await self._create_experiments(cycle)
            return replace(cycle, phase=GepaPhase.TEST)

        if cycle.phase == GepaPhase.TEST:
            if not await self._conclude_experiments(cycle):
                return None
            return replace(cycle, phase=GepaPhase.SELECT)

        if cycle.phase == GepaPhase.SELECT:
            winner = await self._select(cycle)
            return replace(
                cycle,
                phase=GepaPhase.COMPLETED,
                adopted_experiment_id=winner.id if winner else None,
                completed_at=self._clock(),
            )

        return cycle

    async def propose(self, reflection: dict[str, Any]) -> list[StrategyProposal]:
        """Exactly ``gepa_proposal_count`` valid proposals, padded with fallbacks."""
        count = self._config.gepa_proposal_count
        proposals = await self._model_proposals(reflection, count)
        names = {p.name for p in proposals}
        for fallback in FALLBACK_PROPOSALS:
            if len(proposals) >= count:
                break
            if fallback.name not in names:
                proposals.append(fallback)
                names.add(fallback.name)
        return proposals[:count]

    async def _model_proposals(
        self, reflection: dict[str, Any], count: int
    ) -> list[StrategyProposal]:
        if self._adapter is None:
            log.info("gepa.propose.fallback_used", reason="no adapter")
            return []

        prompt = _PROPOSE_PROMPT.format(
            reflection=json.dumps(reflection, default=str),
            parameters=self._holder.snapshot().parameters.model_dump_json(),
            count=count,
        )
        result = await self._adapter.complete(
            [Message(role=MessageRole.USER, content=prompt)],
            CompletionConfig(model=self._config.gepa_model, temperature=0.7, max_tokens=1500),
        )
        if result.is_err:
            log.warning("gepa.propose.fallback_used", reason=result.error.message)
            return []

        content = result.value.content
        start, end = content.find("["), content.rfind("]")
        try:
            raw = json.loads(content[start : end + 1]) if start != -1 and end > start else None
        except json.JSONDecodeError:
            raw = None
        if not isinstance(raw, list):
            log.warning("gepa.propose.fallback_used", reason="malformed output")
            return []

        current = self._holder.snapshot().parameters
        proposals: list[StrategyProposal] = []
        for item in raw:
            try:
                proposal = StrategyProposal.from_dict(item)
                current.merged(proposal.parameters)
            except ValidationError as e:
                log.warning("gepa.proposal.rejected", error=e.message)
                continue
            proposals.append(proposal)
        return proposals[:count]

    async def _create_experiments(self, cycle: GepaCycle) -> None:
        existing = await self._store.list_experiments(cycle_id=cycle.id)
        proposals = await self.propose(cycle.reflection)
        slice_size = round(self._config.gepa_traffic_fraction * BUCKETS)

        for index in range(len(existing), len(proposals)):
            proposal = proposals[index]
            experiment = Experiment(
                cycle_id=cycle.id,
                name=proposal.name,
                hypothesis=proposal.hypothesis,
                parameters=proposal.parameters,
                traffic_fraction=self._config.gepa_traffic_fraction,
                bucket_start=index * slice_size,
                bucket_end=(index + 1) * slice_size,
                status=ExperimentStatus.RUNNING,
                expected_impact=proposal.expected_impact,
                created_at=self._clock(),
            )
            await self._store.save_experiment(experiment)
            log.info(
                "gepa.experiment.started",
                experiment_id=experiment.id,
                name=experiment.name,
                buckets=[experiment.bucket_start, experiment.bucket_end],
            )
        await self.refresh()

    async def _conclude_experiments(self, cycle: GepaCycle) -> bool:
        running = await self._store.list_experiments(
            cycle_id=cycle.id, statuses=[ExperimentStatus.RUNNING]
        )
        samples = {
            e.id: await self._store.list_decisions(experiment_id=e.id, since=cycle.started_at)
            for e in running
        }
        short = {e.name: len(samples[e.id]) for e in running if len(samples[e.id]) < self._config.gepa_min_samples}
        if short:
            log.debug("gepa.test.insufficient_samples", samples=short)
            return False

        control_cost, control_quality = measure(
            await self._store.list_decisions(control_only=True, since=cycle.started_at)
        )
        for experiment in running:
            avg_cost, avg_quality = measure(samples[experiment.id])
            metrics = ExperimentMetrics(
                samples=len(samples[experiment.id]),
                avg_cost=avg_cost,
                avg_quality=avg_quality,
                cost_delta=avg_cost - control_cost,
                quality_delta=avg_quality - control_quality,
            )
            await self._store.save_experiment(
                replace(
                    experiment,
                    status=ExperimentStatus.CONCLUDED,
                    metrics=metrics,
                    concluded_at=self._clock(),
                )
            )
            log.info(
                "gepa.experiment.concluded",
                experiment_id=experiment.id,
                cost_delta=round(metrics.cost_delta, 6),
                quality_delta=round(metrics.quality_delta, 4),
            )
        await self.refresh()
        return True

    async def _select(self, cycle: GepaCycle) -> Experiment | None:
        experiments = await self._store.list_experiments(cycle_id=cycle.id)
        adopted = [e for e in experiments if e.status == ExperimentStatus.ADOPTED]
        concluded = [
            e for e in experiments if e.status == ExperimentStatus.CONCLUDED and e.metrics
        ]

        if adopted:
            winner = adopted[0]
        elif concluded:
            winner = min(
                concluded,
                key=lambda e: (e.metrics.cost_quality_ratio, e.metrics.avg_cost),  # type: ignore[union-attr]
            )
            self._holder.apply(winner.parameters, source=f"gepa:{winner.id}")
            await self._store.save_experiment(replace(winner, status=ExperimentStatus.ADOPTED))
            log.info("gepa.experiment.adopted", experiment_id=winner.id, name=winner.name)
        else:
            winner = None

        for experiment in concluded:
            if winner is not None and experiment.id == winner.id:
                continue
            await self._store.save_experiment(replace(experiment, status=ExperimentStatus.REJECTED))
            log.info("gepa.experiment.rejected", experiment_id=experiment.id, name=experiment.name)
        return winner
