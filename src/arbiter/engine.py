"""ArbitrageEngine: the operations Arbiter exposes to the rest of an application.

This module wires the hot path and the learning loop together:
- submit_query: classify -> select chain -> cascade -> persist decision
- submit_feedback: attach feedback, update the curriculum, queue curation
- get_cost_stats / get_curriculum_status: per-user reporting
- Admin: trigger_gepa_cycle, get_experiments, trigger_dpo_retrain,
  get_golden_examples

Route handlers stay thin: every operation returns a ``Result`` or a plain
record, and budget denials surface as ``BudgetExceededError`` (HTTP 402).

Usage:
    async with await ArbitrageEngine.open(config) as engine:
        result = await engine.submit_query("u1", "Explain CAP theorem")
        if result.is_ok:
            print(result.value.response)
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from datetime import datetime
from types import TracebackType
from typing import Any
from uuid import uuid4

from arbiter.budget.models import CostStats
from arbiter.budget.notify import NotificationChannel
from arbiter.budget.tracker import CostTracker
from arbiter.config.loader import load_config_or_default, resolve_database_url
from arbiter.config.models import ArbiterConfig, LevelCeiling
from arbiter.core.errors import (
    ArbiterError,
    BudgetExceededError,
    ChainExhaustedError,
    LearningCycleError,
    ValidationError,
)
from arbiter.core.security import InputValidator
from arbiter.core.types import Money, Result, Score
from arbiter.learning.calibration import load_calibration
from arbiter.learning.curriculum import CurriculumManager
from arbiter.learning.dpo import DPOStats, DPOTrainer
from arbiter.learning.gepa import GEPAEvolver
from arbiter.learning.limi import LIMICurator
from arbiter.learning.models import Experiment, GepaCycle, GoldenExample, JobKind, LearningJob
from arbiter.learning.scheduler import JobBatchSummary, LearningScheduler
from arbiter.observability.logging import bind_context, get_logger, unbind_context
from arbiter.persistence.store import ArbiterStore
from arbiter.providers.base import AdapterTextProvider, LLMAdapter, TextProvider
from arbiter.providers.litellm_adapter import LiteLLMAdapter
from arbiter.routing.cascade import CancellationToken, CascadeAnalytics, CascadeExecutor
from arbiter.routing.classifier import ClassifierCalibration, QueryContext, TaskClassifier
from arbiter.routing.judge import HeuristicJudge, ModelJudge, QualityJudge
from arbiter.routing.models import (
    DecisionStatus,
    Domain,
    Level,
    RoutingDecision,
    TaskClassification,
    Thumb,
    UserFeedback,
)
from arbiter.routing.registry import RoutingConfig, RoutingConfigHolder
from arbiter.routing.selector import ModelSelector

log = get_logger(__name__)


@dataclass(frozen=True, slots=True)
class QueryResponse:
    """What ``submit_query`` returns to the caller.

    Attributes:
        response: The accepted (or best available) response text.
        routing_decision_id: Id of the persisted RoutingDecision.
        cost_incurred: Total spend across every tier tried.
        status: ACCEPTED, EXHAUSTED, BUDGET_EXCEEDED or CANCELLED.
        provider_id: Provider that produced ``response``.
        quality: Judge score of ``response``.
        below_quality_floor: The response did not pass the quality gate.
        escalations: Tier moves made.
        classification: The classification the chain was built from.
    """

    response: str
    routing_decision_id: str
    cost_incurred: Money
    status: DecisionStatus
    provider_id: str | None
    quality: Score | None
    below_quality_floor: bool
    escalations: int
    classification: TaskClassification


@dataclass(frozen=True, slots=True)
class CurriculumStatus:
    """A user's curriculum level and the ceilings it imposes."""

    user_id: str
    level: Level
    success_rate: float
    consecutive_successes: int
    consecutive_failures: int
    ceiling: LevelCeiling | None = None


def build_providers(
    config: ArbiterConfig, adapter: LLMAdapter | None = None
) -> dict[str, TextProvider]:
    """One TextProvider per registry candidate, keyed by provider id.

    Tier adapters retry once at most; the cascade owns the retry policy.
    """
    adapter = adapter or LiteLLMAdapter(max_retries=1)
    return {c.provider_id: AdapterTextProvider(adapter, c.model) for c in config.registry}


class ArbitrageEngine:
    """Routes queries to the cheapest model good enough and learns from the results."""

    def __init__(
        self,
        config: ArbiterConfig,
        store: ArbiterStore,
        *,
        providers: Mapping[str, TextProvider],
        adapter: LLMAdapter | None = None,
        judge: QualityJudge | None = None,
        notifier: NotificationChannel | None = None,
    ) -> None:
        self.config = config
        self.store = store
        self.holder = RoutingConfigHolder(RoutingConfig.from_config(config))
        self.selector = ModelSelector()
        self.tracker = CostTracker(store, config.budgets, notifier=notifier)
        self.curriculum = CurriculumManager(store, config.curriculum)
        self.classifier = TaskClassifier(
            adapter, config.classifier, config.budgets, config.curriculum
        )
        self.executor = CascadeExecutor(
            providers, judge or HeuristicJudge(), self.tracker, store, config.cascade
        )
        self.dpo = DPOTrainer(
            store, config.learning, on_calibration=self.classifier.set_calibration
        )
        self.gepa = GEPAEvolver(store, self.holder, adapter, config.learning)
        self.limi = LIMICurator(
            store,
            config.learning,
            premium_cost_per_1k=lambda: self.holder.snapshot().premium_cost_per_1k(),
            on_calibration=self.classifier.set_calibration,
        )
        self.scheduler = LearningScheduler(store, config.learning)
        self.scheduler.register(JobKind.DPO_RETRAIN, self._run_dpo_job)
        self.scheduler.register(JobKind.GEPA_CYCLE, self._run_gepa_job)
        self.scheduler.register(JobKind.LIMI_CURATE, self._run_limi_job)
        self.scheduler.schedule(JobKind.GEPA_CYCLE, self.gepa.is_due)

    @classmethod
    async def open(
        cls,
        config: ArbiterConfig | None = None,
        *,
        database_url: str | None = None,
        adapter: LLMAdapter | None = None,
        providers: Mapping[str, TextProvider] | None = None,
        judge: QualityJudge | None = None,
        notifier: NotificationChannel | None = None,
    ) -> ArbitrageEngine:
        """Build an engine from config, connect storage and restore learned state."""
        config = config or load_config_or_default()
        store = ArbiterStore(database_url or resolve_database_url(config))
        await store.initialize()

        adapter = adapter or LiteLLMAdapter()
        if judge is None and config.cascade.judge_model:
            judge = ModelJudge(adapter, config.cascade.judge_model)

        engine = cls(
            config,
            store,
            providers=providers if providers is not None else build_providers(config),
            adapter=adapter,
            judge=judge,
            notifier=notifier,
        )
        await engine.start()
        return engine

    async def start(self) -> None:
        """Restore learned state and interrupted jobs.

        Starts the background learning loop when
        ``learning.scheduler_interval_seconds`` is set.
        """
        calibration = await load_calibration(self.store)
        if calibration.version:
            self.classifier.set_calibration(calibration)
        adopted = await self.gepa.restore_adopted()
        await self.gepa.refresh()
        recovered = await self.scheduler.recover()
        log.info(
            "engine.started",
            registry_size=len(self.config.registry),
            calibration_version=calibration.version,
            adopted_strategies=adopted,
            recovered_jobs=recovered,
        )
        interval = self.config.learning.scheduler_interval_seconds
        if interval is not None:
            self.scheduler.start(interval)

    async def close(self) -> None:
        await self.scheduler.stop()
        await self.store.close()

    async def __aenter__(self) -> ArbitrageEngine:
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        await self.close()

    # ------------------------------------------------------------------
    # Hot path
    # ------------------------------------------------------------------

    async def submit_query(
        self,
        user_id: str,
        query: str,
        context: QueryContext | None = None,
        *,
        cancel_token: CancellationToken | None = None,
    ) -> Result[QueryResponse, ArbiterError]:
        """Route one query through the cascade.

        Returns:
            Ok(QueryResponse) whenever any tier produced output, even when it
            is below the quality floor or the budget stopped escalation.
            Err(BudgetExceededError) when the budget denied the first tier.
            Err(ChainExhaustedError) when every tier errored.
        """
        is_valid, reason = InputValidator.validate_query(query)
        if not is_valid:
            return Result.err(ValidationError(reason, field="query", value=query))

        decision_id = str(uuid4())
        bind_context(user_id=user_id, decision_id=decision_id)
        try:
            budget = await self.tracker.ensure_budget(
                user_id, context.subscription_tier if context else None
            )
            state = await self.curriculum.get_level(user_id)
            classification = await self.classifier.classify(
                query,
                QueryContext(
                    user_id=user_id,
                    subscription_tier=budget.tier,
                    curriculum_level=state.level,
                    max_budget=context.max_budget if context else None,
                ),
            )

            snapshot = self.holder.snapshot()
            experiment = self.gepa.assign(decision_id)
            if experiment is not None:
                snapshot = snapshot.with_parameters(
                    experiment.parameters, source=f"experiment:{experiment.id}"
                )
            chain = self.selector.build_chain(classification, snapshot)

            outcome = await self.executor.execute(
                user_id=user_id,
                query=query,
                classification=classification,
                chain=chain,
                acceptance_threshold=snapshot.parameters.acceptance_threshold,
                cancel_token=cancel_token,
                experiment_id=experiment.id if experiment else None,
                decision_id=decision_id,
            )
            await self._after_decision(outcome.decision)
        except ArbiterError as e:
            log.error("engine.query.failed", error=e.message, error_type=type(e).__name__)
            return Result.err(e)
        finally:
            unbind_context("user_id", "decision_id")

        decision = outcome.decision
        if not outcome.executed:
            if outcome.budget_limited:
                return Result.err(
                    BudgetExceededError(
                        "Monthly budget exhausted",
                        user_id=user_id,
                        spent=budget.spent_this_period,
                        limit=budget.monthly_limit,
                        details={"decision_id": decision.id},
                    )
                )
            if decision.status == DecisionStatus.CANCELLED:
                return Result.err(
                    ArbiterError("Request cancelled", details={"decision_id": decision.id})
                )
            return Result.err(
                ChainExhaustedError(
                    "Every provider in the chain failed",
                    decision_id=decision.id,
                    providers_tried=decision.chain_tried,
                )
            )

        return Result.ok(
            QueryResponse(
                response=decision.response or "",
                routing_decision_id=decision.id,
                cost_incurred=decision.total_cost,
                status=decision.status,
                provider_id=decision.final_provider,
                quality=decision.final_quality,
                below_quality_floor=decision.below_quality_floor,
                escalations=decision.escalations,
                classification=classification,
            )
        )

    async def _after_decision(self, decision: RoutingDecision) -> None:
        if await self.dpo.record_decision(decision):
            await self.scheduler.enqueue(JobKind.DPO_RETRAIN, dedupe_key=JobKind.DPO_RETRAIN.value)

    async def submit_feedback(
        self,
        decision_id: str,
        *,
        rating: int | None = None,
        thumb: Thumb | str | None = None,
    ) -> Result[RoutingDecision, ArbiterError]:
        """Record a user's rating and/or thumb on a decision.

        Feedback can be changed later, but only the first one counts toward
        the user's curriculum and golden-example curation.
        """
        try:
            feedback = UserFeedback(
                rating=rating, thumb=Thumb(thumb) if thumb is not None else None
            )
        except ValueError as e:
            return Result.err(
                ValidationError(str(e), field="feedback", value={"rating": rating, "thumb": thumb})
            )

        try:
            decision, first = await self.store.attach_feedback(decision_id, feedback)
            if decision is None:
                return Result.err(
                    ValidationError(
                        f"Unknown routing decision: {decision_id}",
                        field="decision_id",
                        value=decision_id,
                    )
                )
            # Only the first verdict on a decision feeds the learning loop.
            if first:
                await self.curriculum.record_outcome(decision.user_id, feedback.is_positive)
                if feedback.is_positive:
                    await self.scheduler.enqueue(
                        JobKind.LIMI_CURATE,
                        {"decision_id": decision.id},
                        dedupe_key=f"{JobKind.LIMI_CURATE.value}:{decision.id}",
                    )
        except ArbiterError as e:
            log.error("engine.feedback.failed", decision_id=decision_id, error=e.message)
            return Result.err(e)

        log.info(
            "engine.feedback.recorded",
            decision_id=decision_id,
            positive=feedback.is_positive,
            rating=rating,
            replaced=not first,
        )
        return Result.ok(decision)

    async def get_cost_stats(self, user_id: str) -> CostStats:
        return await self.tracker.get_cost_stats(user_id)

    async def get_curriculum_status(self, user_id: str) -> CurriculumStatus:
        state = await self.curriculum.get_level(user_id)
        return CurriculumStatus(
            user_id=user_id,
            level=state.level,
            success_rate=state.success_rate,
            consecutive_successes=state.consecutive_successes,
            consecutive_failures=state.consecutive_failures,
            ceiling=self.curriculum.ceiling(state.level),
        )

    # ------------------------------------------------------------------
    # Admin
    # ------------------------------------------------------------------

    async def trigger_gepa_cycle(self) -> Result[GepaCycle, LearningCycleError]:
        return await self.gepa.run_cycle()

    async def get_experiments(self) -> list[Experiment]:
        return await self.gepa.get_experiments()

    async def trigger_dpo_retrain(self) -> Result[ClassifierCalibration, LearningCycleError]:
        try:
            return Result.ok(await self.dpo.retrain())
        except LearningCycleError as e:
            log.error("engine.dpo.failed", error=e.message)
            return Result.err(e)

    async def get_golden_examples(
        self,
        *,
        min_quality: float = 0.0,
        min_savings: float = 0.0,
        domain: Domain | None = None,
        limit: int | None = None,
    ) -> list[GoldenExample]:
        return await self.limi.get_golden_examples(
            min_quality=min_quality, min_savings=min_savings, domain=domain, limit=limit
        )

    async def curate_golden_examples(self, since: datetime | None = None) -> int:
        return await self.limi.curate_from_history(since)

    async def dpo_stats(self) -> DPOStats:
        return await self.dpo.stats()

    async def cascade_analytics(self, since: datetime | None = None) -> CascadeAnalytics:
        decisions = await self.store.list_decisions(since=since)
        return CascadeAnalytics.from_decisions(
            decisions, self.holder.snapshot().premium_cost_per_1k()
        )

    async def platform_report(self) -> dict[str, Any]:
        return await self.tracker.platform_report()

    async def run_pending_jobs(self) -> JobBatchSummary:
        return await self.scheduler.tick()

    # ------------------------------------------------------------------
    # Job handlers
    # ------------------------------------------------------------------

    async def _run_dpo_job(self, job: LearningJob) -> Result[dict[str, Any], ArbiterError]:
        calibration = await self.dpo.retrain()
        return Result.ok({"calibration_version": calibration.version})

    async def _run_gepa_job(self, job: LearningJob) -> Result[dict[str, Any], ArbiterError]:
        result = await self.gepa.run_cycle()
        if result.is_err:
            return Result.err(result.error)
        return Result.ok({"cycle_id": result.value.id, "phase": result.value.phase.value})

    async def _run_limi_job(self, job: LearningJob) -> Result[dict[str, Any], ArbiterError]:
        decision_id = job.payload.get("decision_id")
        if decision_id is None:
            admitted = await self.limi.curate_from_history()
            return Result.ok({"admitted": admitted})

        decision = await self.store.get_decision(decision_id)
        if decision is None:
            return Result.err(
                ValidationError(
                    f"Unknown routing decision: {decision_id}",
                    field="decision_id",
                    value=decision_id,
                )
            )
        example = await self.limi.consider(decision)
        if example is not None:
            await self.limi.publish()
        return Result.ok({"admitted": example is not None})
