"""LIMICurator: a small, diverse set of golden examples.

Admission (any one criterion is enough):
- high quality: feedback rating >= 4, a positive thumb, or quality > 0.85
- cost effective: at least 50% cheaper than running the premium tier
- coverage gap: the domain has fewer than ``limi_min_per_domain`` examples
- edge case: flagged explicitly, or an unusually complex query that still
  ended accepted after escalating

At capacity a new example evicts the lowest-scoring example of its own
domain; if that domain has none, the most represented domain gives one up,
so the total never exceeds the capacity.

    score = 0.5 * quality + 0.3 * savings + 0.2 * edge_case
"""

from __future__ import annotations

import asyncio
from collections import Counter
from collections.abc import Callable
from datetime import UTC, datetime
from typing import TYPE_CHECKING

from arbiter.config.models import LearningConfig
from arbiter.core.text import normalize_query
from arbiter.learning.calibration import CalibrationListener, load_calibration, save_calibration
from arbiter.learning.models import GoldenExample
from arbiter.observability.logging import get_logger
from arbiter.routing.classifier import ClassifierCalibration, GoldenReference
from arbiter.routing.models import DecisionStatus, Domain, RoutingDecision

if TYPE_CHECKING:
    from arbiter.persistence.store import ArbiterStore

log = get_logger(__name__)

HIGH_QUALITY_SCORE = 0.85
HIGH_RATING = 4
MIN_SAVINGS_RATIO = 0.5
EDGE_CASE_COMPLEXITY = 0.9


def _utcnow() -> datetime:
    return datetime.now(UTC)


def savings_ratio(decision: RoutingDecision, premium_cost_per_1k: float) -> float:
    """1 - actual cost / cost of the same tokens on the premium tier."""
    premium = premium_cost_per_1k * decision.tokens_used / 1000
    if premium <= 0:
        return 0.0
    return max(0.0, min(1.0, 1.0 - decision.total_cost / premium))


def is_edge_case(decision: RoutingDecision) -> bool:
    return (
        decision.classification.complexity >= EDGE_CASE_COMPLEXITY
        and decision.escalations > 0
        and decision.status == DecisionStatus.ACCEPTED
    )


def admission_tags(
    decision: RoutingDecision,
    savings: float,
    domain_count: int,
    config: LearningConfig,
    *,
    edge_case: bool = False,
) -> tuple[str, ...]:
    """Reasons ``decision`` qualifies as a golden example (empty: it does not)."""
    tags: list[str] = []
    feedback = decision.feedback
    if (
        (feedback is not None and feedback.rating is not None and feedback.rating >= HIGH_RATING)
        or (feedback is not None and feedback.thumb is not None and feedback.is_positive)
        or (decision.final_quality is not None and decision.final_quality > HIGH_QUALITY_SCORE)
    ):
        tags.append("high_quality")
    if savings >= MIN_SAVINGS_RATIO:
        tags.append("cost_effective")
    if domain_count < config.limi_min_per_domain:
        tags.append("coverage_gap")
    if edge_case or is_edge_case(decision):
        tags.append("edge_case")
    return tuple(tags)


def choose_eviction(
    examples: list[GoldenExample], domain: Domain
) -> GoldenExample | None:
    """Lowest-scoring example of ``domain``, else of the most represented domain."""
    if not examples:
        return None
    pool = [e for e in examples if e.domain == domain]
    if not pool:
        crowded = Counter(e.domain for e in examples).most_common(1)[0][0]
        pool = [e for e in examples if e.domain == crowded]
    return min(pool, key=lambda e: (e.score, e.created_at))


class LIMICurator:
    """Curates golden examples and publishes them to the classifier.

    Example:
        curator = LIMICurator(store, config.learning, premium_cost_per_1k=0.015)
        example = await curator.consider(decision)
        golden = await curator.get_golden_examples(min_quality=0.8, limit=10)
    """

    def __init__(
        self,
        store: ArbiterStore,
        config: LearningConfig,
        *,
        premium_cost_per_1k: float | Callable[[], float],
        on_calibration: CalibrationListener | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._store = store
        self._config = config
        self._premium = premium_cost_per_1k
        self._on_calibration = on_calibration
        self._clock = clock
        self._lock = asyncio.Lock()

    def _premium_cost(self) -> float:
        return self._premium() if callable(self._premium) else self._premium

    async def consider(
        self, decision: RoutingDecision, *, edge_case: bool = False
    ) -> GoldenExample | None:
        """Admit ``decision`` to the golden set if it qualifies.

        Returns the stored example, or None when it was not admitted.
        """
        if decision.status != DecisionStatus.ACCEPTED or not decision.response:
            return None
        if decision.feedback is not None and decision.feedback.is_negative:
            return None

        async with self._lock:
            examples = await self._store.list_golden()
            key = normalize_query(decision.query)
            if any(
                e.decision_id == decision.id or normalize_query(e.query) == key for e in examples
            ):
                log.debug("limi.example.duplicate", decision_id=decision.id)
                return None

            savings = savings_ratio(decision, self._premium_cost())
            domain_count = sum(1 for e in examples if e.domain == decision.domain)
            tags = admission_tags(
                decision, savings, domain_count, self._config, edge_case=edge_case
            )
            if not tags:
                return None

            candidate = GoldenExample(
                query=decision.query,
                response=decision.response,
                domain=decision.domain,
                quality_score=decision.final_quality or 0.0,
                savings_ratio=savings,
                edge_case="edge_case" in tags,
                complexity=decision.classification.complexity,
                required_quality=decision.classification.required_quality,
                tags=tags,
                decision_id=decision.id,
                created_at=self._clock(),
            )

            evicted: GoldenExample | None = None
            if len(examples) >= self._config.limi_capacity:
                evicted = choose_eviction(examples, candidate.domain)

            await self._store.replace_golden(
                candidate, evict_id=evicted.id if evicted is not None else None
            )

        log.info(
            "limi.example.admitted",
            example_id=candidate.id,
            domain=candidate.domain.value,
            tags=list(tags),
            score=round(candidate.score, 4),
            evicted_id=evicted.id if evicted is not None else None,
        )
        return candidate

    async def curate_from_history(self, since: datetime | None = None) -> int:
        """Offer every accepted decision since ``since`` to the golden set."""
        decisions = await self._store.list_decisions(since=since)
        admitted = 0
        for decision in decisions:
            if await self.consider(decision) is not None:
                admitted += 1
        if admitted:
            await self.publish()
        log.info("limi.curation.completed", considered=len(decisions), admitted=admitted)
        return admitted

    async def get_golden_examples(
        self,
        *,
        min_quality: float = 0.0,
        min_savings: float = 0.0,
        domain: Domain | None = None,
        limit: int | None = None,
    ) -> list[GoldenExample]:
        """Golden examples filtered by quality, savings ratio and domain, best first."""
        examples = [
            e
            for e in await self._store.list_golden(domain=domain)
            if e.quality_score >= min_quality and e.savings_ratio >= min_savings
        ]
        examples.sort(key=lambda e: e.score, reverse=True)
        return examples[:limit] if limit is not None else examples

    async def publish(self) -> ClassifierCalibration:
        """Push the current golden set into the classifier calibration."""
        references = [
            GoldenReference(
                query=e.query,
                domain=e.domain,
                complexity=e.complexity,
                required_quality=e.required_quality,
            )
            for e in await self._store.list_golden()
        ]
        calibration = (await load_calibration(self._store)).with_references(references)
        await save_calibration(self._store, calibration)
        if self._on_calibration is not None:
            self._on_calibration(calibration)
        log.info("limi.references.published", references=len(references))
        return calibration
