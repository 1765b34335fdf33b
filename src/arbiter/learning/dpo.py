"""DPOTrainer: preference pairs from routing history, and classifier retraining.

Pair Rule:
- CHOSEN: a decision with positive feedback that was accepted
- REJECTED: a decision in the same domain whose final provider sits later
  (more expensive) in CHOSEN's chain, that cost more, and whose quality was
  at most ``dpo_quality_margin`` better, i.e. the premium tier was overkill
- Among qualifying REJECTED decisions the most expensive is used
- No qualifying REJECTED decision: the pair is discarded, never fabricated

Retraining turns pairs and negative feedback into per-domain offsets on
the classifier's required quality:

    offset[d] = clamp(0.2 * (negatives[d] - pairs[d]) / max(feedback[d], 1), -0.2, 0.2)

Overkill pairs pull the floor down (cheaper chains); negative feedback
pushes it up.
"""

from __future__ import annotations

import asyncio
from collections import Counter, defaultdict
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

from arbiter.config.models import LearningConfig
from arbiter.core.errors import LearningCycleError, PersistenceError
from arbiter.learning.calibration import CalibrationListener, load_calibration, save_calibration
from arbiter.learning.models import PreferencePair
from arbiter.observability.logging import get_logger
from arbiter.routing.classifier import ClassifierCalibration
from arbiter.routing.models import DecisionStatus, Domain, RoutingDecision

if TYPE_CHECKING:
    from arbiter.persistence.store import ArbiterStore

log = get_logger(__name__)

COUNTERS_STATE_KEY = "dpo.counters"
MAX_OFFSET = 0.2


def _utcnow() -> datetime:
    return datetime.now(UTC)


@dataclass(frozen=True, slots=True)
class DPOStats:
    """Training-loop statistics."""

    total_decisions: int
    feedback_count: int
    positive_rate: float
    pair_count: int
    decisions_since_retrain: int
    retrain_count: int
    last_retrain_at: str | None = None
    quality_offsets: dict[str, float] = field(default_factory=dict)


def find_rejected(
    chosen: RoutingDecision,
    candidates: list[RoutingDecision],
    quality_margin: float,
) -> RoutingDecision | None:
    """The most expensive overkill decision for ``chosen``, if any."""
    if chosen.final_provider not in chosen.chain or chosen.final_quality is None:
        return None
    later = set(chosen.chain[chosen.chain.index(chosen.final_provider) + 1 :])
    if not later:
        return None

    qualifying = [
        d
        for d in candidates
        if d.id != chosen.id
        and d.domain == chosen.domain
        and d.final_provider in later
        and d.final_cost > chosen.final_cost
        and d.final_quality is not None
        and d.final_quality <= chosen.final_quality + quality_margin
    ]
    if not qualifying:
        return None
    return max(qualifying, key=lambda d: (d.final_cost, d.id))


def compute_offsets(
    decisions: list[RoutingDecision], pairs: list[PreferencePair]
) -> dict[Domain, float]:
    """Per-domain required-quality offsets from feedback and overkill pairs."""
    feedback: Counter[Domain] = Counter()
    negatives: Counter[Domain] = Counter()
    for decision in decisions:
        if decision.feedback is None:
            continue
        feedback[decision.domain] += 1
        if decision.feedback.is_negative:
            negatives[decision.domain] += 1
    pair_counts = Counter(pair.domain for pair in pairs)

    offsets: dict[Domain, float] = {}
    for domain in set(feedback) | set(pair_counts):
        raw = MAX_OFFSET * (negatives[domain] - pair_counts[domain]) / max(feedback[domain], 1)
        offsets[domain] = max(-MAX_OFFSET, min(MAX_OFFSET, raw))
    return offsets


class DPOTrainer:
    """Builds preference pairs and periodically recalibrates the classifier.

    Example:
        trainer = DPOTrainer(store, config.learning, on_calibration=classifier.set_calibration)
        if await trainer.record_decision(decision):
            await trainer.retrain()
    """

    def __init__(
        self,
        store: ArbiterStore,
        config: LearningConfig,
        *,
        on_calibration: CalibrationListener | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._store = store
        self._config = config
        self._on_calibration = on_calibration
        self._clock = clock
        self._lock = asyncio.Lock()

    async def _counters(self) -> dict[str, Any]:
        state = await self._store.get_state(COUNTERS_STATE_KEY)
        return state or {"since_retrain": 0, "retrain_count": 0, "last_retrain_at": None}

    async def record_decision(self, decision: RoutingDecision) -> bool:
        """Count one decision. Returns True when a retrain is due."""
        async with self._lock:
            counters = await self._counters()
            counters["since_retrain"] = int(counters.get("since_retrain", 0)) + 1
            await self._store.set_state(COUNTERS_STATE_KEY, counters)
        due = counters["since_retrain"] >= self._config.dpo_retrain_every
        if due:
            log.info("dpo.retrain.due", decisions=counters["since_retrain"], decision_id=decision.id)
        return due

    async def generate_preference_pairs(self, batch_size: int | None = None) -> list[PreferencePair]:
        """Build up to ``batch_size`` new pairs from the decision history."""
        limit = batch_size or self._config.dpo_batch_size
        decisions = await self._store.list_decisions()
        existing = {
            (p.chosen_decision_id, p.rejected_decision_id) for p in await self._store.list_pairs()
        }

        by_domain: dict[Domain, list[RoutingDecision]] = defaultdict(list)
        for decision in decisions:
            if decision.final_provider is not None:
                by_domain[decision.domain].append(decision)

        pairs: list[PreferencePair] = []
        discarded = 0
        for chosen in decisions:
            if len(pairs) >= limit:
                break
            if (
                chosen.feedback is None
                or not chosen.feedback.is_positive
                or chosen.status != DecisionStatus.ACCEPTED
            ):
                continue

            rejected = find_rejected(chosen, by_domain[chosen.domain], self._config.dpo_quality_margin)
            if rejected is None:
                discarded += 1
                continue
            if (chosen.id, rejected.id) in existing:
                continue

            existing.add((chosen.id, rejected.id))
            pairs.append(
                PreferencePair(
                    chosen_decision_id=chosen.id,
                    rejected_decision_id=rejected.id,
                    domain=chosen.domain,
                    cost_saving=rejected.final_cost - chosen.final_cost,
                    quality_delta=(rejected.final_quality or 0.0) - (chosen.final_quality or 0.0),
                    created_at=self._clock(),
                )
            )

        inserted = await self._store.insert_pairs(pairs)
        log.info(
            "dpo.pairs.generated",
            generated=len(pairs),
            inserted=inserted,
            discarded=discarded,
        )
        return pairs

    async def retrain(self) -> ClassifierCalibration:
        """Generate pending pairs, recompute offsets and publish the calibration.

        Raises:
            LearningCycleError: If history cannot be read or the result saved.
        """
        try:
            await self.generate_preference_pairs()
            decisions = await self._store.list_decisions(with_feedback=True)
            pairs = await self._store.list_pairs()
            offsets = compute_offsets(decisions, pairs)

            calibration = (await load_calibration(self._store)).with_quality_offsets(offsets)
            await save_calibration(self._store, calibration)

            async with self._lock:
                counters = await self._counters()
                counters.update(
                    since_retrain=0,
                    retrain_count=int(counters.get("retrain_count", 0)) + 1,
                    last_retrain_at=self._clock().isoformat(),
                )
                await self._store.set_state(COUNTERS_STATE_KEY, counters)
        except PersistenceError as e:
            raise LearningCycleError(
                f"DPO retrain failed: {e.message}", job="dpo.retrain", phase="retrain"
            ) from e

        if self._on_calibration is not None:
            self._on_calibration(calibration)
        log.info(
            "dpo.retrain.completed",
            pairs=len(pairs),
            feedback=len(decisions),
            offsets={d.value: round(v, 4) for d, v in offsets.items()},
            calibration_version=calibration.version,
        )
        return calibration

    async def stats(self) -> DPOStats:
        feedback = await self._store.list_decisions(with_feedback=True)
        positives = sum(1 for d in feedback if d.feedback is not None and d.feedback.is_positive)
        counters = await self._counters()
        calibration = await load_calibration(self._store)
        return DPOStats(
            total_decisions=await self._store.count_decisions(),
            feedback_count=len(feedback),
            positive_rate=positives / len(feedback) if feedback else 0.0,
            pair_count=len(await self._store.list_pairs()),
            decisions_since_retrain=int(counters.get("since_retrain", 0)),
            retrain_count=int(counters.get("retrain_count", 0)),
            last_retrain_at=counters.get("last_retrain_at"),
            quality_offsets={d.value: v for d, v in calibration.quality_offsets.items()},
        )
