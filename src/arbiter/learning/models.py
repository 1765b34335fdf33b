"""Records produced and consumed by the learning loop."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any
from uuid import uuid4

from arbiter.core.types import Money, Score
from arbiter.routing.models import Domain, Level


def _now() -> datetime:
    return datetime.now(UTC)


def _new_id() -> str:
    return str(uuid4())


@dataclass(frozen=True, slots=True)
class CurriculumLevel:
    """A user's place on the difficulty curve.

    Attributes:
        user_id: The user.
        level: Current level.
        consecutive_successes: Successes since the last failure or transition.
        consecutive_failures: Failures since the last success or transition.
        window: Most recent outcomes, oldest first (True = success).
    """

    user_id: str
    level: Level = Level.BASIC
    consecutive_successes: int = 0
    consecutive_failures: int = 0
    window: tuple[bool, ...] = ()
    updated_at: datetime = field(default_factory=_now)

    @property
    def success_rate(self) -> float:
        if not self.window:
            return 0.0
        return sum(self.window) / len(self.window)


@dataclass(frozen=True, slots=True)
class PreferencePair:
    """(chosen, rejected): the cheap decision that was good enough, and the overkill one."""

    chosen_decision_id: str
    rejected_decision_id: str
    domain: Domain
    cost_saving: Money
    quality_delta: float
    id: str = field(default_factory=_new_id)
    created_at: datetime = field(default_factory=_now)


@dataclass(frozen=True, slots=True)
class GoldenExample:
    """A curated example used to calibrate the classifier.

    Attributes:
        query: The original query.
        response: The accepted response.
        domain: Task domain.
        quality_score: Observed quality in [0, 1].
        savings_ratio: 1 - cost / premium-tier cost, in [0, 1].
        edge_case: Flagged as an unusual or boundary case.
        complexity: Classified complexity, reused for calibration.
        required_quality: Classified quality floor, reused for calibration.
    """

    query: str
    response: str
    domain: Domain
    quality_score: Score
    savings_ratio: Score
    edge_case: bool = False
    complexity: Score = 0.5
    required_quality: Score = 0.5
    tags: tuple[str, ...] = ()
    decision_id: str | None = None
    id: str = field(default_factory=_new_id)
    created_at: datetime = field(default_factory=_now)

    @property
    def score(self) -> float:
        """Composite curation score: 0.5 quality + 0.3 savings + 0.2 edge case."""
        return 0.5 * self.quality_score + 0.3 * self.savings_ratio + (0.2 if self.edge_case else 0.0)


class ExperimentStatus(StrEnum):
    PROPOSED = "proposed"
    RUNNING = "running"
    CONCLUDED = "concluded"
    ADOPTED = "adopted"
    REJECTED = "rejected"


@dataclass(frozen=True, slots=True)
class ExperimentMetrics:
    """Experiment performance against the control traffic.

    Attributes:
        samples: Decisions observed under the experiment.
        avg_cost: Mean total cost per decision.
        avg_quality: Mean observed quality per decision.
        cost_delta: avg_cost - control avg_cost (negative is cheaper).
        quality_delta: avg_quality - control avg_quality.
    """

    samples: int
    avg_cost: Money
    avg_quality: Score
    cost_delta: Money
    quality_delta: float

    @property
    def cost_quality_ratio(self) -> float:
        return self.avg_cost / max(self.avg_quality, 1e-6)

    def to_dict(self) -> dict[str, Any]:
        return {
            "samples": self.samples,
            "avg_cost": self.avg_cost,
            "avg_quality": self.avg_quality,
            "cost_delta": self.cost_delta,
            "quality_delta": self.quality_delta,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ExperimentMetrics:
        return cls(
            samples=int(data["samples"]),
            avg_cost=float(data["avg_cost"]),
            avg_quality=float(data["avg_quality"]),
            cost_delta=float(data["cost_delta"]),
            quality_delta=float(data["quality_delta"]),
        )


@dataclass(frozen=True, slots=True)
class Experiment:
    """One GEPA strategy proposal under test on its own traffic slice.

    The slice is the hash-bucket range [bucket_start, bucket_end) out of 100.
    """

    cycle_id: str
    name: str
    hypothesis: str
    parameters: dict[str, Any]
    traffic_fraction: float
    bucket_start: int
    bucket_end: int
    status: ExperimentStatus = ExperimentStatus.PROPOSED
    expected_impact: str = ""
    metrics: ExperimentMetrics | None = None
    id: str = field(default_factory=_new_id)
    created_at: datetime = field(default_factory=_now)
    concluded_at: datetime | None = None

    def owns_bucket(self, bucket: int) -> bool:
        return self.bucket_start <= bucket < self.bucket_end


class GepaPhase(StrEnum):
    REFLECT = "reflect"
    PROPOSE = "propose"
    TEST = "test"
    SELECT = "select"
    COMPLETED = "completed"


@dataclass(frozen=True, slots=True)
class GepaCycle:
    """Persisted progress of one reflect-propose-test-select cycle."""

    phase: GepaPhase = GepaPhase.REFLECT
    reflection: dict[str, Any] = field(default_factory=dict)
    adopted_experiment_id: str | None = None
    error: str | None = None
    id: str = field(default_factory=_new_id)
    started_at: datetime = field(default_factory=_now)
    updated_at: datetime = field(default_factory=_now)
    completed_at: datetime | None = None

    @property
    def is_complete(self) -> bool:
        return self.phase == GepaPhase.COMPLETED


class JobKind(StrEnum):
    DPO_RETRAIN = "dpo.retrain"
    GEPA_CYCLE = "gepa.cycle"
    LIMI_CURATE = "limi.curate"


class JobStatus(StrEnum):
    PENDING = "pending"
    RUNNING = "running"
    DONE = "done"
    FAILED = "failed"


@dataclass(frozen=True, slots=True)
class LearningJob:
    """A discrete, checkpointed background job."""

    kind: JobKind
    payload: dict[str, Any] = field(default_factory=dict)
    status: JobStatus = JobStatus.PENDING
    attempts: int = 0
    last_error: str | None = None
    id: str = field(default_factory=_new_id)
    created_at: datetime = field(default_factory=_now)
    updated_at: datetime = field(default_factory=_now)
