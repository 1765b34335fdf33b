"""Routing data model: classifications, candidates, chains and decisions.

``TaskClassification`` is a closed, validated structure. Out-of-range
scores coming from a model are clipped at the boundary instead of
being trusted, and unknown domains are rejected.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any
from uuid import uuid4

from pydantic import BaseModel, field_validator

from arbiter.config.models import CandidateConfig
from arbiter.core.types import Money, Score, clamp_unit


class Domain(StrEnum):
    CHAT = "chat"
    CODE = "code"
    REASONING = "reasoning"
    SUMMARIZATION = "summarization"
    BULK = "bulk"


_DOMAIN_ALIASES = {
    "analysis": Domain.REASONING,
    "math": Domain.REASONING,
    "general": Domain.CHAT,
    "casual": Domain.CHAT,
    "conversation": Domain.CHAT,
    "creative": Domain.CHAT,
    "summary": Domain.SUMMARIZATION,
    "programming": Domain.CODE,
    "coding": Domain.CODE,
    "batch": Domain.BULK,
}


def parse_domain(value: Any) -> Domain:
    """Map a raw domain label onto the closed Domain set.

    Raises:
        ValueError: For labels that are neither a domain nor a known alias.
    """
    if isinstance(value, Domain):
        return value
    label = str(value).strip().lower()
    if label in _DOMAIN_ALIASES:
        return _DOMAIN_ALIASES[label]
    return Domain(label)


class Level(StrEnum):
    """Curriculum levels, lowest first."""

    BASIC = "basic"
    INTERMEDIATE = "intermediate"
    ADVANCED = "advanced"
    EXPERT = "expert"

    @property
    def rank(self) -> int:
        return _LEVEL_ORDER.index(self)

    def promoted(self) -> Level:
        return _LEVEL_ORDER[min(self.rank + 1, len(_LEVEL_ORDER) - 1)]

    def demoted(self) -> Level:
        return _LEVEL_ORDER[max(self.rank - 1, 0)]


_LEVEL_ORDER = (Level.BASIC, Level.INTERMEDIATE, Level.ADVANCED, Level.EXPERT)


class ClassificationSource(StrEnum):
    MODEL = "model"
    HEURISTIC = "heuristic"
    CACHE = "cache"


class TaskClassification(BaseModel, frozen=True):
    """What a query needs: how hard, what kind, how good, how long, how much.

    Attributes:
        complexity: Difficulty in [0, 1] (0-0.3 trivial, 0.3-0.6 moderate, 0.6-1 complex).
        domain: Closed task domain.
        required_quality: Minimum candidate quality in [0, 1].
        estimated_tokens: Prompt + completion tokens expected.
        budget_constraint: Advisory per-request spend cap in USD.
        source: Whether the model, the heuristic, or the cache produced it.
    """

    complexity: Score
    domain: Domain
    required_quality: Score
    estimated_tokens: int
    budget_constraint: Money = 0.0
    source: ClassificationSource = ClassificationSource.HEURISTIC

    @field_validator("complexity", "required_quality", mode="before")
    @classmethod
    def clip_scores(cls, v: Any) -> float:
        return clamp_unit(float(v))

    @field_validator("estimated_tokens", mode="before")
    @classmethod
    def clip_tokens(cls, v: Any) -> int:
        return max(0, int(round(float(v))))

    @field_validator("budget_constraint", mode="before")
    @classmethod
    def clip_budget(cls, v: Any) -> float:
        return max(0.0, float(v))

    @field_validator("domain", mode="before")
    @classmethod
    def coerce_domain(cls, v: Any) -> Domain:
        return parse_domain(v)


@dataclass(frozen=True, slots=True)
class ModelCandidate:
    """One provider/model at a cost-quality point.

    Attributes:
        provider_id: Registry identifier.
        cost_per_1k_tokens: USD per 1,000 tokens.
        quality_score: Declared quality in [0, 1].
        tier: 1 = cheap, 2 = mid, 3 = premium.
        model: litellm model string.
    """

    provider_id: str
    cost_per_1k_tokens: Money
    quality_score: Score
    tier: int
    model: str = ""

    def estimate_cost(self, tokens: int) -> Money:
        return max(tokens, 0) / 1000.0 * self.cost_per_1k_tokens

    @classmethod
    def from_config(cls, config: CandidateConfig) -> ModelCandidate:
        return cls(
            provider_id=config.provider_id,
            cost_per_1k_tokens=config.cost_per_1k_tokens,
            quality_score=config.quality_score,
            tier=config.tier,
            model=config.model,
        )


@dataclass(frozen=True, slots=True)
class CascadeChain:
    """Ordered candidates, cheapest first. Never empty.

    Attributes:
        candidates: Candidates in non-decreasing cost order.
        fallback: True when no candidate met the quality floor and the
            highest-quality candidate was used instead.
    """

    candidates: tuple[ModelCandidate, ...]
    fallback: bool = False

    def __post_init__(self) -> None:
        if not self.candidates:
            msg = "a cascade chain needs at least one candidate"
            raise ValueError(msg)
        for current, following in zip(self.candidates, self.candidates[1:]):
            if following.cost_per_1k_tokens < current.cost_per_1k_tokens:
                msg = (
                    f"chain is not cost-ordered: {current.provider_id} "
                    f"costs more than {following.provider_id}"
                )
                raise ValueError(msg)

    def __len__(self) -> int:
        return len(self.candidates)

    def __getitem__(self, index: int) -> ModelCandidate:
        return self.candidates[index]

    def __iter__(self):
        return iter(self.candidates)

    @property
    def provider_ids(self) -> tuple[str, ...]:
        return tuple(c.provider_id for c in self.candidates)


class AttemptStatus(StrEnum):
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    ERRORED = "errored"


@dataclass(frozen=True, slots=True)
class TierAttempt:
    """What happened at one tier of a cascade."""

    provider_id: str
    tier_index: int
    status: AttemptStatus
    quality: Score | None = None
    cost: Money = 0.0
    tokens_used: int = 0
    calls: int = 1
    error: str | None = None


class Thumb(StrEnum):
    UP = "up"
    DOWN = "down"


@dataclass(frozen=True, slots=True)
class UserFeedback:
    """A user's verdict on a routed response: a 1-5 rating, a thumb, or both."""

    rating: int | None = None
    thumb: Thumb | None = None

    def __post_init__(self) -> None:
        if self.rating is None and self.thumb is None:
            msg = "feedback needs a rating or a thumb"
            raise ValueError(msg)
        if self.rating is not None and not 1 <= self.rating <= 5:
            msg = f"rating must be between 1 and 5, got {self.rating}"
            raise ValueError(msg)

    @property
    def is_positive(self) -> bool:
        if self.thumb is not None:
            return self.thumb == Thumb.UP
        return self.rating is not None and self.rating >= 4

    @property
    def is_negative(self) -> bool:
        return not self.is_positive

    def to_dict(self) -> dict[str, Any]:
        return {
            "rating": self.rating,
            "thumb": self.thumb.value if self.thumb else None,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> UserFeedback:
        thumb = data.get("thumb")
        return cls(rating=data.get("rating"), thumb=Thumb(thumb) if thumb else None)


class DecisionStatus(StrEnum):
    """Terminal state of a cascade run."""

    ACCEPTED = "accepted"
    EXHAUSTED = "exhausted"
    BUDGET_EXCEEDED = "budget_exceeded"
    CANCELLED = "cancelled"


@dataclass(frozen=True, slots=True)
class RoutingDecision:
    """The append-only record of one routed request.

    ``chain`` is the full chain that was built; ``chain_tried`` lists the
    providers actually called. Feedback is the only field ever attached
    after creation.
    """

    user_id: str
    query: str
    classification: TaskClassification
    chain: tuple[str, ...]
    chain_tried: tuple[str, ...]
    final_provider: str | None
    final_cost: Money
    total_cost: Money
    final_quality: Score | None
    escalations: int
    status: DecisionStatus
    below_quality_floor: bool = False
    tokens_used: int = 0
    response: str | None = None
    experiment_id: str | None = None
    feedback: UserFeedback | None = None
    id: str = field(default_factory=lambda: str(uuid4()))
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))

    @property
    def domain(self) -> Domain:
        return self.classification.domain

    def with_feedback(self, feedback: UserFeedback) -> RoutingDecision:
        return replace(self, feedback=feedback)

    def to_row(self) -> dict[str, Any]:
        """Flatten into a routing_decisions row."""
        return {
            "id": self.id,
            "user_id": self.user_id,
            "query": self.query,
            "domain": self.classification.domain.value,
            "classification": self.classification.model_dump(mode="json"),
            "chain": list(self.chain),
            "chain_tried": list(self.chain_tried),
            "final_provider": self.final_provider,
            "final_cost": self.final_cost,
            "total_cost": self.total_cost,
            "final_quality": self.final_quality,
            "escalations": self.escalations,
            "status": self.status.value,
            "below_quality_floor": self.below_quality_floor,
            "tokens_used": self.tokens_used,
            "response": self.response,
            "experiment_id": self.experiment_id,
            "feedback": self.feedback.to_dict() if self.feedback else None,
            "has_feedback": self.feedback is not None,
            "timestamp": self.timestamp,
        }

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> RoutingDecision:
        timestamp = row["timestamp"]
        if timestamp.tzinfo is None:
            timestamp = timestamp.replace(tzinfo=UTC)
        feedback = row.get("feedback")
        return cls(
            id=row["id"],
            user_id=row["user_id"],
            query=row["query"],
            classification=TaskClassification.model_validate(row["classification"]),
            chain=tuple(row["chain"]),
            chain_tried=tuple(row["chain_tried"]),
            final_provider=row["final_provider"],
            final_cost=row["final_cost"],
            total_cost=row["total_cost"],
            final_quality=row["final_quality"],
            escalations=row["escalations"],
            status=DecisionStatus(row["status"]),
            below_quality_floor=bool(row["below_quality_floor"]),
            tokens_used=row["tokens_used"],
            response=row["response"],
            experiment_id=row["experiment_id"],
            feedback=UserFeedback.from_dict(feedback) if feedback else None,
            timestamp=timestamp,
        )
