"""Pydantic models for Arbiter configuration.

All configuration validation happens through these frozen models.

Classes:
    CandidateConfig: One provider/model in the routing registry
    RoutingConfigSection: Live routing strategy defaults
    ClassifierConfig: TaskClassifier model and blending settings
    CascadeConfig: Tier retry and output limits
    SubscriptionBudget: Monthly and per-request limits for one subscription tier
    BudgetConfig: CostTracker settings
    LevelCeiling: Curriculum level caps
    CurriculumConfig: Promotion/demotion rules
    LearningConfig: DPO / GEPA / LIMI / scheduler settings
    PersistenceConfig: Storage configuration
    LoggingConfig: Logging configuration
    ArbiterConfig: Top-level configuration combining all sections
"""

from __future__ import annotations

from pathlib import Path
from typing import Literal

from pydantic import BaseModel, Field, field_validator, model_validator


class CandidateConfig(BaseModel, frozen=True):
    """A provider/model the cascade can route to.

    Attributes:
        provider_id: Stable registry identifier used in routing decisions.
        model: litellm model string used to reach the provider.
        cost_per_1k_tokens: Blended USD price per 1,000 tokens.
        quality_score: Declared quality in [0, 1].
        tier: 1 = cheap, 2 = mid, 3 = premium.
    """

    provider_id: str = Field(min_length=1)
    model: str = Field(min_length=1)
    cost_per_1k_tokens: float = Field(ge=0.0)
    quality_score: float = Field(ge=0.0, le=1.0)
    tier: int = Field(ge=1, le=3)


class RoutingConfigSection(BaseModel, frozen=True):
    """Default strategy parameters, later tuned by GEPA cycles.

    Attributes:
        max_chain_length: Upper bound on tiers in one cascade.
        acceptance_threshold: Judge score needed to accept a tier's output.
        quality_floor_offset: Added to every classification's required quality.
        tier1_max_complexity: Queries above this complexity skip tier-1 models.
        domain_min_quality: Per-domain floor for required quality.
    """

    max_chain_length: int = Field(default=3, ge=1, le=3)
    acceptance_threshold: float = Field(default=0.75, ge=0.0, le=1.0)
    quality_floor_offset: float = Field(default=0.0, ge=-0.5, le=0.5)
    tier1_max_complexity: float = Field(default=1.0, ge=0.0, le=1.0)
    domain_min_quality: dict[str, float] = Field(default_factory=dict)


class ClassifierConfig(BaseModel, frozen=True):
    """TaskClassifier settings.

    Attributes:
        model: Cheap, fast model used for the rubric call.
        temperature: Sampling temperature for the rubric call.
        max_tokens: Output cap for the rubric call.
        model_weight: Share of the model's complexity in the final blend.
        history_blend: Weight of the domain's historical average complexity.
        history_min_samples: Samples needed before history is blended in.
        cache_ttl_seconds: Lifetime of cached classifications.
        cache_size: Maximum cached classifications.
        golden_similarity_threshold: Jaccard score needed to match a golden example.
    """

    model: str = "groq/llama-3.1-8b-instant"
    temperature: float = Field(default=0.3, ge=0.0, le=2.0)
    max_tokens: int = Field(default=300, ge=16)
    model_weight: float = Field(default=0.6, ge=0.0, le=1.0)
    history_blend: float = Field(default=0.3, ge=0.0, le=1.0)
    history_min_samples: int = Field(default=50, ge=1)
    cache_ttl_seconds: float = Field(default=3600.0, ge=0.0)
    cache_size: int = Field(default=1024, ge=0)
    golden_similarity_threshold: float = Field(default=0.6, ge=0.0, le=1.0)


class CascadeConfig(BaseModel, frozen=True):
    """CascadeExecutor settings.

    Attributes:
        retry_backoff_seconds: Wait before the single retry of a transient error.
        max_output_tokens: Completion-token cap sent to every tier.
        judge_model: Optional secondary model for quality judging.
    """

    retry_backoff_seconds: float = Field(default=0.5, ge=0.0)
    max_output_tokens: int = Field(default=1000, ge=16)
    judge_model: str | None = None


class SubscriptionBudget(BaseModel, frozen=True):
    """Limits attached to one subscription tier."""

    monthly_limit: float = Field(ge=0.0)
    per_request_limit: float = Field(ge=0.0)


class BudgetConfig(BaseModel, frozen=True):
    """CostTracker settings.

    Attributes:
        subscriptions: Limits per subscription tier name.
        default_subscription: Tier assumed when the caller does not say.
        alert_thresholds: Fractions of the monthly limit that fire alerts.
        burn_rate_window_days: Days averaged for the month-end projection.
    """

    subscriptions: dict[str, SubscriptionBudget] = Field(
        default_factory=lambda: {
            "free": SubscriptionBudget(monthly_limit=10.0, per_request_limit=0.01),
            "basic": SubscriptionBudget(monthly_limit=50.0, per_request_limit=0.05),
            "pro": SubscriptionBudget(monthly_limit=200.0, per_request_limit=0.15),
            "enterprise": SubscriptionBudget(monthly_limit=1000.0, per_request_limit=1.0),
        }
    )
    default_subscription: str = "free"
    alert_thresholds: tuple[float, ...] = (0.8, 0.95, 1.0)
    burn_rate_window_days: int = Field(default=7, ge=1, le=31)

    @field_validator("alert_thresholds")
    @classmethod
    def validate_thresholds(cls, v: tuple[float, ...]) -> tuple[float, ...]:
        """Thresholds must be ascending fractions in (0, 1]."""
        if any(t <= 0.0 or t > 1.0 for t in v):
            msg = f"alert thresholds must be in (0, 1], got {v}"
            raise ValueError(msg)
        return tuple(sorted(set(v)))

    @model_validator(mode="after")
    def validate_default_subscription(self) -> BudgetConfig:
        if self.default_subscription not in self.subscriptions:
            msg = f"default_subscription '{self.default_subscription}' is not configured"
            raise ValueError(msg)
        return self


class LevelCeiling(BaseModel, frozen=True):
    """Caps applied to classifications for users at one curriculum level."""

    max_required_quality: float = Field(ge=0.0, le=1.0)
    max_estimated_tokens: int = Field(ge=1)


class CurriculumConfig(BaseModel, frozen=True):
    """CurriculumManager settings."""

    promotion_streak: int = Field(default=3, ge=1)
    promotion_rate: float = Field(default=0.8, ge=0.0, le=1.0)
    demotion_streak: int = Field(default=3, ge=1)
    demotion_rate: float = Field(default=0.5, ge=0.0, le=1.0)
    window_size: int = Field(default=10, ge=1)
    ceilings: dict[str, LevelCeiling] = Field(
        default_factory=lambda: {
            "basic": LevelCeiling(max_required_quality=0.6, max_estimated_tokens=1000),
            "intermediate": LevelCeiling(max_required_quality=0.75, max_estimated_tokens=2000),
            "advanced": LevelCeiling(max_required_quality=0.9, max_estimated_tokens=4000),
            "expert": LevelCeiling(max_required_quality=1.0, max_estimated_tokens=8000),
        }
    )


class LearningConfig(BaseModel, frozen=True):
    """Background learning loop settings.

    Attributes:
        dpo_retrain_every: Decisions accumulated between DPO retrains.
        dpo_quality_margin: How much better a rejected tier may be and still count as overkill.
        dpo_batch_size: Pairs generated per batch.
        gepa_model: Model used for strategy proposals.
        gepa_traffic_fraction: Share of traffic given to each experiment.
        gepa_proposal_count: Proposals per cycle.
        gepa_min_samples: Decisions needed per experiment before it can be concluded.
        gepa_interval_days: Days between scheduled cycles.
        gepa_reflect_days: History window the reflect phase reads.
        limi_capacity: Maximum golden examples kept.
        limi_min_per_domain: Below this count a domain has a coverage gap.
        job_max_attempts: Attempts before a background job stays failed.
        scheduler_interval_seconds: Seconds between background learning ticks;
            None leaves the loop off and jobs run via ``learn run-pending``.
    """

    dpo_retrain_every: int = Field(default=1000, ge=1)
    dpo_quality_margin: float = Field(default=0.1, ge=0.0, le=1.0)
    dpo_batch_size: int = Field(default=200, ge=1)
    gepa_model: str = "gpt-4o"
    gepa_traffic_fraction: float = Field(default=0.1, gt=0.0, le=0.3)
    gepa_proposal_count: int = Field(default=3, ge=1, le=3)
    gepa_min_samples: int = Field(default=20, ge=1)
    gepa_interval_days: int = Field(default=30, ge=1)
    gepa_reflect_days: int = Field(default=30, ge=1)
    limi_capacity: int = Field(default=78, ge=1)
    limi_min_per_domain: int = Field(default=5, ge=0)
    job_max_attempts: int = Field(default=3, ge=1)
    scheduler_interval_seconds: float | None = Field(default=None, gt=0)


class PersistenceConfig(BaseModel, frozen=True):
    """Persistence configuration.

    Attributes:
        database_path: Path to the SQLite database (relative to the config dir).
    """

    database_path: str = "data/arbiter.db"


class LoggingConfig(BaseModel, frozen=True):
    """Logging configuration.

    Attributes:
        level: Log level.
        log_path: Path to the log file (relative to the config dir).
        file_logging: Also write a daily-rotated JSON log to log_path.
        max_log_days: Rotated log files kept.
    """

    level: Literal["debug", "info", "warning", "error"] = "info"
    log_path: str = "logs/arbiter.log"
    file_logging: bool = False
    max_log_days: int = Field(default=7, ge=1, le=365)


def _default_registry() -> list[CandidateConfig]:
    return [
        CandidateConfig(
            provider_id="llama-3.1-8b",
            model="groq/llama-3.1-8b-instant",
            cost_per_1k_tokens=0.0001,
            quality_score=0.55,
            tier=1,
        ),
        CandidateConfig(
            provider_id="gemini-flash",
            model="gemini/gemini-2.0-flash",
            cost_per_1k_tokens=0.0004,
            quality_score=0.7,
            tier=1,
        ),
        CandidateConfig(
            provider_id="gpt-4o-mini",
            model="gpt-4o-mini",
            cost_per_1k_tokens=0.0006,
            quality_score=0.78,
            tier=2,
        ),
        CandidateConfig(
            provider_id="claude-haiku",
            model="anthropic/claude-3-5-haiku-latest",
            cost_per_1k_tokens=0.004,
            quality_score=0.82,
            tier=2,
        ),
        CandidateConfig(
            provider_id="gpt-4o",
            model="gpt-4o",
            cost_per_1k_tokens=0.01,
            quality_score=0.92,
            tier=3,
        ),
        CandidateConfig(
            provider_id="claude-sonnet",
            model="anthropic/claude-sonnet-4-20250514",
            cost_per_1k_tokens=0.015,
            quality_score=0.95,
            tier=3,
        ),
    ]


class ArbiterConfig(BaseModel, frozen=True):
    """Top-level Arbiter configuration, validated against ~/.arbiter/config.yaml."""

    registry: list[CandidateConfig] = Field(default_factory=_default_registry, min_length=1)
    routing: RoutingConfigSection = Field(default_factory=RoutingConfigSection)
    classifier: ClassifierConfig = Field(default_factory=ClassifierConfig)
    cascade: CascadeConfig = Field(default_factory=CascadeConfig)
    budgets: BudgetConfig = Field(default_factory=BudgetConfig)
    curriculum: CurriculumConfig = Field(default_factory=CurriculumConfig)
    learning: LearningConfig = Field(default_factory=LearningConfig)
    persistence: PersistenceConfig = Field(default_factory=PersistenceConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @field_validator("registry")
    @classmethod
    def validate_unique_providers(cls, v: list[CandidateConfig]) -> list[CandidateConfig]:
        """Registry provider ids must be unique."""
        seen: set[str] = set()
        for candidate in v:
            if candidate.provider_id in seen:
                msg = f"duplicate provider_id in registry: {candidate.provider_id}"
                raise ValueError(msg)
            seen.add(candidate.provider_id)
        return v


def get_default_config() -> ArbiterConfig:
    """Return the configuration with every default populated."""
    return ArbiterConfig()


def get_config_dir() -> Path:
    """Return ~/.arbiter/."""
    return Path.home() / ".arbiter"
