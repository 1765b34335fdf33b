"""Core building blocks for Arbiter: Result, errors, security, text matching."""

from arbiter.core.errors import (
    ArbiterError,
    BudgetExceededError,
    ChainExhaustedError,
    ClassificationFailure,
    ConfigError,
    LearningCycleError,
    PersistenceError,
    ProviderError,
    TransientProviderError,
    ValidationError,
)
from arbiter.core.types import Money, Result, Score, clamp_unit

__all__ = [
    "ArbiterError",
    "BudgetExceededError",
    "ChainExhaustedError",
    "ClassificationFailure",
    "ConfigError",
    "LearningCycleError",
    "Money",
    "PersistenceError",
    "ProviderError",
    "Result",
    "Score",
    "TransientProviderError",
    "ValidationError",
    "clamp_unit",
]
