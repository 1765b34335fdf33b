"""Configuration for Arbiter, stored in ~/.arbiter/.

Usage:
    from arbiter.config import load_config

    config = load_config()
    threshold = config.routing.acceptance_threshold
"""

from arbiter.config.loader import (
    config_exists,
    create_default_config,
    ensure_config_dir,
    load_config,
    load_config_or_default,
    resolve_database_url,
    resolve_log_path,
)
from arbiter.config.models import (
    ArbiterConfig,
    BudgetConfig,
    CandidateConfig,
    CascadeConfig,
    ClassifierConfig,
    CurriculumConfig,
    LearningConfig,
    LevelCeiling,
    LoggingConfig,
    PersistenceConfig,
    RoutingConfigSection,
    SubscriptionBudget,
    get_config_dir,
    get_default_config,
)

__all__ = [
    "ArbiterConfig",
    "BudgetConfig",
    "CandidateConfig",
    "CascadeConfig",
    "ClassifierConfig",
    "CurriculumConfig",
    "LearningConfig",
    "LevelCeiling",
    "LoggingConfig",
    "PersistenceConfig",
    "RoutingConfigSection",
    "SubscriptionBudget",
    "config_exists",
    "create_default_config",
    "ensure_config_dir",
    "get_config_dir",
    "get_default_config",
    "load_config",
    "load_config_or_default",
    "resolve_database_url",
    "resolve_log_path",
]
