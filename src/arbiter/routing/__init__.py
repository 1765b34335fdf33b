"""Routing hot path for Arbiter.

This package turns a query into a routed, judged response:
- Task classification (complexity, domain, quality floor, token estimate)
- Versioned routing configuration with atomic swaps
- Cost-ordered cascade chain selection
- Quality judging and the cascade execution state machine
"""

from arbiter.routing.cascade import (
    CancellationToken,
    CascadeAnalytics,
    CascadeExecutor,
    CascadeOutcome,
    CascadeState,
)
from arbiter.routing.classifier import (
    ClassifierCalibration,
    GoldenReference,
    QueryContext,
    TaskClassifier,
    heuristic_classification,
)
from arbiter.routing.judge import HeuristicJudge, JudgeInput, ModelJudge, QualityGate, QualityJudge
from arbiter.routing.models import (
    CascadeChain,
    Domain,
    DecisionStatus,
    Level,
    ModelCandidate,
    RoutingDecision,
    TaskClassification,
    Thumb,
    TierAttempt,
    UserFeedback,
)
from arbiter.routing.registry import RoutingConfig, RoutingConfigHolder, StrategyParameters
from arbiter.routing.selector import ModelSelector, effective_quality_floor

__all__ = [
    # Models
    "CascadeChain",
    "DecisionStatus",
    "Domain",
    "Level",
    "ModelCandidate",
    "RoutingDecision",
    "TaskClassification",
    "Thumb",
    "TierAttempt",
    "UserFeedback",
    # Configuration
    "RoutingConfig",
    "RoutingConfigHolder",
    "StrategyParameters",
    # Classification
    "ClassifierCalibration",
    "GoldenReference",
    "QueryContext",
    "TaskClassifier",
    "heuristic_classification",
    # Selection
    "ModelSelector",
    "effective_quality_floor",
    # Judging
    "HeuristicJudge",
    "JudgeInput",
    "ModelJudge",
    "QualityGate",
    "QualityJudge",
    # Execution
    "CancellationToken",
    "CascadeAnalytics",
    "CascadeExecutor",
    "CascadeOutcome",
    "CascadeState",
]
