"""Learning loop for Arbiter: DPO, curriculum, GEPA and LIMI."""

from arbiter.learning.curriculum import CurriculumManager, CurriculumTransition, apply_outcome
from arbiter.learning.dpo import DPOStats, DPOTrainer
from arbiter.learning.gepa import FALLBACK_PROPOSALS, GEPAEvolver, StrategyProposal
from arbiter.learning.limi import LIMICurator
from arbiter.learning.models import (
    CurriculumLevel,
    Experiment,
    ExperimentMetrics,
    ExperimentStatus,
    GepaCycle,
    GepaPhase,
    GoldenExample,
    JobKind,
    JobStatus,
    LearningJob,
    PreferencePair,
)
from arbiter.learning.scheduler import JobBatchSummary, JobResult, LearningScheduler

__all__ = [
    "FALLBACK_PROPOSALS",
    "CurriculumLevel",
    "CurriculumManager",
    "CurriculumTransition",
    "DPOStats",
    "DPOTrainer",
    "Experiment",
    "ExperimentMetrics",
    "ExperimentStatus",
    "GEPAEvolver",
    "GepaCycle",
    "GepaPhase",
    "GoldenExample",
    "JobBatchSummary",
    "JobKind",
    "JobResult",
    "JobStatus",
    "LIMICurator",
    "LearningJob",
    "LearningScheduler",
    "PreferencePair",
    "StrategyProposal",
    "apply_outcome",
]
