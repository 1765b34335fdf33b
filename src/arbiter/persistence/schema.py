"""Database schema definitions using SQLAlchemy Core.

Tables:
    routing_decisions   append-only request history (feedback attached later)
    budgets             per-user monthly budget with in-flight reservations
    budget_alerts       one row per (user, threshold, period)
    spend_ledger        one row per charged tier execution
    curriculum_levels   per-user curriculum state
    preference_pairs    DPO (chosen, rejected) pairs
    golden_examples     LIMI curated set
    experiments         GEPA experiments
    gepa_cycles         GEPA cycle checkpoints
    learning_jobs       background job queue
    learning_state      key/value JSON checkpoints
"""

from datetime import UTC, datetime

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    Float,
    Index,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    UniqueConstraint,
    text,
)

metadata = MetaData()


def _timestamp(name: str, *, nullable: bool = False) -> Column:
    if nullable:
        return Column(name, DateTime(timezone=True), nullable=True)
    return Column(
        name,
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(UTC),
        server_default=text("CURRENT_TIMESTAMP"),
    )


routing_decisions_table = Table(
    "routing_decisions",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("user_id", String(200), nullable=False),
    Column("query", Text, nullable=False),
    Column("domain", String(50), nullable=False),
    Column("classification", JSON, nullable=False),
    Column("chain", JSON, nullable=False),
    Column("chain_tried", JSON, nullable=False),
    Column("final_provider", String(200), nullable=True),
    Column("final_cost", Float, nullable=False, default=0.0),
    Column("total_cost", Float, nullable=False, default=0.0),
    Column("final_quality", Float, nullable=True),
    Column("escalations", Integer, nullable=False, default=0),
    Column("status", String(50), nullable=False),
    Column("below_quality_floor", Boolean, nullable=False, default=False),
    Column("tokens_used", Integer, nullable=False, default=0),
    Column("response", Text, nullable=True),
    Column("experiment_id", String(36), nullable=True),
    Column("feedback", JSON, nullable=True),
    Column("has_feedback", Boolean, nullable=False, default=False),
    _timestamp("timestamp"),
    Index("ix_routing_decisions_user_id", "user_id"),
    Index("ix_routing_decisions_domain", "domain"),
    Index("ix_routing_decisions_timestamp", "timestamp"),
    Index("ix_routing_decisions_experiment_id", "experiment_id"),
)

budgets_table = Table(
    "budgets",
    metadata,
    Column("user_id", String(200), primary_key=True),
    Column("tier", String(50), nullable=False),
    Column("monthly_limit", Float, nullable=False),
    Column("spent_this_period", Float, nullable=False, default=0.0),
    Column("reserved", Float, nullable=False, default=0.0),
    Column("period_key", String(7), nullable=False),
    _timestamp("updated_at"),
)

budget_alerts_table = Table(
    "budget_alerts",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("user_id", String(200), nullable=False),
    Column("threshold", Float, nullable=False),
    Column("period_key", String(7), nullable=False),
    Column("spent", Float, nullable=False),
    Column("limit", Float, nullable=False),
    _timestamp("created_at"),
    UniqueConstraint("user_id", "threshold", "period_key", name="uq_budget_alerts_dedup"),
)

spend_ledger_table = Table(
    "spend_ledger",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("user_id", String(200), nullable=False),
    Column("amount", Float, nullable=False),
    Column("period_key", String(7), nullable=False),
    Column("provider_id", String(200), nullable=True),
    Column("tier", Integer, nullable=True),
    Column("tokens_used", Integer, nullable=False, default=0),
    Column("decision_id", String(36), nullable=True),
    Column("over_request_budget", Boolean, nullable=False, default=False),
    _timestamp("created_at"),
    Index("ix_spend_ledger_user_period", "user_id", "period_key"),
    Index("ix_spend_ledger_created_at", "created_at"),
)

curriculum_levels_table = Table(
    "curriculum_levels",
    metadata,
    Column("user_id", String(200), primary_key=True),
    Column("level", String(20), nullable=False),
    Column("consecutive_successes", Integer, nullable=False, default=0),
    Column("consecutive_failures", Integer, nullable=False, default=0),
    Column("window", JSON, nullable=False),
    _timestamp("updated_at"),
)

preference_pairs_table = Table(
    "preference_pairs",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("chosen_decision_id", String(36), nullable=False),
    Column("rejected_decision_id", String(36), nullable=False),
    Column("domain", String(50), nullable=False),
    Column("cost_saving", Float, nullable=False),
    Column("quality_delta", Float, nullable=False),
    _timestamp("created_at"),
    UniqueConstraint("chosen_decision_id", "rejected_decision_id", name="uq_preference_pairs"),
)

golden_examples_table = Table(
    "golden_examples",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("query", Text, nullable=False),
    Column("response", Text, nullable=False),
    Column("domain", String(50), nullable=False),
    Column("quality_score", Float, nullable=False),
    Column("savings_ratio", Float, nullable=False),
    Column("edge_case", Boolean, nullable=False, default=False),
    Column("complexity", Float, nullable=False),
    Column("required_quality", Float, nullable=False),
    Column("tags", JSON, nullable=False),
    Column("decision_id", String(36), nullable=True, unique=True),
    _timestamp("created_at"),
    Index("ix_golden_examples_domain", "domain"),
)

experiments_table = Table(
    "experiments",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("cycle_id", String(36), nullable=False),
    Column("name", String(200), nullable=False),
    Column("hypothesis", Text, nullable=False),
    Column("parameters", JSON, nullable=False),
    Column("traffic_fraction", Float, nullable=False),
    Column("bucket_start", Integer, nullable=False),
    Column("bucket_end", Integer, nullable=False),
    Column("status", String(20), nullable=False),
    Column("expected_impact", Text, nullable=False, default=""),
    Column("metrics", JSON, nullable=True),
    _timestamp("created_at"),
    _timestamp("concluded_at", nullable=True),
    Index("ix_experiments_cycle_id", "cycle_id"),
    Index("ix_experiments_status", "status"),
)

gepa_cycles_table = Table(
    "gepa_cycles",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("phase", String(20), nullable=False),
    Column("reflection", JSON, nullable=False),
    Column("adopted_experiment_id", String(36), nullable=True),
    Column("error", Text, nullable=True),
    _timestamp("started_at"),
    _timestamp("updated_at"),
    _timestamp("completed_at", nullable=True),
)

learning_jobs_table = Table(
    "learning_jobs",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("kind", String(50), nullable=False),
    Column("payload", JSON, nullable=False),
    Column("status", String(20), nullable=False),
    Column("attempts", Integer, nullable=False, default=0),
    Column("last_error", Text, nullable=True),
    Column("dedupe_key", String(200), nullable=True),
    _timestamp("created_at"),
    _timestamp("updated_at"),
    Index("ix_learning_jobs_status", "status"),
)

learning_state_table = Table(
    "learning_state",
    metadata,
    Column("key", String(200), primary_key=True),
    Column("value", JSON, nullable=False),
    _timestamp("updated_at"),
)
