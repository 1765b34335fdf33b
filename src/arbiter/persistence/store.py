"""ArbiterStore: async persistence for every Arbiter record.

Uses SQLAlchemy Core with the aiosqlite backend. Every operation runs in
its own transaction; SQLAlchemy failures are wrapped in PersistenceError.

Budget mutations are single conditional UPDATE statements so that two
concurrent requests can never both pass a check only one could afford.
Alert dedup relies on the (user_id, threshold, period_key) unique key.
"""

from __future__ import annotations

from collections.abc import AsyncIterator, Iterable
from contextlib import asynccontextmanager
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from sqlalchemy import case, func, select, update
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine, create_async_engine

from arbiter.budget.models import Budget, BudgetAlert, LedgerEntry, SpendBreakdown
from arbiter.core.errors import PersistenceError
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
from arbiter.persistence.schema import (
    budget_alerts_table,
    budgets_table,
    curriculum_levels_table,
    experiments_table,
    gepa_cycles_table,
    golden_examples_table,
    learning_jobs_table,
    learning_state_table,
    metadata,
    preference_pairs_table,
    routing_decisions_table,
    spend_ledger_table,
)
from arbiter.routing.models import Domain, Level, RoutingDecision, UserFeedback


def _aware(value: datetime | None) -> datetime | None:
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=UTC)


def _non_negative(column: Any, amount: float) -> Any:
    """SQL expression for max(column - amount, 0)."""
    return case((column - amount < 0, 0.0), else_=column - amount)


class ArbiterStore:
    """Async store for decisions, budgets, curriculum and learning artifacts.

    Usage:
        store = ArbiterStore("sqlite+aiosqlite:///arbiter.db")
        await store.initialize()
        await store.save_decision(decision)
        await store.close()
    """

    def __init__(self, database_url: str | None = None) -> None:
        """Initialize with a SQLAlchemy database URL.

        Args:
            database_url: e.g. "sqlite+aiosqlite:///path/to/arbiter.db".
                If not provided, defaults to ~/.arbiter/data/arbiter.db
        """
        if database_url is None:
            db_path = Path.home() / ".arbiter" / "data" / "arbiter.db"
            db_path.parent.mkdir(parents=True, exist_ok=True)
            database_url = f"sqlite+aiosqlite:///{db_path}"
        self._database_url = database_url
        self._engine: AsyncEngine | None = None

    async def initialize(self) -> None:
        """Connect and create tables if needed. Idempotent."""
        if self._engine is None:
            self._engine = create_async_engine(
                self._database_url,
                echo=False,
                connect_args={"timeout": 30},
            )
        async with self._engine.begin() as conn:
            await conn.run_sync(metadata.create_all)

    async def close(self) -> None:
        if self._engine is not None:
            await self._engine.dispose()
            self._engine = None

    @asynccontextmanager
    async def _transaction(
        self, operation: str, table: str, details: dict[str, Any] | None = None
    ) -> AsyncIterator[AsyncConnection]:
        if self._engine is None:
            raise PersistenceError(
                "ArbiterStore not initialized. Call initialize() first.",
                operation=operation,
                table=table,
            )
        try:
            async with self._engine.begin() as conn:
                yield conn
        except PersistenceError:
            raise
        except Exception as e:
            raise PersistenceError(
                f"Failed to {operation} {table}: {e}",
                operation=operation,
                table=table,
                details=details,
            ) from e

    # ------------------------------------------------------------------
    # Routing decisions
    # ------------------------------------------------------------------

    async def save_decision(self, decision: RoutingDecision) -> None:
        async with self._transaction("insert", "routing_decisions", {"decision_id": decision.id}) as conn:
            await conn.execute(routing_decisions_table.insert().values(**decision.to_row()))

    async def get_decision(self, decision_id: str) -> RoutingDecision | None:
        async with self._transaction("select", "routing_decisions") as conn:
            result = await conn.execute(
                select(routing_decisions_table).where(routing_decisions_table.c.id == decision_id)
            )
            row = result.mappings().first()
        return RoutingDecision.from_row(dict(row)) if row else None

    async def attach_feedback(
        self, decision_id: str, feedback: UserFeedback
    ) -> tuple[RoutingDecision | None, bool]:
        """Write feedback onto a decision.

        Returns the updated decision (None if unknown) and whether this was
        the first feedback for it. Later feedback replaces the stored value.
        """
        table = routing_decisions_table
        async with self._transaction("update", "routing_decisions", {"decision_id": decision_id}) as conn:
            first = await conn.execute(
                update(table)
                .where(table.c.id == decision_id)
                .where(table.c.has_feedback.is_(False))
                .values(feedback=feedback.to_dict(), has_feedback=True)
            )
            if first.rowcount == 0:
                await conn.execute(
                    update(table)
                    .where(table.c.id == decision_id)
                    .values(feedback=feedback.to_dict())
                )
            row = (
                await conn.execute(select(table).where(table.c.id == decision_id))
            ).mappings().first()
        if row is None:
            return None, False
        return RoutingDecision.from_row(dict(row)), first.rowcount > 0

    async def list_decisions(
        self,
        *,
        since: datetime | None = None,
        user_id: str | None = None,
        domain: Domain | None = None,
        experiment_id: str | None = None,
        control_only: bool = False,
        with_feedback: bool | None = None,
        limit: int | None = None,
    ) -> list[RoutingDecision]:
        """Decisions in timestamp order, optionally filtered."""
        table = routing_decisions_table
        query = select(table).order_by(table.c.timestamp, table.c.id)
        if since is not None:
            query = query.where(table.c.timestamp >= since)
        if user_id is not None:
            query = query.where(table.c.user_id == user_id)
        if domain is not None:
            query = query.where(table.c.domain == domain.value)
        if experiment_id is not None:
            query = query.where(table.c.experiment_id == experiment_id)
        if control_only:
            query = query.where(table.c.experiment_id.is_(None))
        if with_feedback is not None:
            query = query.where(table.c.has_feedback == with_feedback)
        if limit is not None:
            query = query.limit(limit)

        async with self._transaction("select", "routing_decisions") as conn:
            rows = (await conn.execute(query)).mappings().all()
        return [RoutingDecision.from_row(dict(row)) for row in rows]

    async def count_decisions(self, *, with_feedback: bool | None = None) -> int:
        table = routing_decisions_table
        query = select(func.count()).select_from(table)
        if with_feedback is not None:
            query = query.where(table.c.has_feedback == with_feedback)
        async with self._transaction("select", "routing_decisions") as conn:
            return int((await conn.execute(query)).scalar_one())

    # ------------------------------------------------------------------
    # Budgets
    # ------------------------------------------------------------------

    async def get_budget(self, user_id: str) -> Budget | None:
        async with self._transaction("select", "budgets") as conn:
            return await self._select_budget(conn, user_id)

    async def _select_budget(self, conn: AsyncConnection, user_id: str) -> Budget | None:
        row = (
            await conn.execute(select(budgets_table).where(budgets_table.c.user_id == user_id))
        ).mappings().first()
        if row is None:
            return None
        return Budget(
            user_id=row["user_id"],
            tier=row["tier"],
            monthly_limit=row["monthly_limit"],
            spent_this_period=row["spent_this_period"],
            reserved=row["reserved"],
            period_key=row["period_key"],
        )

    async def create_budget(self, budget: Budget) -> Budget:
        """Insert ``budget`` unless the user already has one; return the stored row."""
        async with self._transaction("insert", "budgets", {"user_id": budget.user_id}) as conn:
            await conn.execute(
                sqlite_insert(budgets_table)
                .values(
                    user_id=budget.user_id,
                    tier=budget.tier,
                    monthly_limit=budget.monthly_limit,
                    spent_this_period=budget.spent_this_period,
                    reserved=budget.reserved,
                    period_key=budget.period_key,
                )
                .on_conflict_do_nothing(index_elements=["user_id"])
            )
            stored = await self._select_budget(conn, budget.user_id)
        if stored is None:
            raise PersistenceError(
                f"Budget for user {budget.user_id} was not stored",
                operation="insert",
                table="budgets",
            )
        return stored

    async def rollover_budget(self, user_id: str, period_key: str) -> bool:
        """Reset spend for a new period. Returns True if a reset happened."""
        async with self._transaction("update", "budgets", {"user_id": user_id}) as conn:
            result = await conn.execute(
                update(budgets_table)
                .where(budgets_table.c.user_id == user_id)
                .where(budgets_table.c.period_key != period_key)
                .values(
                    spent_this_period=0.0,
                    reserved=0.0,
                    period_key=period_key,
                    updated_at=datetime.now(UTC),
                )
            )
            return result.rowcount > 0

    async def set_budget_limit(self, user_id: str, tier: str, monthly_limit: float) -> Budget | None:
        async with self._transaction("update", "budgets", {"user_id": user_id}) as conn:
            await conn.execute(
                update(budgets_table)
                .where(budgets_table.c.user_id == user_id)
                .values(tier=tier, monthly_limit=monthly_limit, updated_at=datetime.now(UTC))
            )
            return await self._select_budget(conn, user_id)

    async def reserve(self, user_id: str, amount: float) -> tuple[bool, Budget | None]:
        """Atomically hold ``amount`` if spent + reserved + amount fits the limit."""
        table = budgets_table
        async with self._transaction("update", "budgets", {"user_id": user_id}) as conn:
            result = await conn.execute(
                update(table)
                .where(table.c.user_id == user_id)
                .where(table.c.spent_this_period < table.c.monthly_limit)
                .where(
                    table.c.spent_this_period + table.c.reserved + amount
                    <= table.c.monthly_limit
                )
                .values(reserved=table.c.reserved + amount, updated_at=datetime.now(UTC))
            )
            budget = await self._select_budget(conn, user_id)
            return result.rowcount > 0, budget

    async def release(self, user_id: str, amount: float) -> None:
        table = budgets_table
        async with self._transaction("update", "budgets", {"user_id": user_id}) as conn:
            await conn.execute(
                update(table)
                .where(table.c.user_id == user_id)
                .values(reserved=_non_negative(table.c.reserved, amount))
            )

    async def record_spend(
        self, entry: LedgerEntry, *, reserved: float = 0.0
    ) -> tuple[Budget, float]:
        """Drop the matching reservation, add spend and append to the ledger atomically.

        The charge is capped at the room left under the monthly limit after
        other in-flight reservations, so ``spent_this_period`` never passes
        the limit. Returns the budget and the amount actually charged.
        """
        table = budgets_table
        async with self._transaction("update", "budgets", {"user_id": entry.user_id}) as conn:
            # Writing first takes the SQLite write lock for the read below.
            await conn.execute(
                update(table)
                .where(table.c.user_id == entry.user_id)
                .values(
                    reserved=_non_negative(table.c.reserved, reserved),
                    updated_at=datetime.now(UTC),
                )
            )
            current = await self._select_budget(conn, entry.user_id)
            if current is None:
                raise PersistenceError(
                    f"No budget for user {entry.user_id}",
                    operation="update",
                    table="budgets",
                )
            room = current.monthly_limit - current.spent_this_period - current.reserved
            charged = min(entry.amount, max(room, 0.0))
            await conn.execute(
                update(table)
                .where(table.c.user_id == entry.user_id)
                .values(spent_this_period=current.spent_this_period + charged)
            )
            await conn.execute(
                spend_ledger_table.insert().values(
                    id=entry.id,
                    user_id=entry.user_id,
                    amount=charged,
                    period_key=entry.period_key,
                    provider_id=entry.provider_id,
                    tier=entry.tier,
                    tokens_used=entry.tokens_used,
                    decision_id=entry.decision_id,
                    over_request_budget=entry.over_request_budget,
                    created_at=entry.created_at,
                )
            )
            budget = await self._select_budget(conn, entry.user_id)
        if budget is None:
            raise PersistenceError(
                f"No budget for user {entry.user_id}",
                operation="update",
                table="budgets",
            )
        return budget, charged

    async def insert_alert(self, alert: BudgetAlert) -> bool:
        """Insert unless already fired this period. True when newly inserted."""
        async with self._transaction("insert", "budget_alerts", {"user_id": alert.user_id}) as conn:
            result = await conn.execute(
                sqlite_insert(budget_alerts_table)
                .values(
                    id=alert.id,
                    user_id=alert.user_id,
                    threshold=alert.threshold,
                    period_key=alert.period_key,
                    spent=alert.spent,
                    limit=alert.limit,
                    created_at=alert.created_at,
                )
                .on_conflict_do_nothing(index_elements=["user_id", "threshold", "period_key"])
            )
            return result.rowcount > 0

    async def list_alerts(self, user_id: str, period_key: str | None = None) -> list[BudgetAlert]:
        table = budget_alerts_table
        query = select(table).where(table.c.user_id == user_id).order_by(table.c.threshold)
        if period_key is not None:
            query = query.where(table.c.period_key == period_key)
        async with self._transaction("select", "budget_alerts") as conn:
            rows = (await conn.execute(query)).mappings().all()
        return [
            BudgetAlert(
                id=row["id"],
                user_id=row["user_id"],
                threshold=row["threshold"],
                period_key=row["period_key"],
                spent=row["spent"],
                limit=row["limit"],
                created_at=_aware(row["created_at"]),
            )
            for row in rows
        ]

    async def spend_breakdown(self, user_id: str, period_key: str) -> list[SpendBreakdown]:
        table = spend_ledger_table
        query = (
            select(
                table.c.provider_id,
                table.c.tier,
                func.sum(table.c.amount).label("amount"),
                func.count().label("requests"),
                func.sum(table.c.tokens_used).label("tokens"),
            )
            .where(table.c.user_id == user_id)
            .where(table.c.period_key == period_key)
            .group_by(table.c.provider_id, table.c.tier)
            .order_by(table.c.tier, table.c.provider_id)
        )
        async with self._transaction("select", "spend_ledger") as conn:
            rows = (await conn.execute(query)).mappings().all()
        return [
            SpendBreakdown(
                provider_id=row["provider_id"] or "unknown",
                tier=row["tier"] or 0,
                amount=float(row["amount"] or 0.0),
                requests=int(row["requests"]),
                tokens=int(row["tokens"] or 0),
            )
            for row in rows
        ]

    async def sum_spend(self, user_id: str, *, since: datetime, period_key: str) -> float:
        table = spend_ledger_table
        query = (
            select(func.coalesce(func.sum(table.c.amount), 0.0))
            .where(table.c.user_id == user_id)
            .where(table.c.period_key == period_key)
            .where(table.c.created_at >= since)
        )
        async with self._transaction("select", "spend_ledger") as conn:
            return float((await conn.execute(query)).scalar_one())

    async def platform_totals(self, period_key: str) -> dict[str, Any]:
        """Platform-wide spend for one period."""
        table = spend_ledger_table
        query = select(
            func.coalesce(func.sum(table.c.amount), 0.0),
            func.count(),
            func.count(func.distinct(table.c.user_id)),
            func.coalesce(func.sum(case((table.c.over_request_budget, 1), else_=0)), 0),
        ).where(table.c.period_key == period_key)
        async with self._transaction("select", "spend_ledger") as conn:
            total, requests, users, over_budget = (await conn.execute(query)).one()
        return {
            "period_key": period_key,
            "total_spend": float(total),
            "requests": int(requests),
            "users": int(users),
            "over_request_budget": int(over_budget),
        }

    # ------------------------------------------------------------------
    # Curriculum
    # ------------------------------------------------------------------

    async def get_curriculum(self, user_id: str) -> CurriculumLevel | None:
        table = curriculum_levels_table
        async with self._transaction("select", "curriculum_levels") as conn:
            row = (
                await conn.execute(select(table).where(table.c.user_id == user_id))
            ).mappings().first()
        if row is None:
            return None
        return CurriculumLevel(
            user_id=row["user_id"],
            level=Level(row["level"]),
            consecutive_successes=row["consecutive_successes"],
            consecutive_failures=row["consecutive_failures"],
            window=tuple(bool(v) for v in row["window"]),
            updated_at=_aware(row["updated_at"]),
        )

    async def save_curriculum(self, state: CurriculumLevel) -> None:
        values = {
            "user_id": state.user_id,
            "level": state.level.value,
            "consecutive_successes": state.consecutive_successes,
            "consecutive_failures": state.consecutive_failures,
            "window": list(state.window),
            "updated_at": state.updated_at,
        }
        statement = sqlite_insert(curriculum_levels_table).values(**values)
        statement = statement.on_conflict_do_update(
            index_elements=["user_id"],
            set_={k: statement.excluded[k] for k in values if k != "user_id"},
        )
        async with self._transaction("upsert", "curriculum_levels", {"user_id": state.user_id}) as conn:
            await conn.execute(statement)

    # ------------------------------------------------------------------
    # Preference pairs
    # ------------------------------------------------------------------

    async def insert_pairs(self, pairs: Iterable[PreferencePair]) -> int:
        """Insert pairs, skipping (chosen, rejected) duplicates. Returns inserted count."""
        inserted = 0
        async with self._transaction("insert", "preference_pairs") as conn:
            for pair in pairs:
                result = await conn.execute(
                    sqlite_insert(preference_pairs_table)
                    .values(
                        id=pair.id,
                        chosen_decision_id=pair.chosen_decision_id,
                        rejected_decision_id=pair.rejected_decision_id,
                        domain=pair.domain.value,
                        cost_saving=pair.cost_saving,
                        quality_delta=pair.quality_delta,
                        created_at=pair.created_at,
                    )
                    .on_conflict_do_nothing(
                        index_elements=["chosen_decision_id", "rejected_decision_id"]
                    )
                )
                inserted += result.rowcount
        return inserted

    async def list_pairs(self, *, limit: int | None = None) -> list[PreferencePair]:
        table = preference_pairs_table
        query = select(table).order_by(table.c.created_at, table.c.id)
        if limit is not None:
            query = query.limit(limit)
        async with self._transaction("select", "preference_pairs") as conn:
            rows = (await conn.execute(query)).mappings().all()
        return [
            PreferencePair(
                id=row["id"],
                chosen_decision_id=row["chosen_decision_id"],
                rejected_decision_id=row["rejected_decision_id"],
                domain=Domain(row["domain"]),
                cost_saving=row["cost_saving"],
                quality_delta=row["quality_delta"],
                created_at=_aware(row["created_at"]),
            )
            for row in rows
        ]

    # ------------------------------------------------------------------
    # Golden examples
    # ------------------------------------------------------------------

    async def list_golden(self, *, domain: Domain | None = None) -> list[GoldenExample]:
        table = golden_examples_table
        query = select(table).order_by(table.c.created_at, table.c.id)
        if domain is not None:
            query = query.where(table.c.domain == domain.value)
        async with self._transaction("select", "golden_examples") as conn:
            rows = (await conn.execute(query)).mappings().all()
        return [_golden_from_row(dict(row)) for row in rows]

    async def replace_golden(self, new: GoldenExample, *, evict_id: str | None = None) -> None:
        """Insert ``new``, deleting ``evict_id`` in the same transaction."""
        async with self._transaction("insert", "golden_examples", {"example_id": new.id}) as conn:
            if evict_id is not None:
                await conn.execute(
                    golden_examples_table.delete().where(golden_examples_table.c.id == evict_id)
                )
            await conn.execute(
                golden_examples_table.insert().values(
                    id=new.id,
                    query=new.query,
                    response=new.response,
                    domain=new.domain.value,
                    quality_score=new.quality_score,
                    savings_ratio=new.savings_ratio,
                    edge_case=new.edge_case,
                    complexity=new.complexity,
                    required_quality=new.required_quality,
                    tags=list(new.tags),
                    decision_id=new.decision_id,
                    created_at=new.created_at,
                )
            )

    # ------------------------------------------------------------------
    # Experiments and GEPA cycles
    # ------------------------------------------------------------------

    async def save_experiment(self, experiment: Experiment) -> None:
        values = {
            "id": experiment.id,
            "cycle_id": experiment.cycle_id,
            "name": experiment.name,
            "hypothesis": experiment.hypothesis,
            "parameters": experiment.parameters,
            "traffic_fraction": experiment.traffic_fraction,
            "bucket_start": experiment.bucket_start,
            "bucket_end": experiment.bucket_end,
            "status": experiment.status.value,
            "expected_impact": experiment.expected_impact,
            "metrics": experiment.metrics.to_dict() if experiment.metrics else None,
            "created_at": experiment.created_at,
            "concluded_at": experiment.concluded_at,
        }
        statement = sqlite_insert(experiments_table).values(**values)
        statement = statement.on_conflict_do_update(
            index_elements=["id"],
            set_={k: statement.excluded[k] for k in values if k != "id"},
        )
        async with self._transaction("upsert", "experiments", {"experiment_id": experiment.id}) as conn:
            await conn.execute(statement)

    async def list_experiments(
        self,
        *,
        cycle_id: str | None = None,
        statuses: Iterable[ExperimentStatus] | None = None,
    ) -> list[Experiment]:
        table = experiments_table
        query = select(table).order_by(table.c.created_at, table.c.bucket_start)
        if cycle_id is not None:
            query = query.where(table.c.cycle_id == cycle_id)
        if statuses is not None:
            query = query.where(table.c.status.in_([s.value for s in statuses]))
        async with self._transaction("select", "experiments") as conn:
            rows = (await conn.execute(query)).mappings().all()
        return [_experiment_from_row(dict(row)) for row in rows]

    async def save_cycle(self, cycle: GepaCycle) -> None:
        values = {
            "id": cycle.id,
            "phase": cycle.phase.value,
            "reflection": cycle.reflection,
            "adopted_experiment_id": cycle.adopted_experiment_id,
            "error": cycle.error,
            "started_at": cycle.started_at,
            "updated_at": cycle.updated_at,
            "completed_at": cycle.completed_at,
        }
        statement = sqlite_insert(gepa_cycles_table).values(**values)
        statement = statement.on_conflict_do_update(
            index_elements=["id"],
            set_={k: statement.excluded[k] for k in values if k != "id"},
        )
        async with self._transaction("upsert", "gepa_cycles", {"cycle_id": cycle.id}) as conn:
            await conn.execute(statement)

    async def latest_cycle(self) -> GepaCycle | None:
        table = gepa_cycles_table
        async with self._transaction("select", "gepa_cycles") as conn:
            row = (
                await conn.execute(select(table).order_by(table.c.started_at.desc()).limit(1))
            ).mappings().first()
        if row is None:
            return None
        return GepaCycle(
            id=row["id"],
            phase=GepaPhase(row["phase"]),
            reflection=row["reflection"] or {},
            adopted_experiment_id=row["adopted_experiment_id"],
            error=row["error"],
            started_at=_aware(row["started_at"]),
            updated_at=_aware(row["updated_at"]),
            completed_at=_aware(row["completed_at"]),
        )

    # ------------------------------------------------------------------
    # Learning jobs and state
    # ------------------------------------------------------------------

    async def enqueue_job(self, job: LearningJob, *, dedupe_key: str | None = None) -> bool:
        """Insert ``job`` unless an unfinished job with ``dedupe_key`` exists."""
        table = learning_jobs_table
        async with self._transaction("insert", "learning_jobs", {"kind": job.kind.value}) as conn:
            if dedupe_key is not None:
                existing = (
                    await conn.execute(
                        select(table.c.id)
                        .where(table.c.dedupe_key == dedupe_key)
                        .where(table.c.status.in_([JobStatus.PENDING.value, JobStatus.RUNNING.value]))
                        .limit(1)
                    )
                ).first()
                if existing is not None:
                    return False
            await conn.execute(
                table.insert().values(
                    id=job.id,
                    kind=job.kind.value,
                    payload=job.payload,
                    status=job.status.value,
                    attempts=job.attempts,
                    last_error=job.last_error,
                    dedupe_key=dedupe_key,
                    created_at=job.created_at,
                    updated_at=job.updated_at,
                )
            )
            return True

    async def list_jobs(self, *, statuses: Iterable[JobStatus] | None = None) -> list[LearningJob]:
        table = learning_jobs_table
        query = select(table).order_by(table.c.created_at, table.c.id)
        if statuses is not None:
            query = query.where(table.c.status.in_([s.value for s in statuses]))
        async with self._transaction("select", "learning_jobs") as conn:
            rows = (await conn.execute(query)).mappings().all()
        return [
            LearningJob(
                id=row["id"],
                kind=JobKind(row["kind"]),
                payload=row["payload"] or {},
                status=JobStatus(row["status"]),
                attempts=row["attempts"],
                last_error=row["last_error"],
                created_at=_aware(row["created_at"]),
                updated_at=_aware(row["updated_at"]),
            )
            for row in rows
        ]

    async def update_job(self, job: LearningJob) -> None:
        table = learning_jobs_table
        async with self._transaction("update", "learning_jobs", {"job_id": job.id}) as conn:
            await conn.execute(
                update(table)
                .where(table.c.id == job.id)
                .values(
                    status=job.status.value,
                    attempts=job.attempts,
                    last_error=job.last_error,
                    updated_at=datetime.now(UTC),
                )
            )

    async def reset_running_jobs(self) -> int:
        """Return interrupted RUNNING jobs to PENDING. Returns how many were reset."""
        table = learning_jobs_table
        async with self._transaction("update", "learning_jobs") as conn:
            result = await conn.execute(
                update(table)
                .where(table.c.status == JobStatus.RUNNING.value)
                .values(status=JobStatus.PENDING.value, updated_at=datetime.now(UTC))
            )
            return result.rowcount

    async def get_state(self, key: str) -> dict[str, Any] | None:
        table = learning_state_table
        async with self._transaction("select", "learning_state") as conn:
            row = (await conn.execute(select(table.c.value).where(table.c.key == key))).first()
        return row[0] if row else None

    async def set_state(self, key: str, value: dict[str, Any]) -> None:
        statement = sqlite_insert(learning_state_table).values(
            key=key, value=value, updated_at=datetime.now(UTC)
        )
        statement = statement.on_conflict_do_update(
            index_elements=["key"],
            set_={"value": statement.excluded.value, "updated_at": statement.excluded.updated_at},
        )
        async with self._transaction("upsert", "learning_state", {"key": key}) as conn:
            await conn.execute(statement)


def _golden_from_row(row: dict[str, Any]) -> GoldenExample:
    return GoldenExample(
        id=row["id"],
        query=row["query"],
        response=row["response"],
        domain=Domain(row["domain"]),
        quality_score=row["quality_score"],
        savings_ratio=row["savings_ratio"],
        edge_case=bool(row["edge_case"]),
        complexity=row["complexity"],
        required_quality=row["required_quality"],
        tags=tuple(row["tags"] or ()),
        decision_id=row["decision_id"],
        created_at=_aware(row["created_at"]),
    )


def _experiment_from_row(row: dict[str, Any]) -> Experiment:
    return Experiment(
        id=row["id"],
        cycle_id=row["cycle_id"],
        name=row["name"],
        hypothesis=row["hypothesis"],
        parameters=row["parameters"] or {},
        traffic_fraction=row["traffic_fraction"],
        bucket_start=row["bucket_start"],
        bucket_end=row["bucket_end"],
        status=ExperimentStatus(row["status"]),
        expected_impact=row["expected_impact"] or "",
        metrics=ExperimentMetrics.from_dict(row["metrics"]) if row["metrics"] else None,
        created_at=_aware(row["created_at"]),
        concluded_at=_aware(row["concluded_at"]),
    )
