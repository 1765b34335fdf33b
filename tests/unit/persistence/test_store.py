"""Unit tests for arbiter.persistence.store module."""

from datetime import UTC, datetime, timedelta

import pytest

from arbiter.budget.models import Budget, BudgetAlert, LedgerEntry
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
from arbiter.persistence.store import ArbiterStore
from arbiter.routing.models import Domain, Level, Thumb, UserFeedback


def make_budget(user_id: str = "u1", **overrides) -> Budget:
    values = {
        "user_id": user_id,
        "tier": "free",
        "monthly_limit": 10.0,
        "spent_this_period": 0.0,
        "reserved": 0.0,
        "period_key": "2026-03",
    }
    values.update(overrides)
    return Budget(**values)


class TestStoreLifecycle:
    """Test initialization requirements."""

    async def test_requires_initialize(self, tmp_path) -> None:
        store = ArbiterStore(f"sqlite+aiosqlite:///{tmp_path / 'x.db'}")

        with pytest.raises(PersistenceError, match="not initialized"):
            await store.get_budget("u1")

    async def test_initialize_is_idempotent(self, store: ArbiterStore) -> None:
        await store.initialize()

        assert await store.count_decisions() == 0


class TestDecisions:
    """Test routing decision storage."""

    async def test_save_and_get(self, store: ArbiterStore, make_decision) -> None:
        decision = make_decision()

        await store.save_decision(decision)

        assert await store.get_decision(decision.id) == decision
        assert await store.get_decision("missing") is None

    async def test_duplicate_id_raises(self, store: ArbiterStore, make_decision) -> None:
        decision = make_decision()
        await store.save_decision(decision)

        with pytest.raises(PersistenceError):
            await store.save_decision(decision)

    async def test_attach_feedback(self, store: ArbiterStore, make_decision) -> None:
        decision = make_decision()
        await store.save_decision(decision)

        updated, first = await store.attach_feedback(decision.id, UserFeedback(thumb=Thumb.UP))

        assert first is True
        assert updated is not None
        assert updated.feedback == UserFeedback(thumb=Thumb.UP)
        assert await store.attach_feedback("missing", UserFeedback(rating=3)) == (None, False)
        assert await store.count_decisions(with_feedback=True) == 1

    async def test_repeated_feedback_replaces_but_is_not_first(
        self, store: ArbiterStore, make_decision
    ) -> None:
        decision = make_decision()
        await store.save_decision(decision)
        await store.attach_feedback(decision.id, UserFeedback(thumb=Thumb.UP))

        updated, first = await store.attach_feedback(decision.id, UserFeedback(rating=2))

        assert first is False
        assert updated is not None
        assert updated.feedback == UserFeedback(rating=2)
        assert await store.count_decisions(with_feedback=True) == 1

    async def test_list_filters(self, store: ArbiterStore, make_decision) -> None:
        now = datetime.now(UTC)
        old = make_decision(timestamp=now - timedelta(days=10))
        code = make_decision(domain=Domain.CODE, user_id="u2", timestamp=now - timedelta(minutes=5))
        experiment = make_decision(experiment_id="exp-1", timestamp=now)
        for decision in (old, code, experiment):
            await store.save_decision(decision)

        recent = await store.list_decisions(since=now - timedelta(days=1))
        assert [d.id for d in recent] == [code.id, experiment.id]
        assert [d.id for d in await store.list_decisions(domain=Domain.CODE)] == [code.id]
        assert [d.id for d in await store.list_decisions(user_id="u2")] == [code.id]
        assert [d.id for d in await store.list_decisions(experiment_id="exp-1")] == [experiment.id]
        assert len(await store.list_decisions(control_only=True)) == 2
        assert len(await store.list_decisions(limit=1)) == 1


class TestBudgets:
    """Test budget rows and the conditional updates."""

    async def test_create_keeps_existing(self, store: ArbiterStore) -> None:
        await store.create_budget(make_budget(spent_this_period=3.0))

        stored = await store.create_budget(make_budget())

        assert stored.spent_this_period == 3.0

    async def test_reserve_respects_limit(self, store: ArbiterStore) -> None:
        await store.create_budget(make_budget(monthly_limit=1.0))

        allowed, after = await store.reserve("u1", 0.6)
        denied, _ = await store.reserve("u1", 0.6)

        assert allowed is True
        assert denied is False
        assert after is not None and after.reserved == pytest.approx(0.6)

    async def test_release_never_goes_negative(self, store: ArbiterStore) -> None:
        await store.create_budget(make_budget(reserved=0.2))

        await store.release("u1", 0.5)

        budget = await store.get_budget("u1")
        assert budget is not None and budget.reserved == 0.0

    async def test_record_spend_and_breakdown(self, store: ArbiterStore) -> None:
        await store.create_budget(make_budget(reserved=0.5))

        budget, charged = await store.record_spend(
            LedgerEntry(user_id="u1", amount=0.3, period_key="2026-03", provider_id="cheap", tier=1, tokens_used=50),
            reserved=0.5,
        )
        breakdown = await store.spend_breakdown("u1", "2026-03")

        assert charged == pytest.approx(0.3)
        assert budget.spent_this_period == pytest.approx(0.3)
        assert budget.reserved == pytest.approx(0.0)
        assert [(b.provider_id, b.tier, b.requests, b.tokens) for b in breakdown] == [("cheap", 1, 1, 50)]

    async def test_record_spend_capped_at_limit(self, store: ArbiterStore) -> None:
        """Actual cost above the reservation cannot push spend past the limit."""
        await store.create_budget(make_budget(monthly_limit=1.0, spent_this_period=0.9, reserved=0.15))

        budget, charged = await store.record_spend(
            LedgerEntry(user_id="u1", amount=0.4, period_key="2026-03"),
            reserved=0.05,
        )

        # 0.1 of the 0.15 reservation belongs to another in-flight request.
        assert charged == pytest.approx(0.0)
        assert budget.spent_this_period == pytest.approx(0.9)
        assert budget.reserved == pytest.approx(0.1)

    async def test_record_spend_charges_up_to_remaining_room(self, store: ArbiterStore) -> None:
        await store.create_budget(make_budget(monthly_limit=1.0, spent_this_period=0.7, reserved=0.1))

        budget, charged = await store.record_spend(
            LedgerEntry(user_id="u1", amount=0.5, period_key="2026-03", provider_id="cheap", tier=1),
            reserved=0.1,
        )
        breakdown = await store.spend_breakdown("u1", "2026-03")

        assert charged == pytest.approx(0.3)
        assert budget.spent_this_period == pytest.approx(1.0)
        assert breakdown[0].amount == pytest.approx(0.3)

    async def test_rollover_only_once(self, store: ArbiterStore) -> None:
        await store.create_budget(make_budget(spent_this_period=4.0))

        assert await store.rollover_budget("u1", "2026-04") is True
        assert await store.rollover_budget("u1", "2026-04") is False
        budget = await store.get_budget("u1")
        assert budget is not None and budget.spent_this_period == 0.0

    async def test_alert_deduplication(self, store: ArbiterStore) -> None:
        alert = BudgetAlert(user_id="u1", threshold=0.8, period_key="2026-03", spent=8.0, limit=10.0)

        assert await store.insert_alert(alert) is True
        assert await store.insert_alert(
            BudgetAlert(user_id="u1", threshold=0.8, period_key="2026-03", spent=8.5, limit=10.0)
        ) is False
        assert [a.threshold for a in await store.list_alerts("u1")] == [0.8]


class TestCurriculum:
    """Test curriculum level upserts."""

    async def test_save_and_update(self, store: ArbiterStore) -> None:
        assert await store.get_curriculum("u1") is None

        await store.save_curriculum(CurriculumLevel(user_id="u1", consecutive_successes=2, window=(True, True)))
        await store.save_curriculum(CurriculumLevel(user_id="u1", level=Level.INTERMEDIATE))

        state = await store.get_curriculum("u1")
        assert state is not None
        assert state.level == Level.INTERMEDIATE
        assert state.window == ()


class TestLearningArtifacts:
    """Test pairs, golden examples, experiments, cycles, jobs and state."""

    async def test_pairs_deduplicate(self, store: ArbiterStore) -> None:
        pair = PreferencePair("a", "b", Domain.CHAT, cost_saving=0.01, quality_delta=0.05)

        assert await store.insert_pairs([pair]) == 1
        assert await store.insert_pairs([PreferencePair("a", "b", Domain.CHAT, 0.01, 0.05)]) == 0
        assert [p.id for p in await store.list_pairs()] == [pair.id]

    async def test_replace_golden_evicts_atomically(self, store: ArbiterStore) -> None:
        first = GoldenExample("q1", "r1", Domain.CODE, quality_score=0.9, savings_ratio=0.5, tags=("python",))
        second = GoldenExample("q2", "r2", Domain.CODE, quality_score=0.95, savings_ratio=0.6)
        await store.replace_golden(first)

        await store.replace_golden(second, evict_id=first.id)

        stored = await store.list_golden(domain=Domain.CODE)
        assert [g.id for g in stored] == [second.id]
        assert await store.list_golden(domain=Domain.CHAT) == []

    async def test_golden_round_trip(self, store: ArbiterStore) -> None:
        example = GoldenExample(
            "q1", "r1", Domain.CODE, quality_score=0.9, savings_ratio=0.5, edge_case=True, tags=("python",)
        )
        await store.replace_golden(example)

        [stored] = await store.list_golden()

        assert stored == example

    async def test_experiment_upsert(self, store: ArbiterStore) -> None:
        experiment = Experiment("c1", "Domain-Specific Routing", "h", {"x": 1}, 0.1, 0, 10)
        await store.save_experiment(experiment)
        metrics = ExperimentMetrics(samples=5, avg_cost=0.01, avg_quality=0.8, cost_delta=-0.002, quality_delta=0.01)
        await store.save_experiment(
            Experiment(
                "c1", experiment.name, "h", {"x": 1}, 0.1, 0, 10,
                status=ExperimentStatus.ADOPTED, metrics=metrics, id=experiment.id,
                created_at=experiment.created_at,
            )
        )

        [stored] = await store.list_experiments(cycle_id="c1")
        assert stored.status == ExperimentStatus.ADOPTED
        assert stored.metrics == metrics
        assert await store.list_experiments(statuses=[ExperimentStatus.RUNNING]) == []

    async def test_latest_cycle(self, store: ArbiterStore) -> None:
        now = datetime.now(UTC)
        await store.save_cycle(GepaCycle(started_at=now - timedelta(days=40), phase=GepaPhase.COMPLETED))
        latest = GepaCycle(started_at=now, reflection={"failures": 3})
        await store.save_cycle(latest)

        stored = await store.latest_cycle()

        assert stored is not None
        assert stored.id == latest.id
        assert stored.reflection == {"failures": 3}

    async def test_job_dedupe_and_updates(self, store: ArbiterStore) -> None:
        job = LearningJob(JobKind.DPO_RETRAIN)

        assert await store.enqueue_job(job, dedupe_key="dpo") is True
        assert await store.enqueue_job(LearningJob(JobKind.DPO_RETRAIN), dedupe_key="dpo") is False

        await store.update_job(LearningJob(JobKind.DPO_RETRAIN, status=JobStatus.RUNNING, id=job.id))
        assert await store.reset_running_jobs() == 1

        await store.update_job(LearningJob(JobKind.DPO_RETRAIN, status=JobStatus.DONE, id=job.id))
        assert await store.enqueue_job(LearningJob(JobKind.DPO_RETRAIN), dedupe_key="dpo") is True
        pending = await store.list_jobs(statuses=[JobStatus.PENDING])
        assert len(pending) == 1

    async def test_state_upsert(self, store: ArbiterStore) -> None:
        assert await store.get_state("k") is None

        await store.set_state("k", {"v": 1})
        await store.set_state("k", {"v": 2})

        assert await store.get_state("k") == {"v": 2}
