"""Unit tests for arbiter.engine module.

Covers the operations exposed by ArbitrageEngine end to end against a
temporary store, scripted providers and a table-driven judge.
"""

import asyncio
from pathlib import Path
from unittest.mock import AsyncMock

import pytest

from arbiter.config.models import ArbiterConfig, LearningConfig
from arbiter.core.errors import BudgetExceededError, ChainExhaustedError, ProviderError, ValidationError
from arbiter.core.types import Result
from arbiter.engine import ArbitrageEngine
from arbiter.learning.models import JobKind, JobStatus
from arbiter.persistence.store import ArbiterStore
from arbiter.routing.cascade import CancellationToken
from arbiter.routing.classifier import QueryContext
from arbiter.routing.models import ClassificationSource, DecisionStatus, Domain, Level, UserFeedback

QUERY = "What is the capital of France?"


@pytest.fixture
def build_engine(config: ArbiterConfig, store: ArbiterStore, make_judge):
    """Factory for a started engine over scripted providers."""

    async def build(providers, scores=None, *, engine_config: ArbiterConfig | None = None) -> ArbitrageEngine:
        engine = ArbitrageEngine(
            engine_config or config,
            store,
            providers=providers,
            judge=make_judge(scores or {}),
        )
        await engine.start()
        return engine

    return build


@pytest.fixture
async def engine(build_engine, make_provider, ok_result) -> ArbitrageEngine:
    providers = {
        "cheap": make_provider(ok_result("Paris.")),
        "mid": make_provider(ok_result("Paris is the capital of France.")),
        "premium": make_provider(ok_result("unused")),
    }
    return await build_engine(providers, {"Paris.": 0.9})


class TestSubmitQuery:
    """Test the hot path."""

    async def test_cheap_tier_answers(self, engine: ArbitrageEngine) -> None:
        result = await engine.submit_query("u1", QUERY)

        assert result.is_ok
        response = result.value
        assert response.response == "Paris."
        assert response.status == DecisionStatus.ACCEPTED
        assert response.provider_id == "cheap"
        assert response.cost_incurred == pytest.approx(0.0001)
        assert response.classification.domain == Domain.CHAT
        assert response.classification.source == ClassificationSource.HEURISTIC
        assert await engine.store.get_decision(response.routing_decision_id) is not None

    async def test_escalates_when_cheap_output_is_weak(self, build_engine, make_provider, ok_result) -> None:
        providers = {
            "cheap": make_provider(ok_result("weak")),
            "mid": make_provider(ok_result("good")),
            "premium": make_provider(ok_result("unused")),
        }
        engine = await build_engine(providers, {"weak": 0.5, "good": 0.9})

        result = await engine.submit_query("u1", QUERY)

        assert result.value.provider_id == "mid"
        assert result.value.escalations == 1
        assert result.value.cost_incurred == pytest.approx(0.0011)

    @pytest.mark.parametrize("query", ["", "   "])
    async def test_empty_query_rejected(self, engine: ArbitrageEngine, query: str) -> None:
        result = await engine.submit_query("u1", query)

        assert result.is_err
        assert isinstance(result.error, ValidationError)
        assert await engine.store.count_decisions() == 0

    async def test_exhausted_budget(self, engine: ArbitrageEngine) -> None:
        await engine.tracker.set_limit("u1", monthly_limit=0.0)

        result = await engine.submit_query("u1", QUERY)

        assert result.is_err
        assert isinstance(result.error, BudgetExceededError)
        assert result.error.status_code == 402
        assert result.error.user_id == "u1"

    async def test_every_tier_failing(self, build_engine, make_provider, err_result) -> None:
        providers = {name: make_provider(err_result()) for name in ("cheap", "mid", "premium")}
        engine = await build_engine(providers)

        result = await engine.submit_query("u1", QUERY)

        assert isinstance(result.error, ChainExhaustedError)
        assert result.error.providers_tried == ("cheap", "mid", "premium")

    async def test_cancelled_request(self, engine: ArbitrageEngine) -> None:
        token = CancellationToken()
        token.cancel()

        result = await engine.submit_query("u1", QUERY, cancel_token=token)

        assert result.is_err
        assert result.error.message == "Request cancelled"

    async def test_subscription_context(self, engine: ArbitrageEngine) -> None:
        result = await engine.submit_query("u1", QUERY, QueryContext(user_id="u1", subscription_tier="pro"))

        assert result.value.classification.budget_constraint == pytest.approx(0.15)
        assert (await engine.tracker.ensure_budget("u1")).monthly_limit == 200.0

    async def test_retrain_queued_when_due(self, build_engine, config, make_provider, ok_result) -> None:
        engine_config = config.model_copy(update={"learning": LearningConfig(dpo_retrain_every=2)})
        engine = await build_engine(
            {"cheap": make_provider(ok_result("Paris."))}, {"Paris.": 0.9}, engine_config=engine_config
        )

        await engine.submit_query("u1", QUERY)
        assert await engine.scheduler.pending() == []

        await engine.submit_query("u1", QUERY)
        assert [j.kind for j in await engine.scheduler.pending()] == [JobKind.DPO_RETRAIN]


class TestSubmitFeedback:
    """Test feedback, curriculum updates and curation."""

    async def test_positive_feedback(self, engine: ArbitrageEngine) -> None:
        decision_id = (await engine.submit_query("u1", QUERY)).value.routing_decision_id

        result = await engine.submit_feedback(decision_id, thumb="up")

        assert result.is_ok
        assert result.value.feedback is not None
        status = await engine.get_curriculum_status("u1")
        assert status.consecutive_successes == 1
        assert [j.kind for j in await engine.scheduler.pending()] == [JobKind.LIMI_CURATE]

    async def test_curation_job_admits_golden_example(self, engine: ArbitrageEngine) -> None:
        decision_id = (await engine.submit_query("u1", QUERY)).value.routing_decision_id
        await engine.submit_feedback(decision_id, rating=5)

        await engine.run_pending_jobs()

        golden = await engine.get_golden_examples()
        assert [g.decision_id for g in golden] == [decision_id]
        assert len(engine.classifier.calibration.references) == 1

    async def test_negative_feedback_counts_as_failure(self, engine: ArbitrageEngine) -> None:
        decision_id = (await engine.submit_query("u1", QUERY)).value.routing_decision_id

        await engine.submit_feedback(decision_id, rating=2)

        status = await engine.get_curriculum_status("u1")
        assert status.consecutive_failures == 1
        assert await engine.scheduler.pending() == []

    async def test_repeated_feedback_counts_once(self, engine: ArbitrageEngine) -> None:
        decision_id = (await engine.submit_query("u1", QUERY)).value.routing_decision_id

        for _ in range(3):
            assert (await engine.submit_feedback(decision_id, thumb="up")).is_ok

        status = await engine.get_curriculum_status("u1")
        assert status.consecutive_successes == 1
        assert status.level == Level.BASIC
        assert len(await engine.scheduler.pending()) == 1

    async def test_changed_feedback_is_stored_without_relearning(self, engine: ArbitrageEngine) -> None:
        decision_id = (await engine.submit_query("u1", QUERY)).value.routing_decision_id
        await engine.submit_feedback(decision_id, thumb="up")

        result = await engine.submit_feedback(decision_id, rating=1)

        assert result.value.feedback == UserFeedback(rating=1)
        status = await engine.get_curriculum_status("u1")
        assert status.consecutive_successes == 1
        assert status.consecutive_failures == 0

    @pytest.mark.parametrize(
        ("decision_id", "kwargs"),
        [("missing", {"rating": 5}), ("missing", {}), ("missing", {"rating": 9}), ("missing", {"thumb": "sideways"})],
    )
    async def test_invalid_feedback(self, engine: ArbitrageEngine, decision_id: str, kwargs: dict) -> None:
        result = await engine.submit_feedback(decision_id, **kwargs)

        assert result.is_err
        assert isinstance(result.error, ValidationError)

    async def test_curriculum_promotion_caps_follow_level(self, engine: ArbitrageEngine) -> None:
        for _ in range(3):
            decision_id = (await engine.submit_query("u1", QUERY)).value.routing_decision_id
            await engine.submit_feedback(decision_id, thumb="up")

        status = await engine.get_curriculum_status("u1")

        assert status.level == Level.INTERMEDIATE
        assert status.ceiling is not None
        assert status.ceiling.max_required_quality == 0.75


class TestReporting:
    """Test cost and learning reports."""

    async def test_cost_stats(self, engine: ArbitrageEngine) -> None:
        await engine.submit_query("u1", QUERY)
        await engine.submit_query("u1", "Tell me a fun fact about octopuses")

        stats = await engine.get_cost_stats("u1")

        assert stats.request_count == 2
        assert stats.spent_this_period == pytest.approx(0.0002)
        assert stats.by_provider == pytest.approx({"cheap": 0.0002})
        assert stats.limit == 10.0

    async def test_cascade_analytics_and_platform_report(self, engine: ArbitrageEngine) -> None:
        await engine.submit_query("u1", QUERY)
        await engine.submit_query("u2", QUERY)

        analytics = await engine.cascade_analytics()
        report = await engine.platform_report()

        assert analytics.decisions == 2
        assert analytics.tier1_success_rate == 1.0
        assert report["users"] == 2


class TestAdmin:
    """Test the admin operations."""

    async def test_trigger_dpo_retrain(self, engine: ArbitrageEngine) -> None:
        result = await engine.trigger_dpo_retrain()

        assert result.is_ok
        assert result.value.version == 1
        assert engine.classifier.calibration.version == 1
        assert (await engine.dpo_stats()).retrain_count == 1

    async def test_trigger_gepa_cycle(self, engine: ArbitrageEngine) -> None:
        result = await engine.trigger_gepa_cycle()

        assert result.is_ok
        experiments = await engine.get_experiments()
        assert len(experiments) == 3
        assert engine.gepa.assign("any-request") in (None, *experiments)

    async def test_restart_restores_learned_state(
        self, engine: ArbitrageEngine, config: ArbiterConfig, store: ArbiterStore, make_judge
    ) -> None:
        await engine.trigger_dpo_retrain()

        restarted = ArbitrageEngine(config, store, providers={}, judge=make_judge({}))
        await restarted.start()

        assert restarted.classifier.calibration.version == 1

    async def test_curate_golden_examples_from_history(self, engine: ArbitrageEngine) -> None:
        await engine.submit_query("u1", QUERY)

        assert await engine.curate_golden_examples() == 1
        assert len(await engine.get_golden_examples(min_quality=0.5)) == 1


class TestOpen:
    """Test building an engine from configuration."""

    async def test_open_and_close(self, tmp_path: Path, config: ArbiterConfig, make_provider, ok_result) -> None:
        adapter = AsyncMock()
        adapter.complete.return_value = Result.err(ProviderError("offline", provider="test"))
        providers = {"cheap": make_provider(ok_result("A clear and complete answer about Paris, France."))}

        async with await ArbitrageEngine.open(
            config,
            database_url=f"sqlite+aiosqlite:///{tmp_path / 'engine.db'}",
            adapter=adapter,
            providers=providers,
        ) as engine:
            result = await engine.submit_query("u1", QUERY)

        assert result.is_ok
        assert result.value.provider_id == "cheap"
        assert result.value.classification.source == ClassificationSource.HEURISTIC

    async def test_background_learning_loop(
        self, tmp_path: Path, config: ArbiterConfig, make_provider, ok_result
    ) -> None:
        """With an interval configured, open() starts the loop and close() stops it."""
        engine_config = config.model_copy(
            update={"learning": LearningConfig(scheduler_interval_seconds=60)}
        )
        adapter = AsyncMock()
        adapter.complete.return_value = Result.err(ProviderError("offline", provider="test"))

        engine = await ArbitrageEngine.open(
            engine_config,
            database_url=f"sqlite+aiosqlite:///{tmp_path / 'engine.db'}",
            adapter=adapter,
            providers={"cheap": make_provider(ok_result("Paris."))},
        )
        assert engine.scheduler.is_running
        # The first tick queues the due GEPA cycle and runs it once.
        for _ in range(200):
            jobs = await engine.store.list_jobs()
            if jobs and all(j.attempts and j.status != JobStatus.RUNNING for j in jobs):
                break
            await asyncio.sleep(0.01)
        await engine.close()

        assert engine.scheduler.is_running is False
        assert [j.kind for j in jobs] == [JobKind.GEPA_CYCLE]

    async def test_background_loop_off_by_default(self, engine: ArbitrageEngine) -> None:
        assert engine.scheduler.is_running is False
