"""Unit tests for arbiter.learning.gepa module.

Covers:
- Failure summaries (reflect)
- Proposal parsing and fallback padding (propose)
- Traffic slicing for running experiments (test)
- Adoption of the best cost/quality ratio (select)
- Resuming a cycle that failed mid-way
"""

import json
from unittest.mock import AsyncMock

import pytest

from arbiter.config.models import ArbiterConfig, LearningConfig
from arbiter.core.errors import LearningCycleError, PersistenceError, ValidationError
from arbiter.core.types import Result
from arbiter.learning.gepa import (
    FALLBACK_PROPOSALS,
    GEPAEvolver,
    StrategyProposal,
    summarize_failures,
    traffic_bucket,
)
from arbiter.learning.models import ExperimentStatus, GepaPhase
from arbiter.persistence.store import ArbiterStore
from arbiter.providers.base import CompletionResponse, UsageInfo
from arbiter.routing.models import DecisionStatus, Domain
from arbiter.routing.registry import RoutingConfig, RoutingConfigHolder

LEARNING = LearningConfig(gepa_min_samples=2)


@pytest.fixture
def holder(config: ArbiterConfig) -> RoutingConfigHolder:
    return RoutingConfigHolder(RoutingConfig.from_config(config))


@pytest.fixture
def evolver(store: ArbiterStore, holder: RoutingConfigHolder) -> GEPAEvolver:
    return GEPAEvolver(store, holder, None, LEARNING)


async def feed_experiments(store: ArbiterStore, make_decision, results: dict[str, tuple[float, float]]) -> None:
    """Save two decisions per experiment name with the given (cost, quality)."""
    experiments = {e.name: e for e in await store.list_experiments()}
    for name, (cost, quality) in results.items():
        for _ in range(2):
            await store.save_decision(
                make_decision(
                    experiment_id=experiments[name].id,
                    final_cost=cost,
                    total_cost=cost,
                    final_quality=quality,
                )
            )
    await store.save_decision(make_decision(total_cost=0.01, final_quality=0.8))


class TestSummarizeFailures:
    """Test the reflect report."""

    def test_counts_failure_kinds(self, make_decision) -> None:
        decisions = [
            make_decision(final_quality=0.5, status=DecisionStatus.EXHAUSTED),
            make_decision(domain=Domain.CODE, escalations=1),
            make_decision(domain=Domain.CODE, escalations=2),
            make_decision(),
        ]

        report = summarize_failures(decisions)

        assert report["total_decisions"] == 4
        assert report["total_failures"] == 3
        assert report["low_quality"] == 1
        assert report["escalated"] == 2
        assert report["exhausted"] == 1
        assert report["patterns"][0]["domain"] == "code"
        assert report["patterns"][0]["failure_rate"] == 0.5

    def test_empty_history(self) -> None:
        report = summarize_failures([])

        assert report["total_failures"] == 0
        assert report["patterns"] == []


class TestProposals:
    """Test proposal validation and padding."""

    def test_from_dict_requires_parameters(self) -> None:
        with pytest.raises(ValidationError, match="needs a name and parameters"):
            StrategyProposal.from_dict({"name": "Empty", "parameters": {}})

    async def test_fallbacks_without_adapter(self, evolver: GEPAEvolver) -> None:
        proposals = await evolver.propose({})

        assert proposals == list(FALLBACK_PROPOSALS)

    async def test_model_proposals_are_validated_and_padded(
        self, store: ArbiterStore, holder: RoutingConfigHolder
    ) -> None:
        content = json.dumps(
            [
                {"name": "Lower Threshold", "hypothesis": "h", "parameters": {"acceptance_threshold": 0.7}},
                {"name": "Out Of Range", "parameters": {"acceptance_threshold": 5}},
                {"name": "No Parameters"},
            ]
        )
        adapter = AsyncMock()
        adapter.complete.return_value = Result.ok(
            CompletionResponse(content=f"Proposals:\n{content}", model="m", usage=UsageInfo(1, 1, 2))
        )

        proposals = await GEPAEvolver(store, holder, adapter, LEARNING).propose({})

        assert [p.name for p in proposals] == [
            "Lower Threshold",
            "Complexity Threshold Adjustment",
            "Domain-Specific Routing",
        ]

    async def test_malformed_model_output_uses_fallbacks(
        self, store: ArbiterStore, holder: RoutingConfigHolder
    ) -> None:
        adapter = AsyncMock()
        adapter.complete.return_value = Result.ok(
            CompletionResponse(content="I would lower the threshold.", model="m", usage=UsageInfo(1, 1, 2))
        )

        proposals = await GEPAEvolver(store, holder, adapter, LEARNING).propose({})

        assert proposals == list(FALLBACK_PROPOSALS)


class TestTrafficAssignment:
    """Test hash-bucket traffic slicing."""

    def test_bucket_is_stable(self) -> None:
        assert traffic_bucket("request-1") == traffic_bucket("request-1")
        assert all(0 <= traffic_bucket(f"r{i}") < 100 for i in range(200))

    async def test_assign_by_bucket(self, evolver: GEPAEvolver) -> None:
        assert evolver.assign("anything") is None

        await evolver.run_cycle()

        experiments = await evolver.get_experiments()
        for i in range(200):
            key = f"request-{i}"
            bucket = traffic_bucket(key)
            assigned = evolver.assign(key)
            if bucket < 30:
                assert assigned is not None
                assert assigned.bucket_start <= bucket < assigned.bucket_end
            else:
                assert assigned is None
        assert [(e.bucket_start, e.bucket_end) for e in experiments] == [(0, 10), (10, 20), (20, 30)]


class TestGepaCycle:
    """Test a full reflect-propose-test-select cycle."""

    async def test_cycle_waits_for_samples(self, evolver: GEPAEvolver) -> None:
        result = await evolver.run_cycle()

        assert result.is_ok
        assert result.value.phase == GepaPhase.TEST
        assert await evolver.is_due()
        experiments = await evolver.get_experiments()
        assert all(e.status == ExperimentStatus.RUNNING for e in experiments)

    async def test_adopts_best_cost_quality_ratio(
        self, evolver: GEPAEvolver, store: ArbiterStore, holder: RoutingConfigHolder, make_decision
    ) -> None:
        await evolver.run_cycle()
        await feed_experiments(
            store,
            make_decision,
            {
                "Complexity Threshold Adjustment": (0.02, 0.8),
                "Domain-Specific Routing": (0.005, 0.9),
                "Confidence-Based Cascade": (0.01, 0.8),
            },
        )

        result = await evolver.run_cycle()

        assert result.is_ok
        cycle = result.value
        assert cycle.phase == GepaPhase.COMPLETED
        statuses = {e.name: e.status for e in await evolver.get_experiments()}
        assert statuses == {
            "Complexity Threshold Adjustment": ExperimentStatus.REJECTED,
            "Domain-Specific Routing": ExperimentStatus.ADOPTED,
            "Confidence-Based Cascade": ExperimentStatus.REJECTED,
        }
        assert holder.version == 2
        assert holder.snapshot().parameters.domain_min_quality == {Domain.CODE: 0.75}
        assert not await evolver.is_due()
        assert evolver.assign("request-1") is None

    async def test_adopted_parameters_restored(
        self, evolver: GEPAEvolver, store: ArbiterStore, config: ArbiterConfig, make_decision
    ) -> None:
        await evolver.run_cycle()
        await feed_experiments(
            store,
            make_decision,
            {
                "Complexity Threshold Adjustment": (0.001, 0.9),
                "Domain-Specific Routing": (0.02, 0.8),
                "Confidence-Based Cascade": (0.02, 0.8),
            },
        )
        await evolver.run_cycle()

        fresh = RoutingConfigHolder(RoutingConfig.from_config(config))
        restored = await GEPAEvolver(store, fresh, None, LEARNING).restore_adopted()

        assert restored == 1
        assert fresh.snapshot().parameters.tier1_max_complexity == 0.35

    async def test_failure_is_resumable(
        self, evolver: GEPAEvolver, store: ArbiterStore, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        monkeypatch.setattr(
            store,
            "list_decisions",
            AsyncMock(side_effect=PersistenceError("disk full", operation="select", table="routing_decisions")),
        )

        failed = await evolver.run_cycle()

        assert failed.is_err
        assert isinstance(failed.error, LearningCycleError)
        assert failed.error.phase == "reflect"
        stored = await store.latest_cycle()
        assert stored is not None and stored.error is not None

        monkeypatch.undo()
        resumed = await evolver.run_cycle()

        assert resumed.is_ok
        assert resumed.value.id == stored.id
        assert resumed.value.phase == GepaPhase.TEST
        assert resumed.value.error is None
