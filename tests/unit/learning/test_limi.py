"""Unit tests for arbiter.learning.limi module."""

import pytest

from arbiter.config.models import LearningConfig
from arbiter.learning.calibration import load_calibration
from arbiter.learning.limi import LIMICurator, admission_tags, choose_eviction, savings_ratio
from arbiter.learning.models import GoldenExample
from arbiter.persistence.store import ArbiterStore
from arbiter.routing.models import DecisionStatus, Domain, Thumb, UserFeedback

PREMIUM_PER_1K = 0.05


def golden(query: str, domain: Domain = Domain.CHAT, quality: float = 0.9, savings: float = 0.0) -> GoldenExample:
    return GoldenExample(query=query, response="r", domain=domain, quality_score=quality, savings_ratio=savings)


async def seed(store: ArbiterStore, examples: list[GoldenExample]) -> None:
    for example in examples:
        await store.replace_golden(example)


def curator(store: ArbiterStore, **config) -> LIMICurator:
    return LIMICurator(store, LearningConfig(**config), premium_cost_per_1k=PREMIUM_PER_1K)


class TestAdmissionRules:
    """Test the pure admission helpers."""

    def test_savings_ratio(self, make_decision) -> None:
        assert savings_ratio(make_decision(total_cost=0.01), PREMIUM_PER_1K) == pytest.approx(0.8)
        assert savings_ratio(make_decision(total_cost=0.2), PREMIUM_PER_1K) == 0.0
        assert savings_ratio(make_decision(tokens_used=0), PREMIUM_PER_1K) == 0.0

    def test_tags(self, make_decision) -> None:
        config = LearningConfig()
        decision = make_decision(feedback=UserFeedback(rating=5), complexity=0.95, escalations=1)

        tags = admission_tags(decision, 0.6, domain_count=10, config=config)

        assert tags == ("high_quality", "cost_effective", "edge_case")

    def test_no_tags(self, make_decision) -> None:
        assert admission_tags(make_decision(), 0.1, domain_count=10, config=LearningConfig()) == ()

    def test_eviction_prefers_own_domain(self) -> None:
        weak = golden("weak", quality=0.1)
        examples = [golden("a"), weak, golden("c", Domain.CODE, quality=0.0)]

        assert choose_eviction(examples, Domain.CHAT) == weak

    def test_eviction_falls_back_to_crowded_domain(self) -> None:
        weak = golden("weak", quality=0.1)
        examples = [golden("a"), weak, golden("c", Domain.CODE, quality=0.0)]

        assert choose_eviction(examples, Domain.REASONING) == weak


class TestConsider:
    """Test admission through the store."""

    async def test_cheap_decision_is_admitted(self, store: ArbiterStore, make_decision) -> None:
        decision = make_decision()

        example = await curator(store).consider(decision)

        assert example is not None
        assert example.decision_id == decision.id
        assert example.tags == ("cost_effective", "coverage_gap")
        assert example.savings_ratio == pytest.approx(0.98)
        assert [g.id for g in await store.list_golden()] == [example.id]

    async def test_edge_case_flag(self, store: ArbiterStore, make_decision) -> None:
        example = await curator(store).consider(make_decision(), edge_case=True)

        assert example is not None and example.edge_case is True

    @pytest.mark.parametrize(
        "overrides",
        [
            {"status": DecisionStatus.EXHAUSTED},
            {"feedback": UserFeedback(thumb=Thumb.DOWN)},
            {"response": None},
            {"total_cost": 0.05},
        ],
    )
    async def test_not_admitted(self, store: ArbiterStore, make_decision, overrides: dict) -> None:
        decision = make_decision(**overrides)

        assert await curator(store, limi_min_per_domain=0).consider(decision) is None
        assert await store.list_golden() == []

    async def test_duplicates_rejected(self, store: ArbiterStore, make_decision) -> None:
        limi = curator(store)
        decision = make_decision()
        await limi.consider(decision)

        assert await limi.consider(decision) is None
        assert await limi.consider(make_decision(query="  what is the CAPITAL of france? ")) is None
        assert len(await store.list_golden()) == 1

    async def test_capacity_evicts_lowest_in_domain(self, store: ArbiterStore, make_decision) -> None:
        weakest = golden("chat seed weakest", quality=0.1)
        examples = [golden(f"chat seed {i}") for i in range(49)] + [weakest]
        examples += [golden(f"code seed {i}", Domain.CODE, quality=0.05) for i in range(28)]
        await seed(store, examples)

        admitted = await curator(store).consider(make_decision(feedback=UserFeedback(thumb=Thumb.UP)))

        stored = await store.list_golden()
        assert admitted is not None
        assert len(stored) == 78
        assert weakest.id not in {g.id for g in stored}
        assert sum(1 for g in stored if g.domain == Domain.CODE) == 28

    async def test_new_domain_evicts_from_crowded_domain(self, store: ArbiterStore, make_decision) -> None:
        weakest = golden("chat weakest", quality=0.2)
        await seed(store, [golden("chat strong"), weakest, golden("code", Domain.CODE, quality=0.1)])

        admitted = await curator(store, limi_capacity=3).consider(make_decision(domain=Domain.REASONING))

        stored = await store.list_golden()
        assert admitted is not None
        assert len(stored) == 3
        assert {g.domain for g in stored} == {Domain.CHAT, Domain.CODE, Domain.REASONING}
        assert weakest.id not in {g.id for g in stored}


class TestGoldenQueries:
    """Test retrieval and publication."""

    async def test_filters_and_sorts(self, store: ArbiterStore) -> None:
        await seed(
            store,
            [
                golden("a", quality=0.7, savings=0.9),
                golden("b", quality=0.95, savings=0.5),
                golden("c", Domain.CODE, quality=0.9, savings=0.9),
            ],
        )
        limi = curator(store)

        best = await limi.get_golden_examples(min_quality=0.8)
        chat = await limi.get_golden_examples(domain=Domain.CHAT, min_savings=0.6)
        top = await limi.get_golden_examples(limit=1)

        assert [e.query for e in best] == ["c", "b"]
        assert [e.query for e in chat] == ["a"]
        assert [e.query for e in top] == ["c"]

    async def test_publish_updates_calibration(self, store: ArbiterStore) -> None:
        await seed(store, [golden("fix the parser", Domain.CODE)])
        published = []
        limi = LIMICurator(
            store, LearningConfig(), premium_cost_per_1k=lambda: PREMIUM_PER_1K, on_calibration=published.append
        )

        calibration = await limi.publish()

        assert [r.query for r in calibration.references] == ["fix the parser"]
        assert published == [calibration]
        assert await load_calibration(store) == calibration

    async def test_curate_from_history(self, store: ArbiterStore, make_decision) -> None:
        await store.save_decision(make_decision())
        await store.save_decision(make_decision(query="Summarize this", status=DecisionStatus.EXHAUSTED))

        admitted = await curator(store).curate_from_history()

        assert admitted == 1
        assert len((await load_calibration(store)).references) == 1
