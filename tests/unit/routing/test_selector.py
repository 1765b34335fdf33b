"""Unit tests for arbiter.routing.selector module."""

import pytest

from arbiter.config.models import ArbiterConfig
from arbiter.routing.models import Domain, TaskClassification
from arbiter.routing.registry import RoutingConfig
from arbiter.routing.selector import ModelSelector, effective_quality_floor


def classify(required_quality: float, *, complexity: float = 0.2, domain: Domain = Domain.CHAT) -> TaskClassification:
    return TaskClassification(
        complexity=complexity, domain=domain, required_quality=required_quality, estimated_tokens=200
    )


@pytest.fixture
def default_routing() -> RoutingConfig:
    return RoutingConfig.from_config(ArbiterConfig())


class TestBuildChain:
    """Test chain selection over the default registry."""

    def test_low_floor_uses_cheapest_of_each_tier(self, default_routing: RoutingConfig) -> None:
        chain = ModelSelector().build_chain(classify(0.5), default_routing)

        assert chain.provider_ids == ("llama-3.1-8b", "gpt-4o-mini", "gpt-4o")
        assert chain.fallback is False

    def test_high_floor_drops_weak_candidates(self, default_routing: RoutingConfig) -> None:
        chain = ModelSelector().build_chain(classify(0.8), default_routing)

        assert chain.provider_ids == ("claude-haiku", "gpt-4o")

    def test_unreachable_floor_falls_back_to_best(self, default_routing: RoutingConfig) -> None:
        """Nothing passes: a single-element chain with the best model."""
        chain = ModelSelector().build_chain(classify(1.0), default_routing)

        assert chain.provider_ids == ("claude-sonnet",)
        assert chain.fallback is True

    def test_complex_queries_skip_tier_one(self, default_routing: RoutingConfig) -> None:
        routing = default_routing.with_parameters({"tier1_max_complexity": 0.35}, source="test")

        chain = ModelSelector().build_chain(classify(0.5, complexity=0.5), routing)

        assert all(c.tier > 1 for c in chain)

    def test_domain_floor(self, default_routing: RoutingConfig) -> None:
        routing = default_routing.with_parameters({"domain_min_quality": {"code": 0.75}}, source="test")
        code = classify(0.5, domain=Domain.CODE)

        chain = ModelSelector().build_chain(code, routing)

        assert effective_quality_floor(code, routing) == 0.75
        assert chain.provider_ids == ("gpt-4o-mini", "gpt-4o")

    def test_max_chain_length(self, default_routing: RoutingConfig) -> None:
        routing = default_routing.with_parameters({"max_chain_length": 1}, source="test")

        chain = ModelSelector().build_chain(classify(0.5), routing)

        assert chain.provider_ids == ("llama-3.1-8b",)

    @pytest.mark.parametrize("required", [0.0, 0.3, 0.55, 0.7, 0.79, 0.82, 0.9, 0.95, 0.99, 1.0])
    def test_chain_is_never_empty_and_cost_ordered(
        self, default_routing: RoutingConfig, required: float
    ) -> None:
        chain = ModelSelector().build_chain(classify(required), default_routing)
        costs = [c.cost_per_1k_tokens for c in chain]

        assert len(chain) >= 1
        assert costs == sorted(costs)
        assert len({c.tier for c in chain}) == len(chain)

    def test_floor_offset(self, default_routing: RoutingConfig) -> None:
        routing = default_routing.with_parameters({"quality_floor_offset": 0.3}, source="test")

        assert effective_quality_floor(classify(0.5), routing) == pytest.approx(0.8)
