"""Unit tests for arbiter.config.models module."""

from pydantic import ValidationError
import pytest

from arbiter.config.models import (
    ArbiterConfig,
    BudgetConfig,
    CandidateConfig,
    LearningConfig,
    RoutingConfigSection,
    SubscriptionBudget,
    get_default_config,
)


class TestDefaults:
    """Test the default configuration."""

    def test_default_registry_covers_three_tiers(self) -> None:
        """The default registry has cheap, mid and premium candidates."""
        config = get_default_config()

        assert {c.tier for c in config.registry} == {1, 2, 3}
        assert len({c.provider_id for c in config.registry}) == len(config.registry)

    def test_default_subscriptions(self) -> None:
        """The four subscription tiers carry the documented limits."""
        budgets = BudgetConfig()

        assert budgets.subscriptions["free"].monthly_limit == 10.0
        assert budgets.subscriptions["free"].per_request_limit == 0.01
        assert budgets.subscriptions["enterprise"].monthly_limit == 1000.0
        assert budgets.default_subscription == "free"

    def test_default_learning_settings(self) -> None:
        learning = LearningConfig()

        assert learning.limi_capacity == 78
        assert learning.gepa_traffic_fraction == 0.1
        assert learning.dpo_retrain_every == 1000
        assert learning.scheduler_interval_seconds is None

    def test_default_completion_cap(self) -> None:
        assert get_default_config().cascade.max_output_tokens == 1000

    def test_models_are_frozen(self) -> None:
        config = get_default_config()

        with pytest.raises(ValidationError):
            config.routing.acceptance_threshold = 0.1  # type: ignore[misc]


class TestValidation:
    """Test field and model validators."""

    def test_duplicate_provider_ids_rejected(self) -> None:
        candidate = CandidateConfig(
            provider_id="a", model="m", cost_per_1k_tokens=0.1, quality_score=0.5, tier=1
        )

        with pytest.raises(ValidationError, match="duplicate provider_id"):
            ArbiterConfig(registry=[candidate, candidate])

    def test_quality_score_bounds(self) -> None:
        with pytest.raises(ValidationError):
            CandidateConfig(
                provider_id="a", model="m", cost_per_1k_tokens=0.1, quality_score=1.5, tier=1
            )

    def test_tier_bounds(self) -> None:
        with pytest.raises(ValidationError):
            CandidateConfig(
                provider_id="a", model="m", cost_per_1k_tokens=0.1, quality_score=0.5, tier=4
            )

    def test_alert_thresholds_sorted_and_deduplicated(self) -> None:
        budgets = BudgetConfig(alert_thresholds=(1.0, 0.8, 0.8))

        assert budgets.alert_thresholds == (0.8, 1.0)

    def test_alert_threshold_out_of_range(self) -> None:
        with pytest.raises(ValidationError, match="alert thresholds"):
            BudgetConfig(alert_thresholds=(0.0, 0.5))

    def test_unknown_default_subscription(self) -> None:
        with pytest.raises(ValidationError, match="default_subscription"):
            BudgetConfig(
                subscriptions={"pro": SubscriptionBudget(monthly_limit=1, per_request_limit=1)},
                default_subscription="free",
            )

    def test_chain_length_capped_at_three(self) -> None:
        with pytest.raises(ValidationError):
            RoutingConfigSection(max_chain_length=4)
