"""Shared fixtures for Arbiter unit tests."""

from __future__ import annotations

from collections.abc import AsyncGenerator, Callable
from pathlib import Path
from typing import Any

import pytest

from arbiter.config.models import ArbiterConfig, CandidateConfig
from arbiter.core.errors import ProviderError, TransientProviderError
from arbiter.core.types import Result
from arbiter.persistence.store import ArbiterStore
from arbiter.providers.base import GenerationResult
from arbiter.routing.judge import JudgeInput
from arbiter.routing.models import (
    DecisionStatus,
    Domain,
    RoutingDecision,
    TaskClassification,
    UserFeedback,
)


class ScriptedProvider:
    """TextProvider that replays queued results, repeating the last one."""

    def __init__(self, *results: Result[GenerationResult, ProviderError]) -> None:
        self._results = list(results)
        self.calls = 0
        self.max_tokens: list[int] = []

    async def generate(
        self, prompt: str, max_tokens: int
    ) -> Result[GenerationResult, ProviderError]:
        self.calls += 1
        self.max_tokens.append(max_tokens)
        if len(self._results) > 1:
            return self._results.pop(0)
        return self._results[0]


class StubJudge:
    """Scores output by looking its text up in a table."""

    def __init__(self, scores: dict[str, float], default: float = 0.0) -> None:
        self._scores = scores
        self._default = default

    async def score(self, judge_input: JudgeInput) -> float:
        return self._scores.get(judge_input.text, self._default)


def generated(
    text: str, tokens: int = 100, *, completion_tokens: int = 0
) -> Result[GenerationResult, ProviderError]:
    return Result.ok(
        GenerationResult(text=text, tokens_used=tokens, completion_tokens=completion_tokens)
    )


def failed(message: str = "boom", *, transient: bool = False) -> Result[GenerationResult, ProviderError]:
    error_type = TransientProviderError if transient else ProviderError
    return Result.err(error_type(message, provider="test"))


@pytest.fixture
def config() -> ArbiterConfig:
    """Three-tier registry with zero retry backoff."""
    return ArbiterConfig.model_validate(
        {
            "registry": [
                CandidateConfig(
                    provider_id="cheap", model="m-cheap", cost_per_1k_tokens=0.001, quality_score=0.6, tier=1
                ).model_dump(),
                CandidateConfig(
                    provider_id="mid", model="m-mid", cost_per_1k_tokens=0.01, quality_score=0.8, tier=2
                ).model_dump(),
                CandidateConfig(
                    provider_id="premium", model="m-premium", cost_per_1k_tokens=0.05, quality_score=0.95, tier=3
                ).model_dump(),
            ],
            "cascade": {"retry_backoff_seconds": 0.0},
        }
    )


@pytest.fixture
async def store(tmp_path: Path) -> AsyncGenerator[ArbiterStore, None]:
    """Initialized store on a temporary SQLite file."""
    db_path = tmp_path / "arbiter.db"
    store = ArbiterStore(f"sqlite+aiosqlite:///{db_path}")
    await store.initialize()
    yield store
    await store.close()


@pytest.fixture
def make_provider() -> type[ScriptedProvider]:
    return ScriptedProvider


@pytest.fixture
def make_judge() -> type[StubJudge]:
    return StubJudge


@pytest.fixture
def ok_result() -> Callable[..., Result[GenerationResult, ProviderError]]:
    return generated


@pytest.fixture
def err_result() -> Callable[..., Result[GenerationResult, ProviderError]]:
    return failed


@pytest.fixture
def make_decision() -> Callable[..., RoutingDecision]:
    """Factory for persisted-shape RoutingDecisions with sensible defaults."""

    def factory(
        *,
        domain: Domain = Domain.CHAT,
        complexity: float = 0.3,
        required_quality: float = 0.5,
        final_provider: str | None = "cheap",
        final_cost: float = 0.001,
        total_cost: float | None = None,
        final_quality: float | None = 0.8,
        escalations: int = 0,
        status: DecisionStatus = DecisionStatus.ACCEPTED,
        feedback: UserFeedback | None = None,
        **overrides: Any,
    ) -> RoutingDecision:
        values: dict[str, Any] = {
            "user_id": "u1",
            "query": "What is the capital of France?",
            "classification": TaskClassification(
                complexity=complexity,
                domain=domain,
                required_quality=required_quality,
                estimated_tokens=200,
            ),
            "chain": ("cheap", "mid", "premium"),
            "chain_tried": (final_provider,) if final_provider else (),
            "final_provider": final_provider,
            "final_cost": final_cost,
            "total_cost": final_cost if total_cost is None else total_cost,
            "final_quality": final_quality,
            "escalations": escalations,
            "status": status,
            "tokens_used": 1000,
            "response": "Paris." if final_provider else None,
            "feedback": feedback,
        }
        values.update(overrides)
        return RoutingDecision(**values)

    return factory
