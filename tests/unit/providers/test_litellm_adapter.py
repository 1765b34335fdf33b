"""Unit tests for arbiter.providers.litellm_adapter module."""

from typing import Any
from unittest.mock import AsyncMock, MagicMock, patch

import litellm
import pytest

from arbiter.core.errors import TransientProviderError
from arbiter.core.security import MAX_LLM_RESPONSE_LENGTH
from arbiter.providers.base import CompletionConfig, Message, MessageRole
from arbiter.providers.litellm_adapter import LiteLLMAdapter, extract_provider


def create_mock_response(
    content: str | None = "Hello!",
    model: str = "gpt-4o-mini",
    prompt_tokens: int = 10,
    completion_tokens: int = 20,
    finish_reason: str = "stop",
) -> MagicMock:
    """Create a mock LiteLLM response."""
    mock_response = MagicMock()
    mock_response.choices = [MagicMock()]
    mock_response.choices[0].message.content = content
    mock_response.choices[0].finish_reason = finish_reason
    mock_response.model = model
    mock_response.usage.prompt_tokens = prompt_tokens
    mock_response.usage.completion_tokens = completion_tokens
    mock_response.usage.total_tokens = prompt_tokens + completion_tokens
    return mock_response


@pytest.fixture
def messages() -> list[Message]:
    return [Message(role=MessageRole.USER, content="Hi")]


@pytest.fixture
def config() -> CompletionConfig:
    return CompletionConfig(model="gpt-4o-mini", max_tokens=50)


class TestExtractProvider:
    """Test provider prefix detection."""

    @pytest.mark.parametrize(
        ("model", "provider"),
        [
            ("groq/llama-3.1-8b-instant", "groq"),
            ("anthropic/claude-3-5-haiku-latest", "anthropic"),
            ("gpt-4o", "openai"),
            ("claude-3-opus", "anthropic"),
            ("mistral-large", "unknown"),
        ],
    )
    def test_prefixes(self, model: str, provider: str) -> None:
        assert extract_provider(model) == provider


class TestApiKeys:
    """Test API key resolution."""

    def test_explicit_key_wins(self) -> None:
        adapter = LiteLLMAdapter(api_key="explicit")

        assert adapter._get_api_key("groq/llama") == "explicit"

    def test_env_key_by_provider(self) -> None:
        adapter = LiteLLMAdapter()

        with patch.dict("os.environ", {"GROQ_API_KEY": "gk"}, clear=False):
            assert adapter._get_api_key("groq/llama") == "gk"

    def test_unknown_provider_has_no_key(self) -> None:
        assert LiteLLMAdapter()._get_api_key("mistral-large") is None

    def test_kwargs_include_stop_and_base(self, messages: list[Message]) -> None:
        adapter = LiteLLMAdapter(api_key="k", api_base="https://proxy.local", timeout=5.0)
        config = CompletionConfig(model="gpt-4o", max_tokens=10, stop=["\n"])

        kwargs = adapter._build_completion_kwargs(messages, config)

        assert kwargs["messages"] == [{"role": "user", "content": "Hi"}]
        assert kwargs["stop"] == ["\n"]
        assert kwargs["api_base"] == "https://proxy.local"
        assert kwargs["api_key"] == "k"
        assert kwargs["timeout"] == 5.0


class TestComplete:
    """Test completion calls and error mapping."""

    async def test_success(self, messages: list[Message], config: CompletionConfig) -> None:
        adapter = LiteLLMAdapter()

        with patch("litellm.acompletion", new_callable=AsyncMock) as mock_acompletion:
            mock_acompletion.return_value = create_mock_response("Hello there")

            result = await adapter.complete(messages, config)

        assert result.is_ok
        assert result.value.content == "Hello there"
        assert result.value.usage.total_tokens == 30

    async def test_none_content_becomes_empty(
        self, messages: list[Message], config: CompletionConfig
    ) -> None:
        adapter = LiteLLMAdapter()

        with patch("litellm.acompletion", new_callable=AsyncMock) as mock_acompletion:
            mock_acompletion.return_value = create_mock_response(None)

            result = await adapter.complete(messages, config)

        assert result.value.content == ""

    async def test_oversized_response_truncated(
        self, messages: list[Message], config: CompletionConfig
    ) -> None:
        adapter = LiteLLMAdapter()

        with patch("litellm.acompletion", new_callable=AsyncMock) as mock_acompletion:
            mock_acompletion.return_value = create_mock_response("a" * (MAX_LLM_RESPONSE_LENGTH + 10))

            result = await adapter.complete(messages, config)

        assert len(result.value.content) == MAX_LLM_RESPONSE_LENGTH

    async def test_rate_limit_is_transient(
        self, messages: list[Message], config: CompletionConfig
    ) -> None:
        """Rate limits come back as TransientProviderError."""
        adapter = LiteLLMAdapter(max_retries=1)

        with patch("litellm.acompletion", new_callable=AsyncMock) as mock_acompletion:
            mock_acompletion.side_effect = litellm.RateLimitError(
                message="Rate limited",
                llm_provider="openai",
                model="gpt-4o-mini",
            )

            result = await adapter.complete(messages, config)

        assert result.is_err
        assert isinstance(result.error, TransientProviderError)
        assert result.error.provider == "openai"

    async def test_server_error_is_transient(
        self, messages: list[Message], config: CompletionConfig
    ) -> None:
        adapter = LiteLLMAdapter(max_retries=1)

        with patch("litellm.acompletion", new_callable=AsyncMock) as mock_acompletion:
            mock_acompletion.side_effect = litellm.APIError(
                message="Internal server error",
                status_code=500,
                llm_provider="openai",
                model="gpt-4o-mini",
            )

            result = await adapter.complete(messages, config)

        assert result.error.is_transient is True

    async def test_auth_error_is_permanent(
        self, messages: list[Message], config: CompletionConfig
    ) -> None:
        adapter = LiteLLMAdapter(max_retries=1)

        with patch("litellm.acompletion", new_callable=AsyncMock) as mock_acompletion:
            mock_acompletion.side_effect = litellm.AuthenticationError(
                message="Invalid API key",
                llm_provider="openai",
                model="gpt-4o-mini",
            )

            result = await adapter.complete(messages, config)

        assert result.error.is_transient is False
        assert result.error.status_code == 401

    async def test_unexpected_error(
        self, messages: list[Message], config: CompletionConfig
    ) -> None:
        adapter = LiteLLMAdapter(max_retries=1)

        with patch("litellm.acompletion", new_callable=AsyncMock) as mock_acompletion:
            mock_acompletion.side_effect = RuntimeError("Something unexpected")

            result = await adapter.complete(messages, config)

        assert "Something unexpected" in result.error.message
        assert result.error.details["original_exception"] == "RuntimeError"

    async def test_retries_transient_errors(
        self, messages: list[Message], config: CompletionConfig
    ) -> None:
        """A transient failure is retried before the call succeeds."""
        adapter = LiteLLMAdapter(max_retries=2)
        call_count = 0

        async def side_effect(**kwargs: Any) -> MagicMock:
            nonlocal call_count
            call_count += 1
            if call_count < 2:
                raise litellm.ServiceUnavailableError(
                    message="Service unavailable",
                    llm_provider="openai",
                    model="gpt-4o-mini",
                )
            return create_mock_response()

        with patch("litellm.acompletion", new_callable=AsyncMock) as mock_acompletion:
            mock_acompletion.side_effect = side_effect

            result = await adapter.complete(messages, config)

        assert result.is_ok
        assert call_count == 2
