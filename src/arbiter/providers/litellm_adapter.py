"""LiteLLM adapter: one LLMAdapter for every provider in the registry.

Rate limits, timeouts, connection errors and 5xx responses come back as
``TransientProviderError`` so the cascade can give a tier its single retry.
Everything else is a plain ``ProviderError``.
"""

import os
from typing import Any

import litellm
import stamina

from arbiter.core.errors import ProviderError, TransientProviderError
from arbiter.core.security import MAX_LLM_RESPONSE_LENGTH, InputValidator
from arbiter.core.types import Result
from arbiter.observability.logging import get_logger
from arbiter.providers.base import (
    CompletionConfig,
    CompletionResponse,
    Message,
    UsageInfo,
)

log = get_logger(__name__)

RETRIABLE_EXCEPTIONS = (
    litellm.RateLimitError,
    litellm.ServiceUnavailableError,
    litellm.Timeout,
    litellm.APIConnectionError,
)

# Provider prefix -> environment variable holding its key
_KEY_ENV_VARS = {
    "openrouter": "OPENROUTER_API_KEY",
    "anthropic": "ANTHROPIC_API_KEY",
    "openai": "OPENAI_API_KEY",
    "groq": "GROQ_API_KEY",
    "gemini": "GEMINI_API_KEY",
}


def extract_provider(model: str) -> str:
    """Return the provider prefix of a litellm model string."""
    if "/" in model:
        return model.split("/")[0]
    if model.startswith(("gpt", "o1", "o3")):
        return "openai"
    if model.startswith("claude"):
        return "anthropic"
    return "unknown"


class LiteLLMAdapter:
    """LLMAdapter backed by ``litellm.acompletion`` with stamina retries.

    The adapter retries transient failures ``max_retries`` times in total.
    Cascade tiers are built with ``max_retries=1`` because the cascade owns
    the retry-once policy for tier calls.

    Example:
        adapter = LiteLLMAdapter()
        result = await adapter.complete(
            messages=[Message(role=MessageRole.USER, content="Hello!")],
            config=CompletionConfig(model="gpt-4o-mini"),
        )
    """

    def __init__(
        self,
        *,
        api_key: str | None = None,
        api_base: str | None = None,
        timeout: float = 60.0,
        max_retries: int = 3,
    ) -> None:
        self._api_key = api_key
        self._api_base = api_base
        self._timeout = timeout
        self._max_retries = max_retries

    def _get_api_key(self, model: str) -> str | None:
        if self._api_key:
            return self._api_key
        env_var = _KEY_ENV_VARS.get(extract_provider(model))
        if env_var is None:
            return None
        return os.environ.get(env_var)

    def _build_completion_kwargs(
        self,
        messages: list[Message],
        config: CompletionConfig,
    ) -> dict[str, Any]:
        kwargs: dict[str, Any] = {
            "model": config.model,
            "messages": [m.to_dict() for m in messages],
            "temperature": config.temperature,
            "max_tokens": config.max_tokens,
            "timeout": self._timeout,
        }
        if config.stop:
            kwargs["stop"] = config.stop

        api_key = self._get_api_key(config.model)
        if api_key:
            kwargs["api_key"] = api_key
        if self._api_base:
            kwargs["api_base"] = self._api_base
        return kwargs

    def _parse_response(
        self,
        response: Any,
        config: CompletionConfig,
    ) -> CompletionResponse:
        choice = response.choices[0]
        usage = getattr(response, "usage", None)
        content = choice.message.content or ""

        is_valid, _ = InputValidator.validate_llm_response(content)
        if not is_valid:
            log.warning(
                "llm.response.truncated",
                model=config.model,
                original_length=len(content),
                max_length=MAX_LLM_RESPONSE_LENGTH,
            )
            content = content[:MAX_LLM_RESPONSE_LENGTH]

        return CompletionResponse(
            content=content,
            model=getattr(response, "model", None) or config.model,
            usage=UsageInfo(
                prompt_tokens=usage.prompt_tokens if usage else 0,
                completion_tokens=usage.completion_tokens if usage else 0,
                total_tokens=usage.total_tokens if usage else 0,
            ),
            finish_reason=choice.finish_reason or "stop",
        )

    async def complete(
        self,
        messages: list[Message],
        config: CompletionConfig,
    ) -> Result[CompletionResponse, ProviderError]:
        """Run a completion, converting provider failures into Result.err."""
        provider = extract_provider(config.model)

        @stamina.retry(
            on=RETRIABLE_EXCEPTIONS,
            attempts=self._max_retries,
            wait_initial=1.0,
            wait_max=10.0,
            wait_jitter=1.0,
        )
        async def _with_retry() -> Any:
            log.debug(
                "llm.request.started",
                model=config.model,
                message_count=len(messages),
                max_tokens=config.max_tokens,
            )
            return await litellm.acompletion(**self._build_completion_kwargs(messages, config))

        try:
            response = await _with_retry()
        except RETRIABLE_EXCEPTIONS as e:
            log.warning(
                "llm.request.failed.transient",
                model=config.model,
                error=str(e),
                attempts=self._max_retries,
            )
            return Result.err(TransientProviderError.from_exception(e, provider=provider))
        except litellm.AuthenticationError as e:
            log.warning("llm.request.failed.auth_error", model=config.model, error=str(e))
            return Result.err(
                ProviderError(
                    "Authentication failed - check API key",
                    provider=provider,
                    status_code=401,
                    details={"original_exception": type(e).__name__},
                )
            )
        except litellm.APIError as e:
            status_code = getattr(e, "status_code", None)
            log.warning(
                "llm.request.failed.api_error",
                model=config.model,
                error=str(e),
                status_code=status_code,
            )
            if isinstance(status_code, int) and status_code >= 500:
                return Result.err(TransientProviderError.from_exception(e, provider=provider))
            return Result.err(ProviderError.from_exception(e, provider=provider))
        except litellm.BadRequestError as e:
            log.warning("llm.request.failed.bad_request", model=config.model, error=str(e))
            return Result.err(ProviderError.from_exception(e, provider=provider))
        except Exception as e:
            # litellm maps provider SDK errors to many classes (NotFound, ContextWindow...)
            log.exception("llm.request.failed.unexpected", model=config.model, error=str(e))
            return Result.err(
                ProviderError(
                    f"Unexpected error: {e!s}",
                    provider=provider,
                    details={"original_exception": type(e).__name__},
                )
            )

        log.debug("llm.request.completed", model=config.model)
        return Result.ok(self._parse_response(response, config))
