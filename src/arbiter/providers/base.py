"""Provider protocols and message models.

Two seams are defined here:

- ``LLMAdapter``: chat-style completion used by the classifier, the model
  judge and GEPA proposals.
- ``TextProvider``: the uniform ``generate(prompt, max_tokens)`` capability
  each cascade tier exposes. ``AdapterTextProvider`` builds one from any
  ``LLMAdapter`` plus a model name.
"""

from dataclasses import dataclass, field
from enum import StrEnum
from typing import Protocol

from arbiter.core.errors import ProviderError
from arbiter.core.types import Result


class MessageRole(StrEnum):
    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"


@dataclass(frozen=True, slots=True)
class Message:
    """A single chat message."""

    role: MessageRole
    content: str

    def to_dict(self) -> dict[str, str]:
        return {"role": self.role.value, "content": self.content}


@dataclass(frozen=True, slots=True)
class CompletionConfig:
    """Settings for one completion request.

    Attributes:
        model: litellm model identifier (e.g., 'gpt-4o-mini').
        temperature: Sampling temperature.
        max_tokens: Maximum tokens to generate.
        stop: Optional stop sequences.
    """

    model: str
    temperature: float = 0.7
    max_tokens: int = 1024
    stop: list[str] | None = None


@dataclass(frozen=True, slots=True)
class UsageInfo:
    prompt_tokens: int
    completion_tokens: int
    total_tokens: int


@dataclass(frozen=True, slots=True)
class CompletionResponse:
    """Response from a completion request.

    Attributes:
        content: Generated text.
        model: Model that produced it.
        usage: Token accounting.
        finish_reason: 'stop', 'length', ...
    """

    content: str
    model: str
    usage: UsageInfo
    finish_reason: str = "stop"
    raw_response: dict[str, object] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class GenerationResult:
    """Output of one tier's generation call.

    Attributes:
        text: Generated text.
        tokens_used: Billable tokens (prompt + completion).
        finish_reason: Why generation stopped.
        completion_tokens: Generated tokens alone; 0 when the provider
            does not report them.
    """

    text: str
    tokens_used: int
    finish_reason: str = "stop"
    completion_tokens: int = 0


class LLMAdapter(Protocol):
    """Chat completion provider.

    Implementations convert every expected failure into
    ``Result.err(ProviderError)``; exceptions mean bugs.
    """

    async def complete(
        self,
        messages: list[Message],
        config: CompletionConfig,
    ) -> Result[CompletionResponse, ProviderError]: ...


class TextProvider(Protocol):
    """The capability a cascade tier exposes: prompt in, text and token count out."""

    async def generate(
        self, prompt: str, max_tokens: int
    ) -> Result[GenerationResult, ProviderError]: ...


class AdapterTextProvider:
    """Expose an ``LLMAdapter`` + model as a cascade ``TextProvider``.

    Example:
        provider = AdapterTextProvider(LiteLLMAdapter(max_retries=1), "gpt-4o-mini")
        result = await provider.generate("Explain CAP theorem", max_tokens=400)
    """

    def __init__(
        self,
        adapter: LLMAdapter,
        model: str,
        *,
        temperature: float = 0.7,
        system_prompt: str | None = None,
    ) -> None:
        self._adapter = adapter
        self._model = model
        self._temperature = temperature
        self._system_prompt = system_prompt

    @property
    def model(self) -> str:
        return self._model

    async def generate(
        self, prompt: str, max_tokens: int
    ) -> Result[GenerationResult, ProviderError]:
        messages = []
        if self._system_prompt:
            messages.append(Message(role=MessageRole.SYSTEM, content=self._system_prompt))
        messages.append(Message(role=MessageRole.USER, content=prompt))

        result = await self._adapter.complete(
            messages,
            CompletionConfig(
                model=self._model,
                temperature=self._temperature,
                max_tokens=max_tokens,
            ),
        )
        return result.map(
            lambda response: GenerationResult(
                text=response.content,
                tokens_used=response.usage.total_tokens,
                finish_reason=response.finish_reason,
                completion_tokens=response.usage.completion_tokens,
            )
        )
