"""Provider adapters for Arbiter."""

from arbiter.providers.base import (
    AdapterTextProvider,
    CompletionConfig,
    CompletionResponse,
    GenerationResult,
    LLMAdapter,
    Message,
    MessageRole,
    TextProvider,
    UsageInfo,
)
from arbiter.providers.litellm_adapter import LiteLLMAdapter

__all__ = [
    "AdapterTextProvider",
    "CompletionConfig",
    "CompletionResponse",
    "GenerationResult",
    "LLMAdapter",
    "LiteLLMAdapter",
    "Message",
    "MessageRole",
    "TextProvider",
    "UsageInfo",
]
