"""Security helpers for Arbiter.

Masks provider API keys before they reach logs and bounds the size of
inputs that cross the system boundary (user queries, model responses).
"""

from typing import Any

MAX_QUERY_LENGTH = 20_000
MAX_LLM_RESPONSE_LENGTH = 100_000

# Exact field names that always hold secrets
SENSITIVE_FIELD_NAMES = frozenset(
    {
        "password",
        "api_key",
        "apikey",
        "api-key",
        "secret",
        "token",
        "credential",
        "credentials",
        "auth",
        "authorization",
        "bearer",
        "private_key",
    }
)

# Suffixes that mark a secret-bearing field ("openai_api_key", "refresh_token").
# Counters such as "tokens_used" or "estimated_tokens" do not match.
SENSITIVE_FIELD_SUFFIXES = ("_key", "_token", "_secret", "_password")

SENSITIVE_PREFIXES = (
    "sk-",
    "pk-",
    "api-",
    "bearer ",
    "token ",
    "secret_",
    "AIza",
)


def mask_api_key(api_key: str, visible_chars: int = 4) -> str:
    """Mask an API key, keeping its prefix and last few characters.

    Example:
        >>> mask_api_key("sk-1234567890abcdef")
        'sk-...cdef'
    """
    if not api_key:
        return "<empty>"

    if len(api_key) <= visible_chars + 4:
        return "*" * len(api_key)

    if "-" in api_key[:6]:
        prefix = api_key[: api_key.index("-") + 1]
        return f"{prefix}...{api_key[-visible_chars:]}"

    return f"...{api_key[-visible_chars:]}"


def is_sensitive_field(field_name: str) -> bool:
    """Return True if the field name suggests it holds a secret."""
    if not field_name:
        return False

    name = field_name.lower()
    if name in SENSITIVE_FIELD_NAMES:
        return True
    return name.endswith(SENSITIVE_FIELD_SUFFIXES)


def is_sensitive_value(value: Any) -> bool:
    """Return True if a string value looks like a credential."""
    if not isinstance(value, str):
        return False

    lowered = value.lower()
    return any(lowered.startswith(prefix.lower()) for prefix in SENSITIVE_PREFIXES)


def sanitize_for_logging(data: dict[str, Any]) -> dict[str, Any]:
    """Return a copy of ``data`` with secret-looking entries masked."""
    result: dict[str, Any] = {}
    for key, value in data.items():
        if is_sensitive_field(key):
            result[key] = "<REDACTED>"
        elif isinstance(value, str) and is_sensitive_value(value):
            result[key] = mask_api_key(value)
        elif isinstance(value, dict):
            result[key] = sanitize_for_logging(value)
        else:
            result[key] = value
    return result


class InputValidator:
    """Size checks for text that enters or leaves the engine."""

    @staticmethod
    def validate_query(query: str) -> tuple[bool, str]:
        if not query or not query.strip():
            return False, "query must not be empty"
        if len(query) > MAX_QUERY_LENGTH:
            return False, f"query exceeds {MAX_QUERY_LENGTH} characters"
        return True, ""

    @staticmethod
    def validate_llm_response(content: str) -> tuple[bool, str]:
        if len(content) > MAX_LLM_RESPONSE_LENGTH:
            return False, f"response exceeds {MAX_LLM_RESPONSE_LENGTH} characters"
        return True, ""
