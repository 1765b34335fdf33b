"""Error hierarchy for Arbiter.

Exception Hierarchy:
    ArbiterError (base)
    ├── ProviderError          - a tier's generation call failed
    │   └── TransientProviderError - rate limit, timeout, 5xx (retried once)
    ├── ConfigError            - configuration loading and validation
    ├── PersistenceError       - database and storage failures
    ├── ValidationError        - rejected input data
    ├── ClassificationFailure  - malformed classifier output (recovered locally)
    ├── BudgetExceededError    - spend denied by the caller's budget (402)
    ├── ChainExhaustedError    - every tier errored, nothing usable
    └── LearningCycleError     - DPO / GEPA / LIMI job failure (resumable)

These are raised for unexpected conditions and used as the error half of
``Result`` for expected ones.
"""

from __future__ import annotations

from typing import Any

from arbiter.core.security import is_sensitive_field, is_sensitive_value


class ArbiterError(Exception):
    """Base exception for all Arbiter errors.

    Attributes:
        message: Human-readable error description.
        details: Additional context, safe to log.
    """

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def __str__(self) -> str:
        if self.details:
            return f"{self.message} (details: {self.details})"
        return self.message


class ProviderError(ArbiterError):
    """A text-generation provider call failed.

    Attributes:
        provider: Provider identifier (registry provider_id or litellm prefix).
        status_code: HTTP status code if the provider returned one.
    """

    def __init__(
        self,
        message: str,
        *,
        provider: str | None = None,
        status_code: int | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message, details)
        self.provider = provider
        self.status_code = status_code

    @property
    def is_transient(self) -> bool:
        return False

    @classmethod
    def from_exception(
        cls, exc: Exception, *, provider: str | None = None
    ) -> ProviderError:
        """Wrap a provider SDK exception, keeping it as ``__cause__``."""
        error = cls(
            str(exc),
            provider=provider,
            status_code=getattr(exc, "status_code", None),
            details={"original_exception": type(exc).__name__},
        )
        error.__cause__ = exc
        return error


class TransientProviderError(ProviderError):
    """A provider failure worth one more attempt (rate limit, timeout, 5xx)."""

    @property
    def is_transient(self) -> bool:
        return True


class ConfigError(ArbiterError):
    """Configuration loading, parsing, or validation failed.

    Attributes:
        config_key: The configuration key that caused the error.
        config_file: Path to the config file if applicable.
    """

    def __init__(
        self,
        message: str,
        *,
        config_key: str | None = None,
        config_file: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message, details)
        self.config_key = config_key
        self.config_file = config_file


class PersistenceError(ArbiterError):
    """A database operation failed.

    Attributes:
        operation: The operation that failed (e.g., "insert", "update").
        table: The table involved if applicable.
    """

    def __init__(
        self,
        message: str,
        *,
        operation: str | None = None,
        table: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message, details)
        self.operation = operation
        self.table = table


class ValidationError(ArbiterError):
    """Input data failed validation.

    Use ``safe_value`` rather than ``value`` when logging.
    """

    def __init__(
        self,
        message: str,
        *,
        field: str | None = None,
        value: Any | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message, details)
        self.field = field
        self.value = value

    @property
    def safe_value(self) -> str:
        """A log-safe rendering of ``value``: masked, truncated, or typed."""
        if self.value is None:
            return "<None>"

        if self.field and is_sensitive_field(self.field):
            return "<REDACTED>"

        if isinstance(self.value, str):
            if is_sensitive_value(self.value):
                return "<REDACTED>"
            if len(self.value) > 50:
                return f"{self.value[:20]}...({len(self.value)} chars)"
            return repr(self.value)

        if isinstance(self.value, (int, float, bool)):
            return repr(self.value)

        return f"<{type(self.value).__name__}>"

    def __str__(self) -> str:
        base = self.message
        if self.field:
            base = f"{base} (field: {self.field}, value: {self.safe_value})"
        if self.details:
            base = f"{base} (details: {self.details})"
        return base


class ClassificationFailure(ArbiterError):
    """The classifier model returned output that could not be used.

    Never surfaced to callers; the classifier falls back to heuristics.
    """

    def __init__(
        self,
        message: str,
        *,
        raw_output: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message, details)
        self.raw_output = raw_output


class BudgetExceededError(ArbiterError):
    """The caller's budget denied further spend.

    The HTTP-facing layer maps this to a 402 response. ``partial`` carries
    the best response obtained before the denial, if any tier ran.
    """

    status_code = 402

    def __init__(
        self,
        message: str,
        *,
        user_id: str,
        spent: float = 0.0,
        limit: float = 0.0,
        partial: Any | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message, details)
        self.user_id = user_id
        self.spent = spent
        self.limit = limit
        self.partial = partial


class ChainExhaustedError(ArbiterError):
    """Every tier in the cascade errored and no output exists to degrade to."""

    def __init__(
        self,
        message: str,
        *,
        decision_id: str | None = None,
        providers_tried: tuple[str, ...] = (),
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message, details)
        self.decision_id = decision_id
        self.providers_tried = providers_tried


class LearningCycleError(ArbiterError):
    """A background learning job failed; its checkpoint is kept for resume.

    Attributes:
        job: The job kind (e.g., "gepa.cycle").
        phase: The phase or step that failed, if the job has phases.
    """

    def __init__(
        self,
        message: str,
        *,
        job: str,
        phase: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message, details)
        self.job = job
        self.phase = phase
