"""Core types for Arbiter - the Result container and shared aliases.

Expected failures (provider errors, budget denials, malformed model output)
travel as ``Result`` values. Exceptions are kept for bugs and for the
typed error hierarchy in :mod:`arbiter.core.errors`.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
import math
from typing import cast


@dataclass(frozen=True, slots=True)
class Result[T, E]:
    """Either a success value (Ok) or an error value (Err).

    Usage:
        result = await provider.generate(prompt, max_tokens=256)
        if result.is_ok:
            text = result.value.text
        else:
            log.warning("tier.generation.failed", error=str(result.error))
    """

    _value: T | None
    _error: E | None
    _is_ok: bool

    @classmethod
    def ok(cls, value: T) -> Result[T, E]:
        """Wrap a success value."""
        return cls(_value=value, _error=None, _is_ok=True)

    @classmethod
    def err(cls, error: E) -> Result[T, E]:
        """Wrap an error value."""
        return cls(_value=None, _error=error, _is_ok=False)

    @property
    def is_ok(self) -> bool:
        return self._is_ok

    @property
    def is_err(self) -> bool:
        return not self._is_ok

    def __repr__(self) -> str:
        if self._is_ok:
            return f"Ok({self._value!r})"
        return f"Err({self._error!r})"

    @property
    def value(self) -> T:
        """The Ok value. Raises ValueError on an Err result."""
        if not self._is_ok:
            msg = "Cannot access value on Err result"
            raise ValueError(msg)
        return cast(T, self._value)

    @property
    def error(self) -> E:
        """The Err value. Raises ValueError on an Ok result."""
        if self._is_ok:
            msg = "Cannot access error on Ok result"
            raise ValueError(msg)
        return cast(E, self._error)

    def unwrap(self) -> T:
        """Return the Ok value or raise ValueError carrying the error text."""
        if self._is_ok:
            return cast(T, self._value)
        raise ValueError(str(self._error))

    def unwrap_or(self, default: T) -> T:
        """Return the Ok value, or ``default`` for an Err result."""
        if self._is_ok:
            return cast(T, self._value)
        return default

    def map[U](self, fn: Callable[[T], U]) -> Result[U, E]:
        """Apply ``fn`` to an Ok value, leaving an Err untouched."""
        if self._is_ok:
            return Result.ok(fn(cast(T, self._value)))
        return Result.err(cast(E, self._error))

    def map_err[F](self, fn: Callable[[E], F]) -> Result[T, F]:
        """Apply ``fn`` to an Err value, leaving an Ok untouched."""
        if self._is_ok:
            return Result.ok(cast(T, self._value))
        return Result.err(fn(cast(E, self._error)))

    def and_then[U](self, fn: Callable[[T], "Result[U, E]"]) -> "Result[U, E]":
        """Chain another Result-producing step onto an Ok value."""
        if self._is_ok:
            return fn(cast(T, self._value))
        return Result.err(cast(E, self._error))


Money = float
"""US dollars. Costs are small fractions, so plain floats are used throughout."""

Score = float
"""A normalised score in [0.0, 1.0]."""


def clamp_unit(value: float) -> Score:
    """Clip a number into [0.0, 1.0].

    Raises:
        ValueError: If the value is NaN, which cannot be ordered.
    """
    number = float(value)
    if math.isnan(number):
        msg = "score must be a number, got NaN"
        raise ValueError(msg)
    return min(1.0, max(0.0, number))
