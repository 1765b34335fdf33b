"""Unit tests for arbiter.core.types module."""

import pytest

from arbiter.core.types import Result, clamp_unit


class TestResultConstruction:
    """Test Result construction via ok() and err()."""

    def test_result_ok_creates_success_result(self) -> None:
        """Result.ok(value) creates a result with is_ok=True."""
        result: Result[int, str] = Result.ok(42)

        assert result.is_ok is True
        assert result.is_err is False
        assert result.value == 42

    def test_result_err_creates_error_result(self) -> None:
        """Result.err(error) creates a result with is_err=True."""
        result: Result[int, str] = Result.err("provider down")

        assert result.is_err is True
        assert result.error == "provider down"

    def test_repr_shows_variant(self) -> None:
        """repr distinguishes Ok from Err."""
        assert repr(Result.ok(1)) == "Ok(1)"
        assert repr(Result.err("x")) == "Err('x')"


class TestResultAccess:
    """Test value/error access and unwrapping."""

    def test_value_raises_on_err_result(self) -> None:
        """Accessing value on Err raises ValueError."""
        result: Result[int, str] = Result.err("error")

        with pytest.raises(ValueError, match="Cannot access value on Err result"):
            _ = result.value

    def test_error_raises_on_ok_result(self) -> None:
        """Accessing error on Ok raises ValueError."""
        result: Result[int, str] = Result.ok(42)

        with pytest.raises(ValueError, match="Cannot access error on Ok result"):
            _ = result.error

    def test_unwrap_raises_with_error_text(self) -> None:
        """unwrap() on Err raises ValueError carrying the error text."""
        result: Result[int, str] = Result.err("budget denied")

        with pytest.raises(ValueError, match="budget denied"):
            result.unwrap()

    def test_unwrap_or_returns_default_on_err(self) -> None:
        """unwrap_or(default) returns default when result is Err."""
        assert Result.err("failed").unwrap_or(0) == 0
        assert Result.ok(5).unwrap_or(0) == 5


class TestResultTransforms:
    """Test map, map_err and and_then."""

    def test_map_transforms_ok_value(self) -> None:
        """map(fn) applies fn to an Ok value."""
        mapped = Result.ok(10).map(lambda x: x * 2)

        assert mapped.unwrap() == 20

    def test_map_preserves_error(self) -> None:
        """map(fn) leaves an Err untouched."""
        mapped = Result.err("oops").map(lambda x: x * 2)

        assert mapped.is_err
        assert mapped.error == "oops"

    def test_map_err_transforms_error(self) -> None:
        """map_err(fn) applies fn to an Err value."""
        mapped = Result.err("error").map_err(len)

        assert mapped.error == 5

    def test_and_then_chains_ok(self) -> None:
        """and_then chains another Result-producing step."""
        result = Result.ok(3).and_then(lambda x: Result.ok(x + 1))

        assert result.value == 4

    def test_and_then_short_circuits_err(self) -> None:
        """and_then does not call fn on Err."""
        called = []
        result = Result.err("stop").and_then(lambda x: called.append(x) or Result.ok(x))

        assert result.is_err
        assert called == []


class TestClampUnit:
    """Test clamp_unit score clipping."""

    @pytest.mark.parametrize(
        ("value", "expected"),
        [(-0.5, 0.0), (0.0, 0.0), (0.42, 0.42), (1.0, 1.0), (7, 1.0)],
    )
    def test_clamps_into_unit_interval(self, value: float, expected: float) -> None:
        """Values outside [0, 1] are clipped to the nearest bound."""
        assert clamp_unit(value) == expected

    def test_nan_is_rejected(self) -> None:
        """NaN cannot be ordered and raises ValueError."""
        with pytest.raises(ValueError, match="NaN"):
            clamp_unit(float("nan"))
