"""Versioned routing configuration.

The model registry and the live strategy parameters travel together as
one immutable ``RoutingConfig`` snapshot. Requests read a snapshot once
and use it for their whole lifetime; GEPA adoptions build a new snapshot
and swap it in atomically, so a request never sees half an update.
"""

from __future__ import annotations

from collections import deque
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
import threading
from typing import Any

from pydantic import BaseModel, Field, ValidationError as PydanticValidationError

from arbiter.config.models import ArbiterConfig
from arbiter.core.errors import ValidationError
from arbiter.observability.logging import get_logger
from arbiter.routing.models import Domain, ModelCandidate, parse_domain

log = get_logger(__name__)

CONFIG_HISTORY_SIZE = 50


class StrategyParameters(BaseModel, frozen=True):
    """Tunable knobs read by ModelSelector and the quality gate.

    Attributes:
        max_chain_length: Upper bound on tiers per cascade (1-3).
        acceptance_threshold: Judge score needed to accept a tier's output.
        quality_floor_offset: Added to every classification's required quality.
        tier1_max_complexity: Above this complexity, tier-1 candidates are skipped.
        domain_min_quality: Per-domain floor for required quality.
    """

    max_chain_length: int = Field(default=3, ge=1, le=3)
    acceptance_threshold: float = Field(default=0.75, ge=0.0, le=1.0)
    quality_floor_offset: float = Field(default=0.0, ge=-0.5, le=0.5)
    tier1_max_complexity: float = Field(default=1.0, ge=0.0, le=1.0)
    domain_min_quality: dict[Domain, float] = Field(default_factory=dict)

    def merged(self, overrides: Mapping[str, Any]) -> StrategyParameters:
        """Return a copy with ``overrides`` applied.

        Unknown keys are ignored; ``domain_min_quality`` entries are merged
        per domain rather than replaced wholesale.

        Raises:
            ValidationError: If an override is out of range.
        """
        known = {k: v for k, v in overrides.items() if k in type(self).model_fields}
        ignored = sorted(set(overrides) - set(known))
        if ignored:
            log.debug("routing.parameters.ignored", keys=ignored)

        data = self.model_dump()
        try:
            if "domain_min_quality" in known:
                floors = dict(data["domain_min_quality"])
                for domain, floor in dict(known.pop("domain_min_quality")).items():
                    floors[parse_domain(domain)] = floor
                data["domain_min_quality"] = floors
            data.update(known)
            return StrategyParameters.model_validate(data)
        except (PydanticValidationError, TypeError, ValueError) as e:
            raise ValidationError(
                f"Invalid strategy parameters: {e}",
                field="parameters",
                details={"overrides": dict(overrides)},
            ) from e


@dataclass(frozen=True, slots=True)
class RoutingConfig:
    """An immutable snapshot of the registry plus strategy parameters.

    Attributes:
        version: Monotonic version, bumped on every swap.
        candidates: The model registry.
        parameters: Live strategy parameters.
        source: What produced this version ("config", "gepa:<experiment id>").
    """

    version: int
    candidates: tuple[ModelCandidate, ...]
    parameters: StrategyParameters
    source: str = "config"
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    @classmethod
    def from_config(cls, config: ArbiterConfig) -> RoutingConfig:
        routing = config.routing
        return cls(
            version=1,
            candidates=tuple(ModelCandidate.from_config(c) for c in config.registry),
            parameters=StrategyParameters(
                max_chain_length=routing.max_chain_length,
                acceptance_threshold=routing.acceptance_threshold,
                quality_floor_offset=routing.quality_floor_offset,
                tier1_max_complexity=routing.tier1_max_complexity,
                domain_min_quality={
                    parse_domain(d): q for d, q in routing.domain_min_quality.items()
                },
            ),
        )

    def with_parameters(self, overrides: Mapping[str, Any], *, source: str) -> RoutingConfig:
        """A request-local view with ``overrides`` applied (version unchanged)."""
        return RoutingConfig(
            version=self.version,
            candidates=self.candidates,
            parameters=self.parameters.merged(overrides),
            source=source,
        )

    def premium_cost_per_1k(self) -> float:
        """Price of the most expensive candidate, the 'always premium' baseline."""
        return max(c.cost_per_1k_tokens for c in self.candidates)


class RoutingConfigHolder:
    """Holds the current RoutingConfig and swaps it atomically.

    Example:
        holder = RoutingConfigHolder(RoutingConfig.from_config(config))
        snapshot = holder.snapshot()
        holder.apply({"acceptance_threshold": 0.85}, source="gepa:exp-1")
    """

    def __init__(self, initial: RoutingConfig) -> None:
        self._current = initial
        self._lock = threading.Lock()
        self._history: deque[RoutingConfig] = deque([initial], maxlen=CONFIG_HISTORY_SIZE)

    def snapshot(self) -> RoutingConfig:
        return self._current

    @property
    def version(self) -> int:
        return self._current.version

    def apply(self, overrides: Mapping[str, Any], *, source: str) -> RoutingConfig:
        """Merge ``overrides`` into the live parameters as a new version."""
        with self._lock:
            current = self._current
            updated = RoutingConfig(
                version=current.version + 1,
                candidates=current.candidates,
                parameters=current.parameters.merged(overrides),
                source=source,
            )
            self._current = updated
            self._history.append(updated)

        log.info(
            "routing.config.swapped",
            version=updated.version,
            source=source,
            parameters=updated.parameters.model_dump(mode="json"),
        )
        return updated

    def history(self) -> tuple[RoutingConfig, ...]:
        """The most recent versions, oldest first."""
        return tuple(self._history)
