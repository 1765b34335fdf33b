"""CurriculumManager: per-user difficulty levels.

Transition Rules (evaluated after each decision with feedback):
- Promotion: promotion_streak consecutive successes AND rolling success
  rate >= promotion_rate -> advance one level
- Demotion: demotion_streak consecutive failures AND rolling success
  rate < demotion_rate -> drop one level
- Levels saturate at basic and expert
- A transition clears the streaks and the rolling window, so a
  condition that stays true never moves a user two levels at once

The current level caps the required quality and estimated tokens the
classifier assigns, which caps the cost of the chains that get built.
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass, replace
from datetime import UTC, datetime
from typing import TYPE_CHECKING

from arbiter.config.models import CurriculumConfig, LevelCeiling
from arbiter.learning.models import CurriculumLevel
from arbiter.observability.logging import get_logger
from arbiter.routing.models import Level

if TYPE_CHECKING:
    from arbiter.persistence.store import ArbiterStore

log = get_logger(__name__)


@dataclass(frozen=True, slots=True)
class CurriculumTransition:
    """Outcome of recording one result."""

    previous: Level
    state: CurriculumLevel

    @property
    def current(self) -> Level:
        return self.state.level

    @property
    def promoted(self) -> bool:
        return self.current.rank > self.previous.rank

    @property
    def demoted(self) -> bool:
        return self.current.rank < self.previous.rank


def apply_outcome(
    state: CurriculumLevel, success: bool, config: CurriculumConfig
) -> CurriculumLevel:
    """Pure transition function: the state after one more outcome."""
    window = (*state.window, success)[-config.window_size :]
    if success:
        successes, failures = state.consecutive_successes + 1, 0
    else:
        successes, failures = 0, state.consecutive_failures + 1

    updated = replace(
        state,
        consecutive_successes=successes,
        consecutive_failures=failures,
        window=window,
        updated_at=datetime.now(UTC),
    )
    rate = updated.success_rate

    if (
        successes >= config.promotion_streak
        and rate >= config.promotion_rate
        and state.level != Level.EXPERT
    ):
        return replace(
            updated,
            level=state.level.promoted(),
            consecutive_successes=0,
            consecutive_failures=0,
            window=(),
        )

    if (
        failures >= config.demotion_streak
        and rate < config.demotion_rate
        and state.level != Level.BASIC
    ):
        return replace(
            updated,
            level=state.level.demoted(),
            consecutive_successes=0,
            consecutive_failures=0,
            window=(),
        )

    return updated


class CurriculumManager:
    """Tracks each user's curriculum level.

    Updates for one user are serialised with a per-user lock; different
    users never contend. A lock lives only while someone holds or awaits it.

    Example:
        manager = CurriculumManager(store, config.curriculum)
        transition = await manager.record_outcome("u1", success=True)
        if transition.promoted:
            ...
    """

    def __init__(self, store: ArbiterStore, config: CurriculumConfig) -> None:
        self._store = store
        self._config = config
        self._locks: dict[str, tuple[asyncio.Lock, int]] = {}

    async def get_level(self, user_id: str) -> CurriculumLevel:
        state = await self._store.get_curriculum(user_id)
        return state or CurriculumLevel(user_id=user_id)

    def ceiling(self, level: Level) -> LevelCeiling | None:
        return self._config.ceilings.get(level.value)

    @asynccontextmanager
    async def _user_lock(self, user_id: str) -> AsyncIterator[None]:
        lock, users = self._locks.get(user_id, (asyncio.Lock(), 0))
        self._locks[user_id] = (lock, users + 1)
        try:
            async with lock:
                yield
        finally:
            lock, users = self._locks[user_id]
            if users == 1:
                del self._locks[user_id]
            else:
                self._locks[user_id] = (lock, users - 1)

    async def record_outcome(self, user_id: str, success: bool) -> CurriculumTransition:
        async with self._user_lock(user_id):
            state = await self.get_level(user_id)
            updated = apply_outcome(state, success, self._config)
            await self._store.save_curriculum(updated)

        transition = CurriculumTransition(previous=state.level, state=updated)
        if transition.promoted or transition.demoted:
            log.info(
                "curriculum.level.promoted" if transition.promoted else "curriculum.level.demoted",
                user_id=user_id,
                previous=state.level.value,
                level=updated.level.value,
            )
        else:
            log.debug(
                "curriculum.outcome.recorded",
                user_id=user_id,
                success=success,
                level=updated.level.value,
                success_rate=round(updated.success_rate, 3),
            )
        return transition
