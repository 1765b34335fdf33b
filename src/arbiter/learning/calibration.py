"""Persistence of the classifier calibration shared by DPO and LIMI."""

from __future__ import annotations

from collections.abc import Callable
from typing import TYPE_CHECKING

from arbiter.routing.classifier import ClassifierCalibration

if TYPE_CHECKING:
    from arbiter.persistence.store import ArbiterStore

CALIBRATION_STATE_KEY = "classifier.calibration"

CalibrationListener = Callable[[ClassifierCalibration], None]


async def load_calibration(store: ArbiterStore) -> ClassifierCalibration:
    data = await store.get_state(CALIBRATION_STATE_KEY)
    return ClassifierCalibration.from_dict(data) if data else ClassifierCalibration()


async def save_calibration(store: ArbiterStore, calibration: ClassifierCalibration) -> None:
    await store.set_state(CALIBRATION_STATE_KEY, calibration.to_dict())
