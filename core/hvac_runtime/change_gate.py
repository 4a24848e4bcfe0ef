"""
Telemetry/Change Gate

Decides whether a reading that caused no session transition is still worth an
"update" post downstream: a real temperature or setpoint change, or a heartbeat
once the minimum post interval has passed. Sensor jitter is absorbed.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta

from .models import CanonicalReading
from .settings import EngineSettings

logger = logging.getLogger(__name__)


@dataclass
class PostBaseline:
    """What was last posted downstream for a device."""

    posted_at: datetime
    temp_c: float | None
    heat_setpoint_c: float | None
    cool_setpoint_c: float | None


def _changed(previous: float | None, current: float | None, threshold: float) -> bool:
    if previous is None and current is None:
        return False
    if previous is None or current is None:
        return True
    return round(abs(current - previous), 2) >= threshold


class ChangeGate:
    """Per-device update throttle."""

    def __init__(self, settings: EngineSettings):
        self.settings = settings
        self._min_interval = timedelta(milliseconds=settings.min_post_interval_ms)
        self._baselines: dict[str, PostBaseline] = {}

    def should_emit(self, device_id: str, reading: CanonicalReading) -> bool:
        baseline = self._baselines.get(device_id)
        if baseline is None:
            return True

        # Values missing from a partial event are not a change
        if reading.current_temp_c is not None and _changed(
            baseline.temp_c, reading.current_temp_c, self.settings.temp_change_threshold
        ):
            logger.debug(f"{device_id}: temperature {baseline.temp_c} -> {reading.current_temp_c}")
            return True

        threshold = self.settings.setpoint_change_threshold
        if reading.heat_setpoint_c is not None and _changed(
            baseline.heat_setpoint_c, reading.heat_setpoint_c, threshold
        ):
            return True
        if reading.cool_setpoint_c is not None and _changed(
            baseline.cool_setpoint_c, reading.cool_setpoint_c, threshold
        ):
            return True

        return reading.observed_at - baseline.posted_at >= self._min_interval

    def mark_posted(self, device_id: str, reading: CanonicalReading) -> None:
        previous = self._baselines.get(device_id)
        self._baselines[device_id] = PostBaseline(
            posted_at=reading.observed_at,
            temp_c=_keep(reading.current_temp_c, previous, "temp_c"),
            heat_setpoint_c=_keep(reading.heat_setpoint_c, previous, "heat_setpoint_c"),
            cool_setpoint_c=_keep(reading.cool_setpoint_c, previous, "cool_setpoint_c"),
        )

    def forget(self, device_id: str) -> None:
        self._baselines.pop(device_id, None)

    def last_posted_at(self, device_id: str) -> datetime | None:
        baseline = self._baselines.get(device_id)
        return baseline.posted_at if baseline else None


def _keep(value, previous: PostBaseline | None, attribute: str):
    if value is not None or previous is None:
        return value
    return getattr(previous, attribute)
