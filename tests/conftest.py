"""Shared fixtures for runtime tracker tests."""

import itertools
from datetime import datetime, timedelta, timezone

import pytest

from core.hvac_runtime.models import CanonicalReading, Connectivity, EquipmentStatus, ThermostatMode
from core.hvac_runtime.session_machine import SessionStateMachine
from core.hvac_runtime.settings import ENV_OVERRIDES, EngineSettings

T0 = datetime(2025, 1, 15, 12, 0, 0, tzinfo=timezone.utc)


def _at(seconds: float) -> datetime:
    return T0 + timedelta(seconds=seconds)


@pytest.fixture
def at():
    """Instant `seconds` after the test epoch."""
    return _at


@pytest.fixture
def settings():
    return EngineSettings()


@pytest.fixture
def session_ids():
    """Deterministic session id factory: session-1, session-2, ..."""
    counter = itertools.count(1)
    return lambda: f"session-{next(counter)}"


@pytest.fixture
def machine(settings, session_ids):
    return SessionStateMachine(settings, session_id_factory=session_ids)


@pytest.fixture
def make_reading():
    """Reading factory with sensible thermostat defaults."""

    def _make(seconds=0, status=EquipmentStatus.OFF, device_id="dev-1", **overrides):
        data = dict(
            device_id=device_id,
            observed_at=_at(seconds),
            device_name=f"enterprises/project-1/devices/{device_id}",
            user_id="user-1",
            thermostat_mode=ThermostatMode.HEATCOOL,
            equipment_status_raw=status,
            current_temp_c=21.0,
            heat_setpoint_c=20.0,
            cool_setpoint_c=24.0,
            connectivity=Connectivity.ONLINE,
        )
        data.update(overrides)
        return CanonicalReading(**data)

    return _make


@pytest.fixture
def clean_env(monkeypatch):
    """Remove configuration overrides that may be set in the test environment."""
    for name in ENV_OVERRIDES:
        monkeypatch.delenv(name, raising=False)
    return monkeypatch
