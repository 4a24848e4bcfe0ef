"""
Outbound Payloads

Two downstream shapes are produced for every post:
- status webhook: camelCase device status for the dashboard
- core ingest: snake_case normalized event, wrapped in a batch by the sink
"""

import uuid
from datetime import datetime

from .models import (
    CanonicalReading,
    DeviceSessionState,
    EquipmentLabel,
    RuntimeSessionRecord,
    ThermostatMode,
)

RUNTIME_START = "START"
RUNTIME_END = "END"
RUNTIME_UPDATE = "UPDATE"

# Stable namespace so the same transition always maps to the same event id
EVENT_NAMESPACE = uuid.UUID("8f0c6a52-2a5e-4c53-9a64-1f6a0c0e7d41")


def c_to_f(celsius: float | None) -> float | None:
    """Celsius to Fahrenheit at 2-decimal resolution."""
    if celsius is None:
        return None
    return round(celsius * 9 / 5 + 32, 2)


def source_event_id(device_id: str, kind: str, observed_at: datetime, session_id: str | None = None) -> str:
    """Deterministic id for a downstream post (re-deliveries dedupe on it)."""
    key = f"{device_id}|{kind}|{observed_at.isoformat()}|{session_id or ''}"
    return str(uuid.uuid5(EVENT_NAMESPACE, key))


def _snapshot(reading: CanonicalReading, state: DeviceSessionState) -> tuple:
    """Reading values with the last known ones filled in for a partial event."""
    temp_c = reading.current_temp_c if reading.current_temp_c is not None else state.last_temp_c
    heat_c = reading.heat_setpoint_c if reading.heat_setpoint_c is not None else state.last_heat_setpoint_c
    cool_c = reading.cool_setpoint_c if reading.cool_setpoint_c is not None else state.last_cool_setpoint_c
    mode = reading.thermostat_mode if reading.thermostat_mode != ThermostatMode.UNKNOWN else state.last_mode
    return temp_c, heat_c, cool_c, mode


def _label_flags(label: EquipmentLabel) -> dict:
    return {
        "isHeating": label == EquipmentLabel.HEAT,
        "isCooling": label == EquipmentLabel.COOL,
        "isFanOnly": label == EquipmentLabel.FAN,
    }


def build_status_payload(
    reading: CanonicalReading,
    state: DeviceSessionState,
    label: EquipmentLabel,
    previous_label: EquipmentLabel,
    runtime_type: str,
    event_id: str,
    record: RuntimeSessionRecord | None = None,
) -> dict:
    """Status webhook payload.

    Args:
        reading: Reading that triggered the post
        state: Device state after processing
        label: Equipment label after processing
        previous_label: Equipment label before processing
        runtime_type: START, END or UPDATE
        event_id: Idempotency key (see source_event_id)
        record: Closed session record for END posts

    Returns:
        camelCase dict ready for JSON
    """
    runtime = record.duration_seconds if record is not None and runtime_type == RUNTIME_END else None
    temp_c, heat_c, cool_c, mode = _snapshot(reading, state)
    last_flags = _label_flags(previous_label)

    return {
        "userId": reading.user_id or state.user_id,
        "thermostatId": reading.device_id,
        "deviceName": reading.device_name or state.device_name,
        "roomName": reading.room_name or state.room_name,
        "runtimeType": runtime_type,
        "runtimeSeconds": runtime,
        "runtimeMinutes": round(runtime / 60) if runtime is not None else None,
        "isRuntimeEvent": runtime is not None,
        "sessionId": record.session_id if record is not None else state.session_id,
        "equipmentStatus": label.value,
        "hvacMode": label.hvac_mode,
        "thermostatMode": mode.value,
        "isHvacActive": label != EquipmentLabel.OFF,
        "isFanOnly": label == EquipmentLabel.FAN,
        "isReachable": reading.is_reachable,
        "currentTempC": temp_c,
        "currentTempF": c_to_f(temp_c),
        "heatSetpointC": heat_c,
        "heatSetpointF": c_to_f(heat_c),
        "coolSetpointC": cool_c,
        "coolSetpointF": c_to_f(cool_c),
        "humidity": reading.humidity_percent,
        "lastIsHeating": last_flags["isHeating"],
        "lastIsCooling": last_flags["isCooling"],
        "lastIsFanOnly": last_flags["isFanOnly"],
        "lastEquipmentStatus": previous_label.value,
        "timestamp": reading.observed_at.isoformat(),
        "eventId": event_id,
        "eventTimestamp": int(reading.observed_at.timestamp() * 1000),
    }


def build_ingest_event(
    reading: CanonicalReading,
    state: DeviceSessionState,
    label: EquipmentLabel,
    previous_label: EquipmentLabel,
    runtime_type: str,
    event_id: str,
    record: RuntimeSessionRecord | None = None,
) -> dict:
    """Core ingest event (one element of the events batch)."""
    runtime = record.duration_seconds if record is not None and runtime_type == RUNTIME_END else None
    temp_c, heat_c, cool_c, mode = _snapshot(reading, state)
    observed = reading.observed_at.isoformat()

    return {
        "device_key": reading.device_id,
        "device_id": reading.device_id,
        "user_id": reading.user_id or state.user_id,
        "device_name": reading.device_name or state.device_name,
        "connection_source": "nest",
        "source": "nest",
        "device_type": "thermostat",
        "equipment_status": label.hvac_mode,
        "previous_status": previous_label.hvac_mode,
        "hvac_mode": mode.value,
        "fan_on": reading.fan_on,
        "is_active": label != EquipmentLabel.OFF,
        "is_reachable": reading.is_reachable,
        "session_id": record.session_id if record is not None else state.session_id,
        "runtime_seconds": runtime,
        "runtime_type": runtime_type,
        "temperature_c": temp_c,
        "temperature_f": c_to_f(temp_c),
        "heat_setpoint_f": c_to_f(heat_c),
        "cool_setpoint_f": c_to_f(cool_c),
        "humidity": reading.humidity_percent,
        "eco_mode": reading.eco_mode is not None and reading.eco_mode.upper() != "OFF",
        "observed_at": observed,
        "recorded_at": observed,
        "source_event_id": event_id,
    }
