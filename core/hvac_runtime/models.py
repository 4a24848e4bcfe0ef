"""
HVAC Runtime Data Models

Canonical reading, per-device session state and runtime session records.
All timestamps are timezone-aware UTC datetimes.
"""

import hashlib
import json
from dataclasses import asdict, dataclass, field, fields
from datetime import datetime, timezone
from enum import Enum


def now_utc() -> datetime:
    """Get current time as timezone-aware UTC datetime."""
    return datetime.now(timezone.utc)


def parse_timestamp(value) -> datetime | None:
    """Parse an ISO string or epoch milliseconds into an aware UTC datetime."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, datetime):
        ts = value
    elif isinstance(value, (int, float)):
        try:
            ts = datetime.fromtimestamp(value / 1000.0, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return None
    elif isinstance(value, str):
        text = value.strip()
        if not text:
            return None
        # Python < 3.11 does not accept the trailing Z
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            ts = datetime.fromisoformat(text)
        except ValueError:
            return None
    else:
        return None

    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts.astimezone(timezone.utc)


def _iso(ts: datetime | None) -> str | None:
    return ts.isoformat() if ts else None


class ThermostatMode(str, Enum):
    OFF = "OFF"
    HEAT = "HEAT"
    COOL = "COOL"
    HEATCOOL = "HEATCOOL"
    UNKNOWN = "UNKNOWN"

    @property
    def can_cool(self) -> bool:
        return self in (ThermostatMode.COOL, ThermostatMode.HEATCOOL)

    @property
    def can_heat(self) -> bool:
        return self in (ThermostatMode.HEAT, ThermostatMode.HEATCOOL)


class EquipmentStatus(str, Enum):
    HEATING = "HEATING"
    COOLING = "COOLING"
    OFF = "OFF"
    UNKNOWN = "UNKNOWN"


class Connectivity(str, Enum):
    ONLINE = "ONLINE"
    OFFLINE = "OFFLINE"
    UNKNOWN = "UNKNOWN"


class EquipmentLabel(str, Enum):
    """What is currently running."""

    OFF = "off"
    HEAT = "heat"
    COOL = "cool"
    FAN = "fan"

    @property
    def hvac_mode(self) -> str:
        """Downstream HVAC mode name (HEATING/COOLING/FAN/OFF)."""
        return {
            EquipmentLabel.HEAT: "HEATING",
            EquipmentLabel.COOL: "COOLING",
            EquipmentLabel.FAN: "FAN",
        }.get(self, "OFF")


class TransitionKind(str, Enum):
    SESSION_STARTED = "session_started"
    SESSION_ENDED = "session_ended"
    SESSION_SWITCHED = "session_switched"


@dataclass(frozen=True)
class CanonicalReading:
    """One normalized telemetry event for a single device."""

    device_id: str
    observed_at: datetime
    device_name: str | None = None
    user_id: str | None = None
    thermostat_mode: ThermostatMode = ThermostatMode.UNKNOWN
    equipment_status_raw: EquipmentStatus | None = None
    fan_on: bool | None = None
    current_temp_c: float | None = None
    cool_setpoint_c: float | None = None
    heat_setpoint_c: float | None = None
    connectivity: Connectivity = Connectivity.UNKNOWN
    room_name: str | None = None
    humidity_percent: float | None = None
    eco_mode: str | None = None
    temperature_scale: str | None = None
    source_event_id: str | None = None

    @property
    def is_reachable(self) -> bool:
        return self.connectivity != Connectivity.OFFLINE

    def fingerprint(self) -> str:
        """Stable hash of the reading contents (source event id excluded)."""
        data = {
            f.name: getattr(self, f.name)
            for f in fields(self)
            if f.name != "source_event_id"
        }
        data["observed_at"] = self.observed_at.isoformat()
        encoded = json.dumps(data, sort_keys=True, default=str)
        return hashlib.sha1(encoded.encode("utf-8")).hexdigest()


@dataclass
class DeviceSessionState:
    """Long-lived per-device state owned by the session state machine."""

    device_id: str
    is_running: bool = False
    equipment_label: EquipmentLabel = EquipmentLabel.OFF
    session_id: str | None = None
    started_at: datetime | None = None
    start_temp_c: float | None = None

    # Last known good snapshot, used for sticky fallback and trend inference
    last_temp_c: float | None = None
    last_equipment_label: EquipmentLabel = EquipmentLabel.OFF
    last_mode: ThermostatMode = ThermostatMode.UNKNOWN
    last_reachable: bool = True
    last_observed_at: datetime | None = None
    last_active_at: datetime | None = None
    last_heat_setpoint_c: float | None = None
    last_cool_setpoint_c: float | None = None
    last_fingerprint: str | None = None

    tail_until: datetime | None = None

    device_name: str | None = None
    user_id: str | None = None
    room_name: str | None = None

    def begin_session(self, session_id: str, started_at: datetime, label: EquipmentLabel,
                      start_temp_c: float | None) -> None:
        self.is_running = True
        self.session_id = session_id
        self.started_at = started_at
        self.equipment_label = label
        self.start_temp_c = start_temp_c

    def end_session(self) -> None:
        self.is_running = False
        self.session_id = None
        self.started_at = None
        self.start_temp_c = None
        self.equipment_label = EquipmentLabel.OFF
        self.tail_until = None

    def to_dict(self) -> dict:
        data = asdict(self)
        for key in ("started_at", "last_observed_at", "last_active_at", "tail_until"):
            data[key] = _iso(getattr(self, key))
        data["equipment_label"] = self.equipment_label.value
        data["last_equipment_label"] = self.last_equipment_label.value
        data["last_mode"] = self.last_mode.value
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "DeviceSessionState":
        known = {f.name for f in fields(cls)}
        converted = {k: v for k, v in data.items() if k in known}
        for key in ("started_at", "last_observed_at", "last_active_at", "tail_until"):
            converted[key] = parse_timestamp(converted.get(key))
        converted["equipment_label"] = EquipmentLabel(converted.get("equipment_label") or "off")
        converted["last_equipment_label"] = EquipmentLabel(
            converted.get("last_equipment_label") or "off"
        )
        converted["last_mode"] = ThermostatMode(converted.get("last_mode") or "UNKNOWN")
        return cls(**converted)


@dataclass
class RuntimeSessionRecord:
    """A persisted runtime session, open while ended_at is None."""

    device_id: str
    session_id: str
    equipment_label: EquipmentLabel
    started_at: datetime
    ended_at: datetime | None = None
    duration_seconds: int | None = None
    start_temp_c: float | None = None
    end_temp_c: float | None = None
    heat_setpoint_c: float | None = None
    cool_setpoint_c: float | None = None
    discarded: bool = False  # outside the valid runtime bounds, never reported
    abandoned: bool = False  # force-closed, duration unknown

    @property
    def is_open(self) -> bool:
        return self.ended_at is None

    def to_dict(self) -> dict:
        data = asdict(self)
        data["equipment_label"] = self.equipment_label.value
        data["started_at"] = _iso(self.started_at)
        data["ended_at"] = _iso(self.ended_at)
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "RuntimeSessionRecord":
        known = {f.name for f in fields(cls)}
        converted = {k: v for k, v in data.items() if k in known}
        converted["equipment_label"] = EquipmentLabel(converted["equipment_label"])
        converted["started_at"] = parse_timestamp(converted["started_at"])
        converted["ended_at"] = parse_timestamp(converted.get("ended_at"))
        converted["discarded"] = bool(converted.get("discarded", False))
        converted["abandoned"] = bool(converted.get("abandoned", False))
        return cls(**converted)


@dataclass
class Transition:
    """State-transition emission from the session state machine."""

    kind: TransitionKind
    device_id: str
    at: datetime
    ended: RuntimeSessionRecord | None = None
    started: RuntimeSessionRecord | None = None
    previous_label: EquipmentLabel = EquipmentLabel.OFF


@dataclass
class ProcessResult:
    """Outcome of applying one reading (or timer tick) to a device."""

    state: DeviceSessionState
    transition: Transition | None = None
    discarded: list[RuntimeSessionRecord] = field(default_factory=list)
    abandoned: list[RuntimeSessionRecord] = field(default_factory=list)
    previous_label: EquipmentLabel = EquipmentLabel.OFF
    duplicate: bool = False
    out_of_order: bool = False
