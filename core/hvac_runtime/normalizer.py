"""
Trait Normalizer

Maps vendor thermostat payloads (SDM push envelopes, decoded poll results,
test-harness JSON) into a single CanonicalReading. Trait keys changed across
integration versions, so every trait is looked up by its fully-qualified key
first and its short alias second.
"""

import base64
import binascii
import json
import logging
import math
from datetime import datetime

from .exceptions import MalformedEvent
from .models import (
    CanonicalReading,
    Connectivity,
    EquipmentStatus,
    ThermostatMode,
    parse_timestamp,
)

logger = logging.getLogger(__name__)

TRAIT_PREFIX = "sdm.devices.traits."

# Vendor mode names that map onto a canonical mode
MODE_ALIASES = {
    "AUTO": ThermostatMode.HEATCOOL,
    "HEAT_COOL": ThermostatMode.HEATCOOL,
}


def parse_push_envelope(body) -> list[dict]:
    """Decode an ingress body into a list of raw device events.

    Accepts:
    - Pub/Sub push: {"message": {"data": <base64 JSON>}}
    - Direct SDM event JSON: {"resourceUpdate": {...}, "eventTime": ...}
    - Already normalized batch: {"events": [...], "userId": ...}

    Returns:
        List of raw events with deviceName, traits, timestamp, userId, eventId

    Raises:
        MalformedEvent: If the body cannot be decoded
    """
    if not isinstance(body, dict):
        raise MalformedEvent(f"Unsupported ingress body type: {type(body).__name__}")

    message = body.get("message")
    if isinstance(message, dict) and message.get("data"):
        try:
            decoded = base64.b64decode(message["data"], validate=True).decode("utf-8")
            parsed = json.loads(decoded)
        except (binascii.Error, UnicodeDecodeError, json.JSONDecodeError) as e:
            raise MalformedEvent(f"Cannot decode Pub/Sub message data: {e}")
        if not isinstance(parsed, dict):
            raise MalformedEvent("Pub/Sub message data is not a JSON object")
        if not parsed.get("eventId") and message.get("messageId"):
            parsed["eventId"] = message["messageId"]
        return _events_from_sdm(parsed)

    if isinstance(body.get("resourceUpdate"), dict):
        return _events_from_sdm(body)

    if isinstance(body.get("events"), list):
        user_id = body.get("userId")
        events = []
        for event in body["events"]:
            if not isinstance(event, dict):
                raise MalformedEvent("Batch entries must be JSON objects")
            if user_id and not event.get("userId"):
                event = {**event, "userId": user_id}
            events.append(event)
        return events

    raise MalformedEvent("Unrecognized ingress body")


def _events_from_sdm(parsed: dict) -> list[dict]:
    update = parsed.get("resourceUpdate") or {}
    name = update.get("name")
    if not name:
        # e.g. relationUpdate events carry no device traits
        logger.debug("SDM event without resourceUpdate.name ignored")
        return []
    return [{
        "deviceName": name,
        "traits": update.get("traits") or {},
        "timestamp": parsed.get("eventTime") or parsed.get("timestamp"),
        "userId": parsed.get("userId"),
        "eventId": parsed.get("eventId"),
    }]


def device_id_from_name(name: str) -> str:
    """Trailing segment of a vendor resource path."""
    name = name.strip().rstrip("/")
    if "/devices/" in name:
        return name.split("/devices/", 1)[1].split("/")[0]
    return name.split("/")[-1]


def _trait(traits: dict, short_name: str) -> dict | None:
    """Look up a trait by fully-qualified key, then short alias."""
    for key in (TRAIT_PREFIX + short_name, short_name):
        value = traits.get(key)
        if value is not None:
            return value if isinstance(value, dict) else None
    return None


def _field(traits: dict, short_name: str, attribute: str):
    """First present attribute across the trait key aliases."""
    for key in (TRAIT_PREFIX + short_name, short_name):
        trait = traits.get(key)
        if isinstance(trait, dict) and trait.get(attribute) is not None:
            return trait[attribute]
    return None


def _number(value) -> float | None:
    """Finite number rounded to 2 decimals, else None."""
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    if not math.isfinite(value):
        return None
    return round(float(value), 2)


def _text(value) -> str | None:
    """Non-empty string, else None."""
    return value if isinstance(value, str) and value else None


def _enum(enum_cls, value, default):
    if not isinstance(value, str):
        return default
    try:
        return enum_cls(value.strip().upper())
    except ValueError:
        return default


def _mode(value) -> ThermostatMode:
    if isinstance(value, str) and value.strip().upper() in MODE_ALIASES:
        return MODE_ALIASES[value.strip().upper()]
    return _enum(ThermostatMode, value, ThermostatMode.UNKNOWN)


def _equipment_status(value) -> EquipmentStatus | None:
    if value is None:
        return None
    return _enum(EquipmentStatus, value, EquipmentStatus.UNKNOWN)


def _fan_on(traits: dict) -> bool | None:
    fan = _trait(traits, "Fan")
    if fan is None:
        return None
    timer_mode = _field(traits, "Fan", "timerMode")
    return isinstance(timer_mode, str) and timer_mode.upper() == "ON"


def normalize_event(
    raw: dict,
    identity_hint: str | None = None,
    received_at: datetime | None = None,
) -> CanonicalReading:
    """Normalize one raw device event into a CanonicalReading.

    Args:
        raw: Raw event (see parse_push_envelope) or SDM event JSON
        identity_hint: Device name/id to use when the payload carries none
        received_at: Ingress-assigned time used when the payload has no timestamp

    Raises:
        MalformedEvent: If no device identity or no timestamp can be determined
    """
    if not isinstance(raw, dict):
        raise MalformedEvent(f"Event must be a mapping, got {type(raw).__name__}")

    update = raw.get("resourceUpdate") if isinstance(raw.get("resourceUpdate"), dict) else {}
    name = update.get("name") or raw.get("deviceName") or raw.get("name") or identity_hint
    if not isinstance(name, str) or not name.strip():
        raise MalformedEvent("Event has no device identity")
    device_id = device_id_from_name(name)
    if not device_id:
        raise MalformedEvent(f"Cannot derive device id from {name!r}")

    observed_at = parse_timestamp(raw.get("timestamp")) or parse_timestamp(raw.get("eventTime"))
    if observed_at is None:
        observed_at = parse_timestamp(received_at)
    if observed_at is None:
        raise MalformedEvent(f"Event for {device_id} has no usable timestamp")

    traits = update.get("traits") if update else raw.get("traits")
    if not isinstance(traits, dict):
        traits = {}

    room = _field(traits, "Room", "name") or _field(traits, "Info", "customName")
    connectivity = _enum(
        Connectivity, _field(traits, "Connectivity", "status"), Connectivity.UNKNOWN
    )

    return CanonicalReading(
        device_id=device_id,
        observed_at=observed_at,
        device_name=name,
        user_id=raw.get("userId"),
        thermostat_mode=_mode(_field(traits, "ThermostatMode", "mode")),
        equipment_status_raw=_equipment_status(_field(traits, "ThermostatHvac", "status")),
        fan_on=_fan_on(traits),
        current_temp_c=_number(_field(traits, "Temperature", "ambientTemperatureCelsius")),
        cool_setpoint_c=_number(_field(traits, "ThermostatTemperatureSetpoint", "coolCelsius")),
        heat_setpoint_c=_number(_field(traits, "ThermostatTemperatureSetpoint", "heatCelsius")),
        connectivity=connectivity,
        room_name=room if isinstance(room, str) else None,
        humidity_percent=_number(_field(traits, "Humidity", "ambientHumidityPercent")),
        eco_mode=_text(_field(traits, "ThermostatEco", "mode")),
        temperature_scale=_text(_field(traits, "Settings", "temperatureScale")),
        source_event_id=raw.get("eventId"),
    )


def reading_from_device_resource(
    device: dict,
    observed_at: datetime,
    user_id: str | None = None,
    source_event_id: str | None = None,
) -> CanonicalReading:
    """Build a reading from a device resource returned by the device-list API."""
    if not isinstance(device, dict):
        raise MalformedEvent("Device resource must be a mapping")
    raw = {
        "deviceName": device.get("name"),
        "traits": dict(device.get("traits") or {}),
        "timestamp": observed_at,
        "userId": user_id,
        "eventId": source_event_id,
    }
    relations = device.get("parentRelations") or []
    if relations and not _trait(raw["traits"], "Room") and not _trait(raw["traits"], "Info"):
        display_name = relations[0].get("displayName") if isinstance(relations[0], dict) else None
        if display_name:
            raw["traits"]["Room"] = {"name": display_name}
    return normalize_event(raw)
