"""
Runtime Session State Machine

Turns normalized readings into equipment sessions per device:
Idle -> Active(label) -> Idle, with Active -> Active label switches.

Per-device state is exclusively owned by this machine. Callers must serialize
calls for the same device (see engine.RuntimeEngine); different devices are
independent.
"""

import logging
import math
import uuid
from datetime import datetime, timedelta
from typing import Callable

from .exceptions import OutOfOrderEvent, RunawaySession
from .inference import infer_activity
from .models import (
    CanonicalReading,
    Connectivity,
    DeviceSessionState,
    EquipmentLabel,
    EquipmentStatus,
    ProcessResult,
    RuntimeSessionRecord,
    ThermostatMode,
    Transition,
    TransitionKind,
)
from .settings import EngineSettings

logger = logging.getLogger(__name__)

EXPLICIT_STATUSES = (EquipmentStatus.HEATING, EquipmentStatus.COOLING, EquipmentStatus.OFF)


def runtime_seconds(started_at: datetime, ended_at: datetime) -> int:
    """Whole seconds between two instants, halves rounded up."""
    return int(math.floor((ended_at - started_at).total_seconds() + 0.5))


class SessionStateMachine:
    """Per-device runtime session classifier."""

    def __init__(
        self,
        settings: EngineSettings,
        session_id_factory: Callable[[], str] | None = None,
    ):
        self.settings = settings
        self._states: dict[str, DeviceSessionState] = {}
        self._new_session_id = session_id_factory or (lambda: str(uuid.uuid4()))

        self._fan_tail = timedelta(milliseconds=settings.fan_tail_ms)
        self._recency_window = timedelta(milliseconds=settings.recency_window_ms)
        self._session_timeout = timedelta(milliseconds=settings.session_timeout_ms)

    # ------------------------------------------------------------------
    # State store
    # ------------------------------------------------------------------

    def get_state(self, device_id: str) -> DeviceSessionState | None:
        return self._states.get(device_id)

    def load_state(self, state: DeviceSessionState) -> None:
        """Install a state (e.g. recovered from the store)."""
        self._states[state.device_id] = state

    def remove_state(self, device_id: str) -> DeviceSessionState | None:
        return self._states.pop(device_id, None)

    def states(self) -> list[DeviceSessionState]:
        # Snapshot: other devices may be added from worker threads meanwhile
        return list(self._states.copy().values())

    def new_session_id(self) -> str:
        return self._new_session_id()

    def _get_or_create(self, device_id: str) -> DeviceSessionState:
        state = self._states.get(device_id)
        if state is None:
            state = DeviceSessionState(device_id=device_id)
            self._states[device_id] = state
            logger.info(f"New device tracked: {device_id}")
        return state

    # ------------------------------------------------------------------
    # Event processing
    # ------------------------------------------------------------------

    def process(self, device_id: str, reading: CanonicalReading) -> ProcessResult:
        """Apply one reading to the device and return the resulting emission.

        Args:
            device_id: Device key (normally reading.device_id)
            reading: Normalized reading

        Returns:
            ProcessResult with the updated state and at most one transition
        """
        state = self._get_or_create(device_id)
        now = reading.observed_at
        fingerprint = reading.fingerprint()

        if state.last_observed_at == now and state.last_fingerprint == fingerprint:
            logger.debug(f"{device_id}: duplicate event at {now.isoformat()} ignored")
            return ProcessResult(state=state, duplicate=True, previous_label=state.equipment_label)

        if state.last_observed_at is not None and now < state.last_observed_at:
            self._apply_out_of_order(state, reading)
            error = OutOfOrderEvent(
                f"{device_id}: event at {now.isoformat()} is older than "
                f"{state.last_observed_at.isoformat()}, unset fields filled, transitions suppressed"
            )
            logger.warning(str(error))
            return ProcessResult(state=state, out_of_order=True, previous_label=state.equipment_label)

        result = ProcessResult(state=state, previous_label=state.equipment_label)
        self._expire(state, now, result, end_temp_c=reading.current_temp_c)

        genuine_label, explicit = self._classify(state, reading)
        label = self._resolve_label(state, now, genuine_label, explicit)

        if label != EquipmentLabel.OFF and not state.is_running:
            self._start(state, reading, label, result)
        elif label == EquipmentLabel.OFF and state.is_running:
            self._end(state, now, reading.current_temp_c, result)
        elif state.is_running and label != state.equipment_label:
            logger.info(f"{device_id}: {state.equipment_label.value} -> {label.value} switch")
            if self._end(state, now, reading.current_temp_c, result, keep_tail=True):
                self._start(state, reading, label, result)

        self._remember(state, reading, label, fingerprint)
        return result

    def expire(self, device_id: str, now: datetime) -> ProcessResult | None:
        """Timer tick: close elapsed fan tails and runaway sessions.

        Returns:
            ProcessResult, or None if the device is unknown
        """
        state = self._states.get(device_id)
        if state is None:
            return None
        result = ProcessResult(state=state, previous_label=state.equipment_label)
        self._expire(state, now, result, end_temp_c=state.last_temp_c)
        return result

    def _expire(self, state: DeviceSessionState, now: datetime, result: ProcessResult,
                end_temp_c: float | None) -> None:
        if not state.is_running:
            return

        if now - state.started_at > self._session_timeout:
            record = self._session_record(state, now, end_temp_c, duration=None)
            record.abandoned = True
            hours = (now - state.started_at).total_seconds() / 3600
            logger.warning(str(RunawaySession(
                f"{state.device_id}: session {state.session_id} running {hours:.1f}h, force-closed"
            )))
            state.end_session()
            _advance(state, now)
            result.abandoned.append(record)
            return

        if state.tail_until is not None and now >= state.tail_until:
            tail_until = state.tail_until
            logger.info(f"{state.device_id}: fan tail elapsed at {tail_until.isoformat()}")
            if self._end(state, tail_until, end_temp_c, result):
                _advance(state, tail_until)

    def _classify(self, state: DeviceSessionState, reading: CanonicalReading) -> tuple[EquipmentLabel, bool]:
        """Label backed by this reading alone, and whether the status was explicit."""
        raw = reading.equipment_status_raw
        explicit = raw in EXPLICIT_STATUSES

        if explicit:
            status = raw
        else:
            mode = reading.thermostat_mode
            if mode == ThermostatMode.UNKNOWN:
                mode = state.last_mode
            status = infer_activity(
                mode,
                reading.current_temp_c,
                _first(reading.cool_setpoint_c, state.last_cool_setpoint_c),
                _first(reading.heat_setpoint_c, state.last_heat_setpoint_c),
                state.last_temp_c,
                self.settings,
            )

        if status == EquipmentStatus.HEATING:
            return EquipmentLabel.HEAT, explicit
        if status == EquipmentStatus.COOLING:
            return EquipmentLabel.COOL, explicit
        if reading.fan_on is True:
            return EquipmentLabel.FAN, explicit
        return EquipmentLabel.OFF, explicit

    def _resolve_label(self, state: DeviceSessionState, now: datetime,
                       genuine_label: EquipmentLabel, explicit: bool) -> EquipmentLabel:
        """Apply fan tail and sticky fallback on top of the genuine label."""
        if genuine_label != EquipmentLabel.OFF:
            state.tail_until = None
            state.last_active_at = now
            return genuine_label

        if not state.is_running:
            return EquipmentLabel.OFF

        if state.tail_until is not None:
            return EquipmentLabel.FAN

        if (
            not explicit
            and state.last_active_at is not None
            and now - state.last_active_at < self._recency_window
        ):
            logger.debug(f"{state.device_id}: no status, keeping {state.equipment_label.value}")
            return state.equipment_label

        if state.equipment_label in (EquipmentLabel.HEAT, EquipmentLabel.COOL) and self._fan_tail:
            state.tail_until = now + self._fan_tail
            logger.info(f"{state.device_id}: {state.equipment_label.value} stopped, "
                        f"fan tail until {state.tail_until.isoformat()}")
            return EquipmentLabel.FAN

        return EquipmentLabel.OFF

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def _start(self, state: DeviceSessionState, reading: CanonicalReading,
               label: EquipmentLabel, result: ProcessResult) -> None:
        now = reading.observed_at
        start_temp = _first(reading.current_temp_c, state.last_temp_c)
        state.begin_session(self.new_session_id(), now, label, start_temp)

        record = RuntimeSessionRecord(
            device_id=state.device_id,
            session_id=state.session_id,
            equipment_label=label,
            started_at=now,
            start_temp_c=start_temp,
            heat_setpoint_c=_first(reading.heat_setpoint_c, state.last_heat_setpoint_c),
            cool_setpoint_c=_first(reading.cool_setpoint_c, state.last_cool_setpoint_c),
        )
        logger.info(f"{state.device_id}: session {record.session_id} started ({label.value})")
        _emit(result, state.device_id, now, started=record)

    def _end(self, state: DeviceSessionState, ended_at: datetime, end_temp_c: float | None,
             result: ProcessResult, keep_tail: bool = False) -> bool:
        """Close the running session. Returns False if the close was suppressed."""
        if ended_at < state.started_at:
            logger.warning(str(OutOfOrderEvent(
                f"{state.device_id}: close at {ended_at.isoformat()} precedes session start, suppressed"
            )))
            return False

        duration = runtime_seconds(state.started_at, ended_at)
        record = self._session_record(state, ended_at, end_temp_c, duration)
        tail_until = state.tail_until
        state.end_session()
        if keep_tail:
            state.tail_until = tail_until

        if not self.settings.min_runtime_seconds <= duration <= self.settings.max_runtime_seconds:
            record.discarded = True
            result.discarded.append(record)
            logger.info(f"{state.device_id}: session {record.session_id} ({record.equipment_label.value}) "
                        f"lasted {duration}s, outside runtime bounds, discarded")
            return True

        logger.info(f"{state.device_id}: session {record.session_id} ended "
                    f"({record.equipment_label.value}, {duration}s)")
        _emit(result, state.device_id, ended_at, ended=record)
        return True

    def _session_record(self, state: DeviceSessionState, ended_at: datetime,
                        end_temp_c: float | None, duration: int | None) -> RuntimeSessionRecord:
        return RuntimeSessionRecord(
            device_id=state.device_id,
            session_id=state.session_id,
            equipment_label=state.equipment_label,
            started_at=state.started_at,
            ended_at=ended_at,
            duration_seconds=duration,
            start_temp_c=state.start_temp_c,
            end_temp_c=_first(end_temp_c, state.last_temp_c),
            heat_setpoint_c=state.last_heat_setpoint_c,
            cool_setpoint_c=state.last_cool_setpoint_c,
        )

    # ------------------------------------------------------------------
    # Last known good snapshot
    # ------------------------------------------------------------------

    def _remember(self, state: DeviceSessionState, reading: CanonicalReading,
                  label: EquipmentLabel, fingerprint: str) -> None:
        self._remember_fields(state, reading)
        if reading.current_temp_c is not None:
            state.last_temp_c = reading.current_temp_c
        if label != EquipmentLabel.OFF:
            state.last_equipment_label = label
        state.last_observed_at = reading.observed_at
        state.last_fingerprint = fingerprint

    @staticmethod
    def _apply_out_of_order(state: DeviceSessionState, reading: CanonicalReading) -> None:
        # Only fills what no newer event has set; temperature and timestamps are never touched
        if state.last_mode == ThermostatMode.UNKNOWN:
            state.last_mode = reading.thermostat_mode
        if state.last_heat_setpoint_c is None:
            state.last_heat_setpoint_c = reading.heat_setpoint_c
        if state.last_cool_setpoint_c is None:
            state.last_cool_setpoint_c = reading.cool_setpoint_c
        state.device_name = state.device_name or reading.device_name
        state.user_id = state.user_id or reading.user_id
        state.room_name = state.room_name or reading.room_name

    @staticmethod
    def _remember_fields(state: DeviceSessionState, reading: CanonicalReading) -> None:
        if reading.thermostat_mode != ThermostatMode.UNKNOWN:
            state.last_mode = reading.thermostat_mode
        if reading.heat_setpoint_c is not None:
            state.last_heat_setpoint_c = reading.heat_setpoint_c
        if reading.cool_setpoint_c is not None:
            state.last_cool_setpoint_c = reading.cool_setpoint_c
        if reading.connectivity != Connectivity.UNKNOWN:
            state.last_reachable = reading.is_reachable
        state.device_name = reading.device_name or state.device_name
        state.user_id = reading.user_id or state.user_id
        state.room_name = reading.room_name or state.room_name


def _advance(state: DeviceSessionState, instant: datetime) -> None:
    """Move the ordering watermark to a timer-driven close so later readings cannot predate it."""
    if state.last_observed_at is None or instant > state.last_observed_at:
        state.last_observed_at = instant


def _first(*values):
    for value in values:
        if value is not None:
            return value
    return None


def _emit(result: ProcessResult, device_id: str, at: datetime,
          ended: RuntimeSessionRecord | None = None,
          started: RuntimeSessionRecord | None = None) -> None:
    """Merge an ended/started record into the result's single transition."""
    transition = result.transition
    if transition is None:
        transition = Transition(
            kind=TransitionKind.SESSION_STARTED,
            device_id=device_id,
            at=at,
            previous_label=result.previous_label,
        )
        result.transition = transition
    if ended is not None:
        transition.ended = ended
    if started is not None:
        transition.started = started
        transition.at = started.started_at

    if transition.ended and transition.started:
        transition.kind = TransitionKind.SESSION_SWITCHED
    elif transition.ended:
        transition.kind = TransitionKind.SESSION_ENDED
    else:
        transition.kind = TransitionKind.SESSION_STARTED
