"""
Session Recovery

On start-up, reload devices that were mid-session when the process stopped.
Recent sessions are resumed under a fresh session id (the superseded record is
closed as abandoned); sessions older than the session timeout are force-closed
with unknown duration instead of being resumed.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta

from .exceptions import PersistenceFailure
from .models import DeviceSessionState, RuntimeSessionRecord
from .session_machine import SessionStateMachine
from .settings import EngineSettings
from .store import SessionStore

logger = logging.getLogger(__name__)


@dataclass
class RecoveryReport:
    resumed: list[str] = field(default_factory=list)
    closed: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)

    @property
    def total(self) -> int:
        return len(self.resumed) + len(self.closed) + len(self.failed)


def recover_sessions(
    store: SessionStore,
    machine: SessionStateMachine,
    settings: EngineSettings,
    now: datetime,
) -> RecoveryReport:
    """Load running sessions from the store into the state machine.

    Never raises: store failures are logged and the affected device starts idle
    (or, if only the record bookkeeping failed, is still resumed in memory).
    """
    report = RecoveryReport()
    try:
        running = store.load_running_devices()
    except PersistenceFailure as e:
        logger.error(f"Session recovery skipped, cannot load running devices: {e}")
        return report

    max_age = timedelta(milliseconds=settings.session_timeout_ms)
    for state in running:
        try:
            if state.started_at is None or now - state.started_at > max_age:
                _close_stale(store, state, now)
                report.closed.append(state.device_id)
            else:
                _resume(store, machine, state, now)
                report.resumed.append(state.device_id)
        except PersistenceFailure as e:
            logger.error(f"Session recovery failed for {state.device_id}: {e}")
            report.failed.append(state.device_id)

    if report.total:
        logger.info(
            f"Session recovery: {len(report.resumed)} resumed, "
            f"{len(report.closed)} stale closed, {len(report.failed)} failed"
        )
    return report


def _close_stale(store: SessionStore, state: DeviceSessionState, now: datetime) -> None:
    if state.session_id and state.started_at:
        age_hours = (now - state.started_at).total_seconds() / 3600
        logger.warning(f"{state.device_id}: session {state.session_id} is {age_hours:.1f}h old, closing")
        store.save_closed_record(RuntimeSessionRecord(
            device_id=state.device_id,
            session_id=state.session_id,
            equipment_label=state.equipment_label,
            started_at=state.started_at,
            ended_at=now,
            duration_seconds=None,
            start_temp_c=state.start_temp_c,
            end_temp_c=state.last_temp_c,
            heat_setpoint_c=state.last_heat_setpoint_c,
            cool_setpoint_c=state.last_cool_setpoint_c,
            abandoned=True,
        ))
    else:
        logger.warning(f"{state.device_id}: running flag without a session, resetting")
    state.end_session()
    store.upsert_device_state(state)


def _resume(store: SessionStore, machine: SessionStateMachine, state: DeviceSessionState,
            now: datetime) -> None:
    superseded = state.session_id
    state.session_id = machine.new_session_id()
    # In-memory state first: a failing store must not lose the running session
    machine.load_state(state)
    logger.info(
        f"{state.device_id}: resumed {state.equipment_label.value} session started "
        f"{state.started_at.isoformat()} as {state.session_id}"
    )

    if superseded:
        store.close_session_record(superseded, now, None, abandoned=True)
    store.insert_session_record(RuntimeSessionRecord(
        device_id=state.device_id,
        session_id=state.session_id,
        equipment_label=state.equipment_label,
        started_at=state.started_at,
        start_temp_c=state.start_temp_c,
        heat_setpoint_c=state.last_heat_setpoint_c,
        cool_setpoint_c=state.last_cool_setpoint_c,
    ))
    store.upsert_device_state(state)
