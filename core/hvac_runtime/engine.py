"""
Runtime Session Engine

Wires normalizer, state machine and change gate together and fans results out
to the store and the downstream sinks.

Concurrency model: every device is a keyed actor. Its readings and timer ticks
go through one FIFO queue drained by a worker task that exists only while the
queue is non-empty, so per-device state is never touched concurrently. A
semaphore bounds how many devices are processed at once. Delivery and
persistence run on Dispatchers and never block classification.
"""

import asyncio
import logging
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta
from functools import partial
from typing import Callable

from .change_gate import ChangeGate
from .dispatcher import Dispatcher
from .exceptions import MalformedEvent, PersistenceFailure
from .models import (
    CanonicalReading,
    Connectivity,
    DeviceSessionState,
    EquipmentLabel,
    ProcessResult,
    RuntimeSessionRecord,
    now_utc,
)
from .normalizer import normalize_event, parse_push_envelope
from .payloads import (
    RUNTIME_END,
    RUNTIME_START,
    RUNTIME_UPDATE,
    build_ingest_event,
    build_status_payload,
    source_event_id,
)
from .recovery import RecoveryReport, recover_sessions
from .session_machine import SessionStateMachine
from .settings import EngineSettings, ServiceSettings, SinkSettings
from .sinks import CoreIngestSink, StatusWebhookSink
from .store import SessionStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ExpiryTick:
    """Timer tick queued behind a device's pending readings."""

    at: datetime


class RuntimeEngine:
    """Runtime session engine service."""

    def __init__(
        self,
        settings: EngineSettings,
        service: ServiceSettings,
        store: SessionStore,
        status_sink: StatusWebhookSink | None = None,
        ingest_sink: CoreIngestSink | None = None,
        delivery: SinkSettings | None = None,
        clock: Callable[[], datetime] = now_utc,
    ):
        """Initialize engine.

        Args:
            settings: Engine thresholds and windows
            service: Concurrency, timers and polling settings
            store: Session store (best-effort mirror of in-memory state)
            status_sink: Dashboard status webhook, optional
            ingest_sink: Core ingest service, optional
            delivery: Retry policy for sinks and store writes
            clock: Wall clock, injectable for tests
        """
        self.settings = settings
        self.service = service
        self.store = store
        self.status_sink = status_sink
        self.ingest_sink = ingest_sink
        self._clock = clock

        self.machine = SessionStateMachine(settings)
        self.gate = ChangeGate(settings)

        delivery = delivery or SinkSettings()
        retry = dict(
            max_attempts=delivery.max_attempts,
            base_delay_seconds=delivery.retry_delay_ms / 1000,
            max_queue=delivery.max_queue,
        )
        self.dispatchers: dict[str, Dispatcher] = {}
        for sink in (status_sink, ingest_sink):
            if sink is not None:
                self.dispatchers[sink.name] = Dispatcher(sink.name, **retry)
        self.persistence = Dispatcher("store", failure=PersistenceFailure, **retry)

        self._queues: dict[str, asyncio.Queue] = {}
        self._workers: dict[str, asyncio.Task] = {}
        self._semaphore = asyncio.Semaphore(service.max_workers)
        self._last_seen: dict[str, datetime] = {}
        self._device_locks: dict[str, threading.Lock] = {}

        self._task: asyncio.Task | None = None
        self._running = False

        self.recovery_report: RecoveryReport | None = None
        self.accepted = 0
        self.rejected = 0
        self.timed_out = 0

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self):
        """Recover running sessions, then start dispatchers and the sweeper."""
        if self._running:
            logger.warning("Runtime engine already running")
            return

        now = self._clock()
        self.recovery_report = await asyncio.to_thread(
            recover_sessions, self.store, self.machine, self.settings, now
        )
        for state in self.machine.states():
            self._last_seen[state.device_id] = now

        self._running = True
        await self.persistence.start()
        for dispatcher in self.dispatchers.values():
            await dispatcher.start()
        self._task = asyncio.create_task(self._run_loop())
        logger.info(
            f"Runtime engine started ({len(self.machine.states())} recovered device(s), "
            f"sweep every {self.service.sweep_interval_seconds}s)"
        )

    async def stop(self):
        """Cancel the sweeper, let workers finish in-flight events, stop delivery."""
        if not self._running:
            return
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass

        try:
            await asyncio.wait_for(self.drain(), timeout=self.service.event_timeout_seconds)
        except asyncio.TimeoutError:
            logger.warning("Runtime engine drain timed out, cancelling remaining work")
            for worker in list(self._workers.values()):
                worker.cancel()

        await self.persistence.stop()
        for dispatcher in self.dispatchers.values():
            await dispatcher.stop()
        for sink in (self.status_sink, self.ingest_sink):
            if sink is not None:
                sink.close()
        logger.info("Runtime engine stopped")

    async def drain(self):
        """Wait for every device queue and every delivery queue to empty."""
        while self._workers:
            await asyncio.gather(*list(self._workers.values()), return_exceptions=True)
        await self.persistence.join()
        for dispatcher in self.dispatchers.values():
            await dispatcher.join()

    async def _run_loop(self):
        while self._running:
            try:
                self.sweep(self._clock())
            except Exception as e:
                logger.error(f"Error in runtime sweep: {e}", exc_info=True)
            await asyncio.sleep(self.service.sweep_interval_seconds)

    # ------------------------------------------------------------------
    # Ingress
    # ------------------------------------------------------------------

    def ingest(self, body, received_at: datetime | None = None) -> int:
        """Parse a push body and queue its readings.

        Returns:
            Number of events accepted
        """
        received_at = received_at or self._clock()
        try:
            events = parse_push_envelope(body)
        except MalformedEvent as e:
            self.rejected += 1
            logger.warning(f"Rejected push body: {e}")
            return 0

        accepted = 0
        for raw in events:
            try:
                reading = normalize_event(raw, received_at=received_at)
            except MalformedEvent as e:
                self.rejected += 1
                logger.warning(f"Rejected event: {e}")
                continue
            self.submit(reading)
            accepted += 1
        return accepted

    def submit(self, item: CanonicalReading | ExpiryTick, device_id: str | None = None) -> None:
        """Queue a reading (or timer tick) on its device's worker."""
        device_id = device_id or item.device_id
        if isinstance(item, CanonicalReading):
            self.accepted += 1
            self._last_seen[device_id] = self._clock()

        queue = self._queues.get(device_id)
        if queue is None:
            queue = asyncio.Queue()
            self._queues[device_id] = queue
        queue.put_nowait(item)

        if device_id not in self._workers:
            self._workers[device_id] = asyncio.create_task(
                self._device_worker(device_id, queue), name=f"device-{device_id}"
            )

    async def _device_worker(self, device_id: str, queue: asyncio.Queue):
        try:
            while not queue.empty():
                item = queue.get_nowait()
                try:
                    async with self._semaphore:
                        await asyncio.wait_for(
                            self._handle(device_id, item), timeout=self.service.event_timeout_seconds
                        )
                except asyncio.TimeoutError:
                    self.timed_out += 1
                    logger.error(f"{device_id}: event processing timed out, dropped")
                except Exception as e:
                    logger.error(f"{device_id}: event processing failed: {e}", exc_info=True)
                finally:
                    queue.task_done()
        finally:
            self._workers.pop(device_id, None)
            if queue.empty():
                self._queues.pop(device_id, None)

    # ------------------------------------------------------------------
    # Processing
    # ------------------------------------------------------------------

    async def _handle(self, device_id: str, item: CanonicalReading | ExpiryTick):
        """Classify in a worker thread (the part the event timeout bounds), then fan out."""
        classified = await asyncio.to_thread(self._classify, device_id, item)
        if classified is None:
            return
        reading, result = classified
        timer = isinstance(item, ExpiryTick)

        self._persist_records(result)

        if result.transition is not None:
            self._post_transition(reading, result)
            self.gate.mark_posted(device_id, reading)
        elif not (timer or result.out_of_order) and self.gate.should_emit(device_id, reading):
            self._post(reading, result.state, result.state.equipment_label, result.previous_label,
                       RUNTIME_UPDATE, source_event_id(device_id, RUNTIME_UPDATE, reading.observed_at))
            self.gate.mark_posted(device_id, reading)

        self.persistence.submit(f"state {device_id}", partial(self.store.upsert_device_state, result.state))

    def _classify(self, device_id: str, item: CanonicalReading | ExpiryTick):
        """Apply one item to the state machine.

        Runs in a worker thread under the device lock. A timed-out call keeps the
        lock until it returns, so the device's next event still sees a consistent
        state. The result carries a copy of the state, never the live object.

        Returns:
            (reading, result), or None when there is nothing to report
        """
        with self._device_locks.setdefault(device_id, threading.Lock()):
            if isinstance(item, ExpiryTick):
                result = self.machine.expire(device_id, item.at)
                if result is None or not (result.transition or result.discarded or result.abandoned):
                    return None
                reading = _reading_from_state(result.state, item.at)
            else:
                reading = item
                result = self.machine.process(device_id, reading)
                if result.duplicate:
                    return None
            result.state = DeviceSessionState.from_dict(result.state.to_dict())
        return reading, result

    def _persist_records(self, result: ProcessResult):
        transition = result.transition
        closed = list(result.abandoned) + list(result.discarded)
        if transition is not None and transition.ended is not None:
            closed.append(transition.ended)
        for record in closed:
            self.persistence.submit(
                f"close session {record.session_id}", partial(self.store.save_closed_record, record)
            )
        if transition is not None and transition.started is not None:
            record = transition.started
            self.persistence.submit(
                f"open session {record.session_id}", partial(self.store.insert_session_record, record)
            )

    def _post_transition(self, reading: CanonicalReading, result: ProcessResult):
        transition = result.transition
        state = result.state
        previous = result.previous_label

        if transition.ended is not None:
            ended = transition.ended
            event_id = source_event_id(state.device_id, RUNTIME_END, ended.ended_at, ended.session_id)
            self._post(reading, state, state.equipment_label, ended.equipment_label, RUNTIME_END,
                       event_id, record=ended)
            previous = ended.equipment_label

        if transition.started is not None:
            started = transition.started
            event_id = source_event_id(state.device_id, RUNTIME_START, started.started_at, started.session_id)
            self._post(reading, state, started.equipment_label, previous, RUNTIME_START, event_id,
                       record=started)

    def _post(self, reading: CanonicalReading, state: DeviceSessionState, label: EquipmentLabel,
              previous_label: EquipmentLabel, runtime_type: str, event_id: str,
              record: RuntimeSessionRecord | None = None):
        description = f"{runtime_type} {state.device_id} {event_id}"
        if self.status_sink is not None:
            payload = build_status_payload(reading, state, label, previous_label, runtime_type,
                                           event_id, record=record)
            self.dispatchers[self.status_sink.name].submit(description, partial(self.status_sink.post, payload))
        if self.ingest_sink is not None:
            event = build_ingest_event(reading, state, label, previous_label, runtime_type,
                                       event_id, record=record)
            self.dispatchers[self.ingest_sink.name].submit(description, partial(self.ingest_sink.post, event))

    # ------------------------------------------------------------------
    # Timers and housekeeping
    # ------------------------------------------------------------------

    def sweep(self, now: datetime) -> int:
        """Queue expiry ticks for due devices and purge stale idle ones.

        Returns:
            Number of ticks queued
        """
        timeout = timedelta(milliseconds=self.settings.session_timeout_ms)
        stale_after = timedelta(milliseconds=self.settings.stale_device_ms)
        ticks = 0

        for state in self.machine.states():
            device_id = state.device_id
            if state.is_running:
                tail_due = state.tail_until is not None and now >= state.tail_until
                runaway = state.started_at is not None and now - state.started_at > timeout
                if tail_due or runaway:
                    self.submit(ExpiryTick(now), device_id=device_id)
                    ticks += 1
                continue

            last_seen = self._last_seen.get(device_id)
            if device_id in self._workers or last_seen is None or now - last_seen < stale_after:
                continue
            self.machine.remove_state(device_id)
            self.gate.forget(device_id)
            self._device_locks.pop(device_id, None)
            self._last_seen.pop(device_id, None)
            logger.info(f"{device_id}: idle and unseen since {last_seen.isoformat()}, purged")

        return ticks

    def stale_devices(self, now: datetime, threshold: timedelta) -> list[str]:
        """Known devices with no reading for at least ``threshold``."""
        return sorted(
            device_id for device_id, seen in self._last_seen.items() if now - seen >= threshold
        )

    def now(self) -> datetime:
        return self._clock()

    def last_seen(self, device_id: str) -> datetime | None:
        return self._last_seen.get(device_id)

    def stats(self) -> dict:
        states = self.machine.states()
        return {
            "running": self._running,
            "devices": len(states),
            "active_sessions": sum(1 for s in states if s.is_running),
            "queued_devices": len(self._queues),
            "events_accepted": self.accepted,
            "events_rejected": self.rejected,
            "events_timed_out": self.timed_out,
            "dispatchers": {
                name: d.stats() for name, d in [("store", self.persistence), *self.dispatchers.items()]
            },
        }


def _reading_from_state(state: DeviceSessionState, at: datetime) -> CanonicalReading:
    """Stand-in reading for timer-driven transitions."""
    return CanonicalReading(
        device_id=state.device_id,
        observed_at=at,
        device_name=state.device_name,
        user_id=state.user_id,
        thermostat_mode=state.last_mode,
        current_temp_c=state.last_temp_c,
        cool_setpoint_c=state.last_cool_setpoint_c,
        heat_setpoint_c=state.last_heat_setpoint_c,
        connectivity=Connectivity.ONLINE if state.last_reachable else Connectivity.OFFLINE,
        room_name=state.room_name,
    )
