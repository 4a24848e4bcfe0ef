"""Tests for the runtime session state machine."""

import itertools
import random
from datetime import datetime, timedelta, timezone

import pytest

from core.hvac_runtime.models import (
    CanonicalReading,
    Connectivity,
    EquipmentLabel,
    EquipmentStatus,
    ThermostatMode,
    TransitionKind,
)
from core.hvac_runtime.session_machine import SessionStateMachine, runtime_seconds
from core.hvac_runtime.settings import EngineSettings

HEATING = EquipmentStatus.HEATING
COOLING = EquipmentStatus.COOLING
OFF = EquipmentStatus.OFF

EPOCH = datetime(2025, 1, 15, 12, 0, 0, tzinfo=timezone.utc)


def _machine(**overrides):
    counter = itertools.count(1)
    return SessionStateMachine(EngineSettings(**overrides), session_id_factory=lambda: f"session-{next(counter)}")


# ── Basic transitions ───────────────────────────────────────────────────


class TestTransitions:
    def test_idle_to_active_starts_session(self, machine, make_reading, at):
        result = machine.process("dev-1", make_reading(0, HEATING))

        assert result.transition.kind == TransitionKind.SESSION_STARTED
        started = result.transition.started
        assert started.session_id == "session-1"
        assert started.equipment_label == EquipmentLabel.HEAT
        assert started.started_at == at(0)
        assert started.start_temp_c == 21.0
        assert result.state.is_running
        assert result.state.equipment_label == EquipmentLabel.HEAT
        assert result.previous_label == EquipmentLabel.OFF

    def test_idle_stays_idle(self, machine, make_reading):
        result = machine.process("dev-1", make_reading(0, OFF))
        assert result.transition is None
        assert not result.state.is_running

    def test_same_label_no_emission(self, machine, make_reading):
        machine.process("dev-1", make_reading(0, HEATING))
        result = machine.process("dev-1", make_reading(60, HEATING, current_temp_c=21.5))
        assert result.transition is None
        assert result.state.session_id == "session-1"
        assert result.state.last_temp_c == 21.5

    def test_active_to_idle_without_fan_tail(self, make_reading, at):
        machine = _machine(fan_tail_ms=0)
        machine.process("dev-1", make_reading(0, HEATING, current_temp_c=19.0))
        result = machine.process("dev-1", make_reading(125, OFF, current_temp_c=20.5))

        assert result.transition.kind == TransitionKind.SESSION_ENDED
        ended = result.transition.ended
        assert ended.duration_seconds == 125
        assert ended.ended_at == at(125)
        assert ended.start_temp_c == 19.0
        assert ended.end_temp_c == 20.5
        assert ended.equipment_label == EquipmentLabel.HEAT
        assert not result.state.is_running
        assert result.state.session_id is None

    def test_fan_only_session(self, machine, make_reading):
        started = machine.process("dev-1", make_reading(0, OFF, fan_on=True))
        assert started.transition.started.equipment_label == EquipmentLabel.FAN

        ended = machine.process("dev-1", make_reading(60, OFF, fan_on=False))
        assert ended.transition.kind == TransitionKind.SESSION_ENDED
        assert ended.transition.ended.equipment_label == EquipmentLabel.FAN
        assert ended.transition.ended.duration_seconds == 60

    def test_heat_wins_over_fan(self, machine, make_reading):
        result = machine.process("dev-1", make_reading(0, HEATING, fan_on=True))
        assert result.state.equipment_label == EquipmentLabel.HEAT

    def test_start_temperature_falls_back_to_last_known(self, machine, make_reading):
        machine.process("dev-1", make_reading(0, OFF, current_temp_c=18.5))
        result = machine.process("dev-1", make_reading(30, HEATING, current_temp_c=None))
        assert result.transition.started.start_temp_c == 18.5

    def test_devices_are_independent(self, machine, make_reading):
        machine.process("dev-1", make_reading(0, HEATING))
        result = machine.process("dev-2", make_reading(0, OFF, device_id="dev-2"))
        assert result.transition is None
        assert machine.get_state("dev-1").is_running
        assert not machine.get_state("dev-2").is_running


# ── Mode switch ─────────────────────────────────────────────────────────


class TestModeSwitch:
    def test_heat_to_cool_switch(self, machine, make_reading, at):
        machine.process("dev-1", make_reading(0, HEATING))
        result = machine.process("dev-1", make_reading(100, COOLING))

        transition = result.transition
        assert transition.kind == TransitionKind.SESSION_SWITCHED
        assert transition.ended.equipment_label == EquipmentLabel.HEAT
        assert transition.ended.duration_seconds == 100
        assert transition.ended.ended_at == at(100)
        assert transition.started.equipment_label == EquipmentLabel.COOL
        assert transition.started.started_at == at(100)
        assert transition.started.session_id == "session-2"
        assert transition.at == at(100)
        assert result.state.equipment_label == EquipmentLabel.COOL

    def test_short_first_half_is_discarded_but_new_session_starts(self, machine, make_reading):
        machine.process("dev-1", make_reading(0, HEATING))
        result = machine.process("dev-1", make_reading(2, COOLING))

        assert result.transition.kind == TransitionKind.SESSION_STARTED
        assert result.transition.started.equipment_label == EquipmentLabel.COOL
        assert len(result.discarded) == 1
        assert result.discarded[0].equipment_label == EquipmentLabel.HEAT
        assert result.discarded[0].discarded


# ── Runtime bounds ──────────────────────────────────────────────────────


class TestRuntimeBounds:
    def test_below_minimum_is_discarded(self, make_reading):
        machine = _machine(fan_tail_ms=0)
        machine.process("dev-1", make_reading(0, HEATING))
        result = machine.process("dev-1", make_reading(3, OFF))

        assert result.transition is None
        assert len(result.discarded) == 1
        assert result.discarded[0].duration_seconds == 3
        assert not result.state.is_running

    def test_above_maximum_is_discarded(self, make_reading):
        machine = _machine(fan_tail_ms=0, max_runtime_seconds=60)
        machine.process("dev-1", make_reading(0, HEATING))
        result = machine.process("dev-1", make_reading(120, OFF))

        assert result.transition is None
        assert result.discarded[0].duration_seconds == 120

    def test_bounds_are_inclusive(self, make_reading):
        machine = _machine(fan_tail_ms=0)
        machine.process("dev-1", make_reading(0, HEATING))
        result = machine.process("dev-1", make_reading(5, OFF))
        assert result.transition.ended.duration_seconds == 5

    def test_runtime_seconds_rounds_halves_up(self, at):
        assert runtime_seconds(at(0), at(10.5)) == 11
        assert runtime_seconds(at(0), at(10.4)) == 10


# ── Fan tail ────────────────────────────────────────────────────────────


class TestFanTail:
    def test_fan_tail_holds_fan_then_closes_at_tail_end(self, machine, make_reading, at):
        machine.process("dev-1", make_reading(0, HEATING))

        stopped = machine.process("dev-1", make_reading(10, OFF))
        assert stopped.transition.kind == TransitionKind.SESSION_SWITCHED
        assert stopped.transition.ended.equipment_label == EquipmentLabel.HEAT
        assert stopped.transition.ended.duration_seconds == 10
        assert stopped.transition.started.equipment_label == EquipmentLabel.FAN
        assert stopped.state.tail_until == at(40)

        holding = machine.process("dev-1", make_reading(20, OFF))
        assert holding.transition is None
        assert holding.state.is_running
        assert holding.state.equipment_label == EquipmentLabel.FAN

        after = machine.process("dev-1", make_reading(45, OFF))
        assert after.transition.kind == TransitionKind.SESSION_ENDED
        assert after.transition.ended.equipment_label == EquipmentLabel.FAN
        assert after.transition.ended.ended_at == at(40)
        assert after.transition.ended.duration_seconds == 30
        assert not after.state.is_running
        assert after.state.tail_until is None

    def test_timer_tick_closes_tail(self, machine, make_reading, at):
        machine.process("dev-1", make_reading(0, HEATING))
        machine.process("dev-1", make_reading(10, OFF))

        assert machine.expire("dev-1", at(39)).transition is None
        result = machine.expire("dev-1", at(40))
        assert result.transition.kind == TransitionKind.SESSION_ENDED
        assert result.transition.ended.duration_seconds == 30
        assert not machine.get_state("dev-1").is_running

    def test_activity_during_tail_cancels_it(self, machine, make_reading):
        machine.process("dev-1", make_reading(0, HEATING))
        machine.process("dev-1", make_reading(10, OFF))
        result = machine.process("dev-1", make_reading(20, HEATING))

        assert result.transition.kind == TransitionKind.SESSION_SWITCHED
        assert result.transition.ended.equipment_label == EquipmentLabel.FAN
        assert result.transition.started.equipment_label == EquipmentLabel.HEAT
        assert result.state.tail_until is None

    def test_event_after_tail_can_start_new_session(self, machine, make_reading, at):
        machine.process("dev-1", make_reading(0, HEATING))
        machine.process("dev-1", make_reading(10, OFF))
        result = machine.process("dev-1", make_reading(100, COOLING))

        assert result.transition.kind == TransitionKind.SESSION_SWITCHED
        assert result.transition.ended.ended_at == at(40)
        assert result.transition.started.started_at == at(100)

    def test_reading_before_tick_closed_tail_cannot_reopen(self, machine, make_reading, at):
        machine.process("dev-1", make_reading(0, HEATING))
        machine.process("dev-1", make_reading(10, OFF))
        closed = machine.expire("dev-1", at(45)).transition.ended
        assert closed.ended_at == at(40)

        late = machine.process("dev-1", make_reading(30, HEATING))

        assert late.out_of_order
        assert late.transition is None
        assert not late.state.is_running
        assert late.state.last_observed_at == at(40)

    def test_reading_after_tick_closed_tail_starts_session(self, machine, make_reading, at):
        machine.process("dev-1", make_reading(0, HEATING))
        machine.process("dev-1", make_reading(10, OFF))
        machine.expire("dev-1", at(45))

        result = machine.process("dev-1", make_reading(42, HEATING))

        assert result.transition.kind == TransitionKind.SESSION_STARTED
        assert result.transition.started.started_at == at(42)

    def test_fan_session_has_no_tail(self, machine, make_reading):
        machine.process("dev-1", make_reading(0, OFF, fan_on=True))
        result = machine.process("dev-1", make_reading(60, OFF))
        assert result.transition.kind == TransitionKind.SESSION_ENDED
        assert result.state.tail_until is None

    def test_expire_unknown_device(self, machine, at):
        assert machine.expire("missing", at(0)) is None


# ── Sticky fallback ─────────────────────────────────────────────────────


class TestStickyFallback:
    def _inferred(self, make_reading, seconds, temp, heat_setpoint):
        return make_reading(
            seconds,
            status=None,
            thermostat_mode=ThermostatMode.HEAT,
            current_temp_c=temp,
            heat_setpoint_c=heat_setpoint,
        )

    def test_label_kept_within_recency_window(self, machine, make_reading):
        started = machine.process("dev-1", self._inferred(make_reading, 0, 19.0, 20.0))
        assert started.transition.started.equipment_label == EquipmentLabel.HEAT

        quiet = machine.process("dev-1", self._inferred(make_reading, 30, 19.0, 19.2))
        assert quiet.transition is None
        assert quiet.state.equipment_label == EquipmentLabel.HEAT

    def test_label_released_after_recency_window(self, machine, make_reading):
        machine.process("dev-1", self._inferred(make_reading, 0, 19.0, 20.0))
        result = machine.process("dev-1", self._inferred(make_reading, 200, 19.0, 19.2))

        assert result.transition.kind == TransitionKind.SESSION_SWITCHED
        assert result.transition.ended.duration_seconds == 200
        assert result.transition.started.equipment_label == EquipmentLabel.FAN

    def test_explicit_off_is_never_sticky(self, make_reading):
        machine = _machine(fan_tail_ms=0)
        machine.process("dev-1", make_reading(0, HEATING))
        result = machine.process("dev-1", make_reading(30, OFF))
        assert result.transition.kind == TransitionKind.SESSION_ENDED

    def test_unknown_mode_uses_last_mode(self, machine, make_reading):
        machine.process("dev-1", make_reading(0, OFF, thermostat_mode=ThermostatMode.COOL, current_temp_c=23.0))
        result = machine.process(
            "dev-1",
            make_reading(30, None, thermostat_mode=ThermostatMode.UNKNOWN, current_temp_c=25.0, cool_setpoint_c=None),
        )
        assert result.state.equipment_label == EquipmentLabel.COOL


# ── Duplicates, ordering, runaways ──────────────────────────────────────


class TestGuards:
    def test_duplicate_event_is_ignored(self, machine, make_reading):
        reading = make_reading(0, HEATING)
        machine.process("dev-1", reading)
        before = machine.get_state("dev-1").to_dict()

        result = machine.process("dev-1", reading)
        assert result.duplicate
        assert result.transition is None
        assert machine.get_state("dev-1").to_dict() == before

    def test_same_time_different_payload_is_processed(self, machine, make_reading):
        machine.process("dev-1", make_reading(0, OFF))
        result = machine.process("dev-1", make_reading(0, HEATING))
        assert not result.duplicate
        assert result.transition.kind == TransitionKind.SESSION_STARTED

    def test_out_of_order_event_fills_unset_fields_only(self, machine, make_reading, at):
        machine.process(
            "dev-1",
            make_reading(100, HEATING, current_temp_c=20.0, heat_setpoint_c=None,
                         thermostat_mode=ThermostatMode.UNKNOWN),
        )
        result = machine.process(
            "dev-1",
            make_reading(50, OFF, current_temp_c=25.0, heat_setpoint_c=22.0, cool_setpoint_c=26.0,
                         connectivity=Connectivity.OFFLINE, thermostat_mode=ThermostatMode.HEAT,
                         room_name="Hall"),
        )

        assert result.out_of_order
        assert result.transition is None
        state = result.state
        assert state.is_running
        assert state.last_heat_setpoint_c == 22.0
        assert state.last_mode == ThermostatMode.HEAT
        assert state.room_name == "Hall"
        assert state.last_cool_setpoint_c == 24.0
        assert state.last_reachable is True
        assert state.last_temp_c == 20.0
        assert state.last_observed_at == at(100)

    def test_redelivered_earlier_event_changes_nothing(self, machine, make_reading):
        earlier = make_reading(0, HEATING, heat_setpoint_c=20.0, thermostat_mode=ThermostatMode.HEAT)
        machine.process("dev-1", earlier)
        machine.process(
            "dev-1",
            make_reading(10, HEATING, heat_setpoint_c=22.0, thermostat_mode=ThermostatMode.HEATCOOL,
                         connectivity=Connectivity.OFFLINE),
        )
        before = machine.get_state("dev-1").to_dict()

        result = machine.process("dev-1", earlier)

        assert result.out_of_order
        assert result.transition is None
        assert machine.get_state("dev-1").to_dict() == before

    def test_runaway_session_is_abandoned(self, make_reading):
        machine = _machine(session_timeout_ms=3600 * 1000)
        machine.process("dev-1", make_reading(0, HEATING))
        result = machine.process("dev-1", make_reading(3700, HEATING))

        assert len(result.abandoned) == 1
        abandoned = result.abandoned[0]
        assert abandoned.session_id == "session-1"
        assert abandoned.duration_seconds is None
        assert abandoned.abandoned
        assert result.transition.kind == TransitionKind.SESSION_STARTED
        assert result.state.session_id == "session-2"

    def test_runaway_closed_by_tick(self, make_reading, at):
        machine = _machine(session_timeout_ms=3600 * 1000)
        machine.process("dev-1", make_reading(0, HEATING))
        result = machine.expire("dev-1", at(3601))

        assert result.transition is None
        assert len(result.abandoned) == 1
        assert not machine.get_state("dev-1").is_running


# ── Properties over random sequences ────────────────────────────────────


def _random_readings(seed, count=200):
    rng = random.Random(seed)
    t = 0
    readings = []
    for _ in range(count):
        t += rng.choice([-30, 1, 5, 10, 20, 45, 60, 300, 900])
        readings.append(CanonicalReading(
            device_id="dev-1",
            observed_at=_epoch(t),
            thermostat_mode=rng.choice(list(ThermostatMode)),
            equipment_status_raw=rng.choice([HEATING, COOLING, OFF, EquipmentStatus.UNKNOWN, None]),
            fan_on=rng.choice([None, True, False]),
            current_temp_c=rng.choice([None, round(rng.uniform(16, 28), 2)]),
            heat_setpoint_c=rng.choice([None, 20.0, 21.5]),
            cool_setpoint_c=rng.choice([None, 24.0, 25.5]),
        ))
    return readings


def _epoch(seconds):
    return EPOCH + timedelta(seconds=seconds)


def _summary(result):
    transition = result.transition
    if transition is None:
        return None
    return (
        transition.kind,
        transition.ended and (transition.ended.equipment_label, transition.ended.duration_seconds),
        transition.started and (transition.started.equipment_label, transition.started.started_at),
    )


class TestProperties:
    @pytest.mark.parametrize("seed", range(25))
    def test_running_iff_session_fields_set(self, seed):
        rng = random.Random(seed)
        settings = EngineSettings(fan_tail_ms=rng.choice([0, 30_000]), session_timeout_ms=3600 * 1000)
        machine = SessionStateMachine(settings)

        for reading in _random_readings(seed):
            if rng.random() < 0.1:
                result = machine.expire("dev-1", reading.observed_at)
            else:
                result = machine.process("dev-1", reading)
            if result is None:
                continue
            state = result.state

            assert state.is_running == (state.session_id is not None and state.started_at is not None)
            assert (state.equipment_label != EquipmentLabel.OFF) == state.is_running

            transition = result.transition
            if transition is not None and transition.ended is not None:
                duration = transition.ended.duration_seconds
                assert settings.min_runtime_seconds <= duration <= settings.max_runtime_seconds
            for record in result.discarded:
                assert record.duration_seconds >= 0
                assert not settings.min_runtime_seconds <= record.duration_seconds <= settings.max_runtime_seconds

    @pytest.mark.parametrize("seed", range(10))
    def test_replaying_each_event_changes_nothing(self, seed):
        single = _machine()
        doubled = _machine()

        for reading in _random_readings(seed):
            first = doubled.process("dev-1", reading)
            snapshot = doubled.get_state("dev-1").to_dict()
            replay = doubled.process("dev-1", reading)

            assert replay.transition is None
            assert doubled.get_state("dev-1").to_dict() == snapshot
            assert _summary(single.process("dev-1", reading)) == _summary(first)

    @pytest.mark.parametrize("seed", range(10))
    def test_redelivering_any_earlier_event_changes_nothing(self, seed):
        rng = random.Random(seed)
        machine = _machine()
        applied = []

        for reading in _random_readings(seed):
            result = machine.process("dev-1", reading)
            if result.duplicate or result.out_of_order:
                continue
            applied.append(reading)

            earlier = rng.choice(applied)
            if earlier.observed_at == reading.observed_at:
                continue
            snapshot = machine.get_state("dev-1").to_dict()
            replay = machine.process("dev-1", earlier)

            assert replay.transition is None
            assert machine.get_state("dev-1").to_dict() == snapshot

    @pytest.mark.parametrize("seed", range(10))
    def test_sessions_never_overlap(self, seed):
        rng = random.Random(seed)
        machine = _machine(session_timeout_ms=3600 * 1000)
        last_end = None

        for reading in _random_readings(seed):
            if rng.random() < 0.2:
                result = machine.expire("dev-1", reading.observed_at + timedelta(seconds=rng.choice([0, 40, 90])))
            else:
                result = machine.process("dev-1", reading)
            if result is None:
                continue

            closed = list(result.discarded) + list(result.abandoned)
            if result.transition is not None and result.transition.ended is not None:
                closed.append(result.transition.ended)
            for record in closed:
                last_end = record.ended_at if last_end is None else max(last_end, record.ended_at)
            if result.transition is not None and result.transition.started is not None and last_end:
                assert result.transition.started.started_at >= last_end
