"""Tests for the session record, timer transitions, registry and cost accrual."""

from datetime import datetime, timedelta, timezone

import pydantic
import pytest
from helpers import T0, apply_update

from cost_meter.accrual import compute_costs, elapsed_seconds, format_currency, format_elapsed
from cost_meter.errors import InvalidTransitionError, ValidationError
from cost_meter.models import (
    Participant,
    SessionPatch,
    SessionRecord,
    TimerPhase,
    TimerState,
    default_record,
)
from cost_meter.registry import ParticipantRegistry
from cost_meter.roles import DEFAULT_ROLE, ROLE_RATES, rate_for
from cost_meter.timer import (
    VALID_ACTIONS,
    TimerAction,
    reset_update,
    start_update,
    stop_update,
)


def _participant(pid="p_1", rate=90.0, name="Ada", role="Software Engineer"):
    return Participant(id=pid, name=name, role=role, rate=rate)


def _record(participants=None, **timer):
    return SessionRecord(participants=participants or [], **timer)


def _assert_anchor_invariant(record: SessionRecord):
    assert record.is_running == (record.start_anchor is not None)


# ============================================================
# MODEL TESTS
# ============================================================


class TestModels:
    def test_default_record(self):
        record = SessionRecord.model_validate(default_record())
        assert record.participants == []
        assert record.is_running is False
        assert record.accumulated_seconds == 0
        assert record.start_anchor is None

    def test_document_uses_stored_field_names(self):
        assert default_record() == {
            "participants": [],
            "isRunning": False,
            "accumulatedSeconds": 0.0,
            "startTime": None,
        }

    def test_missing_fields_read_as_defaults(self):
        record = SessionRecord.model_validate({"participants": [_participant().model_dump()]})
        assert record.is_running is False
        assert len(record.participants) == 1

    def test_running_requires_anchor(self):
        with pytest.raises(pydantic.ValidationError):
            TimerState(is_running=True)

    def test_anchor_requires_running(self):
        with pytest.raises(pydantic.ValidationError):
            TimerState(is_running=False, start_anchor=T0)

    def test_negative_accumulated_rejected(self):
        with pytest.raises(pydantic.ValidationError):
            TimerState(accumulated_seconds=-1)

    def test_naive_anchor_treated_as_utc(self):
        state = TimerState(is_running=True, start_anchor=T0.replace(tzinfo=None))
        assert state.start_anchor == T0

    def test_offset_anchor_converted_to_utc(self):
        anchor = datetime(2026, 1, 5, 10, 0, 0, tzinfo=timezone(timedelta(hours=1)))
        state = TimerState(is_running=True, start_anchor=anchor)
        assert state.start_anchor == T0
        assert state.start_anchor.utcoffset() == timedelta(0)
        patch = SessionPatch.model_validate({"isRunning": True, "startTime": anchor})
        assert patch.start_anchor.hour == 9

    def test_phase(self):
        assert TimerState().phase == TimerPhase.STOPPED
        assert TimerState(is_running=True, start_anchor=T0).phase == TimerPhase.RUNNING

    def test_participant_name_trimmed(self):
        assert _participant(name="  Ada  ").name == "Ada"

    def test_participant_blank_name_rejected(self):
        with pytest.raises(pydantic.ValidationError):
            _participant(name="   ")

    def test_participant_negative_rate_rejected(self):
        with pytest.raises(pydantic.ValidationError):
            _participant(rate=-5)

    def test_participant_is_frozen(self):
        p = _participant()
        with pytest.raises(pydantic.ValidationError):
            p.rate = 10

    def test_timer_view_of_record(self):
        record = _record(accumulated_seconds=12.5, is_running=True, start_anchor=T0)
        assert record.timer == TimerState(
            is_running=True, accumulated_seconds=12.5, start_anchor=T0
        )


# ============================================================
# ROLE TABLE TESTS
# ============================================================


class TestRoles:
    def test_known_rate(self):
        assert rate_for("Software Engineer") == 90
        assert rate_for("Executive (C-Suite)") == 250

    def test_unknown_role(self):
        with pytest.raises(ValidationError, match="Unknown role"):
            rate_for("Wizard")

    def test_default_role_is_first(self):
        assert DEFAULT_ROLE == "Executive (C-Suite)"

    def test_table_is_read_only(self):
        with pytest.raises(TypeError):
            ROLE_RATES["Software Engineer"] = 1

    def test_custom_table(self):
        assert rate_for("Pilot", {"Pilot": 60}) == 60.0


# ============================================================
# TIMER TRANSITION TESTS
# ============================================================


class TestTimerTransitions:
    def test_start_from_stopped(self):
        record = _record([_participant()])
        update = start_update(record, T0)
        assert update == {"isRunning": True, "startTime": T0}
        started = apply_update(record, update)
        assert started.is_running is True
        assert started.start_anchor == T0
        assert started.accumulated_seconds == 0

    def test_start_without_participants_rejected(self):
        with pytest.raises(InvalidTransitionError, match="no participants"):
            start_update(_record(), T0)

    def test_start_while_running_rejected(self):
        record = _record([_participant()], is_running=True, start_anchor=T0)
        with pytest.raises(InvalidTransitionError, match="Valid actions"):
            start_update(record, T0)

    def test_stop_folds_segment(self):
        record = _record([_participant()], accumulated_seconds=30, is_running=True, start_anchor=T0)
        update = stop_update(record, T0 + timedelta(seconds=45))
        assert update == {"isRunning": False, "accumulatedSeconds": 75, "startTime": None}

    def test_stop_while_stopped_rejected(self):
        with pytest.raises(InvalidTransitionError, match="Cannot stop"):
            stop_update(_record([_participant()]), T0)

    def test_stop_never_subtracts(self):
        record = _record([_participant()], accumulated_seconds=10, is_running=True, start_anchor=T0)
        update = stop_update(record, T0 - timedelta(seconds=5))
        assert update["accumulatedSeconds"] == 10

    @pytest.mark.parametrize(
        ("accumulated", "segment"), [(0, 0), (0, 10), (3600, 0.5), (12.25, 7200)]
    )
    def test_stop_after_start(self, accumulated, segment):
        record = _record([_participant()], accumulated_seconds=accumulated)
        running = apply_update(record, start_update(record, T0))
        stopped = apply_update(running, stop_update(running, T0 + timedelta(seconds=segment)))
        assert stopped.accumulated_seconds == pytest.approx(accumulated + segment)
        assert stopped.is_running is False
        assert stopped.start_anchor is None

    def test_reset_from_running(self):
        record = _record([_participant()], accumulated_seconds=99, is_running=True, start_anchor=T0)
        reset = apply_update(record, reset_update())
        assert reset == SessionRecord()

    def test_reset_from_stopped(self):
        record = _record([_participant()], accumulated_seconds=99)
        assert apply_update(record, reset_update()) == SessionRecord()

    def test_valid_actions(self):
        assert VALID_ACTIONS[TimerPhase.STOPPED] == [TimerAction.START, TimerAction.RESET]
        assert VALID_ACTIONS[TimerPhase.RUNNING] == [TimerAction.STOP, TimerAction.RESET]

    def test_anchor_invariant_over_sequence(self):
        record = _record([_participant()])
        now = T0
        for action in ["start", "stop", "start", "start", "stop", "stop", "reset", "start"]:
            now += timedelta(seconds=3)
            try:
                if action == "start":
                    record = apply_update(record, start_update(record, now))
                elif action == "stop":
                    record = apply_update(record, stop_update(record, now))
                else:
                    record = apply_update(record, reset_update())
            except InvalidTransitionError:
                pass
            _assert_anchor_invariant(record)

    def test_interleaved_merges_keep_invariant(self):
        # Start and stop written from stale bases, applied in either order
        base = _record([_participant()], is_running=True, start_anchor=T0)
        stopped_base = _record([_participant()], accumulated_seconds=5)
        stop = stop_update(base, T0 + timedelta(seconds=5))
        start = start_update(stopped_base, T0 + timedelta(seconds=6))
        _assert_anchor_invariant(apply_update(apply_update(base, stop), start))
        _assert_anchor_invariant(apply_update(apply_update(base, start), stop))


# ============================================================
# REGISTRY TESTS
# ============================================================


class TestParticipantRegistry:
    def test_build_copies_rate(self):
        registry = ParticipantRegistry()
        p = registry.build("  Ada ", "Software Engineer")
        assert p.name == "Ada"
        assert p.rate == 90
        assert p.id.startswith("p_")

    def test_rate_frozen_at_add_time(self):
        table = {"Engineer": 100}
        registry = ParticipantRegistry(table)
        p = registry.build("Ada", "Engineer")
        table["Engineer"] = 500
        assert p.rate == 100

    def test_build_unique_ids(self):
        registry = ParticipantRegistry()
        ids = {registry.build("Ada", DEFAULT_ROLE).id for _ in range(50)}
        assert len(ids) == 50

    def test_build_empty_name(self):
        with pytest.raises(ValidationError, match="empty"):
            ParticipantRegistry().build("   ", DEFAULT_ROLE)

    def test_build_name_too_long(self):
        with pytest.raises(ValidationError):
            ParticipantRegistry().build("A" * 201, DEFAULT_ROLE)

    def test_build_unknown_role(self):
        with pytest.raises(ValidationError, match="Unknown role"):
            ParticipantRegistry().build("Ada", "Wizard")

    def test_with_added_keeps_order(self):
        registry = ParticipantRegistry()
        registry.replace([_participant("p_1"), _participant("p_2")])
        added = registry.with_added(_participant("p_3"))
        assert [p.id for p in added] == ["p_1", "p_2", "p_3"]
        assert len(registry) == 2

    def test_without(self):
        registry = ParticipantRegistry()
        registry.replace([_participant("p_1"), _participant("p_2")])
        assert [p.id for p in registry.without("p_1")] == ["p_2"]

    def test_without_absent_is_unchanged(self):
        registry = ParticipantRegistry()
        registry.replace([_participant("p_1"), _participant("p_2")])
        assert registry.without("p_9") == registry.participants

    def test_replace_drops_duplicate_ids(self):
        registry = ParticipantRegistry()
        registry.replace([_participant("p_1", name="A"), _participant("p_1", name="B")])
        assert len(registry) == 1
        assert registry.get("p_1").name == "A"

    def test_contains_and_get(self):
        registry = ParticipantRegistry()
        registry.replace([_participant("p_1")])
        assert "p_1" in registry
        assert "p_2" not in registry
        assert registry.get("p_2") is None

    def test_replace_with_empty_list(self):
        registry = ParticipantRegistry()
        registry.replace([_participant("p_1")])
        registry.replace([])
        assert registry.participants == []


# ============================================================
# COST ACCRUAL TESTS
# ============================================================


class TestCostAccrual:
    def test_running_scenario(self):
        timer = TimerState(is_running=True, start_anchor=T0)
        costs = compute_costs([_participant(rate=90)], timer, T0 + timedelta(seconds=10))
        assert costs.elapsed_seconds == 10
        assert costs.total_cost == pytest.approx(0.25)
        assert costs.per_participant == {"p_1": pytest.approx(0.25)}

    def test_accumulated_without_running(self):
        timer = TimerState(accumulated_seconds=3600)
        costs = compute_costs([_participant(rate=90)], timer, T0)
        assert costs.elapsed_seconds == 3600
        assert costs.total_cost == pytest.approx(90.0)

    def test_stopped_ignores_now(self):
        timer = TimerState(accumulated_seconds=60)
        assert elapsed_seconds(timer, T0) == elapsed_seconds(timer, T0 + timedelta(hours=5))

    def test_running_adds_to_accumulated(self):
        timer = TimerState(is_running=True, accumulated_seconds=100, start_anchor=T0)
        assert elapsed_seconds(timer, T0 + timedelta(seconds=20)) == 120

    def test_now_before_anchor_clamped(self):
        timer = TimerState(is_running=True, accumulated_seconds=5, start_anchor=T0)
        assert elapsed_seconds(timer, T0 - timedelta(seconds=3)) == 5

    def test_per_participant_rates(self):
        participants = [_participant("p_1", rate=90), _participant("p_2", rate=180)]
        costs = compute_costs(participants, TimerState(accumulated_seconds=1800), T0)
        assert costs.per_participant["p_1"] == pytest.approx(45.0)
        assert costs.per_participant["p_2"] == pytest.approx(90.0)
        assert costs.total_cost == pytest.approx(135.0)

    def test_no_participants(self):
        costs = compute_costs([], TimerState(accumulated_seconds=1800), T0)
        assert costs.total_cost == 0
        assert costs.per_participant == {}

    def test_deterministic(self):
        participants = [_participant("p_1", rate=35), _participant("p_2", rate=250)]
        timer = TimerState(is_running=True, accumulated_seconds=17.3, start_anchor=T0)
        now = T0 + timedelta(seconds=123.4)
        assert compute_costs(participants, timer, now) == compute_costs(participants, timer, now)


class TestFormatting:
    def test_format_currency(self):
        assert format_currency(0) == "$0.00"
        assert format_currency(0.25) == "$0.25"
        assert format_currency(1234.5) == "$1,234.50"

    def test_format_elapsed(self):
        assert format_elapsed(0) == "00:00:00"
        assert format_elapsed(59.9) == "00:00:59"
        assert format_elapsed(3661) == "01:01:01"
        assert format_elapsed(36000) == "10:00:00"
