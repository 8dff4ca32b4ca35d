"""
Shared timer transitions.

Each transition turns the last seen record plus a server instant into the
update to send to the store. Nothing here touches the store itself.
"""

from datetime import datetime
from enum import StrEnum
from typing import Any

from cost_meter.errors import InvalidTransitionError
from cost_meter.models import SessionRecord, TimerPhase, default_record


class TimerAction(StrEnum):
    START = "start"
    STOP = "stop"
    RESET = "reset"


VALID_ACTIONS: dict[TimerPhase, list[TimerAction]] = {
    TimerPhase.STOPPED: [TimerAction.START, TimerAction.RESET],
    TimerPhase.RUNNING: [TimerAction.STOP, TimerAction.RESET],
}


def _reject(action: TimerAction, record: SessionRecord, reason: str | None = None):
    valid = ", ".join(VALID_ACTIONS[record.phase])
    detail = f"Cannot {action} timer in state '{record.phase}'. Valid actions: [{valid}]"
    if reason:
        detail = f"{detail} ({reason})"
    raise InvalidTransitionError(detail)


def segment_seconds(anchor: datetime, now: datetime) -> float:
    """Seconds between the anchor and a server instant, never negative."""
    return max(0.0, (now - anchor).total_seconds())


def check_start(record: SessionRecord):
    if record.is_running:
        _reject(TimerAction.START, record)
    if not record.participants:
        _reject(TimerAction.START, record, "no participants")


def check_stop(record: SessionRecord):
    if not record.is_running:
        _reject(TimerAction.STOP, record)


def start_update(record: SessionRecord, now: datetime) -> dict[str, Any]:
    """Merge-update that starts a run segment anchored at `now`."""
    check_start(record)
    return {"isRunning": True, "startTime": now}


def stop_update(record: SessionRecord, now: datetime) -> dict[str, Any]:
    """Merge-update that folds the current segment into the banked seconds."""
    check_stop(record)
    accumulated = record.accumulated_seconds + segment_seconds(record.start_anchor, now)
    return {"isRunning": False, "accumulatedSeconds": accumulated, "startTime": None}


def reset_update() -> dict[str, Any]:
    """Full replacement document: the canonical empty session."""
    return default_record()
