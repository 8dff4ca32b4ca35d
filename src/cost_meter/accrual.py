"""Cost accrual: elapsed time and cost derived from the shared record."""

from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import datetime

from cost_meter.models import Participant, TimerState
from cost_meter.timer import segment_seconds

SECONDS_PER_HOUR = 3600


@dataclass(frozen=True)
class CostBreakdown:
    elapsed_seconds: float = 0.0
    total_cost: float = 0.0
    per_participant: dict[str, float] = field(default_factory=dict)


def elapsed_seconds(timer: TimerState, now: datetime) -> float:
    """Banked seconds plus the current segment measured against a server instant."""
    elapsed = timer.accumulated_seconds
    if timer.is_running and timer.start_anchor is not None:
        elapsed += segment_seconds(timer.start_anchor, now)
    return elapsed


def compute_costs(
    participants: Iterable[Participant], timer: TimerState, now: datetime
) -> CostBreakdown:
    """
    Every participant accrues at their own rate against the same shared
    elapsed time, regardless of when they were added.
    """
    elapsed = elapsed_seconds(timer, now)
    per_participant = {p.id: (p.rate / SECONDS_PER_HOUR) * elapsed for p in participants}
    return CostBreakdown(
        elapsed_seconds=elapsed,
        total_cost=sum(per_participant.values()),
        per_participant=per_participant,
    )


def format_currency(amount: float) -> str:
    """Format as US dollars, e.g. $1,234.50."""
    sign = "-" if amount < 0 else ""
    return f"{sign}${abs(amount):,.2f}"


def format_elapsed(total_seconds: float) -> str:
    """Format as HH:MM:SS, truncating fractional seconds."""
    total = int(max(0.0, total_seconds))
    hours, rest = divmod(total, 3600)
    minutes, seconds = divmod(rest, 60)
    return f"{hours:02d}:{minutes:02d}:{seconds:02d}"
