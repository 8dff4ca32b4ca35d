"""Time and merge helpers shared by the test modules."""

import asyncio
from datetime import UTC, datetime, timedelta
from typing import Any

from cost_meter.models import SessionRecord

T0 = datetime(2026, 1, 5, 9, 0, 0, tzinfo=UTC)


class FakeClock:
    """Server clock that only moves when told to."""

    def __init__(self, start: datetime = T0):
        self.current = start

    def __call__(self) -> datetime:
        return self.current

    def advance(self, seconds: float):
        self.current += timedelta(seconds=seconds)


async def settle():
    """Let pending snapshot deliveries and recomputations run."""
    for _ in range(5):
        await asyncio.sleep(0.01)


def apply_update(record: SessionRecord, update: dict[str, Any]) -> SessionRecord:
    """Merge an update into a record the same way the store does."""
    return SessionRecord.model_validate({**record.to_document(), **update})
