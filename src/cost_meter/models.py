"""
Session record models.

Field aliases match the stored document (camelCase); Python code uses the
snake_case attribute names.
"""

from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

MAX_NAME_LENGTH = 200


def as_utc(v: datetime | None) -> datetime | None:
    """Naive instants are taken as UTC; aware ones are converted."""
    if v is None:
        return None
    if v.tzinfo is None:
        return v.replace(tzinfo=UTC)
    return v.astimezone(UTC)


class TimerPhase(StrEnum):
    STOPPED = "stopped"
    RUNNING = "running"


class Participant(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str = Field(..., min_length=1)
    name: str = Field(..., min_length=1, max_length=MAX_NAME_LENGTH)
    role: str = Field(..., min_length=1)
    rate: float = Field(..., ge=0, description="Hourly rate, frozen when added")

    @field_validator("name")
    @classmethod
    def strip_name(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("name must not be blank")
        return v


class TimerState(BaseModel):
    """Shared timer: running flag, banked seconds and the server start anchor."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    is_running: bool = Field(False, alias="isRunning")
    accumulated_seconds: float = Field(0.0, ge=0, alias="accumulatedSeconds")
    start_anchor: datetime | None = Field(None, alias="startTime")

    @field_validator("start_anchor")
    @classmethod
    def ensure_utc(cls, v: datetime | None) -> datetime | None:
        return as_utc(v)

    @model_validator(mode="after")
    def check_anchor(self):
        if self.is_running != (self.start_anchor is not None):
            raise ValueError("startTime must be set if and only if isRunning is true")
        return self

    @property
    def phase(self) -> TimerPhase:
        return TimerPhase.RUNNING if self.is_running else TimerPhase.STOPPED


class SessionRecord(TimerState):
    """The unit of synchronization: one per session id."""

    participants: list[Participant] = Field(default_factory=list)

    @property
    def timer(self) -> TimerState:
        return TimerState(
            is_running=self.is_running,
            accumulated_seconds=self.accumulated_seconds,
            start_anchor=self.start_anchor,
        )

    def to_document(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True)


class SessionPatch(BaseModel):
    """Partial record accepted by a merge-write."""

    model_config = ConfigDict(populate_by_name=True, extra="forbid")

    participants: list[Participant] | None = None
    is_running: bool | None = Field(None, alias="isRunning")
    accumulated_seconds: float | None = Field(None, ge=0, alias="accumulatedSeconds")
    start_anchor: datetime | None = Field(None, alias="startTime")

    @field_validator("start_anchor")
    @classmethod
    def ensure_utc(cls, v: datetime | None) -> datetime | None:
        return as_utc(v)

    def to_document(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_unset=True)


def default_record() -> dict[str, Any]:
    """Document written when a session is first accessed."""
    return SessionRecord().to_document()
