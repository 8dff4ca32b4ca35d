"""Local reflection of the session's participant list."""

import logging
import uuid
from collections.abc import Iterable, Mapping

from cost_meter.errors import ValidationError
from cost_meter.models import MAX_NAME_LENGTH, Participant
from cost_meter.roles import ROLE_RATES, rate_for

logger = logging.getLogger(__name__)


def new_participant_id() -> str:
    return f"p_{uuid.uuid4().hex[:8]}"


class ParticipantRegistry:
    """Ordered participants as of the last applied snapshot."""

    def __init__(self, roles: Mapping[str, float] = ROLE_RATES):
        self.roles = roles
        self._participants: list[Participant] = []

    def __len__(self) -> int:
        return len(self._participants)

    def __iter__(self):
        return iter(self._participants)

    def __contains__(self, participant_id: object) -> bool:
        return any(p.id == participant_id for p in self._participants)

    @property
    def participants(self) -> list[Participant]:
        return list(self._participants)

    def get(self, participant_id: str) -> Participant | None:
        for p in self._participants:
            if p.id == participant_id:
                return p
        return None

    def build(self, name: str, role: str) -> Participant:
        """Validate input and create a participant with its rate frozen now."""
        name = (name or "").strip()
        if not name:
            raise ValidationError("Participant name must not be empty")
        if len(name) > MAX_NAME_LENGTH:
            raise ValidationError(f"Participant name exceeds {MAX_NAME_LENGTH} characters")
        rate = rate_for(role, self.roles)
        return Participant(id=new_participant_id(), name=name, role=role, rate=rate)

    def with_added(self, participant: Participant) -> list[Participant]:
        """Sequence to write for an add: current entries plus the new one."""
        return [*self._participants, participant]

    def without(self, participant_id: str) -> list[Participant]:
        """Sequence to write for a remove. Unchanged if the id is absent."""
        return [p for p in self._participants if p.id != participant_id]

    def replace(self, participants: Iterable[Participant]) -> None:
        """Replace all entries from a snapshot, keeping the first of any duplicate id."""
        seen: set[str] = set()
        result = []
        for p in participants:
            if p.id in seen:
                logger.warning("Dropping duplicate participant id %s from snapshot", p.id)
                continue
            seen.add(p.id)
            result.append(p)
        self._participants = result
