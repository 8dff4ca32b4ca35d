"""Session identity providers: where the session id comes from."""

import logging
from typing import Protocol

from cost_meter.config import Settings
from cost_meter.errors import NoSessionError

logger = logging.getLogger(__name__)


class SessionIdentity(Protocol):
    def get_session_id(self) -> str: ...


class StaticSessionIdentity:
    """A fixed session id, e.g. taken from the hosting meeting's context."""

    def __init__(self, session_id: str | None):
        self.session_id = session_id

    def get_session_id(self) -> str:
        if not self.session_id or not self.session_id.strip():
            raise NoSessionError("This app can only be run inside a meeting session")
        return self.session_id.strip()


class EnvSessionIdentity:
    """
    Session id from settings (COST_METER_SESSION_ID). Outside a meeting,
    falls back to COST_METER_DEV_SESSION_ID when one is configured.
    """

    def __init__(self, settings: Settings | None = None):
        self.settings = settings or Settings.load()

    def get_session_id(self) -> str:
        if self.settings.session_id:
            return self.settings.session_id
        if self.settings.dev_session_id:
            logger.warning(
                "No session context; running in fallback mode with session %s",
                self.settings.dev_session_id,
            )
            return self.settings.dev_session_id
        raise NoSessionError("This app can only be run inside a meeting session")
