"""Environment-driven settings and logging setup."""

import logging
import os
import sys
from dataclasses import dataclass

from cost_meter.errors import ConfigMissingError

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"
DEFAULT_APP_ID = "default-app-id"


@dataclass(frozen=True)
class Settings:
    app_id: str
    store_url: str | None
    session_id: str | None
    dev_session_id: str | None
    tick_interval: float
    host: str
    port: int
    log_level: str

    @staticmethod
    def load() -> "Settings":
        return Settings(
            app_id=os.getenv("COST_METER_APP_ID") or DEFAULT_APP_ID,
            store_url=os.getenv("COST_METER_STORE_URL") or None,
            session_id=os.getenv("COST_METER_SESSION_ID") or None,
            dev_session_id=os.getenv("COST_METER_DEV_SESSION_ID") or None,
            tick_interval=float(os.getenv("COST_METER_TICK_INTERVAL", "1.0")),
            host=os.getenv("COST_METER_HOST", "127.0.0.1"),
            port=int(os.getenv("COST_METER_PORT", "8003")),
            log_level=os.getenv("COST_METER_LOG_LEVEL", "INFO").upper(),
        )

    def require_store_url(self) -> str:
        if not self.store_url:
            raise ConfigMissingError("Store configuration is missing: set COST_METER_STORE_URL")
        return self.store_url

    def document_id(self, session_id: str) -> str:
        """Namespace a session id with the app id."""
        return f"{self.app_id}:{session_id}"


def configure_logging(level: str | int = logging.INFO) -> None:
    root = logging.getLogger()
    if getattr(root, "_cost_meter_configured", False):
        root.setLevel(level)
        return
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    root.addHandler(handler)
    root.setLevel(level)
    root._cost_meter_configured = True  # type: ignore[attr-defined]
