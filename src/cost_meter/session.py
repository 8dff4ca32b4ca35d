"""
Meeting session: the client-side core.

Wires the store subscription, the participant registry, the timer
transitions and the ticker together, and exposes the commands and the
read-only view the presentation layer works with.
"""

import asyncio
import logging
from collections.abc import Callable, Mapping
from datetime import datetime
from typing import Any

from pydantic import BaseModel

from cost_meter.accrual import CostBreakdown, compute_costs, format_currency, format_elapsed
from cost_meter.config import Settings
from cost_meter.errors import (
    ConnectivityError,
    NotReadyError,
    StoreError,
    WriteRejectedError,
)
from cost_meter.identity import EnvSessionIdentity, SessionIdentity
from cost_meter.models import Participant, SessionRecord
from cost_meter.reconciler import SyncReconciler
from cost_meter.registry import ParticipantRegistry
from cost_meter.remote import HttpStateStore
from cost_meter.roles import ROLE_RATES
from cost_meter.store import RemoteStateStore
from cost_meter.ticker import DEFAULT_TICK_INTERVAL, Ticker
from cost_meter.timer import check_start, check_stop, reset_update, start_update, stop_update

logger = logging.getLogger(__name__)


class MeterView(BaseModel):
    session_id: str
    ready: bool
    participants: list[Participant]
    is_running: bool
    elapsed_seconds: float
    total_cost: float
    per_participant: dict[str, float]
    elapsed_display: str
    total_cost_display: str
    error: str | None = None


class MeetingSession:
    """One client's view of a shared meeting cost meter."""

    def __init__(
        self,
        store: RemoteStateStore,
        session_id: str,
        roles: Mapping[str, float] = ROLE_RATES,
        tick_interval: float = DEFAULT_TICK_INTERVAL,
        on_update: Callable[[MeterView], None] | None = None,
    ):
        self.store = store
        self.session_id = session_id
        self.on_update = on_update
        self.costs = CostBreakdown()

        self.registry = ParticipantRegistry(roles)
        self.reconciler = SyncReconciler(
            store,
            session_id,
            self.registry,
            on_change=self._on_change,
            on_error=self._on_error,
        )
        self.ticker = Ticker(self.recompute, interval=tick_interval)
        self._owned_store: HttpStateStore | None = None

    @classmethod
    def from_settings(
        cls,
        settings: Settings | None = None,
        identity: SessionIdentity | None = None,
        store: RemoteStateStore | None = None,
        **kwargs: Any,
    ) -> "MeetingSession":
        """Build a session from environment settings. Raises NoSessionError or ConfigMissingError."""
        settings = settings or Settings.load()
        identity = identity or EnvSessionIdentity(settings)
        session_id = settings.document_id(identity.get_session_id())
        owned = None
        if store is None:
            owned = store = HttpStateStore(settings.require_store_url())
        kwargs.setdefault("tick_interval", settings.tick_interval)
        session = cls(store, session_id, **kwargs)
        session._owned_store = owned
        return session

    # ============================================================
    # LIFECYCLE
    # ============================================================

    async def open(self) -> "MeetingSession":
        self.reconciler.start()
        return self

    async def close(self):
        """Release the subscription and the tick schedule."""
        # A snapshot in flight can still reschedule until the reconciler stops
        await self.reconciler.stop()
        self.ticker.cancel()
        if self._owned_store is not None:
            await self._owned_store.aclose()
            self._owned_store = None

    async def __aenter__(self) -> "MeetingSession":
        return await self.open()

    async def __aexit__(self, *exc_info):
        await self.close()

    async def wait_ready(self, timeout: float | None = None):
        """Wait for the first snapshot. Raises the ConnectivityError if the subscription failed."""
        await asyncio.wait_for(self.reconciler.ready.wait(), timeout)
        if self.reconciler.error:
            raise self.reconciler.error

    # ============================================================
    # DERIVED VALUES
    # ============================================================

    @property
    def participants(self) -> list[Participant]:
        return self.registry.participants

    @property
    def is_running(self) -> bool:
        return self.reconciler.timer.is_running

    def view(self) -> MeterView:
        error = self.reconciler.error
        return MeterView(
            session_id=self.session_id,
            ready=self.reconciler.synced,
            participants=self.registry.participants,
            is_running=self.is_running,
            elapsed_seconds=self.costs.elapsed_seconds,
            total_cost=self.costs.total_cost,
            per_participant=dict(self.costs.per_participant),
            elapsed_display=format_elapsed(self.costs.elapsed_seconds),
            total_cost_display=format_currency(self.costs.total_cost),
            error=str(error) if error else None,
        )

    async def recompute(self):
        now = await self.store.now()
        self.costs = compute_costs(self.registry, self.reconciler.timer, now)
        if self.on_update:
            self.on_update(self.view())

    async def _on_change(self):
        await self.ticker.reschedule(self.reconciler.timer.is_running)

    def _on_error(self, error: ConnectivityError):
        self.ticker.cancel()
        if self.on_update:
            self.on_update(self.view())

    # ============================================================
    # COMMANDS
    # ============================================================

    async def add_participant(self, name: str, role: str) -> Participant:
        participant = self.registry.build(name, role)
        self._base()
        # Appends to the last seen list; a concurrent add elsewhere can be lost
        participants = self.registry.with_added(participant)
        await self._write({"participants": [p.model_dump() for p in participants]})
        logger.info("Added participant %s (%s) to %s", participant.id, participant.role, self.session_id)
        return participant

    async def remove_participant(self, participant_id: str):
        self._base()
        participant = self.registry.get(participant_id)
        if participant is None:
            logger.debug("Participant %s already absent from %s", participant_id, self.session_id)
            return
        participants = self.registry.without(participant_id)
        await self._write({"participants": [p.model_dump() for p in participants]})
        logger.info("Removed participant %s (%s) from %s", participant.id, participant.name, self.session_id)

    async def start(self):
        record = self._base()
        check_start(record)
        await self._write(start_update(record, await self._now()))
        logger.info("Started timer for %s", self.session_id)

    async def stop(self):
        record = self._base()
        check_stop(record)
        await self._write(stop_update(record, await self._now()))
        logger.info("Stopped timer for %s", self.session_id)

    async def toggle(self):
        if self.is_running:
            await self.stop()
        else:
            await self.start()

    async def reset(self):
        self._base()
        await self._write(reset_update(), replace=True)
        logger.info("Reset session %s", self.session_id)

    def _base(self) -> SessionRecord:
        if self.reconciler.error:
            raise self.reconciler.error
        if not self.reconciler.synced:
            raise NotReadyError(f"Session {self.session_id} is not synchronized yet")
        return self.reconciler.record

    async def _now(self) -> datetime:
        try:
            return await self.store.now()
        except StoreError as e:
            raise WriteRejectedError(f"Could not read server time: {e}") from e

    async def _write(self, update: dict[str, Any], replace: bool = False):
        try:
            if replace:
                await self.store.write_replace(self.session_id, update)
            else:
                await self.store.write_merge(self.session_id, update)
        except StoreError as e:
            raise WriteRejectedError(f"Write to session {self.session_id} rejected: {e}") from e
