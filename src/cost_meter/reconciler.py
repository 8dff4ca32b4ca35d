"""
Snapshot reconciliation.

Every snapshot from the store replaces the local participants and timer
wholesale. Local state is only ever a projection of the last applied
snapshot; nothing is merged or diffed.
"""

import asyncio
import contextlib
import logging
from collections.abc import Awaitable, Callable

import pydantic

from cost_meter.errors import ConnectivityError, StoreError
from cost_meter.models import SessionRecord, TimerState, default_record
from cost_meter.registry import ParticipantRegistry
from cost_meter.store import RemoteStateStore, Snapshot, Subscription

logger = logging.getLogger(__name__)


class SyncReconciler:
    def __init__(
        self,
        store: RemoteStateStore,
        session_id: str,
        registry: ParticipantRegistry,
        on_change: Callable[[], Awaitable[None]] | None = None,
        on_error: Callable[[ConnectivityError], None] | None = None,
    ):
        self.store = store
        self.session_id = session_id
        self.registry = registry
        self.on_change = on_change
        self.on_error = on_error

        self.timer = TimerState()
        self.version = 0
        self.synced = False
        self.error: ConnectivityError | None = None
        # Set once the first record is applied or the subscription fails
        self.ready = asyncio.Event()

        self._subscription: Subscription | None = None
        self._task: asyncio.Task | None = None
        self._closing = False

    @property
    def record(self) -> SessionRecord:
        """Last applied record, as the base for the next write."""
        return SessionRecord(
            participants=self.registry.participants,
            is_running=self.timer.is_running,
            accumulated_seconds=self.timer.accumulated_seconds,
            start_anchor=self.timer.start_anchor,
        )

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self):
        """Open the subscription and start consuming snapshots."""
        if self._task is not None:
            return
        self._closing = False
        self._subscription = self.store.subscribe(self.session_id)
        self._task = asyncio.create_task(self._consume())
        logger.info("Subscribed to session %s", self.session_id)

    async def stop(self):
        """Release the subscription and the consumer task."""
        self._closing = True
        if self._subscription is not None:
            await self._subscription.aclose()
            self._subscription = None
        if self._task is not None:
            if not self._task.done():
                self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
            self._task = None
            logger.info("Unsubscribed from session %s", self.session_id)

    async def handle(self, snapshot: Snapshot):
        """Apply one snapshot. Raises StoreError if initializing the record fails."""
        if self.version and snapshot.version <= self.version:
            logger.debug(
                "Ignoring stale snapshot v%d for %s (have v%d)",
                snapshot.version,
                self.session_id,
                self.version,
            )
            return
        self.version = snapshot.version

        if not snapshot.exists:
            # Another client may race to do the same; both write the same default
            logger.info("Session %s has no record; initializing", self.session_id)
            await self.store.write_replace(self.session_id, default_record())
            return

        try:
            record = SessionRecord.model_validate(snapshot.data)
        except pydantic.ValidationError as e:
            logger.warning(
                "Skipping malformed snapshot v%d for %s: %s", snapshot.version, self.session_id, e
            )
            return

        self.registry.replace(record.participants)
        self.timer = record.timer
        self.synced = True
        self.ready.set()
        logger.debug(
            "Applied snapshot v%d for %s: %d participants, running=%s",
            snapshot.version,
            self.session_id,
            len(self.registry),
            self.timer.is_running,
        )
        if self.on_change:
            await self.on_change()

    async def _consume(self):
        try:
            async for snapshot in self._subscription:
                await self.handle(snapshot)
        except StoreError as e:
            if self._closing:
                return
            self._fail(ConnectivityError(f"Failed to connect to the session store: {e}"))
            return
        if not self._closing:
            self._fail(ConnectivityError("Session store subscription dropped"))

    def _fail(self, error: ConnectivityError):
        self.error = error
        logger.error("Session %s: %s", self.session_id, error)
        self.ready.set()
        if self.on_error:
            self.on_error(error)
