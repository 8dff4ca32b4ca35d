"""
Remote state store boundary.

`RemoteStateStore` is the narrow capability the core depends on:
subscribe to full-record snapshots, merge or replace a document, and read
the server clock. `InMemoryStateStore` is the asyncio implementation hosted
by the store service and used directly in tests.
"""

import asyncio
import logging
from collections.abc import AsyncIterator, Callable
from copy import deepcopy
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any, Protocol

from cost_meter.errors import StoreError

logger = logging.getLogger(__name__)

# ============================================================
# CONSTANTS
# ============================================================

MAX_DOCUMENTS = 1000

_CLOSED = object()


def utcnow() -> datetime:
    return datetime.now(UTC)


# ============================================================
# PROTOCOL
# ============================================================


@dataclass(frozen=True)
class Snapshot:
    """Full copy of one document. `data` is None when the document is absent."""

    session_id: str
    version: int
    data: dict[str, Any] | None

    @property
    def exists(self) -> bool:
        return self.data is not None


class Subscription(Protocol):
    def __aiter__(self) -> AsyncIterator[Snapshot]: ...

    async def aclose(self) -> None: ...


class RemoteStateStore(Protocol):
    def subscribe(self, session_id: str) -> Subscription: ...

    async def write_merge(self, session_id: str, partial: dict[str, Any]) -> int: ...

    async def write_replace(self, session_id: str, record: dict[str, Any]) -> int: ...

    async def now(self) -> datetime: ...


# ============================================================
# IN-MEMORY STORE
# ============================================================


class QueueSubscription:
    """Snapshot stream for one subscriber, fed by the store."""

    def __init__(self, session_id: str, on_close: Callable[["QueueSubscription"], None] | None = None):
        self.session_id = session_id
        self.closed = False
        self._queue: asyncio.Queue = asyncio.Queue()
        self._on_close = on_close

    def push(self, item: "Snapshot | StoreError"):
        if not self.closed:
            self._queue.put_nowait(item)

    def close(self):
        if self.closed:
            return
        self.closed = True
        self._queue.put_nowait(_CLOSED)
        if self._on_close:
            self._on_close(self)

    async def aclose(self):
        self.close()

    def __aiter__(self):
        return self

    async def __anext__(self) -> Snapshot:
        item = await self._queue.get()
        if item is _CLOSED:
            raise StopAsyncIteration
        if isinstance(item, StoreError):
            self.close()
            raise item
        return item


class InMemoryStateStore:
    """
    Document store with top-level field merge and server-assigned time.

    Writes are serialized by a single lock; every committed write bumps the
    document version and fans a snapshot out to all of its subscribers,
    including the writer's own.
    """

    def __init__(
        self,
        clock: Callable[[], datetime] | None = None,
        max_documents: int = MAX_DOCUMENTS,
        validator: Callable[[dict[str, Any]], Any] | None = None,
    ):
        self.clock = clock or utcnow
        self.max_documents = max_documents
        # Checks the full document after a merge, before it is committed
        self.validator = validator
        self.read_only = False
        self._documents: dict[str, dict[str, Any]] = {}
        self._versions: dict[str, int] = {}
        self._subscriptions: dict[str, list[QueueSubscription]] = {}
        self._lock = asyncio.Lock()

    def __len__(self) -> int:
        return len(self._documents)

    def list_documents(self) -> list[str]:
        return list(self._documents)

    def subscriber_count(self, session_id: str) -> int:
        return len(self._subscriptions.get(session_id, []))

    async def now(self) -> datetime:
        return self.clock()

    def snapshot(self, session_id: str) -> Snapshot:
        doc = self._documents.get(session_id)
        return Snapshot(
            session_id=session_id,
            version=self._versions.get(session_id, 0),
            data=deepcopy(doc) if doc is not None else None,
        )

    async def get(self, session_id: str) -> Snapshot:
        return self.snapshot(session_id)

    def subscribe(self, session_id: str) -> QueueSubscription:
        """Open a snapshot stream; the current state is delivered first."""
        sub = QueueSubscription(session_id, on_close=self._remove_subscription)
        self._subscriptions.setdefault(session_id, []).append(sub)
        sub.push(self.snapshot(session_id))
        logger.debug("Subscribed to %s (%d subscribers)", session_id, self.subscriber_count(session_id))
        return sub

    async def write_merge(self, session_id: str, partial: dict[str, Any]) -> int:
        async with self._lock:
            self._check_writable(session_id)
            doc = dict(self._documents.get(session_id, {}))
            doc.update(deepcopy(partial))
            return self._commit(session_id, doc)

    async def write_replace(self, session_id: str, record: dict[str, Any]) -> int:
        async with self._lock:
            self._check_writable(session_id)
            return self._commit(session_id, deepcopy(record))

    async def delete(self, session_id: str) -> bool:
        async with self._lock:
            if self.read_only:
                raise StoreError("Permission denied: store is read-only", code="permission-denied")
            if session_id not in self._documents:
                return False
            del self._documents[session_id]
            self._versions[session_id] += 1
            self._publish(session_id)
            return True

    def disconnect(self, session_id: str | None = None, reason: str = "Store unavailable"):
        """Fail open subscriptions (all, or those of one session)."""
        ids = [session_id] if session_id is not None else list(self._subscriptions)
        for sid in ids:
            for sub in list(self._subscriptions.get(sid, [])):
                sub.push(StoreError(reason))
            self._subscriptions.pop(sid, None)

    def clear(self):
        """Drop every document and close every subscription."""
        for subs in list(self._subscriptions.values()):
            for sub in list(subs):
                sub.close()
        self._subscriptions.clear()
        self._documents.clear()
        self._versions.clear()
        self.read_only = False

    def _check_writable(self, session_id: str):
        if self.read_only:
            raise StoreError("Permission denied: store is read-only", code="permission-denied")
        if session_id not in self._documents and len(self._documents) >= self.max_documents:
            raise StoreError("Maximum session limit reached", code="resource-exhausted")

    def _commit(self, session_id: str, doc: dict[str, Any]) -> int:
        if self.validator is not None:
            try:
                self.validator(doc)
            except ValueError as e:
                raise StoreError(
                    f"Invalid record for {session_id}: {e}", code="invalid-argument"
                ) from e
        self._documents[session_id] = doc
        version = self._versions.get(session_id, 0) + 1
        self._versions[session_id] = version
        logger.debug("Committed %s at version %d", session_id, version)
        self._publish(session_id)
        return version

    def _publish(self, session_id: str):
        for sub in list(self._subscriptions.get(session_id, [])):
            sub.push(self.snapshot(session_id))

    def _remove_subscription(self, sub: QueueSubscription):
        subs = self._subscriptions.get(sub.session_id)
        if subs and sub in subs:
            subs.remove(sub)
            if not subs:
                del self._subscriptions[sub.session_id]
