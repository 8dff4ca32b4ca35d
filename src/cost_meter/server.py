"""
Meeting Cost Meter Store Service

Hosts the shared session records for the cost meter.
Clients subscribe to full-record snapshots and write with merge or replace;
every instant comes from the server clock.
"""

import asyncio
import contextlib
import json
import logging
import uuid
from contextlib import asynccontextmanager
from datetime import UTC, datetime
from typing import Any

from fastapi import FastAPI, HTTPException, Response, WebSocket, WebSocketDisconnect
from fastapi.encoders import jsonable_encoder
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import StreamingResponse
from pydantic import BaseModel

from cost_meter import __version__
from cost_meter.config import Settings, configure_logging
from cost_meter.errors import StoreError
from cost_meter.models import SessionPatch, SessionRecord
from cost_meter.store import MAX_DOCUMENTS, InMemoryStateStore, Snapshot, Subscription

logger = logging.getLogger(__name__)

# ============================================================
# CONSTANTS
# ============================================================

MAX_SESSIONS = MAX_DOCUMENTS
MAX_CLIENTS_PER_SESSION = 100
KEEPALIVE_SECONDS = 30

_ERROR_STATUS = {
    "permission-denied": 403,
    "resource-exhausted": 429,
    "invalid-argument": 422,
}


# ============================================================
# MODELS
# ============================================================


class SnapshotResponse(BaseModel):
    session_id: str
    version: int
    exists: bool
    data: dict[str, Any] | None


class WriteResponse(BaseModel):
    session_id: str
    version: int


class TimeResponse(BaseModel):
    server_time: str


def _format_ts(dt: datetime | None) -> str | None:
    """Format a datetime in UTC as ISO 8601 with Z suffix, keeping microseconds."""
    if dt is None:
        return None
    return dt.astimezone(UTC).strftime("%Y-%m-%dT%H:%M:%S.%fZ")


def _snapshot_payload(snapshot: Snapshot) -> dict[str, Any]:
    return {
        "type": "snapshot",
        "session_id": snapshot.session_id,
        "version": snapshot.version,
        "exists": snapshot.exists,
        "data": jsonable_encoder(snapshot.data, custom_encoder={datetime: _format_ts}),
    }


def _raise_http(e: StoreError):
    raise HTTPException(status_code=_ERROR_STATUS.get(e.code, 503), detail=str(e)) from None


# ============================================================
# CONNECTION HUB
# ============================================================


class ConnectionHub:
    """Tracks WebSocket clients per session."""

    def __init__(self):
        self.clients: dict[str, dict[str, WebSocket]] = {}

    def count(self, session_id: str) -> int:
        return len(self.clients.get(session_id, {}))

    async def add_client(self, session_id: str, client_id: str, websocket: WebSocket):
        """Accept a client connection unless the session is full."""
        if self.count(session_id) >= MAX_CLIENTS_PER_SESSION:
            await websocket.close(code=4029, reason="Too many connections")
            return False

        await websocket.accept()
        self.clients.setdefault(session_id, {})[client_id] = websocket
        return True

    def remove_client(self, session_id: str, client_id: str):
        clients = self.clients.get(session_id)
        if clients and client_id in clients:
            del clients[client_id]
            if not clients:
                del self.clients[session_id]


# Global store and hub
settings = Settings.load()
store = InMemoryStateStore(max_documents=MAX_SESSIONS, validator=SessionRecord.model_validate)
hub = ConnectionHub()


# ============================================================
# FASTAPI APP
# ============================================================


@asynccontextmanager
async def lifespan(app: FastAPI):
    configure_logging(settings.log_level)
    logger.info("Cost Meter Store Service started")
    yield
    store.disconnect(reason="Service shutting down")
    logger.info("Cost Meter Store Service stopped")


app = FastAPI(
    title="Cost Meter Store Service",
    description="Shared session records for the meeting cost meter",
    version=__version__,
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ============================================================
# HEALTH CHECK
# ============================================================


@app.get("/health")
async def health():
    """Health check endpoint."""
    return {"status": "healthy", "sessions_active": len(store)}


@app.get("/time", response_model=TimeResponse)
async def server_time():
    """Current server instant, the basis for all duration math."""
    return TimeResponse(server_time=_format_ts(await store.now()))


# ============================================================
# REST ENDPOINTS
# ============================================================


@app.get("/sessions", response_model=list[str])
async def list_sessions():
    return store.list_documents()


@app.get("/sessions/{session_id}", response_model=SnapshotResponse)
async def get_session(session_id: str):
    """Current snapshot of a session record; `exists` is false if never written."""
    payload = _snapshot_payload(await store.get(session_id))
    payload.pop("type")
    return payload


@app.patch("/sessions/{session_id}", response_model=WriteResponse)
async def merge_session(session_id: str, request: SessionPatch):
    """Merge the given top-level fields into the session record."""
    try:
        version = await store.write_merge(session_id, request.to_document())
    except StoreError as e:
        _raise_http(e)
    return WriteResponse(session_id=session_id, version=version)


@app.put("/sessions/{session_id}", response_model=WriteResponse)
async def replace_session(session_id: str, request: SessionRecord):
    """Replace the whole session record."""
    try:
        version = await store.write_replace(session_id, request.to_document())
    except StoreError as e:
        _raise_http(e)
    return WriteResponse(session_id=session_id, version=version)


@app.delete("/sessions/{session_id}", status_code=204)
async def delete_session(session_id: str):
    """Delete a session record."""
    try:
        deleted = await store.delete(session_id)
    except StoreError as e:
        _raise_http(e)
    if not deleted:
        raise HTTPException(status_code=404, detail="Session not found")
    return Response(status_code=204)


@app.get("/sessions/{session_id}/stream")
async def stream_session(session_id: str):
    """
    Newline-delimited JSON snapshot stream. The current state is sent first,
    then one line per committed write.
    """
    subscription = store.subscribe(session_id)

    async def lines():
        try:
            async for snapshot in subscription:
                yield json.dumps(_snapshot_payload(snapshot)) + "\n"
        except StoreError as e:
            yield json.dumps({"type": "error", "message": str(e)}) + "\n"
        finally:
            await subscription.aclose()

    return StreamingResponse(lines(), media_type="application/x-ndjson")


# ============================================================
# WEBSOCKET ENDPOINT
# ============================================================


async def _forward_snapshots(websocket: WebSocket, subscription: Subscription):
    try:
        async for snapshot in subscription:
            await websocket.send_json(_snapshot_payload(snapshot))
    except StoreError as e:
        with contextlib.suppress(Exception):
            await websocket.send_json({"type": "error", "message": str(e)})
            await websocket.close(code=1011, reason="Store unavailable")


@app.websocket("/ws/{session_id}")
async def websocket_endpoint(websocket: WebSocket, session_id: str):
    """
    WebSocket connection to receive session snapshots.

    Messages received:
    - snapshot: Current record on connect, then after every write
    - pong: Reply to ping
    - sync_response: Server time and current version
    - keepalive: Sent after 30s of client silence
    - error: Unknown message type, or the store failed
    """
    client_id = f"client_{uuid.uuid4().hex[:8]}"
    accepted = await hub.add_client(session_id, client_id, websocket)
    if not accepted:
        return

    subscription = store.subscribe(session_id)
    forwarder = asyncio.create_task(_forward_snapshots(websocket, subscription))

    try:
        while True:
            try:
                data = await asyncio.wait_for(websocket.receive_json(), timeout=KEEPALIVE_SECONDS)

                if data.get("type") == "ping":
                    await websocket.send_json({"type": "pong"})

                elif data.get("type") == "sync":
                    snapshot = await store.get(session_id)
                    await websocket.send_json(
                        {
                            "type": "sync_response",
                            "server_time": _format_ts(await store.now()),
                            "version": snapshot.version,
                        }
                    )

                else:
                    await websocket.send_json(
                        {
                            "type": "error",
                            "message": f"Unknown message type: {data.get('type')}",
                        }
                    )

            except TimeoutError:
                await websocket.send_json({"type": "keepalive"})

    except WebSocketDisconnect:
        pass
    except Exception:
        logger.warning("WebSocket error for client %s on session %s", client_id, session_id)
    finally:
        forwarder.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await forwarder
        await subscription.aclose()
        hub.remove_client(session_id, client_id)


# ============================================================
# MAIN
# ============================================================

if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host=settings.host, port=settings.port)
