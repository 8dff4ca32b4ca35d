"""HTTP client for the store service, implementing RemoteStateStore."""

import json
import logging
from datetime import datetime
from typing import Any
from urllib.parse import quote

import httpx

from cost_meter.errors import StoreError
from cost_meter.models import SessionPatch, SessionRecord
from cost_meter.store import Snapshot

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 10.0

_STATUS_CODES = {
    403: "permission-denied",
    404: "not-found",
    422: "invalid-argument",
    429: "resource-exhausted",
}


def _session_path(session_id: str) -> str:
    return f"/sessions/{quote(session_id, safe=':')}"


def _store_error(method: str, url: str, exc: Exception) -> StoreError:
    if isinstance(exc, httpx.HTTPStatusError):
        status = exc.response.status_code
        return StoreError(
            f"{method} {url} failed with status {status}",
            code=_STATUS_CODES.get(status, "unavailable"),
        )
    return StoreError(f"{method} {url} failed: {exc}")


def _parse_line(line: str) -> Snapshot:
    """Decode one NDJSON stream line. Raises StoreError for error lines and garbage."""
    try:
        payload = json.loads(line)
        if payload.get("type") == "error":
            raise StoreError(payload.get("message", "Store stream error"))
        return Snapshot(
            session_id=payload["session_id"],
            version=int(payload["version"]),
            data=payload["data"],
        )
    except (ValueError, KeyError, TypeError, AttributeError) as e:
        raise StoreError(f"Malformed stream line: {line[:100]!r}", code="invalid-argument") from e


class HttpSubscription:
    """Snapshot stream read from the service's NDJSON endpoint."""

    def __init__(self, client: httpx.AsyncClient, session_id: str):
        self.client = client
        self.session_id = session_id
        self.closed = False
        self._response: httpx.Response | None = None

    def __aiter__(self):
        return self._iterate()

    async def _iterate(self):
        url = f"{_session_path(self.session_id)}/stream"
        try:
            # The subscription lives as long as the session view; no read timeout
            async with self.client.stream("GET", url, timeout=None) as response:
                self._response = response
                response.raise_for_status()
                async for line in response.aiter_lines():
                    if self.closed:
                        return
                    if not line.strip():
                        continue
                    yield _parse_line(line)
        except (httpx.HTTPError, httpx.StreamError) as e:
            if self.closed:
                return
            raise _store_error("GET", url, e) from e
        finally:
            self._response = None

    async def aclose(self):
        self.closed = True
        if self._response is not None:
            await self._response.aclose()


class HttpStateStore:
    def __init__(
        self,
        base_url: str,
        client: httpx.AsyncClient | None = None,
        timeout: float = DEFAULT_TIMEOUT,
    ):
        self.base_url = base_url
        self._client = client or httpx.AsyncClient(base_url=base_url, timeout=timeout)

    async def aclose(self):
        await self._client.aclose()

    async def now(self) -> datetime:
        data = await self._request("GET", "/time")
        return datetime.fromisoformat(data["server_time"])

    def subscribe(self, session_id: str) -> HttpSubscription:
        return HttpSubscription(self._client, session_id)

    async def write_merge(self, session_id: str, partial: dict[str, Any]) -> int:
        body = SessionPatch.model_validate(partial).model_dump(
            mode="json", by_alias=True, exclude_unset=True
        )
        data = await self._request("PATCH", _session_path(session_id), json=body)
        return data["version"]

    async def write_replace(self, session_id: str, record: dict[str, Any]) -> int:
        body = SessionRecord.model_validate(record).model_dump(mode="json", by_alias=True)
        data = await self._request("PUT", _session_path(session_id), json=body)
        return data["version"]

    async def _request(self, method: str, url: str, **kwargs: Any) -> dict[str, Any]:
        try:
            response = await self._client.request(method, url, **kwargs)
            response.raise_for_status()
        except httpx.HTTPError as e:
            logger.warning("Store request %s %s failed: %s", method, url, e)
            raise _store_error(method, url, e) from e
        return response.json()
