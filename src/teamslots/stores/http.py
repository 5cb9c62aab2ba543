"""RemoteStore adapter for a JSON document API over HTTP.

Endpoints, relative to ``base_url``:
    GET   /{collection}/{id}        -> 200 document | 404
    PUT   /{collection}/{id}        -> 200 {"updateTime": ISO-8601}
    PATCH /{collection}/{id}        -> 200 {"updateTime": ISO-8601} | 404
    POST  /{collection}:query       -> 200 {"documents": [...]}

The server has no push channel; ``subscribe`` polls the watched path and
calls back when the payload changes.

The client is explicitly owned: construct it, ``connect()`` (or use
``async with``), hand it to the SyncCoordinator, ``disconnect()`` when done.
"""

import asyncio
import json
from collections.abc import Sequence
from datetime import datetime, timezone
from typing import Any

import httpx

from teamslots.config import SyncConfig
from teamslots.errors import ConflictError, NetworkError, NotFoundError, TeamSlotsError, ValidationError
from teamslots.logging import get_logger
from teamslots.stores.remote import ChangeListener, Document, Unsubscribe, WhereClause, split_path

log = get_logger(__name__)


class HttpRemoteStore:
    def __init__(
        self,
        base_url: str,
        *,
        timeout: float = 8.0,
        poll_interval: float = 5.0,
        headers: dict[str, str] | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.poll_interval = poll_interval
        self._headers = dict(headers or {})
        self._transport = transport
        self._client: httpx.AsyncClient | None = None
        self._pollers: set[asyncio.Task] = set()

    @classmethod
    def from_config(cls, config: SyncConfig, **kwargs: Any) -> "HttpRemoteStore":
        return cls(
            config.remote_base_url,
            timeout=config.remote_timeout_seconds,
            poll_interval=config.remote_poll_interval_seconds,
            **kwargs,
        )

    async def connect(self) -> None:
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                timeout=self.timeout,
                headers=self._headers,
                transport=self._transport,
            )
            log.info("remote_connected", base_url=self.base_url)

    async def disconnect(self) -> None:
        for task in list(self._pollers):
            task.cancel()
        if self._pollers:
            await asyncio.gather(*self._pollers, return_exceptions=True)
        self._pollers.clear()
        if self._client is not None:
            await self._client.aclose()
            self._client = None
            log.info("remote_disconnected", base_url=self.base_url)

    async def __aenter__(self) -> "HttpRemoteStore":
        await self.connect()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.disconnect()

    async def _request(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        if self._client is None:
            raise NetworkError("HttpRemoteStore is not connected")
        try:
            resp = await self._client.request(method, url, **kwargs)
        except httpx.TimeoutException as e:
            log.warning("remote_timeout", method=method, url=url, error=str(e))
            raise NetworkError(f"{method} {url} timed out") from e
        except httpx.TransportError as e:
            log.warning("remote_unreachable", method=method, url=url, error=str(e))
            raise NetworkError(f"{method} {url} failed: {e}") from e

        if resp.status_code >= 500 or resp.status_code == 429:
            raise NetworkError(f"{method} {url} returned {resp.status_code}")
        if resp.status_code == 404:
            raise NotFoundError(f"{url} not found")
        if resp.status_code == 409:
            raise ConflictError(_error_message(resp, "Conflicting write"))
        if resp.status_code in (400, 422):
            raise ValidationError(_error_message(resp, "Rejected by server"))
        if resp.status_code >= 400:
            raise NetworkError(f"{method} {url} returned {resp.status_code}")
        return resp

    async def get_doc(self, path: str) -> Document | None:
        split_path(path)
        try:
            resp = await self._request("GET", f"/{path}")
        except NotFoundError:
            return None
        return resp.json()

    async def set_doc(self, path: str, data: Document) -> datetime:
        split_path(path)
        resp = await self._request("PUT", f"/{path}", json=data)
        return _update_time(resp)

    async def update_doc(self, path: str, partial: Document) -> datetime:
        split_path(path)
        resp = await self._request("PATCH", f"/{path}", json=partial)
        return _update_time(resp)

    async def query(self, collection: str, where: Sequence[WhereClause] = ()) -> list[Document]:
        body = {"where": [clause.to_json() for clause in where]}
        resp = await self._request("POST", f"/{collection}:query", json=body)
        return list(resp.json().get("documents", []))

    async def _fetch(self, path: str, where: Sequence[WhereClause]) -> list[Document]:
        collection, doc_id = split_path(path)
        if doc_id is None:
            return await self.query(collection, where)
        doc = await self.get_doc(path)
        return [doc] if doc is not None else []

    async def subscribe(
        self, path: str, on_change: ChangeListener, where: Sequence[WhereClause] = ()
    ) -> Unsubscribe:
        """Poll ``path`` and call ``on_change`` whenever the result set changes.

        The first fetch happens before returning, so connection errors surface
        to the caller as ``NetworkError``.
        """
        initial = await self._fetch(path, where)
        task = asyncio.create_task(self._poll(path, on_change, where, initial))
        self._pollers.add(task)
        task.add_done_callback(self._poller_done)

        def unsubscribe() -> None:
            task.cancel()

        return unsubscribe

    def _poller_done(self, task: asyncio.Task) -> None:
        self._pollers.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            log.error("remote_poll_stopped", error=str(error), type=type(error).__name__)

    async def _poll(
        self,
        path: str,
        on_change: ChangeListener,
        where: Sequence[WhereClause],
        initial: list[Document],
    ) -> None:
        fingerprint = _fingerprint(initial)
        await _deliver(path, on_change, initial)
        while True:
            await asyncio.sleep(self.poll_interval)
            try:
                docs = await self._fetch(path, where)
            except TeamSlotsError as e:
                log.warning("remote_poll_failed", path=path, error=str(e), type=type(e).__name__)
                continue
            current = _fingerprint(docs)
            if current != fingerprint:
                fingerprint = current
                await _deliver(path, on_change, docs)


async def _deliver(path: str, on_change: ChangeListener, docs: list[Document]) -> None:
    """Run the listener; a failing listener is logged and keeps its subscription."""
    try:
        result = on_change(docs)
        if asyncio.iscoroutine(result):
            await result
    except Exception:
        log.exception("remote_poll_callback_failed", path=path, documents=len(docs))


def _fingerprint(docs: list[Document]) -> str:
    return json.dumps(docs, sort_keys=True, default=str)


def _update_time(resp: httpx.Response) -> datetime:
    """Server write time from the response body, now when the body has none.

    Raises:
        ValidationError: If ``updateTime`` is present but not an ISO-8601 string.
    """
    try:
        payload = resp.json()
    except ValueError:
        payload = None
    raw = payload.get("updateTime") if isinstance(payload, dict) else None
    if not raw:
        return datetime.now(timezone.utc)
    if not isinstance(raw, str):
        raise ValidationError(f"Malformed updateTime {raw!r} from server", field="updateTime")
    try:
        stamp = datetime.fromisoformat(raw.replace("Z", "+00:00"))
    except ValueError as e:
        raise ValidationError(f"Malformed updateTime {raw!r} from server", field="updateTime") from e
    return stamp if stamp.tzinfo else stamp.replace(tzinfo=timezone.utc)


def _error_message(resp: httpx.Response, fallback: str) -> str:
    try:
        payload = resp.json()
    except ValueError:
        return resp.text or fallback
    if isinstance(payload, dict):
        return str(payload.get("error") or payload.get("message") or fallback)
    return fallback
