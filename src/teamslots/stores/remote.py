"""Authoritative document store boundary and an in-process implementation.

Documents are JSON-compatible dicts addressed by ``collection/id`` paths.
Every write returns the server-assigned write time, which is the clock
last-write-wins reconciliation runs on.
"""

import asyncio
import copy
from collections.abc import Awaitable, Callable, Sequence
from datetime import datetime, timedelta, timezone
from typing import Any, Literal, Protocol, runtime_checkable

from pydantic import BaseModel, ConfigDict

from teamslots.errors import NetworkError, NotFoundError, ValidationError
from teamslots.logging import get_logger

log = get_logger(__name__)

Document = dict[str, Any]
ChangeListener = Callable[[list[Document]], "Awaitable[None] | None"]
Unsubscribe = Callable[[], None]

AVAILABILITY_COLLECTION = "monthlyAvailability"
TEAMS_COLLECTION = "teams"


class WhereClause(BaseModel):
    """Single field filter, e.g. ``WhereClause(field="scopeId", value="t1")``."""

    model_config = ConfigDict(frozen=True)

    field: str
    op: Literal["==", "!=", "in", "array-contains"] = "=="
    value: Any

    def matches(self, document: Document) -> bool:
        actual = document.get(self.field)
        if self.op == "==":
            return actual == self.value
        if self.op == "!=":
            return actual != self.value
        if self.op == "in":
            return actual in self.value
        return isinstance(actual, list) and self.value in actual

    def to_json(self) -> dict[str, Any]:
        return self.model_dump(mode="json")


def doc_path(collection: str, doc_id: str) -> str:
    if not collection or not doc_id or "/" in collection or "/" in doc_id:
        raise ValidationError(f"Invalid document path {collection!r}/{doc_id!r}", field="path")
    return f"{collection}/{doc_id}"


def split_path(path: str) -> tuple[str, str | None]:
    """``"teams/t1"`` -> ``("teams", "t1")``; ``"teams"`` -> ``("teams", None)``."""
    parts = path.strip("/").split("/")
    if len(parts) == 1 and parts[0]:
        return parts[0], None
    if len(parts) == 2 and all(parts):
        return parts[0], parts[1]
    raise ValidationError(f"Invalid document path {path!r}", field="path")


@runtime_checkable
class RemoteStore(Protocol):
    async def get_doc(self, path: str) -> Document | None: ...

    async def set_doc(self, path: str, data: Document) -> datetime: ...

    async def update_doc(self, path: str, partial: Document) -> datetime: ...

    async def query(self, collection: str, where: Sequence[WhereClause] = ()) -> list[Document]: ...

    async def subscribe(
        self, path: str, on_change: ChangeListener, where: Sequence[WhereClause] = ()
    ) -> Unsubscribe: ...


class _Listener:
    def __init__(self, collection: str, doc_id: str | None, where: Sequence[WhereClause], callback: ChangeListener) -> None:
        self.collection = collection
        self.doc_id = doc_id
        self.where = tuple(where)
        self.callback = callback
        self.active = True


class MemoryRemoteStore:
    """Dict-backed RemoteStore with a monotonic server clock.

    Used by the tests and for single-process demos. ``offline`` makes every
    call fail with ``NetworkError``; ``fail_next(n)`` fails only the next n
    calls. Listeners receive the full matching document set when they
    subscribe and again after every write to their collection.
    """

    def __init__(self, start: datetime | None = None) -> None:
        self._collections: dict[str, dict[str, Document]] = {}
        self._listeners: list[_Listener] = []
        self._clock = start or datetime(2024, 1, 1, tzinfo=timezone.utc)
        self._failures = 0
        self.offline = False
        self.latency = 0.0
        self.write_log: list[tuple[str, Document]] = []

    def fail_next(self, count: int = 1) -> None:
        self._failures += count

    async def _network(self, op: str, path: str) -> None:
        if self.latency:
            await asyncio.sleep(self.latency)
        if self.offline:
            raise NetworkError(f"remote unreachable during {op} {path}")
        if self._failures > 0:
            self._failures -= 1
            raise NetworkError(f"injected failure during {op} {path}")

    def _tick(self) -> datetime:
        self._clock = max(self._clock + timedelta(milliseconds=1), datetime.now(timezone.utc))
        return self._clock

    def documents(self, collection: str) -> dict[str, Document]:
        """Raw view of a collection, for assertions."""
        return copy.deepcopy(self._collections.get(collection, {}))

    async def get_doc(self, path: str) -> Document | None:
        await self._network("get_doc", path)
        collection, doc_id = split_path(path)
        doc = self._collections.get(collection, {}).get(doc_id or "")
        return copy.deepcopy(doc) if doc is not None else None

    async def set_doc(self, path: str, data: Document) -> datetime:
        await self._network("set_doc", path)
        collection, doc_id = split_path(path)
        if doc_id is None:
            raise ValidationError(f"set_doc needs a document path, got {path!r}", field="path")
        stamp = self._tick()
        stored = copy.deepcopy(data)
        stored["updatedAt"] = _iso(stamp)
        self._collections.setdefault(collection, {})[doc_id] = stored
        self.write_log.append((path, copy.deepcopy(stored)))
        await self._notify(collection, doc_id)
        return stamp

    async def update_doc(self, path: str, partial: Document) -> datetime:
        await self._network("update_doc", path)
        collection, doc_id = split_path(path)
        current = self._collections.get(collection, {}).get(doc_id or "")
        if current is None:
            raise NotFoundError(f"Document {path} not found")
        stamp = self._tick()
        current.update(copy.deepcopy(partial))
        current["updatedAt"] = _iso(stamp)
        self.write_log.append((path, copy.deepcopy(current)))
        await self._notify(collection, doc_id)
        return stamp

    async def query(self, collection: str, where: Sequence[WhereClause] = ()) -> list[Document]:
        await self._network("query", collection)
        return self._select(collection, None, where)

    async def subscribe(
        self, path: str, on_change: ChangeListener, where: Sequence[WhereClause] = ()
    ) -> Unsubscribe:
        await self._network("subscribe", path)
        collection, doc_id = split_path(path)
        listener = _Listener(collection, doc_id, where, on_change)
        self._listeners.append(listener)
        log.debug("remote_listener_added", path=path, listeners=len(self._listeners))
        await _call(on_change, self._select(collection, doc_id, where))

        def unsubscribe() -> None:
            listener.active = False
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _select(self, collection: str, doc_id: str | None, where: Sequence[WhereClause]) -> list[Document]:
        docs = self._collections.get(collection, {})
        ids = [doc_id] if doc_id is not None else sorted(docs)
        return [
            copy.deepcopy(docs[i])
            for i in ids
            if i in docs and all(clause.matches(docs[i]) for clause in where)
        ]

    async def _notify(self, collection: str, doc_id: str) -> None:
        for listener in list(self._listeners):
            if not listener.active or listener.collection != collection:
                continue
            if listener.doc_id is not None and listener.doc_id != doc_id:
                continue
            await _call(listener.callback, self._select(collection, listener.doc_id, listener.where))


async def _call(callback: ChangeListener, docs: list[Document]) -> None:
    result = callback(docs)
    if asyncio.iscoroutine(result):
        await result


def _iso(moment: datetime) -> str:
    return moment.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")
