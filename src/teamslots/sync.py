"""Offline-first coordination between LocalStore and RemoteStore.

SyncCoordinator gives callers one read/write API whatever the connectivity:

- ``write`` always lands in LocalStore first. Online, it is pushed to the
  RemoteStore; on a network failure, or while offline, a PendingOperation
  replaying that exact write is queued instead.
- ``read`` prefers the remote copy and refreshes the cache with it, falling
  back to the cached copy (``from_cache=True``) on any network failure.
- ``on_reconnect`` drains the queue strictly FIFO, one operation at a time.
  An operation that still fails after the retry policy stays at the head
  and draining stops until the next reconnect signal.

Writes to the same document are serialized by a per-key lock; writes to
different documents run concurrently. Queue mutations and the drain loop
share one lock, and the drain pops an operation only after it has been
replayed, so a write arriving mid-drain queues behind it and is never lost
or replayed twice.

The server-assigned write time is authoritative: after a successful push
it becomes the record's ``updated_at`` (never moving it backwards).
"""

import asyncio
import itertools
from collections import deque
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from pydantic import BaseModel
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from teamslots.config import SyncConfig, get_config
from teamslots.errors import NetworkError, PermanentError, SyncClosedError, TransientError, ValidationError
from teamslots.logging import get_logger, log_context
from teamslots.models import AvailabilityRecord, record_id_for, utc_now
from teamslots.stores.local import LocalStore, StorageKeys, get_json, set_json
from teamslots.stores.remote import (
    AVAILABILITY_COLLECTION,
    Document,
    RemoteStore,
    Unsubscribe,
    WhereClause,
    doc_path,
)

log = get_logger(__name__)

RecordsCallback = Callable[[list[AvailabilityRecord]], "Awaitable[None] | None"]


@dataclass
class PendingOperation:
    """A queued remote write, replayable until it succeeds."""

    key: str
    description: str
    send: Callable[[], Awaitable[datetime]]
    on_synced: Callable[[datetime], Awaitable[None]] | None = None
    attempts: int = 0
    seq: int = 0
    enqueued_at: datetime = field(default_factory=utc_now)


class WriteResult(BaseModel):
    synced: bool
    queued: bool
    server_time: datetime | None = None


class ReadResult(BaseModel):
    record: AvailabilityRecord | None
    from_cache: bool


class ScopeReadResult(BaseModel):
    records: list[AvailabilityRecord]
    from_cache: bool


class Subscription:
    """Handle for a live scope/period subscription. ``cancel()`` to stop it."""

    def __init__(self, coordinator: "SyncCoordinator", scope_id: str, period: str, callback: RecordsCallback) -> None:
        self._coordinator = coordinator
        self.scope_id = scope_id
        self.period = period
        self.callback = callback
        self.unsubscribe: Unsubscribe | None = None
        self.cancelled = False

    @property
    def attached(self) -> bool:
        return self.unsubscribe is not None

    def cancel(self) -> None:
        if self.cancelled:
            return
        self.cancelled = True
        if self.unsubscribe is not None:
            self.unsubscribe()
            self.unsubscribe = None
        self._coordinator._forget(self)


class SyncCoordinator:
    """Single read/write API over a LocalStore and a RemoteStore.

    Args:
        local: Durable device store.
        remote: Authoritative document store.
        config: Timeouts and retry policy. Defaults to ``get_config()``.
        online: Initial connectivity; later fed by ``set_online_status``.
    """

    def __init__(
        self,
        local: LocalStore,
        remote: RemoteStore,
        config: SyncConfig | None = None,
        *,
        online: bool = True,
    ) -> None:
        self.local = local
        self.remote = remote
        self.config = config or get_config()
        self.online = online
        self._queue: deque[PendingOperation] = deque()
        self._queue_lock = asyncio.Lock()
        self._drain_lock = asyncio.Lock()
        self._local_lock = asyncio.Lock()
        self._key_locks: dict[str, asyncio.Lock] = {}
        self._subscriptions: list[Subscription] = []
        self._tasks: set[asyncio.Task] = set()
        self._seq = itertools.count(1)
        self._cycles = itertools.count(1)
        self._closed = False

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    async def __aenter__(self) -> "SyncCoordinator":
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()

    @property
    def closed(self) -> bool:
        return self._closed

    async def close(self) -> None:
        """Stop subscriptions and background reconnect work.

        Queued operations stay in memory but are no longer replayed.
        """
        if self._closed:
            return
        self._closed = True
        for subscription in list(self._subscriptions):
            subscription.cancel()
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        log.info("sync_closed", pending=len(self._queue))

    def _ensure_open(self) -> None:
        if self._closed:
            raise SyncClosedError("SyncCoordinator is closed")

    # ------------------------------------------------------------------
    # Connectivity
    # ------------------------------------------------------------------
    def set_online_status(self, is_online: bool) -> asyncio.Task | None:
        """Connectivity observer hook. Must be called from the event loop.

        Returns:
            The reconnect task when this call flipped offline -> online.
        """
        was_online = self.online
        log.info("network_status_changed", online=is_online, pending=len(self._queue))
        if not is_online:
            self.online = False
            return None
        if was_online or self._closed:
            self.online = True
            return None
        task = asyncio.get_running_loop().create_task(self.on_reconnect())
        self._tasks.add(task)
        task.add_done_callback(self._reconnect_done)
        return task

    def _reconnect_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            log.error("reconnect_failed", error=str(error), type=type(error).__name__)

    async def on_reconnect(self) -> int:
        """Mark online, attach deferred subscriptions and drain the queue.

        Returns:
            Number of operations replayed in this cycle.
        """
        self._ensure_open()
        self.online = True
        for subscription in list(self._subscriptions):
            if not subscription.attached and not subscription.cancelled:
                await self._attach(subscription)
        return await self.drain()

    # ------------------------------------------------------------------
    # Queue
    # ------------------------------------------------------------------
    @property
    def pending_count(self) -> int:
        return len(self._queue)

    def pending_operations(self) -> list[PendingOperation]:
        return list(self._queue)

    def _has_pending(self, key: str) -> bool:
        return any(op.key == key for op in self._queue)

    def _enqueue(self, op: PendingOperation) -> None:
        op.seq = next(self._seq)
        self._queue.append(op)
        log.info("operation_queued", key=op.key, description=op.description, pending=len(self._queue))

    def _key_lock(self, key: str) -> asyncio.Lock:
        lock = self._key_locks.get(key)
        if lock is None:
            lock = self._key_locks[key] = asyncio.Lock()
        return lock

    async def _call_remote(self, call: Callable[[], Awaitable[Any]]) -> Any:
        try:
            return await asyncio.wait_for(call(), timeout=self.config.remote_timeout_seconds)
        except asyncio.TimeoutError as e:
            raise NetworkError(
                f"remote call timed out after {self.config.remote_timeout_seconds}s"
            ) from e

    def _log_retry(self, state: RetryCallState) -> None:
        error = state.outcome.exception() if state.outcome else None
        log.warning(
            "replay_retry_scheduled",
            attempt=state.attempt_number,
            wait_seconds=state.next_action.sleep if state.next_action else None,
            error=str(error),
        )

    async def _replay(self, op: PendingOperation) -> datetime:
        retrying = AsyncRetrying(
            retry=retry_if_exception_type(TransientError),
            stop=stop_after_attempt(self.config.retry_attempts),
            wait=wait_exponential(
                multiplier=self.config.retry_initial_seconds,
                min=self.config.retry_initial_seconds,
                max=self.config.retry_max_seconds,
            ),
            before_sleep=self._log_retry,
            reraise=True,
        )
        stamp: datetime | None = None
        async for attempt in retrying:
            with attempt:
                op.attempts += 1
                stamp = await self._call_remote(op.send)
        return stamp

    async def drain(self) -> int:
        """Replay queued operations in FIFO order until empty or a failure.

        Only one drain runs at a time; a concurrent call waits for it and then
        drains whatever was queued meanwhile.
        """
        async with self._drain_lock:
            replayed = 0
            with log_context(sync_cycle=next(self._cycles)):
                log.info("drain_started", pending=len(self._queue))
                while not self._closed and self.online:
                    async with self._queue_lock:
                        if not self._queue:
                            break
                        op = self._queue[0]

                    async with self._key_lock(op.key):
                        try:
                            stamp = await self._replay(op)
                        except TransientError as e:
                            self.online = False
                            log.warning(
                                "drain_stopped",
                                key=op.key,
                                attempts=op.attempts,
                                pending=len(self._queue),
                                error=str(e),
                            )
                            break
                        except PermanentError as e:
                            async with self._queue_lock:
                                self._queue.popleft()
                            log.error(
                                "operation_rejected",
                                key=op.key,
                                description=op.description,
                                error=str(e),
                                type=type(e).__name__,
                            )
                            continue

                        async with self._queue_lock:
                            self._queue.popleft()
                            superseded = self._has_pending(op.key)
                        if op.on_synced is not None and not superseded:
                            await op.on_synced(stamp)
                        replayed += 1
                        log.debug("operation_replayed", key=op.key, attempts=op.attempts)

                log.info("drain_completed", replayed=replayed, pending=len(self._queue), online=self.online)
            return replayed

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------
    async def _execute_write(
        self,
        key: str,
        description: str,
        local_apply: Callable[[], Awaitable[None]],
        send: Callable[[], Awaitable[datetime]],
        on_synced: Callable[[datetime], Awaitable[None]] | None = None,
    ) -> WriteResult:
        self._ensure_open()
        op = PendingOperation(key=key, description=description, send=send, on_synced=on_synced)
        async with self._key_lock(key):
            # Local durability is not optional: a failure here fails the write.
            await local_apply()

            async with self._queue_lock:
                must_queue = not self.online or self._has_pending(key)
                if must_queue:
                    self._enqueue(op)
            if must_queue:
                return WriteResult(synced=False, queued=True)

            try:
                stamp = await self._call_remote(send)
            except TransientError as e:
                self.online = False
                log.warning("remote_write_failed", key=key, error=str(e))
                async with self._queue_lock:
                    self._enqueue(op)
                return WriteResult(synced=False, queued=True)

            if on_synced is not None:
                await on_synced(stamp)
            log.debug("remote_write_succeeded", key=key, server_time=stamp.isoformat())
            return WriteResult(synced=True, queued=False, server_time=stamp)

    async def write(self, record: AvailabilityRecord) -> WriteResult:
        """Persist ``record`` locally, then remotely or into the pending queue.

        Raises:
            ValidationError, ConflictError, NotFoundError: Remote rejected the
                write. The local copy is kept; the write is not queued.
            OSError: The local write failed.
        """
        snapshot = record.snapshot()
        path = doc_path(AVAILABILITY_COLLECTION, snapshot.record_id)
        payload = snapshot.to_json()

        async def local_apply() -> None:
            await self._cache_records([snapshot])

        async def send() -> datetime:
            return await self.remote.set_doc(path, payload)

        async def on_synced(stamp: datetime) -> None:
            snapshot.apply_server_timestamp(stamp)
            record.apply_server_timestamp(stamp)
            await self._cache_records([snapshot])

        with log_context(record_key=path):
            return await self._execute_write(
                path,
                f"set {snapshot.scope_id}/{snapshot.owner_id}/{snapshot.period}",
                local_apply,
                send,
                on_synced,
            )

    async def write_document(
        self,
        collection: str,
        doc_id: str,
        data: Document,
        local_apply: Callable[[], Awaitable[None]],
        *,
        partial: bool = False,
    ) -> WriteResult:
        """Queue-aware write of any document, e.g. a team.

        Args:
            local_apply: Coroutine factory updating the LocalStore copy.
            partial: Use ``update_doc`` (merge) instead of ``set_doc``.
        """
        path = doc_path(collection, doc_id)

        async def send() -> datetime:
            if partial:
                return await self.remote.update_doc(path, data)
            return await self.remote.set_doc(path, data)

        return await self._execute_write(path, f"{'update' if partial else 'set'} {path}", local_apply, send)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------
    async def read(self, scope_id: str, owner_id: str, period: str) -> ReadResult:
        """Read one record, remote first, falling back to the cache.

        Never raises because of connectivity. While the key has queued
        writes the local copy is returned, since it will win on replay.
        """
        self._ensure_open()
        record_id = record_id_for(scope_id, owner_id, period)
        path = doc_path(AVAILABILITY_COLLECTION, record_id)

        async with self._queue_lock:
            pending = self._has_pending(path)
        if self.online and not pending:
            try:
                doc = await self._call_remote(lambda: self.remote.get_doc(path))
                record = AvailabilityRecord.from_json(doc) if doc is not None else None
            except TransientError as e:
                self.online = False
                log.warning("remote_read_failed", key=path, error=str(e))
            except ValidationError as e:
                log.warning("remote_record_invalid", key=path, error=str(e))
            else:
                if record is not None:
                    await self._cache_records([record])
                return ReadResult(record=record, from_cache=False)

        cached = {r.record_id: r for r in await self.cached_records()}
        return ReadResult(record=cached.get(record_id), from_cache=True)

    async def get_or_create(
        self, scope_id: str, owner_id: str, period: str, period_kind: str = "month"
    ) -> AvailabilityRecord:
        """Existing record for the key, or a new empty one (not yet written)."""
        result = await self.read(scope_id, owner_id, period)
        if result.record is not None:
            return result.record
        return AvailabilityRecord(
            scope_id=scope_id, owner_id=owner_id, period=period, period_kind=period_kind
        )

    async def read_scope(self, scope_id: str, period: str) -> ScopeReadResult:
        """Every record of a scope/period, for aggregation."""
        self._ensure_open()
        if self.online:
            where = _scope_filter(scope_id, period)
            try:
                docs = await self._call_remote(lambda: self.remote.query(AVAILABILITY_COLLECTION, where))
                records = [AvailabilityRecord.from_json(doc) for doc in docs]
            except TransientError as e:
                self.online = False
                log.warning("remote_query_failed", scope_id=scope_id, period=period, error=str(e))
            except ValidationError as e:
                log.warning("remote_record_invalid", scope_id=scope_id, period=period, error=str(e))
            else:
                merged = await self._absorb_remote(records)
                return ScopeReadResult(records=merged, from_cache=False)

        cached = [
            r for r in await self.cached_records() if r.scope_id == scope_id and r.period == period
        ]
        return ScopeReadResult(records=cached, from_cache=True)

    async def query_documents(self, collection: str, where: Sequence[WhereClause] = ()) -> list[Document] | None:
        """Remote query, or None when offline or unreachable (which marks offline)."""
        self._ensure_open()
        if not self.online:
            return None
        try:
            return await self._call_remote(lambda: self.remote.query(collection, where))
        except TransientError as e:
            self.online = False
            log.warning("remote_query_failed", collection=collection, error=str(e))
            return None

    # ------------------------------------------------------------------
    # Subscriptions
    # ------------------------------------------------------------------
    async def subscribe(self, scope_id: str, period: str, callback: RecordsCallback) -> Subscription:
        """Push every remote change of a scope/period to ``callback``.

        The cache is updated before the callback runs. Offline, the
        subscription is kept and attached on the next reconnect.
        """
        self._ensure_open()
        subscription = Subscription(self, scope_id, period, callback)
        self._subscriptions.append(subscription)
        if self.online:
            await self._attach(subscription)
        else:
            log.info("subscription_deferred", scope_id=scope_id, period=period)
        return subscription

    def _forget(self, subscription: Subscription) -> None:
        if subscription in self._subscriptions:
            self._subscriptions.remove(subscription)

    async def _attach(self, subscription: Subscription) -> None:
        async def on_change(docs: list[Document]) -> None:
            if subscription.cancelled:
                return
            try:
                records = [AvailabilityRecord.from_json(doc) for doc in docs]
            except ValidationError as e:
                log.warning("remote_push_invalid", scope_id=subscription.scope_id, error=str(e))
                return
            merged = await self._absorb_remote(records)
            result = subscription.callback(merged)
            if asyncio.iscoroutine(result):
                await result

        where = _scope_filter(subscription.scope_id, subscription.period)
        try:
            unsubscribe = await self._call_remote(
                lambda: self.remote.subscribe(AVAILABILITY_COLLECTION, on_change, where)
            )
        except TransientError as e:
            self.online = False
            log.warning("subscription_failed", scope_id=subscription.scope_id, error=str(e))
            return
        if subscription.cancelled:
            unsubscribe()
            return
        subscription.unsubscribe = unsubscribe
        log.info("subscription_attached", scope_id=subscription.scope_id, period=subscription.period)

    # ------------------------------------------------------------------
    # Local cache
    # ------------------------------------------------------------------
    async def cached_records(self) -> list[AvailabilityRecord]:
        raw = await get_json(self.local, StorageKeys.MONTHLY_AVAILABILITY, default=[])
        records: list[AvailabilityRecord] = []
        for item in raw:
            try:
                records.append(AvailabilityRecord.from_json(item))
            except ValidationError as e:
                log.warning("cached_record_invalid", error=str(e))
        return records

    async def _cache_records(self, records: Sequence[AvailabilityRecord], *, newer_only: bool = False) -> None:
        if not records:
            return
        async with self._local_lock:
            raw = await get_json(self.local, StorageKeys.MONTHLY_AVAILABILITY, default=[])
            by_id: dict[str, Any] = {item.get("recordId"): item for item in raw}
            order = [item.get("recordId") for item in raw]
            for record in records:
                current = by_id.get(record.record_id)
                if newer_only and current is not None and not _is_newer(record, current):
                    continue
                if current is None:
                    order.append(record.record_id)
                by_id[record.record_id] = record.to_json()
            await set_json(self.local, StorageKeys.MONTHLY_AVAILABILITY, [by_id[i] for i in order])

    async def _absorb_remote(self, records: list[AvailabilityRecord]) -> list[AvailabilityRecord]:
        """Merge remote records into the cache, last-write-wins by ``updated_at``.

        Keys with queued writes keep their local version, which is also what
        is returned for them.
        """
        async with self._queue_lock:
            pending = {op.key for op in self._queue}
        incoming = [r for r in records if doc_path(AVAILABILITY_COLLECTION, r.record_id) not in pending]
        await self._cache_records(incoming, newer_only=True)
        if not pending:
            return records
        cached = {r.record_id: r for r in await self.cached_records()}
        return [
            cached.get(r.record_id, r)
            if doc_path(AVAILABILITY_COLLECTION, r.record_id) in pending
            else r
            for r in records
        ]


def _scope_filter(scope_id: str, period: str) -> list[WhereClause]:
    return [WhereClause(field="scopeId", value=scope_id), WhereClause(field="period", value=period)]


def _is_newer(record: AvailabilityRecord, cached: Document) -> bool:
    try:
        return record.updated_at >= AvailabilityRecord.from_json(cached).updated_at
    except ValidationError:
        return True
