"""Device-local key/value persistence.

Values are JSON text. Keys in ``StorageKeys`` form the persisted namespace
and must stay stable across versions: older installs read them back on
upgrade.
"""

import asyncio
import json
import os
import re
import tempfile
from collections.abc import Iterable
from pathlib import Path
from typing import Any, Protocol, runtime_checkable

from teamslots.logging import get_logger

log = get_logger(__name__)


class StorageKeys:
    TEAMS = "teams"
    MONTHLY_AVAILABILITY = "monthlyAvailability"
    CURRENT_TEAM_ID = "currentTeamId"
    CURRENT_USER_ID = "currentUserId"
    LANGUAGE = "language"


@runtime_checkable
class LocalStore(Protocol):
    """Async key/value boundary. Implementations must be durable across restarts."""

    async def get(self, key: str) -> str | None: ...

    async def set(self, key: str, value: str) -> None: ...

    async def remove(self, key: str) -> None: ...

    async def multi_remove(self, keys: Iterable[str]) -> None: ...

    async def clear(self) -> None: ...


async def get_json(store: LocalStore, key: str, default: Any = None) -> Any:
    raw = await store.get(key)
    if raw is None:
        return default
    return json.loads(raw)


async def set_json(store: LocalStore, key: str, value: Any) -> None:
    await store.set(key, json.dumps(value, ensure_ascii=False, sort_keys=True))


class MemoryLocalStore:
    """In-process store for tests and ephemeral sessions."""

    def __init__(self, initial: dict[str, str] | None = None) -> None:
        self._data: dict[str, str] = dict(initial or {})
        self.fail_writes = False

    async def get(self, key: str) -> str | None:
        return self._data.get(key)

    async def set(self, key: str, value: str) -> None:
        if self.fail_writes:
            raise OSError(f"local write refused for {key}")
        self._data[key] = value

    async def remove(self, key: str) -> None:
        self._data.pop(key, None)

    async def multi_remove(self, keys: Iterable[str]) -> None:
        for key in keys:
            self._data.pop(key, None)

    async def clear(self) -> None:
        self._data.clear()

    def keys(self) -> list[str]:
        return sorted(self._data)


_SAFE_KEY_RE = re.compile(r"^[A-Za-z0-9_.-]+$")


class FileLocalStore:
    """One JSON file per key under ``root``.

    Writes go to a temp file in the same directory and are swapped in with
    ``os.replace``, so a crash mid-write leaves the previous value intact.
    """

    SUFFIX = ".json"

    def __init__(self, root: str | Path) -> None:
        self.root = Path(root)
        self.root.mkdir(parents=True, exist_ok=True)
        log.debug("local_store_opened", root=str(self.root))

    def _path(self, key: str) -> Path:
        if not _SAFE_KEY_RE.match(key):
            raise ValueError(f"Unsupported local store key {key!r}")
        return self.root / f"{key}{self.SUFFIX}"

    def _read(self, path: Path) -> str | None:
        try:
            return path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None

    def _write(self, path: Path, value: str) -> None:
        fd, tmp = tempfile.mkstemp(dir=self.root, prefix=f".{path.stem}.", suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(value)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp, path)
        except BaseException:
            Path(tmp).unlink(missing_ok=True)
            raise

    async def get(self, key: str) -> str | None:
        return await asyncio.to_thread(self._read, self._path(key))

    async def set(self, key: str, value: str) -> None:
        await asyncio.to_thread(self._write, self._path(key), value)
        log.debug("local_store_saved", key=key, size=len(value))

    async def remove(self, key: str) -> None:
        await asyncio.to_thread(self._path(key).unlink, missing_ok=True)

    async def multi_remove(self, keys: Iterable[str]) -> None:
        for key in list(keys):
            await self.remove(key)

    async def clear(self) -> None:
        paths = [p for p in self.root.glob(f"*{self.SUFFIX}") if p.is_file()]
        for path in paths:
            await asyncio.to_thread(path.unlink, missing_ok=True)
        log.info("local_store_cleared", root=str(self.root), removed=len(paths))
