"""
Key-value persistence backends for users and sessions.

The auth components only need three operations per collection: load
everything, write one record, delete one record. Two backends implement them:

- MemoryBackend: a dict, used in tests and for throwaway local runs.
- JsonFileBackend: one ``<collection>.json`` file per collection under a data
  directory. Every write replaces the file atomically (temp file, fsync,
  os.replace), so a ``put`` that returned is on disk and a crash mid-write
  leaves the previous version intact.

Backends are synchronous. The stores call them through ``write_through``
(a worker thread via ``asyncio.to_thread``) and hold their own per-key locks
for read-modify-write sequences; the backend lock only serializes whole-file
rewrites.
"""

import asyncio
import copy
import json
import logging
import os
import tempfile
import threading
from collections.abc import Callable
from pathlib import Path
from typing import Any, Protocol

logger = logging.getLogger("planning-mcp.storage")

Record = dict[str, Any]


class StorageBackend(Protocol):
    def load(self, collection: str) -> dict[str, Record]: ...

    def put(self, collection: str, key: str, record: Record) -> None: ...

    def delete(self, collection: str, key: str) -> None: ...


async def write_through(write: Callable[[], None], apply: Callable[[], None]) -> None:
    """
    Run a blocking backend write in a worker thread, then ``apply`` it to the
    in-memory table.

    The two steps complete as a unit. A worker thread cannot be interrupted,
    so if the caller is cancelled mid-write the cancellation is held back
    until the write has landed and the table matches it, then re-raised. The
    caller's per-key locks therefore stay held for the whole unit.
    """

    async def commit() -> None:
        await asyncio.to_thread(write)
        apply()

    task = asyncio.ensure_future(commit())
    cancelled = False
    while True:
        try:
            await asyncio.shield(task)
            break
        except asyncio.CancelledError:
            if task.done():
                raise
            cancelled = True
    if cancelled:
        raise asyncio.CancelledError()


class MemoryBackend:
    """In-process backend. Records are deep-copied in and out."""

    def __init__(self) -> None:
        self._data: dict[str, dict[str, Record]] = {}
        self._lock = threading.Lock()

    def load(self, collection: str) -> dict[str, Record]:
        with self._lock:
            return copy.deepcopy(self._data.get(collection, {}))

    def put(self, collection: str, key: str, record: Record) -> None:
        with self._lock:
            self._data.setdefault(collection, {})[key] = copy.deepcopy(record)

    def delete(self, collection: str, key: str) -> None:
        with self._lock:
            self._data.get(collection, {}).pop(key, None)


class JsonFileBackend:
    """
    Durable backend storing each collection as a JSON object keyed by id.

    The full collection is cached in memory after the first load; every
    mutation rewrites the collection file before returning.
    """

    def __init__(self, directory: Path | str) -> None:
        self.directory = Path(directory)
        self._cache: dict[str, dict[str, Record]] = {}
        self._lock = threading.Lock()

    def _path(self, collection: str) -> Path:
        return self.directory / f"{collection}.json"

    def _read(self, collection: str) -> dict[str, Record]:
        if collection not in self._cache:
            path = self._path(collection)
            if path.exists():
                data = json.loads(path.read_text(encoding="utf-8"))
                if not isinstance(data, dict):
                    raise ValueError(f"{path} does not contain a JSON object")
                self._cache[collection] = data
            else:
                self._cache[collection] = {}
        return self._cache[collection]

    def _write(self, collection: str, data: dict[str, Record]) -> None:
        self.directory.mkdir(parents=True, exist_ok=True)
        path = self._path(collection)
        fd, tmp_name = tempfile.mkstemp(dir=self.directory, prefix=f".{collection}.", suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                json.dump(data, fh, indent=2, sort_keys=True)
                fh.flush()
                os.fsync(fh.fileno())
            os.replace(tmp_name, path)
        except BaseException:
            if os.path.exists(tmp_name):
                os.unlink(tmp_name)
            raise

    def load(self, collection: str) -> dict[str, Record]:
        with self._lock:
            return copy.deepcopy(self._read(collection))

    def put(self, collection: str, key: str, record: Record) -> None:
        with self._lock:
            data = dict(self._read(collection))
            data[key] = copy.deepcopy(record)
            self._write(collection, data)
            self._cache[collection] = data

    def delete(self, collection: str, key: str) -> None:
        with self._lock:
            data = self._read(collection)
            if key not in data:
                return
            data = {k: v for k, v in data.items() if k != key}
            self._write(collection, data)
            self._cache[collection] = data
        logger.debug("Deleted %s record", collection)
