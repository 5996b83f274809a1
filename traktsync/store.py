import asyncio
import copy
import fcntl
import json
import logging
import os
from contextlib import AsyncExitStack, asynccontextmanager
from datetime import datetime
from pathlib import Path
from typing import AsyncIterator, Dict, Iterable, List, Optional, Tuple

from .config import settings
from .errors import StorageError

logger = logging.getLogger(__name__)


class _DeleteField:
    def __repr__(self):
        return "DELETE_FIELD"


# Removes a field when used as a value in set(merge=True) or update()
DELETE_FIELD = _DeleteField()


def _encode(obj):
    if isinstance(obj, datetime):
        return {"$ts": obj.isoformat()}
    raise TypeError(f"Object of type {type(obj).__name__} is not JSON serializable")


def _decode(obj: dict):
    if len(obj) == 1 and "$ts" in obj:
        return datetime.fromisoformat(obj["$ts"])
    return obj


def _deep_merge(target: dict, data: dict) -> dict:
    for key, value in data.items():
        if value is DELETE_FIELD:
            target.pop(key, None)
        elif isinstance(value, dict) and isinstance(target.get(key), dict):
            _deep_merge(target[key], value)
        else:
            target[key] = _strip_deletes(value)
    return target


def _strip_deletes(value):
    if isinstance(value, dict):
        return {k: _strip_deletes(v) for k, v in value.items() if v is not DELETE_FIELD}
    return copy.deepcopy(value)


def _apply_update(target: dict, fields: dict) -> dict:
    """Top-level (or dotted-path) field replacement, no deep merge."""
    for key, value in fields.items():
        parts = key.split(".")
        node = target
        for part in parts[:-1]:
            if not isinstance(node.get(part), dict):
                node[part] = {}
            node = node[part]
        if value is DELETE_FIELD:
            node.pop(parts[-1], None)
        else:
            node[parts[-1]] = _strip_deletes(value)
    return target


def _merged(current: Optional[dict], data: dict, merge: bool) -> dict:
    """New version of a document after set(); current is left untouched."""
    if merge and current is not None:
        return _deep_merge(copy.deepcopy(current), data)
    return _strip_deletes(data)


def _updated(current: Optional[dict], fields: dict, path: str) -> dict:
    if current is None:
        raise StorageError(f"Cannot update missing document {path}")
    return _apply_update(copy.deepcopy(current), fields)


def _check_path(path: str):
    parts = path.split("/")
    if not path or any(not p for p in parts) or len(parts) % 2 != 0:
        raise StorageError(f"Invalid document path: {path!r}")


class Transaction:
    """Read-decide-write view of a single document. Writes are buffered until commit."""

    def __init__(self, path: str, snapshot: Optional[dict]):
        self.path = path
        self._snapshot = snapshot
        self._writes: List[Tuple[dict, bool]] = []

    def get(self) -> Optional[dict]:
        return copy.deepcopy(self._snapshot)

    def set(self, data: dict, merge: bool = False):
        self._writes.append((data, merge))


class WriteBatch:
    def __init__(self, store: "DocumentStore", max_writes: int):
        self.store = store
        self.max_writes = max_writes
        self._ops: List[Tuple[str, str, dict, bool]] = []

    def __len__(self):
        return len(self._ops)

    def set(self, path: str, data: dict, merge: bool = False):
        _check_path(path)
        self._ops.append(("set", path, data, merge))

    def update(self, path: str, fields: dict):
        _check_path(path)
        self._ops.append(("update", path, fields, False))

    async def commit(self):
        if not self._ops:
            return
        if len(self._ops) > self.max_writes:
            raise StorageError(f"Batch of {len(self._ops)} writes exceeds limit of {self.max_writes}")

        paths = sorted({op[1] for op in self._ops})
        async with self.store._locked(paths):
            staged: Dict[str, Optional[dict]] = {}
            for kind, path, data, merge in self._ops:
                current = staged[path] if path in staged else self.store.docs.get(path)
                if kind == "set":
                    staged[path] = _merged(current, data, merge)
                else:
                    staged[path] = _updated(current, data, path)
            self.store._swap(staged)
        self._ops = []


class DocumentStore:
    """
    Document-style store addressed by slash paths (collection/doc/collection/doc...).
    Held in memory and persisted as a single JSON file.
    """

    def __init__(self, path: Optional[str] = None, persist: Optional[bool] = None):
        self.path = Path(path or settings.STORE_PATH)
        self.persist = settings.PERSIST_ENABLED if persist is None else persist
        self.docs: Dict[str, dict] = {}
        self._locks: Dict[str, asyncio.Lock] = {}
        if self.persist:
            self._load()

    def _load(self):
        if not self.path.exists():
            logger.info(f"No store file found at {self.path}, creating new.")
            return

        try:
            with open(self.path, 'r') as f:
                self.docs = json.load(f, object_hook=_decode)
        except Exception as e:
            logger.error(f"Failed to load store: {e}. Starting fresh.", exc_info=True)

    def save(self):
        if not self.persist:
            return

        tmp_path = self.path.with_suffix('.tmp')
        try:
            with open(tmp_path, 'w') as f:
                try:
                    fcntl.flock(f, fcntl.LOCK_EX | fcntl.LOCK_NB)
                except BlockingIOError:
                    logger.warning("Could not acquire lock for store save. Skipping save cycle.")
                    return

                try:
                    json.dump(self.docs, f, default=_encode)
                    f.flush()
                    os.fsync(f.fileno())
                finally:
                    fcntl.flock(f, fcntl.LOCK_UN)

            os.rename(tmp_path, self.path)

        except (OSError, TypeError) as e:
            logger.error(f"Failed to save store to {self.path}: {e}")
            raise StorageError(f"Failed to persist store: {e}") from e

    def _lock_for(self, path: str) -> asyncio.Lock:
        lock = self._locks.get(path)
        if lock is None:
            lock = self._locks[path] = asyncio.Lock()
        return lock

    @asynccontextmanager
    async def _locked(self, paths: Iterable[str]):
        async with AsyncExitStack() as stack:
            for path in sorted(set(paths)):
                await stack.enter_async_context(self._lock_for(path))
            yield

    def _swap(self, staged: Dict[str, Optional[dict]]):
        """
        Installs new document versions (None deletes) and persists them. If the
        save fails the previous versions are put back, so memory never holds a
        write the caller saw fail.
        """
        previous = {path: self.docs.get(path) for path in staged}
        for path, doc in staged.items():
            if doc is None:
                self.docs.pop(path, None)
            else:
                self.docs[path] = doc

        try:
            self.save()
        except StorageError:
            for path, doc in previous.items():
                if doc is None:
                    self.docs.pop(path, None)
                else:
                    self.docs[path] = doc
            raise

    async def get(self, path: str) -> Optional[dict]:
        _check_path(path)
        async with self._lock_for(path):
            return copy.deepcopy(self.docs.get(path))

    async def set(self, path: str, data: dict, merge: bool = False):
        _check_path(path)
        async with self._lock_for(path):
            self._swap({path: _merged(self.docs.get(path), data, merge)})

    async def update(self, path: str, fields: dict):
        _check_path(path)
        async with self._lock_for(path):
            self._swap({path: _updated(self.docs.get(path), fields, path)})

    async def delete(self, path: str):
        _check_path(path)
        async with self._lock_for(path):
            if path in self.docs:
                self._swap({path: None})

    async def list_documents(self, collection: str) -> Dict[str, dict]:
        """Direct children of a collection, keyed by document id."""
        prefix = collection.rstrip("/") + "/"
        results = {}
        for path, doc in list(self.docs.items()):
            if path.startswith(prefix) and "/" not in path[len(prefix):]:
                results[path[len(prefix):]] = copy.deepcopy(doc)
        await asyncio.sleep(0)
        return results

    @asynccontextmanager
    async def transaction(self, path: str) -> AsyncIterator[Transaction]:
        """
        Atomic read-decide-write on one document. Concurrent transactions on the
        same path are serialized; buffered writes are applied only if the block
        exits without raising.
        """
        _check_path(path)
        async with self._lock_for(path):
            txn = Transaction(path, copy.deepcopy(self.docs.get(path)))
            yield txn
            if txn._writes:
                doc = self.docs.get(path)
                for data, merge in txn._writes:
                    doc = _merged(doc, data, merge)
                self._swap({path: doc})

    def batch(self, max_writes: Optional[int] = None) -> WriteBatch:
        return WriteBatch(self, max_writes or settings.WRITE_BATCH_SIZE)
