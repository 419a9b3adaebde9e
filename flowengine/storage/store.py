# Copyright (c) 2025 adcl.io
# All Rights Reserved.
#
# This software is proprietary and confidential. Unauthorized copying,
# distribution, or use of this software is strictly prohibited.

"""
Record Store - persistence for tasks, triggers, trigger logs, approval
requests and suspended or failed run snapshots.

Records are plain JSON dicts grouped in named collections. Every write to
a given key is serialized by a per-key asyncio.Lock; there is no global
lock. `update(..., expected=...)` is a conditional update: it only applies
when the stored record still matches `expected`.
"""

import asyncio
import copy
import json
import re
import weakref
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Dict, List, Optional

import aiofiles
import aiofiles.os

from flowengine.core.errors import ServiceUnavailableError

TASKS = "tasks"
TRIGGERS = "triggers"
TRIGGER_LOGS = "trigger_logs"
APPROVALS = "approvals"
SUSPENDED_RUNS = "suspended_runs"
FAILED_RUNS = "failed_runs"


def _matches(record: Dict[str, Any], expected: Optional[Dict[str, Any]]) -> bool:
    if not expected:
        return True
    return all(record.get(key) == value for key, value in expected.items())


class Store(ABC):
    """Async key/value store over named collections"""

    def __init__(self):
        # Entries vanish once no writer holds or awaits the lock
        self._locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = weakref.WeakValueDictionary()

    def _get_lock(self, collection: str, key: str) -> asyncio.Lock:
        """Get or create lock for a specific record"""
        lock_key = f"{collection}/{key}"
        lock = self._locks.get(lock_key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[lock_key] = lock
        return lock

    @abstractmethod
    async def _read(self, collection: str, key: str) -> Optional[Dict[str, Any]]:
        ...

    @abstractmethod
    async def _write(self, collection: str, key: str, record: Dict[str, Any]) -> None:
        ...

    @abstractmethod
    async def _remove(self, collection: str, key: str) -> bool:
        ...

    @abstractmethod
    async def _keys(self, collection: str) -> List[str]:
        ...

    async def get(self, collection: str, key: str) -> Optional[Dict[str, Any]]:
        return await self._read(collection, key)

    async def put(self, collection: str, key: str, record: Dict[str, Any]) -> Dict[str, Any]:
        async with self._get_lock(collection, key):
            await self._write(collection, key, record)
        return record

    async def create(self, collection: str, key: str, record: Dict[str, Any]) -> bool:
        """Insert only if the key is free. Returns False on collision."""
        async with self._get_lock(collection, key):
            if await self._read(collection, key) is not None:
                return False
            await self._write(collection, key, record)
            return True

    async def update(
        self,
        collection: str,
        key: str,
        updates: Dict[str, Any],
        expected: Optional[Dict[str, Any]] = None
    ) -> Optional[Dict[str, Any]]:
        """
        Apply `updates` to a record.

        Returns the updated record, or None when the record is missing or
        no longer matches `expected`.
        """
        async with self._get_lock(collection, key):
            record = await self._read(collection, key)
            if record is None or not _matches(record, expected):
                return None
            record.update(updates)
            await self._write(collection, key, record)
            return record

    async def delete(self, collection: str, key: str) -> bool:
        async with self._get_lock(collection, key):
            return await self._remove(collection, key)

    async def list(self, collection: str, **filters: Any) -> List[Dict[str, Any]]:
        """List records whose fields equal every given filter"""
        records = []
        for key in await self._keys(collection):
            record = await self._read(collection, key)
            if record is not None and _matches(record, filters):
                records.append(record)
        return records


class MemoryStore(Store):
    """In-process store. Records are deep-copied in and out."""

    def __init__(self):
        super().__init__()
        self._data: Dict[str, Dict[str, Dict[str, Any]]] = {}

    async def _read(self, collection, key):
        record = self._data.get(collection, {}).get(key)
        return copy.deepcopy(record) if record is not None else None

    async def _write(self, collection, key, record):
        self._data.setdefault(collection, {})[key] = copy.deepcopy(record)

    async def _remove(self, collection, key):
        return self._data.get(collection, {}).pop(key, None) is not None

    async def _keys(self, collection):
        return list(self._data.get(collection, {}).keys())


class JsonFileStore(Store):
    """
    One JSON file per record.

    Storage structure:
        {base_dir}/
        └── {collection}/
            ├── {key}.json
            └── ...
    """

    def __init__(self, base_dir: Path):
        super().__init__()
        self.base_dir = Path(base_dir)
        self.base_dir.mkdir(parents=True, exist_ok=True)

    def _path(self, collection: str, key: str) -> Path:
        safe_key = re.sub(r"[^A-Za-z0-9_.-]", "_", key)
        return self.base_dir / collection / f"{safe_key}.json"

    async def _read(self, collection, key):
        path = self._path(collection, key)
        if not path.exists():
            return None
        try:
            async with aiofiles.open(path, "r") as f:
                return json.loads(await f.read())
        except OSError as e:
            raise ServiceUnavailableError(f"Store read failed for {collection}/{key}: {e}", service="store")

    async def _write(self, collection, key, record):
        path = self._path(collection, key)
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = path.with_suffix(".json.tmp")
        try:
            async with aiofiles.open(tmp_path, "w") as f:
                await f.write(json.dumps(record, indent=2, default=str))
            await aiofiles.os.replace(tmp_path, path)
        except OSError as e:
            raise ServiceUnavailableError(f"Store write failed for {collection}/{key}: {e}", service="store")

    async def _remove(self, collection, key):
        path = self._path(collection, key)
        if not path.exists():
            return False
        await aiofiles.os.remove(path)
        return True

    async def _keys(self, collection):
        directory = self.base_dir / collection
        if not directory.exists():
            return []
        # file stems are sanitized keys; records keep their real id
        return sorted(path.stem for path in directory.glob("*.json"))


def create_store(backend: str, base_dir: Optional[Path] = None) -> Store:
    """Build the store configured by `storage.backend`"""
    if backend == "memory":
        return MemoryStore()
    if backend == "file":
        return JsonFileStore(base_dir or Path("./data/store"))
    raise ValueError(f"Unknown store backend: {backend}")
