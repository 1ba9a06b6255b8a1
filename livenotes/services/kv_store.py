"""Key-value persistence engines for session records.

The engine only promises per-key atomic writes. Callers validate the shape
of whatever they read back.
"""

from __future__ import annotations

import asyncio
import copy
import hashlib
import inspect
import json
import logging
import os
import re
from abc import ABC, abstractmethod
from typing import Any, Callable, Optional

from livenotes.services.errors import StorageWriteError

Visitor = Callable[[Any, str], Any]

_UNSAFE_KEY_CHARS = re.compile(r"[^A-Za-z0-9._-]")


class KeyValueStore(ABC):
    @abstractmethod
    async def get(self, key: str) -> Optional[Any]:
        raise NotImplementedError

    @abstractmethod
    async def set(self, key: str, value: Any) -> None:
        """Store ``value`` under ``key``.

        Raises:
            StorageWriteError: if the engine rejected the write.
        """
        raise NotImplementedError

    @abstractmethod
    async def remove(self, key: str) -> None:
        raise NotImplementedError

    @abstractmethod
    async def keys(self) -> list[str]:
        raise NotImplementedError

    async def iterate(self, visitor: Visitor) -> Optional[Any]:
        """Call ``visitor(value, key)`` for every stored entry.

        Iteration stops early when the visitor returns something other than
        None; that value is returned.
        """
        for key in await self.keys():
            value = await self.get(key)
            if value is None:
                continue
            result = visitor(value, key)
            if inspect.isawaitable(result):
                result = await result
            if result is not None:
                return result
        return None


class MemoryKeyValueStore(KeyValueStore):
    def __init__(self) -> None:
        self._data: dict[str, Any] = {}

    async def get(self, key: str) -> Optional[Any]:
        value = self._data.get(key)
        return copy.deepcopy(value) if value is not None else None

    async def set(self, key: str, value: Any) -> None:
        self._data[key] = copy.deepcopy(value)

    async def remove(self, key: str) -> None:
        self._data.pop(key, None)

    async def keys(self) -> list[str]:
        return sorted(self._data.keys())

    def __len__(self) -> int:
        return len(self._data)


class FileKeyValueStore(KeyValueStore):
    """One JSON document per key inside ``directory``.

    Files hold ``{"key": ..., "value": ...}`` so keys that are not valid file
    names survive a round trip.
    """

    def __init__(self, directory: str) -> None:
        self._directory = directory
        self._locks: dict[str, asyncio.Lock] = {}
        self._logger = logging.getLogger("livenotes.storage")
        os.makedirs(self._directory, exist_ok=True)

    @property
    def directory(self) -> str:
        return self._directory

    def _path_for(self, key: str) -> str:
        # The digest keeps keys that sanitize alike apart.
        digest = hashlib.sha1(key.encode("utf-8")).hexdigest()[:12]
        return os.path.join(self._directory, f"{_UNSAFE_KEY_CHARS.sub('_', key)}-{digest}.json")

    def _list_paths(self) -> list[str]:
        try:
            names = os.listdir(self._directory)
        except OSError as exc:
            self._logger.warning("Failed to list store dir: %s", exc)
            return []
        return sorted(
            os.path.join(self._directory, name) for name in names if name.endswith(".json")
        )

    def _read_file(self, path: str) -> Optional[dict]:
        try:
            with open(path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except FileNotFoundError:
            return None
        except (OSError, json.JSONDecodeError) as exc:
            self._logger.warning("Failed to read store file: %s error=%s", path, exc)
            return None
        if not isinstance(data, dict) or "key" not in data:
            self._logger.warning("Ignoring malformed store file: %s", path)
            return None
        return data

    def _write_file(self, path: str, key: str, value: Any) -> None:
        temp_path = f"{path}.tmp"
        try:
            os.makedirs(os.path.dirname(path), exist_ok=True)
            with open(temp_path, "w", encoding="utf-8") as f:
                json.dump({"key": key, "value": value}, f, indent=2)
            os.replace(temp_path, path)
        except (OSError, TypeError, ValueError) as exc:
            if os.path.exists(temp_path):
                os.remove(temp_path)
            raise StorageWriteError(f"Failed to write {key!r}: {exc}") from exc

    async def get(self, key: str) -> Optional[Any]:
        data = await asyncio.to_thread(self._read_file, self._path_for(key))
        if not data or data.get("key") != key:
            return None
        return data.get("value")

    async def set(self, key: str, value: Any) -> None:
        # Writes for one key land in call order.
        lock = self._locks.setdefault(key, asyncio.Lock())
        async with lock:
            await asyncio.to_thread(self._write_file, self._path_for(key), key, value)

    async def remove(self, key: str) -> None:
        path = self._path_for(key)
        try:
            await asyncio.to_thread(os.unlink, path)
        except FileNotFoundError:
            return
        except OSError as exc:
            raise StorageWriteError(f"Failed to remove {key!r}: {exc}") from exc

    async def keys(self) -> list[str]:
        def _scan() -> list[str]:
            found: list[str] = []
            for path in self._list_paths():
                data = self._read_file(path)
                if data is not None:
                    found.append(str(data["key"]))
            return found

        return await asyncio.to_thread(_scan)
