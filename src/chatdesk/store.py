"""Concrete implementations for key-value stores.

The host application persists everything through a small async key-value
interface. ``Store`` is that interface; ``Storage`` is the forgiving layer the
rest of the package talks to, which never lets a read or write failure escape.
"""

import asyncio
import copy
import json
import logging
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Dict, Optional, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


class StorageKey:
    CHAT_SESSIONS = "chat-sessions"
    CURRENT_SESSION_ID = "current-session-id"
    SETTINGS = "settings"


class Store(ABC):
    """Interface for the host-provided key-value persistence."""

    @abstractmethod
    async def get(self, key: str) -> Optional[Any]:
        """Returns the stored JSON value for ``key``, or None when absent."""
        pass

    @abstractmethod
    async def set(self, key: str, value: Any) -> None:
        """Stores a JSON-representable value under ``key``."""
        pass

    @abstractmethod
    async def delete(self, key: str) -> None:
        """Removes ``key``. Deleting a missing key is not an error."""
        pass

    @abstractmethod
    async def list_all(self) -> Dict[str, Any]:
        """Returns a mapping of every stored key to its value."""
        pass


class InMemory(Store):
    """Keeps values in a dictionary for the lifetime of the process."""

    def __init__(self):
        self._data: Dict[str, Any] = {}

    async def get(self, key: str) -> Optional[Any]:
        return copy.deepcopy(self._data.get(key))

    async def set(self, key: str, value: Any) -> None:
        self._data[key] = copy.deepcopy(value)

    async def delete(self, key: str) -> None:
        self._data.pop(key, None)

    async def list_all(self) -> Dict[str, Any]:
        return copy.deepcopy(self._data)


class File(Store):
    """Stores each key as a JSON document inside ``base_dir``."""

    def __init__(self, base_dir: str):
        self.base_dir = Path(base_dir)
        self.base_dir.mkdir(parents=True, exist_ok=True)

    def _path(self, key: str) -> Path:
        return self.base_dir / f"{key}.json"

    def _read(self, path: Path) -> Any:
        with open(path, "r", encoding="utf-8") as f:
            return json.load(f)

    def _write(self, path: Path, value: Any) -> None:
        tmp = path.with_suffix(".tmp")
        with open(tmp, "w", encoding="utf-8") as f:
            json.dump(value, f, ensure_ascii=False, indent=2)
        tmp.replace(path)

    async def get(self, key: str) -> Optional[Any]:
        path = self._path(key)
        if not path.exists():
            return None
        return await asyncio.to_thread(self._read, path)

    async def set(self, key: str, value: Any) -> None:
        await asyncio.to_thread(self._write, self._path(key), value)

    async def delete(self, key: str) -> None:
        self._path(key).unlink(missing_ok=True)

    async def list_all(self) -> Dict[str, Any]:
        result = {}
        for path in sorted(self.base_dir.glob("*.json")):
            result[path.stem] = await asyncio.to_thread(self._read, path)
        return result


class Storage:
    """Availability-first access to a ``Store``.

    Reads fall back to the caller's initial value (and write it back) when the
    key is missing or holds an unparsable JSON string. Read and write errors
    are logged and absorbed.
    """

    def __init__(self, store: Store):
        self.store = store

    async def set_item(self, key: str, value: Any) -> None:
        try:
            await self.store.set(key, value)
        except Exception:
            logger.exception(f"Storage.set_item failed for key {key}")

    async def get_item(self, key: str, initial_value: T) -> T:
        try:
            value = await self.store.get(key)
            if value is None:
                value = copy.deepcopy(initial_value)
                await self.set_item(key, value)

            if isinstance(value, str) and value.startswith(("{", "[")):
                try:
                    value = json.loads(value)
                except json.JSONDecodeError:
                    logger.error(f"Failed to parse JSON for key {key}, resetting")
                    value = copy.deepcopy(initial_value)
                    await self.set_item(key, value)

            return value
        except Exception:
            logger.exception(f"Storage.get_item failed for key {key}")
            return copy.deepcopy(initial_value)

    async def remove_item(self, key: str) -> None:
        try:
            await self.store.delete(key)
        except Exception:
            logger.exception(f"Storage.remove_item failed for key {key}")

    async def get_all(self) -> Dict[str, Any]:
        try:
            return await self.store.list_all()
        except Exception:
            logger.exception("Storage.get_all failed")
            return {}

    async def set_all(self, data: Dict[str, Any]) -> None:
        for key, value in data.items():
            await self.set_item(key, value)
