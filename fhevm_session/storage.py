"""String key/value stores used to persist decryption permits."""

from __future__ import annotations

import asyncio
import json
import threading
from pathlib import Path
from typing import Dict, Iterable, Optional, Protocol

from .errors import PersistenceError


class GenericStringStorage(Protocol):
    """Async key/value store holding serialised permits."""

    async def get_item(self, key: str) -> Optional[str]:  # pragma: no cover - protocol
        ...

    async def set_item(self, key: str, value: str) -> None:  # pragma: no cover - protocol
        ...

    async def remove_item(self, key: str) -> None:  # pragma: no cover - protocol
        ...


class InMemoryStringStorage:
    """Process-local storage; contents vanish with the process."""

    def __init__(self, initial: Optional[Dict[str, str]] = None) -> None:
        self._store: Dict[str, str] = dict(initial or {})

    async def get_item(self, key: str) -> Optional[str]:
        return self._store.get(key)

    async def set_item(self, key: str, value: str) -> None:
        self._store[key] = value

    async def remove_item(self, key: str) -> None:
        self._store.pop(key, None)

    def keys(self) -> Iterable[str]:
        return list(self._store)

    def clear(self) -> None:
        self._store.clear()

    def __len__(self) -> int:
        return len(self._store)


class FileStringStorage:
    """Single JSON document on disk, rewritten atomically on every change."""

    def __init__(self, path: Path) -> None:
        self._path = Path(path)
        self._lock = threading.Lock()

    @property
    def path(self) -> Path:
        return self._path

    def _load(self) -> Dict[str, str]:
        if not self._path.exists():
            return {}
        try:
            with self._path.open("r", encoding="utf-8") as handle:
                data = json.load(handle)
        except (OSError, json.JSONDecodeError) as exc:
            raise PersistenceError(f"Failed to read permit storage {self._path}: {exc}") from exc
        if not isinstance(data, dict):
            raise PersistenceError(f"Permit storage {self._path} is not a JSON object")
        return {str(key): str(value) for key, value in data.items()}

    def _dump(self, data: Dict[str, str]) -> None:
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            tmp_path = self._path.with_suffix(self._path.suffix + ".tmp")
            with tmp_path.open("w", encoding="utf-8") as handle:
                json.dump(data, handle, ensure_ascii=False, sort_keys=True)
            tmp_path.replace(self._path)
        except OSError as exc:
            raise PersistenceError(f"Failed to write permit storage {self._path}: {exc}") from exc

    def _get(self, key: str) -> Optional[str]:
        with self._lock:
            return self._load().get(key)

    def _set(self, key: str, value: str) -> None:
        with self._lock:
            data = self._load()
            data[key] = value
            self._dump(data)

    def _remove(self, key: str) -> None:
        with self._lock:
            data = self._load()
            if data.pop(key, None) is not None:
                self._dump(data)

    def keys(self) -> Iterable[str]:
        with self._lock:
            return list(self._load())

    def clear(self) -> None:
        with self._lock:
            if self._path.exists():
                self._path.unlink()

    async def get_item(self, key: str) -> Optional[str]:
        return await asyncio.to_thread(self._get, key)

    async def set_item(self, key: str, value: str) -> None:
        await asyncio.to_thread(self._set, key, value)

    async def remove_item(self, key: str) -> None:
        await asyncio.to_thread(self._remove, key)
