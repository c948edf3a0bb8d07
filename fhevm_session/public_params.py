"""Durable cache for the relayer's public key and public parameters."""

from __future__ import annotations

import asyncio
import json
import logging
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional

from .addresses import ensure_address
from .errors import PersistenceError

logger = logging.getLogger(__name__)

PUBLIC_KEY_STORE = "publicKeyStore"
PARAMS_STORE = "paramsStore"
_BYTES_TAG = "__bytes__"


def _encode(value: Any) -> Any:
    if isinstance(value, (bytes, bytearray)):
        return {_BYTES_TAG: bytes(value).hex()}
    if isinstance(value, dict):
        return {str(key): _encode(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_encode(item) for item in value]
    return value


def _decode(value: Any) -> Any:
    if isinstance(value, dict):
        if set(value) == {_BYTES_TAG}:
            return bytes.fromhex(value[_BYTES_TAG])
        return {key: _decode(item) for key, item in value.items()}
    if isinstance(value, list):
        return [_decode(item) for item in value]
    return value


def _restore_bit_keys(params: Any) -> Any:
    # JSON turns the ``{2048: {...}}`` keys into strings.
    if isinstance(params, dict):
        return {int(key) if isinstance(key, str) and key.isdigit() else key: item for key, item in params.items()}
    return params


@dataclass(frozen=True)
class PublicParamsEntry:
    public_key: Optional[Dict[str, Any]] = None
    public_params: Optional[Dict[Any, Any]] = None

    @property
    def empty(self) -> bool:
        return self.public_key is None and self.public_params is None


class PublicParamsStore:
    """Two JSON collections (keys and params) keyed by ACL contract address.

    Without a root directory, or when it cannot be created, the store runs in
    degraded mode: ``get`` returns an empty entry and ``set`` does nothing.
    """

    def __init__(self, root: Optional[Path] = None) -> None:
        self._lock = threading.Lock()
        self._root: Optional[Path] = None
        if root is None:
            return
        try:
            resolved = Path(root).resolve()
            for store in (PUBLIC_KEY_STORE, PARAMS_STORE):
                (resolved / store).mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            logger.warning("Public parameter cache disabled, cannot use %s: %s", root, exc)
            return
        self._root = resolved

    @property
    def enabled(self) -> bool:
        return self._root is not None

    def _path(self, store: str, acl: str) -> Path:
        if self._root is None:
            raise PersistenceError("public parameter cache is disabled")
        return self._root / store / f"{acl.lower()}.json"

    def _read(self, store: str, acl: str) -> Any:
        path = self._path(store, acl)
        if not path.exists():
            return None
        try:
            with path.open("r", encoding="utf-8") as handle:
                record = json.load(handle)
        except (OSError, json.JSONDecodeError) as exc:
            raise PersistenceError(f"Failed to read {store} entry for {acl}: {exc}") from exc
        if not isinstance(record, dict):
            raise PersistenceError(f"Corrupted {store} entry for {acl}")
        return _decode(record.get("value"))

    def _write(self, store: str, acl: str, value: Any) -> None:
        path = self._path(store, acl)
        payload = {"acl": acl, "value": _encode(value)}
        with self._lock:
            tmp_path = path.with_suffix(".json.tmp")
            try:
                with tmp_path.open("w", encoding="utf-8") as handle:
                    json.dump(payload, handle, sort_keys=True)
                tmp_path.replace(path)
            except (OSError, TypeError, ValueError) as exc:
                raise PersistenceError(f"Failed to write {store} entry for {acl}: {exc}") from exc

    def get_sync(self, acl_address: str) -> PublicParamsEntry:
        if self._root is None:
            return PublicParamsEntry()
        acl = ensure_address(acl_address)
        try:
            public_key = self._read(PUBLIC_KEY_STORE, acl)
            public_params = _restore_bit_keys(self._read(PARAMS_STORE, acl))
        except PersistenceError as exc:
            logger.warning("Ignoring cached public parameters: %s", exc)
            return PublicParamsEntry()
        return PublicParamsEntry(public_key=public_key, public_params=public_params)

    def set_sync(
        self,
        acl_address: str,
        public_key: Optional[Dict[str, Any]],
        public_params: Optional[Dict[Any, Any]],
    ) -> None:
        if self._root is None:
            return
        acl = ensure_address(acl_address)
        try:
            if public_key:
                self._write(PUBLIC_KEY_STORE, acl, public_key)
            if public_params:
                self._write(PARAMS_STORE, acl, public_params)
        except PersistenceError as exc:
            logger.warning("Failed to persist public parameters: %s", exc)

    def clear_sync(self, acl_address: Optional[str] = None) -> int:
        """Delete cached entries for ``acl_address`` (or all of them); returns files removed."""

        if self._root is None:
            return 0
        removed = 0
        with self._lock:
            for store in (PUBLIC_KEY_STORE, PARAMS_STORE):
                if acl_address is None:
                    paths = list((self._root / store).glob("*.json"))
                else:
                    paths = [self._path(store, ensure_address(acl_address))]
                for path in paths:
                    if path.exists():
                        path.unlink()
                        removed += 1
        return removed

    async def get(self, acl_address: str) -> PublicParamsEntry:
        return await asyncio.to_thread(self.get_sync, acl_address)

    async def set(
        self,
        acl_address: str,
        public_key: Optional[Dict[str, Any]],
        public_params: Optional[Dict[Any, Any]],
    ) -> None:
        await asyncio.to_thread(self.set_sync, acl_address, public_key, public_params)
