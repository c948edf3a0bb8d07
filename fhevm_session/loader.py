"""Load and initialise the relayer SDK module.

The SDK is an ordinary Python module. It is looked up locally first (an
importable module name or a ``.py`` path) and, failing that, downloaded from
the CDN into a cache directory and imported from there. The loaded module and
its initialised flag live on an :class:`EngineRuntime` owned by the caller
rather than on interpreter-wide globals.
"""

from __future__ import annotations

import asyncio
import importlib
import importlib.util
import inspect
import logging
import sys
from pathlib import Path
from types import ModuleType
from typing import Any, Dict, Optional
from urllib.parse import urlparse

import httpx

from .config import SDK_CDN_URL, SDK_LOCAL_SOURCE, SessionSettings
from .errors import EngineLoadError

logger = logging.getLogger(__name__)

_REQUIRED_ATTRIBUTES = ("init_sdk", "create_instance")


async def maybe_await(value: Any) -> Any:
    if inspect.isawaitable(value):
        return await value
    return value


class EngineRuntime:
    """Holds the loaded SDK module and whether ``init_sdk`` succeeded."""

    def __init__(self, module: Optional[ModuleType] = None) -> None:
        self.module: Optional[Any] = module
        self.initialized = False
        self._lock = asyncio.Lock()

    @property
    def loaded(self) -> bool:
        return self.module is not None

    async def ensure_loaded(self, loader: "EngineLoader") -> bool:
        """Load the SDK once; returns ``True`` when this call performed the load."""

        if self.module is not None:
            return False
        async with self._lock:
            if self.module is not None:
                return False
            await loader.load(self)
            return True

    async def ensure_initialized(self, options: Optional[Dict[str, Any]] = None) -> bool:
        """Run ``init_sdk`` at most once; returns ``True`` when this call ran it."""

        if self.initialized:
            return False
        async with self._lock:
            if self.initialized:
                return False
            if self.module is None:
                raise EngineLoadError("relayerSDK is unavailable", code="SDK_INIT_FAILED")
            try:
                ok = await maybe_await(self.module.init_sdk(**(options or {})))
            except Exception as exc:
                raise EngineLoadError(f"relayerSDK.init_sdk raised: {exc}", code="SDK_INIT_FAILED") from exc
            if not ok:
                raise EngineLoadError("relayerSDK.init_sdk failed", code="SDK_INIT_FAILED")
            self.initialized = True
            return True

    def reset(self) -> None:
        self.module = None
        self.initialized = False


def _validate_module(module: Any, source: str) -> Any:
    missing = [name for name in _REQUIRED_ATTRIBUTES if not callable(getattr(module, name, None))]
    if missing:
        raise EngineLoadError(f"{source} does not look like the relayer SDK (missing {', '.join(missing)})")
    return module


def _import_from_path(path: Path, module_name: str) -> ModuleType:
    spec = importlib.util.spec_from_file_location(module_name, path)
    if spec is None or spec.loader is None:
        raise ImportError(f"Unable to build an import spec for {path}")
    module = importlib.util.module_from_spec(spec)
    previous = sys.modules.get(module_name)
    sys.modules[module_name] = module
    try:
        spec.loader.exec_module(module)
    except BaseException:
        if previous is not None:
            sys.modules[module_name] = previous
        else:
            sys.modules.pop(module_name, None)
        raise
    return module


class EngineLoader:
    """Loads the relayer SDK from the local source, then from the CDN."""

    def __init__(
        self,
        *,
        local_source: Optional[str] = SDK_LOCAL_SOURCE,
        cdn_url: Optional[str] = SDK_CDN_URL,
        cache_dir: Path = Path("storage/fhevm/sdk"),
        module_name: str = "relayer_sdk",
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self._local_source = local_source
        self._cdn_url = cdn_url
        self._cache_dir = Path(cache_dir)
        self._module_name = module_name
        self._timeout = timeout
        self._transport = transport

    @classmethod
    def from_settings(cls, settings: SessionSettings) -> "EngineLoader":
        return cls(
            local_source=settings.sdk_local_source,
            cdn_url=settings.sdk_cdn_url,
            cache_dir=settings.sdk_cache_dir,
        )

    async def load(self, runtime: EngineRuntime) -> None:
        if runtime.module is not None:
            return
        last_error: Optional[BaseException] = None
        if self._local_source:
            try:
                runtime.module = self._load_local(self._local_source)
                logger.debug("[EngineLoader] Loaded from local source %s", self._local_source)
                return
            except Exception as exc:
                last_error = exc
                logger.debug("[EngineLoader] Local load of %s failed (%s), trying CDN", self._local_source, exc)
        if self._cdn_url:
            try:
                runtime.module = await self._load_remote(self._cdn_url)
                logger.debug("[EngineLoader] Successfully loaded from CDN %s", self._cdn_url)
                return
            except Exception as exc:
                last_error = exc
                logger.warning("[EngineLoader] CDN load of %s failed: %s", self._cdn_url, exc)
        raise EngineLoadError("Unable to load the relayer SDK from any source") from last_error

    def _load_local(self, source: str) -> Any:
        if source.endswith(".py") or "/" in source or source.startswith("."):
            path = Path(source)
            if not path.is_file():
                raise FileNotFoundError(source)
            module = _import_from_path(path.resolve(), self._module_name)
        else:
            module = importlib.import_module(source)
        return _validate_module(module, source)

    async def _load_remote(self, url: str) -> Any:
        filename = Path(urlparse(url).path).name or f"{self._module_name}.py"
        if not filename.endswith(".py"):
            filename = f"{filename}.py"
        async with httpx.AsyncClient(
            timeout=self._timeout,
            follow_redirects=True,
            transport=self._transport,
        ) as client:
            response = await client.get(url)
        response.raise_for_status()
        target = self._cache_dir / filename
        await asyncio.to_thread(self._write_atomic, target, response.content)
        module = _import_from_path(target, self._module_name)
        return _validate_module(module, url)

    @staticmethod
    def _write_atomic(target: Path, content: bytes) -> None:
        target.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = target.with_suffix(target.suffix + ".tmp")
        tmp_path.write_bytes(content)
        tmp_path.replace(target)
