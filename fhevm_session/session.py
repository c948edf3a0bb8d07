"""Keeps one FHEVM instance in sync with the current provider and chain."""

from __future__ import annotations

import asyncio
import contextlib
import logging
from enum import Enum
from typing import Any, Callable, Dict, List, Mapping, Optional

from prometheus_client import CONTENT_TYPE_LATEST, CollectorRegistry, Counter, generate_latest

from .builder import BuildStatus, CancellationToken, FhevmInstanceBuilder, StatusStream
from .engine import FhevmInstance
from .errors import FhevmAbortError
from .rpc import ProviderLike

logger = logging.getLogger(__name__)

_UNSET: Any = object()


class SessionStatus(str, Enum):
    IDLE = "idle"
    LOADING = "loading"
    READY = "ready"
    ERROR = "error"


SessionListener = Callable[[SessionStatus], None]


class FhevmSession:
    """Reactive owner of the FHEVM instance for a (provider, chain) pair.

    Call :meth:`update` whenever the wallet provider, the chain id or the
    ``enabled`` flag changes. Every change of provider or chain cancels the
    in-flight build before a new one starts, and a build that finishes after
    its token was cancelled never touches :attr:`instance`, :attr:`status` or
    :attr:`error`. Must be driven from a running event loop.
    """

    def __init__(
        self,
        builder: Optional[FhevmInstanceBuilder] = None,
        *,
        mock_chains: Optional[Mapping[int, str]] = None,
        enabled: bool = True,
    ) -> None:
        self._builder = builder or FhevmInstanceBuilder()
        # Snapshot: later mutations of the caller's mapping do not leak in.
        self._mock_chains: Optional[Dict[int, str]] = dict(mock_chains) if mock_chains else None
        self._provider: Optional[ProviderLike] = None
        self._chain_id: Optional[int] = None
        self._enabled = enabled
        self._token: Optional[CancellationToken] = None
        self._task: Optional[asyncio.Task[Optional[FhevmInstance]]] = None
        self._listeners: List[SessionListener] = []

        self.instance: Optional[FhevmInstance] = None
        self.status = SessionStatus.IDLE
        self.error: Optional[BaseException] = None
        self.status_history: List[SessionStatus] = [SessionStatus.IDLE]
        self.build_statuses: List[BuildStatus] = []

        self._metrics_registry = CollectorRegistry()
        self._builds = Counter(
            "fhevm_builds_total",
            "FHEVM instance builds by outcome",
            labelnames=("outcome",),
            registry=self._metrics_registry,
        )
        self._transitions = Counter(
            "fhevm_status_transitions_total",
            "FHEVM session status transitions",
            labelnames=("status",),
            registry=self._metrics_registry,
        )

    @property
    def provider(self) -> Optional[ProviderLike]:
        return self._provider

    @property
    def chain_id(self) -> Optional[int]:
        return self._chain_id

    @property
    def enabled(self) -> bool:
        return self._enabled

    @property
    def in_flight(self) -> bool:
        return self._task is not None and not self._task.done()

    def subscribe(self, listener: SessionListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe

    def update(
        self,
        *,
        provider: Optional[ProviderLike] = _UNSET,
        chain_id: Optional[int] = _UNSET,
        enabled: bool = _UNSET,
    ) -> Optional["asyncio.Task[Optional[FhevmInstance]]"]:
        """Apply new inputs and start, keep or cancel the build accordingly."""

        new_provider = self._provider if provider is _UNSET else provider
        new_chain = self._chain_id if chain_id is _UNSET else chain_id
        if new_provider != self._provider or new_chain != self._chain_id:
            self._reset()
            self._provider = new_provider
            self._chain_id = new_chain
        if enabled is not _UNSET:
            self._enabled = bool(enabled)
        return self._sync()

    def refresh(self) -> Optional["asyncio.Task[Optional[FhevmInstance]]"]:
        """Drop the current instance and rebuild for the current inputs."""

        self._reset()
        return self._sync()

    async def wait_ready(self) -> Optional[FhevmInstance]:
        """Wait for the current build (if any) and return the resulting instance."""

        while self._task is not None and not self._task.done():
            task = self._task
            with contextlib.suppress(asyncio.CancelledError):
                await asyncio.shield(task)
            if task is self._task:
                break
        return self.instance

    async def close(self) -> None:
        self._cancel()
        task, self._task = self._task, None
        if task is not None and not task.done():
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
        self.instance = None
        self._set_status(SessionStatus.IDLE)

    def metrics(self) -> bytes:
        return generate_latest(self._metrics_registry)

    @property
    def metrics_content_type(self) -> str:
        return CONTENT_TYPE_LATEST

    def _cancel(self, reason: str = "superseded") -> None:
        if self._token is not None:
            self._token.cancel(reason)
            self._token = None

    def _reset(self) -> None:
        self._cancel()
        self.instance = None
        self.error = None
        self._set_status(SessionStatus.IDLE)

    def _sync(self) -> Optional["asyncio.Task[Optional[FhevmInstance]]"]:
        if not self._enabled:
            self._cancel("disabled")
            self.instance = None
            self._set_status(SessionStatus.IDLE)
            return None
        if self._provider is None:
            self.instance = None
            self._set_status(SessionStatus.IDLE)
            return None
        if self._token is not None and self.in_flight:
            return self._task
        if self.status in (SessionStatus.READY, SessionStatus.ERROR):
            return None
        return self._start()

    def _start(self) -> "asyncio.Task[Optional[FhevmInstance]]":
        self._cancel()
        token = CancellationToken()
        self._token = token
        self.error = None
        self.build_statuses = []
        self._set_status(SessionStatus.LOADING)
        stream = StatusStream(self.build_statuses.append)
        loop = asyncio.get_running_loop()
        self._task = loop.create_task(self._run(self._provider, token, stream))
        return self._task

    async def _run(
        self,
        provider: Optional[ProviderLike],
        token: CancellationToken,
        stream: StatusStream,
    ) -> Optional[FhevmInstance]:
        assert provider is not None
        try:
            instance = await self._builder.build(provider, self._mock_chains, token, stream)
        except FhevmAbortError:
            self._builds.labels("cancelled").inc()
            if token is self._token:
                # aborted from inside the build, not superseded
                self._token = None
                self._set_status(SessionStatus.IDLE)
            return None
        except Exception as exc:
            if token.cancelled:
                self._builds.labels("cancelled").inc()
                return None
            logger.error("FHEVM instance build failed: %s", exc)
            self._builds.labels("error").inc()
            self.error = exc
            self._set_status(SessionStatus.ERROR)
            return None
        if token.cancelled:
            self._builds.labels("cancelled").inc()
            return None
        self._builds.labels("ready").inc()
        self.instance = instance
        self._set_status(SessionStatus.READY)
        return instance

    def _set_status(self, status: SessionStatus) -> None:
        if status is self.status:
            return
        self.status = status
        self.status_history.append(status)
        self._transitions.labels(status.value).inc()
        for listener in list(self._listeners):
            try:
                listener(status)
            except Exception:
                logger.exception("FHEVM session listener failed for %s", status.value)
