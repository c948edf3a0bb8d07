"""Build a ready FHEVM instance for the connected network."""

from __future__ import annotations

import importlib
import logging
from enum import Enum
from typing import Any, Awaitable, Callable, List, Mapping, Optional, Union

from .config import PUBLIC_PARAMS_BITS, SessionSettings
from .engine import FhevmInstance, select_base_config
from .errors import EngineLoadError, FhevmAbortError
from .loader import EngineLoader, EngineRuntime, maybe_await
from .network import ProviderFactory, RelayerMetadata, resolve_network, try_resolve_mock_metadata
from .public_params import PublicParamsStore
from .rpc import ProviderLike

logger = logging.getLogger(__name__)


class BuildStatus(str, Enum):
    """Progress markers emitted while an instance is being built."""

    SDK_LOADING = "sdk-loading"
    SDK_LOADED = "sdk-loaded"
    SDK_INITIALIZING = "sdk-initializing"
    SDK_INITIALIZED = "sdk-initialized"
    CREATING = "creating"


StatusCallback = Callable[[BuildStatus], None]
MockInstanceFactory = Callable[..., Union[FhevmInstance, Awaitable[FhevmInstance]]]


class CancellationToken:
    """Cooperative cancellation flag threaded through a build.

    Tokens created with :meth:`child` are cancelled together with their parent.
    """

    def __init__(self, parent: Optional["CancellationToken"] = None) -> None:
        self._cancelled = False
        self.reason: Optional[str] = None
        self._children: List["CancellationToken"] = []
        if parent is not None:
            parent._children.append(self)
            if parent.cancelled:
                self.cancel(parent.reason)

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def cancel(self, reason: Optional[str] = None) -> None:
        if self._cancelled:
            return
        self._cancelled = True
        self.reason = reason
        for child in self._children:
            child.cancel(reason)

    def child(self) -> "CancellationToken":
        return CancellationToken(parent=self)

    def raise_if_cancelled(self) -> None:
        if self._cancelled:
            raise FhevmAbortError(f"FHEVM operation cancelled: {self.reason}" if self.reason else "FHEVM operation cancelled")


class StatusStream:
    """Fan-out of :class:`BuildStatus` values with a recorded history."""

    def __init__(self, *callbacks: StatusCallback) -> None:
        self._callbacks: List[StatusCallback] = [cb for cb in callbacks if cb is not None]
        self.history: List[BuildStatus] = []

    def subscribe(self, callback: StatusCallback) -> Callable[[], None]:
        self._callbacks.append(callback)

        def _unsubscribe() -> None:
            if callback in self._callbacks:
                self._callbacks.remove(callback)

        return _unsubscribe

    def emit(self, status: BuildStatus) -> None:
        self.history.append(status)
        logger.debug("FHEVM build status: %s", status.value)
        for callback in list(self._callbacks):
            try:
                callback(status)
            except Exception:
                logger.exception("FHEVM status observer failed for %s", status.value)


def _import_mock_factory(module_name: str) -> MockInstanceFactory:
    try:
        module = importlib.import_module(module_name)
        factory = getattr(module, "create_instance")
    except (ImportError, AttributeError) as exc:
        raise EngineLoadError(f"Unable to load the mock FHEVM engine from {module_name}: {exc}") from exc
    if not callable(factory):
        raise EngineLoadError(f"{module_name}.create_instance is not callable")
    return factory


class FhevmInstanceBuilder:
    """Coordinates network detection, SDK bootstrap and instance creation."""

    def __init__(
        self,
        *,
        settings: Optional[SessionSettings] = None,
        runtime: Optional[EngineRuntime] = None,
        loader: Optional[EngineLoader] = None,
        public_params: Optional[PublicParamsStore] = None,
        mock_factory: Optional[MockInstanceFactory] = None,
        provider_factory: Optional[ProviderFactory] = None,
        init_options: Optional[Mapping[str, Any]] = None,
    ) -> None:
        self.settings = settings or SessionSettings()
        self.runtime = runtime or EngineRuntime()
        self.loader = loader or EngineLoader.from_settings(self.settings)
        self.public_params = public_params or PublicParamsStore(self.settings.public_params_dir)
        self._mock_factory = mock_factory
        self._provider_factory = provider_factory
        self._init_options = dict(init_options or {})

    def _resolve_mock_factory(self) -> MockInstanceFactory:
        if self._mock_factory is None:
            self._mock_factory = _import_mock_factory(self.settings.mock_module)
        return self._mock_factory

    async def build(
        self,
        provider: ProviderLike,
        mock_chains: Optional[Mapping[int, str]] = None,
        token: Optional[CancellationToken] = None,
        on_status: Union[StatusStream, StatusCallback, None] = None,
    ) -> FhevmInstance:
        token = token or CancellationToken()
        status = on_status if isinstance(on_status, StatusStream) else StatusStream(on_status)

        profile = await resolve_network(
            provider,
            self.settings.merged_mock_chains(mock_chains),
            timeout=self.settings.rpc_timeout,
        )
        token.raise_if_cancelled()

        if profile.is_mock:
            metadata = await try_resolve_mock_metadata(
                profile.rpc_url or "",
                provider_factory=self._provider_factory,
                timeout=self.settings.rpc_timeout,
            )
            token.raise_if_cancelled()
            if metadata is not None:
                return await self._create_mock(profile.rpc_url or "", profile.chain_id, metadata, token, status)
            logger.debug("Chain %s is mapped as local but the node is not a mock FHEVM node", profile.chain_id)

        if not self.runtime.loaded:
            status.emit(BuildStatus.SDK_LOADING)
            await self.runtime.ensure_loaded(self.loader)
            token.raise_if_cancelled()
            status.emit(BuildStatus.SDK_LOADED)

        if not self.runtime.initialized:
            status.emit(BuildStatus.SDK_INITIALIZING)
            await self.runtime.ensure_initialized(self._init_options)
            token.raise_if_cancelled()
            status.emit(BuildStatus.SDK_INITIALIZED)

        sdk = self.runtime.module
        base = select_base_config(sdk)
        logger.debug("Using relayer SDK %s configuration (ACL %s)", base.version, base.acl_address)

        cached = await self.public_params.get(base.acl_address)
        token.raise_if_cancelled()

        config = base.with_overrides(
            network=provider,
            publicKey=cached.public_key,
            publicParams=cached.public_params,
        )

        status.emit(BuildStatus.CREATING)
        instance = await maybe_await(sdk.create_instance(config))
        token.raise_if_cancelled()

        await self._remember_public_params(base.acl_address, instance)
        token.raise_if_cancelled()
        return instance

    async def _create_mock(
        self,
        rpc_url: str,
        chain_id: int,
        metadata: RelayerMetadata,
        token: CancellationToken,
        status: StatusStream,
    ) -> FhevmInstance:
        status.emit(BuildStatus.CREATING)
        factory = self._resolve_mock_factory()
        instance = await maybe_await(factory(rpc_url=rpc_url, chain_id=chain_id, metadata=metadata))
        token.raise_if_cancelled()
        return instance

    async def _remember_public_params(self, acl_address: str, instance: FhevmInstance) -> None:
        public_key = instance.get_public_key()
        key_record = None
        if public_key:
            key_record = {"data": public_key.get("publicKey"), "id": public_key.get("publicKeyId")}
        params = instance.get_public_params(PUBLIC_PARAMS_BITS)
        await self.public_params.set(acl_address, key_record, params or None)


async def create_fhevm_instance(
    provider: ProviderLike,
    *,
    mock_chains: Optional[Mapping[int, str]] = None,
    token: Optional[CancellationToken] = None,
    on_status: Union[StatusStream, StatusCallback, None] = None,
    builder: Optional[FhevmInstanceBuilder] = None,
) -> FhevmInstance:
    """Convenience wrapper around :meth:`FhevmInstanceBuilder.build`."""

    return await (builder or FhevmInstanceBuilder()).build(
        provider,
        mock_chains=mock_chains,
        token=token,
        on_status=on_status,
    )
