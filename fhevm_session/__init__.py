"""Client-side FHEVM session management: engine bootstrap and decryption permits."""

from .builder import BuildStatus, CancellationToken, FhevmInstanceBuilder, StatusStream, create_fhevm_instance
from .config import SessionSettings, load_settings
from .errors import (
    EngineLoadError,
    FhevmAbortError,
    FhevmConfigurationError,
    FhevmError,
    InvalidAddressError,
    PersistenceError,
    RelayerMetadataError,
    SignatureRequestError,
)
from .loader import EngineLoader, EngineRuntime
from .network import NetworkProfile, RelayerMetadata, resolve_network, try_resolve_mock_metadata
from .permit import DecryptionPermit, PermitCacheKey, PermitCoordinator
from .public_params import PublicParamsStore
from .rpc import HttpProvider, RpcError
from .session import FhevmSession, SessionStatus
from .signers import LocalAccountSigner
from .storage import FileStringStorage, InMemoryStringStorage

__all__ = [
    "BuildStatus",
    "CancellationToken",
    "DecryptionPermit",
    "EngineLoadError",
    "EngineLoader",
    "EngineRuntime",
    "FhevmAbortError",
    "FhevmConfigurationError",
    "FhevmError",
    "FhevmInstanceBuilder",
    "FhevmSession",
    "FileStringStorage",
    "HttpProvider",
    "InMemoryStringStorage",
    "InvalidAddressError",
    "LocalAccountSigner",
    "NetworkProfile",
    "PermitCacheKey",
    "PermitCoordinator",
    "PersistenceError",
    "PublicParamsStore",
    "RelayerMetadata",
    "RelayerMetadataError",
    "RpcError",
    "SessionSettings",
    "SessionStatus",
    "SignatureRequestError",
    "StatusStream",
    "create_fhevm_instance",
    "load_settings",
    "resolve_network",
    "try_resolve_mock_metadata",
]
