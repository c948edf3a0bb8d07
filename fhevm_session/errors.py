"""Error taxonomy shared by the FHEVM session helpers."""

from __future__ import annotations

from typing import Optional


class FhevmError(RuntimeError):
    """Base class for every error raised by :mod:`fhevm_session`."""

    default_code = "FHEVM_ERROR"

    def __init__(self, message: str, *, code: Optional[str] = None) -> None:
        super().__init__(message)
        self.code = code or self.default_code


class FhevmAbortError(FhevmError):
    """Raised when a build is cancelled; never reported as a failure."""

    default_code = "ABORTED"

    def __init__(self, message: str = "FHEVM operation cancelled") -> None:
        super().__init__(message)


class FhevmConfigurationError(FhevmError):
    """Raised when the relayer SDK exposes no usable network configuration."""

    default_code = "CONFIGURATION_ERROR"


class RelayerMetadataError(FhevmError):
    """Raised when ``fhevm_relayer_metadata`` cannot be fetched."""

    default_code = "RELAYER_METADATA_ERROR"


class SignatureRequestError(FhevmError):
    """Raised when the signer rejects or fails a typed-data request."""

    default_code = "SIGNATURE_REJECTED"


class PersistenceError(FhevmError):
    """Raised by storage backends; callers log and continue."""

    default_code = "PERSISTENCE_ERROR"


class InvalidAddressError(FhevmError, ValueError):
    """Raised when a value is not a valid 20-byte hex address."""

    default_code = "INVALID_ADDRESS"

    def __init__(self, value: object) -> None:
        super().__init__(f"Invalid address: {value}")
        self.value = value


class EngineLoadError(FhevmError):
    """Raised when the relayer SDK cannot be loaded or initialised."""

    default_code = "SDK_LOAD_FAILED"
