"""Boundary types for the external FHEVM engine (relayer SDK)."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Optional, Protocol, Sequence, Tuple, TypedDict

from .addresses import ensure_address
from .errors import FhevmConfigurationError


class EIP712Payload(TypedDict):
    """Typed-data structure returned by ``create_eip712``."""

    domain: Dict[str, Any]
    types: Dict[str, List[Dict[str, str]]]
    primaryType: str
    message: Dict[str, Any]


class Keypair(TypedDict):
    publicKey: str
    privateKey: str


class HandleContractPair(TypedDict):
    handle: str
    contractAddress: str


class EncryptedInput(Protocol):  # pragma: no cover - protocol
    def add64(self, value: int) -> "EncryptedInput": ...

    async def encrypt(self) -> Dict[str, Any]: ...


class FhevmInstance(Protocol):  # pragma: no cover - protocol
    """Capabilities a ready engine handle exposes."""

    def generate_keypair(self) -> Keypair: ...

    def create_eip712(
        self,
        public_key: str,
        contract_addresses: Sequence[str],
        start_timestamp: int,
        duration_days: int,
    ) -> EIP712Payload: ...

    def create_encrypted_input(self, contract_address: str, user_address: str) -> EncryptedInput: ...

    async def user_decrypt(
        self,
        handles: Sequence[HandleContractPair],
        private_key: str,
        public_key: str,
        signature: str,
        contract_addresses: Sequence[str],
        user_address: str,
        start_timestamp: int,
        duration_days: int,
    ) -> Dict[str, Any]: ...

    def get_public_key(self) -> Optional[Dict[str, Any]]: ...

    def get_public_params(self, bits: int) -> Optional[Dict[str, Any]]: ...


@dataclass(frozen=True)
class NetworkConfigVersion:
    """One known shape of the SDK's built-in network configuration."""

    version: str
    attribute: str


# Newest first; the first usable entry wins.
CONFIG_VERSIONS: Tuple[NetworkConfigVersion, ...] = (
    NetworkConfigVersion(version="v0.9", attribute="ZamaEthereumConfig"),
    NetworkConfigVersion(version="v0.8", attribute="SepoliaConfig"),
)


@dataclass(frozen=True)
class BaseNetworkConfig:
    """A resolved SDK network configuration and its ACL contract."""

    version: str
    values: Mapping[str, Any]
    acl_address: str

    def with_overrides(self, **overrides: Any) -> Dict[str, Any]:
        merged = dict(self.values)
        merged.update(overrides)
        return merged


def select_base_config(
    sdk: Any,
    versions: Sequence[NetworkConfigVersion] = CONFIG_VERSIONS,
) -> BaseNetworkConfig:
    """Pick the newest configuration shape the loaded SDK exposes.

    A candidate counts only when it is a mapping that names an
    ``aclContractAddress``. A present but malformed address is fatal.
    """

    for candidate in versions:
        values = getattr(sdk, candidate.attribute, None)
        if not isinstance(values, Mapping):
            continue
        acl = values.get("aclContractAddress")
        if not acl:
            continue
        return BaseNetworkConfig(
            version=candidate.version,
            values=dict(values),
            acl_address=ensure_address(acl),
        )
    names = " or ".join(candidate.attribute for candidate in versions)
    raise FhevmConfigurationError(
        f"Unable to find FHEVM configuration ({names}) in relayerSDK",
        code="CONFIG_NOT_FOUND",
    )
