"""Chain detection and local (mock) network confirmation."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Callable, Mapping, Optional

from .addresses import ensure_address
from .config import DEFAULT_MOCK_CHAINS, parse_mock_chains
from .errors import InvalidAddressError, RelayerMetadataError
from .rpc import Eip1193Provider, HttpProvider, ProviderLike, RpcError, as_provider

logger = logging.getLogger(__name__)

MOCK_CLIENT_MARKER = "hardhat"
_METADATA_FIELDS = ("ACLAddress", "InputVerifierAddress", "KMSVerifierAddress")

ProviderFactory = Callable[[str], Eip1193Provider]


@dataclass(frozen=True)
class NetworkProfile:
    """Outcome of :func:`resolve_network`."""

    is_mock: bool
    chain_id: int
    rpc_url: Optional[str] = None


@dataclass(frozen=True)
class RelayerMetadata:
    """Contract addresses advertised by a local FHEVM node."""

    acl_address: str
    input_verifier_address: str
    kms_verifier_address: str

    @classmethod
    def from_rpc(cls, payload: Mapping[str, Any]) -> "RelayerMetadata":
        return cls(
            acl_address=ensure_address(payload["ACLAddress"]),
            input_verifier_address=ensure_address(payload["InputVerifierAddress"]),
            kms_verifier_address=ensure_address(payload["KMSVerifierAddress"]),
        )

    def to_rpc(self) -> dict[str, str]:
        return {
            "ACLAddress": self.acl_address,
            "InputVerifierAddress": self.input_verifier_address,
            "KMSVerifierAddress": self.kms_verifier_address,
        }


def _parse_quantity(value: Any) -> int:
    if isinstance(value, bool):
        raise ValueError(f"unexpected chain id {value!r}")
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        text = value.strip()
        return int(text, 16) if text.lower().startswith("0x") else int(text)
    raise ValueError(f"unexpected chain id {value!r}")


async def get_chain_id(provider_or_url: ProviderLike, *, timeout: float = 10.0) -> int:
    """Query ``eth_chainId`` from a provider or a bare RPC URL."""

    provider = as_provider(provider_or_url, timeout=timeout)
    return _parse_quantity(await provider.request("eth_chainId", []))


async def resolve_network(
    provider_or_url: ProviderLike,
    mock_chains: Optional[Mapping[int, str]] = None,
    *,
    timeout: float = 10.0,
) -> NetworkProfile:
    """Classify the target network as a local mock chain or a relayer-backed one."""

    chain_id = await get_chain_id(provider_or_url, timeout=timeout)
    table = dict(DEFAULT_MOCK_CHAINS)
    table.update(parse_mock_chains(mock_chains))
    bare_url = provider_or_url if isinstance(provider_or_url, str) else None

    if chain_id in table:
        rpc_url = table[chain_id] or bare_url or ""
        return NetworkProfile(is_mock=True, chain_id=chain_id, rpc_url=rpc_url)
    return NetworkProfile(is_mock=False, chain_id=chain_id, rpc_url=bare_url)


async def get_client_version(provider: Eip1193Provider) -> str:
    version = await provider.request("web3_clientVersion", [])
    return str(version or "")


async def fetch_relayer_metadata(provider: Eip1193Provider, rpc_url: str = "") -> Any:
    """Call ``fhevm_relayer_metadata``; transport failures become :class:`RelayerMetadataError`."""

    try:
        return await provider.request("fhevm_relayer_metadata", [])
    except RpcError as exc:
        raise RelayerMetadataError(
            f"Unable to fetch FHEVM relayer metadata from {rpc_url or provider!r}"
        ) from exc


async def try_resolve_mock_metadata(
    rpc_url: str,
    *,
    provider_factory: Optional[ProviderFactory] = None,
    timeout: float = 10.0,
) -> Optional[RelayerMetadata]:
    """Return relayer metadata when ``rpc_url`` is a local hardhat FHEVM node.

    Anything unexpected (RPC failures, another client implementation, missing
    or malformed addresses) yields ``None`` so callers take the relayer path.
    """

    if not rpc_url:
        return None
    provider = provider_factory(rpc_url) if provider_factory else HttpProvider(rpc_url, timeout=timeout)
    try:
        version = await get_client_version(provider)
    except Exception as exc:
        logger.debug("web3_clientVersion probe failed for %s: %s", rpc_url, exc)
        return None
    if MOCK_CLIENT_MARKER not in version.lower():
        logger.debug("Node at %s reports %r; not a local FHEVM node", rpc_url, version)
        return None
    try:
        payload = await fetch_relayer_metadata(provider, rpc_url)
    except RelayerMetadataError as exc:
        logger.debug("%s: %s", exc.code, exc)
        return None
    except Exception as exc:
        logger.debug("Relayer metadata probe failed for %s: %s", rpc_url, exc)
        return None
    if not isinstance(payload, Mapping) or any(name not in payload for name in _METADATA_FIELDS):
        logger.debug("Relayer metadata from %s is incomplete: %r", rpc_url, payload)
        return None
    try:
        return RelayerMetadata.from_rpc(payload)
    except InvalidAddressError as exc:
        logger.debug("Relayer metadata from %s has a malformed address: %s", rpc_url, exc)
        return None
