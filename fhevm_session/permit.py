"""Signed, time-bounded permits authorising user decryption.

A permit bundles an ephemeral keypair with the user's EIP-712 signature over
``UserDecryptRequestVerification``. Permits are cached in a
:class:`~fhevm_session.storage.GenericStringStorage` under a key derived from
the user address and the hash of a *blank* authorisation payload (placeholder
public key, zero timestamp and duration, sorted contracts). The key therefore
stays stable across permits issued at different times for the same scope.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import time
from dataclasses import dataclass
from typing import Any, AsyncIterator, Dict, List, Optional, Sequence

from eth_account.messages import encode_typed_data
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator
from web3 import Web3

from .addresses import ZERO_ADDRESS, ensure_address, sorted_unique_addresses
from .config import DEFAULT_PERMIT_DURATION_DAYS
from .engine import EIP712Payload, FhevmInstance
from .errors import SignatureRequestError
from .signers import TypedDataSigner, normalize_typed_message
from .storage import GenericStringStorage

logger = logging.getLogger(__name__)

PRIMARY_TYPE = "UserDecryptRequestVerification"
SECONDS_PER_DAY = 24 * 3600


def _now() -> int:
    return int(time.time())


def hash_typed_data(payload: EIP712Payload) -> str:
    """Hash ``payload`` as EIP-712 using only the ``UserDecryptRequestVerification`` type."""

    message_types = {PRIMARY_TYPE: list(payload["types"][PRIMARY_TYPE])}
    signable = encode_typed_data(
        domain_data=dict(payload["domain"]),
        message_types=message_types,
        message_data=normalize_typed_message(message_types, PRIMARY_TYPE, payload["message"]),
    )
    digest = Web3.keccak(b"\x19" + signable.version + signable.header + signable.body)
    return Web3.to_hex(digest)


@dataclass(frozen=True)
class PermitCacheKey:
    """Storage key ``<user>:<blank payload hash>`` for a permit scope."""

    user_address: str
    payload_hash: str

    @property
    def key(self) -> str:
        return f"{self.user_address}:{self.payload_hash}"

    def __str__(self) -> str:
        return self.key

    @classmethod
    def derive(
        cls,
        instance: FhevmInstance,
        contract_addresses: Sequence[str],
        user_address: str,
        public_key: Optional[str] = None,
    ) -> "PermitCacheKey":
        user = ensure_address(user_address)
        contracts = sorted_unique_addresses(contract_addresses)
        blank = instance.create_eip712(public_key or ZERO_ADDRESS, contracts, 0, 0)
        return cls(user_address=user, payload_hash=hash_typed_data(blank))


class DecryptionPermit(BaseModel):
    """Immutable decryption permit; build it with :meth:`create` or :meth:`from_json`."""

    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="ignore")

    public_key: str = Field(alias="publicKey")
    private_key: str = Field(alias="privateKey")
    signature: str
    start_timestamp: int = Field(alias="startTimestamp", ge=0)
    duration_days: int = Field(alias="durationDays", ge=0)
    user_address: str = Field(alias="userAddress")
    contract_addresses: List[str] = Field(alias="contractAddresses")
    eip712: Dict[str, Any]

    @field_validator("user_address")
    @classmethod
    def _checksum_user(cls, value: str) -> str:
        return ensure_address(value)

    @field_validator("contract_addresses")
    @classmethod
    def _checksum_contracts(cls, value: List[str]) -> List[str]:
        return [ensure_address(item) for item in value]

    @property
    def expires_at(self) -> int:
        return self.start_timestamp + self.duration_days * SECONDS_PER_DAY

    def is_valid(self, now: Optional[int] = None) -> bool:
        return (_now() if now is None else now) < self.expires_at

    def to_json(self) -> str:
        return self.model_dump_json(by_alias=True)

    @classmethod
    def from_json(cls, raw: str | Dict[str, Any]) -> "DecryptionPermit":
        if isinstance(raw, str):
            return cls.model_validate_json(raw)
        return cls.model_validate(raw)

    def cache_key(self, instance: FhevmInstance, cache_public_key: bool = False) -> PermitCacheKey:
        return PermitCacheKey.derive(
            instance,
            self.contract_addresses,
            self.user_address,
            self.public_key if cache_public_key else None,
        )

    @classmethod
    async def load(
        cls,
        storage: GenericStringStorage,
        instance: FhevmInstance,
        contract_addresses: Sequence[str],
        user_address: str,
        public_key: Optional[str] = None,
    ) -> Optional["DecryptionPermit"]:
        """Return the cached permit for this scope, or ``None`` on any miss."""

        key = PermitCacheKey.derive(instance, contract_addresses, user_address, public_key)
        try:
            raw = await storage.get_item(key.key)
        except Exception as exc:
            logger.warning("Failed to read FHEVM decrypt signature %s: %s", key, exc)
            return None
        if not raw:
            return None
        try:
            permit = cls.from_json(raw)
        except (ValidationError, ValueError, TypeError) as exc:
            logger.debug("Discarding malformed FHEVM decrypt signature %s: %s", key, exc)
            return None
        return permit if permit.is_valid() else None

    @classmethod
    async def create(
        cls,
        instance: FhevmInstance,
        contract_addresses: Sequence[str],
        signer: TypedDataSigner,
        *,
        duration_days: int = DEFAULT_PERMIT_DURATION_DAYS,
    ) -> "DecryptionPermit":
        """Generate a keypair and ask ``signer`` to authorise it."""

        contracts = sorted_unique_addresses(contract_addresses)
        keypair = instance.generate_keypair()
        try:
            user_address = await signer.get_address()
        except Exception as exc:
            raise SignatureRequestError(f"Signer could not report its address: {exc}") from exc
        start_timestamp = _now()
        eip712 = instance.create_eip712(keypair["publicKey"], contracts, start_timestamp, duration_days)
        try:
            signature = await signer.sign_typed_data(
                eip712["domain"],
                {PRIMARY_TYPE: eip712["types"][PRIMARY_TYPE]},
                eip712["message"],
            )
        except Exception as exc:
            raise SignatureRequestError(f"User decryption signature request failed: {exc}") from exc
        if not signature:
            raise SignatureRequestError("Signer returned an empty signature")
        return cls(
            public_key=keypair["publicKey"],
            private_key=keypair["privateKey"],
            signature=signature,
            start_timestamp=start_timestamp,
            duration_days=duration_days,
            user_address=user_address,
            contract_addresses=contracts,
            eip712=dict(eip712),
        )

    async def save(
        self,
        storage: GenericStringStorage,
        instance: FhevmInstance,
        cache_public_key: bool,
    ) -> None:
        """Persist the permit; storage failures are logged, never raised."""

        key = self.cache_key(instance, cache_public_key)
        try:
            await storage.set_item(key.key, self.to_json())
        except Exception as exc:
            logger.warning("Failed to persist FHEVM decrypt signature %s: %s", key, exc)

    async def evict(
        self,
        storage: GenericStringStorage,
        instance: FhevmInstance,
        cache_public_key: bool = False,
    ) -> None:
        key = self.cache_key(instance, cache_public_key)
        try:
            await storage.remove_item(key.key)
        except Exception as exc:
            logger.warning("Failed to evict FHEVM decrypt signature %s: %s", key, exc)

    @classmethod
    async def load_or_create(
        cls,
        storage: GenericStringStorage,
        instance: FhevmInstance,
        contract_addresses: Sequence[str],
        signer: TypedDataSigner,
        *,
        coordinator: Optional["PermitCoordinator"] = None,
        duration_days: int = DEFAULT_PERMIT_DURATION_DAYS,
    ) -> "DecryptionPermit":
        """Return a cached valid permit or sign, store and return a new one."""

        try:
            user_address = await signer.get_address()
        except Exception as exc:
            raise SignatureRequestError(f"Signer could not report its address: {exc}") from exc
        scope = PermitCacheKey.derive(instance, contract_addresses, user_address)
        async with (coordinator or _DEFAULT_COORDINATOR).hold(scope.key):
            cached = await cls.load(storage, instance, contract_addresses, user_address)
            if cached is not None:
                return cached
            permit = await cls.create(instance, contract_addresses, signer, duration_days=duration_days)
            await permit.save(storage, instance, False)
            return permit


class PermitCoordinator:
    """Serialises ``load_or_create`` per permit scope.

    Two concurrent requests for the same user and contract set queue behind
    one lock; the second one then finds the first one's saved permit.
    """

    def __init__(self) -> None:
        self._locks: Dict[str, asyncio.Lock] = {}
        self._holders: Dict[str, int] = {}

    @contextlib.asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[None]:
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        self._holders[key] = self._holders.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._holders[key] -= 1
            if self._holders[key] == 0:
                del self._holders[key]
                self._locks.pop(key, None)

    def __len__(self) -> int:
        return len(self._locks)


_DEFAULT_COORDINATOR = PermitCoordinator()
