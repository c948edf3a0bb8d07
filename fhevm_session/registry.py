"""Client for the NebulaCare registry contract and its encrypted vitals."""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

from web3 import Web3

from .addresses import ensure_address
from .config import DEFAULT_PERMIT_DURATION_DAYS, SessionSettings
from .engine import FhevmInstance
from .permit import DecryptionPermit, PermitCoordinator
from .signers import TypedDataSigner
from .storage import GenericStringStorage

logger = logging.getLogger(__name__)

GRAMS_PER_KILOGRAM = 1000
DEFAULT_STORY_PAGE = 64

_COMPANION_COMPONENTS = [
    {"name": "companionId", "type": "uint256"},
    {"name": "profileCID", "type": "string"},
    {"name": "privacyLevel", "type": "uint8"},
    {"name": "createdAt", "type": "uint64"},
    {"name": "updatedAt", "type": "uint64"},
    {"name": "owners", "type": "address[]"},
    {"name": "storyCount", "type": "uint256"},
    {"name": "hasVitalAura", "type": "bool"},
]
_STORY_COMPONENTS = [
    {"name": "storyId", "type": "uint256"},
    {"name": "companionId", "type": "uint256"},
    {"name": "author", "type": "address"},
    {"name": "logCID", "type": "string"},
    {"name": "eventType", "type": "uint8"},
    {"name": "timestamp", "type": "uint64"},
    {"name": "verified", "type": "bool"},
    {"name": "verifier", "type": "address"},
    {"name": "verifyCID", "type": "string"},
    {"name": "hasEncryptedVital", "type": "bool"},
]


def _fn(name: str, inputs: List[Dict[str, Any]], outputs: List[Dict[str, Any]], mutability: str) -> Dict[str, Any]:
    return {"type": "function", "name": name, "inputs": inputs, "outputs": outputs, "stateMutability": mutability}


REGISTRY_ABI: List[Dict[str, Any]] = [
    _fn("nextCompanionId", [], [{"name": "", "type": "uint256"}], "view"),
    _fn(
        "getCompanion",
        [{"name": "companionId", "type": "uint256"}],
        [{"name": "", "type": "tuple", "components": _COMPANION_COMPONENTS}],
        "view",
    ),
    _fn(
        "getStories",
        [
            {"name": "companionId", "type": "uint256"},
            {"name": "offset", "type": "uint256"},
            {"name": "limit", "type": "uint256"},
        ],
        [{"name": "", "type": "tuple[]", "components": _STORY_COMPONENTS}],
        "view",
    ),
    _fn(
        "registerCompanion",
        [
            {"name": "profileCID", "type": "string"},
            {"name": "coOwners", "type": "address[]"},
            {"name": "privacyLevel", "type": "uint8"},
        ],
        [{"name": "companionId", "type": "uint256"}],
        "nonpayable",
    ),
    _fn(
        "recordStory",
        [
            {"name": "companionId", "type": "uint256"},
            {"name": "logCID", "type": "string"},
            {"name": "eventType", "type": "uint8"},
        ],
        [{"name": "storyId", "type": "uint256"}],
        "nonpayable",
    ),
    _fn(
        "recordStoryWithVital",
        [
            {"name": "companionId", "type": "uint256"},
            {"name": "logCID", "type": "string"},
            {"name": "eventType", "type": "uint8"},
            {"name": "vitalHandle", "type": "bytes32"},
            {"name": "inputProof", "type": "bytes"},
        ],
        [{"name": "storyId", "type": "uint256"}],
        "nonpayable",
    ),
    _fn(
        "getCompanionVitalSummary",
        [{"name": "companionId", "type": "uint256"}],
        [{"name": "sum", "type": "bytes32"}, {"name": "count", "type": "bytes32"}],
        "view",
    ),
    _fn("getStoryVitalHandle", [{"name": "storyId", "type": "uint256"}], [{"name": "", "type": "bytes32"}], "view"),
    {
        "type": "event",
        "name": "CompanionRegistered",
        "anonymous": False,
        "inputs": [
            {"name": "companionId", "type": "uint256", "indexed": True},
            {"name": "owner", "type": "address", "indexed": True},
            {"name": "profileCID", "type": "string", "indexed": False},
        ],
    },
]


def handle_hex(value: Any) -> str:
    """Return an encrypted handle as a lowercase 0x-prefixed hex string."""

    if isinstance(value, (bytes, bytearray)):
        return "0x" + bytes(value).hex()
    text = str(value)
    return text.lower() if text.startswith("0x") else "0x" + text.lower()


def _field(view: Any, name: str, index: int) -> Any:
    if isinstance(view, dict):
        return view[name]
    if hasattr(view, name):
        return getattr(view, name)
    return view[index]


@dataclass(frozen=True)
class CompanionSnapshot:
    companion_id: int
    profile_cid: str
    privacy_level: int
    created_at: int
    updated_at: int
    owners: List[str] = field(default_factory=list)
    story_count: int = 0
    has_vital_aura: bool = False

    @classmethod
    def from_view(cls, view: Any) -> "CompanionSnapshot":
        return cls(
            companion_id=int(_field(view, "companionId", 0)),
            profile_cid=str(_field(view, "profileCID", 1)),
            privacy_level=int(_field(view, "privacyLevel", 2)),
            created_at=int(_field(view, "createdAt", 3)),
            updated_at=int(_field(view, "updatedAt", 4)),
            owners=[str(owner) for owner in _field(view, "owners", 5)],
            story_count=int(_field(view, "storyCount", 6)),
            has_vital_aura=bool(_field(view, "hasVitalAura", 7)),
        )


@dataclass(frozen=True)
class StoryView:
    story_id: int
    companion_id: int
    author: str
    log_cid: str
    event_type: int
    timestamp: int
    verified: bool
    verifier: str
    verify_cid: str
    has_encrypted_vital: bool

    @classmethod
    def from_view(cls, view: Any) -> "StoryView":
        return cls(
            story_id=int(_field(view, "storyId", 0)),
            companion_id=int(_field(view, "companionId", 1)),
            author=str(_field(view, "author", 2)),
            log_cid=str(_field(view, "logCID", 3)),
            event_type=int(_field(view, "eventType", 4)),
            timestamp=int(_field(view, "timestamp", 5)),
            verified=bool(_field(view, "verified", 6)),
            verifier=str(_field(view, "verifier", 7)),
            verify_cid=str(_field(view, "verifyCID", 8)),
            has_encrypted_vital=bool(_field(view, "hasEncryptedVital", 9)),
        )


@dataclass(frozen=True)
class VitalOrbit:
    """Decrypted aggregate of a companion's vitals (grams)."""

    sum: int
    count: int

    @property
    def average_kg(self) -> float:
        if self.count == 0:
            return 0.0
        return self.sum / self.count / GRAMS_PER_KILOGRAM


class NebulaRegistryClient:
    """Async facade over the registry contract; web3 calls run in a worker thread."""

    def __init__(self, contract: Any, *, web3: Optional[Web3] = None, sender: Optional[str] = None) -> None:
        self.contract = contract
        self.web3 = web3
        self.sender = ensure_address(sender) if sender else None

    @classmethod
    def from_web3(
        cls,
        web3: Web3,
        address: str,
        *,
        abi: Optional[Sequence[Dict[str, Any]]] = None,
        abi_path: Optional[Path] = None,
        sender: Optional[str] = None,
    ) -> "NebulaRegistryClient":
        if abi is None and abi_path is not None:
            with Path(abi_path).open("r", encoding="utf-8") as handle:
                payload = json.load(handle)
            abi = payload["abi"] if isinstance(payload, dict) else payload
        contract = web3.eth.contract(address=ensure_address(address), abi=list(abi or REGISTRY_ABI))
        return cls(contract, web3=web3, sender=sender)

    @property
    def address(self) -> str:
        return ensure_address(self.contract.address)

    async def _call(self, function_name: str, *args: Any) -> Any:
        function = getattr(self.contract.functions, function_name)
        tx: Dict[str, Any] = {"from": self.sender} if self.sender else {}
        return await asyncio.to_thread(lambda: function(*args).call(tx))

    async def _transact(self, function_name: str, *args: Any) -> Any:
        if self.web3 is None or self.sender is None:
            raise RuntimeError("a web3 connection and sender are required for registry writes")
        function = getattr(self.contract.functions, function_name)

        def _send() -> Any:
            tx_hash = function(*args).transact({"from": self.sender})
            return self.web3.eth.wait_for_transaction_receipt(tx_hash)

        return await asyncio.to_thread(_send)

    async def next_companion_id(self) -> int:
        return int(await self._call("nextCompanionId"))

    async def get_companion(self, companion_id: int) -> CompanionSnapshot:
        return CompanionSnapshot.from_view(await self._call("getCompanion", companion_id))

    async def get_stories(
        self,
        companion_id: int,
        offset: int = 0,
        limit: int = DEFAULT_STORY_PAGE,
    ) -> List[StoryView]:
        entries = await self._call("getStories", companion_id, offset, limit)
        return [StoryView.from_view(entry) for entry in entries]

    async def load_all_companions(self) -> List[CompanionSnapshot]:
        """Fetch every registered companion, skipping ids that fail to load."""

        next_id = await self.next_companion_id()
        gallery: List[CompanionSnapshot] = []
        for companion_id in range(1, next_id):
            try:
                gallery.append(await self.get_companion(companion_id))
            except Exception as exc:
                logger.warning("Failed to fetch companion #%s: %s", companion_id, exc)
        return gallery

    async def register_companion(
        self,
        profile_cid: str,
        co_owners: Sequence[str] = (),
        privacy_level: int = 0,
    ) -> Optional[int]:
        """Register a companion and return its id from the ``CompanionRegistered`` event."""

        owners = [ensure_address(owner) for owner in co_owners]
        receipt = await self._transact("registerCompanion", profile_cid, owners, privacy_level)
        events = self.contract.events.CompanionRegistered().process_receipt(receipt)
        if not events:
            logger.warning("registerCompanion receipt carried no CompanionRegistered event")
            return None
        return int(events[0]["args"]["companionId"])

    async def record_story(
        self,
        companion_id: int,
        log_cid: str,
        event_type: int,
        *,
        vital_in_grams: Optional[int] = None,
        instance: Optional[FhevmInstance] = None,
    ) -> Any:
        """Record a story, attaching an encrypted vital when one is supplied."""

        if vital_in_grams and vital_in_grams > 0 and instance is not None:
            if self.sender is None:
                raise RuntimeError("a sender is required to encrypt vitals")
            buffer = instance.create_encrypted_input(self.address, self.sender)
            buffer.add64(int(vital_in_grams))
            ciphertext = await buffer.encrypt()
            return await self._transact(
                "recordStoryWithVital",
                companion_id,
                log_cid,
                event_type,
                ciphertext["handles"][0],
                ciphertext["inputProof"],
            )
        return await self._transact("recordStory", companion_id, log_cid, event_type)

    async def get_companion_vital_summary(self, companion_id: int) -> tuple[str, str]:
        sum_handle, count_handle = await self._call("getCompanionVitalSummary", companion_id)
        return handle_hex(sum_handle), handle_hex(count_handle)

    async def get_story_vital_handle(self, story_id: int) -> str:
        return handle_hex(await self._call("getStoryVitalHandle", story_id))


class VitalDecryptor:
    """Decrypts registry vitals with a cached or freshly signed permit."""

    def __init__(
        self,
        registry: NebulaRegistryClient,
        instance: FhevmInstance,
        storage: GenericStringStorage,
        signer: TypedDataSigner,
        *,
        coordinator: Optional[PermitCoordinator] = None,
        duration_days: int = DEFAULT_PERMIT_DURATION_DAYS,
    ) -> None:
        self._registry = registry
        self._instance = instance
        self._storage = storage
        self._signer = signer
        self._coordinator = coordinator
        self._duration_days = duration_days

    @classmethod
    def from_settings(
        cls,
        registry: NebulaRegistryClient,
        instance: FhevmInstance,
        storage: GenericStringStorage,
        signer: TypedDataSigner,
        *,
        settings: Optional[SessionSettings] = None,
        coordinator: Optional[PermitCoordinator] = None,
    ) -> "VitalDecryptor":
        """Build a decryptor whose permits last ``permit_duration_days`` (``FHEVM_PERMIT_DURATION_DAYS``)."""

        settings = settings or SessionSettings.from_env()
        return cls(
            registry,
            instance,
            storage,
            signer,
            coordinator=coordinator,
            duration_days=settings.permit_duration_days,
        )

    async def _permit(self) -> DecryptionPermit:
        return await DecryptionPermit.load_or_create(
            self._storage,
            self._instance,
            [self._registry.address],
            self._signer,
            coordinator=self._coordinator,
            duration_days=self._duration_days,
        )

    async def _decrypt(self, handles: Sequence[str]) -> Dict[str, int]:
        permit = await self._permit()
        contract = self._registry.address
        result = await self._instance.user_decrypt(
            [{"handle": handle, "contractAddress": contract} for handle in handles],
            permit.private_key,
            permit.public_key,
            permit.signature,
            permit.contract_addresses,
            permit.user_address,
            permit.start_timestamp,
            permit.duration_days,
        )
        decrypted = {handle_hex(key): value for key, value in result.items()}
        return {handle: int(decrypted.get(handle) or 0) for handle in handles}

    async def decrypt_companion_orbit(self, companion_id: int) -> VitalOrbit:
        sum_handle, count_handle = await self._registry.get_companion_vital_summary(companion_id)
        values = await self._decrypt([sum_handle, count_handle])
        return VitalOrbit(sum=values[sum_handle], count=values[count_handle])

    async def decrypt_story_vital(self, story_id: int) -> int:
        handle = await self._registry.get_story_vital_handle(story_id)
        values = await self._decrypt([handle])
        return values[handle]
