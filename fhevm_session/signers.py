"""Signer interfaces for decryption permits."""

from __future__ import annotations

import asyncio
from typing import Any, Dict, List, Mapping, Protocol

from eth_account import Account
from eth_account.signers.local import LocalAccount

TypedDataTypes = Mapping[str, List[Dict[str, str]]]


def normalize_typed_message(types: TypedDataTypes, primary_type: str, message: Mapping[str, Any]) -> Dict[str, Any]:
    """Coerce decimal strings in ``uint``/``int`` fields to ints for :mod:`eth_account`."""

    normalized = dict(message)
    for field in types.get(primary_type, []):
        name, kind = field.get("name"), field.get("type", "")
        value = normalized.get(name)
        if kind.startswith(("uint", "int")) and not kind.endswith("]") and isinstance(value, str):
            text = value.strip()
            normalized[name] = int(text, 16) if text.lower().startswith("0x") else int(text)
    return normalized


class TypedDataSigner(Protocol):
    """Anything able to report its address and sign EIP-712 payloads."""

    async def get_address(self) -> str:  # pragma: no cover - protocol
        """Return the signing wallet address."""

    async def sign_typed_data(
        self,
        domain: Mapping[str, Any],
        types: TypedDataTypes,
        message: Mapping[str, Any],
    ) -> str:  # pragma: no cover - protocol
        """Sign the typed-data message and return a 0x-prefixed signature."""


class LocalAccountSigner:
    """Signs with a private key held in process via :mod:`eth_account`."""

    def __init__(self, private_key: str | bytes) -> None:
        self._account: LocalAccount = Account.from_key(private_key)

    @classmethod
    def create(cls) -> "LocalAccountSigner":
        return cls(Account.create().key)

    @property
    def address(self) -> str:
        return self._account.address

    async def get_address(self) -> str:
        return self._account.address

    async def sign_typed_data(
        self,
        domain: Mapping[str, Any],
        types: TypedDataTypes,
        message: Mapping[str, Any],
    ) -> str:
        message_types = {name: list(fields) for name, fields in types.items() if name != "EIP712Domain"}
        primary_type = next(iter(message_types))
        signed = self._account.sign_typed_data(
            domain_data=dict(domain),
            message_types=message_types,
            message_data=normalize_typed_message(message_types, primary_type, message),
        )
        # mimic a wallet round trip
        await asyncio.sleep(0)
        signature = signed.signature.hex()
        return signature if signature.startswith("0x") else f"0x{signature}"
