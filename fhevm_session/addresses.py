"""Address helpers built on :mod:`web3`."""

from __future__ import annotations

from typing import Iterable, List

from web3 import Web3

from .errors import InvalidAddressError

ZERO_ADDRESS = "0x" + "0" * 40


def ensure_address(value: object) -> str:
    """Return ``value`` as a checksummed address or raise :class:`InvalidAddressError`."""

    if not isinstance(value, str) or not Web3.is_address(value):
        raise InvalidAddressError(value)
    return Web3.to_checksum_address(value)


def sorted_unique_addresses(values: Iterable[str]) -> List[str]:
    """Checksum, deduplicate and sort contract addresses for hashing."""

    unique = {ensure_address(value) for value in values}
    return sorted(unique)
