"""
Hash functions and utilities for the governance engine.

Implements SHA-256 and HMAC-SHA256 on top of ``cryptography`` and exposes the
digest as an immutable value that can be sliced into independent integers.
"""

import logging

logger = logging.getLogger(__name__)
from dataclasses import dataclass
from typing import List, Union

from cryptography.hazmat.primitives import hashes, hmac


@dataclass(frozen=True)
class Hash:
    """Immutable hash value with comparison and string representation."""

    value: bytes

    def __post_init__(self) -> None:
        if len(self.value) != 32:
            raise ValueError("Hash must be exactly 32 bytes")

    def __str__(self) -> str:
        return self.value.hex()

    def __repr__(self) -> str:
        return f"Hash('{self.value.hex()}')"

    @classmethod
    def from_hex(cls, hex_string: str) -> "Hash":
        """Create a Hash from a hexadecimal string."""
        return cls(bytes.fromhex(hex_string))

    def to_hex(self) -> str:
        """Convert hash to hexadecimal string."""
        return self.value.hex()

    def slice_int(self, start: int, length: int) -> int:
        """
        Interpret ``length`` bytes starting at ``start`` as a big-endian integer.

        Non-overlapping slices of the same digest behave as independent draws.
        """
        if start < 0 or length <= 0 or start + length > len(self.value):
            raise ValueError(f"Invalid slice [{start}:{start + length}] of 32-byte hash")
        return int.from_bytes(self.value[start : start + length], byteorder="big")


def _to_bytes(data: Union[bytes, str]) -> bytes:
    if isinstance(data, str):
        return data.encode("utf-8")
    return data


class SHA256Hasher:
    """SHA-256 hasher with keyed and list helpers."""

    @staticmethod
    def hash(data: Union[bytes, str]) -> Hash:
        """
        Hash data using SHA-256.

        Args:
            data: Data to hash (bytes or string)

        Returns:
            Hash object containing the SHA-256 hash
        """
        digest = hashes.Hash(hashes.SHA256())
        digest.update(_to_bytes(data))
        return Hash(digest.finalize())

    @staticmethod
    def hash_list(items: List[Union[bytes, str]], separator: bytes = b"\x1f") -> Hash:
        """
        Hash a list of items joined by a unit separator.

        The separator keeps ``["ab", "c"]`` and ``["a", "bc"]`` distinct.
        """
        return SHA256Hasher.hash(separator.join(_to_bytes(item) for item in items))

    @staticmethod
    def hmac_sha256(key: Union[bytes, str], data: Union[bytes, str]) -> Hash:
        """
        HMAC-SHA256 for keyed hashing.

        Args:
            key: HMAC key
            data: Data to hash

        Returns:
            Hash object containing the HMAC-SHA256 tag
        """
        mac = hmac.HMAC(_to_bytes(key), hashes.SHA256())
        mac.update(_to_bytes(data))
        return Hash(mac.finalize())
