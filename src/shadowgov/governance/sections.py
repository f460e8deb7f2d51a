"""
Section assignment and timing jitter.

A voter's section and multiplier on a poll are a pure function of the key
``(poll_id, voter_id, identity_mode)``: the key is run through HMAC-SHA256
and two non-overlapping 8-byte slices of the digest supply the section index
and the multiplier fraction, so the two draws are uncorrelated.

Jitter is the opposite: fresh randomness per ballot, used only for the
displayed timestamp.
"""

import logging

logger = logging.getLogger(__name__)
import secrets
from typing import Union

from ..crypto.hashing import SHA256Hasher
from .core import IdentityMode, SectionDraw

SLICE_BYTES = 8
SLICE_SPACE = 2 ** (8 * SLICE_BYTES)


class SectionAssigner:
    """Deterministic section and multiplier draws."""

    def __init__(self, secret: Union[str, bytes], section_count: int = 7):
        self.secret = secret
        self.section_count = section_count

    def draw(
        self,
        poll_id: str,
        voter_id: str,
        identity_mode: IdentityMode,
        multiplier_min: float,
        multiplier_max: float,
    ) -> SectionDraw:
        """Derive the section and multiplier for one key.

        The multiplier is a linear map of the fraction slice onto
        ``[multiplier_min, multiplier_max]``, rounded to two decimals.
        """
        digest = SHA256Hasher.hmac_sha256(
            self.secret,
            SHA256Hasher.hash_list([poll_id, voter_id, identity_mode.value]).value,
        )
        section_index = digest.slice_int(0, SLICE_BYTES) % self.section_count
        fraction = digest.slice_int(SLICE_BYTES, SLICE_BYTES) / SLICE_SPACE

        multiplier = round(multiplier_min + fraction * (multiplier_max - multiplier_min), 2)
        multiplier = min(max(multiplier, multiplier_min), multiplier_max)
        return SectionDraw(section_index=section_index, multiplier=multiplier)


def generate_jitter(max_seconds: int) -> int:
    """Uniform jitter in ``[0, max_seconds]`` from a CSPRNG."""
    if max_seconds <= 0:
        return 0
    return secrets.randbelow(int(max_seconds) + 1)


def jittered_timestamp(cast_at: float, closes_at: float, max_seconds: int) -> float:
    """Displayed timestamp for a ballot, never later than the poll's close."""
    return min(cast_at + generate_jitter(max_seconds), closes_at)
