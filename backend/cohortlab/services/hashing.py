"""Cohort hashing.

Maps an identity string to a stable bucket in [0, 100) so that the same user
lands in the same cohort on every call, without persisted state.
"""
import hashlib
from typing import Callable, Dict

SHA256 = "sha256"
LEGACY = "legacy"


def sha256_hash32(value: str) -> int:
    """First 32 bits of the SHA-256 digest of ``value``."""
    digest = hashlib.sha256(value.encode("utf-8")).hexdigest()
    return int(digest[:8], 16)


def legacy_hash32(value: str) -> int:
    """
    Rolling ``h * 31 + c`` hash over UTF-16 code units, wrapped to a signed
    32-bit integer and made non-negative.

    Kept bit-for-bit so cohorts bucketed by older clients stay where they are.

    Example:
        >>> legacy_hash32("hello")
        99162322
    """
    encoded = value.encode("utf-16-le")
    h = 0
    for i in range(0, len(encoded), 2):
        code_unit = encoded[i] | (encoded[i + 1] << 8)
        h = (h * 31 + code_unit) & 0xFFFFFFFF
    if h >= 0x80000000:
        h -= 0x100000000
    return abs(h)


_ALGORITHMS: Dict[str, Callable[[str], int]] = {
    SHA256: sha256_hash32,
    LEGACY: legacy_hash32,
}


class CohortHasher:
    """Deterministic (identity, salt) -> [0, 100) bucketing."""

    def __init__(self, algorithm: str = SHA256):
        if algorithm not in _ALGORITHMS:
            raise ValueError(f"Unknown hash algorithm: {algorithm}")
        self.algorithm = algorithm
        self._hash = _ALGORITHMS[algorithm]

    def hash32(self, identity: str, salt: str = "") -> int:
        return self._hash(f"{identity}{salt}")

    def bucket(self, identity: str, salt: str = "") -> float:
        """Stable value in [0, 100) with two decimals of resolution."""
        return (self.hash32(identity, salt) % 10000) / 100
