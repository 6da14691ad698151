from __future__ import annotations

import hashlib
from dataclasses import dataclass

SIMILARITY_BITS = 64


class FingerprintUnavailable(ValueError):
    pass


@dataclass(frozen=True)
class Fingerprint:
    exact_hash: str
    similarity_hash: str
    byte_size: int


def fingerprint(body: bytes) -> Fingerprint:
    """
    Exact and coarse similarity digests of an uploaded screenshot.

    The exact hash is SHA-256 over the full content. The similarity hash is a
    64-bit average hash of the byte stream: content is split into 64 equal
    buckets and each bit records whether that bucket's mean byte value is at or
    above the mean of all buckets. Re-encodes that only perturb a few bytes keep
    the same bits; the hash is advisory and never authoritative on its own.
    """
    if not isinstance(body, (bytes, bytearray, memoryview)):
        raise FingerprintUnavailable(f"Unreadable upload body ({type(body).__name__})")
    data = bytes(body)
    if not data:
        raise FingerprintUnavailable("Empty upload body")

    return Fingerprint(
        exact_hash=hashlib.sha256(data).hexdigest(),
        similarity_hash=_average_hash(data),
        byte_size=len(data),
    )


def _average_hash(data: bytes) -> str:
    n = len(data)
    means: list[float] = []
    for bucket in range(SIMILARITY_BITS):
        start = bucket * n // SIMILARITY_BITS
        end = max(start + 1, (bucket + 1) * n // SIMILARITY_BITS)
        chunk = data[start:end]
        means.append(sum(chunk) / len(chunk))

    overall = sum(means) / len(means)
    value = 0
    for bucket, mean in enumerate(means):
        if mean >= overall:
            value |= 1 << (SIMILARITY_BITS - 1 - bucket)
    return f"{value:016x}"


def hamming_distance(hash_a: str, hash_b: str) -> int:
    """Bit distance between two similarity hashes; unparsable input is maximally far."""
    if not hash_a or not hash_b:
        return SIMILARITY_BITS
    try:
        return bin(int(hash_a, 16) ^ int(hash_b, 16)).count("1")
    except ValueError:
        return SIMILARITY_BITS


def within_size_tolerance(size_a: int, size_b: int, tolerance: float) -> bool:
    if size_a <= 0 or size_b <= 0:
        return False
    return abs(size_a - size_b) <= tolerance * max(size_a, size_b)
