from __future__ import annotations

import hashlib

import pytest

from farecheck.modules.uploads.fingerprint import (
    FingerprintUnavailable,
    fingerprint,
    hamming_distance,
    within_size_tolerance,
)


def test_fingerprint_is_deterministic(screenshot_bytes):
    body = screenshot_bytes("x")
    a = fingerprint(body)
    b = fingerprint(bytes(body))
    assert a == b
    assert a.exact_hash == hashlib.sha256(body).hexdigest()
    assert a.byte_size == len(body)
    assert len(a.similarity_hash) == 16


def test_single_byte_change_keeps_similarity_hash_but_not_exact_hash():
    original = b"\x00" * 5000 + b"\xff" * 5000
    reencoded = b"\x00" * 4999 + b"\x01" + b"\xff" * 5000

    a = fingerprint(original)
    b = fingerprint(reencoded)
    assert a.exact_hash != b.exact_hash
    assert a.similarity_hash == b.similarity_hash
    assert hamming_distance(a.similarity_hash, b.similarity_hash) == 0


def test_unrelated_content_has_distant_similarity_hash():
    a = fingerprint(b"\x00" * 5000 + b"\xff" * 5000)
    b = fingerprint(b"\xff" * 5000 + b"\x00" * 5000)
    assert hamming_distance(a.similarity_hash, b.similarity_hash) == 64


@pytest.mark.parametrize("body", [b"", None, "not bytes"])
def test_fingerprint_rejects_unreadable_bodies(body):
    with pytest.raises(FingerprintUnavailable):
        fingerprint(body)


def test_hamming_distance_treats_garbage_as_maximally_far():
    assert hamming_distance("", "00") == 64
    assert hamming_distance("zz", "00") == 64


def test_within_size_tolerance():
    assert within_size_tolerance(1000, 1019, 0.02)
    assert not within_size_tolerance(1000, 1100, 0.02)
    assert not within_size_tolerance(0, 0, 0.02)
