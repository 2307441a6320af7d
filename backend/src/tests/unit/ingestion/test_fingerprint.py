"""Tests for content fingerprints and synthetic source ids."""

import hashlib

import pytest
from hypothesis import given, strategies as st

from filesync.core.exceptions import ConfigurationError
from filesync.ingestion.fingerprint import ContentFingerprinter, synthetic_source_id


def test_sha256_hex_digest() -> None:
    fp = ContentFingerprinter()
    assert fp.fingerprint(b"hello") == hashlib.sha256(b"hello").hexdigest()


def test_empty_bytes_have_a_fingerprint() -> None:
    assert ContentFingerprinter().fingerprint(b"") == hashlib.sha256(b"").hexdigest()


def test_algorithm_name_case_insensitive() -> None:
    assert ContentFingerprinter("MD5").fingerprint(b"x") == hashlib.md5(b"x").hexdigest()


def test_callable() -> None:
    fp = ContentFingerprinter()
    assert fp(b"abc") == fp.fingerprint(b"abc")


@pytest.mark.parametrize("algorithm", ["not-a-hash", "shake_128"])
def test_unusable_algorithms_rejected(algorithm: str) -> None:
    with pytest.raises(ConfigurationError):
        ContentFingerprinter(algorithm)


def test_synthetic_source_id_uses_hash_prefix() -> None:
    assert synthetic_source_id("abc123def4567890") == "local_abc123de"


@given(data=st.binary(max_size=4096))
def test_fingerprint_is_deterministic(data: bytes) -> None:
    assert ContentFingerprinter().fingerprint(data) == ContentFingerprinter().fingerprint(data)


@given(a=st.binary(max_size=256), b=st.binary(max_size=256))
def test_different_bytes_give_different_fingerprints(a: bytes, b: bytes) -> None:
    fp = ContentFingerprinter()
    assert (fp.fingerprint(a) == fp.fingerprint(b)) == (a == b)
