"""Content fingerprints used as deduplication keys."""

import hashlib

from ..core.exceptions import ConfigurationError

SYNTHETIC_SOURCE_PREFIX = "local_"


class ContentFingerprinter:
    """Hex digest of a file's bytes.

    Only a dedup key: same bytes give the same fingerprint, and different
    bytes collide with negligible probability. Not an integrity guarantee.
    """

    def __init__(self, algorithm: str = "sha256") -> None:
        algorithm = algorithm.lower()
        if algorithm not in hashlib.algorithms_available:
            raise ConfigurationError(f"unknown hash algorithm '{algorithm}'")
        # Variable-length digests need an explicit length; keep to fixed ones
        if algorithm.startswith("shake_"):
            raise ConfigurationError(f"hash algorithm '{algorithm}' has no fixed digest length")
        self.algorithm = algorithm

    def fingerprint(self, data: bytes) -> str:
        return hashlib.new(self.algorithm, data).hexdigest()

    __call__ = fingerprint


def synthetic_source_id(content_hash: str) -> str:
    """Source id for content that arrived without an origin identifier."""
    return f"{SYNTHETIC_SOURCE_PREFIX}{content_hash[:8]}"
