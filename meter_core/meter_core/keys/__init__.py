"""API key generation and hashing."""

from meter_core.keys.hasher import (
    GeneratedKey,
    HashAlgorithmUnavailable,
    KeyHasher,
    extract_prefix,
)

__all__ = [
    "GeneratedKey",
    "HashAlgorithmUnavailable",
    "KeyHasher",
    "extract_prefix",
]
