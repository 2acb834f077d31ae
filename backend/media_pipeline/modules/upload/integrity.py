"""Content hashing for chunks and assembled files.

SHA-256, hex encoded. All functions are pure and safe to call from any
thread.
"""

import hashlib
import hmac
import re
from pathlib import Path
from typing import Union

HASH_ALGORITHM = "sha256"
HEX_DIGEST_LENGTH = 64
_READ_BUFFER = 1024 * 1024

_HEX_DIGEST_RE = re.compile(r"^[0-9a-fA-F]{64}$")


def hash_bytes(data: bytes) -> str:
    """Hex digest of an in-memory buffer."""
    return hashlib.sha256(data).hexdigest()


def hash_file(path: Union[str, Path]) -> str:
    """Hex digest of a file, streamed in fixed-size blocks."""
    digest = hashlib.sha256()
    with open(path, "rb") as f:
        for block in iter(lambda: f.read(_READ_BUFFER), b""):
            digest.update(block)
    return digest.hexdigest()


def is_valid_digest(value: str) -> bool:
    return bool(_HEX_DIGEST_RE.match(value or ""))


def normalize_digest(value: str) -> str:
    return (value or "").strip().lower()


def digests_match(actual: str, expected: str) -> bool:
    """Compare two hex digests case-insensitively in constant time."""
    return hmac.compare_digest(normalize_digest(actual), normalize_digest(expected))
