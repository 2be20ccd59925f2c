"""
hashing.py — content digests for disk images and extracted files.

Whole-image hashes (embedded in JSON output) and per-file manifest hashes
go through the same function, so a file hashed out of a raw image and the
same file hashed out of its JSON twin always agree.
"""

from __future__ import annotations

import hashlib

DEFAULT_ALGORITHM = "md5"


def get_hash(data: bytes | bytearray | memoryview | list[int],
             algorithm: str = DEFAULT_ALGORITHM) -> str:
    """Hex digest of *data* (raw bytes, or a list of byte values)."""
    if isinstance(data, list):
        data = bytes(data)
    return hashlib.new(algorithm, bytes(data)).hexdigest()
