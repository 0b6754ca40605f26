"""
Content fingerprints for deduplication. Only the bytes count: filename,
placement and metadata never enter the digest.
"""

import hashlib
from typing import BinaryIO, Union

_BLOCK_SIZE = 1024 * 1024


def content_hash(data: Union[bytes, bytearray, memoryview, BinaryIO]) -> str:
    """SHA-256 hex digest of raw bytes or of a binary file object read to EOF."""
    digest = hashlib.sha256()
    if isinstance(data, (bytes, bytearray, memoryview)):
        digest.update(data)
        return digest.hexdigest()

    for block in iter(lambda: data.read(_BLOCK_SIZE), b""):
        digest.update(block)
    return digest.hexdigest()
