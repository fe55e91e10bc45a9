"""Deterministic test content identifiers."""

import struct
from typing import List

from core.cid import CID

DEFAULT_BASE = "dhttest"


def make_test_cid(index: int, base: str = DEFAULT_BASE) -> CID:
    """CIDv1 (raw) of sha2-256(base || uint64 little-endian index)."""
    if index < 0:
        raise ValueError(f"test CID index must be non-negative, got {index}")
    return CID.raw_sha256(base.encode("utf-8") + struct.pack("<Q", index))


def generate_test_cids(count: int, base: str = DEFAULT_BASE) -> List[CID]:
    """
    Generate ``count`` test CIDs.

    The same (count, base) always yields the same list, in any process,
    so the harness and an external driver agree without coordination.
    """
    if count < 0:
        raise ValueError(f"count must be non-negative, got {count}")
    return [make_test_cid(i, base) for i in range(count)]
