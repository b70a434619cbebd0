from __future__ import annotations

import hashlib
from typing import Iterable


def blake2s_16(data: bytes) -> bytes:
    return hashlib.blake2s(data, digest_size=16).digest()


def container_digest(tags: Iterable[bytes]) -> bytes:
    """Digest over entry tags in record order.

    Domain-separated so it cannot be confused with a tag over raw entry bytes.
    """
    h = hashlib.blake2s(b"AX4_CTR\x00", digest_size=32)
    for tag16 in tags:
        h.update(tag16)
    return h.digest()
