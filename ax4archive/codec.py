from __future__ import annotations

from typing import Optional

import zlib

from .constants import CODEC_NONE, CODEC_DEFLATE


class Codec:
    def __init__(self, codec_id: int, level: Optional[int] = None):
        self.codec_id = codec_id
        self.level = level

    def compress(self, data: bytes) -> bytes:
        if self.codec_id == CODEC_NONE:
            return data
        if self.codec_id == CODEC_DEFLATE:
            return zlib.compress(data, self.level if self.level is not None else 6)
        # Unknown/unsupported codec: fail fast
        raise RuntimeError(f"unsupported codec id: {self.codec_id}")

    def decompress(self, data: bytes, expected_len: int) -> bytes:
        """Inverse of :meth:`compress`; never inflates past ``expected_len`` bytes."""
        if self.codec_id == CODEC_NONE:
            return data
        if self.codec_id == CODEC_DEFLATE:
            d = zlib.decompressobj()
            raw = d.decompress(data, expected_len + 1)
            if d.unconsumed_tail or not d.eof:
                raise ValueError("deflate stream longer than declared or truncated")
            return raw
        raise RuntimeError(f"unsupported codec id: {self.codec_id}")
