from __future__ import annotations

import io
import struct
import sys
import zlib
from dataclasses import dataclass
from typing import BinaryIO, Dict, List, Optional, Set, Tuple

from . import tlv
from .codec import Codec
from .constants import (
    CODEC_DEFLATE,
    CODEC_NONE,
    CONTAINER_MAGIC,
    CONTAINER_VERSION,
    REC_SYNC,
    RTYPE_END,
    RTYPE_ENTRY,
)
from .errors import CorruptContainer
from .hashutil import blake2s_16, container_digest
from .pathutil import norm_entry_name


# Container preamble: magic[8], version u16
_PREAMBLE_STRUCT = struct.Struct("<8sH")

# Record header (fixed 20 bytes)
# struct: <4s B B H Q I
#  - sync[4]
#  - rtype u8
#  - codec u8
#  - header_len u16 (bytes after this fixed header up to payload)
#  - payload_len u64
#  - header_crc32 u32 (over fixed header without crc, plus header_ext)
_REC_HDR_STRUCT = struct.Struct("<4sBBHQI")

_KNOWN_CODECS = (CODEC_NONE, CODEC_DEFLATE)


@dataclass
class ContainerEntry:
    name: str
    data: bytes
    filename: Optional[str] = None
    photo_id: Optional[str] = None
    captured_at: Optional[str] = None


@dataclass
class RecordHeader:
    rtype: int
    codec_id: int
    header_ext: bytes
    payload_len: int

    def pack(self) -> bytes:
        if len(self.header_ext) > 0xFFFF:
            raise ValueError("Record header extension too large")
        pre_crc = _REC_HDR_STRUCT.pack(
            REC_SYNC, self.rtype, self.codec_id, len(self.header_ext), self.payload_len, 0
        )
        crc = zlib.crc32(pre_crc[:-4] + self.header_ext)
        return pre_crc[:-4] + struct.pack("<I", crc) + self.header_ext


def write_record(f: BinaryIO, rtype: int, codec_id: int, header_ext: bytes, payload: bytes) -> int:
    hdr_bytes = RecordHeader(rtype=rtype, codec_id=codec_id, header_ext=header_ext, payload_len=len(payload)).pack()
    off = f.tell()
    f.write(hdr_bytes)
    f.write(payload)
    return off


def read_exact(f: BinaryIO, n: int) -> bytes:
    b = f.read(n)
    if len(b) != n:
        raise EOFError("Unexpected EOF")
    return b


def read_record(f: BinaryIO, remaining: int) -> Tuple[int, int, bytes, bytes]:
    fixed = read_exact(f, _REC_HDR_STRUCT.size)
    sync, rtype, codec_id, header_len, payload_len, hdr_crc = _REC_HDR_STRUCT.unpack(fixed)
    if sync != REC_SYNC:
        raise ValueError("Bad record sync")
    if _REC_HDR_STRUCT.size + header_len + payload_len > remaining:
        raise ValueError("Record extends past end of container")
    header_ext = read_exact(f, header_len) if header_len else b""
    if zlib.crc32(fixed[:-4] + header_ext) != hdr_crc:
        raise ValueError("Record header CRC mismatch")
    payload = read_exact(f, payload_len)
    return rtype, codec_id, header_ext, payload


class ContainerWriter:
    """Builds a container in memory: one ENTRY record per entry, then an END record."""

    def __init__(self):
        self.f = io.BytesIO()
        self.f.write(_PREAMBLE_STRUCT.pack(CONTAINER_MAGIC, CONTAINER_VERSION))
        self._names: Set[str] = set()
        self._tags: List[bytes] = []
        self._finished = False

    def add(self, entry: ContainerEntry, codec_id: int = CODEC_NONE) -> int:
        if self._finished:
            raise RuntimeError("Container already finished")
        name = norm_entry_name(entry.name)
        if name in self._names:
            raise ValueError(f"Duplicate container entry: {name}")
        tag16 = blake2s_16(entry.data)
        header_ext = tlv.dumps_entry_header(
            {
                "name": name,
                "size": len(entry.data),
                "tag16": tag16,
                "filename": entry.filename,
                "photo_id": entry.photo_id,
                "captured_at": entry.captured_at,
            }
        )
        off = write_record(self.f, RTYPE_ENTRY, codec_id, header_ext, Codec(codec_id).compress(entry.data))
        self._names.add(name)
        self._tags.append(tag16)
        return off

    def finish(self) -> bytes:
        if not self._finished:
            end = tlv.dumps_container_end(len(self._tags), container_digest(self._tags))
            write_record(self.f, RTYPE_END, CODEC_NONE, end, b"")
            self._finished = True
        return self.f.getvalue()


class ContainerReader:
    """Parses and verifies a complete container held in memory."""

    def __init__(self, data: bytes):
        self.data = data
        self.entries: Dict[str, ContainerEntry] = {}
        self._parse()

    def _parse(self) -> None:
        try:
            self._parse_records()
        except CorruptContainer:
            raise
        except (ValueError, EOFError, UnicodeDecodeError, zlib.error, struct.error) as exc:
            raise CorruptContainer(f"Malformed container: {exc}") from exc

    def _parse_records(self) -> None:
        total = len(self.data)
        f = io.BytesIO(self.data)
        magic, version = _PREAMBLE_STRUCT.unpack(read_exact(f, _PREAMBLE_STRUCT.size))
        if magic != CONTAINER_MAGIC:
            raise CorruptContainer("Bad container magic")
        if version != CONTAINER_VERSION:
            raise CorruptContainer(f"Unsupported container version {version}")
        tags: List[bytes] = []
        while True:
            if f.tell() >= total:
                raise CorruptContainer("Container end record missing")
            rtype, codec_id, header_ext, payload = read_record(f, total - f.tell())
            if rtype == RTYPE_END:
                count, digest = tlv.loads_container_end(header_ext)
                if count != len(tags) or digest != container_digest(tags):
                    raise CorruptContainer("Container end record does not match entries")
                if f.tell() != total:
                    raise CorruptContainer("Trailing data after container end record")
                return
            if rtype != RTYPE_ENTRY:
                raise CorruptContainer(f"Unknown record type {rtype}")
            if codec_id not in _KNOWN_CODECS:
                raise CorruptContainer(f"Unknown codec id {codec_id}")
            meta = tlv.loads_entry_header(header_ext)
            name = norm_entry_name(meta["name"])
            if name != meta["name"]:
                raise CorruptContainer(f"Non-canonical entry name: {meta['name']!r}")
            if name in self.entries:
                raise CorruptContainer(f"Duplicate container entry: {name}")
            if meta["size"] >= sys.maxsize:
                raise CorruptContainer(f"Implausible size {meta['size']} declared for entry {name}")
            raw = Codec(codec_id).decompress(payload, meta["size"])
            if len(raw) != meta["size"]:
                raise CorruptContainer(f"Size mismatch for entry {name}")
            if blake2s_16(raw) != meta["tag16"]:
                raise CorruptContainer(f"Tag mismatch for entry {name}; data corrupted")
            tags.append(meta["tag16"])
            self.entries[name] = ContainerEntry(
                name=name,
                data=raw,
                filename=meta["filename"],
                photo_id=meta["photo_id"],
                captured_at=meta["captured_at"],
            )

    def names(self) -> List[str]:
        return list(self.entries)

    def get(self, name: str) -> Optional[ContainerEntry]:
        return self.entries.get(name)
