from __future__ import annotations

"""
Minimal TLV encoder/decoder for envelope metadata and container record headers.

Encoding
- TLV: varint(tag) || varint(length) || payload
- Integers: unsigned LEB128 varint
- Bytes: raw payload (length provided by TLV len)
- Strings: UTF-8 bytes (length provided by TLV len)

Envelope metadata (follows the fixed envelope header)
- 1: created_at (utf8, ISO-8601 UTC)
- 2: source_survey_id (utf8)

Container entry header (header_ext of an ENTRY record)
- 1: name (utf8)
- 2: size (varint, uncompressed)
- 3: blake2s_16 (bytes[16], over uncompressed bytes)
- 4: filename (utf8, optional; original photo filename)
- 5: photo_id (utf8, optional)
- 6: captured_at (utf8, optional)

Container end (header_ext of the END record)
- 1: entry_count (varint)
- 2: digest (bytes[32], blake2s over every entry tag in order)

Unknown tags are skipped so newer writers can add optional fields.
"""

from typing import Dict, List, Optional, Tuple


def _varint_encode(n: int) -> bytes:
    if n < 0:
        raise ValueError("varint: negative not supported")
    out = bytearray()
    while True:
        b = n & 0x7F
        n >>= 7
        if n:
            out.append(b | 0x80)
        else:
            out.append(b)
            break
    return bytes(out)


def _varint_decode(data: bytes, pos: int) -> Tuple[int, int]:
    shift = 0
    result = 0
    while True:
        if pos >= len(data):
            raise ValueError("varint: truncated")
        b = data[pos]
        pos += 1
        result |= (b & 0x7F) << shift
        if not (b & 0x80):
            return result, pos
        shift += 7
        if shift > 63:
            raise ValueError("varint: too large")


def _tlv(tag: int, payload: bytes) -> bytes:
    return _varint_encode(tag) + _varint_encode(len(payload)) + payload


def _encode_str(s: str) -> bytes:
    return s.encode("utf-8")


def _decode_str(b: bytes) -> str:
    return b.decode("utf-8")


def _iter_tlvs(data: bytes) -> List[Tuple[int, bytes]]:
    items: List[Tuple[int, bytes]] = []
    pos = 0
    n = len(data)
    while pos < n:
        tag, pos = _varint_decode(data, pos)
        ln, pos = _varint_decode(data, pos)
        if pos + ln > n:
            raise ValueError("TLV length out of range")
        items.append((tag, data[pos : pos + ln]))
        pos += ln
    return items


def _decode_varint_field(b: bytes) -> int:
    val, pos = _varint_decode(b, 0)
    if pos != len(b):
        raise ValueError("varint: trailing bytes in field")
    return val


# -------- Envelope metadata --------

def dumps_envelope_meta(meta: Dict) -> bytes:
    out = bytearray()
    out += _tlv(1, _encode_str(str(meta["created_at"])))
    out += _tlv(2, _encode_str(str(meta["source_survey_id"])))
    return bytes(out)


def loads_envelope_meta(data: bytes) -> Dict:
    meta: Dict = {}
    for tag, payload in _iter_tlvs(data):
        if tag == 1:
            meta["created_at"] = _decode_str(payload)
        elif tag == 2:
            meta["source_survey_id"] = _decode_str(payload)
    if "created_at" not in meta or "source_survey_id" not in meta:
        raise ValueError("Envelope metadata incomplete")
    return meta


# -------- Container entries --------

def dumps_entry_header(ent: Dict) -> bytes:
    out = bytearray()
    out += _tlv(1, _encode_str(str(ent["name"])))
    out += _tlv(2, _varint_encode(int(ent["size"])))
    tag16 = bytes(ent["tag16"])
    if len(tag16) != 16:
        raise ValueError("tag16 must be 16 bytes")
    out += _tlv(3, tag16)
    filename: Optional[str] = ent.get("filename")
    if filename:
        out += _tlv(4, _encode_str(filename))
    photo_id: Optional[str] = ent.get("photo_id")
    if photo_id:
        out += _tlv(5, _encode_str(photo_id))
    captured_at: Optional[str] = ent.get("captured_at")
    if captured_at:
        out += _tlv(6, _encode_str(captured_at))
    return bytes(out)


def loads_entry_header(data: bytes) -> Dict:
    ent: Dict = {"filename": None, "photo_id": None, "captured_at": None}
    for tag, payload in _iter_tlvs(data):
        if tag == 1:
            ent["name"] = _decode_str(payload)
        elif tag == 2:
            ent["size"] = _decode_varint_field(payload)
        elif tag == 3:
            if len(payload) != 16:
                raise ValueError("Entry tag must be 16 bytes")
            ent["tag16"] = bytes(payload)
        elif tag == 4:
            ent["filename"] = _decode_str(payload)
        elif tag == 5:
            ent["photo_id"] = _decode_str(payload)
        elif tag == 6:
            ent["captured_at"] = _decode_str(payload)
    for required in ("name", "size", "tag16"):
        if required not in ent:
            raise ValueError(f"Entry header missing {required}")
    return ent


def dumps_container_end(entry_count: int, digest32: bytes) -> bytes:
    if len(digest32) != 32:
        raise ValueError("digest must be 32 bytes")
    return _tlv(1, _varint_encode(entry_count)) + _tlv(2, digest32)


def loads_container_end(data: bytes) -> Tuple[int, bytes]:
    count: Optional[int] = None
    digest: Optional[bytes] = None
    for tag, payload in _iter_tlvs(data):
        if tag == 1:
            count = _decode_varint_field(payload)
        elif tag == 2:
            if len(payload) != 32:
                raise ValueError("Container digest must be 32 bytes")
            digest = bytes(payload)
    if count is None or digest is None:
        raise ValueError("Container end record incomplete")
    return count, digest
