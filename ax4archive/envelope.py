from __future__ import annotations

import logging
import struct
import zlib
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

from . import tlv
from .constants import (
    ENVELOPE_MAGIC,
    FORMAT_VERSION,
    KDF_ITERATIONS,
    KDF_PBKDF2_SHA256,
    NONCE_SIZE,
    SALT_SIZE,
    TAG_SIZE,
)
from .encryption import EncryptionContext, EncryptionParams, require_passphrase
from .errors import DecryptionAuthFailure, EnvelopeFormatError

logger = logging.getLogger(__name__)


_ENVELOPE_STRUCT = struct.Struct("<8sHHI16s12sIQI")
# Fields (little endian):
# magic[8], format_version u16, kdf_id u16, kdf_iterations u32,
# salt[16], nonce[12], meta_len u32, ciphertext_len u64,
# header_crc32 u32 (over everything before it plus the metadata block)
# Followed by meta[meta_len] (TLV) and ciphertext[ciphertext_len].


def _utc_timestamp() -> str:
    now = datetime.now(timezone.utc)
    return now.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def _pack_header(
    format_version: int,
    kdf_id: int,
    iterations: int,
    salt: bytes,
    nonce: bytes,
    meta: bytes,
    ciphertext_len: int,
) -> bytes:
    """Fixed header without its CRC field."""
    return _ENVELOPE_STRUCT.pack(
        ENVELOPE_MAGIC,
        format_version,
        kdf_id,
        iterations,
        salt,
        nonce,
        len(meta),
        ciphertext_len,
        0,
    )[:-4]


@dataclass(frozen=True)
class EncryptedEnvelope:
    format_version: int
    created_at: str
    source_survey_id: str
    salt: bytes
    nonce: bytes
    ciphertext: bytes
    kdf_id: int = KDF_PBKDF2_SHA256
    iterations: int = KDF_ITERATIONS

    def _meta(self) -> bytes:
        return tlv.dumps_envelope_meta({"created_at": self.created_at, "source_survey_id": self.source_survey_id})

    def associated_data(self) -> bytes:
        meta = self._meta()
        return _pack_header(
            self.format_version, self.kdf_id, self.iterations, self.salt, self.nonce, meta, len(self.ciphertext)
        ) + meta

    def encryption_params(self) -> EncryptionParams:
        return EncryptionParams(salt=self.salt, kdf_id=self.kdf_id, iterations=self.iterations)

    def to_bytes(self) -> bytes:
        meta = self._meta()
        head = _pack_header(
            self.format_version, self.kdf_id, self.iterations, self.salt, self.nonce, meta, len(self.ciphertext)
        )
        crc = zlib.crc32(head + meta)
        return head + struct.pack("<I", crc) + meta + self.ciphertext

    @classmethod
    def from_bytes(cls, data: bytes) -> "EncryptedEnvelope":
        if len(data) < _ENVELOPE_STRUCT.size:
            raise EnvelopeFormatError("Archive too short")
        (magic, version, kdf_id, iterations, salt, nonce, meta_len, ct_len, hdr_crc) = _ENVELOPE_STRUCT.unpack_from(data)
        if magic != ENVELOPE_MAGIC:
            raise EnvelopeFormatError("Not an encrypted survey archive (bad magic)")
        if version != FORMAT_VERSION:
            raise EnvelopeFormatError(f"Unsupported archive format version {version}")
        if _ENVELOPE_STRUCT.size + meta_len + ct_len != len(data):
            raise EnvelopeFormatError("Archive length does not match header (truncated or trailing data)")
        if ct_len < TAG_SIZE:
            raise EnvelopeFormatError("Ciphertext shorter than authentication tag")
        meta_start = _ENVELOPE_STRUCT.size
        meta = bytes(data[meta_start : meta_start + meta_len])
        if zlib.crc32(bytes(data[: _ENVELOPE_STRUCT.size - 4]) + meta) != hdr_crc:
            raise EnvelopeFormatError("Archive header CRC mismatch")
        try:
            fields = tlv.loads_envelope_meta(meta)
        except (ValueError, UnicodeDecodeError) as exc:
            raise EnvelopeFormatError(f"Archive metadata malformed: {exc}") from exc
        return cls(
            format_version=version,
            created_at=fields["created_at"],
            source_survey_id=fields["source_survey_id"],
            salt=salt,
            nonce=nonce,
            ciphertext=bytes(data[meta_start + meta_len :]),
            kdf_id=kdf_id,
            iterations=iterations,
        )


def seal_envelope(
    packed: bytes,
    passphrase: str,
    source_survey_id: str,
    *,
    created_at: Optional[str] = None,
) -> EncryptedEnvelope:
    """Encrypt container bytes under a fresh salt and nonce."""
    require_passphrase(passphrase)
    ctx = EncryptionContext.create(passphrase)
    params = ctx.export_params()
    nonce = ctx.new_nonce()
    created_at = created_at or _utc_timestamp()
    meta = tlv.dumps_envelope_meta({"created_at": created_at, "source_survey_id": source_survey_id})
    aad = _pack_header(
        FORMAT_VERSION, params.kdf_id, params.iterations, params.salt, nonce, meta, len(packed) + ctx.overhead()
    ) + meta
    ciphertext = ctx.encrypt(nonce, packed, aad=aad)
    return EncryptedEnvelope(
        format_version=FORMAT_VERSION,
        created_at=created_at,
        source_survey_id=source_survey_id,
        salt=params.salt,
        nonce=nonce,
        ciphertext=ciphertext,
        kdf_id=params.kdf_id,
        iterations=params.iterations,
    )


def decrypt_envelope(envelope: EncryptedEnvelope, passphrase: str) -> bytes:
    require_passphrase(passphrase)
    if len(envelope.salt) != SALT_SIZE or len(envelope.nonce) != NONCE_SIZE:
        raise DecryptionAuthFailure()
    try:
        ctx = EncryptionContext.from_params(passphrase, envelope.encryption_params())
    except ValueError:
        raise DecryptionAuthFailure() from None
    return ctx.decrypt(envelope.nonce, envelope.ciphertext, aad=envelope.associated_data())


def parse_for_open(data: bytes) -> EncryptedEnvelope:
    """Parse envelope bytes, reporting any format problem as DecryptionAuthFailure."""
    try:
        return EncryptedEnvelope.from_bytes(data)
    except EnvelopeFormatError as exc:
        logger.debug("Envelope rejected before decryption: %s", exc)
        raise DecryptionAuthFailure() from None


def open_envelope(data: bytes, passphrase: str) -> bytes:
    """Parse and decrypt envelope bytes; returns the packed container bytes."""
    require_passphrase(passphrase)
    return decrypt_envelope(parse_for_open(data), passphrase)


def inspect_envelope(data: bytes) -> EncryptedEnvelope:
    """Read archive metadata without a passphrase."""
    return EncryptedEnvelope.from_bytes(data)
