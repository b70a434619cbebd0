from __future__ import annotations


# Magic and version
ENVELOPE_MAGIC = b"AX4ZIP\x00\x00"   # 8 bytes: "AX4ZIP\0\0"
CONTAINER_MAGIC = b"AX4CTR\x00\x00"  # 8 bytes: "AX4CTR\0\0"

FORMAT_VERSION = 1
CONTAINER_VERSION = 1

ARCHIVE_EXTENSION = ".ax4zip"


# Key derivation (fixed by the format; never user-configurable)
KDF_PBKDF2_SHA256 = 1
KDF_ITERATIONS = 100_000

KEY_SIZE = 32    # AES-256
SALT_SIZE = 16
NONCE_SIZE = 12  # GCM
TAG_SIZE = 16


# Container record constants
REC_SYNC = bytes([0xA4, 0x43, 0x54, 0x52])  # 0xA4 'C' 'T' 'R'

RTYPE_ENTRY = 0
RTYPE_END = 1


# Codec IDs (0=none, 1=deflate/zlib)
CODEC_NONE = 0
CODEC_DEFLATE = 1

DOCUMENT_CODEC_ID = CODEC_DEFLATE
PHOTO_CODEC_ID = CODEC_NONE  # JPEG payloads do not shrink


# Entry naming
DOCUMENT_ENTRY = "survey.json"
PHOTO_DIR = "photos"
DEFAULT_PHOTO_EXT = ".jpg"


# Export policy
MIN_PASSPHRASE_LENGTH = 8
DEFAULT_MAX_CONCURRENCY = 8
