"""
ax4archive: encrypted survey archive export and restore.

Features:

- One self-contained ``.ax4zip`` file per survey: record document plus photo blobs.
- PBKDF2-HMAC-SHA256 key derivation and AES-256-GCM sealing; the envelope
  header and metadata are bound in as associated data.
- Tagged container records (BLAKE2s per entry, CRC-checked headers, end digest).
- Schema-validated restore with idempotent upserts through injected stores.

A wrong passphrase and a corrupted file are reported identically.
"""

__version__ = "0.1"

__all__ = [
    "constants",
    "encryption",
    "envelope",
    "container",
    "models",
    "stores",
    "packer",
    "exporter",
    "restore",
]

# Programmatic API: ax4archive.exporter (export_archive/write_archive) and
# ax4archive.restore (import_archive/read_archive) with stores from ax4archive.stores.
