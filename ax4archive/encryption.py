from __future__ import annotations

"""Passphrase key derivation and AES-256-GCM sealing backed by PyCryptodomex.

Keys come from PBKDF2-HMAC-SHA256 with a fixed iteration count so that an
archive written on one device opens on any other. Every encryption uses a
fresh random 12-byte nonce issued by the context; a nonce can be consumed
once and only once.
"""

from dataclasses import dataclass
from typing import Optional, Set

from Cryptodome.Cipher import AES
from Cryptodome.Hash import SHA256
from Cryptodome.Protocol.KDF import PBKDF2
from Cryptodome.Random import get_random_bytes

from .constants import (
    KDF_ITERATIONS,
    KDF_PBKDF2_SHA256,
    KEY_SIZE,
    NONCE_SIZE,
    SALT_SIZE,
    TAG_SIZE,
)
from .errors import DecryptionAuthFailure, MissingPassphrase


@dataclass(frozen=True)
class EncryptionParams:
    salt: bytes
    kdf_id: int = KDF_PBKDF2_SHA256
    iterations: int = KDF_ITERATIONS


def require_passphrase(passphrase: Optional[str]) -> str:
    """Return ``passphrase`` unchanged, raising MissingPassphrase if it is empty or absent."""
    if passphrase is None or passphrase == "":
        raise MissingPassphrase()
    if not isinstance(passphrase, str):
        raise TypeError("passphrase must be a str")
    return passphrase


def derive_key(passphrase: str, salt: bytes, iterations: int = KDF_ITERATIONS) -> bytes:
    """Derive a 256-bit key from ``passphrase`` and a 16-byte ``salt``.

    Identical inputs always produce the identical key.
    """
    require_passphrase(passphrase)
    if len(salt) != SALT_SIZE:
        raise ValueError(f"salt must be {SALT_SIZE} bytes")
    return PBKDF2(
        passphrase.encode("utf-8"),
        salt,
        dkLen=KEY_SIZE,
        count=iterations,
        hmac_hash_module=SHA256,
    )


class EncryptionContext:
    def __init__(self, key: bytes, params: EncryptionParams):
        if len(key) != KEY_SIZE:
            raise ValueError("Key must be 32 bytes for AES-256-GCM")
        self.key = key
        self.params = params
        self._issued: Set[bytes] = set()
        self._consumed: Set[bytes] = set()

    @classmethod
    def create(cls, passphrase: str) -> "EncryptionContext":
        salt = get_random_bytes(SALT_SIZE)
        params = EncryptionParams(salt=salt)
        return cls(derive_key(passphrase, salt, params.iterations), params)

    @classmethod
    def from_params(cls, passphrase: str, params: EncryptionParams) -> "EncryptionContext":
        require_passphrase(passphrase)
        if params.kdf_id != KDF_PBKDF2_SHA256 or params.iterations != KDF_ITERATIONS:
            raise ValueError("Unsupported KDF parameters in archive")
        return cls(derive_key(passphrase, params.salt, params.iterations), params)

    def new_nonce(self) -> bytes:
        nonce = get_random_bytes(NONCE_SIZE)
        while nonce in self._issued:
            nonce = get_random_bytes(NONCE_SIZE)
        self._issued.add(nonce)
        return nonce

    def encrypt(self, nonce: bytes, plaintext: bytes, *, aad: bytes = b"") -> bytes:
        """Encrypt and authenticate ``plaintext``; returns ciphertext || tag.

        ``nonce`` must come from :meth:`new_nonce` and is spent by this call.
        """
        if nonce not in self._issued or nonce in self._consumed:
            raise ValueError("Nonce was not issued by this context or has already been used")
        self._consumed.add(nonce)
        cipher = AES.new(self.key, AES.MODE_GCM, nonce=nonce, mac_len=TAG_SIZE)
        if aad:
            cipher.update(aad)
        ciphertext, tag = cipher.encrypt_and_digest(plaintext)
        return ciphertext + tag

    def decrypt(self, nonce: bytes, payload: bytes, *, aad: bytes = b"") -> bytes:
        if len(nonce) != NONCE_SIZE or len(payload) < TAG_SIZE:
            raise DecryptionAuthFailure()
        cipher = AES.new(self.key, AES.MODE_GCM, nonce=nonce, mac_len=TAG_SIZE)
        if aad:
            cipher.update(aad)
        try:
            return cipher.decrypt_and_verify(payload[:-TAG_SIZE], payload[-TAG_SIZE:])
        except ValueError:
            raise DecryptionAuthFailure() from None

    def overhead(self) -> int:
        return TAG_SIZE

    def export_params(self) -> EncryptionParams:
        return self.params

