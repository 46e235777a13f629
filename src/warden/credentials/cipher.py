"""Symmetric encryption for credential values at rest.

Values are encrypted with AES-256-CBC under a key derived from the local
master key with scrypt and a fixed salt. Each call uses a fresh 16-byte IV.
The serialized form is ``{iv_hex}:{cipher_hex}``.
"""

from __future__ import annotations

import os

from cryptography.hazmat.primitives import padding
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes
from cryptography.hazmat.primitives.kdf.scrypt import Scrypt

from warden.errors import DecryptionError

KDF_SALT = b"salt"
KDF_LENGTH = 32
KDF_N = 2**14
KDF_R = 8
KDF_P = 1

IV_LENGTH = 16
BLOCK_SIZE_BITS = 128


def derive_key(master_key: str) -> bytes:
    """Derive the 32-byte cipher key from the stored master key.

    This takes tens of milliseconds; derive once and reuse the result.
    """
    kdf = Scrypt(salt=KDF_SALT, length=KDF_LENGTH, n=KDF_N, r=KDF_R, p=KDF_P)
    return kdf.derive(master_key.encode("utf-8"))


class CredentialCipher:
    """Encrypts and decrypts credential strings with a derived key."""

    def __init__(self, key: bytes):
        if len(key) != KDF_LENGTH:
            raise ValueError(f"Cipher key must be {KDF_LENGTH} bytes")
        self._key = key

    @classmethod
    def from_master_key(cls, master_key: str) -> CredentialCipher:
        return cls(derive_key(master_key))

    def encrypt(self, plaintext: str) -> str:
        iv = os.urandom(IV_LENGTH)

        padder = padding.PKCS7(BLOCK_SIZE_BITS).padder()
        padded = padder.update(plaintext.encode("utf-8")) + padder.finalize()

        encryptor = Cipher(algorithms.AES(self._key), modes.CBC(iv)).encryptor()
        ciphertext = encryptor.update(padded) + encryptor.finalize()

        return f"{iv.hex()}:{ciphertext.hex()}"

    def decrypt(self, token: str) -> str:
        """Decrypt an ``iv:cipher`` string.

        Raises:
            DecryptionError: If the format is wrong or the ciphertext is invalid
        """
        parts = token.split(":")
        if len(parts) != 2:
            raise DecryptionError("Legacy or malformed credential format")

        iv_hex, cipher_hex = parts
        try:
            iv = bytes.fromhex(iv_hex)
            ciphertext = bytes.fromhex(cipher_hex)
        except ValueError as e:
            raise DecryptionError(f"Credential is not hex encoded: {e}") from e

        if len(iv) != IV_LENGTH:
            raise DecryptionError(f"Invalid IV length: {len(iv)}")
        if not ciphertext or len(ciphertext) % (BLOCK_SIZE_BITS // 8):
            raise DecryptionError("Ciphertext is not a whole number of blocks")

        try:
            decryptor = Cipher(algorithms.AES(self._key), modes.CBC(iv)).decryptor()
            padded = decryptor.update(ciphertext) + decryptor.finalize()

            unpadder = padding.PKCS7(BLOCK_SIZE_BITS).unpadder()
            plaintext = unpadder.update(padded) + unpadder.finalize()
            return plaintext.decode("utf-8")
        except (ValueError, UnicodeDecodeError) as e:
            raise DecryptionError(f"Failed to decrypt credential: {e}") from e
