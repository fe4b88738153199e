"""Encryption helpers for securing stored broker credentials."""
from __future__ import annotations

import hashlib
import os
from typing import Final, Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

__all__ = [
    "DecryptionError",
    "PasswordCipher",
    "decrypt",
    "derive_key",
    "encrypt",
    "mask_email",
]


_NONCE_SIZE: Final[int] = 12
_KEY_SIZE: Final[int] = 32
_TAG_SIZE: Final[int] = 16
_SCHEME_PREFIX: Final[str] = "v1:"

# Layout written by the previous web client: hex(iv[16] + tag[16] + ciphertext).
_LEGACY_IV_SIZE: Final[int] = 16


class DecryptionError(ValueError):
    """Raised when a stored ciphertext cannot be reversed."""


def derive_key(secret: str) -> bytes:
    """Return the 32-byte AES key for *secret* (any length)."""

    if not secret:
        raise ValueError("An encryption secret must be configured")
    return hashlib.sha256(secret.encode("utf-8")).digest()


def _normalise_key(key: bytes) -> bytes:
    if len(key) != _KEY_SIZE:
        raise ValueError("AES-256-GCM requires a 32-byte key")
    return key


def encrypt(
    plaintext: bytes | str,
    *,
    key: bytes,
    associated_data: Optional[bytes] = None,
) -> bytes:
    """Encrypt *plaintext* with AES-256-GCM returning nonce + ciphertext + tag."""

    material = plaintext.encode("utf-8") if isinstance(plaintext, str) else bytes(plaintext)
    nonce = os.urandom(_NONCE_SIZE)
    cipher = AESGCM(_normalise_key(key))
    encrypted = cipher.encrypt(nonce, material, associated_data)
    return nonce + encrypted


def decrypt(
    payload: bytes,
    *,
    key: bytes,
    associated_data: Optional[bytes] = None,
) -> bytes:
    """Decrypt *payload* produced by :func:`encrypt`."""

    if len(payload) < _NONCE_SIZE + _TAG_SIZE:
        raise DecryptionError("Encrypted payload is too short")
    nonce, ciphertext = payload[:_NONCE_SIZE], payload[_NONCE_SIZE:]
    cipher = AESGCM(_normalise_key(key))
    try:
        return cipher.decrypt(nonce, ciphertext, associated_data)
    except InvalidTag as exc:
        raise DecryptionError("Ciphertext failed integrity verification") from exc


def _decrypt_legacy(raw: bytes, key: bytes) -> bytes:
    if len(raw) < _LEGACY_IV_SIZE + _TAG_SIZE:
        raise DecryptionError("Encrypted payload is too short")
    iv = raw[:_LEGACY_IV_SIZE]
    tag = raw[_LEGACY_IV_SIZE : _LEGACY_IV_SIZE + _TAG_SIZE]
    ciphertext = raw[_LEGACY_IV_SIZE + _TAG_SIZE :]
    try:
        return AESGCM(key).decrypt(iv, ciphertext + tag, None)
    except InvalidTag as exc:
        raise DecryptionError("Ciphertext failed integrity verification") from exc


class PasswordCipher:
    """Reversible, authenticated encryption of broker passwords.

    Ciphertexts are text so they can live in an ordinary string column. The
    current format is ``v1:`` followed by hex encoded nonce, ciphertext and
    GCM tag. Unprefixed values are read as the legacy hex layout so rows
    linked before the prefix existed keep refreshing until they are re-saved.
    """

    def __init__(self, secret: str) -> None:
        self._key = derive_key(secret)

    def encrypt(self, plaintext: str) -> str:
        return _SCHEME_PREFIX + encrypt(plaintext, key=self._key).hex()

    def decrypt(self, ciphertext: str) -> str:
        if not isinstance(ciphertext, str) or not ciphertext:
            raise DecryptionError("Ciphertext is empty")

        token = ciphertext.strip()
        is_current = token.startswith(_SCHEME_PREFIX)
        if is_current:
            token = token[len(_SCHEME_PREFIX) :]

        try:
            raw = bytes.fromhex(token)
        except ValueError as exc:
            raise DecryptionError("Ciphertext is not valid hex") from exc

        plaintext = decrypt(raw, key=self._key) if is_current else _decrypt_legacy(raw, self._key)
        try:
            return plaintext.decode("utf-8")
        except UnicodeDecodeError as exc:  # pragma: no cover - tag already verified
            raise DecryptionError("Decrypted payload is not UTF-8") from exc


def mask_email(value: str | None) -> str:
    """Return a partially hidden e-mail address for diagnostics output."""

    token = (value or "").strip()
    if not token:
        return ""
    local, sep, domain = token.partition("@")
    if len(local) <= 2:
        masked = local[:1] + "…"
    else:
        masked = f"{local[:2]}…{local[-1:]}"
    return f"{masked}{sep}{domain}"
