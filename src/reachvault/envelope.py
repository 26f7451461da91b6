"""
Envelope Cipher — DEK/KEK wrapping and payload encryption.

Stateless functions over bytes and keys. Nothing here touches disk or
the network, and nothing here logs key material or plaintext.

Every sealed blob has the same layout:

    nonce (24 bytes) || XChaCha20-Poly1305 ciphertext || tag (16 bytes)

A fresh random nonce is drawn for every call and every payload gets a
fresh random DEK, so there is no nonce-counter state to share between
threads or devices.

Also hosts the key-derivation primitives the other components build
on: HKDF-SHA256, Argon2id and X25519.
"""

from __future__ import annotations

import base64
import binascii
import secrets
from typing import Optional

from argon2.low_level import Type, hash_secret_raw
from cryptography.hazmat.primitives.asymmetric.x25519 import (
    X25519PrivateKey,
    X25519PublicKey,
)
from cryptography.hazmat.primitives.hashes import SHA256
from cryptography.hazmat.primitives.kdf.hkdf import HKDF
from nacl.bindings import (
    crypto_aead_xchacha20poly1305_ietf_decrypt,
    crypto_aead_xchacha20poly1305_ietf_encrypt,
)
from nacl.exceptions import CryptoError

from .errors import DecryptionFailed, InvalidKeyFormat
from .models import KdfParams

KEY_SIZE = 32
NONCE_SIZE = 24
TAG_SIZE = 16

MEMBER_CONTEXT = b"reachvault:member-kek:v1:"
SHARE_CONTEXT = b"reachvault:share-dek:v1:"


# ---------------------------------------------------------------------------
# Encoding
# ---------------------------------------------------------------------------

def b64e(data: bytes) -> str:
    """Standard base64, as text."""
    return base64.b64encode(data).decode("ascii")


def b64d(text: str) -> bytes:
    """Strict inverse of :func:`b64e`."""
    return base64.b64decode(text.encode("ascii"), validate=True)


# ---------------------------------------------------------------------------
# AEAD
# ---------------------------------------------------------------------------

def generate_key() -> bytes:
    """A fresh random 256-bit symmetric key."""
    return secrets.token_bytes(KEY_SIZE)


def seal(plaintext: bytes, key: bytes, aad: Optional[bytes] = None) -> bytes:
    """Encrypt under ``key`` with a fresh nonce.

    Args:
        plaintext: Bytes to protect.
        key: 32-byte symmetric key.
        aad: Optional associated data bound to the ciphertext.

    Returns:
        nonce || ciphertext || tag.
    """
    if len(key) != KEY_SIZE:
        raise ValueError(f"key must be {KEY_SIZE} bytes")
    nonce = secrets.token_bytes(NONCE_SIZE)
    return nonce + crypto_aead_xchacha20poly1305_ietf_encrypt(plaintext, aad, nonce, key)


def open_sealed(blob: bytes, key: bytes, aad: Optional[bytes] = None) -> bytes:
    """Inverse of :func:`seal`.

    Raises:
        DecryptionFailed: On any failure. Wrong key, truncation and
            tampering are deliberately indistinguishable.
    """
    if len(key) != KEY_SIZE or len(blob) < NONCE_SIZE + TAG_SIZE:
        raise DecryptionFailed()
    try:
        return crypto_aead_xchacha20poly1305_ietf_decrypt(
            blob[NONCE_SIZE:], aad, blob[:NONCE_SIZE], key
        )
    except CryptoError:
        raise DecryptionFailed() from None


def wrap_dek(dek: bytes, kek: bytes) -> bytes:
    """Encrypt a DEK under a KEK."""
    if len(dek) != KEY_SIZE:
        raise ValueError(f"DEK must be {KEY_SIZE} bytes")
    return seal(dek, kek)


def unwrap_dek(wrapped: bytes, kek: bytes) -> bytes:
    """Recover a DEK. Raises DecryptionFailed for any other KEK."""
    dek = open_sealed(wrapped, kek)
    if len(dek) != KEY_SIZE:
        raise DecryptionFailed()
    return dek


def encrypt_payload(plaintext: bytes) -> tuple[bytes, bytes]:
    """Encrypt under a brand new DEK.

    Returns:
        (dek, sealed payload). The caller wraps the DEK right away and
        drops its reference to the raw key.
    """
    dek = generate_key()
    return dek, seal(plaintext, dek)


def decrypt_payload(payload: bytes, dek: bytes) -> bytes:
    """Inverse of :func:`encrypt_payload`."""
    return open_sealed(payload, dek)


# ---------------------------------------------------------------------------
# Key derivation
# ---------------------------------------------------------------------------

def hkdf(material: bytes, info: bytes, salt: Optional[bytes] = None, length: int = KEY_SIZE) -> bytes:
    """Derive a key using HKDF-SHA256.

    Args:
        material: Input keying material.
        info: Context and application-specific info string.
        salt: Optional salt.
        length: Desired output key length in bytes.

    Returns:
        Derived key bytes.
    """
    return HKDF(algorithm=SHA256(), length=length, salt=salt, info=info).derive(material)


def derive_password_key(password: str, salt: bytes, params: KdfParams) -> bytes:
    """Argon2id over a password. Deterministic for a given salt and params."""
    return hash_secret_raw(
        secret=password.encode("utf-8"),
        salt=salt,
        time_cost=params.time_cost,
        memory_cost=params.memory_kib,
        parallelism=params.parallelism,
        hash_len=KEY_SIZE,
        type=Type.ID,
    )


def member_context(vault_id: str) -> bytes:
    """HKDF info for wrapping a vault KEK to one member."""
    return MEMBER_CONTEXT + vault_id.encode()


def share_context(share_id: str) -> bytes:
    """HKDF info for wrapping a DEK inside a one-off share."""
    return SHARE_CONTEXT + share_id.encode()


# ---------------------------------------------------------------------------
# X25519
# ---------------------------------------------------------------------------

def generate_keypair() -> tuple[bytes, bytes]:
    """New X25519 keypair as raw (secret, public) bytes."""
    private = X25519PrivateKey.generate()
    return private.private_bytes_raw(), private.public_key().public_bytes_raw()


def public_key_for(secret_key: bytes) -> bytes:
    """Public half of a raw X25519 secret key.

    Raises:
        InvalidKeyFormat: Wrong length or an all-zero scalar.
    """
    if len(secret_key) != KEY_SIZE or not any(secret_key):
        raise InvalidKeyFormat(f"X25519 secret key must be {KEY_SIZE} non-zero bytes")
    return X25519PrivateKey.from_private_bytes(secret_key).public_key().public_bytes_raw()


def parse_public_key(encoded: str) -> bytes:
    """Decode and validate a base64 X25519 public key."""
    try:
        raw = b64d(encoded)
    except (binascii.Error, ValueError) as exc:
        raise InvalidKeyFormat("public key is not valid base64") from exc
    if len(raw) != KEY_SIZE:
        raise InvalidKeyFormat(f"public key must be {KEY_SIZE} bytes, got {len(raw)}")
    return raw


def x25519_agree(secret_key: bytes, peer_public_key: bytes) -> bytes:
    """Raw ECDH shared secret.

    Raises:
        InvalidKeyFormat: The peer key is malformed or a low-order point.
    """
    try:
        private = X25519PrivateKey.from_private_bytes(secret_key)
        return private.exchange(X25519PublicKey.from_public_bytes(peer_public_key))
    except ValueError as exc:
        raise InvalidKeyFormat("key agreement rejected the peer public key") from exc
