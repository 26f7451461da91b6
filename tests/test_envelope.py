"""Tests for the envelope cipher and key-derivation primitives."""

from __future__ import annotations

import pytest

from reachvault.envelope import (
    KEY_SIZE,
    NONCE_SIZE,
    TAG_SIZE,
    b64e,
    decrypt_payload,
    derive_password_key,
    encrypt_payload,
    generate_key,
    generate_keypair,
    hkdf,
    open_sealed,
    parse_public_key,
    public_key_for,
    seal,
    unwrap_dek,
    wrap_dek,
    x25519_agree,
)
from reachvault.errors import DecryptionFailed, InvalidKeyFormat
from reachvault.models import KdfParams


class TestPayload:
    """encrypt_payload / decrypt_payload."""

    def test_round_trip(self) -> None:
        dek, payload = encrypt_payload(b"s3cr3t")
        assert decrypt_payload(payload, dek) == b"s3cr3t"

    def test_empty_plaintext(self) -> None:
        dek, payload = encrypt_payload(b"")
        assert decrypt_payload(payload, dek) == b""

    def test_fresh_dek_and_nonce_every_call(self) -> None:
        dek1, payload1 = encrypt_payload(b"same")
        dek2, payload2 = encrypt_payload(b"same")
        assert dek1 != dek2
        assert payload1 != payload2
        assert payload1[:NONCE_SIZE] != payload2[:NONCE_SIZE]

    def test_layout(self) -> None:
        dek, payload = encrypt_payload(b"abc")
        assert len(dek) == KEY_SIZE
        assert len(payload) == NONCE_SIZE + 3 + TAG_SIZE

    def test_wrong_dek_fails(self) -> None:
        _, payload = encrypt_payload(b"data")
        with pytest.raises(DecryptionFailed):
            decrypt_payload(payload, generate_key())

    def test_tampered_ciphertext_fails(self) -> None:
        dek, payload = encrypt_payload(b"data")
        tampered = payload[:-1] + bytes([payload[-1] ^ 0x01])
        with pytest.raises(DecryptionFailed):
            decrypt_payload(tampered, dek)

    def test_truncated_payload_fails(self) -> None:
        dek, payload = encrypt_payload(b"data")
        with pytest.raises(DecryptionFailed):
            decrypt_payload(payload[:10], dek)


class TestWrapping:
    """wrap_dek / unwrap_dek."""

    def test_round_trip(self) -> None:
        dek, kek = generate_key(), generate_key()
        assert unwrap_dek(wrap_dek(dek, kek), kek) == dek

    def test_other_kek_fails(self) -> None:
        wrapped = wrap_dek(generate_key(), generate_key())
        with pytest.raises(DecryptionFailed):
            unwrap_dek(wrapped, generate_key())

    def test_same_error_for_every_cause(self) -> None:
        dek, kek = generate_key(), generate_key()
        wrapped = wrap_dek(dek, kek)
        messages = set()
        for blob, key in (
            (wrapped, generate_key()),
            (wrapped[:-2], kek),
            (b"\x00" * len(wrapped), kek),
        ):
            with pytest.raises(DecryptionFailed) as info:
                unwrap_dek(blob, key)
            messages.add(str(info.value))
        assert messages == {"decryption failed"}

    def test_rejects_short_dek(self) -> None:
        with pytest.raises(ValueError):
            wrap_dek(b"short", generate_key())

    def test_sealed_non_dek_does_not_unwrap(self) -> None:
        kek = generate_key()
        with pytest.raises(DecryptionFailed):
            unwrap_dek(seal(b"not a key", kek), kek)

    def test_aad_is_bound(self) -> None:
        key = generate_key()
        blob = seal(b"name", key, aad=b"row-1")
        assert open_sealed(blob, key, aad=b"row-1") == b"name"
        with pytest.raises(DecryptionFailed):
            open_sealed(blob, key, aad=b"row-2")


class TestKeyDerivation:
    """HKDF, Argon2id and X25519."""

    def test_argon2_deterministic(self, fast_kdf: KdfParams) -> None:
        salt = b"\x01" * 32
        assert derive_password_key("hunter22", salt, fast_kdf) == derive_password_key("hunter22", salt, fast_kdf)

    def test_argon2_salt_matters(self, fast_kdf: KdfParams) -> None:
        a = derive_password_key("hunter22", b"\x01" * 32, fast_kdf)
        b = derive_password_key("hunter22", b"\x02" * 32, fast_kdf)
        assert a != b
        assert len(a) == KEY_SIZE

    def test_hkdf_context_separates(self) -> None:
        material = generate_key()
        assert hkdf(material, b"a") != hkdf(material, b"b")
        assert hkdf(material, b"a") == hkdf(material, b"a")

    def test_ecdh_is_symmetric(self) -> None:
        a_secret, a_public = generate_keypair()
        b_secret, b_public = generate_keypair()
        assert x25519_agree(a_secret, b_public) == x25519_agree(b_secret, a_public)

    def test_public_key_for(self) -> None:
        secret, public = generate_keypair()
        assert public_key_for(secret) == public

    @pytest.mark.parametrize("bad", [b"", b"\x01" * 31, b"\x00" * 32])
    def test_public_key_for_rejects(self, bad: bytes) -> None:
        with pytest.raises(InvalidKeyFormat):
            public_key_for(bad)

    def test_parse_public_key(self) -> None:
        _, public = generate_keypair()
        assert parse_public_key(b64e(public)) == public
        with pytest.raises(InvalidKeyFormat):
            parse_public_key("not base64!")
        with pytest.raises(InvalidKeyFormat):
            parse_public_key(b64e(b"\x01" * 16))

    def test_low_order_peer_rejected(self) -> None:
        secret, _ = generate_keypair()
        with pytest.raises(InvalidKeyFormat):
            x25519_agree(secret, b"\x00" * 32)
