"""Tests for the blob formats and key helpers in gitvault.crypto."""

import hashlib

import pytest

from gitvault import crypto
from gitvault.crypto import (
    NONCE_SIZE,
    PASSWORD_HEADER,
    REFERENCE_ALPHABET,
    SALT_SIZE,
    TAG_SIZE,
    decrypt_with_key,
    decrypt_with_password,
    derive_key,
    encrypt_with_key,
    encrypt_with_password,
    generate_file_key,
    generate_id,
    generate_reference,
    unwrap_file_key,
    wrap_file_key,
)
from gitvault.errors import AuthFailed, CryptoError, Malformed, TooShort


class TestPasswordBlobs:
    def test_layout_is_salt_nonce_ciphertext_tag(self):
        blob = encrypt_with_password(b"secret data", "pw")
        assert len(blob) == SALT_SIZE + NONCE_SIZE + len(b"secret data") + TAG_SIZE

    def test_decrypts_with_same_password(self):
        blob = encrypt_with_password(b"secret data", "pw")
        assert decrypt_with_password(blob, "pw") == b"secret data"

    def test_str_and_bytes_passwords_are_interchangeable(self):
        blob = encrypt_with_password(b"x", "pässword")
        assert decrypt_with_password(blob, "pässword".encode("utf-8")) == b"x"

    def test_fresh_salt_and_nonce_each_time(self):
        a = encrypt_with_password(b"same", "pw")
        b = encrypt_with_password(b"same", "pw")
        assert a[:PASSWORD_HEADER] != b[:PASSWORD_HEADER]
        assert a != b

    def test_wrong_password_fails_authentication(self):
        blob = encrypt_with_password(b"secret", "pw")
        with pytest.raises(AuthFailed):
            decrypt_with_password(blob, "other")

    @pytest.mark.parametrize("offset", [0, SALT_SIZE, PASSWORD_HEADER, -1], ids=["salt", "nonce", "ciphertext", "tag"])
    def test_any_flipped_byte_fails_authentication(self, offset):
        blob = bytearray(encrypt_with_password(b"secret", "pw"))
        blob[offset] ^= 0x01
        with pytest.raises(AuthFailed):
            decrypt_with_password(bytes(blob), "pw")

    def test_short_blob_is_rejected_before_kdf(self):
        with pytest.raises(TooShort):
            decrypt_with_password(b"\x00" * (PASSWORD_HEADER - 1), "pw")

    def test_empty_plaintext(self):
        blob = encrypt_with_password(b"", "pw")
        assert len(blob) == PASSWORD_HEADER + TAG_SIZE
        assert decrypt_with_password(blob, "pw") == b""


class TestKeyBlobs:
    def test_layout_is_nonce_ciphertext_tag(self):
        key = generate_file_key()
        blob = encrypt_with_key(b"abc", key)
        assert len(blob) == NONCE_SIZE + 3 + TAG_SIZE
        assert decrypt_with_key(blob, key) == b"abc"

    def test_wrong_key(self):
        blob = encrypt_with_key(b"abc", generate_file_key())
        with pytest.raises(AuthFailed):
            decrypt_with_key(blob, generate_file_key())

    def test_short_blob(self):
        with pytest.raises(TooShort):
            decrypt_with_key(b"\x00" * (NONCE_SIZE - 1), generate_file_key())

    def test_crypto_errors_are_value_errors(self):
        assert issubclass(CryptoError, ValueError)


class TestKeyDerivation:
    def test_matches_pbkdf2_hmac_sha256(self):
        salt = b"\x01" * SALT_SIZE
        expected = hashlib.pbkdf2_hmac("sha256", b"pw", salt, crypto.PBKDF2_ITERATIONS, 32)
        assert derive_key("pw", salt) == expected

    def test_production_iteration_count(self, monkeypatch):
        monkeypatch.undo()
        assert crypto.PBKDF2_ITERATIONS == 100_000


class TestFileKeyWrapping:
    def test_wrap_unwrap(self):
        key = generate_file_key()
        wrapped = wrap_file_key(key, "pw")
        assert all(c in "0123456789abcdef" for c in wrapped)
        assert unwrap_file_key(wrapped, "pw") == key

    def test_unwrap_with_wrong_password(self):
        wrapped = wrap_file_key(generate_file_key(), "pw")
        with pytest.raises(AuthFailed):
            unwrap_file_key(wrapped, "nope")

    def test_unwrap_rejects_non_hex(self):
        with pytest.raises(Malformed):
            unwrap_file_key("not-hex!", "pw")


class TestIdentifiers:
    def test_generate_id_is_hex_of_twice_the_length(self):
        ident = generate_id(8)
        assert len(ident) == 16
        int(ident, 16)

    def test_generate_id_rejects_non_positive(self):
        with pytest.raises(ValueError):
            generate_id(0)

    def test_reference_uses_base62(self):
        ref = generate_reference(32)
        assert len(ref) == 32
        assert set(ref) <= set(REFERENCE_ALPHABET)


class TestKeyHygiene:
    @pytest.fixture
    def seen_keys(self, monkeypatch):
        keys = []

        def spy(real):
            def wrapper(key, *args, **kwargs):
                keys.append(key)
                return real(key, *args, **kwargs)
            return wrapper

        monkeypatch.setattr(crypto, "aead_encrypt", spy(crypto.aead_encrypt))
        monkeypatch.setattr(crypto, "aead_decrypt", spy(crypto.aead_decrypt))
        return keys

    def test_derived_key_buffer_is_wiped_after_use(self, seen_keys):
        blob = encrypt_with_password(b"secret", "pw")
        assert decrypt_with_password(blob, "pw") == b"secret"
        assert len(seen_keys) == 2
        for key in seen_keys:
            assert isinstance(key, bytearray)
            assert key == bytearray(len(key))

    def test_derived_key_is_wiped_when_authentication_fails(self, seen_keys):
        blob = encrypt_with_password(b"secret", "pw")
        with pytest.raises(AuthFailed):
            decrypt_with_password(blob, "other")
        assert seen_keys[-1] == bytearray(len(seen_keys[-1]))
