from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC
import os, hmac, secrets

from .errors import AuthFailed, Malformed, TooShort

SALT_SIZE = 16
NONCE_SIZE = 12
TAG_SIZE = 16
KEY_SIZE = 32
PBKDF2_ITERATIONS = 100_000

PASSWORD_HEADER = SALT_SIZE + NONCE_SIZE
REFERENCE_ALPHABET = "0123456789abcdefghijklmnopqrstuvwxyzABCDEFGHIJKLMNOPQRSTUVWXYZ"


def _password_bytes(password) -> bytes:
    if isinstance(password, str):
        return password.encode("utf-8")
    return bytes(password)


def derive_key(password, salt: bytes) -> bytes:
    """Derive a 256-bit AES key from a password with PBKDF2-HMAC-SHA256."""
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=KEY_SIZE,
        salt=salt,
        iterations=PBKDF2_ITERATIONS,
    )
    return kdf.derive(_password_bytes(password))


def gen_nonce() -> bytes:
    """Return a random 12-byte nonce for AES-256-GCM."""
    return os.urandom(NONCE_SIZE)


def generate_file_key() -> bytes:
    """Return a random 256-bit per-file key."""
    return os.urandom(KEY_SIZE)


def generate_id(byte_length: int) -> str:
    """Return `byte_length` random bytes as a lowercase hex string."""
    if byte_length <= 0:
        raise ValueError("byte_length must be positive")
    return os.urandom(byte_length).hex()


def generate_reference(length: int) -> str:
    """Return a random base62 share reference of `length` characters."""
    if length <= 0:
        raise ValueError("length must be positive")
    return "".join(secrets.choice(REFERENCE_ALPHABET) for _ in range(length))


def aead_encrypt(key: bytes, nonce: bytes, plaintext: bytes, ad: bytes | None = None) -> bytes:
    """Encrypt `plaintext` with AES-256-GCM; the 16-byte tag is appended."""
    return AESGCM(key).encrypt(nonce, plaintext, ad)


def aead_decrypt(key: bytes, nonce: bytes, ciphertext: bytes, ad: bytes | None = None) -> bytes:
    """Decrypt a ciphertext produced by `aead_encrypt`, raising AuthFailed on a bad tag."""
    try:
        return AESGCM(key).decrypt(nonce, ciphertext, ad)
    except InvalidTag as exc:
        raise AuthFailed("decryption failed") from exc


def encrypt_with_password(plaintext: bytes, password) -> bytes:
    """Seal `plaintext` under a password; output is salt || nonce || ciphertext+tag."""
    salt = os.urandom(SALT_SIZE)
    nonce = gen_nonce()
    key = bytearray(derive_key(password, salt))
    try:
        return salt + nonce + aead_encrypt(key, nonce, plaintext)
    finally:
        zero_bytes(key)


def decrypt_with_password(blob: bytes, password) -> bytes:
    if len(blob) < PASSWORD_HEADER:
        raise TooShort(f"ciphertext is too short ({len(blob)} < {PASSWORD_HEADER})")
    salt, nonce, ct = blob[:SALT_SIZE], blob[SALT_SIZE:PASSWORD_HEADER], blob[PASSWORD_HEADER:]
    key = bytearray(derive_key(password, salt))
    try:
        return aead_decrypt(key, nonce, ct)
    finally:
        zero_bytes(key)


def encrypt_with_key(plaintext: bytes, key: bytes) -> bytes:
    """Seal `plaintext` under a raw 256-bit key; output is nonce || ciphertext+tag."""
    nonce = gen_nonce()
    return nonce + aead_encrypt(key, nonce, plaintext)


def decrypt_with_key(blob: bytes, key: bytes) -> bytes:
    if len(blob) < NONCE_SIZE:
        raise TooShort(f"ciphertext is too short ({len(blob)} < {NONCE_SIZE})")
    return aead_decrypt(key, blob[:NONCE_SIZE], blob[NONCE_SIZE:])


def wrap_file_key(file_key: bytes, password) -> str:
    """Encrypt a per-file key under the vault password and hex-encode it for the index."""
    return encrypt_with_password(file_key, password).hex()


def unwrap_file_key(wrapped: str, password) -> bytes:
    try:
        raw = bytes.fromhex(wrapped)
    except ValueError as exc:
        raise Malformed("wrapped file key is not valid hex") from exc
    return decrypt_with_password(raw, password)


def consteq(a: bytes, b: bytes) -> bool:
    """Constant-time comparison helper to avoid timing leaks when comparing secrets."""
    return hmac.compare_digest(a, b)


def zero_bytes(b):
    """Best-effort zeroization for mutable buffers that held sensitive information."""
    if isinstance(b, bytearray):
        for i in range(len(b)):
            b[i] = 0
    elif isinstance(b, memoryview) and not b.readonly:
        b[:] = b"\x00" * len(b)
