from __future__ import annotations

import base64
import json
import logging
import os
from typing import Literal, Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC
from nacl.exceptions import CryptoError as NaclCryptoError
from nacl.secret import SecretBox
from pydantic import BaseModel, Field, ValidationError


logger = logging.getLogger(__name__)

Algorithm = Literal["AES-GCM", "XSalsa20"]
KeyLength = Literal[128, 192, 256]

DEFAULT_ALGORITHM: Algorithm = "AES-GCM"
DEFAULT_ITERATIONS = 10_000
DEFAULT_KEY_LENGTH: KeyLength = 256
SALT_BYTES = 16
AES_GCM_IV_BYTES = 12
XSALSA20_NONCE_BYTES = SecretBox.NONCE_SIZE

_DECRYPT_FAILED = "Failed to decrypt data. Check your secret key."


class CryptoError(RuntimeError):
    """Base error for envelope encryption."""


class DecryptionError(CryptoError):
    """Any decrypt failure: wrong secret, corrupted ciphertext or malformed envelope."""


class EncryptionOptions(BaseModel):
    """Tunables shared by encrypt and decrypt.

    `salt` and `iv` are hex strings. Leave them unset to get fresh random
    values on every call; pin them only for reproducible fixtures.
    """

    algorithm: Algorithm = DEFAULT_ALGORITHM
    iterations: int = Field(default=DEFAULT_ITERATIONS, ge=1)
    key_length: KeyLength = Field(default=DEFAULT_KEY_LENGTH, description="Derived key size in bits")
    salt: Optional[str] = None
    iv: Optional[str] = None


class CipherEnvelope(BaseModel):
    """The stored form of an encrypted value."""

    salt: str
    iv: str
    ciphertext: str
    algorithm: Algorithm

    def to_blob(self) -> str:
        return json.dumps(self.model_dump(), separators=(",", ":"))

    @classmethod
    def from_blob(cls, blob: str) -> "CipherEnvelope":
        return cls.model_validate_json(blob)


def _require_secret(secret: str) -> None:
    if not secret:
        raise ValueError("Encryption secret is required")


def generate_salt(length: int = SALT_BYTES) -> str:
    return os.urandom(length).hex()


def generate_iv(length: int = AES_GCM_IV_BYTES) -> str:
    return os.urandom(length).hex()


def derive_key(
    secret: str,
    salt: str,
    *,
    iterations: int = DEFAULT_ITERATIONS,
    key_length: int = DEFAULT_KEY_LENGTH,
) -> bytes:
    """PBKDF2-HMAC-SHA256 over the secret; `salt` is the hex string stored in the envelope."""
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=key_length // 8,
        salt=bytes.fromhex(salt),
        iterations=iterations,
    )
    return kdf.derive(secret.encode("utf-8"))


def encrypt(plaintext: str, secret: str, options: Optional[EncryptionOptions] = None) -> str:
    """Encrypt `plaintext` and return a serialized `CipherEnvelope`.

    Raises ValueError if `secret` is empty.
    """
    _require_secret(secret)
    opts = options or EncryptionOptions()
    salt = opts.salt or generate_salt()
    data = plaintext.encode("utf-8")

    if opts.algorithm == "XSalsa20":
        # SecretBox only takes 256-bit keys
        key = derive_key(secret, salt, iterations=opts.iterations, key_length=256)
        iv = opts.iv or generate_iv(XSALSA20_NONCE_BYTES)
        ciphertext = SecretBox(key).encrypt(data, bytes.fromhex(iv)).ciphertext
    else:
        key = derive_key(secret, salt, iterations=opts.iterations, key_length=opts.key_length)
        iv = opts.iv or generate_iv(AES_GCM_IV_BYTES)
        ciphertext = AESGCM(key).encrypt(bytes.fromhex(iv), data, None)

    envelope = CipherEnvelope(
        salt=salt,
        iv=iv,
        ciphertext=base64.b64encode(ciphertext).decode("ascii"),
        algorithm=opts.algorithm,
    )
    return envelope.to_blob()


def decrypt(blob: str, secret: str, options: Optional[EncryptionOptions] = None) -> str:
    """Decrypt a blob produced by `encrypt`.

    Raises ValueError if `secret` is empty and DecryptionError for everything
    else. An empty plaintext is reported as a failure too.
    """
    _require_secret(secret)
    opts = options or EncryptionOptions()
    try:
        envelope = CipherEnvelope.from_blob(blob)
        if envelope.algorithm != opts.algorithm:
            raise DecryptionError(
                f"Unsupported encryption algorithm: {envelope.algorithm} (expected {opts.algorithm})"
            )
        raw = base64.b64decode(envelope.ciphertext, validate=True)
        if envelope.algorithm == "XSalsa20":
            key = derive_key(secret, envelope.salt, iterations=opts.iterations, key_length=256)
            data = SecretBox(key).decrypt(raw, bytes.fromhex(envelope.iv))
        else:
            key = derive_key(
                secret, envelope.salt, iterations=opts.iterations, key_length=opts.key_length
            )
            data = AESGCM(key).decrypt(bytes.fromhex(envelope.iv), raw, None)
        result = data.decode("utf-8")
    except (
        DecryptionError,
        InvalidTag,
        NaclCryptoError,
        ValidationError,
        ValueError,
        TypeError,
    ) as ex:
        logger.debug("decrypt failed: %s", ex)
        raise DecryptionError(_DECRYPT_FAILED) from ex

    if not result:
        raise DecryptionError(_DECRYPT_FAILED)
    return result


def is_encrypted_data(blob: str) -> bool:
    """True if `blob` looks like a serialized cipher envelope."""
    try:
        parsed = json.loads(blob)
    except (TypeError, ValueError):
        return False
    return isinstance(parsed, dict) and all(k in parsed for k in ("salt", "iv", "ciphertext"))


__all__ = [
    "CipherEnvelope",
    "CryptoError",
    "DecryptionError",
    "EncryptionOptions",
    "decrypt",
    "derive_key",
    "encrypt",
    "generate_iv",
    "generate_salt",
    "is_encrypted_data",
]
