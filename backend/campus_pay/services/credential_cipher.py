"""
Credential Cipher — AES-256-GCM encryption of payment gateway credentials.

Envelope (all hex):
    {"encrypted_data": ..., "iv": ..., "tag": ..., "algorithm": "aes-256-gcm"}

Key material comes from PAYMENT_CREDENTIAL_ENCRYPTION_KEY and is accepted as
    - base64 (44 chars, trailing "="), or
    - hex (64 chars), or
    - any other string, stretched with scrypt (weak, not for production).

A fresh random IV is generated for every encryption. Decryption either
authenticates or raises IntegrityError; it never returns altered plaintext.
"""
import base64
import binascii
import json
import logging
import os
from typing import Any, Union

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.scrypt import Scrypt
from pydantic import BaseModel, ValidationError as SchemaValidationError

from campus_pay.config import get_settings
from campus_pay.errors import IntegrityError, KeyConfigurationError
from campus_pay.schemas.schemas import EncryptedCredential

logger = logging.getLogger(__name__)

ALGORITHM = "aes-256-gcm"
KEY_LENGTH = 32      # 256 bits
IV_LENGTH = 16       # 128 bits
TAG_LENGTH = 16
SCRYPT_SALT = b"salt"

SENSITIVE_MARKERS = ("secret", "key", "salt")
MASK_MIN_LENGTH = 8


def derive_key(secret: str | None) -> bytes:
    """Turn configured key material into 32 raw key bytes.

    Raises:
        KeyConfigurationError: secret missing or not decodable to 32 bytes.
    """
    if not secret:
        raise KeyConfigurationError(details={"reason": "PAYMENT_CREDENTIAL_ENCRYPTION_KEY is not set"})

    if len(secret) == 44 and secret.endswith("="):
        try:
            key = base64.b64decode(secret, validate=True)
        except (binascii.Error, ValueError) as e:
            raise KeyConfigurationError(details={"reason": "key is not valid base64"}) from e
    elif len(secret) == 64:
        try:
            key = bytes.fromhex(secret)
        except ValueError as e:
            raise KeyConfigurationError(details={"reason": "key is not valid hex"}) from e
    else:
        logger.warning(
            "Credential key derived from a plain string via scrypt; "
            "use a base64 or hex 256-bit key in production"
        )
        key = Scrypt(salt=SCRYPT_SALT, length=KEY_LENGTH, n=2**14, r=8, p=1).derive(secret.encode("utf-8"))

    if len(key) != KEY_LENGTH:
        raise KeyConfigurationError(details={"reason": f"key must be {KEY_LENGTH} bytes, got {len(key)}"})
    return key


def generate_encryption_key() -> str:
    """Generate a new random 256-bit key, base64 encoded (for initial setup)."""
    return base64.b64encode(os.urandom(KEY_LENGTH)).decode("ascii")


class CredentialCipher:
    """Authenticated symmetric encryption bound to one key."""

    algorithm = ALGORITHM

    def __init__(self, key: bytes):
        if not key or len(key) != KEY_LENGTH:
            raise KeyConfigurationError(details={"reason": f"key must be {KEY_LENGTH} bytes"})
        self._aead = AESGCM(key)

    @classmethod
    def from_secret(cls, secret: str | None) -> "CredentialCipher":
        return cls(derive_key(secret))

    @classmethod
    def from_settings(cls, settings=None) -> "CredentialCipher":
        settings = settings or get_settings()
        return cls.from_secret(settings.PAYMENT_CREDENTIAL_ENCRYPTION_KEY)

    def encrypt(self, credentials: Union[dict, BaseModel]) -> EncryptedCredential:
        """Encrypt a credential set. A new IV is drawn on every call."""
        if isinstance(credentials, BaseModel):
            credentials = credentials.model_dump(exclude_none=True)

        plaintext = json.dumps(credentials, default=str).encode("utf-8")
        iv = os.urandom(IV_LENGTH)
        sealed = self._aead.encrypt(iv, plaintext, None)
        ciphertext, tag = sealed[:-TAG_LENGTH], sealed[-TAG_LENGTH:]

        return EncryptedCredential(
            encrypted_data=ciphertext.hex(),
            iv=iv.hex(),
            tag=tag.hex(),
            algorithm=ALGORITHM,
        )

    def decrypt(self, envelope: Union[dict, EncryptedCredential]) -> dict:
        """Decrypt an envelope back into the credential dict.

        Raises:
            IntegrityError: algorithm mismatch, malformed envelope, wrong key,
                or tampered ciphertext/tag.
        """
        if isinstance(envelope, dict):
            try:
                envelope = EncryptedCredential(**envelope)
            except SchemaValidationError as e:
                raise IntegrityError(details={"reason": "malformed credential envelope"}) from e

        if envelope.algorithm != ALGORITHM:
            raise IntegrityError(details={
                "reason": "algorithm mismatch",
                "expected": ALGORITHM,
                "received": envelope.algorithm,
            })

        try:
            iv = bytes.fromhex(envelope.iv)
            tag = bytes.fromhex(envelope.tag)
            ciphertext = bytes.fromhex(envelope.encrypted_data)
        except ValueError as e:
            raise IntegrityError(details={"reason": "envelope is not valid hex"}) from e

        if len(tag) != TAG_LENGTH:
            raise IntegrityError(details={"reason": "authentication tag has wrong length"})

        try:
            plaintext = self._aead.decrypt(iv, ciphertext + tag, None)
        except InvalidTag as e:
            raise IntegrityError(details={"reason": "authentication failed"}) from e
        except ValueError as e:
            raise IntegrityError(details={"reason": str(e)}) from e

        return json.loads(plaintext.decode("utf-8"))

    def validate(self) -> dict:
        """Self-test: encrypt and decrypt a probe value."""
        probe = {"test": "data"}
        try:
            if self.decrypt(self.encrypt(probe)) != probe:
                return {"valid": False, "message": "Encryption key validation failed - round trip mismatch"}
        except IntegrityError as e:
            return {"valid": False, "message": f"Encryption key validation failed: {e}"}
        return {"valid": True, "message": "Encryption key is valid"}


KeyMaterial = Union[bytes, str, CredentialCipher]


def _as_cipher(key: KeyMaterial) -> CredentialCipher:
    if isinstance(key, CredentialCipher):
        return key
    if isinstance(key, bytes):
        return CredentialCipher(key)
    return CredentialCipher.from_secret(key)


def rotate(
    envelope: Union[dict, EncryptedCredential],
    old_key: KeyMaterial,
    new_key: KeyMaterial,
) -> EncryptedCredential:
    """Re-encrypt an envelope from ``old_key`` to ``new_key``.

    Both keys are explicit; nothing global is read or modified.
    Raw bytes are used as-is, strings go through ``derive_key``.
    """
    return _as_cipher(new_key).encrypt(_as_cipher(old_key).decrypt(envelope))


def mask_value(value: str) -> str:
    """first4 + *** + last4; values of 8 chars or fewer are returned unchanged."""
    if len(value) <= MASK_MIN_LENGTH:
        return value
    return value[:4] + "***" + value[-4:]


def _is_sensitive(name: str) -> bool:
    lowered = name.lower()
    return any(marker in lowered for marker in SENSITIVE_MARKERS)


def mask_credentials(data: Any) -> Any:
    """Return a structurally identical copy with secret-looking values masked."""
    if isinstance(data, BaseModel):
        data = data.model_dump(exclude_none=True)
    if isinstance(data, dict):
        masked = {}
        for name, value in data.items():
            if isinstance(value, str) and _is_sensitive(str(name)):
                masked[name] = mask_value(value)
            else:
                masked[name] = mask_credentials(value)
        return masked
    if isinstance(data, list):
        return [mask_credentials(item) for item in data]
    return data


def mask_account_number(account_number: str | None) -> str | None:
    """Hide all but the last four digits of a bank account number."""
    if not account_number or len(account_number) <= 4:
        return account_number
    return "*" * (len(account_number) - 4) + account_number[-4:]
