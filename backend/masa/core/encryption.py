"""Encryption utilities for PHI stored by either backend."""

import base64
import hashlib
import hmac
import json
from typing import Any, Optional

from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from .config import settings


_ENCRYPTED_PREFIX = "enc:"
_KDF_SALT = b"masa-phi-at-rest"
PBKDF2_ITERATIONS = 100_000


class EncryptionError(Exception):
    """Base class for codec failures."""


class EncryptionUnavailable(EncryptionError):
    """No secret is configured, so nothing can be encrypted or decrypted."""


class DecryptionFailed(EncryptionError):
    """Ciphertext is malformed, tampered with, or was made with another key."""


def serialize_payload(payload: Any) -> bytes:
    """Deterministic JSON encoding: sorted keys, no whitespace, raw unicode."""
    return json.dumps(
        payload, sort_keys=True, separators=(",", ":"), ensure_ascii=False
    ).encode("utf-8")


class EncryptionCodec:
    """
    Symmetric encrypt/decrypt of JSON-compatible payloads.

    The configured secret is stretched with PBKDF2-HMAC-SHA256 into a Fernet
    key (AES-128-CBC + HMAC-SHA256, authenticated) and a separate key used for
    deterministic fingerprints of natural keys.
    """

    def __init__(self, secret: Optional[str]):
        self._fernet: Optional[Fernet] = None
        self._fingerprint_key: Optional[bytes] = None
        if secret:
            kdf = PBKDF2HMAC(
                algorithm=hashes.SHA256(),
                length=64,
                salt=_KDF_SALT,
                iterations=PBKDF2_ITERATIONS,
            )
            material = kdf.derive(secret.encode("utf-8"))
            self._fernet = Fernet(base64.urlsafe_b64encode(material[:32]))
            self._fingerprint_key = material[32:]

    @property
    def available(self) -> bool:
        return self._fernet is not None

    def _require_fernet(self) -> Fernet:
        if self._fernet is None:
            raise EncryptionUnavailable(
                "ENCRYPTION_KEY not configured; refusing to store or read PHI in plaintext."
            )
        return self._fernet

    def encrypt(self, payload: Any) -> str:
        """Encrypt a JSON-compatible payload into a prefixed token string."""
        token = self._require_fernet().encrypt(serialize_payload(payload))
        return f"{_ENCRYPTED_PREFIX}{token.decode('ascii')}"

    def decrypt(self, ciphertext: str) -> Any:
        """Decrypt a token produced by :meth:`encrypt`."""
        fernet = self._require_fernet()
        if not isinstance(ciphertext, str) or not ciphertext.startswith(_ENCRYPTED_PREFIX):
            raise DecryptionFailed("Encrypted data is missing prefix")
        token = ciphertext[len(_ENCRYPTED_PREFIX):]
        try:
            plaintext = fernet.decrypt(token.encode("ascii"))
        except (InvalidToken, UnicodeEncodeError):
            raise DecryptionFailed("Invalid or corrupted encrypted data")
        try:
            return json.loads(plaintext.decode("utf-8"))
        except (UnicodeDecodeError, ValueError):
            raise DecryptionFailed("Decrypted data is not a valid payload")

    def fingerprint(self, *parts: str, purpose: str = "natural-key") -> str:
        """Keyed deterministic hash, used to look records up without decrypting."""
        if self._fingerprint_key is None:
            raise EncryptionUnavailable("ENCRYPTION_KEY not configured.")
        data = "\x1f".join([purpose, *parts]).encode("utf-8")
        return hmac.new(self._fingerprint_key, data, hashlib.sha256).hexdigest()


_codec: Optional[EncryptionCodec] = None


def get_codec() -> EncryptionCodec:
    """Process-wide codec built from ``settings.ENCRYPTION_KEY``."""
    global _codec
    if _codec is None:
        _codec = EncryptionCodec(settings.ENCRYPTION_KEY)
    return _codec
