"""Encryption backends for credentials stored at rest.

Credential tokens are encrypted with AES-256-GCM before they touch disk. The
Credential Store only talks to the :class:`EncryptionBackend` capability
(``is_available``/``encrypt``/``decrypt``), so the key source can be swapped:

- :class:`KeyringEncryptionBackend` keeps a random 256-bit key in the OS
  keychain (macOS Keychain, Windows Credential Manager, Secret Service). When
  the keychain is missing, the backend reports itself unavailable and callers
  fail closed instead of storing plaintext.
- :class:`PassphraseEncryptionBackend` derives the key from a user-supplied
  passphrase with PBKDF2-HMAC-SHA256, for hosts without a keychain.

Security Properties:
- 256-bit encryption keys
- 96-bit random nonces (GCM standard)
- 128-bit authentication tags, so tampered or foreign ciphertext fails to
  decrypt instead of yielding garbage

Usage:
    >>> backend = KeyringEncryptionBackend(service_name="markread")
    >>> payload = backend.encrypt("ghp_secret")
    >>> backend.decrypt(payload)
    'ghp_secret'
"""

from __future__ import annotations

import base64
import logging
import secrets
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Protocol, Union, runtime_checkable

import keyring
from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC
from keyring.backends import fail
from keyring.errors import KeyringError

logger = logging.getLogger(__name__)

# Constants
KEY_SIZE_BYTES = 32  # 256 bits for AES-256
NONCE_SIZE_BYTES = 12  # 96 bits for GCM
PBKDF2_ITERATIONS = 390_000


class EncryptionError(Exception):
    """Base exception for encryption errors."""


class EncryptionBackendUnavailableError(EncryptionError):
    """Raised when the key source (OS keychain) cannot be used."""


class DecryptionError(EncryptionError):
    """Raised when decryption fails (wrong key, corrupted data, or tampered)."""


@dataclass
class EncryptedPayload:
    """Container for encrypted data with metadata.

    Attributes:
        ciphertext: The encrypted data (base64 encoded when serialized)
        nonce: Random IV/nonce used for encryption (base64 encoded)
        algorithm: Encryption algorithm identifier
        backend: Name of the backend that produced the payload
        created_at: Timestamp when encryption occurred
    """

    ciphertext: bytes
    nonce: bytes
    algorithm: str = "AES-256-GCM"
    backend: str = "keyring"
    created_at: Optional[datetime] = None

    def __post_init__(self) -> None:
        if self.created_at is None:
            self.created_at = datetime.now(timezone.utc)

    def to_dict(self) -> Dict[str, Any]:
        """Serialize to dictionary for JSON storage."""
        return {
            "ciphertext": base64.b64encode(self.ciphertext).decode("ascii"),
            "nonce": base64.b64encode(self.nonce).decode("ascii"),
            "algorithm": self.algorithm,
            "backend": self.backend,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "EncryptedPayload":
        """Deserialize from dictionary.

        Raises:
            DecryptionError: If required fields are missing or not base64
        """
        try:
            return cls(
                ciphertext=base64.b64decode(data["ciphertext"], validate=True),
                nonce=base64.b64decode(data["nonce"], validate=True),
                algorithm=data.get("algorithm", "AES-256-GCM"),
                backend=data.get("backend", "keyring"),
                created_at=datetime.fromisoformat(data["created_at"])
                if data.get("created_at")
                else None,
            )
        except (KeyError, TypeError, ValueError) as exc:
            raise DecryptionError(f"Malformed encrypted payload: {exc}") from exc


@runtime_checkable
class EncryptionBackend(Protocol):
    """Capability interface used by the Credential Store."""

    name: str

    def is_available(self) -> bool:
        ...

    def encrypt(self, plaintext: Union[str, bytes]) -> EncryptedPayload:
        ...

    def decrypt(self, payload: EncryptedPayload) -> str:
        ...


def _aes_encrypt(key: bytes, plaintext: Union[str, bytes], backend: str) -> EncryptedPayload:
    if isinstance(plaintext, str):
        plaintext = plaintext.encode("utf-8")
    nonce = secrets.token_bytes(NONCE_SIZE_BYTES)
    ciphertext = AESGCM(key).encrypt(nonce, plaintext, None)
    return EncryptedPayload(ciphertext=ciphertext, nonce=nonce, backend=backend)


def _aes_decrypt(key: bytes, payload: EncryptedPayload) -> str:
    if payload.algorithm != "AES-256-GCM":
        raise DecryptionError(f"Unsupported algorithm: {payload.algorithm}")
    try:
        plaintext = AESGCM(key).decrypt(payload.nonce, payload.ciphertext, None)
        return plaintext.decode("utf-8")
    except (InvalidTag, ValueError) as exc:
        raise DecryptionError("Decryption failed: ciphertext is corrupted or was produced with another key") from exc


@dataclass
class KeyringEncryptionBackend:
    """AES-256-GCM with the data key held in the OS keychain.

    Attributes:
        service_name: Keychain service identifier
        key_id: Keychain entry holding the base64 data key
        keyring_module: Module or object exposing the keyring API (injectable for tests)
    """

    service_name: str = "markread"
    key_id: str = "credential_encryption_key"
    keyring_module: Any = field(default=keyring)
    name: str = field(default="keyring", init=False)
    _key_cache: Optional[bytes] = field(default=None, init=False, repr=False)

    def is_available(self) -> bool:
        """Report whether the OS keychain can hold the data key."""
        get_keyring = getattr(self.keyring_module, "get_keyring", None)
        if get_keyring is None:
            return True
        try:
            active = get_keyring()
        except KeyringError as exc:
            logger.warning(f"Keyring backend lookup failed: {exc}")
            return False
        if isinstance(active, fail.Keyring):
            logger.warning("No usable OS keychain backend; credential encryption unavailable")
            return False
        return True

    def encrypt(self, plaintext: Union[str, bytes]) -> EncryptedPayload:
        key = self._get_key(create=True)
        return _aes_encrypt(key, plaintext, self.name)

    def decrypt(self, payload: EncryptedPayload) -> str:
        """Decrypt with the keychain data key.

        Raises:
            EncryptionBackendUnavailableError: keychain unusable right now (locked, no backend)
            DecryptionError: no data key exists, or the payload does not decrypt with it
        """
        key = self._get_key(create=False)
        return _aes_decrypt(key, payload)

    def _get_key(self, *, create: bool) -> bytes:
        if self._key_cache:
            return self._key_cache
        if not self.is_available():
            raise EncryptionBackendUnavailableError("OS keychain is not available")

        try:
            key_b64 = self.keyring_module.get_password(self.service_name, self.key_id)
            if key_b64:
                self._key_cache = base64.b64decode(key_b64)
                return self._key_cache
            if not create:
                raise DecryptionError(
                    f"Encryption key not found in keychain for service '{self.service_name}'"
                )
            key = secrets.token_bytes(KEY_SIZE_BYTES)
            self.keyring_module.set_password(
                self.service_name, self.key_id, base64.b64encode(key).decode("ascii")
            )
        except KeyringError as exc:
            raise EncryptionBackendUnavailableError(f"Keychain access failed: {exc}") from exc

        self._key_cache = key
        logger.info(f"Generated new credential encryption key in keychain service '{self.service_name}'")
        return key


@dataclass
class PassphraseEncryptionBackend:
    """AES-256-GCM with a key derived from a user-supplied passphrase.

    The salt is not secret; persist it alongside the credential file so the
    same passphrase yields the same key across runs.
    """

    passphrase: str
    salt: bytes
    iterations: int = PBKDF2_ITERATIONS
    name: str = field(default="passphrase", init=False)
    _key: Optional[bytes] = field(default=None, init=False, repr=False)

    def __post_init__(self) -> None:
        if not self.passphrase:
            raise ValueError("passphrase cannot be empty")
        if len(self.salt) < 16:
            raise ValueError("salt must be at least 16 bytes")

    @staticmethod
    def generate_salt() -> bytes:
        return secrets.token_bytes(16)

    def is_available(self) -> bool:
        return True

    def encrypt(self, plaintext: Union[str, bytes]) -> EncryptedPayload:
        return _aes_encrypt(self._derive_key(), plaintext, self.name)

    def decrypt(self, payload: EncryptedPayload) -> str:
        return _aes_decrypt(self._derive_key(), payload)

    def _derive_key(self) -> bytes:
        if self._key is None:
            kdf = PBKDF2HMAC(
                algorithm=hashes.SHA256(),
                length=KEY_SIZE_BYTES,
                salt=self.salt,
                iterations=self.iterations,
            )
            self._key = kdf.derive(self.passphrase.encode("utf-8"))
        return self._key


__all__ = [
    "DecryptionError",
    "EncryptedPayload",
    "EncryptionBackend",
    "EncryptionBackendUnavailableError",
    "EncryptionError",
    "KeyringEncryptionBackend",
    "PassphraseEncryptionBackend",
]
