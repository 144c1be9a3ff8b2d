"""At-rest encryption and audit trail for MarkRead credentials."""

from .audit import AuditEvent, AuditLogger, hash_identifier
from .encryption import (
    DecryptionError,
    EncryptedPayload,
    EncryptionBackend,
    EncryptionBackendUnavailableError,
    EncryptionError,
    KeyringEncryptionBackend,
    PassphraseEncryptionBackend,
)

__all__ = [
    "AuditEvent",
    "AuditLogger",
    "DecryptionError",
    "EncryptedPayload",
    "EncryptionBackend",
    "EncryptionBackendUnavailableError",
    "EncryptionError",
    "KeyringEncryptionBackend",
    "PassphraseEncryptionBackend",
    "hash_identifier",
]
