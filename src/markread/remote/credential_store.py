"""Credential Store: encrypted-at-rest tokens for providers and repositories.

Entries live in a single JSON file under the private data directory, guarded
by a ``filelock.FileLock`` and written atomically. Only ciphertext produced by
an :class:`~markread.security.encryption.EncryptionBackend` is persisted.

Two kinds of entries exist:

- repository-scoped, at most one per ``(repository_id, auth_method)``
- provider-wide, at most one per provider (OAuth tokens valid for every
  repository of that provider)

Blocking keychain and file work runs in a worker thread so the event loop
never stalls on a slow platform keystore. Token material is never logged;
audit events carry hashed identifiers only.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Union

from filelock import FileLock
from pydantic import BaseModel, Field, ValidationError

from markread.errors import EncryptionUnavailableError
from markread.security.audit import AuditLogger, hash_identifier
from markread.security.encryption import (
    DecryptionError,
    EncryptedPayload,
    EncryptionBackend,
    EncryptionBackendUnavailableError,
    EncryptionError,
)

from .api_client import Credential
from .models import AuthMethod, Provider

logger = logging.getLogger(__name__)

REPOSITORY_SCOPE = "repository"
PROVIDER_SCOPE = "provider"


class CredentialEntry(BaseModel):
    """One persisted credential record. ``encrypted_token`` is opaque."""

    scope: str = Field(..., description="repository or provider")
    subject: str = Field(..., description="Repository id or provider name")
    auth_method: AuthMethod
    encrypted_token: Dict[str, Any]
    expires_at: Optional[datetime] = None
    created_at: datetime

    @property
    def key(self) -> str:
        return _entry_key(self.scope, self.subject, self.auth_method)

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at is not None and self.expires_at <= now


class CredentialSummary(BaseModel):
    """Token-free view of an entry, safe to display."""

    scope: str
    subject: str
    auth_method: AuthMethod
    expires_at: Optional[datetime] = None
    created_at: datetime


def _entry_key(scope: str, subject: str, auth_method: AuthMethod) -> str:
    if scope == PROVIDER_SCOPE:
        return f"{PROVIDER_SCOPE}:{subject}"
    return f"{REPOSITORY_SCOPE}:{subject}:{auth_method.value}"


def _ensure_timezone(value: Optional[datetime]) -> Optional[datetime]:
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


@dataclass
class CredentialStore:
    """Process-wide credential store; construct once and inject.

    Attributes:
        path: JSON file holding encrypted entries
        backend: Encryption capability (keychain, passphrase, ...)
        audit_logger: Optional tamper-evident audit trail
    """

    path: Path
    backend: EncryptionBackend
    audit_logger: Optional[AuditLogger] = None
    _now: Callable[[], datetime] = field(default=lambda: datetime.now(timezone.utc), repr=False)

    def __post_init__(self) -> None:
        self.path = Path(self.path).expanduser()
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = FileLock(str(self.path.with_suffix(".lock")))

    # ------------------------------------------------------------------
    # Repository-scoped entries
    # ------------------------------------------------------------------

    async def save(
        self,
        repository_id: str,
        auth_method: AuthMethod,
        token: str,
        expires_at: Optional[datetime] = None,
    ) -> None:
        """Encrypt and persist a token; fails closed without encryption.

        Raises:
            EncryptionUnavailableError: the backend cannot encrypt
        """
        await asyncio.to_thread(
            self._save_sync, REPOSITORY_SCOPE, repository_id, auth_method, token, expires_at
        )

    async def get(self, repository_id: str, auth_method: AuthMethod) -> Optional[str]:
        credential = await self.get_credential(repository_id, auth_method)
        return credential.token if credential else None

    async def get_credential(self, repository_id: str, auth_method: AuthMethod) -> Optional[Credential]:
        return await asyncio.to_thread(self._get_sync, REPOSITORY_SCOPE, repository_id, auth_method)

    async def delete(self, repository_id: str, auth_method: Optional[AuthMethod] = None) -> int:
        """Delete one or all auth methods for a repository; returns count removed."""
        methods = [auth_method] if auth_method else list(AuthMethod)
        return await asyncio.to_thread(self._delete_sync, REPOSITORY_SCOPE, repository_id, methods, "delete")

    async def has(self, repository_id: str, auth_method: Optional[AuthMethod] = None) -> bool:
        """True if a non-expired entry exists (does not decrypt)."""
        methods = [auth_method] if auth_method else list(AuthMethod)
        return await asyncio.to_thread(self._has_sync, REPOSITORY_SCOPE, repository_id, methods)

    # ------------------------------------------------------------------
    # Provider-wide entries
    # ------------------------------------------------------------------

    async def store_token(
        self,
        provider: Union[Provider, str],
        token: str,
        *,
        auth_method: AuthMethod = AuthMethod.OAUTH,
        expires_at: Optional[datetime] = None,
    ) -> None:
        """Persist the single provider-wide token, replacing any previous one."""
        await asyncio.to_thread(
            self._save_sync, PROVIDER_SCOPE, Provider(provider).value, auth_method, token, expires_at
        )

    async def get_token(self, provider: Union[Provider, str]) -> Optional[str]:
        credential = await self.get_provider_credential(provider)
        return credential.token if credential else None

    async def get_provider_credential(self, provider: Union[Provider, str]) -> Optional[Credential]:
        # Provider entries are keyed without the method; any method matches
        return await asyncio.to_thread(self._get_sync, PROVIDER_SCOPE, Provider(provider).value, AuthMethod.OAUTH)

    async def delete_token(self, provider: Union[Provider, str]) -> int:
        return await asyncio.to_thread(
            self._delete_sync, PROVIDER_SCOPE, Provider(provider).value, [AuthMethod.OAUTH], "delete"
        )

    async def has_token(self, provider: Union[Provider, str]) -> bool:
        return await asyncio.to_thread(self._has_sync, PROVIDER_SCOPE, Provider(provider).value, [AuthMethod.OAUTH])

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    async def list_entries(self) -> List[CredentialSummary]:
        entries = await asyncio.to_thread(self._load_entries)
        return [
            CredentialSummary(
                scope=entry.scope,
                subject=entry.subject,
                auth_method=entry.auth_method,
                expires_at=entry.expires_at,
                created_at=entry.created_at,
            )
            for entry in entries.values()
        ]

    async def purge_expired(self) -> int:
        return await asyncio.to_thread(self._purge_expired_sync)

    async def clear(self) -> int:
        return await asyncio.to_thread(self._clear_sync)

    # ------------------------------------------------------------------
    # Synchronous internals (run in worker threads)
    # ------------------------------------------------------------------

    def _save_sync(
        self,
        scope: str,
        subject: str,
        auth_method: AuthMethod,
        token: str,
        expires_at: Optional[datetime],
    ) -> None:
        if not token:
            raise ValueError("token cannot be empty")
        if not self.backend.is_available():
            self._emit_audit_event("save", "refused", scope, subject, auth_method)
            raise EncryptionUnavailableError(
                "OS secure storage is unavailable; refusing to store credentials in plaintext"
            )
        try:
            payload = self.backend.encrypt(token)
        except EncryptionBackendUnavailableError as exc:
            self._emit_audit_event("save", "refused", scope, subject, auth_method)
            raise EncryptionUnavailableError(str(exc)) from exc
        except EncryptionError as exc:
            raise EncryptionUnavailableError(f"Credential encryption failed: {exc}") from exc

        entry = CredentialEntry(
            scope=scope,
            subject=subject,
            auth_method=auth_method,
            encrypted_token=payload.to_dict(),
            expires_at=_ensure_timezone(expires_at),
            created_at=self._now(),
        )
        with self._lock:
            entries = self._load_entries()
            action = "update" if entry.key in entries else "create"
            entries[entry.key] = entry
            self._write_entries(entries)
        self._emit_audit_event(action, "succeeded", scope, subject, auth_method)
        logger.info(f"Stored {auth_method.value} credential for {scope} {hash_identifier(subject)}")

    def _get_sync(self, scope: str, subject: str, auth_method: AuthMethod) -> Optional[Credential]:
        key = _entry_key(scope, subject, auth_method)
        entry = self._load_entries().get(key)
        if entry is None:
            return None

        if entry.is_expired(self._now()):
            self._remove_key(key)
            self._emit_audit_event("purge", "expired", scope, subject, entry.auth_method)
            logger.info(f"Removed expired credential for {scope} {hash_identifier(subject)}")
            return None

        if not self.backend.is_available():
            # Entry may still be valid once the keychain is back; keep it
            logger.warning("Credential storage unavailable; treating stored credential as absent")
            return None

        try:
            token = self.backend.decrypt(EncryptedPayload.from_dict(entry.encrypted_token))
        except EncryptionBackendUnavailableError as exc:
            logger.warning(f"Credential storage unavailable ({exc}); treating stored credential as absent")
            return None
        except DecryptionError:
            self._remove_key(key)
            self._emit_audit_event("purge", "corrupted", scope, subject, entry.auth_method)
            logger.warning(f"Purged undecryptable credential for {scope} {hash_identifier(subject)}")
            return None
        return Credential(token=token, auth_method=entry.auth_method)

    def _has_sync(self, scope: str, subject: str, methods: List[AuthMethod]) -> bool:
        entries = self._load_entries()
        now = self._now()
        for method in methods:
            entry = entries.get(_entry_key(scope, subject, method))
            if entry is not None and not entry.is_expired(now):
                return True
        return False

    def _delete_sync(self, scope: str, subject: str, methods: List[AuthMethod], action: str) -> int:
        removed: List[CredentialEntry] = []
        with self._lock:
            entries = self._load_entries()
            for method in methods:
                entry = entries.pop(_entry_key(scope, subject, method), None)
                if entry is not None:
                    removed.append(entry)
            if removed:
                self._write_entries(entries)
        for entry in removed:
            self._emit_audit_event(action, "succeeded", scope, subject, entry.auth_method)
        return len(removed)

    def _purge_expired_sync(self) -> int:
        now = self._now()
        with self._lock:
            entries = self._load_entries()
            expired = [entry for entry in entries.values() if entry.is_expired(now)]
            for entry in expired:
                entries.pop(entry.key, None)
            if expired:
                self._write_entries(entries)
        for entry in expired:
            self._emit_audit_event("purge", "expired", entry.scope, entry.subject, entry.auth_method)
        return len(expired)

    def _clear_sync(self) -> int:
        with self._lock:
            entries = self._load_entries()
            self._write_entries({})
        for entry in entries.values():
            self._emit_audit_event("delete", "succeeded", entry.scope, entry.subject, entry.auth_method)
        return len(entries)

    def _remove_key(self, key: str) -> None:
        with self._lock:
            entries = self._load_entries()
            if entries.pop(key, None) is not None:
                self._write_entries(entries)

    def _load_entries(self) -> Dict[str, CredentialEntry]:
        with self._lock:
            if not self.path.exists():
                return {}
            try:
                raw = json.loads(self.path.read_text(encoding="utf-8"))
            except json.JSONDecodeError:
                logger.warning("Credential file is not valid JSON; ignoring its contents")
                return {}
        entries: Dict[str, CredentialEntry] = {}
        for key, payload in (raw.get("entries") or {}).items():
            try:
                entries[key] = CredentialEntry.model_validate(payload)
            except ValidationError:
                logger.warning("Skipping malformed credential record")
        return entries

    def _write_entries(self, entries: Dict[str, CredentialEntry]) -> None:
        payload = {
            "version": 1,
            "entries": {key: entry.model_dump(mode="json") for key, entry in entries.items()},
        }
        with self._lock:
            tmp = self.path.with_suffix(".tmp")
            tmp.write_text(json.dumps(payload, indent=2), encoding="utf-8")
            os.chmod(tmp, 0o600)
            os.replace(tmp, self.path)

    def _emit_audit_event(
        self,
        action: str,
        status: str,
        scope: str,
        subject: str,
        auth_method: AuthMethod,
    ) -> None:
        if self.audit_logger is None:
            return
        provider = subject if scope == PROVIDER_SCOPE else None
        self.audit_logger.record_credential_event(
            action=action,
            status=status,
            subject=f"{scope}:{subject}",
            provider=provider,
            auth_method=auth_method.value,
            metadata={"scope": scope, "backend": getattr(self.backend, "name", "unknown")},
        )


__all__ = [
    "CredentialEntry",
    "CredentialStore",
    "CredentialSummary",
    "PROVIDER_SCOPE",
    "REPOSITORY_SCOPE",
]
