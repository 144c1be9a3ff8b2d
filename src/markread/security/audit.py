"""Tamper-evident audit trail for credential lifecycle events.

Each line of ``credentials.log`` is a JSON object chained to its predecessor
through ``chain_prev``/``chain_hash``; editing or deleting a line breaks the
chain and :meth:`AuditLogger.verify` reports it. Events never carry token
material, only hashed credential identifiers.
"""

from __future__ import annotations

import hashlib
import json
import logging
import os
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, Iterable, Optional

logger = logging.getLogger(__name__)


def hash_identifier(value: str) -> str:
    """Return a short, stable, non-reversible identifier for logs."""
    return hashlib.sha256(value.encode("utf-8")).hexdigest()[:16]


@dataclass(frozen=True)
class AuditEvent:
    """Represents a structured audit event."""

    action: str
    status: str
    subject_hash: str
    timestamp: datetime
    provider: Optional[str] = None
    auth_method: Optional[str] = None
    metadata: Dict[str, object] = field(default_factory=dict)

    def to_payload(self) -> Dict[str, object]:
        payload: Dict[str, object] = {
            "action": self.action,
            "status": self.status,
            "subject_hash": self.subject_hash,
            "timestamp": self.timestamp.isoformat(),
        }
        if self.provider:
            payload["provider"] = self.provider
        if self.auth_method:
            payload["auth_method"] = self.auth_method
        if self.metadata:
            payload["metadata"] = self.metadata
        return payload


@dataclass
class AuditLogger:
    """Writes append-only tamper-evident audit logs.

    Attributes:
        output_dir: Directory for audit log files
        filename: Name of the audit log file
        manifest_name: Name of the manifest holding the chain head
    """

    output_dir: Path
    filename: str = "credentials.log"
    manifest_name: str = "audit_manifest.json"

    def __post_init__(self) -> None:
        self.output_dir.mkdir(parents=True, exist_ok=True)
        self._path = self.output_dir / self.filename
        self._manifest_path = self.output_dir / self.manifest_name
        if not self._manifest_path.exists():
            self._save_manifest({"last_hash": None})

    @property
    def path(self) -> Path:
        return self._path

    def record(self, event: AuditEvent) -> None:
        payload = self._augment_with_chain(event.to_payload())
        with self._path.open("a", encoding="utf-8") as fp:
            fp.write(json.dumps(payload, separators=(",", ":")) + "\n")

    def record_credential_event(
        self,
        *,
        action: str,
        status: str,
        subject: str,
        provider: Optional[str] = None,
        auth_method: Optional[str] = None,
        metadata: Optional[Dict[str, object]] = None,
    ) -> None:
        """Record a credential event; ``subject`` is hashed before writing."""
        event = AuditEvent(
            action=action,
            status=status,
            subject_hash=hash_identifier(subject),
            timestamp=datetime.now(timezone.utc),
            provider=provider,
            auth_method=auth_method,
            metadata=metadata or {},
        )
        self.record(event)

    def verify(self) -> bool:
        """Verify the integrity of the audit log chain.

        Returns:
            True if chain is valid, False if tampered
        """
        if not self._path.exists():
            return True
        previous_hash = None
        last_hash = None
        for entry in self.iter_events():
            if entry.get("chain_prev") != previous_hash:
                return False
            current_hash = entry.get("chain_hash")
            if current_hash != _compute_chain_hash(entry):
                return False
            previous_hash = current_hash
            last_hash = current_hash
        # Truncating the tail leaves a valid prefix; the manifest catches it
        return last_hash == self._load_manifest().get("last_hash")

    def iter_events(self) -> Iterable[Dict[str, object]]:
        if not self._path.exists():
            return
        with self._path.open("r", encoding="utf-8") as fp:
            for line in fp:
                line = line.strip()
                if not line:
                    continue
                try:
                    yield json.loads(line)
                except json.JSONDecodeError:
                    logger.warning("Failed to parse audit line as JSON")
                    yield {}

    def _augment_with_chain(self, payload: Dict[str, object]) -> Dict[str, object]:
        manifest = self._load_manifest()
        augmented = dict(payload)
        augmented["chain_prev"] = manifest.get("last_hash")
        augmented["chain_hash"] = _compute_chain_hash(augmented)
        manifest["last_hash"] = augmented["chain_hash"]
        self._save_manifest(manifest)
        return augmented

    def _load_manifest(self) -> Dict[str, object]:
        return json.loads(self._manifest_path.read_text(encoding="utf-8"))

    def _save_manifest(self, manifest: Dict[str, object]) -> None:
        tmp_path = self._manifest_path.with_suffix(".tmp")
        tmp_path.write_text(json.dumps(manifest, indent=2), encoding="utf-8")
        os.replace(tmp_path, self._manifest_path)


def _compute_chain_hash(payload: Dict[str, object]) -> str:
    canonical = json.dumps(
        {k: payload[k] for k in sorted(payload) if k != "chain_hash"},
        separators=(",", ":"),
    )
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


__all__ = ["AuditEvent", "AuditLogger", "hash_identifier"]
