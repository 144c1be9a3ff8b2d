"""Shared fixtures for MarkRead tests."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Optional

import pytest

from markread.security.audit import AuditLogger
from markread.security.encryption import KeyringEncryptionBackend


# ---------------------------------------------------------------------------
# Mock keyring
# ---------------------------------------------------------------------------


class MockKeyring:
    """In-memory keyring exposing the subset of the keyring API we use."""

    def __init__(self):
        self.storage = {}

    def set_password(self, service: str, username: str, password: str):
        self.storage[f"{service}:{username}"] = password

    def get_password(self, service: str, username: str) -> Optional[str]:
        return self.storage.get(f"{service}:{username}")

    def delete_password(self, service: str, username: str):
        self.storage.pop(f"{service}:{username}", None)


class FakeClock:
    """Controllable ``now()`` for time-dependent components."""

    def __init__(self, start: Optional[datetime] = None):
        self.current = start or datetime(2025, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.current

    def advance(self, seconds: float) -> None:
        self.current += timedelta(seconds=seconds)


@pytest.fixture
def mock_keyring():
    return MockKeyring()


@pytest.fixture
def keyring_backend(mock_keyring):
    return KeyringEncryptionBackend(service_name="markread-test", keyring_module=mock_keyring)


@pytest.fixture
def audit_logger(tmp_path):
    return AuditLogger(tmp_path / "audit")


@pytest.fixture
def clock():
    return FakeClock()
