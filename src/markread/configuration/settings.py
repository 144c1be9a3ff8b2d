"""Typed settings management for MarkRead remote repositories.

This module wraps user configuration in Pydantic models so the connector,
the bridge and CLI commands can rely on validated settings. Values come from
``~/.markread/config.json`` and may be overridden per process through
``MARKREAD_*`` environment variables.
"""

from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, ValidationError, field_validator

from markread import __version__
from markread.errors import InvalidConfigError


DEFAULT_DATA_DIR = Path.home() / ".markread"
DEFAULT_CONFIG_PATH = DEFAULT_DATA_DIR / "config.json"
DEFAULT_KEYRING_SERVICE = "markread"
# Public OAuth App client id for the MarkRead desktop app
DEFAULT_GITHUB_CLIENT_ID = "Ov23liWG79zW29xRrTPN"


class RemoteSettings(BaseModel):
    """Configuration for the remote repository connector."""

    data_dir: Path = Field(
        default=DEFAULT_DATA_DIR,
        description="Private data directory holding credentials and audit logs",
    )
    request_timeout_seconds: float = Field(
        30.0, gt=0, le=300, description="Bounded timeout for provider API calls"
    )
    connectivity_timeout_seconds: float = Field(
        5.0, gt=0, le=60, description="Timeout for connectivity probes"
    )
    connectivity_interval_seconds: float = Field(
        60.0, ge=5, description="Interval between background connectivity checks"
    )
    user_agent: str = Field(
        default=f"MarkRead/{__version__}", description="User-Agent sent to providers"
    )
    github_api_url: str = Field(default="https://api.github.com")
    github_oauth_url: str = Field(default="https://github.com")
    azure_devops_url: str = Field(default="https://dev.azure.com")
    github_client_id: str = Field(
        default=DEFAULT_GITHUB_CLIENT_ID, description="OAuth App client id for Device Flow"
    )
    oauth_scopes: List[str] = Field(default_factory=lambda: ["repo", "user:email"])
    device_flow_retention_seconds: float = Field(
        300.0, ge=0, description="How long finished sign-in sessions stay queryable"
    )
    keyring_service: str = Field(default=DEFAULT_KEYRING_SERVICE)

    @field_validator("github_api_url", "github_oauth_url", "azure_devops_url")
    @classmethod
    def _validate_https(cls, value: str) -> str:
        if not value.startswith("https://"):
            raise ValueError("provider URLs must use https://")
        return value.rstrip("/")

    @field_validator("github_client_id", "keyring_service")
    @classmethod
    def _validate_not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("value cannot be empty")
        return value.strip()

    @property
    def credentials_path(self) -> Path:
        return self.data_dir / "credentials.json"

    @property
    def audit_dir(self) -> Path:
        return self.data_dir / "audit"


class Settings(BaseModel):
    """Root configuration state."""

    remote: RemoteSettings = Field(default_factory=RemoteSettings)


def load_settings(path: Path = DEFAULT_CONFIG_PATH) -> Settings:
    """Load settings from disk or raise if invalid."""

    if not path.exists():
        raise FileNotFoundError(f"Settings file not found at {path}")
    try:
        payload = json.loads(path.read_text(encoding="utf-8"))
        return Settings.model_validate(payload)
    except (json.JSONDecodeError, ValidationError) as exc:
        raise InvalidConfigError(f"Invalid configuration: {exc}") from exc


def save_settings(settings: Settings, path: Path = DEFAULT_CONFIG_PATH) -> None:
    """Persist settings to disk."""

    payload = settings.model_dump(mode="json")
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(payload, indent=2), encoding="utf-8")


def bootstrap_settings(
    *,
    path: Path = DEFAULT_CONFIG_PATH,
    overrides: Optional[Dict[str, Any]] = None,
) -> Settings:
    """Create or load settings respecting explicit and environment overrides.

    Explicit overrides are keys of ``RemoteSettings``. Environment overrides win
    over both the file and explicit overrides but are not written back.
    """

    if path.exists():
        settings = load_settings(path)
    else:
        settings = Settings()
        save_settings(settings, path)

    merged = settings.model_dump(mode="python")
    merged["remote"] = _apply_overrides(merged["remote"], overrides or {})
    merged = _apply_env_overrides(merged)

    try:
        resolved = Settings.model_validate(merged)
    except ValidationError as exc:
        raise InvalidConfigError(f"Invalid configuration override: {exc}") from exc
    _ensure_directories(resolved)
    return resolved


def _apply_overrides(base: Dict[str, Any], overrides: Dict[str, Any]) -> Dict[str, Any]:
    merged = base.copy()
    for key, value in overrides.items():
        merged[key] = value
    return merged


def _apply_env_overrides(data: Dict[str, Any]) -> Dict[str, Any]:
    remote = data.setdefault("remote", {})
    _set_env_override(remote, "data_dir", "MARKREAD_DATA_DIR")
    _set_env_override(remote, "github_client_id", "MARKREAD_GITHUB_CLIENT_ID")
    _set_env_override(remote, "github_api_url", "MARKREAD_GITHUB_API_URL")
    _set_env_override(remote, "azure_devops_url", "MARKREAD_AZURE_DEVOPS_URL")
    _set_env_override(remote, "keyring_service", "MARKREAD_KEYRING_SERVICE")
    _set_env_override(remote, "user_agent", "MARKREAD_USER_AGENT")
    _set_env_override(remote, "request_timeout_seconds", "MARKREAD_REQUEST_TIMEOUT", cast_float=True)
    _set_env_override(
        remote, "connectivity_timeout_seconds", "MARKREAD_CONNECTIVITY_TIMEOUT", cast_float=True
    )
    _set_env_override(
        remote, "connectivity_interval_seconds", "MARKREAD_CONNECTIVITY_INTERVAL", cast_float=True
    )
    _set_env_override(remote, "oauth_scopes", "MARKREAD_OAUTH_SCOPES", cast_list=True)
    return data


def _set_env_override(
    mapping: Dict[str, Any],
    key: str,
    env_name: str,
    *,
    cast_float: bool = False,
    cast_list: bool = False,
) -> None:
    raw = os.getenv(env_name)
    if raw is None:
        return
    if cast_float:
        try:
            mapping[key] = float(raw)
        except ValueError as exc:
            raise InvalidConfigError(f"{env_name} must be a number, got {raw!r}") from exc
    elif cast_list:
        mapping[key] = [item.strip() for item in raw.replace(",", " ").split() if item.strip()]
    else:
        mapping[key] = raw


def _ensure_directories(settings: Settings) -> None:
    settings.remote.data_dir.mkdir(parents=True, exist_ok=True)


__all__ = [
    "DEFAULT_CONFIG_PATH",
    "DEFAULT_DATA_DIR",
    "DEFAULT_GITHUB_CLIENT_ID",
    "DEFAULT_KEYRING_SERVICE",
    "RemoteSettings",
    "Settings",
    "bootstrap_settings",
    "load_settings",
    "save_settings",
]
