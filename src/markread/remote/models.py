"""Data models for remote repositories.

Provider wire responses are decoded into these models at the client boundary,
so the connector, cache and bridge never branch on GitHub or Azure DevOps
response shapes.
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel


# ---------------------------------------------------------------------------
# Enums and constants
# ---------------------------------------------------------------------------


class Provider(str, Enum):
    """Supported Git hosting providers."""

    GITHUB = "github"
    AZURE_DEVOPS = "azure-devops"


class AuthMethod(str, Enum):
    """How a credential was obtained."""

    OAUTH = "oauth"
    PAT = "pat"


class TreeNodeType(str, Enum):
    FILE = "file"
    DIRECTORY = "directory"


PROVIDER_HOSTS = {
    Provider.GITHUB: "github.com",
    Provider.AZURE_DEVOPS: "dev.azure.com",
}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class WireModel(BaseModel):
    """Base for models crossing the UI bridge (camelCase on the wire)."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_wire(self) -> dict:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


# ---------------------------------------------------------------------------
# Repository models
# ---------------------------------------------------------------------------


class Repository(WireModel):
    """A remote repository resolved from a URL. Immutable once resolved."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    provider: Provider
    owner: str = Field(..., description="GitHub owner or Azure DevOps organization")
    project: Optional[str] = Field(default=None, description="Azure DevOps project")
    name: str = Field(..., description="Repository name")
    url: str = Field(..., description="Canonical https URL")
    repository_id: str = Field(..., description="Stable host/path key")

    @property
    def display_name(self) -> str:
        if self.provider == Provider.AZURE_DEVOPS:
            return f"{self.owner}/{self.project}/{self.name}"
        return f"{self.owner}/{self.name}"


class BranchInfo(WireModel):
    """A branch as seen at fetch time."""

    name: str
    is_default: bool = False
    sha: Optional[str] = Field(default=None, description="Head commit at fetch time")

    @field_validator("name")
    @classmethod
    def _validate_name(cls, value: str) -> str:
        if not value or ":" in value:
            raise ValueError("branch name must be non-empty and cannot contain ':'")
        return value


class ConnectedRepository(WireModel):
    """Result of a successful connect. The connector does not retain it."""

    repository_id: str
    repository: Repository
    current_branch: str
    default_branch: str
    branches: List[BranchInfo] = Field(default_factory=list)
    auth_method: AuthMethod

    @property
    def identity(self) -> str:
        from .identity import identity_for

        return identity_for(self.repository_id, self.current_branch)


class RepositoryInfo(WireModel):
    """Read-only branch discovery result."""

    repository_id: str
    branches: List[BranchInfo] = Field(default_factory=list)
    default_branch: str
    default_branch_changed: bool = Field(
        default=False,
        description="True when a caller-supplied known default differs from the provider's",
    )


# ---------------------------------------------------------------------------
# Tree and file models
# ---------------------------------------------------------------------------


class TreeNode(WireModel):
    """A file or directory, path relative to the repository root."""

    path: str
    name: str
    type: TreeNodeType
    sha: Optional[str] = None
    size: Optional[int] = None
    children: Optional[List["TreeNode"]] = None

    @property
    def is_directory(self) -> bool:
        return self.type == TreeNodeType.DIRECTORY

    def iter_files(self):
        if not self.is_directory:
            yield self
            return
        for child in self.children or []:
            yield from child.iter_files()


TreeNode.model_rebuild()


class TreeResult(WireModel):
    """Tree snapshot returned by the connector."""

    repository_id: str
    branch: str
    nodes: List[TreeNode] = Field(default_factory=list)
    markdown_only: bool = True
    fetched_at: datetime = Field(default_factory=_utcnow)
    file_count: int = 0
    markdown_file_count: int = 0
    truncated: bool = False
    from_cache: bool = False


class FileContent(WireModel):
    """Decoded file content from a live fetch."""

    path: str
    branch: str
    content: str
    sha: Optional[str] = None
    size: int = 0
    is_markdown: bool = False


# ---------------------------------------------------------------------------
# Device flow models
# ---------------------------------------------------------------------------


class DeviceFlowStatus(str, Enum):
    """Device Flow session states."""

    INITIATING = "initiating"
    PENDING = "pending"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"
    EXPIRED = "expired"

    @property
    def is_terminal(self) -> bool:
        return self not in (DeviceFlowStatus.INITIATING, DeviceFlowStatus.PENDING)


class DeviceFlowStart(WireModel):
    """What the UI shows the user after initiation."""

    session_id: str
    provider: Provider
    user_code: str
    verification_uri: str
    expires_in: int
    interval: int
    browser_opened: bool = False


class DeviceFlowState(WireModel):
    """Result of one status tick."""

    session_id: str
    status: DeviceFlowStatus
    interval: int = Field(..., description="Current authoritative poll interval in seconds")
    expires_at: datetime
    next_poll_at: Optional[datetime] = None
    error: Optional[str] = None
    error_code: Optional[str] = Field(default=None, description="Code of a transient poll failure while pending")
    user_login: Optional[str] = None


__all__ = [
    "AuthMethod",
    "BranchInfo",
    "ConnectedRepository",
    "DeviceFlowStart",
    "DeviceFlowState",
    "DeviceFlowStatus",
    "FileContent",
    "PROVIDER_HOSTS",
    "Provider",
    "Repository",
    "RepositoryInfo",
    "TreeNode",
    "TreeNodeType",
    "TreeResult",
    "WireModel",
]
