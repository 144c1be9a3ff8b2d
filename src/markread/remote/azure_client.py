"""Azure DevOps Git REST API client (api-version 7.1).

Endpoints used (all reads), relative to
``https://dev.azure.com/{organization}/{project}/_apis/git/repositories/{repository}``:

- ``""`` for the default branch (``refs/heads/<name>``)
- ``/refs?filter=heads/`` (continuation-token paginated)
- ``/items?recursionLevel=Full`` with a branch version descriptor for trees
- ``/items?path=...&includeContent=true`` for file content

Token validation uses the organization's ``_apis/connectionData``, or the
profile service when no repository is known. Personal access tokens are sent
with Basic auth (empty user name), OAuth tokens as Bearer tokens.
"""

from __future__ import annotations

import base64
import binascii
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional
from urllib.parse import quote

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from markread.errors import (
    AuthFailedError,
    NetworkUnreachableError,
    PathNotFoundError,
    ProviderResponseError,
)

from .api_client import Credential, ProviderClient, ProviderTransport, decode_json
from .models import AuthMethod, BranchInfo, FileContent, Provider, Repository, TreeNodeType
from .tree import TreeEntry, TreeListing, build_tree, is_markdown_path, normalize_tree_path

logger = logging.getLogger(__name__)

API_VERSION = "7.1"
CONNECTION_DATA_API_VERSION = "7.1-preview"
PROFILE_URL = "https://app.vssps.visualstudio.com/_apis/profile/profiles/me"
HEADS_PREFIX = "refs/heads/"
MAX_REF_PAGES = 50


# ---------------------------------------------------------------------------
# Wire models
# ---------------------------------------------------------------------------


class _AzureModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class _AzureRepository(_AzureModel):
    id: str
    name: str
    default_branch: Optional[str] = Field(default=None, alias="defaultBranch")


class _AzureRef(_AzureModel):
    name: str
    object_id: Optional[str] = Field(default=None, alias="objectId")


class _AzureRefList(_AzureModel):
    value: List[_AzureRef] = Field(default_factory=list)


class _AzureItem(_AzureModel):
    path: str
    object_id: Optional[str] = Field(default=None, alias="objectId")
    git_object_type: Optional[str] = Field(default=None, alias="gitObjectType")
    is_folder: bool = Field(default=False, alias="isFolder")
    size: Optional[int] = None
    content: Optional[str] = None
    content_metadata: Optional[Dict[str, Any]] = Field(default=None, alias="contentMetadata")


class _AzureItemList(_AzureModel):
    value: List[_AzureItem] = Field(default_factory=list)


class _AzureIdentity(_AzureModel):
    id: Optional[str] = None
    provider_display_name: Optional[str] = Field(default=None, alias="providerDisplayName")


class _AzureConnectionData(_AzureModel):
    authenticated_user: Optional[_AzureIdentity] = Field(default=None, alias="authenticatedUser")


class _AzureProfile(_AzureModel):
    display_name: Optional[str] = Field(default=None, alias="displayName")
    email_address: Optional[str] = Field(default=None, alias="emailAddress")


def _decode(model: type, payload: Any, what: str):
    try:
        return model.model_validate(payload)
    except ValidationError as exc:
        raise ProviderResponseError(
            f"Unexpected Azure DevOps {what} response",
            details={"provider": Provider.AZURE_DEVOPS.value, "errors": exc.error_count()},
        ) from exc


def _short_branch(ref_name: str) -> str:
    return ref_name[len(HEADS_PREFIX):] if ref_name.startswith(HEADS_PREFIX) else ref_name


# ---------------------------------------------------------------------------
# Client
# ---------------------------------------------------------------------------


@dataclass
class AzureDevOpsClient(ProviderClient):
    """Provider client for dev.azure.com repositories."""

    transport: ProviderTransport
    base_url: str = "https://dev.azure.com"
    profile_url: str = PROFILE_URL
    provider: Provider = Provider.AZURE_DEVOPS

    def __post_init__(self) -> None:
        self.base_url = self.base_url.rstrip("/")
        self.transport.default_headers.setdefault("Accept", "application/json")

    def _repo_url(self, repository: Repository) -> str:
        return (
            f"{self.base_url}/{quote(repository.owner, safe='')}/{quote(repository.project or '', safe='')}"
            f"/_apis/git/repositories/{quote(repository.name, safe='')}"
        )

    @staticmethod
    def _authorization(credential: Optional[Credential]) -> Optional[str]:
        if credential is None:
            return None
        if credential.auth_method == AuthMethod.PAT:
            encoded = base64.b64encode(f":{credential.token}".encode("utf-8")).decode("ascii")
            return f"Basic {encoded}"
        return f"Bearer {credential.token}"

    @staticmethod
    def _version_params(branch: str) -> Dict[str, str]:
        return {
            "versionDescriptor.version": branch,
            "versionDescriptor.versionType": "branch",
            "api-version": API_VERSION,
        }

    async def get_default_branch(self, repository: Repository, credential: Optional[Credential]) -> Optional[str]:
        payload = await self.transport.get_json(
            self._repo_url(repository),
            authorization=self._authorization(credential),
            params={"api-version": API_VERSION},
        )
        repo = _decode(_AzureRepository, payload, "repository")
        return _short_branch(repo.default_branch) if repo.default_branch else None

    async def list_branches(self, repository: Repository, credential: Optional[Credential]) -> List[BranchInfo]:
        default_branch = await self.get_default_branch(repository, credential)
        authorization = self._authorization(credential)

        branches: List[BranchInfo] = []
        continuation: Optional[str] = None
        for _ in range(MAX_REF_PAGES):
            params = {"filter": "heads/", "api-version": API_VERSION}
            if continuation:
                params["continuationToken"] = continuation
            response = await self.transport.request(
                "GET", f"{self._repo_url(repository)}/refs", authorization=authorization, params=params
            )
            refs = _decode(_AzureRefList, decode_json(response, self.provider), "refs")
            for ref in refs.value:
                name = _short_branch(ref.name)
                branches.append(BranchInfo(name=name, sha=ref.object_id, is_default=name == default_branch))
            continuation = response.headers.get("x-ms-continuationtoken")
            if not continuation:
                break
        else:
            logger.warning(f"Ref listing for {repository.display_name} stopped after {MAX_REF_PAGES} pages")

        if branches and not any(branch.is_default for branch in branches):
            if default_branch:
                branches.insert(0, BranchInfo(name=default_branch, is_default=True))
            else:
                # Repository without a configured default; first branch wins
                branches[0] = branches[0].model_copy(update={"is_default": True})
        logger.info(f"Listed {len(branches)} branches for {repository.display_name}")
        return branches

    async def fetch_tree(
        self,
        repository: Repository,
        branch: str,
        credential: Optional[Credential],
        markdown_only: bool = True,
    ) -> TreeListing:
        params = {"scopePath": "/", "recursionLevel": "Full", **self._version_params(branch)}
        payload = await self.transport.get_json(
            f"{self._repo_url(repository)}/items",
            authorization=self._authorization(credential),
            params=params,
        )
        items = _decode(_AzureItemList, payload, "items")

        entries = []
        for item in items.value:
            path = item.path.strip("/")
            if not path:
                continue
            if item.is_folder or item.git_object_type == "tree":
                entries.append(TreeEntry(path, TreeNodeType.DIRECTORY, item.object_id))
            elif item.git_object_type in (None, "blob"):
                entries.append(TreeEntry(path, TreeNodeType.FILE, item.object_id, item.size))
            # Submodule commits have no readable content
        nodes = build_tree(entries, markdown_only=markdown_only)
        return TreeListing(nodes=nodes, truncated=False, markdown_only=markdown_only)

    async def fetch_file(
        self,
        repository: Repository,
        branch: str,
        path: str,
        credential: Optional[Credential],
    ) -> FileContent:
        clean_path = normalize_tree_path(path)

        def not_found() -> PathNotFoundError:
            return PathNotFoundError(clean_path, branch)

        params = {
            "path": f"/{clean_path}",
            "includeContent": "true",
            "$format": "json",
            **self._version_params(branch),
        }
        payload = await self.transport.get_json(
            f"{self._repo_url(repository)}/items",
            authorization=self._authorization(credential),
            params=params,
            not_found=not_found,
        )
        item = _decode(_AzureItem, payload, "item")
        if item.is_folder or item.git_object_type == "tree":
            raise not_found()

        content = item.content or ""
        metadata = item.content_metadata or {}
        if metadata.get("isBinary") and content:
            try:
                raw = base64.b64decode(content)
            except (binascii.Error, ValueError) as exc:
                raise ProviderResponseError("Azure DevOps returned undecodable file content") from exc
            content = raw.decode("utf-8", errors="replace")
        size = item.size if item.size is not None else len(content.encode("utf-8"))

        return FileContent(
            path=clean_path,
            branch=branch,
            content=content,
            sha=item.object_id,
            size=size,
            is_markdown=is_markdown_path(clean_path),
        )

    async def validate_token(self, credential: Credential, repository: Optional[Repository] = None) -> str:
        authorization = self._authorization(credential)
        if repository is None:
            payload = await self.transport.get_json(
                self.profile_url, authorization=authorization, params={"api-version": API_VERSION}
            )
            profile = _decode(_AzureProfile, payload, "profile")
            if not profile.display_name:
                raise AuthFailedError("Azure DevOps did not recognize the token")
            return profile.display_name

        payload = await self.transport.get_json(
            f"{self.base_url}/{quote(repository.owner, safe='')}/_apis/connectionData",
            authorization=authorization,
            params={"api-version": CONNECTION_DATA_API_VERSION},
        )
        data = _decode(_AzureConnectionData, payload, "connectionData")
        user = data.authenticated_user
        if user is None or not user.provider_display_name or user.provider_display_name == "Anonymous":
            raise AuthFailedError("Azure DevOps did not recognize the token")
        # Confirms the token can also see the repository
        await self.get_default_branch(repository, credential)
        return user.provider_display_name

    async def probe(self, timeout_seconds: float) -> None:
        response = await self.transport.request(
            "GET",
            self.base_url,
            check_rate_limit=False,
            raise_for_status=False,
            timeout=timeout_seconds,
        )
        # Any answer below 500 (including sign-in redirects) proves reachability
        if response.status_code >= 500:
            raise NetworkUnreachableError(
                f"Azure DevOps returned server error {response.status_code}",
                details={"provider": self.provider.value, "status_code": response.status_code},
            )


__all__ = ["AzureDevOpsClient", "API_VERSION"]
