"""GitHub REST API client.

Endpoints used (all reads):

- ``GET /repos/{owner}/{repo}`` for the default branch
- ``GET /repos/{owner}/{repo}/branches`` (paginated, ``per_page=100``)
- ``GET /repos/{owner}/{repo}/git/trees/{branch}?recursive=1``
- ``GET /repos/{owner}/{repo}/contents/{path}?ref={branch}``
- ``GET /user`` for token validation
- ``GET /zen`` for connectivity probes
"""

from __future__ import annotations

import base64
import binascii
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional
from urllib.parse import quote

from pydantic import BaseModel, Field, ValidationError

from markread.errors import NetworkUnreachableError, PathNotFoundError, ProviderResponseError

from .api_client import Credential, ProviderClient, ProviderTransport, decode_json
from .models import BranchInfo, FileContent, Provider, Repository, TreeNodeType
from .tree import TreeEntry, TreeListing, build_tree, is_markdown_path, normalize_tree_path

logger = logging.getLogger(__name__)

GITHUB_API_VERSION = "2022-11-28"
BRANCHES_PER_PAGE = 100
MAX_BRANCH_PAGES = 50


# ---------------------------------------------------------------------------
# Wire models
# ---------------------------------------------------------------------------


class _GitHubCommitRef(BaseModel):
    sha: str


class _GitHubBranch(BaseModel):
    name: str
    commit: _GitHubCommitRef


class _GitHubRepository(BaseModel):
    full_name: str
    default_branch: str
    private: bool = False


class _GitHubTreeItem(BaseModel):
    path: str
    type: str = Field(..., description="blob, tree or commit (submodule)")
    sha: Optional[str] = None
    size: Optional[int] = None


class _GitHubTree(BaseModel):
    sha: Optional[str] = None
    tree: List[_GitHubTreeItem] = Field(default_factory=list)
    truncated: bool = False


class _GitHubContent(BaseModel):
    type: str = "file"
    path: str
    sha: Optional[str] = None
    size: int = 0
    encoding: Optional[str] = None
    content: Optional[str] = None


class _GitHubUser(BaseModel):
    login: str


def _decode(model: type, payload: Any, what: str):
    try:
        return model.model_validate(payload)
    except ValidationError as exc:
        raise ProviderResponseError(
            f"Unexpected GitHub {what} response",
            details={"provider": Provider.GITHUB.value, "errors": exc.error_count()},
        ) from exc


# ---------------------------------------------------------------------------
# Client
# ---------------------------------------------------------------------------


@dataclass
class GitHubClient(ProviderClient):
    """Provider client for github.com repositories."""

    transport: ProviderTransport
    api_url: str = "https://api.github.com"
    provider: Provider = Provider.GITHUB

    def __post_init__(self) -> None:
        self.api_url = self.api_url.rstrip("/")
        self.transport.default_headers.setdefault("Accept", "application/vnd.github+json")
        self.transport.default_headers.setdefault("X-GitHub-Api-Version", GITHUB_API_VERSION)

    def _repo_url(self, repository: Repository) -> str:
        return f"{self.api_url}/repos/{quote(repository.owner, safe='')}/{quote(repository.name, safe='')}"

    @staticmethod
    def _authorization(credential: Optional[Credential]) -> Optional[str]:
        if credential is None:
            return None
        return f"Bearer {credential.token}"

    async def get_default_branch(self, repository: Repository, credential: Optional[Credential]) -> str:
        payload = await self.transport.get_json(
            self._repo_url(repository), authorization=self._authorization(credential)
        )
        return _decode(_GitHubRepository, payload, "repository").default_branch

    async def list_branches(self, repository: Repository, credential: Optional[Credential]) -> List[BranchInfo]:
        default_branch = await self.get_default_branch(repository, credential)
        authorization = self._authorization(credential)

        branches: List[BranchInfo] = []
        url: Optional[str] = f"{self._repo_url(repository)}/branches"
        params: Optional[Dict[str, Any]] = {"per_page": BRANCHES_PER_PAGE}
        for _ in range(MAX_BRANCH_PAGES):
            if url is None:
                break
            response = await self.transport.request("GET", url, authorization=authorization, params=params)
            payload = decode_json(response, self.provider)
            if not isinstance(payload, list):
                raise ProviderResponseError("Unexpected GitHub branches response")
            for item in payload:
                branch = _decode(_GitHubBranch, item, "branch")
                branches.append(
                    BranchInfo(
                        name=branch.name,
                        sha=branch.commit.sha,
                        is_default=branch.name == default_branch,
                    )
                )
            # The next link already carries the query string
            url = response.links.get("next", {}).get("url")
            params = None
        else:
            logger.warning(f"Branch listing for {repository.display_name} stopped after {MAX_BRANCH_PAGES} pages")

        if branches and not any(branch.is_default for branch in branches):
            # Default branch beyond the page cap; surface it anyway
            branches.insert(0, BranchInfo(name=default_branch, is_default=True))
        logger.info(f"Listed {len(branches)} branches for {repository.display_name}")
        return branches

    async def fetch_tree(
        self,
        repository: Repository,
        branch: str,
        credential: Optional[Credential],
        markdown_only: bool = True,
    ) -> TreeListing:
        url = f"{self._repo_url(repository)}/git/trees/{quote(branch, safe='/')}"
        payload = await self.transport.get_json(
            url,
            authorization=self._authorization(credential),
            params={"recursive": "1"},
        )
        tree = _decode(_GitHubTree, payload, "tree")
        if tree.truncated:
            logger.warning(
                f"GitHub truncated the tree of {repository.display_name}@{branch}; "
                f"{len(tree.tree)} entries returned"
            )

        entries = []
        for item in tree.tree:
            if item.type == "blob":
                entries.append(TreeEntry(item.path, TreeNodeType.FILE, item.sha, item.size))
            elif item.type == "tree":
                entries.append(TreeEntry(item.path, TreeNodeType.DIRECTORY, item.sha))
            # Submodules ("commit") have no readable content
        nodes = build_tree(entries, markdown_only=markdown_only)
        return TreeListing(nodes=nodes, truncated=tree.truncated, markdown_only=markdown_only)

    async def fetch_file(
        self,
        repository: Repository,
        branch: str,
        path: str,
        credential: Optional[Credential],
    ) -> FileContent:
        clean_path = normalize_tree_path(path)
        url = f"{self._repo_url(repository)}/contents/{quote(clean_path, safe='/')}"
        authorization = self._authorization(credential)

        def not_found() -> PathNotFoundError:
            return PathNotFoundError(clean_path, branch)

        payload = await self.transport.get_json(
            url, authorization=authorization, params={"ref": branch}, not_found=not_found
        )
        if isinstance(payload, list):
            # Directory listing
            raise not_found()
        content = _decode(_GitHubContent, payload, "contents")
        if content.type != "file":
            raise not_found()

        if content.encoding == "base64" and content.content is not None:
            try:
                raw = base64.b64decode(content.content)
            except (binascii.Error, ValueError) as exc:
                raise ProviderResponseError("GitHub returned undecodable file content") from exc
        else:
            # Files over 1 MB come back without inline content
            response = await self.transport.request(
                "GET",
                url,
                authorization=authorization,
                params={"ref": branch},
                headers={"Accept": "application/vnd.github.raw"},
                not_found=not_found,
            )
            raw = response.content

        return FileContent(
            path=clean_path,
            branch=branch,
            content=raw.decode("utf-8", errors="replace"),
            sha=content.sha,
            size=content.size or len(raw),
            is_markdown=is_markdown_path(clean_path),
        )

    async def validate_token(self, credential: Credential, repository: Optional[Repository] = None) -> str:
        authorization = self._authorization(credential)
        payload = await self.transport.get_json(f"{self.api_url}/user", authorization=authorization)
        user = _decode(_GitHubUser, payload, "user")
        if repository is not None:
            await self.transport.get_json(self._repo_url(repository), authorization=authorization)
        return user.login

    async def probe(self, timeout_seconds: float) -> None:
        response = await self.transport.request(
            "GET",
            f"{self.api_url}/zen",
            check_rate_limit=False,
            raise_for_status=False,
            timeout=timeout_seconds,
        )
        # Any answer below 500 (even a 403 rate limit) proves reachability
        if response.status_code >= 500:
            raise NetworkUnreachableError(
                f"GitHub returned server error {response.status_code}",
                details={"provider": self.provider.value, "status_code": response.status_code},
            )


__all__ = ["GitHubClient", "GITHUB_API_VERSION"]
