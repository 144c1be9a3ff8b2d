"""Shared fixtures and fakes for remote connector tests."""

from __future__ import annotations

import asyncio
from collections import Counter
from typing import Any, Callable, Dict, List, Optional, Tuple

import httpx
import pytest

from markread.errors import (
    AuthFailedError,
    NetworkUnreachableError,
    PathNotFoundError,
    RepositoryNotFoundError,
)
from markread.remote.api_client import Credential, ProviderClient, ProviderTransport
from markread.remote.credential_store import CredentialStore
from markread.remote.models import BranchInfo, FileContent, Provider, TreeNodeType
from markread.remote.tree import TreeEntry, TreeListing, build_tree, is_markdown_path
from markread.remote.tree_cache import TreeCache


# ---------------------------------------------------------------------------
# HTTP routing for httpx.MockTransport
# ---------------------------------------------------------------------------


class RecordingHandler:
    """Routes mock requests by ``(method, host + path)`` and records them.

    A route is either a static response spec or a callable receiving the
    request (sync or async). Static specs may be a list, consumed in order
    with the last one repeating.
    """

    def __init__(self):
        self.routes: Dict[Tuple[str, str], Any] = {}
        self.requests: List[httpx.Request] = []

    def add(self, method: str, url: str, *, status: int = 200, json: Any = None, headers=None, content=None):
        self.routes[(method, _route_key(url))] = [(status, json, headers, content)]

    def add_sequence(self, method: str, url: str, specs: List[Tuple[int, Any]]):
        self.routes[(method, _route_key(url))] = [(status, body, None, None) for status, body in specs]

    def add_handler(self, method: str, url: str, handler: Callable):
        self.routes[(method, _route_key(url))] = handler

    def count(self, method: str, url: str) -> int:
        key = _route_key(url)
        return sum(1 for request in self.requests if request.method == method and _request_key(request) == key)

    def __call__(self, request: httpx.Request):
        self.requests.append(request)
        route = self.routes.get((request.method, _request_key(request)))
        if route is None:
            return httpx.Response(404, json={"message": "Not Found"})
        if callable(route):
            return route(request)
        status, body, headers, content = route[0] if len(route) == 1 else route.pop(0)
        if content is not None:
            return httpx.Response(status, content=content, headers=headers)
        return httpx.Response(status, json=body, headers=headers)


def _route_key(url: str) -> str:
    parsed = httpx.URL(url)
    return f"{parsed.host}{parsed.path}"


def _request_key(request: httpx.Request) -> str:
    return f"{request.url.host}{request.url.path}"


@pytest.fixture
def http_handler():
    return RecordingHandler()


@pytest.fixture
def make_transport(http_handler):
    def factory(provider: Provider = Provider.GITHUB) -> ProviderTransport:
        return ProviderTransport(
            provider=provider,
            timeout_seconds=5.0,
            user_agent="MarkRead-Test",
            client=httpx.AsyncClient(transport=httpx.MockTransport(http_handler)),
        )

    return factory


# ---------------------------------------------------------------------------
# Stores
# ---------------------------------------------------------------------------


@pytest.fixture
def credential_store(tmp_path, keyring_backend, audit_logger, clock):
    return CredentialStore(
        tmp_path / "credentials.json",
        keyring_backend,
        audit_logger=audit_logger,
        _now=clock,
    )


@pytest.fixture
def tree_cache(clock):
    return TreeCache(_now=clock)


class UnavailableBackend:
    """Encryption backend reporting that no secure storage exists."""

    name = "unavailable"

    def is_available(self) -> bool:
        return False

    def encrypt(self, plaintext):
        raise AssertionError("encrypt must not be called when unavailable")

    def decrypt(self, payload):
        raise AssertionError("decrypt must not be called when unavailable")


@pytest.fixture
def unavailable_backend():
    return UnavailableBackend()


# ---------------------------------------------------------------------------
# Fake provider client
# ---------------------------------------------------------------------------


SAMPLE_ENTRIES = {
    "main": [
        TreeEntry("README.md", TreeNodeType.FILE, "r1", 12),
        TreeEntry("src", TreeNodeType.DIRECTORY, "s0"),
        TreeEntry("src/app.ts", TreeNodeType.FILE, "s1", 40),
        TreeEntry("docs", TreeNodeType.DIRECTORY, "d0"),
        TreeEntry("docs/guide.md", TreeNodeType.FILE, "d1", 30),
    ],
    "dev": [
        TreeEntry("CHANGELOG.md", TreeNodeType.FILE, "c1", 8),
        TreeEntry("notes/todo.md", TreeNodeType.FILE, "n1", 5),
    ],
}


class FakeProviderClient(ProviderClient):
    """In-memory provider with call counters and an optional gate for tree fetches."""

    def __init__(self, provider: Provider = Provider.GITHUB):
        self.provider = provider
        self.transport = None
        self.branches = [
            BranchInfo(name="main", is_default=True, sha="aaa111"),
            BranchInfo(name="dev", sha="bbb222"),
        ]
        self.entries = {branch: list(entries) for branch, entries in SAMPLE_ENTRIES.items()}
        self.files = {("main", "README.md"): "# Hello\n", ("main", "docs/guide.md"): "# Guide\n"}
        self.calls: Counter = Counter()
        self.credentials: List[Optional[Credential]] = []
        self.tree_gate: Optional[asyncio.Event] = None
        self.list_error: Optional[Exception] = None
        self.valid_tokens = {"good-token": "octocat"}
        self.reachable = True

    async def list_branches(self, repository, credential):
        self.calls["list_branches"] += 1
        self.credentials.append(credential)
        if self.list_error is not None:
            raise self.list_error
        return list(self.branches)

    async def fetch_tree(self, repository, branch, credential, markdown_only=True):
        self.calls["fetch_tree"] += 1
        self.calls[f"fetch_tree:{branch}"] += 1
        if self.tree_gate is not None:
            await self.tree_gate.wait()
        if branch not in self.entries:
            raise RepositoryNotFoundError(f"No branch {branch}")
        nodes = build_tree(self.entries[branch], markdown_only=markdown_only)
        return TreeListing(nodes=nodes, truncated=False, markdown_only=markdown_only)

    async def fetch_file(self, repository, branch, path, credential):
        self.calls["fetch_file"] += 1
        content = self.files.get((branch, path))
        if content is None:
            raise PathNotFoundError(path, branch)
        return FileContent(
            path=path,
            branch=branch,
            content=content,
            sha="f00",
            size=len(content),
            is_markdown=is_markdown_path(path),
        )

    async def validate_token(self, credential, repository=None):
        self.calls["validate_token"] += 1
        account = self.valid_tokens.get(credential.token)
        if account is None:
            raise AuthFailedError("Bad credentials", details={"status_code": 401})
        return account

    async def probe(self, timeout_seconds):
        self.calls["probe"] += 1
        if not self.reachable:
            raise NetworkUnreachableError(f"{self.provider.value} unreachable: ConnectError")


@pytest.fixture
def github_fake():
    return FakeProviderClient(Provider.GITHUB)


@pytest.fixture
def azure_fake():
    return FakeProviderClient(Provider.AZURE_DEVOPS)
