"""Repository Identity Resolver.

Turns user-supplied URLs into :class:`Repository` values and derives the
deterministic per-branch identity the UI uses to deduplicate open folders.

Identity format::

    repo:<repository_id>:<branch>

where ``repository_id`` is the normalized ``host/path`` key, e.g.
``github.com/acme/docs`` or ``dev.azure.com/org/proj/_git/repo``. Git branch
names cannot contain ``:``, so the last colon always separates the branch.
"""

from __future__ import annotations

import re
from collections import OrderedDict
from typing import Dict, Iterable, List, NamedTuple, Optional, Union
from urllib.parse import quote, unquote, urlsplit

from markread.errors import InvalidUrlError

from .models import PROVIDER_HOSTS, Provider, Repository

IDENTITY_PREFIX = "repo:"

_IDENTITY_RE = re.compile(r"^repo:(.+):([^:]+)$")
_GITHUB_OWNER_RE = re.compile(r"^[A-Za-z0-9](?:[A-Za-z0-9-]{0,38})$")
_GITHUB_NAME_RE = re.compile(r"^[A-Za-z0-9._-]{1,100}$")
# Azure project and repository names may contain spaces
_AZURE_SEGMENT_RE = re.compile(r"^[^\s/\\?#:](?:[^\t\r\n/\\?#:]{0,253}[^\s/\\?#:])?$")
# "docs (main)", "docs [main]" and "docs @ main" all display as "docs"
_BRANCH_SUFFIX_RE = re.compile(r"\s*(?:\([^()]*\)|\[[^\[\]]*\]|@\s*\S+)\s*$")

_HOST_TO_PROVIDER = {host: provider for provider, host in PROVIDER_HOSTS.items()}
_USERINFO_RE = re.compile(r"//[^/@\s]*@")


class BranchIdentity(NamedTuple):
    repository_id: str
    branch: str


def normalize_url(raw_url: str) -> str:
    """Trim whitespace, trailing slashes and a ``.git`` suffix.

    The scheme is left untouched so :func:`resolve` can reject ``http://``.
    """
    normalized = raw_url.strip()
    normalized = normalized.rstrip("/")
    if normalized.endswith(".git"):
        normalized = normalized[: -len(".git")]
    return normalized.rstrip("/")


def resolve(url: str) -> Repository:
    """Resolve a repository URL into a :class:`Repository`.

    Raises:
        InvalidUrlError: wrong scheme, unsupported host or malformed path
    """
    if not url or not url.strip():
        raise InvalidUrlError(_redact(url), "URL is empty")

    normalized = normalize_url(url)
    try:
        parts = urlsplit(normalized)
        port = parts.port
    except ValueError as exc:
        raise InvalidUrlError(_redact(url), f"malformed URL: {exc}") from exc

    if parts.scheme.lower() != "https":
        shown = parts.scheme or "none"
        raise InvalidUrlError(_redact(url), f"wrong scheme '{shown}', only https is supported")
    # A bare username (as Azure DevOps "Clone" links carry) is dropped; a password is refused
    if parts.password is not None:
        raise InvalidUrlError(_redact(url), "credentials must not be embedded in the URL")
    host = (parts.hostname or "").lower()
    if host not in _HOST_TO_PROVIDER:
        raise InvalidUrlError(
            _redact(url),
            f"unsupported host '{host or 'none'}', expected github.com or dev.azure.com",
        )
    if port not in (None, 443):
        raise InvalidUrlError(_redact(url), f"unexpected port {port}")

    segments = [unquote(segment) for segment in parts.path.split("/") if segment]
    provider = _HOST_TO_PROVIDER[host]
    if provider == Provider.GITHUB:
        return _resolve_github(url, host, segments)
    return _resolve_azure(url, host, segments)


def _resolve_github(url: str, host: str, segments: List[str]) -> Repository:
    # Extra segments (/tree/<branch>/..., /blob/...) do not change identity
    if len(segments) < 2:
        raise InvalidUrlError(_redact(url), "malformed path, expected /<owner>/<repository>")
    owner, name = segments[0], segments[1]
    if name.endswith(".git"):
        name = name[: -len(".git")]
    if not _GITHUB_OWNER_RE.match(owner):
        raise InvalidUrlError(_redact(url), f"malformed owner '{owner}'")
    if not _GITHUB_NAME_RE.match(name) or name in {".", ".."}:
        raise InvalidUrlError(_redact(url), f"malformed repository name '{name}'")
    return Repository(
        provider=Provider.GITHUB,
        owner=owner,
        name=name,
        url=f"https://{host}/{owner}/{name}",
        repository_id=f"{host}/{owner}/{name}",
    )


def _resolve_azure(url: str, host: str, segments: List[str]) -> Repository:
    if len(segments) != 4 or segments[2] != "_git":
        raise InvalidUrlError(
            _redact(url), "malformed path, expected /<organization>/<project>/_git/<repository>"
        )
    organization, project, _, name = segments
    for label, value in (("organization", organization), ("project", project), ("repository", name)):
        if not _AZURE_SEGMENT_RE.match(value):
            raise InvalidUrlError(_redact(url), f"malformed {label} '{value}'")
    path = "/".join(quote(segment, safe="") for segment in (organization, project, "_git", name))
    return Repository(
        provider=Provider.AZURE_DEVOPS,
        owner=organization,
        project=project,
        name=name,
        url=f"https://{host}/{path}",
        repository_id=f"{host}/{path}",
    )


def _redact(url: str) -> str:
    return _USERINFO_RE.sub("//***@", url)


def resolve_repository_id(repository_id: str) -> Repository:
    """Resolve a ``host/path`` repository id back into a :class:`Repository`."""
    return resolve(f"https://{repository_id}")


def identity_for(repository: Union[Repository, str], branch: str) -> str:
    """Deterministic identity for a (repository, branch) pair."""
    repository_id = repository.repository_id if isinstance(repository, Repository) else repository
    if not branch or ":" in branch:
        raise ValueError(f"invalid branch name: {branch!r}")
    return f"{IDENTITY_PREFIX}{repository_id}:{branch}"


def parse_identity(identity: str) -> Optional[BranchIdentity]:
    """Reverse :func:`identity_for`; ``None`` if not a repository identity."""
    match = _IDENTITY_RE.match(identity)
    if not match:
        return None
    return BranchIdentity(repository_id=match.group(1), branch=match.group(2))


def is_repository_identity(identity: str) -> bool:
    return identity.startswith(IDENTITY_PREFIX)


def group_by_repository(identities: Iterable[str]) -> Dict[str, List[str]]:
    """Group branch identities by repository id, preserving first-seen order."""
    grouped: Dict[str, List[str]] = OrderedDict()
    for identity in identities:
        parsed = parse_identity(identity)
        if parsed is None:
            continue
        grouped.setdefault(parsed.repository_id, []).append(parsed.branch)
    return grouped


def display_name(name: str) -> str:
    """Strip branch decorations so one repository shows one logical name."""
    stripped = name.strip()
    while True:
        candidate = _BRANCH_SUFFIX_RE.sub("", stripped)
        if candidate == stripped or not candidate:
            return stripped
        stripped = candidate


def branch_label(name: str, branch: str) -> str:
    """Label shown in the folder switcher, e.g. ``acme/docs (main)``."""
    return f"{display_name(name)} ({branch})"


__all__ = [
    "BranchIdentity",
    "IDENTITY_PREFIX",
    "branch_label",
    "display_name",
    "group_by_repository",
    "identity_for",
    "is_repository_identity",
    "normalize_url",
    "parse_identity",
    "resolve",
    "resolve_repository_id",
]
