"""Tree assembly and markdown-only filtering.

Both providers return flat recursive listings. They are decoded into
:class:`TreeEntry` values at the client boundary and assembled here into
nested :class:`TreeNode` forests. Neither provider can filter by extension
server-side, so markdown-only filtering is applied client-side: excluded files
never appear, and directories survive only when they contain at least one
qualifying descendant.
"""

from __future__ import annotations

import posixpath
import re
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Tuple

from .models import TreeNode, TreeNodeType

MARKDOWN_PATTERN = re.compile(r"\.(md|markdown|mdown|mkd|mkdn)$", re.IGNORECASE)


def is_markdown_path(path: str) -> bool:
    return bool(MARKDOWN_PATTERN.search(path))


@dataclass(frozen=True)
class TreeEntry:
    """One item of a provider's flat recursive listing."""

    path: str
    type: TreeNodeType
    sha: Optional[str] = None
    size: Optional[int] = None


@dataclass
class TreeListing:
    """What a provider client returns for a tree request."""

    nodes: List[TreeNode] = field(default_factory=list)
    truncated: bool = False
    markdown_only: bool = True

    @property
    def file_count(self) -> int:
        return count_files(self.nodes)[0]

    @property
    def markdown_file_count(self) -> int:
        return count_files(self.nodes)[1]


def normalize_tree_path(path: str) -> str:
    """Posix path relative to the repository root, without leading slash."""
    cleaned = path.replace("\\", "/").strip("/")
    if not cleaned:
        return ""
    normalized = posixpath.normpath(cleaned)
    if normalized.startswith("../") or normalized == "..":
        raise ValueError(f"path escapes repository root: {path!r}")
    return "" if normalized == "." else normalized


def build_tree(entries: Iterable[TreeEntry], *, markdown_only: bool = True) -> List[TreeNode]:
    """Assemble a nested forest from flat entries.

    Intermediate directories missing from the listing are synthesized. With
    ``markdown_only`` the result is pruned via :func:`filter_markdown`.
    """
    directories: Dict[str, TreeNode] = {}
    roots: List[TreeNode] = []

    def ensure_directory(path: str, sha: Optional[str] = None) -> TreeNode:
        existing = directories.get(path)
        if existing is not None:
            if sha and not existing.sha:
                existing.sha = sha
            return existing
        node = TreeNode(
            path=path,
            name=posixpath.basename(path),
            type=TreeNodeType.DIRECTORY,
            sha=sha,
            children=[],
        )
        directories[path] = node
        parent_path = posixpath.dirname(path)
        if parent_path:
            ensure_directory(parent_path).children.append(node)
        else:
            roots.append(node)
        return node

    seen_files = set()
    for entry in entries:
        path = normalize_tree_path(entry.path)
        if not path:
            continue
        if entry.type == TreeNodeType.DIRECTORY:
            ensure_directory(path, entry.sha)
            continue
        # Paths are unique within a snapshot
        if path in seen_files:
            continue
        seen_files.add(path)
        node = TreeNode(
            path=path,
            name=posixpath.basename(path),
            type=TreeNodeType.FILE,
            sha=entry.sha,
            size=entry.size,
        )
        parent_path = posixpath.dirname(path)
        if parent_path:
            ensure_directory(parent_path).children.append(node)
        else:
            roots.append(node)

    sort_tree(roots)
    if markdown_only:
        return filter_markdown(roots)
    return roots


def sort_tree(nodes: List[TreeNode]) -> None:
    """Directories first, then case-insensitive name order."""
    nodes.sort(key=lambda node: (not node.is_directory, node.name.lower(), node.name))
    for node in nodes:
        if node.children:
            sort_tree(node.children)


def filter_markdown(nodes: Iterable[TreeNode]) -> List[TreeNode]:
    """Markdown files plus the directories needed to reach them.

    Returns new nodes; the input forest is left untouched so a cached full
    tree can be filtered repeatedly.
    """
    filtered: List[TreeNode] = []
    for node in nodes:
        if node.is_directory:
            children = filter_markdown(node.children or [])
            if children:
                filtered.append(node.model_copy(update={"children": children}))
        elif is_markdown_path(node.path):
            filtered.append(node.model_copy())
    return filtered


def count_files(nodes: Iterable[TreeNode]) -> Tuple[int, int]:
    """Return ``(file_count, markdown_file_count)``."""
    files = 0
    markdown = 0
    for node in nodes:
        for file_node in node.iter_files():
            files += 1
            if is_markdown_path(file_node.path):
                markdown += 1
    return files, markdown


def find_node(nodes: Iterable[TreeNode], path: str) -> Optional[TreeNode]:
    """Locate ``path`` in a forest, descending only into matching directories."""
    target = normalize_tree_path(path)
    for node in nodes:
        if node.path == target:
            return node
        if node.is_directory and target.startswith(node.path + "/"):
            return find_node(node.children or [], target)
    return None


__all__ = [
    "MARKDOWN_PATTERN",
    "TreeEntry",
    "TreeListing",
    "build_tree",
    "count_files",
    "filter_markdown",
    "find_node",
    "is_markdown_path",
    "normalize_tree_path",
    "sort_tree",
]
