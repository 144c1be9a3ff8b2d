"""Process-lifetime tree cache keyed by ``(repository_id, branch)``.

Reads never touch the network. Misses are resolved through
:meth:`TreeCache.get_or_fetch`, which coalesces concurrent requests for the
same key into one provider call. Entries never expire on their own; they are
replaced by a forced refresh or dropped by :meth:`TreeCache.invalidate`.

A full (unfiltered) entry can serve a markdown-only read by filtering on the
way out; the reverse is a miss. Invalidation bumps a generation counter so a
fetch that was already in flight cannot write its stale result back.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Awaitable, Callable, Dict, List, Optional, Tuple

from .models import TreeNode, TreeResult
from .tree import TreeListing, count_files, filter_markdown

logger = logging.getLogger(__name__)

CacheKey = Tuple[str, str]
FetchTree = Callable[[], Awaitable[TreeListing]]


@dataclass
class TreeCacheEntry:
    repository_id: str
    branch: str
    nodes: List[TreeNode]
    markdown_only: bool
    fetched_at: datetime
    truncated: bool = False


@dataclass
class _InflightFetch:
    task: "asyncio.Task[TreeCacheEntry]"
    markdown_only: bool

    def serves(self, markdown_only: bool) -> bool:
        return markdown_only or not self.markdown_only


@dataclass
class TreeCache:
    """In-memory tree cache; construct once per process and inject."""

    _now: Callable[[], datetime] = field(default=lambda: datetime.now(timezone.utc), repr=False)
    _entries: Dict[CacheKey, TreeCacheEntry] = field(default_factory=dict, init=False, repr=False)
    _inflight: Dict[CacheKey, _InflightFetch] = field(default_factory=dict, init=False, repr=False)
    _repository_generations: Dict[str, int] = field(default_factory=dict, init=False, repr=False)
    _branch_generations: Dict[CacheKey, int] = field(default_factory=dict, init=False, repr=False)
    # Entries remember which fetch produced them; an older fetch never overwrites a newer one
    _sequence: int = field(default=0, init=False, repr=False)
    _entry_sequences: Dict[CacheKey, int] = field(default_factory=dict, init=False, repr=False)
    hits: int = field(default=0, init=False)
    misses: int = field(default=0, init=False)

    # ------------------------------------------------------------------
    # Reads and writes
    # ------------------------------------------------------------------

    def get_cached_tree(
        self, repository_id: str, branch: str, markdown_only: bool = True
    ) -> Optional[TreeResult]:
        """Return the cached tree for exactly this branch, or ``None`` on a miss."""
        entry = self._entries.get((repository_id, branch))
        if entry is None or (entry.markdown_only and not markdown_only):
            return None
        return self._to_result(entry, markdown_only, from_cache=True)

    def put(
        self,
        repository_id: str,
        branch: str,
        nodes: List[TreeNode],
        *,
        markdown_only: bool = True,
        truncated: bool = False,
    ) -> TreeResult:
        entry = self._new_entry(repository_id, branch, nodes, markdown_only, truncated)
        self._store(entry, self._next_sequence())
        return self._to_result(entry, markdown_only, from_cache=False)

    def invalidate(self, repository_id: str, branch: Optional[str] = None) -> int:
        """Drop one branch, or every branch of the repository when ``branch`` is omitted.

        Returns the number of entries removed.
        """
        if branch is None:
            self._repository_generations[repository_id] = self._repository_generations.get(repository_id, 0) + 1
            keys = [key for key in self._entries if key[0] == repository_id]
            inflight = [key for key in self._inflight if key[0] == repository_id]
        else:
            key = (repository_id, branch)
            self._branch_generations[key] = self._branch_generations.get(key, 0) + 1
            keys = [key] if key in self._entries else []
            inflight = [key] if key in self._inflight else []

        for key in keys:
            del self._entries[key]
            self._entry_sequences.pop(key, None)
        for key in inflight:
            # Current awaiters still get their result; later callers start fresh
            self._inflight.pop(key, None)
        if keys:
            logger.info(f"Invalidated {len(keys)} cached tree(s) for {repository_id}")
        return len(keys)

    def clear(self) -> None:
        for repository_id in {key[0] for key in self._entries} | {key[0] for key in self._inflight}:
            self.invalidate(repository_id)

    @property
    def size(self) -> int:
        return len(self._entries)

    # ------------------------------------------------------------------
    # Coalesced fetch
    # ------------------------------------------------------------------

    async def get_or_fetch(
        self,
        repository_id: str,
        branch: str,
        fetch: FetchTree,
        *,
        markdown_only: bool = True,
        force_refresh: bool = False,
    ) -> TreeResult:
        """Cache-first tree read; concurrent misses share one ``fetch`` call.

        A markdown-only request joins any in-flight fetch of the branch, since
        a full listing is filtered on the way out. A full request only joins a
        full fetch.

        Cancelling a caller never cancels the shared fetch; the remaining
        awaiters (and the cache) still receive its result.
        """
        if not force_refresh:
            cached = self.get_cached_tree(repository_id, branch, markdown_only)
            if cached is not None:
                self.hits += 1
                logger.debug(f"Tree cache hit for {repository_id}@{branch}")
                return cached

        key = (repository_id, branch)
        inflight = self._inflight.get(key)
        if inflight is not None and inflight.serves(markdown_only):
            logger.debug(f"Joining in-flight tree fetch for {repository_id}@{branch}")
        else:
            self.misses += 1
            logger.info(f"Tree cache miss for {repository_id}@{branch}; fetching")
            # Captured now so an invalidation before the task first runs still counts
            generation = self._generation(repository_id, branch)
            sequence = self._next_sequence()
            task = asyncio.ensure_future(
                self._fetch_and_store(repository_id, branch, fetch, generation, sequence)
            )
            inflight = _InflightFetch(task=task, markdown_only=markdown_only)
            self._inflight[key] = inflight
            task.add_done_callback(lambda done: self._forget_inflight(key, done))

        entry = await asyncio.shield(inflight.task)
        return self._to_result(entry, markdown_only, from_cache=False)

    async def _fetch_and_store(
        self,
        repository_id: str,
        branch: str,
        fetch: FetchTree,
        generation: Tuple[int, int],
        sequence: int,
    ) -> TreeCacheEntry:
        listing = await fetch()
        entry = self._new_entry(repository_id, branch, listing.nodes, listing.markdown_only, listing.truncated)
        key = (repository_id, branch)
        if self._generation(repository_id, branch) != generation:
            logger.info(f"Discarding tree for {repository_id}@{branch}; invalidated during fetch")
        elif self._entry_sequences.get(key, -1) > sequence:
            logger.debug(f"Keeping newer cached tree for {repository_id}@{branch}")
        else:
            self._store(entry, sequence)
        return entry

    def _forget_inflight(self, key: CacheKey, task: "asyncio.Task[TreeCacheEntry]") -> None:
        inflight = self._inflight.get(key)
        if inflight is not None and inflight.task is task:
            del self._inflight[key]
        if not task.cancelled():
            # Errors are delivered to awaiters; mark them retrieved for orphaned tasks
            task.exception()

    def _new_entry(
        self, repository_id: str, branch: str, nodes: List[TreeNode], markdown_only: bool, truncated: bool
    ) -> TreeCacheEntry:
        return TreeCacheEntry(
            repository_id=repository_id,
            branch=branch,
            nodes=nodes,
            markdown_only=markdown_only,
            fetched_at=self._now(),
            truncated=truncated,
        )

    def _store(self, entry: TreeCacheEntry, sequence: int) -> None:
        key = (entry.repository_id, entry.branch)
        self._entries[key] = entry
        self._entry_sequences[key] = sequence

    def _next_sequence(self) -> int:
        self._sequence += 1
        return self._sequence

    def _generation(self, repository_id: str, branch: str) -> Tuple[int, int]:
        return (
            self._repository_generations.get(repository_id, 0),
            self._branch_generations.get((repository_id, branch), 0),
        )

    @staticmethod
    def _to_result(entry: TreeCacheEntry, markdown_only: bool, *, from_cache: bool) -> TreeResult:
        nodes = entry.nodes
        if markdown_only and not entry.markdown_only:
            nodes = filter_markdown(nodes)
        file_count, markdown_count = count_files(nodes)
        return TreeResult(
            repository_id=entry.repository_id,
            branch=entry.branch,
            nodes=nodes,
            markdown_only=markdown_only,
            fetched_at=entry.fetched_at,
            file_count=file_count,
            markdown_file_count=markdown_count,
            truncated=entry.truncated,
            from_cache=from_cache,
        )


__all__ = ["TreeCache", "TreeCacheEntry"]
