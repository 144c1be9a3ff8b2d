"""Connectivity Monitor: on-demand and periodic provider reachability checks."""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional, Union

from pydantic import Field

from markread.errors import NetworkUnreachableError, UnsupportedProviderError

from .api_client import ProviderClient
from .models import Provider, WireModel

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ProviderReachability(WireModel):
    provider: Provider
    is_reachable: bool
    response_time_ms: Optional[int] = None
    error: Optional[str] = None


class ConnectivityReport(WireModel):
    """Result of one check across one or more providers."""

    providers: List[ProviderReachability] = Field(default_factory=list)
    checked_at: datetime = Field(default_factory=_utcnow)

    @property
    def is_online(self) -> bool:
        return any(result.is_reachable for result in self.providers)

    def for_provider(self, provider: Union[Provider, str]) -> Optional[ProviderReachability]:
        provider = Provider(provider)
        for result in self.providers:
            if result.provider == provider:
                return result
        return None

    def to_wire(self) -> dict:
        payload = super().to_wire()
        payload["isOnline"] = self.is_online
        return payload


@dataclass
class ConnectivityMonitor:
    """Probes providers without credentials; any answer below 500 is "reachable".

    Attributes:
        clients: Provider clients whose ``probe`` is used
        timeout_seconds: Per-probe timeout, independent of API request timeouts
        interval_seconds: Period of the background loop started by :meth:`start`
        on_report: Optional callback invoked with every new report
    """

    clients: Dict[Provider, ProviderClient]
    timeout_seconds: float = 5.0
    interval_seconds: float = 60.0
    on_report: Optional[Callable[[ConnectivityReport], None]] = None
    last_report: Optional[ConnectivityReport] = field(default=None, init=False)
    _task: Optional["asyncio.Task[None]"] = field(default=None, init=False, repr=False)

    async def check(self, provider: Optional[Union[Provider, str]] = None) -> ConnectivityReport:
        """Probe one provider, or all configured providers in parallel."""
        if provider is not None:
            provider = Provider(provider)
            if provider not in self.clients:
                raise UnsupportedProviderError(provider.value)
            providers = [provider]
        else:
            providers = list(self.clients)

        results = await asyncio.gather(*(self._probe(item) for item in providers))
        report = ConnectivityReport(providers=list(results))
        self.last_report = report
        if self.on_report is not None:
            self.on_report(report)
        return report

    async def _probe(self, provider: Provider) -> ProviderReachability:
        client = self.clients[provider]
        started = time.monotonic()
        try:
            await client.probe(self.timeout_seconds)
        except NetworkUnreachableError as exc:
            logger.info(f"{provider.value} unreachable: {exc.message}")
            return ProviderReachability(provider=provider, is_reachable=False, error=exc.message)
        elapsed_ms = int((time.monotonic() - started) * 1000)
        logger.debug(f"{provider.value} reachable in {elapsed_ms}ms")
        return ProviderReachability(provider=provider, is_reachable=True, response_time_ms=elapsed_ms)

    # ------------------------------------------------------------------
    # Background loop
    # ------------------------------------------------------------------

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        """Start periodic checks on the running event loop."""
        if self.running:
            return
        self._task = asyncio.get_running_loop().create_task(self._run())
        logger.info(f"Connectivity monitor started (every {self.interval_seconds:g}s)")

    async def stop(self) -> None:
        task = self._task
        self._task = None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        logger.info("Connectivity monitor stopped")

    async def _run(self) -> None:
        while True:
            await self.check()
            await asyncio.sleep(self.interval_seconds)


__all__ = ["ConnectivityMonitor", "ConnectivityReport", "ProviderReachability"]
