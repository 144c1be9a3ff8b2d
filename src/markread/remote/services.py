"""Explicit construction of the process-wide remote services.

The credential store and tree cache are single instances per process. They
are built here once and handed to the connector, authenticator and bridge;
no module keeps an ambient global.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Callable, List, Optional

import httpx

from markread.configuration import RemoteSettings
from markread.security.audit import AuditLogger
from markread.security.encryption import EncryptionBackend, KeyringEncryptionBackend

from .api_client import ProviderTransport, RateLimitTracker
from .azure_client import AzureDevOpsClient
from .bridge import Notify, RepositoryBridge
from .connectivity import ConnectivityMonitor
from .connector import RepositoryConnector
from .credential_store import CredentialStore
from .github_client import GitHubClient
from .models import Provider
from .oauth_flow import DeviceFlowAuthenticator
from .tree_cache import TreeCache

logger = logging.getLogger(__name__)


@dataclass
class RemoteServices:
    """Everything the UI bridge and CLI need, wired together."""

    settings: RemoteSettings
    credential_store: CredentialStore
    tree_cache: TreeCache
    authenticator: DeviceFlowAuthenticator
    connector: RepositoryConnector
    monitor: ConnectivityMonitor
    bridge: RepositoryBridge
    # Only clients build_services opened itself; an injected client belongs to the caller
    owned_clients: List[httpx.AsyncClient] = field(default_factory=list)

    async def aclose(self) -> None:
        await self.monitor.stop()
        for client in self.owned_clients:
            await client.aclose()


def build_services(
    settings: Optional[RemoteSettings] = None,
    *,
    backend: Optional[EncryptionBackend] = None,
    http_client: Optional[httpx.AsyncClient] = None,
    open_browser: Optional[Callable[[str], bool]] = None,
    notify: Optional[Notify] = None,
) -> RemoteServices:
    """Build the service graph from settings.

    Args:
        settings: Remote settings; defaults are used when omitted
        backend: Encryption capability; the OS keychain by default
        http_client: Shared ``httpx.AsyncClient`` (tests inject a mock transport).
            The caller keeps ownership; :meth:`RemoteServices.aclose` leaves it open
        open_browser: Browser opener for device flow
        notify: Out-of-band event sink for the bridge
    """
    settings = settings or RemoteSettings()
    backend = backend or KeyringEncryptionBackend(service_name=settings.keyring_service)
    audit_logger = AuditLogger(settings.audit_dir)
    credential_store = CredentialStore(settings.credentials_path, backend, audit_logger=audit_logger)

    owned_clients: List[httpx.AsyncClient] = []
    if http_client is None:
        http_client = httpx.AsyncClient(timeout=settings.request_timeout_seconds)
        owned_clients.append(http_client)
    rate_limits = RateLimitTracker()

    def transport(provider: Provider) -> ProviderTransport:
        return ProviderTransport(
            provider=provider,
            timeout_seconds=settings.request_timeout_seconds,
            user_agent=settings.user_agent,
            rate_limits=rate_limits,
            client=http_client,
        )

    github_transport = transport(Provider.GITHUB)
    azure_transport = transport(Provider.AZURE_DEVOPS)
    # OAuth endpoints live on github.com and take plain JSON headers
    oauth_transport = transport(Provider.GITHUB)

    github = GitHubClient(github_transport, api_url=settings.github_api_url)
    azure = AzureDevOpsClient(azure_transport, base_url=settings.azure_devops_url)
    clients = {Provider.GITHUB: github, Provider.AZURE_DEVOPS: azure}

    authenticator_kwargs = {}
    if open_browser is not None:
        authenticator_kwargs["open_browser"] = open_browser
    authenticator = DeviceFlowAuthenticator(
        credential_store=credential_store,
        transport=oauth_transport,
        client_id=settings.github_client_id,
        oauth_url=settings.github_oauth_url,
        user_client=github,
        default_scopes=tuple(settings.oauth_scopes),
        retention_seconds=settings.device_flow_retention_seconds,
        **authenticator_kwargs,
    )

    tree_cache = TreeCache()
    connector = RepositoryConnector(
        clients=clients,
        credential_store=credential_store,
        tree_cache=tree_cache,
        authenticator=authenticator,
    )
    monitor = ConnectivityMonitor(
        clients=clients,
        timeout_seconds=settings.connectivity_timeout_seconds,
        interval_seconds=settings.connectivity_interval_seconds,
    )
    bridge = RepositoryBridge(connector=connector, authenticator=authenticator, monitor=monitor, notify=notify)
    logger.debug(f"Remote services built (data dir {settings.data_dir})")

    return RemoteServices(
        settings=settings,
        credential_store=credential_store,
        tree_cache=tree_cache,
        authenticator=authenticator,
        connector=connector,
        monitor=monitor,
        bridge=bridge,
        owned_clients=owned_clients,
    )


__all__ = ["RemoteServices", "build_services"]
