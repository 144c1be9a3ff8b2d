"""Repository Connector: the facade the UI calls.

The connector is stateless apart from the injected services. Repository ids
are reversible (``github.com/acme/docs`` resolves back to its URL), so tree
and file requests only need the id and branch; nothing about a connected
repository is retained between calls except the tree cache entries.

Provider errors propagate unchanged. The connector never retries on its own
and never starts interactive sign-in from :meth:`fetch_repository_info`.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Union

from markread.errors import (
    AuthFailedError,
    InvalidUrlError,
    NetworkUnreachableError,
    OperationCancelledError,
    PathNotFoundError,
    ProviderResponseError,
    RateLimitedError,
    UnsupportedProviderError,
)

from .api_client import Credential, ProviderClient
from .cancellation import CancellationToken, run_cancellable
from .credential_store import REPOSITORY_SCOPE, CredentialStore
from .identity import resolve, resolve_repository_id
from .models import (
    PROVIDER_HOSTS,
    AuthMethod,
    BranchInfo,
    ConnectedRepository,
    DeviceFlowStart,
    DeviceFlowStatus,
    FileContent,
    Provider,
    Repository,
    RepositoryInfo,
    TreeResult,
)
from .oauth_flow import DeviceFlowAuthenticator
from .tree import find_node, is_markdown_path, normalize_tree_path
from .tree_cache import TreeCache

logger = logging.getLogger(__name__)

DeviceFlowCallback = Callable[[DeviceFlowStart], None]


@dataclass
class RepositoryConnector:
    """Orchestrates identity, credentials, provider clients and the tree cache.

    Attributes:
        clients: One provider client per supported provider
        credential_store: Process-wide credential store
        tree_cache: Process-wide tree cache
        authenticator: Device flow driver used when ``connect`` needs OAuth
    """

    clients: Dict[Provider, ProviderClient]
    credential_store: CredentialStore
    tree_cache: TreeCache = field(default_factory=TreeCache)
    authenticator: Optional[DeviceFlowAuthenticator] = None

    # ------------------------------------------------------------------
    # Connect and discovery
    # ------------------------------------------------------------------

    async def connect(
        self,
        url: str,
        auth_method: Union[AuthMethod, str] = AuthMethod.OAUTH,
        initial_branch: Optional[str] = None,
        *,
        token: Optional[str] = None,
        cancel_token: Optional[CancellationToken] = None,
        on_device_flow: Optional[DeviceFlowCallback] = None,
    ) -> ConnectedRepository:
        """Resolve, authenticate and list branches. The tree is not fetched.

        Args:
            url: GitHub or Azure DevOps repository URL
            auth_method: ``oauth`` (device flow when nothing is cached) or ``pat``
            initial_branch: Branch to open; falls back to the default when absent
            token: Personal access token to validate and store (PAT only)
            cancel_token: Cancels any in-flight call, including device flow polling
            on_device_flow: Receives the user code when device flow starts

        Raises:
            InvalidUrlError, UnsupportedProviderError, AuthFailedError,
            RepositoryNotFoundError, RateLimitedError, NetworkUnreachableError,
            EncryptionUnavailableError, OperationCancelledError
        """
        auth_method = AuthMethod(auth_method)
        repository = resolve(url)
        client = self._client(repository.provider)

        credential, cached = await self._ensure_credential(
            repository, client, auth_method, token, cancel_token, on_device_flow
        )
        branches = await self._list_branches(repository, client, credential, cached, cancel_token)
        default_branch = _default_branch(repository, branches)

        current_branch = default_branch
        if initial_branch:
            if any(branch.name == initial_branch for branch in branches):
                current_branch = initial_branch
            else:
                logger.warning(
                    f"Branch {initial_branch!r} not found in {repository.display_name}; "
                    f"opening default branch {default_branch!r}"
                )

        logger.info(
            f"Connected to {repository.display_name} on {current_branch} "
            f"({len(branches)} branches, {auth_method.value})"
        )
        return ConnectedRepository(
            repository_id=repository.repository_id,
            repository=repository,
            current_branch=current_branch,
            default_branch=default_branch,
            branches=branches,
            auth_method=credential.auth_method if credential else auth_method,
        )

    async def fetch_repository_info(
        self,
        url: str,
        auth_method: Optional[Union[AuthMethod, str]] = None,
        *,
        known_default_branch: Optional[str] = None,
        cancel_token: Optional[CancellationToken] = None,
    ) -> RepositoryInfo:
        """Read-only branch discovery; uses stored credentials or none at all.

        ``default_branch_changed`` is set when ``known_default_branch`` is
        given and the provider now reports a different default.
        """
        repository = resolve(url)
        client = self._client(repository.provider)
        method = AuthMethod(auth_method) if auth_method else None
        credential = await self._stored_credential(repository, method)

        branches = await self._list_branches(repository, client, credential, credential is not None, cancel_token)
        default_branch = _default_branch(repository, branches)
        changed = bool(known_default_branch) and known_default_branch != default_branch
        if changed:
            logger.info(
                f"Default branch of {repository.display_name} changed from "
                f"{known_default_branch!r} to {default_branch!r}"
            )
        return RepositoryInfo(
            repository_id=repository.repository_id,
            branches=branches,
            default_branch=default_branch,
            default_branch_changed=changed,
        )

    # ------------------------------------------------------------------
    # Trees and files
    # ------------------------------------------------------------------

    async def fetch_tree(
        self,
        repository_id: str,
        branch: str,
        markdown_only: bool = True,
        *,
        force_refresh: bool = False,
        cancel_token: Optional[CancellationToken] = None,
    ) -> TreeResult:
        """Cache-first tree for exactly ``branch``; concurrent misses coalesce."""
        repository = resolve_repository_id(repository_id)
        client = self._client(repository.provider)

        async def fetch():
            credential = await self._stored_credential(repository)
            return await client.fetch_tree(repository, branch, credential, markdown_only)

        return await run_cancellable(
            self.tree_cache.get_or_fetch(
                repository.repository_id,
                branch,
                fetch,
                markdown_only=markdown_only,
                force_refresh=force_refresh,
            ),
            cancel_token,
        )

    def get_cached_tree(self, repository_id: str, branch: str, markdown_only: bool = True) -> Optional[TreeResult]:
        return self.tree_cache.get_cached_tree(repository_id, branch, markdown_only)

    async def fetch_file(
        self,
        repository_id: str,
        branch: str,
        path: str,
        *,
        cancel_token: Optional[CancellationToken] = None,
    ) -> FileContent:
        """Live fetch of one file.

        Raises:
            PathNotFoundError: path escapes the root, or the latest tree for
                this branch does not contain it
        """
        try:
            clean_path = normalize_tree_path(path)
        except ValueError as exc:
            raise PathNotFoundError(path, branch) from exc
        if not clean_path:
            raise PathNotFoundError(path, branch)

        repository = resolve_repository_id(repository_id)
        self._check_against_cached_tree(repository.repository_id, branch, clean_path)
        client = self._client(repository.provider)
        credential = await self._stored_credential(repository)
        return await run_cancellable(
            client.fetch_file(repository, branch, clean_path, credential),
            cancel_token,
        )

    async def switch_branch(
        self,
        repository_id: str,
        from_branch: Optional[str],
        to_branch: str,
        markdown_only: bool = True,
        *,
        cancel_token: Optional[CancellationToken] = None,
    ) -> TreeResult:
        """Drop the previous branch's tree and load the new branch's tree."""
        if from_branch and from_branch != to_branch:
            self.tree_cache.invalidate(repository_id, from_branch)
        return await self.fetch_tree(repository_id, to_branch, markdown_only, cancel_token=cancel_token)

    def disconnect(self, repository_id: str) -> int:
        """Forget every cached branch tree of the repository."""
        removed = self.tree_cache.invalidate(repository_id)
        logger.info(f"Disconnected {repository_id}")
        return removed

    # ------------------------------------------------------------------
    # Credentials
    # ------------------------------------------------------------------

    async def authenticate_with_pat(
        self,
        provider: Union[Provider, str],
        token: str,
        repository_url: Optional[str] = None,
    ) -> str:
        """Validate a personal access token and store it.

        The token is stored for the repository when ``repository_url`` is
        given, otherwise provider-wide. Returns the account name the provider
        reports for the token.
        """
        provider = Provider(provider)
        token = (token or "").strip()
        if not token:
            raise AuthFailedError("Personal access token is empty")

        repository = None
        if repository_url:
            repository = resolve(repository_url)
            if repository.provider != provider:
                raise InvalidUrlError(repository_url, f"URL does not belong to {provider.value}")

        client = self._client(provider)
        account = await client.validate_token(Credential(token=token, auth_method=AuthMethod.PAT), repository)
        if repository is not None:
            await self.credential_store.save(repository.repository_id, AuthMethod.PAT, token)
        else:
            await self.credential_store.store_token(provider, token, auth_method=AuthMethod.PAT)
        logger.info(f"Stored personal access token for {repository.display_name if repository else provider.value}")
        return account

    async def sign_out(
        self,
        provider: Optional[Union[Provider, str]] = None,
        repository_id: Optional[str] = None,
    ) -> int:
        """Delete stored credentials for one repository or a whole provider.

        Signing out of a provider also removes its repository-scoped entries.
        Returns the number of entries removed.
        """
        if repository_id:
            removed = await self.credential_store.delete(repository_id)
            self.tree_cache.invalidate(repository_id)
            return removed
        if provider is None:
            raise ValueError("provider or repository_id is required")

        provider = Provider(provider)
        removed = await self.credential_store.delete_token(provider)
        prefix = f"{PROVIDER_HOSTS[provider]}/"
        for entry in await self.credential_store.list_entries():
            if entry.scope == REPOSITORY_SCOPE and entry.subject.startswith(prefix):
                removed += await self.credential_store.delete(entry.subject, entry.auth_method)
        logger.info(f"Signed out of {provider.value} ({removed} credential(s) removed)")
        return removed

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _client(self, provider: Provider) -> ProviderClient:
        client = self.clients.get(provider)
        if client is None:
            raise UnsupportedProviderError(provider.value)
        return client

    async def _stored_credential(
        self, repository: Repository, auth_method: Optional[AuthMethod] = None
    ) -> Optional[Credential]:
        """Repository-scoped entry first, then the provider-wide token."""
        methods: List[AuthMethod] = [auth_method] if auth_method else [AuthMethod.OAUTH, AuthMethod.PAT]
        for method in methods:
            credential = await self.credential_store.get_credential(repository.repository_id, method)
            if credential is not None:
                return credential
        credential = await self.credential_store.get_provider_credential(repository.provider)
        if credential is not None and (auth_method is None or credential.auth_method == auth_method):
            return credential
        return None

    async def _ensure_credential(
        self,
        repository: Repository,
        client: ProviderClient,
        auth_method: AuthMethod,
        token: Optional[str],
        cancel_token: Optional[CancellationToken],
        on_device_flow: Optional[DeviceFlowCallback],
    ):
        """Return ``(credential, from_cache)``."""
        if auth_method == AuthMethod.PAT:
            if token:
                await run_cancellable(
                    self.authenticate_with_pat(repository.provider, token, repository.url), cancel_token
                )
                return Credential(token=token.strip(), auth_method=AuthMethod.PAT), False
            credential = await self._stored_credential(repository, AuthMethod.PAT)
            if credential is None:
                raise AuthFailedError(
                    f"No personal access token stored for {repository.display_name}",
                    details={"provider": repository.provider.value},
                )
            return credential, True

        credential = await self._stored_credential(repository, AuthMethod.OAUTH)
        if credential is not None:
            logger.debug(f"Using stored OAuth token for {repository.display_name}")
            return credential, True
        return await self._run_device_flow(repository, cancel_token, on_device_flow), False

    async def _run_device_flow(
        self,
        repository: Repository,
        cancel_token: Optional[CancellationToken],
        on_device_flow: Optional[DeviceFlowCallback],
    ) -> Credential:
        if self.authenticator is None:
            raise AuthFailedError("Sign-in required and no device flow authenticator is configured")

        start = await run_cancellable(self.authenticator.initiate(repository.provider), cancel_token)
        if on_device_flow is not None:
            on_device_flow(start)
        try:
            state = await self.authenticator.wait_for_completion(start.session_id, cancel_token=cancel_token)
        except (NetworkUnreachableError, RateLimitedError):
            # Connect fails as a whole; the sign-in session goes with it
            await self.authenticator.cancel(start.session_id)
            raise

        if state.status == DeviceFlowStatus.CANCELLED:
            raise OperationCancelledError(state.error)
        if state.status != DeviceFlowStatus.SUCCEEDED:
            raise AuthFailedError(
                state.error or f"Device flow {state.status.value}",
                details={"provider": repository.provider.value, "status": state.status.value},
            )
        credential = await self.credential_store.get_provider_credential(repository.provider)
        if credential is None:
            raise AuthFailedError("Device flow succeeded but the token could not be read back")
        return credential

    async def _list_branches(
        self,
        repository: Repository,
        client: ProviderClient,
        credential: Optional[Credential],
        from_cache: bool,
        cancel_token: Optional[CancellationToken],
    ) -> List[BranchInfo]:
        try:
            return await run_cancellable(client.list_branches(repository, credential), cancel_token)
        except AuthFailedError as exc:
            if from_cache and exc.details.get("status_code") == 401:
                # Revoked or expired upstream; the next connect re-authenticates
                logger.warning(f"Stored credential for {repository.display_name} was rejected; removing it")
                await self._forget_credential(repository, credential)
            raise

    async def _forget_credential(self, repository: Repository, credential: Optional[Credential]) -> None:
        if credential is None:
            return
        removed = await self.credential_store.delete(repository.repository_id, credential.auth_method)
        if not removed:
            await self.credential_store.delete_token(repository.provider)

    def _check_against_cached_tree(self, repository_id: str, branch: str, path: str) -> None:
        cached = self.tree_cache.get_cached_tree(repository_id, branch, markdown_only=False)
        if cached is None:
            cached = self.tree_cache.get_cached_tree(repository_id, branch, markdown_only=True)
            if cached is not None and not is_markdown_path(path):
                # Filtered snapshot cannot rule out non-markdown files
                return
        if cached is None or cached.truncated:
            return
        node = find_node(cached.nodes, path)
        if node is None or node.is_directory:
            raise PathNotFoundError(path, branch)


def _default_branch(repository: Repository, branches: List[BranchInfo]) -> str:
    for branch in branches:
        if branch.is_default:
            return branch.name
    if branches:
        return branches[0].name
    raise ProviderResponseError(
        f"{repository.display_name} has no branches",
        details={"provider": repository.provider.value, "repository_id": repository.repository_id},
    )


__all__ = ["RepositoryConnector"]
