"""End-to-end tests for the repository connector facade."""

import asyncio
from datetime import datetime, timezone

import pytest

from markread.errors import (
    AuthFailedError,
    InvalidUrlError,
    OperationCancelledError,
    PathNotFoundError,
)
from markread.remote.cancellation import CancellationToken
from markread.remote.connector import RepositoryConnector
from markread.remote.models import (
    AuthMethod,
    DeviceFlowStart,
    DeviceFlowState,
    DeviceFlowStatus,
    Provider,
)

GITHUB_URL = "https://github.com/acme/docs"
GITHUB_ID = "github.com/acme/docs"
AZURE_URL = "https://dev.azure.com/contoso/Website/_git/handbook"
AZURE_ID = "dev.azure.com/contoso/Website/_git/handbook"


class ScriptedAuthenticator:
    """Device flow stand-in that resolves immediately with a fixed outcome."""

    def __init__(self, credential_store, outcome=DeviceFlowStatus.SUCCEEDED, token="gho_device"):
        self.credential_store = credential_store
        self.outcome = outcome
        self.token = token
        self.initiated = 0
        self.block_until_cancelled = False

    async def initiate(self, provider):
        self.initiated += 1
        return DeviceFlowStart(
            session_id="session-1",
            provider=provider,
            user_code="WXYZ-0000",
            verification_uri="https://github.com/login/device",
            expires_in=900,
            interval=5,
        )

    async def wait_for_completion(self, session_id, *, cancel_token=None):
        if self.block_until_cancelled:
            await cancel_token.wait()
            raise OperationCancelledError(cancel_token.reason)
        error = None
        if self.outcome == DeviceFlowStatus.SUCCEEDED:
            await self.credential_store.store_token(Provider.GITHUB, self.token)
        else:
            error = "Access denied by user"
        return DeviceFlowState(
            session_id=session_id,
            status=self.outcome,
            interval=5,
            expires_at=datetime(2025, 1, 1, 12, 15, tzinfo=timezone.utc),
            error=error,
        )


@pytest.fixture
def authenticator(credential_store):
    return ScriptedAuthenticator(credential_store)


@pytest.fixture
def connector(github_fake, azure_fake, credential_store, tree_cache, authenticator):
    return RepositoryConnector(
        clients={Provider.GITHUB: github_fake, Provider.AZURE_DEVOPS: azure_fake},
        credential_store=credential_store,
        tree_cache=tree_cache,
        authenticator=authenticator,
    )


def _paths(nodes):
    result = []
    for node in nodes:
        result.append(node.path)
        result.extend(_paths(node.children or []))
    return result


# ---------------------------------------------------------------------------
# connect
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_connect_with_stored_token_skips_device_flow(connector, credential_store, github_fake, authenticator):
    await credential_store.store_token(Provider.GITHUB, "good-token")

    connected = await connector.connect(GITHUB_URL)

    assert connected.repository_id == GITHUB_ID
    assert connected.current_branch == "main"
    assert connected.default_branch == "main"
    assert [branch.name for branch in connected.branches] == ["main", "dev"]
    assert connected.auth_method == AuthMethod.OAUTH
    assert connected.identity == "repo:github.com/acme/docs:main"
    assert authenticator.initiated == 0
    assert github_fake.credentials[0].token == "good-token"
    # Connecting lists branches only; the tree is loaded on demand
    assert github_fake.calls["fetch_tree"] == 0


@pytest.mark.asyncio
async def test_connect_without_token_runs_device_flow(connector, github_fake, authenticator):
    announced = []

    connected = await connector.connect(GITHUB_URL, on_device_flow=announced.append)

    assert authenticator.initiated == 1
    assert [start.user_code for start in announced] == ["WXYZ-0000"]
    assert connected.current_branch == "main"
    assert github_fake.credentials[-1].token == "gho_device"


@pytest.mark.asyncio
async def test_connect_reports_failed_device_flow(connector, authenticator):
    authenticator.outcome = DeviceFlowStatus.FAILED

    with pytest.raises(AuthFailedError) as exc_info:
        await connector.connect(GITHUB_URL)

    assert exc_info.value.details["status"] == "failed"


@pytest.mark.asyncio
async def test_connect_cancelled_during_device_flow(connector, authenticator, github_fake):
    authenticator.block_until_cancelled = True
    token = CancellationToken()

    def cancel_on_start(start):
        token.cancel("user closed dialog")

    with pytest.raises(OperationCancelledError):
        await connector.connect(GITHUB_URL, cancel_token=token, on_device_flow=cancel_on_start)

    assert github_fake.calls["list_branches"] == 0


@pytest.mark.asyncio
async def test_connect_opens_requested_branch(connector, credential_store):
    await credential_store.store_token(Provider.GITHUB, "good-token")

    connected = await connector.connect(GITHUB_URL, initial_branch="dev")

    assert connected.current_branch == "dev"
    assert connected.default_branch == "main"


@pytest.mark.asyncio
async def test_connect_unknown_branch_falls_back_to_default(connector, credential_store):
    await credential_store.store_token(Provider.GITHUB, "good-token")

    connected = await connector.connect(GITHUB_URL, initial_branch="gone")

    assert connected.current_branch == "main"


@pytest.mark.asyncio
async def test_connect_with_pat_validates_and_stores(connector, credential_store, azure_fake):
    connected = await connector.connect(AZURE_URL, AuthMethod.PAT, token="good-token")

    assert connected.auth_method == AuthMethod.PAT
    assert connected.repository.project == "Website"
    assert azure_fake.calls["validate_token"] == 1
    assert await credential_store.get(AZURE_ID, AuthMethod.PAT) == "good-token"


@pytest.mark.asyncio
async def test_connect_with_invalid_pat_stores_nothing(connector, credential_store, azure_fake):
    with pytest.raises(AuthFailedError):
        await connector.connect(AZURE_URL, "pat", token="wrong")

    assert await credential_store.list_entries() == []
    assert azure_fake.calls["list_branches"] == 0


@pytest.mark.asyncio
async def test_connect_pat_without_stored_token_fails(connector):
    with pytest.raises(AuthFailedError):
        await connector.connect(AZURE_URL, AuthMethod.PAT)


@pytest.mark.asyncio
async def test_connect_reuses_stored_repository_pat(connector, credential_store, azure_fake):
    await credential_store.save(AZURE_ID, AuthMethod.PAT, "good-token")

    connected = await connector.connect(AZURE_URL, AuthMethod.PAT)

    assert connected.auth_method == AuthMethod.PAT
    assert azure_fake.calls["validate_token"] == 0
    assert azure_fake.credentials[0].token == "good-token"


@pytest.mark.asyncio
async def test_connect_rejects_invalid_url(connector, github_fake, authenticator):
    with pytest.raises(InvalidUrlError):
        await connector.connect("https://gitlab.com/acme/docs")

    assert authenticator.initiated == 0
    assert sum(github_fake.calls.values()) == 0


@pytest.mark.asyncio
async def test_rejected_stored_token_is_removed(connector, credential_store, github_fake):
    await credential_store.store_token(Provider.GITHUB, "revoked-token")
    github_fake.list_error = AuthFailedError("Bad credentials", details={"status_code": 401})

    with pytest.raises(AuthFailedError):
        await connector.connect(GITHUB_URL)

    assert await credential_store.get_token(Provider.GITHUB) is None


# ---------------------------------------------------------------------------
# fetch_repository_info
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_fetch_repository_info_is_anonymous_without_credentials(connector, github_fake, authenticator):
    info = await connector.fetch_repository_info(GITHUB_URL)

    assert info.repository_id == GITHUB_ID
    assert info.default_branch == "main"
    assert info.default_branch_changed is False
    assert github_fake.credentials == [None]
    assert authenticator.initiated == 0


@pytest.mark.asyncio
async def test_fetch_repository_info_detects_default_branch_change(connector):
    info = await connector.fetch_repository_info(GITHUB_URL, known_default_branch="master")

    assert info.default_branch_changed is True

    unchanged = await connector.fetch_repository_info(GITHUB_URL, known_default_branch="main")
    assert unchanged.default_branch_changed is False


# ---------------------------------------------------------------------------
# Trees
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_fetch_tree_is_markdown_only_and_cached(connector, github_fake):
    first = await connector.fetch_tree(GITHUB_ID, "main")
    second = await connector.fetch_tree(GITHUB_ID, "main")

    assert _paths(first.nodes) == ["docs", "docs/guide.md", "README.md"]
    assert first.markdown_file_count == 2
    assert first.from_cache is False
    assert second.from_cache is True
    assert github_fake.calls["fetch_tree"] == 1


@pytest.mark.asyncio
async def test_concurrent_tree_requests_share_one_call(connector, github_fake):
    github_fake.tree_gate = asyncio.Event()

    pending = [asyncio.ensure_future(connector.fetch_tree(GITHUB_ID, "main")) for _ in range(3)]
    await asyncio.sleep(0.01)
    github_fake.tree_gate.set()
    results = await asyncio.gather(*pending)

    assert github_fake.calls["fetch_tree"] == 1
    assert all(_paths(result.nodes) == _paths(results[0].nodes) for result in results)


@pytest.mark.asyncio
async def test_branch_trees_never_mix(connector, github_fake):
    await connector.fetch_tree(GITHUB_ID, "main")

    dev = await connector.fetch_tree(GITHUB_ID, "dev")

    assert _paths(dev.nodes) == ["notes", "notes/todo.md", "CHANGELOG.md"]
    assert dev.branch == "dev"
    assert github_fake.calls["fetch_tree:dev"] == 1


@pytest.mark.asyncio
async def test_switch_branch_invalidates_previous_branch(connector, github_fake):
    await connector.fetch_tree(GITHUB_ID, "main")

    dev = await connector.switch_branch(GITHUB_ID, "main", "dev")

    assert dev.branch == "dev"
    assert connector.get_cached_tree(GITHUB_ID, "main") is None
    assert connector.get_cached_tree(GITHUB_ID, "dev") is not None


@pytest.mark.asyncio
async def test_force_refresh_bypasses_cache(connector, github_fake):
    await connector.fetch_tree(GITHUB_ID, "main")

    refreshed = await connector.fetch_tree(GITHUB_ID, "main", force_refresh=True)

    assert refreshed.from_cache is False
    assert github_fake.calls["fetch_tree"] == 2


@pytest.mark.asyncio
async def test_fetch_tree_can_be_cancelled(connector, github_fake):
    github_fake.tree_gate = asyncio.Event()
    token = CancellationToken()

    pending = asyncio.ensure_future(connector.fetch_tree(GITHUB_ID, "main", cancel_token=token))
    await asyncio.sleep(0.01)
    token.cancel()

    with pytest.raises(OperationCancelledError):
        await pending
    github_fake.tree_gate.set()
    await asyncio.sleep(0.01)


@pytest.mark.asyncio
async def test_disconnect_drops_cached_trees(connector):
    await connector.fetch_tree(GITHUB_ID, "main")
    await connector.fetch_tree(GITHUB_ID, "dev")

    assert connector.disconnect(GITHUB_ID) == 2
    assert connector.get_cached_tree(GITHUB_ID, "main") is None


@pytest.mark.asyncio
async def test_repository_credential_takes_precedence(connector, credential_store, github_fake):
    await credential_store.store_token(Provider.GITHUB, "gho_provider")
    await credential_store.save(GITHUB_ID, AuthMethod.PAT, "repo-pat")

    await connector.fetch_repository_info(GITHUB_URL)

    assert github_fake.credentials[-1].token == "repo-pat"


# ---------------------------------------------------------------------------
# Files
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_fetch_file_returns_content(connector):
    content = await connector.fetch_file(GITHUB_ID, "main", "docs/guide.md")

    assert content.content == "# Guide\n"
    assert content.is_markdown is True


@pytest.mark.asyncio
async def test_fetch_file_rejects_paths_outside_repository(connector, github_fake):
    with pytest.raises(PathNotFoundError):
        await connector.fetch_file(GITHUB_ID, "main", "../../etc/passwd")
    with pytest.raises(PathNotFoundError):
        await connector.fetch_file(GITHUB_ID, "main", "/")

    assert github_fake.calls["fetch_file"] == 0


@pytest.mark.asyncio
async def test_fetch_file_absent_from_cached_tree_skips_network(connector, github_fake):
    await connector.fetch_tree(GITHUB_ID, "main")

    with pytest.raises(PathNotFoundError) as exc_info:
        await connector.fetch_file(GITHUB_ID, "main", "docs/missing.md")

    assert exc_info.value.details["branch"] == "main"
    assert github_fake.calls["fetch_file"] == 0


@pytest.mark.asyncio
async def test_markdown_only_tree_cannot_rule_out_other_files(connector, github_fake):
    await connector.fetch_tree(GITHUB_ID, "main")

    with pytest.raises(PathNotFoundError):
        await connector.fetch_file(GITHUB_ID, "main", "src/app.ts")

    assert github_fake.calls["fetch_file"] == 1


# ---------------------------------------------------------------------------
# Credentials
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_authenticate_with_pat_provider_wide(connector, credential_store):
    account = await connector.authenticate_with_pat(Provider.GITHUB, "  good-token  ")

    credential = await credential_store.get_provider_credential(Provider.GITHUB)
    assert account == "octocat"
    assert credential.token == "good-token"
    assert credential.auth_method == AuthMethod.PAT


@pytest.mark.asyncio
async def test_authenticate_with_pat_rejects_empty_and_mismatched(connector):
    with pytest.raises(AuthFailedError):
        await connector.authenticate_with_pat(Provider.GITHUB, "   ")
    with pytest.raises(InvalidUrlError):
        await connector.authenticate_with_pat(Provider.GITHUB, "good-token", AZURE_URL)


@pytest.mark.asyncio
async def test_sign_out_provider_removes_its_repository_entries(connector, credential_store):
    await credential_store.store_token(Provider.GITHUB, "gho")
    await credential_store.save(GITHUB_ID, AuthMethod.PAT, "repo-pat")
    await credential_store.save(AZURE_ID, AuthMethod.PAT, "azure-pat")

    removed = await connector.sign_out(Provider.GITHUB)

    assert removed == 2
    assert [entry.subject for entry in await credential_store.list_entries()] == [AZURE_ID]


@pytest.mark.asyncio
async def test_sign_out_repository_clears_cache(connector, credential_store):
    await credential_store.save(GITHUB_ID, AuthMethod.PAT, "repo-pat")
    await connector.fetch_tree(GITHUB_ID, "main")

    assert await connector.sign_out(repository_id=GITHUB_ID) == 1
    assert connector.get_cached_tree(GITHUB_ID, "main") is None


@pytest.mark.asyncio
async def test_sign_out_requires_a_target(connector):
    with pytest.raises(ValueError):
        await connector.sign_out()
