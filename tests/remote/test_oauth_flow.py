"""Tests for the GitHub Device Flow state machine."""

import asyncio
from datetime import timedelta
from unittest.mock import patch

import httpx
import pytest

from markread.errors import (
    DeviceFlowSessionNotFoundError,
    OperationCancelledError,
    ProviderResponseError,
    RateLimitedError,
    UnsupportedProviderError,
)
from markread.remote.cancellation import CancellationToken
from markread.remote.github_client import GitHubClient
from markread.remote.models import DeviceFlowStatus, Provider
from markread.remote.oauth_flow import DeviceFlowAuthenticator

DEVICE_URL = "https://github.com/login/device/code"
TOKEN_URL = "https://github.com/login/oauth/access_token"
USER_URL = "https://api.github.com/user"

DEVICE_CODE = {
    "device_code": "dev-123",
    "user_code": "ABCD-1234",
    "verification_uri": "https://github.com/login/device",
    "expires_in": 900,
    "interval": 5,
}
PENDING = {"error": "authorization_pending"}
GRANTED = {"access_token": "gho_granted", "token_type": "bearer", "scope": "repo"}


@pytest.fixture
def authenticator(credential_store, make_transport, clock, http_handler):
    http_handler.add("POST", DEVICE_URL, json=DEVICE_CODE)
    http_handler.add("GET", USER_URL, json={"login": "octocat"})
    return DeviceFlowAuthenticator(
        credential_store=credential_store,
        transport=make_transport(Provider.GITHUB),
        client_id="test-client",
        user_client=GitHubClient(make_transport(Provider.GITHUB)),
        open_browser=lambda url: True,
        _now=clock,
    )


def _polls(http_handler):
    return http_handler.count("POST", TOKEN_URL)


# ---------------------------------------------------------------------------
# Initiation
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_initiate_returns_user_code(authenticator, http_handler):
    start = await authenticator.initiate()

    assert start.user_code == "ABCD-1234"
    assert start.verification_uri == "https://github.com/login/device"
    assert start.interval == 5
    assert start.browser_opened is True

    request = http_handler.requests[0]
    assert b"client_id=test-client" in request.content
    assert request.headers["Accept"] == "application/json"

    session = authenticator.get_session(start.session_id)
    assert session.status == DeviceFlowStatus.PENDING
    assert session.history == [DeviceFlowStatus.INITIATING, DeviceFlowStatus.PENDING]


@pytest.mark.asyncio
async def test_initiate_rejects_azure_devops(authenticator, http_handler):
    with pytest.raises(UnsupportedProviderError):
        await authenticator.initiate(Provider.AZURE_DEVOPS)

    assert http_handler.requests == []


@pytest.mark.asyncio
async def test_initiate_error_payload_leaves_no_session(authenticator, http_handler):
    http_handler.add(
        "POST",
        DEVICE_URL,
        json={"error": "unauthorized_client", "error_description": "Device flow disabled"},
    )

    with pytest.raises(ProviderResponseError) as exc_info:
        await authenticator.initiate()

    assert "Device flow disabled" in exc_info.value.message
    assert authenticator.active_sessions == []


@pytest.mark.asyncio
async def test_browser_failure_is_not_fatal(authenticator):
    def broken_browser(url):
        raise OSError("no display")

    authenticator.open_browser = broken_browser

    start = await authenticator.initiate()

    assert start.browser_opened is False
    assert authenticator.get_session(start.session_id).status == DeviceFlowStatus.PENDING


@pytest.mark.asyncio
async def test_default_browser_opens_verification_uri(credential_store, make_transport, clock, http_handler):
    http_handler.add("POST", DEVICE_URL, json=DEVICE_CODE)
    authenticator = DeviceFlowAuthenticator(
        credential_store=credential_store,
        transport=make_transport(Provider.GITHUB),
        client_id="test-client",
        _now=clock,
    )

    with patch("markread.remote.oauth_flow.webbrowser.open", return_value=True) as mock_open:
        start = await authenticator.initiate()

    mock_open.assert_called_once_with("https://github.com/login/device", new=2)
    assert start.browser_opened is True


# ---------------------------------------------------------------------------
# Polling
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_successful_flow_stores_provider_token(authenticator, http_handler, clock, credential_store):
    http_handler.add_sequence("POST", TOKEN_URL, [(200, PENDING), (200, GRANTED)])
    start = await authenticator.initiate()

    clock.advance(5)
    first = await authenticator.check_status(start.session_id)
    clock.advance(5)
    second = await authenticator.check_status(start.session_id)

    assert first.status == DeviceFlowStatus.PENDING
    assert second.status == DeviceFlowStatus.SUCCEEDED
    assert second.user_login == "octocat"
    assert second.next_poll_at is None
    assert await credential_store.get_token(Provider.GITHUB) == "gho_granted"

    session = authenticator.get_session(start.session_id)
    assert session.history == [
        DeviceFlowStatus.INITIATING,
        DeviceFlowStatus.PENDING,
        DeviceFlowStatus.SUCCEEDED,
    ]
    assert session.device_code is None


@pytest.mark.asyncio
async def test_tick_before_interval_does_not_poll(authenticator, http_handler, clock):
    http_handler.add("POST", TOKEN_URL, json=PENDING)
    start = await authenticator.initiate()

    state = await authenticator.check_status(start.session_id)
    clock.advance(4)
    await authenticator.check_status(start.session_id)

    assert state.status == DeviceFlowStatus.PENDING
    assert _polls(http_handler) == 0


@pytest.mark.asyncio
async def test_slow_down_interval_is_honoured_by_later_ticks(authenticator, http_handler, clock):
    http_handler.add_sequence(
        "POST",
        TOKEN_URL,
        [(200, PENDING), (200, {"error": "slow_down"}), (200, PENDING)],
    )
    start = await authenticator.initiate()

    clock.advance(5)
    await authenticator.check_status(start.session_id)
    assert _polls(http_handler) == 1

    clock.advance(5)
    slowed = await authenticator.check_status(start.session_id)
    assert _polls(http_handler) == 2
    assert slowed.interval == 10

    clock.advance(5)
    early = await authenticator.check_status(start.session_id)
    assert _polls(http_handler) == 2
    assert early.status == DeviceFlowStatus.PENDING

    clock.advance(5)
    await authenticator.check_status(start.session_id)
    assert _polls(http_handler) == 3


@pytest.mark.asyncio
async def test_slow_down_respects_server_supplied_interval(authenticator, http_handler, clock):
    http_handler.add("POST", TOKEN_URL, json={"error": "slow_down", "interval": 20})
    start = await authenticator.initiate()

    clock.advance(5)
    state = await authenticator.check_status(start.session_id)

    assert state.interval == 20


@pytest.mark.asyncio
async def test_access_denied_fails_session(authenticator, http_handler, clock, credential_store):
    http_handler.add("POST", TOKEN_URL, json={"error": "access_denied"})
    start = await authenticator.initiate()

    clock.advance(5)
    state = await authenticator.check_status(start.session_id)

    assert state.status == DeviceFlowStatus.FAILED
    assert state.error == "Access denied by user"
    assert await credential_store.get_token(Provider.GITHUB) is None


@pytest.mark.asyncio
async def test_expired_token_response_expires_session(authenticator, http_handler, clock):
    http_handler.add("POST", TOKEN_URL, json={"error": "expired_token"})
    start = await authenticator.initiate()

    clock.advance(5)
    state = await authenticator.check_status(start.session_id)

    assert state.status == DeviceFlowStatus.EXPIRED


@pytest.mark.asyncio
async def test_session_expires_locally_without_polling(authenticator, http_handler, clock):
    http_handler.add("POST", TOKEN_URL, json=PENDING)
    start = await authenticator.initiate()

    clock.advance(901)
    state = await authenticator.check_status(start.session_id)

    assert state.status == DeviceFlowStatus.EXPIRED
    assert _polls(http_handler) == 0


@pytest.mark.asyncio
async def test_network_failure_keeps_session_pending(authenticator, http_handler, clock):
    def unreachable(request):
        raise httpx.ConnectError("connection refused", request=request)

    http_handler.add_handler("POST", TOKEN_URL, unreachable)
    start = await authenticator.initiate()

    clock.advance(5)
    state = await authenticator.check_status(start.session_id)

    assert state.status == DeviceFlowStatus.PENDING
    assert authenticator.get_session(start.session_id).poll_count == 1
    assert state.error_code == "NETWORK_UNREACHABLE"
    assert state.error


@pytest.mark.asyncio
async def test_rate_limited_poll_backs_off_and_reports_error(authenticator, http_handler, clock):
    http_handler.add("POST", TOKEN_URL, status=429, json={"message": "slow"}, headers={"Retry-After": "120"})
    start = await authenticator.initiate()

    clock.advance(5)
    state = await authenticator.check_status(start.session_id)

    assert state.status == DeviceFlowStatus.PENDING
    assert state.error_code == "RATE_LIMITED"
    assert state.interval == 120
    assert state.next_poll_at == clock() + timedelta(seconds=120)

    clock.advance(5)
    await authenticator.check_status(start.session_id)

    assert _polls(http_handler) == 1


@pytest.mark.asyncio
async def test_answered_poll_clears_transient_error(authenticator, http_handler, clock):
    http_handler.add_sequence("POST", TOKEN_URL, [(503, {"message": "unavailable"}), (200, PENDING)])
    start = await authenticator.initiate()

    clock.advance(5)
    assert (await authenticator.check_status(start.session_id)).error_code == "NETWORK_UNREACHABLE"

    clock.advance(5)
    state = await authenticator.check_status(start.session_id)

    assert state.status == DeviceFlowStatus.PENDING
    assert state.error_code is None
    assert state.error is None


@pytest.mark.asyncio
async def test_terminal_state_is_returned_without_polling(authenticator, http_handler, clock):
    http_handler.add("POST", TOKEN_URL, json={"error": "access_denied"})
    start = await authenticator.initiate()
    clock.advance(5)
    await authenticator.check_status(start.session_id)

    clock.advance(30)
    state = await authenticator.check_status(start.session_id)

    assert state.status == DeviceFlowStatus.FAILED
    assert _polls(http_handler) == 1


@pytest.mark.asyncio
async def test_concurrent_ticks_share_one_poll(authenticator, http_handler, clock):
    release = asyncio.Event()

    async def gated(request):
        await release.wait()
        return httpx.Response(200, json=GRANTED)

    http_handler.add_handler("POST", TOKEN_URL, gated)
    start = await authenticator.initiate()
    clock.advance(5)

    first = asyncio.ensure_future(authenticator.check_status(start.session_id))
    second = asyncio.ensure_future(authenticator.check_status(start.session_id))
    await asyncio.sleep(0.01)
    release.set()
    states = await asyncio.gather(first, second)

    assert _polls(http_handler) == 1
    assert [state.status for state in states] == [DeviceFlowStatus.SUCCEEDED] * 2


# ---------------------------------------------------------------------------
# Cancellation and lifecycle
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_cancel_during_poll_prevents_success(authenticator, http_handler, clock, credential_store):
    entered = asyncio.Event()
    release = asyncio.Event()

    async def slow_grant(request):
        entered.set()
        await release.wait()
        return httpx.Response(200, json=GRANTED)

    http_handler.add_handler("POST", TOKEN_URL, slow_grant)
    start = await authenticator.initiate()
    clock.advance(5)

    tick = asyncio.ensure_future(authenticator.check_status(start.session_id))
    await entered.wait()
    cancelled = await authenticator.cancel(start.session_id)
    state = await tick

    assert cancelled.status == DeviceFlowStatus.CANCELLED
    assert state.status == DeviceFlowStatus.CANCELLED
    assert await credential_store.get_token(Provider.GITHUB) is None

    clock.advance(60)
    after = await authenticator.check_status(start.session_id)
    assert after.status == DeviceFlowStatus.CANCELLED
    assert _polls(http_handler) == 1


@pytest.mark.asyncio
async def test_cancel_is_noop_on_terminal_session(authenticator, http_handler, clock):
    http_handler.add("POST", TOKEN_URL, json=GRANTED)
    start = await authenticator.initiate()
    clock.advance(5)
    await authenticator.check_status(start.session_id)

    state = await authenticator.cancel(start.session_id)

    assert state.status == DeviceFlowStatus.SUCCEEDED


@pytest.mark.asyncio
async def test_unknown_session_raises(authenticator):
    with pytest.raises(DeviceFlowSessionNotFoundError):
        await authenticator.check_status("missing")
    with pytest.raises(DeviceFlowSessionNotFoundError):
        await authenticator.cancel("missing")


@pytest.mark.asyncio
async def test_finished_sessions_are_purged_after_retention(authenticator, http_handler, clock):
    http_handler.add("POST", TOKEN_URL, json={"error": "access_denied"})
    start = await authenticator.initiate()
    clock.advance(5)
    await authenticator.check_status(start.session_id)

    clock.advance(authenticator.retention_seconds)

    with pytest.raises(DeviceFlowSessionNotFoundError):
        await authenticator.check_status(start.session_id)


# ---------------------------------------------------------------------------
# Internal scheduler
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_wait_for_completion_sleeps_for_the_interval(authenticator, http_handler, clock):
    http_handler.add_sequence("POST", TOKEN_URL, [(200, PENDING), (200, GRANTED)])
    sleeps = []

    async def fake_sleep(seconds):
        sleeps.append(seconds)
        clock.advance(seconds)

    start = await authenticator.initiate()
    state = await authenticator.wait_for_completion(start.session_id, sleep=fake_sleep)

    assert state.status == DeviceFlowStatus.SUCCEEDED
    assert sleeps == [5.0, 5.0]
    assert _polls(http_handler) == 2


@pytest.mark.asyncio
async def test_wait_for_completion_surfaces_transient_errors(authenticator, http_handler, clock):
    http_handler.add("POST", TOKEN_URL, status=429, json={"message": "slow"}, headers={"Retry-After": "120"})
    sleeps = []

    async def fake_sleep(seconds):
        sleeps.append(seconds)
        clock.advance(seconds)

    start = await authenticator.initiate()
    with pytest.raises(RateLimitedError) as exc_info:
        await authenticator.wait_for_completion(start.session_id, sleep=fake_sleep)

    assert exc_info.value.retry_after == 120
    assert authenticator.get_session(start.session_id).status == DeviceFlowStatus.PENDING

    # Waiting again resumes at the backed-off interval
    http_handler.add("POST", TOKEN_URL, json=GRANTED)
    state = await authenticator.wait_for_completion(start.session_id, sleep=fake_sleep)

    assert state.status == DeviceFlowStatus.SUCCEEDED
    assert state.error_code is None
    assert sleeps == [5.0, 120.0]
    assert _polls(http_handler) == 2


@pytest.mark.asyncio
async def test_wait_for_completion_honours_cancel_token(authenticator, http_handler, clock):
    http_handler.add("POST", TOKEN_URL, json=PENDING)
    token = CancellationToken()

    async def cancelling_sleep(seconds):
        clock.advance(seconds)
        token.cancel("user closed dialog")

    start = await authenticator.initiate()
    with pytest.raises(OperationCancelledError):
        await authenticator.wait_for_completion(start.session_id, cancel_token=token, sleep=cancelling_sleep)

    assert authenticator.get_session(start.session_id).status == DeviceFlowStatus.CANCELLED
