"""OAuth Device Authorization Grant for GitHub.

Each sign-in is an explicit state machine::

    INITIATING -> PENDING -> SUCCEEDED | FAILED | CANCELLED | EXPIRED

:meth:`DeviceFlowAuthenticator.check_status` is the single "tick": it either
returns the cached terminal state, declines to poll because the current
interval has not elapsed, joins the poll already in flight, or issues exactly
one token request. The session's ``interval`` is authoritative; ``slow_down``
raises it and every later tick honours the new value. Callers may drive ticks
from their own loop (the UI bridge) or use :meth:`wait_for_completion`.

Sessions live in memory only. The device code is dropped as soon as a session
becomes terminal, and finished sessions are forgotten after the retention
window. Azure DevOps has no public device flow client, so it is PAT-only.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
import webbrowser
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Awaitable, Callable, Dict, List, Optional, Sequence, Union

from pydantic import BaseModel, Field, ValidationError

from markread.errors import (
    DeviceFlowSessionNotFoundError,
    EncryptionUnavailableError,
    MarkReadError,
    NetworkUnreachableError,
    OperationCancelledError,
    ProviderResponseError,
    RateLimitedError,
    UnsupportedProviderError,
)

from .api_client import Credential, ProviderClient, ProviderTransport, decode_json
from .cancellation import CancellationToken, run_cancellable
from .credential_store import CredentialStore
from .models import AuthMethod, DeviceFlowStart, DeviceFlowState, DeviceFlowStatus, Provider

logger = logging.getLogger(__name__)

DEVICE_CODE_GRANT = "urn:ietf:params:oauth:grant-type:device_code"
SLOW_DOWN_INCREMENT_SECONDS = 5
DEFAULT_INTERVAL_SECONDS = 5


# ---------------------------------------------------------------------------
# Wire models
# ---------------------------------------------------------------------------


class DeviceCodeResponse(BaseModel):
    """Response from device code request."""

    device_code: str = Field(..., description="Device verification code")
    user_code: str = Field(..., description="User verification code to display")
    verification_uri: str = Field(..., description="URL for user to visit")
    expires_in: int = Field(..., gt=0, description="Expiration time in seconds")
    interval: int = Field(default=DEFAULT_INTERVAL_SECONDS, ge=1, description="Polling interval in seconds")


class TokenPollResponse(BaseModel):
    """Response from the access token endpoint (success or pending)."""

    access_token: Optional[str] = None
    token_type: Optional[str] = None
    scope: Optional[str] = None
    expires_in: Optional[int] = None
    error: Optional[str] = None
    error_description: Optional[str] = None
    interval: Optional[int] = None


# ---------------------------------------------------------------------------
# Session state
# ---------------------------------------------------------------------------


@dataclass
class DeviceFlowSession:
    """In-memory state of one sign-in attempt."""

    session_id: str
    provider: Provider
    scopes: List[str]
    created_at: datetime
    device_code: Optional[str] = field(default=None, repr=False)
    user_code: str = ""
    verification_uri: str = ""
    expires_at: Optional[datetime] = None
    interval: int = DEFAULT_INTERVAL_SECONDS
    status: DeviceFlowStatus = DeviceFlowStatus.INITIATING
    history: List[DeviceFlowStatus] = field(default_factory=lambda: [DeviceFlowStatus.INITIATING])
    last_poll_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    error: Optional[str] = None
    # Last transient poll failure; cleared by the next answered poll
    last_error: Optional[MarkReadError] = field(default=None, repr=False)
    user_login: Optional[str] = None
    poll_count: int = 0
    _poll_task: Optional["asyncio.Task[None]"] = field(default=None, repr=False)
    _cancelled: asyncio.Event = field(default_factory=asyncio.Event, repr=False)

    @property
    def next_poll_at(self) -> Optional[datetime]:
        if self.status.is_terminal:
            return None
        # The first poll also waits one interval after the code was issued
        reference = self.last_poll_at or self.created_at
        return reference + timedelta(seconds=self.interval)

    def transition(self, status: DeviceFlowStatus) -> None:
        self.status = status
        self.history.append(status)

    def to_state(self) -> DeviceFlowState:
        return DeviceFlowState(
            session_id=self.session_id,
            status=self.status,
            interval=self.interval,
            expires_at=self.expires_at or self.created_at,
            next_poll_at=self.next_poll_at,
            error=self.error,
            error_code=self.last_error.code if self.last_error is not None else None,
            user_login=self.user_login,
        )


# ---------------------------------------------------------------------------
# Authenticator
# ---------------------------------------------------------------------------


def _open_in_browser(url: str) -> bool:
    return webbrowser.open(url, new=2)


@dataclass
class DeviceFlowAuthenticator:
    """Drives Device Flow sessions and hands obtained tokens to the store.

    Attributes:
        credential_store: Receives the provider-wide token on success
        transport: HTTP transport for the GitHub OAuth endpoints
        client_id: OAuth App client id
        oauth_url: Base URL of the device/token endpoints
        user_client: Optional provider client used to look up the signed-in login
        default_scopes: Scopes requested when the caller passes none
        retention_seconds: How long finished sessions remain queryable
        open_browser: Callable opening the verification URL; failures are non-fatal
    """

    credential_store: CredentialStore
    transport: ProviderTransport
    client_id: str
    oauth_url: str = "https://github.com"
    user_client: Optional[ProviderClient] = None
    default_scopes: Sequence[str] = ("repo", "user:email")
    retention_seconds: float = 300.0
    open_browser: Callable[[str], bool] = field(default=_open_in_browser, repr=False)
    _now: Callable[[], datetime] = field(default=lambda: datetime.now(timezone.utc), repr=False)
    _sessions: Dict[str, DeviceFlowSession] = field(default_factory=dict, init=False, repr=False)

    def __post_init__(self) -> None:
        self.oauth_url = self.oauth_url.rstrip("/")

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def initiate(
        self,
        provider: Union[Provider, str] = Provider.GITHUB,
        scopes: Optional[Sequence[str]] = None,
    ) -> DeviceFlowStart:
        """Request a device code and surface the user code.

        Raises:
            UnsupportedProviderError: provider has no device flow
            NetworkUnreachableError / RateLimitedError / ProviderResponseError
        """
        provider = Provider(provider)
        if provider != Provider.GITHUB:
            raise UnsupportedProviderError(
                provider.value,
                "Azure DevOps sign-in uses personal access tokens; device flow is GitHub only",
            )
        self._purge_finished()

        requested = list(scopes or self.default_scopes)
        session = DeviceFlowSession(
            session_id=str(uuid.uuid4()),
            provider=provider,
            scopes=requested,
            created_at=self._now(),
        )
        self._sessions[session.session_id] = session
        try:
            payload = await self._post_form(
                f"{self.oauth_url}/login/device/code",
                {"client_id": self.client_id, "scope": " ".join(requested)},
            )
            response = _decode_device_code(payload)
        except MarkReadError:
            self._sessions.pop(session.session_id, None)
            raise

        session.device_code = response.device_code
        session.user_code = response.user_code
        session.verification_uri = response.verification_uri
        session.interval = response.interval
        session.expires_at = session.created_at + timedelta(seconds=response.expires_in)
        session.transition(DeviceFlowStatus.PENDING)
        logger.info(
            f"Device flow session {session.session_id} started for {provider.value}; "
            f"expires in {response.expires_in}s, interval {response.interval}s"
        )

        browser_opened = await self._try_open_browser(response.verification_uri)
        return DeviceFlowStart(
            session_id=session.session_id,
            provider=provider,
            user_code=response.user_code,
            verification_uri=response.verification_uri,
            expires_in=response.expires_in,
            interval=response.interval,
            browser_opened=browser_opened,
        )

    async def check_status(self, session_id: str) -> DeviceFlowState:
        """Advance the session by at most one provider poll.

        Raises:
            DeviceFlowSessionNotFoundError: unknown or purged session
        """
        self._purge_finished()
        session = self._get_session(session_id)

        if session.status.is_terminal or session.status == DeviceFlowStatus.INITIATING:
            return session.to_state()

        now = self._now()
        if session.expires_at is not None and now >= session.expires_at:
            self._finish(session, DeviceFlowStatus.EXPIRED, "Device code expired")
            return session.to_state()

        task = session._poll_task
        if task is None or task.done():
            next_poll_at = session.next_poll_at
            if next_poll_at is not None and now < next_poll_at:
                # Too early; the caller must honour the current interval
                return session.to_state()
            session.last_poll_at = now
            task = asyncio.ensure_future(self._poll_once(session))
            session._poll_task = task
        # A concurrent tick joins the in-flight poll instead of issuing another

        cancel_waiter = asyncio.ensure_future(session._cancelled.wait())
        try:
            await asyncio.wait({task, cancel_waiter}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            cancel_waiter.cancel()
        if task.done() and not task.cancelled():
            # Surfaces unexpected failures; provider outcomes are already folded into the session
            task.result()
        return session.to_state()

    async def cancel(self, session_id: str) -> DeviceFlowState:
        """Stop polling and mark the session cancelled; no-op when terminal."""
        session = self._get_session(session_id)
        if session.status.is_terminal:
            return session.to_state()
        # GitHub offers no per-device-code revocation; dropping the code is final
        self._finish(session, DeviceFlowStatus.CANCELLED, "Cancelled by user")
        task = session._poll_task
        if task is not None and not task.done():
            task.cancel()
        logger.info(f"Device flow session {session_id} cancelled")
        return session.to_state()

    async def wait_for_completion(
        self,
        session_id: str,
        *,
        cancel_token: Optional[CancellationToken] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> DeviceFlowState:
        """Internal scheduler: tick at the current interval until terminal.

        The session stays pending when a poll fails transiently, so the caller
        may call this again once the condition clears.

        Raises:
            OperationCancelledError: ``cancel_token`` fired; the session is cancelled
            RateLimitedError: the token endpoint asked us to back off
            NetworkUnreachableError: the token endpoint could not be reached
        """
        while True:
            if cancel_token is not None and cancel_token.cancelled:
                await self.cancel(session_id)
                raise OperationCancelledError(cancel_token.reason)
            session = self._get_session(session_id)
            polls_before = session.poll_count
            state = await self._tick_cancellable(session_id, cancel_token)
            if state.status.is_terminal:
                return state
            if session.poll_count != polls_before and session.last_error is not None:
                raise session.last_error
            delay = self._seconds_until(state.next_poll_at, state.interval)
            try:
                await run_cancellable(sleep(delay), cancel_token)
            except OperationCancelledError:
                await self.cancel(session_id)
                raise

    def get_session(self, session_id: str) -> DeviceFlowSession:
        return self._get_session(session_id)

    @property
    def active_sessions(self) -> List[str]:
        return [sid for sid, session in self._sessions.items() if not session.status.is_terminal]

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _tick_cancellable(
        self, session_id: str, cancel_token: Optional[CancellationToken]
    ) -> DeviceFlowState:
        try:
            return await run_cancellable(self.check_status(session_id), cancel_token, shield=True)
        except OperationCancelledError:
            await self.cancel(session_id)
            raise

    async def _post_form(self, url: str, form: Dict[str, str]):
        response = await self.transport.request(
            "POST",
            url,
            data=form,
            headers={"Accept": "application/json"},
            check_rate_limit=False,
        )
        return decode_json(response, self.transport.provider)

    async def _poll_once(self, session: DeviceFlowSession) -> None:
        session.poll_count += 1
        try:
            payload = await self._post_form(
                f"{self.oauth_url}/login/oauth/access_token",
                {
                    "client_id": self.client_id,
                    "device_code": session.device_code or "",
                    "grant_type": DEVICE_CODE_GRANT,
                },
            )
        except RateLimitedError as exc:
            if not session.status.is_terminal and exc.retry_after:
                session.interval = max(session.interval, exc.retry_after)
            self._record_transient(session, exc)
            return
        except NetworkUnreachableError as exc:
            self._record_transient(session, exc)
            return
        except MarkReadError as exc:
            if not session.status.is_terminal:
                self._finish(session, DeviceFlowStatus.FAILED, exc.message)
            return

        if session.status.is_terminal:
            return
        session.last_error = None
        session.error = None
        try:
            result = TokenPollResponse.model_validate(payload)
        except ValidationError:
            self._finish(session, DeviceFlowStatus.FAILED, "Unexpected token endpoint response")
            return

        if result.access_token:
            await self._complete(session, result)
        elif result.error == "authorization_pending":
            logger.debug(f"Device flow session {session.session_id} still pending")
        elif result.error == "slow_down":
            increased = session.interval + SLOW_DOWN_INCREMENT_SECONDS
            session.interval = max(increased, result.interval or 0)
            logger.warning(
                f"Device flow session {session.session_id} told to slow down; interval now {session.interval}s"
            )
        elif result.error == "expired_token":
            self._finish(session, DeviceFlowStatus.EXPIRED, "Device code expired")
        elif result.error == "access_denied":
            self._finish(session, DeviceFlowStatus.FAILED, "Access denied by user")
        else:
            self._finish(
                session,
                DeviceFlowStatus.FAILED,
                result.error_description or result.error or "Token endpoint returned no token",
            )

    def _record_transient(self, session: DeviceFlowSession, error: MarkReadError) -> None:
        if session.status.is_terminal:
            return
        session.last_error = error
        session.error = error.message
        logger.info(
            f"Device flow poll for {session.session_id} deferred: {error.code}; "
            f"retrying in {session.interval}s"
        )

    async def _complete(self, session: DeviceFlowSession, result: TokenPollResponse) -> None:
        expires_at = None
        if result.expires_in:
            expires_at = self._now() + timedelta(seconds=result.expires_in)
        try:
            await self.credential_store.store_token(
                session.provider,
                result.access_token,
                auth_method=AuthMethod.OAUTH,
                expires_at=expires_at,
            )
        except EncryptionUnavailableError as exc:
            self._finish(session, DeviceFlowStatus.FAILED, exc.message)
            return

        if self.user_client is not None:
            try:
                session.user_login = await self.user_client.validate_token(
                    Credential(token=result.access_token, auth_method=AuthMethod.OAUTH)
                )
            except MarkReadError as exc:
                # Display name only; the token is already stored
                logger.warning(f"Could not fetch signed-in user for {session.session_id}: {exc.code}")

        if session.status.is_terminal:
            return
        self._finish(session, DeviceFlowStatus.SUCCEEDED)
        logger.info(f"Device flow session {session.session_id} succeeded")

    def _finish(self, session: DeviceFlowSession, status: DeviceFlowStatus, error: Optional[str] = None) -> None:
        session.transition(status)
        session.error = error
        session.last_error = None
        session.completed_at = self._now()
        session.device_code = None
        if status == DeviceFlowStatus.CANCELLED:
            session._cancelled.set()
        if status in (DeviceFlowStatus.FAILED, DeviceFlowStatus.EXPIRED):
            logger.info(f"Device flow session {session.session_id} {status.value}: {error}")

    async def _try_open_browser(self, url: str) -> bool:
        try:
            opened = await asyncio.to_thread(self.open_browser, url)
        except (webbrowser.Error, OSError, RuntimeError) as exc:
            logger.warning(f"Could not open browser for device flow: {exc}")
            return False
        if not opened:
            logger.warning("No browser available; show the verification URL to the user")
        return bool(opened)

    def _get_session(self, session_id: str) -> DeviceFlowSession:
        session = self._sessions.get(session_id)
        if session is None:
            raise DeviceFlowSessionNotFoundError(session_id)
        return session

    def _purge_finished(self) -> None:
        now = self._now()
        cutoff = timedelta(seconds=self.retention_seconds)
        for session_id in list(self._sessions):
            session = self._sessions[session_id]
            if session.completed_at is not None and now - session.completed_at >= cutoff:
                del self._sessions[session_id]

    def _seconds_until(self, moment: Optional[datetime], fallback: int) -> float:
        if moment is None:
            return float(fallback)
        return max(0.0, (moment - self._now()).total_seconds())


def _decode_device_code(payload) -> DeviceCodeResponse:
    if isinstance(payload, dict) and payload.get("error"):
        raise ProviderResponseError(
            f"Device code request rejected: {payload.get('error_description') or payload['error']}",
            details={"provider": Provider.GITHUB.value, "error": payload["error"]},
        )
    try:
        return DeviceCodeResponse.model_validate(payload)
    except ValidationError as exc:
        raise ProviderResponseError("Unexpected device code response") from exc


__all__ = [
    "DEVICE_CODE_GRANT",
    "DeviceCodeResponse",
    "DeviceFlowAuthenticator",
    "DeviceFlowSession",
    "TokenPollResponse",
]
