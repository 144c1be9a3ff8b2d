"""Request/response bridge between the UI shell and the connector.

Every call is ``handle(channel, payload) -> envelope``. Payloads use camelCase
keys and are validated with pydantic before anything else runs. Envelopes are
either ``{"success": True, "data": ...}`` or::

    {"success": False, "error": {"code", "message", "userMessage",
                                 "recoverable", "retryAfterSeconds"?, "details"}}

Long-running calls accept an optional ``requestId``; ``request.cancel`` with
the same id cancels them, and they resolve with ``CANCELLED``.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional

from pydantic import ValidationError

from markread.errors import InvalidRequestError, MarkReadError, RateLimitedError

from .cancellation import CancellationToken
from .connectivity import ConnectivityMonitor
from .connector import RepositoryConnector
from .models import AuthMethod, DeviceFlowStart, Provider, WireModel
from .oauth_flow import DeviceFlowAuthenticator

logger = logging.getLogger(__name__)

Notify = Callable[[str, Dict[str, Any]], None]


# ---------------------------------------------------------------------------
# Request payloads
# ---------------------------------------------------------------------------


class BridgeRequest(WireModel):
    request_id: Optional[str] = None


class ConnectRequest(BridgeRequest):
    url: str
    auth_method: AuthMethod = AuthMethod.OAUTH
    initial_branch: Optional[str] = None
    token: Optional[str] = None


class FetchInfoRequest(BridgeRequest):
    url: str
    auth_method: Optional[AuthMethod] = None
    known_default_branch: Optional[str] = None


class TreeRequest(BridgeRequest):
    repository_id: str
    branch: str
    markdown_only: bool = True
    force_refresh: bool = False


class FileRequest(BridgeRequest):
    repository_id: str
    branch: str
    path: str


class SwitchBranchRequest(BridgeRequest):
    repository_id: str
    from_branch: Optional[str] = None
    to_branch: str
    markdown_only: bool = True


class RepositoryRequest(BridgeRequest):
    repository_id: str


class InitiateDeviceFlowRequest(BridgeRequest):
    provider: Provider = Provider.GITHUB
    scopes: Optional[List[str]] = None


class DeviceFlowSessionRequest(BridgeRequest):
    session_id: str


class PatRequest(BridgeRequest):
    provider: Provider
    token: str
    repository_url: Optional[str] = None


class SignOutRequest(BridgeRequest):
    provider: Optional[Provider] = None
    repository_id: Optional[str] = None


class ConnectivityRequest(BridgeRequest):
    provider: Optional[Provider] = None


class CancelRequest(BridgeRequest):
    target_request_id: str


# ---------------------------------------------------------------------------
# Envelopes
# ---------------------------------------------------------------------------


def success(data: Any = None) -> Dict[str, Any]:
    return {"success": True, "data": _to_wire(data)}


def failure(error: MarkReadError) -> Dict[str, Any]:
    payload: Dict[str, Any] = {
        "code": error.code,
        "message": error.message,
        "userMessage": error.user_message,
        "recoverable": error.recoverable,
        "details": error.details,
    }
    if isinstance(error, RateLimitedError) and error.retry_after is not None:
        payload["retryAfterSeconds"] = error.retry_after
    return {"success": False, "error": payload}


def _to_wire(data: Any) -> Any:
    if isinstance(data, WireModel):
        return data.to_wire()
    if isinstance(data, list):
        return [_to_wire(item) for item in data]
    return data


class _UnexpectedError(MarkReadError):
    code = "UNKNOWN_ERROR"
    default_message = "An unexpected error occurred"
    recoverable = False


# ---------------------------------------------------------------------------
# Bridge
# ---------------------------------------------------------------------------


@dataclass
class RepositoryBridge:
    """Dispatches UI channels to the connector, authenticator and monitor.

    ``notify`` receives out-of-band events such as ``auth.deviceFlowStarted``
    when ``repo.connect`` has to start a device flow.
    """

    connector: RepositoryConnector
    authenticator: DeviceFlowAuthenticator
    monitor: ConnectivityMonitor
    notify: Optional[Notify] = None
    _cancel_tokens: Dict[str, CancellationToken] = field(default_factory=dict, init=False, repr=False)

    def __post_init__(self) -> None:
        self._handlers: Dict[str, Callable[[Dict[str, Any]], Awaitable[Any]]] = {
            "repo.connect": self._connect,
            "repo.fetchInfo": self._fetch_info,
            "repo.fetchTree": self._fetch_tree,
            "repo.getCachedTree": self._get_cached_tree,
            "repo.fetchFile": self._fetch_file,
            "repo.switchBranch": self._switch_branch,
            "repo.disconnect": self._disconnect,
            "auth.initiateDeviceFlow": self._initiate_device_flow,
            "auth.checkDeviceFlowStatus": self._check_device_flow_status,
            "auth.cancelDeviceFlow": self._cancel_device_flow,
            "auth.authenticatePat": self._authenticate_pat,
            "auth.signOut": self._sign_out,
            "connectivity.check": self._check_connectivity,
            "request.cancel": self._cancel_request,
        }

    @property
    def channels(self) -> List[str]:
        return sorted(self._handlers)

    async def handle(self, channel: str, payload: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """Run one request and wrap the outcome in an envelope."""
        handler = self._handlers.get(channel)
        if handler is None:
            return failure(InvalidRequestError(f"Unknown channel: {channel}", details={"channel": channel}))
        try:
            return success(await handler(payload or {}))
        except ValidationError as exc:
            logger.info(f"Rejected {channel} request: {exc.error_count()} validation error(s)")
            return failure(
                InvalidRequestError(
                    f"Invalid payload for {channel}",
                    details={"channel": channel, "errors": [error["loc"] for error in exc.errors()]},
                )
            )
        except MarkReadError as exc:
            logger.info(f"{channel} failed with {exc.code}")
            return failure(exc)
        except Exception as exc:
            logger.exception(f"Unexpected failure in {channel}")
            return failure(_UnexpectedError(details={"channel": channel, "type": type(exc).__name__}))

    # ------------------------------------------------------------------
    # Handlers
    # ------------------------------------------------------------------

    async def _connect(self, payload: Dict[str, Any]):
        request = ConnectRequest.model_validate(payload)
        with self._cancellation(request.request_id) as token:
            return await self.connector.connect(
                request.url,
                request.auth_method,
                request.initial_branch,
                token=request.token,
                cancel_token=token,
                on_device_flow=self._announce_device_flow,
            )

    async def _fetch_info(self, payload: Dict[str, Any]):
        request = FetchInfoRequest.model_validate(payload)
        with self._cancellation(request.request_id) as token:
            return await self.connector.fetch_repository_info(
                request.url,
                request.auth_method,
                known_default_branch=request.known_default_branch,
                cancel_token=token,
            )

    async def _fetch_tree(self, payload: Dict[str, Any]):
        request = TreeRequest.model_validate(payload)
        with self._cancellation(request.request_id) as token:
            return await self.connector.fetch_tree(
                request.repository_id,
                request.branch,
                request.markdown_only,
                force_refresh=request.force_refresh,
                cancel_token=token,
            )

    async def _get_cached_tree(self, payload: Dict[str, Any]):
        request = TreeRequest.model_validate(payload)
        # None signals a miss
        return self.connector.get_cached_tree(request.repository_id, request.branch, request.markdown_only)

    async def _fetch_file(self, payload: Dict[str, Any]):
        request = FileRequest.model_validate(payload)
        with self._cancellation(request.request_id) as token:
            return await self.connector.fetch_file(
                request.repository_id, request.branch, request.path, cancel_token=token
            )

    async def _switch_branch(self, payload: Dict[str, Any]):
        request = SwitchBranchRequest.model_validate(payload)
        with self._cancellation(request.request_id) as token:
            return await self.connector.switch_branch(
                request.repository_id,
                request.from_branch,
                request.to_branch,
                request.markdown_only,
                cancel_token=token,
            )

    async def _disconnect(self, payload: Dict[str, Any]):
        request = RepositoryRequest.model_validate(payload)
        return {"removed": self.connector.disconnect(request.repository_id)}

    async def _initiate_device_flow(self, payload: Dict[str, Any]):
        request = InitiateDeviceFlowRequest.model_validate(payload)
        return await self.authenticator.initiate(request.provider, request.scopes)

    async def _check_device_flow_status(self, payload: Dict[str, Any]):
        request = DeviceFlowSessionRequest.model_validate(payload)
        return await self.authenticator.check_status(request.session_id)

    async def _cancel_device_flow(self, payload: Dict[str, Any]):
        request = DeviceFlowSessionRequest.model_validate(payload)
        return await self.authenticator.cancel(request.session_id)

    async def _authenticate_pat(self, payload: Dict[str, Any]):
        request = PatRequest.model_validate(payload)
        account = await self.connector.authenticate_with_pat(
            request.provider, request.token, request.repository_url
        )
        return {"account": account}

    async def _sign_out(self, payload: Dict[str, Any]):
        request = SignOutRequest.model_validate(payload)
        if request.provider is None and request.repository_id is None:
            raise InvalidRequestError("provider or repositoryId is required")
        removed = await self.connector.sign_out(request.provider, request.repository_id)
        return {"removed": removed}

    async def _check_connectivity(self, payload: Dict[str, Any]):
        request = ConnectivityRequest.model_validate(payload)
        return await self.monitor.check(request.provider)

    async def _cancel_request(self, payload: Dict[str, Any]):
        request = CancelRequest.model_validate(payload)
        token = self._cancel_tokens.get(request.target_request_id)
        if token is not None:
            token.cancel("cancelled by UI")
        return {"cancelled": token is not None}

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _cancellation(self, request_id: Optional[str]) -> "_CancellationScope":
        return _CancellationScope(self._cancel_tokens, request_id)

    def _announce_device_flow(self, start: DeviceFlowStart) -> None:
        if self.notify is not None:
            self.notify("auth.deviceFlowStarted", start.to_wire())


class _CancellationScope:
    """Registers a token under ``request_id`` for the duration of a call."""

    def __init__(self, registry: Dict[str, CancellationToken], request_id: Optional[str]) -> None:
        self._registry = registry
        self._request_id = request_id
        self._token: Optional[CancellationToken] = None

    def __enter__(self) -> Optional[CancellationToken]:
        if self._request_id is None:
            return None
        self._token = CancellationToken()
        self._registry[self._request_id] = self._token
        return self._token

    def __exit__(self, *exc_info: Any) -> None:
        if self._request_id is not None and self._registry.get(self._request_id) is self._token:
            del self._registry[self._request_id]


__all__ = ["RepositoryBridge", "failure", "success"]
