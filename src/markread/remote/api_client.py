"""Shared provider transport and the common provider client contract.

Every provider call goes through :class:`ProviderTransport`, which owns the
bounded request timeout, the User-Agent, the rate-limit guard and the mapping
from HTTP outcomes to the stable error taxonomy:

==========================================  =========================
Outcome                                     Error
==========================================  =========================
timeout, DNS/connect failure, 5xx           NetworkUnreachableError
401, 403 without exhausted rate headers     AuthFailedError
203 (Azure DevOps sign-in page)             AuthFailedError
404                                         RepositoryNotFoundError *
429, 403 with ``X-RateLimit-Remaining: 0``  RateLimitedError
anything else >= 400, undecodable body      ProviderResponseError
==========================================  =========================

``*`` file fetches pass their own not-found factory to raise PathNotFoundError.

The transport never retries; retry policy belongs to the caller.
"""

from __future__ import annotations

import abc
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Any, Callable, Dict, List, Mapping, Optional

import httpx
from pydantic import BaseModel, Field

from markread.errors import (
    AuthFailedError,
    MarkReadError,
    NetworkUnreachableError,
    ProviderResponseError,
    RateLimitedError,
    RepositoryNotFoundError,
)
from markread.security.audit import hash_identifier

from .models import AuthMethod, BranchInfo, FileContent, Provider, Repository
from .tree import TreeListing

logger = logging.getLogger(__name__)

DEFAULT_RETRY_AFTER_SECONDS = 60


# ---------------------------------------------------------------------------
# Credentials passed per request
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Credential:
    """Decrypted token handed to a single outbound request."""

    token: str = field(repr=False)
    auth_method: AuthMethod = AuthMethod.OAUTH

    def __post_init__(self) -> None:
        if not self.token or not self.token.strip():
            raise AuthFailedError("Token is empty")


# ---------------------------------------------------------------------------
# Rate limit tracking
# ---------------------------------------------------------------------------


class RateLimitInfo(BaseModel):
    """Rate limit information reported by a provider."""

    limit: Optional[int] = Field(default=None, description="Total rate limit")
    remaining: int = Field(..., description="Remaining requests")
    reset_at: Optional[datetime] = Field(default=None, description="Rate limit reset time")

    def reset_in_seconds(self, now: Optional[datetime] = None) -> int:
        """Seconds until rate limit resets."""
        if self.reset_at is None:
            return DEFAULT_RETRY_AFTER_SECONDS
        now = now or datetime.now(timezone.utc)
        return max(0, int((self.reset_at - now).total_seconds() + 0.999))


@dataclass
class RateLimitTracker:
    """Remembers the last rate-limit headers per provider and fails fast."""

    _now: Callable[[], datetime] = field(default=lambda: datetime.now(timezone.utc), repr=False)
    _limits: Dict[str, RateLimitInfo] = field(default_factory=dict, init=False)

    def update(self, key: str, headers: Mapping[str, str]) -> Optional[RateLimitInfo]:
        info = _parse_rate_limit_headers(headers)
        if info is not None:
            self._limits[key] = info
            if info.remaining == 0:
                logger.warning(
                    f"{key} rate limit exhausted; resets in {info.reset_in_seconds(self._now())}s"
                )
        return info

    def mark_exhausted(self, key: str, retry_after: int) -> None:
        reset_at = datetime.fromtimestamp(self._now().timestamp() + retry_after, timezone.utc)
        self._limits[key] = RateLimitInfo(remaining=0, reset_at=reset_at)

    def now(self) -> datetime:
        return self._now()

    def get(self, key: str) -> Optional[RateLimitInfo]:
        return self._limits.get(key)

    def check(self, key: str) -> None:
        """Raise ``RateLimitedError`` without a network call while exhausted."""
        info = self._limits.get(key)
        if info is None or info.remaining > 0:
            return
        wait = info.reset_in_seconds(self._now())
        if wait <= 0:
            self._limits.pop(key, None)
            return
        raise RateLimitedError(
            f"{key} rate limit exhausted; retry in {wait}s",
            retry_after=wait,
            details={"provider": key, "cached": True},
        )


def _parse_rate_limit_headers(headers: Mapping[str, str]) -> Optional[RateLimitInfo]:
    remaining = headers.get("x-ratelimit-remaining")
    if remaining is None:
        return None
    try:
        remaining_value = int(float(remaining))
    except ValueError:
        return None
    limit = headers.get("x-ratelimit-limit")
    reset = headers.get("x-ratelimit-reset")
    reset_at = None
    if reset:
        try:
            reset_at = datetime.fromtimestamp(int(float(reset)), timezone.utc)
        except (ValueError, OverflowError, OSError):
            reset_at = None
    return RateLimitInfo(
        limit=int(limit) if limit and limit.isdigit() else None,
        remaining=remaining_value,
        reset_at=reset_at,
    )


def _parse_retry_after(value: Optional[str], now: datetime) -> int:
    if not value:
        return DEFAULT_RETRY_AFTER_SECONDS
    try:
        return max(0, int(float(value)))
    except ValueError:
        pass
    try:
        when = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return DEFAULT_RETRY_AFTER_SECONDS
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    return max(0, int((when - now).total_seconds()))


# ---------------------------------------------------------------------------
# Transport
# ---------------------------------------------------------------------------


@dataclass
class ProviderTransport:
    """HTTP transport shared by one provider client.

    Attributes:
        provider: Provider this transport talks to (rate-limit key)
        timeout_seconds: Bounded per-request timeout
        user_agent: User-Agent header value
        rate_limits: Tracker shared across clients
        client: Optional long-lived ``httpx.AsyncClient``; when omitted a
            client is opened per request
    """

    provider: Provider
    timeout_seconds: float = 30.0
    user_agent: str = "MarkRead"
    rate_limits: RateLimitTracker = field(default_factory=RateLimitTracker)
    client: Optional[httpx.AsyncClient] = None
    default_headers: Dict[str, str] = field(default_factory=dict)

    def rate_limit_key(self, authorization: Optional[str] = None) -> str:
        """Provider limits are per account; anonymous calls share one bucket."""
        if not authorization:
            return f"{self.provider.value}:anonymous"
        return f"{self.provider.value}:{hash_identifier(authorization)}"

    async def request(
        self,
        method: str,
        url: str,
        *,
        authorization: Optional[str] = None,
        params: Optional[Dict[str, Any]] = None,
        headers: Optional[Dict[str, str]] = None,
        data: Optional[Dict[str, Any]] = None,
        json_body: Optional[Dict[str, Any]] = None,
        not_found: Optional[Callable[[], MarkReadError]] = None,
        check_rate_limit: bool = True,
        raise_for_status: bool = True,
        timeout: Optional[float] = None,
    ) -> httpx.Response:
        """Send a request and map failures to the error taxonomy."""
        rate_key = self.rate_limit_key(authorization)
        if check_rate_limit:
            self.rate_limits.check(rate_key)

        request_headers = {"User-Agent": self.user_agent, **self.default_headers, **(headers or {})}
        if authorization:
            request_headers["Authorization"] = authorization

        timeout = timeout or self.timeout_seconds
        started = time.monotonic()
        try:
            if self.client is not None:
                response = await self.client.request(
                    method,
                    url,
                    params=params,
                    headers=request_headers,
                    data=data,
                    json=json_body,
                    timeout=timeout,
                )
            else:
                async with httpx.AsyncClient(timeout=timeout) as client:
                    response = await client.request(
                        method,
                        url,
                        params=params,
                        headers=request_headers,
                        data=data,
                        json=json_body,
                    )
        except httpx.TimeoutException as exc:
            raise NetworkUnreachableError(
                f"{self.provider.value} request timed out after {timeout:g}s",
                details={"provider": self.provider.value, "timeout_seconds": timeout},
            ) from exc
        except httpx.TransportError as exc:
            raise NetworkUnreachableError(
                f"{self.provider.value} unreachable: {type(exc).__name__}",
                details={"provider": self.provider.value},
            ) from exc

        elapsed_ms = (time.monotonic() - started) * 1000
        logger.debug(f"{method} {url} -> {response.status_code} in {elapsed_ms:.0f}ms")

        self.rate_limits.update(rate_key, response.headers)
        if raise_for_status:
            self.raise_for_status(response, rate_key=rate_key, not_found=not_found)
        return response

    async def get_json(self, url: str, **kwargs: Any) -> Any:
        response = await self.request("GET", url, **kwargs)
        return decode_json(response, self.provider)

    def raise_for_status(
        self,
        response: httpx.Response,
        *,
        rate_key: Optional[str] = None,
        not_found: Optional[Callable[[], MarkReadError]] = None,
    ) -> None:
        status = response.status_code
        rate_key = rate_key or self.rate_limit_key()
        details = {"provider": self.provider.value, "status_code": status}

        if status == 203:
            # Azure DevOps answers bad credentials with a 203 HTML sign-in page
            raise AuthFailedError("Provider redirected to an interactive sign-in page", details=details)
        if status < 400:
            return
        if status == 401:
            raise AuthFailedError("Authentication failed; credentials are missing or expired", details=details)
        if status == 403:
            if response.headers.get("x-ratelimit-remaining") == "0":
                info = self.rate_limits.get(rate_key)
                retry_after = info.reset_in_seconds(self.rate_limits.now()) if info else DEFAULT_RETRY_AFTER_SECONDS
                raise RateLimitedError(
                    f"{self.provider.value} rate limit exceeded",
                    retry_after=retry_after,
                    details=details,
                )
            if "retry-after" in response.headers:
                # Secondary rate limits answer 403 with Retry-After and quota left
                retry_after = _parse_retry_after(response.headers.get("retry-after"), self.rate_limits.now())
                self.rate_limits.mark_exhausted(rate_key, retry_after)
                raise RateLimitedError(
                    f"{self.provider.value} secondary rate limit exceeded",
                    retry_after=retry_after,
                    details=details,
                )
            raise AuthFailedError("Permission denied for this resource", details=details)
        if status == 404:
            if not_found is not None:
                raise not_found()
            raise RepositoryNotFoundError(details=details)
        if status == 429:
            retry_after = _parse_retry_after(response.headers.get("retry-after"), self.rate_limits.now())
            self.rate_limits.mark_exhausted(rate_key, retry_after)
            raise RateLimitedError(
                f"{self.provider.value} rate limit exceeded",
                retry_after=retry_after,
                details=details,
            )
        if status >= 500:
            raise NetworkUnreachableError(
                f"{self.provider.value} returned server error {status}", details=details
            )
        raise ProviderResponseError(f"{self.provider.value} returned HTTP {status}", details=details)

    async def aclose(self) -> None:
        if self.client is not None:
            await self.client.aclose()


def decode_json(response: httpx.Response, provider: Provider) -> Any:
    try:
        return response.json()
    except ValueError as exc:
        raise ProviderResponseError(
            f"{provider.value} returned a non-JSON response",
            details={"provider": provider.value, "status_code": response.status_code},
        ) from exc


# ---------------------------------------------------------------------------
# Provider client contract
# ---------------------------------------------------------------------------


class ProviderClient(abc.ABC):
    """Capability set every provider implementation offers.

    All methods are idempotent reads.
    """

    provider: Provider
    transport: ProviderTransport

    @abc.abstractmethod
    async def list_branches(self, repository: Repository, credential: Optional[Credential]) -> List[BranchInfo]:
        """Branches with exactly one marked default."""

    @abc.abstractmethod
    async def fetch_tree(
        self,
        repository: Repository,
        branch: str,
        credential: Optional[Credential],
        markdown_only: bool = True,
    ) -> TreeListing:
        """Tree of ``branch``; markdown-only listings keep qualifying directories."""

    @abc.abstractmethod
    async def fetch_file(
        self,
        repository: Repository,
        branch: str,
        path: str,
        credential: Optional[Credential],
    ) -> FileContent:
        """Live file fetch."""

    @abc.abstractmethod
    async def validate_token(self, credential: Credential, repository: Optional[Repository] = None) -> str:
        """Verify a token and return the account display name."""

    @abc.abstractmethod
    async def probe(self, timeout_seconds: float) -> None:
        """Lightweight reachability request; raises ``NetworkUnreachableError``."""

    async def check_connectivity(self, timeout_seconds: float = 5.0) -> bool:
        try:
            await self.probe(timeout_seconds)
        except NetworkUnreachableError:
            return False
        return True


__all__ = [
    "Credential",
    "DEFAULT_RETRY_AFTER_SECONDS",
    "ProviderClient",
    "ProviderTransport",
    "RateLimitInfo",
    "RateLimitTracker",
    "decode_json",
]
