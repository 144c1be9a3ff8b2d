"""Centralized error definitions for MarkRead.

This module provides a unified error hierarchy with stable codes so callers
(the UI bridge, the CLI) can branch on behaviour instead of raw HTTP statuses.

Usage:
    from markread.errors import (
        AuthFailedError,
        MarkReadError,
        handle_error,
    )

    try:
        repo = await connector.connect(url, AuthMethod.OAUTH)
    except AuthFailedError:
        ...  # offer "Connect to Repository"
    except MarkReadError as e:
        print(handle_error(e))
"""

from __future__ import annotations

from typing import Optional

from markread.errors.user_messages import (
    format_error_for_user,
    get_recovery_suggestion,
    get_user_message,
)


# =============================================================================
# Base Error
# =============================================================================


class MarkReadError(Exception):
    """Base exception for all MarkRead errors.

    Attributes:
        code: Error code for categorization
        user_message: User-friendly message (optional override)
        recoverable: Whether the error is potentially recoverable
        details: Additional error details for debugging
    """

    code: str = "MARKREAD_ERROR"
    default_message: str = "An unexpected error occurred"
    recoverable: bool = True

    def __init__(
        self,
        message: str | None = None,
        *,
        user_message: str | None = None,
        details: dict | None = None,
    ) -> None:
        self.message = message or self.default_message
        self._user_message = user_message
        self.details = details or {}
        super().__init__(self.message)

    @property
    def user_message(self) -> str:
        """Get user-friendly message."""
        if self._user_message:
            return self._user_message
        return get_user_message(self)

    @property
    def recovery_suggestion(self) -> str:
        """Get recovery suggestion."""
        return get_recovery_suggestion(self)

    def to_dict(self) -> dict:
        """Convert to dictionary for serialization."""
        return {
            "code": self.code,
            "message": self.message,
            "user_message": self.user_message,
            "recoverable": self.recoverable,
            "details": self.details,
        }


# =============================================================================
# Remote Repository Errors
# =============================================================================


class RemoteRepositoryError(MarkReadError):
    """Base error for remote repository operations."""

    code = "REMOTE_REPOSITORY_ERROR"
    default_message = "Remote repository operation failed"


class InvalidUrlError(RemoteRepositoryError):
    """Repository URL has the wrong scheme, host or path shape."""

    code = "INVALID_URL"
    default_message = "Invalid repository URL"
    recoverable = False

    def __init__(self, url: str, reason: str) -> None:
        self.url = url
        self.reason = reason
        super().__init__(
            f"Invalid repository URL: {reason}",
            details={"url": url, "reason": reason},
        )


class UnsupportedProviderError(RemoteRepositoryError):
    """Operation is not available for the requested provider."""

    code = "UNSUPPORTED_PROVIDER"
    default_message = "This Git provider is not supported"
    recoverable = False

    def __init__(self, provider: str, message: str | None = None) -> None:
        self.provider = provider
        super().__init__(
            message or f"Provider not supported: {provider}",
            details={"provider": provider},
        )


class AuthFailedError(RemoteRepositoryError):
    """Credentials are missing, invalid, expired or lack permission."""

    code = "AUTH_FAILED"
    default_message = "Authentication failed"
    recoverable = True


class RepositoryNotFoundError(RemoteRepositoryError):
    """Repository (or branch) does not exist or is not visible."""

    code = "REPOSITORY_NOT_FOUND"
    default_message = "Repository not found"
    recoverable = False


class PathNotFoundError(RemoteRepositoryError):
    """File path is absent from the repository tree."""

    code = "NOT_FOUND"
    default_message = "File not found"
    recoverable = False

    def __init__(self, path: str, branch: str | None = None) -> None:
        self.path = path
        self.branch = branch
        where = f" on branch '{branch}'" if branch else ""
        super().__init__(
            f"File not found: {path}{where}",
            details={"path": path, "branch": branch},
        )


class RateLimitedError(RemoteRepositoryError):
    """Provider rate limit exhausted."""

    code = "RATE_LIMITED"
    default_message = "Provider rate limit exceeded"
    recoverable = True

    def __init__(
        self,
        message: str | None = None,
        *,
        retry_after: Optional[int] = None,
        details: dict | None = None,
    ) -> None:
        self.retry_after = retry_after
        merged = dict(details or {})
        merged["retry_after"] = retry_after
        super().__init__(message, details=merged)


class NetworkUnreachableError(RemoteRepositoryError):
    """Provider could not be reached (DNS, connect, timeout, 5xx)."""

    code = "NETWORK_UNREACHABLE"
    default_message = "Provider unreachable"
    recoverable = True


class EncryptionUnavailableError(RemoteRepositoryError):
    """OS secure storage is unavailable; credentials cannot be stored."""

    code = "ENCRYPTION_UNAVAILABLE"
    default_message = "Secure credential storage is not available"
    recoverable = False


class OperationCancelledError(RemoteRepositoryError):
    """Operation was cancelled by the caller."""

    code = "CANCELLED"
    default_message = "Operation cancelled"
    recoverable = True


class DeviceFlowSessionNotFoundError(RemoteRepositoryError):
    """Device flow session id is unknown or already purged."""

    code = "SESSION_NOT_FOUND"
    default_message = "Sign-in session not found or expired"
    recoverable = True

    def __init__(self, session_id: str) -> None:
        self.session_id = session_id
        super().__init__(
            f"Device flow session not found: {session_id}",
            details={"session_id": session_id},
        )


class ProviderResponseError(RemoteRepositoryError):
    """Provider returned a response that maps to no other category."""

    code = "PROVIDER_ERROR"
    default_message = "Unexpected response from the provider"
    recoverable = False


class InvalidRequestError(RemoteRepositoryError):
    """Bridge request payload failed validation."""

    code = "INVALID_REQUEST"
    default_message = "Invalid request"
    recoverable = False


# =============================================================================
# Configuration Errors
# =============================================================================


class ConfigurationError(MarkReadError):
    """Base error for configuration issues."""

    code = "CONFIGURATION_ERROR"
    default_message = "Configuration error"
    recoverable = True


class InvalidConfigError(ConfigurationError):
    """Configuration is invalid."""

    code = "INVALID_CONFIG"
    default_message = "Invalid configuration"


# =============================================================================
# Error Handler
# =============================================================================


def handle_error(error: Exception) -> str:
    """Handle an error and return a user-friendly message.

    Args:
        error: The exception to handle

    Returns:
        User-friendly error message with recovery suggestion
    """
    return format_error_for_user(error)


def is_recoverable(error: Exception) -> bool:
    """Check if an error is potentially recoverable.

    Args:
        error: The exception to check

    Returns:
        True if the error is recoverable
    """
    if isinstance(error, MarkReadError):
        return error.recoverable
    return False


__all__ = [
    # Base
    "MarkReadError",
    # Remote repository
    "RemoteRepositoryError",
    "InvalidUrlError",
    "UnsupportedProviderError",
    "AuthFailedError",
    "RepositoryNotFoundError",
    "PathNotFoundError",
    "RateLimitedError",
    "NetworkUnreachableError",
    "EncryptionUnavailableError",
    "OperationCancelledError",
    "DeviceFlowSessionNotFoundError",
    "ProviderResponseError",
    "InvalidRequestError",
    # Configuration
    "ConfigurationError",
    "InvalidConfigError",
    # Handlers
    "handle_error",
    "is_recoverable",
    "get_user_message",
    "get_recovery_suggestion",
    "format_error_for_user",
]
