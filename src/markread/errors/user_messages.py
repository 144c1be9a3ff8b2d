"""User-friendly error messages for MarkRead.

This module provides human-readable error messages and recovery suggestions
for all error codes, so the UI and CLI never show raw provider errors.

Privacy Note:
- Error messages NEVER include token material
- Repository URLs appear only in details, never in catalog messages
"""

from __future__ import annotations

from typing import Any


# =============================================================================
# Error Message Catalog
# =============================================================================

ERROR_MESSAGES: dict[str, str] = {
    # Remote repository errors
    "REMOTE_REPOSITORY_ERROR": "The remote repository operation failed.",
    "INVALID_URL": "That doesn't look like a GitHub or Azure DevOps repository URL.",
    "UNSUPPORTED_PROVIDER": "This Git provider isn't supported for that operation.",
    "AUTH_FAILED": "Authentication failed. Your credentials may be missing or expired.",
    "REPOSITORY_NOT_FOUND": "The repository wasn't found, or you don't have access to it.",
    "NOT_FOUND": "That file isn't in the repository tree.",
    "RATE_LIMITED": "The provider's rate limit was reached.",
    "NETWORK_UNREACHABLE": "The provider couldn't be reached.",
    "ENCRYPTION_UNAVAILABLE": "Secure credential storage isn't available on this system.",
    "CANCELLED": "The operation was cancelled.",
    "SESSION_NOT_FOUND": "This sign-in session wasn't found or has expired.",
    "PROVIDER_ERROR": "The provider returned an unexpected response.",
    "INVALID_REQUEST": "The request was missing required fields.",
    # Configuration errors
    "CONFIGURATION_ERROR": "There's a configuration issue.",
    "INVALID_CONFIG": "The configuration is invalid. Check settings.",
    # Generic
    "MARKREAD_ERROR": "An unexpected error occurred. Please try again.",
    "UNKNOWN_ERROR": "Something went wrong. Please try again.",
}


# =============================================================================
# Recovery Suggestions
# =============================================================================

RECOVERY_SUGGESTIONS: dict[str, str] = {
    # Remote repository errors
    "REMOTE_REPOSITORY_ERROR": "Retry the operation. Check your network if it keeps failing.",
    "INVALID_URL": "Use https://github.com/<owner>/<repo> or https://dev.azure.com/<org>/<project>/_git/<repo>.",
    "UNSUPPORTED_PROVIDER": "Use a personal access token: markread-remote pat <provider>",
    "AUTH_FAILED": "Sign in again: markread-remote login github (or markread-remote pat azure)",
    "REPOSITORY_NOT_FOUND": "Check the URL and branch name, and that your account can see the repository.",
    "NOT_FOUND": "Refresh the tree; the file may have moved or been deleted.",
    "RATE_LIMITED": "Wait until the limit resets, then retry.",
    "NETWORK_UNREACHABLE": "Check your connection: markread-remote check",
    "ENCRYPTION_UNAVAILABLE": "Enable the OS keychain (or Secret Service on Linux) and retry.",
    "CANCELLED": "Start the operation again when ready.",
    "SESSION_NOT_FOUND": "Start a new sign-in.",
    "PROVIDER_ERROR": "Retry later. Report the issue if it persists.",
    "INVALID_REQUEST": "Check the request fields and retry.",
    # Configuration errors
    "CONFIGURATION_ERROR": "Check ~/.markread/config.json",
    "INVALID_CONFIG": "Delete ~/.markread/config.json to reset to defaults.",
    # Generic
    "MARKREAD_ERROR": "If this persists, please report the issue on GitHub.",
    "UNKNOWN_ERROR": "Try again. Report if the issue continues.",
}


# =============================================================================
# Helper Functions
# =============================================================================


def _error_code(error: Any) -> str:
    if hasattr(error, "code"):
        return error.code
    if isinstance(error, str):
        return error
    return type(error).__name__.upper()


def get_user_message(error: Any) -> str:
    """Get user-friendly message for an error.

    Args:
        error: The error (can be Exception or error code string)

    Returns:
        User-friendly error message
    """
    code = _error_code(error)
    message = ERROR_MESSAGES.get(code, ERROR_MESSAGES["UNKNOWN_ERROR"])

    # Rate limit messages carry the wait time
    retry_after = getattr(error, "retry_after", None)
    if code == "RATE_LIMITED" and retry_after is not None:
        message = f"{message} Try again in {retry_after} seconds."

    return message


def get_recovery_suggestion(error: Any) -> str:
    """Get recovery suggestion for an error."""
    code = _error_code(error)
    return RECOVERY_SUGGESTIONS.get(code, RECOVERY_SUGGESTIONS["UNKNOWN_ERROR"])


def format_error_for_user(error: Any) -> str:
    """Format a complete user-friendly error message.

    Args:
        error: The error to format

    Returns:
        Complete error message with recovery suggestion
    """
    message = get_user_message(error)
    suggestion = get_recovery_suggestion(error)

    return f"{message}\n\nSuggestion: {suggestion}"


def format_error_for_cli(error: Any) -> str:
    """Format error for CLI output.

    Args:
        error: The error to format

    Returns:
        CLI-formatted error message
    """
    message = get_user_message(error)
    suggestion = get_recovery_suggestion(error)
    code = getattr(error, "code", "ERROR")

    lines = [
        f"Error [{code}]: {message}",
        "",
        f"Suggestion: {suggestion}",
    ]

    if getattr(error, "details", None):
        lines.append("")
        lines.append("Details:")
        for key, value in error.details.items():
            # Never echo secrets
            if key not in ("token", "access_token", "device_code", "password"):
                lines.append(f"  {key}: {value}")

    return "\n".join(lines)


__all__ = [
    "ERROR_MESSAGES",
    "RECOVERY_SUGGESTIONS",
    "get_user_message",
    "get_recovery_suggestion",
    "format_error_for_user",
    "format_error_for_cli",
]
