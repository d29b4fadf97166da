"""User-friendly error messages for mailbridge.

Human-readable messages and recovery suggestions for every error code, so the
CLI and status surfaces never show raw protocol errors.

Privacy Note:
- Error messages NEVER include passwords or message content
- Details marked sensitive are dropped from CLI output
"""

from __future__ import annotations

from typing import Any


# =============================================================================
# Error Message Catalog
# =============================================================================

ERROR_MESSAGES: dict[str, str] = {
    # Mailbox errors
    "MAILBOX_CONNECTION_ERROR": "Couldn't reach the mail server.",
    "MAILBOX_AUTH_ERROR": "The mail server rejected the account credentials.",
    # Configuration errors
    "CONFIGURATION_ERROR": "There's a configuration issue.",
    "INVALID_CONFIG": "The email channel configuration is invalid.",
    "MISSING_CONFIG": "The email account is missing required IMAP/SMTP settings.",
    # Delivery / processing errors
    "DELIVERY_ERROR": "The reply email couldn't be sent.",
    "MESSAGE_PROCESSING_ERROR": "An incoming email couldn't be processed.",
    "RUNTIME_NOT_INITIALIZED": "The email channel was used before the host registered it.",
    # Generic
    "MAILBRIDGE_ERROR": "An unexpected error occurred. Please try again.",
    "UNKNOWN_ERROR": "Something went wrong. Please try again.",
}


# =============================================================================
# Recovery Suggestions
# =============================================================================

RECOVERY_SUGGESTIONS: dict[str, str] = {
    "MAILBOX_CONNECTION_ERROR": "Check the IMAP host/port and your network. Polling retries on the next tick.",
    "MAILBOX_AUTH_ERROR": "Verify the IMAP user and password (app passwords for Gmail/Outlook), then restart the account.",
    "CONFIGURATION_ERROR": "Review channels.email in your config file.",
    "INVALID_CONFIG": "Fix the field reported in the details and reload the config.",
    "MISSING_CONFIG": "Set imap.host, imap.user, smtp.host, smtp.user and fromAddress.",
    "DELIVERY_ERROR": "Check the SMTP host, port, TLS setting and credentials: mailbridge test-connection",
    "MESSAGE_PROCESSING_ERROR": "The message stays unread and is retried on the next poll.",
    "RUNTIME_NOT_INITIALIZED": "Call set_runtime() before starting accounts or sending.",
    "MAILBRIDGE_ERROR": "If this persists, please report the issue.",
    "UNKNOWN_ERROR": "Try restarting the channel. Report if the issue continues.",
}

SENSITIVE_DETAIL_KEYS = ("password", "token", "body", "content")


# =============================================================================
# Helper Functions
# =============================================================================


def _error_code(error: Any) -> str:
    if hasattr(error, "code") and isinstance(error.code, str):
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
    return ERROR_MESSAGES.get(_error_code(error), ERROR_MESSAGES["UNKNOWN_ERROR"])


def get_recovery_suggestion(error: Any) -> str:
    """Get recovery suggestion for an error.

    Args:
        error: The error (can be Exception or error code string)

    Returns:
        Recovery suggestion
    """
    return RECOVERY_SUGGESTIONS.get(_error_code(error), RECOVERY_SUGGESTIONS["UNKNOWN_ERROR"])


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
    code = getattr(error, "code", "ERROR")
    lines = [
        f"Error [{code}]: {get_user_message(error)}",
        "",
        f"Suggestion: {get_recovery_suggestion(error)}",
    ]

    details = getattr(error, "details", None)
    if details:
        lines.append("")
        lines.append("Details:")
        for key, value in details.items():
            if key not in SENSITIVE_DETAIL_KEYS:
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
