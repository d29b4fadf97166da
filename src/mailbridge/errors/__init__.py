"""Centralized error definitions for mailbridge.

This module provides the error hierarchy shared by the email channel, the
configuration resolver and the CLI, together with user-friendly handling.

Usage:
    from mailbridge.errors import (
        MailBridgeError,
        MailboxAuthenticationError,
        handle_error,
    )

    try:
        handle = await plugin.start_account(ctx)
    except MailBridgeError as e:
        print(handle_error(e))
"""

from __future__ import annotations

from mailbridge.errors.user_messages import (
    format_error_for_cli,
    format_error_for_user,
    get_recovery_suggestion,
    get_user_message,
)


# =============================================================================
# Base Error
# =============================================================================


class MailBridgeError(Exception):
    """Base exception for all mailbridge errors.

    Attributes:
        code: Error code for categorization
        user_message: User-friendly message (optional override)
        recoverable: Whether the error is potentially recoverable
        details: Additional error details for debugging
    """

    code: str = "MAILBRIDGE_ERROR"
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
# Mailbox Errors
# =============================================================================


class MailboxConnectionError(MailBridgeError):
    """IMAP connection could not be established or was lost."""

    code = "MAILBOX_CONNECTION_ERROR"
    default_message = "Mailbox connection failed"
    recoverable = True


class MailboxAuthenticationError(MailBridgeError):
    """The mail server rejected the account credentials.

    Never retried automatically: the account is stopped until the
    configuration changes.
    """

    code = "MAILBOX_AUTH_ERROR"
    default_message = "Mailbox authentication failed"
    recoverable = False


# =============================================================================
# Configuration Errors
# =============================================================================


class ConfigurationError(MailBridgeError):
    """Base error for configuration issues."""

    code = "CONFIGURATION_ERROR"
    default_message = "Configuration error"
    recoverable = False


class InvalidConfigError(ConfigurationError):
    """Configuration is present but malformed."""

    code = "INVALID_CONFIG"
    default_message = "Invalid email channel configuration"


class MissingConfigError(ConfigurationError):
    """Required configuration is missing."""

    code = "MISSING_CONFIG"
    default_message = "Email IMAP/SMTP not configured"


# =============================================================================
# Delivery and Processing Errors
# =============================================================================


class DeliveryError(MailBridgeError):
    """Outbound SMTP delivery failed."""

    code = "DELIVERY_ERROR"
    default_message = "Email delivery failed"


class MessageProcessingError(MailBridgeError):
    """A single inbound message could not be processed."""

    code = "MESSAGE_PROCESSING_ERROR"
    default_message = "Failed to process inbound email"


class RuntimeNotInitializedError(MailBridgeError):
    """The host runtime was used before it was registered."""

    code = "RUNTIME_NOT_INITIALIZED"
    default_message = "Email runtime not initialized"
    recoverable = False


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
    if isinstance(error, MailBridgeError):
        return error.recoverable
    return False


__all__ = [
    "MailBridgeError",
    "MailboxConnectionError",
    "MailboxAuthenticationError",
    "ConfigurationError",
    "InvalidConfigError",
    "MissingConfigError",
    "DeliveryError",
    "MessageProcessingError",
    "RuntimeNotInitializedError",
    "handle_error",
    "is_recoverable",
    "format_error_for_cli",
    "format_error_for_user",
    "get_recovery_suggestion",
    "get_user_message",
]
