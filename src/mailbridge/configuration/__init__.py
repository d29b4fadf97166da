"""Configuration loading utilities for mailbridge."""

from .settings import (
    DEFAULT_ACCOUNT_ID,
    EmailAccountConfig,
    ImapSettings,
    ResolvedEmailAccount,
    SmtpSettings,
    list_email_account_ids,
    load_config_file,
    resolve_default_email_account_id,
    resolve_email_account,
)

__all__ = [
    "DEFAULT_ACCOUNT_ID",
    "EmailAccountConfig",
    "ImapSettings",
    "ResolvedEmailAccount",
    "SmtpSettings",
    "list_email_account_ids",
    "load_config_file",
    "resolve_default_email_account_id",
    "resolve_email_account",
]
