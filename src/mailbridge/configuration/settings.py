"""Typed settings for email channel accounts.

The host hands the channel an opaque configuration mapping. This module locates
the email section inside it, validates each account with Pydantic models and
resolves the immutable :class:`ResolvedEmailAccount` the poller and outbound
pool consume. Keys use the host's camelCase spelling (``fromAddress``,
``pollInterval``, ``allowFrom``); snake_case is accepted too.
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

from pydantic import BaseModel, ConfigDict, Field, SecretStr, ValidationError, field_validator
from pydantic.alias_generators import to_camel

from mailbridge.errors import InvalidConfigError


DEFAULT_ACCOUNT_ID = "default"
DEFAULT_POLL_INTERVAL_MS = 30_000
DEFAULT_MAX_ATTACHMENT_SIZE = 10 * 1024 * 1024


class _CamelModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="ignore",
        frozen=True,
    )


class ImapSettings(_CamelModel):
    """Retrieval endpoint for an account."""

    host: str = Field(default="", description="IMAP hostname")
    port: int = Field(default=993, ge=1, le=65535, description="IMAP port")
    secure: bool = Field(default=True, description="Implicit TLS (STARTTLS otherwise)")
    user: str = Field(default="", description="Login user")
    password: SecretStr = Field(default=SecretStr(""), description="Login password")

    @field_validator("host", "user")
    @classmethod
    def _strip(cls, value: str) -> str:
        return value.strip()


class SmtpSettings(_CamelModel):
    """Delivery endpoint for an account."""

    host: str = Field(default="", description="SMTP hostname")
    port: int = Field(default=587, ge=1, le=65535, description="SMTP port")
    secure: bool = Field(default=False, description="Implicit TLS (STARTTLS otherwise)")
    user: str = Field(default="", description="Login user")
    password: SecretStr = Field(default=SecretStr(""), description="Login password")

    @field_validator("host", "user")
    @classmethod
    def _strip(cls, value: str) -> str:
        return value.strip()

    @property
    def pool_key(self) -> tuple[str, int, str]:
        """Key identifying one pooled SMTP transport."""
        return (self.host, self.port, self.user)


class EmailAccountConfig(_CamelModel):
    """Raw per-account configuration as written by the operator."""

    enabled: bool = True
    name: Optional[str] = None
    imap: ImapSettings = Field(default_factory=ImapSettings)
    smtp: SmtpSettings = Field(default_factory=SmtpSettings)
    from_name: str = ""
    from_address: str = ""
    poll_interval: int = Field(
        default=DEFAULT_POLL_INTERVAL_MS,
        ge=1000,
        description="Milliseconds between inbox checks",
    )
    dm_policy: str = "allowlist"
    allow_from: List[str] = Field(default_factory=list)
    attachments_dir: Optional[Path] = None
    max_attachment_size: int = Field(default=DEFAULT_MAX_ATTACHMENT_SIZE, ge=0)

    @field_validator("from_address")
    @classmethod
    def _normalize_from(cls, value: str) -> str:
        return value.strip()


class ResolvedEmailAccount(BaseModel):
    """Immutable view of one account, loaded once per start."""

    model_config = ConfigDict(frozen=True)

    account_id: str
    name: Optional[str] = None
    enabled: bool = True
    configured: bool = False
    config: EmailAccountConfig
    imap: ImapSettings
    smtp: SmtpSettings
    from_name: str = ""
    from_address: str = ""
    poll_interval_ms: int = DEFAULT_POLL_INTERVAL_MS
    allow_from: List[str] = Field(default_factory=list)
    attachments_dir: Optional[Path] = None
    max_attachment_size: int = DEFAULT_MAX_ATTACHMENT_SIZE

    @property
    def poll_interval_seconds(self) -> float:
        return self.poll_interval_ms / 1000.0


def _email_section(cfg: Optional[Mapping[str, Any]]) -> Mapping[str, Any]:
    if not cfg:
        return {}
    channels = cfg.get("channels") or {}
    section = channels.get("email")
    if section is None:
        plugins = cfg.get("plugins") or {}
        entry = (plugins.get("entries") or {}).get("email") or {}
        section = entry.get("config")
    return section or {}


def list_email_account_ids(cfg: Optional[Mapping[str, Any]]) -> List[str]:
    """List configured account identifiers.

    Multi-account configs use an ``accounts`` mapping; a section that carries
    ``fromAddress`` or ``imap`` directly is a single ``default`` account.
    """
    section = _email_section(cfg)
    accounts = section.get("accounts")
    if isinstance(accounts, Mapping):
        return list(accounts.keys())
    if section.get("fromAddress") or section.get("from_address") or section.get("imap"):
        return [DEFAULT_ACCOUNT_ID]
    return []


def resolve_default_email_account_id(cfg: Optional[Mapping[str, Any]]) -> str:
    ids = list_email_account_ids(cfg)
    return ids[0] if ids else DEFAULT_ACCOUNT_ID


def resolve_email_account(
    cfg: Optional[Mapping[str, Any]],
    account_id: Optional[str] = None,
) -> ResolvedEmailAccount:
    """Resolve one account from the host configuration.

    Missing fields never raise: the account simply reports
    ``configured=False``. Fields that are present but malformed raise
    :class:`InvalidConfigError`.

    Args:
        cfg: Host configuration mapping
        account_id: Account to resolve (defaults to ``"default"``)

    Returns:
        Resolved, immutable account
    """
    aid = account_id or DEFAULT_ACCOUNT_ID
    section = _email_section(cfg)
    accounts = section.get("accounts")
    raw: Mapping[str, Any] = section
    if isinstance(accounts, Mapping) and aid in accounts:
        raw = accounts[aid] or {}

    try:
        account_config = EmailAccountConfig.model_validate(dict(raw))
    except ValidationError as exc:
        raise InvalidConfigError(
            f"Invalid email configuration for account {aid}: {exc}",
            details={"account_id": aid, "errors": exc.error_count()},
        ) from exc

    imap = account_config.imap
    smtp = account_config.smtp
    configured = bool(
        imap.host and imap.user and smtp.host and smtp.user and account_config.from_address
    )

    return ResolvedEmailAccount(
        account_id=aid,
        name=account_config.name,
        enabled=account_config.enabled,
        configured=configured,
        config=account_config,
        imap=imap,
        smtp=smtp,
        from_name=account_config.from_name,
        from_address=account_config.from_address,
        poll_interval_ms=account_config.poll_interval,
        allow_from=list(account_config.allow_from),
        attachments_dir=account_config.attachments_dir,
        max_attachment_size=account_config.max_attachment_size,
    )


def load_config_file(path: Path) -> Dict[str, Any]:
    """Load a host configuration file (JSON) from disk."""

    if not path.exists():
        raise FileNotFoundError(f"Config file not found at {path}")
    try:
        payload = json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as exc:
        raise InvalidConfigError(f"Config file {path} is not valid JSON: {exc}") from exc
    if not isinstance(payload, dict):
        raise InvalidConfigError(f"Config file {path} must contain a JSON object")
    return payload


__all__ = [
    "DEFAULT_ACCOUNT_ID",
    "DEFAULT_MAX_ATTACHMENT_SIZE",
    "DEFAULT_POLL_INTERVAL_MS",
    "EmailAccountConfig",
    "ImapSettings",
    "ResolvedEmailAccount",
    "SmtpSettings",
    "list_email_account_ids",
    "load_config_file",
    "resolve_default_email_account_id",
    "resolve_email_account",
]
