"""CLI commands for inspecting email channel accounts."""

from __future__ import annotations

import asyncio
import json
from pathlib import Path
from typing import Any, Dict, NoReturn, Optional

import typer
from rich.console import Console
from rich.table import Table

from mailbridge.channel.connection_manager import ImapConnection, RetryStrategy, connect_with_retry
from mailbridge.channel.smtp_pool import SmtpTransportPool
from mailbridge.configuration import (
    ResolvedEmailAccount,
    list_email_account_ids,
    load_config_file,
    resolve_default_email_account_id,
    resolve_email_account,
)
from mailbridge.errors import MailBridgeError, MissingConfigError, format_error_for_cli

console = Console()
error_console = Console(stderr=True)

cli = typer.Typer(help="Email channel (IMAP/SMTP) tools")

CONFIG_OPTION = typer.Option(..., "--config", "-c", help="Host configuration file (JSON)")


def _load(config_path: Path, json_output: bool) -> Dict[str, Any]:
    try:
        return load_config_file(config_path)
    except (FileNotFoundError, MailBridgeError) as exc:
        _fail(exc, json_output)


def _fail(exc: Exception, json_output: bool) -> NoReturn:
    if json_output:
        payload = exc.to_dict() if isinstance(exc, MailBridgeError) else {"error": str(exc)}
        print(json.dumps({"success": False, **payload}))
    elif isinstance(exc, MailBridgeError):
        error_console.print(f"[red]{format_error_for_cli(exc)}[/red]")
    else:
        error_console.print(f"[red]Error: {exc}[/red]")
    raise typer.Exit(1)


@cli.command("list")
def list_accounts(
    config_path: Path = CONFIG_OPTION,
    json_output: bool = typer.Option(False, "--json", help="Output as JSON"),
) -> None:
    """List configured email accounts."""
    cfg = _load(config_path, json_output)

    accounts = []
    try:
        for account_id in list_email_account_ids(cfg):
            account = resolve_email_account(cfg, account_id)
            accounts.append(
                {
                    "accountId": account.account_id,
                    "name": account.name,
                    "fromAddress": account.from_address,
                    "enabled": account.enabled,
                    "configured": account.configured,
                    "imapHost": account.imap.host,
                    "smtpHost": account.smtp.host,
                    "pollIntervalSeconds": account.poll_interval_seconds,
                }
            )
    except MailBridgeError as exc:
        _fail(exc, json_output)

    if json_output:
        print(json.dumps({"accounts": accounts}))
        return

    if not accounts:
        console.print("[yellow]No email accounts configured[/yellow]")
        return

    table = Table(title="Email Accounts")
    table.add_column("Account", style="cyan")
    table.add_column("From")
    table.add_column("IMAP")
    table.add_column("SMTP")
    table.add_column("Poll (s)", justify="right")
    table.add_column("Enabled")
    table.add_column("Configured")

    for entry in accounts:
        table.add_row(
            entry["accountId"],
            entry["fromAddress"] or "-",
            entry["imapHost"] or "-",
            entry["smtpHost"] or "-",
            f"{entry['pollIntervalSeconds']:g}",
            "[green]yes[/green]" if entry["enabled"] else "[red]no[/red]",
            "[green]yes[/green]" if entry["configured"] else "[red]no[/red]",
        )

    console.print(table)


async def _check_account(account: ResolvedEmailAccount) -> Dict[str, Any]:
    connection = ImapConnection(settings=account.imap, account_id=account.account_id)
    await connect_with_retry(connection, RetryStrategy(max_attempts=1))
    try:
        async with connection.mailbox_lock():
            unseen = len(await connection.search_unseen())
    finally:
        await connection.close()

    pool = SmtpTransportPool()
    try:
        async with pool.transport(account.smtp) as client:
            await client.noop()
    finally:
        await pool.close_all()

    return {"success": True, "accountId": account.account_id, "unseen": unseen}


@cli.command("test-connection")
def check_connection(
    config_path: Path = CONFIG_OPTION,
    account_id: Optional[str] = typer.Option(None, "--account", "-a", help="Account id (default account if omitted)"),
    json_output: bool = typer.Option(False, "--json", help="Output as JSON"),
) -> None:
    """Log in to IMAP and SMTP for one account without polling.

    Examples:
        mailbridge test-connection --config host.json
        mailbridge test-connection --config host.json --account work --json
    """
    cfg = _load(config_path, json_output)

    try:
        account = resolve_email_account(cfg, account_id or resolve_default_email_account_id(cfg))
        if not account.configured:
            raise MissingConfigError(details={"account_id": account.account_id})
    except MailBridgeError as exc:
        _fail(exc, json_output)

    if not json_output:
        console.print(
            f"[bold blue]Testing {account.account_id} "
            f"(IMAP {account.imap.host}, SMTP {account.smtp.host})...[/bold blue]"
        )

    try:
        result = asyncio.run(_check_account(account))
    except Exception as exc:  # noqa: BLE001
        _fail(exc, json_output)

    if json_output:
        print(json.dumps(result))
    else:
        console.print("[bold green]✓ Connection successful![/bold green]")
        console.print(f"Unseen messages in INBOX: {result['unseen']}")


__all__ = ["cli"]
