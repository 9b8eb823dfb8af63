"""Command-line interface for mailfetch - fetch or test one mailbox."""

import argparse
import asyncio
import getpass
import json
import os
import sys
from pathlib import Path
from typing import List, Optional

from rich.console import Console
from rich.table import Table

from mailfetch import __version__
from mailfetch.core.email.services.fetch import MailFetchService
from mailfetch.core.models.mailbox import FetchRequest, MailProtocol, ServerSettings
from mailfetch.core.models.message import FetchResult
from mailfetch.utils.config import ConfigManager
from mailfetch.utils.errors import MailFetchError, format_error_message
from mailfetch.utils.logging import init_logging

PASSWORD_ENV = "MAILFETCH_PASSWORD"

console = Console()


## Argument Parsing


def add_server_arguments(parser: argparse.ArgumentParser) -> None:
    """Add connection arguments shared by every command."""

    server_group = parser.add_argument_group("server", "Incoming mail server")

    server_group.add_argument(
        "--protocol",
        choices=[p.value for p in MailProtocol],
        default=MailProtocol.POP3.value,
        help="Retrieval protocol (default: pop)",
    )
    server_group.add_argument("--host", required=True, help="Server host name")
    server_group.add_argument(
        "--port",
        type=int,
        help="Server port (default: 110 for pop, 993 for imap)",
    )
    server_group.add_argument("--user", required=True, help="Account user name")
    server_group.add_argument(
        "--password",
        help=f"Account password (default: ${PASSWORD_ENV}, else prompt)",
    )
    server_group.add_argument(
        "--encryption",
        choices=["none", "ssl", "tls"],
        help="none = plain text, ssl = implicit TLS, tls = STARTTLS "
        "(default: none for pop, ssl for imap)",
    )


def setup_argument_parser() -> argparse.ArgumentParser:
    """Configure and return the argument parser with all subcommands"""
    parser = argparse.ArgumentParser(
        prog="mailfetch",
        description="Fetch recent messages from a POP3 or IMAP mailbox.",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("--config", type=Path, help="Path to config.json")
    parser.add_argument(
        "--debug", action="store_true", help="Show debug logs and the protocol transcript"
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    fetch_parser = subparsers.add_parser(
        "fetch",
        help="Fetch the most recent messages",
        description="Retrieve the newest messages and print them",
    )
    add_server_arguments(fetch_parser)
    fetch_parser.add_argument(
        "--folder", default="INBOX", help="IMAP folder (default: INBOX)"
    )
    fetch_parser.add_argument(
        "--json", action="store_true", help="Print the raw result as JSON"
    )

    test_parser = subparsers.add_parser(
        "test",
        help="Test connectivity and login",
        description="Connect, log in and disconnect without reading mail",
    )
    add_server_arguments(test_parser)
    test_parser.add_argument(
        "--json", action="store_true", help="Print the raw result as JSON"
    )

    return parser


def build_request(args: argparse.Namespace) -> FetchRequest:
    """Turn parsed arguments into a FetchRequest."""
    password = args.password or os.environ.get(PASSWORD_ENV)
    if not password:
        password = getpass.getpass(f"Password for {args.user}@{args.host}: ")

    protocol = MailProtocol(args.protocol)
    settings = ServerSettings(
        host=args.host,
        port=args.port,
        username=args.user,
        password=password,
        encryption=args.encryption,
    )

    if protocol == MailProtocol.IMAP:
        return FetchRequest(
            protocol=protocol, imap=settings, folder=getattr(args, "folder", "INBOX")
        )
    return FetchRequest(protocol=protocol, pop=settings)


## Output


def display_emails(result: FetchResult) -> None:
    """Print fetched messages as a table."""
    if not result.emails:
        console.print("[yellow]No emails to display[/yellow]")
        return

    table = Table(title=result.message or "Emails")
    table.add_column("From", style="magenta", min_width=20)
    table.add_column("Subject", style="green", min_width=20)
    table.add_column("Date", style="yellow", justify="right")
    table.add_column("Preview", style="white", max_width=60)

    for email in result.emails:
        preview = " ".join(email.body.split())[:120]
        table.add_row(email.sender, email.subject, email.date[:16].replace("T", " "), preview)

    console.print(table)


def display_result(result: FetchResult, command: str, as_json: bool, debug: bool) -> None:
    if as_json:
        console.print_json(json.dumps(result.to_dict()))
        return

    if not result.success:
        console.print(f"[red]{result.error}[/]")
    elif command == "fetch":
        display_emails(result)
    else:
        console.print(f"[green]{result.message}[/]")

    if debug and result.debug:
        console.rule("Transcript")
        console.print(result.debug, markup=False, highlight=False)


## Entry Point


async def run_command(args: argparse.Namespace, service: MailFetchService) -> FetchResult:
    request = build_request(args)
    if args.command == "fetch":
        return await service.fetch(request)
    return await service.test_connection(request)


def main(argv: Optional[List[str]] = None) -> int:
    parser = setup_argument_parser()
    args = parser.parse_args(argv)

    try:
        config_manager = ConfigManager(args.config)
    except MailFetchError as e:
        console.print(f"[red]Configuration error: {format_error_message(e)}[/]")
        return 2

    log_config = config_manager.config.logging
    init_logging(
        "DEBUG" if args.debug else log_config.log_level,
        log_dir=Path(log_config.log_dir) if log_config.log_to_file else None,
        console_level="DEBUG" if args.debug else log_config.console_level,
        max_file_size=log_config.max_file_size,
        backup_count=log_config.backup_count,
    )

    service = MailFetchService(config_manager.config.fetch)

    try:
        result = asyncio.run(run_command(args, service))
    except KeyboardInterrupt:
        console.print("[yellow]Cancelled.[/]")
        return 130

    display_result(result, args.command, args.json, args.debug)
    return 0 if result.success else 1


if __name__ == "__main__":
    sys.exit(main())
