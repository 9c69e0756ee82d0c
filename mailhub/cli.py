"""
Command Line Interface for mailhub.
"""

import argparse
import asyncio
import logging
import sys
from typing import Dict, Any, List, Optional

from rich.console import Console
from rich.panel import Panel
from rich.prompt import Prompt
from rich.table import Table

from .config import load_settings, configure_logging
from .email.crypto import CredentialCipher
from .email.errors import MailhubError
from .tools import EmailToolHandlers, build_tool_handlers

logger = logging.getLogger(__name__)
console = Console()


def display_accounts(result: Dict[str, Any]):
    """Render the account list."""
    table = Table(show_header=True, header_style="bold magenta")
    table.add_column("ID", style="dim")
    table.add_column("Name")
    table.add_column("Email")
    table.add_column("Provider")
    table.add_column("Active")
    table.add_column("Mailbox")
    table.add_column("Last Sync")
    table.add_column("Error", style="red")

    for acc in result["accounts"]:
        table.add_row(
            str(acc["id"]),
            acc["accountName"],
            acc["email"],
            acc["provider"],
            "yes" if acc["isActive"] else "no",
            acc["defaultMailbox"],
            acc["lastSyncAt"] or "-",
            acc["syncError"] or "",
        )

    console.print(Panel(table, title=f"Email Accounts ({result['count']})", border_style="blue"))


def _email_table(emails: List[Dict[str, Any]], score_columns: List[str]) -> Table:
    table = Table(show_header=True, header_style="bold magenta")
    table.add_column("Account", style="dim")
    table.add_column("Received")
    table.add_column("From")
    table.add_column("Subject")
    for column in score_columns:
        table.add_column(column, justify="right")
    table.add_column("Why")

    for email in emails:
        scores = []
        if "Urgency" in score_columns:
            scores.append(f"{email['urgencyScore']:.2f}")
        if "Importance" in score_columns:
            scores.append(f"{email['importanceScore']:.2f}")
        subject = email["subject"] or "(no subject)"
        if not email["isRead"]:
            subject = f"[bold]{subject}[/bold]"
        table.add_row(
            email["accountName"],
            email["receivedAt"][:16].replace("T", " "),
            email["from"],
            subject,
            *scores,
            "; ".join(email["importanceReason"]),
        )
    return table


def display_failures(result: Dict[str, Any]):
    for failure in result.get("failedAccounts", []):
        console.print(f"[yellow]Account {failure['accountName']} skipped: {failure['error']}[/yellow]")


def display_search(result: Dict[str, Any]):
    table = _email_table(result["results"], ["Urgency", "Importance"])
    console.print(Panel(
        table,
        title=f"Results for '{result['query']}' ({result['totalResults']})",
        border_style="green"
    ))
    display_failures(result)


def display_urgent(result: Dict[str, Any]):
    urgent = result["urgent"]
    important = result["important"]
    console.print(Panel(_email_table(urgent["emails"], ["Urgency"]), title=f"Urgent ({urgent['count']})", border_style="red"))
    console.print(Panel(_email_table(important["emails"], ["Importance"]), title=f"Important ({important['count']})", border_style="yellow"))
    display_failures(result)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="mailhub", description="Multi-account email search and triage")
    parser.add_argument("--config", type=str, default=None,
                        help="Path to configuration file (default: $MAILHUB_CONFIG or config.ini)")
    sub = parser.add_subparsers(dest="command", required=True)

    accounts = sub.add_parser("accounts", help="List email accounts")
    accounts.add_argument("--all", action="store_true", help="Include disabled accounts")

    add_imap = sub.add_parser("add-imap", help="Add an IMAP account")
    add_imap.add_argument("name", help="Friendly account name")
    add_imap.add_argument("email", help="Email address")
    add_imap.add_argument("--host", required=True, help="IMAP server hostname")
    add_imap.add_argument("--port", type=int, default=None, help="IMAP port (default from config, usually 993)")
    add_imap.add_argument("--username", default=None, help="Login name (default: the email address)")
    add_imap.add_argument("--password", default=None, help="Password (prompted when omitted)")
    add_imap.add_argument("--starttls", action="store_true", help="Connect in plain text and upgrade with STARTTLS")
    add_imap.add_argument("--mailbox", default=None, help="Default mailbox (default: INBOX)")

    add_gmail = sub.add_parser("add-gmail", help="Add a Gmail account")
    add_gmail.add_argument("name", help="Friendly account name")
    add_gmail.add_argument("email", help="Email address")
    add_gmail.add_argument("--refresh-token", required=True, help="OAuth2 refresh token")

    for name, help_text in (
        ("remove", "Remove an account and its cached results"),
        ("enable", "Enable an account"),
        ("disable", "Disable an account"),
        ("test", "Test an account's connection"),
        ("mailboxes", "List an account's mailboxes"),
    ):
        cmd = sub.add_parser(name, help=help_text)
        cmd.add_argument("account_id", type=int)

    search = sub.add_parser("search", help="Search all accounts")
    search.add_argument("query", help='Search query, e.g. "from:boss@example.com deadline"')
    search.add_argument("--account", type=int, action="append", dest="accounts", help="Limit to account ID (repeatable)")
    search.add_argument("--mailbox", action="append", dest="mailboxes", help="Mailbox to search (repeatable)")
    search.add_argument("--max-results", type=int, default=None)
    search.add_argument("--min-urgency", type=float, default=None)
    search.add_argument("--min-importance", type=float, default=None)

    urgent = sub.add_parser("urgent", help="Show urgent and important mail")
    urgent.add_argument("--account", type=int, action="append", dest="accounts", help="Limit to account ID (repeatable)")
    urgent.add_argument("--max-results", type=int, default=None, help="Maximum per category")
    urgent.add_argument("--unread", action="store_true", help="Only unread mail")

    sub.add_parser("generate-key", help="Print a new credential encryption key")
    return parser


def _optional(params: Dict[str, Any], **values) -> Dict[str, Any]:
    params.update({k: v for k, v in values.items() if v is not None})
    return params


async def run_command(args: argparse.Namespace, tools: EmailToolHandlers, default_port: int = 993) -> Dict[str, Any]:
    """Execute one sub-command and render its result."""
    command = args.command

    if command == "accounts":
        result = await tools.list_email_accounts({"includeInactive": args.all})
        display_accounts(result)
    elif command == "add-imap":
        password = args.password or Prompt.ask("Password", password=True)
        result = await tools.add_email_account(_optional(
            {
                "accountName": args.name,
                "email": args.email,
                "provider": "imap",
                "host": args.host,
                "port": args.port or default_port,
                "username": args.username or args.email,
                "password": password,
                "tls": not args.starttls,
            },
            defaultMailbox=args.mailbox,
        ))
        console.print(f"[green]{result['message']} (id {result['accountId']})[/green]")
    elif command == "add-gmail":
        result = await tools.add_email_account({
            "accountName": args.name,
            "email": args.email,
            "provider": "gmail",
            "refreshToken": args.refresh_token,
        })
        console.print(f"[green]{result['message']} (id {result['accountId']})[/green]")
    elif command in ("remove", "enable", "disable", "test"):
        handler = {
            "remove": tools.remove_email_account,
            "enable": tools.enable_email_account,
            "disable": tools.disable_email_account,
            "test": tools.test_email_account,
        }[command]
        result = await handler({"accountId": args.account_id})
        style = "green" if result.get("connected", True) else "red"
        console.print(f"[{style}]{result['message']}[/{style}]")
    elif command == "mailboxes":
        result = await tools.list_email_mailboxes({"accountId": args.account_id})
        for name in result["mailboxes"]:
            console.print(name)
    elif command == "search":
        result = await tools.search_emails(_optional(
            {"query": args.query},
            accountIds=args.accounts,
            mailboxes=args.mailboxes,
            maxResults=args.max_results,
            minUrgencyScore=args.min_urgency,
            minImportanceScore=args.min_importance,
        ))
        display_search(result)
    elif command == "urgent":
        result = await tools.get_urgent_emails(_optional(
            {"onlyUnread": args.unread},
            accountIds=args.accounts,
            maxResults=args.max_results,
        ))
        display_urgent(result)
    else:
        raise ValueError(f"Unknown command: {command}")
    return result


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)

    if args.command == "generate-key":
        console.print(CredentialCipher.generate_key())
        return 0

    settings = load_settings(args.config)
    configure_logging(settings.log_level)

    try:
        settings.cipher()
    except (RuntimeError, ValueError) as e:
        # Missing or malformed encryption key
        console.print(f"[bold red]Configuration error:[/bold red] {e}")
        return 2

    try:
        tools = build_tool_handlers(settings)
        asyncio.run(run_command(args, tools, settings.imap_default_port))
    except MailhubError as e:
        console.print(f"[bold red]Error:[/bold red] {e}")
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
