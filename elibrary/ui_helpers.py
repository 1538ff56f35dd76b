import json
import os
from typing import Iterable, List, Optional

from rich.console import Console
from rich.markup import escape
from rich.panel import Panel
from rich.table import Table

from elibrary.events import Notice
from elibrary.models import CatalogItem, LoanRecord, UserProfile
from elibrary.session import Session

# Environment variable to control CLI output mode
# Allowed values: 'plain' (default), 'json', 'rich'
OUTPUT_MODE_ENV = "LIB_CLI_OUTPUT"

_console = Console()

NOTICE_STYLES = {"info": "cyan", "success": "green", "warning": "yellow", "error": "red"}


def set_output_mode(mode: str) -> None:
    mode = (mode or "").lower().strip()
    if mode in {"plain", "json", "rich"}:
        os.environ[OUTPUT_MODE_ENV] = mode


def get_output_mode() -> str:
    return os.environ.get(OUTPUT_MODE_ENV, "plain").lower()


def _fmt_date(value) -> str:
    return value.strftime("%Y-%m-%d") if value else "-"


def print_message(message: str, level: str = "info") -> None:
    mode = get_output_mode()
    if mode == "json":
        print(json.dumps({"level": level, "message": message}, ensure_ascii=False))
    elif mode == "rich":
        _console.print(f"[{NOTICE_STYLES.get(level, 'white')}]{escape(message)}[/]")
    else:
        print(message)


def print_notice(notice: Notice) -> None:
    print_message(notice.message, notice.level)


def print_session(session: Session) -> None:
    """Print who is signed in.
    - plain: 'Signed in as Name <email> (roles)' or 'Not signed in.'
    - json: status, user and roles
    - rich: Panel
    """
    mode = get_output_mode()
    user: Optional[UserProfile] = session.identity

    if mode == "json":
        payload = {
            "status": session.status.value,
            "user": user.model_dump(mode="json") if user else None,
            "roles": sorted(session.roles),
            "is_admin": session.is_admin,
        }
        print(json.dumps(payload, ensure_ascii=False))
        return

    if not session.is_authenticated or user is None:
        print_message("Not signed in.", "warning")
        return

    roles = ", ".join(sorted(session.roles)) or "none"
    if mode == "rich":
        content = (
            f"[bold]Name:[/] {escape(user.display_name)}\n"
            f"[bold]Email:[/] {escape(user.email)}\n"
            f"[bold]Phone:[/] {escape(user.phone_number or '-')}\n"
            f"[bold]City:[/] {escape(user.city or '-')}\n"
            f"[bold]Roles:[/] {escape(roles)}"
        )
        _console.print(Panel.fit(content, title="Profile", border_style="blue"))
    else:
        print(f"Signed in as {user.display_name} <{user.email}> ({roles})")


def print_catalog(items: List[CatalogItem]) -> None:
    """Print catalog entries; unavailable items stay listed, marked as such."""
    mode = get_output_mode()

    if not items:
        print("No books found.")
        return

    if mode == "json":
        print(json.dumps([i.model_dump(mode="json") for i in items], ensure_ascii=False))
    elif mode == "rich":
        table = Table(title="Books", show_lines=True, header_style="bold cyan")
        table.add_column("ID", style="magenta", no_wrap=True)
        table.add_column("Title", style="white")
        table.add_column("Author", style="white")
        table.add_column("Genre", style="white")
        table.add_column("Available", justify="right")
        for i in items:
            available = f"{i.available_copies}/{i.total_copies}"
            style = "green" if i.is_available else "red"
            table.add_row(str(i.id), escape(i.title), escape(i.author), escape(i.genre or "-"),
                          f"[{style}]{available}[/]")
        _console.print(table)
    else:
        for i in items:
            availability = f"{i.available_copies}/{i.total_copies} available" if i.is_available \
                else "No Copies Available"
            print(f"{i.id} - {i.title} by {i.author} [{availability}]")


def print_loans(loans: Iterable[LoanRecord], show_user: bool = False) -> None:
    """Print loan records.
    - plain: one line per loan
    - json: JSON array with server field names
    - rich: Rich table
    """
    loans = list(loans)
    mode = get_output_mode()

    if not loans:
        print("No borrowed books yet.")
        return

    if mode == "json":
        print(json.dumps([l.model_dump(mode="json", by_alias=True) for l in loans], ensure_ascii=False))
    elif mode == "rich":
        table = Table(title="Loans", show_lines=True, header_style="bold cyan")
        table.add_column("Loan", style="magenta", no_wrap=True)
        table.add_column("Book", style="white")
        if show_user:
            table.add_column("User", style="white")
        table.add_column("Borrowed")
        table.add_column("Due")
        table.add_column("Returned")
        table.add_column("Status")
        for l in loans:
            status_style = "red" if l.is_overdue() else ("green" if l.is_active else "dim")
            row = [str(l.id), escape(l.title)]
            if show_user:
                row.append(escape(l.user_email or l.user_name or str(l.user_id or "-")))
            row += [_fmt_date(l.borrowed_at), _fmt_date(l.due_at), _fmt_date(l.returned_at),
                    f"[{status_style}]{l.status.value}[/]"]
            table.add_row(*row)
        _console.print(table)
    else:
        for l in loans:
            user = f" ({l.user_email or l.user_id})" if show_user else ""
            returned = f", returned {_fmt_date(l.returned_at)}" if l.returned_at else ""
            print(f"{l.id} - {l.title}{user}: {l.status.value}, due {_fmt_date(l.due_at)}{returned}")


def print_users(users: List[UserProfile]) -> None:
    """Print user accounts for administrators.
    - plain: '{id} - Name <email> [roles] Active|Restricted'
    - json: JSON array with server field names
    - rich: Rich table
    """
    mode = get_output_mode()

    if not users:
        print("No users found.")
        return

    if mode == "json":
        print(json.dumps([u.model_dump(mode="json", by_alias=True) for u in users], ensure_ascii=False))
    elif mode == "rich":
        table = Table(title="Users", show_lines=True, header_style="bold cyan")
        table.add_column("ID", style="magenta", no_wrap=True)
        table.add_column("Name", style="white")
        table.add_column("Email", style="white")
        table.add_column("City", style="white")
        table.add_column("Roles", style="white")
        table.add_column("Status")
        for u in users:
            status = "[green]Active[/]" if u.account_non_locked else "[red]Restricted[/]"
            table.add_row(str(u.id), escape(u.display_name), escape(u.email), escape(u.city or "-"),
                          escape(", ".join(u.roles)), status)
        _console.print(table)
    else:
        for u in users:
            status = "Active" if u.account_non_locked else "Restricted"
            print(f"{u.id} - {u.display_name} <{u.email}> [{', '.join(u.roles)}] {status}")
