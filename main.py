import asyncio
import logging
from pathlib import Path
from typing import Awaitable, Callable, Optional

import typer

from elibrary.config import settings
from elibrary.errors import AuthorizationError, LibraryClientError, TransportError, ValidationError
from elibrary.events import Notifier
from elibrary.services.account_service import AccountService
from elibrary.services.admin_service import AdminService
from elibrary.services.borrow_coordinator import (
    TRANSPORT_MESSAGE,
    BorrowCoordinator,
    BorrowReason,
    LoanListOutcome,
    LoanOutcome,
)
from elibrary.services.catalog_service import CatalogService
from elibrary.services.http_client import ApiClient
from elibrary.services.session_manager import SessionManager
from elibrary.token_store import TokenStore
from elibrary.ui_helpers import (
    print_catalog,
    print_loans,
    print_message,
    print_notice,
    print_session,
    print_users,
    set_output_mode,
)

APP_NAME = "E-Library CLI"

logger = logging.getLogger(__name__)


def create_api_client() -> ApiClient:
    """Build the gateway client; tests replace this to plug in a fake transport."""
    return ApiClient(base_url=settings.api_base_url)


def create_token_store() -> TokenStore:
    return TokenStore(settings.token_file, settings.token_key)


def _on_session_expired() -> None:
    print_message("Run 'elibrary login' to sign in again.", "info")


class ClientContext:
    """Wires the core components together for the length of one command."""

    def __init__(self, verify: bool = True) -> None:
        self.api = create_api_client()
        self.notifier = Notifier(sink=print_notice)
        self.sessions = SessionManager(
            self.api,
            create_token_store(),
            self.notifier,
            on_session_expired=_on_session_expired,
        )
        self.coordinator = BorrowCoordinator(self.sessions, self.api)
        self.catalog = CatalogService(self.sessions, self.api)
        self.accounts = AccountService(self.sessions, self.api)
        self.admin = AdminService(self.sessions, self.api, self.coordinator.refresh_bus)
        self._verify = verify

    async def __aenter__(self) -> "ClientContext":
        if self._verify:
            await self.sessions.initialize()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.api.close()


def run_with_client(handler: Callable[[ClientContext], Awaitable[None]], verify: bool = True) -> None:
    """Run one async command and turn expected failures into messages."""

    async def _main() -> None:
        async with ClientContext(verify=verify) as ctx:
            try:
                await handler(ctx)
            except AuthorizationError as e:
                # the interceptor has already told the user when it ended a session
                if not ctx.notifier.history():
                    print_message(f"Not authorized: {e.message}", "error")

    try:
        asyncio.run(_main())
    except ValidationError as e:
        print_message(e.message, "error")
        for field, problem in e.errors.items():
            print_message(f"  {field}: {problem}", "error")
    except TransportError as e:
        logger.error(f"Transport failure: {e}")
        print_message(TRANSPORT_MESSAGE, "error")
    except LibraryClientError as e:
        print_message(f"Error: {e.message}", "error")


def print_outcome(outcome: LoanOutcome) -> None:
    if outcome.ok:
        print_message(outcome.message, "success")
    elif outcome.reason is BorrowReason.CANCELLED:
        print_message(outcome.message, "info")
    else:
        print_message(outcome.message, "error")


def print_loan_list(outcome: LoanListOutcome, show_user: bool = False) -> None:
    if outcome.ok:
        print_loans(outcome.loans, show_user=show_user)
    elif outcome.reason is BorrowReason.NOT_AUTHENTICATED:
        # never an empty list: "no loans" and "not signed in" must look different
        print_message(outcome.message, "warning")
    else:
        print_message(outcome.message, "error")


# --- Typer CLI application ---
app = typer.Typer(help="E-Library CLI")


@app.callback()
def _global_options(
    output: Optional[str] = typer.Option(
        None,
        "--output",
        "-o",
        help="Output format: plain | json | rich (default: plain)",
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Show debug logging"),
):
    """Global CLI options (output mode, logging)."""
    if output or settings.output_mode:
        set_output_mode(output or settings.output_mode)
    level = logging.DEBUG if verbose or settings.debug else getattr(logging, settings.log_level.upper(), logging.WARNING)
    logging.basicConfig(level=level, format="%(asctime)s %(levelname)s %(name)s: %(message)s")


@app.command("login")
def cli_login(
    email: str = typer.Option(..., "--email", "-e", prompt=True),
    password: str = typer.Option(..., "--password", "-p", prompt=True, hide_input=True),
):
    """Sign in and remember the session."""

    async def handler(ctx: ClientContext) -> None:
        result = await ctx.sessions.login(email, password)
        if result.ok:
            print_message("Login successful!", "success")
            print_session(ctx.sessions.session)
        else:
            print_message(f"Login failed: {result.reason}", "error")

    run_with_client(handler, verify=False)


@app.command("logout")
def cli_logout():
    """Forget the stored session."""

    async def handler(ctx: ClientContext) -> None:
        ctx.sessions.logout()
        print_message("Signed out.", "success")

    run_with_client(handler, verify=False)


@app.command("whoami")
def cli_whoami():
    """Show the signed-in user and roles."""

    async def handler(ctx: ClientContext) -> None:
        print_session(ctx.sessions.session)

    run_with_client(handler)


@app.command("register")
def cli_register(
    email: str = typer.Option(..., "--email", "-e", prompt=True),
    name: str = typer.Option(..., "--name", "-n", prompt=True),
    password: str = typer.Option(..., "--password", "-p", prompt=True, hide_input=True,
                                 confirmation_prompt=True),
    phone: Optional[str] = typer.Option(None, "--phone"),
    city: Optional[str] = typer.Option(None, "--city"),
):
    """Create a new library account."""

    async def handler(ctx: ClientContext) -> None:
        message = await ctx.accounts.register(email, name, password, password, phone_number=phone, city=city)
        print_message(message, "success")

    run_with_client(handler, verify=False)


@app.command("profile")
def cli_profile(
    name: Optional[str] = typer.Option(None, "--name", "-n"),
    phone: Optional[str] = typer.Option(None, "--phone"),
    city: Optional[str] = typer.Option(None, "--city"),
):
    """Update your profile; unspecified fields keep their current value."""

    async def handler(ctx: ClientContext) -> None:
        user = ctx.sessions.current_user
        if user is None:
            print_message("Please log in to update your profile.", "warning")
            return
        updated = await ctx.accounts.update_profile(
            name if name is not None else user.name,
            phone_number=phone if phone is not None else user.phone_number,
            city=city if city is not None else user.city,
        )
        if updated:
            print_message("Profile updated successfully!", "success")
            print_session(ctx.sessions.session)
        else:
            print_message("Profile updated, but it could not be reloaded. Please sign in again.", "warning")

    run_with_client(handler)


@app.command("change-password")
def cli_change_password(
    current: str = typer.Option(..., "--current", prompt="Current password", hide_input=True),
    new: str = typer.Option(..., "--new", prompt="New password", hide_input=True, confirmation_prompt=True),
):
    """Change your password."""

    async def handler(ctx: ClientContext) -> None:
        if not ctx.sessions.is_authenticated:
            print_message("Please log in to change your password.", "warning")
            return
        message = await ctx.accounts.change_password(current, new, new)
        print_message(message, "success")

    run_with_client(handler)


@app.command("books")
def cli_books(
    query: Optional[str] = typer.Argument(None, help="Title or author search text"),
    genre: Optional[str] = typer.Option(None, "--genre", "-g"),
    author: Optional[str] = typer.Option(None, "--author", "-a"),
):
    """Browse the catalog with availability."""

    async def handler(ctx: ClientContext) -> None:
        items = await ctx.catalog.browse(query=query, genre=genre, author=author)
        print_catalog(items)

    run_with_client(handler)


@app.command("borrow")
def cli_borrow(item_id: int = typer.Argument(..., help="Catalog ID of the book")):
    """Borrow a book."""

    async def handler(ctx: ClientContext) -> None:
        print_outcome(await ctx.coordinator.borrow(item_id))

    run_with_client(handler)


@app.command("return")
def cli_return(
    loan_id: int = typer.Argument(..., help="Loan ID to return"),
    yes: bool = typer.Option(False, "--yes", "-y", help="Skip the confirmation prompt"),
):
    """Return a borrowed book (asks for confirmation)."""

    def confirm() -> bool:
        return yes or typer.confirm(f"Are you sure you want to return loan {loan_id}?", default=False)

    async def handler(ctx: ClientContext) -> None:
        print_outcome(await ctx.coordinator.return_item(loan_id, confirm))

    run_with_client(handler)


@app.command("my-loans")
def cli_my_loans():
    """List your borrowing history."""

    async def handler(ctx: ClientContext) -> None:
        print_loan_list(await ctx.coordinator.list_my_loans())

    run_with_client(handler)


@app.command("all-loans")
def cli_all_loans():
    """List every loan record (administrators)."""

    async def handler(ctx: ClientContext) -> None:
        print_loan_list(await ctx.coordinator.list_all_loans(), show_user=True)

    run_with_client(handler)


# --- Administration ---
def _signed_in(ctx: ClientContext) -> bool:
    if ctx.sessions.is_authenticated:
        return True
    print_message("Please log in as an administrator.", "warning")
    return False


@app.command("users")
def cli_users():
    """List user accounts (administrators)."""

    async def handler(ctx: ClientContext) -> None:
        if _signed_in(ctx):
            print_users(await ctx.admin.list_users())

    run_with_client(handler)


@app.command("user")
def cli_user(user_id: int = typer.Argument(..., help="User ID")):
    """Show one user account (administrators)."""

    async def handler(ctx: ClientContext) -> None:
        if _signed_in(ctx):
            print_users([await ctx.admin.get_user(user_id)])

    run_with_client(handler)


@app.command("restrict")
def cli_restrict(user_id: int = typer.Argument(..., help="User ID")):
    """Restrict (lock) a user account."""

    async def handler(ctx: ClientContext) -> None:
        if _signed_in(ctx):
            print_message(await ctx.admin.restrict_user(user_id), "success")

    run_with_client(handler)


@app.command("activate")
def cli_activate(user_id: int = typer.Argument(..., help="User ID")):
    """Re-activate a restricted user account."""

    async def handler(ctx: ClientContext) -> None:
        if _signed_in(ctx):
            print_message(await ctx.admin.activate_user(user_id), "success")

    run_with_client(handler)


@app.command("update-user")
def cli_update_user(
    user_id: int = typer.Argument(..., help="User ID"),
    name: Optional[str] = typer.Option(None, "--name", "-n"),
    phone: Optional[str] = typer.Option(None, "--phone"),
    city: Optional[str] = typer.Option(None, "--city"),
):
    """Update a user's details; unspecified fields keep their current value."""

    async def handler(ctx: ClientContext) -> None:
        if not _signed_in(ctx):
            return
        user = await ctx.admin.get_user(user_id)
        updated = await ctx.admin.update_user(
            user_id,
            name if name is not None else user.name,
            phone_number=phone if phone is not None else user.phone_number,
            city=city if city is not None else user.city,
        )
        print_message(f"User {updated.email} details updated successfully!", "success")

    run_with_client(handler)


@app.command("reset-password")
def cli_reset_password(
    user_id: int = typer.Argument(..., help="User ID"),
    password: str = typer.Option(..., "--password", "-p", prompt="New password", hide_input=True,
                                 confirmation_prompt=True),
):
    """Set a new password for a user."""

    async def handler(ctx: ClientContext) -> None:
        if _signed_in(ctx):
            print_message(await ctx.admin.reset_password(user_id, password, password), "success")

    run_with_client(handler)


@app.command("delete-user")
def cli_delete_user(
    user_id: int = typer.Argument(..., help="User ID"),
    yes: bool = typer.Option(False, "--yes", "-y", help="Skip the confirmation prompt"),
):
    """Delete a user account. This cannot be undone."""

    async def handler(ctx: ClientContext) -> None:
        if not _signed_in(ctx):
            return
        if not (yes or typer.confirm(f"Are you sure you want to delete user ID {user_id}?", default=False)):
            print_message("Delete cancelled.", "info")
            return
        print_message(await ctx.admin.delete_user(user_id), "success")

    run_with_client(handler)


@app.command("admin-books")
def cli_admin_books():
    """List every catalog entry (administrators)."""

    async def handler(ctx: ClientContext) -> None:
        if _signed_in(ctx):
            print_catalog(await ctx.admin.list_books())

    run_with_client(handler)


@app.command("add-book")
def cli_add_book(
    title: str = typer.Option(..., "--title", "-t", prompt=True),
    author: str = typer.Option(..., "--author", "-a", prompt=True),
    published: str = typer.Option(..., "--published", prompt="Published date (YYYY-MM-DD)"),
    copies: int = typer.Option(1, "--copies", "-c"),
    genre: Optional[str] = typer.Option(None, "--genre", "-g"),
    file: Path = typer.Option(..., "--file", "-f", exists=True, dir_okay=False, help="PDF or EPUB file"),
):
    """Add a book to the catalog."""

    async def handler(ctx: ClientContext) -> None:
        if not _signed_in(ctx):
            return
        book = await ctx.admin.add_book(title, author, published, copies, file, genre=genre)
        print_message(f'Book "{book.title}" added successfully!', "success")

    run_with_client(handler)


@app.command("update-book")
def cli_update_book(
    book_id: int = typer.Argument(..., help="Catalog ID of the book"),
    title: Optional[str] = typer.Option(None, "--title", "-t"),
    author: Optional[str] = typer.Option(None, "--author", "-a"),
    published: Optional[str] = typer.Option(None, "--published"),
    copies: Optional[int] = typer.Option(None, "--copies", "-c"),
    genre: Optional[str] = typer.Option(None, "--genre", "-g"),
    file: Optional[Path] = typer.Option(None, "--file", "-f", exists=True, dir_okay=False),
):
    """Update a catalog entry; unspecified fields keep their current value."""

    async def handler(ctx: ClientContext) -> None:
        if not _signed_in(ctx):
            return
        book = await ctx.admin.get_book(book_id)
        updated = await ctx.admin.update_book(
            book_id,
            title if title is not None else book.title,
            author if author is not None else book.author,
            published if published is not None else (book.published_date or ""),
            copies if copies is not None else book.total_copies,
            genre=genre if genre is not None else book.genre,
            file_path=file,
        )
        print_message(f'Book "{updated.title}" updated successfully!', "success")

    run_with_client(handler)


@app.command("delete-book")
def cli_delete_book(
    book_id: int = typer.Argument(..., help="Catalog ID of the book"),
    yes: bool = typer.Option(False, "--yes", "-y", help="Skip the confirmation prompt"),
):
    """Delete a catalog entry. This cannot be undone."""

    async def handler(ctx: ClientContext) -> None:
        if not _signed_in(ctx):
            return
        if not (yes or typer.confirm("Are you sure you want to delete this book?", default=False)):
            print_message("Delete cancelled.", "info")
            return
        print_message(await ctx.admin.delete_book(book_id), "success")

    run_with_client(handler)


if __name__ == "__main__":
    app()
