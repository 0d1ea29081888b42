import os
import subprocess
import sys
from typing import Optional

import typer
from rich.console import Console

from config import configure_logging, settings
from errors import LibraryError, NotFoundError
from library import Library
from models import User
from ui_helpers import (
    print_book_detail,
    print_book_list,
    print_loans,
    print_notifications,
    print_overview,
    print_reservations,
    print_stats_result,
    set_output_mode,
)

APP_NAME = "Library CLI"

console = Console()


class LibraryManager:
    """Lazily built, process-wide Library instance."""

    _instance: Optional[Library] = None

    @classmethod
    def get_instance(cls) -> Library:
        if cls._instance is None:
            cls._instance = Library()
        return cls._instance

    @classmethod
    def reset(cls) -> None:
        if cls._instance is not None:
            cls._instance.close()
        cls._instance = None


def _fail(message: str) -> None:
    print(f"Error: {message}")
    raise typer.Exit(code=1)


def _resolve_user(lib: Library, user: str) -> User:
    """Accept either a numeric id or a username."""
    if user.isdigit():
        return lib.get_user(int(user))
    found = lib.find_user(user)
    if found is None:
        raise NotFoundError("User", user)
    return found


USER_OPTION = typer.Option(..., "--user", "-u", help="Acting user: id or username")


# --- Typer CLI app ---
app = typer.Typer(help=APP_NAME)


@app.callback()
def _global_options(
    output: Optional[str] = typer.Option(
        None,
        "--output",
        "-o",
        help="Output format: plain | json | rich (default: plain)",
    )
):
    """Global options for the CLI (e.g. output mode)."""
    configure_logging(os.getenv("LOG_LEVEL", "WARNING"))
    if output:
        set_output_mode(output)


@app.command("list")
def cli_list(
    limit: Optional[int] = typer.Option(None, "--limit", "-l", help="Maximum number of books"),
    offset: int = typer.Option(0, "--offset", help="Books to skip"),
):
    """List the catalog."""
    print_book_list(LibraryManager.get_instance().list_books(limit, offset))


@app.command("search")
def cli_search(query: str = typer.Argument(..., help="Title, author or ISBN fragment")):
    """Search books by title, author or ISBN."""
    try:
        books = LibraryManager.get_instance().search_books(query)
    except LibraryError as e:
        _fail(str(e))
    print_book_list(books)


@app.command("show")
def cli_show(book_id: int):
    """Show one book with its copy counts."""
    try:
        book = LibraryManager.get_instance().get_book(book_id)
    except LibraryError as e:
        _fail(str(e))
    print_book_detail(book)


@app.command("borrow")
def cli_borrow(book_id: int, user: str = USER_OPTION):
    """Borrow a copy of a book."""
    lib = LibraryManager.get_instance()
    try:
        actor = _resolve_user(lib, user)
        txn = lib.lending.borrow(book_id, actor.id)
        book = lib.get_book(book_id)
    except LibraryError as e:
        _fail(str(e))
    print(f'Borrowed "{book.title}" (transaction {txn.id}), due {txn.due_date:%Y-%m-%d}')


@app.command("return")
def cli_return(transaction_id: int, user: str = USER_OPTION):
    """Return a borrowed book."""
    lib = LibraryManager.get_instance()
    try:
        actor = _resolve_user(lib, user)
        txn = lib.lending.return_book(transaction_id, actor.id, actor.role)
    except LibraryError as e:
        _fail(str(e))
    lib.dispatcher.flush()
    print(f"Returned transaction {txn.id}. Fine: ${txn.fine_amount:.2f}")


@app.command("reserve")
def cli_reserve(book_id: int, user: str = USER_OPTION):
    """Join the waiting list for a book with no copy on the shelf."""
    lib = LibraryManager.get_instance()
    try:
        actor = _resolve_user(lib, user)
        reservation = lib.lending.reserve(book_id, actor.id)
        position = lib.lending.queue_position(reservation.id)
    except LibraryError as e:
        _fail(str(e))
    print(f"Reserved book {book_id} (reservation {reservation.id}, queue position {position})")


@app.command("claim")
def cli_claim(reservation_id: int, user: str = USER_OPTION):
    """Borrow the book held by a ready reservation."""
    lib = LibraryManager.get_instance()
    try:
        actor = _resolve_user(lib, user)
        txn = lib.lending.borrow_from_reservation(reservation_id, actor.id)
    except LibraryError as e:
        _fail(str(e))
    print(f"Reservation {reservation_id} claimed (transaction {txn.id}), due {txn.due_date:%Y-%m-%d}")


@app.command("cancel")
def cli_cancel(reservation_id: int, user: str = USER_OPTION):
    """Cancel a pending or ready reservation."""
    lib = LibraryManager.get_instance()
    try:
        actor = _resolve_user(lib, user)
        lib.lending.cancel_reservation(reservation_id, actor.id, actor.role)
    except LibraryError as e:
        _fail(str(e))
    lib.dispatcher.flush()
    print(f"Reservation {reservation_id} canceled.")


@app.command("loans")
def cli_loans(user: str = USER_OPTION):
    """Show a user's borrowed books and reservations."""
    lib = LibraryManager.get_instance()
    try:
        actor = _resolve_user(lib, user)
    except LibraryError as e:
        _fail(str(e))
    print_loans(lib.lending.borrowed_books(actor.id))
    print_reservations(lib.lending.reservations_for(actor.id))


@app.command("stats")
def cli_stats(user: str = USER_OPTION):
    """Show a user's dashboard counters."""
    lib = LibraryManager.get_instance()
    try:
        actor = _resolve_user(lib, user)
        stats = lib.lending.get_dashboard_stats(actor.id)
    except LibraryError as e:
        _fail(str(e))
    print_stats_result(stats.to_dict())


@app.command("notifications")
def cli_notifications(
    user: str = USER_OPTION,
    mark_read: bool = typer.Option(False, "--mark-read", help="Mark every listed notification as read"),
):
    """List a user's notifications, newest first."""
    lib = LibraryManager.get_instance()
    try:
        actor = _resolve_user(lib, user)
    except LibraryError as e:
        _fail(str(e))
    notifications = lib.notifier.list_for(actor.id)
    print_notifications(notifications)
    if mark_read:
        for n in notifications:
            lib.notifier.mark_read(n.id, actor.id, actor.role)


@app.command("overview")
def cli_overview():
    """Circulation figures for the whole library."""
    print_overview(LibraryManager.get_instance().lending.library_overview())


@app.command("expire")
def cli_expire():
    """Cancel ready reservations that were not picked up in time."""
    lib = LibraryManager.get_instance()
    expired = lib.lending.expire_reservations()
    lib.dispatcher.flush()
    print(f"Expired {len(expired)} reservation(s).")


@app.command("remind")
def cli_remind():
    """Send due-date reminders for loans falling due soon."""
    lib = LibraryManager.get_instance()
    sent = lib.lending.send_due_reminders()
    lib.dispatcher.flush()
    print(f"Sent {sent} reminder(s).")


@app.command("seed")
def cli_seed():
    """Load the demo users, books, courses and papers into an empty library."""
    from sample_data import seed_sample_data

    lib = LibraryManager.get_instance()
    if lib.storage.count_books() > 0:
        print("Library already has books; nothing seeded.")
        return
    try:
        seed_sample_data(lib)
    except LibraryError as e:
        _fail(str(e))
    print(f"Seeded {lib.storage.count_books()} books.")


@app.command("serve")
def cli_serve(
    host: Optional[str] = typer.Option(None, "--host", help="Bind address"),
    port: Optional[int] = typer.Option(None, "--port", help="Bind port"),
    reload: bool = typer.Option(False, "--reload", help="Restart on code changes"),
):
    """Start the HTTP API with uvicorn."""
    host = host or settings.api_host
    port = int(port or settings.api_port)
    print(f"Starting API on http://{host}:{port}/")
    args = [
        sys.executable,
        "-m", "uvicorn",
        "api:app",
        "--host", host,
        "--port", str(port),
    ]
    if reload:
        args.append("--reload")
    try:
        subprocess.run(args)
    except FileNotFoundError:
        console.print("[bold red]Error:[/] could not launch uvicorn. Make sure it is installed.")
        raise typer.Exit(code=1)


if __name__ == "__main__":
    app()
