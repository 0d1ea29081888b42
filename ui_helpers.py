import json
import os
from typing import Any, Dict, List

from rich.console import Console
from rich.panel import Panel
from rich.table import Table

# Environment variable to control CLI output mode
# Allowed values: 'plain' (default), 'json', 'rich'
OUTPUT_MODE_ENV = "LIBRARY_CLI_OUTPUT"

_console = Console()


def set_output_mode(mode: str) -> None:
    mode = (mode or "").lower().strip()
    if mode in {"plain", "json", "rich"}:
        os.environ[OUTPUT_MODE_ENV] = mode


def get_output_mode() -> str:
    return os.environ.get(OUTPUT_MODE_ENV, "plain").lower()


def _dump(payload: Any) -> None:
    print(json.dumps(payload, ensure_ascii=False, default=str))


def _day(value: Any) -> str:
    if value is None:
        return "-"
    return value.strftime("%Y-%m-%d") if hasattr(value, "strftime") else str(value)[:10]


def print_book_list(books: List[Any]) -> None:
    """Print books in the current output mode.
    - plain: 'ID. Title by Author (available/total)' lines
    - json: array of book dicts
    - rich: table
    """
    mode = get_output_mode()

    if not books:
        print("No books in library.")
        return

    if mode == "json":
        _dump([b.to_dict() for b in books])
    elif mode == "rich":
        table = Table(title="📚 Books", show_lines=True, header_style="bold cyan")
        table.add_column("ID", style="magenta", no_wrap=True)
        table.add_column("Title", style="white")
        table.add_column("Author", style="white")
        table.add_column("ISBN", style="dim")
        table.add_column("Available", justify="right")
        for b in books:
            table.add_row(str(b.id), b.title, b.author, b.isbn, f"{b.copies_available}/{b.copies_total}")
        _console.print(table)
    else:
        for b in books:
            print(f"{b.id}. {b.title} by {b.author} ({b.copies_available}/{b.copies_total} available)")


def print_book_detail(book: Any) -> None:
    mode = get_output_mode()
    if mode == "json":
        _dump(book.to_dict())
        return
    lines = [
        f"Title: {book.title}",
        f"Author: {book.author}",
        f"ISBN: {book.isbn}",
        f"Publisher: {book.publisher or '-'}",
        f"Year: {book.year or '-'}",
        f"Subjects: {', '.join(book.subjects) or '-'}",
        f"Location: {book.location or '-'}",
        f"Copies: {book.copies_available}/{book.copies_total} available",
    ]
    if mode == "rich":
        _console.print(Panel.fit("\n".join(lines), title=f"📖 Book {book.id}", border_style="green"))
    else:
        print("\n".join(lines))


def print_loans(rows: List[Dict[str, Any]]) -> None:
    """Active loans as returned by the lending engine's borrowed_books()."""
    mode = get_output_mode()
    if not rows:
        print("No borrowed books.")
        return
    if mode == "json":
        _dump(rows)
    elif mode == "rich":
        table = Table(title="📕 Borrowed", header_style="bold cyan")
        table.add_column("Txn", style="magenta")
        table.add_column("Title")
        table.add_column("Due")
        table.add_column("Overdue")
        for row in rows:
            title = row["book"]["title"] if row.get("book") else f"book {row['book_id']}"
            table.add_row(str(row["id"]), title, _day(row["due_date"]), "yes" if row["is_overdue"] else "")
        _console.print(table)
    else:
        for row in rows:
            title = row["book"]["title"] if row.get("book") else f"book {row['book_id']}"
            flag = " OVERDUE" if row["is_overdue"] else ""
            print(f"{row['id']}. {title} due {_day(row['due_date'])}{flag}")


def print_reservations(rows: List[Dict[str, Any]]) -> None:
    mode = get_output_mode()
    if not rows:
        print("No reservations.")
        return
    if mode == "json":
        _dump(rows)
        return
    for row in rows:
        title = row["book"]["title"] if row.get("book") else f"book {row['book_id']}"
        position = f" (position {row['queue_position']})" if row.get("queue_position") else ""
        line = f"{row['id']}. {title} [{row['status']}]{position}"
        if mode == "rich":
            _console.print(line)
        else:
            print(line)


def print_stats_result(stats: Dict[str, Any]) -> None:
    """Dashboard counters in the current output mode."""
    mode = get_output_mode()

    if not stats:
        print("No statistics available.")
        return

    if mode == "json":
        _dump(stats)
        return

    labels = [
        ("Borrowed", stats.get("borrowed_count", 0)),
        ("Due Soon", stats.get("due_soon_count", 0)),
        ("Overdue", stats.get("overdue_count", 0)),
        ("Reservations", stats.get("reservation_count", 0)),
        ("Ready For Pickup", stats.get("available_reservations", 0)),
        ("Total Books", stats.get("total_book_count", 0)),
        ("Popular Category", f"{stats.get('popular_category') or '-'} ({stats.get('popular_category_count', 0)})"),
    ]
    if mode == "rich":
        content = "\n".join(f"[bold]{label}:[/] {value}" for label, value in labels)
        _console.print(Panel.fit(content, title="📊 Stats", border_style="blue"))
    else:
        for label, value in labels:
            print(f"{label}: {value}")


def print_notifications(notifications: List[Any]) -> None:
    mode = get_output_mode()
    if not notifications:
        print("No notifications.")
        return
    if mode == "json":
        _dump([n.to_dict() for n in notifications])
        return
    for n in notifications:
        marker = " " if n.read else "*"
        line = f"{marker} {n.id}. [{n.type.value}] {n.title}: {n.message}"
        if mode == "rich":
            _console.print(line, style="dim" if n.read else "bold")
        else:
            print(line)


def print_overview(overview: Dict[str, Any]) -> None:
    mode = get_output_mode()
    if mode == "json":
        _dump(overview)
        return
    if mode == "rich":
        table = Table(title="🏛️ Library Overview", header_style="bold cyan")
        table.add_column("Metric")
        table.add_column("Value", justify="right")
        for key, value in overview.items():
            table.add_row(key.replace("_", " ").title(), str(value))
        _console.print(table)
    else:
        for key, value in overview.items():
            print(f"{key.replace('_', ' ').title()}: {value}")
