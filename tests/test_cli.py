import json
from unittest.mock import MagicMock, patch

import pytest
from typer.testing import CliRunner

import main
from main import app
from notifications import EmailDispatcher
from ui_helpers import OUTPUT_MODE_ENV

runner = CliRunner()


@pytest.fixture(autouse=True)
def cli_lib(lib, monkeypatch):
    monkeypatch.setattr(main.LibraryManager, "_instance", lib)
    monkeypatch.setenv(OUTPUT_MODE_ENV, "plain")
    return lib


def test_list_no_books():
    result = runner.invoke(app, ["list"])
    assert result.exit_code == 0
    assert "No books in library." in result.stdout


def test_list_books(make_book):
    book = make_book(title="Dune", author="Frank Herbert", copies=2)
    result = runner.invoke(app, ["list"])
    assert result.exit_code == 0
    assert f"{book.id}. Dune by Frank Herbert (2/2 available)" in result.stdout


def test_list_json_output(make_book):
    make_book(title="Dune")
    result = runner.invoke(app, ["--output", "json", "list"])
    assert result.exit_code == 0
    assert json.loads(result.stdout)[0]["title"] == "Dune"


def test_search_and_show(make_book):
    book = make_book(title="Clean Code", author="Robert C. Martin")

    result = runner.invoke(app, ["search", "clean"])
    assert "Clean Code by Robert C. Martin" in result.stdout

    result = runner.invoke(app, ["show", str(book.id)])
    assert result.exit_code == 0
    assert "Title: Clean Code" in result.stdout
    assert "Copies: 1/1 available" in result.stdout


def test_show_missing_book():
    result = runner.invoke(app, ["show", "999"])
    assert result.exit_code == 1
    assert "Error: Book with id 999 not found" in result.stdout


def test_borrow_and_return(lib, student, make_book, clock):
    book = make_book(title="Dune")

    result = runner.invoke(app, ["borrow", str(book.id), "--user", "sam"])
    assert result.exit_code == 0
    assert 'Borrowed "Dune"' in result.stdout
    txn = lib.storage.list_transactions(user_id=student.id)[0]

    clock.advance(days=15)
    result = runner.invoke(app, ["return", str(txn.id), "--user", str(student.id)])
    assert result.exit_code == 0
    assert f"Returned transaction {txn.id}. Fine: $0.50" in result.stdout


def test_borrow_unknown_user(make_book):
    book = make_book()
    result = runner.invoke(app, ["borrow", str(book.id), "--user", "ghost"])
    assert result.exit_code == 1
    assert "Error: User with id ghost not found" in result.stdout


def test_reserve_claim_and_cancel(lib, engine, student, student2, faculty, make_book):
    book = make_book(copies=1)
    txn = engine.borrow(book.id, student.id)

    result = runner.invoke(app, ["reserve", str(book.id), "--user", "lee"])
    assert result.exit_code == 0
    assert "queue position 1" in result.stdout
    first = lib.storage.list_reservations(user_id=student2.id)[0]

    runner.invoke(app, ["reserve", str(book.id), "--user", "prof"])
    second = lib.storage.list_reservations(user_id=faculty.id)[0]
    result = runner.invoke(app, ["cancel", str(second.id), "--user", "prof"])
    assert f"Reservation {second.id} canceled." in result.stdout

    engine.return_book(txn.id, student.id, student.role)
    result = runner.invoke(app, ["claim", str(first.id), "--user", "lee"])
    assert result.exit_code == 0
    assert f"Reservation {first.id} claimed" in result.stdout


def test_return_waits_for_queued_emails(lib, engine, student, student2, make_book, monkeypatch):
    background = EmailDispatcher(background=True)
    monkeypatch.setattr(lib, "dispatcher", background)
    monkeypatch.setattr(engine, "dispatcher", background)
    send = MagicMock(return_value=True)
    monkeypatch.setattr(lib.email, "send_book_available", send)
    book = make_book(copies=1)
    txn = engine.borrow(book.id, student.id)
    engine.reserve(book.id, student2.id)

    try:
        result = runner.invoke(app, ["return", str(txn.id), "--user", "sam"])
        assert result.exit_code == 0
        send.assert_called_once()
        assert background.sent == 1
    finally:
        background.close()


def test_cancel_waits_for_queued_emails(lib, engine, student, student2, faculty, make_book, monkeypatch):
    book = make_book(copies=1)
    txn = engine.borrow(book.id, student.id)
    first = engine.reserve(book.id, student2.id)
    engine.reserve(book.id, faculty.id)
    engine.return_book(txn.id, student.id, student.role)

    background = EmailDispatcher(background=True)
    monkeypatch.setattr(lib, "dispatcher", background)
    monkeypatch.setattr(engine, "dispatcher", background)
    send = MagicMock(return_value=True)
    monkeypatch.setattr(lib.email, "send_book_available", send)

    try:
        result = runner.invoke(app, ["cancel", str(first.id), "--user", "lee"])
        assert result.exit_code == 0
        send.assert_called_once()
        assert send.call_args[0][0].id == faculty.id
        assert background.sent == 1
    finally:
        background.close()


def test_reserve_available_book_fails(student, make_book):
    book = make_book(copies=1)
    result = runner.invoke(app, ["reserve", str(book.id), "--user", "sam"])
    assert result.exit_code == 1
    assert "no need to reserve" in result.stdout


def test_loans_and_stats(engine, student, make_book):
    book = make_book(title="Dune", subjects=["SF"])
    engine.borrow(book.id, student.id)

    result = runner.invoke(app, ["loans", "--user", "sam"])
    assert "Dune due" in result.stdout
    assert "No reservations." in result.stdout

    result = runner.invoke(app, ["stats", "--user", "sam"])
    assert result.exit_code == 0
    assert "Borrowed: 1" in result.stdout
    assert "Popular Category: SF (1)" in result.stdout


def test_notifications_mark_read(lib, engine, student, make_book):
    book = make_book(title="Dune")
    engine.borrow(book.id, student.id)

    result = runner.invoke(app, ["notifications", "--user", "sam", "--mark-read"])
    assert result.exit_code == 0
    assert "Book Borrowed" in result.stdout
    assert lib.notifier.unread_count(student.id) == 0


def test_overview_expire_and_remind(engine, student, make_book, clock):
    book = make_book()
    engine.borrow(book.id, student.id)
    clock.advance(days=12)

    result = runner.invoke(app, ["overview"])
    assert "Active Loans: 1" in result.stdout

    result = runner.invoke(app, ["remind"])
    assert "Sent 1 reminder(s)." in result.stdout

    result = runner.invoke(app, ["expire"])
    assert "Expired 0 reservation(s)." in result.stdout


def test_seed(lib):
    result = runner.invoke(app, ["seed"])
    assert result.exit_code == 0
    assert "Seeded 5 books." in result.stdout

    result = runner.invoke(app, ["seed"])
    assert "nothing seeded" in result.stdout


@patch("subprocess.run")
def test_serve_command(mock_subprocess_run):
    result = runner.invoke(app, ["serve", "--port", "8123"])
    assert result.exit_code == 0
    assert "Starting API on http://" in result.stdout
    mock_subprocess_run.assert_called_once()
    args = mock_subprocess_run.call_args[0][0]
    assert "uvicorn" in args
    assert "api:app" in args
    assert args[args.index("--port") + 1] == "8123"
    assert "--reload" not in args
