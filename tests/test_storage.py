from datetime import datetime, timedelta, timezone

import pytest

from book import Book
from database import SqliteStorage
from email_service import EmailService
from errors import ConflictError, ValidationError
from library import Library
from models import (
    BookReservation,
    BookTransaction,
    Notification,
    NotificationType,
    ReservationStatus,
    TransactionStatus,
    User,
)
from notifications import EmailDispatcher
from permissions import Role
from storage import MemStorage

NOW = datetime(2024, 1, 15, 10, 30, tzinfo=timezone.utc)


@pytest.fixture(params=["memory", "sqlite"])
def store(request, tmp_path):
    if request.param == "memory":
        backend = MemStorage()
    else:
        backend = SqliteStorage(str(tmp_path / "library.db"))
    yield backend
    backend.close()


@pytest.fixture
def user(store):
    return store.create_user(User(username="ana", name="Ana", email="ana@example.edu"))


@pytest.fixture
def book(store):
    return store.create_book(Book("Dune", "Frank Herbert", "9780441013593", subjects=["Fiction", "SF"], copies_total=3))


def test_users_round_trip(store, user):
    fetched = store.get_user(user.id)
    assert fetched.username == "ana"
    assert fetched.role == Role.STUDENT
    assert fetched.max_books == 4
    assert fetched.borrowed_count == 0
    assert store.get_user_by_email("ana@example.edu").id == user.id
    assert store.get_user(999) is None


def test_duplicate_username_and_email(store, user):
    with pytest.raises(ConflictError):
        store.create_user(User(username="ana", name="Other", email="other@example.edu"))
    with pytest.raises(ConflictError):
        store.create_user(User(username="other", name="Other", email="ana@example.edu"))


def test_books_round_trip(store, book):
    fetched = store.get_book(book.id)
    assert fetched.subjects == ["Fiction", "SF"]
    assert fetched.copies_total == 3
    assert fetched.copies_available == 3
    assert fetched.added_at.tzinfo is not None
    assert store.get_book_by_isbn("9780441013593").id == book.id
    assert store.count_books() == 1


def test_duplicate_isbn(store, book):
    with pytest.raises(ConflictError):
        store.create_book(Book("Dune Again", "Frank Herbert", "9780441013593"))


def test_update_book_validates_counts(store, book):
    with pytest.raises(ValidationError):
        store.update_book(book.id, copies_available=4)
    with pytest.raises(ValidationError):
        store.update_book(book.id, shelf="A1")
    assert store.get_book(book.id).copies_available == 3


def test_search_is_case_insensitive(store, book):
    store.create_book(Book("Neuromancer", "William Gibson", "9780441569595"))
    assert [b.title for b in store.search_books("dUnE")] == ["Dune"]
    assert [b.title for b in store.search_books("gibson")] == ["Neuromancer"]
    assert [b.title for b in store.search_books("0441569")] == ["Neuromancer"]
    assert store.search_books("tolkien") == []


def test_search_treats_wildcards_literally(store, book):
    store.create_book(Book("100% Pure", "Ann_Lee", "9780306406157"))
    assert [b.title for b in store.search_books("%")] == ["100% Pure"]
    assert [b.title for b in store.search_books("n_l")] == ["100% Pure"]
    assert store.search_books("\\") == []


def test_search_folds_non_ascii_case(store, book):
    store.create_book(Book("Émile", "Jean-Jacques Rousseau", "9780465019311"))
    assert [b.title for b in store.search_books("émile")] == ["Émile"]
    assert [b.title for b in store.search_books("ÉMILE")] == ["Émile"]


def test_list_books_paginates(store):
    for n in range(5):
        store.create_book(Book(f"Book {n}", "Author", f"978000000000{n}"))
    assert [b.title for b in store.list_books(limit=2, offset=1)] == ["Book 1", "Book 2"]
    assert len(store.list_books()) == 5


def test_transactions_filter_and_update(store, user, book):
    txn = store.create_transaction(BookTransaction(book_id=book.id, user_id=user.id,
                                                   issue_date=NOW, due_date=NOW + timedelta(days=14)))
    store.update_transaction(txn.id, status=TransactionStatus.RETURNED, return_date=NOW, fine_amount=1.5)

    fetched = store.get_transaction(txn.id)
    assert fetched.status == TransactionStatus.RETURNED
    assert fetched.return_date == NOW
    assert fetched.fine_amount == 1.5
    assert fetched.fine_paid is False
    assert store.list_transactions(user_id=user.id, status=TransactionStatus.ACTIVE) == []
    assert len(store.list_transactions(book_id=book.id)) == 1


def test_reservations_filter(store, user, book):
    reservation = store.create_reservation(BookReservation(book_id=book.id, user_id=user.id,
                                                           reservation_date=NOW, expiry_date=NOW))
    store.update_reservation(reservation.id, status=ReservationStatus.READY, notified_at=NOW)

    ready = store.list_reservations(book_id=book.id, status=ReservationStatus.READY)
    assert [r.id for r in ready] == [reservation.id]
    assert ready[0].notified_at == NOW
    assert store.list_reservations(status=ReservationStatus.PENDING) == []


def test_notifications_newest_first(store, user):
    for n in range(3):
        store.create_notification(Notification(
            user_id=user.id, title=f"n{n}", message="m", type=NotificationType.SYSTEM,
            created_at=NOW + timedelta(minutes=n), related_data={"n": n},
        ))
    listed = store.list_notifications(user.id)
    assert [n.title for n in listed] == ["n2", "n1", "n0"]
    assert listed[0].related_data == {"n": 2}
    assert listed[0].read is False


def test_unit_of_work_rolls_back(store, user, book):
    with pytest.raises(RuntimeError):
        with store.transaction():
            store.update_book(book.id, copies_available=2)
            store.update_user(user.id, borrowed_count=1)
            raise RuntimeError("abort")

    assert store.get_book(book.id).copies_available == 3
    assert store.get_user(user.id).borrowed_count == 0


def test_unit_of_work_commits(store, user, book):
    with store.transaction():
        store.update_book(book.id, copies_available=2)
        with store.transaction():
            store.update_user(user.id, borrowed_count=1)

    assert store.get_book(book.id).copies_available == 2
    assert store.get_user(user.id).borrowed_count == 1


def test_sqlite_persists_across_connections(tmp_path):
    path = str(tmp_path / "persist.db")
    first = SqliteStorage(path)
    first.create_user(User(username="kim", name="Kim", email="kim@example.edu", role=Role.FACULTY))
    first.close()

    second = SqliteStorage(path)
    try:
        assert second.get_user_by_username("kim").role == Role.FACULTY
    finally:
        second.close()


def test_lending_cycle_on_sqlite(tmp_path):
    lib = Library(
        storage=SqliteStorage(str(tmp_path / "cycle.db")),
        email=EmailService(api_key=""),
        dispatcher=EmailDispatcher(background=False),
        seed=False,
    )
    try:
        staff = lib.create_user("prof", "Prof", "prof@example.edu", Role.FACULTY)
        reader = lib.create_user("reader", "Reader", "reader@example.edu")
        waiting = lib.create_user("waiting", "Waiting", "waiting@example.edu")
        book = lib.add_book(staff, Book("SICP", "Abelson", "9780262510875"))

        txn = lib.lending.borrow(book.id, reader.id)
        reservation = lib.lending.reserve(book.id, waiting.id)
        lib.lending.return_book(txn.id, reader.id, reader.role)
        lib.lending.borrow_from_reservation(reservation.id, waiting.id)

        assert lib.get_book(book.id).copies_available == 0
        assert lib.get_user(reader.id).borrowed_count == 0
        assert lib.get_user(waiting.id).borrowed_count == 1
        assert lib.storage.get_reservation(reservation.id).status == ReservationStatus.COMPLETED
    finally:
        lib.close()
