import pytest

from errors import NotFoundError
from lending import most_common_subject


def test_empty_dashboard(engine, student):
    stats = engine.get_dashboard_stats(student.id)

    assert stats.borrowed_count == 0
    assert stats.due_soon_count == 0
    assert stats.overdue_count == 0
    assert stats.reservation_count == 0
    assert stats.available_reservations == 0
    assert stats.total_book_count == 0
    assert stats.popular_category is None


def test_dashboard_counts(engine, student, student2, clock, make_book):
    soon = make_book(copies=1, subjects=["Databases"])
    later = make_book(copies=2, subjects=["Databases", "Python"])
    wanted = make_book(copies=1, subjects=["Python"])

    engine.borrow(soon.id, student.id)
    clock.advance(days=5)
    engine.borrow(later.id, student.id)
    engine.borrow(wanted.id, student2.id)
    engine.reserve(wanted.id, student.id)
    clock.advance(days=7)

    stats = engine.get_dashboard_stats(student.id)

    assert stats.borrowed_count == 2
    assert stats.due_soon_count == 1
    assert stats.overdue_count == 0
    assert stats.reservation_count == 1
    assert stats.available_reservations == 0
    assert stats.total_book_count == 3

    clock.advance(days=3)
    stats = engine.get_dashboard_stats(student.id)
    assert stats.overdue_count == 1


def test_reservation_counts_include_every_status(engine, student, student2, make_book):
    book = make_book(copies=1)
    txn = engine.borrow(book.id, student2.id)
    reservation = engine.reserve(book.id, student.id)
    engine.return_book(txn.id, student2.id, student2.role)

    stats = engine.get_dashboard_stats(student.id)
    assert stats.reservation_count == 1
    assert stats.available_reservations == 1

    engine.borrow_from_reservation(reservation.id, student.id)
    stats = engine.get_dashboard_stats(student.id)
    assert stats.reservation_count == 1
    assert stats.available_reservations == 0
    assert stats.borrowed_count == 1


def test_dashboard_is_read_only(lib, engine, student, make_book):
    book = make_book(copies=1, subjects=["History"])
    engine.borrow(book.id, student.id)
    notifications = len(lib.notifier.list_for(student.id))

    first = engine.get_dashboard_stats(student.id)
    second = engine.get_dashboard_stats(student.id)

    assert first == second
    assert len(lib.notifier.list_for(student.id)) == notifications
    assert lib.get_book(book.id).copies_available == 0


def test_dashboard_unknown_user(engine):
    with pytest.raises(NotFoundError):
        engine.get_dashboard_stats(404)


def test_popular_category(engine, student, make_book):
    make_book(subjects=["Physics", "Math"])
    make_book(subjects=["Math"])
    make_book(subjects=["Physics"])

    stats = engine.get_dashboard_stats(student.id)

    # Physics and Math tie at 2; Physics was seen first
    assert stats.popular_category == "Physics"
    assert stats.popular_category_count == 2
    assert stats.to_dict()["popular_category"] == "Physics"


def test_most_common_subject_empty():
    assert most_common_subject([]) == (None, 0)
