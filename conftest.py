import os
from datetime import datetime, timedelta, timezone

# Tests never touch a real database file or e-mail provider
os.environ["LIBRARY_STORAGE"] = "memory"
os.environ["SEED_SAMPLE_DATA"] = "false"
os.environ["EMAIL_DISPATCH_BACKGROUND"] = "false"
os.environ["SENDGRID_API_KEY"] = ""

import pytest

from book import Book
from email_service import EmailService
from library import Library
from notifications import EmailDispatcher
from permissions import Role
from storage import MemStorage

START = datetime(2024, 3, 1, 9, 0, tzinfo=timezone.utc)


class FakeClock:
    """Settable clock handed to the lending engine."""

    def __init__(self, now: datetime = START) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def dispatcher():
    return EmailDispatcher(background=False)


@pytest.fixture
def lib(clock, dispatcher):
    # Each test gets its own in-memory store
    lib = Library(
        storage=MemStorage(),
        email=EmailService(api_key=""),
        dispatcher=dispatcher,
        clock=clock,
        seed=False,
    )
    yield lib
    lib.close()


@pytest.fixture
def engine(lib):
    return lib.lending


@pytest.fixture
def admin(lib):
    return lib.create_user("admin", "Ada Admin", "admin@example.edu", Role.ADMIN, max_books=10)


@pytest.fixture
def faculty(lib):
    return lib.create_user("prof", "Pat Professor", "prof@example.edu", Role.FACULTY, max_books=10)


@pytest.fixture
def student(lib):
    return lib.create_user("sam", "Sam Student", "sam@example.edu", Role.STUDENT, max_books=4)


@pytest.fixture
def student2(lib):
    return lib.create_user("lee", "Lee Learner", "lee@example.edu", Role.STUDENT, max_books=4)


@pytest.fixture
def make_book(lib, faculty):
    """Factory adding books with unique 13-digit ISBNs."""
    counter = {"n": 0}

    def factory(title="Test Book", author="Test Author", copies=1, subjects=None):
        counter["n"] += 1
        isbn = f"978{counter['n']:010d}"
        return lib.add_book(faculty, Book(title, author, isbn, copies_total=copies, subjects=subjects))

    return factory
