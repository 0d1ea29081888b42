"""Repository interface over the library records, plus the in-memory backend.

``Storage`` implements every named repository operation on top of a handful
of primitives (``_insert``, ``_get``, ``_replace``, ``_select``) and a
``transaction()`` unit of work.  Backends only provide the primitives:
``MemStorage`` here and ``SqliteStorage`` in ``database.py``.
"""

import copy
import logging
import threading
from contextlib import contextmanager
from enum import Enum
from typing import Any, Callable, Dict, Iterator, List, Optional

from book import Book
from config import settings
from errors import ConflictError, ValidationError
from models import (
    BookReservation,
    BookReview,
    BookTransaction,
    Course,
    CourseBook,
    Notification,
    Recommendation,
    ResearchPaper,
    User,
)

logger = logging.getLogger(__name__)

# table name -> record type
TABLES: Dict[str, Callable[..., Any]] = {
    "users": User,
    "books": Book,
    "book_transactions": BookTransaction,
    "book_reservations": BookReservation,
    "notifications": Notification,
    "book_reviews": BookReview,
    "courses": Course,
    "course_books": CourseBook,
    "research_papers": ResearchPaper,
    "recommendations": Recommendation,
}


def _filter_value(value: Any) -> Any:
    return value.value if isinstance(value, Enum) else value


class Storage:
    """Base repository. Subclasses supply the storage primitives."""

    # ------------------------- Primitives ------------------------- #
    def _insert(self, table: str, record: Any) -> Any:
        raise NotImplementedError

    def _get(self, table: str, record_id: int) -> Optional[Any]:
        raise NotImplementedError

    def _replace(self, table: str, record: Any) -> Any:
        raise NotImplementedError

    def _all(self, table: str) -> List[Any]:
        raise NotImplementedError

    def _select(self, table: str, **filters: Any) -> List[Any]:
        """Records whose attributes equal every given filter, ordered by id."""
        wanted = {k: _filter_value(v) for k, v in filters.items() if v is not None}
        return [
            r for r in self._all(table)
            if all(_filter_value(getattr(r, k)) == v for k, v in wanted.items())
        ]

    @contextmanager
    def transaction(self) -> Iterator[None]:
        raise NotImplementedError
        yield  # pragma: no cover

    def close(self) -> None:
        return None

    def _update_fields(self, table: str, record_id: int, changes: Dict[str, Any]) -> Optional[Any]:
        record = self._get(table, record_id)
        if record is None:
            return None
        for key, value in changes.items():
            if key == "id" or not hasattr(record, key):
                raise ValidationError(f"Unknown field for {table}: {key}")
            setattr(record, key, value)
        if isinstance(record, Book):
            record.validate()
        return self._replace(table, record)

    # ------------------------- Users ------------------------- #
    def create_user(self, user: User) -> User:
        if self.get_user_by_username(user.username):
            raise ConflictError(f"Username '{user.username}' is already taken")
        if self.get_user_by_email(user.email):
            raise ConflictError(f"Email '{user.email}' is already registered")
        return self._insert("users", user)

    def get_user(self, user_id: int) -> Optional[User]:
        return self._get("users", user_id)

    def get_user_by_username(self, username: str) -> Optional[User]:
        found = self._select("users", username=username)
        return found[0] if found else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        found = self._select("users", email=email)
        return found[0] if found else None

    def update_user(self, user_id: int, **changes: Any) -> Optional[User]:
        return self._update_fields("users", user_id, changes)

    def list_users(self, role: Any = None) -> List[User]:
        return self._select("users", role=role)

    # ------------------------- Books ------------------------- #
    def create_book(self, book: Book) -> Book:
        book.validate()
        if self.get_book_by_isbn(book.isbn):
            raise ConflictError(f"Book with ISBN {book.isbn} already exists.")
        return self._insert("books", book)

    def get_book(self, book_id: int) -> Optional[Book]:
        return self._get("books", book_id)

    def get_book_by_isbn(self, isbn: str) -> Optional[Book]:
        found = self._select("books", isbn=isbn)
        return found[0] if found else None

    def get_books_by_ids(self, ids: List[int]) -> List[Book]:
        books = (self.get_book(i) for i in ids)
        return [b for b in books if b is not None]

    def list_books(self, limit: Optional[int] = None, offset: int = 0) -> List[Book]:
        books = self._all("books")
        end = None if limit is None else offset + limit
        return books[offset:end]

    def count_books(self) -> int:
        return len(self._all("books"))

    def search_books(self, query: str) -> List[Book]:
        """Case-insensitive substring match on title, author or ISBN."""
        q = query.lower()
        return [
            b for b in self._all("books")
            if q in b.title.lower() or q in b.author.lower() or q in b.isbn.lower()
        ]

    def update_book(self, book_id: int, **changes: Any) -> Optional[Book]:
        isbn = changes.get("isbn")
        if isbn is not None:
            existing = self.get_book_by_isbn(isbn)
            if existing and existing.id != book_id:
                raise ConflictError(f"Book with ISBN {isbn} already exists.")
        return self._update_fields("books", book_id, changes)

    # ------------------------- Transactions ------------------------- #
    def create_transaction(self, txn: BookTransaction) -> BookTransaction:
        return self._insert("book_transactions", txn)

    def get_transaction(self, transaction_id: int) -> Optional[BookTransaction]:
        return self._get("book_transactions", transaction_id)

    def update_transaction(self, transaction_id: int, **changes: Any) -> Optional[BookTransaction]:
        return self._update_fields("book_transactions", transaction_id, changes)

    def list_transactions(self, user_id: Optional[int] = None, book_id: Optional[int] = None,
                          status: Any = None) -> List[BookTransaction]:
        return self._select("book_transactions", user_id=user_id, book_id=book_id, status=status)

    # ------------------------- Reservations ------------------------- #
    def create_reservation(self, reservation: BookReservation) -> BookReservation:
        return self._insert("book_reservations", reservation)

    def get_reservation(self, reservation_id: int) -> Optional[BookReservation]:
        return self._get("book_reservations", reservation_id)

    def update_reservation(self, reservation_id: int, **changes: Any) -> Optional[BookReservation]:
        return self._update_fields("book_reservations", reservation_id, changes)

    def list_reservations(self, user_id: Optional[int] = None, book_id: Optional[int] = None,
                          status: Any = None) -> List[BookReservation]:
        return self._select("book_reservations", user_id=user_id, book_id=book_id, status=status)

    # ------------------------- Notifications ------------------------- #
    def create_notification(self, notification: Notification) -> Notification:
        return self._insert("notifications", notification)

    def get_notification(self, notification_id: int) -> Optional[Notification]:
        return self._get("notifications", notification_id)

    def update_notification(self, notification_id: int, **changes: Any) -> Optional[Notification]:
        return self._update_fields("notifications", notification_id, changes)

    def list_notifications(self, user_id: int) -> List[Notification]:
        """Newest first."""
        found = self._select("notifications", user_id=user_id)
        return sorted(found, key=lambda n: (n.created_at, n.id), reverse=True)

    # ------------------------- Reviews ------------------------- #
    def create_review(self, review: BookReview) -> BookReview:
        return self._insert("book_reviews", review)

    def list_reviews(self, book_id: int) -> List[BookReview]:
        return self._select("book_reviews", book_id=book_id)

    # ------------------------- Courses ------------------------- #
    def create_course(self, course: Course) -> Course:
        if self.get_course_by_code(course.code):
            raise ConflictError(f"Course with code {course.code} already exists.")
        return self._insert("courses", course)

    def get_course(self, course_id: int) -> Optional[Course]:
        return self._get("courses", course_id)

    def get_course_by_code(self, code: str) -> Optional[Course]:
        found = self._select("courses", code=code)
        return found[0] if found else None

    def list_courses(self) -> List[Course]:
        return self._all("courses")

    def create_course_book(self, course_book: CourseBook) -> CourseBook:
        return self._insert("course_books", course_book)

    def list_course_books(self, course_id: int) -> List[CourseBook]:
        return self._select("course_books", course_id=course_id)

    # ------------------------- Research papers ------------------------- #
    def create_research_paper(self, paper: ResearchPaper) -> ResearchPaper:
        return self._insert("research_papers", paper)

    def get_research_paper(self, paper_id: int) -> Optional[ResearchPaper]:
        return self._get("research_papers", paper_id)

    def list_research_papers(self, limit: Optional[int] = None, offset: int = 0) -> List[ResearchPaper]:
        papers = self._all("research_papers")
        end = None if limit is None else offset + limit
        return papers[offset:end]

    # ------------------------- Recommendations ------------------------- #
    def create_recommendation(self, recommendation: Recommendation) -> Recommendation:
        return self._insert("recommendations", recommendation)

    def list_recommendations(self, user_id: int) -> List[Recommendation]:
        return self._select("recommendations", user_id=user_id)

    def update_recommendation(self, recommendation_id: int, **changes: Any) -> Optional[Recommendation]:
        return self._update_fields("recommendations", recommendation_id, changes)


class MemStorage(Storage):
    """Dict-backed store with auto-incrementing ids.

    Records are copied on the way in and out so callers never hold live
    references into the tables.
    """

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._tables: Dict[str, Dict[int, Any]] = {name: {} for name in TABLES}
        self._next_ids: Dict[str, int] = {name: 1 for name in TABLES}
        self._depth = 0

    def _insert(self, table: str, record: Any) -> Any:
        with self._lock:
            record_id = self._next_ids[table]
            self._next_ids[table] += 1
            record.id = record_id
            self._tables[table][record_id] = copy.deepcopy(record)
            return record

    def _get(self, table: str, record_id: int) -> Optional[Any]:
        with self._lock:
            record = self._tables[table].get(record_id)
            return copy.deepcopy(record)

    def _replace(self, table: str, record: Any) -> Any:
        with self._lock:
            self._tables[table][record.id] = copy.deepcopy(record)
            return record

    def _all(self, table: str) -> List[Any]:
        with self._lock:
            rows = self._tables[table]
            return [copy.deepcopy(rows[k]) for k in sorted(rows)]

    @contextmanager
    def transaction(self) -> Iterator[None]:
        """Hold the store lock; restore the snapshot if the block raises."""
        with self._lock:
            snapshot = None
            if self._depth == 0:
                snapshot = (copy.deepcopy(self._tables), dict(self._next_ids))
            self._depth += 1
            try:
                yield
            except BaseException:
                if snapshot is not None:
                    self._tables, self._next_ids = snapshot
                    logger.debug("Rolled back in-memory unit of work")
                raise
            finally:
                self._depth -= 1


def storage_from_settings() -> Storage:
    """Build the backend selected by LIBRARY_STORAGE."""
    backend = (settings.storage_backend or "sqlite").lower()
    if backend == "memory":
        return MemStorage()
    if backend == "sqlite":
        from database import SqliteStorage
        return SqliteStorage(settings.database_file)
    raise ValidationError(f"Unknown storage backend: {settings.storage_backend}")
