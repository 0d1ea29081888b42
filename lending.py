"""Borrow / return / reservation lifecycle.

``LendingEngine`` owns every transition that touches copy counts, per-user
borrow counts, transactions and the per-book reservation queue.  Each
mutating operation holds the locks of the book and user it touches and runs
inside one ``storage.transaction()``, so the copy and borrow counters always
agree with the set of active transactions.  E-mail is handed to the
dispatcher only after the unit of work has committed.
"""

import logging
import math
import threading
from collections import Counter
from contextlib import ExitStack, contextmanager
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Hashable, Iterator, List, Optional

from book import Book
from config import settings
from email_service import EmailService
from errors import (
    AlreadyReturnedError,
    ConflictError,
    ForbiddenError,
    InsufficientCopiesError,
    LimitExceededError,
    NotFoundError,
)
from models import (
    BookReservation,
    BookTransaction,
    NotificationType,
    ReservationStatus,
    TransactionStatus,
    User,
    utcnow,
)
from notifications import EmailDispatcher, Notifier
from permissions import Capability, Role, has_capability
from storage import Storage

logger = logging.getLogger(__name__)

SECONDS_PER_DAY = 24 * 60 * 60


def calculate_fine(due_date: datetime, returned_at: datetime, per_day: float = 0.5) -> float:
    """Fine for returning at ``returned_at`` a loan due at ``due_date``.

    Partial days round up; there is no cap.
    """
    if returned_at <= due_date:
        return 0.0
    days_overdue = math.ceil((returned_at - due_date).total_seconds() / SECONDS_PER_DAY)
    return days_overdue * per_day


class KeyedLock:
    """One re-entrant lock per key, acquired in sorted key order."""

    def __init__(self) -> None:
        self._locks: Dict[Hashable, threading.RLock] = {}
        self._guard = threading.Lock()

    def _lock_for(self, key: Hashable) -> threading.RLock:
        with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = self._locks[key] = threading.RLock()
            return lock

    @contextmanager
    def hold(self, *keys: Hashable) -> Iterator[None]:
        with ExitStack() as stack:
            for key in sorted(set(keys)):
                stack.enter_context(self._lock_for(key))
            yield


@dataclass
class DashboardStats:
    borrowed_count: int
    due_soon_count: int
    overdue_count: int
    reservation_count: int
    available_reservations: int
    total_book_count: int
    popular_category: Optional[str]
    popular_category_count: int

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def most_common_subject(books: List[Book]) -> tuple:
    """(subject, count) of the most frequent tag; ties go to the first seen."""
    counts: Dict[str, int] = {}
    for book in books:
        for subject in book.subjects:
            if subject:
                counts[subject] = counts.get(subject, 0) + 1

    popular, popular_count = None, 0
    for subject, count in counts.items():
        if count > popular_count:
            popular, popular_count = subject, count
    return popular, popular_count


class LendingEngine:
    def __init__(self, storage: Storage, notifier: Optional[Notifier] = None,
                 email: Optional[EmailService] = None, dispatcher: Optional[EmailDispatcher] = None,
                 clock: Optional[Callable[[], datetime]] = None,
                 loan_period_days: Optional[int] = None, fine_per_day: Optional[float] = None,
                 reservation_hold_days: Optional[int] = None, due_soon_days: Optional[int] = None) -> None:
        self.storage = storage
        self.notifier = notifier or Notifier(storage)
        self.email = email
        self.dispatcher = dispatcher or EmailDispatcher(background=False)
        self.clock = clock or utcnow
        self.loan_period = timedelta(days=loan_period_days if loan_period_days is not None else settings.loan_period_days)
        self.fine_per_day = fine_per_day if fine_per_day is not None else settings.fine_per_day
        self.reservation_hold = timedelta(
            days=reservation_hold_days if reservation_hold_days is not None else settings.reservation_hold_days
        )
        self.due_soon = timedelta(days=due_soon_days if due_soon_days is not None else settings.due_soon_days)
        self._locks = KeyedLock()

    # ------------------------- Lookups ------------------------- #
    def _require_book(self, book_id: int) -> Book:
        book = self.storage.get_book(book_id)
        if book is None:
            raise NotFoundError("Book", book_id)
        return book

    def _require_user(self, user_id: int) -> User:
        user = self.storage.get_user(user_id)
        if user is None:
            raise NotFoundError("User", user_id)
        return user

    def _require_transaction(self, transaction_id: int) -> BookTransaction:
        txn = self.storage.get_transaction(transaction_id)
        if txn is None:
            raise NotFoundError("Transaction", transaction_id)
        return txn

    def _require_reservation(self, reservation_id: int) -> BookReservation:
        reservation = self.storage.get_reservation(reservation_id)
        if reservation is None:
            raise NotFoundError("Reservation", reservation_id)
        return reservation

    def _hold(self, book_id: int, user_id: int):
        return self._locks.hold(("book", book_id), ("user", user_id))

    # ------------------------- Borrow ------------------------- #
    def borrow(self, book_id: int, user_id: int) -> BookTransaction:
        """Lend a copy of ``book_id`` to ``user_id`` for the loan period."""
        with self._hold(book_id, user_id):
            with self.storage.transaction():
                txn = self._issue(book_id, user_id, self.clock())
        logger.info("User %s borrowed book %s (transaction %s, due %s)",
                    user_id, book_id, txn.id, txn.due_date.isoformat())
        return txn

    def _issue(self, book_id: int, user_id: int, now: datetime) -> BookTransaction:
        # Must run inside a unit of work: every write below is undone together.
        book = self._require_book(book_id)
        if book.copies_available < 1:
            raise InsufficientCopiesError(f'No copies of "{book.title}" are available for borrowing')
        user = self._require_user(user_id)
        if user.borrowed_count >= user.max_books:
            raise LimitExceededError(user.max_books)

        self.storage.update_book(book.id, copies_available=book.copies_available - 1)
        self.storage.update_user(user.id, borrowed_count=user.borrowed_count + 1)
        txn = self.storage.create_transaction(BookTransaction(
            book_id=book.id,
            user_id=user.id,
            issue_date=now,
            due_date=now + self.loan_period,
        ))
        self.notifier.notify(
            user.id,
            "Book Borrowed",
            f'You borrowed "{book.title}". Please return it by {txn.due_date:%Y-%m-%d}.',
            NotificationType.DUE_DATE,
            {"transactionId": txn.id, "bookId": book.id, "dueDate": txn.due_date.isoformat()},
        )
        return txn

    # ------------------------- Return ------------------------- #
    def return_book(self, transaction_id: int, actor_id: int, actor_role: Role) -> BookTransaction:
        """Close an active loan, charge any fine and promote the reservation queue."""
        txn = self._require_transaction(transaction_id)
        promoted = None
        with self._hold(txn.book_id, txn.user_id):
            with self.storage.transaction():
                txn = self._require_transaction(transaction_id)
                if txn.status == TransactionStatus.RETURNED:
                    raise AlreadyReturnedError(transaction_id)
                if txn.user_id != actor_id and not has_capability(actor_role, Capability.MANAGE_LOANS):
                    raise ForbiddenError("You can only return your own borrowed books")

                book = self._require_book(txn.book_id)
                user = self._require_user(txn.user_id)
                now = self.clock()
                fine = calculate_fine(txn.due_date, now, self.fine_per_day)

                book = self.storage.update_book(book.id, copies_available=book.copies_available + 1)
                self.storage.update_user(user.id, borrowed_count=max(0, user.borrowed_count - 1))
                txn = self.storage.update_transaction(
                    txn.id,
                    status=TransactionStatus.RETURNED,
                    return_date=now,
                    fine_amount=fine,
                )

                promoted = self._promote_next(book, now)

                if fine > 0:
                    self.notifier.notify(
                        user.id,
                        "Overdue Fine",
                        f'"{book.title}" was returned late. A fine of ${fine:.2f} has been charged.',
                        NotificationType.FINE,
                        {"transactionId": txn.id, "bookId": book.id, "fineAmount": fine},
                    )

        logger.info("Transaction %s returned by user %s (fine %.2f)", transaction_id, actor_id, txn.fine_amount)
        if promoted is not None:
            self._email_book_available(promoted, book)
        return txn

    def _promote_next(self, book: Book, now: datetime) -> Optional[BookReservation]:
        """Move the oldest pending reservation for ``book`` to ready."""
        pending = self.storage.list_reservations(book_id=book.id, status=ReservationStatus.PENDING)
        if not pending:
            return None
        head = min(pending, key=lambda r: (r.reservation_date, r.id))
        reservation = self.storage.update_reservation(
            head.id,
            status=ReservationStatus.READY,
            notified_at=now,
            expiry_date=now + self.reservation_hold,
        )
        self.notifier.notify(
            reservation.user_id,
            "Book Available",
            f'The book "{book.title}" you reserved is now available for pickup.',
            NotificationType.RESERVATION,
            {"reservationId": reservation.id, "bookId": book.id},
        )
        logger.info("Reservation %s for book %s is ready for user %s",
                    reservation.id, book.id, reservation.user_id)
        return reservation

    def _email_book_available(self, reservation: BookReservation, book: Book) -> None:
        if self.email is None:
            return
        user = self.storage.get_user(reservation.user_id)
        if user is None:
            return
        self.dispatcher.submit(
            f"book-available reservation={reservation.id} to={user.email}",
            self.email.send_book_available, user, book, reservation,
        )

    # ------------------------- Reservations ------------------------- #
    def reserve(self, book_id: int, user_id: int) -> BookReservation:
        """Join the queue for a book that has no copy on the shelf."""
        with self._hold(book_id, user_id):
            with self.storage.transaction():
                book = self._require_book(book_id)
                user = self._require_user(user_id)
                if book.copies_available > 0:
                    raise ConflictError("Book is available for borrowing, no need to reserve")
                existing = [r for r in self.storage.list_reservations(user_id=user.id, book_id=book.id) if r.is_open]
                if existing:
                    raise ConflictError("You already have an open reservation for this book", reservation=existing[0])

                now = self.clock()
                reservation = self.storage.create_reservation(BookReservation(
                    book_id=book.id,
                    user_id=user.id,
                    reservation_date=now,
                    # replaced when the reservation is promoted
                    expiry_date=now + self.reservation_hold,
                ))
                position = self.queue_position(reservation.id)
                self.notifier.notify(
                    user.id,
                    "Reservation Added",
                    f'You have been added to the queue for "{book.title}" (position {position}).',
                    NotificationType.RESERVATION,
                    {"reservationId": reservation.id, "bookId": book.id, "queuePosition": position},
                )
        logger.info("User %s reserved book %s (reservation %s)", user_id, book_id, reservation.id)
        return reservation

    def queue_position(self, reservation_id: int) -> Optional[int]:
        """1-based position among pending reservations, None once it left the queue."""
        reservation = self._require_reservation(reservation_id)
        if reservation.status != ReservationStatus.PENDING:
            return None
        key = (reservation.reservation_date, reservation.id)
        ahead = [
            r for r in self.storage.list_reservations(book_id=reservation.book_id, status=ReservationStatus.PENDING)
            if (r.reservation_date, r.id) < key
        ]
        return len(ahead) + 1

    def borrow_from_reservation(self, reservation_id: int, user_id: int) -> BookTransaction:
        """Claim a ready reservation: borrow the book and complete the reservation."""
        reservation = self._require_reservation(reservation_id)
        with self._hold(reservation.book_id, user_id):
            with self.storage.transaction():
                reservation = self._require_reservation(reservation_id)
                if reservation.user_id != user_id:
                    raise ForbiddenError("This reservation belongs to another user")
                if reservation.status != ReservationStatus.READY:
                    raise ConflictError(f"Reservation is {reservation.status.value}, not ready for pickup")
                book = self._require_book(reservation.book_id)
                if book.copies_available < 1:
                    raise ConflictError(f'No copy of "{book.title}" is on the shelf for this reservation')

                txn = self._issue(book.id, user_id, self.clock())
                self.storage.update_reservation(reservation.id, status=ReservationStatus.COMPLETED)
        logger.info("Reservation %s completed by transaction %s", reservation_id, txn.id)
        return txn

    def cancel_reservation(self, reservation_id: int, actor_id: int, actor_role: Role) -> BookReservation:
        reservation = self._require_reservation(reservation_id)
        promoted = book = None
        with self._hold(reservation.book_id, reservation.user_id):
            with self.storage.transaction():
                reservation = self._require_reservation(reservation_id)
                if reservation.user_id != actor_id and not has_capability(actor_role, Capability.MANAGE_LOANS):
                    raise ForbiddenError("You can only cancel your own reservations")
                if not reservation.is_open:
                    raise ConflictError(f"Reservation is already {reservation.status.value}")

                was_ready = reservation.status == ReservationStatus.READY
                reservation = self.storage.update_reservation(reservation.id, status=ReservationStatus.CANCELED)
                if was_ready:
                    book = self._require_book(reservation.book_id)
                    if book.copies_available > 0:
                        promoted = self._promote_next(book, self.clock())
        logger.info("Reservation %s canceled by user %s", reservation_id, actor_id)
        if promoted is not None:
            self._email_book_available(promoted, book)
        return reservation

    def expire_reservations(self) -> List[BookReservation]:
        """Cancel ready reservations past their pickup deadline and pass the copy on."""
        now = self.clock()
        expired: List[BookReservation] = []
        stale = [
            r for r in self.storage.list_reservations(status=ReservationStatus.READY)
            if r.expiry_date < now
        ]
        for candidate in stale:
            promoted = book = None
            with self._hold(candidate.book_id, candidate.user_id):
                with self.storage.transaction():
                    reservation = self._require_reservation(candidate.id)
                    if reservation.status != ReservationStatus.READY or reservation.expiry_date >= now:
                        continue
                    reservation = self.storage.update_reservation(reservation.id, status=ReservationStatus.CANCELED)
                    book = self._require_book(reservation.book_id)
                    self.notifier.notify(
                        reservation.user_id,
                        "Reservation Expired",
                        f'Your reservation for "{book.title}" expired because it was not picked up in time.',
                        NotificationType.RESERVATION,
                        {"reservationId": reservation.id, "bookId": book.id},
                    )
                    if book.copies_available > 0:
                        promoted = self._promote_next(book, now)
            expired.append(reservation)
            if promoted is not None:
                self._email_book_available(promoted, book)
        if expired:
            logger.info("Expired %d ready reservation(s)", len(expired))
        return expired

    def edit_book(self, book_id: int, changes: Dict[str, Any], copies_total: Optional[int] = None) -> Book:
        """Apply catalog field edits and an optional copy-total change as one unit.

        A new copy total keeps loaned copies on loan and promotes the queue when
        copies free up.  Runs under the book's lock so a concurrent borrow or
        return cannot be overwritten by the edit's copy of the record.
        """
        promoted = None
        with self._locks.hold(("book", book_id)):
            with self.storage.transaction():
                book = self._require_book(book_id)
                if changes:
                    book = self.storage.update_book(book_id, **changes)
                if copies_total is not None:
                    on_loan = book.copies_total - book.copies_available
                    if copies_total < on_loan:
                        raise ConflictError(
                            f"Cannot reduce copies of \"{book.title}\" to {copies_total}: {on_loan} on loan"
                        )
                    book = self.storage.update_book(
                        book.id, copies_total=copies_total, copies_available=copies_total - on_loan,
                    )
                    if book.copies_available > 0:
                        promoted = self._promote_next(book, self.clock())
        if promoted is not None:
            self._email_book_available(promoted, book)
        return book

    # ------------------------- Reminders and fines ------------------------- #
    def send_due_reminders(self) -> int:
        """Notify every borrower whose loan falls due within the due-soon window."""
        now = self.clock()
        horizon = now + self.due_soon
        sent = 0
        for txn in self.storage.list_transactions(status=TransactionStatus.ACTIVE):
            if not now <= txn.due_date <= horizon:
                continue
            book = self.storage.get_book(txn.book_id)
            user = self.storage.get_user(txn.user_id)
            if book is None or user is None:
                logger.warning("Skipping reminder for transaction %s: dangling book or user", txn.id)
                continue
            self.notifier.notify(
                user.id,
                "Book Due Soon",
                f'"{book.title}" is due on {txn.due_date:%Y-%m-%d}.',
                NotificationType.DUE_DATE,
                {"transactionId": txn.id, "bookId": book.id, "dueDate": txn.due_date.isoformat()},
            )
            if self.email is not None:
                self.dispatcher.submit(
                    f"due-reminder transaction={txn.id} to={user.email}",
                    self.email.send_due_reminder, user, book, txn.due_date,
                )
            sent += 1
        logger.info("Sent %d due-date reminder(s)", sent)
        return sent

    def pay_fine(self, transaction_id: int, actor_id: int, actor_role: Role) -> BookTransaction:
        txn = self._require_transaction(transaction_id)
        with self._locks.hold(("user", txn.user_id)):
            with self.storage.transaction():
                txn = self._require_transaction(transaction_id)
                if txn.user_id != actor_id and not has_capability(actor_role, Capability.MANAGE_LOANS):
                    raise ForbiddenError("You can only pay your own fines")
                if txn.status != TransactionStatus.RETURNED or txn.fine_amount <= 0 or txn.fine_paid:
                    raise ConflictError(f"Transaction {transaction_id} has no outstanding fine")
                txn = self.storage.update_transaction(txn.id, fine_paid=True)
        logger.info("Fine of %.2f paid for transaction %s", txn.fine_amount, transaction_id)
        return txn

    # ------------------------- Read models ------------------------- #
    def borrowed_books(self, user_id: int) -> List[Dict[str, Any]]:
        """The user's active loans joined with their books."""
        now = self.clock()
        rows = []
        for txn in self.storage.list_transactions(user_id=user_id):
            if not txn.is_active:
                continue
            book = self.storage.get_book(txn.book_id)
            row = txn.to_dict()
            row["book"] = book.to_dict() if book else None
            row["is_overdue"] = txn.is_overdue(now)
            rows.append(row)
        return rows

    def reservations_for(self, user_id: int) -> List[Dict[str, Any]]:
        rows = []
        for reservation in self.storage.list_reservations(user_id=user_id):
            book = self.storage.get_book(reservation.book_id)
            row = reservation.to_dict()
            row["book"] = book.to_dict() if book else None
            row["queue_position"] = self.queue_position(reservation.id)
            rows.append(row)
        return rows

    def get_dashboard_stats(self, user_id: int) -> DashboardStats:
        """Per-user counters plus catalog-wide figures. Read only."""
        self._require_user(user_id)
        now = self.clock()
        due_soon_until = now + self.due_soon

        active = [t for t in self.storage.list_transactions(user_id=user_id) if t.is_active]
        reservations = self.storage.list_reservations(user_id=user_id)
        books = self.storage.list_books()
        popular, popular_count = most_common_subject(books)

        return DashboardStats(
            borrowed_count=len(active),
            due_soon_count=sum(1 for t in active if now <= t.due_date <= due_soon_until),
            overdue_count=sum(1 for t in active if t.due_date < now),
            reservation_count=len(reservations),
            available_reservations=sum(1 for r in reservations if r.status == ReservationStatus.READY),
            total_book_count=len(books),
            popular_category=popular,
            popular_category_count=popular_count,
        )

    def library_overview(self) -> Dict[str, Any]:
        """Catalog-wide circulation figures for the admin dashboard."""
        now = self.clock()
        books = self.storage.list_books()
        transactions = self.storage.list_transactions()
        reservations = self.storage.list_reservations()
        active = [t for t in transactions if t.is_active]
        by_role = Counter(u.role.value for u in self.storage.list_users())
        return {
            "total_titles": len(books),
            "total_copies": sum(b.copies_total for b in books),
            "available_copies": sum(b.copies_available for b in books),
            "active_loans": len(active),
            "overdue_loans": sum(1 for t in active if t.is_overdue(now)),
            "pending_reservations": sum(1 for r in reservations if r.status == ReservationStatus.PENDING),
            "ready_reservations": sum(1 for r in reservations if r.status == ReservationStatus.READY),
            "users_by_role": {role.value: by_role.get(role.value, 0) for role in Role},
            "outstanding_fines": round(sum(
                t.fine_amount for t in transactions
                if t.status == TransactionStatus.RETURNED and not t.fine_paid
            ), 2),
        }
