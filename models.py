"""Lending, notification and academic records.

Records are plain dataclasses owned by the storage layer.  They reference
books and users by id only.  ``from_dict`` accepts both native values and the
string forms used by the SQLite backend (ISO timestamps, JSON text, 0/1).
"""

from __future__ import annotations

import json
from dataclasses import asdict, dataclass, field
from datetime import date, datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

from permissions import Role


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def parse_datetime(value: Any) -> Optional[datetime]:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        dt = value
    elif isinstance(value, date):
        dt = datetime(value.year, value.month, value.day)
    else:
        dt = datetime.fromisoformat(str(value))
    # Naive values are treated as UTC so comparisons never mix aware and naive
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def parse_date(value: Any) -> Optional[date]:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    return date.fromisoformat(str(value)[:10])


def parse_json(value: Any, default: Any) -> Any:
    if value is None:
        return default
    if isinstance(value, str):
        try:
            return json.loads(value)
        except json.JSONDecodeError:
            return default
    return value


def _plain(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    return value


class TransactionStatus(str, Enum):
    ACTIVE = "active"
    RETURNED = "returned"
    OVERDUE = "overdue"


class ReservationStatus(str, Enum):
    PENDING = "pending"
    READY = "ready"
    CANCELED = "canceled"
    COMPLETED = "completed"


class NotificationType(str, Enum):
    DUE_DATE = "due_date"
    RESERVATION = "reservation"
    FINE = "fine"
    SYSTEM = "system"


class Record:
    """Mixin giving dataclass records dict conversion."""

    def to_dict(self) -> Dict[str, Any]:
        return {k: _plain(v) for k, v in asdict(self).items()}


@dataclass
class User(Record):
    username: str
    name: str
    email: str
    role: Role = Role.STUDENT
    max_books: int = 4
    borrowed_count: int = 0
    id: Optional[int] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "User":
        return cls(
            id=data.get("id"),
            username=data["username"],
            name=data["name"],
            email=data["email"],
            role=Role(data.get("role") or Role.STUDENT),
            max_books=int(data.get("max_books", 4)),
            borrowed_count=int(data.get("borrowed_count") or 0),
        )


@dataclass
class BookTransaction(Record):
    book_id: int
    user_id: int
    issue_date: datetime
    due_date: datetime
    return_date: Optional[datetime] = None
    fine_amount: float = 0.0
    fine_paid: bool = False
    status: TransactionStatus = TransactionStatus.ACTIVE
    id: Optional[int] = None

    @property
    def is_active(self) -> bool:
        return self.status != TransactionStatus.RETURNED

    def is_overdue(self, now: datetime) -> bool:
        """Overdue-ness is derived, never stored."""
        return self.is_active and self.due_date < now

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "BookTransaction":
        return cls(
            id=data.get("id"),
            book_id=int(data["book_id"]),
            user_id=int(data["user_id"]),
            issue_date=parse_datetime(data["issue_date"]),
            due_date=parse_datetime(data["due_date"]),
            return_date=parse_datetime(data.get("return_date")),
            fine_amount=float(data.get("fine_amount") or 0),
            fine_paid=bool(data.get("fine_paid")),
            status=TransactionStatus(data.get("status") or TransactionStatus.ACTIVE),
        )


@dataclass
class BookReservation(Record):
    book_id: int
    user_id: int
    reservation_date: datetime
    expiry_date: datetime
    status: ReservationStatus = ReservationStatus.PENDING
    notified_at: Optional[datetime] = None
    id: Optional[int] = None

    @property
    def is_open(self) -> bool:
        return self.status in (ReservationStatus.PENDING, ReservationStatus.READY)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "BookReservation":
        return cls(
            id=data.get("id"),
            book_id=int(data["book_id"]),
            user_id=int(data["user_id"]),
            reservation_date=parse_datetime(data["reservation_date"]),
            expiry_date=parse_datetime(data["expiry_date"]),
            status=ReservationStatus(data.get("status") or ReservationStatus.PENDING),
            notified_at=parse_datetime(data.get("notified_at")),
        )


@dataclass
class Notification(Record):
    user_id: int
    title: str
    message: str
    type: NotificationType
    read: bool = False
    created_at: datetime = field(default_factory=utcnow)
    related_data: Dict[str, Any] = field(default_factory=dict)
    id: Optional[int] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Notification":
        return cls(
            id=data.get("id"),
            user_id=int(data["user_id"]),
            title=data["title"],
            message=data["message"],
            type=NotificationType(data["type"]),
            read=bool(data.get("read")),
            created_at=parse_datetime(data.get("created_at")) or utcnow(),
            related_data=parse_json(data.get("related_data"), {}) or {},
        )


@dataclass
class BookReview(Record):
    book_id: int
    user_id: int
    rating: int
    review: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    id: Optional[int] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "BookReview":
        return cls(
            id=data.get("id"),
            book_id=int(data["book_id"]),
            user_id=int(data["user_id"]),
            rating=int(data["rating"]),
            review=data.get("review"),
            created_at=parse_datetime(data.get("created_at")) or utcnow(),
        )


@dataclass
class Course(Record):
    code: str
    name: str
    department: str
    description: Optional[str] = None
    id: Optional[int] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Course":
        return cls(
            id=data.get("id"),
            code=data["code"],
            name=data["name"],
            department=data["department"],
            description=data.get("description"),
        )


@dataclass
class CourseBook(Record):
    course_id: int
    book_id: int
    added_by: int
    priority: int = 1
    is_required: bool = False
    id: Optional[int] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CourseBook":
        return cls(
            id=data.get("id"),
            course_id=int(data["course_id"]),
            book_id=int(data["book_id"]),
            added_by=int(data["added_by"]),
            priority=int(data.get("priority", 1)),
            is_required=bool(data.get("is_required")),
        )


@dataclass
class ResearchPaper(Record):
    title: str
    author: str
    publish_date: date
    subject: str
    file_path: str
    uploaded_by: int
    journal: Optional[str] = None
    abstract: Optional[str] = None
    uploaded_at: datetime = field(default_factory=utcnow)
    id: Optional[int] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ResearchPaper":
        return cls(
            id=data.get("id"),
            title=data["title"],
            author=data["author"],
            publish_date=parse_date(data["publish_date"]),
            subject=data["subject"],
            file_path=data["file_path"],
            uploaded_by=int(data["uploaded_by"]),
            journal=data.get("journal"),
            abstract=data.get("abstract"),
            uploaded_at=parse_datetime(data.get("uploaded_at")) or utcnow(),
        )


@dataclass
class Recommendation(Record):
    user_id: int
    book_id: int
    reason: str
    created_at: datetime = field(default_factory=utcnow)
    viewed: bool = False
    id: Optional[int] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Recommendation":
        return cls(
            id=data.get("id"),
            user_id=int(data["user_id"]),
            book_id=int(data["book_id"]),
            reason=data["reason"],
            created_at=parse_datetime(data.get("created_at")) or utcnow(),
            viewed=bool(data.get("viewed")),
        )
