from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List

from errors import ValidationError
from models import parse_datetime, parse_json, utcnow


class Book:
    """A catalog entry and its copy counts."""

    def __init__(self, title: str, author: str, isbn: str, publisher: str = "", year: int | None = None,
                 description: str = "", location: str = "", subjects: List[str] | None = None,
                 edition: str | None = None, copies_total: int = 1, copies_available: int | None = None,
                 cover_image: str | None = None, added_by: int | None = None,
                 added_at: datetime | None = None, id: int | None = None) -> None:
        self.id = id
        self.title = title.strip()
        self.author = author.strip()
        self.isbn = isbn.strip()
        self.publisher = (publisher or "").strip()
        self.year = year
        self.edition = edition
        self.description = description or ""
        self.subjects = [s.strip() for s in (subjects or []) if s and s.strip()]
        self.location = location or ""
        self.copies_total = int(copies_total)
        self.copies_available = self.copies_total if copies_available is None else int(copies_available)
        self.cover_image = cover_image
        self.added_by = added_by
        self.added_at = added_at or utcnow()

    def __str__(self) -> str:  # pragma: no cover - string formatting trivial
        return f"{self.title} by {self.author} (ISBN: {self.isbn})"

    def validate(self) -> None:
        if not self.title:
            raise ValidationError("Title cannot be empty.")
        if not self.author:
            raise ValidationError("Author cannot be empty.")
        if self.copies_total < 0:
            raise ValidationError("copies_total cannot be negative.")
        if not 0 <= self.copies_available <= self.copies_total:
            raise ValidationError(
                f"copies_available must be between 0 and {self.copies_total}, got {self.copies_available}."
            )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "author": self.author,
            "publisher": self.publisher,
            "isbn": self.isbn,
            "year": self.year,
            "edition": self.edition,
            "description": self.description,
            "subjects": list(self.subjects),
            "location": self.location,
            "copies_total": self.copies_total,
            "copies_available": self.copies_available,
            "cover_image": self.cover_image,
            "added_by": self.added_by,
            "added_at": self.added_at,
        }

    @staticmethod
    def from_dict(data: Dict[str, Any]) -> "Book":
        # SQLite rows carry subjects as JSON text
        subjects = parse_json(data.get("subjects"), [])
        if isinstance(subjects, str):
            subjects = [subjects]

        return Book(
            id=data.get("id"),
            title=data["title"],
            author=data["author"],
            isbn=data["isbn"],
            publisher=data.get("publisher") or "",
            year=data.get("year"),
            edition=data.get("edition"),
            description=data.get("description") or "",
            subjects=subjects,
            location=data.get("location") or "",
            copies_total=data.get("copies_total", 1),
            copies_available=data.get("copies_available"),
            cover_image=data.get("cover_image"),
            added_by=data.get("added_by"),
            added_at=parse_datetime(data.get("added_at")),
        )
