import re
from typing import Optional

from errors import ValidationError


class ISBNValidator:
    """ISBN normalization and format checks.

    Catalog data uses hyphenated and unhyphenated forms interchangeably, so
    ISBNs are stored normalized (digits plus a trailing X).
    """

    @staticmethod
    def normalize_isbn(raw: Optional[str]) -> str:
        if raw is None:
            return ""
        return re.sub(r"[^0-9Xx]", "", raw).upper()

    @staticmethod
    def is_valid_isbn(isbn: str) -> bool:
        """Lenient check: ISBN-10 (9 digits + digit or X) or 13 digits."""
        s = ISBNValidator.normalize_isbn(isbn)
        if len(s) == 10:
            return s[:9].isdigit() and (s[9].isdigit() or s[9] == "X")
        if len(s) == 13:
            return s.isdigit()
        return False

    @staticmethod
    def has_valid_checksum(isbn: str) -> bool:
        s = ISBNValidator.normalize_isbn(isbn)
        if not ISBNValidator.is_valid_isbn(s):
            return False
        if len(s) == 10:
            total = sum(i * int(ch) for i, ch in enumerate(s[:9], 1))
            check = 10 if s[9] == "X" else int(s[9])
            return (total + 10 * check) % 11 == 0
        total = sum((1 if i % 2 == 0 else 3) * int(ch) for i, ch in enumerate(s[:12]))
        return (10 - total % 10) % 10 == int(s[12])


class TextValidator:
    """Basic checks for user-supplied text fields."""

    _EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")

    @staticmethod
    def require_text(value: Optional[str], field: str) -> str:
        if value is None or not value.strip():
            raise ValidationError(f"{field} cannot be empty.")
        return value.strip()

    @staticmethod
    def is_valid_email(email: Optional[str]) -> bool:
        return bool(email) and bool(TextValidator._EMAIL_RE.match(email.strip()))

    @staticmethod
    def require_email(email: Optional[str]) -> str:
        if not TextValidator.is_valid_email(email):
            raise ValidationError(f"Invalid email address: {email!r}")
        return email.strip()

    @staticmethod
    def validate_rating(rating: int) -> int:
        if not isinstance(rating, int) or not 1 <= rating <= 5:
            raise ValidationError("Rating must be an integer between 1 and 5.")
        return rating
