"""Error types raised by the library services.

Every error here is recoverable and user facing: the API maps them onto
HTTP status codes and the CLI prints their message.
"""

from typing import Any, Optional


class LibraryError(Exception):
    """Base class for domain errors."""


class NotFoundError(LibraryError, LookupError):
    def __init__(self, entity: str, entity_id: Any) -> None:
        super().__init__(f"{entity} with id {entity_id} not found")
        self.entity = entity
        self.entity_id = entity_id


class InsufficientCopiesError(LibraryError):
    """No copy is on the shelf; the caller should reserve instead."""


class LimitExceededError(LibraryError):
    def __init__(self, max_books: int) -> None:
        super().__init__(f"You've reached the maximum limit of {max_books} books")
        self.max_books = max_books


class ConflictError(LibraryError):
    def __init__(self, message: str, reservation: Optional[Any] = None) -> None:
        super().__init__(message)
        self.reservation = reservation


class AlreadyReturnedError(ConflictError):
    def __init__(self, transaction_id: int) -> None:
        super().__init__(f"Transaction {transaction_id} has already been returned")
        self.transaction_id = transaction_id


class ForbiddenError(LibraryError):
    pass


class ValidationError(LibraryError, ValueError):
    pass


class ExternalServiceError(LibraryError):
    pass
