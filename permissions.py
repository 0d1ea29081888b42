from enum import Enum
from typing import Dict, FrozenSet, Union

from errors import ForbiddenError, ValidationError


class Role(str, Enum):
    STUDENT = "student"
    FACULTY = "faculty"
    ADMIN = "admin"


class Capability(str, Enum):
    BORROW = "borrow"
    MANAGE_LOANS = "manage_loans"
    MANAGE_CATALOG = "manage_catalog"
    ASSIGN_COURSE_BOOKS = "assign_course_books"
    UPLOAD_RESEARCH = "upload_research"
    MANAGE_COURSES = "manage_courses"
    MANAGE_USERS = "manage_users"
    VIEW_LIBRARY_OVERVIEW = "view_library_overview"
    RUN_MAINTENANCE = "run_maintenance"


_STAFF: FrozenSet[Capability] = frozenset({
    Capability.BORROW,
    Capability.MANAGE_LOANS,
    Capability.MANAGE_CATALOG,
    Capability.ASSIGN_COURSE_BOOKS,
    Capability.UPLOAD_RESEARCH,
})

ROLE_CAPABILITIES: Dict[Role, FrozenSet[Capability]] = {
    Role.STUDENT: frozenset({Capability.BORROW}),
    Role.FACULTY: _STAFF,
    Role.ADMIN: _STAFF | {
        Capability.MANAGE_COURSES,
        Capability.MANAGE_USERS,
        Capability.VIEW_LIBRARY_OVERVIEW,
        Capability.RUN_MAINTENANCE,
    },
}


def parse_role(value: Union[str, Role]) -> Role:
    if isinstance(value, Role):
        return value
    try:
        return Role((value or "").strip().lower())
    except ValueError as exc:
        raise ValidationError(f"Unknown role: {value!r}") from exc


def has_capability(role: Union[str, Role], capability: Capability) -> bool:
    return capability in ROLE_CAPABILITIES[parse_role(role)]


def require_capability(role: Union[str, Role], capability: Capability) -> None:
    """Raise ForbiddenError unless ``role`` grants ``capability``."""
    if not has_capability(role, capability):
        raise ForbiddenError(f"Role '{parse_role(role).value}' is not allowed to {capability.value.replace('_', ' ')}")
