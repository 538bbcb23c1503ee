from dataclasses import dataclass
from enum import StrEnum


class UserRole(StrEnum):
    """User roles issued by the identity provider."""

    ADMIN = "Admin"
    INSTRUCTOR = "Instructor"
    STUDENT = "Student"


@dataclass(frozen=True)
class Identity:
    """
    Authenticated caller as supplied by the identity provider.

    Users live in the identity service; this core only sees the id and role
    carried by the access token and trusts them without a lookup.
    """

    id: int
    role: str

    def has_role(self, *roles: UserRole) -> bool:
        """Check if user has any of the specified roles."""
        return self.role in [r.value for r in roles]

    @property
    def is_admin(self) -> bool:
        return self.role == UserRole.ADMIN.value

    @property
    def is_student(self) -> bool:
        return self.role == UserRole.STUDENT.value
