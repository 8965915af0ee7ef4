"""Identity domain models: principals, roles and role profiles.

A role is chosen once per principal and never changes afterwards.
"""
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional

from obstrack.shared.utils.dates import parse_timestamp


class Role(Enum):
    """Staff functions controlling screen and mutation access."""
    MANAGER = "manager"
    DEPUTY = "deputy"
    STUDENT_GUIDE = "student_guide"
    SUPERVISOR = "supervisor"

    @classmethod
    def parse(cls, value: Any) -> "Role":
        """Parse a stored role value.

        Accepts enum values and the Arabic labels stored by earlier
        clients of the same database.

        Raises:
            ValueError: If value names no known role
        """
        if isinstance(value, Role):
            return value
        if isinstance(value, str):
            normalized = value.strip()
            if normalized in _LEGACY_LABELS:
                return _LEGACY_LABELS[normalized]
            return cls(normalized.lower())
        raise ValueError(f"Unknown role: {value!r}")


_LEGACY_LABELS = {
    "مدير": Role.MANAGER,
    "وكيل": Role.DEPUTY,
    "موجه طلابي": Role.STUDENT_GUIDE,
    "مشرف": Role.SUPERVISOR,
}


@dataclass(frozen=True)
class Principal:
    """Authenticated identity returned by the identity gateway.

    Session-scoped; never persisted by obstrack.
    """
    id: str
    email_verified: bool = False
    email: Optional[str] = None
    access_token: Optional[str] = field(default=None, repr=False, compare=False)

    @property
    def is_anonymous(self) -> bool:
        return self.email is None


@dataclass(frozen=True)
class RoleProfile:
    """Write-once role assignment stored at the principal's private path."""
    user_id: str
    role: Role
    set_at: datetime = field(default_factory=datetime.utcnow)
    email: Optional[str] = None

    def to_document(self) -> Dict[str, Any]:
        return {
            "role": self.role.value,
            "userId": self.user_id,
            "email": self.email,
            "setAt": self.set_at.isoformat(),
        }

    @classmethod
    def from_document(cls, user_id: str, data: Dict[str, Any]) -> "RoleProfile":
        set_at = data.get("setAt")
        return cls(
            user_id=data.get("userId") or user_id,
            role=Role.parse(data["role"]),
            set_at=parse_timestamp(set_at) if set_at else datetime.utcnow(),
            email=data.get("email"),
        )


@dataclass(frozen=True)
class Actor:
    """The principal an observation manager writes on behalf of."""
    user_id: str
    role: Optional[Role]
    email_verified: bool

    @classmethod
    def from_principal(cls, principal: Principal, role: Optional[Role]) -> "Actor":
        return cls(
            user_id=principal.id,
            role=role,
            email_verified=principal.email_verified,
        )
