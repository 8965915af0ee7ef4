"""Shared domain models for obstrack."""
from .identity import (
    Role,
    Principal,
    RoleProfile,
    Actor,
)
from .observation import (
    ApprovalStatus,
    ObservationRecord,
    ApprovalRecord,
)

__all__ = [
    "Role",
    "Principal",
    "RoleProfile",
    "Actor",
    "ApprovalStatus",
    "ObservationRecord",
    "ApprovalRecord",
]
