"""Role Service: resolves and assigns the write-once staff role.

A principal picks its role once, after email verification. The role then
gates every screen and mutation the principal can reach.
"""

from .resolver import RoleResolver, RoleState

__all__ = [
    "RoleResolver",
    "RoleState",
]
