"""Screen Service: pure screen routing.

Given the session state, verification flag, role and requested screen,
decides which screen a client sees. No I/O; safe to call on every change.
"""

from .router import (
    Screen,
    RouteDecision,
    SCREEN_ACCESS,
    resolve_screen,
    parse_screen,
    screens_for,
)

__all__ = [
    "Screen",
    "RouteDecision",
    "SCREEN_ACCESS",
    "resolve_screen",
    "parse_screen",
    "screens_for",
]
