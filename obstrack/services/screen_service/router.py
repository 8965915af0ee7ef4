"""Screen router: pure mapping from session state to the reachable screen.

Rules, first match wins:
1. not authenticated -> login
2. email not verified -> verify-email
3. role still loading -> loading
4. no role assigned -> role-selection
5. requested screen if the role may see it, else access-denied
"""
from dataclasses import dataclass
from enum import Enum
from typing import Dict, FrozenSet, Optional, Union

from obstrack.shared.models import Role
from obstrack.services.session_service.controller import AuthState


class Screen(Enum):
    """Every screen a client can be routed to."""
    LOGIN = "login"
    VERIFY_EMAIL = "verify-email"
    LOADING = "loading"
    ROLE_SELECTION = "role-selection"
    DASHBOARD = "dashboard"
    ACCESS_DENIED = "access-denied"
    REPORTS = "reports"
    ABSENCE_FIXING = "absence-fixing"
    ATTENDANCE_100 = "attendance-100"
    BEHAVIORAL_ISSUES = "behavioral-issues"
    THE_GAP = "the-gap"
    SCHOOL_RESULTS = "school-results"
    READINESS_LEVEL = "readiness-level"
    MASTERY_RATIO = "mastery-ratio"
    COMPLAINTS = "complaints"


# Screens a signed-in user with a role is never sent back to
STARTUP_SCREENS: FrozenSet[Screen] = frozenset({
    Screen.LOGIN,
    Screen.VERIFY_EMAIL,
    Screen.LOADING,
    Screen.ROLE_SELECTION,
})

_ALL_ROLES = frozenset(Role)
_LEADERSHIP = frozenset({Role.MANAGER, Role.SUPERVISOR})

SCREEN_ACCESS: Dict[Screen, FrozenSet[Role]] = {
    Screen.DASHBOARD: _ALL_ROLES,
    Screen.REPORTS: _ALL_ROLES,
    Screen.ACCESS_DENIED: _ALL_ROLES,
    Screen.ABSENCE_FIXING: _LEADERSHIP | {Role.DEPUTY},
    Screen.ATTENDANCE_100: _LEADERSHIP | {Role.DEPUTY},
    Screen.BEHAVIORAL_ISSUES: _LEADERSHIP | {Role.STUDENT_GUIDE},
    Screen.THE_GAP: _LEADERSHIP,
    Screen.SCHOOL_RESULTS: _LEADERSHIP,
    Screen.READINESS_LEVEL: _LEADERSHIP,
    Screen.MASTERY_RATIO: _LEADERSHIP,
    Screen.COMPLAINTS: _LEADERSHIP,
}


@dataclass(frozen=True)
class RouteDecision:
    screen: Screen
    access_granted: bool = True

    def to_dict(self) -> dict:
        return {"screen": self.screen.value, "access_granted": self.access_granted}


def parse_screen(value: Union[Screen, str, None]) -> Optional[Screen]:
    """Screen for a name; None for empty input.

    Raises:
        ValueError: Unknown screen name
    """
    if value is None or isinstance(value, Screen):
        return value
    if not value.strip():
        return None
    return Screen(value.strip())


def screens_for(role: Role) -> FrozenSet[Screen]:
    """Screens the role may open from the dashboard."""
    return frozenset(screen for screen, roles in SCREEN_ACCESS.items() if role in roles)


def resolve_screen(
    auth_state: AuthState,
    verified: bool,
    role: Optional[Role],
    requested: Union[Screen, str, None] = None,
    role_loading: bool = False,
) -> RouteDecision:
    """Resolve which screen to show.

    Args:
        auth_state: Session authentication state
        verified: Principal's email verification flag
        role: Assigned role, or None
        requested: Screen the user asked for
        role_loading: True while the role profile is still being read

    Returns:
        RouteDecision; access_granted is False only for access-denied
    """
    if auth_state is not AuthState.AUTHENTICATED:
        return RouteDecision(Screen.LOGIN)
    if not verified:
        return RouteDecision(Screen.VERIFY_EMAIL)
    if role_loading:
        return RouteDecision(Screen.LOADING)
    if role is None:
        return RouteDecision(Screen.ROLE_SELECTION)

    screen = parse_screen(requested)
    if screen is None or screen in STARTUP_SCREENS:
        return RouteDecision(Screen.DASHBOARD)
    if role in SCREEN_ACCESS.get(screen, frozenset()):
        return RouteDecision(screen)
    return RouteDecision(Screen.ACCESS_DENIED, access_granted=False)
