"""Client workspace: one client's session, role and observation state.

Wires the pieces the way a single browser tab would hold them:

    IdentityGateway -> SessionController -> RoleResolver -> screen router
                                         -> ObservationRecordManager per type

Every subscription the workspace opens is owned by it and released by
close(). Losing authentication resets the role, closes every observation
manager and sends the client back to login.
"""
import logging
import threading
from dataclasses import dataclass, replace
from datetime import date
from typing import Any, Callable, Dict, List, Optional, Sequence

from obstrack.shared.errors import (
    AccessDeniedError,
    NotVerifiedError,
    ObstrackError,
    ValidationError,
)
from obstrack.shared.models import Actor, Principal, Role
from obstrack.shared.store import DocumentStore, StorePaths, Subscription
from obstrack.shared.utils import hash_pii, ratio_percent
from obstrack.services.observation_service import (
    OBSERVATION_TYPES,
    ApprovalWorkflow,
    ObservationRecordManager,
    ObservationType,
    build_report,
    get_observation_type,
)
from obstrack.services.role_service import RoleResolver
from obstrack.services.screen_service import (
    RouteDecision,
    Screen,
    parse_screen,
    resolve_screen,
)
from obstrack.services.session_service import IdentityGateway, SessionController

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ActionResult:
    """Outcome of a user action: a value, or the error shown inline."""
    ok: bool
    value: Any = None
    error: Optional[ObstrackError] = None

    def to_dict(self) -> Dict[str, Any]:
        if self.ok:
            return {"ok": True}
        return {"ok": False, "error": self.error.to_dict()}


class ClientWorkspace:
    """Composition root for one client."""

    def __init__(
        self,
        store: DocumentStore,
        paths: StorePaths,
        gateway: IdentityGateway,
        initial_token: Optional[str] = None,
        total_students: int = 555,
        absence_threshold: Optional[float] = None,
        observation_types: Sequence[ObservationType] = OBSERVATION_TYPES,
    ):
        """Initialize workspace.

        Args:
            store: Shared document store
            paths: Tenant path layout
            gateway: Identity gateway owned by this client
            initial_token: Custom token for silent sign-in
            total_students: Denominator of threshold alerts
            absence_threshold: Overrides the threshold fraction of
                threshold-alerting types
            observation_types: Types this client can open
        """
        self.store = store
        self.paths = paths
        self.session = SessionController(gateway, initial_token=initial_token)
        self.roles = RoleResolver(store, paths)
        self.total_students = total_students
        self.requested: Optional[Screen] = None

        self._types: Dict[str, ObservationType] = {}
        for observation_type in observation_types:
            if absence_threshold is not None and observation_type.threshold_fraction is not None:
                observation_type = replace(observation_type, threshold_fraction=absence_threshold)
            self._types[observation_type.key] = observation_type

        self._lock = threading.RLock()
        self._managers: Dict[str, ObservationRecordManager] = {}
        self._session_subscription: Optional[Subscription] = None

    @property
    def principal(self) -> Optional[Principal]:
        return self.session.principal

    @property
    def actor(self) -> Optional[Actor]:
        if self.principal is None:
            return None
        return Actor.from_principal(self.principal, self.roles.role)

    def start(self) -> "ClientWorkspace":
        """Follow auth changes, then attempt the silent sign-in."""
        with self._lock:
            if self._session_subscription is None:
                self._session_subscription = self.session.add_listener(self._on_principal)
        self.session.observe_auth()
        self.session.bootstrap()
        return self

    def close(self) -> None:
        """Release every subscription this workspace owns."""
        with self._lock:
            subscription, self._session_subscription = self._session_subscription, None
        if subscription is not None:
            subscription.unsubscribe()
        self.session.stop_observing()
        self.roles.reset()
        self._close_managers()

    def navigate(self, screen: Any) -> RouteDecision:
        """Record the requested screen and resolve it."""
        self.requested = parse_screen(screen)
        return self.route()

    def route(self) -> RouteDecision:
        return resolve_screen(
            self.session.state,
            self.session.email_verified,
            self.roles.role,
            self.requested,
            role_loading=self.roles.is_loading,
        )

    def run(self, action: Callable[[], Any]) -> ActionResult:
        """Run a user action, converting domain errors into an inline result."""
        try:
            return ActionResult(ok=True, value=action())
        except ObstrackError as e:
            logger.info(
                "WORKSPACE_ACTION_FAILED",
                extra={"error_type": type(e).__name__, "kind": e.kind}
            )
            return ActionResult(ok=False, error=e)

    def assign_role(self, role: Any):
        """Choose the signed-in principal's role (once).

        Raises:
            NotVerifiedError: Not signed in, or email not verified
            AccessDeniedError: A role is already assigned
        """
        principal = self.principal
        if principal is None:
            raise NotVerifiedError("Sign in before choosing a role")
        try:
            parsed = Role.parse(role)
        except ValueError as e:
            raise ValidationError(str(e))
        return self.roles.assign_role(principal, parsed)

    def manager_for(self, key: str) -> ObservationRecordManager:
        """Open manager for an observation type the current role may view.

        A manager is bound to one actor; it is rebuilt when the principal,
        role or verification flag changes.

        Raises:
            RecordNotFoundError: Unknown observation type
            NotVerifiedError: Not signed in, unverified or no role yet
            AccessDeniedError: The role may not view this type
        """
        observation_type = self._type(key)
        self._require_screen(Screen(observation_type.key))
        actor = self.actor

        with self._lock:
            manager = self._managers.get(key)
            if manager is not None and manager.actor != actor:
                manager.close()
                manager = None
            if manager is None:
                manager = ObservationRecordManager(
                    self.store, self.paths, observation_type, actor
                )
                self._managers[key] = manager
        manager.open()
        return manager

    def approvals_for(self, key: str) -> ApprovalWorkflow:
        return ApprovalWorkflow(self.manager_for(key))

    def observation_view(self, key: str, today: Optional[date] = None) -> Dict[str, Any]:
        """Current history plus the metrics shown on the type's screen.

        Types with a threshold field also get the latest value as a share of
        total_students and the month-to-date monitoring rate.
        """
        manager = self.manager_for(key)
        observation_type = manager.observation_type
        records = manager.records()
        view: Dict[str, Any] = {
            "observation": observation_type.key,
            "title": observation_type.title,
            "granularity": observation_type.granularity.value,
            "current_bucket_key": manager.current_bucket_key(today),
            "records": [record.to_dict() for record in records],
            "completion_rate": round(manager.completion_rate(), 1),
            "error": manager.error.to_dict() if manager.error else None,
        }
        if observation_type.threshold_field:
            latest = records[0].get(observation_type.threshold_field, 0) if records else 0
            view["threshold_alert"] = manager.threshold_alert(latest, self.total_students)
            view["threshold_rate"] = round(ratio_percent(latest, self.total_students), 1)
            view["month_to_date_rate"] = round(manager.month_to_date_rate(today), 1)
        return view

    def report(self, today: Optional[date] = None) -> List[Dict[str, Any]]:
        """Report cards for every type the current role may view."""
        self._require_screen(Screen.REPORTS)
        managers = []
        for key in self._types:
            if self._can_view(Screen(key)):
                managers.append(self.manager_for(key))
        return [card.to_dict() for card in build_report(managers, today=today)]

    def _type(self, key: str) -> ObservationType:
        if key in self._types:
            return self._types[key]
        # Raises RecordNotFoundError for unknown keys
        return get_observation_type(key)

    def _can_view(self, screen: Screen) -> bool:
        decision = self._route_to(screen)
        return decision.screen is screen

    def _route_to(self, screen: Screen) -> RouteDecision:
        return resolve_screen(
            self.session.state,
            self.session.email_verified,
            self.roles.role,
            screen,
            role_loading=self.roles.is_loading,
        )

    def _require_screen(self, screen: Screen) -> None:
        decision = self._route_to(screen)
        if decision.screen is screen:
            return
        if decision.screen is Screen.ACCESS_DENIED:
            raise AccessDeniedError(f"Your role may not open {screen.value}")
        raise NotVerifiedError(f"Finish {decision.screen.value} before opening {screen.value}")

    def _close_managers(self) -> None:
        with self._lock:
            managers, self._managers = list(self._managers.values()), {}
        for manager in managers:
            manager.close()

    def _on_principal(self, principal: Optional[Principal]) -> None:
        if principal is None:
            self.roles.reset()
            self._close_managers()
            self.requested = Screen.LOGIN
            logger.info("WORKSPACE_SIGNED_OUT")
            return

        self.roles.resolve_role(principal.id)
        logger.debug(
            "WORKSPACE_PRINCIPAL_BOUND",
            extra={"user_id_hash": hash_pii(principal.id), "verified": principal.email_verified}
        )

