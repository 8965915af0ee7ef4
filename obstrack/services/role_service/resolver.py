"""Role resolver: write-once role per principal.

State per principal:
    LOADING -> {UNASSIGNED, ASSIGNED(role)}

The role lives in the principal's private profile document and is created
with a create-if-absent write, so a second assignment can never overwrite
the first.
"""
import logging
import threading
from datetime import datetime
from enum import Enum
from typing import Optional

from obstrack.shared.errors import AccessDeniedError, NotVerifiedError, StoreError
from obstrack.shared.models import Principal, Role, RoleProfile
from obstrack.shared.store import Document, DocumentStore, StorePaths, Subscription
from obstrack.shared.utils import hash_pii

logger = logging.getLogger(__name__)


class RoleState(Enum):
    """Resolution state of the bound principal's role."""
    LOADING = "loading"
    UNASSIGNED = "unassigned"
    ASSIGNED = "assigned"


class RoleResolver:
    """Tracks the role of the currently bound principal.

    Nothing is cached across principals: binding to another principal or
    calling reset() drops the previous subscription and state.
    """

    def __init__(self, store: DocumentStore, paths: StorePaths):
        self.store = store
        self.paths = paths
        self.principal_id: Optional[str] = None
        self.state = RoleState.LOADING
        self.profile: Optional[RoleProfile] = None
        self.error: Optional[StoreError] = None

        self._lock = threading.RLock()
        self._subscription: Optional[Subscription] = None

    @property
    def role(self) -> Optional[Role]:
        return self.profile.role if self.profile else None

    @property
    def is_loading(self) -> bool:
        return self.state is RoleState.LOADING

    def resolve_role(self, principal_id: str) -> RoleState:
        """Bind to principal_id and follow its profile document.

        Returns:
            State after the initial snapshot
        """
        with self._lock:
            if (
                principal_id == self.principal_id
                and self._subscription is not None
                and self._subscription.active
            ):
                return self.state

            self._release()
            self.principal_id = principal_id
            self.state = RoleState.LOADING
            self.profile = None
            self.error = None

            path = self.paths.profile_doc(principal_id)
            self._subscription = self.store.on_snapshot(
                path,
                lambda doc: self._on_profile(principal_id, doc),
                on_error=lambda error: self._on_error(principal_id, error),
            )
            return self.state

    def assign_role(self, principal: Principal, role: Role) -> RoleProfile:
        """Create the principal's role profile.

        Args:
            principal: Signed-in principal choosing a role
            role: Chosen role

        Returns:
            The stored RoleProfile

        Raises:
            NotVerifiedError: Email not verified yet
            AccessDeniedError: A role is already assigned; nothing is written
            StoreError: Write failed; not retried

        Logs:
            - ROLE_ASSIGNED: On success
            - ROLE_REASSIGNMENT_BLOCKED: When a profile already exists
        """
        if not principal.email_verified:
            raise NotVerifiedError("Verify your email before choosing a role")

        profile = RoleProfile(
            user_id=principal.id,
            role=Role.parse(role),
            set_at=datetime.utcnow(),
            email=principal.email,
        )

        created = self.store.create_doc(
            self.paths.profile_doc(principal.id),
            profile.to_document(),
        )
        if not created:
            logger.warning(
                "ROLE_REASSIGNMENT_BLOCKED",
                extra={"user_id_hash": hash_pii(principal.id), "requested_role": profile.role.value}
            )
            raise AccessDeniedError("A role has already been assigned to this account")

        logger.info(
            "ROLE_ASSIGNED",
            extra={"user_id_hash": hash_pii(principal.id), "role": profile.role.value}
        )
        return profile

    def reset(self) -> None:
        """Drop the bound principal and return to LOADING."""
        with self._lock:
            self._release()
            self.principal_id = None
            self.state = RoleState.LOADING
            self.profile = None
            self.error = None

    def _release(self) -> None:
        if self._subscription is not None:
            self._subscription.unsubscribe()
            self._subscription = None

    def _on_profile(self, principal_id: str, doc: Optional[Document]) -> None:
        with self._lock:
            if principal_id != self.principal_id:
                return

            if doc is None or not doc.data.get("role"):
                self.profile = None
                self.state = RoleState.UNASSIGNED
                self.error = None
                return

            try:
                profile = RoleProfile.from_document(principal_id, doc.data)
            except ValueError as e:
                logger.error(
                    "ROLE_PROFILE_INVALID",
                    extra={"user_id_hash": hash_pii(principal_id), "error": str(e)}
                )
                self.error = StoreError(f"Unreadable role profile: {e}")
                return

            self.profile = profile
            self.state = RoleState.ASSIGNED
            self.error = None

        logger.debug(
            "ROLE_RESOLVED",
            extra={"user_id_hash": hash_pii(principal_id), "role": profile.role.value}
        )

    def _on_error(self, principal_id: str, error: StoreError) -> None:
        with self._lock:
            if principal_id != self.principal_id:
                return
            self.error = error
        logger.warning(
            "ROLE_RESOLUTION_ERROR",
            extra={"user_id_hash": hash_pii(principal_id), "error": str(error)}
        )
