"""Session controller: authentication state machine for one client.

States:
    UNAUTHENTICATED -> AUTH_PENDING -> AUTHENTICATED(principal)

Auth failures during bootstrap never escape; every other provider failure
surfaces as an AuthError the caller shows inline.
"""
import logging
import threading
from enum import Enum
from typing import Callable, List, Optional

from obstrack.shared.errors import AuthError, NotVerifiedError, ObstrackError
from obstrack.shared.models import Principal
from obstrack.shared.store import Subscription
from obstrack.shared.utils import hash_pii
from .identity import IdentityGateway

logger = logging.getLogger(__name__)

PrincipalListener = Callable[[Optional[Principal]], None]


class AuthState(Enum):
    """Authentication lifecycle of a client."""
    UNAUTHENTICATED = "unauthenticated"
    AUTH_PENDING = "auth_pending"
    AUTHENTICATED = "authenticated"


class SessionController:
    """Owns the current principal and relays auth transitions.

    Listeners registered with add_listener() receive every principal change,
    including None when authentication is lost.
    """

    def __init__(
        self,
        gateway: IdentityGateway,
        initial_token: Optional[str] = None,
    ):
        """Initialize controller.

        Args:
            gateway: Identity gateway for this client
            initial_token: Custom token tried first by bootstrap()
        """
        self.gateway = gateway
        self.initial_token = initial_token
        self.state = AuthState.UNAUTHENTICATED
        self.principal: Optional[Principal] = None
        self.last_error: Optional[ObstrackError] = None

        self._lock = threading.RLock()
        self._bootstrapped = False
        self._auth_subscription: Optional[Subscription] = None
        self._listeners: List[PrincipalListener] = []

    @property
    def is_authenticated(self) -> bool:
        return self.state is AuthState.AUTHENTICATED

    @property
    def email_verified(self) -> bool:
        return self.principal is not None and self.principal.email_verified

    def bootstrap(self) -> None:
        """Silent sign-in, attempted once per controller.

        Tries the configured initial token, falling back to anonymous
        sign-in. Failure leaves the state UNAUTHENTICATED.

        Logs:
            - SESSION_BOOTSTRAP_COMPLETE: On success
            - SESSION_BOOTSTRAP_FAILED: On failure (swallowed)
        """
        with self._lock:
            if self._bootstrapped:
                return
            self._bootstrapped = True
            self.state = AuthState.AUTH_PENDING

        try:
            if self.initial_token:
                principal = self.gateway.sign_in_with_token(self.initial_token)
            else:
                principal = self.gateway.sign_in_anon()
        except Exception as e:
            logger.warning(
                "SESSION_BOOTSTRAP_FAILED",
                extra={"error": str(e), "used_token": bool(self.initial_token)}
            )
            self._apply(None)
            return

        self._apply(principal)
        logger.info(
            "SESSION_BOOTSTRAP_COMPLETE",
            extra={"anonymous": principal.is_anonymous}
        )

    def observe_auth(self) -> Subscription:
        """Start relaying gateway auth transitions.

        Restartable: calling again after stop_observing() resubscribes.
        Returns the active subscription.
        """
        with self._lock:
            if self._auth_subscription is not None and self._auth_subscription.active:
                return self._auth_subscription
            self._auth_subscription = self.gateway.on_auth_change(self._apply)
            return self._auth_subscription

    def stop_observing(self) -> None:
        with self._lock:
            subscription, self._auth_subscription = self._auth_subscription, None
        if subscription is not None:
            subscription.unsubscribe()

    def add_listener(self, listener: PrincipalListener) -> Subscription:
        """Register a callback for principal changes."""
        with self._lock:
            self._listeners.append(listener)

        def cancel() -> None:
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return Subscription(cancel, path="session")

    def sign_in(self, email: str, password: str) -> Principal:
        """Email/password sign-in.

        Raises:
            AuthError: On invalid credentials; never retried
        """
        try:
            principal = self.gateway.sign_in_with_password(email, password)
        except AuthError as e:
            self._record_auth_failure("SIGN_IN_FAILED", email, e)
            raise

        self._apply(principal)
        logger.info(
            "SIGN_IN_SUCCEEDED",
            extra={"email_hash": hash_pii(email), "verified": principal.email_verified}
        )
        return principal

    def sign_up(self, email: str, password: str) -> Principal:
        """Create an account, sign it in and send the verification email.

        A failed verification send does not undo the sign-up; it is kept in
        last_error and can be retried with resend_verification().

        Raises:
            AuthError: On duplicate email, weak password or malformed email
        """
        try:
            principal = self.gateway.sign_up(email, password)
        except AuthError as e:
            self._record_auth_failure("SIGN_UP_FAILED", email, e)
            raise

        self._apply(principal)
        logger.info("SIGN_UP_SUCCEEDED", extra={"email_hash": hash_pii(email)})

        try:
            self.gateway.send_verification(principal)
        except AuthError as e:
            self.last_error = e
            logger.warning(
                "VERIFICATION_SEND_FAILED",
                extra={"email_hash": hash_pii(email), "kind": e.kind}
            )
        return principal

    def sign_out(self) -> bool:
        """Fire-and-forget sign-out.

        Returns:
            True on success; False when the provider failed (kept in last_error)
        """
        try:
            self.gateway.sign_out()
        except Exception as e:
            self.last_error = e if isinstance(e, ObstrackError) else AuthError(
                str(e), kind=AuthError.UNAVAILABLE
            )
            logger.error("SIGN_OUT_FAILED", extra={"error": str(e)})
            return False

        self._apply(None)
        logger.info("SIGN_OUT_SUCCEEDED")
        return True

    def refresh_verification(self) -> bool:
        """Re-read verification status from the provider.

        Returns:
            Fresh email_verified value; False when signed out
        """
        principal = self.principal
        if principal is None:
            return False

        fresh = self.gateway.reload_principal(principal)
        self._apply(fresh)

        logger.info(
            "VERIFICATION_REFRESHED",
            extra={"verified": fresh.email_verified}
        )
        return fresh.email_verified

    def resend_verification(self) -> None:
        """Send the verification email again.

        Raises:
            NotVerifiedError: When there is no signed-in email account
            AuthError: When the provider rejects the send
        """
        principal = self.principal
        if principal is None or principal.is_anonymous:
            raise NotVerifiedError("Sign in with an email account first")
        self.gateway.send_verification(principal)
        logger.info("VERIFICATION_RESENT", extra={"email_hash": hash_pii(principal.email)})

    def clear_error(self) -> None:
        self.last_error = None

    def _apply(self, principal: Optional[Principal]) -> None:
        with self._lock:
            new_state = AuthState.AUTHENTICATED if principal else AuthState.UNAUTHENTICATED
            if principal == self.principal and new_state is self.state:
                return
            self.principal = principal
            self.state = new_state
            listeners = list(self._listeners)

        logger.debug(
            "AUTH_STATE_CHANGED",
            extra={"state": new_state.value}
        )
        for listener in listeners:
            try:
                listener(principal)
            except Exception as e:
                logger.error("SESSION_LISTENER_FAILED", extra={"error": str(e)})

    def _record_auth_failure(self, event: str, email: str, error: AuthError) -> None:
        self.last_error = error
        logger.warning(
            event,
            extra={"email_hash": hash_pii(email), "kind": error.kind}
        )
