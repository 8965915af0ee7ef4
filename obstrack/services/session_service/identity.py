"""Identity gateway interface and in-memory adapter.

The gateway owns the authenticated principal for one client and pushes
principal-or-None transitions to subscribers, the way a hosted identity SDK
does in a browser tab.
"""
import logging
import re
import threading
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, replace
from typing import Callable, Dict, List, Optional

from obstrack.shared.errors import AuthError
from obstrack.shared.models import Principal
from obstrack.shared.store import Subscription
from obstrack.shared.utils import hash_pii

logger = logging.getLogger(__name__)

AuthCallback = Callable[[Optional[Principal]], None]

MIN_PASSWORD_LENGTH = 6
_EMAIL_PATTERN = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


class IdentityGateway(ABC):
    """Authentication capability consumed by the session controller.

    Subclasses implement the provider calls; this base keeps the current
    principal and fans auth transitions out to subscribers.
    """

    def __init__(self):
        self._lock = threading.RLock()
        self._callbacks: List[AuthCallback] = []
        self._current: Optional[Principal] = None

    @property
    def current_principal(self) -> Optional[Principal]:
        return self._current

    @abstractmethod
    def sign_in_anon(self) -> Principal:
        """Anonymous sign-in."""

    @abstractmethod
    def sign_in_with_token(self, token: str) -> Principal:
        """Sign in with a pre-issued custom token."""

    @abstractmethod
    def sign_in_with_password(self, email: str, password: str) -> Principal:
        """Email and password sign-in.

        Raises:
            AuthError: On invalid credentials
        """

    @abstractmethod
    def sign_up(self, email: str, password: str) -> Principal:
        """Create an account and sign it in.

        Raises:
            AuthError: On duplicate email, weak password or malformed email
        """

    @abstractmethod
    def send_verification(self, principal: Principal) -> None:
        """Send the email verification link to principal's address."""

    @abstractmethod
    def reload_principal(self, principal: Principal) -> Principal:
        """Re-read principal from the provider, bypassing cached state."""

    @abstractmethod
    def sign_out(self) -> None:
        """End the provider session."""

    def on_auth_change(self, callback: AuthCallback) -> Subscription:
        """Subscribe to principal transitions.

        The current principal (or None) is delivered immediately.
        """
        with self._lock:
            self._callbacks.append(callback)
            current = self._current

        def cancel() -> None:
            with self._lock:
                if callback in self._callbacks:
                    self._callbacks.remove(callback)

        callback(current)
        return Subscription(cancel, path="auth")

    def _set_current(self, principal: Optional[Principal]) -> None:
        with self._lock:
            self._current = principal
            callbacks = list(self._callbacks)

        for callback in callbacks:
            try:
                callback(principal)
            except Exception as e:
                logger.error("AUTH_CALLBACK_FAILED", extra={"error": str(e)})


@dataclass
class _Account:
    user_id: str
    email: str
    password: str
    email_verified: bool = False


class InMemoryIdentityDirectory:
    """Account registry shared by every in-memory gateway of a process.

    Stands in for the hosted identity provider in development and tests.
    """

    def __init__(self):
        self._lock = threading.RLock()
        self._accounts: Dict[str, _Account] = {}
        self._tokens: Dict[str, str] = {}
        self.sent_verifications: List[str] = []

    def create_account(self, email: str, password: str) -> _Account:
        email = _normalize_email(email)
        if len(password or "") < MIN_PASSWORD_LENGTH:
            raise AuthError(
                f"Password must be at least {MIN_PASSWORD_LENGTH} characters",
                kind=AuthError.WEAK_PASSWORD,
            )
        with self._lock:
            if email in self._accounts:
                raise AuthError("Email already in use", kind=AuthError.DUPLICATE_EMAIL)
            account = _Account(user_id=uuid.uuid4().hex[:28], email=email, password=password)
            self._accounts[email] = account
            return account

    def authenticate(self, email: str, password: str) -> _Account:
        with self._lock:
            account = self._accounts.get((email or "").strip().lower())
        if account is None or account.password != password:
            raise AuthError("Invalid email or password", kind=AuthError.INVALID_CREDENTIALS)
        return account

    def issue_token(self, email: str) -> str:
        """Custom token that signs in as email's account."""
        with self._lock:
            account = self._accounts[_normalize_email(email)]
            token = uuid.uuid4().hex
            self._tokens[token] = account.email
            return token

    def redeem_token(self, token: str) -> _Account:
        with self._lock:
            email = self._tokens.get(token)
            account = self._accounts.get(email) if email else None
        if account is None:
            raise AuthError("Invalid custom token", kind=AuthError.INVALID_CREDENTIALS)
        return account

    def mark_verified(self, email: str) -> None:
        """Simulate the user following the verification link."""
        with self._lock:
            self._accounts[_normalize_email(email)].email_verified = True

    def find_by_id(self, user_id: str) -> Optional[_Account]:
        with self._lock:
            for account in self._accounts.values():
                if account.user_id == user_id:
                    return account
        return None

    def record_verification(self, email: str) -> None:
        with self._lock:
            self.sent_verifications.append(email)


class InMemoryIdentityGateway(IdentityGateway):
    """Gateway for one client over a shared InMemoryIdentityDirectory."""

    def __init__(self, directory: Optional[InMemoryIdentityDirectory] = None):
        super().__init__()
        self.directory = directory or InMemoryIdentityDirectory()

    def sign_in_anon(self) -> Principal:
        principal = Principal(id=f"anon-{uuid.uuid4().hex[:20]}")
        self._set_current(principal)
        return principal

    def sign_in_with_token(self, token: str) -> Principal:
        principal = self._principal_for(self.directory.redeem_token(token))
        self._set_current(principal)
        return principal

    def sign_in_with_password(self, email: str, password: str) -> Principal:
        principal = self._principal_for(self.directory.authenticate(email, password))
        self._set_current(principal)
        return principal

    def sign_up(self, email: str, password: str) -> Principal:
        principal = self._principal_for(self.directory.create_account(email, password))
        logger.info(
            "IDENTITY_ACCOUNT_CREATED",
            extra={"email_hash": hash_pii(principal.email)}
        )
        self._set_current(principal)
        return principal

    def send_verification(self, principal: Principal) -> None:
        if not principal.email:
            raise AuthError("Anonymous users have no email", kind=AuthError.INVALID_EMAIL)
        self.directory.record_verification(principal.email)

    def reload_principal(self, principal: Principal) -> Principal:
        account = self.directory.find_by_id(principal.id)
        if account is None:
            return principal
        fresh = replace(principal, email_verified=account.email_verified)
        if self._current is not None and self._current.id == fresh.id:
            self._set_current(fresh)
        return fresh

    def sign_out(self) -> None:
        self._set_current(None)

    @staticmethod
    def _principal_for(account: _Account) -> Principal:
        return Principal(
            id=account.user_id,
            email=account.email,
            email_verified=account.email_verified,
            access_token=uuid.uuid4().hex,
        )


def _normalize_email(email: str) -> str:
    email = (email or "").strip().lower()
    if not _EMAIL_PATTERN.match(email):
        raise AuthError("Malformed email address", kind=AuthError.INVALID_EMAIL)
    return email
