"""Session Service: authentication state for one client.

Bootstraps a silent sign-in, relays principal transitions from the identity
gateway and exposes the user-driven auth operations:
- sign in / sign up (with verification email)
- sign out (non-fatal on failure)
- verification refresh and resend

Identity providers:
- InMemoryIdentityGateway for development and tests
- CognitoIdentityGateway for AWS Cognito user pools
"""

from .controller import AuthState, SessionController
from .identity import (
    IdentityGateway,
    InMemoryIdentityDirectory,
    InMemoryIdentityGateway,
)
from .cognito_gateway import CognitoIdentityGateway

__all__ = [
    "AuthState",
    "SessionController",
    "IdentityGateway",
    "InMemoryIdentityDirectory",
    "InMemoryIdentityGateway",
    "CognitoIdentityGateway",
]
