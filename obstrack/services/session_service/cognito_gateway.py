"""AWS Cognito identity gateway.

User pool operations go through the `cognito-idp` client; anonymous sign-in
uses an identity pool through `cognito-identity`. Clients are created lazily
so the gateway can be constructed without AWS credentials.
"""
import logging
import os
from typing import Any, Dict, List, Optional

from botocore.exceptions import ClientError

from obstrack.shared.errors import AuthError
from obstrack.shared.models import Principal
from obstrack.shared.utils import hash_pii
from .identity import IdentityGateway

logger = logging.getLogger(__name__)

# Cognito error codes mapped onto user-facing auth error kinds
ERROR_KINDS = {
    "UsernameExistsException": AuthError.DUPLICATE_EMAIL,
    "AliasExistsException": AuthError.DUPLICATE_EMAIL,
    "InvalidPasswordException": AuthError.WEAK_PASSWORD,
    "NotAuthorizedException": AuthError.INVALID_CREDENTIALS,
    "UserNotFoundException": AuthError.INVALID_CREDENTIALS,
    "InvalidParameterException": AuthError.INVALID_EMAIL,
    "CodeDeliveryFailureException": AuthError.INVALID_EMAIL,
}


class CognitoIdentityGateway(IdentityGateway):
    """IdentityGateway over a Cognito user pool."""

    def __init__(
        self,
        client_id: str,
        user_pool_id: Optional[str] = None,
        identity_pool_id: Optional[str] = None,
        region: Optional[str] = None,
    ):
        """Initialize gateway.

        Args:
            client_id: User pool app client id (USER_PASSWORD_AUTH enabled)
            user_pool_id: User pool id, used for admin lookups of
                unconfirmed users
            identity_pool_id: Identity pool allowing unauthenticated
                identities, used for anonymous sign-in
            region: AWS region
        """
        super().__init__()
        self.client_id = client_id
        self.user_pool_id = user_pool_id
        self.identity_pool_id = identity_pool_id
        self.region = region or os.getenv("AWS_REGION", "us-east-1")
        self._idp_client = None
        self._identity_client = None

        logger.info(
            "COGNITO_GATEWAY_INITIALIZED",
            extra={
                "region": self.region,
                "anonymous_enabled": identity_pool_id is not None,
            }
        )

    @property
    def idp_client(self):
        """Lazy initialization of the user pool client."""
        if self._idp_client is None:
            import boto3
            self._idp_client = boto3.client("cognito-idp", region_name=self.region)
        return self._idp_client

    @property
    def identity_client(self):
        """Lazy initialization of the identity pool client."""
        if self._identity_client is None:
            import boto3
            self._identity_client = boto3.client("cognito-identity", region_name=self.region)
        return self._identity_client

    def sign_in_anon(self) -> Principal:
        if not self.identity_pool_id:
            raise AuthError("Anonymous sign-in is not configured", kind=AuthError.UNAVAILABLE)

        try:
            response = self.identity_client.get_id(IdentityPoolId=self.identity_pool_id)
        except ClientError as e:
            raise self._auth_error(e, "sign_in_anon")

        principal = Principal(id=response["IdentityId"])
        self._set_current(principal)
        return principal

    def sign_in_with_token(self, token: str) -> Principal:
        """Sign in with a refresh token issued by an earlier session."""
        return self._initiate_auth("REFRESH_TOKEN_AUTH", {"REFRESH_TOKEN": token})

    def sign_in_with_password(self, email: str, password: str) -> Principal:
        try:
            return self._initiate_auth(
                "USER_PASSWORD_AUTH",
                {"USERNAME": email, "PASSWORD": password},
            )
        except _UnconfirmedUser:
            # Unconfirmed users get a principal so they land on verify-email
            principal = self._admin_principal(email)
            self._set_current(principal)
            return principal

    def sign_up(self, email: str, password: str) -> Principal:
        try:
            response = self.idp_client.sign_up(
                ClientId=self.client_id,
                Username=email,
                Password=password,
                UserAttributes=[{"Name": "email", "Value": email}],
            )
        except ClientError as e:
            raise self._auth_error(e, "sign_up")

        logger.info(
            "COGNITO_ACCOUNT_CREATED",
            extra={
                "email_hash": hash_pii(email),
                "confirmed": response.get("UserConfirmed", False),
            }
        )
        principal = Principal(
            id=response["UserSub"],
            email=email,
            email_verified=bool(response.get("UserConfirmed", False)),
        )
        self._set_current(principal)
        return principal

    def send_verification(self, principal: Principal) -> None:
        if not principal.email:
            raise AuthError("Anonymous users have no email", kind=AuthError.INVALID_EMAIL)

        try:
            self.idp_client.resend_confirmation_code(
                ClientId=self.client_id,
                Username=principal.email,
            )
        except ClientError as e:
            # Already-confirmed accounts have nothing to resend
            if _error_code(e) == "InvalidParameterException" and principal.email_verified:
                return
            raise self._auth_error(e, "send_verification")

    def reload_principal(self, principal: Principal) -> Principal:
        if principal.access_token:
            try:
                response = self.idp_client.get_user(AccessToken=principal.access_token)
            except ClientError as e:
                raise self._auth_error(e, "reload_principal")
            fresh = _principal_from_attributes(
                response.get("UserAttributes", []),
                principal.access_token,
            )
        elif principal.email and self.user_pool_id:
            fresh = self._admin_principal(principal.email)
        else:
            return principal

        current = self.current_principal
        if current is not None and current.id == fresh.id:
            self._set_current(fresh)
        return fresh

    def sign_out(self) -> None:
        current = self.current_principal
        if current is not None and current.access_token:
            try:
                self.idp_client.global_sign_out(AccessToken=current.access_token)
            except ClientError as e:
                raise self._auth_error(e, "sign_out")
        self._set_current(None)

    def _initiate_auth(self, flow: str, parameters: Dict[str, str]) -> Principal:
        try:
            response = self.idp_client.initiate_auth(
                ClientId=self.client_id,
                AuthFlow=flow,
                AuthParameters=parameters,
            )
            access_token = response["AuthenticationResult"]["AccessToken"]
            user = self.idp_client.get_user(AccessToken=access_token)
        except ClientError as e:
            if _error_code(e) == "UserNotConfirmedException":
                raise _UnconfirmedUser()
            raise self._auth_error(e, flow)

        principal = _principal_from_attributes(user.get("UserAttributes", []), access_token)
        self._set_current(principal)
        return principal

    def _admin_principal(self, email: str) -> Principal:
        if not self.user_pool_id:
            raise AuthError("Account is not confirmed", kind=AuthError.INVALID_CREDENTIALS)

        try:
            response = self.idp_client.admin_get_user(
                UserPoolId=self.user_pool_id,
                Username=email,
            )
        except ClientError as e:
            raise self._auth_error(e, "admin_get_user")
        return _principal_from_attributes(response.get("UserAttributes", []), None)

    @staticmethod
    def _auth_error(error: ClientError, operation: str) -> AuthError:
        code = _error_code(error)
        kind = ERROR_KINDS.get(code, AuthError.UNAVAILABLE)
        message = error.response.get("Error", {}).get("Message", str(error))

        logger.warning(
            "COGNITO_REQUEST_FAILED",
            extra={"operation": operation, "error_code": code, "kind": kind}
        )
        return AuthError(message, kind=kind)


class _UnconfirmedUser(Exception):
    pass


def _error_code(error: ClientError) -> str:
    return error.response.get("Error", {}).get("Code", "")


def _principal_from_attributes(
    attributes: List[Dict[str, Any]],
    access_token: Optional[str],
) -> Principal:
    values = {item["Name"]: item["Value"] for item in attributes}
    return Principal(
        id=values["sub"],
        email=values.get("email"),
        email_verified=str(values.get("email_verified", "false")).lower() == "true",
        access_token=access_token,
    )
