"""Tests for the Cognito identity gateway with mocked boto3 clients."""
import pytest
from unittest.mock import MagicMock, patch

from botocore.exceptions import ClientError

from obstrack.shared.errors import AuthError
from obstrack.shared.models import Principal
from obstrack.shared.utils import configure_pii_salt
from obstrack.services.session_service import CognitoIdentityGateway


@pytest.fixture(autouse=True)
def setup_pii_salt():
    configure_pii_salt("test_salt_that_is_at_least_32_characters_long")


def client_error(code: str, message: str = "failed") -> ClientError:
    return ClientError({"Error": {"Code": code, "Message": message}}, "Operation")


def user_attributes(sub="sub-1", email="manager@school.example", verified="true"):
    return {
        "UserAttributes": [
            {"Name": "sub", "Value": sub},
            {"Name": "email", "Value": email},
            {"Name": "email_verified", "Value": verified},
        ]
    }


@pytest.fixture
def idp():
    client = MagicMock()
    client.initiate_auth.return_value = {
        "AuthenticationResult": {"AccessToken": "access-1"}
    }
    client.get_user.return_value = user_attributes()
    return client


@pytest.fixture
def gateway(idp):
    gateway = CognitoIdentityGateway(
        client_id="client-1",
        user_pool_id="pool-1",
        identity_pool_id="identity-pool-1",
        region="me-south-1",
    )
    gateway._idp_client = idp
    return gateway


class TestPasswordAuth:
    """Tests for USER_PASSWORD_AUTH sign-in."""

    def test_sign_in(self, gateway, idp):
        principal = gateway.sign_in_with_password("manager@school.example", "secret123")

        kwargs = idp.initiate_auth.call_args.kwargs
        assert kwargs["AuthFlow"] == "USER_PASSWORD_AUTH"
        assert kwargs["AuthParameters"]["USERNAME"] == "manager@school.example"
        assert principal.id == "sub-1"
        assert principal.email_verified is True
        assert principal.access_token == "access-1"
        assert gateway.current_principal == principal

    @pytest.mark.parametrize("code,kind", [
        ("NotAuthorizedException", AuthError.INVALID_CREDENTIALS),
        ("UserNotFoundException", AuthError.INVALID_CREDENTIALS),
        ("TooManyRequestsException", AuthError.UNAVAILABLE),
    ])
    def test_errors_map_to_kinds(self, gateway, idp, code, kind):
        idp.initiate_auth.side_effect = client_error(code)

        with pytest.raises(AuthError) as exc:
            gateway.sign_in_with_password("manager@school.example", "wrong")

        assert exc.value.kind == kind
        assert gateway.current_principal is None

    def test_unconfirmed_user_gets_unverified_principal(self, gateway, idp):
        idp.initiate_auth.side_effect = client_error("UserNotConfirmedException")
        idp.admin_get_user.return_value = user_attributes(verified="false")

        principal = gateway.sign_in_with_password("manager@school.example", "secret123")

        assert principal.email_verified is False
        assert principal.access_token is None
        idp.admin_get_user.assert_called_once_with(
            UserPoolId="pool-1", Username="manager@school.example"
        )

    def test_token_sign_in_uses_refresh_flow(self, gateway, idp):
        gateway.sign_in_with_token("refresh-1")

        kwargs = idp.initiate_auth.call_args.kwargs
        assert kwargs["AuthFlow"] == "REFRESH_TOKEN_AUTH"
        assert kwargs["AuthParameters"] == {"REFRESH_TOKEN": "refresh-1"}


class TestSignUp:
    """Tests for account creation."""

    def test_sign_up(self, gateway, idp):
        idp.sign_up.return_value = {"UserSub": "sub-9", "UserConfirmed": False}

        principal = gateway.sign_up("guide@school.example", "Secret123!")

        assert principal.id == "sub-9"
        assert principal.email_verified is False
        kwargs = idp.sign_up.call_args.kwargs
        assert kwargs["UserAttributes"] == [{"Name": "email", "Value": "guide@school.example"}]

    @pytest.mark.parametrize("code,kind", [
        ("UsernameExistsException", AuthError.DUPLICATE_EMAIL),
        ("InvalidPasswordException", AuthError.WEAK_PASSWORD),
        ("InvalidParameterException", AuthError.INVALID_EMAIL),
    ])
    def test_sign_up_errors(self, gateway, idp, code, kind):
        idp.sign_up.side_effect = client_error(code)

        with pytest.raises(AuthError) as exc:
            gateway.sign_up("guide@school.example", "x")

        assert exc.value.kind == kind

    def test_send_verification(self, gateway, idp):
        gateway.send_verification(Principal(id="sub-9", email="guide@school.example"))

        idp.resend_confirmation_code.assert_called_once_with(
            ClientId="client-1", Username="guide@school.example"
        )


class TestSessionLifecycle:
    """Tests for reload, sign-out and anonymous sign-in."""

    def test_reload_with_token(self, gateway, idp):
        stale = Principal(id="sub-1", email="manager@school.example", access_token="access-1")

        fresh = gateway.reload_principal(stale)

        assert fresh.email_verified is True
        idp.get_user.assert_called_with(AccessToken="access-1")

    def test_reload_without_token_uses_admin_lookup(self, gateway, idp):
        idp.admin_get_user.return_value = user_attributes(verified="true")

        fresh = gateway.reload_principal(Principal(id="sub-1", email="manager@school.example"))

        assert fresh.email_verified is True

    def test_sign_out_revokes_tokens(self, gateway, idp):
        gateway.sign_in_with_password("manager@school.example", "secret123")
        received = []
        gateway.on_auth_change(received.append)

        gateway.sign_out()

        idp.global_sign_out.assert_called_once_with(AccessToken="access-1")
        assert received[-1] is None

    def test_anonymous_sign_in(self, gateway):
        identity = MagicMock()
        identity.get_id.return_value = {"IdentityId": "me-south-1:abc"}
        gateway._identity_client = identity

        principal = gateway.sign_in_anon()

        assert principal.id == "me-south-1:abc"
        assert principal.is_anonymous

    def test_anonymous_requires_identity_pool(self):
        gateway = CognitoIdentityGateway(client_id="client-1")

        with pytest.raises(AuthError) as exc:
            gateway.sign_in_anon()

        assert exc.value.kind == AuthError.UNAVAILABLE

    @patch("boto3.client")
    def test_clients_created_lazily(self, mock_boto_client):
        gateway = CognitoIdentityGateway(client_id="client-1", region="me-south-1")
        mock_boto_client.assert_not_called()

        gateway.idp_client

        mock_boto_client.assert_called_once_with("cognito-idp", region_name="me-south-1")
