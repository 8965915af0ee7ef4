"""Tests for the client workspace composition."""
from datetime import date

import pytest

from obstrack.shared.errors import AccessDeniedError, NotVerifiedError, ValidationError
from obstrack.shared.models import Role
from obstrack.shared.store import InMemoryDocumentStore, StorePaths
from obstrack.shared.utils import configure_pii_salt
from obstrack.services.screen_service import Screen
from obstrack.services.session_service import (
    AuthState,
    InMemoryIdentityDirectory,
    InMemoryIdentityGateway,
)
from obstrack.services.web_service import ClientWorkspace


@pytest.fixture(autouse=True)
def setup_pii_salt():
    configure_pii_salt("test_salt_that_is_at_least_32_characters_long")


@pytest.fixture
def store():
    return InMemoryDocumentStore()


@pytest.fixture
def directory():
    return InMemoryIdentityDirectory()


@pytest.fixture
def new_workspace(store, directory):
    created = []

    def factory(**kwargs):
        workspace = ClientWorkspace(
            store,
            StorePaths("jaber-school"),
            InMemoryIdentityGateway(directory),
            **kwargs
        )
        created.append(workspace)
        return workspace.start()

    yield factory
    for workspace in created:
        workspace.close()


def signed_in_with_role(new_workspace, directory, email, role):
    workspace = new_workspace()
    workspace.session.sign_up(email, "secret123")
    directory.mark_verified(email)
    workspace.session.refresh_verification()
    workspace.assign_role(role)
    return workspace


class TestBootstrap:
    """Tests for start-up routing."""

    def test_anonymous_bootstrap_needs_verification(self, new_workspace):
        workspace = new_workspace()

        assert workspace.session.state is AuthState.AUTHENTICATED
        assert workspace.principal.is_anonymous
        assert workspace.route().screen is Screen.VERIFY_EMAIL

    def test_bad_initial_token_falls_back_to_login(self, new_workspace):
        workspace = new_workspace(initial_token="not-a-token")

        assert workspace.session.state is AuthState.UNAUTHENTICATED
        assert workspace.route().screen is Screen.LOGIN


class TestRoleScenario:
    """Sign-up, verification and write-once role selection."""

    def test_sign_up_to_dashboard(self, new_workspace, directory):
        workspace = new_workspace()
        workspace.session.sign_up("a@b.com", "secret123")
        assert workspace.route().screen is Screen.VERIFY_EMAIL

        directory.mark_verified("a@b.com")
        workspace.session.refresh_verification()
        assert workspace.route().screen is Screen.ROLE_SELECTION

        workspace.assign_role("manager")
        assert workspace.navigate("dashboard").screen is Screen.DASHBOARD

        with pytest.raises(AccessDeniedError):
            workspace.assign_role(Role.DEPUTY)
        assert workspace.roles.role is Role.MANAGER

    def test_role_selection_requires_sign_in(self, new_workspace):
        workspace = new_workspace(initial_token="not-a-token")

        with pytest.raises(NotVerifiedError):
            workspace.assign_role(Role.MANAGER)

    def test_unknown_role(self, new_workspace, directory):
        workspace = new_workspace()
        workspace.session.sign_up("a@b.com", "secret123")
        directory.mark_verified("a@b.com")
        workspace.session.refresh_verification()

        with pytest.raises(ValidationError):
            workspace.assign_role("janitor")


class TestSignOut:
    """Losing authentication tears down role and observation state."""

    def test_sign_out_routes_to_login_and_closes_managers(self, new_workspace, directory, store):
        workspace = signed_in_with_role(new_workspace, directory, "dep@school.example", Role.DEPUTY)
        manager = workspace.manager_for("absence-fixing")
        workspace.navigate("absence-fixing")
        assert manager.is_open

        workspace.session.sign_out()

        assert workspace.route().screen is Screen.LOGIN
        assert workspace.requested is Screen.LOGIN
        assert workspace.roles.role is None
        assert not manager.is_open
        assert store._hub.listener_count() == 0

    def test_close_releases_everything(self, new_workspace, directory, store):
        workspace = signed_in_with_role(new_workspace, directory, "dep@school.example", Role.DEPUTY)
        workspace.manager_for("attendance-100")

        workspace.close()

        assert store._hub.listener_count() == 0


class TestObservations:
    """Tests for managers opened through the workspace."""

    def test_role_without_screen_access(self, new_workspace, directory):
        workspace = signed_in_with_role(new_workspace, directory, "dep@school.example", Role.DEPUTY)

        with pytest.raises(AccessDeniedError):
            workspace.manager_for("complaints")

    def test_unverified_cannot_open(self, new_workspace):
        workspace = new_workspace()

        with pytest.raises(NotVerifiedError):
            workspace.manager_for("absence-fixing")

    def test_manager_reused_for_same_actor(self, new_workspace, directory):
        workspace = signed_in_with_role(new_workspace, directory, "dep@school.example", Role.DEPUTY)

        assert workspace.manager_for("absence-fixing") is workspace.manager_for("absence-fixing")

    def test_threshold_alert_in_view(self, new_workspace, directory):
        workspace = signed_in_with_role(new_workspace, directory, "dep@school.example", Role.DEPUTY)
        manager = workspace.manager_for("absence-fixing")
        manager.upsert_for_bucket("2024-03-05", {"confirmed": True, "absent_count": 30})

        view = workspace.observation_view("absence-fixing", today=date(2024, 3, 5))

        assert view["threshold_alert"] is True
        assert view["threshold_rate"] == 5.4
        assert view["completion_rate"] == 100.0
        # One confirmed day out of Sunday 3rd to Tuesday 5th
        assert view["month_to_date_rate"] == 33.3
        assert view["current_bucket_key"] == "2024-03-05"
        assert view["records"][0]["bucket_key"] == "2024-03-05"

    def test_configured_absence_threshold(self, new_workspace, directory):
        workspace = new_workspace(absence_threshold=0.1)
        workspace.session.sign_up("dep@school.example", "secret123")
        directory.mark_verified("dep@school.example")
        workspace.session.refresh_verification()
        workspace.assign_role(Role.DEPUTY)
        workspace.manager_for("absence-fixing").upsert_for_bucket(
            "2024-03-05", {"absent_count": 30}
        )

        assert workspace.observation_view("absence-fixing")["threshold_alert"] is False

    def test_other_client_sees_write(self, new_workspace, directory):
        deputy = signed_in_with_role(new_workspace, directory, "dep@school.example", Role.DEPUTY)
        boss = signed_in_with_role(new_workspace, directory, "boss@school.example", Role.MANAGER)
        boss_view = boss.manager_for("absence-fixing")

        deputy.manager_for("absence-fixing").upsert_for_bucket("2024-03-05", {"confirmed": True})

        assert [r.bucket_key for r in boss_view.history] == ["2024-03-05"]


class TestRun:
    """Tests for inline error conversion."""

    def test_error_becomes_result(self, new_workspace):
        workspace = new_workspace()

        result = workspace.run(lambda: workspace.session.sign_in("x@y.com", "nope"))

        assert not result.ok
        assert result.error.kind == "invalid_credentials"
        assert result.to_dict()["error"]["kind"] == "invalid_credentials"

    def test_value_passes_through(self, new_workspace):
        result = new_workspace().run(lambda: 42)

        assert result.ok
        assert result.value == 42


class TestReport:
    """Tests for the per-role report."""

    def test_student_guide_sees_behavior_card_only(self, new_workspace, directory):
        workspace = signed_in_with_role(
            new_workspace, directory, "guide@school.example", Role.STUDENT_GUIDE
        )

        cards = workspace.report(today=date(2024, 3, 7))

        assert [card["observation"] for card in cards] == ["behavioral-issues"]
        assert cards[0]["status"] == "HIGH"

    def test_supervisor_sees_every_card(self, new_workspace, directory):
        workspace = signed_in_with_role(
            new_workspace, directory, "sup@school.example", Role.SUPERVISOR
        )

        assert len(workspace.report(today=date(2024, 3, 7))) == 8
