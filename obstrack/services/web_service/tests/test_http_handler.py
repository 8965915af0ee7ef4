"""Tests for Web Service HTTP handler."""
import json
from unittest.mock import MagicMock

import pytest

from obstrack.shared.store import InMemoryDocumentStore
from obstrack.shared.utils import configure_pii_salt
from obstrack.services.web_service import AppConfig
from obstrack.services.web_service import http_handler
from obstrack.services.web_service.http_handler import create_app

SALT = "test_salt_that_is_at_least_32_characters_long"


@pytest.fixture(autouse=True)
def setup_pii_salt():
    """Configure PII salt before each test."""
    configure_pii_salt(SALT)


@pytest.fixture
def app():
    app = create_app(AppConfig(pii_hash_salt=SALT), store=InMemoryDocumentStore())
    app.config['TESTING'] = True
    return app


@pytest.fixture
def client(app):
    """Create Flask test client."""
    with app.test_client() as client:
        yield client


@pytest.fixture
def directory(app):
    return app.extensions["obstrack"].directory


def open_session(client) -> str:
    response = client.post('/sessions')
    assert response.status_code == 201
    return json.loads(response.data)['session_id']


def staff_session(client, directory, email, role) -> str:
    sid = open_session(client)
    client.post(f'/sessions/{sid}/sign-up', json={'email': email, 'password': 'secret123'})
    directory.mark_verified(email)
    client.post(f'/sessions/{sid}/refresh-verification')
    response = client.post(f'/sessions/{sid}/role', json={'role': role})
    assert response.status_code == 201
    return sid


class TestAppFactory:
    """Tests for building the app."""

    def test_import_builds_no_app(self):
        assert not hasattr(http_handler, "app")

    def test_each_app_gets_its_own_store(self):
        first = create_app(AppConfig(pii_hash_salt=SALT))
        second = create_app(AppConfig(pii_hash_salt=SALT))

        assert first.extensions["obstrack"].store is not second.extensions["obstrack"].store


class TestHealthEndpoint:
    """Tests for /health endpoint."""

    def test_health_returns_200(self, client):
        response = client.get('/health')
        assert response.status_code == 200
        data = json.loads(response.data)
        assert data['status'] == 'healthy'
        assert data['service'] == 'web-service'


class TestReadyEndpoint:
    """Tests for /ready endpoint."""

    def test_ready_returns_200(self, client):
        response = client.get('/ready')
        assert response.status_code == 200
        assert json.loads(response.data)['store'] == 'memory'

    def test_ready_reports_database_outage(self, app, client):
        manager = MagicMock()
        manager.health_check.return_value = {"status": "error", "healthy": False, "error": "down"}
        app.extensions["obstrack"].connection_manager = manager

        response = client.get('/ready')

        assert response.status_code == 503

    def test_ready_with_reachable_database(self, app, client):
        manager = MagicMock()
        manager.health_check.return_value = {"status": "connected", "healthy": True, "documents": 3}
        app.extensions["obstrack"].connection_manager = manager

        response = client.get('/ready')

        assert response.status_code == 200


class TestSessionEndpoints:
    """Tests for the authentication flow."""

    def test_open_session_bootstraps_anonymously(self, client):
        response = client.post('/sessions')

        data = json.loads(response.data)
        assert data['state'] == 'authenticated'
        assert data['anonymous'] is True
        assert data['route']['screen'] == 'verify-email'

    def test_sign_up_verify_choose_role(self, client, directory):
        sid = open_session(client)

        response = client.post(
            f'/sessions/{sid}/sign-up',
            json={'email': 'a@b.com', 'password': 'secret123'},
        )
        assert response.status_code == 201
        assert json.loads(response.data)['route']['screen'] == 'verify-email'
        assert directory.sent_verifications == ['a@b.com']

        directory.mark_verified('a@b.com')
        response = client.post(f'/sessions/{sid}/refresh-verification')
        assert json.loads(response.data)['route']['screen'] == 'role-selection'

        response = client.post(f'/sessions/{sid}/role', json={'role': 'manager'})
        assert response.status_code == 201
        assert json.loads(response.data)['route']['screen'] == 'dashboard'

        response = client.post(f'/sessions/{sid}/role', json={'role': 'deputy'})
        assert response.status_code == 409
        assert json.loads(response.data)['error']['kind'] == 'role_already_assigned'
        assert json.loads(client.get(f'/sessions/{sid}').data)['role'] == 'manager'

    def test_session_lists_screens_for_role(self, client, directory):
        sid = open_session(client)
        assert json.loads(client.get(f'/sessions/{sid}').data)['screens'] == []

        sid = staff_session(client, directory, 'dep@school.example', 'deputy')

        screens = json.loads(client.get(f'/sessions/{sid}').data)['screens']
        assert screens == [
            'absence-fixing', 'access-denied', 'attendance-100', 'dashboard', 'reports',
        ]

    def test_role_before_verification_is_403(self, client):
        sid = open_session(client)
        client.post(f'/sessions/{sid}/sign-up', json={'email': 'a@b.com', 'password': 'secret123'})

        response = client.post(f'/sessions/{sid}/role', json={'role': 'manager'})

        assert response.status_code == 403
        assert json.loads(response.data)['error']['kind'] == 'not_verified'

    def test_weak_password_is_400(self, client):
        sid = open_session(client)

        response = client.post(f'/sessions/{sid}/sign-up', json={'email': 'a@b.com', 'password': '123'})

        assert response.status_code == 400
        assert json.loads(response.data)['error']['kind'] == 'weak_password'

    def test_bad_credentials_is_400(self, client):
        sid = open_session(client)

        response = client.post(f'/sessions/{sid}/sign-in', json={'email': 'a@b.com', 'password': 'nope'})

        assert response.status_code == 400
        assert json.loads(response.data)['error']['kind'] == 'invalid_credentials'

    def test_missing_field_is_400(self, client):
        sid = open_session(client)

        response = client.post(f'/sessions/{sid}/sign-in', json={'email': 'a@b.com'})

        assert response.status_code == 400

    def test_sign_out_returns_to_login(self, client, directory):
        sid = staff_session(client, directory, 'dep@school.example', 'deputy')

        response = client.post(f'/sessions/{sid}/sign-out')

        data = json.loads(response.data)
        assert data['signed_out'] is True
        assert data['route']['screen'] == 'login'
        assert data['role'] is None

    def test_unknown_session_is_404(self, client):
        response = client.post('/sessions/missing/sign-out')
        assert response.status_code == 404

    def test_close_session(self, client):
        sid = open_session(client)

        assert client.delete(f'/sessions/{sid}').status_code == 200
        assert client.get(f'/sessions/{sid}').status_code == 404


class TestRouteEndpoint:
    """Tests for screen resolution over HTTP."""

    def test_access_denied_keeps_flag(self, client, directory):
        sid = staff_session(client, directory, 'dep@school.example', 'deputy')

        response = client.get(f'/sessions/{sid}/route?screen=complaints')

        assert json.loads(response.data) == {'screen': 'access-denied', 'access_granted': False}

    def test_unknown_screen_is_400(self, client, directory):
        sid = staff_session(client, directory, 'dep@school.example', 'deputy')

        assert client.get(f'/sessions/{sid}/route?screen=cafeteria').status_code == 400


class TestObservationEndpoints:
    """Tests for observation upserts and listings."""

    def test_upsert_and_list(self, client, directory):
        sid = staff_session(client, directory, 'dep@school.example', 'deputy')

        response = client.put(
            f'/sessions/{sid}/observations/absence-fixing/2024-03-05',
            json={'confirmed': True, 'absent_count': 12},
        )
        assert response.status_code == 200

        data = json.loads(client.get(
            f'/sessions/{sid}/observations/absence-fixing?today=2024-03-05'
        ).data)
        assert data['records'][0]['payload']['absent_count'] == 12
        assert data['threshold_alert'] is False
        assert data['threshold_rate'] == 2.2
        assert data['month_to_date_rate'] == 33.3

    def test_list_rejects_bad_date(self, client, directory):
        sid = staff_session(client, directory, 'dep@school.example', 'deputy')

        response = client.get(f'/sessions/{sid}/observations/absence-fixing?today=soon')

        assert response.status_code == 400

    def test_wrong_role_is_403(self, client, directory):
        sid = staff_session(client, directory, 'dep@school.example', 'deputy')

        response = client.put(
            f'/sessions/{sid}/observations/complaints/2024-03-03',
            json={'raised': 1},
        )

        assert response.status_code == 403

    def test_invalid_bucket_is_400(self, client, directory):
        sid = staff_session(client, directory, 'dep@school.example', 'deputy')

        response = client.put(
            f'/sessions/{sid}/observations/absence-fixing/March',
            json={'confirmed': True},
        )

        assert response.status_code == 400

    def test_unknown_type_is_404(self, client, directory):
        sid = staff_session(client, directory, 'sup@school.example', 'supervisor')

        assert client.get(f'/sessions/{sid}/observations/cafeteria').status_code == 404

    def test_append_incident(self, client, directory):
        sid = staff_session(client, directory, 'guide@school.example', 'student_guide')

        response = client.post(
            f'/sessions/{sid}/observations/behavioral-issues/2024-03-05/entries',
            json={'student_name': 'Student A', 'issue_count': 2, 'action_taken': 'verbal_warning'},
        )

        assert response.status_code == 201
        assert json.loads(response.data)['payload']['issue_count'] == 2


class TestApprovalEndpoints:
    """Tests for the attendance approval flow across two clients."""

    def test_request_then_approve(self, client, directory):
        deputy = staff_session(client, directory, 'dep@school.example', 'deputy')
        boss = staff_session(client, directory, 'boss@school.example', 'manager')

        response = client.post(
            f'/sessions/{deputy}/observations/attendance-100/requests',
            json={'bucket_key': '2024-03-05'},
        )
        assert response.status_code == 201
        record_id = json.loads(response.data)['id']

        duplicate = client.post(
            f'/sessions/{deputy}/observations/attendance-100/requests',
            json={'bucket_key': '2024-03-05'},
        )
        assert duplicate.status_code == 409

        response = client.post(
            f'/sessions/{boss}/observations/attendance-100/requests/{record_id}/decision',
            json={'decision': 'Approved'},
        )
        assert response.status_code == 200
        assert json.loads(response.data)['request_status'] == 'Approved'

        again = client.post(
            f'/sessions/{boss}/observations/attendance-100/requests/{record_id}/decision',
            json={'decision': 'Rejected'},
        )
        assert again.status_code == 409

    def test_deputy_cannot_decide(self, client, directory):
        deputy = staff_session(client, directory, 'dep@school.example', 'deputy')
        response = client.post(
            f'/sessions/{deputy}/observations/attendance-100/requests',
            json={'bucket_key': '2024-03-05'},
        )
        record_id = json.loads(response.data)['id']

        response = client.post(
            f'/sessions/{deputy}/observations/attendance-100/requests/{record_id}/decision',
            json={'decision': True},
        )

        assert response.status_code == 403

    def test_unknown_request_is_404(self, client, directory):
        boss = staff_session(client, directory, 'boss@school.example', 'manager')

        response = client.post(
            f'/sessions/{boss}/observations/attendance-100/requests/nope/decision',
            json={'decision': 'Approved'},
        )

        assert response.status_code == 404


class TestReportEndpoint:
    """Tests for /reports."""

    def test_report_for_manager(self, client, directory):
        sid = staff_session(client, directory, 'boss@school.example', 'manager')

        response = client.get(f'/sessions/{sid}/reports?today=2024-03-07')

        assert response.status_code == 200
        assert len(json.loads(response.data)['cards']) == 8

    def test_bad_date_is_400(self, client, directory):
        sid = staff_session(client, directory, 'boss@school.example', 'manager')

        assert client.get(f'/sessions/{sid}/reports?today=yesterday').status_code == 400


class TestStoreOutage:
    """Store failures surface as 503."""

    def test_write_failure(self, app, client, directory):
        sid = staff_session(client, directory, 'dep@school.example', 'deputy')
        app.extensions["obstrack"].store.fail_writes = True

        response = client.put(
            f'/sessions/{sid}/observations/absence-fixing/2024-03-05',
            json={'confirmed': True},
        )

        assert response.status_code == 503
