"""Web Service HTTP handler - one workspace per client session.

Each client opens a session with POST /sessions and drives it through the
same operations a browser tab would: sign in, verify, pick a role, open
observation screens, record observations and decide approvals.

Domain errors are answered as {"error": {"kind", "message"}}; anything else
is logged with an *_ERROR event and answered with 500.

Nothing is built at import time; servers call create_app(), e.g.
`flask --app obstrack.services.web_service.http_handler run`.
"""
import logging
import threading
import uuid
from dataclasses import dataclass, field
from datetime import date
from functools import wraps
from typing import Dict, Optional

from flask import Flask, jsonify, request

from obstrack.shared.errors import (
    AccessDeniedError,
    AuthError,
    DuplicateRequestError,
    NotVerifiedError,
    ObstrackError,
    RecordNotFoundError,
    StoreError,
    TerminalStateError,
    ValidationError,
)
from obstrack.shared.store import (
    ConnectionManager,
    DatabaseConfig,
    DocumentStore,
    InMemoryDocumentStore,
    PostgresDocumentStore,
    StorePaths,
)
from obstrack.shared.utils import configure_pii_salt
from obstrack.services.screen_service import screens_for
from obstrack.services.session_service import (
    CognitoIdentityGateway,
    IdentityGateway,
    InMemoryIdentityDirectory,
    InMemoryIdentityGateway,
)
from .config import AppConfig
from .workspace import ClientWorkspace

logger = logging.getLogger(__name__)

DEV_PII_SALT = "default_dev_salt_change_in_production_32chars"

ERROR_STATUS = (
    (AuthError, 400),
    (ValidationError, 400),
    (NotVerifiedError, 403),
    (AccessDeniedError, 403),
    (RecordNotFoundError, 404),
    (DuplicateRequestError, 409),
    (TerminalStateError, 409),
    (StoreError, 503),
)


@dataclass
class WebServices:
    """Process-wide collaborators shared by every client session."""
    config: AppConfig
    store: DocumentStore
    paths: StorePaths
    directory: Optional[InMemoryIdentityDirectory] = None
    connection_manager: Optional[ConnectionManager] = None
    workspaces: Dict[str, ClientWorkspace] = field(default_factory=dict)
    lock: threading.Lock = field(default_factory=threading.Lock)

    def new_gateway(self) -> IdentityGateway:
        if self.config.identity_backend == "cognito":
            return CognitoIdentityGateway(
                client_id=self.config.cognito_client_id,
                user_pool_id=self.config.cognito_user_pool_id,
                identity_pool_id=self.config.cognito_identity_pool_id,
                region=self.config.aws_region,
            )
        return InMemoryIdentityGateway(self.directory)

    def open_workspace(self, initial_token: Optional[str] = None) -> str:
        workspace = ClientWorkspace(
            self.store,
            self.paths,
            self.new_gateway(),
            initial_token=initial_token or self.config.initial_auth_token,
            total_students=self.config.total_students,
            absence_threshold=self.config.absence_threshold,
        )
        session_id = uuid.uuid4().hex
        with self.lock:
            self.workspaces[session_id] = workspace
        workspace.start()
        return session_id

    def workspace(self, session_id: str) -> ClientWorkspace:
        with self.lock:
            workspace = self.workspaces.get(session_id)
        if workspace is None:
            raise RecordNotFoundError(f"Unknown session: {session_id}")
        return workspace

    def close_workspace(self, session_id: str) -> None:
        with self.lock:
            workspace = self.workspaces.pop(session_id, None)
        if workspace is None:
            raise RecordNotFoundError(f"Unknown session: {session_id}")
        workspace.close()


def build_services(
    config: AppConfig,
    store: Optional[DocumentStore] = None,
    directory: Optional[InMemoryIdentityDirectory] = None,
) -> WebServices:
    """Create the shared store and identity directory for config."""
    connection_manager = None
    if store is None:
        if config.store_backend == "postgres":
            connection_manager = ConnectionManager(DatabaseConfig.from_env())
            connection_manager.initialize()
            store = PostgresDocumentStore(connection_manager)
        else:
            store = InMemoryDocumentStore()

    if config.identity_backend == "memory" and directory is None:
        directory = InMemoryIdentityDirectory()

    return WebServices(
        config=config,
        store=store,
        paths=StorePaths(config.app_id),
        directory=directory,
        connection_manager=connection_manager,
    )


def error_response(error: ObstrackError, status: Optional[int] = None, kind: Optional[str] = None):
    if status is None:
        status = 500
        for error_type, error_status in ERROR_STATUS:
            if isinstance(error, error_type):
                status = error_status
                break
    body = error.to_dict()
    if kind:
        body["kind"] = kind
    return jsonify({"error": body}), status


def handles(event: str):
    """Answer domain errors as JSON and log anything else as {event}_ERROR."""
    def decorator(view):
        @wraps(view)
        def wrapper(*args, **kwargs):
            try:
                return view(*args, **kwargs)
            except ObstrackError as e:
                logger.info(
                    f"{event}_REJECTED",
                    extra={"error_type": type(e).__name__, "kind": e.kind}
                )
                return error_response(e)
            except Exception as e:
                logger.error(f"{event}_ERROR", extra={"error": str(e)})
                return jsonify({"error": {"kind": "internal", "message": "Request failed"}}), 500
        return wrapper
    return decorator


def _body() -> dict:
    data = request.get_json(silent=True)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValidationError("Request body must be a JSON object")
    return data


def _required(data: dict, name: str):
    value = data.get(name)
    if value is None or value == "":
        raise ValidationError(f"Missing required field: {name}")
    return value


def _today_arg() -> Optional[date]:
    today = request.args.get("today")
    try:
        return date.fromisoformat(today) if today else None
    except ValueError:
        raise ValidationError(f"Invalid date: {today}")


def session_view(workspace: ClientWorkspace) -> dict:
    principal = workspace.principal
    role = workspace.roles.role
    return {
        "state": workspace.session.state.value,
        "verified": workspace.session.email_verified,
        "anonymous": principal.is_anonymous if principal else None,
        "role": role.value if role else None,
        "screens": sorted(screen.value for screen in screens_for(role)) if role else [],
        "route": workspace.route().to_dict(),
        "error": workspace.session.last_error.to_dict() if workspace.session.last_error else None,
    }


def create_app(
    config: Optional[AppConfig] = None,
    store: Optional[DocumentStore] = None,
    directory: Optional[InMemoryIdentityDirectory] = None,
) -> Flask:
    """Build the Flask app.

    Args:
        config: Deployment settings; read from the environment when omitted
        store: Document store to share; built from config when omitted
        directory: In-memory identity directory to share (memory backend)

    Returns:
        Configured Flask app; shared collaborators in app.extensions["obstrack"]
    """
    config = config or AppConfig.from_env()
    if not config.pii_hash_salt:
        logger.warning("PII_SALT_DEFAULTED", extra={"reason": "PII_HASH_SALT not set"})
    configure_pii_salt(config.pii_hash_salt or DEV_PII_SALT)

    services = build_services(config, store=store, directory=directory)
    app = Flask(__name__)
    app.extensions["obstrack"] = services

    @app.route("/health", methods=["GET"])
    def health():
        """Health check endpoint for ECS/ALB."""
        return jsonify({
            "status": "healthy",
            "service": "web-service",
        }), 200

    @app.route("/ready", methods=["GET"])
    def ready():
        """Readiness check - verifies the document store is reachable."""
        if services.connection_manager is not None:
            health = services.connection_manager.health_check()
            if not health.get("healthy"):
                return jsonify({"status": "not_ready", "reason": "database_unavailable"}), 503
        return jsonify({"status": "ready", "store": config.store_backend}), 200

    @app.route("/sessions", methods=["POST"])
    @handles("SESSION_OPEN")
    def open_session():
        data = _body()
        session_id = services.open_workspace(initial_token=data.get("token"))
        workspace = services.workspace(session_id)
        logger.info("SESSION_OPENED", extra={"state": workspace.session.state.value})
        return jsonify({"session_id": session_id, **session_view(workspace)}), 201

    @app.route("/sessions/<session_id>", methods=["GET"])
    @handles("SESSION_GET")
    def get_session(session_id: str):
        return jsonify(session_view(services.workspace(session_id))), 200

    @app.route("/sessions/<session_id>", methods=["DELETE"])
    @handles("SESSION_CLOSE")
    def close_session(session_id: str):
        services.close_workspace(session_id)
        logger.info("SESSION_CLOSED")
        return jsonify({"closed": True}), 200

    @app.route("/sessions/<session_id>/sign-in", methods=["POST"])
    @handles("SIGN_IN")
    def sign_in(session_id: str):
        workspace = services.workspace(session_id)
        data = _body()
        email, password = _required(data, "email"), _required(data, "password")
        result = workspace.run(lambda: workspace.session.sign_in(email, password))
        if not result.ok:
            return error_response(result.error)
        return jsonify(session_view(workspace)), 200

    @app.route("/sessions/<session_id>/sign-up", methods=["POST"])
    @handles("SIGN_UP")
    def sign_up(session_id: str):
        workspace = services.workspace(session_id)
        data = _body()
        email, password = _required(data, "email"), _required(data, "password")
        result = workspace.run(lambda: workspace.session.sign_up(email, password))
        if not result.ok:
            return error_response(result.error)
        return jsonify(session_view(workspace)), 201

    @app.route("/sessions/<session_id>/sign-out", methods=["POST"])
    @handles("SIGN_OUT")
    def sign_out(session_id: str):
        workspace = services.workspace(session_id)
        signed_out = workspace.session.sign_out()
        return jsonify({"signed_out": signed_out, **session_view(workspace)}), 200

    @app.route("/sessions/<session_id>/refresh-verification", methods=["POST"])
    @handles("REFRESH_VERIFICATION")
    def refresh_verification(session_id: str):
        workspace = services.workspace(session_id)
        workspace.session.refresh_verification()
        return jsonify(session_view(workspace)), 200

    @app.route("/sessions/<session_id>/resend-verification", methods=["POST"])
    @handles("RESEND_VERIFICATION")
    def resend_verification(session_id: str):
        workspace = services.workspace(session_id)
        workspace.session.resend_verification()
        return jsonify({"sent": True}), 200

    @app.route("/sessions/<session_id>/role", methods=["POST"])
    @handles("ROLE_ASSIGN")
    def assign_role(session_id: str):
        workspace = services.workspace(session_id)
        data = _body()
        try:
            profile = workspace.assign_role(_required(data, "role"))
        except AccessDeniedError as e:
            return error_response(e, status=409, kind="role_already_assigned")
        return jsonify({"role": profile.role.value, **session_view(workspace)}), 201

    @app.route("/sessions/<session_id>/route", methods=["GET"])
    @handles("ROUTE")
    def route(session_id: str):
        workspace = services.workspace(session_id)
        screen = request.args.get("screen")
        if screen is not None:
            try:
                decision = workspace.navigate(screen)
            except ValueError:
                raise ValidationError(f"Unknown screen: {screen}")
        else:
            decision = workspace.route()
        return jsonify(decision.to_dict()), 200

    @app.route("/sessions/<session_id>/observations/<observation>", methods=["GET"])
    @handles("OBSERVATION_LIST")
    def list_observations(session_id: str, observation: str):
        workspace = services.workspace(session_id)
        return jsonify(workspace.observation_view(observation, today=_today_arg())), 200

    @app.route(
        "/sessions/<session_id>/observations/<observation>/<bucket_key>",
        methods=["PUT"],
    )
    @handles("OBSERVATION_UPSERT")
    def upsert_observation(session_id: str, observation: str, bucket_key: str):
        workspace = services.workspace(session_id)
        manager = workspace.manager_for(observation)
        record = manager.upsert_for_bucket(bucket_key, _body())
        return jsonify(record.to_dict()), 200

    @app.route(
        "/sessions/<session_id>/observations/<observation>/<bucket_key>/entries",
        methods=["POST"],
    )
    @handles("OBSERVATION_APPEND")
    def append_entry(session_id: str, observation: str, bucket_key: str):
        workspace = services.workspace(session_id)
        manager = workspace.manager_for(observation)
        record = manager.append_entry(bucket_key, _body())
        return jsonify(record.to_dict()), 201

    @app.route("/sessions/<session_id>/observations/<observation>/requests", methods=["POST"])
    @handles("APPROVAL_REQUEST")
    def request_approval(session_id: str, observation: str):
        workspace = services.workspace(session_id)
        data = _body()
        workflow = workspace.approvals_for(observation)
        bucket_key = data.get("bucket_key") or workflow.manager.current_bucket_key()
        approval = workflow.request_approval(bucket_key)
        return jsonify(approval.to_dict()), 201

    @app.route(
        "/sessions/<session_id>/observations/<observation>/requests/<record_id>/decision",
        methods=["POST"],
    )
    @handles("APPROVAL_DECISION")
    def decide_approval(session_id: str, observation: str, record_id: str):
        workspace = services.workspace(session_id)
        data = _body()
        if "decision" not in data:
            raise ValidationError("Missing required field: decision")
        workflow = workspace.approvals_for(observation)
        approval = workflow.decide(record_id, None, data["decision"])
        return jsonify(approval.to_dict()), 200

    @app.route("/sessions/<session_id>/reports", methods=["GET"])
    @handles("REPORT")
    def report(session_id: str):
        workspace = services.workspace(session_id)
        return jsonify({"cards": workspace.report(today=_today_arg())}), 200

    return app


if __name__ == "__main__":
    settings = AppConfig.from_env()
    logging.basicConfig(level=settings.log_level)
    create_app(settings).run(host="0.0.0.0", port=settings.port)
