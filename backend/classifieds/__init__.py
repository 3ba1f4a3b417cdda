import json
import os

import click
from flask import Flask, g, jsonify, request
from sqlalchemy import text
from werkzeug.exceptions import HTTPException

from classifieds.errors import ApiError
from classifieds.extensions import cors, db, migrate
from classifieds.models import User
from classifieds.segments.segment_admin_listings import admin_listings_bp
from classifieds.segments.segment_listings import listings_bp
from classifieds.utils.jwt_utils import decode_token, get_bearer_token
from classifieds.utils.observability import init_otel, init_sentry, install_request_observers
from classifieds.utils.settings import _env_bool, _env_int, app_env


def _error_payload(status: int, error, message: str) -> dict:
    payload = {"ok": False, "error": error, "message": message, "status": int(status)}
    rid = (getattr(g, "request_id", "") or "").strip()
    if rid:
        payload["trace_id"] = rid
    return payload


def create_app():
    app = Flask(__name__)
    init_sentry(app)

    env = app_env()

    # Production safety checks
    if env in ("prod", "production"):
        secret = (os.getenv("SECRET_KEY") or "").strip()
        if not secret or len(secret) < 16:
            raise RuntimeError("SECRET_KEY must be set and at least 16 chars in production")
        if not (os.getenv("DATABASE_URL") or "").strip() and not (os.getenv("SQLALCHEMY_DATABASE_URI") or "").strip():
            raise RuntimeError("DATABASE_URL (or SQLALCHEMY_DATABASE_URI) must be set in production")

    app.config["SECRET_KEY"] = os.getenv("SECRET_KEY", "dev-secret")
    app.config["SQLALCHEMY_TRACK_MODIFICATIONS"] = False

    database_url = os.getenv("SQLALCHEMY_DATABASE_URI") or os.getenv("DATABASE_URL")
    if not database_url:
        instance_dir = os.path.abspath(os.path.join(os.path.dirname(__file__), "..", "instance"))
        os.makedirs(instance_dir, exist_ok=True)
        database_url = f"sqlite:///{os.path.join(instance_dir, 'classifieds.db').replace(os.sep, '/')}"
    app.config["SQLALCHEMY_DATABASE_URI"] = database_url
    engine_options = {
        "pool_pre_ping": True,
        "pool_recycle": _env_int("DB_POOL_RECYCLE_SECONDS", 1800, minimum=60, maximum=86400),
    }
    if not database_url.startswith("sqlite://"):
        engine_options.update(
            {
                "pool_size": _env_int("DB_POOL_SIZE", 10, minimum=1, maximum=200),
                "max_overflow": _env_int("DB_MAX_OVERFLOW", 20, minimum=0, maximum=500),
                "pool_timeout": _env_int("DB_POOL_TIMEOUT_SECONDS", 30, minimum=1, maximum=300),
            }
        )
        app.logger.info(
            "db_pooling_enabled pool_size=%s max_overflow=%s pool_timeout=%s pool_recycle=%s",
            engine_options["pool_size"],
            engine_options["max_overflow"],
            engine_options["pool_timeout"],
            engine_options["pool_recycle"],
        )
    app.config["SQLALCHEMY_ENGINE_OPTIONS"] = engine_options

    cors_origins = (os.getenv("CORS_ORIGINS") or "").strip()
    if env in ("prod", "production"):
        origins = [o.strip() for o in cors_origins.split(",") if o.strip()]
    else:
        origins = ["*"] if not cors_origins else [o.strip() for o in cors_origins.split(",") if o.strip()]
    cors.init_app(app, resources={r"/api/*": {"origins": origins}})

    db.init_app(app)
    migrate.init_app(app, db, directory=os.path.join(os.path.dirname(os.path.dirname(__file__)), "migrations"))
    install_request_observers(app)
    with app.app_context():
        init_otel(app, enabled=_env_bool("OTEL_ENABLED", False))

    @app.errorhandler(ApiError)
    def _api_error(error: ApiError):
        return jsonify(_error_payload(error.status_code, error.to_dict(), error.message)), error.status_code

    @app.errorhandler(HTTPException)
    def _api_http_exception(error: HTTPException):
        # Keep API failures JSON-only for predictable client handling.
        if not request.path.startswith("/api/"):
            return error
        status = int(error.code or 500)
        body = _error_payload(status, {"code": error.name.upper().replace(" ", "_"), "message": error.description or error.name},
                              error.description or error.name)
        return jsonify(body), status

    @app.errorhandler(Exception)
    def _api_unhandled_exception(error: Exception):
        app.logger.exception("unhandled_exception path=%s", request.path)
        db.session.rollback()
        body = _error_payload(500, {"code": "INTERNAL_SERVER_ERROR", "message": "Internal server error"},
                              "Internal server error")
        return jsonify(body), 500

    @app.before_request
    def _capture_auth_context():
        g.auth_user_id = None
        g.auth_role = None
        token = get_bearer_token(request.headers.get("Authorization", ""))
        if not token:
            return
        payload = decode_token(token)
        if not payload:
            return
        try:
            uid = int(payload.get("sub"))
        except (TypeError, ValueError):
            return
        user = db.session.get(User, uid)
        if user is None:
            return
        g.auth_user_id = uid
        g.auth_role = (user.role or "user").strip().lower()

    @app.teardown_request
    def _cleanup_db_session(exc):
        try:
            if exc is not None:
                db.session.rollback()
        finally:
            db.session.remove()

    app.register_blueprint(listings_bp)
    app.register_blueprint(admin_listings_bp)

    @app.get("/api/health")
    def health():
        db_state = "ok"
        db_error = None
        try:
            with db.engine.connect() as conn:
                conn.execute(text("SELECT 1"))
        except Exception as e:
            db_state = "fail"
            db_error = str(e)[:300]
        payload = {"ok": True, "service": "classifieds-backend", "env": env, "db": db_state}
        if db_error:
            payload["db_error"] = db_error
        return jsonify(payload)

    @app.cli.command("search-init")
    def search_init():
        """Create the listings index and apply its settings."""
        from classifieds.services.search.meili_client import SearchUnavailable
        from classifieds.services.search.synchronizer import SearchSynchronizer

        try:
            result = SearchSynchronizer().init_index()
        except SearchUnavailable as exc:
            raise click.ClickException(f"search_init_failed: {exc}")
        click.echo(json.dumps({"ok": True, **result}))

    @app.cli.command("search-reconcile")
    @click.option("--page-size", "page_size", type=int, default=None, help="Listings per batch")
    @click.option("--prune", is_flag=True, default=False, help="Also delete index documents with no listing")
    def search_reconcile(page_size, prune):
        """Re-project every listing into the search index."""
        from classifieds.services.search.meili_client import SearchUnavailable
        from classifieds.services.search.synchronizer import SearchSynchronizer

        try:
            report = SearchSynchronizer().reconcile_all(page_size, prune=prune)
        except SearchUnavailable as exc:
            raise click.ClickException(f"search_reconcile_failed: {exc}")
        click.echo(json.dumps(report.to_dict()))
        if report.failed:
            raise SystemExit(2)

    @app.cli.command("expire-listings")
    @click.option("--max-run-seconds", "max_run_seconds", type=float, default=None)
    def expire_listings(max_run_seconds):
        """Expire active listings past their expiry time."""
        from classifieds.jobs.listing_expiry import run_listing_expiry

        result = run_listing_expiry(max_run_seconds=max_run_seconds)
        click.echo(json.dumps(result))
        if not result.get("ok"):
            raise SystemExit(2)

    return app
