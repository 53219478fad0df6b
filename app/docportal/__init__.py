import logging
import os
from datetime import timedelta

from dotenv import load_dotenv
from flask import Flask, g, render_template, request, session

from app.docportal import models  # noqa: F401  (registers every table on Base.metadata)
from app.docportal.config import PRODUCTION_ENVS, load_config
from app.docportal.db import init_db, teardown_db_session
from app.docportal.routes import bp as routes_bp
from app.docportal.auth import bp as auth_bp, load_current_user
from app.docportal.admin import bp as admin_bp
from app.docportal.profile import bp as profile_bp
from app.docportal.modules.document_lifecycle.admin import bp as documents_bp
from app.docportal.modules.document_types.admin import bp as doc_types_bp

logger = logging.getLogger(__name__)


def create_app() -> Flask:
    load_dotenv()
    app = Flask(__name__, template_folder="templates", static_folder="static")
    app.config.from_mapping(load_config())
    app.config["PERMANENT_SESSION_LIFETIME"] = timedelta(hours=app.config["SESSION_HOURS"])
    app.config["SESSION_REFRESH_EACH_REQUEST"] = True

    from app.docportal.security import ensure_csrf_token, validate_csrf

    @app.context_processor
    def _inject_csrf() -> dict:
        return {"csrf_token": ensure_csrf_token()}

    @app.context_processor
    def _inject_permissions() -> dict:
        from app.docportal.rbac import user_can

        def can(capability: str) -> bool:
            return user_can(getattr(g, "current_user", None), getattr(g, "membership", None), capability)

        return {
            "can": can,
            "current_company": getattr(g, "company", None),
            "current_membership": getattr(g, "membership", None),
        }

    @app.context_processor
    def _inject_labels() -> dict:
        from app.docportal import constants

        return {
            "STATUS_LABELS": constants.DOCUMENT_STATUS_LABELS,
            "STAGE_LABELS": constants.VERSION_STAGE_LABELS,
            "STAGE_COLORS": constants.VERSION_STAGE_COLORS,
            "ROLE_LABELS": constants.COMPANY_ROLE_LABELS,
            "ROLE_COLORS": constants.COMPANY_ROLE_COLORS,
            "ACTION_LABELS": constants.DOCUMENT_ACTION_LABELS,
            "ACTION_COLORS": constants.DOCUMENT_ACTION_COLORS,
        }

    from app.docportal.utils import doc_type_label, format_datetime, risk_color, risk_label

    app.add_template_filter(format_datetime, "datetime")
    app.add_template_filter(risk_label, "risk_label")
    app.add_template_filter(risk_color, "risk_color")
    app.add_template_filter(doc_type_label, "doc_type_label")

    @app.before_request
    def _csrf_guard():
        if request.path.startswith(("/static/", "/health", "/healthz")):
            return None
        ensure_csrf_token()
        session.permanent = True
        if request.method in ("POST", "PUT", "PATCH", "DELETE"):
            # Login/logout pass through; the login form has no session yet.
            if (request.endpoint or "").startswith("auth."):
                return None
            if not validate_csrf(request):
                return render_template("errors/400.html", message="CSRF token missing or invalid."), 400

    # Production guardrails (fail fast with clear logs)
    env = (app.config.get("ENV") or "").strip().lower()
    if env in PRODUCTION_ENVS:
        if not app.config.get("DATABASE_URL") or str(app.config["DATABASE_URL"]).strip() == "":
            raise RuntimeError("DATABASE_URL is required in production.")
        if str(app.config["DATABASE_URL"]).startswith("sqlite"):
            raise RuntimeError("DATABASE_URL must be Postgres in production (not sqlite).")
        if not app.config.get("SECRET_KEY") or str(app.config["SECRET_KEY"]) in ("", "change-me"):
            raise RuntimeError("SECRET_KEY must be set to a strong value in production (not default).")

    init_db(app)

    def _dispose_engine_on_fork() -> None:
        if hasattr(os, "register_at_fork"):
            def _after_fork_child():
                engine = app.extensions.get("sqlalchemy_engine")
                if engine:
                    engine.dispose()
                    app.logger.info("Disposed DB engine after fork (pid=%s)", os.getpid())

            os.register_at_fork(after_in_child=_after_fork_child)

    _dispose_engine_on_fork()

    _check_storage(app)

    app.register_blueprint(routes_bp)
    app.register_blueprint(auth_bp, url_prefix="/auth")
    app.register_blueprint(admin_bp, url_prefix="/admin")
    app.register_blueprint(profile_bp, url_prefix="/profile")
    app.register_blueprint(documents_bp, url_prefix="/company/<slug>")
    app.register_blueprint(doc_types_bp, url_prefix="/company/<slug>/doc-types")

    app.before_request(load_current_user)
    app.teardown_appcontext(teardown_db_session)

    @app.errorhandler(400)
    def _err_400(e):  # type: ignore[no-redef]
        return render_template("errors/400.html", message=getattr(e, "description", None)), 400

    @app.errorhandler(403)
    def _err_403(e):  # type: ignore[no-redef]
        missing = getattr(g, "missing_permission", None)
        if missing:
            app.logger.warning("Forbidden: missing_permission=%s request_id=%s", missing, getattr(g, "request_id", None))
        return render_template("errors/403.html", missing_permission=missing), 403

    @app.errorhandler(404)
    def _err_404(e):  # type: ignore[no-redef]
        return render_template("errors/404.html"), 404

    @app.errorhandler(413)
    def _err_413(e):  # type: ignore[no-redef]
        from flask import flash, redirect, url_for

        limit_mb = (app.config.get("MAX_CONTENT_LENGTH") or 0) // (1024 * 1024)
        flash(f"File too large. Maximum size is {limit_mb}MB.", "danger")
        referrer = request.referrer
        if referrer and referrer.startswith(request.host_url):
            return redirect(referrer), 302
        return redirect(url_for("routes.index")), 302

    @app.errorhandler(500)
    def _err_500(e):  # type: ignore[no-redef]
        app.logger.exception("Unhandled 500 (request_id=%s)", getattr(g, "request_id", None))
        return render_template("errors/500.html"), 500

    logger.info("create_app() complete; app ready to serve")
    return app


def _check_storage(app: Flask) -> None:
    """Log storage misconfiguration at boot; uploads will fail until it is fixed."""
    from app.docportal.storage import S3_REQUIRED_KEYS, StorageError, storage_from_config

    if app.config.get("STORAGE_BACKEND") == "s3":
        missing = [key for key in S3_REQUIRED_KEYS if not app.config.get(key)]
        if missing:
            app.logger.error("STORAGE CONFIG ERROR: Missing required S3 env vars: %s", ", ".join(missing))
            return
    try:
        storage_from_config(app.config).check()
    except StorageError as e:
        app.logger.error("STORAGE CONFIG ERROR: %s", e)
        return
    app.logger.info("Storage health check passed (backend=%s)", app.config.get("STORAGE_BACKEND"))
