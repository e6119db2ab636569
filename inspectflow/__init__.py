"""
InspectFlow
Flask Application Factory.

Usage:
    from inspectflow import create_app
    app = create_app()           # defaults to "development"
    app = create_app("testing")  # explicit config
"""

import logging
import os

import click
from flask import Flask
from flask_cors import CORS
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address
from flask_migrate import Migrate
from sqlalchemy import engine as _sa_engine
from sqlalchemy import event as _sa_event

from inspectflow.config import config
from inspectflow.core.exceptions import (
    ConcurrencyConflictError,
    ConflictError,
    NotFoundError,
    PermissionDeniedError,
    PersistenceError,
    ProtectedRoleError,
    ValidationError,
)
from inspectflow.middleware.jwt_auth import init_jwt_middleware
from inspectflow.middleware.logging_config import configure_logging
from inspectflow.middleware.rate_limiter import init_rate_limits
from inspectflow.middleware.timing import init_request_timing
from inspectflow.models import db
from inspectflow.services.permission_cache import init_permission_cache
from inspectflow.utils.errors import E, api_error

logger = logging.getLogger(__name__)


# ── SQLite FK enforcement (global engine event) ─────────────────────────
@_sa_event.listens_for(_sa_engine.Engine, "connect")
def _enable_sqlite_fk(dbapi_conn, connection_record):
    """Enable foreign key enforcement for SQLite connections."""
    if "sqlite" in type(dbapi_conn).__module__:
        cursor = dbapi_conn.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()


migrate = Migrate()
limiter = Limiter(
    key_func=get_remote_address,
    default_limits=[],                     # per-blueprint limits only
)


def _register_error_handlers(app):
    @app.errorhandler(NotFoundError)
    def _not_found(error):
        logger.info("Not found: %s", error)
        return api_error(E.NOT_FOUND, f"{error.resource} not found")

    @app.errorhandler(ValidationError)
    def _validation(error):
        return api_error(E.VALIDATION_CONSTRAINT, str(error), details=error.details)

    @app.errorhandler(PermissionDeniedError)
    def _forbidden(error):
        return api_error(E.FORBIDDEN, str(error), details={"required": error.permission})

    @app.errorhandler(ProtectedRoleError)
    def _protected_role(error):
        return api_error(E.FORBIDDEN, str(error), details={"role": error.role_name, "is_system": True})

    @app.errorhandler(ConflictError)
    def _conflict(error):
        return api_error(E.CONFLICT_DUPLICATE, str(error), details={"field": error.field})

    @app.errorhandler(ConcurrencyConflictError)
    def _version_conflict(error):
        return api_error(
            E.CONFLICT_VERSION,
            "Inspection was modified by another request; reload and retry",
            details={
                "inspection_id": error.inspection_id,
                "expected_version": error.expected_version,
                "actual_version": error.actual_version,
            },
        )

    @app.errorhandler(PersistenceError)
    def _persistence(error):
        return api_error(E.DATABASE, str(error) or "Temporary storage failure; please retry")

    @app.errorhandler(404)
    def _route_not_found(e):
        return api_error(E.NOT_FOUND, "Not found")

    @app.errorhandler(405)
    def _method_not_allowed(e):
        return {"error": "Method not allowed"}, 405

    @app.errorhandler(429)
    def _rate_limited(e):
        return {"error": "Too many requests", "retry_after": e.description}, 429

    @app.errorhandler(500)
    def _server_error(e):
        logger.error("500 error: %s", e, exc_info=True)
        return api_error(E.INTERNAL, "Internal server error")


def _register_cli(app):
    @app.cli.command("seed-permissions")
    def seed_permissions_cmd():
        """Seed the default permission catalogue and role mapping."""
        from inspectflow.services.permission_service import seed_default_permissions
        created = seed_default_permissions()
        click.echo(
            f"Seeded {created['permissions']} permissions, {created['roles']} roles, "
            f"{created['mappings']} role mappings."
        )

    @app.cli.command("seed-rules")
    def seed_rules_cmd():
        """Seed the default global business rules."""
        from inspectflow.services.business_rules import seed_default_rules
        count = seed_default_rules()
        click.echo(f"Seeded {count} new business rules.")

    @app.cli.command("purge-transition-history")
    @click.option("--days", type=int, required=True, help="Delete history rows older than N days.")
    def purge_history_cmd(days):
        """Retention job for inspection_state_history."""
        from inspectflow.services.workflow_service import purge_transition_history
        deleted = purge_transition_history(days)
        click.echo(f"Deleted {deleted} transition history rows.")


def create_app(config_name=None):
    """
    Create and configure the Flask application.

    Args:
        config_name: Configuration environment name.
                     One of: "development", "testing", "production".
                     Defaults to APP_ENV env var, or "development" if unset.

    Returns:
        Configured Flask application instance.
    """
    if config_name is None:
        config_name = os.getenv("APP_ENV", "development")

    app = Flask(__name__, instance_relative_config=True)
    app.config.from_object(config[config_name]())

    # ── Structured logging (must be first) ───────────────────────────────
    configure_logging(app)

    # ── Extensions ───────────────────────────────────────────────────────
    db.init_app(app)
    migrate.init_app(app, db)
    limiter.init_app(app)
    cors_origins = app.config.get("CORS_ORIGINS", "*")
    if cors_origins and cors_origins != "*":
        CORS(app, origins=[o.strip() for o in cors_origins.split(",") if o.strip()])
    else:
        CORS(app)
    init_permission_cache(app)

    # ── Request timing + JWT actor ───────────────────────────────────────
    init_request_timing(app)
    init_jwt_middleware(app)

    app.config.setdefault("MAX_CONTENT_LENGTH", 1 * 1024 * 1024)  # 1 MB

    # ── Import all models so Alembic can detect them ─────────────────────
    from inspectflow.models import audit as _audit_models            # noqa: F401
    from inspectflow.models import auth as _auth_models              # noqa: F401
    from inspectflow.models import inspection as _inspection_models  # noqa: F401
    from inspectflow.models import rules as _rules_models            # noqa: F401
    from inspectflow.models import shop as _shop_models              # noqa: F401

    # ── Blueprints ───────────────────────────────────────────────────────
    from inspectflow.blueprints.audit_bp import audit_bp
    from inspectflow.blueprints.health_bp import health_bp
    from inspectflow.blueprints.inspection_bp import inspection_bp
    from inspectflow.blueprints.permission_bp import permission_bp
    from inspectflow.blueprints.rule_bp import rule_bp

    app.register_blueprint(audit_bp)
    app.register_blueprint(health_bp)
    app.register_blueprint(inspection_bp)
    app.register_blueprint(permission_bp)
    app.register_blueprint(rule_bp)

    _register_error_handlers(app)
    _register_cli(app)

    # ── Rate limiting (after blueprints registered) ──────────────────────
    init_rate_limits(app, limiter)

    return app
