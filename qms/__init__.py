"""
Quality Management Backend
Flask Application Factory.

Usage:
    from qms import create_app
    app = create_app()           # defaults to APP_ENV or "development"
    app = create_app("testing")  # explicit config
"""

import logging
import os

import click
from flask import Flask
from flask_migrate import Migrate
from sqlalchemy import engine as _sa_engine
from sqlalchemy import event as _sa_event
from sqlalchemy.exc import OperationalError

from qms.config import config
from qms.core.exceptions import MissingClassificationRecord, NotFoundError
from qms.middleware.logging_config import configure_logging
from qms.models import db
from qms.utils.errors import DOMAIN_ERRORS, E, api_error, error_response

logger = logging.getLogger(__name__)

migrate = Migrate()


# ── SQLite FK enforcement (global engine event) ─────────────────────────
@_sa_event.listens_for(_sa_engine.Engine, "connect")
def _enable_sqlite_fk(dbapi_conn, connection_record):
    """Enable foreign key enforcement for SQLite connections."""
    if "sqlite" in type(dbapi_conn).__module__:
        cursor = dbapi_conn.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()


def _import_models():
    # Registers every table on db.metadata
    from qms.models import audit, auth, finding, notification, program  # noqa: F401


def _register_error_handlers(app):
    def handle_domain_error(e):
        if isinstance(e, MissingClassificationRecord):
            logger.error("%s", e)
        elif isinstance(e, NotFoundError):
            logger.info("%s", e, extra={"tenant_id": e.tenant_id})
        return error_response(e)

    for exc_cls in DOMAIN_ERRORS:
        app.register_error_handler(exc_cls, handle_domain_error)

    @app.errorhandler(405)
    def method_not_allowed(e):
        return api_error(E.VALIDATION_INVALID, "Method not allowed", status=405)

    @app.errorhandler(500)
    def server_error(e):
        logger.error("500 error: %s", e, exc_info=True)
        return api_error(E.INTERNAL, "Internal server error")


def _validate_permission_catalog(app):
    from qms.services.permission_catalog import check_catalog_integrity, validate_catalog

    problems = check_catalog_integrity()
    if problems:
        raise RuntimeError(f"Permission catalog is inconsistent: {'; '.join(problems)}")

    if not app.config.get("QMS_VALIDATE_CATALOG"):
        return
    with app.app_context():
        try:
            result = validate_catalog()
        except OperationalError:
            logger.warning("Permission catalog not validated: schema is not migrated yet", exc_info=True)
            return
    if result["missing"]:
        logger.warning("Run `flask sync-permissions` to provision %d missing permission(s)",
                       len(result["missing"]))


def _register_cli(app):
    @app.cli.command("sync-permissions")
    def sync_permissions_cmd():
        """Provision every catalog permission and grant new ones to default roles."""
        from qms.services.provisioning_service import sync_permission_catalog

        summary = sync_permission_catalog()
        click.echo(f"{len(summary['created'])} permission(s) created, {summary['grants']} grant(s) added.")

    @app.cli.command("onboard-tenant")
    @click.argument("name")
    @click.argument("domain")
    def onboard_tenant_cmd(name, domain):
        """Create a tenant with its default roles."""
        from qms.services.provisioning_service import onboard_tenant

        tenant = onboard_tenant(name, domain)
        click.echo(f"Tenant {tenant.domain} created with id {tenant.id}.")

    @app.cli.command("check-classifications")
    @click.option("--tenant-id", type=int, default=None, help="Limit the check to one tenant.")
    @click.option("--repair", is_flag=True, help="Create the missing records.")
    def check_classifications_cmd(tenant_id, repair):
        """Report categorized findings missing their classification record."""
        from qms.services.finding_service import (
            find_classification_drift,
            repair_classification_drift,
        )

        drift = repair_classification_drift(tenant_id) if repair else find_classification_drift(tenant_id)
        for entry in drift:
            click.echo(f"finding {entry['finding_id']} (tenant {entry['tenant_id']}): "
                       f"missing {entry['category']} record")
        verb = "repaired" if repair else "found"
        click.echo(f"{len(drift)} inconsistent finding(s) {verb}.")


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
    config_cls = config[config_name]
    app.config.from_object(config_cls() if config_name == "production" else config_cls)

    # ── Structured logging (must be first) ───────────────────────────────
    configure_logging(app)

    # ── Extensions ───────────────────────────────────────────────────────
    _import_models()
    db.init_app(app)
    migrate.init_app(app, db)

    # ── Write-time tenant fencing ────────────────────────────────────────
    from qms.models._tenant_fencing import register_all

    register_all()

    _register_error_handlers(app)
    _register_cli(app)
    _validate_permission_catalog(app)

    return app
