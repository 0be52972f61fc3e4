"""
Shared pytest fixtures for the quality management test suite.

Provides:
    - app: Flask application (session-scoped)
    - _setup_db: Database table creation/teardown (session-scoped)
    - session: Per-test DB cleanup w/ rollback + recreate (autouse)
    - client: Flask test client (function-scoped)
    - tenant_a / tenant_b: onboarded tenants with their default roles
    - make_user / make_department / make_finding: ORM factories
    - ca_context: a refused non-conformity with auditor, HOD and MR in place
"""

import pytest
from flask import Blueprint, g, jsonify, request

from qms import create_app
from qms.middleware.permission_required import require_any_permission, require_permission
from qms.models import db as _db
from qms.models.auth import Role
from qms.models.finding import AuditFinding
from qms.models.program import Audit, AuditProgram
from qms.services.department_service import assign_department_head, create_department
from qms.services.finding_service import categorize, review_finding
from qms.services.provisioning_service import onboard_tenant
from qms.services.security_observability import reset_security_events
from qms.services.user_service import assign_role, create_user


# ── Probe routes for the permission decorators ──────────────────────────

probe_bp = Blueprint("probe", __name__, url_prefix="/probe")


@probe_bp.before_request
def _identity_from_headers():
    g.current_user_id = request.headers.get("X-User-Id", type=int)
    g.current_tenant_id = request.headers.get("X-Tenant-Id", type=int)


@probe_bp.route("/audit-programs/commit", methods=["POST"])
@require_permission("auditProgram:commit")
def commit_program():
    return jsonify({"committed": True})


@probe_bp.route("/findings", methods=["GET"])
@require_any_permission("auditFinding:read", "auditFinding:review")
def list_findings():
    return jsonify({"items": []})


@probe_bp.route("/findings/<int:finding_id>/categorize", methods=["POST"])
@require_permission("auditFinding:update")
def categorize_finding(finding_id):
    record = categorize(finding_id, request.get_json()["category"],
                        tenant_id=g.current_tenant_id, user_id=g.current_user_id)
    return jsonify({"record_id": record.id})


@probe_bp.route("/users/<int:user_id>/roles", methods=["POST"])
@require_permission("user:assignRole")
def assign_user_role(user_id):
    ur = assign_role(user_id, request.get_json()["role_id"],
                     tenant_id=g.current_tenant_id, assigned_by=g.current_user_id)
    return jsonify({"id": ur.id}), 201


# ── App & DB fixtures ────────────────────────────────────────────────────


@pytest.fixture(scope="session")
def app():
    """Create the Flask application once per test session."""
    application = create_app("testing")
    application.register_blueprint(probe_bp)
    return application


@pytest.fixture(scope="session")
def _setup_db(app):
    """Create all tables at session start, drop at end."""
    with app.app_context():
        _db.create_all()
    yield
    with app.app_context():
        _db.drop_all()


@pytest.fixture(autouse=True)
def session(app, _setup_db):
    """Per-test: open app context, rollback after test, recreate tables."""
    with app.app_context():
        reset_security_events()
        yield
        _db.session.rollback()
        _db.drop_all()
        _db.create_all()
        reset_security_events()


@pytest.fixture()
def client(app):
    """Flask test client."""
    return app.test_client()


# ── Tenants ──────────────────────────────────────────────────────────────


@pytest.fixture()
def tenant_a():
    return onboard_tenant("Tenant A", "tenant-a.edu")


@pytest.fixture()
def tenant_b():
    return onboard_tenant("Tenant B", "tenant-b.edu")


def role_id(tenant_id, name):
    """Id of the tenant's role called ``name``."""
    return Role.query.filter_by(tenant_id=tenant_id, name=name).one().id


@pytest.fixture()
def role_of():
    """Look up a role id by tenant and name."""
    return role_id


# ── Factories ────────────────────────────────────────────────────────────


@pytest.fixture()
def make_user():
    """Create a user bound to the named roles (global) and department roles."""
    counter = {"n": 0}

    def _make(tenant, *role_names, email=None, department_roles=(), first_name="Test", last_name=None):
        counter["n"] += 1
        email = email or f"user{counter['n']}@{tenant.domain}"
        return create_user(
            tenant.id, email, first_name, last_name or f"User{counter['n']}",
            role_ids=[role_id(tenant.id, name) for name in role_names],
            department_roles=[
                {"department_id": dept_id, "role_id": role_id(tenant.id, name)}
                for dept_id, name in department_roles
            ],
        )

    return _make


@pytest.fixture()
def make_department():
    def _make(tenant, name="Chemistry", code=None):
        return create_department(tenant.id, name, code)

    return _make


@pytest.fixture()
def make_audit():
    def _make(tenant, created_by_id=None, title="Internal Audit 2026"):
        program = AuditProgram(tenant_id=tenant.id, title=f"{title} Program", created_by_id=created_by_id)
        _db.session.add(program)
        _db.session.flush()
        audit = Audit(tenant_id=tenant.id, audit_program_id=program.id, title=title)
        _db.session.add(audit)
        _db.session.commit()
        return audit

    return _make


@pytest.fixture()
def make_finding():
    def _make(audit, *, department_id=None, created_by_id=None, title="Lab safety log incomplete",
              description="", status="PENDING"):
        finding = AuditFinding(
            tenant_id=audit.tenant_id,
            audit_id=audit.id,
            department_id=department_id,
            title=title,
            description=description,
            status=status,
            created_by_id=created_by_id,
        )
        _db.session.add(finding)
        _db.session.commit()
        return finding

    return _make


# ── Corrective action scenario ───────────────────────────────────────────


@pytest.fixture()
def ca_context(tenant_a, make_user, make_department, make_audit, make_finding):
    """A NON_CONFORMITY finding refused by its department head.

    Returns a dict of ids: tenant, department, auditor, hod, mr, audit, finding.
    """
    dept = make_department(tenant_a, "Chemistry", "CHEM")
    auditor = make_user(tenant_a, "AUDITOR", first_name="Ada", last_name="Auditor")
    hod = make_user(tenant_a, "STAFF", first_name="Hal", last_name="Head")
    mr = make_user(tenant_a, "MR", first_name="Mia", last_name="Rep")
    assign_department_head(dept.id, hod.id, tenant_id=tenant_a.id)

    audit = make_audit(tenant_a, created_by_id=mr.id)
    finding = make_finding(audit, department_id=dept.id, created_by_id=auditor.id,
                           title="Chemical storage violation")
    categorize(finding.id, "NON_CONFORMITY", tenant_id=tenant_a.id, user_id=auditor.id)
    review_finding(finding.id, "REFUSED", tenant_id=tenant_a.id, user_id=hod.id,
                   feedback="Storage meets the current regulation")
    return {
        "tenant": tenant_a.id,
        "department": dept.id,
        "auditor": auditor.id,
        "hod": hod.id,
        "mr": mr.id,
        "audit": audit.id,
        "finding": finding.id,
    }
