"""RBAC resolution: binding union, explicit deny, tenant checks, recipients."""

import pytest
from sqlalchemy import insert

from qms.core.exceptions import PermissionDenied, TenantMismatch, UserNotFound
from qms.models import db
from qms.models.auth import Permission, UserRole
from qms.services.permission_service import (
    check_permission,
    evaluate_permission,
    get_user_role_names,
    has_permission,
    list_role_bindings,
    resolve_permissions,
    resolve_recipients,
    users_with_permission,
)
from qms.services.provisioning_service import ensure_role, grant_permission, remove_role_permission
from qms.services.security_observability import get_recent_security_events


def _permission(module, action):
    return Permission.query.filter_by(module=module, action=action).one()


# ── Binding union ────────────────────────────────────────────────────────


def test_global_role_grants_its_permissions(tenant_a, make_user):
    user = make_user(tenant_a, "AUDITOR")
    assert has_permission(user.id, tenant_a.id, "auditFinding", "create") is True
    assert has_permission(user.id, tenant_a.id, "auditProgram", "commit") is False


def test_scoped_binding_grants_tenant_wide(tenant_a, make_user, make_department):
    dept = make_department(tenant_a, "Physics")
    user = make_user(tenant_a, department_roles=[(dept.id, "HOD")])

    assert has_permission(user.id, tenant_a.id, "auditFinding", "review") is True
    assert has_permission(user.id, tenant_a.id, "correctiveAction", "propose") is True


def test_permissions_are_union_of_global_and_scoped(tenant_a, make_user, make_department):
    dept = make_department(tenant_a, "Physics")
    user = make_user(tenant_a, "STAFF", department_roles=[(dept.id, "AUDITOR")])

    perms = resolve_permissions(user.id, tenant_a.id)
    assert "department:read" in perms
    assert "auditFinding:commit" in perms
    assert get_user_role_names(user.id, tenant_a.id) == ["AUDITOR", "STAFF"]

    kinds = {(b["kind"], b["role_name"]) for b in list_role_bindings(user.id, tenant_a.id)}
    assert kinds == {("global", "STAFF"), ("scoped", "AUDITOR")}


def test_user_without_bindings_has_nothing(tenant_a, make_user):
    user = make_user(tenant_a)
    assert resolve_permissions(user.id, tenant_a.id) == set()
    result = evaluate_permission(user.id, tenant_a.id, "auditFinding:read")
    assert result["allowed"] is False
    assert result["reason"] == "deny_by_default"


# ── Explicit deny ────────────────────────────────────────────────────────


def test_explicit_deny_overrides_grant_from_other_role(tenant_a, make_user):
    restricted = ensure_role(tenant_a.id, "RESTRICTED_AUDITOR")
    grant_permission(restricted.id, "auditFinding:update", allowed=False)
    user = make_user(tenant_a, "AUDITOR", "RESTRICTED_AUDITOR")

    assert has_permission(user.id, tenant_a.id, "auditFinding", "update") is False
    assert has_permission(user.id, tenant_a.id, "auditFinding", "create") is True

    result = evaluate_permission(user.id, tenant_a.id, "auditFinding:update")
    assert result["reason"] == "deny_explicit"
    assert result["granted_by"] == ["AUDITOR"]
    assert result["denied_by"] == ["RESTRICTED_AUDITOR"]


def test_scoped_deny_overrides_global_grant(tenant_a, make_user, make_department):
    dept = make_department(tenant_a, "Biology")
    locked = ensure_role(tenant_a.id, "LOCKED")
    grant_permission(locked.id, "correctiveAction:verify", allowed=False)
    user = make_user(tenant_a, "AUDITOR", department_roles=[(dept.id, "LOCKED")])

    assert has_permission(user.id, tenant_a.id, "correctiveAction", "verify") is False


def test_mr_commit_permission_follows_role_permission_row(tenant_a, make_user, role_of):
    mr = make_user(tenant_a, "MR")
    assert has_permission(mr.id, tenant_a.id, "auditProgram", "commit") is True

    removed = remove_role_permission(role_of(tenant_a.id, "MR"), _permission("auditProgram", "commit").id)
    assert removed is True
    assert has_permission(mr.id, tenant_a.id, "auditProgram", "commit") is False


def test_remove_missing_role_permission_returns_false(tenant_a, role_of):
    assert remove_role_permission(role_of(tenant_a.id, "TRAINEE"), _permission("auditLog", "read").id) is False


def test_check_permission_raises(tenant_a, make_user):
    user = make_user(tenant_a, "STAFF")
    with pytest.raises(PermissionDenied) as exc:
        check_permission(user.id, tenant_a.id, "correctiveAction:close")
    assert exc.value.permission == "correctiveAction:close"
    check_permission(user.id, tenant_a.id, "department:read")


# ── Tenant checks ────────────────────────────────────────────────────────


def test_foreign_tenant_check_raises_tenant_mismatch(tenant_a, tenant_b, make_user):
    user = make_user(tenant_a, "SYSTEM_ADMIN")

    with pytest.raises(TenantMismatch) as exc:
        has_permission(user.id, tenant_b.id, "auditProgram", "read")
    assert exc.value.actual_tenant_id == tenant_a.id
    assert exc.value.expected_tenant_id == tenant_b.id
    assert get_recent_security_events(event_type="cross_tenant_access_attempt")


def test_unknown_user_raises_user_not_found(tenant_a):
    with pytest.raises(UserNotFound):
        resolve_permissions(999_999, tenant_a.id)


def test_legacy_cross_tenant_binding_is_ignored(tenant_a, tenant_b, make_user, role_of):
    user = make_user(tenant_a, "STAFF")
    # Core insert skips the ORM flush-time fence, as a legacy row would have
    db.session.execute(insert(UserRole.__table__).values(
        user_id=user.id, role_id=role_of(tenant_b.id, "SYSTEM_ADMIN"), is_default=False,
    ))
    db.session.commit()

    perms = resolve_permissions(user.id, tenant_a.id)
    assert "tenant:update" not in perms
    assert "department:read" in perms
    events = get_recent_security_events(event_type="cross_tenant_binding", tenant_id=tenant_a.id)
    assert [e["severity"] for e in events] == ["critical"]


# ── Recipients ───────────────────────────────────────────────────────────


def test_resolve_recipients_includes_global_only_holder(tenant_a, make_user, make_department):
    dept = make_department(tenant_a, "Mathematics")
    principal = make_user(tenant_a, "PRINCIPAL")
    scoped = make_user(tenant_a, department_roles=[(dept.id, "PRINCIPAL")])
    make_user(tenant_a, "STAFF")

    ids = [u.id for u in resolve_recipients(tenant_a.id, "PRINCIPAL")]
    assert ids == sorted([principal.id, scoped.id])


def test_resolve_recipients_for_department_uses_scoped_bindings(tenant_a, make_user, make_department):
    maths = make_department(tenant_a, "Mathematics")
    arts = make_department(tenant_a, "Arts")
    maths_head = make_user(tenant_a, department_roles=[(maths.id, "HOD")])
    make_user(tenant_a, department_roles=[(arts.id, "HOD")])
    make_user(tenant_a, "HOD")

    assert [u.id for u in resolve_recipients(tenant_a.id, "HOD", maths.id)] == [maths_head.id]


def test_resolve_recipients_skips_inactive_and_foreign_users(tenant_a, tenant_b, make_user):
    active = make_user(tenant_a, "MR")
    inactive = make_user(tenant_a, "MR")
    inactive.status = "inactive"
    db.session.commit()
    make_user(tenant_b, "MR")

    assert [u.id for u in resolve_recipients(tenant_a.id, "MR")] == [active.id]


def test_resolve_recipients_unknown_role_is_empty(tenant_a):
    assert resolve_recipients(tenant_a.id, "NO_SUCH_ROLE") == []


def test_users_with_permission_applies_deny(tenant_a, make_user):
    locked = ensure_role(tenant_a.id, "LOCKED")
    grant_permission(locked.id, "correctiveAction:close", allowed=False)
    mr = make_user(tenant_a, "MR")
    make_user(tenant_a, "MR", "LOCKED")
    make_user(tenant_a, "STAFF")

    assert [u.id for u in users_with_permission(tenant_a.id, "correctiveAction", "close")] == [mr.id]
