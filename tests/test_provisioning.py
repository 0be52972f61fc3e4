"""Idempotent role / permission provisioning and tenant onboarding."""

import pytest
from sqlalchemy import insert

from qms.core.exceptions import ConflictError, NotFoundError, ValidationError
from qms.models import db
from qms.models.audit import AuditLog
from qms.models.auth import Permission, Role, RolePermission
from qms.services import permission_catalog as catalog
from qms.services import provisioning_service
from qms.services.provisioning_service import (
    ensure_permission,
    ensure_role,
    ensure_role_permission,
    onboard_tenant,
    seed_tenant_roles,
    sync_permission_catalog,
)


def test_ensure_permission_returns_same_row(tenant_a):
    first = ensure_permission("auditProgram", "commit")
    second = ensure_permission("auditProgram", "commit")
    assert first.id == second.id
    assert Permission.query.filter_by(module="auditProgram", action="commit").count() == 1


def test_ensure_permission_reuses_concurrently_created_row(app, monkeypatch):
    real = provisioning_service._find_permission
    calls = {"n": 0}

    def racing(module, action):
        calls["n"] += 1
        if calls["n"] == 1:
            db.session.execute(insert(Permission.__table__).values(
                module=module, action=action, description="created by another worker",
            ))
            db.session.commit()
            return None
        return real(module, action)

    monkeypatch.setattr(provisioning_service, "_find_permission", racing)

    perm = ensure_permission("auditProgram", "commit")

    assert perm.description == "created by another worker"
    assert Permission.query.filter_by(module="auditProgram", action="commit").count() == 1


def test_ensure_permission_conflict_when_winner_cannot_be_read(app, monkeypatch):
    ensure_permission("auditProgram", "commit")
    monkeypatch.setattr(provisioning_service, "_find_permission", lambda module, action: None)

    with pytest.raises(ConflictError):
        ensure_permission("auditProgram", "commit")
    assert Permission.query.filter_by(module="auditProgram", action="commit").count() == 1


def test_ensure_permission_rejects_uncatalogued_pair(app):
    with pytest.raises(ValidationError) as exc:
        ensure_permission("auditProgram", "teleport")
    assert exc.value.details == {"permission": "auditProgram:teleport"}


def test_ensure_role_is_idempotent(tenant_a):
    role = ensure_role(tenant_a.id, "QUALITY_LEAD", "Leads quality circles")
    again = ensure_role(tenant_a.id, "QUALITY_LEAD")
    assert role.id == again.id
    assert Role.query.filter_by(tenant_id=tenant_a.id, name="QUALITY_LEAD").count() == 1


def test_same_role_name_in_two_tenants(tenant_a, tenant_b):
    a = ensure_role(tenant_a.id, "QUALITY_LEAD")
    b = ensure_role(tenant_b.id, "QUALITY_LEAD")
    assert a.id != b.id


def test_role_permission_upsert_flips_allowed(tenant_a):
    role = ensure_role(tenant_a.id, "QUALITY_LEAD")
    perm = ensure_permission("auditLog", "read")

    grant = ensure_role_permission(role.id, perm.id)
    deny = ensure_role_permission(role.id, perm.id, allowed=False)

    assert grant.id == deny.id
    assert deny.allowed is False
    assert RolePermission.query.filter_by(role_id=role.id, permission_id=perm.id).count() == 1
    logs = AuditLog.history("role_permission", grant.id, tenant_id=tenant_a.id)
    actions = [a.action for a in logs]
    assert actions == ["role_permission.create", "role_permission.update"]


def test_role_permission_unknown_role(app):
    perm = ensure_permission("auditLog", "read")
    with pytest.raises(NotFoundError):
        ensure_role_permission(987654, perm.id)


def test_onboarding_seeds_default_roles_and_grants(tenant_a):
    names = {r.name for r in Role.query_for_tenant(tenant_a.id)}
    assert names == set(catalog.DEFAULT_ROLES)

    mr = Role.query.filter_by(tenant_id=tenant_a.id, name="MR").one()
    assert mr.is_removable is False
    granted = {rp.permission.codename for rp in mr.role_permissions}
    assert granted == set(catalog.default_grants_for("MR"))

    admin = Role.query.filter_by(tenant_id=tenant_a.id, name="SYSTEM_ADMIN").one()
    assert admin.role_permissions.count() == len(catalog.all_codenames())


def test_onboarding_duplicate_domain_conflicts(tenant_a):
    with pytest.raises(ConflictError):
        onboard_tenant("Tenant A again", "TENANT-A.edu")


def test_onboarding_requires_name_and_domain(app):
    with pytest.raises(ValidationError):
        onboard_tenant("", "x.edu")


def test_seed_tenant_roles_is_repeatable_and_keeps_denies(tenant_a):
    mr = Role.query.filter_by(tenant_id=tenant_a.id, name="MR").one()
    commit = Permission.query.filter_by(module="auditProgram", action="commit").one()
    ensure_role_permission(mr.id, commit.id, allowed=False)

    summary = seed_tenant_roles(tenant_a.id)

    assert summary["grants"] == 0
    rp = RolePermission.query.filter_by(role_id=mr.id, permission_id=commit.id).one()
    assert rp.allowed is False


def test_sync_adds_missing_catalog_permission_and_grants_it(tenant_a):
    perm = Permission.query.filter_by(module="correctiveAction", action="close").one()
    db.session.delete(perm)
    db.session.commit()

    summary = sync_permission_catalog()

    assert summary["created"] == ["correctiveAction:close"]
    # SYSTEM_ADMIN, ADMIN and MR carry close by default
    assert summary["grants"] == 3
    assert catalog.validate_catalog()["missing"] == []


def test_sync_without_drift_changes_nothing(tenant_a):
    summary = sync_permission_catalog()
    assert summary == {"created": [], "grants": 0, "total": len(catalog.all_codenames())}


def test_static_catalog_is_consistent():
    assert catalog.check_catalog_integrity() == []


def test_parse_codename_rejects_malformed():
    assert catalog.parse_codename("auditProgram:commit") == ("auditProgram", "commit")
    for bad in ("auditProgram", ":commit", "a:b:c"):
        with pytest.raises(ValueError):
            catalog.parse_codename(bad)
