"""Route decorators and the error envelope of the service exceptions."""

import pytest

from qms.middleware.permission_required import require_permission
from qms.models.auth import UserRole


def _headers(user, tenant_id=None):
    return {"X-User-Id": str(user.id), "X-Tenant-Id": str(tenant_id or user.tenant_id)}


def test_missing_identity_is_unauthenticated(client):
    res = client.post("/probe/audit-programs/commit")
    assert res.status_code == 401
    assert res.get_json()["code"] == "ERR_UNAUTHENTICATED"


def test_holder_passes(client, tenant_a, make_user):
    mr = make_user(tenant_a, "MR")
    res = client.post("/probe/audit-programs/commit", headers=_headers(mr))
    assert res.status_code == 200
    assert res.get_json() == {"committed": True}


def test_missing_permission_is_forbidden(client, tenant_a, make_user):
    staff = make_user(tenant_a, "STAFF")
    res = client.post("/probe/audit-programs/commit", headers=_headers(staff))
    assert res.status_code == 403
    body = res.get_json()
    assert body["code"] == "ERR_FORBIDDEN"
    assert body["details"] == {"required": "auditProgram:commit"}


def test_any_permission(client, tenant_a, make_user, make_department):
    dept = make_department(tenant_a)
    hod = make_user(tenant_a, department_roles=[(dept.id, "HOD")])
    trainee = make_user(tenant_a, "TRAINEE")

    assert client.get("/probe/findings", headers=_headers(hod)).status_code == 200
    res = client.get("/probe/findings", headers=_headers(trainee))
    assert res.status_code == 403
    assert res.get_json()["details"]["required"] == ["auditFinding:read", "auditFinding:review"]


def test_foreign_tenant_header_is_tenant_mismatch(client, tenant_a, tenant_b, make_user):
    admin = make_user(tenant_a, "SYSTEM_ADMIN")
    res = client.post("/probe/audit-programs/commit", headers=_headers(admin, tenant_b.id))
    assert res.status_code == 403
    assert res.get_json()["code"] == "ERR_TENANT_MISMATCH"


def test_unknown_user_is_not_found(client, tenant_a):
    res = client.post("/probe/audit-programs/commit", headers={"X-User-Id": "999999", "X-Tenant-Id": str(tenant_a.id)})
    assert res.status_code == 404
    assert res.get_json()["code"] == "ERR_NOT_FOUND"


def test_uncatalogued_codename_fails_at_decoration():
    with pytest.raises(ValueError):
        require_permission("auditProgram:teleport")
    with pytest.raises(ValueError):
        require_permission("malformed")


def test_cross_tenant_role_assignment_lists_violations(client, tenant_a, tenant_b, make_user, role_of):
    admin = make_user(tenant_a, "SYSTEM_ADMIN")
    target = make_user(tenant_a)
    foreign_role = role_of(tenant_b.id, "HOD")

    res = client.post(f"/probe/users/{target.id}/roles", json={"role_id": foreign_role}, headers=_headers(admin))

    assert res.status_code == 403
    body = res.get_json()
    assert body["code"] == "ERR_CROSS_TENANT"
    assert body["details"]["violations"] == [
        {"entity_type": "Role", "entity_id": foreign_role, "actual_tenant_id": tenant_b.id},
    ]
    assert UserRole.query.filter_by(user_id=target.id, role_id=foreign_role).count() == 0


def test_service_validation_error_is_422(client, tenant_a, make_user, make_audit, make_finding):
    auditor = make_user(tenant_a, "AUDITOR")
    finding = make_finding(make_audit(tenant_a), created_by_id=auditor.id)

    res = client.post(f"/probe/findings/{finding.id}/categorize", json={"category": "PRAISE"},
                      headers=_headers(auditor))

    assert res.status_code == 422
    assert res.get_json()["code"] == "ERR_VALIDATION_RULE"


def test_foreign_finding_is_404(client, tenant_a, tenant_b, make_user, make_audit, make_finding):
    auditor = make_user(tenant_a, "AUDITOR")
    foreign = make_finding(make_audit(tenant_b))

    res = client.post(f"/probe/findings/{foreign.id}/categorize", json={"category": "COMPLIANCE"},
                      headers=_headers(auditor))

    assert res.status_code == 404
