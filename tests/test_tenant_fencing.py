"""Flush-time fence: cross-tenant rows never reach the database."""

import pytest

from qms.core.exceptions import TenantMismatch
from qms.models import db
from qms.models.auth import Department, UserDepartmentRole, UserRole
from qms.models.finding import AuditFinding, CorrectiveAction
from qms.services.corrective_action_service import open_corrective_action
from qms.models.notification import Notification


def test_direct_cross_tenant_user_role_is_rejected(tenant_a, tenant_b, make_user, role_of):
    user = make_user(tenant_a)
    foreign_role = role_of(tenant_b.id, "SYSTEM_ADMIN")

    db.session.add(UserRole(user_id=user.id, role_id=foreign_role))
    with pytest.raises(TenantMismatch) as exc:
        db.session.commit()
    db.session.rollback()

    assert exc.value.entity_type == "Role"
    assert exc.value.actual_tenant_id == tenant_b.id
    assert UserRole.query.filter_by(role_id=foreign_role).count() == 0


def test_direct_cross_tenant_department_binding_is_rejected(tenant_a, tenant_b, make_user,
                                                            make_department, role_of):
    user = make_user(tenant_a)
    foreign_dept = make_department(tenant_b, "Foreign Dept")

    db.session.add(UserDepartmentRole(
        user_id=user.id, department_id=foreign_dept.id, role_id=role_of(tenant_a.id, "HOD"),
    ))
    with pytest.raises(TenantMismatch) as exc:
        db.session.flush()
    db.session.rollback()
    assert exc.value.entity_type == "Department"


def test_finding_cannot_point_at_foreign_audit(tenant_a, tenant_b, make_audit):
    foreign_audit = make_audit(tenant_b)

    db.session.add(AuditFinding(tenant_id=tenant_a.id, audit_id=foreign_audit.id, title="Leak"))
    with pytest.raises(TenantMismatch):
        db.session.commit()
    db.session.rollback()
    assert AuditFinding.query.count() == 0


def test_finding_author_must_be_in_tenant(tenant_a, tenant_b, make_audit, make_user):
    audit = make_audit(tenant_a)
    outsider = make_user(tenant_b, "AUDITOR")

    db.session.add(AuditFinding(tenant_id=tenant_a.id, audit_id=audit.id, title="Leak",
                                created_by_id=outsider.id))
    with pytest.raises(TenantMismatch) as exc:
        db.session.commit()
    db.session.rollback()
    assert exc.value.entity_type == "User"
    assert AuditFinding.query.count() == 0


def test_corrective_action_assignee_must_be_in_tenant(ca_context, tenant_b, make_user):
    c = ca_context
    ca = open_corrective_action(c["finding"], tenant_id=c["tenant"], user_id=c["auditor"])
    outsider = make_user(tenant_b, "STAFF")

    ca.assigned_to_id = outsider.id
    with pytest.raises(TenantMismatch) as exc:
        db.session.commit()
    db.session.rollback()
    assert exc.value.actual_tenant_id == tenant_b.id
    assert db.session.get(CorrectiveAction, ca.id).assigned_to_id is None


def test_corrective_action_creator_must_be_in_tenant(ca_context, tenant_b, make_user):
    c = ca_context
    ca = open_corrective_action(c["finding"], tenant_id=c["tenant"], user_id=c["auditor"])
    outsider = make_user(tenant_b, "MR")

    ca.created_by_id = outsider.id
    with pytest.raises(TenantMismatch):
        db.session.flush()
    db.session.rollback()
    assert db.session.get(CorrectiveAction, ca.id).created_by_id == c["auditor"]


def test_department_head_must_be_in_tenant(tenant_a, tenant_b, make_user, make_department):
    dept = make_department(tenant_a)
    outsider = make_user(tenant_b)

    dept.hod_id = outsider.id
    with pytest.raises(TenantMismatch):
        db.session.commit()
    db.session.rollback()
    assert db.session.get(Department, dept.id).hod_id is None


def test_notification_target_must_be_in_tenant(tenant_a, tenant_b, make_user):
    outsider = make_user(tenant_b)

    db.session.add(Notification(tenant_id=tenant_a.id, target_user_id=outsider.id,
                                type="SYSTEM", title="Hello"))
    with pytest.raises(TenantMismatch):
        db.session.commit()
    db.session.rollback()


def test_same_tenant_rows_flush_normally(tenant_a, make_user, make_department, role_of):
    user = make_user(tenant_a)
    dept = make_department(tenant_a)
    db.session.add(UserDepartmentRole(user_id=user.id, department_id=dept.id,
                                      role_id=role_of(tenant_a.id, "HOD")))
    dept.hod_id = user.id
    db.session.commit()
    assert dept.hod_id == user.id
