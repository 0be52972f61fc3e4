"""
Department Service: departments and head-of-department reassignment.

Reassigning the head is one transaction: the previous head loses the
department-scoped HOD binding and falls back to STAFF in that department,
the new head gains the HOD binding, and ``Department.hod_id`` moves. Any
failure rolls back all three.
"""

import logging

from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from qms.core.exceptions import ConflictError, ValidationError
from qms.models import db
from qms.models.audit import write_audit
from qms.models.auth import Department, UserDepartmentRole
from qms.services.helpers.scoped_queries import get_scoped
from qms.services.permission_catalog import HOD_ROLE, STAFF_ROLE
from qms.services.permission_service import resolve_recipients
from qms.services.provisioning_service import ensure_role
from qms.services.tenant_guard import validate_same_tenant

logger = logging.getLogger(__name__)


def create_department(
    tenant_id: int,
    name: str,
    code: str | None = None,
    *,
    campus_id: int | None = None,
    actor_user_id: int | None = None,
) -> Department:
    if not name or not name.strip():
        raise ValidationError("Department name is required", details={"name": "required"})
    validate_same_tenant(tenant_id, campus_ids=[campus_id])

    if Department.query_for_tenant(tenant_id).filter_by(name=name.strip()).first():
        raise ConflictError("Department", "name", name)

    dept = Department(tenant_id=tenant_id, name=name.strip(), code=code, campus_id=campus_id)
    db.session.add(dept)
    try:
        db.session.flush()
        write_audit(entity_type="department", entity_id=dept.id, action="department.create",
                    tenant_id=tenant_id, actor_user_id=actor_user_id,
                    diff={"name": dept.name, "code": code, "campus_id": campus_id})
        db.session.commit()
    except IntegrityError:
        db.session.rollback()
        raise ConflictError("Department", "name", name)
    return dept


def _department_binding(user_id, department_id, role_id):
    return UserDepartmentRole.query.filter_by(
        user_id=user_id, department_id=department_id, role_id=role_id,
    ).first()


def assign_department_head(
    department_id: int,
    user_id: int,
    *,
    tenant_id: int,
    actor_user_id: int | None = None,
) -> Department:
    """Make ``user_id`` head of the department, demoting the previous head."""
    dept = get_scoped(Department, department_id, tenant_id=tenant_id)
    validate_same_tenant(tenant_id, user_ids=[user_id])
    previous_hod_id = dept.hod_id

    try:
        hod_role = ensure_role(tenant_id, HOD_ROLE, is_default=True, is_removable=False, commit=False)

        if previous_hod_id is not None and previous_hod_id != user_id:
            old_binding = _department_binding(previous_hod_id, dept.id, hod_role.id)
            if old_binding is not None:
                db.session.delete(old_binding)
            staff_role = ensure_role(tenant_id, STAFF_ROLE, is_default=True, is_removable=False, commit=False)
            if _department_binding(previous_hod_id, dept.id, staff_role.id) is None:
                db.session.add(UserDepartmentRole(
                    user_id=previous_hod_id, department_id=dept.id, role_id=staff_role.id,
                    is_primary_department=True,
                ))

        if _department_binding(user_id, dept.id, hod_role.id) is None:
            db.session.add(UserDepartmentRole(
                user_id=user_id, department_id=dept.id, role_id=hod_role.id,
                is_primary_department=True, is_primary_role=True,
            ))

        dept.hod_id = user_id
        write_audit(entity_type="department", entity_id=dept.id, action="department.assign_hod",
                    tenant_id=tenant_id, actor_user_id=actor_user_id,
                    diff={"hod_id": {"old": previous_hod_id, "new": user_id}})
        db.session.commit()
    except SQLAlchemyError:
        db.session.rollback()
        logger.exception("HOD reassignment failed for department %s", department_id,
                         extra={"tenant_id": tenant_id})
        raise

    logger.info("Department %s head changed %s -> %s", dept.id, previous_hod_id, user_id,
                extra={"tenant_id": tenant_id})
    return dept


def department_heads(department: Department) -> list:
    """Users heading the department: ``hod_id`` plus department-scoped HOD holders."""
    heads = {u.id: u for u in resolve_recipients(department.tenant_id, HOD_ROLE, department.id)}
    hod = department.hod
    if hod is not None and hod.tenant_id == department.tenant_id:
        heads.setdefault(hod.id, hod)
    return [heads[k] for k in sorted(heads)]
