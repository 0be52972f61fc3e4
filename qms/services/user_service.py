"""
User Service: user creation and role binding management.

Every write that references roles or departments runs the tenant guard
first, so a cross-tenant binding is rejected with the full list of
offending ids before anything is written.
"""

import logging

from email_validator import EmailNotValidError, validate_email
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from qms.core.exceptions import ConflictError, NotFoundError, ValidationError
from qms.models import db
from qms.models.audit import write_audit
from qms.models.auth import Tenant, User, UserDepartmentRole, UserRole
from qms.services.helpers.scoped_queries import get_scoped
from qms.services.tenant_guard import validate_same_tenant

logger = logging.getLogger(__name__)


def _normalize_email(email: str) -> str:
    try:
        return validate_email(email or "", check_deliverability=False).normalized
    except EmailNotValidError as e:
        raise ValidationError(f"Invalid email: {e}", details={"email": str(e)})


# ═══════════════════════════════════════════════════════════════
# User CRUD
# ═══════════════════════════════════════════════════════════════
def create_user(
    tenant_id: int,
    email: str,
    first_name: str | None = None,
    last_name: str | None = None,
    *,
    role_ids=(),
    department_roles=(),
    assigned_by: int | None = None,
) -> User:
    """
    Create a user together with its role bindings in one transaction.

    Args:
        role_ids: roles bound tenant-wide.
        department_roles: iterable of dicts with ``department_id``, ``role_id``
            and optionally ``is_primary_department`` / ``is_primary_role``.

    Raises:
        ValidationError: malformed email or department role entry.
        ConflictError: the email is already used in the tenant.
        CrossTenantViolation: any role or department belongs elsewhere.
    """
    email = _normalize_email(email)

    tenant = db.session.get(Tenant, tenant_id)
    if not tenant:
        raise NotFoundError(resource="Tenant", resource_id=tenant_id)
    if not tenant.is_active:
        raise ValidationError("Tenant is suspended", details={"tenant_id": tenant_id})

    department_roles = list(department_roles)
    for entry in department_roles:
        if entry.get("department_id") is None or entry.get("role_id") is None:
            raise ValidationError("department_roles entries need department_id and role_id",
                                  details={"entry": entry})

    validate_same_tenant(
        tenant_id,
        role_ids=list(role_ids) + [e["role_id"] for e in department_roles],
        department_ids=[e["department_id"] for e in department_roles],
    )

    if User.query.filter_by(tenant_id=tenant_id, email=email).first():
        raise ConflictError("User", "email", email)

    try:
        user = User(tenant_id=tenant_id, email=email, first_name=first_name,
                    last_name=last_name, status="active")
        db.session.add(user)
        db.session.flush()
        for i, role_id in enumerate(dict.fromkeys(role_ids)):
            db.session.add(UserRole(user_id=user.id, role_id=role_id,
                                    is_default=i == 0, assigned_by=assigned_by))
        for entry in department_roles:
            db.session.add(UserDepartmentRole(
                user_id=user.id,
                department_id=entry["department_id"],
                role_id=entry["role_id"],
                is_primary_department=bool(entry.get("is_primary_department")),
                is_primary_role=bool(entry.get("is_primary_role")),
            ))
        write_audit(entity_type="user", entity_id=user.id, action="user.create",
                    tenant_id=tenant_id, actor_user_id=assigned_by,
                    diff={"email": email, "role_ids": list(role_ids),
                          "department_roles": department_roles})
        db.session.commit()
    except IntegrityError:
        db.session.rollback()
        raise ConflictError("User", "email", email)
    except SQLAlchemyError:
        db.session.rollback()
        logger.exception("User creation failed", extra={"tenant_id": tenant_id})
        raise

    logger.info("User %s created", user.id, extra={"tenant_id": tenant_id, "user_id": user.id})
    return user


# ═══════════════════════════════════════════════════════════════
# Role bindings
# ═══════════════════════════════════════════════════════════════
def assign_role(user_id: int, role_id: int, *, tenant_id: int, assigned_by: int | None = None) -> UserRole:
    """Bind a role tenant-wide. Returns the existing binding when already bound."""
    validate_same_tenant(tenant_id, user_ids=[user_id], role_ids=[role_id])

    existing = UserRole.query.filter_by(user_id=user_id, role_id=role_id).first()
    if existing:
        return existing

    ur = UserRole(user_id=user_id, role_id=role_id, assigned_by=assigned_by)
    db.session.add(ur)
    db.session.flush()
    write_audit(entity_type="user_role", entity_id=ur.id, action="user_role.assign",
                tenant_id=tenant_id, actor_user_id=assigned_by,
                diff={"user_id": user_id, "role_id": role_id})
    db.session.commit()
    return ur


def assign_department_role(
    user_id: int,
    department_id: int,
    role_id: int,
    *,
    tenant_id: int,
    is_primary_department: bool = False,
    is_primary_role: bool = False,
    assigned_by: int | None = None,
    commit: bool = True,
) -> UserDepartmentRole:
    """Bind a role scoped to one department. Idempotent per (user, department, role)."""
    validate_same_tenant(
        tenant_id, user_ids=[user_id], role_ids=[role_id], department_ids=[department_id],
    )

    existing = UserDepartmentRole.query.filter_by(
        user_id=user_id, department_id=department_id, role_id=role_id,
    ).first()
    if existing:
        return existing

    udr = UserDepartmentRole(
        user_id=user_id,
        department_id=department_id,
        role_id=role_id,
        is_primary_department=is_primary_department,
        is_primary_role=is_primary_role,
    )
    db.session.add(udr)
    db.session.flush()
    write_audit(entity_type="user_department_role", entity_id=udr.id,
                action="user_department_role.assign", tenant_id=tenant_id,
                actor_user_id=assigned_by,
                diff={"user_id": user_id, "department_id": department_id, "role_id": role_id})
    if commit:
        db.session.commit()
    return udr


def remove_role(user_id: int, role_id: int, *, tenant_id: int, actor_user_id: int | None = None) -> bool:
    """Remove a tenant-wide binding. Returns False when the user did not hold it."""
    user = get_scoped(User, user_id, tenant_id=tenant_id)
    ur = UserRole.query.filter_by(user_id=user.id, role_id=role_id).first()
    if not ur:
        return False
    write_audit(entity_type="user_role", entity_id=ur.id, action="user_role.remove",
                tenant_id=tenant_id, actor_user_id=actor_user_id,
                diff={"user_id": user_id, "role_id": role_id})
    db.session.delete(ur)
    db.session.commit()
    return True


def remove_department_role(user_id: int, department_id: int, role_id: int, *,
                           tenant_id: int, actor_user_id: int | None = None,
                           commit: bool = True) -> bool:
    """Remove a department-scoped binding. Returns False when the user did not hold it."""
    user = get_scoped(User, user_id, tenant_id=tenant_id)
    udr = db.session.execute(
        select(UserDepartmentRole).where(
            UserDepartmentRole.user_id == user.id,
            UserDepartmentRole.department_id == department_id,
            UserDepartmentRole.role_id == role_id,
        )
    ).scalar_one_or_none()
    if udr is None:
        return False
    write_audit(entity_type="user_department_role", entity_id=udr.id, action="user_department_role.remove",
                tenant_id=tenant_id, actor_user_id=actor_user_id,
                diff={"user_id": user_id, "department_id": department_id, "role_id": role_id})
    db.session.delete(udr)
    if commit:
        db.session.commit()
    return True
