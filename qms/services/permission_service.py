"""
Permission Service — tenant-safe RBAC resolution.

A user reaches roles through two kinds of binding:
  - global: ``UserRole`` rows, tenant-wide
  - scoped: ``UserDepartmentRole`` rows, tied to one department

Both kinds are folded into one ``RoleBinding`` list and treated the same
way. A department-scoped binding grants its permissions tenant-wide; the
department only says where the user sits in the organisation.

Evaluation is deterministic and deny-by-default:
  - the user must exist and belong to the requested tenant
  - bindings whose role lives in another tenant are ignored and reported
  - a permission is granted when some bound role allows it and no bound
    role carries an explicit deny (``allowed=False``) for it

Nothing is cached between calls; every decision reads the current
bindings through the request's database session.
"""

import logging
from dataclasses import dataclass

from sqlalchemy import or_, select

from qms.core.exceptions import PermissionDenied, TenantMismatch, UserNotFound
from qms.models import db
from qms.models.auth import (
    Permission,
    Role,
    RolePermission,
    User,
    UserDepartmentRole,
    UserRole,
)
from qms.services.permission_catalog import parse_codename
from qms.services.security_observability import record_security_event

logger = logging.getLogger(__name__)

GLOBAL = "global"
SCOPED = "scoped"


@dataclass(frozen=True)
class RoleBinding:
    """One path from a user to a role: ``Global(role)`` or ``Scoped(role, department)``."""

    kind: str
    role_id: int
    role_name: str
    role_tenant_id: int
    department_id: int | None = None

    @property
    def is_scoped(self) -> bool:
        return self.kind == SCOPED

    def to_dict(self) -> dict:
        return {
            "kind": self.kind,
            "role_id": self.role_id,
            "role_name": self.role_name,
            "department_id": self.department_id,
        }


def load_bindings(user_id: int) -> list[RoleBinding]:
    """Every role binding of the user, global ones first."""
    global_rows = db.session.execute(
        select(Role.id, Role.name, Role.tenant_id)
        .join(UserRole, UserRole.role_id == Role.id)
        .where(UserRole.user_id == user_id)
        .order_by(Role.id)
    ).all()
    scoped_rows = db.session.execute(
        select(Role.id, Role.name, Role.tenant_id, UserDepartmentRole.department_id)
        .join(UserDepartmentRole, UserDepartmentRole.role_id == Role.id)
        .where(UserDepartmentRole.user_id == user_id)
        .order_by(UserDepartmentRole.department_id, Role.id)
    ).all()

    bindings = [RoleBinding(GLOBAL, rid, name, tid) for rid, name, tid in global_rows]
    bindings += [RoleBinding(SCOPED, rid, name, tid, dept_id) for rid, name, tid, dept_id in scoped_rows]
    return bindings


def _load_user_in_tenant(user_id: int, tenant_id: int) -> User:
    user = db.session.get(User, user_id)
    if user is None:
        raise UserNotFound(user_id)
    if not user.belongs_to(tenant_id):
        record_security_event(
            event_type="cross_tenant_access_attempt",
            reason="permission check against foreign tenant",
            tenant_id=tenant_id,
            details={"user_id": user_id, "user_tenant_id": user.tenant_id},
        )
        raise TenantMismatch("User", user_id, tenant_id, user.tenant_id)
    return user


def _tenant_bindings(user: User, tenant_id: int) -> list[RoleBinding]:
    bindings = []
    for binding in load_bindings(user.id):
        if binding.role_tenant_id != tenant_id:
            # Should be impossible past the flush-time fence; legacy rows only
            logger.error(
                "Ignoring %s binding of user %s to role %s from tenant %s",
                binding.kind, user.id, binding.role_id, binding.role_tenant_id,
                extra={"tenant_id": tenant_id, "user_id": user.id,
                       "event_type": "cross_tenant_binding"},
            )
            record_security_event(
                event_type="cross_tenant_binding",
                reason="role binding crosses tenant boundary",
                tenant_id=tenant_id,
                details=binding.to_dict() | {"user_id": user.id, "role_tenant_id": binding.role_tenant_id},
            )
            continue
        bindings.append(binding)
    return bindings


def _permission_rows(role_ids) -> list[tuple[str, str, bool, int]]:
    if not role_ids:
        return []
    return db.session.execute(
        select(Permission.module, Permission.action, RolePermission.allowed, RolePermission.role_id)
        .join(RolePermission, RolePermission.permission_id == Permission.id)
        .where(RolePermission.role_id.in_(role_ids))
    ).all()


def _fold(rows) -> tuple[set[str], set[str]]:
    granted, denied = set(), set()
    for module, action, allowed, _role_id in rows:
        (granted if allowed else denied).add(f"{module}:{action}")
    return granted, denied


# ── Resolution ───────────────────────────────────────────────────────────────


def resolve_permissions(user_id: int, tenant_id: int) -> set[str]:
    """
    Effective ``module:action`` set for the user in the tenant.

    Raises:
        UserNotFound: the user does not exist.
        TenantMismatch: the user belongs to another tenant.
    """
    user = _load_user_in_tenant(user_id, tenant_id)
    role_ids = {b.role_id for b in _tenant_bindings(user, tenant_id)}
    granted, denied = _fold(_permission_rows(role_ids))
    return granted - denied


def has_permission(user_id: int, tenant_id: int, module: str, action: str) -> bool:
    return f"{module}:{action}" in resolve_permissions(user_id, tenant_id)


def evaluate_permission(user_id: int, tenant_id: int, codename: str) -> dict:
    """
    Explain a decision.

    Returns a dict with ``allowed``, ``reason`` (``allow_role_grant``,
    ``deny_explicit`` or ``deny_by_default``), the roles that granted and
    the roles that denied.
    """
    module, action = parse_codename(codename)
    user = _load_user_in_tenant(user_id, tenant_id)
    bindings = _tenant_bindings(user, tenant_id)
    names = {b.role_id: b.role_name for b in bindings}

    granting, denying = set(), set()
    for row_module, row_action, allowed, role_id in _permission_rows(set(names)):
        if (row_module, row_action) != (module, action):
            continue
        (granting if allowed else denying).add(names[role_id])

    if denying:
        reason = "deny_explicit"
    elif granting:
        reason = "allow_role_grant"
    else:
        reason = "deny_by_default"
    return {
        "allowed": reason == "allow_role_grant",
        "reason": reason,
        "permission": codename,
        "granted_by": sorted(granting),
        "denied_by": sorted(denying),
        "bindings": [b.to_dict() for b in bindings],
    }


def check_permission(user_id: int, tenant_id: int, codename: str) -> None:
    """Raise ``PermissionDenied`` unless the user holds ``codename``."""
    module, action = parse_codename(codename)
    if not has_permission(user_id, tenant_id, module, action):
        logger.info(
            "User %s denied %s", user_id, codename,
            extra={"tenant_id": tenant_id, "user_id": user_id, "permission": codename},
        )
        raise PermissionDenied(user_id, codename, tenant_id)


def get_user_role_names(user_id: int, tenant_id: int) -> list[str]:
    """Distinct role names over both binding kinds."""
    user = _load_user_in_tenant(user_id, tenant_id)
    return sorted({b.role_name for b in _tenant_bindings(user, tenant_id)})


def list_role_bindings(user_id: int, tenant_id: int) -> list[dict]:
    user = _load_user_in_tenant(user_id, tenant_id)
    return [b.to_dict() for b in _tenant_bindings(user, tenant_id)]


# ── Recipient resolution ─────────────────────────────────────────────────────


def _users_bound_to(role_ids, tenant_id: int, department_id: int | None = None):
    """Users of the tenant bound to any of ``role_ids``.

    Without ``department_id`` both binding kinds count. With it, only
    bindings scoped to that department count.
    """
    if not role_ids:
        return []
    scoped = select(UserDepartmentRole.user_id).where(UserDepartmentRole.role_id.in_(role_ids))
    if department_id is not None:
        scoped = scoped.where(UserDepartmentRole.department_id == department_id)
        membership = User.id.in_(scoped)
    else:
        direct = select(UserRole.user_id).where(UserRole.role_id.in_(role_ids))
        membership = or_(User.id.in_(direct), User.id.in_(scoped))

    return db.session.scalars(
        select(User)
        .where(User.tenant_id == tenant_id, User.status != "inactive", membership)
        .order_by(User.id)
    ).all()


def resolve_recipients(tenant_id: int, role_name: str, department_id: int | None = None) -> list[User]:
    """Users holding ``role_name`` in the tenant through either binding kind."""
    role_ids = db.session.scalars(
        select(Role.id).where(Role.tenant_id == tenant_id, Role.name == role_name)
    ).all()
    if not role_ids:
        logger.warning(
            "No %s role defined", role_name, extra={"tenant_id": tenant_id},
        )
        return []
    return list(_users_bound_to(role_ids, tenant_id, department_id))


def users_with_permission(tenant_id: int, module: str, action: str) -> list[User]:
    """Users of the tenant whose effective permissions include ``module:action``."""
    rows = db.session.execute(
        select(RolePermission.role_id, RolePermission.allowed)
        .join(Permission, RolePermission.permission_id == Permission.id)
        .join(Role, RolePermission.role_id == Role.id)
        .where(Role.tenant_id == tenant_id, Permission.module == module, Permission.action == action)
    ).all()
    allowing = {rid for rid, allowed in rows if allowed}
    denying = {rid for rid, allowed in rows if not allowed}

    denied_users = {u.id for u in _users_bound_to(denying, tenant_id)}
    return [u for u in _users_bound_to(allowing, tenant_id) if u.id not in denied_users]
