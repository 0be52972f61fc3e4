"""
Role/Permission Provisioning — idempotent upserts for the RBAC tables.

Every ``ensure_*`` call can be repeated: the row is looked up first and
only created when absent, and the unique constraints on
``(module, action)``, ``(tenant_id, name)`` and ``(role_id, permission_id)``
back the pre-check when two writers race.

Composite operations (tenant onboarding, role seeding, catalog sync) run
in a single transaction and roll back as a unit.

Usage:
    perm = ensure_permission("auditProgram", "commit", "Commit audit program")
    ensure_role_permission(role.id, perm.id)              # grant
    ensure_role_permission(role.id, perm.id, allowed=False)  # explicit deny
"""

import logging

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from qms.core.exceptions import ConflictError, NotFoundError, ValidationError
from qms.models import db
from qms.models.audit import write_audit
from qms.models.auth import Permission, Role, RolePermission, Tenant
from qms.services import permission_catalog as catalog

logger = logging.getLogger(__name__)


def _find_permission(module: str, action: str) -> Permission | None:
    return db.session.execute(
        select(Permission).where(Permission.module == module, Permission.action == action)
    ).scalar_one_or_none()


def _find_role_permission(role_id: int, permission_id: int) -> RolePermission | None:
    return db.session.execute(
        select(RolePermission).where(
            RolePermission.role_id == role_id, RolePermission.permission_id == permission_id,
        )
    ).scalar_one_or_none()


def _commit_or_recover(lookup, resource: str, field: str, value: str):
    """Commit; if a concurrent writer won the unique constraint, return its row."""
    try:
        db.session.commit()
    except IntegrityError:
        db.session.rollback()
        existing = lookup()
        if existing is None:
            raise ConflictError(resource, field, value)
        logger.info("%s %s created concurrently; reusing existing row", resource, value)
        return existing
    return None


# ═══════════════════════════════════════════════════════════════
# 1. PERMISSIONS
# ═══════════════════════════════════════════════════════════════
def ensure_permission(module: str, action: str, description: str | None = None, *, commit: bool = True) -> Permission:
    """Return the (module, action) permission, creating it if absent.

    Only catalogued pairs may be provisioned. An existing row keeps its id;
    its description is refreshed when a new one is given.
    """
    if not catalog.is_catalogued(module, action):
        raise ValidationError(
            f"Permission {module}:{action} is not part of the catalog",
            details={"permission": f"{module}:{action}"},
        )
    if description is None:
        description = catalog.PERMISSION_CATALOG[module][action]

    perm = _find_permission(module, action)
    if perm is not None:
        if description and perm.description != description:
            perm.description = description
            if commit:
                db.session.commit()
        return perm

    perm = Permission(module=module, action=action, description=description)
    db.session.add(perm)
    if not commit:
        db.session.flush()
        return perm

    existing = _commit_or_recover(
        lambda: _find_permission(module, action), "Permission", "module:action", f"{module}:{action}",
    )
    return existing or perm


# ═══════════════════════════════════════════════════════════════
# 2. ROLES
# ═══════════════════════════════════════════════════════════════
def ensure_role(
    tenant_id: int,
    name: str,
    description: str | None = None,
    *,
    is_default: bool = False,
    is_removable: bool = True,
    commit: bool = True,
) -> Role:
    """Return the tenant's role called ``name``, creating it if absent."""
    def lookup():
        return db.session.execute(
            select(Role).where(Role.tenant_id == tenant_id, Role.name == name)
        ).scalar_one_or_none()

    role = lookup()
    if role is not None:
        return role

    role = Role(
        tenant_id=tenant_id,
        name=name,
        description=description or catalog.DEFAULT_ROLES.get(name),
        is_default=is_default,
        is_removable=is_removable,
    )
    db.session.add(role)
    if not commit:
        db.session.flush()
        return role
    return _commit_or_recover(lookup, "Role", "name", name) or role


# ═══════════════════════════════════════════════════════════════
# 3. ROLE ↔ PERMISSION
# ═══════════════════════════════════════════════════════════════
def ensure_role_permission(
    role_id: int,
    permission_id: int,
    allowed: bool = True,
    *,
    actor_user_id: int | None = None,
    commit: bool = True,
) -> RolePermission:
    """Upsert the role's grant (``allowed=True``) or explicit deny (``allowed=False``)."""
    role = db.session.get(Role, role_id)
    if role is None:
        raise NotFoundError(resource="Role", resource_id=role_id)
    if db.session.get(Permission, permission_id) is None:
        raise NotFoundError(resource="Permission", resource_id=permission_id)

    rp = _find_role_permission(role_id, permission_id)
    if rp is not None:
        if rp.allowed != allowed:
            write_audit(
                entity_type="role_permission", entity_id=rp.id, action="role_permission.update",
                tenant_id=role.tenant_id, actor_user_id=actor_user_id,
                diff={"allowed": {"old": rp.allowed, "new": allowed}},
            )
            rp.allowed = allowed
            if commit:
                db.session.commit()
        return rp

    rp = RolePermission(role_id=role_id, permission_id=permission_id, allowed=allowed)
    db.session.add(rp)
    db.session.flush()
    write_audit(
        entity_type="role_permission", entity_id=rp.id, action="role_permission.create",
        tenant_id=role.tenant_id, actor_user_id=actor_user_id,
        diff={"role_id": role_id, "permission_id": permission_id, "allowed": allowed},
    )
    if not commit:
        return rp
    existing = _commit_or_recover(
        lambda: _find_role_permission(role_id, permission_id),
        "RolePermission", "role_id:permission_id", f"{role_id}:{permission_id}",
    )
    return existing or rp


def grant_permission(role_id: int, codename: str, *, allowed: bool = True, actor_user_id: int | None = None) -> RolePermission:
    """Convenience wrapper taking a ``module:action`` codename."""
    module, action = catalog.parse_codename(codename)
    perm = ensure_permission(module, action)
    return ensure_role_permission(role_id, perm.id, allowed, actor_user_id=actor_user_id)


def remove_role_permission(role_id: int, permission_id: int, *, actor_user_id: int | None = None) -> bool:
    """Delete the role's grant or deny row. Returns False when there was none."""
    rp = _find_role_permission(role_id, permission_id)
    if rp is None:
        return False
    write_audit(
        entity_type="role_permission", entity_id=rp.id, action="role_permission.delete",
        tenant_id=rp.role.tenant_id, actor_user_id=actor_user_id,
        diff={"role_id": role_id, "permission_id": permission_id, "allowed": rp.allowed},
    )
    db.session.delete(rp)
    db.session.commit()
    return True


# ═══════════════════════════════════════════════════════════════
# 4. COMPOSITE OPERATIONS
# ═══════════════════════════════════════════════════════════════
def _ensure_catalog_permissions() -> tuple[dict[str, Permission], set[str]]:
    perms, created = {}, set()
    for module, action, description in catalog.iter_catalog():
        existed = _find_permission(module, action) is not None
        perm = ensure_permission(module, action, description, commit=False)
        perms[perm.codename] = perm
        if not existed:
            created.add(perm.codename)
    return perms, created


def _seed_roles(tenant_id: int, perms: dict[str, Permission], only_codenames: set[str] | None = None) -> dict:
    summary = {"roles": [], "grants": 0}
    for name, description in catalog.DEFAULT_ROLES.items():
        role = ensure_role(
            tenant_id, name, description,
            is_default=True,
            is_removable=name not in catalog.NON_REMOVABLE_ROLES,
            commit=False,
        )
        summary["roles"].append(role.name)
        for codename in catalog.default_grants_for(name):
            if only_codenames is not None and codename not in only_codenames:
                continue
            if _find_role_permission(role.id, perms[codename].id) is None:
                ensure_role_permission(role.id, perms[codename].id, True, commit=False)
                summary["grants"] += 1
    return summary


def seed_tenant_roles(tenant_id: int) -> dict:
    """Create the default roles of a tenant with their default grants.

    Existing roles and grants are left as they are, including explicit denies.
    """
    if db.session.get(Tenant, tenant_id) is None:
        raise NotFoundError(resource="Tenant", resource_id=tenant_id)
    try:
        perms, _ = _ensure_catalog_permissions()
        summary = _seed_roles(tenant_id, perms)
        db.session.commit()
    except SQLAlchemyError:
        db.session.rollback()
        logger.exception("Role seeding failed", extra={"tenant_id": tenant_id})
        raise
    logger.info(
        "Seeded %d roles and %d grants", len(summary["roles"]), summary["grants"],
        extra={"tenant_id": tenant_id},
    )
    return summary


def sync_permission_catalog() -> dict:
    """Write missing catalog permissions and grant new ones to every tenant's default roles.

    Grants are only added for permissions created by this run, so grants
    removed or turned into denies by an administrator stay that way.
    """
    try:
        perms, created = _ensure_catalog_permissions()
        grants = 0
        if created:
            for tenant_id in db.session.scalars(select(Tenant.id)).all():
                grants += _seed_roles(tenant_id, perms, only_codenames=created)["grants"]
        db.session.commit()
    except SQLAlchemyError:
        db.session.rollback()
        logger.exception("Permission catalog sync failed")
        raise
    logger.info("Permission catalog synced: %d created, %d grants", len(created), grants)
    return {"created": sorted(created), "grants": grants, "total": len(perms)}


def onboard_tenant(name: str, domain: str) -> Tenant:
    """Create a tenant with its default roles in one transaction."""
    domain = (domain or "").strip().lower()
    if not name or not domain:
        raise ValidationError("Tenant name and domain are required",
                              details={"name": name, "domain": domain})
    if db.session.execute(select(Tenant.id).where(Tenant.domain == domain)).first():
        raise ConflictError("Tenant", "domain", domain)

    try:
        tenant = Tenant(name=name, domain=domain, status="ACTIVE")
        db.session.add(tenant)
        db.session.flush()
        perms, _ = _ensure_catalog_permissions()
        _seed_roles(tenant.id, perms)
        write_audit(entity_type="tenant", entity_id=tenant.id, action="tenant.onboard",
                    tenant_id=tenant.id, diff={"name": name, "domain": domain})
        db.session.commit()
    except IntegrityError:
        db.session.rollback()
        raise ConflictError("Tenant", "domain", domain)
    except SQLAlchemyError:
        db.session.rollback()
        logger.exception("Tenant onboarding failed for %s", domain)
        raise
    logger.info("Tenant %s onboarded", domain, extra={"tenant_id": tenant.id})
    return tenant
