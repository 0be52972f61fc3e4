"""
Auth Models — tenants, campuses, departments, users, roles, permissions
and the two kinds of user-role binding.

A user reaches a role either through a tenant-wide ``UserRole`` or through
a department-scoped ``UserDepartmentRole``; both kinds may co-exist for the
same user. Every binding must stay inside the user's tenant, which is
enforced at flush time by ``qms.models._tenant_fencing``.
"""

from qms.models import db
from qms.models.base import TenantModel, isoformat, utcnow

TENANT_STATUSES = {"ACTIVE", "SUSPENDED"}
USER_STATUSES = {"active", "invited", "inactive"}


# ═══════════════════════════════════════════════════════════════
# 1. TENANTS
# ═══════════════════════════════════════════════════════════════
class Tenant(db.Model):
    __tablename__ = "tenants"

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(200), nullable=False)
    domain = db.Column(db.String(200), unique=True, nullable=False)
    status = db.Column(db.String(20), nullable=False, default="ACTIVE")
    created_at = db.Column(db.DateTime(timezone=True), default=utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    users = db.relationship("User", back_populates="tenant", lazy="dynamic")
    roles = db.relationship("Role", back_populates="tenant", lazy="dynamic")

    @property
    def is_active(self):
        return self.status == "ACTIVE"

    def to_dict(self):
        return {
            "id": self.id,
            "name": self.name,
            "domain": self.domain,
            "status": self.status,
            "created_at": isoformat(self.created_at),
        }


# ═══════════════════════════════════════════════════════════════
# 2. CAMPUSES & DEPARTMENTS
# ═══════════════════════════════════════════════════════════════
class Campus(TenantModel):
    __tablename__ = "campuses"

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(200), nullable=False)
    created_at = db.Column(db.DateTime(timezone=True), default=utcnow)

    departments = db.relationship("Department", back_populates="campus", lazy="dynamic")

    def to_dict(self):
        return {"id": self.id, "tenant_id": self.tenant_id, "name": self.name}


class Department(TenantModel):
    __tablename__ = "departments"

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(200), nullable=False)
    code = db.Column(db.String(50))
    campus_id = db.Column(
        db.Integer, db.ForeignKey("campuses.id", ondelete="SET NULL"), nullable=True,
    )
    # Weak reference: the head may leave without the department going away
    hod_id = db.Column(
        db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True,
    )
    created_at = db.Column(db.DateTime(timezone=True), default=utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    __table_args__ = (
        db.UniqueConstraint("tenant_id", "name", name="uq_department_tenant_name"),
    )

    campus = db.relationship("Campus", back_populates="departments")
    hod = db.relationship("User", foreign_keys=[hod_id])

    def to_dict(self):
        return {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "name": self.name,
            "code": self.code,
            "campus_id": self.campus_id,
            "hod_id": self.hod_id,
        }


# ═══════════════════════════════════════════════════════════════
# 3. USERS
# ═══════════════════════════════════════════════════════════════
class User(TenantModel):
    __tablename__ = "users"

    id = db.Column(db.Integer, primary_key=True)
    email = db.Column(db.String(200), nullable=False)
    first_name = db.Column(db.String(100))
    last_name = db.Column(db.String(100))
    status = db.Column(db.String(20), default="active")
    created_at = db.Column(db.DateTime(timezone=True), default=utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    # Same email can exist in different tenants
    __table_args__ = (
        db.UniqueConstraint("tenant_id", "email", name="uq_user_tenant_email"),
    )

    tenant = db.relationship("Tenant", back_populates="users")
    user_roles = db.relationship(
        "UserRole", back_populates="user", lazy="dynamic",
        cascade="all, delete-orphan", foreign_keys="UserRole.user_id",
    )
    department_roles = db.relationship(
        "UserDepartmentRole", back_populates="user", lazy="dynamic",
        cascade="all, delete-orphan",
    )

    @property
    def full_name(self):
        return " ".join(p for p in (self.first_name, self.last_name) if p) or self.email

    def to_dict(self):
        return {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "email": self.email,
            "first_name": self.first_name,
            "last_name": self.last_name,
            "status": self.status,
        }


# ═══════════════════════════════════════════════════════════════
# 4. ROLES
# ═══════════════════════════════════════════════════════════════
class Role(TenantModel):
    __tablename__ = "roles"

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(100), nullable=False)
    description = db.Column(db.Text)
    is_default = db.Column(db.Boolean, default=False)
    is_removable = db.Column(db.Boolean, default=True)
    created_at = db.Column(db.DateTime(timezone=True), default=utcnow)

    __table_args__ = (
        db.UniqueConstraint("tenant_id", "name", name="uq_role_tenant_name"),
    )

    tenant = db.relationship("Tenant", back_populates="roles")
    role_permissions = db.relationship(
        "RolePermission", back_populates="role", lazy="dynamic", cascade="all, delete-orphan",
    )

    def to_dict(self, include_permissions=False):
        d = {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "name": self.name,
            "description": self.description,
            "is_default": self.is_default,
            "is_removable": self.is_removable,
        }
        if include_permissions:
            d["permissions"] = sorted(
                rp.permission.codename for rp in self.role_permissions if rp.allowed
            )
            d["denied"] = sorted(
                rp.permission.codename for rp in self.role_permissions if not rp.allowed
            )
        return d


# ═══════════════════════════════════════════════════════════════
# 5. PERMISSIONS
# ═══════════════════════════════════════════════════════════════
class Permission(db.Model):
    __tablename__ = "permissions"

    id = db.Column(db.Integer, primary_key=True)
    module = db.Column(db.String(50), nullable=False)
    action = db.Column(db.String(50), nullable=False)
    description = db.Column(db.String(500))
    created_at = db.Column(db.DateTime(timezone=True), default=utcnow)

    __table_args__ = (
        db.UniqueConstraint("module", "action", name="uq_permission_module_action"),
    )

    @property
    def codename(self):
        """Wire form used by decorators and logs, e.g. ``auditProgram:commit``."""
        return f"{self.module}:{self.action}"

    def to_dict(self):
        return {
            "id": self.id,
            "module": self.module,
            "action": self.action,
            "codename": self.codename,
            "description": self.description,
        }


# ═══════════════════════════════════════════════════════════════
# 6. ROLE ↔ PERMISSION
# ═══════════════════════════════════════════════════════════════
class RolePermission(db.Model):
    __tablename__ = "role_permissions"

    id = db.Column(db.Integer, primary_key=True)
    role_id = db.Column(
        db.Integer, db.ForeignKey("roles.id", ondelete="CASCADE"), nullable=False, index=True,
    )
    permission_id = db.Column(
        db.Integer, db.ForeignKey("permissions.id", ondelete="CASCADE"), nullable=False,
    )
    # False is an explicit deny and beats any grant from another role
    allowed = db.Column(db.Boolean, nullable=False, default=True)
    created_at = db.Column(db.DateTime(timezone=True), default=utcnow)

    __table_args__ = (
        db.UniqueConstraint("role_id", "permission_id", name="uq_role_permission"),
    )

    role = db.relationship("Role", back_populates="role_permissions")
    permission = db.relationship("Permission")


# ═══════════════════════════════════════════════════════════════
# 7. USER ↔ ROLE (tenant-wide)
# ═══════════════════════════════════════════════════════════════
class UserRole(db.Model):
    __tablename__ = "user_roles"

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(
        db.Integer, db.ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True,
    )
    role_id = db.Column(
        db.Integer, db.ForeignKey("roles.id", ondelete="CASCADE"), nullable=False, index=True,
    )
    is_default = db.Column(db.Boolean, default=False)
    assigned_by = db.Column(
        db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True,
    )
    assigned_at = db.Column(db.DateTime(timezone=True), default=utcnow)

    __table_args__ = (
        db.UniqueConstraint("user_id", "role_id", name="uq_user_role"),
    )

    user = db.relationship("User", back_populates="user_roles", foreign_keys=[user_id])
    role = db.relationship("Role")


# ═══════════════════════════════════════════════════════════════
# 8. USER ↔ DEPARTMENT ↔ ROLE (department-scoped)
# ═══════════════════════════════════════════════════════════════
class UserDepartmentRole(db.Model):
    __tablename__ = "user_department_roles"

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(
        db.Integer, db.ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True,
    )
    department_id = db.Column(
        db.Integer, db.ForeignKey("departments.id", ondelete="CASCADE"), nullable=False, index=True,
    )
    role_id = db.Column(
        db.Integer, db.ForeignKey("roles.id", ondelete="CASCADE"), nullable=False, index=True,
    )
    is_primary_department = db.Column(db.Boolean, default=False)
    is_primary_role = db.Column(db.Boolean, default=False)
    is_default = db.Column(db.Boolean, default=False)
    assigned_at = db.Column(db.DateTime(timezone=True), default=utcnow)

    __table_args__ = (
        db.UniqueConstraint("user_id", "department_id", "role_id", name="uq_user_department_role"),
    )

    user = db.relationship("User", back_populates="department_roles")
    department = db.relationship("Department")
    role = db.relationship("Role")
