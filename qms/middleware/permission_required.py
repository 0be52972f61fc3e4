"""
Permission Decorators — RBAC checks for route protection.

The authenticating layer in front of the app puts the caller on ``g``:

    g.current_user_id    acting user
    g.current_tenant_id  tenant the request runs in

Usage:
    @bp.route("/api/v1/audit-programs/<int:program_id>/commit", methods=["POST"])
    @require_permission("auditProgram:commit")
    def commit_program(program_id):
        ...

    @bp.route("/api/v1/findings", methods=["GET"])
    @require_any_permission("auditFinding:read", "auditFinding:review")
    def list_findings():
        ...

Codenames are checked against the permission catalog when the decorator
is applied, so a typo fails at import time instead of denying everyone.
A user from another tenant raises ``TenantMismatch``, which the app's
error handler turns into a 403.
"""

import functools
import logging

from flask import g

from qms.services.permission_catalog import is_catalogued, parse_codename
from qms.services.permission_service import resolve_permissions
from qms.utils.errors import E, api_error

logger = logging.getLogger(__name__)


def _checked(codename: str) -> str:
    module, action = parse_codename(codename)
    if not is_catalogued(module, action):
        raise ValueError(f"Permission {codename!r} is not in the permission catalog")
    return codename


def _identity():
    return getattr(g, "current_user_id", None), getattr(g, "current_tenant_id", None)


def _unauthenticated():
    return api_error(E.UNAUTHENTICATED, "Authentication required")


def _denied(user_id, tenant_id, required, view_name):
    logger.warning(
        "User %s denied: missing permission %s on %s", user_id, required, view_name,
        extra={"tenant_id": tenant_id, "user_id": user_id, "permission": str(required)},
    )
    return api_error(E.FORBIDDEN, "Permission denied", details={"required": required})


def require_permission(codename: str):
    """
    Decorator: require the current user to hold ``codename`` in the current tenant.

    Args:
        codename: Permission codename, e.g. "auditProgram:commit"
    """
    codename = _checked(codename)

    def decorator(f):
        @functools.wraps(f)
        def decorated(*args, **kwargs):
            user_id, tenant_id = _identity()
            if user_id is None or tenant_id is None:
                return _unauthenticated()
            if codename not in resolve_permissions(user_id, tenant_id):
                return _denied(user_id, tenant_id, codename, f.__name__)
            return f(*args, **kwargs)
        return decorated
    return decorator


def require_any_permission(*codenames: str):
    """
    Decorator: require the current user to hold at least ONE of the listed permissions.
    """
    codenames = tuple(_checked(c) for c in codenames)

    def decorator(f):
        @functools.wraps(f)
        def decorated(*args, **kwargs):
            user_id, tenant_id = _identity()
            if user_id is None or tenant_id is None:
                return _unauthenticated()
            held = resolve_permissions(user_id, tenant_id)
            if not any(c in held for c in codenames):
                return _denied(user_id, tenant_id, list(codenames), f.__name__)
            return f(*args, **kwargs)
        return decorated
    return decorator
