"""JSON error envelope shared by the decorators and the app error handlers.

Every error leaves the app as ``{"error": message, "code": code}`` plus an
optional ``details`` object. Domain exceptions from ``qms.core.exceptions``
are translated by ``error_response``.

Usage
-----
    from qms.utils.errors import api_error, error_response, E

    return api_error(E.FORBIDDEN, "Permission denied", details={"required": "auditFinding:review"})
    return error_response(exc)
"""

from __future__ import annotations

from flask import jsonify

from qms.core.exceptions import (
    ConflictError,
    CrossTenantViolation,
    InvalidTransition,
    MissingClassificationRecord,
    NotFoundError,
    PermissionDenied,
    TenantMismatch,
    ValidationError,
)


class E:
    """Error codes. Each maps to one HTTP status in ``_STATUS``."""

    UNAUTHENTICATED = "ERR_UNAUTHENTICATED"  # 401
    FORBIDDEN = "ERR_FORBIDDEN"  # 403
    TENANT_MISMATCH = "ERR_TENANT_MISMATCH"  # 403
    CROSS_TENANT = "ERR_CROSS_TENANT"  # 403
    NOT_FOUND = "ERR_NOT_FOUND"  # 404
    VALIDATION_INVALID = "ERR_VALIDATION_INVALID"  # 400
    VALIDATION_RULE = "ERR_VALIDATION_RULE"  # 422
    CONFLICT_DUPLICATE = "ERR_CONFLICT_DUPLICATE"  # 409
    CONFLICT_STATE = "ERR_CONFLICT_STATE"  # 409
    CLASSIFICATION_MISSING = "ERR_CLASSIFICATION_MISSING"  # 409
    INTERNAL = "ERR_INTERNAL"  # 500


_STATUS: dict[str, int] = {
    E.UNAUTHENTICATED: 401,
    E.FORBIDDEN: 403,
    E.TENANT_MISMATCH: 403,
    E.CROSS_TENANT: 403,
    E.NOT_FOUND: 404,
    E.VALIDATION_INVALID: 400,
    E.VALIDATION_RULE: 422,
    E.CONFLICT_DUPLICATE: 409,
    E.CONFLICT_STATE: 409,
    E.CLASSIFICATION_MISSING: 409,
    E.INTERNAL: 500,
}

# Exceptions handled by ``error_response``; subclasses first.
DOMAIN_ERRORS = (
    CrossTenantViolation,
    TenantMismatch,
    PermissionDenied,
    NotFoundError,
    ValidationError,
    ConflictError,
    InvalidTransition,
    MissingClassificationRecord,
)


def api_error(code: str, message: str, *, status: int | None = None, details: dict | None = None):
    """Build ``(jsonify(body), status)``; status defaults from the code, then 400."""
    body: dict = {"error": message, "code": code}
    if details:
        body["details"] = details
    return jsonify(body), status or _STATUS.get(code, 400)


def _describe(exc: Exception) -> tuple[str, str, dict | None]:
    if isinstance(exc, CrossTenantViolation):
        return (E.CROSS_TENANT, "Request references resources outside the tenant",
                {"violations": [v.to_dict() for v in exc.violations]})
    if isinstance(exc, TenantMismatch):
        return E.TENANT_MISMATCH, "Resource belongs to another tenant", None
    if isinstance(exc, PermissionDenied):
        return E.FORBIDDEN, "Permission denied", {"required": exc.permission}
    if isinstance(exc, NotFoundError):
        return E.NOT_FOUND, f"{exc.resource} not found", None
    if isinstance(exc, ValidationError):
        return E.VALIDATION_RULE, str(exc), exc.details
    if isinstance(exc, ConflictError):
        return E.CONFLICT_DUPLICATE, f"{exc.resource} already exists", {"field": exc.field}
    if isinstance(exc, InvalidTransition):
        return E.CONFLICT_STATE, str(exc), {"action": exc.action, "current_status": exc.current_status}
    if isinstance(exc, MissingClassificationRecord):
        return (E.CLASSIFICATION_MISSING, str(exc),
                {"finding_id": exc.finding_id, "category": exc.category})
    return E.INTERNAL, "Internal server error", None


def error_response(exc: Exception):
    """Translate a domain exception into the error envelope."""
    code, message, details = _describe(exc)
    return api_error(code, message, details=details)
