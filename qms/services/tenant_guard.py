"""
Tenant Isolation Guard. Rejects cross-tenant references before a write.

Call ``validate_same_tenant`` with every id a multi-row write is about to
reference. All references are checked; the raised
``CrossTenantViolation`` lists each offender with its actual tenant (or
None when the row does not exist), not just the first one found.

Usage:
    validate_same_tenant(
        tenant_id,
        role_ids=[r.id for r in roles],
        department_ids=[dept_id],
    )
"""

import logging

from sqlalchemy import select

from qms.core.exceptions import CrossTenantViolation, TenantViolation
from qms.models import db
from qms.models.auth import Campus, Department, Role, User
from qms.models.program import AuditProgram
from qms.services.security_observability import record_security_event

logger = logging.getLogger(__name__)


def _violations(model, entity_type: str, ids, tenant_id: int) -> list[TenantViolation]:
    wanted = sorted({int(i) for i in ids if i is not None})
    if not wanted:
        return []
    owners = dict(db.session.execute(
        select(model.id, model.tenant_id).where(model.id.in_(wanted))
    ).all())
    return [
        TenantViolation(entity_type, entity_id, owners.get(entity_id))
        for entity_id in wanted
        if owners.get(entity_id) != tenant_id
    ]


def find_tenant_violations(
    tenant_id: int,
    *,
    user_ids=(),
    role_ids=(),
    department_ids=(),
    campus_ids=(),
    audit_program_ids=(),
) -> list[TenantViolation]:
    """Every referenced id that is missing or owned by another tenant."""
    found = []
    found += _violations(User, "User", user_ids, tenant_id)
    found += _violations(Role, "Role", role_ids, tenant_id)
    found += _violations(Department, "Department", department_ids, tenant_id)
    found += _violations(Campus, "Campus", campus_ids, tenant_id)
    found += _violations(AuditProgram, "AuditProgram", audit_program_ids, tenant_id)
    return found


def validate_same_tenant(
    tenant_id: int,
    *,
    user_ids=(),
    role_ids=(),
    department_ids=(),
    campus_ids=(),
    audit_program_ids=(),
    audit_program_id: int | None = None,
) -> None:
    """
    Raise ``CrossTenantViolation`` unless every reference belongs to ``tenant_id``.

    Pure read: nothing is written, and a violation is logged and recorded as
    a security event before the exception propagates.
    """
    if audit_program_id is not None:
        audit_program_ids = [*audit_program_ids, audit_program_id]

    violations = find_tenant_violations(
        tenant_id,
        user_ids=user_ids,
        role_ids=role_ids,
        department_ids=department_ids,
        campus_ids=campus_ids,
        audit_program_ids=audit_program_ids,
    )
    if not violations:
        return

    entity_types = sorted({v.entity_type for v in violations})
    logger.warning(
        "Tenant consistency validation failed: %d violation(s) across %s",
        len(violations), ", ".join(entity_types),
        extra={
            "tenant_id": tenant_id,
            "event_type": "cross_tenant_reference",
            "violation_count": len(violations),
        },
    )
    record_security_event(
        event_type="cross_tenant_reference",
        reason="write referenced entities outside the tenant",
        tenant_id=tenant_id,
        details={
            "entity_types": entity_types,
            "violations": [v.to_dict() for v in violations],
        },
    )
    raise CrossTenantViolation(tenant_id, violations)
