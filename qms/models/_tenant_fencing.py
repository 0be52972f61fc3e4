"""Flush-time tenant fencing for rows that reference other tenant-owned rows.

Every binding or child row must live in the same tenant as what it points
at. The service layer validates references up front through
``qms.services.tenant_guard``; this listener catches the writes that skip
the service layer, so a cross-tenant row can never reach the database.

The check runs in ``before_flush`` for new and dirty instances and raises
``TenantMismatch``, which aborts the flush and leaves the transaction for
the caller to roll back.
"""

import logging

from sqlalchemy import event
from sqlalchemy.orm import Session

from qms.core.exceptions import TenantMismatch

logger = logging.getLogger(__name__)

_REGISTERED = False


def _related(session, obj, rel_name, fk_name, model):
    # some columns have no relationship attribute; fall back to the fk
    related = getattr(obj, rel_name, None)
    if related is not None:
        return related
    fk = getattr(obj, fk_name)
    if fk is None:
        return None
    return session.get(model, fk)


def _fence(obj, expected_tenant_id, related, entity_type):
    if related is None or expected_tenant_id is None:
        return
    if not related.belongs_to(expected_tenant_id):
        logger.warning(
            "Rejected %s write: %s %s is in tenant %s, expected %s",
            type(obj).__name__, entity_type, related.id, related.tenant_id, expected_tenant_id,
            extra={"tenant_id": expected_tenant_id, "event_type": "tenant_fence_rejected"},
        )
        raise TenantMismatch(entity_type, related.id, expected_tenant_id, related.tenant_id)


def _check_user_role(session, obj):
    from qms.models.auth import Role, User

    user = _related(session, obj, "user", "user_id", User)
    if user is None:
        return
    _fence(obj, user.tenant_id, _related(session, obj, "role", "role_id", Role), "Role")


def _check_user_department_role(session, obj):
    from qms.models.auth import Department, Role, User

    user = _related(session, obj, "user", "user_id", User)
    if user is None:
        return
    _fence(obj, user.tenant_id, _related(session, obj, "role", "role_id", Role), "Role")
    _fence(
        obj, user.tenant_id,
        _related(session, obj, "department", "department_id", Department), "Department",
    )


def _check_department(session, obj):
    from qms.models.auth import Campus, User

    _fence(obj, obj.tenant_id, _related(session, obj, "campus", "campus_id", Campus), "Campus")
    _fence(obj, obj.tenant_id, _related(session, obj, "hod", "hod_id", User), "User")


def _check_audit(session, obj):
    from qms.models.program import AuditProgram

    _fence(
        obj, obj.tenant_id,
        _related(session, obj, "audit_program", "audit_program_id", AuditProgram), "AuditProgram",
    )


def _check_finding(session, obj):
    from qms.models.auth import Department, User
    from qms.models.program import Audit

    _fence(obj, obj.tenant_id, _related(session, obj, "audit", "audit_id", Audit), "Audit")
    _fence(
        obj, obj.tenant_id,
        _related(session, obj, "department", "department_id", Department), "Department",
    )
    _fence(obj, obj.tenant_id, _related(session, obj, "created_by", "created_by_id", User), "User")


def _check_corrective_action(session, obj):
    from qms.models.auth import User
    from qms.models.finding import NonConformity

    _fence(obj, obj.tenant_id, _related(session, obj, "created_by", "created_by_id", User), "User")
    _fence(obj, obj.tenant_id, _related(session, obj, "assigned_to", "assigned_to_id", User), "User")
    nc = _related(session, obj, "non_conformity", "non_conformity_id", NonConformity)
    if nc is None or nc.finding is None:
        return
    _fence(obj, obj.tenant_id, nc.finding, "AuditFinding")


def _check_notification(session, obj):
    from qms.models.auth import User

    _fence(obj, obj.tenant_id, _related(session, obj, "target_user", "target_user_id", User), "User")


def _checks():
    from qms.models.auth import Department, UserDepartmentRole, UserRole
    from qms.models.finding import AuditFinding, CorrectiveAction
    from qms.models.notification import Notification
    from qms.models.program import Audit

    return {
        Notification: _check_notification,
        UserRole: _check_user_role,
        UserDepartmentRole: _check_user_department_role,
        Department: _check_department,
        Audit: _check_audit,
        AuditFinding: _check_finding,
        CorrectiveAction: _check_corrective_action,
    }


def _before_flush(session, flush_context, instances):
    checks = _checks()
    with session.no_autoflush:
        for obj in list(session.new) + list(session.dirty):
            check = checks.get(type(obj))
            if check is not None:
                check(session, obj)


def register_all():
    """Attach the fencing listener to every ORM session (idempotent)."""
    global _REGISTERED
    if _REGISTERED:
        return
    event.listen(Session, "before_flush", _before_flush)
    _REGISTERED = True
