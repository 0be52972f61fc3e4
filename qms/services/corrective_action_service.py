"""
Corrective Action Workflow — five ordered steps per non-conformity.

    step                       actor     status after
    1 correction requirement   auditor   IN_PROGRESS
    2 proposed action          auditee   unchanged
    3 appropriateness review   auditor   unchanged
    4 follow-up action         auditor   COMPLETED | IN_PROGRESS | OPEN
    5 action effectiveness     auditor   VERIFIED | IN_PROGRESS

A step needs the previous one on record: a proposal needs a committed
requirement, a review needs a proposal, a follow-up needs a committed
approving review (YES, not a draft) and an effectiveness review needs a
fully completed follow-up. A new requirement clears steps 2 to 5 and a new
proposal clears steps 3 to 5. An ineffective verdict (NO) clears the
follow-up, so the action has to be carried out and followed up again.
Effectiveness never closes the action; ``close`` moves a VERIFIED action
to CLOSED.

Each step checks the actor's permission, commits the state change, and
only then notifies. A notification failure shows up in the returned
report and never undoes the step.

Usage:
    ca = open_corrective_action(finding_id, tenant_id=t, user_id=auditor)
    result = commit_correction_requirement(ca.id, {...}, tenant_id=t, user_id=auditor)
    result["notifications"]["status"]   # SUCCESS | PARTIAL_SUCCESS | FAILED | NO_RECIPIENTS
"""

import logging

from flask import current_app

from qms.core.exceptions import InvalidTransition, ValidationError
from qms.models import db
from qms.models.audit import write_audit
from qms.models.auth import User
from qms.models.base import utcnow
from qms.models.finding import (
    CA_ACTION_TYPES,
    CA_PRIORITIES,
    CA_RESOLVED_STATUSES,
    AuditFinding,
    CorrectiveAction,
)
from qms.services.department_service import department_heads
from qms.services.finding_service import is_eligible_for_corrective_action
from qms.services.helpers.scoped_queries import get_scoped
from qms.services.notification import (
    NO_RECIPIENTS,
    PARTIAL_SUCCESS,
    SUCCESS,
    DispatchReport,
    NotificationService,
)
from qms.services.permission_catalog import MR_ROLE
from qms.services.permission_service import check_permission, resolve_recipients
from qms.services.tenant_guard import validate_same_tenant

logger = logging.getLogger(__name__)

FOLLOW_UP_STATUS = {
    "ACTION_FULLY_COMPLETED": "COMPLETED",
    "ACTION_PARTIALLY_COMPLETED": "IN_PROGRESS",
    "NO_ACTION_TAKEN": "OPEN",
}

EFFECTIVENESS_STATUS = {
    "YES": "VERIFIED",
    "NO": "IN_PROGRESS",
}

REVIEW_RESPONSES = ("YES", "NO")

_REQUIREMENT_FIELDS = ("area", "requirement")
_PROPOSAL_FIELDS = ("root_cause", "corrective_action")


def is_resolved(corrective_action: CorrectiveAction) -> bool:
    """The only resolution test reporting relies on: VERIFIED or CLOSED."""
    return corrective_action.status in CA_RESOLVED_STATUSES


# ═══════════════════════════════════════════════════════════════
# Helpers
# ═══════════════════════════════════════════════════════════════
def _load(corrective_action_id, *, tenant_id, user_id, permission, skip_permission):
    if not skip_permission:
        check_permission(user_id, tenant_id, permission)
    return get_scoped(CorrectiveAction, corrective_action_id, tenant_id=tenant_id)


def _require(ca: CorrectiveAction, action: str, ok: bool, reason: str):
    if not ok:
        raise InvalidTransition("corrective_action", ca.id, action, ca.status, reason)


def _require_open(ca: CorrectiveAction, action: str):
    _require(ca, action, not is_resolved(ca), "corrective action is already resolved")


def _clear_review_cycle(ca: CorrectiveAction):
    ca.appropriateness_review = None
    ca.follow_up_action = None
    ca.action_effectiveness = None


def _require_fields(payload: dict | None, fields, step: str) -> dict:
    payload = dict(payload or {})
    missing = [f for f in fields if not str(payload.get(f) or "").strip()]
    if missing:
        raise ValidationError(f"{step} is missing required fields",
                              details={f: "required" for f in missing})
    return payload


def _finding_of(ca: CorrectiveAction) -> AuditFinding:
    return ca.non_conformity.finding


def _link(ca: CorrectiveAction) -> str:
    prefix = current_app.config.get("QMS_CORRECTIVE_ACTION_LINK", "/auditors/corrective-actions")
    return f"{prefix}/{ca.non_conformity_id}"


def _metadata(ca: CorrectiveAction, **extra) -> dict:
    finding = _finding_of(ca)
    return {
        "corrective_action_id": ca.id,
        "non_conformity_id": ca.non_conformity_id,
        "finding_id": finding.id,
        "department_id": finding.department_id,
        **extra,
    }


def _display_name(user_id):
    user = db.session.get(User, user_id) if user_id else None
    return user.full_name if user else "Unknown Auditor"


def _notify(ca, recipients, *, type, title, message, **meta) -> DispatchReport:
    return NotificationService.dispatch(
        tenant_id=ca.tenant_id,
        recipients=recipients,
        type=type,
        title=title,
        message=message,
        link=_link(ca),
        metadata=_metadata(ca, **meta),
    )


def _notify_department_heads(ca, **kwargs) -> DispatchReport:
    finding = _finding_of(ca)
    if finding.department is None:
        logger.warning("Finding %s has no department; skipping head notification", finding.id,
                       extra={"tenant_id": ca.tenant_id, "entity_id": ca.id})
        return DispatchReport(type=kwargs["type"])
    return _notify(ca, department_heads(finding.department), **kwargs)


def _record(ca, action, previous, user_id, payload=None):
    diff = {"status": {"old": previous, "new": ca.status}}
    if payload is not None:
        diff["payload"] = payload
    write_audit(entity_type="corrective_action", entity_id=ca.id,
                action=f"corrective_action.{action}", tenant_id=ca.tenant_id,
                actor_user_id=user_id, diff=diff)


def _result(ca, action, previous, report: DispatchReport | None) -> dict:
    return {
        "corrective_action_id": ca.id,
        "previous_status": previous,
        "new_status": ca.status,
        "action": action,
        "notifications": report.to_dict() if report is not None else None,
        "corrective_action": ca.to_dict(),
    }


# ═══════════════════════════════════════════════════════════════
# Creation
# ═══════════════════════════════════════════════════════════════
def open_corrective_action(
    finding_id: int,
    *,
    tenant_id: int,
    user_id: int | None = None,
    title: str | None = None,
    description: str | None = None,
    action_type: str = "CORRECTIVE",
    priority: str = "MEDIUM",
    assigned_to_id: int | None = None,
    skip_permission: bool = False,
) -> CorrectiveAction:
    """
    Return the finding's corrective action, creating it on first call.

    Only findings eligible for corrective action qualify: reviewed
    non-conformities, REFUSED ones included.
    """
    if not skip_permission:
        check_permission(user_id, tenant_id, "correctiveAction:create")
    if action_type not in CA_ACTION_TYPES:
        raise ValidationError(f"Unknown action type: {action_type}", details={"action_type": action_type})
    if priority not in CA_PRIORITIES:
        raise ValidationError(f"Unknown priority: {priority}", details={"priority": priority})

    finding = get_scoped(AuditFinding, finding_id, tenant_id=tenant_id)
    if not is_eligible_for_corrective_action(finding):
        raise InvalidTransition(
            "finding", finding.id, "open_corrective_action", finding.status,
            "only reviewed non-conformities can receive a corrective action",
        )

    nc = finding.non_conformity
    if nc.corrective_action is not None:
        return nc.corrective_action

    if assigned_to_id is not None:
        validate_same_tenant(tenant_id, user_ids=[assigned_to_id])

    ca = CorrectiveAction(
        tenant_id=tenant_id,
        non_conformity_id=nc.id,
        title=title or "Corrective Action",
        description=description or nc.description or "",
        action_type=action_type,
        priority=priority,
        status="OPEN",
        created_by_id=user_id,
        assigned_to_id=assigned_to_id,
    )
    db.session.add(ca)
    db.session.flush()
    _record(ca, "create", None, user_id)
    db.session.commit()
    logger.info("Opened corrective action %s for finding %s", ca.id, finding.id,
                extra={"tenant_id": tenant_id, "entity_type": "corrective_action", "entity_id": ca.id})
    return ca


# ═══════════════════════════════════════════════════════════════
# Steps
# ═══════════════════════════════════════════════════════════════
def commit_correction_requirement(corrective_action_id: int, data: dict, *, tenant_id: int,
                                  user_id: int, skip_permission: bool = False) -> dict:
    """Step 1: the auditor states what must be corrected; the department head is told.

    Committing again replaces the requirement and discards steps 2 to 5.
    """
    ca = _load(corrective_action_id, tenant_id=tenant_id, user_id=user_id,
               permission="correctiveAction:commit", skip_permission=skip_permission)
    _require_open(ca, "commit_correction_requirement")
    payload = _require_fields(data, _REQUIREMENT_FIELDS, "Correction requirement")

    previous = ca.status
    ca.correction_requirement = {
        **payload,
        "auditor": _display_name(user_id),
        "committed_by": user_id,
        "committed_at": utcnow().isoformat(),
    }
    ca.proposed_action = None
    _clear_review_cycle(ca)
    ca.status = "IN_PROGRESS"
    _record(ca, "commit_correction_requirement", previous, user_id, payload)
    db.session.commit()

    report = _notify_department_heads(
        ca,
        type="CORRECTIVE_ACTION_COMMITTED",
        title="Corrective action required",
        message=f'A correction requirement was committed for "{ca.title}". '
                f"Please submit a root cause analysis and proposed action.",
        committed_by=user_id,
    )
    return _result(ca, "commit_correction_requirement", previous, report)


def submit_proposed_action(corrective_action_id: int, data: dict, *, tenant_id: int,
                           user_id: int, skip_permission: bool = False) -> dict:
    """Step 2: the auditee's root cause and proposal. Restarts the review cycle."""
    ca = _load(corrective_action_id, tenant_id=tenant_id, user_id=user_id,
               permission="correctiveAction:propose", skip_permission=skip_permission)
    _require_open(ca, "submit_proposed_action")
    _require(ca, "submit_proposed_action", ca.correction_requirement is not None,
             "no correction requirement has been committed")
    payload = _require_fields(data, _PROPOSAL_FIELDS, "Proposed action")

    previous = ca.status
    ca.proposed_action = {**payload, "submitted_by": user_id, "submitted_at": utcnow().isoformat()}
    _clear_review_cycle(ca)
    _record(ca, "submit_proposed_action", previous, user_id, payload)
    db.session.commit()

    auditor_id = (ca.correction_requirement or {}).get("committed_by") or ca.created_by_id
    report = _notify(
        ca, [auditor_id] if auditor_id else [],
        type="ROOT_CAUSE_ANALYSIS_SUBMITTED",
        title="Root Cause Analysis Submitted",
        message=f"A root cause analysis was submitted for corrective action: {ca.title}.",
        submitted_by=user_id,
    )
    return _result(ca, "submit_proposed_action", previous, report)


def submit_appropriateness_review(corrective_action_id: int, response: str, *, tenant_id: int,
                                  user_id: int, comment: str | None = None, commit: bool = True,
                                  skip_permission: bool = False) -> dict:
    """Step 3: the auditor judges the proposal YES / NO (NO needs a comment).

    With ``commit=False`` the review is saved as a draft and nobody is told.
    """
    if response not in REVIEW_RESPONSES:
        raise ValidationError("Response must be YES or NO", details={"response": response})
    if response == "NO" and not (comment or "").strip():
        raise ValidationError("Comment is required when response is NO", details={"comment": "required"})

    ca = _load(corrective_action_id, tenant_id=tenant_id, user_id=user_id,
               permission="correctiveAction:review", skip_permission=skip_permission)
    _require_open(ca, "submit_appropriateness_review")
    _require(ca, "submit_appropriateness_review", ca.proposed_action is not None,
             "no proposed action to review")

    previous = ca.status
    ca.appropriateness_review = {
        "auditor_id": user_id,
        "response": response,
        "comment": comment if response == "NO" else None,
        "committed": commit,
        "responded_at": utcnow().isoformat(),
    }
    _record(ca, "submit_appropriateness_review", previous, user_id,
            {"response": response, "comment": comment})
    db.session.commit()

    report = None
    if commit:
        report = _notify_department_heads(
            ca,
            type="APPROPRIATENESS_REVIEWED",
            title="Appropriateness Review Completed",
            message="The auditor has reviewed the appropriateness of the proposed action "
                    "for a non-conformity in your department.",
            response=response,
        )
    return _result(ca, "submit_appropriateness_review", previous, report)


def submit_follow_up_action(corrective_action_id: int, outcome: str, *, tenant_id: int,
                            user_id: int, notes: str | None = None,
                            skip_permission: bool = False) -> dict:
    """Step 4: record how far the approved action was carried out."""
    if outcome not in FOLLOW_UP_STATUS:
        raise ValidationError("Invalid follow up action status",
                              details={"status": f"one of {', '.join(FOLLOW_UP_STATUS)}"})

    ca = _load(corrective_action_id, tenant_id=tenant_id, user_id=user_id,
               permission="correctiveAction:followUp", skip_permission=skip_permission)
    _require_open(ca, "submit_follow_up_action")
    review = ca.appropriateness_review or {}
    _require(ca, "submit_follow_up_action", review.get("response") == "YES" and bool(review.get("committed")),
             "the proposed action has not been approved in a committed review")

    previous = ca.status
    ca.follow_up_action = {
        "action": outcome,
        "status": "CLOSED" if outcome == "ACTION_FULLY_COMPLETED" else "OPEN",
        "notes": notes,
        "updated_by": user_id,
        "updated_at": utcnow().isoformat(),
    }
    ca.status = FOLLOW_UP_STATUS[outcome]
    _record(ca, "submit_follow_up_action", previous, user_id, {"action": outcome})
    db.session.commit()

    report = _notify_department_heads(
        ca,
        type="FOLLOW_UP_RECORDED",
        title="Corrective action follow-up recorded",
        message=f'Follow-up for "{ca.title}": {outcome.replace("_", " ").lower()}.',
        follow_up=outcome,
    )
    return _result(ca, "submit_follow_up_action", previous, report)


def submit_action_effectiveness(corrective_action_id: int, response: str, *, tenant_id: int,
                                user_id: int, details: str | None = None,
                                skip_permission: bool = False) -> dict:
    """Step 5: YES verifies the action, NO sends it back to IN_PROGRESS."""
    if response not in EFFECTIVENESS_STATUS:
        raise ValidationError("Response must be YES or NO", details={"response": response})
    if not (details or "").strip():
        raise ValidationError("Details are required", details={"details": "required"})

    ca = _load(corrective_action_id, tenant_id=tenant_id, user_id=user_id,
               permission="correctiveAction:verify", skip_permission=skip_permission)
    _require_open(ca, "submit_action_effectiveness")
    follow_up = ca.follow_up_action or {}
    _require(ca, "submit_action_effectiveness", follow_up.get("action") == "ACTION_FULLY_COMPLETED",
             "the action has not been fully completed")

    previous = ca.status
    ca.action_effectiveness = {
        "response": response,
        "details": details,
        "status": "CLOSED" if response == "YES" else "OPEN",
        "auditor_id": user_id,
        "reviewed_at": utcnow().isoformat(),
    }
    ca.status = EFFECTIVENESS_STATUS[response]
    if response == "NO":
        # the next effectiveness review needs a new completed follow-up
        ca.follow_up_action = None
    _record(ca, "submit_action_effectiveness", previous, user_id, {"response": response})
    db.session.commit()

    report = _notify_department_heads(
        ca,
        type="EFFECTIVENESS_REVIEWED",
        title="Corrective action effectiveness reviewed",
        message=f'The corrective action "{ca.title}" was judged '
                f'{"effective" if response == "YES" else "not effective"}.',
        response=response,
    )
    return _result(ca, "submit_action_effectiveness", previous, report)


def close_corrective_action(corrective_action_id: int, *, tenant_id: int, user_id: int,
                            skip_permission: bool = False) -> dict:
    """VERIFIED → CLOSED."""
    ca = _load(corrective_action_id, tenant_id=tenant_id, user_id=user_id,
               permission="correctiveAction:close", skip_permission=skip_permission)
    _require(ca, "close", ca.status == "VERIFIED", "only verified corrective actions can be closed")

    previous = ca.status
    ca.status = "CLOSED"
    ca.non_conformity.status = "CLOSED"
    _record(ca, "close", previous, user_id)
    db.session.commit()
    return _result(ca, "close", previous, None)


def notify_management_representative(corrective_action_id: int, *, tenant_id: int, user_id: int,
                                     comment: str | None = None,
                                     skip_permission: bool = False) -> dict:
    """
    Tell every MR of the tenant about the corrective action.

    MR holders are found through both global and department-scoped
    bindings. ``mr_notified`` is set once at least one notification was
    stored.
    """
    ca = _load(corrective_action_id, tenant_id=tenant_id, user_id=user_id,
               permission="correctiveAction:verify", skip_permission=skip_permission)

    recipients = resolve_recipients(tenant_id, MR_ROLE)
    report = _notify(
        ca, recipients,
        type="CORRECTIVE_ACTION_MR_NOTIFICATION",
        title="Corrective action requires MR attention",
        message=comment or f'Corrective action "{ca.title}" is ready for management review.',
        sender_id=user_id,
        ca_status=ca.status,
    )
    if report.status in (SUCCESS, PARTIAL_SUCCESS):
        ca.mr_notified = True
        _record(ca, "notify_mr", ca.status, user_id, {"recipients": report.recipient_ids})
        db.session.commit()
    elif report.status == NO_RECIPIENTS:
        logger.warning("No MR found to notify", extra={"tenant_id": tenant_id, "entity_id": ca.id})
    return _result(ca, "notify_mr", ca.status, report)
