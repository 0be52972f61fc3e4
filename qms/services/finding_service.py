"""
Finding Service — categorization and review lifecycle of audit findings.

Categorization
    A finding is COMPLIANCE, IMPROVEMENT or NON_CONFORMITY. Setting a
    category creates the matching classification record the first time
    and re-selects it afterwards; records of other categories are kept, so
    moving IMPROVEMENT → NON_CONFORMITY → IMPROVEMENT lands on the original
    improvement record. ``categorize`` may be repeated freely.

Review lifecycle
    PENDING ──accept/refuse──▶ ACCEPTED | REFUSED ──submit_for_review──▶ UNDER_REVIEW
    PENDING ──submit_for_review──▶ UNDER_REVIEW ──accept/refuse──▶ ACCEPTED | REFUSED

A finding is eligible for corrective action once it is a non-conformity
that has been reviewed, whichever way the review went.

Usage:
    record = categorize(finding_id, "NON_CONFORMITY", tenant_id=t, user_id=u)
    result = review_finding(finding_id, "REFUSED", tenant_id=t, user_id=hod_id)
"""

import logging

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError

from qms.core.exceptions import (
    DuplicateClassification,
    InvalidTransition,
    MissingClassificationRecord,
    ValidationError,
)
from qms.models import db
from qms.models.audit import write_audit
from qms.models.auth import Department
from qms.models.base import utcnow
from qms.models.finding import (
    FINDING_CATEGORIES,
    NC_SEVERITIES,
    NC_TYPES,
    AuditFinding,
    ComplianceRecord,
    ImprovementOpportunity,
    NonConformity,
)
from qms.models.program import Audit
from qms.services.department_service import department_heads
from qms.services.helpers.scoped_queries import get_scoped
from qms.services.notification import NotificationService
from qms.services.permission_service import check_permission

logger = logging.getLogger(__name__)

_RECORD_RELATIONS = {
    "COMPLIANCE": "compliance_record",
    "IMPROVEMENT": "improvement_opportunity",
    "NON_CONFORMITY": "non_conformity",
}

_RECORD_MODELS = {
    "COMPLIANCE": ComplianceRecord,
    "IMPROVEMENT": ImprovementOpportunity,
    "NON_CONFORMITY": NonConformity,
}

FINDING_TRANSITIONS = {
    "submit_for_review": {"from": ["PENDING", "ACCEPTED", "REFUSED"], "to": "UNDER_REVIEW"},
    "accept": {"from": ["PENDING", "UNDER_REVIEW"], "to": "ACCEPTED"},
    "refuse": {"from": ["PENDING", "UNDER_REVIEW"], "to": "REFUSED"},
}

CA_ELIGIBLE_STATUSES = frozenset({"ACCEPTED", "REFUSED"})

_REVIEW_DECISIONS = {"ACCEPTED": "accept", "REFUSED": "refuse"}


# ═══════════════════════════════════════════════════════════════
# 1. AUTO-CLASSIFICATION
# ═══════════════════════════════════════════════════════════════
_OBSERVATION_WORDS = (
    "observation", "note", "comment", "suggestion", "recommendation",
    "improvement", "enhancement", "optimization", "better", "best practice",
    "opportunity", "potential", "consider", "review", "evaluate",
)
_MINOR_WORDS = (
    "minor", "small", "slight", "trivial", "insignificant", "cosmetic",
    "appearance", "formatting", "documentation", "paperwork", "procedural",
    "process", "routine", "standard", "normal",
)
_HIGH_SEVERITY_WORDS = (
    "critical", "urgent", "immediate", "emergency", "hazard", "danger",
    "threat", "breach", "violation", "failure", "breakdown", "safety",
    "security", "compliance", "regulatory", "legal",
)
_LOW_SEVERITY_WORDS = (
    "minor", "small", "slight", "trivial", "insignificant", "cosmetic",
    "appearance", "suggestion", "recommendation", "improvement",
)


def classify_non_conformity(title: str | None, description: str | None) -> tuple[str, str]:
    """Keyword guess of (type, severity) for a new non-conformity.

    Defaults to MAJOR / MEDIUM. An observation is never HIGH severity.
    """
    text = f"{title or ''} {description or ''}".lower()

    def mentions(words):
        return any(w in text for w in words)

    if mentions(_OBSERVATION_WORDS):
        nc_type = "OBSERVATION"
    elif mentions(_MINOR_WORDS):
        nc_type = "MINOR"
    else:
        nc_type = "MAJOR"

    if mentions(_HIGH_SEVERITY_WORDS):
        severity = "HIGH"
    elif mentions(_LOW_SEVERITY_WORDS):
        severity = "LOW"
    else:
        severity = "MEDIUM"

    if nc_type == "OBSERVATION" and severity == "HIGH":
        severity = "MEDIUM"
    return nc_type, severity


# ═══════════════════════════════════════════════════════════════
# 2. CATEGORIZATION
# ═══════════════════════════════════════════════════════════════
def _find_record(finding: AuditFinding, category: str):
    model = _RECORD_MODELS[category]
    return db.session.execute(
        select(model).where(model.finding_id == finding.id)
    ).scalar_one_or_none()


def _new_record(finding: AuditFinding, category: str, nc_type: str | None, nc_severity: str | None):
    if category == "COMPLIANCE":
        return ComplianceRecord(
            finding_id=finding.id, created_by_id=finding.created_by_id,
            status="COMPLIANT", evidence="", notes="",
        )
    if category == "IMPROVEMENT":
        return ImprovementOpportunity(
            finding_id=finding.id, created_by_id=finding.created_by_id,
            opportunity=finding.title or "Improvement Opportunity", action_plan="", status="OPEN",
        )
    auto_type, auto_severity = classify_non_conformity(finding.title, finding.description)
    return NonConformity(
        finding_id=finding.id, created_by_id=finding.created_by_id,
        title=finding.title, description=finding.description,
        type=nc_type or auto_type, severity=nc_severity or auto_severity, status="OPEN",
    )


def _validate_category(category, nc_type, nc_severity):
    if category not in FINDING_CATEGORIES:
        raise ValidationError(f"Unknown finding category: {category}",
                              details={"category": f"one of {', '.join(FINDING_CATEGORIES)}"})
    if nc_type is not None and nc_type not in NC_TYPES:
        raise ValidationError(f"Unknown non-conformity type: {nc_type}", details={"nc_type": nc_type})
    if nc_severity is not None and nc_severity not in NC_SEVERITIES:
        raise ValidationError(f"Unknown non-conformity severity: {nc_severity}",
                              details={"nc_severity": nc_severity})


def _upsert_record(finding, category, nc_type, nc_severity):
    record = _find_record(finding, category)
    if record is None:
        record = _new_record(finding, category, nc_type, nc_severity)
        db.session.add(record)
        logger.info("Created %s record for finding %s", category, finding.id,
                    extra={"tenant_id": finding.tenant_id, "entity_id": finding.id})
    elif category == "NON_CONFORMITY":
        if nc_type:
            record.type = nc_type
        if nc_severity:
            record.severity = nc_severity
    return record


def _set_category(finding, category, user_id):
    previous = finding.category
    finding.category = category
    if previous != category:
        write_audit(entity_type="finding", entity_id=finding.id, action="finding.categorize",
                    tenant_id=finding.tenant_id, actor_user_id=user_id,
                    diff={"category": {"old": previous, "new": category}})


def categorize(
    finding_id: int,
    category: str,
    *,
    tenant_id: int,
    user_id: int | None = None,
    nc_type: str | None = None,
    nc_severity: str | None = None,
    skip_permission: bool = False,
):
    """
    Set the finding's category and return its classification record.

    Creates the record for ``category`` only if the finding has none yet;
    never removes records of other categories. For NON_CONFORMITY, explicit
    ``nc_type`` / ``nc_severity`` win over the keyword guess and update an
    existing record.

    Raises:
        ValidationError, PermissionDenied, NotFoundError
        DuplicateClassification: a concurrent insert won but cannot be re-read.
    """
    _validate_category(category, nc_type, nc_severity)
    if not skip_permission:
        check_permission(user_id, tenant_id, "auditFinding:update")

    finding = get_scoped(AuditFinding, finding_id, tenant_id=tenant_id)
    try:
        record = _upsert_record(finding, category, nc_type, nc_severity)
        _set_category(finding, category, user_id)
        db.session.commit()
    except IntegrityError:
        # A concurrent categorize inserted the same record first; the audit
        # entry went with the rollback and is written again
        db.session.rollback()
        finding = get_scoped(AuditFinding, finding_id, tenant_id=tenant_id)
        record = _find_record(finding, category)
        if record is None:
            raise DuplicateClassification(finding_id, category)
        _set_category(finding, category, user_id)
        db.session.commit()
    return record


def get_classification_record(finding: AuditFinding, *, strict: bool = False):
    """The record matching the finding's current category, or None if uncategorized.

    With ``strict`` a categorized finding lacking its record raises
    ``MissingClassificationRecord`` instead of returning None.
    """
    if finding.category is None:
        return None
    record = _find_record(finding, finding.category)
    if record is None and strict:
        raise MissingClassificationRecord(finding.id, finding.category)
    return record


# ═══════════════════════════════════════════════════════════════
# 3. REVIEW LIFECYCLE
# ═══════════════════════════════════════════════════════════════
def validate_finding_transition(finding: AuditFinding, action: str) -> dict:
    """Validate whether an action is valid for the finding's current status."""
    rule = FINDING_TRANSITIONS.get(action)
    if not rule:
        return {"valid": False, "from": finding.status, "to": None,
                "reason": f"Unknown action: {action}"}
    if finding.status not in rule["from"]:
        return {"valid": False, "from": finding.status, "to": rule["to"],
                "reason": f"Cannot '{action}' from status '{finding.status}'"}
    return {"valid": True, "from": finding.status, "to": rule["to"], "reason": None}


def _apply_transition(finding, action, user_id):
    validation = validate_finding_transition(finding, action)
    if not validation["valid"]:
        raise InvalidTransition("finding", finding.id, action, finding.status, validation["reason"])
    previous = finding.status
    finding.status = validation["to"]
    write_audit(entity_type="finding", entity_id=finding.id, action=f"finding.{action}",
                tenant_id=finding.tenant_id, actor_user_id=user_id,
                diff={"status": {"old": previous, "new": finding.status}})
    return previous


def transition_finding(finding_id: int, action: str, *, tenant_id: int, user_id: int | None = None,
                       skip_permission: bool = False) -> dict:
    """Execute one lifecycle transition without review side effects."""
    if not skip_permission:
        check_permission(user_id, tenant_id, "auditFinding:update")
    finding = get_scoped(AuditFinding, finding_id, tenant_id=tenant_id)
    previous = _apply_transition(finding, action, user_id)
    db.session.commit()
    return {"finding_id": finding.id, "previous_status": previous,
            "new_status": finding.status, "action": action}


def review_finding(
    finding_id: int,
    decision: str,
    *,
    tenant_id: int,
    user_id: int,
    feedback: str | None = None,
    skip_permission: bool = False,
) -> dict:
    """
    Record a department head's ACCEPTED / REFUSED decision and tell the auditor.

    Returns:
        {"finding_id", "previous_status", "new_status", "action", "notifications"}
    """
    action = _REVIEW_DECISIONS.get(decision)
    if action is None:
        raise ValidationError("Review decision must be ACCEPTED or REFUSED",
                              details={"decision": decision})
    if not skip_permission:
        check_permission(user_id, tenant_id, "auditFinding:review")

    finding = get_scoped(AuditFinding, finding_id, tenant_id=tenant_id)
    previous = _apply_transition(finding, action, user_id)
    finding.hod_feedback = feedback
    finding.reviewed_at = utcnow()
    db.session.commit()

    recipients = [finding.created_by_id] if finding.created_by_id else []
    report = NotificationService.dispatch(
        tenant_id=tenant_id,
        recipients=recipients,
        type="FINDING_REVIEWED",
        title=f"Finding {decision.lower()} by reviewer",
        message=f'Your finding "{finding.title}" has been {decision.lower()} by a reviewer.',
        link=f"/audit-management/audits/findings?auditId={finding.audit_id}",
        metadata={"audit_id": finding.audit_id, "finding_id": finding.id,
                  "department_id": finding.department_id, "review_decision": decision},
    )
    return {
        "finding_id": finding.id,
        "previous_status": previous,
        "new_status": finding.status,
        "action": action,
        "notifications": report.to_dict(),
    }


def commit_findings_for_review(
    audit_id: int,
    *,
    tenant_id: int,
    user_id: int,
    department_id: int | None = None,
    skip_permission: bool = False,
) -> dict:
    """
    Move every PENDING finding of the audit (optionally one department) to
    UNDER_REVIEW and notify the heads of the departments concerned.
    """
    if not skip_permission:
        check_permission(user_id, tenant_id, "auditFinding:commit")
    audit = get_scoped(Audit, audit_id, tenant_id=tenant_id)

    q = AuditFinding.query_for_tenant(tenant_id).filter_by(audit_id=audit.id, status="PENDING")
    if department_id is not None:
        q = q.filter_by(department_id=department_id)
    findings = q.order_by(AuditFinding.id).all()
    if not findings:
        raise ValidationError("No pending findings to commit", details={"audit_id": audit_id})

    for finding in findings:
        _apply_transition(finding, "submit_for_review", user_id)
    db.session.commit()

    reports = []
    for dept_id in sorted({f.department_id for f in findings if f.department_id is not None}):
        dept = get_scoped(Department, dept_id, tenant_id=tenant_id)
        heads = department_heads(dept)
        if not heads:
            logger.warning("Department %s has no head to review findings", dept.id,
                           extra={"tenant_id": tenant_id})
        report = NotificationService.dispatch(
            tenant_id=tenant_id,
            recipients=heads,
            type="FINDINGS_COMMITTED",
            title=f"Audit findings for {dept.name} submitted for review",
            message=f'Audit findings for department "{dept.name}" in "{audit.title}" '
                    f"have been submitted for your review.",
            link=f"/hod/findings-review?auditId={audit.id}&departmentId={dept.id}",
            metadata={"audit_id": audit.id, "department_id": dept.id, "committed_by": user_id},
        )
        reports.append({"department_id": dept.id, **report.to_dict()})

    return {"audit_id": audit.id, "committed": [f.id for f in findings], "notifications": reports}


def is_eligible_for_corrective_action(finding: AuditFinding) -> bool:
    """NON_CONFORMITY findings that were reviewed, accepted or refused, and carry a NonConformity."""
    return (
        finding.category == "NON_CONFORMITY"
        and finding.status in CA_ELIGIBLE_STATUSES
        and _find_record(finding, "NON_CONFORMITY") is not None
    )


# ═══════════════════════════════════════════════════════════════
# 4. CONSISTENCY CHECK
# ═══════════════════════════════════════════════════════════════
def find_classification_drift(tenant_id: int | None = None) -> list[dict]:
    """Categorized findings that lack the record of their current category."""
    q = AuditFinding.query.filter(AuditFinding.category.isnot(None))
    if tenant_id is not None:
        q = q.filter_by(tenant_id=tenant_id)
    drift = []
    for finding in q.order_by(AuditFinding.id).all():
        if get_classification_record(finding) is None:
            drift.append({"finding_id": finding.id, "tenant_id": finding.tenant_id,
                          "category": finding.category})
    return drift


def repair_classification_drift(tenant_id: int | None = None) -> list[dict]:
    """Re-run categorization for every drifted finding; returns what was repaired."""
    drift = find_classification_drift(tenant_id)
    for entry in drift:
        categorize(entry["finding_id"], entry["category"],
                   tenant_id=entry["tenant_id"], skip_permission=True)
        logger.info("Repaired %s record for finding %s", entry["category"], entry["finding_id"],
                    extra={"tenant_id": entry["tenant_id"]})
    return drift
