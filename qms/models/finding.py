"""
Finding domain model.

Models:
    - AuditFinding: an observation recorded during an audit
    - ComplianceRecord / ImprovementOpportunity / NonConformity: one
      classification record per category, at most one of each per finding
    - CorrectiveAction: remediation of a NonConformity, carried through five
      ordered workflow steps stored as JSON sub-records

Classification records are never deleted when a finding's category moves;
switching back re-selects the record created earlier.
"""

from qms.models import db
from qms.models.base import TenantModel, isoformat, utcnow

# ── Constants ────────────────────────────────────────────────────────────────

FINDING_CATEGORIES = ("COMPLIANCE", "IMPROVEMENT", "NON_CONFORMITY")
FINDING_STATUSES = ("PENDING", "UNDER_REVIEW", "ACCEPTED", "REFUSED")

NC_TYPES = ("MAJOR", "MINOR", "OBSERVATION")
NC_SEVERITIES = ("HIGH", "MEDIUM", "LOW")
NC_STATUSES = ("OPEN", "IN_PROGRESS", "CLOSED")

CA_STATUSES = ("OPEN", "IN_PROGRESS", "COMPLETED", "VERIFIED", "CLOSED")
CA_RESOLVED_STATUSES = frozenset({"VERIFIED", "CLOSED"})
CA_ACTION_TYPES = ("CORRECTIVE", "PREVENTIVE", "IMPROVEMENT")
CA_PRIORITIES = ("LOW", "MEDIUM", "HIGH", "CRITICAL")


class AuditFinding(TenantModel):
    __tablename__ = "audit_findings"

    id = db.Column(db.Integer, primary_key=True)
    audit_id = db.Column(
        db.Integer, db.ForeignKey("audits.id", ondelete="CASCADE"), nullable=False, index=True,
    )
    department_id = db.Column(
        db.Integer, db.ForeignKey("departments.id", ondelete="SET NULL"), nullable=True, index=True,
    )
    title = db.Column(db.String(300), nullable=False)
    description = db.Column(db.Text, default="")
    criteria = db.Column(db.Text, default="")
    category = db.Column(db.String(30), nullable=True)
    status = db.Column(db.String(30), nullable=False, default="PENDING")
    hod_feedback = db.Column(db.Text)
    reviewed_at = db.Column(db.DateTime(timezone=True))
    created_by_id = db.Column(
        db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True,
    )
    created_at = db.Column(db.DateTime(timezone=True), default=utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    audit = db.relationship("Audit", back_populates="findings")
    department = db.relationship("Department")
    created_by = db.relationship("User")
    compliance_record = db.relationship(
        "ComplianceRecord", back_populates="finding", uselist=False, cascade="all, delete-orphan",
    )
    improvement_opportunity = db.relationship(
        "ImprovementOpportunity", back_populates="finding", uselist=False, cascade="all, delete-orphan",
    )
    non_conformity = db.relationship(
        "NonConformity", back_populates="finding", uselist=False, cascade="all, delete-orphan",
    )

    def to_dict(self):
        return {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "audit_id": self.audit_id,
            "department_id": self.department_id,
            "title": self.title,
            "description": self.description,
            "criteria": self.criteria,
            "category": self.category,
            "status": self.status,
            "hod_feedback": self.hod_feedback,
            "reviewed_at": isoformat(self.reviewed_at),
            "created_by_id": self.created_by_id,
        }


class ComplianceRecord(db.Model):
    __tablename__ = "compliance_records"

    id = db.Column(db.Integer, primary_key=True)
    finding_id = db.Column(
        db.Integer, db.ForeignKey("audit_findings.id", ondelete="CASCADE"), nullable=False, unique=True,
    )
    status = db.Column(db.String(30), nullable=False, default="COMPLIANT")
    evidence = db.Column(db.Text, default="")
    notes = db.Column(db.Text, default="")
    created_by_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"))
    created_at = db.Column(db.DateTime(timezone=True), default=utcnow)

    finding = db.relationship("AuditFinding", back_populates="compliance_record")


class ImprovementOpportunity(db.Model):
    __tablename__ = "improvement_opportunities"

    id = db.Column(db.Integer, primary_key=True)
    finding_id = db.Column(
        db.Integer, db.ForeignKey("audit_findings.id", ondelete="CASCADE"), nullable=False, unique=True,
    )
    opportunity = db.Column(db.String(300), nullable=False)
    action_plan = db.Column(db.Text, default="")
    status = db.Column(db.String(30), nullable=False, default="OPEN")
    created_by_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"))
    created_at = db.Column(db.DateTime(timezone=True), default=utcnow)

    finding = db.relationship("AuditFinding", back_populates="improvement_opportunity")


class NonConformity(db.Model):
    __tablename__ = "non_conformities"

    id = db.Column(db.Integer, primary_key=True)
    finding_id = db.Column(
        db.Integer, db.ForeignKey("audit_findings.id", ondelete="CASCADE"), nullable=False, unique=True,
    )
    title = db.Column(db.String(300), nullable=False)
    description = db.Column(db.Text, default="")
    type = db.Column(db.String(20), nullable=False, default="MINOR")
    severity = db.Column(db.String(20), nullable=False, default="MEDIUM")
    status = db.Column(db.String(20), nullable=False, default="OPEN")
    created_by_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"))
    created_at = db.Column(db.DateTime(timezone=True), default=utcnow)

    finding = db.relationship("AuditFinding", back_populates="non_conformity")
    corrective_action = db.relationship(
        "CorrectiveAction", back_populates="non_conformity", uselist=False, cascade="all, delete-orphan",
    )

    def to_dict(self):
        return {
            "id": self.id,
            "finding_id": self.finding_id,
            "title": self.title,
            "type": self.type,
            "severity": self.severity,
            "status": self.status,
        }


class CorrectiveAction(TenantModel):
    """
    Remediation of one NonConformity.

    The five JSON columns are the ordered workflow steps; each holds the
    payload of its step plus who recorded it and when. They are replaced
    wholesale on update, never mutated in place.
    """

    __tablename__ = "corrective_actions"

    id = db.Column(db.Integer, primary_key=True)
    non_conformity_id = db.Column(
        db.Integer, db.ForeignKey("non_conformities.id", ondelete="CASCADE"), nullable=False, unique=True,
    )
    title = db.Column(db.String(300), nullable=False, default="Corrective Action")
    description = db.Column(db.Text, default="")
    action_type = db.Column(db.String(20), nullable=False, default="CORRECTIVE")
    priority = db.Column(db.String(20), nullable=False, default="MEDIUM")
    status = db.Column(db.String(20), nullable=False, default="OPEN")

    correction_requirement = db.Column(db.JSON)
    proposed_action = db.Column(db.JSON)
    appropriateness_review = db.Column(db.JSON)
    follow_up_action = db.Column(db.JSON)
    action_effectiveness = db.Column(db.JSON)

    mr_notified = db.Column(db.Boolean, nullable=False, default=False)
    created_by_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"))
    assigned_to_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"))
    created_at = db.Column(db.DateTime(timezone=True), default=utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    non_conformity = db.relationship("NonConformity", back_populates="corrective_action")

    @property
    def is_resolved(self):
        return self.status in CA_RESOLVED_STATUSES

    def to_dict(self):
        return {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "non_conformity_id": self.non_conformity_id,
            "title": self.title,
            "action_type": self.action_type,
            "priority": self.priority,
            "status": self.status,
            "correction_requirement": self.correction_requirement,
            "proposed_action": self.proposed_action,
            "appropriateness_review": self.appropriateness_review,
            "follow_up_action": self.follow_up_action,
            "action_effectiveness": self.action_effectiveness,
            "mr_notified": self.mr_notified,
            "created_by_id": self.created_by_id,
            "assigned_to_id": self.assigned_to_id,
        }
