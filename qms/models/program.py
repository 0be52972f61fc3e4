"""
Audit program domain model.

Models:
    - AuditProgram: tenant-owned container for a cycle of audits
    - Audit: one audit inside a program; findings hang off audits
"""

from qms.models import db
from qms.models.base import TenantModel, utcnow

AUDIT_PROGRAM_STATUSES = {"DRAFT", "UNDER_REVIEW", "APPROVED", "ACTIVE", "COMPLETED", "ARCHIVED"}


class AuditProgram(TenantModel):
    __tablename__ = "audit_programs"

    id = db.Column(db.Integer, primary_key=True)
    title = db.Column(db.String(300), nullable=False)
    objectives = db.Column(db.Text, default="")
    status = db.Column(db.String(30), nullable=False, default="DRAFT")
    created_by_id = db.Column(
        db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True,
    )
    created_at = db.Column(db.DateTime(timezone=True), default=utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    audits = db.relationship(
        "Audit", back_populates="audit_program", lazy="dynamic", cascade="all, delete-orphan",
    )

    def to_dict(self):
        return {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "title": self.title,
            "status": self.status,
            "created_by_id": self.created_by_id,
        }


class Audit(TenantModel):
    __tablename__ = "audits"

    id = db.Column(db.Integer, primary_key=True)
    audit_program_id = db.Column(
        db.Integer, db.ForeignKey("audit_programs.id", ondelete="CASCADE"), nullable=False, index=True,
    )
    title = db.Column(db.String(300), nullable=False)
    scope = db.Column(db.Text, default="")
    created_at = db.Column(db.DateTime(timezone=True), default=utcnow)

    audit_program = db.relationship("AuditProgram", back_populates="audits")
    findings = db.relationship("AuditFinding", back_populates="audit", lazy="dynamic")

    def to_dict(self):
        return {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "audit_program_id": self.audit_program_id,
            "title": self.title,
        }
