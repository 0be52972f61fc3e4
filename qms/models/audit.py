"""
Audit trail.

Every role/permission change, categorization, review decision and
corrective action step appends one ``AuditLog`` row through
``write_audit``. Rows are only ever inserted. ``write_audit`` flushes
without committing, so an entry commits or rolls back together with the
change it describes.
"""

from qms.models import db
from qms.models.base import isoformat, utcnow


class AuditLog(db.Model):
    __tablename__ = "audit_logs"
    __table_args__ = (
        db.Index("idx_audit_entity", "entity_type", "entity_id"),
        db.Index("idx_audit_tenant_action", "tenant_id", "action"),
    )

    id = db.Column(db.Integer, primary_key=True)
    # NULL for catalog-level rows (permissions are shared by all tenants)
    tenant_id = db.Column(
        db.Integer, db.ForeignKey("tenants.id", ondelete="SET NULL"), nullable=True,
    )
    entity_type = db.Column(db.String(40), nullable=False)
    entity_id = db.Column(db.String(36), nullable=False)
    action = db.Column(db.String(80), nullable=False)
    actor_user_id = db.Column(
        db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True, index=True,
    )
    diff = db.Column(db.JSON, nullable=False, default=dict)
    timestamp = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)

    @classmethod
    def history(cls, entity_type, entity_id, *, tenant_id=None):
        """Entries for one entity, oldest first."""
        q = cls.query.filter_by(entity_type=entity_type, entity_id=str(entity_id))
        if tenant_id is not None:
            q = q.filter_by(tenant_id=tenant_id)
        return q.order_by(cls.id).all()

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "action": self.action,
            "actor_user_id": self.actor_user_id,
            "diff": self.diff,
            "timestamp": isoformat(self.timestamp),
        }

    def __repr__(self):
        return f"<AuditLog {self.id}: {self.action} on {self.entity_type}/{self.entity_id}>"


def write_audit(*, entity_type, entity_id, action, tenant_id=None, actor_user_id=None, diff=None) -> AuditLog:
    entry = AuditLog(
        tenant_id=tenant_id,
        entity_type=entity_type,
        entity_id=str(entity_id),
        action=action,
        actor_user_id=actor_user_id,
        diff=diff or {},
    )
    db.session.add(entry)
    db.session.flush()
    return entry
