"""
Notification domain model.

Models:
    - Notification: in-app notification record with read tracking
"""

from qms.models import db
from qms.models.base import TenantModel, isoformat, utcnow

# ── Constants ────────────────────────────────────────────────────────────────

NOTIFICATION_TYPES = {
    "FINDINGS_COMMITTED",
    "FINDING_REVIEWED",
    "CORRECTIVE_ACTION_COMMITTED",
    "ROOT_CAUSE_ANALYSIS_SUBMITTED",
    "APPROPRIATENESS_REVIEWED",
    "FOLLOW_UP_RECORDED",
    "EFFECTIVENESS_REVIEWED",
    "CORRECTIVE_ACTION_MR_NOTIFICATION",
    "SYSTEM",
}


class Notification(TenantModel):
    """
    In-app notification entity.

    One record per recipient per event.
    """

    __tablename__ = "notifications"
    __table_args__ = (
        db.Index("ix_notifications_target_read", "target_user_id", "is_read"),
    )

    id = db.Column(db.Integer, primary_key=True)
    target_user_id = db.Column(
        db.Integer, db.ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True,
    )
    type = db.Column(db.String(60), nullable=False, default="SYSTEM")
    title = db.Column(db.String(300), nullable=False)
    message = db.Column(db.Text, default="")
    link = db.Column(db.String(500))
    # "metadata" is reserved on declarative classes
    meta = db.Column("metadata", db.JSON, default=dict)

    # Read tracking
    is_read = db.Column(db.Boolean, nullable=False, default=False)
    read_at = db.Column(db.DateTime(timezone=True), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), default=utcnow)

    target_user = db.relationship("User")

    def mark_read(self):
        self.is_read = True
        self.read_at = utcnow()

    def to_dict(self):
        return {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "target_user_id": self.target_user_id,
            "type": self.type,
            "title": self.title,
            "message": self.message,
            "link": self.link,
            "metadata": self.meta or {},
            "is_read": self.is_read,
            "read_at": isoformat(self.read_at),
            "created_at": isoformat(self.created_at),
        }
