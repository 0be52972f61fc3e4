"""
Shared model helpers.

``TenantModel`` is the base of every row owned by a tenant: it adds the
indexed ``tenant_id`` foreign key (rows go with their tenant) and
``query_for_tenant``. Tables that reach their tenant through a parent
(classification records, role bindings) derive from ``db.Model`` and are
covered by the flush-time fence instead.
"""

from datetime import datetime, timezone

from qms.models import db


def utcnow():
    return datetime.now(timezone.utc)


def isoformat(value):
    return value.isoformat() if value else None


class TenantModel(db.Model):
    __abstract__ = True

    tenant_id = db.Column(
        db.Integer,
        db.ForeignKey("tenants.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    @classmethod
    def query_for_tenant(cls, tenant_id):
        return cls.query.filter_by(tenant_id=tenant_id)

    def belongs_to(self, tenant_id) -> bool:
        return tenant_id is not None and self.tenant_id == tenant_id
