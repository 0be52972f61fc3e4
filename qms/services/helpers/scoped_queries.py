"""
Tenant-scoped query helpers.

Every get-by-id in the services goes through these helpers instead of
``db.session.get(Model, pk)``: a bare ``get`` would happily return a row
from another tenant.

Usage:
    finding = get_scoped(AuditFinding, finding_id, tenant_id=tenant_id)

Cross-tenant access is indistinguishable from a missing record: both
raise NotFoundError.
"""

import logging

from sqlalchemy import select

from qms.core.exceptions import NotFoundError
from qms.models import db

logger = logging.getLogger(__name__)


def get_scoped(model, pk: int, *, tenant_id: int):
    """Fetch a single tenant-owned entity by PK.

    Raises:
        ValueError: ``tenant_id`` is missing or the model has no tenant column.
        NotFoundError: the entity does not exist or belongs to another tenant.
    """
    if tenant_id is None:
        raise ValueError(
            f"{model.__name__} id={pk} requires tenant_id. "
            "Unscoped lookups are forbidden; they bypass tenant isolation."
        )
    if not hasattr(model, "tenant_id"):
        raise ValueError(f"{model.__name__} has no tenant_id column; refusing unscoped lookup")

    result = db.session.execute(
        select(model).where(model.id == pk, model.tenant_id == tenant_id)
    ).scalar_one_or_none()

    if result is None:
        logger.debug("get_scoped: %s id=%s not found in tenant %s", model.__name__, pk, tenant_id)
        raise NotFoundError(resource=model.__name__, resource_id=pk, tenant_id=tenant_id)
    return result
