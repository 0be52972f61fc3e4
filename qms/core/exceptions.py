"""
Platform-wide exception hierarchy.

Services raise these types; ``qms.create_app`` registers one Flask error
handler per type so every consumer blueprint gets the same HTTP status
codes and error envelope.

Usage:
    from qms.core.exceptions import NotFoundError, CrossTenantViolation

    raise NotFoundError(resource="AuditFinding", resource_id=42)
    raise CrossTenantViolation(tenant_id=1, violations=[...])

Tenant and permission faults are never caught inside the service layer;
they propagate to the caller untouched.
"""

from dataclasses import dataclass


class NotFoundError(Exception):
    """Raised when a requested resource does not exist within the given scope.

    Used for both genuinely missing records and lookups from another tenant,
    so a 404 never confirms that a foreign record exists.

    Args:
        resource: Human-readable model/entity name (e.g. "AuditFinding").
        resource_id: The PK that was looked up. Included in logs, not in HTTP response.
        tenant_id: Optional. The scope that was enforced. For debug logging only.
    """

    def __init__(
        self,
        resource: str,
        resource_id: int | str | None = None,
        tenant_id: int | None = None,
    ) -> None:
        self.resource = resource
        self.resource_id = resource_id
        self.tenant_id = tenant_id
        msg = f"{resource}"
        if resource_id is not None:
            msg += f" id={resource_id}"
        msg += " not found"
        if tenant_id is not None:
            msg += f" (tenant={tenant_id})"
        super().__init__(msg)


class UserNotFound(NotFoundError):
    """The user whose permissions are being resolved does not exist."""

    def __init__(self, user_id: int) -> None:
        self.user_id = user_id
        super().__init__(resource="User", resource_id=user_id)


class ValidationError(Exception):
    """Raised when input fails business-rule validation in the service layer.

    Maps to HTTP 422 in the error handlers.

    Args:
        message: Human-readable explanation of what failed.
        details: Optional field-level breakdown for structured API responses.
    """

    def __init__(self, message: str, details: dict | None = None) -> None:
        self.details = details or {}
        super().__init__(message)


class ConflictError(Exception):
    """Raised when an operation would create a duplicate unique constraint violation.

    Maps to HTTP 409.
    """

    def __init__(self, resource: str, field: str, value: str | None = None) -> None:
        self.resource = resource
        self.field = field
        self.value = value
        msg = f"{resource} with {field}={value!r} already exists"
        super().__init__(msg)


class DuplicateClassification(ConflictError):
    """A second classification record of the same category for one finding.

    Categorization is an idempotent upsert, so this only surfaces when a
    concurrent insert won the unique constraint and the winner could not be
    re-read.
    """

    def __init__(self, finding_id: int, category: str) -> None:
        self.finding_id = finding_id
        self.category = category
        super().__init__(resource=f"{category} record", field="finding_id", value=str(finding_id))


class InvalidTransition(Exception):
    """Raised when a workflow action is not allowed from the current state.

    Maps to HTTP 409.
    """

    def __init__(self, entity: str, entity_id, action: str, current: str | None, reason: str | None = None):
        msg = f"Cannot '{action}' {entity} {entity_id} (status={current})"
        if reason:
            msg += f": {reason}"
        super().__init__(msg)
        self.entity = entity
        self.entity_id = entity_id
        self.action = action
        self.current_status = current
        self.reason = reason


class MissingClassificationRecord(Exception):
    """A categorized finding has no record matching its current category."""

    def __init__(self, finding_id: int, category: str) -> None:
        self.finding_id = finding_id
        self.category = category
        super().__init__(f"Finding {finding_id} is categorized {category} but has no {category} record")


class PermissionDenied(Exception):
    """Raised when the acting user lacks a permission.

    Args:
        user_id: Acting user.
        permission: ``module:action`` codename that was required.
        tenant_id: Tenant the check ran against.
    """

    def __init__(self, user_id: int | None, permission: str, tenant_id: int | None = None) -> None:
        self.user_id = user_id
        self.permission = permission
        self.tenant_id = tenant_id
        super().__init__(f"User {user_id} lacks permission '{permission}'")


# ── Tenant isolation ─────────────────────────────────────────────────────────


@dataclass(frozen=True)
class TenantViolation:
    """One reference that does not belong to the expected tenant.

    ``actual_tenant_id`` is None when the referenced entity does not exist.
    """

    entity_type: str
    entity_id: int
    actual_tenant_id: int | None

    def to_dict(self) -> dict:
        return {
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "actual_tenant_id": self.actual_tenant_id,
        }


class TenantIsolationError(Exception):
    """Base for every cross-tenant fault. Maps to HTTP 403."""

    def __init__(self, message: str, tenant_id: int | None, violations: list[TenantViolation]) -> None:
        self.tenant_id = tenant_id
        self.violations = list(violations)
        super().__init__(message)


class TenantMismatch(TenantIsolationError):
    """A single reference crosses the tenant boundary."""

    def __init__(
        self,
        entity_type: str,
        entity_id: int | None,
        expected_tenant_id: int | None,
        actual_tenant_id: int | None,
    ) -> None:
        self.entity_type = entity_type
        self.entity_id = entity_id
        self.expected_tenant_id = expected_tenant_id
        self.actual_tenant_id = actual_tenant_id
        super().__init__(
            f"{entity_type} {entity_id} belongs to tenant {actual_tenant_id}, "
            f"expected tenant {expected_tenant_id}",
            expected_tenant_id,
            [TenantViolation(entity_type, entity_id, actual_tenant_id)],
        )


class CrossTenantViolation(TenantIsolationError):
    """Batch form: every offending reference of one write, not just the first."""

    def __init__(self, tenant_id: int, violations: list[TenantViolation]) -> None:
        summary = ", ".join(
            f"{v.entity_type} {v.entity_id} (tenant={v.actual_tenant_id})" for v in violations
        )
        super().__init__(
            f"{len(violations)} reference(s) outside tenant {tenant_id}: {summary}",
            tenant_id,
            violations,
        )

    @property
    def entity_types(self) -> list[str]:
        return sorted({v.entity_type for v in self.violations})


# ── Notification outcome ─────────────────────────────────────────────────────


class NotificationDispatchFailed(Exception):
    """Delivery to one recipient failed.

    Recorded in the dispatch report; never raised into the workflow that
    triggered the notification.
    """

    def __init__(self, user_id: int, reason: str) -> None:
        self.user_id = user_id
        self.reason = reason
        super().__init__(f"Notification to user {user_id} failed: {reason}")
