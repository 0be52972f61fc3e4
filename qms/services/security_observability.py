"""Security observability for tenant-isolation incidents.

Cross-tenant attempts are recorded as events in a bounded per-app buffer
(``QMS_SECURITY_EVENT_BUFFER`` entries) and logged with their
``security_code``. ``evaluate_security_alerts`` applies the threshold
rules below, optionally for a single tenant.
"""

from __future__ import annotations

import logging
import time
from collections import deque
from dataclasses import asdict, dataclass
from typing import Any

from flask import current_app, g, has_request_context, request

logger = logging.getLogger(__name__)

_BUFFER_KEY = "qms_security_events"


@dataclass(frozen=True)
class AlertRule:
    event_type: str
    threshold: int
    window_seconds: int
    severity: str
    code: str


ALERT_RULES = (
    # a write referenced rows of another tenant
    AlertRule("cross_tenant_reference", 3, 300, "high", "SEC-CROSS-TENANT-001"),
    # a permission check named a tenant the user is not in
    AlertRule("cross_tenant_access_attempt", 3, 300, "high", "SEC-CROSS-TENANT-002"),
    # a stored role binding crosses tenants; one is already too many
    AlertRule("cross_tenant_binding", 1, 3600, "critical", "SEC-BINDING-001"),
)

_RULES_BY_TYPE = {rule.event_type: rule for rule in ALERT_RULES}


def _events() -> deque:
    events = current_app.extensions.get(_BUFFER_KEY)
    if events is None:
        events = deque(maxlen=current_app.config.get("QMS_SECURITY_EVENT_BUFFER", 5000))
        current_app.extensions[_BUFFER_KEY] = events
    return events


def _request_context() -> dict[str, Any]:
    if not has_request_context():
        return {"path": None, "method": None, "actor_id": None, "request_tenant_id": None}
    return {
        "path": request.path,
        "method": request.method,
        "actor_id": getattr(g, "current_user_id", None),
        "request_tenant_id": getattr(g, "current_tenant_id", None),
    }


def record_security_event(
    *,
    event_type: str,
    reason: str,
    severity: str | None = None,
    tenant_id: int | None = None,
    details: dict[str, Any] | None = None,
) -> dict[str, Any]:
    """Buffer and log one event. Severity defaults to the matching rule's."""
    rule = _RULES_BY_TYPE.get(event_type)
    ctx = _request_context()
    event = {
        "ts": time.time(),
        "event_type": event_type,
        "severity": severity or (rule.severity if rule else "warning"),
        "reason": reason,
        "tenant_id": tenant_id if tenant_id is not None else ctx["request_tenant_id"],
        "actor_id": ctx["actor_id"],
        "path": ctx["path"],
        "method": ctx["method"],
        "details": details or {},
    }
    _events().append(event)

    logger.warning(
        "Security event %s: %s", event_type, reason,
        extra={
            "tenant_id": event["tenant_id"],
            "user_id": event["actor_id"],
            "event_type": event_type,
            "security_code": rule.code if rule else None,
        },
    )
    return event


def get_recent_security_events(
    *, seconds: int = 3600, event_type: str | None = None, tenant_id: int | None = None,
) -> list[dict[str, Any]]:
    cutoff = time.time() - seconds
    return [
        e for e in _events()
        if e["ts"] >= cutoff
        and (event_type is None or e["event_type"] == event_type)
        and (tenant_id is None or e["tenant_id"] == tenant_id)
    ]


def evaluate_security_alerts(*, tenant_id: int | None = None, now: float | None = None) -> dict[str, Any]:
    """Count events per rule inside each rule's window; report rules at or over threshold."""
    now = now or time.time()
    counts = {}
    alerts = []
    for rule in ALERT_RULES:
        matched = [
            e for e in _events()
            if e["event_type"] == rule.event_type
            and e["ts"] >= now - rule.window_seconds
            and (tenant_id is None or e["tenant_id"] == tenant_id)
        ]
        counts[rule.event_type] = len(matched)
        if len(matched) >= rule.threshold:
            alerts.append({
                **asdict(rule),
                "observed": len(matched),
                "tenants": sorted({e["tenant_id"] for e in matched if e["tenant_id"] is not None}),
                "latest": matched[-1],
            })
    return {"counts": counts, "alerts": alerts}


def reset_security_events() -> None:
    _events().clear()
