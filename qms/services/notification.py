"""
Notification Service — persistence, delivery hand-off and inbox queries.

Dispatch is best effort and never raises into the caller: each recipient
gets its own notification row and commit, and the outcome is reported per
recipient:

    SUCCESS          row stored and every delivery handler succeeded
    PARTIAL_SUCCESS  row stored, a delivery handler (socket, email) failed
    FAILED           row could not be stored

Delivery transports register a handler on the Flask app; a handler takes
the stored ``Notification`` and pushes it out.

    register_delivery_handler(app, push_to_socket)
"""

import logging
from dataclasses import dataclass, field

from flask import current_app
from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError

from qms.core.exceptions import NotificationDispatchFailed, TenantIsolationError
from qms.models import db
from qms.models.auth import User
from qms.models.base import utcnow
from qms.models.notification import Notification
from qms.services.helpers.scoped_queries import get_scoped

logger = logging.getLogger(__name__)

SUCCESS = "SUCCESS"
PARTIAL_SUCCESS = "PARTIAL_SUCCESS"
FAILED = "FAILED"
NO_RECIPIENTS = "NO_RECIPIENTS"

_HANDLERS_KEY = "qms_delivery_handlers"


def register_delivery_handler(app, handler) -> None:
    app.extensions.setdefault(_HANDLERS_KEY, []).append(handler)


def _delivery_handlers() -> list:
    return list(current_app.extensions.get(_HANDLERS_KEY, []))


@dataclass
class RecipientOutcome:
    user_id: int
    status: str
    notification_id: int | None = None
    error: str | None = None

    def to_dict(self) -> dict:
        return {
            "user_id": self.user_id,
            "status": self.status,
            "notification_id": self.notification_id,
            "error": self.error,
        }


@dataclass
class DispatchReport:
    type: str
    outcomes: list[RecipientOutcome] = field(default_factory=list)

    @property
    def status(self) -> str:
        if not self.outcomes:
            return NO_RECIPIENTS
        statuses = {o.status for o in self.outcomes}
        if statuses == {SUCCESS}:
            return SUCCESS
        if statuses == {FAILED}:
            return FAILED
        return PARTIAL_SUCCESS

    @property
    def recipient_ids(self) -> list[int]:
        return [o.user_id for o in self.outcomes]

    def outcome_for(self, user_id: int) -> RecipientOutcome | None:
        return next((o for o in self.outcomes if o.user_id == user_id), None)

    def to_dict(self) -> dict:
        return {
            "type": self.type,
            "status": self.status,
            "recipients": [o.to_dict() for o in self.outcomes],
        }


class NotificationService:
    """Stateless service class for notification operations."""

    # ── Create ────────────────────────────────────────────────────────────

    @staticmethod
    def notify(*, tenant_id, target_user_id, type, title, message="", link=None, metadata=None):
        """
        Store a single notification and hand it to the delivery handlers.

        Returns:
            The created Notification instance (already committed).

        Raises:
            NotFoundError: the target user is not in the tenant.
        """
        get_scoped(User, target_user_id, tenant_id=tenant_id)
        notif = Notification(
            tenant_id=tenant_id,
            target_user_id=target_user_id,
            type=type,
            title=title,
            message=message,
            link=link,
            meta=metadata or {},
        )
        db.session.add(notif)
        db.session.commit()
        NotificationService._deliver(notif)
        return notif

    @staticmethod
    def _deliver(notif) -> list[str]:
        """Run every delivery handler; return the errors of those that failed."""
        errors = []
        for handler in _delivery_handlers():
            try:
                handler(notif)
            except Exception as exc:  # transport failures must not reach the workflow
                name = getattr(handler, "__name__", repr(handler))
                logger.warning(
                    "Delivery handler %s failed for notification %s", name, notif.id,
                    exc_info=True,
                    extra={"tenant_id": notif.tenant_id, "user_id": notif.target_user_id},
                )
                errors.append(f"{name}: {exc}")
        return errors

    @staticmethod
    def dispatch(*, tenant_id, recipients, type, title, message="", link=None, metadata=None):
        """
        Notify every recipient (users or user ids), one commit per recipient.

        Returns:
            DispatchReport with one outcome per distinct recipient.
        """
        report = DispatchReport(type=type)
        seen = set()
        for recipient in recipients:
            user_id = getattr(recipient, "id", recipient)
            if user_id is None or user_id in seen:
                continue
            seen.add(user_id)

            try:
                notif = Notification(
                    tenant_id=tenant_id,
                    target_user_id=user_id,
                    type=type,
                    title=title,
                    message=message,
                    link=link,
                    meta=metadata or {},
                )
                db.session.add(notif)
                db.session.commit()
            except (SQLAlchemyError, TenantIsolationError) as exc:
                db.session.rollback()
                failure = NotificationDispatchFailed(user_id, str(exc.__class__.__name__))
                logger.error(
                    "%s", failure, exc_info=True,
                    extra={"tenant_id": tenant_id, "user_id": user_id, "event_type": type},
                )
                report.outcomes.append(RecipientOutcome(user_id, FAILED, error=failure.reason))
                continue

            errors = NotificationService._deliver(notif)
            if errors:
                report.outcomes.append(RecipientOutcome(
                    user_id, PARTIAL_SUCCESS, notif.id, "; ".join(errors),
                ))
            else:
                report.outcomes.append(RecipientOutcome(user_id, SUCCESS, notif.id))

        logger.info(
            "Dispatched %s to %d recipient(s): %s", type, len(report.outcomes), report.status,
            extra={"tenant_id": tenant_id, "event_type": type},
        )
        return report

    # ── Query ─────────────────────────────────────────────────────────────

    @staticmethod
    def _inbox(user_id, tenant_id):
        return Notification.query_for_tenant(tenant_id).filter_by(target_user_id=user_id)

    @staticmethod
    def list_for_user(user_id, *, tenant_id, unread_only=False, type=None, limit=None, offset=0):
        """
        Retrieve a user's notifications, newest first.

        Returns:
            (items, total) where total ignores the limit/offset window.
        """
        q = NotificationService._inbox(user_id, tenant_id)
        if unread_only:
            q = q.filter_by(is_read=False)
        if type:
            q = q.filter_by(type=type)
        total = q.count()
        if limit is None:
            limit = current_app.config.get("QMS_NOTIFICATION_PAGE_SIZE", 20)
        items = (
            q.order_by(Notification.created_at.desc(), Notification.id.desc())
            .offset(offset).limit(limit).all()
        )
        return items, total

    @staticmethod
    def unread_count(user_id, *, tenant_id):
        """Return count of unread notifications."""
        return NotificationService._inbox(user_id, tenant_id).filter_by(is_read=False).count()

    # ── Update ────────────────────────────────────────────────────────────

    @staticmethod
    def mark_read(user_id, notification_ids, *, tenant_id):
        """Mark the given notifications of this user as read. Returns the number changed."""
        items = (
            NotificationService._inbox(user_id, tenant_id)
            .filter(Notification.id.in_(list(notification_ids)), Notification.is_read.is_(False))
            .all()
        )
        for n in items:
            n.mark_read()
        db.session.commit()
        return len(items)

    @staticmethod
    def mark_all_read(user_id, *, tenant_id):
        """Mark all unread notifications of this user as read. Returns count."""
        now = utcnow()
        count = (
            NotificationService._inbox(user_id, tenant_id)
            .filter_by(is_read=False)
            .update({"is_read": True, "read_at": now}, synchronize_session="fetch")
        )
        db.session.commit()
        return count

    @staticmethod
    def delete(user_id, notification_id, *, tenant_id):
        """Delete one of the user's notifications. Returns False if it was not theirs."""
        notif = NotificationService._inbox(user_id, tenant_id).filter_by(id=notification_id).first()
        if notif is None:
            return False
        db.session.delete(notif)
        db.session.commit()
        return True

    @staticmethod
    def stats(user_id, *, tenant_id):
        """Return ``{"total", "unread", "by_type"}`` for the user's inbox."""
        rows = db.session.execute(
            select(Notification.type, func.count(Notification.id))
            .where(Notification.tenant_id == tenant_id, Notification.target_user_id == user_id)
            .group_by(Notification.type)
        ).all()
        by_type = {t: c for t, c in rows}
        return {
            "total": sum(by_type.values()),
            "unread": NotificationService.unread_count(user_id, tenant_id=tenant_id),
            "by_type": by_type,
        }
