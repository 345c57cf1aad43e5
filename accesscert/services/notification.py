"""
Access Certification Engine
Notification Service.

Writes outbox records for the external notification/reminder scheduler and
lets that scheduler query and acknowledge them. Emission never fails the
engine operation that triggered it.
"""

import logging
from datetime import datetime, timezone

from sqlalchemy.exc import SQLAlchemyError

from accesscert.core.exceptions import ValidationError
from accesscert.models import db
from accesscert.models.notification import NOTIFICATION_CATEGORIES, Notification
from accesscert.services.helpers.scoped_queries import get_scoped

logger = logging.getLogger(__name__)


class NotificationService:
    """Stateless service class for notification operations."""

    # ── Create ────────────────────────────────────────────────────────────

    @staticmethod
    def broadcast(*, organization_id, recipient_ids, category, title, message="",
                  severity="info", entity_type="", entity_id=None, commit=True):
        """
        Create one notification per distinct recipient.

        Runs inside a SAVEPOINT; a database failure is logged and yields an
        empty list instead of propagating.

        Returns:
            List of created Notification instances.
        """
        if category not in NOTIFICATION_CATEGORIES:
            raise ValidationError(f"Unknown notification category '{category}'")

        targets = sorted({r for r in recipient_ids if r is not None})
        if not targets:
            return []

        notifications = []
        try:
            with db.session.begin_nested():
                for recipient_id in targets:
                    notif = Notification(
                        organization_id=organization_id,
                        recipient_id=recipient_id,
                        category=category,
                        severity=severity,
                        title=title[:300],
                        message=message,
                        entity_type=entity_type,
                        entity_id=entity_id,
                    )
                    db.session.add(notif)
                    notifications.append(notif)
        except SQLAlchemyError:
            logger.exception(
                "Failed to emit %s notification(s)", category,
                extra={"organization_id": organization_id, "event_type": category},
            )
            return []

        if commit:
            try:
                db.session.commit()
            except SQLAlchemyError:
                db.session.rollback()
                logger.exception(
                    "Failed to commit %s notification(s)", category,
                    extra={"organization_id": organization_id, "event_type": category},
                )
                return []
        return notifications

    @staticmethod
    def create(*, organization_id, recipient_id, category, title, message="",
               severity="info", entity_type="", entity_id=None, commit=True):
        """Create a single notification record. Returns it, or None on failure."""
        created = NotificationService.broadcast(
            organization_id=organization_id,
            recipient_ids=[recipient_id],
            category=category,
            title=title,
            message=message,
            severity=severity,
            entity_type=entity_type,
            entity_id=entity_id,
            commit=commit,
        )
        return created[0] if created else None

    # ── Query ─────────────────────────────────────────────────────────────

    @staticmethod
    def list_for_recipient(organization_id, recipient_id, undelivered_only=False,
                           category=None, limit=50, offset=0):
        """
        Retrieve notifications for a recipient, newest first.
        """
        q = Notification.query.filter_by(
            organization_id=organization_id, recipient_id=recipient_id,
        )
        if undelivered_only:
            q = q.filter_by(is_delivered=False)
        if category:
            q = q.filter_by(category=category)
        total = q.count()
        items = (
            q.order_by(Notification.created_at.desc(), Notification.id.desc())
            .offset(offset).limit(limit).all()
        )
        return items, total

    # ── Actions ───────────────────────────────────────────────────────────

    @staticmethod
    def mark_delivered(organization_id, notification_id):
        """Acknowledge delivery of a single notification."""
        notif = get_scoped(Notification, notification_id, organization_id=organization_id)
        if not notif.is_delivered:
            notif.is_delivered = True
            notif.delivered_at = datetime.now(timezone.utc)
            db.session.commit()
        return notif
