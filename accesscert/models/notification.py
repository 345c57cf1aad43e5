"""
Access Certification Engine
Notification domain model.

Models:
    - Notification: outbox record for the external notification/reminder
      scheduler. One record per recipient per event; delivery (e-mail, chat)
      happens outside the engine.
"""

from datetime import datetime, timezone

from accesscert.models import db

# ── Constants ────────────────────────────────────────────────────────────────

NOTIFICATION_CATEGORIES = {
    "review_assigned",
    "review_reminder",
    "review_escalation",
    "sod_violation",
}
NOTIFICATION_SEVERITIES = {"info", "warning", "error"}


class Notification(db.Model):
    """Outbox notification entity."""

    __tablename__ = "notifications"
    __table_args__ = (
        db.Index("ix_notifications_recipient_delivered", "recipient_id", "is_delivered"),
    )

    id = db.Column(db.Integer, primary_key=True)
    organization_id = db.Column(
        db.Integer, db.ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False, index=True,
    )
    recipient_id = db.Column(
        db.Integer, db.ForeignKey("users.id", ondelete="CASCADE"), nullable=False,
    )
    category = db.Column(db.String(30), nullable=False)
    severity = db.Column(db.String(20), default="info")
    title = db.Column(db.String(300), nullable=False)
    message = db.Column(db.Text, default="")

    # Link to source entity
    entity_type = db.Column(db.String(30), default="", comment="campaign / review_item / sod_violation")
    entity_id = db.Column(db.Integer, nullable=True)

    # Set by the external dispatcher once delivered
    is_delivered = db.Column(db.Boolean, default=False)
    delivered_at = db.Column(db.DateTime(timezone=True), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))

    def to_dict(self):
        return {
            "id": self.id,
            "organization_id": self.organization_id,
            "recipient_id": self.recipient_id,
            "category": self.category,
            "severity": self.severity,
            "title": self.title,
            "message": self.message,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "is_delivered": self.is_delivered,
            "delivered_at": self.delivered_at.isoformat() if self.delivered_at else None,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }

    def __repr__(self):
        return f"<Notification {self.id}: {self.title[:40]}>"
