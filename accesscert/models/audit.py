"""
Access Certification Engine
Audit domain model.

Models:
    - AuditLog: immutable, append-only audit trail for engine events.

The engine treats this table as a write-only sink; see
``accesscert.services.audit_sink`` for the failure-tolerant writer.
"""

import json
from datetime import UTC, datetime

from accesscert.models import db

# ── Constants ────────────────────────────────────────────────────────────────

AUDIT_ENTITY_TYPES = {
    "campaign", "review_item", "access_grant", "sod_rule", "sod_violation",
}

AUDIT_ACTIONS = {
    # Campaign lifecycle
    "campaign.create",
    "campaign.update",
    "campaign.delete",
    "campaign.launch",
    "campaign.complete",
    "campaign.cancel",
    "campaign.recalculate_stats",
    # Review decisions
    "review.decision",
    "review.bulk_approve",
    "review.comment",
    "review.remediation",
    # SOD
    "sod_rule.create",
    "sod_rule.update",
    "sod_rule.deactivate",
    "sod.detect",
    "sod_violation.resolve",
}


class AuditLog(db.Model):
    """
    Immutable audit trail for every mutating engine operation.

    One row per operation. ``before_json`` / ``after_json`` carry the
    relevant snapshot of the entity around the change.
    """

    __tablename__ = "audit_logs"
    __table_args__ = (
        db.Index("idx_audit_entity", "entity_type", "entity_id"),
        db.Index("idx_audit_actor", "actor_id"),
        db.Index("idx_audit_action", "action"),
        db.Index("idx_audit_ts", "timestamp"),
    )

    id = db.Column(db.Integer, primary_key=True)
    organization_id = db.Column(
        db.Integer,
        db.ForeignKey("organizations.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )

    # Polymorphic entity reference
    entity_type = db.Column(
        db.String(30), nullable=False,
        comment="campaign | review_item | sod_rule | sod_violation | …",
    )
    entity_id = db.Column(
        db.String(64), nullable=False,
        comment="PK of the referenced entity (int-as-string, comma list for batches)",
    )

    action = db.Column(
        db.String(60), nullable=False,
        comment="campaign.launch | review.decision | sod_violation.resolve | …",
    )
    actor_id = db.Column(
        db.Integer,
        db.ForeignKey("users.id", ondelete="SET NULL"),
        nullable=True,
        comment="NULL for system-initiated events",
    )

    before_json = db.Column(db.Text, default="{}")
    after_json = db.Column(db.Text, default="{}")

    timestamp = db.Column(
        db.DateTime(timezone=True), nullable=False,
        default=lambda: datetime.now(UTC),
    )

    # ── Helpers ──────────────────────────────────────────────────────────

    @property
    def before(self) -> dict:
        try:
            return json.loads(self.before_json or "{}")
        except (json.JSONDecodeError, TypeError):
            return {}

    @property
    def after(self) -> dict:
        try:
            return json.loads(self.after_json or "{}")
        except (json.JSONDecodeError, TypeError):
            return {}

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "organization_id": self.organization_id,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "action": self.action,
            "actor_id": self.actor_id,
            "before": self.before,
            "after": self.after,
            "timestamp": self.timestamp.isoformat() if self.timestamp else None,
        }

    def __repr__(self):
        return f"<AuditLog {self.id}: {self.action} on {self.entity_type}/{self.entity_id}>"


# ── Convenience writer ───────────────────────────────────────────────────────

def write_audit(
    *,
    entity_type: str,
    entity_id,
    action: str,
    organization_id: int | None = None,
    actor_id: int | None = None,
    before: dict | None = None,
    after: dict | None = None,
) -> AuditLog:
    """
    Append a single audit row.  Uses ``flush`` so callers keep
    transaction control.

    Returns the (flushed) AuditLog instance.
    """
    log = AuditLog(
        organization_id=organization_id,
        entity_type=entity_type,
        entity_id=str(entity_id),
        action=action,
        actor_id=actor_id,
        before_json=json.dumps(before or {}, default=str),
        after_json=json.dumps(after or {}, default=str),
    )
    db.session.add(log)
    db.session.flush()
    return log
