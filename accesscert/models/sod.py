"""
Segregation-of-duties (SOD) domain model.

Models:
    - SODRule: a set of role codes that must not be held together.
    - SODViolation: one detected occurrence of a user holding 2+ of a rule's roles.

Resolution is terminal for a violation row. If the conflicting access comes
back after a ``revoked`` resolution, detection records a new row.
"""

from datetime import datetime, timezone

from accesscert.models import db
from accesscert.models.base import OrgScopedModel

# ── Constants ────────────────────────────────────────────────────────────────

SOD_SEVERITIES = frozenset({"critical", "high", "medium", "low"})
RESOLUTION_ACTIONS = frozenset({"revoked", "exception_granted", "mitigating_control"})

# Explicit table of fields update_rule() accepts; anything else is rejected.
SOD_RULE_UPDATABLE_FIELDS = frozenset({
    "name",
    "description",
    "severity",
    "process_area",
    "conflicting_roles",
    "application_ids",
    "auto_remediate",
    "requires_exception_approval",
    "is_active",
})


def _utcnow():
    return datetime.now(timezone.utc)


class SODRule(OrgScopedModel):
    """
    Conflicting-role rule.

    ``conflicting_roles`` holds role codes. ``application_ids`` limits which
    applications' grants count toward the rule; an empty list means all.
    """

    __tablename__ = "sod_rules"
    __table_args__ = (
        db.UniqueConstraint("organization_id", "name", name="uq_sod_rule_org_name"),
    )

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(255), nullable=False)
    description = db.Column(db.Text, default="")
    severity = db.Column(db.String(20), nullable=False, default="medium")
    process_area = db.Column(db.String(100), nullable=True)
    conflicting_roles = db.Column(db.JSON, nullable=False, default=list)
    application_ids = db.Column(db.JSON, nullable=False, default=list)
    auto_remediate = db.Column(db.Boolean, nullable=False, default=False)
    requires_exception_approval = db.Column(db.Boolean, nullable=False, default=True)
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    violations = db.relationship("SODViolation", back_populates="rule", lazy="dynamic")

    def to_dict(self):
        return {
            "id": self.id,
            "organization_id": self.organization_id,
            "name": self.name,
            "description": self.description,
            "severity": self.severity,
            "process_area": self.process_area,
            "conflicting_roles": list(self.conflicting_roles or []),
            "application_ids": list(self.application_ids or []),
            "auto_remediate": self.auto_remediate,
            "requires_exception_approval": self.requires_exception_approval,
            "is_active": self.is_active,
            "open_violation_count": self.violations.filter_by(is_resolved=False).count(),
        }

    def __repr__(self):
        return f"<SODRule {self.id}: {self.name} ({self.severity})>"


class SODViolation(OrgScopedModel):
    """
    Detected SOD conflict for one (rule, user) pair.

    Invariants:
    - is_resolved=False  ⇒ every resolution_* field, resolved_at,
      resolved_by_id and exception_expiry are NULL.
    - resolution_action='exception_granted' ⇒ exception_expiry is set and was
      in the future when the violation was resolved.
    """

    __tablename__ = "sod_violations"
    __table_args__ = (
        db.Index("ix_sod_violations_user_open", "user_id", "is_resolved"),
        db.Index("ix_sod_violations_rule_user", "rule_id", "user_id"),
    )

    id = db.Column(db.Integer, primary_key=True)
    rule_id = db.Column(
        db.Integer, db.ForeignKey("sod_rules.id", ondelete="CASCADE"), nullable=False,
    )
    user_id = db.Column(
        db.Integer, db.ForeignKey("users.id", ondelete="CASCADE"), nullable=False,
    )
    violation_details = db.Column(db.JSON, default=dict, comment="{matched_roles: [...]}")
    detected_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)

    is_resolved = db.Column(db.Boolean, nullable=False, default=False)
    resolved_at = db.Column(db.DateTime(timezone=True), nullable=True)
    resolution_action = db.Column(db.String(30), nullable=True)
    resolution_notes = db.Column(db.Text, nullable=True)
    exception_expiry = db.Column(db.Date, nullable=True)
    resolved_by_id = db.Column(
        db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True,
    )

    rule = db.relationship("SODRule", back_populates="violations")

    def to_dict(self):
        return {
            "id": self.id,
            "organization_id": self.organization_id,
            "rule_id": self.rule_id,
            "rule_name": self.rule.name if self.rule else None,
            "severity": self.rule.severity if self.rule else None,
            "process_area": self.rule.process_area if self.rule else None,
            "user_id": self.user_id,
            "violation_details": self.violation_details or {},
            "detected_at": self.detected_at.isoformat() if self.detected_at else None,
            "is_resolved": self.is_resolved,
            "resolved_at": self.resolved_at.isoformat() if self.resolved_at else None,
            "resolution_action": self.resolution_action,
            "resolution_notes": self.resolution_notes,
            "exception_expiry": self.exception_expiry.isoformat() if self.exception_expiry else None,
            "resolved_by_id": self.resolved_by_id,
        }

    def __repr__(self):
        return f"<SODViolation {self.id}: rule={self.rule_id} user={self.user_id}>"
