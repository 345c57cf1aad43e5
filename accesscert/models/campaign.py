"""
Certification campaign domain model.

Models:
    - Campaign: a bounded review exercise over a scoped set of access grants.
    - ReviewItem: one access grant awaiting a reviewer's decision.
    - ReviewComment: append-only annotation log per review item.
    - CampaignReviewer: per (campaign, reviewer) progress, always rebuilt
      from review items by the stats aggregator.

Lifecycle:
    Campaign   draft -> active -> completed
               draft | active -> cancelled
    ReviewItem pending -> approved | revoked | exception | delegated (terminal)
"""

from datetime import date, datetime, timezone

from accesscert.models import db
from accesscert.models.base import OrgScopedModel

# ── Constants ────────────────────────────────────────────────────────────────

CAMPAIGN_TYPES = frozenset({"manager_review", "application_owner", "both", "ad_hoc"})
CAMPAIGN_STATUSES = frozenset({"draft", "active", "completed", "cancelled"})

CAMPAIGN_TRANSITIONS = {
    "launch": {"from": ["draft"], "to": "active"},
    "complete": {"from": ["active"], "to": "completed"},
    "cancel": {"from": ["draft", "active"], "to": "cancelled"},
}

DECISIONS = frozenset({"pending", "approved", "revoked", "exception", "delegated"})
TERMINAL_DECISIONS = frozenset({"approved", "revoked", "exception", "delegated"})

REMEDIATION_STATUSES = frozenset({"none", "pending", "completed", "failed"})


def _utcnow():
    return datetime.now(timezone.utc)


class Campaign(OrgScopedModel):
    """
    Access certification campaign.

    Counter columns are derived: only the stats aggregator writes them,
    always from a full recount of the campaign's review items.
    """

    __tablename__ = "campaigns"
    __table_args__ = (
        db.Index("ix_campaigns_org_status", "organization_id", "status"),
    )

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(255), nullable=False)
    description = db.Column(db.Text, default="")
    campaign_type = db.Column(
        db.String(30), nullable=False, default="manager_review",
        comment="manager_review | application_owner | both | ad_hoc",
    )
    status = db.Column(db.String(20), nullable=False, default="draft")
    scope_config = db.Column(db.JSON, default=dict)

    start_date = db.Column(db.Date, nullable=False)
    end_date = db.Column(db.Date, nullable=False)

    # Reminder / escalation policy (executed by the external scheduler)
    reminder_frequency_days = db.Column(db.Integer, default=3)
    escalation_enabled = db.Column(db.Boolean, default=True)
    escalation_days = db.Column(db.Integer, default=7)
    last_reminder_at = db.Column(db.DateTime(timezone=True), nullable=True)

    # Derived counters
    total_reviews = db.Column(db.Integer, nullable=False, default=0)
    completed_reviews = db.Column(db.Integer, nullable=False, default=0)
    approved_count = db.Column(db.Integer, nullable=False, default=0)
    revoked_count = db.Column(db.Integer, nullable=False, default=0)
    exception_count = db.Column(db.Integer, nullable=False, default=0)
    delegated_count = db.Column(db.Integer, nullable=False, default=0)
    completion_percentage = db.Column(db.Float, nullable=False, default=0.0)

    created_by_id = db.Column(
        db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True,
    )
    launched_at = db.Column(db.DateTime(timezone=True), nullable=True)
    completed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    cancelled_at = db.Column(db.DateTime(timezone=True), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    items = db.relationship(
        "ReviewItem", back_populates="campaign", lazy="dynamic",
        cascade="all, delete-orphan", passive_deletes=True,
    )
    reviewers = db.relationship(
        "CampaignReviewer", back_populates="campaign", lazy="dynamic",
        cascade="all, delete-orphan", passive_deletes=True,
    )

    @property
    def days_remaining(self) -> int | None:
        if not self.end_date:
            return None
        return (self.end_date - date.today()).days

    @property
    def is_overdue(self) -> bool:
        return self.status == "active" and bool(self.end_date) and self.end_date < date.today()

    def to_dict(self):
        return {
            "id": self.id,
            "organization_id": self.organization_id,
            "name": self.name,
            "description": self.description,
            "campaign_type": self.campaign_type,
            "status": self.status,
            "scope_config": self.scope_config or {},
            "start_date": self.start_date.isoformat() if self.start_date else None,
            "end_date": self.end_date.isoformat() if self.end_date else None,
            "reminder_frequency_days": self.reminder_frequency_days,
            "escalation_enabled": self.escalation_enabled,
            "escalation_days": self.escalation_days,
            "total_reviews": self.total_reviews,
            "completed_reviews": self.completed_reviews,
            "approved_count": self.approved_count,
            "revoked_count": self.revoked_count,
            "exception_count": self.exception_count,
            "delegated_count": self.delegated_count,
            "completion_percentage": self.completion_percentage,
            "days_remaining": self.days_remaining,
            "is_overdue": self.is_overdue,
            "created_by_id": self.created_by_id,
            "launched_at": self.launched_at.isoformat() if self.launched_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "cancelled_at": self.cancelled_at.isoformat() if self.cancelled_at else None,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }

    def __repr__(self):
        return f"<Campaign {self.id}: {self.name} ({self.status})>"


class ReviewItem(OrgScopedModel):
    """
    One access grant under review inside one campaign.

    Business rules:
    - Exactly one item per (campaign, access grant).
    - ``decision`` only ever moves away from ``pending``; every transition is a
      conditional UPDATE guarded on ``decision = 'pending'`` and ``version``.
    - ``access_details`` is captured at generation time and never rewritten,
      so later changes to the live grant do not alter what was reviewed.
    """

    __tablename__ = "review_items"
    __table_args__ = (
        db.UniqueConstraint("campaign_id", "access_grant_id", name="uq_review_item_campaign_grant"),
        db.Index("ix_review_items_reviewer_decision", "reviewer_id", "decision"),
        db.Index("ix_review_items_campaign_decision", "campaign_id", "decision"),
    )

    id = db.Column(db.Integer, primary_key=True)
    campaign_id = db.Column(
        db.Integer, db.ForeignKey("campaigns.id", ondelete="CASCADE"), nullable=False,
    )
    user_id = db.Column(
        db.Integer, db.ForeignKey("users.id", ondelete="CASCADE"), nullable=False,
        comment="Subject user whose access is being reviewed",
    )
    application_id = db.Column(
        db.Integer, db.ForeignKey("applications.id", ondelete="CASCADE"), nullable=False,
    )
    role_id = db.Column(
        db.Integer, db.ForeignKey("roles.id", ondelete="SET NULL"), nullable=True,
    )
    access_grant_id = db.Column(
        db.Integer, db.ForeignKey("access_grants.id", ondelete="SET NULL"), nullable=True,
    )
    reviewer_id = db.Column(
        db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True,
    )

    decision = db.Column(db.String(20), nullable=False, default="pending")
    rationale = db.Column(db.Text, nullable=True)
    decided_at = db.Column(db.DateTime(timezone=True), nullable=True)
    delegated_to_id = db.Column(
        db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True,
    )

    is_flagged = db.Column(db.Boolean, nullable=False, default=False)
    flag_reason = db.Column(db.String(500), nullable=True)
    access_details = db.Column(db.JSON, default=dict)

    remediation_status = db.Column(db.String(20), nullable=False, default="none")
    remediated_at = db.Column(db.DateTime(timezone=True), nullable=True)

    version = db.Column(db.Integer, nullable=False, default=1)
    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    campaign = db.relationship("Campaign", back_populates="items")
    comments = db.relationship(
        "ReviewComment", back_populates="review_item", lazy="dynamic",
        order_by="ReviewComment.id", cascade="all, delete-orphan", passive_deletes=True,
    )

    @property
    def is_pending(self) -> bool:
        return self.decision == "pending"

    def to_dict(self):
        return {
            "id": self.id,
            "organization_id": self.organization_id,
            "campaign_id": self.campaign_id,
            "user_id": self.user_id,
            "application_id": self.application_id,
            "role_id": self.role_id,
            "access_grant_id": self.access_grant_id,
            "reviewer_id": self.reviewer_id,
            "decision": self.decision,
            "rationale": self.rationale,
            "decided_at": self.decided_at.isoformat() if self.decided_at else None,
            "delegated_to_id": self.delegated_to_id,
            "is_flagged": self.is_flagged,
            "flag_reason": self.flag_reason,
            "access_details": self.access_details or {},
            "remediation_status": self.remediation_status,
            "remediated_at": self.remediated_at.isoformat() if self.remediated_at else None,
            "version": self.version,
        }

    def __repr__(self):
        return f"<ReviewItem {self.id}: campaign={self.campaign_id} {self.decision}>"


class ReviewComment(db.Model):
    """Append-only comment on a review item. Never updated or deleted by the engine."""

    __tablename__ = "review_comments"

    id = db.Column(db.Integer, primary_key=True)
    review_item_id = db.Column(
        db.Integer, db.ForeignKey("review_items.id", ondelete="CASCADE"), nullable=False, index=True,
    )
    author_id = db.Column(
        db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True,
    )
    body = db.Column(db.Text, nullable=False)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)

    review_item = db.relationship("ReviewItem", back_populates="comments")

    def to_dict(self):
        return {
            "id": self.id,
            "review_item_id": self.review_item_id,
            "author_id": self.author_id,
            "body": self.body,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }


class CampaignReviewer(db.Model):
    """Per-reviewer progress inside a campaign. Rebuilt, never incremented."""

    __tablename__ = "campaign_reviewers"
    __table_args__ = (
        db.UniqueConstraint("campaign_id", "reviewer_id", name="uq_campaign_reviewer"),
    )

    id = db.Column(db.Integer, primary_key=True)
    campaign_id = db.Column(
        db.Integer, db.ForeignKey("campaigns.id", ondelete="CASCADE"), nullable=False, index=True,
    )
    reviewer_id = db.Column(
        db.Integer, db.ForeignKey("users.id", ondelete="CASCADE"), nullable=False,
    )
    total_assigned = db.Column(db.Integer, nullable=False, default=0)
    completed_count = db.Column(db.Integer, nullable=False, default=0)
    last_reminded_at = db.Column(db.DateTime(timezone=True), nullable=True)
    last_escalated_at = db.Column(db.DateTime(timezone=True), nullable=True)

    campaign = db.relationship("Campaign", back_populates="reviewers")

    @property
    def completion_percentage(self) -> float:
        if not self.total_assigned:
            return 0.0
        return round(self.completed_count / self.total_assigned * 100, 2)

    def to_dict(self):
        return {
            "campaign_id": self.campaign_id,
            "reviewer_id": self.reviewer_id,
            "total_assigned": self.total_assigned,
            "completed_count": self.completed_count,
            "pending_count": self.total_assigned - self.completed_count,
            "completion_percentage": self.completion_percentage,
            "last_reminded_at": self.last_reminded_at.isoformat() if self.last_reminded_at else None,
            "last_escalated_at": self.last_escalated_at.isoformat() if self.last_escalated_at else None,
        }
