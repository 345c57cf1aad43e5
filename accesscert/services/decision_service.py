"""
Decision processor.

Review item state machine:

    pending ──► approved | revoked | exception | delegated   (terminal)

Business rules enforced here:
    - Only the assigned reviewer may decide an item, only while its campaign
      is active, and only while the item is still pending.
    - ``revoked`` needs a rationale. In the same transaction the item's
      remediation goes to ``pending`` and the source grant is deactivated.
    - ``delegated`` needs a delegate inside the organization. The delegate is
      recorded; no new item is routed to them.
    - Every transition is a conditional UPDATE on ``decision = 'pending'``,
      the item version the caller observed and a still-active campaign. Zero
      rows means another writer got there first: the transaction is rolled
      back and StateConflictError is raised.
    - Bulk approval verifies the whole batch, then writes it with one
      conditional UPDATE that must touch every row or nothing is kept.
    - Campaign counters are recomputed from item rows inside the same
      transaction as the decision.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone

from flask import current_app
from sqlalchemy import case, select, update

from accesscert.core.exceptions import (
    AuthorizationError,
    NotFoundError,
    StateConflictError,
    ValidationError,
)
from accesscert.models import db
from accesscert.models.access import Role
from accesscert.models.campaign import (
    TERMINAL_DECISIONS,
    Campaign,
    ReviewComment,
    ReviewItem,
)
from accesscert.services import access_snapshot, stats_service
from accesscert.services.audit_sink import emit_audit_event
from accesscert.services.helpers.scoped_queries import get_scoped

logger = logging.getLogger(__name__)

# Higher ranks sort first in a reviewer's queue
_RISK_RANK = case(
    {"critical": 4, "high": 3, "medium": 2, "low": 1},
    value=Role.risk_level,
    else_=0,
)

REMEDIATION_OUTCOMES = frozenset({"completed", "failed"})
COMMENT_MAX_LENGTH = 5000


# ── Private helpers ────────────────────────────────────────────────────────────


def _load_for_reviewer(organization_id: int, item_id: int, reviewer_id: int) -> ReviewItem:
    item = get_scoped(ReviewItem, item_id, organization_id=organization_id)
    if item.reviewer_id != reviewer_id:
        raise AuthorizationError(
            f"User {reviewer_id} is not the assigned reviewer of review item {item_id}",
            actor_id=reviewer_id,
        )
    return item


def _require_active_campaign(item: ReviewItem) -> Campaign:
    campaign = item.campaign
    if campaign.status != "active":
        raise StateConflictError(
            "Campaign", campaign.id, current_state=campaign.status,
            message=f"Campaign {campaign.id} is {campaign.status}; decisions require an active campaign",
        )
    return campaign


def _validate_decision_input(organization_id, decision, rationale, delegate_to) -> str | None:
    if decision not in TERMINAL_DECISIONS:
        raise ValidationError(
            f"Invalid decision '{decision}'. Must be one of: {', '.join(sorted(TERMINAL_DECISIONS))}",
            details={"decision": "invalid"},
        )
    rationale = (rationale or "").strip() or None
    if decision == "revoked" and not rationale:
        raise ValidationError("rationale is required to revoke access", details={"rationale": "required"})

    if decision == "delegated":
        if delegate_to is None:
            raise ValidationError("delegate_to is required to delegate", details={"delegate_to": "required"})
        try:
            access_snapshot.get_user(organization_id, delegate_to)
        except NotFoundError:
            raise ValidationError(
                f"delegate_to user {delegate_to} does not exist",
                details={"delegate_to": "unknown user"},
            ) from None
    elif delegate_to is not None:
        raise ValidationError(
            "delegate_to is only valid with decision 'delegated'",
            details={"delegate_to": "not allowed"},
        )
    return rationale


# ── Single decision ────────────────────────────────────────────────────────────


def submit_decision(
    organization_id: int,
    item_id: int,
    reviewer_id: int,
    decision: str,
    rationale: str | None = None,
    delegate_to: int | None = None,
    now: datetime | None = None,
) -> dict:
    """Record a reviewer's decision on one pending review item.

    Raises:
        ValidationError: bad decision, missing rationale on revoke, bad delegate.
        NotFoundError: item absent or outside the organization.
        AuthorizationError: caller is not the assigned reviewer.
        StateConflictError: campaign not active, or item no longer pending
            (including losing a concurrent write).
    """
    rationale = _validate_decision_input(organization_id, decision, rationale, delegate_to)
    now = now or datetime.now(timezone.utc)

    item = _load_for_reviewer(organization_id, item_id, reviewer_id)
    campaign = _require_active_campaign(item)
    if not item.is_pending:
        raise StateConflictError(
            "ReviewItem", item_id, current_state=item.decision,
            message=f"Review item {item_id} was already decided ({item.decision})",
        )

    before = item.to_dict()
    values = {
        "decision": decision,
        "rationale": rationale,
        "decided_at": now,
        "version": ReviewItem.version + 1,
    }
    if decision == "revoked":
        values["remediation_status"] = "pending"
    if decision == "delegated":
        values["delegated_to_id"] = delegate_to

    try:
        result = db.session.execute(
            update(ReviewItem)
            .where(
                ReviewItem.id == item.id,
                ReviewItem.decision == "pending",
                ReviewItem.version == item.version,
                ReviewItem.campaign_id.in_(
                    select(Campaign.id).where(
                        Campaign.id == item.campaign_id, Campaign.status == "active",
                    )
                ),
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise StateConflictError(
                "ReviewItem", item_id, current_state="decided",
                message=f"Review item {item_id} was decided concurrently",
            )

        grant_deactivated = False
        if decision == "revoked" and item.access_grant_id is not None:
            grant_deactivated = access_snapshot.deactivate_grant(
                item.access_grant_id, reviewer_id, now=now,
            )

        db.session.refresh(item)
        stats_service.refresh_campaign_counters(campaign)
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise

    logger.info(
        "Review decision recorded",
        extra={
            "organization_id": organization_id,
            "campaign_id": campaign.id,
            "review_item_id": item.id,
            "reviewer_id": reviewer_id,
            "decision": decision,
        },
    )
    after = item.to_dict()
    if decision == "revoked":
        after["grant_deactivated"] = grant_deactivated
    emit_audit_event(
        organization_id=organization_id,
        actor_id=reviewer_id,
        action="review.decision",
        entity_type="review_item",
        entity_id=item.id,
        before=before,
        after=after,
    )
    return item.to_dict()


# ── Bulk approval ──────────────────────────────────────────────────────────────


def bulk_approve(
    organization_id: int,
    item_ids,
    reviewer_id: int,
    rationale: str | None = None,
    now: datetime | None = None,
) -> dict:
    """Approve a batch of pending items atomically.

    Raises:
        ValidationError: empty batch, non-integer ids, or more than
            ``BULK_APPROVE_MAX_ITEMS`` ids.
        StateConflictError: any id is missing, not owned by the reviewer,
            not pending, or in a campaign that is not active. Nothing changes.
    """
    max_items = current_app.config["BULK_APPROVE_MAX_ITEMS"]
    if not isinstance(item_ids, (list, tuple)) or not item_ids:
        raise ValidationError("item_ids must be a non-empty list", details={"item_ids": "required"})
    if not all(isinstance(i, int) and not isinstance(i, bool) for i in item_ids):
        raise ValidationError("item_ids must contain integers only", details={"item_ids": "invalid"})
    ids = list(dict.fromkeys(item_ids))
    if len(ids) > max_items:
        raise ValidationError(
            f"Bulk approval accepts at most {max_items} items, got {len(ids)}",
            details={"item_ids": f"max {max_items}"},
        )
    rationale = (rationale or "").strip() or current_app.config["BULK_APPROVE_DEFAULT_RATIONALE"]
    now = now or datetime.now(timezone.utc)

    active_campaigns = select(Campaign.id).where(
        Campaign.organization_id == organization_id,
        Campaign.status == "active",
    )
    eligible = (
        ReviewItem.id.in_(ids),
        ReviewItem.organization_id == organization_id,
        ReviewItem.reviewer_id == reviewer_id,
        ReviewItem.decision == "pending",
        ReviewItem.campaign_id.in_(active_campaigns),
    )

    eligible_ids = set(db.session.execute(select(ReviewItem.id).where(*eligible)).scalars())
    ineligible = [i for i in ids if i not in eligible_ids]
    if ineligible:
        raise StateConflictError(
            "ReviewItem", ineligible, current_state="ineligible",
            message=f"{len(ineligible)} item(s) cannot be bulk approved: {ineligible}",
        )

    try:
        result = db.session.execute(
            update(ReviewItem)
            .where(*eligible)
            .values(
                decision="approved",
                rationale=rationale,
                decided_at=now,
                version=ReviewItem.version + 1,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != len(ids):
            raise StateConflictError(
                "ReviewItem", ids, current_state="changed",
                message=(
                    f"Bulk approval touched {result.rowcount} of {len(ids)} items; "
                    "some were decided concurrently"
                ),
            )

        campaign_ids = sorted(set(
            db.session.execute(
                select(ReviewItem.campaign_id).where(ReviewItem.id.in_(ids))
            ).scalars()
        ))
        for campaign_id in campaign_ids:
            stats_service.refresh_campaign_counters(db.session.get(Campaign, campaign_id))
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise

    logger.info(
        "Bulk approved %d review item(s)", len(ids),
        extra={
            "organization_id": organization_id,
            "reviewer_id": reviewer_id,
            "decision": "approved",
            "event_type": "bulk_approve",
        },
    )
    emit_audit_event(
        organization_id=organization_id,
        actor_id=reviewer_id,
        action="review.bulk_approve",
        entity_type="review_item",
        entity_id=",".join(str(i) for i in ids),
        before={"decision": "pending", "item_ids": ids},
        after={"decision": "approved", "rationale": rationale, "campaign_ids": campaign_ids},
    )
    return {"approved_count": len(ids)}


# ── Comments ───────────────────────────────────────────────────────────────────


def add_comment(organization_id: int, item_id: int, author_id: int, text: str) -> dict:
    """Append a comment. Allowed for the assigned reviewer and the delegate."""
    body = (text or "").strip()
    if not body:
        raise ValidationError("comment text is required", details={"text": "required"})
    if len(body) > COMMENT_MAX_LENGTH:
        raise ValidationError(
            f"comment text exceeds {COMMENT_MAX_LENGTH} characters",
            details={"text": f"max {COMMENT_MAX_LENGTH}"},
        )

    item = get_scoped(ReviewItem, item_id, organization_id=organization_id)
    if author_id not in (item.reviewer_id, item.delegated_to_id):
        raise AuthorizationError(
            f"User {author_id} may not comment on review item {item_id}", actor_id=author_id,
        )

    comment = ReviewComment(review_item_id=item.id, author_id=author_id, body=body)
    db.session.add(comment)
    db.session.commit()

    result = comment.to_dict()
    emit_audit_event(
        organization_id=organization_id,
        actor_id=author_id,
        action="review.comment",
        entity_type="review_item",
        entity_id=item.id,
        after=result,
    )
    return result


def list_comments(organization_id: int, item_id: int) -> list[dict]:
    item = get_scoped(ReviewItem, item_id, organization_id=organization_id)
    return [c.to_dict() for c in item.comments.all()]


# ── Queries ────────────────────────────────────────────────────────────────────


def get_review_item(organization_id: int, item_id: int, reviewer_id: int | None = None) -> dict:
    if reviewer_id is not None:
        item = _load_for_reviewer(organization_id, item_id, reviewer_id)
    else:
        item = get_scoped(ReviewItem, item_id, organization_id=organization_id)
    data = item.to_dict()
    data["campaign_name"] = item.campaign.name
    data["campaign_status"] = item.campaign.status
    data["comments"] = [c.to_dict() for c in item.comments.all()]
    return data


def list_pending_reviews(organization_id: int, reviewer_id: int) -> list[dict]:
    """Pending items of active campaigns.

    Flagged items come first, then riskier roles, then the earliest due date.
    Grants without a role rank below every risk level.
    """
    stmt = (
        select(ReviewItem, Campaign.name, Campaign.end_date)
        .join(Campaign, ReviewItem.campaign_id == Campaign.id)
        .outerjoin(Role, ReviewItem.role_id == Role.id)
        .where(
            ReviewItem.organization_id == organization_id,
            ReviewItem.reviewer_id == reviewer_id,
            ReviewItem.decision == "pending",
            Campaign.status == "active",
        )
        .order_by(
            ReviewItem.is_flagged.desc(),
            _RISK_RANK.desc(),
            Campaign.end_date,
            ReviewItem.id,
        )
    )
    result = []
    for item, campaign_name, end_date in db.session.execute(stmt):
        data = item.to_dict()
        data["campaign_name"] = campaign_name
        data["campaign_end_date"] = end_date.isoformat() if end_date else None
        result.append(data)
    return result


def reviewer_summary(organization_id: int, reviewer_id: int) -> dict:
    """Workload of one reviewer across active campaigns."""
    stmt = (
        select(ReviewItem.campaign_id, ReviewItem.decision, ReviewItem.is_flagged)
        .join(Campaign, ReviewItem.campaign_id == Campaign.id)
        .where(
            ReviewItem.organization_id == organization_id,
            ReviewItem.reviewer_id == reviewer_id,
            Campaign.status == "active",
        )
    )
    summary = {"total": 0, "pending": 0, "completed": 0, "flagged_pending": 0, "campaigns": {}}
    for campaign_id, decision, is_flagged in db.session.execute(stmt):
        per = summary["campaigns"].setdefault(campaign_id, {"total": 0, "pending": 0})
        summary["total"] += 1
        per["total"] += 1
        if decision == "pending":
            summary["pending"] += 1
            per["pending"] += 1
            if is_flagged:
                summary["flagged_pending"] += 1
        else:
            summary["completed"] += 1
    return summary


# ── Remediation ────────────────────────────────────────────────────────────────


def record_remediation(
    organization_id: int,
    item_id: int,
    actor_id: int | None,
    outcome: str,
    notes: str | None = None,
    now: datetime | None = None,
) -> dict:
    """Record the provisioning outcome for a revoked item.

    Moves ``remediation_status`` from ``pending`` to ``completed`` or ``failed``.
    """
    if outcome not in REMEDIATION_OUTCOMES:
        raise ValidationError(
            f"Invalid outcome '{outcome}'. Must be one of: {', '.join(sorted(REMEDIATION_OUTCOMES))}",
            details={"outcome": "invalid"},
        )
    now = now or datetime.now(timezone.utc)
    item = get_scoped(ReviewItem, item_id, organization_id=organization_id)
    if item.remediation_status != "pending":
        raise StateConflictError(
            "ReviewItem", item_id, current_state=item.remediation_status,
            message=f"Review item {item_id} has no pending remediation ({item.remediation_status})",
        )

    try:
        result = db.session.execute(
            update(ReviewItem)
            .where(ReviewItem.id == item.id, ReviewItem.remediation_status == "pending")
            .values(remediation_status=outcome, remediated_at=now)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise StateConflictError(
                "ReviewItem", item_id, current_state="changed",
                message=f"Remediation of review item {item_id} was recorded concurrently",
            )
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise

    db.session.refresh(item)
    log = logger.warning if outcome == "failed" else logger.info
    log(
        "Remediation %s for review item %s", outcome, item.id,
        extra={
            "organization_id": organization_id,
            "campaign_id": item.campaign_id,
            "review_item_id": item.id,
            "actor_id": actor_id,
            "event_type": "remediation",
        },
    )
    emit_audit_event(
        organization_id=organization_id,
        actor_id=actor_id,
        action="review.remediation",
        entity_type="review_item",
        entity_id=item.id,
        before={"remediation_status": "pending"},
        after={"remediation_status": outcome, "notes": (notes or "").strip() or None},
    )
    return item.to_dict()


def list_pending_remediations(organization_id: int, campaign_id: int | None = None) -> list[dict]:
    stmt = (
        select(ReviewItem)
        .where(
            ReviewItem.organization_id == organization_id,
            ReviewItem.remediation_status == "pending",
        )
        .order_by(ReviewItem.decided_at, ReviewItem.id)
    )
    if campaign_id is not None:
        stmt = stmt.where(ReviewItem.campaign_id == campaign_id)
    return [item.to_dict() for item in db.session.execute(stmt).scalars()]
