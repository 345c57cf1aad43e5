"""
Campaign stats aggregator.

Every counter on Campaign and every CampaignReviewer row is recomputed from
the campaign's ReviewItem rows; nothing is ever incremented. Running the
recomputation twice with no writes in between yields identical values, and
the last run after a burst of concurrent decisions always wins with the
correct totals.
"""

import logging
from collections.abc import Mapping

from sqlalchemy import case, func, select

from accesscert.core.exceptions import NotFoundError
from accesscert.models import db
from accesscert.models.campaign import Campaign, CampaignReviewer, ReviewItem
from accesscert.services.audit_sink import emit_audit_event
from accesscert.services.helpers.scoped_queries import get_scoped

logger = logging.getLogger(__name__)

_COUNTER_FIELDS = (
    "total_reviews",
    "completed_reviews",
    "approved_count",
    "revoked_count",
    "exception_count",
    "delegated_count",
    "completion_percentage",
)


def compute_stats(counts: Mapping[str, int]) -> dict:
    """Derive campaign counters from per-decision item counts.

    ``counts`` maps a decision value to its number of items, as returned by a
    GROUP BY over the campaign's review items. Missing decisions count as zero.
    """
    total = sum(counts.values())
    completed = total - counts.get("pending", 0)
    return {
        "total_reviews": total,
        "completed_reviews": completed,
        "approved_count": counts.get("approved", 0),
        "revoked_count": counts.get("revoked", 0),
        "exception_count": counts.get("exception", 0),
        "delegated_count": counts.get("delegated", 0),
        "completion_percentage": round(completed / total * 100, 2) if total else 0.0,
    }


def refresh_campaign_counters(campaign: Campaign) -> dict:
    """Recompute counters and reviewer progress for one campaign. Flushes only."""
    rows = db.session.execute(
        select(ReviewItem.decision, func.count(ReviewItem.id))
        .where(ReviewItem.campaign_id == campaign.id)
        .group_by(ReviewItem.decision)
    ).all()
    stats = compute_stats(dict(rows))
    for key in _COUNTER_FIELDS:
        setattr(campaign, key, stats[key])

    per_reviewer = {
        reviewer_id: (assigned, completed or 0)
        for reviewer_id, assigned, completed in db.session.execute(
            select(
                ReviewItem.reviewer_id,
                func.count(ReviewItem.id),
                func.sum(case((ReviewItem.decision != "pending", 1), else_=0)),
            )
            .where(ReviewItem.campaign_id == campaign.id, ReviewItem.reviewer_id.is_not(None))
            .group_by(ReviewItem.reviewer_id)
        ).all()
    }

    existing = {
        row.reviewer_id: row
        for row in db.session.execute(
            select(CampaignReviewer).where(CampaignReviewer.campaign_id == campaign.id)
        ).scalars()
    }
    for reviewer_id, (assigned, completed) in per_reviewer.items():
        row = existing.get(reviewer_id)
        if row is None:
            row = CampaignReviewer(campaign_id=campaign.id, reviewer_id=reviewer_id)
            db.session.add(row)
        row.total_assigned = assigned
        row.completed_count = completed

    for reviewer_id in set(existing) - set(per_reviewer):
        db.session.delete(existing[reviewer_id])

    db.session.flush()
    stats["reviewers"] = len(per_reviewer)
    return stats


def recalculate_campaign_stats(campaign_id: int, organization_id: int | None = None,
                               actor_id: int | None = None) -> dict:
    """Standalone recomputation for repair or backfill.

    Scoped to ``organization_id`` when given; the CLI repair path passes only
    the campaign id.
    """
    if organization_id is not None:
        campaign = get_scoped(Campaign, campaign_id, organization_id=organization_id)
    else:
        campaign = db.session.get(Campaign, campaign_id)
        if campaign is None:
            raise NotFoundError(resource="Campaign", resource_id=campaign_id)

    before = {key: getattr(campaign, key) for key in _COUNTER_FIELDS}
    try:
        stats = refresh_campaign_counters(campaign)
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise

    logger.info(
        "Campaign stats recalculated", extra={
            "organization_id": campaign.organization_id,
            "campaign_id": campaign.id,
            "event_type": "stats_recalculated",
        },
    )
    emit_audit_event(
        organization_id=campaign.organization_id,
        actor_id=actor_id,
        action="campaign.recalculate_stats",
        entity_type="campaign",
        entity_id=campaign.id,
        before=before,
        after={key: stats[key] for key in _COUNTER_FIELDS},
    )
    return {"campaign_id": campaign.id, **stats}


def get_campaign_reviewers(organization_id: int, campaign_id: int) -> list[dict]:
    """Per-reviewer progress, least complete first."""
    get_scoped(Campaign, campaign_id, organization_id=organization_id)
    rows = db.session.execute(
        select(CampaignReviewer).where(CampaignReviewer.campaign_id == campaign_id)
    ).scalars().all()
    result = [row.to_dict() for row in rows]
    result.sort(key=lambda r: (r["completion_percentage"], r["reviewer_id"]))
    return result
