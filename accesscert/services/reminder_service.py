"""
Reminders and escalation.

Invoked by the external scheduler through the job registry; the engine keeps
no timers of its own. Both operations only write outbox notifications and
bookkeeping timestamps, never review state.
"""

import logging
from datetime import datetime, timedelta, timezone

from sqlalchemy import func, select

from accesscert.core.exceptions import NotFoundError
from accesscert.models import db
from accesscert.models.campaign import Campaign, CampaignReviewer, ReviewItem
from accesscert.models.organization import User
from accesscert.services.helpers.scoped_queries import get_scoped
from accesscert.services.notification import NotificationService
from accesscert.utils.helpers import ensure_aware

logger = logging.getLogger(__name__)


def _load_campaign(campaign_id: int, organization_id: int | None) -> Campaign:
    if organization_id is not None:
        return get_scoped(Campaign, campaign_id, organization_id=organization_id)
    campaign = db.session.get(Campaign, campaign_id)
    if campaign is None:
        raise NotFoundError(resource="Campaign", resource_id=campaign_id)
    return campaign


def _pending_by_reviewer(campaign_id: int) -> dict[int, int]:
    rows = db.session.execute(
        select(ReviewItem.reviewer_id, func.count(ReviewItem.id))
        .where(
            ReviewItem.campaign_id == campaign_id,
            ReviewItem.decision == "pending",
            ReviewItem.reviewer_id.is_not(None),
        )
        .group_by(ReviewItem.reviewer_id)
        .order_by(ReviewItem.reviewer_id)
    ).all()
    return {reviewer_id: count for reviewer_id, count in rows}


def send_campaign_reminders(campaign_id: int, now: datetime | None = None,
                            organization_id: int | None = None) -> dict:
    """Remind every reviewer with pending items, once per reminder period.

    The period starts at the last reminder, or at launch for the first one.
    """
    now = ensure_aware(now) or datetime.now(timezone.utc)
    campaign = _load_campaign(campaign_id, organization_id)
    result = {"campaign_id": campaign.id, "reminders_sent": 0, "skipped": None}

    if campaign.status != "active":
        result["skipped"] = "not_active"
        return result

    last = ensure_aware(campaign.last_reminder_at or campaign.launched_at)
    period = timedelta(days=campaign.reminder_frequency_days or 1)
    if last is not None and now - last < period:
        result["skipped"] = "not_due"
        return result

    pending = _pending_by_reviewer(campaign.id)
    progress = {
        row.reviewer_id: row
        for row in db.session.execute(
            select(CampaignReviewer).where(CampaignReviewer.campaign_id == campaign.id)
        ).scalars()
    }
    for reviewer_id, count in pending.items():
        notif = NotificationService.create(
            organization_id=campaign.organization_id,
            recipient_id=reviewer_id,
            category="review_reminder",
            title=f"Reminder: {count} access review(s) pending in {campaign.name}",
            message=f"Please complete your reviews by {campaign.end_date.isoformat()}.",
            entity_type="campaign",
            entity_id=campaign.id,
            commit=False,
        )
        if notif is not None:
            result["reminders_sent"] += 1
            if reviewer_id in progress:
                progress[reviewer_id].last_reminded_at = now

    campaign.last_reminder_at = now
    db.session.commit()

    logger.info(
        "Sent %d review reminder(s)", result["reminders_sent"],
        extra={
            "organization_id": campaign.organization_id,
            "campaign_id": campaign.id,
            "event_type": "review_reminder",
        },
    )
    return result


def escalate_overdue_reviews(campaign_id: int, now: datetime | None = None,
                             organization_id: int | None = None) -> dict:
    """Notify the manager of every reviewer still holding pending items.

    Applies once ``escalation_days`` have passed since the campaign start date
    and only when escalation is enabled. Each reviewer is escalated at most
    once per reminder period; later runs inside the period skip them.
    """
    now = ensure_aware(now) or datetime.now(timezone.utc)
    campaign = _load_campaign(campaign_id, organization_id)
    result = {
        "campaign_id": campaign.id,
        "escalations_sent": 0,
        "reviewers_without_manager": [],
        "already_escalated": [],
        "skipped": None,
    }

    if campaign.status != "active":
        result["skipped"] = "not_active"
        return result
    if not campaign.escalation_enabled:
        result["skipped"] = "disabled"
        return result
    if now.date() < campaign.start_date + timedelta(days=campaign.escalation_days or 0):
        result["skipped"] = "not_due"
        return result

    pending = _pending_by_reviewer(campaign.id)
    if not pending:
        return result

    managers = dict(
        db.session.execute(
            select(User.id, User.manager_id).where(User.id.in_(list(pending)))
        ).all()
    )
    progress = {
        row.reviewer_id: row
        for row in db.session.execute(
            select(CampaignReviewer).where(CampaignReviewer.campaign_id == campaign.id)
        ).scalars()
    }
    period = timedelta(days=campaign.reminder_frequency_days or 1)
    for reviewer_id, count in pending.items():
        manager_id = managers.get(reviewer_id)
        if manager_id is None:
            result["reviewers_without_manager"].append(reviewer_id)
            continue
        row = progress.get(reviewer_id)
        last = ensure_aware(row.last_escalated_at) if row is not None else None
        if last is not None and now - last < period:
            result["already_escalated"].append(reviewer_id)
            continue
        notif = NotificationService.create(
            organization_id=campaign.organization_id,
            recipient_id=manager_id,
            category="review_escalation",
            severity="warning",
            title=f"Escalation: overdue access reviews in {campaign.name}",
            message=f"User {reviewer_id} still has {count} pending review(s).",
            entity_type="campaign",
            entity_id=campaign.id,
            commit=False,
        )
        if notif is not None:
            result["escalations_sent"] += 1
            if row is not None:
                row.last_escalated_at = now
    db.session.commit()

    if result["reviewers_without_manager"]:
        logger.warning(
            "Cannot escalate for reviewer(s) without manager: %s", result["reviewers_without_manager"],
            extra={"campaign_id": campaign.id, "organization_id": campaign.organization_id},
        )
    logger.info(
        "Sent %d review escalation(s)", result["escalations_sent"],
        extra={
            "organization_id": campaign.organization_id,
            "campaign_id": campaign.id,
            "event_type": "review_escalation",
        },
    )
    return result
