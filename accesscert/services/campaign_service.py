"""
Campaign lifecycle manager.

    draft ──launch──► active ──complete──► completed
      │                 │
      └────cancel───────┴──► cancelled

Launch is one unit of work: status guard, scope resolution, review item
generation, counters, reviewer progress and the move to ``active`` commit
together or not at all. Only draft campaigns can be edited or deleted.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone

from flask import current_app
from sqlalchemy import func, select, update

from accesscert.core.exceptions import StateConflictError, ValidationError
from accesscert.models import db
from accesscert.models.campaign import (
    CAMPAIGN_STATUSES,
    CAMPAIGN_TRANSITIONS,
    CAMPAIGN_TYPES,
    Campaign,
    ReviewItem,
)
from accesscert.services import review_generator, scope_resolver, stats_service
from accesscert.services.audit_sink import emit_audit_event
from accesscert.services.helpers.scoped_queries import get_scoped
from accesscert.services.notification import NotificationService
from accesscert.utils.helpers import parse_date

logger = logging.getLogger(__name__)

# Explicit table of fields create/update accept; anything else is rejected.
CAMPAIGN_UPDATABLE_FIELDS = frozenset({
    "name",
    "description",
    "campaign_type",
    "scope_config",
    "start_date",
    "end_date",
    "reminder_frequency_days",
    "escalation_enabled",
    "escalation_days",
})


# ── Validation ─────────────────────────────────────────────────────────────────


def _positive_int(value) -> bool:
    return isinstance(value, int) and not isinstance(value, bool) and value >= 1


def _clean_campaign_fields(data: dict, *, partial: bool, current: Campaign | None = None) -> dict:
    unknown = set(data) - CAMPAIGN_UPDATABLE_FIELDS
    if unknown:
        raise ValidationError(
            f"Unknown campaign field(s): {', '.join(sorted(unknown))}",
            details={f: "not updatable" for f in sorted(unknown)},
        )

    cleaned = {}
    errors = {}

    if "name" in data or not partial:
        name = data.get("name")
        name = name.strip() if isinstance(name, str) else ""
        if not name:
            errors["name"] = "required"
        elif len(name) > 255:
            errors["name"] = "max 255 characters"
        cleaned["name"] = name

    if "description" in data:
        desc = data["description"]
        if desc is not None and not isinstance(desc, str):
            errors["description"] = "must be a string"
        else:
            cleaned["description"] = (desc or "").strip()

    if "campaign_type" in data or not partial:
        ctype = data.get("campaign_type", "manager_review")
        if ctype not in CAMPAIGN_TYPES:
            errors["campaign_type"] = f"must be one of {', '.join(sorted(CAMPAIGN_TYPES))}"
        cleaned["campaign_type"] = ctype

    for key in ("start_date", "end_date"):
        if key in data or not partial:
            try:
                value = parse_date(data.get(key))
            except ValueError:
                errors[key] = "must be an ISO date"
                continue
            if value is None:
                errors[key] = "required"
                continue
            cleaned[key] = value

    start = cleaned.get("start_date", current.start_date if current else None)
    end = cleaned.get("end_date", current.end_date if current else None)
    if start and end and start >= end and "start_date" not in errors and "end_date" not in errors:
        errors["end_date"] = "must be after start_date"

    for key, default_key in (
        ("reminder_frequency_days", "DEFAULT_REMINDER_FREQUENCY_DAYS"),
        ("escalation_days", "DEFAULT_ESCALATION_DAYS"),
    ):
        if key in data:
            if not _positive_int(data[key]):
                errors[key] = "must be a positive integer"
            cleaned[key] = data[key]
        elif not partial:
            cleaned[key] = current_app.config[default_key]

    if "escalation_enabled" in data:
        if not isinstance(data["escalation_enabled"], bool):
            errors["escalation_enabled"] = "must be a boolean"
        cleaned["escalation_enabled"] = data["escalation_enabled"]

    if "scope_config" in data or not partial:
        try:
            cleaned["scope_config"] = scope_resolver.normalize_scope_config(data.get("scope_config"))
        except ValidationError as exc:
            if exc.details:
                errors.update({f"scope_config.{k}": v for k, v in exc.details.items()})
            else:
                errors["scope_config"] = str(exc)

    if errors:
        raise ValidationError("Invalid campaign", details=errors)
    return cleaned


def _check_transition(campaign: Campaign, action: str) -> str:
    rule = CAMPAIGN_TRANSITIONS[action]
    if campaign.status not in rule["from"]:
        raise StateConflictError(
            "Campaign", campaign.id, current_state=campaign.status,
            message=f"Cannot {action} campaign {campaign.id} in status '{campaign.status}'",
        )
    return rule["to"]


def _require_draft(campaign: Campaign, action: str) -> None:
    if campaign.status != "draft":
        raise StateConflictError(
            "Campaign", campaign.id, current_state=campaign.status,
            message=f"Cannot {action} campaign {campaign.id}: only draft campaigns can be changed",
        )


# ── CRUD ───────────────────────────────────────────────────────────────────────


def create_campaign(organization_id: int, actor_id: int | None, data: dict) -> dict:
    fields = _clean_campaign_fields(data, partial=False)
    campaign = Campaign(
        organization_id=organization_id,
        status="draft",
        created_by_id=actor_id,
        **fields,
    )
    db.session.add(campaign)
    db.session.commit()

    logger.info(
        "Campaign created: %s", campaign.name,
        extra={"organization_id": organization_id, "campaign_id": campaign.id, "actor_id": actor_id},
    )
    result = campaign.to_dict()
    emit_audit_event(
        organization_id=organization_id,
        actor_id=actor_id,
        action="campaign.create",
        entity_type="campaign",
        entity_id=campaign.id,
        after=result,
    )
    return result


def update_campaign(organization_id: int, campaign_id: int, actor_id: int | None, data: dict) -> dict:
    campaign = get_scoped(Campaign, campaign_id, organization_id=organization_id)
    _require_draft(campaign, "update")
    fields = _clean_campaign_fields(data, partial=True, current=campaign)

    before = campaign.to_dict()
    for key, value in fields.items():
        setattr(campaign, key, value)
    db.session.commit()

    result = campaign.to_dict()
    emit_audit_event(
        organization_id=organization_id,
        actor_id=actor_id,
        action="campaign.update",
        entity_type="campaign",
        entity_id=campaign.id,
        before=before,
        after=result,
    )
    return result


def delete_campaign(organization_id: int, campaign_id: int, actor_id: int | None) -> None:
    campaign = get_scoped(Campaign, campaign_id, organization_id=organization_id)
    _require_draft(campaign, "delete")

    before = campaign.to_dict()
    db.session.delete(campaign)
    db.session.commit()

    logger.info(
        "Campaign deleted", extra={"organization_id": organization_id, "campaign_id": campaign_id},
    )
    emit_audit_event(
        organization_id=organization_id,
        actor_id=actor_id,
        action="campaign.delete",
        entity_type="campaign",
        entity_id=campaign_id,
        before=before,
    )


def get_campaign(organization_id: int, campaign_id: int) -> dict:
    return get_scoped(Campaign, campaign_id, organization_id=organization_id).to_dict()


def list_campaigns(organization_id: int, status: str | None = None, campaign_type: str | None = None) -> list[dict]:
    if status is not None and status not in CAMPAIGN_STATUSES:
        raise ValidationError(f"Unknown status '{status}'", details={"status": "invalid"})
    q = Campaign.query_for_org(organization_id)
    if status:
        q = q.filter(Campaign.status == status)
    if campaign_type:
        q = q.filter(Campaign.campaign_type == campaign_type)
    return [c.to_dict() for c in q.order_by(Campaign.created_at.desc(), Campaign.id.desc()).all()]


# ── Launch ─────────────────────────────────────────────────────────────────────


def launch_campaign(organization_id: int, campaign_id: int, actor_id: int | None,
                    now: datetime | None = None) -> dict:
    """Generate review items and activate a draft campaign.

    Returns:
        {campaign, items_created, reviewers_assigned,
         skipped_without_reviewer, unresolved_scope}

    Raises:
        NotFoundError: campaign absent or outside the organization.
        StateConflictError: campaign is not in draft.
    """
    now = now or datetime.now(timezone.utc)
    campaign = get_scoped(Campaign, campaign_id, organization_id=organization_id)
    target = _check_transition(campaign, "launch")

    try:
        # Claim the draft so two concurrent launches cannot both generate items
        claimed = db.session.execute(
            update(Campaign)
            .where(Campaign.id == campaign.id, Campaign.status == "draft")
            .values(status=target, launched_at=now)
            .execution_options(synchronize_session=False)
        )
        if claimed.rowcount != 1:
            raise StateConflictError(
                "Campaign", campaign.id, current_state="launched",
                message=f"Campaign {campaign.id} was launched concurrently",
            )
        db.session.refresh(campaign)

        resolution = scope_resolver.resolve_scope(organization_id, campaign.scope_config, now=now)
        generated = review_generator.generate_review_items(campaign, resolution.candidates, now=now)
        stats = stats_service.refresh_campaign_counters(campaign)
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise

    reviewers_assigned = len(generated.assigned_by_reviewer)
    logger.info(
        "Campaign launched: %d item(s), %d reviewer(s)", stats["total_reviews"], reviewers_assigned,
        extra={
            "organization_id": organization_id,
            "campaign_id": campaign.id,
            "actor_id": actor_id,
            "event_type": "campaign_launch",
        },
    )
    result = {
        "campaign": campaign.to_dict(),
        "items_created": len(generated.items),
        "reviewers_assigned": reviewers_assigned,
        "skipped_without_reviewer": generated.skipped_without_reviewer,
        "unresolved_scope": resolution.unresolved,
    }
    emit_audit_event(
        organization_id=organization_id,
        actor_id=actor_id,
        action="campaign.launch",
        entity_type="campaign",
        entity_id=campaign.id,
        before={"status": "draft"},
        after={key: result[key] for key in result if key != "campaign"} | {"status": campaign.status},
    )
    for reviewer_id, count in sorted(generated.assigned_by_reviewer.items()):
        NotificationService.create(
            organization_id=organization_id,
            recipient_id=reviewer_id,
            category="review_assigned",
            title=f"Access review assigned: {campaign.name}",
            message=f"You have {count} access review(s) due by {campaign.end_date.isoformat()}.",
            entity_type="campaign",
            entity_id=campaign.id,
        )
    return result


# ── Completion / cancellation ──────────────────────────────────────────────────


def complete_campaign(organization_id: int, campaign_id: int, actor_id: int | None,
                      force: bool = False, now: datetime | None = None) -> dict:
    """Close an active campaign. Pending items block completion unless ``force``."""
    now = now or datetime.now(timezone.utc)
    campaign = get_scoped(Campaign, campaign_id, organization_id=organization_id)
    target = _check_transition(campaign, "complete")

    pending = db.session.execute(
        select(func.count(ReviewItem.id)).where(
            ReviewItem.campaign_id == campaign.id,
            ReviewItem.decision == "pending",
        )
    ).scalar_one()
    if pending and not force:
        raise StateConflictError(
            "Campaign", campaign.id, current_state=campaign.status,
            message=f"Campaign {campaign.id} still has {pending} pending review(s)",
        )

    before = campaign.to_dict()
    try:
        stats_service.refresh_campaign_counters(campaign)
        campaign.status = target
        campaign.completed_at = now
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise

    logger.info(
        "Campaign completed%s", " (forced)" if pending else "",
        extra={"organization_id": organization_id, "campaign_id": campaign.id, "actor_id": actor_id},
    )
    result = campaign.to_dict()
    emit_audit_event(
        organization_id=organization_id,
        actor_id=actor_id,
        action="campaign.complete",
        entity_type="campaign",
        entity_id=campaign.id,
        before=before,
        after=result | {"forced_with_pending": pending if force else 0},
    )
    return result


def cancel_campaign(organization_id: int, campaign_id: int, actor_id: int | None,
                    now: datetime | None = None) -> dict:
    now = now or datetime.now(timezone.utc)
    campaign = get_scoped(Campaign, campaign_id, organization_id=organization_id)
    target = _check_transition(campaign, "cancel")

    before = campaign.to_dict()
    campaign.status = target
    campaign.cancelled_at = now
    db.session.commit()

    result = campaign.to_dict()
    emit_audit_event(
        organization_id=organization_id,
        actor_id=actor_id,
        action="campaign.cancel",
        entity_type="campaign",
        entity_id=campaign.id,
        before=before,
        after=result,
    )
    return result
