"""
Review item generator.

For each scope candidate: pick the reviewer, snapshot the grant, flag the
item when the subject user has open SOD violations, and add a pending
ReviewItem. Candidates with no determinable reviewer are skipped.

Only flushes. The campaign launch owns the surrounding transaction, so a
failure here leaves no items behind.
"""

from __future__ import annotations

import logging
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, timezone

from sqlalchemy import select

from accesscert.models import db
from accesscert.models.access import AccessGrant
from accesscert.models.campaign import Campaign, ReviewItem
from accesscert.services import sod_engine
from accesscert.services.access_snapshot import snapshot_grant
from accesscert.services.scope_resolver import ScopeCandidate

logger = logging.getLogger(__name__)


@dataclass
class GenerationResult:
    items: list[ReviewItem] = field(default_factory=list)
    skipped_without_reviewer: int = 0
    assigned_by_reviewer: Counter = field(default_factory=Counter)


def determine_reviewer(campaign_type: str, candidate: ScopeCandidate) -> int | None:
    """Manager for manager-led campaigns; owner, then manager, for application_owner."""
    if campaign_type == "application_owner":
        return candidate.application_owner_id or candidate.manager_id
    return candidate.manager_id


def flag_reason_for(violations) -> str | None:
    if not violations:
        return None
    parts = []
    for v in violations:
        rule = v.rule
        category = rule.process_area or rule.name
        part = f"SOD violation: {category} ({rule.severity})"
        if part not in parts:
            parts.append(part)
    return "; ".join(parts)[:500]


def generate_review_items(
    campaign: Campaign,
    candidates: list[ScopeCandidate],
    now: datetime | None = None,
) -> GenerationResult:
    now = now or datetime.now(timezone.utc)
    result = GenerationResult()
    if not candidates:
        return result

    grants = {
        g.id: g
        for g in db.session.execute(
            select(AccessGrant).where(AccessGrant.id.in_([c.grant_id for c in candidates]))
        ).scalars()
    }
    violations_by_user = sod_engine.open_violations_by_user(
        campaign.organization_id, [c.user_id for c in candidates],
    )

    for candidate in candidates:
        reviewer_id = determine_reviewer(campaign.campaign_type, candidate)
        if reviewer_id is None:
            result.skipped_without_reviewer += 1
            logger.debug(
                "Skipping grant %s: no reviewer for user %s", candidate.grant_id, candidate.user_id,
                extra={"campaign_id": campaign.id},
            )
            continue

        violations = violations_by_user.get(candidate.user_id, [])
        item = ReviewItem(
            organization_id=campaign.organization_id,
            campaign_id=campaign.id,
            user_id=candidate.user_id,
            application_id=candidate.application_id,
            role_id=candidate.role_id,
            access_grant_id=candidate.grant_id,
            reviewer_id=reviewer_id,
            decision="pending",
            is_flagged=bool(violations),
            flag_reason=flag_reason_for(violations),
            access_details=snapshot_grant(grants[candidate.grant_id], captured_at=now),
        )
        db.session.add(item)
        result.items.append(item)
        result.assigned_by_reviewer[reviewer_id] += 1

    db.session.flush()

    if result.skipped_without_reviewer:
        logger.warning(
            "%d candidate(s) skipped without reviewer", result.skipped_without_reviewer,
            extra={"campaign_id": campaign.id, "organization_id": campaign.organization_id},
        )
    return result
