"""
Job registry for the external scheduler.

The engine runs no background threads. An outside scheduler (cron, a
workflow runner) calls ``run_job`` through the ``flask run-job`` command,
once per campaign or for every active campaign.

Jobs:
    - campaign_reminders: periodic reminder to reviewers with pending items
    - review_escalation: notify reviewers' managers once a campaign is overdue
"""

from __future__ import annotations

import logging
import time
from typing import Callable

from sqlalchemy import select

from accesscert.models import db
from accesscert.models.campaign import Campaign
from accesscert.services import reminder_service

logger = logging.getLogger(__name__)


# ═══════════════════════════════════════════════════════════════════════════
#  Job Registry
# ═══════════════════════════════════════════════════════════════════════════

_job_registry: dict[str, Callable] = {}


def register_job(name: str):
    """Decorator to register a job function.

    Usage:
        @register_job("campaign_reminders")
        def campaign_reminders(campaign_id, now=None):
            ...
    """
    def decorator(fn: Callable) -> Callable:
        _job_registry[name] = fn
        return fn
    return decorator


def get_registered_jobs() -> dict[str, Callable]:
    """Return all registered job functions."""
    return dict(_job_registry)


def run_job(job_name: str, campaign_id: int | None = None, now=None) -> dict:
    """
    Execute a registered job for one campaign, or for every active campaign
    when ``campaign_id`` is None.

    A failure on one campaign is logged and reported; the remaining campaigns
    still run.

    Returns:
        Dict with job_name, status, duration_ms, results and errors.
    """
    fn = _job_registry.get(job_name)
    if not fn:
        return {"job_name": job_name, "status": "error", "error": f"Unknown job: {job_name}"}

    if campaign_id is None:
        campaign_ids = list(
            db.session.execute(
                select(Campaign.id).where(Campaign.status == "active").order_by(Campaign.id)
            ).scalars()
        )
    else:
        campaign_ids = [campaign_id]

    start = time.monotonic()
    results = []
    errors = {}
    for cid in campaign_ids:
        try:
            results.append(fn(cid, now=now))
        except Exception as exc:
            db.session.rollback()
            errors[cid] = str(exc)
            logger.exception(
                "Job %s failed for campaign %s", job_name, cid,
                extra={"job_name": job_name, "campaign_id": cid},
            )

    duration_ms = int((time.monotonic() - start) * 1000)
    status = "failed" if errors else "success"
    logger.info(
        "Job %s finished: %s (%d campaign(s))", job_name, status, len(campaign_ids),
        extra={"job_name": job_name, "duration_ms": duration_ms},
    )
    return {
        "job_name": job_name,
        "status": status,
        "duration_ms": duration_ms,
        "results": results,
        "errors": errors,
    }


# ═══════════════════════════════════════════════════════════════════════════
#  Jobs
# ═══════════════════════════════════════════════════════════════════════════

@register_job("campaign_reminders")
def campaign_reminders(campaign_id: int, now=None) -> dict:
    """Remind reviewers with pending items."""
    return reminder_service.send_campaign_reminders(campaign_id, now=now)


@register_job("review_escalation")
def review_escalation(campaign_id: int, now=None) -> dict:
    """Escalate overdue reviews to the reviewers' managers."""
    return reminder_service.escalate_overdue_reviews(campaign_id, now=now)
