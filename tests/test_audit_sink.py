"""
Tests: Audit sink and notification outbox.

A failing sink must never undo or fail the operation that emitted to it.
"""

import pytest
from sqlalchemy.exc import OperationalError

from accesscert.core.exceptions import NotFoundError, ValidationError
from accesscert.models import db as _db
from accesscert.models.audit import AuditLog
from accesscert.models.campaign import Campaign
from accesscert.models.notification import Notification
from accesscert.services import audit_sink
from accesscert.services.audit_sink import emit_audit_event
from accesscert.services.campaign_service import cancel_campaign
from accesscert.services.notification import NotificationService


def _broken_write(**kwargs):
    raise OperationalError("INSERT INTO audit_logs", {}, Exception("disk I/O error"))


class TestEmitAuditEvent:
    def test_writes_row(self, org):
        ok = emit_audit_event(
            organization_id=org.id, actor_id=None, action="campaign.create",
            entity_type="campaign", entity_id=7, after={"name": "Q3"},
        )

        assert ok is True
        log = AuditLog.query.one()
        assert (log.entity_type, log.entity_id, log.after) == ("campaign", "7", {"name": "Q3"})

    def test_failure_returns_false(self, org, monkeypatch):
        monkeypatch.setattr(audit_sink, "write_audit", _broken_write)

        ok = emit_audit_event(
            organization_id=org.id, actor_id=None, action="campaign.create",
            entity_type="campaign", entity_id=7,
        )

        assert ok is False
        assert AuditLog.query.count() == 0

    def test_failure_does_not_undo_operation(self, build, org, monkeypatch):
        campaign = build.campaign()
        monkeypatch.setattr(audit_sink, "write_audit", _broken_write)

        result = cancel_campaign(org.id, campaign.id, None)

        assert result["status"] == "cancelled"
        _db.session.expire_all()
        assert _db.session.get(Campaign, campaign.id).status == "cancelled"
        assert AuditLog.query.count() == 0


class TestNotificationService:
    def test_broadcast_dedupes_recipients(self, build, org):
        a, b = build.user(), build.user()

        created = NotificationService.broadcast(
            organization_id=org.id, recipient_ids=[b.id, a.id, b.id, None],
            category="review_assigned", title="Reviews assigned",
        )

        assert sorted(n.recipient_id for n in created) == sorted([a.id, b.id])

    def test_unknown_category(self, org):
        with pytest.raises(ValidationError):
            NotificationService.create(
                organization_id=org.id, recipient_id=1, category="newsletter", title="Hi",
            )

    def test_list_and_mark_delivered(self, build, org):
        user = build.user()
        first = NotificationService.create(
            organization_id=org.id, recipient_id=user.id, category="review_reminder", title="One",
        )
        NotificationService.create(
            organization_id=org.id, recipient_id=user.id, category="review_reminder", title="Two",
        )

        NotificationService.mark_delivered(org.id, first.id)

        items, total = NotificationService.list_for_recipient(org.id, user.id, undelivered_only=True)
        assert total == 1
        assert [n.title for n in items] == ["Two"]
        assert _db.session.get(Notification, first.id).delivered_at is not None

    def test_mark_delivered_other_organization(self, build, org, other_org):
        user = build.user()
        notif = NotificationService.create(
            organization_id=org.id, recipient_id=user.id, category="review_reminder", title="One",
        )

        with pytest.raises(NotFoundError):
            NotificationService.mark_delivered(other_org.id, notif.id)
