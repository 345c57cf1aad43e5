"""
Tests: Decision processor.

Covers single decisions (approve / revoke / exception / delegate), the
reviewer and campaign-state guards, optimistic concurrency on the item
version, grant deactivation on revoke, and remediation tracking.
"""

import pytest
from sqlalchemy import update

from accesscert.core.exceptions import (
    AuthorizationError,
    NotFoundError,
    StateConflictError,
    ValidationError,
)
from accesscert.models import db as _db
from accesscert.models.access import AccessGrant
from accesscert.models.audit import AuditLog
from accesscert.models.campaign import Campaign, CampaignReviewer, ReviewItem
from accesscert.services.campaign_service import cancel_campaign, launch_campaign
from accesscert.services.decision_service import (
    get_review_item,
    list_pending_remediations,
    list_pending_reviews,
    record_remediation,
    reviewer_summary,
    submit_decision,
)


class TestSubmitDecision:
    def test_approve_updates_item_and_campaign_stats(self, build, org):
        setup = build.review_setup(n_items=4)
        item = setup.items[0]

        result = submit_decision(org.id, item.id, setup.reviewer.id, "approved", rationale="Still needed")

        assert result["decision"] == "approved"
        assert result["rationale"] == "Still needed"
        assert result["decided_at"] is not None
        assert result["version"] == 2
        assert result["remediation_status"] == "none"

        campaign = _db.session.get(Campaign, setup.campaign.id)
        assert campaign.completed_reviews == 1
        assert campaign.approved_count == 1
        assert campaign.completion_percentage == 25.0

        progress = CampaignReviewer.query.filter_by(
            campaign_id=setup.campaign.id, reviewer_id=setup.reviewer.id,
        ).one()
        assert progress.completed_count == 1
        assert progress.total_assigned == 4

    def test_approve_without_rationale_allowed(self, build, org):
        setup = build.review_setup(n_items=1)

        result = submit_decision(org.id, setup.items[0].id, setup.reviewer.id, "approved")

        assert result["rationale"] is None

    def test_revoke_requires_rationale(self, build, org):
        setup = build.review_setup(n_items=1)

        with pytest.raises(ValidationError) as exc:
            submit_decision(org.id, setup.items[0].id, setup.reviewer.id, "revoked", rationale="   ")
        assert "rationale" in exc.value.details

        assert _db.session.get(ReviewItem, setup.items[0].id).decision == "pending"
        assert _db.session.get(AccessGrant, setup.grants[0].id).is_active is True

    def test_revoke_deactivates_grant_and_queues_remediation(self, build, org):
        setup = build.review_setup(n_items=2)
        item = setup.items[0]

        result = submit_decision(org.id, item.id, setup.reviewer.id, "revoked", rationale="Left team")

        assert result["decision"] == "revoked"
        assert result["remediation_status"] == "pending"
        grant = _db.session.get(AccessGrant, setup.grants[0].id)
        assert grant.is_active is False
        assert grant.revoked_by_id == setup.reviewer.id
        assert grant.revoked_at is not None
        assert _db.session.get(Campaign, setup.campaign.id).revoked_count == 1

    def test_shared_grant_is_deactivated_once(self, build, org):
        setup = build.review_setup(n_items=1)
        second = build.campaign()
        launch_campaign(org.id, second.id, actor_id=None)
        other_item = ReviewItem.query.filter_by(campaign_id=second.id).one()
        assert other_item.access_grant_id == setup.grants[0].id

        submit_decision(org.id, setup.items[0].id, setup.reviewer.id, "revoked", rationale="Left team")
        submit_decision(org.id, other_item.id, setup.reviewer.id, "revoked", rationale="Left team")

        flags = [
            log.after["grant_deactivated"]
            for log in AuditLog.query.filter_by(action="review.decision").order_by(AuditLog.id)
        ]
        assert flags == [True, False]

    def test_exception_decision(self, build, org):
        setup = build.review_setup(n_items=1)

        result = submit_decision(
            org.id, setup.items[0].id, setup.reviewer.id, "exception", rationale="Covered by control C-12",
        )

        assert result["decision"] == "exception"
        assert _db.session.get(Campaign, setup.campaign.id).exception_count == 1
        assert _db.session.get(AccessGrant, setup.grants[0].id).is_active is True

    def test_invalid_decision_rejected(self, build, org):
        setup = build.review_setup(n_items=1)

        for bad in ("pending", "maybe"):
            with pytest.raises(ValidationError):
                submit_decision(org.id, setup.items[0].id, setup.reviewer.id, bad)

    def test_writes_audit_event(self, build, org):
        setup = build.review_setup(n_items=1)
        item = setup.items[0]

        submit_decision(org.id, item.id, setup.reviewer.id, "approved")

        log = AuditLog.query.filter_by(action="review.decision").one()
        assert log.entity_id == str(item.id)
        assert log.actor_id == setup.reviewer.id
        assert log.before["decision"] == "pending"
        assert log.after["decision"] == "approved"


class TestDecisionGuards:
    def test_non_reviewer_is_rejected(self, build, org):
        setup = build.review_setup(n_items=1)
        stranger = build.user("stranger")

        with pytest.raises(AuthorizationError):
            submit_decision(org.id, setup.items[0].id, stranger.id, "approved")
        assert _db.session.get(ReviewItem, setup.items[0].id).decision == "pending"

    def test_other_organization_sees_not_found(self, build, org, other_org):
        setup = build.review_setup(n_items=1)

        with pytest.raises(NotFoundError):
            submit_decision(other_org.id, setup.items[0].id, setup.reviewer.id, "approved")

    def test_missing_item_not_found(self, build, org):
        reviewer = build.user()

        with pytest.raises(NotFoundError):
            submit_decision(org.id, 9999, reviewer.id, "approved")

    def test_cancelled_campaign_rejects_decisions(self, build, org):
        setup = build.review_setup(n_items=1)
        cancel_campaign(org.id, setup.campaign.id, None)

        with pytest.raises(StateConflictError):
            submit_decision(org.id, setup.items[0].id, setup.reviewer.id, "approved")

    def test_decided_item_cannot_be_decided_again(self, build, org):
        setup = build.review_setup(n_items=1)
        item_id = setup.items[0].id
        submit_decision(org.id, item_id, setup.reviewer.id, "approved")

        with pytest.raises(StateConflictError):
            submit_decision(org.id, item_id, setup.reviewer.id, "revoked", rationale="Changed my mind")

        item = _db.session.get(ReviewItem, item_id)
        assert item.decision == "approved"
        assert _db.session.get(AccessGrant, setup.grants[0].id).is_active is True

    def test_stale_version_loses_race(self, build, org):
        """A concurrent writer bumps the row after we loaded it; our write must not land."""
        setup = build.review_setup(n_items=1)
        item = _db.session.get(ReviewItem, setup.items[0].id)
        assert item.version == 1

        _db.session.execute(
            update(ReviewItem)
            .where(ReviewItem.id == item.id)
            .values(decision="approved", version=ReviewItem.version + 1)
            .execution_options(synchronize_session=False)
        )

        with pytest.raises(StateConflictError):
            submit_decision(org.id, item.id, setup.reviewer.id, "revoked", rationale="Left team")

        _db.session.expire_all()
        assert _db.session.get(ReviewItem, item.id).decision == "pending"
        assert _db.session.get(AccessGrant, setup.grants[0].id).is_active is True
        assert _db.session.get(Campaign, setup.campaign.id).revoked_count == 0

    def test_campaign_closed_after_load_rejects_decision(self, build, org):
        """The campaign is cancelled between our status check and our write."""
        setup = build.review_setup(n_items=1)
        item = _db.session.get(ReviewItem, setup.items[0].id)
        assert _db.session.get(Campaign, setup.campaign.id).status == "active"

        _db.session.execute(
            update(Campaign)
            .where(Campaign.id == setup.campaign.id)
            .values(status="cancelled")
            .execution_options(synchronize_session=False)
        )

        with pytest.raises(StateConflictError):
            submit_decision(org.id, item.id, setup.reviewer.id, "approved")

        _db.session.expire_all()
        assert _db.session.get(ReviewItem, item.id).decision == "pending"
        assert _db.session.get(Campaign, setup.campaign.id).approved_count == 0


class TestDelegation:
    def test_delegate_records_target(self, build, org):
        setup = build.review_setup(n_items=1)
        delegate = build.user("delegate")

        result = submit_decision(
            org.id, setup.items[0].id, setup.reviewer.id, "delegated", delegate_to=delegate.id,
        )

        assert result["decision"] == "delegated"
        assert result["delegated_to_id"] == delegate.id
        assert ReviewItem.query.count() == 1
        assert _db.session.get(Campaign, setup.campaign.id).delegated_count == 1

    def test_delegate_required(self, build, org):
        setup = build.review_setup(n_items=1)

        with pytest.raises(ValidationError) as exc:
            submit_decision(org.id, setup.items[0].id, setup.reviewer.id, "delegated")
        assert "delegate_to" in exc.value.details

    def test_delegate_must_belong_to_organization(self, build, org, other_build):
        setup = build.review_setup(n_items=1)
        outsider = other_build.user()

        with pytest.raises(ValidationError):
            submit_decision(
                org.id, setup.items[0].id, setup.reviewer.id, "delegated", delegate_to=outsider.id,
            )

    def test_delegate_only_with_delegated_decision(self, build, org):
        setup = build.review_setup(n_items=1)
        delegate = build.user("delegate")

        with pytest.raises(ValidationError):
            submit_decision(
                org.id, setup.items[0].id, setup.reviewer.id, "approved", delegate_to=delegate.id,
            )


class TestReviewerQueries:
    def test_pending_reviews_exclude_decided_items(self, build, org):
        setup = build.review_setup(n_items=3)
        submit_decision(org.id, setup.items[1].id, setup.reviewer.id, "approved")

        pending = list_pending_reviews(org.id, setup.reviewer.id)

        assert [p["id"] for p in pending] == [setup.items[0].id, setup.items[2].id]
        assert pending[0]["campaign_name"] == setup.campaign.name

    def test_pending_reviews_put_riskier_roles_first(self, build, org):
        reviewer = build.user("reviewer")
        erp = build.application("ERP")
        low = build.grant(build.user(manager=reviewer), erp, build.role(erp, "DISPLAY", risk_level="low"))
        bare = build.grant(build.user(manager=reviewer), erp)
        high = build.grant(build.user(manager=reviewer), erp, build.role(erp, "PAYMENT_RUN", risk_level="high"))
        campaign = build.campaign()
        launch_campaign(org.id, campaign.id, actor_id=None)

        pending = list_pending_reviews(org.id, reviewer.id)

        assert [p["access_grant_id"] for p in pending] == [high.id, low.id, bare.id]

    def test_reviewer_summary(self, build, org):
        setup = build.review_setup(n_items=3)
        submit_decision(org.id, setup.items[0].id, setup.reviewer.id, "approved")

        summary = reviewer_summary(org.id, setup.reviewer.id)

        assert summary["total"] == 3
        assert summary["pending"] == 2
        assert summary["completed"] == 1
        assert summary["campaigns"] == {setup.campaign.id: {"total": 3, "pending": 2}}

    def test_get_review_item_enforces_reviewer(self, build, org):
        setup = build.review_setup(n_items=1)
        stranger = build.user("stranger")

        data = get_review_item(org.id, setup.items[0].id, reviewer_id=setup.reviewer.id)
        assert data["campaign_status"] == "active"
        assert data["comments"] == []

        with pytest.raises(AuthorizationError):
            get_review_item(org.id, setup.items[0].id, reviewer_id=stranger.id)


class TestRemediation:
    def test_record_completed_remediation(self, build, org):
        setup = build.review_setup(n_items=2)
        item_id = setup.items[0].id
        submit_decision(org.id, item_id, setup.reviewer.id, "revoked", rationale="Left team")
        assert [r["id"] for r in list_pending_remediations(org.id)] == [item_id]

        result = record_remediation(org.id, item_id, None, "completed", notes="Removed in ERP")

        assert result["remediation_status"] == "completed"
        assert result["remediated_at"] is not None
        assert list_pending_remediations(org.id, campaign_id=setup.campaign.id) == []
        assert AuditLog.query.filter_by(action="review.remediation").count() == 1

    def test_remediation_recorded_once(self, build, org):
        setup = build.review_setup(n_items=1)
        item_id = setup.items[0].id
        submit_decision(org.id, item_id, setup.reviewer.id, "revoked", rationale="Left team")
        record_remediation(org.id, item_id, None, "failed")

        with pytest.raises(StateConflictError):
            record_remediation(org.id, item_id, None, "completed")

    def test_remediation_requires_revoked_item(self, build, org):
        setup = build.review_setup(n_items=1)
        submit_decision(org.id, setup.items[0].id, setup.reviewer.id, "approved")

        with pytest.raises(StateConflictError):
            record_remediation(org.id, setup.items[0].id, None, "completed")

    def test_invalid_outcome(self, build, org):
        setup = build.review_setup(n_items=1)

        with pytest.raises(ValidationError):
            record_remediation(org.id, setup.items[0].id, None, "pending")
