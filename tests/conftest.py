"""
Shared pytest fixtures for the Access Certification Engine test suite.

Provides:
    - app: Flask application (session-scoped)
    - _setup_db: Database table creation/teardown (session-scoped)
    - session: Per-test DB cleanup w/ rollback + recreate (autouse)
    - org / other_org: Pre-created Organization entities
    - build: ORM builder bound to ``org`` for users, grants and campaigns

Builder methods commit. Service calls roll back on failure, and fixture data
that was only flushed would disappear with them.
"""

import itertools
from datetime import date, timedelta
from types import SimpleNamespace

import pytest

from accesscert import create_app
from accesscert.models import db as _db
from accesscert.models.access import AccessGrant, Application, Role
from accesscert.models.campaign import Campaign, ReviewItem
from accesscert.models.organization import Department, Organization, User


# ── App & DB fixtures ────────────────────────────────────────────────────


@pytest.fixture(scope="session")
def app():
    """Create the Flask application once per test session."""
    return create_app("testing")


@pytest.fixture(scope="session")
def _setup_db(app):
    """Create all tables at session start, drop at end."""
    with app.app_context():
        _db.create_all()
    yield
    with app.app_context():
        _db.drop_all()


@pytest.fixture(autouse=True)
def session(app, _setup_db):
    """Per-test: open app context, rollback after test, recreate tables."""
    with app.app_context():
        yield
        _db.session.rollback()
        _db.drop_all()
        _db.create_all()


# ── Convenience fixtures ─────────────────────────────────────────────────


def _make_org(slug):
    org = Organization(name=slug.title(), slug=slug)
    _db.session.add(org)
    _db.session.commit()
    return org


@pytest.fixture()
def org():
    return _make_org("acme")


@pytest.fixture()
def other_org():
    return _make_org("globex")


class Builder:
    """Creates committed ORM rows inside one organization."""

    def __init__(self, organization):
        self.org = organization
        self._seq = itertools.count(1)

    def _commit(self, obj):
        _db.session.add(obj)
        _db.session.commit()
        return obj

    def department(self, code="ENG", name=None):
        return self._commit(
            Department(organization_id=self.org.id, code=code, name=name or f"{code} dept")
        )

    def user(self, name=None, manager=None, department=None, status="active"):
        n = next(self._seq)
        name = name or f"user{n}"
        return self._commit(User(
            organization_id=self.org.id,
            email=f"{name}@{self.org.slug}.test",
            full_name=name.title(),
            status=status,
            manager_id=manager.id if manager else None,
            department_id=department.id if department else None,
        ))

    def application(self, code=None, owner=None, criticality="medium"):
        code = code or f"APP{next(self._seq)}"
        return self._commit(Application(
            organization_id=self.org.id,
            code=code,
            name=f"{code} application",
            owner_id=owner.id if owner else None,
            business_criticality=criticality,
        ))

    def role(self, application, code, risk_level="low"):
        return self._commit(Role(
            application_id=application.id, code=code, name=f"{code} role", risk_level=risk_level,
        ))

    def grant(self, user, application, role=None, is_active=True, last_used_at=None):
        return self._commit(AccessGrant(
            organization_id=self.org.id,
            user_id=user.id,
            application_id=application.id,
            role_id=role.id if role else None,
            is_active=is_active,
            last_used_at=last_used_at,
        ))

    def campaign(self, **overrides):
        fields = {
            "organization_id": self.org.id,
            "name": f"Q{next(self._seq)} access review",
            "campaign_type": "manager_review",
            "status": "draft",
            "scope_config": {},
            "start_date": date.today() - timedelta(days=1),
            "end_date": date.today() + timedelta(days=30),
        }
        fields.update(overrides)
        return self._commit(Campaign(**fields))

    def review_setup(self, n_items=3, campaign_overrides=None):
        """Launch a campaign with ``n_items`` pending items for one reviewer."""
        from accesscert.services.campaign_service import launch_campaign

        reviewer = self.user("reviewer")
        app_ = self.application("ERP")
        role = self.role(app_, "AP_CLERK")
        subjects = [self.user(manager=reviewer) for _ in range(n_items)]
        grants = [self.grant(s, app_, role) for s in subjects]
        campaign = self.campaign(**(campaign_overrides or {}))
        launch_campaign(self.org.id, campaign.id, actor_id=reviewer.id)
        items = (
            ReviewItem.query.filter_by(campaign_id=campaign.id)
            .order_by(ReviewItem.access_grant_id)
            .all()
        )
        return SimpleNamespace(
            org=self.org,
            campaign=campaign,
            reviewer=reviewer,
            application=app_,
            role=role,
            subjects=subjects,
            grants=grants,
            items=items,
        )


@pytest.fixture()
def build(org):
    return Builder(org)


@pytest.fixture()
def other_build(other_org):
    return Builder(other_org)
