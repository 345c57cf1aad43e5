"""
Access snapshot reader.

Read-only view over users, applications, roles and access grants, plus the
single write the engine ever makes to a grant: deactivation after a revoke
decision.
"""

import logging
from datetime import datetime, timezone

from sqlalchemy import select, update

from accesscert.models import db
from accesscert.models.access import AccessGrant, Application, Role
from accesscert.models.organization import User
from accesscert.services.helpers.scoped_queries import get_scoped

logger = logging.getLogger(__name__)


def get_user(organization_id: int, user_id: int) -> User:
    """Raises NotFoundError when the user is absent or in another organization."""
    return get_scoped(User, user_id, organization_id=organization_id)


def active_grants_for_user(organization_id: int, user_id: int, application_ids=None) -> list[AccessGrant]:
    stmt = (
        select(AccessGrant)
        .where(
            AccessGrant.organization_id == organization_id,
            AccessGrant.user_id == user_id,
            AccessGrant.is_active.is_(True),
        )
        .order_by(AccessGrant.id)
    )
    if application_ids:
        stmt = stmt.where(AccessGrant.application_id.in_(application_ids))
    return list(db.session.execute(stmt).scalars())


def active_role_codes(organization_id: int, user_id: int, application_ids=None) -> set[str]:
    """Role codes held through the user's active grants."""
    stmt = (
        select(Role.code)
        .join(AccessGrant, AccessGrant.role_id == Role.id)
        .where(
            AccessGrant.organization_id == organization_id,
            AccessGrant.user_id == user_id,
            AccessGrant.is_active.is_(True),
        )
    )
    if application_ids:
        stmt = stmt.where(AccessGrant.application_id.in_(application_ids))
    return set(db.session.execute(stmt).scalars())


def snapshot_grant(grant: AccessGrant, captured_at: datetime | None = None) -> dict:
    """Immutable description of a grant as it looked at capture time."""
    app: Application | None = grant.application
    role: Role | None = grant.role
    captured_at = captured_at or datetime.now(timezone.utc)
    return {
        "access_grant_id": grant.id,
        "application_id": grant.application_id,
        "application_code": app.code if app else None,
        "application_name": app.name if app else None,
        "business_criticality": app.business_criticality if app else None,
        "role_id": grant.role_id,
        "role_code": role.code if role else None,
        "role_name": role.name if role else None,
        "risk_level": role.risk_level if role else None,
        "granted_at": grant.granted_at.isoformat() if grant.granted_at else None,
        "last_used_at": grant.last_used_at.isoformat() if grant.last_used_at else None,
        "captured_at": captured_at.isoformat(),
    }


def deactivate_grant(grant_id: int, actor_id: int | None, now: datetime | None = None) -> bool:
    """Flip a grant from active to inactive.

    Conditional on ``is_active`` so that only one caller ever performs the
    deactivation. Flushes only; the caller owns the transaction.

    Returns:
        True if this call deactivated the grant, False if it was already inactive.
    """
    now = now or datetime.now(timezone.utc)
    result = db.session.execute(
        update(AccessGrant)
        .where(AccessGrant.id == grant_id, AccessGrant.is_active.is_(True))
        .values(is_active=False, revoked_at=now, revoked_by_id=actor_id)
        .execution_options(synchronize_session=False)
    )
    deactivated = result.rowcount == 1
    if deactivated:
        logger.info(
            "Access grant %s deactivated", grant_id,
            extra={"actor_id": actor_id, "event_type": "grant_deactivated"},
        )
    return deactivated
