"""
Organization-scoped query helpers.

Every get-by-id in the engine goes through ``get_scoped`` instead of
``db.session.get(Model, pk)``. A lookup without a scope would let one
organization read or mutate another organization's campaigns.

Usage:
    campaign = get_scoped(Campaign, campaign_id, organization_id=org_id)

Models without an ``organization_id`` column are rejected with a
ValueError at call time so the bug surfaces in tests instead of as an
unscoped lookup.
"""

import logging

from sqlalchemy import select

from accesscert.core.exceptions import NotFoundError
from accesscert.models import db

logger = logging.getLogger(__name__)


def get_scoped(model, pk: int, *, organization_id: int | None = None):
    """Fetch a single entity by PK within one organization.

    Cross-organization access is indistinguishable from a missing record:
    both raise NotFoundError.

    Args:
        model: OrgScopedModel subclass with an ``id`` PK column.
        pk: Primary key value to look up.
        organization_id: Owning organization; required.

    Raises:
        ValueError: No organization given, or the model has no organization_id column.
        NotFoundError: Missing entity, or entity outside the organization.
    """
    if organization_id is None:
        raise ValueError(
            f"{model.__name__} id={pk} requires an organization_id scope. "
            "Unscoped lookups are forbidden."
        )
    if not hasattr(model, "organization_id"):
        raise ValueError(
            f"{model.__name__} has no organization_id column. "
            "Refusing to perform an unscoped lookup."
        )

    stmt = select(model).where(model.id == pk, model.organization_id == organization_id)
    result = db.session.execute(stmt).scalar_one_or_none()

    if result is None:
        logger.debug(
            "get_scoped: %s id=%s not found in organization %s",
            model.__name__,
            pk,
            organization_id,
        )
        raise NotFoundError(
            resource=model.__name__,
            resource_id=pk,
            organization_id=organization_id,
        )

    return result
