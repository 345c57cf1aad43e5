"""
Audit sink.

Write-only outlet for engine events. One event per mutating operation,
emitted after the operation's own writes succeeded.

Failure of the sink never changes the outcome of the operation that called
it: the row is written inside a SAVEPOINT, and any database error rolls back
only that savepoint and is logged.
"""

import logging

from sqlalchemy.exc import SQLAlchemyError

from accesscert.models import db
from accesscert.models.audit import write_audit

logger = logging.getLogger(__name__)


def emit_audit_event(
    *,
    organization_id: int | None,
    actor_id: int | None,
    action: str,
    entity_type: str,
    entity_id,
    before: dict | None = None,
    after: dict | None = None,
    commit: bool = True,
) -> bool:
    """Record one audit event.

    Args:
        commit: Commit the outer transaction after the savepoint. Pass False
            when the caller commits its own unit of work afterwards.

    Returns:
        True when the row was written, False when the sink failed.
    """
    try:
        with db.session.begin_nested():
            write_audit(
                organization_id=organization_id,
                actor_id=actor_id,
                action=action,
                entity_type=entity_type,
                entity_id=entity_id,
                before=before,
                after=after,
            )
    except SQLAlchemyError:
        logger.exception(
            "Audit sink failed for %s on %s/%s",
            action, entity_type, entity_id,
            extra={"organization_id": organization_id, "actor_id": actor_id, "event_type": action},
        )
        return False

    if commit:
        try:
            db.session.commit()
        except SQLAlchemyError:
            db.session.rollback()
            logger.exception(
                "Audit sink commit failed for %s on %s/%s",
                action, entity_type, entity_id,
                extra={"organization_id": organization_id, "event_type": action},
            )
            return False
    return True
