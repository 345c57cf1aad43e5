"""
Scope resolver.

Turns a campaign's scope configuration into the set of (user, access grant)
candidates a launch will generate review items for.

Scope configuration keys (all optional, ANDed together):
    departments           list of department codes
    application_ids       list of application ids
    business_criticality  list of application criticality values
    role_risk_levels      list of role risk levels
    user_ids              list of subject user ids
    inactive_days         only grants not used in the last N days

Only users with ``status = 'active'`` and grants with ``is_active`` are ever
candidates. An empty configuration selects every active grant in the
organization. References that match nothing (unknown department codes,
foreign application ids) narrow the result to nothing for that filter and
are reported in ``ScopeResolution.unresolved``; they never raise.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone

from sqlalchemy import or_, select

from accesscert.core.exceptions import ValidationError
from accesscert.models import db
from accesscert.models.access import BUSINESS_CRITICALITIES, RISK_LEVELS, AccessGrant, Application, Role
from accesscert.models.organization import Department, User

logger = logging.getLogger(__name__)

_LIST_OF_STR_KEYS = ("departments", "business_criticality", "role_risk_levels")
_LIST_OF_INT_KEYS = ("application_ids", "user_ids")
SCOPE_KEYS = frozenset(_LIST_OF_STR_KEYS + _LIST_OF_INT_KEYS + ("inactive_days",))


@dataclass(frozen=True)
class ScopeCandidate:
    user_id: int
    grant_id: int
    application_id: int
    role_id: int | None
    manager_id: int | None
    application_owner_id: int | None


@dataclass
class ScopeResolution:
    candidates: list[ScopeCandidate] = field(default_factory=list)
    unresolved: dict[str, list] = field(default_factory=dict)


def _is_int(value) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def normalize_scope_config(raw) -> dict:
    """Statically validate a scope configuration.

    Returns a cleaned copy (deduplicated, sorted lists). ``None`` and ``{}``
    both normalize to ``{}``.

    Raises:
        ValidationError: unknown keys, wrong value types or unknown enum values.
    """
    if raw is None:
        return {}
    if not isinstance(raw, dict):
        raise ValidationError("scope_config must be an object", details={"scope_config": "invalid"})

    errors = {}
    unknown = sorted(set(raw) - SCOPE_KEYS)
    for key in unknown:
        errors[key] = "unknown scope key"

    cleaned = {}
    for key in _LIST_OF_STR_KEYS:
        if key not in raw or raw[key] is None:
            continue
        values = raw[key]
        if not isinstance(values, list) or not all(isinstance(v, str) and v.strip() for v in values):
            errors[key] = "must be a list of non-empty strings"
            continue
        cleaned[key] = sorted({v.strip() for v in values})

    for key in _LIST_OF_INT_KEYS:
        if key not in raw or raw[key] is None:
            continue
        values = raw[key]
        if not isinstance(values, list) or not all(_is_int(v) for v in values):
            errors[key] = "must be a list of integers"
            continue
        cleaned[key] = sorted(set(values))

    bad_crit = set(cleaned.get("business_criticality", [])) - BUSINESS_CRITICALITIES
    if bad_crit:
        errors["business_criticality"] = f"unknown value(s): {', '.join(sorted(bad_crit))}"
    bad_risk = set(cleaned.get("role_risk_levels", [])) - RISK_LEVELS
    if bad_risk:
        errors["role_risk_levels"] = f"unknown value(s): {', '.join(sorted(bad_risk))}"

    if raw.get("inactive_days") is not None:
        days = raw["inactive_days"]
        if not _is_int(days) or days < 1:
            errors["inactive_days"] = "must be a positive integer"
        else:
            cleaned["inactive_days"] = days

    if errors:
        raise ValidationError("Invalid scope configuration", details=errors)
    return cleaned


def resolve_scope(organization_id: int, scope_config: dict | None, now: datetime | None = None) -> ScopeResolution:
    """Resolve a (normalized) scope configuration into review candidates.

    Candidates are deduplicated by grant and ordered by grant id.
    """
    config = scope_config or {}
    resolution = ScopeResolution()

    stmt = (
        select(
            AccessGrant.id,
            AccessGrant.user_id,
            AccessGrant.application_id,
            AccessGrant.role_id,
            User.manager_id,
            Application.owner_id,
        )
        .join(User, AccessGrant.user_id == User.id)
        .join(Application, AccessGrant.application_id == Application.id)
        .where(
            AccessGrant.organization_id == organization_id,
            AccessGrant.is_active.is_(True),
            User.organization_id == organization_id,
            User.status == "active",
            Application.organization_id == organization_id,
        )
    )

    if config.get("departments"):
        codes = config["departments"]
        dept_rows = db.session.execute(
            select(Department.id, Department.code).where(
                Department.organization_id == organization_id,
                Department.code.in_(codes),
            )
        ).all()
        found = {code for _, code in dept_rows}
        missing = sorted(set(codes) - found)
        if missing:
            resolution.unresolved["departments"] = missing
        stmt = stmt.where(User.department_id.in_([dept_id for dept_id, _ in dept_rows]))

    if config.get("application_ids"):
        app_ids = config["application_ids"]
        found = set(
            db.session.execute(
                select(Application.id).where(
                    Application.organization_id == organization_id,
                    Application.id.in_(app_ids),
                )
            ).scalars()
        )
        missing = sorted(set(app_ids) - found)
        if missing:
            resolution.unresolved["application_ids"] = missing
        stmt = stmt.where(AccessGrant.application_id.in_(sorted(found)))

    if config.get("user_ids"):
        stmt = stmt.where(AccessGrant.user_id.in_(config["user_ids"]))

    if config.get("business_criticality"):
        stmt = stmt.where(Application.business_criticality.in_(config["business_criticality"]))

    if config.get("role_risk_levels"):
        stmt = stmt.join(Role, AccessGrant.role_id == Role.id).where(
            Role.risk_level.in_(config["role_risk_levels"])
        )

    if config.get("inactive_days"):
        cutoff = (now or datetime.now(timezone.utc)) - timedelta(days=config["inactive_days"])
        stmt = stmt.where(or_(AccessGrant.last_used_at.is_(None), AccessGrant.last_used_at < cutoff))

    stmt = stmt.order_by(AccessGrant.id)

    seen: set[int] = set()
    for grant_id, user_id, app_id, role_id, manager_id, owner_id in db.session.execute(stmt):
        if grant_id in seen:
            continue
        seen.add(grant_id)
        resolution.candidates.append(
            ScopeCandidate(
                user_id=user_id,
                grant_id=grant_id,
                application_id=app_id,
                role_id=role_id,
                manager_id=manager_id,
                application_owner_id=owner_id,
            )
        )

    if resolution.unresolved:
        logger.warning(
            "Scope references matched nothing: %s", resolution.unresolved,
            extra={"organization_id": organization_id, "event_type": "scope_unresolved"},
        )
    logger.debug(
        "Scope resolved to %d candidate(s)", len(resolution.candidates),
        extra={"organization_id": organization_id},
    )
    return resolution
