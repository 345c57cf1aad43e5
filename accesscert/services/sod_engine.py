"""
SOD rule engine.

Evaluates conflicting-role rules against a user's active role codes and
manages the violation lifecycle:

    detect   → open violation per (rule, user) whose roles intersect in 2+
    resolve  → revoked | exception_granted | mitigating_control (terminal)

Design decisions:
    - Detection is idempotent. An open violation for the same (rule, user)
      is confirmed, never duplicated.
    - A pair covered by an unexpired exception or by a mitigating control is
      not re-opened. A pair resolved by ``revoked`` is re-detected if the
      access comes back.
    - Detection never resolves anything. Deactivating a rule leaves its open
      violations open until someone resolves them.
"""

from __future__ import annotations

import logging
from datetime import date, datetime, timedelta, timezone

from flask import current_app
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError

from accesscert.core.exceptions import (
    ConflictError,
    StateConflictError,
    ValidationError,
)
from accesscert.models import db
from accesscert.models.sod import (
    RESOLUTION_ACTIONS,
    SOD_RULE_UPDATABLE_FIELDS,
    SOD_SEVERITIES,
    SODRule,
    SODViolation,
)
from accesscert.services import access_snapshot
from accesscert.services.audit_sink import emit_audit_event
from accesscert.services.helpers.scoped_queries import get_scoped
from accesscert.services.notification import NotificationService
from accesscert.utils.helpers import parse_date

logger = logging.getLogger(__name__)


# ── Pure evaluation ────────────────────────────────────────────────────────────


def evaluate_rules(role_codes, rules) -> list[tuple[SODRule, list[str]]]:
    """Return ``(rule, matched_codes)`` for every rule matched by ``role_codes``.

    A rule matches when the user holds at least two of its conflicting roles.
    Inactive rules never match. Output is ordered by rule id.
    """
    held = set(role_codes)
    matches = []
    for rule in sorted(rules, key=lambda r: r.id):
        if not rule.is_active:
            continue
        matched = sorted(held.intersection(rule.conflicting_roles or []))
        if len(matched) >= 2:
            matches.append((rule, matched))
    return matches


def _is_suppressed(violation: SODViolation, today: date) -> bool:
    """Whether a resolved violation still covers its (rule, user) pair."""
    if violation.resolution_action == "mitigating_control":
        return True
    if violation.resolution_action == "exception_granted":
        return violation.exception_expiry is not None and violation.exception_expiry >= today
    return False


# ── Detection ──────────────────────────────────────────────────────────────────


def detect_violations(
    organization_id: int,
    user_id: int,
    actor_id: int | None = None,
    now: datetime | None = None,
) -> list[SODViolation]:
    """Record or confirm open violations for one user.

    Returns the open violations for every currently matching rule, ordered by
    rule id. Suppressed pairs (unexpired exception, mitigating control) are
    not part of the result.

    Raises:
        NotFoundError: user absent or outside the organization.
    """
    access_snapshot.get_user(organization_id, user_id)
    now = now or datetime.now(timezone.utc)
    today = now.date()

    rules = list(
        db.session.execute(
            select(SODRule).where(
                SODRule.organization_id == organization_id,
                SODRule.is_active.is_(True),
            )
        ).scalars()
    )
    if not rules:
        return []

    # Rules limited to the same application set share one role lookup
    codes_by_scope: dict[tuple, set[str]] = {}
    matches = []
    for rule in rules:
        scope_key = tuple(sorted(rule.application_ids or []))
        if scope_key not in codes_by_scope:
            codes_by_scope[scope_key] = access_snapshot.active_role_codes(
                organization_id, user_id, application_ids=list(scope_key) or None,
            )
        matches.extend(evaluate_rules(codes_by_scope[scope_key], [rule]))
    matches.sort(key=lambda m: m[0].id)
    if not matches:
        return []

    existing = db.session.execute(
        select(SODViolation)
        .where(
            SODViolation.organization_id == organization_id,
            SODViolation.user_id == user_id,
            SODViolation.rule_id.in_([rule.id for rule, _ in matches]),
        )
        .order_by(SODViolation.id)
    ).scalars().all()

    open_by_rule: dict[int, SODViolation] = {}
    suppressed_rules: set[int] = set()
    for v in existing:
        if not v.is_resolved:
            open_by_rule.setdefault(v.rule_id, v)
        elif _is_suppressed(v, today):
            suppressed_rules.add(v.rule_id)

    result: list[SODViolation] = []
    created: list[SODViolation] = []
    for rule, matched in matches:
        if rule.id in open_by_rule:
            result.append(open_by_rule[rule.id])
            continue
        if rule.id in suppressed_rules:
            continue
        violation = SODViolation(
            organization_id=organization_id,
            rule_id=rule.id,
            user_id=user_id,
            violation_details={"matched_roles": matched},
            detected_at=now,
        )
        db.session.add(violation)
        created.append(violation)
        result.append(violation)

    if not created:
        return result

    db.session.commit()

    logger.info(
        "Detected %d new SOD violation(s) for user %s", len(created), user_id,
        extra={"organization_id": organization_id, "actor_id": actor_id, "event_type": "sod_detect"},
    )
    emit_audit_event(
        organization_id=organization_id,
        actor_id=actor_id,
        action="sod.detect",
        entity_type="sod_violation",
        entity_id=",".join(str(v.id) for v in created),
        after={"user_id": user_id, "violations": [v.to_dict() for v in created]},
    )
    _notify_manager(organization_id, user_id, created)
    return result


def _notify_manager(organization_id: int, user_id: int, violations: list[SODViolation]) -> None:
    user = access_snapshot.get_user(organization_id, user_id)
    if not user.manager_id:
        return
    for v in violations:
        NotificationService.create(
            organization_id=organization_id,
            recipient_id=user.manager_id,
            category="sod_violation",
            severity="warning" if v.rule.severity in ("low", "medium") else "error",
            title=f"SOD violation detected: {v.rule.name}",
            message=(
                f"{user.full_name or user.email} holds conflicting roles "
                f"{', '.join(v.violation_details.get('matched_roles', []))}."
            ),
            entity_type="sod_violation",
            entity_id=v.id,
        )


def open_violations_for_user(organization_id: int, user_id: int) -> list[SODViolation]:
    return list(
        db.session.execute(
            select(SODViolation)
            .where(
                SODViolation.organization_id == organization_id,
                SODViolation.user_id == user_id,
                SODViolation.is_resolved.is_(False),
            )
            .order_by(SODViolation.rule_id, SODViolation.id)
        ).scalars()
    )


def open_violations_by_user(organization_id: int, user_ids) -> dict[int, list[SODViolation]]:
    """Batch form of open_violations_for_user, keyed by user id."""
    ids = list(set(user_ids))
    if not ids:
        return {}
    grouped: dict[int, list[SODViolation]] = {}
    rows = db.session.execute(
        select(SODViolation)
        .where(
            SODViolation.organization_id == organization_id,
            SODViolation.user_id.in_(ids),
            SODViolation.is_resolved.is_(False),
        )
        .order_by(SODViolation.rule_id, SODViolation.id)
    ).scalars()
    for v in rows:
        grouped.setdefault(v.user_id, []).append(v)
    return grouped


# ── Resolution ─────────────────────────────────────────────────────────────────


def resolve_violation(
    organization_id: int,
    violation_id: int,
    resolver_id: int,
    action: str,
    notes: str | None = None,
    exception_expiry=None,
    now: datetime | None = None,
) -> dict:
    """Resolve one open violation.

    Raises:
        ValidationError: bad action, bad or missing expiry, missing notes
            when the rule requires exception approval.
        NotFoundError: violation absent or outside the organization.
        StateConflictError: violation already resolved.
    """
    now = now or datetime.now(timezone.utc)
    today = now.date()

    if action not in RESOLUTION_ACTIONS:
        raise ValidationError(
            f"Invalid action '{action}'. Must be one of: {', '.join(sorted(RESOLUTION_ACTIONS))}",
            details={"action": "invalid"},
        )

    try:
        expiry = parse_date(exception_expiry)
    except ValueError:
        raise ValidationError(
            "exception_expiry must be an ISO date", details={"exception_expiry": "invalid"},
        ) from None

    if action == "exception_granted":
        max_days = current_app.config["SOD_EXCEPTION_MAX_DAYS"]
        if expiry is None:
            raise ValidationError(
                "exception_expiry is required when granting an exception",
                details={"exception_expiry": "required"},
            )
        if expiry <= today:
            raise ValidationError(
                "exception_expiry must be a future date",
                details={"exception_expiry": "must be after today"},
            )
        if expiry > today + timedelta(days=max_days):
            raise ValidationError(
                f"exception_expiry may be at most {max_days} days out",
                details={"exception_expiry": f"max {max_days} days"},
            )
    elif expiry is not None:
        raise ValidationError(
            "exception_expiry is only valid with action 'exception_granted'",
            details={"exception_expiry": "not allowed"},
        )

    notes = (notes or "").strip() or None
    violation = get_scoped(SODViolation, violation_id, organization_id=organization_id)
    if violation.is_resolved:
        raise StateConflictError(
            "SODViolation", violation_id, current_state="resolved",
            message=f"SOD violation {violation_id} is already resolved",
        )
    if action == "exception_granted" and violation.rule.requires_exception_approval and not notes:
        raise ValidationError(
            "notes are required to grant an exception for this rule",
            details={"notes": "required"},
        )

    before = violation.to_dict()
    try:
        # Resolution is terminal: only an open row may be resolved
        result = db.session.execute(
            update(SODViolation)
            .where(SODViolation.id == violation.id, SODViolation.is_resolved.is_(False))
            .values(
                is_resolved=True,
                resolved_at=now,
                resolution_action=action,
                resolution_notes=notes,
                exception_expiry=expiry,
                resolved_by_id=resolver_id,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise StateConflictError(
                "SODViolation", violation_id, current_state="resolved",
                message=f"SOD violation {violation_id} was resolved concurrently",
            )
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise

    db.session.refresh(violation)

    logger.info(
        "SOD violation %s resolved (%s)", violation_id, action,
        extra={
            "organization_id": organization_id,
            "violation_id": violation_id,
            "actor_id": resolver_id,
            "event_type": "sod_resolve",
        },
    )
    after = violation.to_dict()
    emit_audit_event(
        organization_id=organization_id,
        actor_id=resolver_id,
        action="sod_violation.resolve",
        entity_type="sod_violation",
        entity_id=violation_id,
        before=before,
        after=after,
    )
    return after


# ── Rule administration ────────────────────────────────────────────────────────


def _clean_rule_fields(data: dict, *, partial: bool) -> dict:
    """Validate rule payload against SOD_RULE_UPDATABLE_FIELDS."""
    unknown = set(data) - SOD_RULE_UPDATABLE_FIELDS
    if unknown:
        raise ValidationError(
            f"Unknown SOD rule field(s): {', '.join(sorted(unknown))}",
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

    if "severity" in data or not partial:
        severity = data.get("severity", "medium")
        if severity not in SOD_SEVERITIES:
            errors["severity"] = f"must be one of {', '.join(sorted(SOD_SEVERITIES))}"
        cleaned["severity"] = severity

    if "conflicting_roles" in data or not partial:
        roles = data.get("conflicting_roles")
        if not isinstance(roles, list) or not all(isinstance(r, str) and r.strip() for r in roles):
            errors["conflicting_roles"] = "must be a list of role codes"
        else:
            codes = sorted({r.strip() for r in roles})
            if len(codes) < 2:
                errors["conflicting_roles"] = "at least two distinct role codes are required"
            cleaned["conflicting_roles"] = codes

    if "application_ids" in data:
        app_ids = data.get("application_ids") or []
        if not isinstance(app_ids, list) or not all(
            isinstance(a, int) and not isinstance(a, bool) for a in app_ids
        ):
            errors["application_ids"] = "must be a list of integers"
        else:
            cleaned["application_ids"] = sorted(set(app_ids))

    for flag in ("auto_remediate", "requires_exception_approval", "is_active"):
        if flag in data:
            if not isinstance(data[flag], bool):
                errors[flag] = "must be a boolean"
            cleaned[flag] = data[flag]

    for text_field in ("description", "process_area"):
        if text_field in data:
            value = data[text_field]
            if value is not None and not isinstance(value, str):
                errors[text_field] = "must be a string"
            cleaned[text_field] = value

    if errors:
        raise ValidationError("Invalid SOD rule", details=errors)
    return cleaned


def _check_name_free(organization_id: int, name: str, exclude_id: int | None = None) -> None:
    q = SODRule.query_for_org(organization_id).filter(SODRule.name == name)
    if exclude_id is not None:
        q = q.filter(SODRule.id != exclude_id)
    if q.first() is not None:
        raise ConflictError("SODRule", "name", name)


def create_rule(organization_id: int, actor_id: int | None, data: dict) -> dict:
    fields = _clean_rule_fields(data, partial=False)
    _check_name_free(organization_id, fields["name"])

    rule = SODRule(organization_id=organization_id, **fields)
    db.session.add(rule)
    try:
        db.session.commit()
    except IntegrityError:
        db.session.rollback()
        raise ConflictError("SODRule", "name", fields["name"]) from None

    logger.info(
        "SOD rule created: %s", rule.name,
        extra={"organization_id": organization_id, "rule_id": rule.id, "actor_id": actor_id},
    )
    result = rule.to_dict()
    emit_audit_event(
        organization_id=organization_id,
        actor_id=actor_id,
        action="sod_rule.create",
        entity_type="sod_rule",
        entity_id=rule.id,
        after=result,
    )
    return result


def update_rule(organization_id: int, rule_id: int, actor_id: int | None, data: dict) -> dict:
    fields = _clean_rule_fields(data, partial=True)
    rule = get_scoped(SODRule, rule_id, organization_id=organization_id)
    if "name" in fields:
        _check_name_free(organization_id, fields["name"], exclude_id=rule.id)

    before = rule.to_dict()
    for key, value in fields.items():
        setattr(rule, key, value)
    try:
        db.session.commit()
    except IntegrityError:
        db.session.rollback()
        raise ConflictError("SODRule", "name", fields.get("name")) from None

    result = rule.to_dict()
    emit_audit_event(
        organization_id=organization_id,
        actor_id=actor_id,
        action="sod_rule.update",
        entity_type="sod_rule",
        entity_id=rule.id,
        before=before,
        after=result,
    )
    return result


def deactivate_rule(organization_id: int, rule_id: int, actor_id: int | None) -> dict:
    """Turn a rule off. Its open violations stay open."""
    rule = get_scoped(SODRule, rule_id, organization_id=organization_id)
    if not rule.is_active:
        return rule.to_dict()

    before = rule.to_dict()
    rule.is_active = False
    db.session.commit()

    result = rule.to_dict()
    emit_audit_event(
        organization_id=organization_id,
        actor_id=actor_id,
        action="sod_rule.deactivate",
        entity_type="sod_rule",
        entity_id=rule.id,
        before=before,
        after=result,
    )
    return result


def get_rule(organization_id: int, rule_id: int) -> dict:
    return get_scoped(SODRule, rule_id, organization_id=organization_id).to_dict()


def list_rules(organization_id: int, severity: str | None = None, is_active: bool | None = None) -> list[dict]:
    q = SODRule.query_for_org(organization_id)
    if severity:
        q = q.filter(SODRule.severity == severity)
    if is_active is not None:
        q = q.filter(SODRule.is_active.is_(is_active))
    return [r.to_dict() for r in q.order_by(SODRule.name).all()]


def list_violations(
    organization_id: int,
    is_resolved: bool | None = None,
    user_id: int | None = None,
    severity: str | None = None,
) -> list[dict]:
    stmt = (
        select(SODViolation)
        .join(SODRule, SODViolation.rule_id == SODRule.id)
        .where(SODViolation.organization_id == organization_id)
    )
    if is_resolved is not None:
        stmt = stmt.where(SODViolation.is_resolved.is_(is_resolved))
    if user_id is not None:
        stmt = stmt.where(SODViolation.user_id == user_id)
    if severity:
        stmt = stmt.where(SODRule.severity == severity)
    stmt = stmt.order_by(SODViolation.detected_at.desc(), SODViolation.id.desc())
    return [v.to_dict() for v in db.session.execute(stmt).scalars()]
