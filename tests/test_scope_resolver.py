"""
Tests: Scope resolver.

Covers scope configuration validation, active-only eligibility, AND-ed
filters, and the "unmatched reference yields nothing, never an error" rule.
"""

from datetime import datetime, timedelta, timezone

import pytest

from accesscert.core.exceptions import ValidationError
from accesscert.services.scope_resolver import normalize_scope_config, resolve_scope


class TestNormalizeScopeConfig:
    def test_none_and_empty_normalize_to_empty(self):
        assert normalize_scope_config(None) == {}
        assert normalize_scope_config({}) == {}

    def test_lists_are_deduplicated_and_sorted(self):
        cleaned = normalize_scope_config({"departments": ["OPS", "ENG", "ENG"], "application_ids": [3, 1, 3]})
        assert cleaned == {"departments": ["ENG", "OPS"], "application_ids": [1, 3]}

    def test_unknown_key_rejected(self):
        with pytest.raises(ValidationError) as exc:
            normalize_scope_config({"departmentz": ["ENG"]})
        assert "departmentz" in exc.value.details

    def test_wrong_types_rejected(self):
        with pytest.raises(ValidationError) as exc:
            normalize_scope_config({"departments": "ENG", "application_ids": ["1"], "inactive_days": 0})
        assert set(exc.value.details) == {"departments", "application_ids", "inactive_days"}

    def test_unknown_criticality_rejected(self):
        with pytest.raises(ValidationError):
            normalize_scope_config({"business_criticality": ["extreme"]})

    def test_non_dict_rejected(self):
        with pytest.raises(ValidationError):
            normalize_scope_config(["ENG"])


class TestResolveScope:
    def test_department_scope_includes_manager_less_candidate(self, build, org):
        eng = build.department("ENG")
        ops = build.department("OPS")
        manager = build.user("boss")
        app_ = build.application("ERP")
        role = build.role(app_, "VIEWER")
        u1 = build.user(manager=manager, department=eng)
        u2 = build.user(manager=manager, department=eng)
        orphan = build.user(department=eng)
        outsider = build.user(manager=manager, department=ops)
        for u in (u1, u2, orphan, outsider):
            build.grant(u, app_, role)

        result = resolve_scope(org.id, {"departments": ["ENG"]})

        assert [c.user_id for c in result.candidates] == [u1.id, u2.id, orphan.id]
        assert [c.manager_id for c in result.candidates] == [manager.id, manager.id, None]
        assert result.unresolved == {}

    def test_only_active_users_and_grants(self, build, org):
        app_ = build.application()
        active = build.user()
        terminated = build.user(status="terminated")
        g_ok = build.grant(active, app_)
        build.grant(active, app_, is_active=False)
        build.grant(terminated, app_)

        result = resolve_scope(org.id, {})

        assert [c.grant_id for c in result.candidates] == [g_ok.id]

    def test_empty_scope_is_whole_organization_only(self, build, org, other_build):
        app_ = build.application()
        g = build.grant(build.user(), app_)
        foreign = other_build
        foreign.grant(foreign.user(), foreign.application())

        result = resolve_scope(org.id, None)

        assert [c.grant_id for c in result.candidates] == [g.id]

    def test_unknown_department_yields_no_candidates(self, build, org):
        build.grant(build.user(department=build.department("ENG")), build.application())

        result = resolve_scope(org.id, {"departments": ["NOPE"]})

        assert result.candidates == []
        assert result.unresolved == {"departments": ["NOPE"]}

    def test_partially_unknown_departments_keep_matches(self, build, org):
        g = build.grant(build.user(department=build.department("ENG")), build.application())

        result = resolve_scope(org.id, {"departments": ["ENG", "NOPE"]})

        assert [c.grant_id for c in result.candidates] == [g.id]
        assert result.unresolved == {"departments": ["NOPE"]}

    def test_foreign_application_id_is_unresolved(self, build, org, other_build):
        app_ = build.application()
        g = build.grant(build.user(), app_)
        foreign_app = other_build.application()

        result = resolve_scope(org.id, {"application_ids": [app_.id, foreign_app.id]})

        assert [c.grant_id for c in result.candidates] == [g.id]
        assert result.unresolved == {"application_ids": [foreign_app.id]}

    def test_filters_are_conjunctive(self, build, org):
        eng = build.department("ENG")
        critical = build.application("PAY", criticality="critical")
        low = build.application("WIKI", criticality="low")
        u_eng = build.user(department=eng)
        u_other = build.user()
        g = build.grant(u_eng, critical)
        build.grant(u_eng, low)
        build.grant(u_other, critical)

        result = resolve_scope(org.id, {"departments": ["ENG"], "business_criticality": ["critical"]})

        assert [c.grant_id for c in result.candidates] == [g.id]

    def test_role_risk_levels_filter(self, build, org):
        app_ = build.application()
        high = build.role(app_, "ADMIN", risk_level="high")
        low = build.role(app_, "READ", risk_level="low")
        user = build.user()
        g_high = build.grant(user, app_, high)
        build.grant(user, app_, low)
        build.grant(user, app_)

        result = resolve_scope(org.id, {"role_risk_levels": ["high", "critical"]})

        assert [c.grant_id for c in result.candidates] == [g_high.id]

    def test_inactive_days_filter(self, build, org):
        app_ = build.application()
        user = build.user()
        now = datetime.now(timezone.utc)
        stale = build.grant(user, app_, last_used_at=now - timedelta(days=120))
        never = build.grant(user, app_)
        build.grant(user, app_, last_used_at=now - timedelta(days=2))

        result = resolve_scope(org.id, {"inactive_days": 90}, now=now)

        assert [c.grant_id for c in result.candidates] == [stale.id, never.id]

    def test_candidate_carries_application_owner(self, build, org):
        owner = build.user("owner")
        app_ = build.application(owner=owner)
        build.grant(build.user(), app_)

        (candidate,) = resolve_scope(org.id, {}).candidates

        assert candidate.application_owner_id == owner.id
