"""
Tests: Application factory, configuration, CLI commands and shared helpers.
"""

import json
import logging

import pytest

from accesscert.config import ProductionConfig, config
from accesscert.core.exceptions import NotFoundError
from accesscert.core.logging_config import JSONFormatter
from accesscert.models.campaign import Campaign, CampaignReviewer
from accesscert.services.helpers.scoped_queries import get_scoped


class TestConfig:
    def test_testing_config_is_in_memory(self, app):
        assert app.config["TESTING"] is True
        assert app.config["SQLALCHEMY_DATABASE_URI"].startswith("sqlite")
        assert app.config["BULK_APPROVE_MAX_ITEMS"] == 50
        assert app.config["SOD_EXCEPTION_MAX_DAYS"] == 90

    def test_production_requires_secret_key(self, monkeypatch):
        monkeypatch.delenv("SECRET_KEY", raising=False)

        with pytest.raises(RuntimeError):
            ProductionConfig()

    def test_config_mapping(self):
        assert set(config) >= {"development", "testing", "production", "default"}


class TestCli:
    def test_recalculate_stats(self, app, build):
        setup = build.review_setup(n_items=2)

        result = app.test_cli_runner().invoke(args=["recalculate-stats", str(setup.campaign.id)])

        assert result.exit_code == 0, result.output
        payload = json.loads(result.output)
        assert payload["campaign_id"] == setup.campaign.id
        assert payload["total_reviews"] == 2

    def test_unknown_job_exits_nonzero(self, app):
        result = app.test_cli_runner().invoke(args=["run-job", "does_not_exist"])

        assert result.exit_code == 1
        assert json.loads(result.output)["status"] == "error"


class TestScopedQueries:
    def test_unscoped_lookup_refused(self):
        with pytest.raises(ValueError):
            get_scoped(Campaign, 1)

    def test_model_without_organization_column_refused(self, org):
        with pytest.raises(ValueError):
            get_scoped(CampaignReviewer, 1, organization_id=org.id)

    def test_cross_organization_lookup_not_found(self, build, other_org):
        campaign = build.campaign()

        assert get_scoped(Campaign, campaign.id, organization_id=campaign.organization_id) is campaign
        with pytest.raises(NotFoundError):
            get_scoped(Campaign, campaign.id, organization_id=other_org.id)


class TestJSONFormatter:
    def test_domain_fields_are_copied(self):
        record = logging.LogRecord("accesscert.test", logging.INFO, __file__, 1, "decided %s", (3,), None)
        record.campaign_id = 12
        record.decision = "approved"

        entry = json.loads(JSONFormatter().format(record))

        assert entry["message"] == "decided 3"
        assert entry["campaign_id"] == 12
        assert entry["decision"] == "approved"
        assert "reviewer_id" not in entry
