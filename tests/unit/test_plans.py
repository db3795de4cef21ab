"""
Unit tests for the plan catalog.
"""

from unittest.mock import patch

from billing_sync.config.plans import FREE_LIMITS, PlanCatalog, build_plan_catalog
from billing_sync.config.settings import get_settings


class TestPlanCatalog:

    def test_lookup_by_monthly_and_annual_price(self, plan_catalog):
        assert plan_catalog.plan_for_price("price_1R9TlvDhXX7mjDi1B0P8TotW").id == "pro"
        assert plan_catalog.plan_for_price("price_1R9TyIDhXX7mjDi1LZXwlLcm").id == "elite"

    def test_unknown_price(self, plan_catalog):
        assert plan_catalog.plan_for_price("price_nope") is None
        assert plan_catalog.plan_for_price(None) is None

    def test_limits(self, plan_catalog):
        assert plan_catalog.limits_for("scale").max_funnels == 30
        assert plan_catalog.limits_for("basic").max_leads == 5000

    def test_unknown_plan_gets_free_limits(self, plan_catalog):
        assert plan_catalog.limits_for("enterprise") == FREE_LIMITS
        assert plan_catalog.limits_for(None) == FREE_LIMITS

    def test_every_plan_listed(self):
        assert [plan.id for plan in PlanCatalog().plans] == ["basic", "pro", "elite", "scale"]


class TestBuildPlanCatalog:

    def test_price_override_from_settings(self):
        settings = get_settings()
        with patch.object(settings, "stripe_price_id_pro_monthly", "price_test_pro"):
            catalog = build_plan_catalog()

        assert catalog.plan_for_price("price_test_pro").id == "pro"
        assert catalog.plan_for_price("price_1R9TlvDhXX7mjDi1B0P8TotW") is None
        assert catalog.get_plan("pro").annual_price_id == "price_1R9TxxDhXX7mjDi1Srfwxp9C"
