"""
Plan Catalog

Static catalog of purchasable plans, their provider price identifiers and
per-plan entitlement limits. Price ids can be overridden from settings so
test-mode and live-mode accounts share the same code.
"""

from dataclasses import dataclass, field
from typing import Optional

from billing_sync.config.settings import get_settings


@dataclass(frozen=True)
class PlanLimits:
    """Entitlement limits attached to a plan."""
    max_funnels: int
    max_leads: int


@dataclass(frozen=True)
class Plan:
    """A purchasable plan."""
    id: str
    name: str
    monthly_price_id: str
    annual_price_id: str
    limits: PlanLimits
    features: list[str] = field(default_factory=list)
    popular: bool = False

    @property
    def price_ids(self) -> tuple[str, str]:
        return (self.monthly_price_id, self.annual_price_id)


FREE_LIMITS = PlanLimits(max_funnels=1, max_leads=1000)

DEFAULT_PLANS: tuple[Plan, ...] = (
    Plan(
        id="basic",
        name="leadflux BASIC",
        monthly_price_id="price_1R9TiMDhXX7mjDi1oB9L85fO",
        annual_price_id="price_1R9TxVDhXX7mjDi1Bqqo2c7N",
        limits=PlanLimits(max_funnels=3, max_leads=5000),
        features=["Up to 3 funnels", "Up to 5k leads", "Custom domain"],
    ),
    Plan(
        id="pro",
        name="leadflux PRO",
        monthly_price_id="price_1R9TlvDhXX7mjDi1B0P8TotW",
        annual_price_id="price_1R9TxxDhXX7mjDi1Srfwxp9C",
        limits=PlanLimits(max_funnels=6, max_leads=10000),
        features=["Up to 6 funnels", "Up to 10k leads", "Webhook", "Custom domain"],
        popular=True,
    ),
    Plan(
        id="elite",
        name="leadflux ELITE",
        monthly_price_id="price_1R9ToiDhXX7mjDi1uPJA0ae8",
        annual_price_id="price_1R9TyIDhXX7mjDi1LZXwlLcm",
        limits=PlanLimits(max_funnels=12, max_leads=25000),
        features=["Up to 12 funnels", "Up to 25k leads", "Shared editing"],
    ),
    Plan(
        id="scale",
        name="leadflux SCALE",
        monthly_price_id="price_1R9TsCDhXX7mjDi1ceAdxFyj",
        annual_price_id="price_1R9TypDhXX7mjDi1Mylgmedw",
        limits=PlanLimits(max_funnels=30, max_leads=100000),
        features=["Up to 30 funnels", "Up to 100k leads", "Video call support"],
    ),
)


class PlanCatalog:
    """Lookup by plan id or by provider price id."""

    def __init__(self, plans: tuple[Plan, ...] = DEFAULT_PLANS):
        self._plans = {plan.id: plan for plan in plans}
        self._by_price: dict[str, Plan] = {}
        for plan in plans:
            for price_id in plan.price_ids:
                self._by_price[price_id] = plan

    def get_plan(self, plan_id: Optional[str]) -> Optional[Plan]:
        if not plan_id:
            return None
        return self._plans.get(plan_id)

    def plan_for_price(self, price_id: Optional[str]) -> Optional[Plan]:
        if not price_id:
            return None
        return self._by_price.get(price_id)

    def limits_for(self, plan_id: Optional[str]) -> PlanLimits:
        plan = self.get_plan(plan_id)
        return plan.limits if plan else FREE_LIMITS

    @property
    def plans(self) -> list[Plan]:
        return list(self._plans.values())


def _with_overrides(plan: Plan, monthly: Optional[str], annual: Optional[str]) -> Plan:
    if not monthly and not annual:
        return plan
    return Plan(
        id=plan.id,
        name=plan.name,
        monthly_price_id=monthly or plan.monthly_price_id,
        annual_price_id=annual or plan.annual_price_id,
        limits=plan.limits,
        features=plan.features,
        popular=plan.popular,
    )


def build_plan_catalog() -> PlanCatalog:
    """Build the catalog, applying any price id overrides from settings."""
    settings = get_settings()
    plans = tuple(
        _with_overrides(
            plan,
            getattr(settings, f"stripe_price_id_{plan.id}_monthly", None),
            getattr(settings, f"stripe_price_id_{plan.id}_annual", None),
        )
        for plan in DEFAULT_PLANS
    )
    return PlanCatalog(plans)
