from __future__ import annotations
from dataclasses import dataclass
from typing import Dict, Mapping, Optional

from errors import PlanInvalid


@dataclass(frozen=True)
class Plan:
    code: str
    name: str
    price_config_key: str   # app.config key holding the Stripe price id
    unit_amount_cents: int
    interval: str

    def price_id(self, config: Mapping[str, object]) -> Optional[str]:
        value = config.get(self.price_config_key)
        return str(value).strip() if value else None


PLANS: Dict[str, Plan] = {
    "premium-monthly": Plan("premium-monthly", "Premium (monthly)", "STRIPE_PRICE_PREMIUM_MONTHLY", 1000, "month"),
    "premium-yearly":  Plan("premium-yearly",  "Premium (yearly)",  "STRIPE_PRICE_PREMIUM_YEARLY", 10000, "year"),
}

DEFAULT_PLAN = "premium-monthly"


def resolve_plan(code: Optional[str], config: Mapping[str, object]) -> tuple[Plan, str]:
    """Return (plan, stripe_price_id) or raise PlanInvalid."""
    plan = PLANS.get(code.strip().lower()) if isinstance(code, str) else None
    if plan is None:
        raise PlanInvalid("Unknown plan", details={"plan": code, "allowed": sorted(PLANS)})
    price_id = plan.price_id(config)
    if not price_id:
        raise PlanInvalid("Plan is not available", details={"plan": plan.code})
    return plan, price_id
