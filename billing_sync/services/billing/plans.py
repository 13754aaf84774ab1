"""Plan <-> Stripe price mapping."""

from billing_sync.config import settings
from billing_sync.models.billing import BillingPlan

PAID_PLANS = (BillingPlan.standard, BillingPlan.premium, BillingPlan.enterprise)


def price_ids() -> dict[BillingPlan, str]:
    configured = {
        BillingPlan.standard: settings.stripe_price_standard,
        BillingPlan.premium: settings.stripe_price_premium,
        BillingPlan.enterprise: settings.stripe_price_enterprise,
    }
    return {plan: price for plan, price in configured.items() if price}


def price_for_plan(plan: BillingPlan) -> str | None:
    return price_ids().get(plan)


def plan_for_price(price_id: str | None) -> BillingPlan | None:
    if not price_id:
        return None
    for plan, configured in price_ids().items():
        if configured == price_id:
            return plan
    return None


def coerce_plan(value: str | None) -> BillingPlan | None:
    """Parse a plan name from Stripe metadata, ignoring unknown values."""
    if not value:
        return None
    try:
        return BillingPlan(value)
    except ValueError:
        return None
