from sqlalchemy.orm import Session

from billing_sync.config import settings
from billing_sync.models.billing import SubscriptionStatus
from billing_sync.services.billing.payments import payments
from billing_sync.services.billing.subscriptions import subscriptions

MINOR_UNITS = 100


def billing_summary(db: Session, tenant_id) -> dict:
    """Tenant billing overview; the only place amounts leave minor units."""
    record = subscriptions.get_or_create_for_tenant(db, tenant_id)
    totals = payments.totals(db, tenant_id=record.tenant_id)
    next_payment_date = None
    if record.status in (SubscriptionStatus.active, SubscriptionStatus.trialing):
        next_payment_date = record.current_period_end
    return {
        "plan": record.tenant.plan,
        "subscription": record,
        "next_payment_date": next_payment_date,
        "payment_stats": {
            "total_revenue": totals["total_amount"] / MINOR_UNITS,
            "total_refunded": totals["refunded_amount"] / MINOR_UNITS,
            "payment_count": totals["count"],
            "currency": settings.billing_currency,
        },
    }
