from datetime import datetime
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from billing_sync.models.billing import (
    BillingPlan,
    PaymentStatus,
    PaymentType,
    SubscriptionStatus,
)

# ── Checkout ─────────────────────────────────────────────


class CheckoutSessionCreate(BaseModel):
    plan: BillingPlan
    success_url: str | None = Field(default=None, max_length=2048)
    cancel_url: str | None = Field(default=None, max_length=2048)


class CheckoutSessionRead(BaseModel):
    session_id: str
    url: str | None = None


# ── Subscriptions ────────────────────────────────────────


class SubscriptionUpdate(BaseModel):
    plan: BillingPlan
    cancel_at_period_end: bool = False


class SubscriptionRead(BaseModel):
    model_config = ConfigDict(
        from_attributes=True, populate_by_name=True, use_enum_values=True
    )

    id: UUID
    tenant_id: UUID
    external_customer_id: str
    external_subscription_id: str | None = None
    external_price_id: str | None = None
    plan: BillingPlan
    status: SubscriptionStatus
    current_period_start: datetime | None = None
    current_period_end: datetime | None = None
    cancel_at_period_end: bool = False
    canceled_at: datetime | None = None
    trial_start: datetime | None = None
    trial_end: datetime | None = None
    last_synced_at: datetime | None = None
    created_at: datetime
    updated_at: datetime


# ── Payments ─────────────────────────────────────────────


class PaymentRead(BaseModel):
    model_config = ConfigDict(
        from_attributes=True, populate_by_name=True, use_enum_values=True
    )

    id: UUID
    tenant_id: UUID
    subscription_id: UUID | None = None
    external_payment_intent_id: str
    external_invoice_id: str | None = None
    amount: int
    currency: str
    status: PaymentStatus
    type: PaymentType
    refunded_amount: int = 0
    description: str | None = None
    receipt_url: str | None = None
    failure_reason: str | None = None
    platform_created_at: datetime | None = None
    created_at: datetime


# ── Summary ──────────────────────────────────────────────


class PaymentStats(BaseModel):
    """Collected revenue in major currency units (e.g. euros, not cents)."""

    total_revenue: float
    total_refunded: float
    payment_count: int
    currency: str


class BillingSummaryRead(BaseModel):
    plan: BillingPlan
    subscription: SubscriptionRead | None = None
    next_payment_date: datetime | None = None
    payment_stats: PaymentStats
