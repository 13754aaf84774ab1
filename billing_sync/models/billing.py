import enum
import uuid
from datetime import datetime

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    CheckConstraint,
    DateTime,
    Enum,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column, relationship

from billing_sync.db import Base, TimestampMixin

# ── Enums ────────────────────────────────────────────────


class BillingPlan(str, enum.Enum):
    free = "free"
    standard = "standard"
    premium = "premium"
    enterprise = "enterprise"


class SubscriptionStatus(str, enum.Enum):
    incomplete = "incomplete"
    incomplete_expired = "incomplete_expired"
    trialing = "trialing"
    active = "active"
    past_due = "past_due"
    canceled = "canceled"
    unpaid = "unpaid"
    paused = "paused"


class PaymentStatus(str, enum.Enum):
    pending = "pending"
    succeeded = "succeeded"
    failed = "failed"
    canceled = "canceled"
    refunded = "refunded"
    partially_refunded = "partially_refunded"


class PaymentType(str, enum.Enum):
    subscription = "subscription"
    setup = "setup"
    invoice = "invoice"
    one_time = "one_time"


class WebhookEventStatus(str, enum.Enum):
    pending = "pending"
    processed = "processed"
    ignored = "ignored"
    failed = "failed"


PROVISIONAL_CUSTOMER_PREFIX = "temp_"


def provisional_customer_id(tenant_id: uuid.UUID) -> str:
    return f"{PROVISIONAL_CUSTOMER_PREFIX}{tenant_id}"


def is_provisional_customer_id(customer_id: str | None) -> bool:
    return not customer_id or customer_id.startswith(PROVISIONAL_CUSTOMER_PREFIX)


# ── Subscriptions ────────────────────────────────────────


class Subscription(TimestampMixin, Base):
    __tablename__ = "subscriptions"
    __table_args__ = (
        UniqueConstraint("tenant_id", name="uq_subscriptions_tenant_id"),
        UniqueConstraint(
            "external_subscription_id",
            name="uq_subscriptions_external_subscription_id",
        ),
        CheckConstraint(
            "plan <> 'free' OR "
            "(external_subscription_id IS NULL AND external_price_id IS NULL)",
            name="ck_subscriptions_free_plan_has_no_external_ids",
        ),
        CheckConstraint(
            "current_period_start IS NULL OR current_period_end IS NULL "
            "OR current_period_start < current_period_end",
            name="ck_subscriptions_period_order",
        ),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    tenant_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("tenants.id"), nullable=False
    )
    external_customer_id: Mapped[str] = mapped_column(
        String(255), nullable=False, index=True
    )
    external_subscription_id: Mapped[str | None] = mapped_column(String(255))
    external_price_id: Mapped[str | None] = mapped_column(String(255))
    plan: Mapped[BillingPlan] = mapped_column(
        Enum(BillingPlan), default=BillingPlan.free, nullable=False
    )
    status: Mapped[SubscriptionStatus] = mapped_column(
        Enum(SubscriptionStatus), default=SubscriptionStatus.active, nullable=False
    )
    current_period_start: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True)
    )
    current_period_end: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True)
    )
    cancel_at_period_end: Mapped[bool] = mapped_column(Boolean, default=False)
    canceled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    trial_start: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    trial_end: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    # Stripe `created` (unix seconds) of the newest snapshot written here.
    last_event_created: Mapped[int | None] = mapped_column(BigInteger)
    last_synced_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    metadata_: Mapped[dict | None] = mapped_column("metadata", JSON)

    tenant = relationship("Tenant", back_populates="subscription")
    payments = relationship("Payment", back_populates="subscription")


# ── Payments ─────────────────────────────────────────────


class Payment(TimestampMixin, Base):
    __tablename__ = "payments"
    __table_args__ = (
        UniqueConstraint(
            "external_payment_intent_id",
            name="uq_payments_external_payment_intent_id",
        ),
        CheckConstraint("amount >= 0", name="ck_payments_amount_non_negative"),
        CheckConstraint(
            "refunded_amount >= 0 AND refunded_amount <= amount",
            name="ck_payments_refund_within_amount",
        ),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    tenant_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("tenants.id"), nullable=False, index=True
    )
    subscription_id: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True), ForeignKey("subscriptions.id"), index=True
    )
    external_payment_intent_id: Mapped[str] = mapped_column(
        String(255), nullable=False
    )
    external_customer_id: Mapped[str] = mapped_column(String(255), nullable=False)
    external_invoice_id: Mapped[str | None] = mapped_column(String(255))
    amount: Mapped[int] = mapped_column(Integer, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), default="eur")
    status: Mapped[PaymentStatus] = mapped_column(
        Enum(PaymentStatus), nullable=False
    )
    type: Mapped[PaymentType] = mapped_column(
        Enum(PaymentType), default=PaymentType.subscription, nullable=False
    )
    description: Mapped[str | None] = mapped_column(Text)
    receipt_url: Mapped[str | None] = mapped_column(String(2048))
    failure_reason: Mapped[str | None] = mapped_column(Text)
    refunded_amount: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    platform_created_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True)
    )
    metadata_: Mapped[dict | None] = mapped_column("metadata", JSON)

    tenant = relationship("Tenant", back_populates="payments")
    subscription = relationship("Subscription", back_populates="payments")


# ── Webhook Tracking ─────────────────────────────────────


class WebhookEvent(TimestampMixin, Base):
    __tablename__ = "webhook_events"
    __table_args__ = (UniqueConstraint("event_id", name="uq_webhook_events_event_id"),)

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    provider: Mapped[str] = mapped_column(String(80), nullable=False, default="stripe")
    event_type: Mapped[str] = mapped_column(String(120), nullable=False)
    event_id: Mapped[str] = mapped_column(String(255), nullable=False)
    event_created: Mapped[int | None] = mapped_column(BigInteger)
    payload: Mapped[dict | None] = mapped_column(JSON)
    status: Mapped[WebhookEventStatus] = mapped_column(
        Enum(WebhookEventStatus), default=WebhookEventStatus.pending, index=True
    )
    error_message: Mapped[str | None] = mapped_column(Text)
    processed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
