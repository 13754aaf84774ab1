"""Narrow typed views over Stripe API objects and webhook events.

Only the fields billing reads are declared; everything else Stripe sends is
ignored. Events are parsed into a union keyed by ``type`` so each handler
receives the object shape it expects.
"""

from datetime import UTC, datetime
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter

from billing_sync.models.billing import SubscriptionStatus


def from_timestamp(value: int | None) -> datetime | None:
    if value is None:
        return None
    return datetime.fromtimestamp(value, tz=UTC)


class _StripeObject(BaseModel):
    model_config = ConfigDict(extra="ignore")


# ── API objects ──────────────────────────────────────────


class StripeCustomer(_StripeObject):
    id: str
    email: str | None = None
    deleted: bool = False


class StripeCheckoutSession(_StripeObject):
    id: str
    url: str | None = None


class StripePriceRef(_StripeObject):
    id: str


class StripeSubscriptionItem(_StripeObject):
    id: str
    price: StripePriceRef
    current_period_start: int | None = None
    current_period_end: int | None = None


class StripeSubscriptionItems(_StripeObject):
    data: list[StripeSubscriptionItem] = Field(default_factory=list)


class StripeSubscription(_StripeObject):
    id: str
    customer: str
    status: SubscriptionStatus
    cancel_at_period_end: bool = False
    canceled_at: int | None = None
    current_period_start: int | None = None
    current_period_end: int | None = None
    trial_start: int | None = None
    trial_end: int | None = None
    metadata: dict[str, str] = Field(default_factory=dict)
    items: StripeSubscriptionItems = Field(default_factory=StripeSubscriptionItems)

    @property
    def first_item(self) -> StripeSubscriptionItem | None:
        return self.items.data[0] if self.items.data else None

    @property
    def item_id(self) -> str | None:
        item = self.first_item
        return item.id if item else None

    @property
    def price_id(self) -> str | None:
        item = self.first_item
        return item.price.id if item else None

    @property
    def period_start(self) -> datetime | None:
        # Newer API versions report the billing period on the item only.
        if self.current_period_start is None and self.first_item:
            return from_timestamp(self.first_item.current_period_start)
        return from_timestamp(self.current_period_start)

    @property
    def period_end(self) -> datetime | None:
        if self.current_period_end is None and self.first_item:
            return from_timestamp(self.first_item.current_period_end)
        return from_timestamp(self.current_period_end)


class _InvoiceSubscriptionDetails(_StripeObject):
    subscription: str | None = None


class _InvoiceParent(_StripeObject):
    subscription_details: _InvoiceSubscriptionDetails | None = None


class _InvoicePaymentTarget(_StripeObject):
    type: str | None = None
    payment_intent: str | None = None


class StripeInvoicePayment(_StripeObject):
    id: str
    status: str | None = None
    is_default: bool = False
    payment: _InvoicePaymentTarget = Field(default_factory=_InvoicePaymentTarget)


class _InvoicePayments(_StripeObject):
    data: list[StripeInvoicePayment] = Field(default_factory=list)


def default_payment_intent(entries: list[StripeInvoicePayment]) -> str | None:
    """Pick the payment intent of an invoice's default payment, if any."""
    candidates = [entry for entry in entries if entry.payment.payment_intent]
    for entry in candidates:
        if entry.is_default:
            return entry.payment.payment_intent
    return candidates[0].payment.payment_intent if candidates else None


class StripeInvoice(_StripeObject):
    id: str
    customer: str
    subscription: str | None = None
    payment_intent: str | None = None
    amount_paid: int = 0
    amount_due: int = 0
    currency: str
    description: str | None = None
    hosted_invoice_url: str | None = None
    created: int | None = None
    parent: _InvoiceParent | None = None
    # Newer API versions move the payment intent here, and only when expanded.
    payments: _InvoicePayments | None = None

    @property
    def payment_intent_id(self) -> str | None:
        if self.payment_intent:
            return self.payment_intent
        if self.payments:
            return default_payment_intent(self.payments.data)
        return None

    @property
    def subscription_id(self) -> str | None:
        if self.subscription:
            return self.subscription
        if self.parent and self.parent.subscription_details:
            return self.parent.subscription_details.subscription
        return None


class StripeCharge(_StripeObject):
    id: str
    payment_intent: str | None = None
    amount: int
    amount_refunded: int = 0


# ── Events ───────────────────────────────────────────────


class _EventBase(_StripeObject):
    id: str
    created: int
    livemode: bool = False


class _SubscriptionData(_StripeObject):
    object: StripeSubscription


class _InvoiceData(_StripeObject):
    object: StripeInvoice


class _ChargeData(_StripeObject):
    object: StripeCharge


class SubscriptionEvent(_EventBase):
    type: Literal[
        "customer.subscription.created",
        "customer.subscription.updated",
        "customer.subscription.deleted",
    ]
    data: _SubscriptionData


class InvoicePaymentEvent(_EventBase):
    type: Literal["invoice.payment_succeeded", "invoice.payment_failed"]
    data: _InvoiceData


class ChargeRefundedEvent(_EventBase):
    type: Literal["charge.refunded"]
    data: _ChargeData


class UnhandledEvent(_EventBase):
    type: str
    data: dict[str, Any] = Field(default_factory=dict)


HandledEvent = Annotated[
    Union[SubscriptionEvent, InvoicePaymentEvent, ChargeRefundedEvent],
    Field(discriminator="type"),
]
StripeEvent = Union[
    SubscriptionEvent, InvoicePaymentEvent, ChargeRefundedEvent, UnhandledEvent
]

HANDLED_EVENT_TYPES = frozenset(
    {
        "customer.subscription.created",
        "customer.subscription.updated",
        "customer.subscription.deleted",
        "invoice.payment_succeeded",
        "invoice.payment_failed",
        "charge.refunded",
    }
)

_handled_event_adapter: TypeAdapter[Any] = TypeAdapter(HandledEvent)


def parse_event(payload: dict[str, Any]) -> StripeEvent:
    """Parse a decoded webhook body. Raises pydantic.ValidationError."""
    if payload.get("type") in HANDLED_EVENT_TYPES:
        return _handled_event_adapter.validate_python(payload)
    return UnhandledEvent.model_validate(payload)
