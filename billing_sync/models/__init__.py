from billing_sync.models.billing import (  # noqa: F401
    BillingPlan,
    Payment,
    PaymentStatus,
    PaymentType,
    Subscription,
    SubscriptionStatus,
    WebhookEvent,
    WebhookEventStatus,
)
from billing_sync.models.tenant import Tenant  # noqa: F401
