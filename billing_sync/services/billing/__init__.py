from billing_sync.services.billing.checkout import CheckoutService
from billing_sync.services.billing.customers import resolve_customer
from billing_sync.services.billing.payments import Payments, derive_status, payments
from billing_sync.services.billing.reconciliation import (
    ReconciliationReport,
    ReconciliationService,
)
from billing_sync.services.billing.subscriptions import Subscriptions, subscriptions
from billing_sync.services.billing.summary import billing_summary
from billing_sync.services.billing.webhooks import WebhookDispatcher

__all__ = [
    "CheckoutService",
    "Payments",
    "ReconciliationReport",
    "ReconciliationService",
    "Subscriptions",
    "WebhookDispatcher",
    "billing_summary",
    "derive_status",
    "payments",
    "resolve_customer",
    "subscriptions",
]
