"""Stripe webhook dispatch.

Each verified event is recorded in ``webhook_events`` before its handler runs.
A redelivery of an event already processed (or ignored) is acknowledged
without touching billing state. Handler failures roll back, mark the event
failed and propagate so the endpoint answers 500 and Stripe retries.
"""

import logging
from collections.abc import Callable
from datetime import UTC, datetime
from typing import Any

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from billing_sync.metrics import PAYMENTS_DROPPED, WEBHOOK_EVENTS
from billing_sync.models.billing import (
    BillingPlan,
    SubscriptionStatus,
    WebhookEvent,
    WebhookEventStatus,
)
from billing_sync.schemas.stripe import (
    ChargeRefundedEvent,
    InvoicePaymentEvent,
    StripeEvent,
    StripeInvoice,
    SubscriptionEvent,
    default_payment_intent,
    from_timestamp,
)
from billing_sync.services.billing import plans
from billing_sync.services.billing.payments import payments
from billing_sync.services.billing.subscriptions import (
    effective_plan,
    subscriptions,
)
from billing_sync.services.common import insert_ignore
from billing_sync.services.payment_gateway import StripeGateway, stripe_gateway

logger = logging.getLogger(__name__)

PROVIDER = "stripe"


class WebhookDispatcher:
    def __init__(self, db: Session, gateway: StripeGateway | None = None) -> None:
        self.db = db
        self.gateway = gateway or stripe_gateway
        self.handlers: dict[str, Callable[[Any], None]] = {
            "customer.subscription.created": self._handle_subscription_created,
            "customer.subscription.updated": self._handle_subscription_updated,
            "customer.subscription.deleted": self._handle_subscription_deleted,
            "invoice.payment_succeeded": self._handle_invoice_payment,
            "invoice.payment_failed": self._handle_invoice_payment,
            "charge.refunded": self._handle_charge_refunded,
        }

    def _ledger_entry(self, event_id: str) -> WebhookEvent:
        return (
            self.db.query(WebhookEvent)
            .filter(WebhookEvent.event_id == event_id)
            .one()
        )

    def _record_event(self, event: StripeEvent, payload: dict | None) -> WebhookEvent:
        insert_ignore(
            self.db,
            WebhookEvent,
            {
                "provider": PROVIDER,
                "event_id": event.id,
                "event_type": event.type,
                "event_created": event.created,
                "payload": payload,
                "status": WebhookEventStatus.pending,
            },
            ["event_id"],
        )
        return self._ledger_entry(event.id)

    def dispatch(
        self, event: StripeEvent, payload: dict | None = None
    ) -> WebhookEventStatus:
        """Apply one verified event. Returns the event's final ledger status."""
        extra = {"event_id": event.id, "event_type": event.type}
        entry = self._record_event(event, payload)
        if entry.status in (WebhookEventStatus.processed, WebhookEventStatus.ignored):
            logger.info("Duplicate webhook event, skipping", extra=extra)
            WEBHOOK_EVENTS.labels(event.type, "duplicate").inc()
            self.db.commit()
            return entry.status

        handler = self.handlers.get(event.type)
        if handler is None:
            logger.info("Unhandled webhook event type", extra=extra)
            entry.status = WebhookEventStatus.ignored
            entry.processed_at = datetime.now(UTC)
            self.db.commit()
            WEBHOOK_EVENTS.labels(event.type, "ignored").inc()
            return entry.status

        try:
            handler(event)
            entry.status = WebhookEventStatus.processed
            entry.processed_at = datetime.now(UTC)
            entry.error_message = None
            self.db.commit()
        except Exception as exc:
            self.db.rollback()
            logger.exception("Webhook handler failed", extra=extra)
            WEBHOOK_EVENTS.labels(event.type, "failed").inc()
            self._record_failure(event, payload, exc)
            raise
        logger.info("Webhook event processed", extra=extra)
        WEBHOOK_EVENTS.labels(event.type, "processed").inc()
        return entry.status

    def record_unparseable(self, payload: dict, error: str) -> None:
        """Mark a verified event that failed to parse as failed.

        Stripe redelivers it; once the parser accepts the shape, ``dispatch``
        picks up the same ledger row.
        """
        event_id = payload.get("id")
        event_type = str(payload.get("type") or "unknown")[:120]
        WEBHOOK_EVENTS.labels(event_type, "failed").inc()
        if not isinstance(event_id, str) or not event_id:
            logger.error("Unparseable webhook event without an id: %s", error)
            return
        extra = {"event_id": event_id, "event_type": event_type}
        created = payload.get("created")
        insert_ignore(
            self.db,
            WebhookEvent,
            {
                "provider": PROVIDER,
                "event_id": event_id,
                "event_type": event_type,
                "event_created": created if isinstance(created, int) else None,
                "payload": payload,
                "status": WebhookEventStatus.failed,
            },
            ["event_id"],
        )
        entry = self._ledger_entry(event_id)
        if entry.status not in (
            WebhookEventStatus.processed,
            WebhookEventStatus.ignored,
        ):
            entry.status = WebhookEventStatus.failed
            entry.error_message = error[:2000]
        self.db.commit()
        logger.error("Unparseable webhook event: %s", error, extra=extra)

    def _record_failure(
        self, event: StripeEvent, payload: dict | None, exc: Exception
    ) -> None:
        try:
            entry = self._record_event(event, payload)
            entry.status = WebhookEventStatus.failed
            entry.error_message = f"{type(exc).__name__}: {exc}"[:2000]
            self.db.commit()
        except SQLAlchemyError:
            self.db.rollback()
            logger.exception(
                "Could not record webhook failure",
                extra={"event_id": event.id, "event_type": event.type},
            )

    # ── Subscription events ──────────────────────────────

    def _handle_subscription_created(self, event: SubscriptionEvent) -> None:
        subscriptions.upsert_from_platform(
            self.db, event.data.object, event_created=event.created
        )

    def _handle_subscription_updated(self, event: SubscriptionEvent) -> None:
        snapshot = event.data.object
        record = subscriptions.get_by_external_subscription_id(self.db, snapshot.id)
        if record is None:
            # Arrived before (or without) the matching created event.
            subscriptions.upsert_from_platform(
                self.db,
                snapshot,
                event_created=event.created,
                plan=plans.plan_for_price(snapshot.price_id),
            )
            return

        applied = subscriptions.apply_platform_snapshot(
            record, snapshot, event_created=event.created
        )
        if not applied:
            return
        new_plan = plans.plan_for_price(snapshot.price_id)
        if new_plan is not None:
            record.external_price_id = snapshot.price_id
            record.plan = new_plan
        subscriptions.set_tenant_plan(self.db, record.tenant_id, effective_plan(record))
        self.db.flush()

    def _handle_subscription_deleted(self, event: SubscriptionEvent) -> None:
        snapshot = event.data.object
        record = subscriptions.get_by_external_subscription_id(self.db, snapshot.id)
        if record is None:
            logger.warning(
                "Deleted event for unknown subscription %s",
                snapshot.id,
                extra={"event_id": event.id},
            )
            return
        record.status = SubscriptionStatus.canceled
        record.canceled_at = from_timestamp(snapshot.canceled_at) or datetime.now(UTC)
        record.cancel_at_period_end = snapshot.cancel_at_period_end
        record.last_event_created = max(record.last_event_created or 0, event.created)
        subscriptions.set_tenant_plan(self.db, record.tenant_id, BillingPlan.free)
        self.db.flush()
        logger.info(
            "Subscription %s canceled",
            snapshot.id,
            extra={"tenant_id": record.tenant_id, "event_id": event.id},
        )

    # ── Payment events ───────────────────────────────────

    def _handle_invoice_payment(self, event: InvoicePaymentEvent) -> None:
        invoice = event.data.object
        subscription_id = invoice.subscription_id
        if not subscription_id:
            logger.info(
                "Invoice %s is not for a subscription, skipping",
                invoice.id,
                extra={"event_id": event.id},
            )
            return
        record = subscriptions.get_by_external_subscription_id(
            self.db, subscription_id
        )
        if record is None:
            logger.warning(
                "Invoice %s for unknown subscription %s, dropping",
                invoice.id,
                subscription_id,
                extra={"event_id": event.id},
            )
            PAYMENTS_DROPPED.labels("unknown_subscription").inc()
            return
        payment_intent = self._invoice_payment_intent(invoice)
        if not payment_intent:
            logger.warning(
                "Invoice %s has no payment intent, payment not recorded",
                invoice.id,
                extra={"event_id": event.id, "tenant_id": record.tenant_id},
            )
            PAYMENTS_DROPPED.labels("no_payment_intent").inc()
            return
        payments.record_invoice_payment(
            self.db,
            record,
            invoice,
            succeeded=event.type == "invoice.payment_succeeded",
            payment_intent_id=payment_intent,
        )

    def _invoice_payment_intent(self, invoice: StripeInvoice) -> str | None:
        if invoice.payment_intent_id:
            return invoice.payment_intent_id
        return default_payment_intent(self.gateway.list_invoice_payments(invoice.id))

    def _handle_charge_refunded(self, event: ChargeRefundedEvent) -> None:
        charge = event.data.object
        if not charge.payment_intent:
            logger.info(
                "Charge %s has no payment intent, skipping",
                charge.id,
                extra={"event_id": event.id},
            )
            return
        payments.apply_refund(self.db, charge.payment_intent, charge.amount_refunded)
