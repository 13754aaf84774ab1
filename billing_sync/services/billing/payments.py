import logging

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from billing_sync.models.billing import (
    Payment,
    PaymentStatus,
    PaymentType,
    Subscription,
)
from billing_sync.schemas.stripe import StripeInvoice, from_timestamp
from billing_sync.services.common import (
    apply_ordering,
    apply_pagination,
    coerce_uuid,
    insert_ignore,
    validate_enum,
)
from billing_sync.services.response import ListResponseMixin

logger = logging.getLogger(__name__)

# Payments whose money was collected at some point; refunds are reported
# separately through refunded_amount.
COLLECTED_STATUSES = (
    PaymentStatus.succeeded,
    PaymentStatus.partially_refunded,
    PaymentStatus.refunded,
)


def derive_status(
    amount: int, refunded_amount: int, status: PaymentStatus
) -> PaymentStatus:
    if refunded_amount <= 0:
        if status in (PaymentStatus.refunded, PaymentStatus.partially_refunded):
            return PaymentStatus.succeeded
        return status
    if amount > 0 and refunded_amount >= amount:
        return PaymentStatus.refunded
    return PaymentStatus.partially_refunded


class Payments(ListResponseMixin):
    """Append-only ledger of Stripe payments, keyed by payment intent."""

    @staticmethod
    def get_by_payment_intent(db: Session, payment_intent_id: str) -> Payment | None:
        return (
            db.query(Payment)
            .filter(Payment.external_payment_intent_id == payment_intent_id)
            .first()
        )

    @staticmethod
    def record_invoice_payment(
        db: Session,
        record: Subscription,
        invoice: StripeInvoice,
        *,
        succeeded: bool,
        payment_intent_id: str | None = None,
    ) -> bool:
        """Insert a payment for an invoice outcome. Returns False on duplicates.

        ``payment_intent_id`` overrides the id read from the invoice, for
        invoices whose payment intent had to be looked up separately.
        """
        payment_intent = payment_intent_id or invoice.payment_intent_id
        if not payment_intent:
            raise ValueError(f"Invoice {invoice.id} has no payment intent")
        plan = record.plan.value if record.plan else "subscription"
        if succeeded:
            values = {
                "amount": invoice.amount_paid,
                "status": PaymentStatus.succeeded,
                "description": invoice.description or f"Subscription payment ({plan})",
                "receipt_url": invoice.hosted_invoice_url,
            }
        else:
            values = {
                "amount": invoice.amount_due,
                "status": PaymentStatus.failed,
                "description": invoice.description
                or f"Failed subscription payment ({plan})",
                "failure_reason": "Payment declined",
            }
        values.update(
            {
                "tenant_id": record.tenant_id,
                "subscription_id": record.id,
                "external_payment_intent_id": payment_intent,
                "external_customer_id": invoice.customer,
                "external_invoice_id": invoice.id,
                "currency": invoice.currency.lower(),
                "type": PaymentType.subscription,
                "refunded_amount": 0,
                "platform_created_at": from_timestamp(invoice.created),
            }
        )
        created = insert_ignore(
            db, Payment, values, ["external_payment_intent_id"]
        )
        if created:
            logger.info(
                "Recorded %s payment %s",
                values["status"].value,
                payment_intent,
                extra={"tenant_id": record.tenant_id},
            )
        else:
            logger.info(
                "Payment %s already recorded",
                payment_intent,
                extra={"tenant_id": record.tenant_id},
            )
        return created

    @staticmethod
    def apply_refund(
        db: Session, payment_intent_id: str, amount_refunded: int
    ) -> Payment | None:
        """Set the cumulative refunded amount reported by Stripe."""
        payment = Payments.get_by_payment_intent(db, payment_intent_id)
        if payment is None:
            logger.warning("Refund for unknown payment %s", payment_intent_id)
            return None
        if payment.status not in COLLECTED_STATUSES:
            logger.warning(
                "Ignoring refund on %s payment %s",
                payment.status.value,
                payment_intent_id,
                extra={"tenant_id": payment.tenant_id},
            )
            return payment
        refunded = max(0, amount_refunded)
        if refunded > payment.amount:
            logger.warning(
                "Refund %s exceeds amount %s for %s, capping",
                refunded,
                payment.amount,
                payment_intent_id,
                extra={"tenant_id": payment.tenant_id},
            )
            refunded = payment.amount
        payment.refunded_amount = refunded
        payment.status = derive_status(payment.amount, refunded, payment.status)
        db.flush()
        return payment

    @staticmethod
    def list(
        db: Session,
        tenant_id: str | None,
        status: str | None,
        type: str | None,
        order_by: str,
        order_dir: str,
        limit: int,
        offset: int,
    ) -> tuple[list[Payment], int]:
        query = db.query(Payment)
        if tenant_id:
            query = query.filter(Payment.tenant_id == coerce_uuid(tenant_id))
        if status:
            query = query.filter(
                Payment.status == validate_enum(status, PaymentStatus, "status")
            )
        if type:
            query = query.filter(
                Payment.type == validate_enum(type, PaymentType, "type")
            )
        total = query.count()
        query = apply_ordering(
            query,
            order_by,
            order_dir,
            {
                "created_at": Payment.created_at,
                "platform_created_at": Payment.platform_created_at,
                "amount": Payment.amount,
            },
        )
        items = list(apply_pagination(query, limit, offset).all())
        return items, total

    @staticmethod
    def totals(db: Session, tenant_id=None) -> dict[str, int]:
        """Sum collected amounts and refunds, optionally for one tenant."""
        stmt = select(
            func.coalesce(func.sum(Payment.amount), 0),
            func.coalesce(func.sum(Payment.refunded_amount), 0),
            func.count(Payment.id),
        ).where(Payment.status.in_(COLLECTED_STATUSES))
        if tenant_id is not None:
            stmt = stmt.where(Payment.tenant_id == coerce_uuid(tenant_id))
        total_amount, refunded_amount, count = db.execute(stmt).one()
        return {
            "total_amount": int(total_amount),
            "refunded_amount": int(refunded_amount),
            "count": int(count),
        }


payments = Payments()
