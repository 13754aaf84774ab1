import logging

from fastapi import HTTPException
from sqlalchemy.orm import Session

from billing_sync.config import settings
from billing_sync.models.billing import BillingPlan, Subscription, SubscriptionStatus
from billing_sync.models.tenant import Tenant
from billing_sync.services.billing import plans
from billing_sync.services.billing.customers import resolve_customer
from billing_sync.services.billing.subscriptions import subscriptions
from billing_sync.services.payment_gateway import (
    PaymentGatewayError,
    StripeGateway,
    stripe_gateway,
)

logger = logging.getLogger(__name__)


def _price_or_400(plan: BillingPlan) -> str:
    price_id = plans.price_for_plan(plan)
    if not price_id:
        raise HTTPException(
            status_code=400,
            detail={
                "code": "price_not_configured",
                "message": f"No Stripe price configured for plan {plan.value}",
            },
        )
    return price_id


class CheckoutService:
    """Starts upgrades and applies plan changes/cancellations against Stripe.

    Stripe is called before anything is committed locally, so a failed call
    leaves the stored subscription untouched.
    """

    def __init__(self, db: Session, gateway: StripeGateway | None = None) -> None:
        self.db = db
        self.gateway = gateway or stripe_gateway

    def start_upgrade(
        self,
        tenant_id,
        target_plan: BillingPlan,
        success_url: str | None = None,
        cancel_url: str | None = None,
    ) -> dict[str, str | None]:
        if target_plan == BillingPlan.free:
            raise HTTPException(
                status_code=400,
                detail={
                    "code": "free_plan_checkout",
                    "message": "The free plan does not require checkout",
                },
            )
        record = subscriptions.get_or_create_for_tenant(self.db, tenant_id)
        price_id = _price_or_400(target_plan)
        tenant = self.db.get(Tenant, record.tenant_id)
        self.db.commit()

        customer_id = resolve_customer(self.db, tenant, record, self.gateway)
        self.db.commit()

        session = self.gateway.create_checkout_session(
            customer_id=customer_id,
            price_id=price_id,
            tenant_id=str(tenant.id),
            plan=target_plan.value,
            success_url=success_url
            or f"{settings.frontend_url}/billing/success?session_id={{CHECKOUT_SESSION_ID}}",
            cancel_url=cancel_url or f"{settings.frontend_url}/billing/cancel",
        )
        logger.info(
            "Created checkout session %s for plan %s",
            session.id,
            target_plan.value,
            extra={"tenant_id": tenant.id},
        )
        return {"session_id": session.id, "url": session.url}

    def change_plan(
        self,
        tenant_id,
        new_plan: BillingPlan,
        cancel_at_period_end: bool = False,
    ) -> Subscription:
        record = subscriptions.get_or_create_for_tenant(self.db, tenant_id)
        if new_plan == BillingPlan.free:
            return self.downgrade_to_free(record)

        price_id = _price_or_400(new_plan)
        if not record.external_subscription_id:
            raise HTTPException(
                status_code=409,
                detail={
                    "code": "no_active_subscription",
                    "message": "Start a checkout before changing plans",
                },
            )

        current = self.gateway.get_subscription(record.external_subscription_id)
        if not current.item_id:
            raise HTTPException(
                status_code=409,
                detail={
                    "code": "subscription_has_no_items",
                    "message": "Stripe subscription has no items to update",
                },
            )
        updated = self.gateway.update_subscription(
            current.id,
            item_id=current.item_id,
            price_id=price_id,
            proration_behavior="create_prorations",
            cancel_at_period_end=cancel_at_period_end,
            metadata={"tenant_id": str(record.tenant_id), "plan": new_plan.value},
        )

        # Optimistic: the following subscription.updated webhook overwrites this.
        subscriptions.attach_platform_subscription(record, updated, new_plan)
        subscriptions.apply_platform_snapshot(record, updated, event_created=None)
        subscriptions.set_tenant_plan(self.db, record.tenant_id, new_plan)
        self.db.commit()
        self.db.refresh(record)
        logger.info(
            "Changed plan to %s",
            new_plan.value,
            extra={"tenant_id": record.tenant_id},
        )
        return record

    def cancel(self, tenant_id, at_period_end: bool = True) -> Subscription:
        record = subscriptions.get_or_create_for_tenant(self.db, tenant_id)
        if not record.external_subscription_id:
            self.db.commit()
            return record

        if at_period_end:
            snapshot = self.gateway.update_subscription(
                record.external_subscription_id, cancel_at_period_end=True
            )
        else:
            snapshot = self.gateway.cancel_subscription(
                record.external_subscription_id
            )
        # An immediate cancel is committed on Stripe; events older than it
        # must not revive the subscription.
        subscriptions.apply_platform_snapshot(
            record,
            snapshot,
            event_created=None if at_period_end else snapshot.canceled_at,
        )
        if record.status == SubscriptionStatus.canceled:
            subscriptions.set_tenant_plan(self.db, record.tenant_id, BillingPlan.free)
        self.db.commit()
        self.db.refresh(record)
        logger.info(
            "Canceled subscription %s (at_period_end=%s)",
            record.external_subscription_id,
            at_period_end,
            extra={"tenant_id": record.tenant_id},
        )
        return record

    def downgrade_to_free(self, record: Subscription) -> Subscription:
        if record.plan == BillingPlan.free and not record.external_subscription_id:
            self.db.commit()
            return record
        canceled_at = None
        if record.external_subscription_id:
            try:
                snapshot = self.gateway.cancel_subscription(
                    record.external_subscription_id
                )
                canceled_at = snapshot.canceled_at
            except PaymentGatewayError as exc:
                if exc.status_code != 404:
                    raise
                logger.info(
                    "Stripe subscription %s already gone",
                    record.external_subscription_id,
                    extra={"tenant_id": record.tenant_id},
                )
        subscriptions.mark_downgraded_to_free(
            self.db, record, canceled_at=canceled_at
        )
        self.db.commit()
        self.db.refresh(record)
        return record
