import logging

from sqlalchemy import update
from sqlalchemy.orm import Session

from billing_sync.models.billing import Subscription, is_provisional_customer_id
from billing_sync.models.tenant import Tenant
from billing_sync.services.payment_gateway import StripeGateway

logger = logging.getLogger(__name__)


def resolve_customer(
    db: Session,
    tenant: Tenant,
    record: Subscription,
    gateway: StripeGateway,
) -> str:
    """Return a Stripe customer id for the tenant, creating one if needed.

    A stored id is reused while Stripe still has the customer. Otherwise a new
    customer is created and written back only if the stored id is unchanged;
    when a concurrent request got there first, its id wins.
    """
    current = record.external_customer_id
    if not is_provisional_customer_id(current):
        if gateway.retrieve_customer(current) is not None:
            return current
        logger.warning(
            "Stripe customer %s no longer exists, recreating",
            current,
            extra={"tenant_id": tenant.id},
        )

    customer = gateway.create_customer(
        email=tenant.billing_email,
        name=tenant.name,
        tenant_id=str(tenant.id),
        idempotency_key=f"customer:{tenant.id}:{current}",
    )
    result = db.execute(
        update(Subscription)
        .where(
            Subscription.id == record.id,
            Subscription.external_customer_id == current,
        )
        .values(external_customer_id=customer.id)
        .execution_options(synchronize_session=False)
    )
    db.refresh(record)
    if result.rowcount != 1:
        logger.info(
            "Customer id for tenant already replaced by %s",
            record.external_customer_id,
            extra={"tenant_id": tenant.id},
        )
    return record.external_customer_id
