import logging
import uuid
from datetime import UTC, datetime

from fastapi import HTTPException
from sqlalchemy.orm import Session

from billing_sync.models.billing import (
    BillingPlan,
    Subscription,
    SubscriptionStatus,
    provisional_customer_id,
)
from billing_sync.models.tenant import Tenant
from billing_sync.schemas.stripe import StripeSubscription, from_timestamp
from billing_sync.services.billing import plans
from billing_sync.services.common import coerce_uuid, ensure_utc, insert_ignore

logger = logging.getLogger(__name__)

TERMINAL_STATUSES = (SubscriptionStatus.canceled, SubscriptionStatus.incomplete_expired)


def effective_plan(record: Subscription) -> BillingPlan:
    """Plan the tenant is entitled to given the record's status."""
    if record.status in TERMINAL_STATUSES:
        return BillingPlan.free
    return record.plan


def _tenant_id_from_metadata(metadata: dict[str, str]) -> uuid.UUID | None:
    try:
        return coerce_uuid(metadata.get("tenant_id"))
    except ValueError:
        return None


def check_invariants(record: Subscription) -> None:
    """Raise ValueError if the record breaks a storage invariant."""
    if record.plan == BillingPlan.free and (
        record.external_subscription_id or record.external_price_id
    ):
        raise ValueError(
            f"Free subscription {record.id} must not reference Stripe ids"
        )
    start = ensure_utc(record.current_period_start)
    end = ensure_utc(record.current_period_end)
    if start is not None and end is not None and start >= end:
        raise ValueError(
            f"Subscription {record.id} period start {start} is not before end {end}"
        )


class Subscriptions:
    """The tenant billing account store.

    Writers here only flush; the calling operation owns the transaction.
    """

    @staticmethod
    def get_for_tenant(db: Session, tenant_id) -> Subscription | None:
        return (
            db.query(Subscription)
            .filter(Subscription.tenant_id == coerce_uuid(tenant_id))
            .first()
        )

    @staticmethod
    def get_by_external_subscription_id(
        db: Session, external_subscription_id: str
    ) -> Subscription | None:
        return (
            db.query(Subscription)
            .filter(Subscription.external_subscription_id == external_subscription_id)
            .first()
        )

    @staticmethod
    def get_by_external_customer_id(
        db: Session, external_customer_id: str
    ) -> Subscription | None:
        return (
            db.query(Subscription)
            .filter(Subscription.external_customer_id == external_customer_id)
            .first()
        )

    @staticmethod
    def get_or_create_for_tenant(db: Session, tenant_id) -> Subscription:
        """Return the tenant's record, creating the free/active one if absent."""
        tenant = db.get(Tenant, coerce_uuid(tenant_id))
        if not tenant:
            raise HTTPException(status_code=404, detail="Tenant not found")
        created = insert_ignore(
            db,
            Subscription,
            {
                "tenant_id": tenant.id,
                "external_customer_id": provisional_customer_id(tenant.id),
                "plan": BillingPlan.free,
                "status": SubscriptionStatus.active,
                "cancel_at_period_end": False,
            },
            ["tenant_id"],
        )
        if created:
            logger.info(
                "Created free subscription record",
                extra={"tenant_id": tenant.id},
            )
        record = Subscriptions.get_for_tenant(db, tenant.id)
        if record is None:
            raise RuntimeError(f"Subscription for tenant {tenant.id} vanished")
        return record

    @staticmethod
    def apply_platform_snapshot(
        record: Subscription,
        snapshot: StripeSubscription,
        *,
        event_created: int | None,
    ) -> bool:
        """Overwrite lifecycle fields from a Stripe subscription.

        Snapshots older than the newest one already applied are skipped.
        ``event_created=None`` writes without moving the ordering marker, so
        the next webhook for this subscription always supersedes it.
        """
        if (
            event_created is not None
            and record.last_event_created is not None
            and event_created < record.last_event_created
        ):
            logger.info(
                "Skipping stale snapshot for %s (event %s < applied %s)",
                snapshot.id,
                event_created,
                record.last_event_created,
                extra={"tenant_id": record.tenant_id},
            )
            return False

        record.status = snapshot.status
        record.cancel_at_period_end = snapshot.cancel_at_period_end
        record.canceled_at = from_timestamp(snapshot.canceled_at)
        record.trial_start = from_timestamp(snapshot.trial_start)
        record.trial_end = from_timestamp(snapshot.trial_end)
        start, end = snapshot.period_start, snapshot.period_end
        if start is not None or end is not None:
            record.current_period_start = start
            record.current_period_end = end
        if event_created is not None:
            record.last_event_created = event_created
        check_invariants(record)
        return True

    @staticmethod
    def attach_platform_subscription(
        record: Subscription, snapshot: StripeSubscription, plan: BillingPlan
    ) -> None:
        record.external_subscription_id = snapshot.id
        record.external_customer_id = snapshot.customer
        record.external_price_id = snapshot.price_id
        record.plan = plan
        check_invariants(record)

    @staticmethod
    def upsert_from_platform(
        db: Session,
        snapshot: StripeSubscription,
        *,
        event_created: int,
        plan: BillingPlan | None = None,
    ) -> Subscription | None:
        """Write a Stripe subscription onto the owning tenant's record.

        The owner is found by Stripe subscription id, then by the ``tenant_id``
        put in subscription metadata at checkout, then by customer id.
        Returns None when no tenant can be identified or the snapshot is a
        terminal state of a subscription the record no longer points at.
        """
        record = Subscriptions.get_by_external_subscription_id(db, snapshot.id)
        tenant_id = _tenant_id_from_metadata(snapshot.metadata)
        if record is None and tenant_id is not None:
            record = Subscriptions.get_for_tenant(db, tenant_id)
        if record is None:
            record = Subscriptions.get_by_external_customer_id(db, snapshot.customer)
        if record is None:
            if tenant_id is None or db.get(Tenant, tenant_id) is None:
                logger.warning(
                    "No tenant for Stripe subscription %s (customer %s)",
                    snapshot.id,
                    snapshot.customer,
                )
                return None
            record = Subscriptions.get_or_create_for_tenant(db, tenant_id)

        if (
            record.external_subscription_id != snapshot.id
            and snapshot.status in TERMINAL_STATUSES
        ):
            # A late event for a subscription the tenant already left.
            logger.info(
                "Ignoring %s snapshot of detached subscription %s",
                snapshot.status.value,
                snapshot.id,
                extra={"tenant_id": record.tenant_id},
            )
            return None
        if (
            record.last_event_created is not None
            and event_created < record.last_event_created
        ):
            if record.external_subscription_id != snapshot.id:
                logger.info(
                    "Not attaching %s: event predates the record's last change",
                    snapshot.id,
                    extra={"tenant_id": record.tenant_id},
                )
                return None
            logger.info(
                "Skipping stale snapshot for %s",
                snapshot.id,
                extra={"tenant_id": record.tenant_id},
            )
            return record

        resolved = (
            plan
            or plans.coerce_plan(snapshot.metadata.get("plan"))
            or plans.plan_for_price(snapshot.price_id)
            or BillingPlan.standard
        )
        if resolved == BillingPlan.free:
            resolved = plans.plan_for_price(snapshot.price_id) or BillingPlan.standard
        Subscriptions.attach_platform_subscription(record, snapshot, resolved)
        Subscriptions.apply_platform_snapshot(
            record, snapshot, event_created=event_created
        )
        Subscriptions.set_tenant_plan(db, record.tenant_id, effective_plan(record))
        db.flush()
        return record

    @staticmethod
    def mark_downgraded_to_free(
        db: Session, record: Subscription, *, canceled_at: int | None = None
    ) -> Subscription:
        """Local half of a downgrade; Stripe must already be canceled.

        The cancellation time becomes the ordering marker, so webhooks emitted
        before the cancel cannot re-attach the old subscription afterwards.
        """
        stamp = canceled_at or int(datetime.now(UTC).timestamp())
        record.plan = BillingPlan.free
        record.status = SubscriptionStatus.canceled
        record.canceled_at = from_timestamp(stamp)
        record.last_event_created = max(record.last_event_created or 0, stamp)
        record.cancel_at_period_end = False
        record.external_subscription_id = None
        record.external_price_id = None
        check_invariants(record)
        Subscriptions.set_tenant_plan(db, record.tenant_id, BillingPlan.free)
        db.flush()
        logger.info("Downgraded to free", extra={"tenant_id": record.tenant_id})
        return record

    @staticmethod
    def set_tenant_plan(db: Session, tenant_id, plan: BillingPlan) -> None:
        """The only writer of the denormalized ``Tenant.plan``."""
        tenant = db.get(Tenant, coerce_uuid(tenant_id))
        if not tenant:
            logger.warning(
                "Cannot set plan %s: tenant not found",
                plan.value,
                extra={"tenant_id": tenant_id},
            )
            return
        if tenant.plan != plan:
            logger.info(
                "Tenant plan %s -> %s",
                tenant.plan.value if tenant.plan else None,
                plan.value,
                extra={"tenant_id": tenant.id},
            )
            tenant.plan = plan


subscriptions = Subscriptions()
