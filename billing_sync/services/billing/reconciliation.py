import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime

from sqlalchemy.orm import Session

from billing_sync.models.billing import Subscription
from billing_sync.services.billing.subscriptions import (
    effective_plan,
    subscriptions,
)
from billing_sync.services.payment_gateway import (
    PaymentGatewayError,
    StripeGateway,
    stripe_gateway,
)

logger = logging.getLogger(__name__)


@dataclass
class ReconciliationReport:
    synced: int = 0
    failed: list[str] = field(default_factory=list)


class ReconciliationService:
    """Pulls subscription state from Stripe and overwrites the local record.

    Used to recover from missed or misordered webhooks.
    """

    def __init__(self, db: Session, gateway: StripeGateway | None = None) -> None:
        self.db = db
        self.gateway = gateway or stripe_gateway

    def sync(self, tenant_id) -> Subscription | None:
        record = subscriptions.get_for_tenant(self.db, tenant_id)
        if record is None or not record.external_subscription_id:
            return None
        self._sync_record(record)
        self.db.commit()
        self.db.refresh(record)
        return record

    def _sync_record(self, record: Subscription) -> None:
        fetched_at = datetime.now(UTC)
        snapshot = self.gateway.get_subscription(record.external_subscription_id)
        # The fetched state is at least as new as any event created before now.
        subscriptions.apply_platform_snapshot(
            record, snapshot, event_created=int(fetched_at.timestamp())
        )
        record.last_synced_at = fetched_at
        subscriptions.set_tenant_plan(self.db, record.tenant_id, effective_plan(record))
        self.db.flush()
        logger.info(
            "Synced subscription %s (%s)",
            record.external_subscription_id,
            record.status.value,
            extra={"tenant_id": record.tenant_id},
        )

    def sync_all(self) -> ReconciliationReport:
        """Sync every record linked to a Stripe subscription.

        A Stripe failure for one tenant is logged and reported; the rest still
        sync.
        """
        report = ReconciliationReport()
        records = (
            self.db.query(Subscription)
            .filter(Subscription.external_subscription_id.isnot(None))
            .order_by(Subscription.created_at.asc())
            .all()
        )
        for record in records:
            try:
                self._sync_record(record)
                self.db.commit()
            except PaymentGatewayError as exc:
                self.db.rollback()
                logger.error(
                    "Sync failed: %s",
                    exc.message,
                    extra={"tenant_id": record.tenant_id},
                )
                report.failed.append(str(record.tenant_id))
                continue
            report.synced += 1
        return report
