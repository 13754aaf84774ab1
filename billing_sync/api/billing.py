"""Tenant-facing billing routes.

Every route acts on the tenant named in the caller's bearer token.
"""

import uuid

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from billing_sync.api.deps import get_db, get_payment_gateway, require_tenant
from billing_sync.schemas.billing import (
    BillingSummaryRead,
    CheckoutSessionCreate,
    CheckoutSessionRead,
    PaymentRead,
    SubscriptionRead,
    SubscriptionUpdate,
)
from billing_sync.schemas.common import ListResponse
from billing_sync.services import billing as billing_service
from billing_sync.services.payment_gateway import StripeGateway

router = APIRouter(prefix="/billing", tags=["billing"])


# ── Checkout ─────────────────────────────────────────────


@router.post("/checkout-session", response_model=CheckoutSessionRead)
def create_checkout_session(
    payload: CheckoutSessionCreate,
    tenant_id: uuid.UUID = Depends(require_tenant),
    db: Session = Depends(get_db),
    gateway: StripeGateway = Depends(get_payment_gateway),
):
    svc = billing_service.CheckoutService(db, gateway)
    return svc.start_upgrade(
        tenant_id, payload.plan, payload.success_url, payload.cancel_url
    )


# ── Subscription ─────────────────────────────────────────


@router.get("/subscription", response_model=SubscriptionRead)
def get_current_subscription(
    tenant_id: uuid.UUID = Depends(require_tenant),
    db: Session = Depends(get_db),
):
    record = billing_service.subscriptions.get_or_create_for_tenant(db, tenant_id)
    db.commit()
    db.refresh(record)
    return record


@router.put("/subscription", response_model=SubscriptionRead)
def update_subscription(
    payload: SubscriptionUpdate,
    tenant_id: uuid.UUID = Depends(require_tenant),
    db: Session = Depends(get_db),
    gateway: StripeGateway = Depends(get_payment_gateway),
):
    svc = billing_service.CheckoutService(db, gateway)
    return svc.change_plan(tenant_id, payload.plan, payload.cancel_at_period_end)


@router.delete("/subscription", response_model=SubscriptionRead)
def cancel_subscription(
    at_period_end: bool = Query(default=True),
    tenant_id: uuid.UUID = Depends(require_tenant),
    db: Session = Depends(get_db),
    gateway: StripeGateway = Depends(get_payment_gateway),
):
    svc = billing_service.CheckoutService(db, gateway)
    return svc.cancel(tenant_id, at_period_end=at_period_end)


@router.post("/subscription/sync", response_model=SubscriptionRead | None)
def sync_subscription(
    tenant_id: uuid.UUID = Depends(require_tenant),
    db: Session = Depends(get_db),
    gateway: StripeGateway = Depends(get_payment_gateway),
):
    svc = billing_service.ReconciliationService(db, gateway)
    return svc.sync(tenant_id)


# ── Payments ─────────────────────────────────────────────


@router.get("/payments", response_model=ListResponse[PaymentRead])
def list_payments(
    status: str | None = None,
    type: str | None = None,
    order_by: str = Query(default="created_at"),
    order_dir: str = Query(default="desc", pattern="^(asc|desc)$"),
    limit: int = Query(default=20, ge=1, le=100),
    offset: int = Query(default=0, ge=0),
    tenant_id: uuid.UUID = Depends(require_tenant),
    db: Session = Depends(get_db),
):
    return billing_service.payments.list_response(
        db, str(tenant_id), status, type, order_by, order_dir, limit, offset
    )


@router.get("/summary", response_model=BillingSummaryRead)
def get_billing_summary(
    tenant_id: uuid.UUID = Depends(require_tenant),
    db: Session = Depends(get_db),
):
    summary = billing_service.billing_summary(db, tenant_id)
    db.commit()
    return summary
