"""Stripe webhook endpoint."""

import json
import logging

from fastapi import APIRouter, Depends, HTTPException, Request
from pydantic import ValidationError
from sqlalchemy.orm import Session

from billing_sync.api.deps import get_db, get_payment_gateway
from billing_sync.schemas.stripe import parse_event
from billing_sync.services.billing import WebhookDispatcher
from billing_sync.services.payment_gateway import StripeGateway, WebhookSignatureError

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/billing", tags=["billing-webhooks"])


@router.post("/webhook")
async def stripe_webhook(
    request: Request,
    db: Session = Depends(get_db),
    gateway: StripeGateway = Depends(get_payment_gateway),
) -> dict:
    """Handle Stripe webhook; no auth required, signature verified."""
    if not gateway.is_webhook_configured():
        raise HTTPException(status_code=503, detail="Webhook secret not configured")

    body = await request.body()
    try:
        gateway.verify_webhook_signature(body, request.headers.get("stripe-signature"))
    except WebhookSignatureError as exc:
        logger.warning(
            "Rejected webhook with invalid signature: %s",
            exc,
            extra={"request_id": getattr(request.state, "request_id", None)},
        )
        raise HTTPException(status_code=400, detail="Invalid signature") from exc

    # The body is authentic from here on: any failure answers 500 so Stripe
    # redelivers it.
    try:
        payload = json.loads(body)
    except json.JSONDecodeError as exc:
        logger.error("Signed webhook body is not JSON: %s", exc)
        raise HTTPException(status_code=500, detail="Invalid JSON") from exc
    if not isinstance(payload, dict):
        logger.error("Signed webhook body is not a JSON object")
        raise HTTPException(status_code=500, detail="Invalid JSON")

    dispatcher = WebhookDispatcher(db, gateway)
    try:
        event = parse_event(payload)
    except ValidationError as exc:
        dispatcher.record_unparseable(
            payload, f"ValidationError: {exc.errors(include_url=False)}"
        )
        raise HTTPException(status_code=500, detail="Invalid event payload") from exc

    dispatcher.dispatch(event, payload)
    return {"received": True}
