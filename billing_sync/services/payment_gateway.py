"""Stripe payment gateway integration."""

import hashlib
import hmac
import logging
import time
from typing import Any

import httpx
from tenacity import (
    Retrying,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)
from tenacity.wait import wait_base

from billing_sync.config import settings
from billing_sync.metrics import GATEWAY_REQUESTS
from billing_sync.schemas.stripe import (
    StripeCheckoutSession,
    StripeCustomer,
    StripeInvoicePayment,
    StripeSubscription,
)

logger = logging.getLogger(__name__)

SIGNATURE_SCHEME = "v1"


class PaymentGatewayError(Exception):
    """A Stripe call failed after retries (or with a non-retryable error)."""

    def __init__(
        self,
        message: str,
        *,
        operation: str,
        status_code: int | None = None,
        code: str | None = None,
        retryable: bool = True,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.operation = operation
        self.status_code = status_code
        self.code = code
        self.retryable = retryable


class WebhookSignatureError(ValueError):
    pass


def _is_retryable(exc: BaseException) -> bool:
    return isinstance(exc, PaymentGatewayError) and exc.retryable


def encode_form(params: dict[str, Any], prefix: str = "") -> list[tuple[str, str]]:
    """Flatten nested params into Stripe's bracketed form encoding.

    ``{"metadata": {"plan": "premium"}}`` -> ``[("metadata[plan]", "premium")]``
    """
    pairs: list[tuple[str, str]] = []
    for key, value in params.items():
        name = f"{prefix}[{key}]" if prefix else str(key)
        if value is None:
            continue
        if isinstance(value, dict):
            pairs.extend(encode_form(value, name))
        elif isinstance(value, list | tuple):
            for index, entry in enumerate(value):
                entry_name = f"{name}[{index}]"
                if isinstance(entry, dict):
                    pairs.extend(encode_form(entry, entry_name))
                else:
                    pairs.append((entry_name, _form_scalar(entry)))
        else:
            pairs.append((name, _form_scalar(value)))
    return pairs


def _form_scalar(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


class StripeGateway:
    """Thin wrapper around the Stripe REST API.

    Every call goes through ``_request`` which bounds the timeout and retries
    transport errors, 429 and 5xx responses. POSTs carry an idempotency key
    when the caller supplies one so retries never double-create.
    """

    def __init__(
        self,
        secret_key: str | None = None,
        webhook_secret: str | None = None,
        *,
        api_base: str | None = None,
        timeout: float | None = None,
        max_retries: int | None = None,
        wait: wait_base | None = None,
    ) -> None:
        self._secret_key = (
            settings.stripe_secret_key if secret_key is None else secret_key
        )
        self._webhook_secret = (
            settings.stripe_webhook_secret if webhook_secret is None else webhook_secret
        )
        self._api_base = (api_base or settings.stripe_api_base).rstrip("/")
        self._timeout = settings.stripe_timeout_seconds if timeout is None else timeout
        self._max_retries = (
            settings.stripe_max_retries if max_retries is None else max_retries
        )
        self._wait = wait or wait_exponential(multiplier=0.5, max=8)
        self._tolerance = settings.stripe_webhook_tolerance_seconds

    def _headers(self, idempotency_key: str | None = None) -> dict[str, str]:
        headers = {
            "Authorization": f"Bearer {self._secret_key}",
            "Content-Type": "application/x-www-form-urlencoded",
        }
        if idempotency_key:
            headers["Idempotency-Key"] = idempotency_key
        return headers

    def is_configured(self) -> bool:
        return bool(self._secret_key)

    def is_webhook_configured(self) -> bool:
        return bool(self._webhook_secret)

    # ── Transport ────────────────────────────────────────

    def _request(
        self,
        method: str,
        path: str,
        *,
        operation: str,
        params: dict[str, Any] | None = None,
        idempotency_key: str | None = None,
        allow_missing: bool = False,
    ) -> dict[str, Any] | None:
        if not self.is_configured():
            raise PaymentGatewayError(
                "Stripe is not configured",
                operation=operation,
                code="not_configured",
                retryable=False,
            )
        retrying = Retrying(
            stop=stop_after_attempt(self._max_retries + 1),
            wait=self._wait,
            retry=retry_if_exception(_is_retryable),
            reraise=True,
        )
        try:
            for attempt in retrying:
                with attempt:
                    result = self._send(
                        method,
                        path,
                        operation=operation,
                        params=params,
                        idempotency_key=idempotency_key,
                        allow_missing=allow_missing,
                    )
        except PaymentGatewayError:
            GATEWAY_REQUESTS.labels(operation, "error").inc()
            raise
        GATEWAY_REQUESTS.labels(operation, "ok").inc()
        return result

    def _send(
        self,
        method: str,
        path: str,
        *,
        operation: str,
        params: dict[str, Any] | None,
        idempotency_key: str | None,
        allow_missing: bool,
    ) -> dict[str, Any] | None:
        url = f"{self._api_base}{path}"
        form = encode_form(params or {})
        try:
            with httpx.Client(timeout=self._timeout) as client:
                if method == "GET":
                    resp = client.get(
                        url, params=form, headers=self._headers()
                    )
                else:
                    resp = client.request(
                        method,
                        url,
                        data=dict(form) if form else None,
                        headers=self._headers(idempotency_key),
                    )
        except httpx.TransportError as exc:
            logger.warning(
                "Stripe %s transport error: %s",
                operation,
                exc,
                extra={"operation": operation},
            )
            raise PaymentGatewayError(
                f"Stripe request failed: {exc}", operation=operation
            ) from exc

        if resp.status_code == 404 and allow_missing:
            return None
        if resp.status_code >= 400:
            error = self._error_body(resp)
            retryable = resp.status_code == 429 or resp.status_code >= 500
            logger.error(
                "Stripe %s failed (%s): %s",
                operation,
                resp.status_code,
                error.get("message"),
                extra={"operation": operation},
            )
            raise PaymentGatewayError(
                error.get("message") or f"Stripe returned {resp.status_code}",
                operation=operation,
                status_code=resp.status_code,
                code=error.get("code"),
                retryable=retryable,
            )
        data: dict[str, Any] = resp.json()
        return data

    @staticmethod
    def _error_body(resp: httpx.Response) -> dict[str, Any]:
        try:
            body = resp.json()
        except ValueError:
            return {}
        if isinstance(body, dict) and isinstance(body.get("error"), dict):
            return body["error"]
        return {}

    # ── Customers ────────────────────────────────────────

    def retrieve_customer(self, customer_id: str) -> StripeCustomer | None:
        """Return the customer, or None if Stripe no longer has it."""
        data = self._request(
            "GET",
            f"/customers/{customer_id}",
            operation="retrieve_customer",
            allow_missing=True,
        )
        if data is None:
            return None
        customer = StripeCustomer.model_validate(data)
        if customer.deleted:
            return None
        return customer

    def create_customer(
        self,
        *,
        email: str | None,
        name: str,
        tenant_id: str,
        idempotency_key: str | None = None,
    ) -> StripeCustomer:
        data = self._request(
            "POST",
            "/customers",
            operation="create_customer",
            params={"email": email, "name": name, "metadata": {"tenant_id": tenant_id}},
            idempotency_key=idempotency_key,
        )
        customer = StripeCustomer.model_validate(data)
        logger.info(
            "Created Stripe customer: %s",
            customer.id,
            extra={"tenant_id": tenant_id},
        )
        return customer

    # ── Checkout ─────────────────────────────────────────

    def create_checkout_session(
        self,
        *,
        customer_id: str,
        price_id: str,
        tenant_id: str,
        plan: str,
        success_url: str,
        cancel_url: str,
        idempotency_key: str | None = None,
    ) -> StripeCheckoutSession:
        """Create a hosted subscription checkout session.

        ``tenant_id`` and ``plan`` are attached both to the session and to the
        subscription it creates, so subscription webhooks can be routed back to
        the tenant even before the customer id is known locally.
        """
        metadata = {"tenant_id": tenant_id, "plan": plan}
        data = self._request(
            "POST",
            "/checkout/sessions",
            operation="create_checkout_session",
            params={
                "mode": "subscription",
                "customer": customer_id,
                "client_reference_id": tenant_id,
                "line_items": [{"price": price_id, "quantity": 1}],
                "success_url": success_url,
                "cancel_url": cancel_url,
                "metadata": metadata,
                "subscription_data": {"metadata": metadata},
                "allow_promotion_codes": True,
                "billing_address_collection": "required",
            },
            idempotency_key=idempotency_key,
        )
        return StripeCheckoutSession.model_validate(data)

    # ── Subscriptions ────────────────────────────────────

    def get_subscription(self, subscription_id: str) -> StripeSubscription:
        data = self._request(
            "GET",
            f"/subscriptions/{subscription_id}",
            operation="get_subscription",
        )
        return StripeSubscription.model_validate(data)

    def update_subscription(
        self,
        subscription_id: str,
        *,
        item_id: str | None = None,
        price_id: str | None = None,
        proration_behavior: str | None = None,
        cancel_at_period_end: bool | None = None,
        metadata: dict[str, str] | None = None,
        idempotency_key: str | None = None,
    ) -> StripeSubscription:
        params: dict[str, Any] = {
            "proration_behavior": proration_behavior,
            "cancel_at_period_end": cancel_at_period_end,
            "metadata": metadata,
        }
        if item_id and price_id:
            params["items"] = [{"id": item_id, "price": price_id}]
        data = self._request(
            "POST",
            f"/subscriptions/{subscription_id}",
            operation="update_subscription",
            params=params,
            idempotency_key=idempotency_key,
        )
        return StripeSubscription.model_validate(data)

    def cancel_subscription(self, subscription_id: str) -> StripeSubscription:
        """Cancel immediately. Stripe treats repeated cancels as a no-op."""
        data = self._request(
            "DELETE",
            f"/subscriptions/{subscription_id}",
            operation="cancel_subscription",
        )
        return StripeSubscription.model_validate(data)

    # ── Invoices ─────────────────────────────────────────

    def list_invoice_payments(self, invoice_id: str) -> list[StripeInvoicePayment]:
        """Payments attached to an invoice, for API versions that no longer
        put ``payment_intent`` on the invoice itself."""
        data = self._request(
            "GET",
            "/invoice_payments",
            operation="list_invoice_payments",
            params={"invoice": invoice_id},
        )
        return [
            StripeInvoicePayment.model_validate(entry)
            for entry in (data or {}).get("data", [])
        ]

    # ── Webhook ──────────────────────────────────────────

    def verify_webhook_signature(
        self, payload: bytes, header: str | None, *, now: float | None = None
    ) -> None:
        """Validate a ``Stripe-Signature`` header against the raw body.

        The header looks like ``t=1700000000,v1=<hex>[,v1=<hex>...]``; the
        signed content is ``"<t>." + body`` under HMAC-SHA256.
        """
        if not header:
            raise WebhookSignatureError("Missing signature header")
        timestamp: int | None = None
        signatures: list[str] = []
        for part in header.split(","):
            key, _, value = part.strip().partition("=")
            if key == "t":
                try:
                    timestamp = int(value)
                except ValueError as exc:
                    raise WebhookSignatureError("Malformed signature timestamp") from exc
            elif key == SIGNATURE_SCHEME:
                signatures.append(value)
        if timestamp is None or not signatures:
            raise WebhookSignatureError("Malformed signature header")

        current = time.time() if now is None else now
        if abs(current - timestamp) > self._tolerance:
            raise WebhookSignatureError("Signature timestamp outside tolerance")

        signed = f"{timestamp}.".encode("utf-8") + payload
        expected = hmac.new(
            self._webhook_secret.encode("utf-8"),
            signed,
            hashlib.sha256,
        ).hexdigest()
        if not any(hmac.compare_digest(expected, sig) for sig in signatures):
            raise WebhookSignatureError("No matching signature")


stripe_gateway = StripeGateway()
