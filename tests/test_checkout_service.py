import pytest
from fastapi import HTTPException

from billing_sync.models.billing import BillingPlan, SubscriptionStatus
from billing_sync.models.tenant import Tenant
from billing_sync.services.billing import CheckoutService, plans, resolve_customer
from billing_sync.services.billing.subscriptions import subscriptions
from billing_sync.services.payment_gateway import PaymentGatewayError


def _gateway_error(status_code: int = 502) -> PaymentGatewayError:
    return PaymentGatewayError(
        "Stripe unavailable",
        operation="test",
        status_code=status_code,
        retryable=status_code >= 500,
    )


class TestResolveCustomer:
    def test_creates_customer_for_provisional_id(
        self, db_session, tenant, free_subscription, fake_gateway
    ):
        customer_id = resolve_customer(db_session, tenant, free_subscription, fake_gateway)
        db_session.commit()

        assert customer_id.startswith("cus_")
        assert free_subscription.external_customer_id == customer_id
        (_, kwargs), = fake_gateway.calls_for("create_customer")
        assert kwargs["email"] == tenant.billing_email
        assert kwargs["tenant_id"] == str(tenant.id)
        assert kwargs["idempotency_key"] == f"customer:{tenant.id}:temp_{tenant.id}"
        assert fake_gateway.call_count("retrieve_customer") == 0

    def test_reuses_existing_customer(
        self, db_session, tenant, free_subscription, fake_gateway
    ):
        existing = fake_gateway.add_customer(email=tenant.billing_email)
        free_subscription.external_customer_id = existing
        db_session.commit()

        assert (
            resolve_customer(db_session, tenant, free_subscription, fake_gateway)
            == existing
        )
        assert fake_gateway.call_count("create_customer") == 0

    def test_recreates_deleted_customer(
        self, db_session, tenant, free_subscription, fake_gateway
    ):
        deleted = fake_gateway.add_customer(deleted=True)
        free_subscription.external_customer_id = deleted
        db_session.commit()

        customer_id = resolve_customer(
            db_session, tenant, free_subscription, fake_gateway
        )

        assert customer_id != deleted
        assert fake_gateway.call_count("create_customer") == 1


class TestStartUpgrade:
    def test_returns_checkout_session(self, db_session, tenant, fake_gateway):
        result = CheckoutService(db_session, fake_gateway).start_upgrade(
            tenant.id, BillingPlan.premium
        )

        assert result["session_id"].startswith("cs_test_")
        assert result["url"].endswith(result["session_id"])
        (_, kwargs), = fake_gateway.calls_for("create_checkout_session")
        assert kwargs["price_id"] == "price_premium"
        assert kwargs["plan"] == "premium"
        assert kwargs["tenant_id"] == str(tenant.id)
        assert kwargs["success_url"] == (
            "https://app.example.com/billing/success?session_id={CHECKOUT_SESSION_ID}"
        )
        assert kwargs["cancel_url"] == "https://app.example.com/billing/cancel"

    def test_does_not_change_plan_before_payment(self, db_session, tenant, fake_gateway):
        CheckoutService(db_session, fake_gateway).start_upgrade(
            tenant.id, BillingPlan.enterprise
        )

        record = subscriptions.get_for_tenant(db_session, tenant.id)
        assert record.plan == BillingPlan.free
        assert record.external_subscription_id is None
        assert record.external_customer_id.startswith("cus_")
        assert db_session.get(Tenant, tenant.id).plan == BillingPlan.free

    def test_custom_redirect_urls(self, db_session, tenant, fake_gateway):
        CheckoutService(db_session, fake_gateway).start_upgrade(
            tenant.id,
            BillingPlan.standard,
            success_url="https://custom/success",
            cancel_url="https://custom/cancel",
        )

        (_, kwargs), = fake_gateway.calls_for("create_checkout_session")
        assert kwargs["success_url"] == "https://custom/success"
        assert kwargs["cancel_url"] == "https://custom/cancel"

    def test_free_plan_is_rejected(self, db_session, tenant, fake_gateway):
        with pytest.raises(HTTPException) as exc_info:
            CheckoutService(db_session, fake_gateway).start_upgrade(
                tenant.id, BillingPlan.free
            )
        assert exc_info.value.status_code == 400
        assert exc_info.value.detail["code"] == "free_plan_checkout"

    def test_unconfigured_price_is_rejected(
        self, db_session, tenant, fake_gateway, monkeypatch
    ):
        monkeypatch.setattr(plans.settings, "stripe_price_enterprise", "")

        with pytest.raises(HTTPException) as exc_info:
            CheckoutService(db_session, fake_gateway).start_upgrade(
                tenant.id, BillingPlan.enterprise
            )
        assert exc_info.value.detail["code"] == "price_not_configured"
        assert fake_gateway.call_count("create_checkout_session") == 0


class TestChangePlan:
    def test_switches_price_with_proration(
        self, db_session, premium_subscription, fake_gateway
    ):
        record = CheckoutService(db_session, fake_gateway).change_plan(
            premium_subscription.tenant_id, BillingPlan.enterprise
        )

        assert record.plan == BillingPlan.enterprise
        assert record.external_price_id == "price_enterprise"
        assert db_session.get(Tenant, record.tenant_id).plan == BillingPlan.enterprise
        (args, kwargs), = fake_gateway.calls_for("update_subscription")
        assert args == (premium_subscription.external_subscription_id,)
        assert kwargs["price_id"] == "price_enterprise"
        assert kwargs["proration_behavior"] == "create_prorations"
        assert kwargs["metadata"]["plan"] == "enterprise"

    def test_does_not_move_ordering_marker(
        self, db_session, premium_subscription, fake_gateway
    ):
        premium_subscription.last_event_created = 1_000
        db_session.commit()

        record = CheckoutService(db_session, fake_gateway).change_plan(
            premium_subscription.tenant_id, BillingPlan.standard
        )

        assert record.last_event_created == 1_000

    def test_requires_existing_subscription(
        self, db_session, free_subscription, fake_gateway
    ):
        with pytest.raises(HTTPException) as exc_info:
            CheckoutService(db_session, fake_gateway).change_plan(
                free_subscription.tenant_id, BillingPlan.premium
            )
        assert exc_info.value.status_code == 409
        assert exc_info.value.detail["code"] == "no_active_subscription"

    def test_gateway_failure_leaves_record_untouched(
        self, db_session, premium_subscription, fake_gateway
    ):
        fake_gateway.should_raise = _gateway_error()

        with pytest.raises(PaymentGatewayError):
            CheckoutService(db_session, fake_gateway).change_plan(
                premium_subscription.tenant_id, BillingPlan.enterprise
            )
        db_session.rollback()

        db_session.refresh(premium_subscription)
        assert premium_subscription.plan == BillingPlan.premium
        assert premium_subscription.external_price_id == "price_premium"

    def test_free_plan_downgrades(self, db_session, premium_subscription, fake_gateway):
        remote_id = premium_subscription.external_subscription_id

        record = CheckoutService(db_session, fake_gateway).change_plan(
            premium_subscription.tenant_id, BillingPlan.free
        )

        assert record.plan == BillingPlan.free
        assert record.external_subscription_id is None
        assert fake_gateway.subscriptions[remote_id]["status"] == "canceled"
        assert db_session.get(Tenant, record.tenant_id).plan == BillingPlan.free


class TestCancel:
    def test_cancel_at_period_end_keeps_plan(
        self, db_session, premium_subscription, fake_gateway
    ):
        record = CheckoutService(db_session, fake_gateway).cancel(
            premium_subscription.tenant_id
        )

        assert record.cancel_at_period_end is True
        assert record.status == SubscriptionStatus.active
        assert db_session.get(Tenant, record.tenant_id).plan == BillingPlan.premium
        assert fake_gateway.call_count("cancel_subscription") == 0

    def test_immediate_cancel_drops_tenant_to_free(
        self, db_session, premium_subscription, fake_gateway
    ):
        record = CheckoutService(db_session, fake_gateway).cancel(
            premium_subscription.tenant_id, at_period_end=False
        )

        assert record.status == SubscriptionStatus.canceled
        assert record.canceled_at is not None
        assert db_session.get(Tenant, record.tenant_id).plan == BillingPlan.free

    def test_cancel_without_subscription_is_noop(
        self, db_session, free_subscription, fake_gateway
    ):
        record = CheckoutService(db_session, fake_gateway).cancel(
            free_subscription.tenant_id
        )

        assert record.plan == BillingPlan.free
        assert fake_gateway.call_count("update_subscription") == 0


class TestDowngradeToFree:
    def test_already_free_is_noop(self, db_session, free_subscription, fake_gateway):
        CheckoutService(db_session, fake_gateway).downgrade_to_free(free_subscription)

        assert fake_gateway.call_count("cancel_subscription") == 0
        assert free_subscription.status == SubscriptionStatus.active

    def test_missing_remote_subscription_is_tolerated(
        self, db_session, premium_subscription, fake_gateway
    ):
        fake_gateway.subscriptions.clear()

        record = CheckoutService(db_session, fake_gateway).downgrade_to_free(
            premium_subscription
        )

        assert record.plan == BillingPlan.free
        assert record.status == SubscriptionStatus.canceled

    def test_other_gateway_errors_propagate(
        self, db_session, premium_subscription, fake_gateway
    ):
        fake_gateway.should_raise = _gateway_error()

        with pytest.raises(PaymentGatewayError):
            CheckoutService(db_session, fake_gateway).downgrade_to_free(
                premium_subscription
            )
        db_session.rollback()
        db_session.refresh(premium_subscription)
        assert premium_subscription.plan == BillingPlan.premium
