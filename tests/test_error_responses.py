"""Tests for structured error responses with request_id."""
from __future__ import annotations

import pytest
from fastapi import FastAPI, HTTPException
from fastapi.testclient import TestClient
from pydantic import BaseModel

from billing_sync.errors import register_error_handlers
from billing_sync.observability import ObservabilityMiddleware
from billing_sync.services.payment_gateway import PaymentGatewayError


class _Body(BaseModel):
    amount: int


@pytest.fixture
def app_with_errors() -> FastAPI:
    app = FastAPI()
    app.add_middleware(ObservabilityMiddleware)
    register_error_handlers(app)

    @app.get("/ok")
    def ok():
        return {"ok": True}

    @app.get("/http-error")
    def http_error():
        raise HTTPException(status_code=403, detail="Forbidden")

    @app.get("/http-error-dict")
    def http_error_dict():
        raise HTTPException(
            status_code=409,
            detail={
                "code": "no_active_subscription",
                "message": "Start a checkout first",
                "details": {"plan": "premium"},
            },
        )

    @app.post("/validate")
    def validate(body: _Body):
        return body

    @app.get("/gateway")
    def gateway():
        raise PaymentGatewayError(
            "No such customer",
            operation="create_checkout_session",
            status_code=400,
            code="resource_missing",
            retryable=False,
        )

    @app.get("/crash")
    def crash():
        raise RuntimeError("boom")

    return app


@pytest.fixture
def client(app_with_errors: FastAPI) -> TestClient:
    return TestClient(app_with_errors, raise_server_exceptions=False)


class TestErrorResponses:
    def test_http_error_includes_request_id(self, client: TestClient) -> None:
        resp = client.get("/http-error")
        assert resp.status_code == 403
        body = resp.json()
        assert "request_id" in body
        assert body["code"] == "http_403"
        assert body["message"] == "Forbidden"

    def test_http_error_dict_detail(self, client: TestClient) -> None:
        resp = client.get("/http-error-dict")
        assert resp.status_code == 409
        body = resp.json()
        assert body["code"] == "no_active_subscription"
        assert body["message"] == "Start a checkout first"
        assert body["details"] == {"plan": "premium"}

    def test_validation_error(self, client: TestClient) -> None:
        resp = client.post("/validate", json={"amount": "lots"})
        assert resp.status_code == 422
        body = resp.json()
        assert body["code"] == "validation_error"
        assert body["details"][0]["loc"] == ["body", "amount"]

    def test_payment_gateway_error_is_502(self, client: TestClient) -> None:
        resp = client.get("/gateway")
        assert resp.status_code == 502
        body = resp.json()
        assert body["code"] == "payment_gateway_error"
        assert body["details"] == {
            "operation": "create_checkout_session",
            "provider_code": "resource_missing",
            "retryable": False,
        }
        # Provider messages stay in the logs.
        assert "No such customer" not in body["message"]

    def test_unhandled_exception_includes_request_id(self, client: TestClient) -> None:
        resp = client.get("/crash")
        assert resp.status_code == 500
        body = resp.json()
        assert body["code"] == "internal_error"
        assert body["message"] == "Internal server error"
        assert "request_id" in body
        assert body["details"] is None

    def test_request_id_propagated_from_header(self, client: TestClient) -> None:
        custom_id = "test-request-id-12345"
        resp = client.get("/http-error", headers={"X-Request-Id": custom_id})
        assert resp.json()["request_id"] == custom_id

    def test_success_response_has_request_id_header(self, client: TestClient) -> None:
        resp = client.get("/ok")
        assert resp.status_code == 200
        assert "x-request-id" in resp.headers
