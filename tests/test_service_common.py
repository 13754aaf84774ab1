"""Tests for the shared service helpers."""

from __future__ import annotations

import json
import logging
import uuid
from datetime import UTC, datetime, timedelta, timezone

import pytest
from fastapi import HTTPException

from billing_sync.logging import JsonLogFormatter
from billing_sync.models.billing import PaymentStatus, WebhookEvent
from billing_sync.services.common import (
    apply_ordering,
    apply_pagination,
    coerce_uuid,
    ensure_utc,
    insert_ignore,
    require_uuid,
    validate_enum,
)
from billing_sync.services.response import list_response


class TestCoerceUuid:
    def test_none_returns_none(self) -> None:
        assert coerce_uuid(None) is None

    def test_uuid_passthrough(self) -> None:
        u = uuid.uuid4()
        assert coerce_uuid(u) is u

    def test_string_to_uuid(self) -> None:
        s = "12345678-1234-5678-1234-567812345678"
        assert str(coerce_uuid(s)) == s

    def test_invalid_string_raises(self) -> None:
        with pytest.raises(ValueError):
            coerce_uuid("not-a-uuid")

    def test_require_uuid_rejects_none(self) -> None:
        with pytest.raises(ValueError):
            require_uuid(None)


class TestEnsureUtc:
    def test_naive_gets_utc(self) -> None:
        assert ensure_utc(datetime(2026, 1, 1)).tzinfo is UTC

    def test_aware_is_kept(self) -> None:
        value = datetime(2026, 1, 1, tzinfo=timezone(timedelta(hours=2)))
        assert ensure_utc(value) is value

    def test_none(self) -> None:
        assert ensure_utc(None) is None


def test_validate_enum() -> None:
    assert validate_enum("failed", PaymentStatus, "status") == PaymentStatus.failed
    with pytest.raises(HTTPException) as exc_info:
        validate_enum("lost", PaymentStatus, "status")
    assert exc_info.value.status_code == 400
    assert "succeeded" in exc_info.value.detail


class TestOrderingAndPagination:
    def _seed(self, db_session) -> str:
        event_type = f"test.{uuid.uuid4().hex[:8]}"
        for created in (30, 10, 20):
            db_session.add(
                WebhookEvent(
                    event_type=event_type,
                    event_id=f"evt_{uuid.uuid4().hex}",
                    event_created=created,
                )
            )
        db_session.commit()
        return event_type

    def test_orders_and_pages(self, db_session) -> None:
        event_type = self._seed(db_session)
        query = db_session.query(WebhookEvent).filter(
            WebhookEvent.event_type == event_type
        )
        allowed = {"event_created": WebhookEvent.event_created}

        ordered = apply_ordering(query, "event_created", "asc", allowed)
        assert [e.event_created for e in ordered.all()] == [10, 20, 30]

        page = apply_pagination(
            apply_ordering(query, "event_created", "desc", allowed), 2, 1
        )
        assert [e.event_created for e in page.all()] == [20, 10]

    def test_unknown_column_is_400(self, db_session) -> None:
        query = db_session.query(WebhookEvent)
        with pytest.raises(HTTPException) as exc_info:
            apply_ordering(query, "payload", "asc", {"event_created": None})
        assert exc_info.value.status_code == 400


class TestInsertIgnore:
    def test_second_insert_is_ignored(self, db_session) -> None:
        values = {
            "event_id": f"evt_{uuid.uuid4().hex}",
            "event_type": "invoice.payment_succeeded",
            "event_created": 1,
        }
        assert insert_ignore(db_session, WebhookEvent, values, ["event_id"]) is True
        assert insert_ignore(db_session, WebhookEvent, values, ["event_id"]) is False
        db_session.commit()

        count = (
            db_session.query(WebhookEvent)
            .filter(WebhookEvent.event_id == values["event_id"])
            .count()
        )
        assert count == 1


def test_list_response_envelope() -> None:
    assert list_response([1, 2], limit=10, offset=0, total=12) == {
        "items": [1, 2],
        "count": 2,
        "limit": 10,
        "offset": 0,
        "total": 12,
    }


def test_json_log_formatter_includes_context() -> None:
    tenant_id = uuid.uuid4()
    record = logging.LogRecord(
        "billing_sync.test", logging.INFO, __file__, 1, "Synced %s", ("sub_1",), None
    )
    record.tenant_id = tenant_id
    record.event_type = "customer.subscription.updated"

    payload = json.loads(JsonLogFormatter().format(record))

    assert payload["message"] == "Synced sub_1"
    assert payload["level"] == "INFO"
    assert payload["tenant_id"] == str(tenant_id)
    assert payload["event_type"] == "customer.subscription.updated"
    assert "request_id" not in payload
