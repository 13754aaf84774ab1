"""Shared service utilities: UUID coercion, ordering, pagination, upserts."""
from __future__ import annotations

import enum
import uuid
from datetime import UTC, datetime
from typing import Any, TypeVar

from fastapi import HTTPException
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.orm import Query, Session

from billing_sync.db import Base

E = TypeVar("E", bound=enum.Enum)


def coerce_uuid(value: Any) -> uuid.UUID | None:
    """Convert a string or UUID to UUID, or return None."""
    if value is None:
        return None
    if isinstance(value, uuid.UUID):
        return value
    return uuid.UUID(str(value))


def require_uuid(value: Any) -> uuid.UUID:
    """Convert a string or UUID to UUID, raising ValueError if None."""
    result = coerce_uuid(value)
    if result is None:
        raise ValueError("UUID value is required but got None")
    return result


def ensure_utc(value: datetime | None) -> datetime | None:
    """Attach UTC to naive datetimes. SQLite doesn't preserve tz info."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value


def validate_enum(value: str, enum_cls: type[E], label: str) -> E:
    try:
        return enum_cls(value)
    except ValueError as exc:
        allowed = ", ".join(member.value for member in enum_cls)
        raise HTTPException(
            status_code=400,
            detail=f"Invalid {label}. Allowed: {allowed}",
        ) from exc


def apply_ordering(
    query: Query,
    order_by: str,
    order_dir: str,
    allowed_columns: dict[str, Any],
) -> Query:
    """Apply ordering to a query with validation."""
    if order_by not in allowed_columns:
        raise HTTPException(
            status_code=400,
            detail=f"Invalid order_by. Allowed: {', '.join(sorted(allowed_columns))}",
        )
    column = allowed_columns[order_by]
    if order_dir == "desc":
        return query.order_by(column.desc())
    return query.order_by(column.asc())


def apply_pagination(query: Query, limit: int, offset: int) -> Query:
    """Apply limit/offset to a query."""
    return query.limit(limit).offset(offset)


def insert_ignore(
    db: Session,
    model: type[Base],
    values: dict[str, Any],
    conflict_columns: list[str],
) -> bool:
    """INSERT ... ON CONFLICT DO NOTHING. Returns True if a row was written.

    Uniqueness is left to the database so concurrent writers (duplicate
    webhook deliveries, parallel first requests) cannot both insert.
    """
    dialect = db.get_bind().dialect.name
    if dialect == "postgresql":
        stmt = postgresql.insert(model).values(**values)
    elif dialect == "sqlite":
        stmt = sqlite.insert(model).values(**values)
    else:
        raise NotImplementedError(f"insert_ignore is not supported on {dialect}")
    stmt = stmt.on_conflict_do_nothing(index_elements=conflict_columns)
    result = db.execute(stmt)
    return result.rowcount == 1
