import uuid

from fastapi import Header, HTTPException
from jose import JWTError, jwt

from billing_sync.db import SessionLocal
from billing_sync.observability import extract_bearer_token, jwt_algorithm, jwt_secret
from billing_sync.services.payment_gateway import StripeGateway, stripe_gateway


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def get_payment_gateway() -> StripeGateway:
    return stripe_gateway


def require_tenant(authorization: str | None = Header(default=None)) -> uuid.UUID:
    """Resolve the calling tenant from the bearer token's ``tenant_id`` claim."""
    token = extract_bearer_token(authorization)
    if not token:
        raise HTTPException(status_code=401, detail="Missing bearer token")
    secret = jwt_secret()
    if not secret:
        raise HTTPException(status_code=401, detail="Authentication not configured")
    try:
        payload = jwt.decode(token, secret, algorithms=[jwt_algorithm()])
    except JWTError as exc:
        raise HTTPException(status_code=401, detail="Invalid token") from exc
    tenant_id = payload.get("tenant_id")
    if not tenant_id:
        raise HTTPException(status_code=403, detail="Token has no tenant")
    try:
        return uuid.UUID(str(tenant_id))
    except ValueError as exc:
        raise HTTPException(status_code=403, detail="Token has no tenant") from exc
