import logging
import os
import time
import uuid

from jose import JWTError, jwt
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from billing_sync.metrics import REQUEST_COUNT, REQUEST_ERRORS, REQUEST_LATENCY

logger = logging.getLogger(__name__)


def extract_bearer_token(authorization: str | None) -> str | None:
    if not authorization:
        return None
    parts = authorization.split(" ", 1)
    if len(parts) == 2 and parts[0].lower() == "bearer":
        return parts[1].strip()
    return None


def jwt_secret() -> str | None:
    secret = os.getenv("JWT_SECRET")
    if secret:
        return secret
    return None


def jwt_algorithm() -> str:
    return os.getenv("JWT_ALGORITHM", "HS256")


def decode_claims(token: str | None) -> dict:
    """Best-effort claim decoding for log correlation; never raises."""
    if not token:
        return {}
    secret = jwt_secret()
    if not secret:
        return {}
    try:
        return jwt.decode(token, secret, algorithms=[jwt_algorithm()])
    except JWTError:
        return {}


def _request_path(request: Request) -> str:
    route = request.scope.get("route")
    if route and hasattr(route, "path"):
        return route.path
    return request.url.path


class ObservabilityMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        request_id = request.headers.get("x-request-id") or str(uuid.uuid4())
        request.state.request_id = request_id
        claims = decode_claims(
            extract_bearer_token(request.headers.get("authorization"))
        )
        context = {
            "request_id": request_id,
            "actor_id": claims.get("sub"),
            "tenant_id": claims.get("tenant_id"),
            "method": request.method,
        }
        start = time.monotonic()
        status_code = 500
        try:
            response = await call_next(request)
            status_code = response.status_code
        except Exception:
            duration_ms = (time.monotonic() - start) * 1000.0
            path = _request_path(request)
            self._observe(request.method, path, status_code, duration_ms)
            logger.exception(
                "request_failed",
                extra={
                    **context,
                    "path": path,
                    "status": status_code,
                    "duration_ms": round(duration_ms, 2),
                },
            )
            raise
        duration_ms = (time.monotonic() - start) * 1000.0
        path = _request_path(request)
        self._observe(request.method, path, status_code, duration_ms)
        logger.info(
            "request_completed",
            extra={
                **context,
                "path": path,
                "status": status_code,
                "duration_ms": round(duration_ms, 2),
            },
        )
        response.headers["x-request-id"] = request_id
        return response

    @staticmethod
    def _observe(method: str, path: str, status_code: int, duration_ms: float) -> None:
        status = str(status_code)
        REQUEST_COUNT.labels(method, path, status).inc()
        REQUEST_LATENCY.labels(method, path, status).observe(duration_ms / 1000.0)
        if status_code >= 500:
            REQUEST_ERRORS.labels(method, path, status).inc()
