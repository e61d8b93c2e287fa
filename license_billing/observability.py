import logging
import time
import uuid

from jose import JWTError, jwt
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from license_billing.config import settings
from license_billing.metrics import REQUEST_COUNT, REQUEST_ERRORS, REQUEST_LATENCY

logger = logging.getLogger(__name__)


def extract_bearer_token(request: Request) -> str | None:
    auth = request.headers.get("authorization")
    if not auth:
        return None
    parts = auth.split(" ", 1)
    if len(parts) == 2 and parts[0].lower() == "bearer":
        return parts[1].strip()
    return None


def email_from_token(token: str | None) -> str | None:
    """Dashboard sessions carry the account email in ``email``, older ones in ``sub``."""
    if not token or not settings.jwt_secret:
        return None
    try:
        payload = jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
    except JWTError:
        return None
    subject = payload.get("email") or payload.get("sub")
    return str(subject).strip().lower() if subject else None


def _route_path(request: Request) -> str:
    # Route templates keep metric label cardinality bounded.
    route = request.scope.get("route")
    return getattr(route, "path", None) or request.url.path


class ObservabilityMiddleware(BaseHTTPMiddleware):
    """Request id, caller account, Prometheus counters and one log line per request."""

    async def dispatch(self, request: Request, call_next):
        request_id = request.headers.get("x-request-id") or str(uuid.uuid4())
        request.state.request_id = request_id
        account = email_from_token(extract_bearer_token(request))
        start = time.monotonic()
        try:
            response = await call_next(request)
        except Exception:
            self._observe(request, 500, start, request_id, account, failed=True)
            raise
        self._observe(request, response.status_code, start, request_id, account)
        response.headers["x-request-id"] = request_id
        return response

    @staticmethod
    def _observe(
        request: Request,
        status_code: int,
        start: float,
        request_id: str,
        account: str | None,
        failed: bool = False,
    ) -> None:
        duration = time.monotonic() - start
        path = _route_path(request)
        labels = (request.method, path, str(status_code))
        REQUEST_COUNT.labels(*labels).inc()
        REQUEST_LATENCY.labels(*labels).observe(duration)
        if status_code >= 500:
            REQUEST_ERRORS.labels(*labels).inc()
        extra = {
            "request_id": request_id,
            "account": account,
            "path": path,
            "method": request.method,
            "status": status_code,
            "duration_ms": round(duration * 1000.0, 2),
        }
        if failed:
            logger.exception("request_failed", extra=extra)
        else:
            logger.info("request_completed", extra=extra)
