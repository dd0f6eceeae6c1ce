from __future__ import annotations

import base64
import binascii
import hmac

from fastapi import Request
from fastapi.responses import Response
from prometheus_client import CONTENT_TYPE_LATEST, Counter, Histogram, generate_latest

from authcore.logging import get_logger
from authcore.service.runtime import get_runtime

logger = get_logger(__name__)

_HTTP_REQUESTS_TOTAL = Counter(
    "authcore_http_requests_total",
    "Total HTTP requests handled by the service.",
    labelnames=("method", "path", "status_code"),
)
_HTTP_REQUEST_DURATION_SECONDS = Histogram(
    "authcore_http_request_duration_seconds",
    "HTTP request duration in seconds.",
    labelnames=("method", "path"),
)

METRICS_REALM = 'Basic realm="metrics"'


def observe_http_request(*, method: str, path: str, status_code: int, duration_ms: int) -> None:
    safe_path = path or "unknown"
    safe_method = method or "UNKNOWN"

    _HTTP_REQUESTS_TOTAL.labels(
        method=safe_method,
        path=safe_path,
        status_code=str(status_code),
    ).inc()
    _HTTP_REQUEST_DURATION_SECONDS.labels(method=safe_method, path=safe_path).observe(
        max(0.0, duration_ms / 1000.0)
    )


def _basic_credentials(header: str) -> tuple[bytes, bytes]:
    try:
        decoded = base64.b64decode(header[len("Basic ") :].strip(), validate=True)
    except (binascii.Error, ValueError):
        return b"", b""
    user, sep, password = decoded.partition(b":")
    if not sep:
        return b"", b""
    return user, password


async def metrics_endpoint(request: Request) -> Response:
    """Prometheus exposition, behind HTTP Basic auth.

    500 when no scrape credentials are configured, 401 with a challenge when
    the request carries none, 403 when they do not match.
    """
    settings = get_runtime().settings
    if not settings.metrics_enabled:
        logger.error("metrics_credentials_missing")
        return Response(status_code=500)

    header = request.headers.get("Authorization", "")
    if not header.startswith("Basic "):
        return Response(status_code=401, headers={"WWW-Authenticate": METRICS_REALM})

    user, password = _basic_credentials(header)
    user_ok = hmac.compare_digest(user, settings.metrics_user.encode("utf-8"))
    password_ok = hmac.compare_digest(password, settings.metrics_password.encode("utf-8"))
    if not (user_ok and password_ok):
        logger.warning("metrics_auth_failed")
        return Response(status_code=403)

    return Response(
        content=generate_latest(),
        media_type=CONTENT_TYPE_LATEST,
        headers={"Cache-Control": "no-store"},
    )
