from __future__ import annotations

import json
import logging
import time
import uuid

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response
from starlette.types import ASGIApp


def _json_line_logger(name: str) -> logging.Logger:
    target = logging.getLogger(name)
    if not target.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter("%(message)s"))
        target.addHandler(handler)
    target.setLevel(logging.INFO)
    target.propagate = False
    return target


logger = _json_line_logger("app.request")
# Parent of every billing service logger.
_json_line_logger("app.services")

WEBHOOK_PREFIX = "/webhooks/"


def _level_for(status: int) -> int:
    if status >= 500:
        return logging.ERROR
    if status >= 400:
        return logging.WARNING
    return logging.INFO


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """One JSON line per request; the request id is echoed back in ``X-Request-Id``."""

    def __init__(self, app: ASGIApp) -> None:
        super().__init__(app)

    async def dispatch(self, request: Request, call_next) -> Response:
        request_id = request.headers.get("x-request-id") or str(uuid.uuid4())
        request.state.request_id = request_id
        start = time.perf_counter()
        try:
            response = await call_next(request)
        except Exception:
            duration_ms = int((time.perf_counter() - start) * 1000)
            payload = self._build_payload(request, request_id, duration_ms, status=500)
            logger.exception(json.dumps(payload, ensure_ascii=True))
            raise

        duration_ms = int((time.perf_counter() - start) * 1000)
        payload = self._build_payload(request, request_id, duration_ms, status=response.status_code)
        logger.log(_level_for(response.status_code), json.dumps(payload, ensure_ascii=True))
        response.headers["X-Request-Id"] = request_id
        return response

    @staticmethod
    def _build_payload(request: Request, request_id: str, duration_ms: int, status: int) -> dict:
        forwarded = request.headers.get("x-forwarded-for")
        client_ip = forwarded.split(",")[0].strip() if forwarded else (request.client.host if request.client else None)
        path = request.url.path
        payload = {
            "event": "http_request",
            "request_id": request_id,
            "method": request.method,
            "path": path,
            "status": status,
            "duration_ms": duration_ms,
            "client_ip": client_ip,
        }
        if path.startswith(WEBHOOK_PREFIX):
            payload["provider"] = path[len(WEBHOOK_PREFIX):].strip("/") or None
        return payload


def log_billing_event(target: logging.Logger, level: int, event: str, **context) -> None:
    """Emit one JSON line for a reconciliation decision; never raises."""
    payload = {"event": event}
    payload.update({key: value for key, value in context.items() if value is not None})
    try:
        message = json.dumps(payload, ensure_ascii=True, default=str)
    except (TypeError, ValueError):
        message = f"{event} {context!r}"
    target.log(level, message)
