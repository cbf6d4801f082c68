import re
import time
import uuid
from typing import Optional
from contextvars import ContextVar

from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware

from backend.app.core.logging import action_id_ctx, correlation_id_ctx, get_logger

# Additional context var for request-specific event ID
event_id_ctx: ContextVar[Optional[str]] = ContextVar("event_id", default=None)

# /api/v1/actions/{id}[/items|/undo|/retry-failed]
ACTION_PATH_RE = re.compile(r"/actions/(?P<action_id>[A-Za-z0-9_-]+)(?:/|$)")

logger = get_logger(__name__)


def action_id_from_request(request: Request) -> Optional[str]:
    """
    The Action a request is about: the id in an ``/actions/{id}`` path, else
    the idempotency key of a bulk submission (which becomes the Action id).
    """
    match = ACTION_PATH_RE.search(request.url.path)
    if match:
        return match.group("action_id")
    return request.headers.get("Idempotency-Key") or None


class TracingMiddleware(BaseHTTPMiddleware):
    """
    Assigns a Correlation ID and an Event ID to every request and binds the
    Action it targets, so a bulk submission, its undo/retry calls and all of
    their item-level log lines can be tied together.
    """
    async def dispatch(self, request: Request, call_next):
        correlation_id = request.headers.get("X-Correlation-ID") or \
                         request.headers.get("X-Trace-ID") or \
                         str(uuid.uuid4())
        event_id = str(uuid.uuid4())
        action_id = action_id_from_request(request)

        tokens = [
            (correlation_id_ctx, correlation_id_ctx.set(correlation_id)),
            (event_id_ctx, event_id_ctx.set(event_id)),
            (action_id_ctx, action_id_ctx.set(action_id)),
        ]
        request_data = {
            "method": request.method,
            "path": request.url.path,
            "event_id": event_id,
            "action_id": action_id,
        }
        start_time = time.perf_counter()

        try:
            response = await call_next(request)

            logger.info(
                f"{request.method} {request.url.path} completed",
                extra={"extra_data": {
                    **request_data,
                    "status_code": response.status_code,
                    "duration_ms": round((time.perf_counter() - start_time) * 1000, 2),
                    "client_ip": request.client.host if request.client else None,
                }},
            )

            response.headers["X-Correlation-ID"] = correlation_id
            response.headers["X-Event-ID"] = event_id
            if action_id:
                response.headers["X-Action-ID"] = action_id
            return response

        except Exception as e:
            logger.error(
                f"Request failed: {request.method} {request.url.path}",
                extra={"extra_data": {
                    **request_data,
                    "status_code": 500,
                    "duration_ms": round((time.perf_counter() - start_time) * 1000, 2),
                    "error": str(e),
                }},
                exc_info=True,
            )
            raise
        finally:
            for var, token in reversed(tokens):
                var.reset(token)
