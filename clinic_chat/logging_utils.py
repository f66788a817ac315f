import logging
import sys
import time
import uuid
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Callable, Optional

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware
from pythonjsonlogger import jsonlogger

from clinic_chat.metrics import record_http_request


# Context variable to store request_id for the current request
request_id_ctx: ContextVar[Optional[str]] = ContextVar("request_id", default=None)

# Paths whose requests are neither measured nor logged per request
_QUIET_PATHS = ("/metrics", "/realtime/stream")


class CustomJsonFormatter(jsonlogger.JsonFormatter):
    """JSON formatter adding ISO-8601 timestamps, level and request_id."""

    def add_fields(self, log_record, record, message_dict):
        super().add_fields(log_record, record, message_dict)
        if not log_record.get('ts'):
            log_record['ts'] = datetime.now(timezone.utc).strftime('%Y-%m-%dT%H:%M:%S.%f')[:-3] + 'Z'
        log_record['level'] = record.levelname

        if 'request_id' not in log_record:
            req_id = request_id_ctx.get()
            if req_id:
                log_record['request_id'] = req_id


def setup_logging(log_level: str = "INFO"):
    """
    Setup structured JSON logging for the application.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
    """
    logger = logging.getLogger()
    logger.setLevel(log_level.upper())
    logger.handlers = []

    json_handler = logging.StreamHandler(sys.stdout)
    formatter = CustomJsonFormatter(
        '%(ts)s %(level)s %(name)s %(message)s'
    )
    json_handler.setFormatter(formatter)
    logger.addHandler(json_handler)

    for logger_name in ("uvicorn", "uvicorn.error", "uvicorn.access"):
        uvicorn_logger = logging.getLogger(logger_name)
        uvicorn_logger.handlers = []
        uvicorn_logger.addHandler(json_handler)
        uvicorn_logger.propagate = False

    # Requests are logged by RequestLoggingMiddleware
    logging.getLogger("uvicorn.access").disabled = True
    # Per-request HTTP lines of the gateway client are noise at INFO
    logging.getLogger("httpx").setLevel(logging.WARNING)

    return logger


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """
    Log every HTTP request as one structured JSON line.

    Keys: ts, level, request_id, method, path, status, latency_ms.
    Webhook requests add event, instance, tenant_id and result.
    """

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        request.state.request_id = request_id
        token = request_id_ctx.set(request_id)
        start_time = time.time()

        try:
            response = await call_next(request)
            response.headers["X-Request-ID"] = request_id

            latency_seconds = time.time() - start_time
            if request.url.path in _QUIET_PATHS:
                return response

            # Route templates keep conversation ids out of metric labels
            route = request.scope.get("route")
            record_http_request(
                method=request.method,
                path=getattr(route, "path", request.url.path),
                status=response.status_code,
                latency_seconds=latency_seconds
            )

            log_data = {
                "request_id": request_id,
                "method": request.method,
                "path": request.url.path,
                "status": response.status_code,
                "latency_ms": round(latency_seconds * 1000, 2),
            }
            if hasattr(request.state, "webhook_log_data"):
                log_data.update(request.state.webhook_log_data)

            logger = logging.getLogger("clinic_chat.requests")
            if response.status_code >= 500:
                logger.error("Request completed", extra=log_data)
            elif response.status_code >= 400:
                logger.warning("Request completed", extra=log_data)
            else:
                logger.info("Request completed", extra=log_data)

            return response
        finally:
            request_id_ctx.reset(token)


def log_webhook_data(
    request: Request,
    event: Optional[str] = None,
    instance: Optional[str] = None,
    tenant_id: Optional[str] = None,
    result: Optional[str] = None,
):
    """
    Attach webhook-specific logging data to the request state.
    The middleware includes it in the request log line.

    Args:
        request: FastAPI request object
        event: Event name as sent by the gateway
        instance: Gateway instance identifier
        tenant_id: Tenant resolved from the instance
        result: Processing result (processed, duplicate, ignored,
            invalid_envelope, unknown_instance, error)
    """
    webhook_data = {}
    if event is not None:
        webhook_data["event"] = event
    if instance is not None:
        webhook_data["instance"] = instance
    if tenant_id is not None:
        webhook_data["tenant_id"] = tenant_id
    if result is not None:
        webhook_data["result"] = result

    request.state.webhook_log_data = webhook_data
