import asyncio
import json
import logging
from contextlib import asynccontextmanager
from typing import Annotated

from fastapi import BackgroundTasks, FastAPI, Response, Request, Depends, Header, HTTPException, status, Query
from fastapi.responses import StreamingResponse
from pydantic import ValidationError
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from clinic_chat import storage
from clinic_chat.config import settings
from clinic_chat.connection import ProbeRegistry, make_tenant_probe, probe_connection
from clinic_chat.gateway import GatewayClient, GatewayError, WEBHOOK_EVENTS
from clinic_chat.handlers import DispatchContext, dispatch_event
from clinic_chat.logging_utils import setup_logging, RequestLoggingMiddleware, log_webhook_data
from clinic_chat.media import MediaPipeline
from clinic_chat.metrics import record_webhook_outcome, get_metrics, get_metrics_content_type
from clinic_chat.normalizer import MEDIA_PLACEHOLDERS
from clinic_chat.realtime import change_feed, tenant_channel
from clinic_chat.storage import init_db, check_db_health, get_db
from clinic_chat.utils import verify_hmac_signature
from clinic_chat.schemas import (
    ConnectionResponse,
    ConversationResponse,
    ConversationsListResponse,
    ErrorResponse,
    HealthResponse,
    MediaSweepResponse,
    MessageResponse,
    MessagesListResponse,
    ProvisionConnectionRequest,
    SendMediaRequest,
    SendTextRequest,
    WebhookEnvelope,
    WebhookResponse,
)


# Setup structured JSON logging
setup_logging(settings.LOG_LEVEL)
logger = logging.getLogger(__name__)

WEBHOOK_PATH = "/webhooks/gateway"


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Lifespan context manager for startup and shutdown events.
    - Startup: create tables, open the gateway client, build the media
      pipeline and the per-tenant probe registry
    - Shutdown: stop probes and close the gateway client
    """
    init_db()
    gateway = GatewayClient(
        base_url=settings.GATEWAY_BASE_URL,
        api_key=settings.GATEWAY_API_KEY,
        timeout=settings.GATEWAY_TIMEOUT_SECONDS,
    )
    app.state.gateway = gateway
    app.state.media_pipeline = MediaPipeline(gateway)
    # Reads app.state.gateway at activation time so a swapped client is honored
    app.state.probe_registry = ProbeRegistry(
        lambda tenant_id: make_tenant_probe(app.state.gateway, tenant_id)
    )
    yield
    await app.state.probe_registry.shutdown()
    await gateway.aclose()


app = FastAPI(
    title="Clinic Chat Sync",
    description="WhatsApp ingestion and synchronization service for clinic dashboards",
    version="1.0.0",
    lifespan=lifespan,
)

# Add request logging middleware
app.add_middleware(RequestLoggingMiddleware)


# =============================================================================
# Dependencies
# =============================================================================

def get_gateway(request: Request) -> GatewayClient:
    return request.app.state.gateway


def get_media_pipeline(request: Request) -> MediaPipeline:
    return request.app.state.media_pipeline


def get_probe_registry(request: Request) -> ProbeRegistry:
    return request.app.state.probe_registry


def require_tenant(
    x_tenant_id: Annotated[str | None, Header(alias="X-Tenant-ID")] = None,
    x_signature: Annotated[str | None, Header(alias="X-Signature")] = None,
) -> str:
    """
    Authenticate a dashboard request.

    X-Signature must be the hex HMAC-SHA256 of X-Tenant-ID under
    DASHBOARD_SECRET.
    """
    if not x_tenant_id or not x_signature:
        logger.error("Missing X-Tenant-ID or X-Signature header")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="invalid signature"
        )
    if not verify_hmac_signature(x_tenant_id.encode("utf-8"), x_signature, settings.DASHBOARD_SECRET):
        logger.error(f"Invalid signature for tenant {x_tenant_id}")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="invalid signature"
        )
    return x_tenant_id


TenantId = Annotated[str, Depends(require_tenant)]


def _require_conversation(db: Session, tenant_id: str, conversation_id: str):
    conversation = storage.get_conversation(db, tenant_id, conversation_id)
    if conversation is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Conversation not found")
    return conversation


def _require_connection(db: Session, tenant_id: str):
    connection = storage.get_connection_by_tenant(db, tenant_id)
    if connection is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="WhatsApp connection not found")
    return connection


# =============================================================================
# Health Check Routes
# =============================================================================

@app.get("/health/live", response_model=HealthResponse)
async def health_live() -> HealthResponse:
    """
    Liveness probe - always returns 200 once the app is running.
    Used by orchestrators to determine if the app needs to be restarted.
    """
    return HealthResponse(status="ok")


@app.get("/health/ready", response_model=HealthResponse)
async def health_ready(response: Response) -> HealthResponse:
    """
    Readiness probe - returns 200 only if:
    1. DB is reachable and schema is applied
    2. DASHBOARD_SECRET is set (non-empty)

    Otherwise returns 503 (Service Unavailable).
    """
    if not settings.DASHBOARD_SECRET:
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
        return HealthResponse(
            status="not_ready",
            reason="DASHBOARD_SECRET not configured"
        )

    if not check_db_health():
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
        return HealthResponse(
            status="not_ready",
            reason="Database not reachable or schema not applied"
        )

    return HealthResponse(status="ready")


# =============================================================================
# Webhook Routes
# =============================================================================

def _webhook_failure(request: Request, status_code: int, detail: str, result: str,
                     event: str | None = None, instance: str | None = None) -> HTTPException:
    record_webhook_outcome(event or "unknown", result)
    log_webhook_data(request=request, event=event, instance=instance, result=result)
    return HTTPException(status_code=status_code, detail=detail)


async def _process_webhook(
    request: Request,
    background_tasks: BackgroundTasks,
    db: Session,
    pipeline: MediaPipeline,
    registry: ProbeRegistry,
) -> WebhookResponse:
    raw_body = await request.body()
    logger.debug(f"Webhook body size: {len(raw_body)} bytes")

    try:
        body = json.loads(raw_body)
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        logger.error(f"Invalid JSON: {e}")
        raise _webhook_failure(request, status.HTTP_400_BAD_REQUEST, "Invalid JSON", "invalid_envelope")

    try:
        envelope = WebhookEnvelope.model_validate(body)
    except ValidationError as e:
        logger.error(f"Invalid webhook envelope: {e.error_count()} errors")
        raise _webhook_failure(
            request, status.HTTP_400_BAD_REQUEST, "Missing event or instance", "invalid_envelope"
        )

    logger.info(f"Webhook received: event={envelope.event}, instance={envelope.instance}")

    tenant_id = storage.resolve_tenant(db, envelope.instance)
    if tenant_id is None:
        raise _webhook_failure(
            request,
            status.HTTP_404_NOT_FOUND,
            "Instance not found",
            "unknown_instance",
            event=envelope.event,
            instance=envelope.instance,
        )

    ctx = DispatchContext(db=db, tenant_id=tenant_id, instance=envelope.instance, probe_registry=registry)
    try:
        result = dispatch_event(ctx, envelope.event, envelope.data)
    except Exception:
        logger.exception(f"Webhook processing failed: event={envelope.event}, instance={envelope.instance}")
        db.rollback()
        raise _webhook_failure(
            request,
            status.HTTP_500_INTERNAL_SERVER_ERROR,
            "Internal server error",
            "error",
            event=envelope.event,
            instance=envelope.instance,
        )

    # Media is fetched after the response is sent
    for message_id in result.media_queue:
        background_tasks.add_task(pipeline.process_message, message_id, envelope.instance)

    record_webhook_outcome(result.event_label, result.result)
    log_webhook_data(
        request=request,
        event=envelope.event,
        instance=envelope.instance,
        tenant_id=tenant_id,
        result=result.result,
    )
    return WebhookResponse()


@app.post(
    WEBHOOK_PATH,
    response_model=WebhookResponse,
    responses={
        400: {"model": ErrorResponse, "description": "Malformed envelope"},
        404: {"model": ErrorResponse, "description": "Unknown instance"},
        500: {"model": ErrorResponse, "description": "Unexpected processing error"},
    }
)
async def gateway_webhook(
    request: Request,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    pipeline: MediaPipeline = Depends(get_media_pipeline),
    registry: ProbeRegistry = Depends(get_probe_registry),
) -> WebhookResponse:
    """
    Ingest gateway events: {event, instance, data}.

    - 400 when the body is not JSON or lacks event/instance
    - 404 when the instance is not provisioned for any tenant
    - 200 for processed, duplicate, ignored and unknown events
    """
    return await _process_webhook(request, background_tasks, db, pipeline, registry)


@app.post("/whatsapp/webhook", response_model=WebhookResponse, include_in_schema=False)
async def gateway_webhook_alias(
    request: Request,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    pipeline: MediaPipeline = Depends(get_media_pipeline),
    registry: ProbeRegistry = Depends(get_probe_registry),
) -> WebhookResponse:
    """Legacy webhook URL still configured on older gateway instances."""
    return await _process_webhook(request, background_tasks, db, pipeline, registry)


# =============================================================================
# Media Route
# =============================================================================

@app.post("/chat/media-queue/process", response_model=MediaSweepResponse)
async def process_media_queue(
    tenant_id: TenantId,
    pipeline: MediaPipeline = Depends(get_media_pipeline),
) -> MediaSweepResponse:
    """
    Retry media retrieval for the tenant's oldest pending/failed messages.
    """
    try:
        result = await pipeline.sweep(tenant_id)
    except LookupError:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="WhatsApp connection not found")

    return MediaSweepResponse(processed=result.processed, failed=result.failed, total=result.total)


# =============================================================================
# Conversation Routes
# =============================================================================

@app.get("/conversations", response_model=ConversationsListResponse)
async def list_conversations(
    tenant_id: TenantId,
    limit: Annotated[int, Query(ge=1, le=100, description="Maximum number of conversations to return")] = 50,
    offset: Annotated[int, Query(ge=0, description="Number of conversations to skip")] = 0,
    status_param: Annotated[str | None, Query(alias="status", description="Filter by conversation status")] = None,
    unread: Annotated[bool, Query(description="Only conversations with unread messages")] = False,
    db: Session = Depends(get_db)
) -> ConversationsListResponse:
    """
    List the tenant's conversations, most recently active first.
    Conversations without messages come last.
    """
    conversations, total = storage.list_conversations(
        db=db,
        tenant_id=tenant_id,
        limit=limit,
        offset=offset,
        status=status_param,
        unread_only=unread,
    )
    logger.info(f"GET /conversations: returned {len(conversations)} of {total} (limit={limit}, offset={offset})")

    return ConversationsListResponse(
        data=[ConversationResponse.model_validate(c) for c in conversations],
        total=total,
        limit=limit,
        offset=offset,
    )


@app.get("/conversations/{conversation_id}/messages", response_model=MessagesListResponse)
async def list_conversation_messages(
    conversation_id: str,
    tenant_id: TenantId,
    limit: Annotated[int, Query(ge=1, le=100, description="Maximum number of messages to return")] = 50,
    offset: Annotated[int, Query(ge=0, description="Number of messages to skip")] = 0,
    include_media: Annotated[bool, Query(description="Include the retrieved media data URI")] = True,
    db: Session = Depends(get_db)
) -> MessagesListResponse:
    """
    List a conversation's messages in chronological order.
    """
    _require_conversation(db, tenant_id, conversation_id)
    messages, total = storage.list_messages(db, conversation_id, limit=limit, offset=offset)

    return MessagesListResponse(
        data=[MessageResponse.from_orm_message(m, include_payload=include_media) for m in messages],
        total=total,
        limit=limit,
        offset=offset,
    )


@app.post("/conversations/{conversation_id}/read", response_model=ConversationResponse)
async def mark_conversation_read(
    conversation_id: str,
    tenant_id: TenantId,
    db: Session = Depends(get_db)
) -> ConversationResponse:
    """Reset the unread counter; the only operation that lowers it."""
    conversation = storage.mark_conversation_read(db, tenant_id, conversation_id)
    if conversation is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Conversation not found")
    return ConversationResponse.model_validate(conversation)


def _sent_gateway_id(response: dict) -> str | None:
    key = response.get("key") if isinstance(response, dict) else None
    return key.get("id") if isinstance(key, dict) else None


def _persist_outbound(db: Session, conversation, kind: str, content: str, gateway_id, media=None):
    message, is_duplicate = storage.create_message(
        db,
        conversation,
        direction="outbound",
        kind=kind,
        content=content,
        gateway_message_id=gateway_id,
        status="sent",
        media=media,
    )
    if is_duplicate:
        # The gateway's echo of our own send was ingested first
        message = storage.get_message_by_gateway_id(db, conversation.tenant_id, gateway_id)
    return message


@app.post("/conversations/{conversation_id}/messages", response_model=MessageResponse)
async def send_text_message(
    conversation_id: str,
    body: SendTextRequest,
    tenant_id: TenantId,
    db: Session = Depends(get_db),
    gateway: GatewayClient = Depends(get_gateway),
) -> MessageResponse:
    """Send a text through the gateway and store it as an outbound message."""
    conversation = _require_conversation(db, tenant_id, conversation_id)
    connection = _require_connection(db, tenant_id)

    try:
        response = await gateway.send_text(connection.instance_id, conversation.counterpart_phone, body.text)
    except GatewayError as e:
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(e))

    message = _persist_outbound(db, conversation, "text", body.text, _sent_gateway_id(response))
    return MessageResponse.from_orm_message(message)


@app.post("/conversations/{conversation_id}/media", response_model=MessageResponse)
async def send_media_message(
    conversation_id: str,
    body: SendMediaRequest,
    tenant_id: TenantId,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    gateway: GatewayClient = Depends(get_gateway),
    pipeline: MediaPipeline = Depends(get_media_pipeline),
) -> MessageResponse:
    """
    Send image/video/audio/document through the gateway.

    The stored message goes through the regular media pipeline, so its
    payload is fetched back from the gateway like any received media.
    """
    conversation = _require_conversation(db, tenant_id, conversation_id)
    connection = _require_connection(db, tenant_id)

    try:
        response = await gateway.send_media(
            connection.instance_id,
            conversation.counterpart_phone,
            media_type=body.kind,
            media=body.media,
            mime_type=body.mime_type,
            caption=body.caption,
            file_name=body.file_name,
        )
    except GatewayError as e:
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(e))

    gateway_id = _sent_gateway_id(response)
    content = body.caption or body.file_name or MEDIA_PLACEHOLDERS[body.kind]
    message = _persist_outbound(
        db,
        conversation,
        body.kind,
        content,
        gateway_id,
        media={"caption": body.caption, "mime_type": body.mime_type},
    )
    if message.media_processing_status == "pending" and message.gateway_message_id:
        background_tasks.add_task(pipeline.process_message, message.id, connection.instance_id)
    return MessageResponse.from_orm_message(message)


# =============================================================================
# Connection Routes
# =============================================================================

@app.get("/whatsapp/connection", response_model=ConnectionResponse)
async def get_connection(
    tenant_id: TenantId,
    db: Session = Depends(get_db)
) -> ConnectionResponse:
    return ConnectionResponse.model_validate(_require_connection(db, tenant_id))


@app.post("/whatsapp/connection", response_model=ConnectionResponse)
async def provision_connection(
    body: ProvisionConnectionRequest,
    tenant_id: TenantId,
    response: Response,
    db: Session = Depends(get_db),
    gateway: GatewayClient = Depends(get_gateway),
) -> ConnectionResponse:
    """
    Bind the tenant to a gateway instance (once).

    When PUBLIC_BASE_URL is configured the instance's webhook is pointed at
    this service; a gateway failure there does not fail provisioning.
    """
    try:
        connection, created = storage.provision_connection(db, tenant_id, body.instance_id)
    except IntegrityError:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="Instance already bound to another tenant"
        )
    if created:
        response.status_code = status.HTTP_201_CREATED

    if created and settings.PUBLIC_BASE_URL:
        webhook_url = settings.PUBLIC_BASE_URL.rstrip("/") + WEBHOOK_PATH
        try:
            await gateway.set_webhook(connection.instance_id, webhook_url, WEBHOOK_EVENTS)
            connection = storage.update_connection(db, connection, webhook_url=webhook_url)
        except GatewayError as e:
            logger.warning(f"Webhook registration failed for {connection.instance_id}: {e}")
            connection = storage.update_connection(
                db, connection, health_check_error=f"Webhook registration failed: {e}"
            )

    return ConnectionResponse.model_validate(connection)


@app.post("/whatsapp/health-check", response_model=ConnectionResponse)
async def run_health_check(
    tenant_id: TenantId,
    db: Session = Depends(get_db),
    gateway: GatewayClient = Depends(get_gateway),
    registry: ProbeRegistry = Depends(get_probe_registry),
) -> ConnectionResponse:
    """Probe the gateway now and reconcile the stored connection state."""
    connection = _require_connection(db, tenant_id)
    connection = await probe_connection(db, gateway, connection)
    registry.status_changed(tenant_id, connection.status)
    return ConnectionResponse.model_validate(connection)


# =============================================================================
# Realtime Route
# =============================================================================

@app.get("/realtime/stream")
async def realtime_stream(
    request: Request,
    tenant_id: TenantId,
    db: Session = Depends(get_db),
    registry: ProbeRegistry = Depends(get_probe_registry),
):
    """
    Server-Sent Events stream of the tenant's row changes.

    Events:
        - connected: stream is subscribed
        - change: {table, type, id, tenant_id, record}
    The first subscriber of a tenant starts its health probes, the last one
    leaving pauses them.
    """
    channel = tenant_channel(tenant_id)
    connection = storage.get_connection_by_tenant(db, tenant_id)
    connection_status = connection.status if connection is not None else None
    heartbeat_interval = settings.REALTIME_HEARTBEAT_SECONDS

    async def event_generator():
        queue = await change_feed.subscribe(channel)
        if connection_status is not None:
            registry.activate(tenant_id, connection_status)

        try:
            yield f"event: connected\ndata: {json.dumps({'tenant_id': tenant_id})}\n\n"
            while True:
                if await request.is_disconnected():
                    break
                try:
                    notification = await asyncio.wait_for(queue.get(), timeout=heartbeat_interval)
                except asyncio.TimeoutError:
                    yield ": heartbeat\n\n"
                    continue
                yield f"event: change\ndata: {json.dumps(notification, default=str)}\n\n"
        except asyncio.CancelledError:
            logger.info(f"Realtime stream cancelled for tenant {tenant_id}")
            raise
        finally:
            remaining = await change_feed.unsubscribe(channel, queue)
            if remaining == 0:
                registry.deactivate(tenant_id)

    return StreamingResponse(
        event_generator(),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",
        },
    )


# =============================================================================
# Metrics Route
# =============================================================================

@app.get("/metrics")
async def metrics() -> Response:
    """
    Expose Prometheus-style metrics.

    Returns metrics in Prometheus text exposition format including:
    - http_requests_total: Total HTTP requests by method, path, status
    - request_latency_seconds: Request latency histogram
    - webhook_events_total: Webhook outcomes by event kind and result
    - media_retrievals_total, health_probes_total, realtime_notifications_total
    """
    return Response(
        content=get_metrics(),
        media_type=get_metrics_content_type()
    )
