"""
Webhook event dispatch and handlers.

The dispatcher maps a gateway event name onto an EventKind and calls the
matching handler. Handlers absorb every recoverable condition (duplicates,
unsupported payloads, status for unknown messages) so the gateway is never
asked to retry; only unexpected exceptions escape.
"""
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy.orm import Session

from clinic_chat import storage
from clinic_chat.connection import ProbeRegistry, apply_connection_update, apply_pairing_code
from clinic_chat.delivery_status import normalize_message_status
from clinic_chat.normalizer import SkipMessage, normalize_upsert

logger = logging.getLogger(__name__)

PROCESSED = "processed"
DUPLICATE = "duplicate"
IGNORED = "ignored"


class EventKind(str, Enum):
    MESSAGE_UPSERT = "message-upsert"
    MESSAGE_STATUS = "message-status"
    CONNECTION_UPDATE = "connection-update"
    PAIRING_CODE_UPDATE = "pairing-code-update"
    SEND_ACK = "send-ack"


_EVENT_NAMES = {
    "MESSAGES_UPSERT": EventKind.MESSAGE_UPSERT,
    "MESSAGES_UPDATE": EventKind.MESSAGE_STATUS,
    "CONNECTION_UPDATE": EventKind.CONNECTION_UPDATE,
    "QRCODE_UPDATED": EventKind.PAIRING_CODE_UPDATE,
    "SEND_MESSAGE": EventKind.SEND_ACK,
}


def normalize_event_kind(event: str) -> Optional[EventKind]:
    """``messages.upsert`` and ``MESSAGES_UPSERT`` name the same event."""
    return _EVENT_NAMES.get(event.strip().upper().replace(".", "_"))


@dataclass
class DispatchContext:
    db: Session
    tenant_id: str
    instance: str
    probe_registry: Optional[ProbeRegistry] = None
    # Messages whose media should be fetched once the response is sent
    media_queue: List[str] = field(default_factory=list)


@dataclass
class DispatchResult:
    kind: Optional[EventKind]
    result: str
    media_queue: List[str] = field(default_factory=list)

    @property
    def event_label(self) -> str:
        return self.kind.value if self.kind else "unknown"


def _items(data: Any) -> List[dict]:
    """Message events carry one object or a list of them."""
    if isinstance(data, dict) and isinstance(data.get("messages"), list):
        data = data["messages"]
    if isinstance(data, list):
        return [item for item in data if isinstance(item, dict)]
    if isinstance(data, dict):
        return [data]
    return []


def _summarize(results: List[str]) -> str:
    if PROCESSED in results:
        return PROCESSED
    if results and all(result == DUPLICATE for result in results):
        return DUPLICATE
    return IGNORED


# =============================================================================
# Handlers
# =============================================================================

def _ingest_message(ctx: DispatchContext, item: dict) -> str:
    try:
        incoming = normalize_upsert(item)
    except SkipMessage as e:
        logger.info(f"Skipping message: {e}")
        return IGNORED

    # Dedup before any side effect that is not itself idempotent
    if incoming.gateway_message_id and storage.get_message_by_gateway_id(
        ctx.db, ctx.tenant_id, incoming.gateway_message_id
    ):
        logger.info(f"Message already exists, skipping duplicate: {incoming.gateway_message_id}")
        return DUPLICATE

    conversation = storage.find_or_create_conversation(
        ctx.db, ctx.tenant_id, incoming.phone, incoming.trusted_name
    )
    if incoming.trusted_name:
        storage.promote_display_name(ctx.db, conversation, incoming.trusted_name)
        storage.upsert_contact(ctx.db, ctx.tenant_id, incoming.phone, incoming.trusted_name)

    body = incoming.body
    message, is_duplicate = storage.create_message(
        ctx.db,
        conversation,
        direction=incoming.direction,
        kind=body.kind.value,
        content=body.content,
        gateway_message_id=incoming.gateway_message_id,
        status="sent",
        media=body.media,
    )
    if is_duplicate:
        return DUPLICATE

    if message.media_processing_status == "pending" and message.gateway_message_id:
        logger.info(f"Scheduling media processing for message {message.id} ({message.kind})")
        ctx.media_queue.append(message.id)

    logger.info(
        f"Message saved: conversation={conversation.id}, kind={message.kind}, "
        f"direction={message.direction}, gateway_id={message.gateway_message_id}"
    )
    return PROCESSED


def handle_message_upsert(ctx: DispatchContext, data: Any) -> str:
    return _summarize([_ingest_message(ctx, item) for item in _items(data)])


def _status_gateway_id(item: dict) -> Optional[str]:
    key = item.get("key") if isinstance(item.get("key"), dict) else {}
    return item.get("keyId") or key.get("id") or item.get("messageId")


def _status_token(item: dict) -> Any:
    update = item.get("update") if isinstance(item.get("update"), dict) else {}
    status = item.get("status")
    return status if status is not None else update.get("status")


def handle_message_status(ctx: DispatchContext, data: Any) -> str:
    results = []
    for item in _items(data):
        gateway_id = _status_gateway_id(item)
        if not gateway_id:
            results.append(IGNORED)
            continue
        status = normalize_message_status(_status_token(item))
        message = storage.update_message_status(ctx.db, ctx.tenant_id, str(gateway_id), status)
        results.append(PROCESSED if message is not None else IGNORED)
    return _summarize(results)


def _connection(ctx: DispatchContext):
    connection = storage.get_connection_by_instance(ctx.db, ctx.instance)
    if connection is None:
        # resolved a moment ago; only a concurrent delete gets here
        raise LookupError(f"Connection for instance {ctx.instance} disappeared")
    return connection


def _notify_probe(ctx: DispatchContext, status: str) -> None:
    if ctx.probe_registry is not None:
        ctx.probe_registry.status_changed(ctx.tenant_id, status)


def handle_connection_update(ctx: DispatchContext, data: Any) -> str:
    connection = apply_connection_update(ctx.db, _connection(ctx), data if isinstance(data, dict) else {})
    _notify_probe(ctx, connection.status)
    return PROCESSED


def handle_pairing_code_update(ctx: DispatchContext, data: Any) -> str:
    connection = apply_pairing_code(ctx.db, _connection(ctx), data)
    if connection is None:
        return IGNORED
    _notify_probe(ctx, connection.status)
    return PROCESSED


def handle_send_ack(ctx: DispatchContext, data: Any) -> str:
    results = []
    for item in _items(data):
        key = item.get("key") if isinstance(item.get("key"), dict) else {}
        gateway_id = key.get("id")
        if not gateway_id:
            results.append(IGNORED)
            continue
        message = storage.attach_gateway_id_to_latest_outbound(ctx.db, ctx.tenant_id, gateway_id)
        results.append(PROCESSED if message is not None else IGNORED)
    return _summarize(results)


HANDLERS: Dict[EventKind, Callable[[DispatchContext, Any], str]] = {
    EventKind.MESSAGE_UPSERT: handle_message_upsert,
    EventKind.MESSAGE_STATUS: handle_message_status,
    EventKind.CONNECTION_UPDATE: handle_connection_update,
    EventKind.PAIRING_CODE_UPDATE: handle_pairing_code_update,
    EventKind.SEND_ACK: handle_send_ack,
}


def dispatch_event(ctx: DispatchContext, event: str, data: Any) -> DispatchResult:
    """
    Route an event to its handler.

    Unknown event kinds are acknowledged without effect.
    """
    kind = normalize_event_kind(event)
    if kind is None:
        logger.info(f"Unhandled event type: {event}")
        return DispatchResult(kind=None, result=IGNORED)

    logger.debug(f"Dispatching {event} as {kind.value} for tenant {ctx.tenant_id}")
    result = HANDLERS[kind](ctx, data)
    return DispatchResult(kind=kind, result=result, media_queue=list(ctx.media_queue))
