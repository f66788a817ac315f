"""
Realtime fan-out of persisted changes to dashboard sessions.

Committed INSERT/UPDATEs of connections, conversations and messages are
captured from SQLAlchemy session events and pushed to the owning tenant's
channel. Delivery is at-least-once and unordered: a notification means
"refresh this entity", and consumers merge by entity id (see EntityCache).

The pub/sub is in-process; it can be replaced with Redis or Postgres
LISTEN/NOTIFY without touching the capture side.
"""
import asyncio
import logging
import threading
from collections import defaultdict
from typing import Any, Dict, List, Optional, Set, Tuple

from sqlalchemy import event, inspect
from sqlalchemy.orm import Session

from clinic_chat.config import settings
from clinic_chat.metrics import record_realtime_notification

logger = logging.getLogger(__name__)

TRACKED_TABLES = {"whatsapp_connections", "conversations", "messages"}

# Never pushed; subscribers fetch it from the API when they need it
EXCLUDED_COLUMNS = {"media_payload"}

_STAGED_KEY = "realtime_changes"


def tenant_channel(tenant_id: str) -> str:
    return f"tenant:{tenant_id}"


class ChangeFeed:
    """In-memory pub/sub keyed by channel; safe to publish from any thread."""

    def __init__(self, queue_size: int = 100):
        self._queue_size = queue_size
        self._subscribers: Dict[str, Set[Tuple[asyncio.AbstractEventLoop, asyncio.Queue]]] = defaultdict(set)
        self._lock = threading.Lock()

    async def subscribe(self, channel: str) -> asyncio.Queue:
        """Subscribe to a channel and return a queue for receiving messages."""
        queue: asyncio.Queue = asyncio.Queue(maxsize=self._queue_size)
        loop = asyncio.get_running_loop()
        with self._lock:
            self._subscribers[channel].add((loop, queue))
            total = len(self._subscribers[channel])
        logger.debug(f"Subscriber added to channel '{channel}'. Total: {total}")
        return queue

    async def unsubscribe(self, channel: str, queue: asyncio.Queue) -> int:
        """Unsubscribe from a channel; returns the remaining subscriber count."""
        with self._lock:
            subscribers = self._subscribers[channel]
            for entry in [entry for entry in subscribers if entry[1] is queue]:
                subscribers.discard(entry)
            remaining = len(subscribers)
            if not remaining:
                del self._subscribers[channel]
        logger.debug(f"Subscriber removed from channel '{channel}'. Remaining: {remaining}")
        return remaining

    def subscriber_count(self, channel: str) -> int:
        with self._lock:
            return len(self._subscribers.get(channel, ()))

    def publish(self, channel: str, message: Dict[str, Any]) -> None:
        """Publish a message to all subscribers of a channel without blocking."""
        with self._lock:
            subscribers = list(self._subscribers.get(channel, ()))

        if not subscribers:
            return

        logger.debug(f"Publishing to channel '{channel}' with {len(subscribers)} subscribers")
        for loop, queue in subscribers:
            try:
                loop.call_soon_threadsafe(_deliver, channel, queue, message)
            except RuntimeError:
                # Subscriber's loop is closed; it will unsubscribe on its way out
                logger.debug(f"Dropping message for closed subscriber on '{channel}'")


def _deliver(channel: str, queue: asyncio.Queue, message: Dict[str, Any]) -> None:
    try:
        queue.put_nowait(message)
    except asyncio.QueueFull:
        logger.warning(f"Queue full for subscriber on channel '{channel}', dropping message")


change_feed = ChangeFeed(queue_size=settings.REALTIME_QUEUE_SIZE)


# =============================================================================
# Change capture
# =============================================================================

def _snapshot(obj) -> Optional[Dict[str, Any]]:
    """Loaded column values of a tracked ORM object, without emitting SQL."""
    table = getattr(obj, "__tablename__", None)
    if table not in TRACKED_TABLES:
        return None
    state = inspect(obj)
    record = {
        attr.key: state.dict[attr.key]
        for attr in state.mapper.column_attrs
        if attr.key in state.dict and attr.key not in EXCLUDED_COLUMNS
    }
    # Expired after an earlier commit: the identity still names the row
    if "id" not in record and state.identity:
        record["id"] = state.identity[0]
    return record


def stage_change(session: Session, obj, change_type: str = "UPDATE") -> None:
    """
    Queue a notification for obj, published when the session commits.

    Needed for rows changed by bulk UPDATE statements, which ORM flush events
    do not see.
    """
    record = _snapshot(obj)
    if record is None or not record.get("id"):
        return

    staged = session.info.setdefault(_STAGED_KEY, {})
    key = (obj.__tablename__, record["id"])
    previous = staged.get(key)
    if previous is not None and previous["type"] == "INSERT":
        change_type = "INSERT"
    staged[key] = {
        "table": obj.__tablename__,
        "type": change_type,
        "id": record["id"],
        "tenant_id": record.get("tenant_id"),
        "record": record,
    }


def _after_flush(session: Session, flush_context) -> None:
    for obj in list(session.new):
        stage_change(session, obj, "INSERT")
    for obj in list(session.dirty):
        if session.is_modified(obj, include_collections=False):
            stage_change(session, obj, "UPDATE")


def _after_commit(session: Session) -> None:
    staged = session.info.pop(_STAGED_KEY, None)
    if not staged:
        return
    for notification in staged.values():
        if not notification["tenant_id"]:
            continue
        record_realtime_notification(notification["table"], notification["type"])
        change_feed.publish(tenant_channel(notification["tenant_id"]), notification)


def _after_rollback(session: Session) -> None:
    session.info.pop(_STAGED_KEY, None)


def install_change_capture(session_factory) -> None:
    """Attach the capture hooks to a sessionmaker (idempotent)."""
    if event.contains(session_factory, "after_flush", _after_flush):
        return
    event.listen(session_factory, "after_flush", _after_flush)
    event.listen(session_factory, "after_commit", _after_commit)
    event.listen(session_factory, "after_rollback", _after_rollback)


# =============================================================================
# Subscriber-side merge
# =============================================================================

class EntityCache:
    """
    Client-side view of realtime entities.

    Notifications are merged by (table, id) with last-write-wins on fields,
    so a duplicate notification, or the echo of a row inserted
    optimistically, leaves a single entry.
    """

    def __init__(self):
        self._entities: Dict[Tuple[str, str], Dict[str, Any]] = {}

    def apply(self, notification: Dict[str, Any]) -> bool:
        """Merge a notification; returns True if the cached entity changed."""
        return self.merge(notification["table"], notification["record"])

    def merge(self, table: str, record: Dict[str, Any]) -> bool:
        key = (table, record["id"])
        current = self._entities.get(key)
        if current is None:
            self._entities[key] = dict(record)
            return True

        # A notification older than what we hold must not roll fields back
        incoming_ts = record.get("updated_at")
        current_ts = current.get("updated_at")
        if incoming_ts and current_ts and incoming_ts < current_ts:
            return False

        merged = {**current, **record}
        if merged == current:
            return False
        self._entities[key] = merged
        return True

    def get(self, table: str, entity_id: str) -> Optional[Dict[str, Any]]:
        return self._entities.get((table, entity_id))

    def rows(self, table: str, order_by: str = "created_at") -> List[Dict[str, Any]]:
        rows = [record for (name, _), record in self._entities.items() if name == table]
        return sorted(rows, key=lambda record: (record.get(order_by) or "", record["id"]))
