import logging
from typing import Generator, Optional, Tuple

from sqlalchemy import create_engine, inspect, text, update
from sqlalchemy.orm import sessionmaker, Session, declarative_base
from sqlalchemy.exc import IntegrityError

from clinic_chat.config import settings
from clinic_chat.realtime import install_change_capture, stage_change
from clinic_chat.utils import utc_now_iso

logger = logging.getLogger(__name__)

# check_same_thread=False lets SQLite sessions cross FastAPI's threadpool and
# background tasks; other drivers do not accept the argument
_connect_args = {"check_same_thread": False} if settings.DATABASE_URL.startswith("sqlite") else {}

engine = create_engine(
    settings.DATABASE_URL,
    connect_args=_connect_args,
    echo=False,
)

# Create SessionLocal class for creating database sessions
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

# Every committed change to tracked tables is mirrored to realtime subscribers
install_change_capture(SessionLocal)

# Base class for SQLAlchemy models
Base = declarative_base()

MEDIA_RETRYABLE_STATES = ("pending", "failed")

# Every other kind enters the media pipeline at creation
TEXT_KIND = "text"


def init_db() -> None:
    """
    Initialize the database by creating all tables.
    Called during application startup.
    """
    logger.debug(f"Initializing database with URL: {settings.DATABASE_URL}")
    try:
        # Import models to register them with Base.metadata
        from clinic_chat import models  # noqa: F401

        logger.debug("Creating database tables...")
        Base.metadata.create_all(bind=engine)
        logger.info("Database initialized successfully")
    except Exception as e:
        logger.error(f"Failed to initialize database: {e}")
        raise


def get_db() -> Generator[Session, None, None]:
    """
    Dependency to get database session.
    Yields a session and ensures it's closed after use.
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def check_db_health() -> bool:
    """
    Check if the database is reachable and schema is applied.

    Returns:
        True if DB is healthy and schema exists, False otherwise.
    """
    logger.debug("Checking database health...")
    try:
        with SessionLocal() as db:
            db.execute(text("SELECT 1"))
        for table in ("whatsapp_connections", "conversations", "messages", "whatsapp_contacts"):
            if not inspect(engine).has_table(table):
                logger.error(f"Database schema not applied: '{table}' table not found")
                return False
        logger.debug("Database health check passed")
        return True
    except Exception as e:
        logger.error(f"Database health check failed: {e}")
        return False


# =============================================================================
# Connection Repository Functions
# =============================================================================

def get_connection_by_instance(db: Session, instance_id: str):
    from clinic_chat.models import Connection

    return db.query(Connection).filter(Connection.instance_id == instance_id).first()


def get_connection_by_tenant(db: Session, tenant_id: str):
    from clinic_chat.models import Connection

    return db.query(Connection).filter(Connection.tenant_id == tenant_id).first()


def resolve_tenant(db: Session, instance_id: str) -> Optional[str]:
    """
    Map a gateway instance identifier to the owning tenant id.

    Returns:
        The tenant id, or None when the instance was never provisioned.
    """
    connection = get_connection_by_instance(db, instance_id)
    if connection is None:
        logger.warning(f"No connection found for instance: {instance_id}")
        return None
    return connection.tenant_id


def provision_connection(db: Session, tenant_id: str, instance_id: str):
    """
    Create the tenant's connection row once.

    Returns:
        Tuple of (connection, created)
    """
    from clinic_chat.models import Connection

    existing = get_connection_by_tenant(db, tenant_id)
    if existing is not None:
        return existing, False

    now = utc_now_iso()
    connection = Connection(
        tenant_id=tenant_id,
        instance_id=instance_id,
        status="disconnected",
        health_status="unknown",
        health_check_count=0,
        created_at=now,
        updated_at=now,
    )
    db.add(connection)
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        existing = get_connection_by_tenant(db, tenant_id)
        if existing is None:
            # instance_id is taken by another tenant
            raise
        return existing, False
    logger.info(f"Connection provisioned: tenant={tenant_id}, instance={instance_id}")
    return connection, True


def update_connection(db: Session, connection, **fields):
    """Apply field changes to a connection and commit."""
    for name, value in fields.items():
        setattr(connection, name, value)
    connection.updated_at = utc_now_iso()
    db.commit()
    logger.debug(f"Connection {connection.instance_id} updated: {sorted(fields)}")
    return connection


# =============================================================================
# Conversation / Contact Repository Functions
# =============================================================================

def get_conversation(db: Session, tenant_id: str, conversation_id: str):
    from clinic_chat.models import Conversation

    return (
        db.query(Conversation)
        .filter(Conversation.id == conversation_id, Conversation.tenant_id == tenant_id)
        .first()
    )


def _get_conversation_by_phone(db: Session, tenant_id: str, phone: str):
    from clinic_chat.models import Conversation

    return (
        db.query(Conversation)
        .filter(Conversation.tenant_id == tenant_id, Conversation.counterpart_phone == phone)
        .first()
    )


def find_or_create_conversation(
    db: Session,
    tenant_id: str,
    phone: str,
    observed_name: Optional[str] = None
):
    """
    Find the conversation for (tenant, phone) or create it.

    A new conversation is named after the observed push-name, falling back to
    the phone number. A concurrent creator winning the unique constraint is
    not an error: its row is returned.
    """
    from clinic_chat.models import Conversation

    existing = _get_conversation_by_phone(db, tenant_id, phone)
    if existing is not None:
        return existing

    now = utc_now_iso()
    conversation = Conversation(
        tenant_id=tenant_id,
        counterpart_phone=phone,
        display_name=observed_name or phone,
        unread_count=0,
        status="active",
        created_at=now,
        updated_at=now,
    )
    db.add(conversation)
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        logger.info(f"Conversation for {phone} created concurrently, reusing it")
        return _get_conversation_by_phone(db, tenant_id, phone)

    logger.info(f"Conversation created: id={conversation.id}, tenant={tenant_id}, phone={phone}")
    return conversation


def promote_display_name(db: Session, conversation, push_name: Optional[str]) -> bool:
    """
    Replace a phone-number display name with a human name.

    Only a display name that still equals the raw phone is replaced, so a
    confirmed name is never downgraded.
    """
    if not push_name or conversation.display_name != conversation.counterpart_phone:
        return False

    logger.info(
        f"Updating conversation name from phone to pushName: id={conversation.id}, new={push_name}"
    )
    conversation.display_name = push_name
    conversation.updated_at = utc_now_iso()
    db.commit()
    return True


def upsert_contact(db: Session, tenant_id: str, phone: str, push_name: str):
    """Record a push-name in the best-effort contact directory."""
    from clinic_chat.models import Contact

    now = utc_now_iso()
    contact = (
        db.query(Contact)
        .filter(Contact.tenant_id == tenant_id, Contact.phone == phone)
        .first()
    )
    if contact is None:
        contact = Contact(
            tenant_id=tenant_id,
            phone=phone,
            display_name=push_name,
            push_name=push_name,
            last_seen_at=now,
            created_at=now,
            updated_at=now,
        )
        db.add(contact)
    else:
        contact.push_name = push_name
        if not contact.display_name:
            contact.display_name = push_name
        contact.last_seen_at = now
        contact.updated_at = now

    try:
        db.commit()
    except IntegrityError:
        # Inserted by a concurrent event for the same phone; the directory is best-effort
        db.rollback()
        logger.debug(f"Contact {phone} upserted concurrently")
        return None
    return contact


def mark_conversation_read(db: Session, tenant_id: str, conversation_id: str):
    """Explicit read action: the only way unread_count goes back to zero."""
    conversation = get_conversation(db, tenant_id, conversation_id)
    if conversation is None:
        return None
    conversation.unread_count = 0
    conversation.updated_at = utc_now_iso()
    db.commit()
    logger.info(f"Conversation marked as read: {conversation_id}")
    return conversation


def list_conversations(
    db: Session,
    tenant_id: str,
    limit: int = 50,
    offset: int = 0,
    status: Optional[str] = None,
    unread_only: bool = False
) -> Tuple[list, int]:
    """
    Retrieve a tenant's conversations, most recently active first.

    Returns:
        Tuple of (conversations list, total count matching filters)
    """
    from clinic_chat.models import Conversation

    query = db.query(Conversation).filter(Conversation.tenant_id == tenant_id)
    if status:
        query = query.filter(Conversation.status == status)
    if unread_only:
        query = query.filter(Conversation.unread_count > 0)

    total = query.count()
    # NULLs (no message yet) sort last
    query = query.order_by(
        Conversation.last_message_at.is_(None),
        Conversation.last_message_at.desc(),
        Conversation.id.asc(),
    )
    conversations = query.offset(offset).limit(limit).all()
    logger.debug(f"Retrieved {len(conversations)} of {total} conversations for tenant {tenant_id}")
    return conversations, total


# =============================================================================
# Message Repository Functions
# =============================================================================

def get_message_by_gateway_id(db: Session, tenant_id: str, gateway_message_id: str):
    """
    Retrieve a message by its gateway id within a tenant.

    Args:
        db: Database session
        tenant_id: Owning tenant
        gateway_message_id: Gateway-assigned message id (the dedup key)

    Returns:
        Message object if found, None otherwise
    """
    from clinic_chat.models import Message

    return (
        db.query(Message)
        .filter(Message.tenant_id == tenant_id, Message.gateway_message_id == gateway_message_id)
        .first()
    )


def create_message(
    db: Session,
    conversation,
    direction: str,
    kind: str,
    content: Optional[str] = None,
    gateway_message_id: Optional[str] = None,
    status: str = "sent",
    media: Optional[dict] = None
):
    """
    Insert a message and update its conversation aggregate in one transaction.

    The conversation gets last_message_at/last_message_preview from the new
    message and, for inbound traffic only, unread_count + 1.

    Returns:
        Tuple of (message, is_duplicate)
        - (message, False): Message created
        - (None, True): gateway_message_id already stored for this tenant
    """
    from clinic_chat.models import Conversation, Message

    media = media or {}
    logger.info(
        f"Creating message: conversation={conversation.id}, kind={kind}, "
        f"direction={direction}, gateway_id={gateway_message_id}"
    )

    created_at = utc_now_iso()
    message = Message(
        conversation_id=conversation.id,
        tenant_id=conversation.tenant_id,
        direction=direction,
        kind=kind,
        content=content,
        gateway_message_id=gateway_message_id,
        status=status,
        media_url=media.get("url"),
        media_caption=media.get("caption"),
        media_mime_type=media.get("mime_type"),
        media_size=media.get("size"),
        media_width=media.get("width"),
        media_height=media.get("height"),
        media_duration=media.get("duration"),
        media_thumbnail=media.get("thumbnail"),
        media_waveform=media.get("waveform"),
        is_voice_note=bool(media.get("is_voice_note", False)),
        media_processing_status="none" if kind == TEXT_KIND else "pending",
        created_at=created_at,
    )

    values = {
        "last_message_at": created_at,
        "last_message_preview": content or f"[{kind}]",
        "updated_at": created_at,
    }
    if direction == "inbound":
        values["unread_count"] = Conversation.unread_count + 1

    try:
        db.add(message)
        db.flush()
        db.execute(
            update(Conversation)
            .where(Conversation.id == conversation.id)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        db.refresh(conversation)
        stage_change(db, conversation)
        db.commit()
    except IntegrityError:
        # gateway_message_id already exists - this is expected for idempotency
        db.rollback()
        logger.info(f"Duplicate message detected: {gateway_message_id}")
        return None, True
    except Exception as e:
        db.rollback()
        logger.error(f"Failed to create message {gateway_message_id}: {e}")
        raise

    logger.info(f"Message created successfully: {message.id}")
    return message, False


def update_message_status(
    db: Session,
    tenant_id: str,
    gateway_message_id: str,
    status: str
):
    """
    Apply a delivery status to a message identified by its gateway id.

    Returns:
        The updated message, or None when it is not (yet) stored.
    """
    message = get_message_by_gateway_id(db, tenant_id, gateway_message_id)
    if message is None:
        logger.info(f"Status {status} for unknown message {gateway_message_id}, ignoring")
        return None

    message.status = status
    if status == "read" and message.read_at is None:
        message.read_at = utc_now_iso()
    db.commit()
    logger.info(f"Message {gateway_message_id} status -> {status}")
    return message


def attach_gateway_id_to_latest_outbound(db: Session, tenant_id: str, gateway_message_id: str):
    """
    Give the newest outbound message still lacking a gateway id the acked id.

    Returns:
        The updated message, or None when nothing matched or the id is taken.
    """
    from clinic_chat.models import Message

    if get_message_by_gateway_id(db, tenant_id, gateway_message_id) is not None:
        return None

    message = (
        db.query(Message)
        .filter(
            Message.tenant_id == tenant_id,
            Message.direction == "outbound",
            Message.gateway_message_id.is_(None),
        )
        .order_by(Message.created_at.desc())
        .first()
    )
    if message is None:
        return None

    message.gateway_message_id = gateway_message_id
    message.status = "sent"
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        return None
    return message


def list_messages(
    db: Session,
    conversation_id: str,
    limit: int = 50,
    offset: int = 0
) -> Tuple[list, int]:
    """
    Retrieve a conversation's messages in creation order.

    Returns:
        Tuple of (messages list, total count)
    """
    from clinic_chat.models import Message

    query = db.query(Message).filter(Message.conversation_id == conversation_id)
    total = query.count()
    messages = (
        query.order_by(Message.created_at.asc(), Message.id.asc())
        .offset(offset)
        .limit(limit)
        .all()
    )
    logger.debug(f"Retrieved {len(messages)} of {total} messages for conversation {conversation_id}")
    return messages, total


# =============================================================================
# Media Processing Repository Functions
# =============================================================================

def claim_media(db: Session, message_id: str):
    """
    Move a message's media from pending/failed to processing.

    The conditional UPDATE is the serialization point: only one caller can
    claim a given message per attempt.

    Returns:
        The claimed message, or None if it was not claimable.
    """
    from clinic_chat.models import Message

    result = db.execute(
        update(Message)
        .where(
            Message.id == message_id,
            Message.media_processing_status.in_(MEDIA_RETRYABLE_STATES),
        )
        .values(media_processing_status="processing")
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        db.rollback()
        logger.debug(f"Media for message {message_id} not claimable")
        return None

    message = db.get(Message, message_id, populate_existing=True)
    stage_change(db, message)
    db.commit()
    return message


def finish_media(db: Session, message_id: str, payload: Optional[str]):
    """
    Close a processing attempt: completed with a payload, failed without one.

    Returns:
        The message, or None when it was not in processing state.
    """
    from clinic_chat.models import Message

    message = db.get(Message, message_id, populate_existing=True)
    if message is None or message.media_processing_status != "processing":
        logger.warning(f"Media for message {message_id} is not processing, result dropped")
        return None

    if payload is None:
        message.media_processing_status = "failed"
        message.media_payload = None
    else:
        message.media_processing_status = "completed"
        message.media_payload = payload
    db.commit()
    return message


def list_media_backlog(db: Session, tenant_id: str, limit: int = 10) -> list:
    """Oldest non-text messages with a gateway id whose media is still pending or failed."""
    from clinic_chat.models import Message

    return (
        db.query(Message)
        .filter(
            Message.tenant_id == tenant_id,
            Message.kind != TEXT_KIND,
            Message.gateway_message_id.isnot(None),
            Message.media_processing_status.in_(MEDIA_RETRYABLE_STATES),
            Message.media_payload.is_(None),
        )
        .order_by(Message.created_at.asc())
        .limit(limit)
        .all()
    )
