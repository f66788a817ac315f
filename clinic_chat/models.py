"""
SQLAlchemy ORM models for database tables.

This module contains database table definitions using SQLAlchemy.
For Pydantic request/response schemas, see schemas.py.

All timestamps are ISO-8601 UTC strings (see utils.utc_now_iso), which keeps
lexical and chronological order identical.
"""

import uuid

from sqlalchemy import Boolean, Column, ForeignKey, Integer, Float, String, Text, UniqueConstraint

from clinic_chat.storage import Base


def _new_id() -> str:
    return str(uuid.uuid4())


class Connection(Base):
    """
    One gateway instance per tenant.

    Table: whatsapp_connections
    Mutated by connection/pairing webhook events and by health probes;
    never hard-deleted.
    """
    __tablename__ = "whatsapp_connections"

    id = Column(String, primary_key=True, default=_new_id)
    tenant_id = Column(String, nullable=False, unique=True, index=True)
    instance_id = Column(String, nullable=False, unique=True, index=True)
    phone_number = Column(String, nullable=True)
    status = Column(String, nullable=False, default="disconnected")
    pairing_code = Column(Text, nullable=True)
    webhook_url = Column(String, nullable=True)
    last_health_check_at = Column(String, nullable=True)
    health_status = Column(String, nullable=False, default="unknown")
    health_check_error = Column(Text, nullable=True)
    health_check_count = Column(Integer, nullable=False, default=0)
    consecutive_probe_interval = Column(Float, nullable=True)
    created_at = Column(String, nullable=False)
    updated_at = Column(String, nullable=False)


class Conversation(Base):
    """
    Conversation aggregate for a (tenant, counterpart phone) pair.

    Table: conversations
    last_message_* and unread_count are kept in sync by storage.create_message.
    """
    __tablename__ = "conversations"
    __table_args__ = (
        UniqueConstraint("tenant_id", "counterpart_phone", name="uq_conversations_tenant_phone"),
    )

    id = Column(String, primary_key=True, default=_new_id)
    tenant_id = Column(String, nullable=False, index=True)
    counterpart_phone = Column(String, nullable=False)
    linked_patient_id = Column(String, nullable=True)
    display_name = Column(String, nullable=False)
    last_message_at = Column(String, nullable=True, index=True)
    last_message_preview = Column(Text, nullable=True)
    unread_count = Column(Integer, nullable=False, default=0)
    status = Column(String, nullable=False, default="active")
    created_at = Column(String, nullable=False)
    updated_at = Column(String, nullable=False)


class Message(Base):
    """
    A single WhatsApp message.

    Table: messages
    (tenant_id, gateway_message_id) is unique and is the dedup key.
    """
    __tablename__ = "messages"
    __table_args__ = (
        UniqueConstraint("tenant_id", "gateway_message_id", name="uq_messages_tenant_gateway_id"),
    )

    id = Column(String, primary_key=True, default=_new_id)
    conversation_id = Column(
        String,
        ForeignKey("conversations.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    tenant_id = Column(String, nullable=False, index=True)
    direction = Column(String, nullable=False)
    kind = Column(String, nullable=False, default="text")
    content = Column(Text, nullable=True)
    gateway_message_id = Column(String, nullable=True)
    status = Column(String, nullable=False, default="sent")

    media_url = Column(Text, nullable=True)
    media_caption = Column(Text, nullable=True)
    media_mime_type = Column(String, nullable=True)
    media_size = Column(Integer, nullable=True)
    media_width = Column(Integer, nullable=True)
    media_height = Column(Integer, nullable=True)
    media_duration = Column(Integer, nullable=True)
    media_thumbnail = Column(Text, nullable=True)
    media_waveform = Column(Text, nullable=True)
    is_voice_note = Column(Boolean, nullable=False, default=False)
    media_processing_status = Column(String, nullable=False, default="none", index=True)
    media_payload = Column(Text, nullable=True)  # data:<mime>;base64,<body>

    created_at = Column(String, nullable=False, index=True)
    read_at = Column(String, nullable=True)


class Contact(Base):
    """
    Best-effort directory of WhatsApp contacts seen by a tenant.

    Table: whatsapp_contacts
    """
    __tablename__ = "whatsapp_contacts"
    __table_args__ = (
        UniqueConstraint("tenant_id", "phone", name="uq_contacts_tenant_phone"),
    )

    id = Column(String, primary_key=True, default=_new_id)
    tenant_id = Column(String, nullable=False, index=True)
    phone = Column(String, nullable=False)
    display_name = Column(String, nullable=True)
    push_name = Column(String, nullable=True)
    avatar_url = Column(Text, nullable=True)
    last_seen_at = Column(String, nullable=False)
    created_at = Column(String, nullable=False)
    updated_at = Column(String, nullable=False)
