"""
Pydantic schemas for request/response validation.

This module contains:
- Gateway payload models (webhook envelope, message keys, media variants)
- Request models for dashboard calls
- Response models for API responses
"""

import base64
from typing import Any, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


# =============================================================================
# Gateway Payload Models
# =============================================================================

def _coerce_int(v: Any) -> Optional[int]:
    """Gateway numbers arrive as ints, decimal strings or protobuf Longs."""
    if v is None or v == "":
        return None
    if isinstance(v, bool):
        return int(v)
    if isinstance(v, (int, float)):
        return int(v)
    if isinstance(v, str):
        return int(v.strip())
    if isinstance(v, dict) and "low" in v:
        low = int(v.get("low") or 0) & 0xFFFFFFFF
        high = int(v.get("high") or 0)
        return (high << 32) + low
    raise ValueError(f"not an integer: {v!r}")


def _coerce_b64(v: Any) -> Optional[str]:
    """Binary fields arrive as base64 text or as serialized byte buffers."""
    if v is None or v == "":
        return None
    if isinstance(v, str):
        return v
    if isinstance(v, dict):
        if v.get("type") == "Buffer" and isinstance(v.get("data"), list):
            v = v["data"]
        else:
            # {"0": 255, "1": 216, ...}
            v = [v[k] for k in sorted(v, key=int)]
    if isinstance(v, list):
        return base64.b64encode(bytes(v)).decode("ascii")
    raise ValueError(f"not binary data: {type(v).__name__}")


class WebhookEnvelope(BaseModel):
    """Top-level gateway webhook body: {event, instance, data}."""
    event: str = Field(..., min_length=1, description="Gateway event kind")
    instance: str = Field(..., min_length=1, description="Gateway instance identifier")
    data: Any = Field(None, description="Event-specific payload")

    model_config = ConfigDict(extra="ignore")


class MessageKey(BaseModel):
    id: Optional[str] = None
    remote_jid: Optional[str] = Field(None, alias="remoteJid")
    from_me: bool = Field(False, alias="fromMe")

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    @field_validator("from_me", mode="before")
    @classmethod
    def none_is_false(cls, v: Any) -> bool:
        return bool(v)


class MessageUpsertItem(BaseModel):
    """One message of a messages.upsert event."""
    key: MessageKey = Field(default_factory=MessageKey)
    push_name: Optional[str] = Field(None, alias="pushName")
    message: Optional[dict] = None

    model_config = ConfigDict(extra="ignore", populate_by_name=True)


class MediaPayload(BaseModel):
    """Shared shape of image/video/sticker/audio/document payloads."""
    url: Optional[str] = None
    mimetype: Optional[str] = None
    file_length: Optional[int] = Field(None, alias="fileLength")
    width: Optional[int] = None
    height: Optional[int] = None
    seconds: Optional[int] = None
    caption: Optional[str] = None
    file_name: Optional[str] = Field(None, alias="fileName")
    jpeg_thumbnail: Optional[str] = Field(None, alias="jpegThumbnail")
    ptt: bool = False
    waveform: Optional[str] = None

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    @field_validator("file_length", "width", "height", "seconds", mode="before")
    @classmethod
    def coerce_int(cls, v: Any) -> Optional[int]:
        return _coerce_int(v)

    @field_validator("jpeg_thumbnail", "waveform", mode="before")
    @classmethod
    def coerce_b64(cls, v: Any) -> Optional[str]:
        return _coerce_b64(v)

    @field_validator("ptt", mode="before")
    @classmethod
    def none_is_false(cls, v: Any) -> bool:
        return bool(v)


class LocationPayload(BaseModel):
    name: Optional[str] = None
    address: Optional[str] = None
    latitude: Optional[float] = Field(None, alias="degreesLatitude")
    longitude: Optional[float] = Field(None, alias="degreesLongitude")

    model_config = ConfigDict(extra="ignore", populate_by_name=True)


class ContactPayload(BaseModel):
    display_name: Optional[str] = Field(None, alias="displayName")
    vcard: Optional[str] = None

    model_config = ConfigDict(extra="ignore", populate_by_name=True)


# =============================================================================
# Pydantic Request Models
# =============================================================================

class ProvisionConnectionRequest(BaseModel):
    instance_id: str = Field(..., min_length=1, description="Gateway instance identifier")


class SendTextRequest(BaseModel):
    text: str = Field(..., min_length=1, max_length=4096, description="Message text")


class SendMediaRequest(BaseModel):
    kind: str = Field(..., pattern="^(image|video|audio|document)$", description="Media kind")
    media: str = Field(..., min_length=1, description="Media URL or base64 body")
    mime_type: Optional[str] = None
    caption: Optional[str] = Field(None, max_length=1024)
    file_name: Optional[str] = None


# =============================================================================
# Pydantic Response Models
# =============================================================================

class WebhookResponse(BaseModel):
    """Response model for any recognized or ignored webhook event."""
    success: bool = Field(default=True, description="Event acknowledged")


class ErrorResponse(BaseModel):
    """Response model for error responses."""
    detail: str = Field(..., description="Error description")


class MediaSweepResponse(BaseModel):
    processed: int = Field(..., ge=0, description="Items whose media was retrieved")
    failed: int = Field(..., ge=0, description="Items whose retrieval failed")
    total: int = Field(..., ge=0, description="Items selected for this sweep")


class MediaResponse(BaseModel):
    mime_type: Optional[str] = None
    size: Optional[int] = None
    width: Optional[int] = None
    height: Optional[int] = None
    duration: Optional[int] = None
    thumbnail: Optional[str] = None
    waveform: Optional[str] = None
    caption: Optional[str] = None
    url: Optional[str] = None
    is_voice_note: bool = False
    processing_status: str = "none"
    payload: Optional[str] = None


class MessageResponse(BaseModel):
    """
    Response model for a single message.
    Groups the media_* columns into a nested media object.
    """
    id: str
    conversation_id: str
    tenant_id: str
    direction: str
    kind: str
    content: Optional[str] = None
    gateway_message_id: Optional[str] = None
    status: str
    media: MediaResponse
    created_at: str
    read_at: Optional[str] = None

    @classmethod
    def from_orm_message(cls, msg, include_payload: bool = True) -> "MessageResponse":
        return cls(
            id=msg.id,
            conversation_id=msg.conversation_id,
            tenant_id=msg.tenant_id,
            direction=msg.direction,
            kind=msg.kind,
            content=msg.content,
            gateway_message_id=msg.gateway_message_id,
            status=msg.status,
            media=MediaResponse(
                mime_type=msg.media_mime_type,
                size=msg.media_size,
                width=msg.media_width,
                height=msg.media_height,
                duration=msg.media_duration,
                thumbnail=msg.media_thumbnail,
                waveform=msg.media_waveform,
                caption=msg.media_caption,
                url=msg.media_url,
                is_voice_note=bool(msg.is_voice_note),
                processing_status=msg.media_processing_status,
                payload=msg.media_payload if include_payload else None,
            ),
            created_at=msg.created_at,
            read_at=msg.read_at,
        )


class MessagesListResponse(BaseModel):
    """
    Response model for GET /conversations/{id}/messages with pagination.
    """
    data: List[MessageResponse] = Field(default_factory=list, description="List of messages")
    total: int = Field(..., ge=0, description="Total messages (ignoring limit/offset)")
    limit: int = Field(..., ge=1, le=100, description="Maximum messages per page")
    offset: int = Field(..., ge=0, description="Number of messages skipped")


class ConversationResponse(BaseModel):
    id: str
    tenant_id: str
    counterpart_phone: str
    linked_patient_id: Optional[str] = None
    display_name: str
    last_message_at: Optional[str] = None
    last_message_preview: Optional[str] = None
    unread_count: int = Field(..., ge=0)
    status: str
    created_at: str
    updated_at: str

    model_config = ConfigDict(from_attributes=True)


class ConversationsListResponse(BaseModel):
    data: List[ConversationResponse] = Field(default_factory=list)
    total: int = Field(..., ge=0)
    limit: int = Field(..., ge=1, le=100)
    offset: int = Field(..., ge=0)


class ConnectionResponse(BaseModel):
    id: str
    tenant_id: str
    instance_id: str
    phone_number: Optional[str] = None
    status: str
    pairing_code: Optional[str] = None
    webhook_url: Optional[str] = None
    last_health_check_at: Optional[str] = None
    health_status: str
    health_check_error: Optional[str] = None
    health_check_count: int = Field(..., ge=0)
    consecutive_probe_interval: Optional[float] = None
    created_at: str
    updated_at: str

    model_config = ConfigDict(from_attributes=True)


class HealthResponse(BaseModel):
    """Response model for health check endpoints."""
    status: str = Field(..., description="Health status")
    reason: Optional[str] = Field(None, description="Reason if not ready")
