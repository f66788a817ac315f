"""
Message normalization.

Gateway message payloads come in many shapes: one optional nested object per
message variant (``imageMessage``, ``audioMessage``, ...), sometimes wrapped
in an ephemeral/view-once envelope. Each variant has one extractor feeding a
single canonical NormalizedMessage. Unrecognized variants become a
placeholder text so ingestion never stalls on a new payload type.
"""
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple

from pydantic import ValidationError

from clinic_chat.schemas import ContactPayload, LocationPayload, MediaPayload, MessageUpsertItem
from clinic_chat.utils import extract_phone_from_jid, is_group_jid, is_valid_phone

logger = logging.getLogger(__name__)

UNSUPPORTED_CONTENT = "[Mensagem não suportada]"

# Content of a media message without caption or file name
MEDIA_PLACEHOLDERS = {
    "image": "[Imagem]",
    "video": "[Vídeo]",
    "sticker": "[Sticker]",
    "audio": "[Áudio]",
    "voice_note": "[Mensagem de voz]",
    "document": "[Documento]",
}

# Envelopes that carry the real payload under their own "message" key
_WRAPPER_KEYS = (
    "ephemeralMessage",
    "viewOnceMessage",
    "viewOnceMessageV2",
    "viewOnceMessageV2Extension",
    "documentWithCaptionMessage",
)


class MessageKind(str, Enum):
    TEXT = "text"
    IMAGE = "image"
    AUDIO = "audio"
    VIDEO = "video"
    DOCUMENT = "document"
    STICKER = "sticker"
    LOCATION = "location"
    CONTACT = "contact"


@dataclass
class NormalizedMessage:
    kind: MessageKind
    content: Optional[str]
    media: Dict[str, Any] = field(default_factory=dict)


@dataclass
class IncomingMessage:
    """A message-upsert item reduced to what the pipeline persists."""
    gateway_message_id: Optional[str]
    phone: str
    from_self: bool
    push_name: Optional[str]
    body: NormalizedMessage

    @property
    def direction(self) -> str:
        return "outbound" if self.from_self else "inbound"

    @property
    def trusted_name(self) -> Optional[str]:
        # A self-sent message carries the tenant's own push-name
        return None if self.from_self else self.push_name


class SkipMessage(Exception):
    """Raised for items that are acknowledged but not persisted."""


# =============================================================================
# Variant extractors
# =============================================================================

def _media_fields(payload: MediaPayload, media_url: Optional[str]) -> Dict[str, Any]:
    return {
        "url": media_url or payload.url,
        "mime_type": payload.mimetype,
        "size": payload.file_length,
    }


def _text_conversation(value: Any, media_url: Optional[str]) -> NormalizedMessage:
    if not isinstance(value, str):
        raise TypeError(f"conversation must be a string, got {type(value).__name__}")
    return NormalizedMessage(MessageKind.TEXT, value)


def _text_extended(value: Any, media_url: Optional[str]) -> NormalizedMessage:
    if not isinstance(value, dict):
        raise TypeError(f"extendedTextMessage must be an object, got {type(value).__name__}")
    text = value.get("text")
    if text is not None and not isinstance(text, str):
        raise TypeError("extendedTextMessage.text must be a string")
    return NormalizedMessage(MessageKind.TEXT, text or "")


def _image(value: dict, media_url: Optional[str]) -> NormalizedMessage:
    payload = MediaPayload.model_validate(value)
    media = _media_fields(payload, media_url)
    media.update(
        caption=payload.caption,
        width=payload.width,
        height=payload.height,
        thumbnail=payload.jpeg_thumbnail,
    )
    return NormalizedMessage(MessageKind.IMAGE, payload.caption or MEDIA_PLACEHOLDERS["image"], media)


def _video(value: dict, media_url: Optional[str]) -> NormalizedMessage:
    payload = MediaPayload.model_validate(value)
    media = _media_fields(payload, media_url)
    media.update(
        caption=payload.caption,
        width=payload.width,
        height=payload.height,
        duration=payload.seconds,
        thumbnail=payload.jpeg_thumbnail,
    )
    return NormalizedMessage(MessageKind.VIDEO, payload.caption or MEDIA_PLACEHOLDERS["video"], media)


def _sticker(value: dict, media_url: Optional[str]) -> NormalizedMessage:
    payload = MediaPayload.model_validate(value)
    media = _media_fields(payload, media_url)
    media.update(width=payload.width, height=payload.height)
    return NormalizedMessage(MessageKind.STICKER, MEDIA_PLACEHOLDERS["sticker"], media)


def _audio(value: dict, media_url: Optional[str]) -> NormalizedMessage:
    payload = MediaPayload.model_validate(value)
    media = _media_fields(payload, media_url)
    media.update(
        duration=payload.seconds,
        is_voice_note=payload.ptt,
        waveform=payload.waveform,
    )
    content = MEDIA_PLACEHOLDERS["voice_note" if payload.ptt else "audio"]
    return NormalizedMessage(MessageKind.AUDIO, content, media)


def _document(value: dict, media_url: Optional[str]) -> NormalizedMessage:
    payload = MediaPayload.model_validate(value)
    media = _media_fields(payload, media_url)
    media.update(caption=payload.caption)
    return NormalizedMessage(MessageKind.DOCUMENT, payload.file_name or MEDIA_PLACEHOLDERS["document"], media)


def _location(value: dict, media_url: Optional[str]) -> NormalizedMessage:
    payload = LocationPayload.model_validate(value)
    content = f"📍 {payload.name or 'Localização'}"
    if payload.address:
        content += f"\n{payload.address}"
    return NormalizedMessage(MessageKind.LOCATION, content)


def _contact(value: dict, media_url: Optional[str]) -> NormalizedMessage:
    payload = ContactPayload.model_validate(value)
    return NormalizedMessage(MessageKind.CONTACT, f"👤 {payload.display_name or ''}".rstrip())


Extractor = Callable[[Any, Optional[str]], NormalizedMessage]

# Checked in order; the first key present in the payload wins
EXTRACTORS: List[Tuple[str, MessageKind, Extractor]] = [
    ("conversation", MessageKind.TEXT, _text_conversation),
    ("extendedTextMessage", MessageKind.TEXT, _text_extended),
    ("imageMessage", MessageKind.IMAGE, _image),
    ("audioMessage", MessageKind.AUDIO, _audio),
    ("documentMessage", MessageKind.DOCUMENT, _document),
    ("videoMessage", MessageKind.VIDEO, _video),
    ("stickerMessage", MessageKind.STICKER, _sticker),
    ("locationMessage", MessageKind.LOCATION, _location),
    ("contactMessage", MessageKind.CONTACT, _contact),
]

_uncovered = set(MessageKind) - {kind for _, kind, _ in EXTRACTORS}
if _uncovered:
    raise RuntimeError(f"message kinds without an extractor: {sorted(k.value for k in _uncovered)}")


def _unwrap(payload: dict) -> dict:
    for _ in range(3):
        for key in _WRAPPER_KEYS:
            inner = payload.get(key)
            if isinstance(inner, dict) and isinstance(inner.get("message"), dict):
                payload = inner["message"]
                break
        else:
            return payload
    return payload


def normalize_payload(payload: Optional[dict]) -> NormalizedMessage:
    """
    Convert a gateway message payload into the canonical shape.

    Args:
        payload: The ``message`` object of an upsert item

    Returns:
        NormalizedMessage; unsupported or malformed variants yield a
        placeholder text message instead of an error.
    """
    if not isinstance(payload, dict) or not payload:
        logger.info("Empty message payload, using placeholder")
        return NormalizedMessage(MessageKind.TEXT, UNSUPPORTED_CONTENT)

    # Set by the gateway when it uploads media to its own storage
    media_url = payload.get("mediaUrl") if isinstance(payload.get("mediaUrl"), str) else None
    payload = _unwrap(payload)

    for key, kind, extractor in EXTRACTORS:
        value = payload.get(key)
        if value is None:
            continue
        if kind is not MessageKind.TEXT and not isinstance(value, dict):
            continue
        try:
            return extractor(value, media_url)
        except (ValidationError, ValueError, TypeError) as e:
            logger.warning(f"Malformed {key} payload, using placeholder: {e}")
            return NormalizedMessage(MessageKind.TEXT, UNSUPPORTED_CONTENT)

    logger.info(f"Unknown message type, defaulting to text: {sorted(payload)}")
    return NormalizedMessage(MessageKind.TEXT, UNSUPPORTED_CONTENT)


def normalize_upsert(item: Any) -> IncomingMessage:
    """
    Reduce one message-upsert item to an IncomingMessage.

    Raises:
        SkipMessage: group/broadcast traffic, missing or malformed phone
    """
    if not isinstance(item, dict):
        raise SkipMessage("item is not an object")
    try:
        parsed = MessageUpsertItem.model_validate(item)
    except ValidationError as e:
        raise SkipMessage(f"malformed item: {e.error_count()} errors")

    jid = parsed.key.remote_jid
    if not jid:
        raise SkipMessage("no chat id")
    if is_group_jid(jid):
        raise SkipMessage(f"group message {jid}")

    phone = extract_phone_from_jid(jid)
    if not is_valid_phone(phone):
        raise SkipMessage(f"invalid phone number extracted from {jid}")

    return IncomingMessage(
        gateway_message_id=parsed.key.id or None,
        phone=phone,
        from_self=parsed.key.from_me,
        push_name=(parsed.push_name or "").strip() or None,
        body=normalize_payload(parsed.message),
    )
