"""
Utility functions shared by the webhook pipeline and the dashboard API.
"""

import hmac
import hashlib
import logging
from datetime import datetime, timezone
from typing import Optional

logger = logging.getLogger(__name__)

# Phone numbers shorter than this are treated as malformed identifiers
MIN_PHONE_LENGTH = 10

_GROUP_SUFFIX = "@g.us"
_BROADCAST_SUFFIX = "@broadcast"


def utc_now_iso() -> str:
    """Current UTC time as ISO-8601 with microseconds and a Z suffix."""
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%fZ")


def sign_tenant(tenant_id: str, secret: str) -> str:
    """Hex HMAC-SHA256 of a tenant id, the value dashboards send as X-Signature."""
    return hmac.new(
        secret.encode("utf-8"),
        tenant_id.encode("utf-8"),
        hashlib.sha256
    ).hexdigest()


def verify_hmac_signature(body: bytes, signature: str, secret: str) -> bool:
    """
    Verify HMAC-SHA256 signature.

    Args:
        body: Signed bytes (the tenant id for dashboard requests)
        signature: Hex-encoded signature from X-Signature header
        secret: DASHBOARD_SECRET

    Returns:
        True if signature is valid, False otherwise
    """
    logger.debug(f"Verifying HMAC signature over {len(body)} bytes")

    expected_signature = hmac.new(
        secret.encode("utf-8"),
        body,
        hashlib.sha256
    ).hexdigest()

    # Use constant-time comparison to prevent timing attacks
    is_valid = hmac.compare_digest(expected_signature, signature)
    logger.debug(f"HMAC signature verification: {'valid' if is_valid else 'invalid'}")

    return is_valid


def is_group_jid(jid: Optional[str]) -> bool:
    """Group chats and broadcast lists are not conversations with a person."""
    if not jid or not isinstance(jid, str):
        return False
    return jid.endswith(_GROUP_SUFFIX) or jid.endswith(_BROADCAST_SUFFIX)


def extract_phone_from_jid(jid: Optional[str]) -> str:
    """
    Extract the phone number from a gateway JID.

    "5511999990000@s.whatsapp.net" -> "5511999990000"
    "5511999990000:12@s.whatsapp.net" -> "5511999990000" (device suffix)
    """
    if not jid or not isinstance(jid, str):
        return ""
    local = jid.split("@", 1)[0]
    return local.split(":", 1)[0]


def is_valid_phone(phone: str) -> bool:
    return phone.isdigit() and len(phone) >= MIN_PHONE_LENGTH
