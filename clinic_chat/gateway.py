"""
Client for the WhatsApp gateway (Evolution-style HTTP API).

Covers the calls the ingestion pipeline consumes: sending text and media,
fetching a message's media as base64, reading an instance's connection
state and registering the webhook.
"""
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import httpx

logger = logging.getLogger(__name__)

# Events the service subscribes to when registering its webhook
WEBHOOK_EVENTS = [
    "MESSAGES_UPSERT",
    "MESSAGES_UPDATE",
    "CONNECTION_UPDATE",
    "QRCODE_UPDATED",
    "SEND_MESSAGE",
]


class GatewayError(Exception):
    """Non-2xx answer or transport failure talking to the gateway."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


@dataclass
class MediaBlob:
    mime_type: str
    base64_body: str
    file_name: Optional[str] = None

    def to_data_uri(self) -> str:
        return f"data:{self.mime_type};base64,{self.base64_body}"


@dataclass
class InstanceCheck:
    exists: bool
    state: Optional[str] = None
    error: Optional[str] = None


class GatewayClient:
    """Async gateway client sharing one httpx connection pool."""

    def __init__(
        self,
        base_url: str,
        api_key: str = "",
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self._client = httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            headers={"apikey": api_key, "Content-Type": "application/json"},
            timeout=timeout,
            transport=transport,
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    # ──────────────────────────────────────────────────────────────
    # Messages
    # ──────────────────────────────────────────────────────────────

    async def send_text(self, instance: str, number: str, text: str) -> Dict[str, Any]:
        """Send a plain-text message.

        Returns:
            Gateway response containing ``key.id`` of the sent message.
        """
        return await self._request(
            "POST", f"/message/sendText/{instance}", json={"number": number, "text": text}
        )

    async def send_media(
        self,
        instance: str,
        number: str,
        media_type: str,
        media: str,
        mime_type: Optional[str] = None,
        caption: Optional[str] = None,
        file_name: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Send image/video/audio/document given as URL or base64."""
        payload: Dict[str, Any] = {"number": number, "mediatype": media_type, "media": media}
        if mime_type:
            payload["mimetype"] = mime_type
        if caption:
            payload["caption"] = caption
        if file_name:
            payload["fileName"] = file_name
        return await self._request("POST", f"/message/sendMedia/{instance}", json=payload)

    async def fetch_media_base64(
        self,
        instance: str,
        message_id: str,
        convert_to_mp4: bool = False,
    ) -> MediaBlob:
        """Fetch the full media of a message.

        Args:
            instance: Gateway instance identifier
            message_id: Gateway message id
            convert_to_mp4: Ask the gateway to transcode video to MP4

        Raises:
            GatewayError: on HTTP failure or when no media body is returned
        """
        data = await self._request(
            "POST",
            f"/chat/getBase64FromMediaMessage/{instance}",
            json={"message": {"key": {"id": message_id}}, "convertToMp4": convert_to_mp4},
        )
        if not isinstance(data, dict):
            raise GatewayError(f"Unexpected media response for message {message_id}")
        body = data.get("base64") or data.get("media")
        if not body:
            raise GatewayError(f"No media data received for message {message_id}")
        return MediaBlob(
            mime_type=data.get("mimetype") or "application/octet-stream",
            base64_body=body,
            file_name=data.get("fileName"),
        )

    # ──────────────────────────────────────────────────────────────
    # Instances
    # ──────────────────────────────────────────────────────────────

    async def connection_state(self, instance: str) -> Optional[str]:
        """Live connection state token (``open``, ``close``, ``connecting``)."""
        data = await self._request("GET", f"/instance/connectionState/{instance}")
        info = data.get("instance") if isinstance(data, dict) else None
        if not isinstance(info, dict):
            return None
        return info.get("state")

    async def instance_exists(self, instance: str) -> InstanceCheck:
        """Whether the gateway still knows the instance, and its live state."""
        try:
            state = await self.connection_state(instance)
        except GatewayError as e:
            logger.info(f"Instance existence check failed for {instance}: {e}")
            if e.status_code == 404:
                return InstanceCheck(exists=False, error="Instance not found in gateway")
            return InstanceCheck(exists=False, error=str(e))
        if state is None:
            return InstanceCheck(exists=False, error="Instance not found")
        return InstanceCheck(exists=True, state=state)

    async def set_webhook(
        self,
        instance: str,
        url: str,
        events: Optional[List[str]] = None,
    ) -> Dict[str, Any]:
        """Point the instance's webhook at this service."""
        payload = {
            "webhook": {
                "enabled": True,
                "url": url,
                "events": events or WEBHOOK_EVENTS,
                "webhookByEvents": False,
                "webhookBase64": False,
            }
        }
        return await self._request("POST", f"/webhook/set/{instance}", json=payload)

    # ──────────────────────────────────────────────────────────────
    # Internal
    # ──────────────────────────────────────────────────────────────

    async def _request(self, method: str, path: str, **kwargs) -> Any:
        try:
            response = await self._client.request(method, path, **kwargs)
        except httpx.HTTPError as e:
            logger.error(f"Gateway request {method} {path} failed: {e}")
            raise GatewayError(f"Gateway unreachable: {e}") from e

        if response.is_error:
            logger.error(f"Gateway error {response.status_code} for {method} {path}: {response.text[:200]}")
            raise GatewayError(
                f"Gateway error: {response.status_code} {response.reason_phrase}",
                status_code=response.status_code,
            )

        try:
            return response.json()
        except ValueError as e:
            raise GatewayError(f"Invalid JSON from gateway: {e}") from e
