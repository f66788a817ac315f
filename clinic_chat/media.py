"""
Media retrieval pipeline.

Non-text messages are stored with media state ``pending``. A worker claims
the message (``pending|failed -> processing``), asks the gateway for the full
media as base64 and ends the attempt as ``completed`` (data URI stored) or
``failed`` (nothing stored). Failed items are picked up again by the sweep.
"""
import asyncio
import logging
from dataclasses import dataclass
from typing import Dict, List, Optional

from clinic_chat import storage
from clinic_chat.config import settings
from clinic_chat.gateway import GatewayClient, GatewayError
from clinic_chat.metrics import record_media_outcome

logger = logging.getLogger(__name__)

COMPLETED = "completed"
FAILED = "failed"
SKIPPED = "skipped"


class MediaRetrievalError(Exception):
    """The media of a message cannot be requested."""


class MediaTooLargeError(MediaRetrievalError):
    """Encoded media exceeds the storage ceiling."""


@dataclass
class SweepResult:
    processed: int
    failed: int
    total: int


class MediaPipeline:
    """
    Fetches media for stored messages, one attempt per claim.

    Attempts for the same message are serialized twice: by an in-process
    lock and by the conditional claim in the database.
    """

    def __init__(
        self,
        gateway: GatewayClient,
        session_factory=None,
        max_encoded_bytes: int = settings.MEDIA_MAX_ENCODED_BYTES,
        batch_size: int = settings.MEDIA_SWEEP_BATCH_SIZE,
        delay_seconds: float = settings.MEDIA_SWEEP_DELAY_SECONDS,
    ):
        self._gateway = gateway
        self._session_factory = session_factory or storage.SessionLocal
        self._max_encoded_bytes = max_encoded_bytes
        self._batch_size = batch_size
        self._delay_seconds = delay_seconds
        self._locks: Dict[str, List] = {}

    async def process_message(self, message_id: str, instance: Optional[str] = None) -> str:
        """
        Run one retrieval attempt for a message.

        Never raises: every failure ends in the ``failed`` state.

        Returns:
            "completed", "failed", or "skipped" when the message was not
            claimable (already processing, completed, or text).
        """
        entry = self._locks.setdefault(message_id, [asyncio.Lock(), 0])
        entry[1] += 1
        try:
            async with entry[0]:
                outcome = await self._attempt(message_id, instance)
        finally:
            entry[1] -= 1
            if entry[1] == 0:
                self._locks.pop(message_id, None)

        record_media_outcome(outcome)
        return outcome

    async def _attempt(self, message_id: str, instance: Optional[str]) -> str:
        with self._session_factory() as db:
            message = storage.claim_media(db, message_id)
            if message is None:
                return SKIPPED
            gateway_id = message.gateway_message_id
            kind = message.kind
            if instance is None:
                connection = storage.get_connection_by_tenant(db, message.tenant_id)
                instance = connection.instance_id if connection else None

        logger.info(f"Starting media processing: message={message_id}, kind={kind}, gateway_id={gateway_id}")

        payload = None
        try:
            if not gateway_id:
                raise MediaRetrievalError("message has no gateway id")
            if not instance:
                raise MediaRetrievalError("tenant has no gateway connection")

            blob = await self._gateway.fetch_media_base64(
                instance,
                gateway_id,
                convert_to_mp4=(kind == "video"),
            )
            data_uri = blob.to_data_uri()
            if len(data_uri) > self._max_encoded_bytes:
                raise MediaTooLargeError(
                    f"Media too large: {len(data_uri) / 1024 / 1024:.1f}MB encoded"
                )
            payload = data_uri
        except (GatewayError, MediaRetrievalError) as e:
            logger.warning(f"Media processing failed: message={message_id}, error={e}")
        except Exception:
            logger.exception(f"Unexpected media processing error: message={message_id}")

        with self._session_factory() as db:
            finished = storage.finish_media(db, message_id, payload)

        if finished is None or payload is None:
            return FAILED

        logger.info(
            f"Media processing completed: message={message_id}, size={len(payload) // 1024}KB, mime={blob.mime_type}"
        )
        return COMPLETED

    async def sweep(self, tenant_id: str) -> SweepResult:
        """
        Retry media for a tenant's oldest pending/failed messages.

        Items run one after another with a short pause between them; one
        item's failure does not affect the others.

        Raises:
            LookupError: the tenant has no gateway connection
        """
        with self._session_factory() as db:
            connection = storage.get_connection_by_tenant(db, tenant_id)
            if connection is None:
                raise LookupError(f"No gateway connection for tenant {tenant_id}")
            instance = connection.instance_id
            batch = [message.id for message in storage.list_media_backlog(db, tenant_id, limit=self._batch_size)]

        logger.info(f"Processing media queue: tenant={tenant_id}, pending={len(batch)}")

        processed = 0
        failed = 0
        for index, message_id in enumerate(batch):
            outcome = await self.process_message(message_id, instance)
            if outcome == COMPLETED:
                processed += 1
            elif outcome == FAILED:
                failed += 1

            if self._delay_seconds and index < len(batch) - 1:
                await asyncio.sleep(self._delay_seconds)

        logger.info(f"Media queue processed: tenant={tenant_id}, processed={processed}, failed={failed}")
        return SweepResult(processed=processed, failed=failed, total=len(batch))
