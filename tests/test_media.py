"""
Tests for the media retrieval pipeline.

Tests cover:
- Successful retrieval stores a data URI
- Oversized and failing retrievals end in "failed" without payload
- Claim semantics: no regression, no double processing
- Sweep selection, counting and per-item isolation
"""

import asyncio

import pytest

from clinic_chat import storage
from clinic_chat.gateway import MediaBlob
from clinic_chat.media import COMPLETED, FAILED, SKIPPED, MediaPipeline
from clinic_chat.models import Message
from clinic_chat.storage import SessionLocal

from conftest import INSTANCE_ID, PHONE, TENANT_ID, FakeGateway, gateway_error


def add_message(gateway_id, kind="image", direction="inbound", status=None):
    """Store a message directly and return its id."""
    with SessionLocal() as db:
        conversation = storage.find_or_create_conversation(db, TENANT_ID, PHONE)
        message, _ = storage.create_message(
            db,
            conversation,
            direction=direction,
            kind=kind,
            content=f"[{kind}]",
            gateway_message_id=gateway_id,
            media={"mime_type": "image/jpeg"},
        )
        if status is not None:
            message.media_processing_status = status
            db.commit()
        return message.id


def load(message_id):
    with SessionLocal() as db:
        return db.get(Message, message_id)


@pytest.fixture
def pipeline(gateway):
    return MediaPipeline(gateway, delay_seconds=0)


class TestProcessMessage:

    @pytest.mark.asyncio
    async def test_completed_stores_data_uri(self, connection, gateway, pipeline):
        message_id = add_message("IMG1")

        assert await pipeline.process_message(message_id) == COMPLETED

        message = load(message_id)
        assert message.media_processing_status == "completed"
        assert message.media_payload == "data:image/jpeg;base64,aGVsbG8gd29ybGQ="
        assert gateway.fetch_calls[0]["instance"] == INSTANCE_ID

    @pytest.mark.asyncio
    async def test_oversized_payload_fails(self, connection, gateway, pipeline):
        """A 12 MiB encoded payload exceeds the 10 MiB ceiling."""
        gateway.media["BIG"] = MediaBlob(mime_type="video/mp4", base64_body="A" * (12 * 1024 * 1024))
        message_id = add_message("BIG", kind="video")

        assert await pipeline.process_message(message_id) == FAILED

        message = load(message_id)
        assert message.media_processing_status == "failed"
        assert message.media_payload is None

    @pytest.mark.asyncio
    async def test_gateway_error_fails(self, connection, gateway, pipeline):
        gateway.media["IMG1"] = gateway_error(404)
        message_id = add_message("IMG1")

        assert await pipeline.process_message(message_id) == FAILED
        assert load(message_id).media_processing_status == "failed"

    @pytest.mark.asyncio
    async def test_unexpected_error_fails(self, connection, gateway, pipeline):
        gateway.media["IMG1"] = RuntimeError("decoder crashed")
        message_id = add_message("IMG1")

        assert await pipeline.process_message(message_id) == FAILED
        assert load(message_id).media_processing_status == "failed"

    @pytest.mark.asyncio
    async def test_completed_is_not_reprocessed(self, connection, gateway, pipeline):
        message_id = add_message("IMG1")
        await pipeline.process_message(message_id)

        assert await pipeline.process_message(message_id) == SKIPPED
        assert load(message_id).media_processing_status == "completed"
        assert len(gateway.fetch_calls) == 1

    @pytest.mark.asyncio
    async def test_processing_is_not_claimed_again(self, connection, gateway, pipeline):
        message_id = add_message("IMG1", status="processing")

        assert await pipeline.process_message(message_id) == SKIPPED
        assert load(message_id).media_processing_status == "processing"
        assert gateway.fetch_calls == []

    @pytest.mark.asyncio
    async def test_text_message_is_not_claimable(self, connection, gateway, pipeline):
        message_id = add_message("TXT1", kind="text")

        assert await pipeline.process_message(message_id) == SKIPPED
        assert load(message_id).media_processing_status == "none"

    @pytest.mark.asyncio
    async def test_concurrent_attempts_fetch_once(self, connection, gateway, pipeline):
        message_id = add_message("IMG1")

        outcomes = await asyncio.gather(
            pipeline.process_message(message_id),
            pipeline.process_message(message_id),
        )

        assert sorted(outcomes) == [COMPLETED, SKIPPED]
        assert len(gateway.fetch_calls) == 1

    @pytest.mark.asyncio
    async def test_message_without_gateway_id_fails(self, connection, gateway, pipeline):
        message_id = add_message(None)

        assert await pipeline.process_message(message_id) == FAILED
        assert gateway.fetch_calls == []


class TestSweep:

    @pytest.mark.asyncio
    async def test_sweep_counts_outcomes(self, connection, gateway, pipeline):
        add_message("IMG1")
        add_message("IMG2", status="failed")
        add_message("IMG3")
        add_message("TXT1", kind="text")
        add_message("DONE", status="completed")
        gateway.media["IMG3"] = gateway_error(500)

        result = await pipeline.sweep(TENANT_ID)

        assert (result.processed, result.failed, result.total) == (2, 1, 3)
        fetched = sorted(call["message_id"] for call in gateway.fetch_calls)
        assert fetched == ["IMG1", "IMG2", "IMG3"]

    @pytest.mark.asyncio
    async def test_sweep_respects_batch_size(self, connection, gateway):
        for index in range(5):
            add_message(f"IMG{index}")
        pipeline = MediaPipeline(gateway, batch_size=2, delay_seconds=0)

        result = await pipeline.sweep(TENANT_ID)

        assert result.total == 2
        assert [call["message_id"] for call in gateway.fetch_calls] == ["IMG0", "IMG1"]

    @pytest.mark.asyncio
    async def test_sweep_skips_processing_rows(self, connection, gateway, pipeline):
        add_message("IMG1", status="processing")

        result = await pipeline.sweep(TENANT_ID)

        assert result.total == 0
        assert gateway.fetch_calls == []

    @pytest.mark.asyncio
    async def test_sweep_skips_messages_without_gateway_id(self, connection, gateway):
        orphans = [add_message(None) for _ in range(3)]
        add_message("IMG1")
        pipeline = MediaPipeline(gateway, batch_size=2, delay_seconds=0)

        result = await pipeline.sweep(TENANT_ID)

        assert (result.processed, result.failed, result.total) == (1, 0, 1)
        assert [call["message_id"] for call in gateway.fetch_calls] == ["IMG1"]
        assert all(load(message_id).media_processing_status == "pending" for message_id in orphans)

    @pytest.mark.asyncio
    async def test_sweep_retries_location_and_contact(self, connection, gateway, pipeline):
        add_message("LOC1", kind="location")
        add_message("CON1", kind="contact")
        gateway.media["CON1"] = gateway_error(400)

        result = await pipeline.sweep(TENANT_ID)

        assert (result.processed, result.failed, result.total) == (1, 1, 2)

    @pytest.mark.asyncio
    async def test_sweep_without_connection(self, tables):
        with pytest.raises(LookupError):
            await MediaPipeline(FakeGateway(), delay_seconds=0).sweep(TENANT_ID)
