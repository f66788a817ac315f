"""
Tests for the gateway webhook (POST /webhooks/gateway).

Tests cover:
- Envelope validation (400) and tenant resolution (404)
- Message ingestion, deduplication and the conversation aggregate
- Media messages and their background retrieval
- Delivery status reconciliation
- Connection lifecycle events and send acknowledgements
"""

import json

import pytest

from clinic_chat import storage
from clinic_chat.handlers import DispatchContext, dispatch_event
from clinic_chat.models import Contact, Conversation, Message, Connection
from clinic_chat.storage import SessionLocal

from conftest import INSTANCE_ID, PHONE, TENANT_ID, gateway_error, status_event, tenant_headers, upsert_event


def post_event(client, body, path="/webhooks/gateway"):
    return client.post(path, content=json.dumps(body), headers={"Content-Type": "application/json"})


def conversations():
    with SessionLocal() as db:
        return db.query(Conversation).filter(Conversation.tenant_id == TENANT_ID).all()


def messages():
    with SessionLocal() as db:
        return db.query(Message).filter(Message.tenant_id == TENANT_ID).order_by(Message.created_at).all()


def get_connection():
    with SessionLocal() as db:
        return db.query(Connection).filter(Connection.tenant_id == TENANT_ID).first()


class TestWebhookEnvelope:
    """Envelope validation and tenant resolution."""

    def test_invalid_json_returns_400(self, client, connection):
        response = client.post(
            "/webhooks/gateway",
            content="{not json",
            headers={"Content-Type": "application/json"}
        )
        assert response.status_code == 400
        assert response.json()["detail"] == "Invalid JSON"

    def test_missing_instance_returns_400(self, client, connection):
        response = post_event(client, {"event": "messages.upsert", "data": {}})
        assert response.status_code == 400

    def test_missing_event_returns_400(self, client, connection):
        response = post_event(client, {"instance": INSTANCE_ID, "data": {}})
        assert response.status_code == 400

    def test_non_object_body_returns_400(self, client, connection):
        response = post_event(client, [upsert_event()])
        assert response.status_code == 400

    def test_unknown_instance_returns_404(self, client, connection):
        response = post_event(client, upsert_event(instance="somebody-else"))
        assert response.status_code == 404
        assert conversations() == []

    def test_unknown_event_is_acknowledged(self, client, connection):
        response = post_event(client, {"event": "presence.update", "instance": INSTANCE_ID, "data": {}})
        assert response.status_code == 200
        assert response.json() == {"success": True}

    def test_event_name_case_and_separator_insensitive(self, client, connection):
        body = upsert_event()
        body["event"] = "MESSAGES_UPSERT"
        assert post_event(client, body).status_code == 200
        assert len(messages()) == 1

    def test_alias_route_processes_same_way(self, client, connection):
        response = post_event(client, upsert_event(), path="/whatsapp/webhook")
        assert response.status_code == 200
        assert len(messages()) == 1


class TestMessageUpsert:
    """Message ingestion and the conversation aggregate."""

    def test_inbound_text_scenario(self, client, connection):
        """Inbound "Oi" with a push-name creates a named conversation."""
        response = post_event(client, upsert_event(message_id="ABC123", text="Oi", push_name="Maria"))
        assert response.status_code == 200
        assert response.json() == {"success": True}

        [conversation] = conversations()
        assert conversation.counterpart_phone == PHONE
        assert conversation.display_name == "Maria"
        assert conversation.unread_count == 1
        assert conversation.last_message_preview == "Oi"
        assert conversation.status == "active"

        [message] = messages()
        assert message.kind == "text"
        assert message.direction == "inbound"
        assert message.status == "sent"
        assert message.content == "Oi"
        assert message.gateway_message_id == "ABC123"
        assert message.media_processing_status == "none"

    def test_redelivery_is_idempotent(self, client, connection):
        body = upsert_event(message_id="ABC123")
        assert post_event(client, body).status_code == 200
        assert post_event(client, body).status_code == 200

        assert len(messages()) == 1
        [conversation] = conversations()
        assert conversation.unread_count == 1

    def test_unread_counts_inbound_only(self, client, connection):
        """N inbound and M outbound interleaved leave unread_count == N."""
        directions = [False, True, False, False, True, False, True]
        for index, from_me in enumerate(directions):
            post_event(client, upsert_event(message_id=f"M{index}", text=f"msg {index}", from_me=from_me))

        [conversation] = conversations()
        assert conversation.unread_count == directions.count(False)
        assert len(messages()) == len(directions)

    def test_preview_follows_latest_message_any_direction(self, client, connection):
        post_event(client, upsert_event(message_id="M1", text="Bom dia"))
        [conversation] = conversations()
        assert conversation.last_message_preview == "Bom dia"

        post_event(client, upsert_event(message_id="M2", text="Olá, em que posso ajudar?", from_me=True))
        [conversation] = conversations()
        assert conversation.last_message_preview == "Olá, em que posso ajudar?"
        assert conversation.last_message_at == messages()[-1].created_at

    def test_outbound_push_name_not_trusted(self, client, connection):
        post_event(client, upsert_event(message_id="M1", text="Lembrete", from_me=True, push_name="Clínica"))

        [conversation] = conversations()
        assert conversation.display_name == PHONE
        assert conversation.unread_count == 0
        with SessionLocal() as db:
            assert db.query(Contact).count() == 0

    def test_display_name_promoted_from_phone(self, client, connection):
        post_event(client, upsert_event(message_id="M1", from_me=True, push_name="Clínica"))
        post_event(client, upsert_event(message_id="M2", push_name="Maria"))

        [conversation] = conversations()
        assert conversation.display_name == "Maria"

    def test_display_name_never_downgraded(self, client, connection):
        post_event(client, upsert_event(message_id="M1", push_name="Maria"))
        post_event(client, upsert_event(message_id="M2", push_name="Maria Souza"))

        [conversation] = conversations()
        assert conversation.display_name == "Maria"

    def test_contact_upserted_from_push_name(self, client, connection):
        post_event(client, upsert_event(message_id="M1", push_name="Maria"))
        post_event(client, upsert_event(message_id="M2", push_name="Maria S."))

        with SessionLocal() as db:
            [contact] = db.query(Contact).all()
        assert contact.phone == PHONE
        assert contact.display_name == "Maria"
        assert contact.push_name == "Maria S."

    def test_group_message_ignored(self, client, connection):
        body = upsert_event()
        body["data"]["key"]["remoteJid"] = "120363025246125888@g.us"
        response = post_event(client, body)
        assert response.status_code == 200
        assert conversations() == []

    def test_short_phone_ignored(self, client, connection):
        response = post_event(client, upsert_event(phone="12345"))
        assert response.status_code == 200
        assert conversations() == []

    def test_device_suffix_stripped(self, client, connection):
        body = upsert_event()
        body["data"]["key"]["remoteJid"] = f"{PHONE}:12@s.whatsapp.net"
        post_event(client, body)

        [conversation] = conversations()
        assert conversation.counterpart_phone == PHONE

    def test_list_data_processed_per_item(self, client, connection):
        items = [
            upsert_event(message_id="M1", text="um")["data"],
            upsert_event(message_id="M2", text="dois", phone="5511988887777")["data"],
            upsert_event(message_id="M1", text="um")["data"],
        ]
        response = post_event(client, {"event": "messages.upsert", "instance": INSTANCE_ID, "data": items})
        assert response.status_code == 200
        assert len(messages()) == 2
        assert len(conversations()) == 2

    def test_unsupported_payload_stored_as_placeholder(self, client, connection):
        response = post_event(client, upsert_event(message={"pollCreationMessage": {"name": "?"}}))
        assert response.status_code == 200

        [message] = messages()
        assert message.kind == "text"
        assert message.content == "[Mensagem não suportada]"

    @pytest.mark.parametrize("payload", [
        {"extendedTextMessage": "hello"},
        {"extendedTextMessage": {"text": ["hello"]}},
        {"conversation": {"text": "hello"}},
    ])
    def test_malformed_text_variant_stored_as_placeholder(self, client, connection, payload):
        response = post_event(client, upsert_event(message=payload))
        assert response.status_code == 200

        [message] = messages()
        assert message.kind == "text"
        assert message.content == "[Mensagem não suportada]"


class TestMediaMessages:
    """Media metadata extraction and background retrieval."""

    IMAGE = {
        "imageMessage": {
            "url": "https://mmg.whatsapp.net/abc",
            "mimetype": "image/jpeg",
            "fileLength": "204800",
            "width": 800,
            "height": 600,
        }
    }

    def test_image_persisted_as_pending(self, connection):
        """Ingestion stores the image metadata and queues retrieval."""
        with SessionLocal() as db:
            ctx = DispatchContext(db=db, tenant_id=TENANT_ID, instance=INSTANCE_ID)
            result = dispatch_event(ctx, "messages.upsert", upsert_event(message=self.IMAGE)["data"])

            message = storage.get_message_by_gateway_id(db, TENANT_ID, "ABC123")
            assert message.kind == "image"
            assert message.content == "[Imagem]"
            assert message.media_size == 204800
            assert message.media_width == 800
            assert message.media_height == 600
            assert message.media_mime_type == "image/jpeg"
            assert message.media_processing_status == "pending"
            assert result.media_queue == [message.id]

    def test_media_retrieved_after_response(self, client, connection, gateway):
        response = post_event(client, upsert_event(message=self.IMAGE))
        assert response.status_code == 200

        [message] = messages()
        assert message.media_processing_status == "completed"
        assert message.media_payload == "data:image/jpeg;base64,aGVsbG8gd29ybGQ="
        assert gateway.fetch_calls == [
            {"instance": INSTANCE_ID, "message_id": "ABC123", "convert_to_mp4": False}
        ]

    def test_video_requests_mp4(self, client, connection, gateway):
        post_event(client, upsert_event(message={"videoMessage": {"mimetype": "video/mp4", "seconds": 12}}))

        [message] = messages()
        assert message.kind == "video"
        assert message.media_duration == 12
        assert gateway.fetch_calls[0]["convert_to_mp4"] is True

    def test_location_enters_media_pipeline(self, connection):
        with SessionLocal() as db:
            ctx = DispatchContext(db=db, tenant_id=TENANT_ID, instance=INSTANCE_ID)
            result = dispatch_event(ctx, "messages.upsert", upsert_event(message={
                "locationMessage": {"name": "Clínica Centro", "address": "Rua A, 10"}
            })["data"])

            [message] = db.query(Message).all()
            assert message.kind == "location"
            assert message.content == "📍 Clínica Centro\nRua A, 10"
            assert message.media_processing_status == "pending"
            assert result.media_queue == [message.id]

    def test_contact_media_fetch_failure_marks_failed(self, client, connection, gateway):
        gateway.media["ABC123"] = gateway_error(400)
        response = post_event(client, upsert_event(message={"contactMessage": {"displayName": "Ana"}}))
        assert response.status_code == 200

        [message] = messages()
        assert message.kind == "contact"
        assert message.content == "👤 Ana"
        assert message.media_processing_status == "failed"
        assert message.media_payload is None
        assert gateway.fetch_calls[0]["message_id"] == "ABC123"

    def test_preview_uses_kind_tag_content(self, client, connection):
        post_event(client, upsert_event(message={"audioMessage": {"ptt": True, "seconds": 4}}))

        [conversation] = conversations()
        assert conversation.last_message_preview == "[Mensagem de voz]"


class TestMessageStatus:
    """Delivery status reconciliation."""

    def test_status_before_message_is_noop(self, client, connection):
        response = post_event(client, status_event(message_id="NOT-YET"))
        assert response.status_code == 200
        assert messages() == []
        assert conversations() == []

    def test_delivery_ack_marks_delivered(self, client, connection):
        post_event(client, upsert_event(message_id="ABC123", from_me=True))
        post_event(client, status_event(message_id="ABC123", status="DELIVERY_ACK"))

        [message] = messages()
        assert message.status == "delivered"
        assert message.read_at is None

    def test_read_sets_read_at(self, client, connection):
        post_event(client, upsert_event(message_id="ABC123", from_me=True))
        post_event(client, status_event(message_id="ABC123", status="READ"))

        [message] = messages()
        assert message.status == "read"
        assert message.read_at is not None

    def test_error_marks_failed(self, client, connection):
        post_event(client, upsert_event(message_id="ABC123", from_me=True))
        post_event(client, status_event(message_id="ABC123", status="ERROR"))

        [message] = messages()
        assert message.status == "failed"

    def test_status_list_and_nested_key(self, client, connection):
        post_event(client, upsert_event(message_id="M1", from_me=True))
        post_event(client, upsert_event(message_id="M2", from_me=True))
        body = {
            "event": "MESSAGES_UPDATE",
            "instance": INSTANCE_ID,
            "data": [
                {"key": {"id": "M1"}, "update": {"status": 4}},
                {"keyId": "M2", "status": "DELIVERY_ACK"},
            ],
        }
        assert post_event(client, body).status_code == 200

        statuses = {m.gateway_message_id: m.status for m in messages()}
        assert statuses == {"M1": "read", "M2": "delivered"}


class TestConnectionEvents:
    """connection.update and qrcode.updated."""

    def test_qrcode_sets_pairing(self, client, connection):
        body = {
            "event": "qrcode.updated",
            "instance": INSTANCE_ID,
            "data": {"qrcode": {"base64": "data:image/png;base64,QRDATA", "pairingCode": None}},
        }
        assert post_event(client, body).status_code == 200

        conn = get_connection()
        assert conn.status == "pairing"
        assert conn.pairing_code == "data:image/png;base64,QRDATA"
        assert conn.consecutive_probe_interval == 30

    def test_open_connects_and_clears_pairing_code(self, client, connection):
        post_event(client, {"event": "qrcode.updated", "instance": INSTANCE_ID, "data": {"qrcode": "QR"}})
        body = {
            "event": "connection.update",
            "instance": INSTANCE_ID,
            "data": {"state": "open", "wuid": "5511955554444@s.whatsapp.net"},
        }
        assert post_event(client, body).status_code == 200

        conn = get_connection()
        assert conn.status == "connected"
        assert conn.pairing_code is None
        assert conn.phone_number == "5511955554444"
        assert conn.consecutive_probe_interval == 600

    def test_close_disconnects(self, client, connection):
        post_event(client, {"event": "connection.update", "instance": INSTANCE_ID, "data": {"state": "close"}})
        assert get_connection().status == "disconnected"

    def test_unknown_state_is_error(self, client, connection):
        post_event(client, {"event": "connection.update", "instance": INSTANCE_ID, "data": {"state": "refused"}})
        assert get_connection().status == "error"


class TestSendAck:
    """send.message acknowledgements for messages sent without a gateway id."""

    def test_ack_attaches_gateway_id(self, client, connection, gateway):
        post_event(client, upsert_event(message_id="IN1"))
        [conversation] = conversations()

        gateway.return_key = False
        response = client.post(
            f"/conversations/{conversation.id}/messages",
            json={"text": "Sua consulta está confirmada"},
            headers=tenant_headers(),
        )
        assert response.status_code == 200
        assert response.json()["gateway_message_id"] is None

        body = {"event": "send.message", "instance": INSTANCE_ID, "data": {"key": {"id": "OUT1", "fromMe": True}}}
        assert post_event(client, body).status_code == 200

        outbound = [m for m in messages() if m.direction == "outbound"]
        assert [m.gateway_message_id for m in outbound] == ["OUT1"]

    def test_ack_for_known_id_is_noop(self, client, connection):
        post_event(client, upsert_event(message_id="OUT1", from_me=True))
        body = {"event": "send.message", "instance": INSTANCE_ID, "data": {"key": {"id": "OUT1"}}}

        assert post_event(client, body).status_code == 200
        assert len(messages()) == 1


class TestWebhookErrors:

    def test_unexpected_error_returns_500(self, client, connection, monkeypatch):
        def explode(*args, **kwargs):
            raise RuntimeError("database exploded")

        monkeypatch.setattr(storage, "find_or_create_conversation", explode)
        response = post_event(client, upsert_event())
        assert response.status_code == 500
        assert messages() == []


@pytest.mark.parametrize("token,expected", [
    ("PENDING", "sent"),
    ("SERVER_ACK", "sent"),
    ("DELIVERY_ACK", "delivered"),
    ("READ", "read"),
    ("PLAYED", "sent"),
])
def test_status_tokens_through_webhook(client, connection, token, expected):
    post_event(client, upsert_event(message_id="ABC123", from_me=True))
    post_event(client, status_event(message_id="ABC123", status=token))
    assert messages()[0].status == expected
