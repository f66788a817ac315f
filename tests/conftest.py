"""
Pytest configuration and shared fixtures.

Environment variables are set here before any clinic_chat import so the
settings object is built from them. Every test gets a fresh SQLite schema
and a fake gateway injected through app.dependency_overrides.
"""

import os
import tempfile

_DB_DIR = tempfile.mkdtemp(prefix="clinic-chat-tests-")
os.environ.setdefault("DATABASE_URL", f"sqlite:///{os.path.join(_DB_DIR, 'test.db')}")
os.environ.setdefault("LOG_LEVEL", "WARNING")
os.environ.setdefault("DASHBOARD_SECRET", "test-dashboard-secret")
os.environ.setdefault("GATEWAY_BASE_URL", "http://gateway.test")
os.environ["MEDIA_SWEEP_DELAY_SECONDS"] = "0"
os.environ.pop("PUBLIC_BASE_URL", None)

# Clear settings cache before any app imports to ensure test env vars are used
from clinic_chat.config import get_settings
get_settings.cache_clear()

import pytest
from fastapi.testclient import TestClient

from clinic_chat import models  # noqa: F401  (registers tables)
from clinic_chat import storage
from clinic_chat.config import settings
from clinic_chat.gateway import GatewayError, InstanceCheck, MediaBlob
from clinic_chat.main import app, get_gateway, get_media_pipeline
from clinic_chat.media import MediaPipeline
from clinic_chat.storage import Base, SessionLocal, engine
from clinic_chat.utils import sign_tenant


TENANT_ID = "clinic-1"
INSTANCE_ID = "clinic-instance-1"
PHONE = "5511999990000"


class FakeGateway:
    """In-memory stand-in for GatewayClient recording every call."""

    def __init__(self):
        self.sent = []
        self.fetch_calls = []
        self.webhooks = []
        self.media = {}
        self.default_media = MediaBlob(mime_type="image/jpeg", base64_body="aGVsbG8gd29ybGQ=")
        self.state = "open"
        self.send_error = None
        self.return_key = True
        self._counter = 0

    def _ack(self, number):
        self._counter += 1
        if not self.return_key:
            return {"status": "PENDING"}
        return {
            "key": {"id": f"SENT{self._counter}", "remoteJid": f"{number}@s.whatsapp.net", "fromMe": True},
            "status": "PENDING",
        }

    async def send_text(self, instance, number, text):
        if self.send_error:
            raise self.send_error
        self.sent.append({"type": "text", "instance": instance, "number": number, "text": text})
        return self._ack(number)

    async def send_media(self, instance, number, media_type, media, mime_type=None, caption=None, file_name=None):
        if self.send_error:
            raise self.send_error
        self.sent.append({
            "type": media_type,
            "instance": instance,
            "number": number,
            "media": media,
            "caption": caption,
        })
        return self._ack(number)

    async def fetch_media_base64(self, instance, message_id, convert_to_mp4=False):
        self.fetch_calls.append({"instance": instance, "message_id": message_id, "convert_to_mp4": convert_to_mp4})
        result = self.media.get(message_id, self.default_media)
        if isinstance(result, Exception):
            raise result
        return result

    async def connection_state(self, instance):
        return self.state

    async def instance_exists(self, instance):
        if self.state is None:
            return InstanceCheck(exists=False, error="Instance not found in gateway")
        return InstanceCheck(exists=True, state=self.state)

    async def set_webhook(self, instance, url, events=None):
        if self.send_error:
            raise self.send_error
        self.webhooks.append({"instance": instance, "url": url, "events": events})
        return {"webhook": {"url": url}}

    async def aclose(self):
        pass


def tenant_headers(tenant_id: str = TENANT_ID) -> dict:
    """Dashboard authentication headers for a tenant."""
    return {
        "X-Tenant-ID": tenant_id,
        "X-Signature": sign_tenant(tenant_id, settings.DASHBOARD_SECRET),
    }


def upsert_event(
    message_id: str = "ABC123",
    phone: str = PHONE,
    text: str = "Oi",
    from_me: bool = False,
    push_name: str = "Maria",
    message: dict = None,
    instance: str = INSTANCE_ID,
) -> dict:
    """messages.upsert envelope for a single message."""
    return {
        "event": "messages.upsert",
        "instance": instance,
        "data": {
            "key": {"id": message_id, "remoteJid": f"{phone}@s.whatsapp.net", "fromMe": from_me},
            "pushName": push_name,
            "message": message if message is not None else {"conversation": text},
        },
    }


def status_event(message_id: str = "ABC123", status: str = "DELIVERY_ACK", instance: str = INSTANCE_ID) -> dict:
    return {
        "event": "messages.update",
        "instance": instance,
        "data": {"keyId": message_id, "remoteJid": f"{PHONE}@s.whatsapp.net", "fromMe": True, "status": status},
    }


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def tables():
    """Fresh schema for tests that use storage directly."""
    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)


@pytest.fixture(scope="function")
def client(gateway, tables):
    """Create test client with fresh database and the fake gateway."""
    pipeline = MediaPipeline(gateway, delay_seconds=0)
    app.dependency_overrides[get_gateway] = lambda: gateway
    app.dependency_overrides[get_media_pipeline] = lambda: pipeline

    with TestClient(app) as test_client:
        # Health probes started by realtime subscribers use app.state.gateway
        app.state.gateway = gateway
        yield test_client

    app.dependency_overrides.clear()


@pytest.fixture
def connection(tables):
    """The tenant's provisioned gateway connection."""
    with SessionLocal() as db:
        conn, _ = storage.provision_connection(db, TENANT_ID, INSTANCE_ID)
        db.refresh(conn)
        db.expunge(conn)
    return conn


def gateway_error(status_code: int = 500) -> GatewayError:
    return GatewayError(f"Gateway error: {status_code}", status_code=status_code)
