"""
Connection lifecycle: gateway connection/pairing events, health probes and
the per-connection probe scheduler.

Probe cadence depends on the connection status: rare while connected,
frequent while pairing. Probing only runs while a dashboard is observing
the tenant (see ProbeRegistry) and catches up on re-activation when the
last probe is stale.
"""
import asyncio
import logging
import time
from typing import Any, Awaitable, Callable, Dict, Optional

from sqlalchemy.orm import Session

from clinic_chat import storage
from clinic_chat.config import settings
from clinic_chat.delivery_status import normalize_connection_state
from clinic_chat.gateway import GatewayClient
from clinic_chat.metrics import record_health_probe
from clinic_chat.utils import utc_now_iso

logger = logging.getLogger(__name__)

Probe = Callable[[], Awaitable[Optional[str]]]


def probe_interval_for(status: Optional[str]) -> float:
    """Seconds between health probes for a connection status."""
    return {
        "connected": settings.PROBE_INTERVAL_CONNECTED,
        "pairing": settings.PROBE_INTERVAL_PAIRING,
        "disconnected": settings.PROBE_INTERVAL_DISCONNECTED,
    }.get(status, settings.PROBE_INTERVAL_ERROR)


# =============================================================================
# Gateway events
# =============================================================================

def apply_connection_update(db: Session, connection, data: Dict[str, Any]):
    """
    Reflect a connection-update event (state open/close/connecting).

    Returns:
        The updated connection.
    """
    state = data.get("state") if isinstance(data, dict) else None
    status = normalize_connection_state(state)
    fields: Dict[str, Any] = {
        "status": status,
        "consecutive_probe_interval": probe_interval_for(status),
    }

    phone = data.get("phoneNumber") or data.get("wuid") if isinstance(data, dict) else None
    if phone:
        fields["phone_number"] = str(phone).split("@", 1)[0]
    if status == "connected":
        # A paired instance has no use for the last QR code
        fields["pairing_code"] = None

    logger.info(f"Connection update: instance={connection.instance_id}, state={state}, status={status}")
    return storage.update_connection(db, connection, **fields)


def extract_pairing_code(data: Any) -> Optional[str]:
    """
    Pull the pairing code out of a QR-code event.

    The code may sit under qrcode/qrCode/qr as a string or as an object with
    a ``base64`` (or ``pairingCode``) member.
    """
    if isinstance(data, str):
        return data or None
    if not isinstance(data, dict):
        return None

    candidate = data.get("qrcode") or data.get("qrCode") or data.get("qr") or data
    if isinstance(candidate, str):
        return candidate or None
    if isinstance(candidate, dict):
        return candidate.get("base64") or candidate.get("pairingCode") or None
    return None


def apply_pairing_code(db: Session, connection, data: Any):
    """
    Store a new pairing code and force the connection into ``pairing``.

    Returns:
        The updated connection, or None when the event carried no code.
    """
    code = extract_pairing_code(data)
    if not code:
        logger.warning(f"No QR code found in pairing event for {connection.instance_id}")
        return None

    logger.info(f"Pairing code updated for instance {connection.instance_id} ({len(code)} chars)")
    return storage.update_connection(
        db,
        connection,
        pairing_code=code,
        status="pairing",
        consecutive_probe_interval=probe_interval_for("pairing"),
    )


# =============================================================================
# Health probe
# =============================================================================

async def probe_connection(db: Session, gateway: GatewayClient, connection):
    """
    Ask the gateway whether the instance exists and reconcile stored state.

    Returns:
        The updated connection.
    """
    check = await gateway.instance_exists(connection.instance_id)

    status = connection.status
    error = None
    if not check.exists:
        health = "not_found"
        status = "disconnected"
        error = check.error or "Instance not found in gateway"
    elif check.state == "open":
        health = "healthy"
        status = "connected"
    elif check.state == "connecting":
        health = "healthy"
        status = "pairing"
    elif check.state == "close":
        health = "unhealthy"
        status = "disconnected"
        error = "Instance disconnected from WhatsApp"
    else:
        health = "unknown"
        error = f"Unknown connection status: {check.state}"

    fields: Dict[str, Any] = {
        "status": status,
        "health_status": health,
        "health_check_error": error,
        "health_check_count": (connection.health_check_count or 0) + 1,
        "last_health_check_at": utc_now_iso(),
        "consecutive_probe_interval": probe_interval_for(status),
    }
    if status == "connected":
        fields["pairing_code"] = None

    record_health_probe(health)
    logger.info(f"Health check for {connection.instance_id}: health={health}, status={status}")
    return storage.update_connection(db, connection, **fields)


def make_tenant_probe(gateway: GatewayClient, tenant_id: str, session_factory=None) -> Probe:
    """Probe callable for a tenant's scheduler; returns the resulting status."""
    session_factory = session_factory or storage.SessionLocal

    async def probe() -> Optional[str]:
        with session_factory() as db:
            connection = storage.get_connection_by_tenant(db, tenant_id)
            if connection is None:
                return None
            connection = await probe_connection(db, gateway, connection)
            return connection.status

    return probe


# =============================================================================
# Scheduling
# =============================================================================

class HealthProbeScheduler:
    """
    Periodic health probe owned by one connection.

    After each probe the interval follows the returned status. stop() is
    cooperative: a probe already talking to the gateway runs to completion.
    """

    def __init__(
        self,
        probe: Probe,
        interval_for: Callable[[Optional[str]], float] = probe_interval_for,
        catch_up_after: float = settings.PROBE_CATCH_UP_AFTER_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._probe = probe
        self._interval_for = interval_for
        self._catch_up_after = catch_up_after
        self._clock = clock
        self._task: Optional[asyncio.Task] = None
        self._active = False
        self.interval: Optional[float] = None
        self.last_probe_at: Optional[float] = None
        self.probe_count = 0

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def active(self) -> bool:
        return self._active

    def start(self, interval: float, initial_delay: Optional[float] = None) -> None:
        """(Re)start the probe loop; must be called from a running event loop."""
        self.stop()
        self.interval = interval
        self._task = asyncio.get_running_loop().create_task(
            self._run(interval if initial_delay is None else initial_delay)
        )

    def stop(self) -> None:
        if self._task is not None:
            self._task.cancel()
            self._task = None

    async def aclose(self) -> None:
        """Stop the loop and wait for its task to finish cancelling."""
        task = self._task
        self.stop()
        if task is not None:
            await asyncio.gather(task, return_exceptions=True)

    def reschedule(self, interval: float) -> None:
        """Change the cadence; restarts the countdown when running."""
        if self.running:
            self.start(interval)
        else:
            self.interval = interval

    def is_stale(self) -> bool:
        if self.last_probe_at is None:
            return True
        return self._clock() - self.last_probe_at > self._catch_up_after

    def set_active(self, active: bool, status: Optional[str] = None) -> None:
        """
        Visibility change of the owning client.

        Inactive pauses probing. Becoming active resumes it, probing right
        away when the previous probe is older than the catch-up window.
        """
        if not active:
            if self._active:
                logger.debug("Health check paused - no active observer")
            self._active = False
            self.stop()
            return

        if self._active and self.running:
            return
        self._active = True
        interval = self.interval if self.interval is not None else self._interval_for(status)
        initial_delay = 0 if self.is_stale() else None
        logger.debug(f"Health check resumed (interval={interval}s, catch_up={initial_delay == 0})")
        self.start(interval, initial_delay=initial_delay)

    async def probe_now(self) -> Optional[str]:
        status = await self._probe_once()
        if status is not None and self.running:
            self.reschedule(self._interval_for(status))
        return status

    async def _probe_once(self) -> Optional[str]:
        self.last_probe_at = self._clock()
        self.probe_count += 1
        try:
            status = await self._probe()
        except Exception:
            logger.exception("Health probe failed")
            return None
        if status is not None:
            self.interval = self._interval_for(status)
        return status

    async def _run(self, first_delay: float) -> None:
        delay = first_delay
        while True:
            await asyncio.sleep(delay)
            await asyncio.shield(self._probe_once())
            delay = self.interval


class ProbeRegistry:
    """
    One HealthProbeScheduler per tenant, driven by realtime observers.

    Schedulers outlive deactivation so that the catch-up decision on the next
    activation knows when the last probe ran.
    """

    def __init__(self, probe_factory: Callable[[str], Probe]):
        self._probe_factory = probe_factory
        self._schedulers: Dict[str, HealthProbeScheduler] = {}

    def get(self, tenant_id: str) -> Optional[HealthProbeScheduler]:
        return self._schedulers.get(tenant_id)

    def activate(self, tenant_id: str, status: Optional[str] = None) -> HealthProbeScheduler:
        scheduler = self._schedulers.get(tenant_id)
        if scheduler is None:
            scheduler = HealthProbeScheduler(self._probe_factory(tenant_id))
            self._schedulers[tenant_id] = scheduler
        scheduler.set_active(True, status)
        return scheduler

    def deactivate(self, tenant_id: str) -> None:
        scheduler = self._schedulers.get(tenant_id)
        if scheduler is not None:
            scheduler.set_active(False)

    def status_changed(self, tenant_id: str, status: str) -> None:
        """Adopt the cadence of a status reported outside the probe loop."""
        scheduler = self._schedulers.get(tenant_id)
        if scheduler is None:
            return
        interval = probe_interval_for(status)
        if scheduler.interval != interval:
            scheduler.reschedule(interval)

    async def shutdown(self) -> None:
        await asyncio.gather(
            *(scheduler.aclose() for scheduler in self._schedulers.values()),
            return_exceptions=True,
        )
