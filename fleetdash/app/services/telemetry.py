"""Fleet telemetry poller.

Polls the aggregate fleet status endpoint on a fixed interval and keeps the
last good device list. A failed tick keeps the previous state (marked stale)
instead of clearing it, so the dashboard never blanks on a transient error.
"""

import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timezone

from pydantic import ValidationError as PydanticValidationError

from fleetdash.app.core.config import settings
from fleetdash.app.core.exceptions import AuthenticationRequired, BackendError, NetworkError
from fleetdash.app.core.scheduler import PeriodicTask, SleepFunc
from fleetdash.app.schemas.printer import Device, FleetStatusResponse
from fleetdash.app.services.api_client import FleetApiClient
from fleetdash.app.services.notices import NoticeBoard

logger = logging.getLogger(__name__)

DevicesListener = Callable[[tuple[Device, ...]], None]


@dataclass(frozen=True)
class FleetSummary:
    total: int
    online: int
    printing: int


class TelemetryPoller:
    """Periodically refresh the fleet device list."""

    def __init__(
        self,
        client: FleetApiClient,
        *,
        interval: float | None = None,
        sleep: SleepFunc = asyncio.sleep,
        notices: NoticeBoard | None = None,
    ):
        self.client = client
        self.interval = interval if interval is not None else settings.telemetry_interval
        self.notices = notices
        self._sleep = sleep
        self._devices: tuple[Device, ...] = ()
        self._listeners: list[DevicesListener] = []
        self._task: PeriodicTask | None = None
        self._generation = 0
        self.stale = False
        self.last_error: Exception | None = None
        self.last_updated: datetime | None = None

    @property
    def devices(self) -> tuple[Device, ...]:
        return self._devices

    @property
    def running(self) -> bool:
        return self._task is not None and self._task.running

    def device(self, device_id: str) -> Device | None:
        for device in self._devices:
            if device.id == device_id:
                return device
        return None

    def add_listener(self, listener: DevicesListener):
        self._listeners.append(listener)

    def remove_listener(self, listener: DevicesListener):
        if listener in self._listeners:
            self._listeners.remove(listener)

    async def fetch_fleet_status(self) -> list[Device]:
        """Fetch and parse the fleet. Malformed device records are skipped."""
        payload = await self.client.get_fleet_status()
        if isinstance(payload, list):
            payload = {"devices": payload}
        try:
            envelope = FleetStatusResponse.model_validate(payload)
        except PydanticValidationError as e:
            raise BackendError(200, f"Unexpected fleet status payload: {e.error_count()} error(s)") from e

        devices = []
        for index, raw in enumerate(envelope.devices):
            try:
                devices.append(Device.model_validate(raw))
            except PydanticValidationError as e:
                logger.warning("Skipping malformed device record at index %d: %s", index, e.errors()[0]["msg"])
        return devices

    async def poll_once(self) -> bool:
        """Run one tick. Returns True when fresh state was applied."""
        generation = self._generation
        try:
            devices = await self.fetch_fleet_status()
        except (NetworkError, BackendError) as e:
            if generation != self._generation:
                return False
            self.stale = True
            self.last_error = e
            logger.warning("Fleet status poll failed, keeping last known state: %s", e)
            if self.notices is not None:
                self.notices.post(f"Could not refresh printer status: {e}", level="warning", source="telemetry")
            return False

        # Stopped (or restarted) while the request was in flight
        if generation != self._generation:
            logger.debug("Discarding fleet status that arrived after stop")
            return False

        self._devices = tuple(devices)
        self.stale = False
        self.last_error = None
        self.last_updated = datetime.now(timezone.utc)
        logger.debug("Fleet status updated: %d device(s)", len(devices))
        for listener in list(self._listeners):
            listener(self._devices)
        return True

    def start(self):
        if self.running:
            return
        self._task = PeriodicTask(
            "telemetry-poller",
            self.poll_once,
            self.interval,
            sleep=self._sleep,
            stop_on=(AuthenticationRequired,),
        )
        self._task.start()
        logger.info("Telemetry poller started (every %ss)", self.interval)

    async def stop(self):
        self._generation += 1
        task, self._task = self._task, None
        if task is not None:
            await task.stop()
            logger.info("Telemetry poller stopped")

    def summary(self) -> FleetSummary:
        return FleetSummary(
            total=len(self._devices),
            online=sum(1 for d in self._devices if d.online),
            printing=sum(1 for d in self._devices if d.is_printing),
        )
