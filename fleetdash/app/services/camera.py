"""Per-device camera snapshot cache.

Each camera-equipped device gets its own refresh loop so a dead camera only
degrades its own tile. Snapshots are fetched through the backend proxy with a
cache-busting counter so intermediaries never serve a stale frame.
"""

import asyncio
import itertools
import logging
from collections.abc import Iterable
from dataclasses import dataclass
from datetime import datetime, timezone

from fleetdash.app.core.config import settings
from fleetdash.app.core.exceptions import AuthenticationRequired, BackendError, FleetDashError, NetworkError
from fleetdash.app.core.scheduler import PeriodicTask, SleepFunc
from fleetdash.app.schemas.printer import Device
from fleetdash.app.services.api_client import FleetApiClient

logger = logging.getLogger(__name__)

STATUS_PENDING = "pending"
STATUS_LIVE = "live"
STATUS_UNAVAILABLE = "unavailable"


@dataclass
class CameraFeed:
    """Latest snapshot state for one device's camera."""

    device_id: str
    camera_url: str
    image: bytes | None = None
    content_type: str | None = None
    status: str = STATUS_PENDING
    error: str | None = None
    failures: int = 0
    refreshed_at: datetime | None = None


class CameraSnapshotCache:
    """Holds the most recent frame for each device and keeps it refreshed."""

    def __init__(
        self,
        client: FleetApiClient,
        *,
        interval: float | None = None,
        timeout: float | None = None,
        sleep: SleepFunc = asyncio.sleep,
    ):
        self.client = client
        self.interval = interval if interval is not None else settings.camera_refresh_interval
        self.timeout = timeout if timeout is not None else settings.camera_timeout
        self._sleep = sleep
        self._feeds: dict[str, CameraFeed] = {}
        self._tasks: dict[str, PeriodicTask] = {}
        self._stopping: set[asyncio.Future] = set()
        self._tokens = itertools.count(1)
        self._running = False

    @property
    def running(self) -> bool:
        return self._running

    @property
    def feeds(self) -> dict[str, CameraFeed]:
        return dict(self._feeds)

    def feed(self, device_id: str) -> CameraFeed | None:
        return self._feeds.get(device_id)

    def next_token(self) -> int:
        return next(self._tokens)

    def add_device(self, device_id: str, camera_url: str) -> CameraFeed:
        """Register (or reset) a device's feed. Starts its loop if the cache is running."""
        current = self._feeds.get(device_id)
        if current is not None and current.camera_url == camera_url:
            return current
        if current is not None:
            logger.info("Camera URL changed for device %s, resetting feed", device_id)
            self._cancel_loop(device_id)

        feed = CameraFeed(device_id=device_id, camera_url=camera_url)
        self._feeds[device_id] = feed
        if self._running:
            self._start_loop(device_id)
        return feed

    def remove_device(self, device_id: str):
        self._feeds.pop(device_id, None)
        self._cancel_loop(device_id)

    def sync_devices(self, devices: Iterable[Device]):
        """Align feeds with the current fleet: add new cameras, drop vanished devices."""
        wanted = {d.id: d.camera_url for d in devices if d.camera_url}
        for device_id in list(self._feeds):
            if device_id not in wanted:
                logger.debug("Device %s no longer has a camera, removing feed", device_id)
                self.remove_device(device_id)
        for device_id, camera_url in wanted.items():
            self.add_device(device_id, camera_url)

    async def refresh_snapshot(self, device_id: str) -> bytes:
        """Fetch a fresh frame for one device and store it in its feed.

        Raises ``KeyError`` for unknown devices and the client's errors on failure;
        the feed is marked unavailable before the error propagates.
        """
        feed = self._feeds[device_id]
        token = self.next_token()
        try:
            response = await self.client.get_camera_snapshot(feed.camera_url, token, timeout=self.timeout)
        except (NetworkError, BackendError) as e:
            if self._feeds.get(device_id) is feed:
                self._mark_unavailable(feed, e)
            raise

        # Feed removed or replaced while the request was in flight
        if self._feeds.get(device_id) is not feed:
            logger.debug("Discarding snapshot for removed camera feed %s", device_id)
            return response.content

        if feed.status != STATUS_LIVE and feed.failures:
            logger.info("Camera for device %s recovered after %d failure(s)", device_id, feed.failures)
        feed.image = response.content
        feed.content_type = response.headers.get("content-type")
        feed.status = STATUS_LIVE
        feed.error = None
        feed.failures = 0
        feed.refreshed_at = datetime.now(timezone.utc)
        return feed.image

    def _mark_unavailable(self, feed: CameraFeed, error: FleetDashError):
        feed.failures += 1
        feed.error = str(error)
        if feed.status != STATUS_UNAVAILABLE:
            logger.warning("Camera for device %s unavailable: %s", feed.device_id, error)
        feed.status = STATUS_UNAVAILABLE

    def _start_loop(self, device_id: str):
        async def tick():
            if device_id not in self._feeds:
                return
            try:
                await self.refresh_snapshot(device_id)
            except (NetworkError, BackendError):
                # Already recorded on the feed
                pass

        task = PeriodicTask(
            f"camera-{device_id}",
            tick,
            self.interval,
            sleep=self._sleep,
            stop_on=(AuthenticationRequired,),
        )
        self._tasks[device_id] = task
        task.start()

    def _cancel_loop(self, device_id: str):
        task = self._tasks.pop(device_id, None)
        if task is not None and task.running:
            # Removal happens from synchronous listeners, so cancel without awaiting
            stopping = asyncio.ensure_future(task.stop())
            self._stopping.add(stopping)
            stopping.add_done_callback(self._stopping.discard)

    def start(self):
        if self._running:
            return
        self._running = True
        for device_id in self._feeds:
            self._start_loop(device_id)
        logger.info("Camera cache started for %d device(s)", len(self._feeds))

    async def stop(self):
        self._running = False
        tasks, self._tasks = list(self._tasks.values()), {}
        await asyncio.gather(*(task.stop() for task in tasks), *self._stopping)
        logger.info("Camera cache stopped")

    def grid(self) -> dict[str, bytes | None]:
        """Latest frame per device, None where the camera is unavailable or still pending."""
        return {
            device_id: feed.image if feed.status == STATUS_LIVE else None
            for device_id, feed in self._feeds.items()
        }
