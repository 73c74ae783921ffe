import argparse
import asyncio
import logging
from logging.handlers import RotatingFileHandler

from fleetdash.app.core.config import APP_VERSION, settings as app_settings
from fleetdash.app.core.database import init_db
from fleetdash.app.core.exceptions import AuthenticationRequired
from fleetdash.app.schemas.printer import Device
from fleetdash.app.services.api_client import FleetApiClient
from fleetdash.app.services.camera import CameraSnapshotCache
from fleetdash.app.services.geometry import ModelGeometryLoader, ModelViewerSession
from fleetdash.app.services.library import LibraryService
from fleetdash.app.services.notices import NoticeBoard
from fleetdash.app.services.preferences import (
    AMS_PANEL_EXPANDED,
    LAST_ACTIVE_TAB,
    LAST_USED_PRINTER,
    PreferenceStore,
)
from fleetdash.app.services.telemetry import TelemetryPoller

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"


def configure_logging(level: str | None = None, log_to_file: bool | None = None):
    """Configure the root logger: console always, rotating file when enabled.

    DEBUG=true -> DEBUG level, else the LOG_LEVEL setting.
    """
    log_level_str = (level or ("DEBUG" if app_settings.debug else app_settings.log_level)).upper()
    log_level = getattr(logging, log_level_str, logging.INFO)

    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)

    console_handler = logging.StreamHandler()
    console_handler.setLevel(log_level)
    console_handler.setFormatter(logging.Formatter(LOG_FORMAT))
    root_logger.addHandler(console_handler)

    if app_settings.log_to_file if log_to_file is None else log_to_file:
        app_settings.log_dir.mkdir(exist_ok=True)
        log_file = app_settings.log_dir / "fleetdash.log"
        file_handler = RotatingFileHandler(
            log_file,
            maxBytes=5 * 1024 * 1024,  # 5MB
            backupCount=3,
            encoding="utf-8",
        )
        file_handler.setLevel(log_level)
        file_handler.setFormatter(logging.Formatter(LOG_FORMAT))
        root_logger.addHandler(file_handler)
        logging.info(f"Logging to file: {log_file}")

    # Reduce noise from third-party libraries in production
    if not app_settings.debug:
        logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
        logging.getLogger("httpcore").setLevel(logging.WARNING)
        logging.getLogger("httpx").setLevel(logging.WARNING)

    logging.info(f"fleetdash {APP_VERSION} - debug={app_settings.debug}, log_level={log_level_str}")


class DashboardSession:
    """One signed-in dashboard: shared client, notices, and the per-view services."""

    def __init__(
        self,
        client: FleetApiClient | None = None,
        *,
        poller: TelemetryPoller | None = None,
        cameras: CameraSnapshotCache | None = None,
        preferences: PreferenceStore | None = None,
    ):
        self.notices = NoticeBoard()
        self.client = client or FleetApiClient(on_unauthorized=self._on_unauthorized)
        self.poller = poller or TelemetryPoller(self.client, notices=self.notices)
        self.cameras = cameras or CameraSnapshotCache(self.client)
        self.library = LibraryService(self.client, notices=self.notices)
        self.geometry = ModelGeometryLoader(self.client)
        self.preferences = preferences or PreferenceStore()
        self.viewer: ModelViewerSession | None = None
        self.authenticated = True
        self.poller.add_listener(self._on_devices)

    def _on_unauthorized(self):
        self.authenticated = False
        self.notices.post("Session expired, please sign in again", level="error", source="auth")

    def _on_devices(self, devices: tuple[Device, ...]):
        self.cameras.sync_devices(devices)

    async def open_printers_view(self):
        """Start telemetry polling and camera refresh."""
        self.poller.start()
        self.cameras.start()
        if self.preferences.loaded:
            await self.preferences.set(LAST_ACTIVE_TAB, "printers")

    async def close_printers_view(self):
        await self.poller.stop()
        await self.cameras.stop()

    async def select_printer(self, device_id: str):
        """Remember the printer last picked in a form (e.g. a maintenance entry)."""
        await self.preferences.set(LAST_USED_PRINTER, device_id)

    def last_used_printer(self) -> Device | None:
        """The remembered printer, if it is still part of the fleet."""
        if not self.preferences.loaded:
            return None
        device_id = self.preferences.get(LAST_USED_PRINTER)
        return self.poller.device(device_id) if device_id else None

    def ams_panel_expanded(self, device_id: str) -> bool:
        if not self.preferences.loaded:
            return False
        return bool((self.preferences.get(AMS_PANEL_EXPANDED) or {}).get(device_id, False))

    async def set_ams_panel_expanded(self, device_id: str, expanded: bool):
        if not self.preferences.loaded:
            await self.preferences.load()
        panels = dict(self.preferences.get(AMS_PANEL_EXPANDED) or {})
        panels[device_id] = expanded
        await self.preferences.set(AMS_PANEL_EXPANDED, panels)

    async def open_model_viewer(self) -> ModelViewerSession:
        """Open a fresh model viewer, closing any previous one."""
        if self.viewer is not None:
            await self.viewer.close()
        self.viewer = ModelViewerSession(self.geometry)
        return self.viewer

    async def aclose(self):
        await self.close_printers_view()
        if self.viewer is not None:
            await self.viewer.close()
            self.viewer = None
        await self.client.close()

    async def __aenter__(self) -> "DashboardSession":
        return self

    async def __aexit__(self, *exc_info):
        await self.aclose()


async def run_monitor(session: DashboardSession, duration: float | None = None):
    """Run the printers view headless, logging a fleet summary on every poll."""

    def log_summary(devices):
        summary = session.poller.summary()
        logger.info(
            "Fleet: %d printer(s), %d online, %d printing",
            summary.total,
            summary.online,
            summary.printing,
        )
        for device in devices:
            if device.is_printing:
                logger.info("  %s: %s %d%%", device.name, device.current_task.name or "print", device.progress)

    session.poller.add_listener(log_summary)
    await session.open_printers_view()
    try:
        if duration is not None:
            await asyncio.sleep(duration)
        else:
            while session.authenticated:
                await asyncio.sleep(1)
    finally:
        await session.close_printers_view()


async def _amain(args) -> int:
    await init_db()
    session = DashboardSession(FleetApiClient(args.base_url, session_cookie=args.session_cookie))
    session.client.on_unauthorized = session._on_unauthorized
    await session.preferences.load()
    async with session:
        await run_monitor(session, args.duration)
    return 0 if session.authenticated else 2


def main():
    parser = argparse.ArgumentParser(description="Monitor a printer fleet from the command line")
    parser.add_argument("--base-url", default=app_settings.base_url, help="Backend URL")
    parser.add_argument("--session-cookie", default=app_settings.session_cookie, help="Session cookie value")
    parser.add_argument("--duration", type=float, default=None, help="Stop after this many seconds")
    parser.add_argument("--log-level", default=None, help="Override LOG_LEVEL")
    args = parser.parse_args()

    configure_logging(args.log_level)
    try:
        exit_code = asyncio.run(_amain(args))
    except KeyboardInterrupt:
        exit_code = 0
    except AuthenticationRequired as e:
        logger.error("Authentication required: %s", e)
        exit_code = 2
    raise SystemExit(exit_code)


if __name__ == "__main__":
    main()
