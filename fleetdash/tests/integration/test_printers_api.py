"""Integration tests for telemetry polling and camera snapshots against the fake backend."""

import pytest

from fleetdash.app.core.exceptions import AuthenticationRequired, BackendError
from fleetdash.app.main import DashboardSession
from fleetdash.app.services.camera import STATUS_LIVE, STATUS_UNAVAILABLE, CameraSnapshotCache
from fleetdash.app.services.preferences import AMS_PANEL_EXPANDED, LAST_ACTIVE_TAB, LAST_USED_PRINTER, PreferenceStore
from fleetdash.app.services.telemetry import TelemetryPoller
from fleetdash.tests.fake_clock import eventually


@pytest.fixture
def fleet(fake_backend):
    fake_backend.add_device(
        "01S00A",
        "X1 Carbon",
        model="BL-P001",
        status="RUNNING",
        progress=0.42,
        currentPrint="benchy.3mf",
        cameraUrl="rtsps://10.0.0.11/streaming/live/1",
    )
    fake_backend.add_device("01P00B", "P1S", status="IDLE", cameraUrl="rtsps://10.0.0.12/streaming/live/1")
    fake_backend.add_device("00M09C", "A1 mini", online=False)
    fake_backend.camera_frames["rtsps://10.0.0.11/streaming/live/1"] = b"\xff\xd8x1c"
    return fake_backend


class TestTelemetry:
    @pytest.mark.asyncio
    @pytest.mark.integration
    async def test_poll_fleet(self, api_client, fleet):
        poller = TelemetryPoller(api_client)

        await poller.poll_once()

        x1c = poller.device("01S00A")
        assert x1c.model == "X1C"
        assert x1c.progress == 42
        assert poller.summary().online == 2
        assert poller.summary().printing == 1

    @pytest.mark.asyncio
    @pytest.mark.integration
    async def test_backend_restart_keeps_last_state(self, api_client, fleet):
        poller = TelemetryPoller(api_client)
        await poller.poll_once()

        fleet.status_failures = 1
        await poller.poll_once()

        assert len(poller.devices) == 3
        assert poller.stale is True
        assert poller.last_error.retryable is True

        await poller.poll_once()
        assert poller.stale is False

    @pytest.mark.asyncio
    @pytest.mark.integration
    async def test_expired_session_stops_polling(self, api_client, fleet, fake_clock):
        poller = TelemetryPoller(api_client, sleep=fake_clock.sleep)
        fleet.session_token = "rotated"

        poller.start()
        await eventually(lambda: not poller.running)

        assert not poller.running
        with pytest.raises(AuthenticationRequired):
            await poller.poll_once()
        await poller.stop()


class TestCameras:
    @pytest.mark.asyncio
    @pytest.mark.integration
    async def test_dead_camera_does_not_affect_others(self, api_client, fleet):
        poller = TelemetryPoller(api_client)
        cameras = CameraSnapshotCache(api_client)
        await poller.poll_once()
        cameras.sync_devices(poller.devices)

        await cameras.refresh_snapshot("01S00A")
        with pytest.raises(BackendError):
            await cameras.refresh_snapshot("01P00B")

        assert cameras.feed("01S00A").status == STATUS_LIVE
        assert cameras.feed("01P00B").status == STATUS_UNAVAILABLE
        assert cameras.grid() == {"01S00A": b"\xff\xd8x1c", "01P00B": None}

    @pytest.mark.asyncio
    @pytest.mark.integration
    async def test_cache_busting_tokens_increase(self, api_client, fleet):
        cameras = CameraSnapshotCache(api_client)
        cameras.add_device("01S00A", "rtsps://10.0.0.11/streaming/live/1")

        for _ in range(3):
            await cameras.refresh_snapshot("01S00A")

        tokens = [int(t) for t in fleet.snapshot_tokens]
        assert tokens == sorted(set(tokens))


class TestDashboardSession:
    @pytest.mark.asyncio
    @pytest.mark.integration
    async def test_printers_view_wires_cameras_to_fleet(self, api_client, fleet, fake_clock, session_maker):
        poller = TelemetryPoller(api_client, sleep=fake_clock.sleep)
        cameras = CameraSnapshotCache(api_client, sleep=fake_clock.sleep)
        preferences = PreferenceStore(session_maker)
        await preferences.load()
        session = DashboardSession(api_client, poller=poller, cameras=cameras, preferences=preferences)

        await session.open_printers_view()
        await eventually(lambda: len(fleet.snapshot_tokens) >= 2 and bool(cameras.grid().get("01S00A")))

        assert set(cameras.feeds) == {"01S00A", "01P00B"}
        assert cameras.feed("01S00A").status == STATUS_LIVE
        assert preferences.get(LAST_ACTIVE_TAB) == "printers"

        # Device leaves the fleet: its camera feed goes with it
        fleet.devices = [d for d in fleet.devices if d["id"] != "01P00B"]
        await fake_clock.advance()
        await eventually(lambda: "01P00B" not in cameras.feeds)
        assert set(cameras.feeds) == {"01S00A"}

        await session.aclose()
        assert not poller.running
        assert not cameras.running

    @pytest.mark.asyncio
    @pytest.mark.integration
    async def test_remembers_printer_and_ams_panels(self, api_client, fleet, session_maker):
        poller = TelemetryPoller(api_client)
        session = DashboardSession(api_client, poller=poller, preferences=PreferenceStore(session_maker))
        assert session.last_used_printer() is None
        assert session.ams_panel_expanded("01S00A") is False

        await poller.poll_once()
        await session.select_printer("01S00A")
        await session.set_ams_panel_expanded("01S00A", True)
        await session.set_ams_panel_expanded("01P00B", False)

        assert session.last_used_printer().name == "X1 Carbon"
        assert session.ams_panel_expanded("01S00A") is True

        reloaded = PreferenceStore(session_maker)
        await reloaded.load()
        assert reloaded.get(LAST_USED_PRINTER) == "01S00A"
        assert reloaded.get(AMS_PANEL_EXPANDED) == {"01S00A": True, "01P00B": False}

        # Printer removed from the fleet
        fleet.devices = [d for d in fleet.devices if d["id"] != "01S00A"]
        await poller.poll_once()
        assert session.last_used_printer() is None
