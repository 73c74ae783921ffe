"""Unit tests for fleet telemetry schemas."""

import pytest
from pydantic import ValidationError

from fleetdash.app.schemas.printer import AmsSnapshot, Device, PrintJob


class TestDevice:
    def test_parses_camel_case_record(self):
        device = Device.model_validate(
            {
                "id": "01P00A000000001",
                "name": "Workshop P2S",
                "model": "N7",
                "online": True,
                "printStatus": "RUNNING",
                "cameraUrl": "rtsps://192.168.1.20/streaming/live/1",
                "currentTask": {"name": "benchy.3mf", "progress": 0.42, "nozzleTemp": 219.5},
            }
        )

        assert device.id == "01P00A000000001"
        assert device.model == "P2S"
        assert device.camera_url.startswith("rtsps://")
        assert device.current_task.progress == 42
        assert device.current_task.nozzle_temp == 219.5
        assert device.is_printing is True

    def test_parses_cloud_bind_record(self):
        device = Device.model_validate(
            {
                "dev_id": "00M09A350100123",
                "name": "",
                "dev_model_name": "N2S",
                "dev_product_name": "Bambu Lab A1",
                "online": 1,
                "print_status": "IDLE",
                "dev_access_code": "12345678",
                "nozzle_diameter": 0.4,
            }
        )

        assert device.id == "00M09A350100123"
        assert device.name == "Printer"
        assert device.model == "A1"
        assert device.online is True
        assert device.current_task is None
        assert device.is_printing is False

    def test_access_code_hidden_from_repr(self):
        device = Device.model_validate({"id": "x", "dev_access_code": "secret-code"})
        assert device.access_credentials == "secret-code"
        assert "secret-code" not in repr(device)

    def test_flat_progress_becomes_current_task(self):
        """The aggregate status endpoint reports progress on the device itself."""
        device = Device.model_validate(
            {"id": 7, "name": "X1C", "status": "RUNNING", "progress": 55, "currentPrint": "gear.gcode", "bedTemp": 60}
        )

        assert device.id == "7"
        assert device.current_task.name == "gear.gcode"
        assert device.progress == 55
        assert device.current_task.bed_temp == 60

    def test_idle_status_record_has_no_task(self):
        """Idle printers still carry progress 0 and an empty currentPrint."""
        device = Device.model_validate(
            {"id": "A", "name": "P1S", "status": "IDLE", "progress": 0, "online": True, "currentPrint": None}
        )

        assert device.current_task is None
        assert device.progress == 0
        assert device.is_printing is False

    @pytest.mark.parametrize(
        "fields",
        [
            {"status": "PREPARE", "progress": 0},
            {"status": "IDLE", "progress": 12},
            {"status": "FINISH", "progress": 0, "currentPrint": "cube.3mf"},
        ],
    )
    def test_active_status_record_has_task(self, fields):
        device = Device.model_validate({"id": "A", **fields})
        assert device.current_task is not None

    def test_camera_url_from_task(self):
        device = Device.model_validate(
            {"id": "a", "current_task": {"name": "x", "rtsp_url": "rtsps://10.0.0.5/streaming/live/1"}}
        )
        assert device.camera_url == "rtsps://10.0.0.5/streaming/live/1"

    def test_missing_id_rejected(self):
        with pytest.raises(ValidationError):
            Device.model_validate({"name": "No id"})

    def test_malformed_ams_degrades_to_none(self, capture_logs):
        device = Device.model_validate({"id": "a", "ams": {"trays": "not-a-list"}})

        assert device.ams is None
        assert any("AMS" in r.getMessage() for r in capture_logs.get_warnings())

    def test_task_ams_preferred_over_device_ams(self):
        device = Device.model_validate(
            {
                "id": "a",
                "ams": {"trays": [{"slot": 0, "type": "PLA"}]},
                "current_task": {"ams": {"trays": [{"slot": 1, "type": "PETG"}]}},
            }
        )
        assert device.ams_snapshot.trays[0].filament_type == "PETG"


class TestAmsSnapshot:
    def test_sentinel_active_tray(self):
        snapshot = AmsSnapshot.model_validate({"tray_now": 255, "trays": []})
        assert snapshot.active_tray_slot is None
        assert snapshot.active_tray is None

    def test_trays_unique_and_ordered_by_slot(self):
        snapshot = AmsSnapshot.model_validate(
            {
                "active_tray": 2,
                "trays": [
                    {"slot": 2, "type": "PLA", "color": "#ff0000"},
                    {"slot": 0, "type": "PETG"},
                    {"slot": 2, "type": "ABS", "remain": 40},
                ],
            }
        )

        assert [t.slot for t in snapshot.trays] == [0, 2]
        # Last report for a slot wins
        assert snapshot.tray(2).filament_type == "ABS"
        assert snapshot.active_tray.remain_percent == 40

    def test_unknown_remaining_is_none(self):
        snapshot = AmsSnapshot.model_validate({"trays": [{"slot": 0, "remain": -1}, {"slot": 1, "remain": 140}]})
        assert snapshot.tray(0).remain_percent is None
        assert snapshot.tray(1).remain_percent == 100

    def test_color_normalized(self):
        snapshot = AmsSnapshot.model_validate({"trays": [{"slot": 0, "tray_color": "#00ae42ff"}]})
        assert snapshot.tray(0).color_hex == "00AE42FF"


class TestPrintJob:
    def test_firmware_field_names(self):
        job = PrintJob.model_validate(
            {
                "subtask_name": "plate_1",
                "mc_percent": 0.999,
                "layer_num": 120,
                "total_layer_num": 240,
                "mc_remaining_time": 37,
                "print_error": 0,
                "gcode_state": "PAUSE",
            }
        )

        assert job.name == "plate_1"
        assert job.progress == 100
        assert job.total_layers == 240
        assert job.remaining_time_minutes == 37
        assert job.error_code is None

    def test_progress_defaults_to_zero(self):
        assert PrintJob.model_validate({}).progress == 0
