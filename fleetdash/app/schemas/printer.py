"""Pydantic schemas for fleet telemetry.

The backend relays whatever the printer firmware and the cloud bind API
report, so field names arrive in several spellings (``dev_id`` vs ``id``,
``mc_percent`` vs ``progress``). Each field lists the spellings it accepts and
normalizes the value on the way in.
"""

import logging
from datetime import datetime

from pydantic import AliasChoices, BaseModel, Field, ValidationError as PydanticValidationError
from pydantic import field_validator, model_validator

from fleetdash.app.utils.printer_fields import (
    normalize_active_tray,
    normalize_color_hex,
    normalize_error_code,
    normalize_printer_model,
    normalize_progress,
)

logger = logging.getLogger(__name__)

ACTIVE_PRINT_STATES = ("RUNNING", "PREPARE", "PAUSE")


def _tolerant_ams(value, handler, owner: str):
    """Parse an AMS block, degrading to None instead of failing the owner."""
    try:
        return handler(value)
    except PydanticValidationError as e:
        logger.warning("Ignoring malformed AMS data on %s: %d error(s)", owner, e.error_count())
        return None


class AmsTray(BaseModel):
    slot: int = Field(validation_alias=AliasChoices("slot", "id", "tray_id"))
    filament_type: str | None = Field(
        None, validation_alias=AliasChoices("filament_type", "filamentType", "type", "tray_type")
    )
    sub_brands: str | None = Field(None, validation_alias=AliasChoices("sub_brands", "subBrands", "tray_sub_brands"))
    color_hex: str | None = Field(None, validation_alias=AliasChoices("color_hex", "colorHex", "color", "tray_color"))
    remain_percent: int | None = Field(
        None, validation_alias=AliasChoices("remain_percent", "remainPercent", "remain")
    )  # -1 from firmware means unknown
    humidity: float | None = None
    temp_c: float | None = Field(None, validation_alias=AliasChoices("temp_c", "tempC", "temp"))

    @field_validator("color_hex", mode="before")
    @classmethod
    def _normalize_color(cls, value):
        return normalize_color_hex(value)

    @field_validator("remain_percent", mode="before")
    @classmethod
    def _normalize_remain(cls, value):
        if value is None or value == "":
            return None
        remain = int(float(value))
        if remain < 0:
            return None
        return min(remain, 100)


class AmsSnapshot(BaseModel):
    """Filament changer state. Trays are unique by slot and ordered by slot."""

    active_tray_slot: int | None = Field(
        None, validation_alias=AliasChoices("active_tray_slot", "activeTraySlot", "active_tray", "tray_now")
    )
    trays: list[AmsTray] = []

    @field_validator("active_tray_slot", mode="before")
    @classmethod
    def _map_sentinel(cls, value):
        return normalize_active_tray(value)

    @field_validator("trays")
    @classmethod
    def _unique_slots(cls, trays: list[AmsTray]) -> list[AmsTray]:
        # Last report for a slot wins
        by_slot = {tray.slot: tray for tray in trays}
        return [by_slot[slot] for slot in sorted(by_slot)]

    def tray(self, slot: int) -> AmsTray | None:
        for tray in self.trays:
            if tray.slot == slot:
                return tray
        return None

    @property
    def active_tray(self) -> AmsTray | None:
        if self.active_tray_slot is None:
            return None
        return self.tray(self.active_tray_slot)


class PrintJob(BaseModel):
    """The current task of a printing device. Replaced wholesale on every poll."""

    name: str | None = Field(None, validation_alias=AliasChoices("name", "subtask_name", "currentPrint"))
    progress: int = Field(0, validation_alias=AliasChoices("progress", "mc_percent", "print_progress"))
    layer_num: int | None = Field(None, validation_alias=AliasChoices("layer_num", "layerNum"))
    total_layers: int | None = Field(
        None, validation_alias=AliasChoices("total_layers", "totalLayers", "total_layer_num")
    )
    remaining_time_minutes: int | None = Field(
        None,
        validation_alias=AliasChoices("remaining_time_minutes", "remainingTimeMinutes", "remaining_time", "mc_remaining_time"),
    )
    end_time: datetime | None = None
    nozzle_temp: float | None = Field(None, validation_alias=AliasChoices("nozzle_temp", "nozzleTemp", "nozzle_temper"))
    nozzle_target: float | None = Field(
        None, validation_alias=AliasChoices("nozzle_target", "nozzleTarget", "nozzle_target_temper")
    )
    bed_temp: float | None = Field(None, validation_alias=AliasChoices("bed_temp", "bedTemp", "bed_temper"))
    bed_target: float | None = Field(None, validation_alias=AliasChoices("bed_target", "bedTarget", "bed_target_temper"))
    chamber_temp: float | None = Field(
        None, validation_alias=AliasChoices("chamber_temp", "chamberTemp", "chamber_temper")
    )
    speed_factor: float | None = Field(None, validation_alias=AliasChoices("speed_factor", "speedFactor", "spd_mag"))
    gcode_state: str | None = Field(None, validation_alias=AliasChoices("gcode_state", "gcodeState"))
    error_code: int | None = Field(None, validation_alias=AliasChoices("error_code", "errorCode", "print_error"))
    error_message: str | None = None
    ams: AmsSnapshot | None = Field(None, validation_alias=AliasChoices("ams", "amsSnapshot"))

    @field_validator("progress", mode="before")
    @classmethod
    def _normalize_progress(cls, value):
        return normalize_progress(value)

    @field_validator("error_code", mode="before")
    @classmethod
    def _normalize_error(cls, value):
        return normalize_error_code(value)

    @field_validator("ams", mode="wrap")
    @classmethod
    def _tolerate_ams(cls, value, handler):
        return _tolerant_ams(value, handler, "current task")


class Device(BaseModel):
    """A physical printer as reported by one fleet poll."""

    id: str = Field(validation_alias=AliasChoices("id", "dev_id", "serial_number"))
    name: str = "Printer"
    model: str | None = None
    online: bool = False
    print_status: str | None = Field(None, validation_alias=AliasChoices("print_status", "printStatus", "status"))
    nozzle_diameter: float | None = Field(
        None, validation_alias=AliasChoices("nozzle_diameter", "nozzleDiameter")
    )
    access_credentials: str | None = Field(
        None,
        repr=False,
        validation_alias=AliasChoices("access_credentials", "accessCredentials", "dev_access_code"),
    )
    camera_url: str | None = Field(
        None, validation_alias=AliasChoices("camera_url", "cameraUrl", "camera_rtsp_url")
    )
    current_task: PrintJob | None = Field(None, validation_alias=AliasChoices("current_task", "currentTask"))
    ams: AmsSnapshot | None = None

    @model_validator(mode="before")
    @classmethod
    def _flatten_variants(cls, data):
        if not isinstance(data, dict):
            return data
        data = dict(data)

        data["model"] = normalize_printer_model(
            data.get("model") or data.get("dev_model_name"),
            data.get("dev_product_name"),
        )

        # Aggregate status endpoint reports progress on the device itself,
        # with progress 0 for idle printers
        task = data.get("current_task", data.get("currentTask"))
        status = data.get("print_status") or data.get("printStatus") or data.get("status") or ""
        active = (
            bool(data.get("currentPrint"))
            or str(status).upper() in ACTIVE_PRINT_STATES
            or normalize_progress(data.get("progress")) > 0
        )
        if task is None and active:
            data["current_task"] = {
                "name": data.get("currentPrint"),
                "progress": data.get("progress"),
                "nozzle_temp": data.get("nozzleTemp"),
                "bed_temp": data.get("bedTemp"),
            }
        elif isinstance(task, dict) and not data.get("camera_rtsp_url") and not data.get("camera_url"):
            # Integrated cameras report their RTSP URL inside the task
            if task.get("rtsp_url"):
                data["camera_url"] = task["rtsp_url"]
        return data

    @field_validator("id", mode="before")
    @classmethod
    def _coerce_id(cls, value):
        if value is None or value == "":
            raise ValueError("device id is required")
        return str(value)

    @field_validator("name", mode="before")
    @classmethod
    def _default_name(cls, value):
        return value or "Printer"

    @field_validator("online", mode="before")
    @classmethod
    def _coerce_online(cls, value):
        return bool(value)

    @field_validator("ams", mode="wrap")
    @classmethod
    def _tolerate_ams(cls, value, handler):
        return _tolerant_ams(value, handler, "device")

    @property
    def progress(self) -> int:
        """Normalized progress of the current task, 0 when idle."""
        return self.current_task.progress if self.current_task else 0

    @property
    def is_printing(self) -> bool:
        if self.current_task is None:
            return False
        state = (self.print_status or self.current_task.gcode_state or "").upper()
        return state in ACTIVE_PRINT_STATES

    @property
    def ams_snapshot(self) -> AmsSnapshot | None:
        """AMS state, preferring the live task's snapshot over the device-level one."""
        if self.current_task and self.current_task.ams is not None:
            return self.current_task.ams
        return self.ams


class FleetStatusResponse(BaseModel):
    """Envelope of the fleet status endpoint. Devices are validated one by one."""

    devices: list = Field([], validation_alias=AliasChoices("devices", "printers"))
