"""Normalization of inconsistent firmware-reported printer fields.

Different printer firmwares report the same value in different shapes:
progress as a 0-1 fraction or a 0-100 percentage, models as display names
or internal codes, "no tray" as a 255 sentinel. These helpers turn them into
one canonical form before the rest of the client sees them.
"""

import math

# Active tray sentinel meaning "no filament loaded"
NO_ACTIVE_TRAY = 255

# Map from dev_model_name (internal codes reported by the cloud bind API) to display names
PRINTER_MODEL_ID_MAP = {
    # X1 series
    "BL-P001": "X1C",  # SSDP/LAN code
    "C11": "X1C",
    "C12": "X1",
    "C13": "X1E",
    # P1 series
    "P1P": "P1P",
    "P1S": "P1S",
    # P2 series
    "P2S": "P2S",
    "N7": "P2S",
    # A1 series
    "A11": "A1",
    "A12": "A1 Mini",
    "N1": "A1",
    "N2S": "A1 Mini",
    "A04": "A1 Mini",
    # H2 series
    "O1D": "H2D",
    "O1E": "H2D Pro",
    "O2D": "H2D Pro",
    "O1C": "H2C",
    "O1S": "H2S",
}


def _to_float(value) -> float | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    if math.isnan(number) or math.isinf(number):
        return None
    return number


def normalize_progress(value) -> int:
    """Normalize a firmware progress report to an integer percentage.

    Values <= 1 are treated as fractions and scaled by 100. The result is
    clamped to [0, 100] and rounded half up. Missing or non-numeric values
    report 0.
    """
    number = _to_float(value)
    if number is None:
        return 0
    if number <= 1:
        # 0.285 * 100 is 28.499999999999996, so trim float noise before rounding
        number = round(number * 100, 6)
    number = max(0.0, min(100.0, number))
    # Round half up; round() would round 0.5 to even
    return int(math.floor(number + 0.5))


def normalize_active_tray(value) -> int | None:
    """Convert the active tray field to a slot number, mapping the 255 sentinel to None."""
    number = _to_float(value)
    if number is None:
        return None
    slot = int(number)
    if slot == NO_ACTIVE_TRAY or slot < 0:
        return None
    return slot


def normalize_error_code(value) -> int | None:
    """Firmware reports 0 for "no error"; expose that as None."""
    number = _to_float(value)
    if not number:
        return None
    return int(number)


def normalize_color_hex(value: str | None) -> str | None:
    """Strip a leading '#' and uppercase a hex colour like 'fec600ff'."""
    if not value:
        return None
    color = str(value).strip().lstrip("#").upper()
    return color or None


def normalize_printer_model(model_id: str | None, product_name: str | None = None) -> str | None:
    """Resolve a printer's display model.

    Prefers the product display name when present, otherwise maps the internal
    model code, otherwise returns the code unchanged.
    """
    if product_name:
        return product_name.replace("Bambu Lab ", "").strip() or product_name
    if not model_id:
        return None
    return PRINTER_MODEL_ID_MAP.get(model_id, model_id)
