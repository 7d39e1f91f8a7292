# utils/helpers.py
from typing import Any

# Connection states shown for a plugin instance
STATUS_NA = "N/A"
STATUS_ERROR = "error"
STATUS_CONNECTED = "connected"
STATUS_DISCONNECTED = "disconnected"

_AGE_UNITS = (
    (86400, "day"),
    (3600, "hr"),
    (60, "min"),
)

def format_value(value: Any, precision: int = 2) -> str:
    """
    Text for one measurement in a status report.

    Numbers get `precision` decimals, booleans read ON/OFF and a missing
    value reads N/A.
    """
    if value is None:
        return STATUS_NA
    if isinstance(value, bool):
        return "ON" if value else "OFF"
    if isinstance(value, (int, float)):
        return f"{value:.{precision}f}"
    return str(value)

def format_time_ago(elapsed_seconds: Any) -> str:
    """'just now', '42s ago', '3 min ago', '2 hr ago', '1 day ago'; '' for invalid input."""
    if isinstance(elapsed_seconds, bool) or not isinstance(elapsed_seconds, (int, float)) or elapsed_seconds < 0:
        return ""
    if elapsed_seconds < 5:
        return "just now"
    for unit_seconds, unit in _AGE_UNITS:
        if elapsed_seconds >= unit_seconds:
            count = int(elapsed_seconds // unit_seconds)
            plural = "s" if unit == "day" and count > 1 else ""
            return f"{count} {unit}{plural} ago"
    return f"{int(elapsed_seconds)}s ago"
