# plugins/charge_controller/tracer_bn_status.py
from dataclasses import dataclass, fields
from datetime import datetime
from typing import Any, Dict

from utils.helpers import format_value
from .tracer_bn_plugin_constants import TRACER_FIELDS, TRACER_REPORT_LABELS


@dataclass(frozen=True)
class TracerStatus:
    """
    One decoded status snapshot of a Tracer BN charge controller.

    Voltages are in V, currents in A, powers in W, temperatures in C and
    energy counters in kWh. A positive battery_current means the battery is
    being charged. Instances are only created by the protocol layer after a
    complete query and are never modified afterwards.
    """
    array_voltage: float
    array_current: float
    array_power: float
    battery_voltage: float
    battery_current: float
    battery_soc: int
    battery_temp: float
    battery_max_voltage: float
    battery_min_voltage: float
    device_temp: float
    load_voltage: float
    load_current: float
    load_power: float
    load: bool
    energy_consumed_daily: float
    energy_consumed_monthly: float
    energy_consumed_annual: float
    energy_consumed_total: float
    energy_generated_daily: float
    energy_generated_monthly: float
    energy_generated_annual: float
    energy_generated_total: float
    timestamp: datetime

    def measurements(self) -> Dict[str, Any]:
        """Return every field except the timestamp, keyed by attribute name."""
        return {f.name: getattr(self, f.name) for f in fields(self) if f.name != "timestamp"}

    def to_dict(self) -> Dict[str, Any]:
        """Return the snapshot under its short JSON keys (pvv, bv, ..., t)."""
        result = {TRACER_FIELDS[name]["key"]: value for name, value in self.measurements().items()}
        result["t"] = self.timestamp.isoformat()
        return result

    def __str__(self) -> str:
        lines = []
        for attr, label in TRACER_REPORT_LABELS:
            value = getattr(self, attr)
            if attr == "battery_soc":
                lines.append(f"{label}: {value}%")
            elif attr == "load":
                lines.append(f"{label}: {'true' if value else 'false'}")
            else:
                lines.append(f"{label}: {format_value(value)}")
        return "\n".join(lines) + "\n"
