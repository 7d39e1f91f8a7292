# plugins/plugin_interface.py
from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, Optional, TypeVar, TYPE_CHECKING
import logging

if TYPE_CHECKING:
    from core.app_state import AppState

T = TypeVar('T')

def _config_text(config_dict: Dict[str, Any], key: str, default: Any) -> str:
    # Text before the first ';' with surrounding blanks removed
    return str(config_dict.get(key, default)).split(';', 1)[0].strip()

def _parse_config(config_dict: Dict[str, Any], key: str, default: T, cast: Callable[[str], T]) -> T:
    text = _config_text(config_dict, key, default)
    try:
        return cast(text)
    except ValueError as e:
        raise ValueError(f"Config option '{key}' has invalid value '{text}'") from e

def parse_config_int(config_dict: Dict[str, Any], key: str, default: int) -> int:
    """
    Integer option of a plugin section, e.g. "baud_rate = 115200 ; USB cable".

    Raises:
        ValueError: If the option is present but not an integer.
    """
    return _parse_config(config_dict, key, default, int)

def parse_config_float(config_dict: Dict[str, Any], key: str, default: float) -> float:
    return _parse_config(config_dict, key, default, float)

def parse_config_str(config_dict: Dict[str, Any], key: str, default: Optional[str] = None) -> Optional[str]:
    """String option of a plugin section; None when missing or blank and no default is given."""
    if config_dict.get(key, default) is None:
        return None
    return _config_text(config_dict, key, default) or None


class StandardDataKeys:
    """
    Device independent names for the values a plugin reports.

    read_static_data() and read_dynamic_data() return dictionaries keyed by
    these constants, so the polling thread never needs to know which
    controller produced a value. Units are part of the name.
    """
    # Added by the polling thread
    SERVER_TIMESTAMP_MS_UTC = "server_timestamp_ms_utc"
    PLUGIN_DATA_TIMESTAMP_MS_UTC = "plugin_data_timestamp_ms_utc"
    CORE_PLUGIN_CONNECTION_STATUS = "core_plugin_connection_status"

    # read_static_data()
    STATIC_DEVICE_CATEGORY = "static_device_category" # str: "charge_controller"
    STATIC_CONTROLLER_MANUFACTURER = "static_controller_manufacturer"
    STATIC_CONTROLLER_MODEL_NAME = "static_controller_model_name"
    STATIC_NUMBER_OF_MPPTS = "static_number_of_mppts"

    # Controller
    OPERATIONAL_DEVICE_TEMPERATURE_CELSIUS = "operational_device_temperature_celsius"

    # PV array
    PV_MPPT1_VOLTAGE_VOLTS = "pv_mppt1_voltage_volts"
    PV_MPPT1_CURRENT_AMPS = "pv_mppt1_current_amps"
    PV_MPPT1_POWER_WATTS = "pv_mppt1_power_watts"
    PV_TOTAL_DC_POWER_WATTS = "pv_total_dc_power_watts"
    ENERGY_PV_DAILY_KWH = "energy_pv_daily_kwh"
    ENERGY_PV_MONTHLY_KWH = "energy_pv_monthly_kwh"
    ENERGY_PV_YEARLY_KWH = "energy_pv_yearly_kwh"
    ENERGY_PV_TOTAL_LIFETIME_KWH = "energy_pv_total_lifetime_kwh"

    # Battery
    BATTERY_STATE_OF_CHARGE_PERCENT = "battery_state_of_charge_percent"
    BATTERY_VOLTAGE_VOLTS = "battery_voltage_volts"
    BATTERY_CURRENT_AMPS = "battery_current_amps"  # positive while discharging
    BATTERY_POWER_WATTS = "battery_power_watts"    # positive while discharging
    BATTERY_TEMPERATURE_CELSIUS = "battery_temperature_celsius"
    BATTERY_STATUS_TEXT = "battery_status_text"
    BATTERY_MAX_VOLTAGE_TODAY_VOLTS = "battery_max_voltage_today_volts"
    BATTERY_MIN_VOLTAGE_TODAY_VOLTS = "battery_min_voltage_today_volts"

    # Load output
    LOAD_OUTPUT_ON = "load_output_on" # bool
    LOAD_VOLTAGE_VOLTS = "load_voltage_volts"
    LOAD_CURRENT_AMPS = "load_current_amps"
    LOAD_TOTAL_POWER_WATTS = "load_total_power_watts"
    ENERGY_LOAD_DAILY_KWH = "energy_load_daily_kwh"
    ENERGY_LOAD_MONTHLY_KWH = "energy_load_monthly_kwh"
    ENERGY_LOAD_YEARLY_KWH = "energy_load_yearly_kwh"
    ENERGY_LOAD_TOTAL_KWH = "energy_load_total_kwh"


class DevicePlugin(ABC):
    """
    Interface between the polling thread and one physical device.

    The polling thread calls connect() until it succeeds, read_static_data()
    once, then read_dynamic_data() every poll interval. A plugin signals a failed
    read by returning None; the thread reconnects when is_connected turns False.
    """
    def __init__(self, instance_name: str, plugin_specific_config: Dict[str, Any], main_logger: logging.Logger, app_state: Optional['AppState'] = None):
        self.instance_name = instance_name
        self.plugin_config = plugin_specific_config  # options of [PLUGIN_<instance_name>]
        self.logger = main_logger
        self.app_state = app_state
        self._is_connected_flag: bool = False
        self.connection_status: str = "initializing"

    @property
    @abstractmethod
    def name(self) -> str:
        """Short type identifier, e.g. 'tracer_bn'."""

    @property
    @abstractmethod
    def pretty_name(self) -> str:
        """Display name of the device type."""

    @property
    def is_connected(self) -> bool:
        return self._is_connected_flag

    @abstractmethod
    def connect(self) -> bool:
        """Makes the device reachable. Sets _is_connected_flag and returns it."""

    @abstractmethod
    def disconnect(self) -> None:
        """Releases the device and clears _is_connected_flag."""

    @abstractmethod
    def read_static_data(self) -> Dict[str, Any]:
        """Identification data; must contain StandardDataKeys.STATIC_DEVICE_CATEGORY."""

    @abstractmethod
    def read_dynamic_data(self) -> Optional[Dict[str, Any]]:
        """
        One set of live measurements keyed by StandardDataKeys, or None if the
        device could not be read.
        """
