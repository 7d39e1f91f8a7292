# plugins/charge_controller/tracer_bn_plugin.py
"""
EPsolar Tracer BN Charge Controller Plugin

This plugin reads the status of EPsolar Tracer BN series solar charge controllers
(tested model: Tracer4215BN) over the RJ45-to-USB serial cable supplied by EPsolar.

The controller speaks a Modbus-like protocol, but only five fixed request frames are
used. Each frame is sent in turn and its reply copied into one 120-byte logical
buffer; once all five replies are in place, the measurements are decoded from fixed
byte offsets of that buffer.

Features:
- Fixed five frame status query (PV array, battery, load, temperatures, energy counters)
- Per-frame reply timeout (2 seconds by default)
- Signed battery current (positive while charging)
- Serial port opened per query and always closed afterwards

Example Configuration:
    [PLUGIN_tracer]
    plugin_type = charge_controller.tracer_bn_plugin
    serial_port = /dev/ttyXRUSB0
    baud_rate = 115200
    reply_timeout_seconds = 2.0
"""

import time
import queue
import logging
import threading
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional, TYPE_CHECKING

import serial

if TYPE_CHECKING:
    from core.app_state import AppState

from .tracer_bn_plugin_constants import (
    TRACER_FRAMES,
    TRACER_FIELDS,
    RESPONSE_BUFFER_SIZE,
    VALUE_DIVISOR,
    DEFAULT_BAUD_RATE,
    DEFAULT_REPLY_TIMEOUT_SECONDS,
    FrameDescriptor,
)
from .tracer_bn_status import TracerStatus

from plugins.plugin_interface import (
    DevicePlugin,
    StandardDataKeys,
    parse_config_float,
    parse_config_int,
    parse_config_str,
)
from utils.helpers import STATUS_CONNECTED, STATUS_DISCONNECTED

logger = logging.getLogger(__name__)


class TracerError(Exception):
    """Base class for every failure of a Tracer status query."""

    def __init__(self, message: str, frame_index: Optional[int] = None):
        super().__init__(message)
        self.frame_index = frame_index


class TracerOpenError(TracerError):
    """The serial device could not be opened."""


class TracerWriteError(TracerError):
    """A request frame was not fully written."""


class TracerTimeoutError(TracerError):
    """No complete reply arrived within the reply timeout."""


class TracerReadError(TracerError):
    """The transport failed while a reply was being read."""


def open_serial_transport(port_name: str, baud_rate: int = DEFAULT_BAUD_RATE) -> serial.Serial:
    """
    Open the serial device the controller is attached to (8N1, blocking reads).

    Raises:
        TracerOpenError: If the port cannot be opened.
    """
    try:
        return serial.Serial(
            port=port_name,
            baudrate=baud_rate,
            bytesize=serial.EIGHTBITS,
            parity=serial.PARITY_NONE,
            stopbits=serial.STOPBITS_ONE,
            timeout=None
        )
    except (serial.SerialException, OSError) as e:
        raise TracerOpenError(f"Failed to open serial port {port_name}: {e}") from e


def _read_at_least(transport: Any, count: int, result_queue: queue.Queue) -> None:
    """Reader thread body. Puts either the bytes read or a TracerReadError on the queue."""
    received = bytearray()
    try:
        while len(received) < count:
            chunk = transport.read(count - len(received))
            if not chunk:
                result_queue.put(TracerReadError(f"Stream ended after {len(received)} of {count} bytes"))
                return
            received.extend(chunk)
    except (serial.SerialException, OSError) as e:
        result_queue.put(TracerReadError(f"Read failed: {e}"))
        return
    result_queue.put(bytes(received))


def exchange(transport: Any, descriptor: FrameDescriptor, timeout: float = DEFAULT_REPLY_TIMEOUT_SECONDS) -> bytes:
    """
    Send one request frame and wait for its reply.

    The reply is read in a daemon thread while the caller waits on a queue for at most
    ``timeout`` seconds. If the timeout wins, the reader thread is abandoned and
    whatever it reads later is discarded.

    Args:
        transport: Object with ``write(bytes)`` and ``read(n)``.
        descriptor: The frame to send.
        timeout: Seconds to wait for ``descriptor.expected_reply_length`` bytes.

    Returns:
        The reply bytes.

    Raises:
        TracerWriteError: The frame could not be written in full.
        TracerTimeoutError: The reply did not arrive in time.
        TracerReadError: The transport failed while reading.
    """
    request = descriptor.request_bytes
    try:
        written = transport.write(request)
    except (serial.SerialException, OSError) as e:
        raise TracerWriteError(f"Write failed: {e}") from e
    if written is not None and written != len(request):
        raise TracerWriteError(f"Short write: {written} of {len(request)} bytes sent")

    result_queue: queue.Queue = queue.Queue(maxsize=1)
    reader = threading.Thread(
        target=_read_at_least,
        args=(transport, descriptor.expected_reply_length, result_queue),
        name="TracerReader",
        daemon=True
    )
    reader.start()

    try:
        result = result_queue.get(timeout=timeout)
    except queue.Empty:
        raise TracerTimeoutError(
            f"No reply of {descriptor.expected_reply_length} bytes within {timeout:.1f}s"
        ) from None

    if isinstance(result, TracerError):
        raise result
    return result


def place(response_buffer: bytearray, descriptor: FrameDescriptor, reply: bytes) -> None:
    """
    Copy a reply into the logical buffer at the descriptor's offset.

    Raises:
        ValueError: If the reply would run past the end of the buffer.
    """
    start = descriptor.buffer_offset
    end = start + len(reply)
    if end > len(response_buffer):
        raise ValueError(f"Reply of {len(reply)} bytes at offset {start} overflows {len(response_buffer)}-byte buffer")
    response_buffer[start:end] = reply


def unpack(data: bytes) -> float:
    """
    Interpret a byte sequence as a big-endian unsigned integer.

    The first byte is the most significant one. The value is returned as a float
    so it can be scaled directly.
    """
    value = 0
    for i, byte in enumerate(data):
        value += byte << (8 * (len(data) - 1 - i))
    return float(value)


def _decode_field(response_buffer: bytes, info: Dict[str, Any]) -> Any:
    start = info["offset"]
    raw_bytes = response_buffer[start:start + info["size"]]
    field_type = info["type"]

    if field_type == "flag":
        return raw_bytes[0] == 1
    if field_type == "byte":
        return int(raw_bytes[0])

    value = unpack(raw_bytes)
    if field_type == "int16" and value >= 32768:
        value -= 65536
    return value / VALUE_DIVISOR


def decode_buffer(response_buffer: bytes, captured_at: Optional[datetime] = None) -> TracerStatus:
    """
    Decode a fully assembled response buffer into a TracerStatus.

    Args:
        response_buffer: The 120-byte logical buffer.
        captured_at: Capture timestamp; defaults to the current UTC time.
    """
    decoded = {name: _decode_field(response_buffer, info) for name, info in TRACER_FIELDS.items()}
    return TracerStatus(timestamp=captured_at or datetime.now(timezone.utc), **decoded)


def query_status(transport: Any, timeout: float = DEFAULT_REPLY_TIMEOUT_SECONDS) -> TracerStatus:
    """
    Run the complete five frame status query over an open transport.

    Frames are exchanged strictly in order. The first failure aborts the query;
    no partial snapshot is ever produced.

    Raises:
        TracerError: Any write, read or timeout failure, tagged with the frame index.
    """
    response_buffer = bytearray(RESPONSE_BUFFER_SIZE)
    for index, descriptor in enumerate(TRACER_FRAMES, start=1):
        started = time.monotonic()
        try:
            reply = exchange(transport, descriptor, timeout)
        except TracerError as e:
            e.frame_index = index
            raise
        place(response_buffer, descriptor, reply)
        logger.debug(
            f"Frame {index}/{len(TRACER_FRAMES)} {descriptor.request_bytes.hex(' ')}: "
            f"{len(reply)} bytes in {(time.monotonic() - started) * 1000:.1f} ms"
        )
    return decode_buffer(bytes(response_buffer))


def read_tracer_status(
    port_name: str,
    baud_rate: int = DEFAULT_BAUD_RATE,
    timeout: float = DEFAULT_REPLY_TIMEOUT_SECONDS,
    transport_factory: Callable[[str, int], Any] = open_serial_transport
) -> TracerStatus:
    """
    Open the serial port, read one status snapshot and close the port.

    The port is closed on every path, including failures.

    Args:
        port_name: Serial device path (e.g. /dev/ttyXRUSB0 or COM3).
        baud_rate: Link speed, 115200 for Tracer BN controllers.
        timeout: Per-frame reply timeout in seconds.
        transport_factory: Callable opening the transport; raises TracerOpenError.

    Returns:
        The decoded TracerStatus.

    Raises:
        TracerError: If the port cannot be opened or any exchange fails.
    """
    transport = transport_factory(port_name, baud_rate)
    try:
        return query_status(transport, timeout)
    finally:
        transport.close()


class TracerBnPlugin(DevicePlugin):
    """
    Device plugin for EPsolar Tracer BN charge controllers.

    The serial port is not held open between polls: every read_dynamic_data()
    call opens it, runs the full status query and closes it again. connect()
    only probes that the port can be opened.

    Configuration Parameters:
    - serial_port: COM port or device path
    - baud_rate: Serial speed (default 115200)
    - reply_timeout_seconds: Per-frame reply timeout (default 2.0)
    """

    def __init__(self, instance_name: str, plugin_specific_config: Dict[str, Any], main_logger: logging.Logger, app_state: Optional['AppState'] = None):
        super().__init__(instance_name, plugin_specific_config, main_logger, app_state)

        self.serial_port_path = parse_config_str(self.plugin_config, "serial_port", "/dev/ttyXRUSB0")
        self.baud_rate = parse_config_int(self.plugin_config, "baud_rate", DEFAULT_BAUD_RATE)
        self.reply_timeout = parse_config_float(self.plugin_config, "reply_timeout_seconds", DEFAULT_REPLY_TIMEOUT_SECONDS)

        self.last_error_message: Optional[str] = None
        self.last_status: Optional[TracerStatus] = None
        self._query_lock = threading.Lock()

        self.logger.info(f"Tracer Plugin '{self.instance_name}': Initialized for {self.serial_port_path} @ {self.baud_rate} baud")

    @property
    def name(self) -> str:
        return "tracer_bn"

    @property
    def pretty_name(self) -> str:
        return "EPsolar Tracer BN"

    def connect(self) -> bool:
        """
        Check that the serial port can be opened.

        Returns:
            True if the port opened (and was closed again), False otherwise.
        """
        self.last_error_message = None
        try:
            transport = open_serial_transport(self.serial_port_path, self.baud_rate)
        except TracerOpenError as e:
            self.last_error_message = str(e)
            self.logger.error(f"Tracer Plugin '{self.instance_name}': {self.last_error_message}")
            self._is_connected_flag = False
            return False
        transport.close()
        self._is_connected_flag = True
        self.connection_status = STATUS_CONNECTED
        self.logger.info(f"Tracer Plugin '{self.instance_name}': Serial port {self.serial_port_path} is available")
        return True

    def disconnect(self) -> None:
        self._is_connected_flag = False
        self.connection_status = STATUS_DISCONNECTED
        self.logger.info(f"Tracer Plugin '{self.instance_name}': Disconnected")

    def read_static_data(self) -> Dict[str, Any]:
        return {
            StandardDataKeys.STATIC_DEVICE_CATEGORY: "charge_controller",
            StandardDataKeys.STATIC_CONTROLLER_MANUFACTURER: "EPsolar",
            StandardDataKeys.STATIC_CONTROLLER_MODEL_NAME: "Tracer BN",
            StandardDataKeys.STATIC_NUMBER_OF_MPPTS: 1,
        }

    def read_dynamic_data(self) -> Optional[Dict[str, Any]]:
        """
        Run one status query and return standardized data.

        Returns:
            Dictionary of StandardDataKeys values plus "raw_values", or None on failure.
            On failure last_error_message holds the reason and the plugin is marked
            disconnected so the polling thread reconnects.
        """
        if not self.is_connected:
            self.logger.error("Not connected, cannot read data.")
            return None

        with self._query_lock:
            try:
                status = read_tracer_status(self.serial_port_path, self.baud_rate, self.reply_timeout)
            except TracerError as e:
                frame_info = f" (frame {e.frame_index})" if e.frame_index else ""
                self.last_error_message = f"{type(e).__name__}{frame_info}: {e}"
                self.logger.error(f"Tracer Plugin '{self.instance_name}': {self.last_error_message}")
                self.disconnect()
                return None

        self.last_status = status
        return self._standardize_status(status)

    def _standardize_status(self, status: TracerStatus) -> Dict[str, Any]:
        """
        Map a TracerStatus onto StandardDataKeys.

        The application convention is positive battery current/power while
        discharging; the controller reports positive while charging, so both are
        negated here.
        """
        battery_current = -status.battery_current
        battery_power = battery_current * status.battery_voltage

        batt_status_txt = "Idle"
        if battery_power > 10:
            batt_status_txt = "Discharging"
        elif battery_power < -10:
            batt_status_txt = "Charging"

        return {
            StandardDataKeys.PLUGIN_DATA_TIMESTAMP_MS_UTC: int(status.timestamp.timestamp() * 1000),
            StandardDataKeys.PV_MPPT1_VOLTAGE_VOLTS: status.array_voltage,
            StandardDataKeys.PV_MPPT1_CURRENT_AMPS: status.array_current,
            StandardDataKeys.PV_MPPT1_POWER_WATTS: status.array_power,
            StandardDataKeys.PV_TOTAL_DC_POWER_WATTS: status.array_power,
            StandardDataKeys.BATTERY_VOLTAGE_VOLTS: status.battery_voltage,
            StandardDataKeys.BATTERY_CURRENT_AMPS: battery_current,
            StandardDataKeys.BATTERY_POWER_WATTS: battery_power,
            StandardDataKeys.BATTERY_STATUS_TEXT: batt_status_txt,
            StandardDataKeys.BATTERY_STATE_OF_CHARGE_PERCENT: status.battery_soc,
            StandardDataKeys.BATTERY_TEMPERATURE_CELSIUS: status.battery_temp,
            StandardDataKeys.BATTERY_MAX_VOLTAGE_TODAY_VOLTS: status.battery_max_voltage,
            StandardDataKeys.BATTERY_MIN_VOLTAGE_TODAY_VOLTS: status.battery_min_voltage,
            StandardDataKeys.OPERATIONAL_DEVICE_TEMPERATURE_CELSIUS: status.device_temp,
            StandardDataKeys.LOAD_OUTPUT_ON: status.load,
            StandardDataKeys.LOAD_VOLTAGE_VOLTS: status.load_voltage,
            StandardDataKeys.LOAD_CURRENT_AMPS: status.load_current,
            StandardDataKeys.LOAD_TOTAL_POWER_WATTS: status.load_power,
            StandardDataKeys.ENERGY_LOAD_DAILY_KWH: status.energy_consumed_daily,
            StandardDataKeys.ENERGY_LOAD_MONTHLY_KWH: status.energy_consumed_monthly,
            StandardDataKeys.ENERGY_LOAD_YEARLY_KWH: status.energy_consumed_annual,
            StandardDataKeys.ENERGY_LOAD_TOTAL_KWH: status.energy_consumed_total,
            StandardDataKeys.ENERGY_PV_DAILY_KWH: status.energy_generated_daily,
            StandardDataKeys.ENERGY_PV_MONTHLY_KWH: status.energy_generated_monthly,
            StandardDataKeys.ENERGY_PV_YEARLY_KWH: status.energy_generated_annual,
            StandardDataKeys.ENERGY_PV_TOTAL_LIFETIME_KWH: status.energy_generated_total,
            "raw_values": status.to_dict()  # Include raw values for debugging
        }
