# plugins/charge_controller/tracer_bn_plugin_constants.py
"""
Constants for the EPsolar Tracer BN charge controller plugin.

The controller is queried with five fixed request frames. Each reply is copied
verbatim into one 120-byte logical buffer at the offset listed in TRACER_FRAMES,
and the measurements are then read from fixed byte ranges of that buffer as
described by TRACER_FIELDS.
"""

import struct
from collections import namedtuple

# Serial link settings (8N1)
DEFAULT_BAUD_RATE = 115200
DEFAULT_REPLY_TIMEOUT_SECONDS = 2.0

SLAVE_ADDRESS = 0x01
RESPONSE_BUFFER_SIZE = 120
VALUE_DIVISOR = 100

# Function codes used by the status query
FUNC_READ_DISCRETE_INPUTS = 0x02
FUNC_READ_INPUT_REGISTERS = 0x04
FUNC_READ_STATISTICS = 0x43  # Tracer specific

FrameDescriptor = namedtuple("FrameDescriptor", ["request_bytes", "expected_reply_length", "buffer_offset"])


def _modbus_crc16(data: bytes) -> int:
    """
    Calculate the Modbus CRC16 checksum of a request frame.

    Args:
        data: The frame bytes without the checksum.

    Returns:
        The 16-bit CRC value.
    """
    crc = 0xFFFF
    for byte in data:
        crc ^= byte
        for _ in range(8):
            if crc & 0x0001:
                crc >>= 1
                crc ^= 0xA001
            else:
                crc >>= 1
    return crc


def _build_request_frame(function_code: int, start_register: int, count: int) -> bytes:
    """
    Build a read request: [slave][function][start register][count][CRC lo][CRC hi].

    Args:
        function_code: Modbus style function code.
        start_register: First register (or discrete input) of the block.
        count: Number of registers in the block.

    Returns:
        The 8-byte request frame.
    """
    body = struct.pack('>BBHH', SLAVE_ADDRESS, function_code, start_register, count)
    return body + struct.pack('<H', _modbus_crc16(body))


# Ordered status query. Regions are disjoint and filled left to right.
TRACER_FRAMES = (
    # Real time PV, battery and load block (0x3200..0x3202)
    FrameDescriptor(_build_request_frame(FUNC_READ_INPUT_REGISTERS, 0x3200, 3), 11, 0),
    # Load on/off discrete input
    FrameDescriptor(_build_request_frame(FUNC_READ_DISCRETE_INPUTS, 0x2000, 1), 6, 11),
    # Statistical block one (0x3100..0x311A)
    FrameDescriptor(_build_request_frame(FUNC_READ_STATISTICS, 0x3100, 27), 51, 17),
    # Battery current (0x331A..0x331C)
    FrameDescriptor(_build_request_frame(FUNC_READ_INPUT_REGISTERS, 0x331A, 3), 11, 68),
    # Battery extremes and energy counters (0x3302..0x3313)
    FrameDescriptor(_build_request_frame(FUNC_READ_INPUT_REGISTERS, 0x3302, 18), 41, 79),
)

# Field map over the assembled buffer.
#   offset/size: byte range, big-endian
#   type: "uint" (scaled), "int16" (two's complement, scaled),
#         "flag" (byte == 1), "byte" (raw unscaled byte)
#   key: short name used in to_dict()
TRACER_FIELDS = {
    "load":                     {"offset": 8,   "size": 1, "type": "flag",  "key": "load"},
    "array_voltage":            {"offset": 24,  "size": 2, "type": "uint",  "unit": "V",   "key": "pvv"},
    "array_current":            {"offset": 26,  "size": 2, "type": "uint",  "unit": "A",   "key": "pvc"},
    "array_power":              {"offset": 28,  "size": 2, "type": "uint",  "unit": "W",   "key": "pvp"},
    "battery_voltage":          {"offset": 32,  "size": 2, "type": "uint",  "unit": "V",   "key": "bv"},
    "load_voltage":             {"offset": 40,  "size": 2, "type": "uint",  "unit": "V",   "key": "lv"},
    "load_current":             {"offset": 42,  "size": 2, "type": "uint",  "unit": "A",   "key": "lc"},
    "load_power":               {"offset": 44,  "size": 2, "type": "uint",  "unit": "W",   "key": "lp"},
    "battery_temp":             {"offset": 56,  "size": 2, "type": "uint",  "unit": "C",   "key": "btemp"},
    "device_temp":              {"offset": 58,  "size": 2, "type": "uint",  "unit": "C",   "key": "devtemp"},
    "battery_soc":              {"offset": 65,  "size": 1, "type": "byte",  "unit": "%",   "key": "bsoc"},
    "battery_current":          {"offset": 73,  "size": 2, "type": "int16", "unit": "A",   "key": "bc"},
    "battery_max_voltage":      {"offset": 82,  "size": 2, "type": "uint",  "unit": "V",   "key": "bmaxv"},
    "battery_min_voltage":      {"offset": 84,  "size": 2, "type": "uint",  "unit": "V",   "key": "bminv"},
    "energy_consumed_daily":    {"offset": 86,  "size": 2, "type": "uint",  "unit": "kWh", "key": "ecd"},
    "energy_consumed_monthly":  {"offset": 88,  "size": 4, "type": "uint",  "unit": "kWh", "key": "ecm"},
    "energy_consumed_annual":   {"offset": 92,  "size": 4, "type": "uint",  "unit": "kWh", "key": "eca"},
    "energy_consumed_total":    {"offset": 96,  "size": 4, "type": "uint",  "unit": "kWh", "key": "ect"},
    "energy_generated_daily":   {"offset": 100, "size": 4, "type": "uint",  "unit": "kWh", "key": "egd"},
    "energy_generated_monthly": {"offset": 104, "size": 4, "type": "uint",  "unit": "kWh", "key": "egm"},
    "energy_generated_annual":  {"offset": 108, "size": 4, "type": "uint",  "unit": "kWh", "key": "ega"},
    "energy_generated_total":   {"offset": 112, "size": 4, "type": "uint",  "unit": "kWh", "key": "egt"},
}

# Labels for the human readable report, in display order
TRACER_REPORT_LABELS = [
    ("array_voltage", "ArrayVoltage"),
    ("array_current", "ArrayCurrent"),
    ("array_power", "ArrayPower"),
    ("battery_voltage", "BatteryVoltage"),
    ("battery_current", "BatteryCurrent"),
    ("battery_soc", "BatterySOC"),
    ("battery_temp", "BatteryTemp"),
    ("battery_max_voltage", "BatteryMaxVoltage"),
    ("battery_min_voltage", "BatteryMinVoltage"),
    ("device_temp", "DeviceTemp"),
    ("load_voltage", "LoadVoltage"),
    ("load_current", "LoadCurrent"),
    ("load_power", "LoadPower"),
    ("load", "Load"),
    ("energy_consumed_daily", "EnergyConsumedDaily"),
    ("energy_consumed_monthly", "EnergyConsumedMonthly"),
    ("energy_consumed_annual", "EnergyConsumedAnnual"),
    ("energy_consumed_total", "EnergyConsumedTotal"),
    ("energy_generated_daily", "EnergyGeneratedDaily"),
    ("energy_generated_monthly", "EnergyGeneratedMonthly"),
    ("energy_generated_annual", "EnergyGeneratedAnnual"),
    ("energy_generated_total", "EnergyGeneratedTotal"),
]
