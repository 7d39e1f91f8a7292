#!/usr/bin/env python3
"""
Standalone test suite for the EPsolar Tracer BN plugin.

This test file validates:
- The fixed request frame table and its wire bytes
- Big-endian field unpacking, scaling and battery current sign correction
- Placement of replies in the 120-byte response buffer
- The per-frame exchange (short writes, timeouts, read errors, fragmented replies)
- The complete five frame query and port handling
- Plugin initialization, connection probing and data standardization

Usage:
    python test_plugins/test_tracer_bn_plugin.py
"""

import sys
import os
import time
import unittest
import logging
import threading
from datetime import datetime, timezone
from unittest.mock import Mock, patch

import serial

# Add the project root to the Python path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from plugins.charge_controller.tracer_bn_plugin import (
    TracerBnPlugin,
    TracerError,
    TracerOpenError,
    TracerWriteError,
    TracerTimeoutError,
    TracerReadError,
    exchange,
    place,
    unpack,
    decode_buffer,
    query_status,
    read_tracer_status,
    open_serial_transport,
)
from plugins.charge_controller.tracer_bn_plugin_constants import (
    TRACER_FRAMES,
    TRACER_FIELDS,
    RESPONSE_BUFFER_SIZE,
    FrameDescriptor,
    _modbus_crc16,
)
from plugins.charge_controller.tracer_bn_status import TracerStatus
from plugins.plugin_interface import StandardDataKeys

# Marker for a request the fake device never answers
NO_REPLY = None


class FakeTransport:
    """In-memory stand-in for serial.Serial that answers each write with a canned reply."""

    def __init__(self, replies, chunk_size=None, write_result=None, write_error=None, read_error=None):
        self._replies = list(replies)
        self._pending = bytearray()
        self._hanging = False
        self.chunk_size = chunk_size
        self.write_result = write_result
        self.write_error = write_error
        self.read_error = read_error
        self.release = threading.Event()
        self.writes = []
        self.closed = False

    def write(self, data):
        self.writes.append(bytes(data))
        if self.write_error:
            raise self.write_error
        reply = self._replies.pop(0) if self._replies else b""
        if reply is NO_REPLY:
            self._hanging = True
        else:
            self._pending.extend(reply)
        return len(data) if self.write_result is None else self.write_result

    def read(self, size):
        if self.read_error:
            raise self.read_error
        if not self._pending and self._hanging:
            self.release.wait()
            return b""
        count = size if self.chunk_size is None else min(size, self.chunk_size)
        chunk = bytes(self._pending[:count])
        del self._pending[:count]
        return chunk

    def close(self):
        self.closed = True
        self.release.set()


def replies_for(buffer_bytes):
    """Split a full logical buffer into the five replies the device would send."""
    return [bytes(buffer_bytes[d.buffer_offset:d.buffer_offset + d.expected_reply_length]) for d in TRACER_FRAMES]


def sample_buffer():
    buf = bytearray(RESPONSE_BUFFER_SIZE)
    buf[8] = 0x01                 # load on
    buf[24:26] = b'\x04\xd2'      # array voltage 12.34
    buf[26:28] = b'\x00\xfa'      # array current 2.50
    buf[32:34] = b'\x05\x14'      # battery voltage 13.00
    buf[56:58] = b'\x09\xc4'      # battery temp 25.00
    buf[65] = 0x50                # SOC 80
    buf[73:75] = b'\x01\xf4'      # battery current +5.00 (charging)
    buf[112:116] = b'\x00\x01\x86\xa0'  # energy generated total 1000.00
    return buf


class TestFrameTable(unittest.TestCase):
    """Test suite for the request frame table."""

    def test_wire_bytes(self):
        expected = [
            ("01 04 32 00 00 03 be b3", 11, 0),
            ("01 02 20 00 00 01 b2 0a", 6, 11),
            ("01 43 31 00 00 1b 0a f2", 51, 17),
            ("01 04 33 1a 00 03 9e 88", 11, 68),
            ("01 04 33 02 00 12 de 83", 41, 79),
        ]
        self.assertEqual(len(TRACER_FRAMES), 5)
        for descriptor, (hex_bytes, reply_len, offset) in zip(TRACER_FRAMES, expected):
            self.assertEqual(descriptor.request_bytes, bytes.fromhex(hex_bytes))
            self.assertEqual(descriptor.expected_reply_length, reply_len)
            self.assertEqual(descriptor.buffer_offset, offset)

    def test_crc_matches_frame_body(self):
        for descriptor in TRACER_FRAMES:
            crc = _modbus_crc16(descriptor.request_bytes[:-2])
            self.assertEqual(descriptor.request_bytes[-2:], bytes([crc & 0xFF, crc >> 8]))

    def test_regions_are_disjoint_and_fit(self):
        end = 0
        for descriptor in TRACER_FRAMES:
            self.assertGreaterEqual(descriptor.buffer_offset, end)
            end = descriptor.buffer_offset + descriptor.expected_reply_length
        self.assertLessEqual(end, RESPONSE_BUFFER_SIZE)

    def test_fields_within_buffer(self):
        for name, info in TRACER_FIELDS.items():
            self.assertLessEqual(info["offset"] + info["size"], RESPONSE_BUFFER_SIZE, name)
            self.assertIn(info["size"], (1, 2, 4), name)


class TestFieldDecoding(unittest.TestCase):
    """Test suite for unpacking and decoding fields."""

    def test_unpack_big_endian(self):
        self.assertEqual(unpack(bytes([0x01, 0x02])), 258)
        self.assertEqual(unpack(bytes([0x00, 0x64])), 100)
        self.assertEqual(unpack(bytes([0xff])), 255)
        self.assertEqual(unpack(bytes([0x00, 0x01, 0x86, 0xa0])), 100000)
        self.assertEqual(unpack(bytes([0xff, 0xff, 0xff, 0xff])), 4294967295)

    def test_unpack_returns_float(self):
        self.assertIsInstance(unpack(b'\x00\x01'), float)

    def _decode_with(self, offset, raw):
        buf = bytearray(RESPONSE_BUFFER_SIZE)
        buf[offset:offset + len(raw)] = raw
        return decode_buffer(bytes(buf))

    def test_scaling(self):
        status = self._decode_with(24, b'\x04\xd2')
        self.assertEqual(status.array_voltage, 12.34)

    def test_battery_current_sign_boundaries(self):
        self.assertEqual(self._decode_with(73, b'\x80\x00').battery_current, -327.68)
        self.assertEqual(self._decode_with(73, b'\x7f\xff').battery_current, 327.67)
        self.assertEqual(self._decode_with(73, b'\x00\x00').battery_current, 0)
        self.assertEqual(self._decode_with(73, b'\xff\xff').battery_current, -0.01)

    def test_other_fields_are_unsigned(self):
        status = self._decode_with(82, b'\xff\xff')
        self.assertEqual(status.battery_max_voltage, 655.35)

    def test_load_flag_is_permissive(self):
        self.assertTrue(self._decode_with(8, b'\x01').load)
        self.assertFalse(self._decode_with(8, b'\x00').load)
        self.assertFalse(self._decode_with(8, b'\x02').load)
        self.assertFalse(self._decode_with(8, b'\xff').load)

    def test_soc_is_unscaled_int(self):
        status = self._decode_with(65, b'\x50')
        self.assertEqual(status.battery_soc, 80)
        self.assertIsInstance(status.battery_soc, int)

    def test_decoding_is_repeatable(self):
        buf = bytes(sample_buffer())
        first = decode_buffer(buf)
        second = decode_buffer(buf)
        self.assertEqual(first.measurements(), second.measurements())

    def test_timestamp_defaults_to_utc_now(self):
        before = datetime.now(timezone.utc)
        status = decode_buffer(bytes(RESPONSE_BUFFER_SIZE))
        self.assertEqual(status.timestamp.tzinfo, timezone.utc)
        self.assertGreaterEqual(status.timestamp, before)


class TestBufferAssembly(unittest.TestCase):
    """Test suite for placing replies in the logical buffer."""

    def test_place_all_replies(self):
        buf = bytearray(RESPONSE_BUFFER_SIZE)
        replies = []
        for index, descriptor in enumerate(TRACER_FRAMES):
            reply = bytes((index * 40 + k) % 256 for k in range(descriptor.expected_reply_length))
            replies.append(reply)
            place(buf, descriptor, reply)

        for descriptor, reply in zip(TRACER_FRAMES, replies):
            for k in range(len(reply)):
                self.assertEqual(buf[descriptor.buffer_offset + k], reply[k])
        self.assertEqual(len(buf), RESPONSE_BUFFER_SIZE)

    def test_place_overflow_raises(self):
        buf = bytearray(RESPONSE_BUFFER_SIZE)
        with self.assertRaises(ValueError):
            place(buf, FrameDescriptor(b"", 41, 100), bytes(41))
        self.assertEqual(len(buf), RESPONSE_BUFFER_SIZE)


class TestExchange(unittest.TestCase):
    """Test suite for a single request/reply exchange."""

    def test_returns_reply(self):
        descriptor = TRACER_FRAMES[1]
        transport = FakeTransport([b'\x01\x02\x01\x01\x60\x48'])
        self.assertEqual(exchange(transport, descriptor), b'\x01\x02\x01\x01\x60\x48')
        self.assertEqual(transport.writes, [descriptor.request_bytes])

    def test_fragmented_reply_is_reassembled(self):
        descriptor = TRACER_FRAMES[2]
        reply = bytes(range(descriptor.expected_reply_length))
        transport = FakeTransport([reply], chunk_size=4)
        self.assertEqual(exchange(transport, descriptor), reply)

    def test_short_write(self):
        transport = FakeTransport([b'\x00' * 11], write_result=4)
        with self.assertRaises(TracerWriteError):
            exchange(transport, TRACER_FRAMES[0])

    def test_write_exception(self):
        transport = FakeTransport([], write_error=serial.SerialException("device gone"))
        with self.assertRaises(TracerWriteError):
            exchange(transport, TRACER_FRAMES[0])

    def test_timeout(self):
        transport = FakeTransport([NO_REPLY])
        self.addCleanup(transport.release.set)
        started = time.monotonic()
        with self.assertRaises(TracerTimeoutError):
            exchange(transport, TRACER_FRAMES[0], timeout=0.2)
        self.assertLess(time.monotonic() - started, 2.0)

    def test_partial_reply_times_out(self):
        transport = FakeTransport([b'\x01\x04\x06', NO_REPLY])
        transport._hanging = True
        self.addCleanup(transport.release.set)
        with self.assertRaises(TracerTimeoutError):
            exchange(transport, TRACER_FRAMES[0], timeout=0.2)

    def test_read_error(self):
        transport = FakeTransport([b''], read_error=serial.SerialException("read failed"))
        with self.assertRaises(TracerReadError):
            exchange(transport, TRACER_FRAMES[0])

    def test_end_of_stream_is_read_error(self):
        transport = FakeTransport([b'\x01\x04'])
        with self.assertRaises(TracerReadError):
            exchange(transport, TRACER_FRAMES[0])


class TestQueryStatus(unittest.TestCase):
    """Test suite for the complete five frame query."""

    def test_end_to_end(self):
        transport = FakeTransport(replies_for(sample_buffer()), chunk_size=5)
        status = query_status(transport)

        self.assertIsInstance(status, TracerStatus)
        self.assertTrue(status.load)
        self.assertEqual(status.array_voltage, 12.34)
        self.assertEqual(status.array_current, 2.5)
        self.assertEqual(status.battery_voltage, 13.0)
        self.assertEqual(status.battery_temp, 25.0)
        self.assertEqual(status.battery_soc, 80)
        self.assertEqual(status.battery_current, 5.0)
        self.assertEqual(status.energy_generated_total, 1000.0)
        self.assertEqual(transport.writes, [d.request_bytes for d in TRACER_FRAMES])

    def test_timeout_stops_remaining_frames(self):
        replies = replies_for(sample_buffer())
        replies[2] = NO_REPLY
        transport = FakeTransport(replies)
        self.addCleanup(transport.release.set)

        with self.assertRaises(TracerTimeoutError) as ctx:
            query_status(transport, timeout=0.2)
        self.assertEqual(ctx.exception.frame_index, 3)
        self.assertEqual(len(transport.writes), 3)

    def test_first_write_failure_sends_nothing_else(self):
        transport = FakeTransport([], write_error=OSError("I/O error"))
        with self.assertRaises(TracerWriteError) as ctx:
            query_status(transport)
        self.assertEqual(ctx.exception.frame_index, 1)
        self.assertEqual(len(transport.writes), 1)

    def test_read_tracer_status_closes_port_on_success(self):
        transport = FakeTransport(replies_for(sample_buffer()))
        status = read_tracer_status("/dev/ttyXRUSB0", transport_factory=lambda port, baud: transport)
        self.assertEqual(status.battery_soc, 80)
        self.assertTrue(transport.closed)

    def test_read_tracer_status_closes_port_on_failure(self):
        transport = FakeTransport(replies_for(sample_buffer())[:1])
        with self.assertRaises(TracerReadError):
            read_tracer_status("/dev/ttyXRUSB0", transport_factory=lambda port, baud: transport)
        self.assertTrue(transport.closed)

    @patch('plugins.charge_controller.tracer_bn_plugin.serial.Serial')
    def test_open_serial_transport_settings(self, mock_serial):
        open_serial_transport("/dev/ttyUSB0")
        mock_serial.assert_called_once_with(
            port="/dev/ttyUSB0",
            baudrate=115200,
            bytesize=serial.EIGHTBITS,
            parity=serial.PARITY_NONE,
            stopbits=serial.STOPBITS_ONE,
            timeout=None
        )

    @patch('plugins.charge_controller.tracer_bn_plugin.serial.Serial')
    def test_open_failure(self, mock_serial):
        mock_serial.side_effect = serial.SerialException("could not open port")
        with self.assertRaises(TracerOpenError):
            read_tracer_status("/dev/ttyUSB9")

    def test_errors_share_base_class(self):
        for error_class in (TracerOpenError, TracerWriteError, TracerTimeoutError, TracerReadError):
            self.assertTrue(issubclass(error_class, TracerError))


class TestTracerStatus(unittest.TestCase):
    """Test suite for the snapshot value object."""

    def setUp(self):
        self.captured_at = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)
        self.status = decode_buffer(bytes(sample_buffer()), self.captured_at)

    def test_is_immutable(self):
        with self.assertRaises(AttributeError):
            self.status.array_voltage = 1.0

    def test_to_dict_keys(self):
        data = self.status.to_dict()
        self.assertEqual(data["pvv"], 12.34)
        self.assertEqual(data["bsoc"], 80)
        self.assertTrue(data["load"])
        self.assertEqual(data["t"], "2024-05-01T12:00:00+00:00")
        self.assertEqual(len(data), len(TRACER_FIELDS) + 1)

    def test_report(self):
        report = str(self.status)
        self.assertIn("ArrayVoltage: 12.34\n", report)
        self.assertIn("BatterySOC: 80%\n", report)
        self.assertIn("Load: true\n", report)
        self.assertIn("EnergyGeneratedTotal: 1000.00\n", report)
        self.assertEqual(len(report.splitlines()), len(TRACER_FIELDS))


class TestTracerBnPlugin(unittest.TestCase):
    """Test suite for the DevicePlugin wrapper."""

    def setUp(self):
        self.logger = logging.getLogger("test_tracer_bn")
        self.config = {
            "serial_port": "/dev/ttyXRUSB0 ; USB cable",
            "baud_rate": "115200",
            "reply_timeout_seconds": "0.2",
        }
        self.plugin = TracerBnPlugin(
            instance_name="test_tracer",
            plugin_specific_config=self.config,
            main_logger=self.logger
        )

    def test_plugin_initialization(self):
        self.assertEqual(self.plugin.name, "tracer_bn")
        self.assertEqual(self.plugin.pretty_name, "EPsolar Tracer BN")
        self.assertEqual(self.plugin.serial_port_path, "/dev/ttyXRUSB0")
        self.assertEqual(self.plugin.baud_rate, 115200)
        self.assertAlmostEqual(self.plugin.reply_timeout, 0.2)
        self.assertFalse(self.plugin.is_connected)

    def test_defaults(self):
        plugin = TracerBnPlugin("defaults", {}, self.logger)
        self.assertEqual(plugin.baud_rate, 115200)
        self.assertEqual(plugin.reply_timeout, 2.0)

    @patch('plugins.charge_controller.tracer_bn_plugin.serial.Serial')
    def test_connect_probes_port(self, mock_serial):
        probe = Mock()
        mock_serial.return_value = probe

        self.assertTrue(self.plugin.connect())
        self.assertTrue(self.plugin.is_connected)
        probe.close.assert_called_once()

    @patch('plugins.charge_controller.tracer_bn_plugin.serial.Serial')
    def test_connect_failure(self, mock_serial):
        mock_serial.side_effect = serial.SerialException("Port not available")

        self.assertFalse(self.plugin.connect())
        self.assertFalse(self.plugin.is_connected)
        self.assertIn("Port not available", self.plugin.last_error_message)

    def test_static_data(self):
        static = self.plugin.read_static_data()
        self.assertEqual(static[StandardDataKeys.STATIC_DEVICE_CATEGORY], "charge_controller")
        self.assertEqual(static[StandardDataKeys.STATIC_CONTROLLER_MANUFACTURER], "EPsolar")

    def test_read_requires_connection(self):
        self.assertIsNone(self.plugin.read_dynamic_data())

    @patch('plugins.charge_controller.tracer_bn_plugin.serial.Serial')
    def test_read_dynamic_data(self, mock_serial):
        transport = FakeTransport(replies_for(sample_buffer()))
        mock_serial.side_effect = [Mock(), transport]

        self.assertTrue(self.plugin.connect())
        data = self.plugin.read_dynamic_data()

        self.assertIsNotNone(data)
        self.assertTrue(transport.closed)
        self.assertEqual(data[StandardDataKeys.PV_MPPT1_VOLTAGE_VOLTS], 12.34)
        self.assertEqual(data[StandardDataKeys.BATTERY_STATE_OF_CHARGE_PERCENT], 80)
        self.assertTrue(data[StandardDataKeys.LOAD_OUTPUT_ON])
        # Charging current is reported negative by convention
        self.assertEqual(data[StandardDataKeys.BATTERY_CURRENT_AMPS], -5.0)
        self.assertEqual(data[StandardDataKeys.BATTERY_POWER_WATTS], -65.0)
        self.assertEqual(data[StandardDataKeys.BATTERY_STATUS_TEXT], "Charging")
        self.assertEqual(data["raw_values"]["bsoc"], 80)
        self.assertEqual(self.plugin.last_status.battery_soc, 80)

    @patch('plugins.charge_controller.tracer_bn_plugin.serial.Serial')
    def test_read_dynamic_data_timeout(self, mock_serial):
        transport = FakeTransport([NO_REPLY])
        self.addCleanup(transport.release.set)
        mock_serial.side_effect = [Mock(), transport]

        self.assertTrue(self.plugin.connect())
        self.assertIsNone(self.plugin.read_dynamic_data())

        self.assertIn("TracerTimeoutError (frame 1)", self.plugin.last_error_message)
        self.assertFalse(self.plugin.is_connected)
        self.assertTrue(transport.closed)
        self.assertEqual(len(transport.writes), 1)


def run_tests():
    """Run all tests and display results."""
    loader = unittest.TestLoader()
    suite = unittest.TestSuite()
    for test_class in (TestFrameTable, TestFieldDecoding, TestBufferAssembly, TestExchange,
                       TestQueryStatus, TestTracerStatus, TestTracerBnPlugin):
        suite.addTests(loader.loadTestsFromTestCase(test_class))

    runner = unittest.TextTestRunner(verbosity=2)
    result = runner.run(suite)

    print("\n" + "=" * 60)
    print(f"Tests run: {result.testsRun}")
    print(f"Failures: {len(result.failures)}")
    print(f"Errors: {len(result.errors)}")
    print("=" * 60)
    return result.wasSuccessful()

if __name__ == "__main__":
    logging.basicConfig(level=logging.WARNING)

    success = run_tests()
    sys.exit(0 if success else 1)
