# core/plugin_manager.py
import importlib
import inspect
import logging
import queue
import threading
import time
from types import ModuleType
from typing import Any, Dict, Optional, Type

from core.app_state import AppState
from core.config_loader import plugin_section
from plugins.plugin_interface import DevicePlugin, StandardDataKeys
from utils.helpers import STATUS_CONNECTED, STATUS_DISCONNECTED, STATUS_ERROR

logger = logging.getLogger(__name__)

def _find_plugin_class(module: ModuleType) -> Optional[Type[DevicePlugin]]:
    """First concrete DevicePlugin subclass defined in or imported into `module`."""
    for _, candidate in inspect.getmembers(module, inspect.isclass):
        if issubclass(candidate, DevicePlugin) and candidate is not DevicePlugin and not inspect.isabstract(candidate):
            return candidate
    return None

def load_plugin_instance(plugin_type_full: str, instance_name: str, app_state: AppState) -> Optional[DevicePlugin]:
    """
    Creates the plugin configured for one instance.

    `plugin_type_full` names a module below `plugins/` as 'category.module',
    e.g. 'charge_controller.tracer_bn_plugin'. The plugin receives the options of
    its [PLUGIN_<instance_name>] section and a logger named 'plugins.<instance_name>'.

    Returns:
        The plugin, or None when the type is malformed, the module cannot be
        imported or it defines no usable plugin class.
    """
    category, _, module_name = plugin_type_full.partition('.')
    if not category or not module_name:
        logger.error(f"[{instance_name}] plugin_type '{plugin_type_full}' is not of the form 'category.module'.")
        return None

    module_path = f"plugins.{category}.{module_name}"
    try:
        module = importlib.import_module(module_path)
    except ImportError as e:
        logger.error(f"[{instance_name}] Cannot import {module_path}: {e}")
        return None

    plugin_class = _find_plugin_class(module)
    if plugin_class is None:
        logger.error(f"[{instance_name}] {module_path} defines no concrete DevicePlugin.")
        return None

    plugin_config: Dict[str, Any] = plugin_section(app_state, instance_name)
    plugin_config["_instance_name"] = instance_name
    try:
        plugin = plugin_class(instance_name=instance_name, plugin_specific_config=plugin_config,
                              main_logger=logging.getLogger(f"plugins.{instance_name}"), app_state=app_state)
    except (ValueError, TypeError) as e:
        logger.error(f"[{instance_name}] Invalid configuration for {plugin_class.__name__}: {e}")
        return None

    logger.info(f"[{instance_name}] Loaded {plugin_class.__name__} ({plugin.pretty_name})")
    return plugin


def _connect_with_backoff(plugin_inst: DevicePlugin, app_state: AppState, stop_event: threading.Event,
                          thread_logger: logging.Logger) -> bool:
    """Tries to connect up to max_plugin_reload_attempts times, doubling the wait each time."""
    for attempt in range(1, app_state.max_plugin_reload_attempts + 1):
        if stop_event.is_set():
            break
        plugin_inst.connection_status = f"Connecting... ({attempt})"
        if plugin_inst.connect():
            plugin_inst.connection_status = STATUS_CONNECTED
            thread_logger.info(f"Connected on attempt {attempt}.")
            return True
        delay = min(2 ** attempt, app_state.reconnect_backoff_max)
        thread_logger.warning(f"Connect attempt {attempt}/{app_state.max_plugin_reload_attempts} failed, retrying in {delay}s.")
        stop_event.wait(timeout=delay)
    return plugin_inst.is_connected


def _report_failure(app_state: AppState, instance_id: str, data_queue: queue.Queue, message: Optional[str]):
    with app_state.data_lock:
        app_state.plugin_consecutive_failures[instance_id] = app_state.plugin_consecutive_failures.get(instance_id, 0) + 1
        app_state.last_plugin_error[instance_id] = message
    data_queue.put({'instance_id': instance_id, 'data': None, 'error': message})


def _report_success(app_state: AppState, instance_id: str, data_queue: queue.Queue, packet: Dict[str, Any]):
    with app_state.data_lock:
        app_state.last_successful_poll_timestamp_per_plugin[instance_id] = time.monotonic()
        app_state.plugin_consecutive_failures[instance_id] = 0
        app_state.last_plugin_error[instance_id] = None
    data_queue.put({'instance_id': instance_id, 'data': packet})


def _poll_once(plugin_inst: DevicePlugin, instance_id: str, app_state: AppState, data_queue: queue.Queue,
               stop_event: threading.Event, thread_logger: logging.Logger):
    if not plugin_inst.is_connected and not _connect_with_backoff(plugin_inst, app_state, stop_event, thread_logger):
        thread_logger.error("Device unavailable, next attempt after the poll interval.")
        _report_failure(app_state, instance_id, data_queue, getattr(plugin_inst, "last_error_message", None))
        return

    if instance_id not in app_state.plugin_static_data:
        static_data = plugin_inst.read_static_data() or {}
        with app_state.data_lock:
            app_state.plugin_static_data[instance_id] = static_data
        thread_logger.info(f"Device category: {static_data.get(StandardDataKeys.STATIC_DEVICE_CATEGORY)}")

    dynamic_data = plugin_inst.read_dynamic_data()
    if dynamic_data is None:
        message = getattr(plugin_inst, "last_error_message", None)
        thread_logger.warning(f"Read failed: {message}")
        plugin_inst.connection_status = STATUS_ERROR if plugin_inst.is_connected else STATUS_DISCONNECTED
        _report_failure(app_state, instance_id, data_queue, message)
        return

    plugin_inst.connection_status = STATUS_CONNECTED
    packet = dict(app_state.plugin_static_data[instance_id])
    packet.update(dynamic_data)
    packet[StandardDataKeys.SERVER_TIMESTAMP_MS_UTC] = int(time.time() * 1000)
    packet[StandardDataKeys.CORE_PLUGIN_CONNECTION_STATUS] = plugin_inst.connection_status
    _report_success(app_state, instance_id, data_queue, packet)


def poll_single_plugin_instance_thread(instance_id: str, app_state: AppState, data_queue: queue.Queue):
    """
    Polling thread body for one plugin instance.

    Each cycle connects if needed (with backoff), reads the static data the first
    time, reads the dynamic data and puts `{'instance_id', 'data'}` on `data_queue`.
    A failed cycle puts `'data': None` and the plugin's `last_error_message` under
    `'error'`. Cycles start every `poll_interval` seconds until the instance's stop
    event is set or the application stops; the plugin is disconnected on exit.
    """
    thread_logger = logging.getLogger(f"PluginPoll_{instance_id}")
    stop_event = app_state.plugin_stop_events.get(instance_id)
    plugin_inst = app_state.active_plugin_instances.get(instance_id)
    if stop_event is None or plugin_inst is None:
        thread_logger.error("No stop event or plugin registered for this instance; not polling.")
        return

    thread_logger.info(f"Polling every {app_state.poll_interval}s.")
    while app_state.running and not stop_event.is_set():
        cycle_started = time.monotonic()
        try:
            _poll_once(plugin_inst, instance_id, app_state, data_queue, stop_event, thread_logger)
        except Exception as e:
            thread_logger.error(f"Unexpected error during poll: {e}", exc_info=True)
            plugin_inst.connection_status = STATUS_ERROR
            _report_failure(app_state, instance_id, data_queue, str(e))

        elapsed = time.monotonic() - cycle_started
        stop_event.wait(timeout=max(0.1, app_state.poll_interval - elapsed))

    thread_logger.info("Stopping, disconnecting plugin.")
    try:
        plugin_inst.disconnect()
    except Exception as e:
        thread_logger.error(f"Disconnect failed: {e}")
