"""
Tracer Monitoring entry point.

Run with `python main.py`. The program reads config.ini next to this file,
takes a lock on every configured serial port, polls each plugin instance in
its own thread and prints the human readable status report of every
successful read. Ctrl+C or SIGTERM stops it.
"""

import logging
from logging.handlers import RotatingFileHandler
import pathlib
import queue
import signal
import sys
import threading
import time
from typing import Callable, Dict, List

from core.app_state import AppState
from core.config_loader import clean_setting, load_configuration, plugin_section, validate_core_config
from core.plugin_manager import load_plugin_instance, poll_single_plugin_instance_thread
from core.constants import (
    APP_NAME,
    CONFIG_FILE_NAME,
    CORE_LOGGER_NAME,
    LOCK_FILE_NAME,
    LOG_FILE_NAME,
    PLUGIN_POLL_THREAD_NAME_PREFIX,
)
from plugins.plugin_interface import DevicePlugin
from utils.helpers import format_time_ago
from utils.lock import acquire_lock, lock_file_for_port, release_lock

__version__ = "1.0.0"

LOG_FORMAT = '%(asctime)s %(levelname)-8s [%(threadName)s] %(name)s: %(message)s'


def setup_logging(app_state: AppState, log_dir: pathlib.Path):
    """
    Routes all loggers to stderr and, if LOG_TO_FILE is set, to a rotating
    log file (5 MB, 3 backups) in `log_dir`.
    """
    formatter = logging.Formatter(LOG_FORMAT)
    handlers: List[logging.Handler] = [logging.StreamHandler(sys.stderr)]
    if app_state.log_to_file:
        handlers.append(RotatingFileHandler(log_dir / LOG_FILE_NAME, maxBytes=5 * 1024 * 1024,
                                            backupCount=3, encoding='utf-8'))

    root_logger = logging.getLogger()
    for old_handler in list(root_logger.handlers):
        root_logger.removeHandler(old_handler)
    for new_handler in handlers:
        new_handler.setFormatter(formatter)
        root_logger.addHandler(new_handler)
    root_logger.setLevel(getattr(logging, app_state.log_level, logging.INFO))

    logging.getLogger(CORE_LOGGER_NAME).info(
        f"Log level {app_state.log_level}" + (f", file {log_dir / LOG_FILE_NAME}" if app_state.log_to_file else "")
    )


def graceful_exit(app_state: AppState) -> Callable[[int, object], None]:
    """Signal handler factory: the first signal asks the main loop to stop."""
    def handler(signum, frame):
        if app_state.running:
            logging.getLogger(CORE_LOGGER_NAME).warning(f"{signal.Signals(signum).name} received, shutting down.")
            app_state.running = False
            app_state.main_threads_stop_event.set()
    return handler


def print_packet(app_state: AppState, packet: dict):
    """Prints one polling result taken from the data queue."""
    instance_id = packet['instance_id']
    if packet.get('data') is None:
        last_ok = app_state.last_successful_poll_timestamp_per_plugin.get(instance_id)
        since = f" Last good read {format_time_ago(time.monotonic() - last_ok)}." if last_ok else ""
        print(f"[{instance_id}] read failed: {packet.get('error') or 'unknown error'}.{since}", flush=True)
        return

    status = getattr(app_state.active_plugin_instances.get(instance_id), "last_status", None)
    if status is None:
        print(f"[{instance_id}] {packet['data']}", flush=True)
        return
    print(f"--- {instance_id} @ {status.timestamp.isoformat()} ---\n{status}", flush=True)


def load_and_lock_plugins(app_state: AppState, lock_dir: pathlib.Path, held_locks: List[str]) -> Dict[str, DevicePlugin]:
    """
    Loads every configured instance and locks its serial port.

    Exits when a port is already locked by another process.
    """
    logger = logging.getLogger(CORE_LOGGER_NAME)
    plugins: Dict[str, DevicePlugin] = {}
    for name in app_state.configured_plugin_instance_names:
        plugin_type = clean_setting(plugin_section(app_state, name)['plugin_type'])
        plugin = load_plugin_instance(plugin_type, name, app_state)
        if plugin is None:
            continue
        port_name = getattr(plugin, "serial_port_path", None)
        if port_name:
            lock_path = lock_file_for_port(str(lock_dir), LOCK_FILE_NAME, port_name)
            if not acquire_lock(lock_path):
                logger.critical(f"{port_name} is in use by another {APP_NAME} process.")
                sys.exit(1)
            held_locks.append(lock_path)
        plugins[name] = plugin
    return plugins


def run(app_state: AppState, base_dir: pathlib.Path):
    logger = logging.getLogger(CORE_LOGGER_NAME)
    held_locks: List[str] = []
    try:
        app_state.active_plugin_instances = load_and_lock_plugins(app_state, base_dir, held_locks)
        if not app_state.active_plugin_instances:
            logger.critical("None of the configured plugins could be loaded.")
            sys.exit(1)

        signal.signal(signal.SIGINT, graceful_exit(app_state))
        signal.signal(signal.SIGTERM, graceful_exit(app_state))

        for name in app_state.active_plugin_instances:
            app_state.plugin_stop_events[name] = threading.Event()
            thread = threading.Thread(
                target=poll_single_plugin_instance_thread,
                args=(name, app_state, app_state.plugin_data_queue),
                name=f"{PLUGIN_POLL_THREAD_NAME_PREFIX}_{name}", daemon=True
            )
            app_state.plugin_polling_threads[name] = thread
            thread.start()
        logger.info(f"Polling {len(app_state.plugin_polling_threads)} instance(s). Press Ctrl+C to stop.")

        while app_state.running:
            try:
                print_packet(app_state, app_state.plugin_data_queue.get(timeout=1.0))
            except queue.Empty:
                continue
    except KeyboardInterrupt:
        app_state.running = False
    finally:
        for event in app_state.plugin_stop_events.values():
            event.set()
        for thread in app_state.plugin_polling_threads.values():
            thread.join(timeout=5.0)
            if thread.is_alive():
                logger.warning(f"{thread.name} still running after 5s")
        for lock_path in held_locks:
            release_lock(lock_path)


if __name__ == "__main__":
    base_dir = pathlib.Path(__file__).parent.resolve()
    app_state = AppState(version=__version__)

    load_configuration(str(base_dir / CONFIG_FILE_NAME), app_state)
    setup_logging(app_state, base_dir)
    logging.getLogger(CORE_LOGGER_NAME).info(f"{APP_NAME} v{__version__} starting")
    validate_core_config(app_state)

    run(app_state, base_dir)
    logging.getLogger(CORE_LOGGER_NAME).info(f"{APP_NAME} v{__version__} stopped")
