# core/app_state.py
import queue
import threading
from typing import Any, Dict, List, Optional, TYPE_CHECKING

if TYPE_CHECKING:
    from configparser import ConfigParser
    from plugins.plugin_interface import DevicePlugin

class AppState:
    """
    State shared by the main thread and the polling threads.

    Settings are filled in by core.config_loader; per-instance results are
    written by the polling threads under `data_lock`.
    """
    def __init__(self, version: str):
        self.version = version
        self.running = True
        self.main_threads_stop_event = threading.Event()

        # Settings
        self.config: Optional['ConfigParser'] = None
        self.configured_plugin_instance_names: List[str] = []
        self.poll_interval = 15
        self.max_plugin_reload_attempts = 3
        self.reconnect_backoff_max = 15
        self.log_level = "INFO"
        self.log_to_file = True

        # One entry per plugin instance name
        self.active_plugin_instances: Dict[str, 'DevicePlugin'] = {}
        self.plugin_polling_threads: Dict[str, threading.Thread] = {}
        self.plugin_stop_events: Dict[str, threading.Event] = {}
        self.plugin_static_data: Dict[str, Dict[str, Any]] = {}
        self.last_successful_poll_timestamp_per_plugin: Dict[str, float] = {}  # time.monotonic()
        self.plugin_consecutive_failures: Dict[str, int] = {}
        self.last_plugin_error: Dict[str, Optional[str]] = {}

        # Polling results for the main thread
        self.plugin_data_queue: queue.Queue = queue.Queue(maxsize=100)
        self.data_lock = threading.RLock()
