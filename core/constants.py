"""
Centralized constants for the Tracer Monitoring application.

This module defines constants used throughout the application to avoid magic
strings and provide a single source of truth for configuration values.
"""

# Application Details
APP_NAME = "Tracer Monitoring"
LOCK_FILE_NAME = "tracer_monitoring.lock"
LOG_FILE_NAME = "tracer_monitoring.log"
CONFIG_FILE_NAME = "config.ini"

# Logger Names
CORE_LOGGER_NAME = "TracerMonitorCore"

# Thread Names
PLUGIN_POLL_THREAD_NAME_PREFIX = "PluginPoll"

# Default Timeouts and Intervals (seconds)
DEFAULT_POLL_INTERVAL = 15

# Connection Retry Constants
DEFAULT_MAX_RECONNECT_ATTEMPTS = 3
DEFAULT_RECONNECT_BACKOFF_MAX = 15  # seconds
