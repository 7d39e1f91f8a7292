# core/config_loader.py
import configparser
import logging
import os
import re
import sys
from typing import Any, Callable, Dict, Optional

from core.app_state import AppState
from core.constants import (
    DEFAULT_POLL_INTERVAL,
    DEFAULT_MAX_RECONNECT_ATTEMPTS,
    DEFAULT_RECONNECT_BACKOFF_MAX,
)

logger = logging.getLogger(__name__)

_TRUE_WORDS = ('true', '1', 'yes', 'on')
_INLINE_COMMENT = re.compile(r'\s*;.*$')

def _to_bool(text: str) -> bool:
    return text.lower() in _TRUE_WORDS

# (section, option, cast, default, AppState attribute)
CORE_SETTINGS = [
    ('GENERAL', 'POLL_INTERVAL', int, DEFAULT_POLL_INTERVAL, 'poll_interval'),
    ('GENERAL', 'MAX_RECONNECT_ATTEMPTS', int, DEFAULT_MAX_RECONNECT_ATTEMPTS, 'max_plugin_reload_attempts'),
    ('GENERAL', 'RECONNECT_BACKOFF_MAX', int, DEFAULT_RECONNECT_BACKOFF_MAX, 'reconnect_backoff_max'),
    ('LOGGING', 'LOG_LEVEL', str, 'INFO', 'log_level'),
    ('LOGGING', 'LOG_TO_FILE', _to_bool, True, 'log_to_file'),
]

def clean_setting(raw: str) -> str:
    """Drops a trailing '; comment', surrounding whitespace and quotes."""
    return _INLINE_COMMENT.sub('', raw).strip().strip("'\"")

def read_setting(config: configparser.ConfigParser, section: str, option: str,
                 cast: Callable[[str], Any] = str, default: Any = None) -> Any:
    """
    Reads one setting. An environment variable named like the option wins over
    the file; a missing or unparsable value gives `default`.
    """
    raw: Optional[str] = os.environ.get(option.upper())
    source = "environment"
    if raw is None and config.has_option(section, option):
        raw = config.get(section, option)
        source = f"[{section}]"
    if raw is None:
        return default

    text = clean_setting(raw)
    try:
        return cast(text)
    except (ValueError, TypeError):
        logger.warning(f"Ignoring invalid {option}='{text}' from {source}, using {default!r}")
        return default

def load_configuration(config_path: str, app_state: AppState):
    """
    Populates `app_state` from an INI file, letting environment variables
    override individual [GENERAL] and [LOGGING] options.

    The parsed ConfigParser is kept on `app_state.config`; the plugin manager
    reads the [PLUGIN_<instance>] sections from it through `plugin_section()`.

    Args:
        config_path (str): Path of config.ini. A missing file is not an error.
        app_state (AppState): Object receiving the settings.
    """
    config = configparser.ConfigParser(interpolation=None)
    if config.read(config_path, encoding='utf-8'):
        logger.info(f"Configuration read from {config_path}")
    else:
        logger.warning(f"No configuration file at {config_path}; running on defaults and environment.")
    app_state.config = config

    for section, option, cast, default, attribute in CORE_SETTINGS:
        setattr(app_state, attribute, read_setting(config, section, option, cast, default))
    app_state.log_level = app_state.log_level.upper()

    instances = read_setting(config, 'GENERAL', 'PLUGIN_INSTANCES', str, '')
    app_state.configured_plugin_instance_names = [name.strip() for name in instances.split(',') if name.strip()]

    logger.info(f"Plugin instances: {', '.join(app_state.configured_plugin_instance_names) or 'none'}; "
                f"poll interval {app_state.poll_interval}s")

def plugin_section(app_state: AppState, instance_name: str) -> Dict[str, str]:
    """Returns the options of [PLUGIN_<instance_name>] as a plain dict (empty if absent)."""
    section = f"PLUGIN_{instance_name}"
    if app_state.config is None or not app_state.config.has_section(section):
        return {}
    return dict(app_state.config.items(section))

def validate_core_config(app_state: AppState):
    """
    Checks the settings the application cannot start without and exits with
    status 1 after logging every problem found.
    """
    problems = []
    names = app_state.configured_plugin_instance_names
    if not names:
        problems.append("no plugin instance listed in PLUGIN_INSTANCES ([GENERAL])")
    for name in names:
        if not plugin_section(app_state, name).get('plugin_type'):
            problems.append(f"[PLUGIN_{name}] has no plugin_type")
    if app_state.poll_interval <= 0:
        problems.append(f"POLL_INTERVAL must be positive, got {app_state.poll_interval}")

    if problems:
        for problem in problems:
            logger.critical(f"Configuration error: {problem}")
        sys.exit(1)

    logger.info("Configuration validated.")
