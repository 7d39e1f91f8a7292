#!/usr/bin/env python3
"""
Configuration helper for the standalone hardware scripts in test_plugins/.

Reads one [PLUGIN_<instance>] section of config.ini into the dictionary a
plugin expects, using the same comment and quote cleanup as the application.
"""

import configparser
import os
import sys
from typing import Any, Callable, Dict

PROJECT_ROOT = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
if PROJECT_ROOT not in sys.path:
    sys.path.insert(0, PROJECT_ROOT)

from core.config_loader import clean_setting

# option -> (cast, default)
TRACER_OPTIONS: Dict[str, tuple] = {
    "serial_port": (str, "/dev/ttyXRUSB0"),
    "baud_rate": (int, 115200),
    "reply_timeout_seconds": (float, 2.0),
}


def _section_value(section: configparser.SectionProxy, option: str, cast: Callable[[str], Any], default: Any) -> Any:
    if option not in section:
        return default
    text = clean_setting(section[option])
    try:
        return cast(text)
    except ValueError:
        print(f"Warning: {option}='{text}' is not valid, using {default!r}", file=sys.stderr)
        return default


def load_plugin_config_from_file(config_file_path: str, instance_name: str) -> Dict[str, Any]:
    """
    Builds the plugin configuration of `instance_name` from config.ini.

    Raises:
        FileNotFoundError: The file does not exist.
        ValueError: The file has no [PLUGIN_<instance_name>] section.
    """
    if not os.path.isfile(config_file_path):
        raise FileNotFoundError(f"No configuration file at {config_file_path}")

    config = configparser.ConfigParser(interpolation=None)
    config.read(config_file_path, encoding='utf-8')
    section_name = f"PLUGIN_{instance_name}"
    if not config.has_section(section_name):
        raise ValueError(f"{config_file_path} has no [{section_name}] section")

    section = config[section_name]
    plugin_config = {option: _section_value(section, option, cast, default)
                     for option, (cast, default) in TRACER_OPTIONS.items()}
    plugin_config["instance_name"] = f"Test{instance_name}"
    return plugin_config
