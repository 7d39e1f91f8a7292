# charge_controller_stand_alone_test_tracer.py
"""
A standalone test script for the plugins/charge_controller/tracer_bn_plugin.
This script loads configuration from config.ini and reads the charge controller
without running the full monitoring application.

Instructions:
1. Configure your controller under [PLUGIN_tracer] in config.ini
2. Run the script from your terminal: python test_plugins/charge_controller_stand_alone_test_tracer.py

Optional: You can override the config instance name by setting the environment variable:
   TRACER_INSTANCE_NAME=tracer python test_plugins/charge_controller_stand_alone_test_tracer.py
"""
import logging
import time
import sys
import os
from pprint import pformat

# --- Setup Project Path ---
current_script_dir = os.path.dirname(os.path.abspath(__file__))
project_root_dir = os.path.dirname(current_script_dir)
if project_root_dir not in sys.path:
    sys.path.insert(0, project_root_dir)

from plugins.charge_controller.tracer_bn_plugin import TracerBnPlugin
from test_plugins.test_config_loader import load_plugin_config_from_file


if __name__ == "__main__":
    logging.basicConfig(level=logging.DEBUG, format='%(asctime)s %(levelname)-8s [%(threadName)s] %(message)s')
    logger = logging.getLogger("TracerStandaloneTest")

    config_file_path = os.path.join(project_root_dir, "config.ini")
    instance_name = os.environ.get("TRACER_INSTANCE_NAME", "tracer")

    try:
        tracer_config = load_plugin_config_from_file(config_file_path, instance_name)
    except (FileNotFoundError, ValueError) as e:
        logger.error(f"Configuration error: {e}")
        logger.error(f"Please ensure config.ini exists and contains a [PLUGIN_{instance_name}] section.")
        sys.exit(1)

    logger.info(f"Serial Port: {tracer_config['serial_port']} @ {tracer_config['baud_rate']} baud")

    plugin = TracerBnPlugin(
        instance_name=tracer_config["instance_name"],
        plugin_specific_config=tracer_config,
        main_logger=logger
    )

    if not plugin.connect():
        logger.error(f"Failed to open the serial port. Last error: {plugin.last_error_message}")
        sys.exit(1)

    print(f"\n--- Static Information ---\n{pformat(plugin.read_static_data(), indent=2, width=120)}")

    try:
        for i in range(10):
            logger.info(f">>> Reading Dynamic Data (Cycle {i+1}) <<<")
            if not plugin.is_connected and not plugin.connect():
                logger.error(f"Reconnect failed: {plugin.last_error_message}")
            elif plugin.read_dynamic_data() is not None:
                print(f"\n--- Cycle {i+1} ---\n{plugin.last_status}")
            else:
                logger.error(f"Failed to read dynamic data. Last error: {plugin.last_error_message}")
            time.sleep(5)
    except KeyboardInterrupt:
        logger.info("Test interrupted by user.")
    finally:
        plugin.disconnect()
