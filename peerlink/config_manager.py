import json
import logging
import os
from appdirs import user_config_dir

logger = logging.getLogger(__name__)

DEFAULTS = {
    "host": "0.0.0.0",
    "port": 5000,
    "id_length": 4,
    "ping_interval": 20,
    "ping_timeout": 20,
    "max_size": 1024 * 1024, # Relay frames only carry signal blobs
    "log_level": "INFO",
    "relay_url": "ws://localhost:5000",
    "share_base_url": "http://localhost:3000/",
    "heartbeat_interval": 4.0,
    "chunk_size": 16 * 1024,
    "reconnection_attempts": 5,
    "reconnection_delay": 1.0,
}


class ConfigManager:
    def __init__(self, config_path=None):
        """
        Initializes the ConfigManager.
        Args:
            config_path: Explicit JSON config file. Defaults to relay_config.json
                         in the per-user config directory.
        """
        self.settings = dict(DEFAULTS)
        if config_path:
            self._config_file_path = os.path.abspath(config_path)
            self._config_dir = os.path.dirname(self._config_file_path)
        else:
            self._config_dir = self._get_config_directory()
            self._config_file_path = os.path.join(self._config_dir, "relay_config.json")
        logger.debug(f"Config file path: {self._config_file_path}")

    def _get_config_directory(self):
        """Determine the appropriate config directory based on the OS."""
        return user_config_dir("PeerLink", "PeerLink")

    @property
    def config_file_path(self):
        return self._config_file_path

    def initialize(self):
        """Load the config file, creating it with defaults if missing. Returns True if a file was loaded."""
        if not os.path.exists(self._config_file_path):
            logger.info(f"No config file found at {self._config_file_path}. Using defaults.")
            self._save()
            return False

        try:
            with open(self._config_file_path, "r", encoding="utf-8") as f:
                loaded_data = json.load(f)
            if not isinstance(loaded_data, dict):
                raise ValueError("Config file must contain a JSON object.")
        except (json.JSONDecodeError, ValueError, OSError) as e:
            logger.error(f"Error loading config file {self._config_file_path}: {e}. Using defaults.")
            return False

        self.update(loaded_data)
        logger.info(f"Configuration loaded from {self._config_file_path}")
        return True

    def update(self, values):
        """Merge values into the settings, skipping unknown keys and values of the wrong type."""
        for key, value in values.items():
            if key not in DEFAULTS:
                logger.warning(f"Ignoring unknown config key '{key}'")
                continue
            if value is None:
                continue
            expected = type(DEFAULTS[key])
            # ints are acceptable where a float is expected
            if expected is float and isinstance(value, int) and not isinstance(value, bool):
                value = float(value)
            if not isinstance(value, expected) or isinstance(value, bool):
                logger.warning(f"Ignoring config key '{key}': expected {expected.__name__}, got {value!r}")
                continue
            self.settings[key] = value

    def _save(self):
        try:
            os.makedirs(self._config_dir, exist_ok=True)
            with open(self._config_file_path, "w", encoding="utf-8") as f:
                json.dump(self.settings, f, indent=4)
            logger.debug(f"Wrote default config to {self._config_file_path}")
        except OSError as e:
            # Defaults still apply in memory
            logger.warning(f"Could not write config file {self._config_file_path}: {e}")

    def get(self, key):
        return self.settings[key]
