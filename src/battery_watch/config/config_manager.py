"""Configuration management for Battery Watch with hot-reload and validation."""

import copy
import json
import logging
import os
import threading
from collections.abc import Callable
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from watchdog.events import FileSystemEvent

from jsonschema import ValidationError, validate
from watchdog.events import FileSystemEventHandler
from watchdog.observers import Observer

ENV_PREFIX = "BATTERYWATCH_"

DEFAULT_CONFIG_DIR = os.path.join(
    os.path.expanduser("~"),
    ".config",
    "battery-watch",
)

CONFIG_FILES: dict[str, str] = {
    "system": "system.json",
}

DEFAULTS: dict[str, dict] = {
    "system": {
        "version": "1.0",
        "logging": {"level": "INFO"},
        "bluetooth": {
            "adapter": None,
            "test_mode": False,
            "connect_timeout": 20.0,
            "simulated_devices": [],
            "simulated_notify_interval": 5.0,
        },
        "discovery": {
            "initial_scan": True,
            "scan_duration": 5,
            "rescan_interval": 120,
        },
        "readings": {
            "window_ms": 200,
            "out_of_range": "clamp",
        },
        "api": {
            "enabled": False,
            "host": "127.0.0.1",
            "port": 5080,
            "debug": False,
        },
    },
}

SCHEMAS: dict[str, dict] = {
    "system": {
        "type": "object",
        "properties": {
            "version": {"type": "string"},
            "logging": {
                "type": "object",
                "properties": {"level": {"type": "string"}},
            },
            "bluetooth": {
                "type": "object",
                "properties": {
                    "adapter": {"type": ["string", "null"]},
                    "test_mode": {"type": "boolean"},
                    "connect_timeout": {"type": "number", "exclusiveMinimum": 0},
                    "simulated_devices": {
                        "type": "array",
                        "items": {
                            "type": "object",
                            "properties": {
                                "id": {"type": "string"},
                                "name": {"type": "string"},
                                "level": {
                                    "type": "integer",
                                    "minimum": 0,
                                    "maximum": 255,
                                },
                            },
                            "required": ["id"],
                        },
                    },
                    "simulated_notify_interval": {
                        "type": "number",
                        "exclusiveMinimum": 0,
                    },
                },
            },
            "discovery": {
                "type": "object",
                "properties": {
                    "initial_scan": {"type": "boolean"},
                    "scan_duration": {"type": "number", "exclusiveMinimum": 0},
                    "rescan_interval": {"type": "number", "exclusiveMinimum": 0},
                },
            },
            "readings": {
                "type": "object",
                "properties": {
                    "window_ms": {"type": "integer", "minimum": 0},
                    "out_of_range": {"enum": ["clamp", "reject"]},
                },
            },
            "api": {
                "type": "object",
                "properties": {
                    "enabled": {"type": "boolean"},
                    "host": {"type": "string"},
                    "port": {"type": "integer", "minimum": 1, "maximum": 65535},
                    "debug": {"type": "boolean"},
                },
            },
        },
        "required": [
            "version",
            "logging",
            "bluetooth",
            "discovery",
            "readings",
            "api",
        ],
    },
}


def merge_defaults(config: dict, default: dict) -> dict:
    """Recursively merge default values into config, filling in missing keys."""
    for k, v in default.items():
        if k not in config:
            config[k] = copy.deepcopy(v)
        elif isinstance(v, dict) and isinstance(config[k], dict):
            merge_defaults(config[k], v)
    return config


class ConfigError(Exception):
    """Custom exception for configuration errors."""


class ConfigReloadHandler(FileSystemEventHandler):
    """Watches for file modifications and triggers a reload callback."""

    def __init__(self, reload_callback: Callable[[str], None]) -> None:
        """
        Initialize the handler.

        Args:
            reload_callback: Function to call with the path of the modified file.
        """
        self.reload_callback = reload_callback

    def on_modified(self, event: "FileSystemEvent") -> None:
        """
        Handle file modification events.

        Args:
            event: The file system event.
        """
        if event.is_directory:
            return
        self.reload_callback(str(event.src_path))


class ConfigManager:
    """Manages Battery Watch configuration files with hot-reload, schema validation, and env var overrides."""

    def __init__(
        self,
        config_dir: str = DEFAULT_CONFIG_DIR,
        *,
        enable_watchers: bool = True,
    ) -> None:
        """
        Initialize the ConfigManager.

        Args:
            config_dir: Directory where config files are stored.
            enable_watchers: Whether to enable file watchers (default: True).
        """
        self.config_dir: str = config_dir
        self.configs: dict[str, dict] = {}
        self._listeners: list[Callable[[str, dict], None]] = []
        self.logger = logging.getLogger("battery_watch.config")
        self._enable_watchers = enable_watchers
        self._load_all_configs()
        if self._enable_watchers:
            self._setup_watchers()

    def _load_all_configs(self) -> None:
        """
        Load all config files, create defaults if missing, and apply env overrides.

        Raises ConfigError if validation fails.
        """
        for key, filename in CONFIG_FILES.items():
            self.configs[key] = self._load_json(filename, DEFAULTS[key])
        self._apply_env_overrides()
        for key in CONFIG_FILES:
            self._validate_config(key)

    def _load_json(self, filename: str, default: dict) -> dict:
        """
        Load a JSON config file, or create it with defaults if missing or invalid.

        Args:
            filename: The config file name.
            default: The default config dict.

        Returns:
            The loaded or default config dict.
        """
        path = os.path.join(self.config_dir, filename)
        if not os.path.exists(path):
            config = copy.deepcopy(default)
            self._save_json(filename, config)
            return config
        try:
            with open(path) as f:
                data = json.load(f)
            if not isinstance(data, dict):
                msg = f"Config {filename} must be a dict"
                raise TypeError(msg)
            return merge_defaults(data, default)
        except (json.JSONDecodeError, TypeError, OSError):
            self.logger.exception(
                "Failed to load %s. Restoring default config.",
                filename,
            )
            config = copy.deepcopy(default)
            self._save_json(filename, config)
            return config

    def _save_json(self, filename: str, data: dict) -> None:
        """
        Save a config dict to a JSON file.

        Raises:
            ConfigError: If saving fails.
        """
        path = os.path.join(self.config_dir, filename)
        try:
            with open(path, "w") as f:
                json.dump(data, f, indent=2)
        except OSError as e:
            self.logger.exception("Failed to save %s", filename)
            raise ConfigError(f"Failed to save {filename}: {e}") from e

    def _validate_config(self, key: str) -> None:
        """
        Validate a config dict against its schema.

        Raises:
            ConfigError: If validation fails.
        """
        schema = SCHEMAS.get(key)
        if not schema:
            return
        try:
            validate(instance=self.configs[key], schema=schema)
        except ValidationError as e:
            self.logger.exception("Validation error in %s config: %s", key, e.message)
            raise ConfigError(f"Validation error in {key} config: {e.message}") from e

    def _apply_env_overrides(self) -> None:
        """
        Apply BATTERYWATCH_ environment variable overrides to configs.

        Format: BATTERYWATCH_SECTION_KEY1_KEY2=VALUE
        (e.g., BATTERYWATCH_SYSTEM_LOGGING_LEVEL=DEBUG). Keys that contain an
        underscore themselves are matched against existing keys greedily, so
        BATTERYWATCH_SYSTEM_READINGS_WINDOW_MS=150 sets readings.window_ms.
        """
        for env_key, value in os.environ.items():
            if not env_key.startswith(ENV_PREFIX) or env_key == f"{ENV_PREFIX}CONFIG_DIR":
                continue
            try:
                parts = env_key[len(ENV_PREFIX) :].lower().split("_")
                section = parts[0]
                if section not in self.configs:
                    continue
                keys = self._resolve_keys(self.configs[section], parts[1:])
                if not keys:
                    continue
                d = self.configs[section]
                for k in keys[:-1]:
                    d = d.setdefault(k, {})
                try:
                    parsed_value = json.loads(value)
                except (json.JSONDecodeError, ValueError):
                    parsed_value = value
                d[keys[-1]] = parsed_value
                merge_defaults(self.configs[section], DEFAULTS[section])
                self.logger.info(
                    "Applied env override: %s -> %s %s = %s",
                    env_key,
                    section,
                    ".".join(keys),
                    parsed_value,
                )
            except (KeyError, IndexError, TypeError, AttributeError):
                self.logger.exception("Failed to apply env override %s", env_key)

    @staticmethod
    def _resolve_keys(config: dict, parts: list[str]) -> list[str]:
        """Split env var parts into config keys, joining parts that form a known key."""
        keys: list[str] = []
        node: Any = config
        i = 0
        while i < len(parts):
            matched = None
            if isinstance(node, dict):
                for j in range(len(parts), i, -1):
                    candidate = "_".join(parts[i:j])
                    if candidate in node:
                        matched = (candidate, j)
                        break
            if matched is None:
                keys.append("_".join(parts[i:]))
                break
            keys.append(matched[0])
            node = node[matched[0]]
            i = matched[1]
        return keys

    def _setup_watchers(self) -> None:
        """Set up file watchers for hot-reload capability using watchdog."""
        self._observer = Observer()
        handler = ConfigReloadHandler(self._on_config_change)
        self._observer.schedule(handler, self.config_dir, recursive=False)
        self._observer_thread = threading.Thread(
            target=self._observer.start,
            daemon=True,
        )
        self._observer_thread.start()

    def cleanup(self) -> None:
        """Clean up resources, including stopping file watchers."""
        if not self._enable_watchers:
            return
        if hasattr(self, "_observer") and self._observer.is_alive():
            self._observer.stop()
            self._observer.join(timeout=1.0)
        if hasattr(self, "_observer_thread") and self._observer_thread.is_alive():
            self._observer_thread.join(timeout=1.0)

    def _on_config_change(self, path: str) -> None:
        """
        Handle config file changes; reload, re-validate, and notify listeners.

        Args:
            path: The path of the changed config file.
        """
        for key, filename in CONFIG_FILES.items():
            if os.path.join(self.config_dir, filename) != path:
                continue
            self.logger.info("Detected change in %s, reloading...", filename)
            previous = self.configs.get(key)
            self.configs[key] = self._load_json(filename, DEFAULTS[key])
            self._apply_env_overrides()
            try:
                self._validate_config(key)
            except ConfigError:
                self.logger.exception(
                    "Config %s failed validation after reload, keeping previous values.",
                    key,
                )
                if previous is not None:
                    self.configs[key] = previous
                continue
            self._notify_listeners(key, self.configs[key])

    def get_config(self, key: str) -> dict:
        """
        Get a config by key ('system').

        Raises:
            KeyError: If the config key is not found.
        """
        if key not in self.configs:
            raise KeyError(f"Config '{key}' not found.")
        return self.configs[key]

    def save_config(self, key: str) -> None:
        """
        Validate and save a config by key back to its file.

        Raises:
            KeyError: If the config key is not recognized.
            ConfigError: If the config is invalid or cannot be written.
        """
        if key not in CONFIG_FILES:
            raise KeyError(f"Config '{key}' not recognized.")
        self._validate_config(key)
        self._save_json(CONFIG_FILES[key], self.configs[key])

    def register_listener(self, callback: Callable[[str, dict], None]) -> None:
        """
        Register a callback to be notified when a config changes.

        Args:
            callback: Function to call with (key, config) when a config changes.
        """
        self._listeners.append(callback)

    def _notify_listeners(self, key: str, config: dict) -> None:
        """Notify all registered listeners of a config change."""
        for cb in self._listeners:
            try:
                cb(key, config)
            except Exception:  # noqa: PERF203
                self.logger.exception("Listener callback failed")
