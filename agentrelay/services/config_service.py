"""
Configuration Service

JSON-file backed configuration with dot-path access.

    {
        "process_timeout_ms": 300000,
        "tool_result_max_length": 500,
        "ollama": {"host": "http://localhost:11434"},
        "providers": {"claude": {"binary": "claude"}, "codex": {"binary": "codex"}},
        "upload_dir": "~/.agentrelay/uploads",
        "default_provider": "claude"
    }
"""

import json
import logging
from pathlib import Path
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = Path.home() / ".agentrelay" / "config.json"


def _deep_merge(base: Dict[str, Any], updates: Dict[str, Any]) -> Dict[str, Any]:
    for key, value in updates.items():
        if isinstance(value, dict) and isinstance(base.get(key), dict):
            _deep_merge(base[key], value)
        else:
            base[key] = value
    return base


class ConfigService:
    """
    Service class for configuration management.

    A missing file is an empty configuration; a malformed file is logged
    and treated as empty on construction but raises from ``load()``.
    """

    def __init__(self, config_path: Optional[Path] = None):
        self.config_path = Path(config_path) if config_path is not None else DEFAULT_CONFIG_PATH
        self._config: Dict[str, Any] = {}

        if self.config_path.exists():
            try:
                self.load()
            except ValueError as e:
                logger.error(f"Ignoring invalid config: {e}")
                self._config = {}

    def load(self) -> Dict[str, Any]:
        """
        Load configuration from file.

        Returns:
            Configuration dictionary (empty when the file does not exist)

        Raises:
            ValueError: If config file is invalid JSON or not an object
        """
        if not self.config_path.exists():
            logger.debug(f"No config file at {self.config_path}, using defaults")
            self._config = {}
            return {}

        try:
            with self.config_path.open("r", encoding="utf-8") as f:
                data = json.load(f)
        except json.JSONDecodeError as e:
            logger.error(f"Error parsing {self.config_path}: {e}")
            raise ValueError(f"Error parsing {self.config_path}: {e}") from e

        if not isinstance(data, dict):
            raise ValueError(f"{self.config_path} must contain a JSON object")

        self._config = data
        logger.info(f"Configuration loaded from {self.config_path}")
        return self._config.copy()

    def save(self, data: Optional[Dict[str, Any]] = None) -> bool:
        """
        Save configuration to file.

        Returns:
            True if successful
        """
        if data is not None:
            self._config = data
        try:
            self.config_path.parent.mkdir(parents=True, exist_ok=True)
            with self.config_path.open("w", encoding="utf-8") as f:
                json.dump(self._config, f, indent=4)
        except OSError as e:
            logger.error(f"Failed to save config: {e}")
            return False
        logger.info(f"Configuration saved to {self.config_path}")
        return True

    def get(self, key: str, default: Any = None) -> Any:
        """
        Get configuration value.

        Args:
            key: Configuration key (supports dot notation: "ollama.host")
            default: Default value if key not found
        """
        value: Any = self._config
        for part in key.split("."):
            if not isinstance(value, dict):
                return default
            value = value.get(part)
            if value is None:
                return default
        return value

    def set(self, key: str, value: Any) -> None:
        """Set configuration value (dot notation creates nested objects)."""
        parts = key.split(".")
        node = self._config
        for part in parts[:-1]:
            child = node.get(part)
            if not isinstance(child, dict):
                child = {}
                node[part] = child
            node = child
        node[parts[-1]] = value

    def get_all(self) -> Dict[str, Any]:
        return self._config.copy()

    def update(self, updates: Dict[str, Any]) -> None:
        """Merge nested updates into the configuration."""
        _deep_merge(self._config, updates)
