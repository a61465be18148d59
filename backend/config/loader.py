"""
Configuration loader
Reads the project config.toml and exposes dotted-key access
"""

from pathlib import Path
from typing import Any, Dict, Optional

import toml

DEFAULT_CONFIG_FILE = Path(__file__).parent / "config.toml"


class ConfigLoader:
    """Loads a toml configuration file and provides dotted-key lookups"""

    def __init__(self, config_file: Optional[Path] = None):
        self.config_file = Path(config_file) if config_file else DEFAULT_CONFIG_FILE
        self._config: Dict[str, Any] = {}
        self._loaded = False

    def load(self) -> Dict[str, Any]:
        """Load (or reload) configuration from disk"""
        if not self.config_file.exists():
            raise FileNotFoundError(f"Config file not found: {self.config_file}")

        with open(self.config_file, "r", encoding="utf-8") as f:
            self._config = toml.load(f)

        self._loaded = True
        return self._config

    def get(self, key: str, default: Any = None) -> Any:
        """Get a value by dotted key, e.g. ``ingestion.window_minutes``"""
        if not self._loaded:
            self.load()

        value: Any = self._config
        for part in key.split("."):
            if not isinstance(value, dict) or part not in value:
                return default
            value = value[part]
        return value

    def section(self, name: str) -> Dict[str, Any]:
        """Get a whole table, empty dict if missing"""
        value = self.get(name, {})
        return value if isinstance(value, dict) else {}


_config_loader: Optional[ConfigLoader] = None


def get_config(config_file: Optional[Path] = None) -> ConfigLoader:
    """Get the global config loader, switching files when one is given"""
    global _config_loader

    if _config_loader is None or (
        config_file is not None and Path(config_file) != _config_loader.config_file
    ):
        _config_loader = ConfigLoader(config_file)

    return _config_loader
