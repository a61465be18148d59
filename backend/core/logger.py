"""
Unified logging system
Console and rotating-file output configured from the [logging] table of config.toml
"""

import logging
import logging.handlers
from pathlib import Path
from typing import Any, Dict, Optional

from config.loader import DEFAULT_CONFIG_FILE, ConfigLoader


def _load_logging_config() -> Dict[str, Any]:
    """Load the [logging] table from the project config file

    Logging always follows the project configuration, never a per-user override.
    """
    return ConfigLoader(DEFAULT_CONFIG_FILE).section("logging")


def _init_root_logger_early():
    """Set the root level before any module logs at DEBUG"""
    try:
        log_level = _load_logging_config().get("level", "INFO")
        logging.getLogger().setLevel(getattr(logging, log_level.upper()))
    except Exception:
        logging.getLogger().setLevel(logging.INFO)


_init_root_logger_early()


class LoggerManager:
    """Log manager"""

    def __init__(self):
        self._loggers: Dict[str, logging.Logger] = {}
        self._setup_root_logger()

    def _setup_root_logger(self):
        """Attach console, file and error-file handlers to the root logger"""
        logging_config = _load_logging_config()
        log_level = logging_config.get("level", "INFO")
        logs_dir = logging_config.get("logs_dir", "./logs")
        max_file_size = logging_config.get("max_file_size", "10MB")
        backup_count = logging_config.get("backup_count", 5)

        Path(logs_dir).mkdir(parents=True, exist_ok=True)

        root_logger = logging.getLogger()
        root_logger.setLevel(getattr(logging, log_level.upper()))
        root_logger.handlers.clear()

        console_handler = logging.StreamHandler()
        console_handler.setLevel(logging.DEBUG)
        console_handler.setFormatter(
            logging.Formatter("%(asctime)s - %(levelname)s - %(name)s - %(message)s")
        )
        root_logger.addHandler(console_handler)

        file_format = logging.Formatter(
            "%(asctime)s - %(levelname)s - %(name)s - %(filename)s:%(lineno)d - %(message)s"
        )

        file_handler = logging.handlers.RotatingFileHandler(
            Path(logs_dir) / "timeline_backend.log",
            maxBytes=self._parse_size(max_file_size),
            backupCount=backup_count,
            encoding="utf-8",
        )
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(file_format)
        root_logger.addHandler(file_handler)

        error_handler = logging.handlers.RotatingFileHandler(
            Path(logs_dir) / "error.log",
            maxBytes=self._parse_size(max_file_size),
            backupCount=backup_count,
            encoding="utf-8",
        )
        error_handler.setLevel(logging.ERROR)
        error_handler.setFormatter(file_format)
        root_logger.addHandler(error_handler)

    def _parse_size(self, size_str: str) -> int:
        """Parse file size string such as ``10MB``"""
        size_str = str(size_str).upper()
        if size_str.endswith("KB"):
            return int(size_str[:-2]) * 1024
        elif size_str.endswith("MB"):
            return int(size_str[:-2]) * 1024 * 1024
        elif size_str.endswith("GB"):
            return int(size_str[:-2]) * 1024 * 1024 * 1024
        else:
            return int(size_str)

    def get_logger(self, name: str) -> logging.Logger:
        """Get logger with specified name"""
        if name not in self._loggers:
            self._loggers[name] = logging.getLogger(name)
        return self._loggers[name]


# Created lazily to avoid circular imports
_logger_manager: Optional[LoggerManager] = None


def get_logger(name: str) -> logging.Logger:
    """Convenience function to get logger"""
    global _logger_manager

    if _logger_manager is None:
        _logger_manager = LoggerManager()

    return _logger_manager.get_logger(name)


def setup_logging():
    """Setup logging system (for initialization or reloading)"""
    global _logger_manager

    if _logger_manager is None:
        _logger_manager = LoggerManager()
    else:
        _logger_manager._setup_root_logger()
