"""
Settings access
Typed accessors over config.toml for the database and ingestion pipeline
"""

from pathlib import Path
from typing import Any, Optional

from config.loader import ConfigLoader, get_config
from models.base import BaseModel

from .logger import get_logger

logger = get_logger(__name__)


class IngestionSettings(BaseModel):
    """Ingestion scheduler configuration ([ingestion] table)"""

    window_minutes: int = 30
    max_catch_up_windows: int = 48
    default_timezone: str = "UTC"
    place_cache_ttl_days: int = 14


class Settings:
    """Settings facade backed by the project config loader"""

    def __init__(self, config_loader: Optional[ConfigLoader] = None):
        self.config_loader = config_loader or get_config()

    def get(self, key: str, default: Any = None) -> Any:
        return self.config_loader.get(key, default)

    def get_database_path(self) -> Path:
        """Database file path, parent directory created on demand"""
        path = Path(self.get("database.path", "./data/timeline.db"))
        path.parent.mkdir(parents=True, exist_ok=True)
        return path

    def get_ingestion_settings(self) -> IngestionSettings:
        section = self.config_loader.section("ingestion")
        settings = IngestionSettings(**section)
        if settings.window_minutes <= 0 or 1440 % settings.window_minutes != 0:
            logger.warning(
                f"window_minutes={settings.window_minutes} does not divide a day, "
                "falling back to 30"
            )
            settings = settings.model_copy(update={"window_minutes": 30})
        return settings


_settings: Optional[Settings] = None


def get_settings() -> Settings:
    """Get global settings instance"""
    global _settings

    if _settings is None:
        _settings = Settings()

    return _settings
