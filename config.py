import json
import logging
from pathlib import Path
from typing import Optional
from urllib.parse import quote_plus

from pydantic import BaseModel, ConfigDict, ValidationError
from pydantic_settings import BaseSettings

from exceptions import ConfigError

logger = logging.getLogger(__name__)

DEFAULT_USER_AGENT = (
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/125.0.0.0 Safari/537.36"
)


class Settings(BaseSettings):
    # Database
    database_url: str = "sqlite:///pricewatch.db"

    # Optional MySQL connection parts (used instead of database_url when db_host is set)
    db_user: str = ""
    db_password: str = ""
    db_host: str = ""
    db_port: int = 3306
    db_name: str = ""

    # Targets
    targets_file: str = "config.json"

    # Scheduler
    check_cron: str = "0 * * * *"  # every hour on the hour
    cleanup_cron: str = "30 3 * * *"  # daily at 03:30
    run_on_start: bool = True
    shutdown_grace_seconds: int = 60

    # History retention
    retention_days: int = 90

    # Scraper settings
    request_timeout_seconds: float = 30.0
    user_agent: str = DEFAULT_USER_AGENT
    max_concurrent_targets: int = 4

    # Logging
    log_level: str = "INFO"
    log_file: str = "pricewatch.log"

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        extra = "ignore"

    @property
    def resolved_database_url(self) -> str:
        """Database URL, built from the DB_* parts when a MySQL host is configured."""
        if not self.db_host:
            return self.database_url
        return (
            f"mysql+pymysql://{quote_plus(self.db_user)}:{quote_plus(self.db_password)}"
            f"@{self.db_host}:{self.db_port}/{self.db_name}?charset=utf8mb4"
        )


class Target(BaseModel):
    """One monitored page and the CSS selectors for its name and price."""

    model_config = ConfigDict(frozen=True)

    url: str
    name_selector: str
    price_selector: str


def load_targets(path: Optional[str] = None) -> list[Target]:
    """
    Load monitoring targets from a JSON file.

    Expected layout:
        {"targets": [{"url": ..., "name_selector": ..., "price_selector": ...}]}

    Raises ConfigError if the file cannot be read or does not match the layout.
    """
    path = Path(path or settings.targets_file)
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as e:
        raise ConfigError(f"Could not read targets file {path}: {e}") from e

    if not isinstance(data, dict) or not isinstance(data.get("targets"), list):
        raise ConfigError(f"Targets file {path} must contain a 'targets' list")

    try:
        targets = [Target.model_validate(item) for item in data["targets"]]
    except ValidationError as e:
        raise ConfigError(f"Invalid target in {path}: {e}") from e

    logger.debug(f"Loaded {len(targets)} targets from {path}")
    return targets


settings = Settings()
