"""Configuration manager for settings stored as JSON."""

import json
from pathlib import Path
from typing import Optional

from pydantic import BaseModel, Field
from pydantic import ValidationError as PydanticValidationError

from mailfetch.core.email.constants import Limits, Timeouts

from .errors import FileSystemError, InvalidConfigError
from .logging import get_logger
from .paths import CONFIG_PATH, LOGS_DIR

logger = get_logger(__name__)


class FetchConfig(BaseModel):
    """Pydantic model for retrieval limits, timeouts and TLS policy."""

    pop3_fetch_limit: int = Field(default=Limits.POP3_FETCH_LIMIT, ge=1)
    imap_fetch_limit: int = Field(default=Limits.IMAP_FETCH_LIMIT, ge=1)
    body_max_chars: int = Field(default=Limits.BODY_MAX_CHARS, ge=1)
    fetch_timeout: float = Field(default=Timeouts.FETCH, gt=0)
    test_timeout: float = Field(default=Timeouts.CONNECTION_TEST, gt=0)
    idle_timeout: float = Field(default=Timeouts.SOCKET_IDLE, gt=0)
    quit_timeout: float = Field(default=Timeouts.QUIT, gt=0)
    verify_certificates: bool = False
    require_tls: bool = False


class LoggingConfig(BaseModel):
    """Pydantic model for logging settings."""

    log_level: str = "INFO"
    console_level: str = "WARNING"
    log_to_file: bool = True
    log_dir: str = str(LOGS_DIR)
    max_file_size: int = 5_242_880  # 5 MB
    backup_count: int = 5


class AppConfig(BaseModel):
    """Pydantic model for overall application configuration."""

    version: str = "0.1.0"
    fetch: FetchConfig = Field(default_factory=FetchConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)


class ConfigManager:
    """Loads application configuration; the file is only ever read."""

    def __init__(self, config_path: Optional[Path] = None):
        self.path = Path(config_path) if config_path else CONFIG_PATH
        self.config = self._load_config()

    def _load_config(self) -> AppConfig:
        """Load configuration from file, falling back to defaults when absent."""

        if not self.path.exists():
            logger.debug(f"No config file at {self.path}, using defaults")
            return AppConfig()

        try:
            with open(self.path, "r", encoding="utf-8") as f:
                data = json.load(f)
            config = AppConfig(**data)
            logger.debug("Configuration successfully loaded and validated.")
            return config

        except json.JSONDecodeError as e:
            logger.error(f"Failed to parse config file: {e}")
            raise InvalidConfigError(
                f"Configuration file is not valid JSON: {str(e)}",
                details={"path": str(self.path)},
            ) from e
        except PydanticValidationError as e:
            logger.error(f"Failed to validate config file: {e}")
            raise InvalidConfigError(
                f"Configuration data does not match expected schema: {str(e)}",
                details={"path": str(self.path)},
            ) from e
        except OSError as e:
            raise FileSystemError(
                f"Failed to read configuration file: {str(e)}"
            ) from e
