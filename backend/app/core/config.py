from typing import List, Optional

from pydantic import field_validator
from pydantic_settings import BaseSettings

VERSION = "0.1.0"

VALID_STORE_TYPES = ("sqlite", "postgresql")
VALID_LOG_LEVELS = ("debug", "info", "warn", "error")
VALID_LOG_FORMATS = ("json", "text")


class Settings(BaseSettings):
    API_V1_STR: str = "/api/v1"
    PROJECT_NAME: str = "Data Voyager"

    # Server
    SERVER_HOST: str = "localhost"
    SERVER_PORT: int = 8080

    # Metadata store (where datasource records live)
    METADATA_STORE_TYPE: str = "sqlite"
    METADATA_STORE_URL: str = "./data/explorer.db"
    MIGRATE_ON_START: bool = True

    # Logging
    LOG_LEVEL: str = "info"
    LOG_FORMAT: str = "text"
    LOG_OUTPUT: str = "stdout"  # stdout, stderr or a file path

    # Security
    ENABLE_CORS: bool = True
    ALLOWED_ORIGINS: List[str] = ["*"]
    ALLOWED_METHODS: List[str] = ["GET", "POST", "PUT", "DELETE", "OPTIONS"]
    ALLOWED_HEADERS: List[str] = ["Origin", "Content-Type", "Accept", "Authorization"]

    # Seconds allowed for opening and pinging an external datasource
    DATASOURCE_CONNECT_TIMEOUT: float = 10.0

    @field_validator("SERVER_PORT")
    @classmethod
    def check_port(cls, value: int) -> int:
        if value <= 0 or value > 65535:
            raise ValueError(f"invalid server port: {value}")
        return value

    @field_validator("METADATA_STORE_TYPE")
    @classmethod
    def check_store_type(cls, value: str) -> str:
        value = value.lower()
        if value not in VALID_STORE_TYPES:
            raise ValueError(f"unsupported metadata store type: {value}")
        return value

    @field_validator("METADATA_STORE_URL")
    @classmethod
    def check_store_url(cls, value: str) -> str:
        if not value:
            raise ValueError("metadata store connection URL is required")
        return value

    @field_validator("LOG_LEVEL")
    @classmethod
    def check_log_level(cls, value: str) -> str:
        value = value.lower()
        if value not in VALID_LOG_LEVELS:
            raise ValueError(f"invalid log level: {value}")
        return value

    @field_validator("LOG_FORMAT")
    @classmethod
    def check_log_format(cls, value: str) -> str:
        value = value.lower()
        if value not in VALID_LOG_FORMATS:
            raise ValueError(f"invalid log format: {value}")
        return value

    class Config:
        env_file = ".env"
        extra = "ignore"  # Ignore extra fields in .env


def load_settings(env_file: Optional[str] = None) -> Settings:
    """Load settings, optionally from an explicit env file instead of ./.env."""
    if env_file:
        return Settings(_env_file=env_file)
    return Settings()


def write_default_config(path: str) -> None:
    """Write an env file holding every setting at its default value."""
    defaults = Settings.model_construct()
    lines = ["# Data Voyager configuration"]
    for name in Settings.model_fields:
        value = getattr(defaults, name)
        if isinstance(value, list):
            rendered = "[" + ",".join(f'"{v}"' for v in value) + "]"
        elif isinstance(value, bool):
            rendered = "true" if value else "false"
        else:
            rendered = str(value)
        lines.append(f"{name}={rendered}")
    with open(path, "w") as f:
        f.write("\n".join(lines) + "\n")


settings = Settings()
