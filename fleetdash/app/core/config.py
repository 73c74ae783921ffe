from pathlib import Path

from pydantic_settings import BaseSettings

# Application version - single source of truth
APP_VERSION = "0.3.0"

# Base directory for path calculations
_base_dir = Path(__file__).resolve().parent.parent.parent.parent

MIB = 1024 * 1024


class Settings(BaseSettings):
    app_name: str = "fleetdash"
    debug: bool = False  # Default to production mode

    # Paths
    base_dir: Path = _base_dir
    log_dir: Path = base_dir / "logs"
    database_url: str = f"sqlite+aiosqlite:///{_base_dir / 'fleetdash.db'}"

    # Logging
    log_level: str = "INFO"  # Override with LOG_LEVEL env var or DEBUG=true
    log_to_file: bool = True  # Set to false to disable file logging

    # Backend connection
    base_url: str = "http://localhost:3000"
    api_prefix: str = "/api"
    session_cookie_name: str = "connect.sid"
    session_cookie: str | None = None
    request_timeout: float = 10.0

    # Polling intervals (seconds)
    telemetry_interval: float = 30.0
    camera_refresh_interval: float = 2.0
    camera_timeout: float = 5.0

    # Model viewer
    large_file_threshold: int = 50 * MIB  # Strict ">" comparison
    download_timeout: float = 120.0

    # Library
    auto_tag_timeout: float = 120.0
    duplicate_name_policy: str = "alphanumeric"  # "alphanumeric" or "copy_suffix"

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"


settings = Settings()

# Ensure directories exist
if settings.log_to_file:
    settings.log_dir.mkdir(exist_ok=True)
