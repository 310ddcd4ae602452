import logging
import os
import sys

from pydantic_settings import BaseSettings
from typing import Optional


def setup_logging():
    """Configure application logging."""
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        handlers=[logging.StreamHandler(sys.stdout)],
    )
    # Set third-party loggers to WARNING to reduce noise
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("aiosqlite").setLevel(logging.WARNING)


# Initialize logging on import
setup_logging()

logger = logging.getLogger(__name__)

# Default database location - data directory next to the package
DATA_DIR = os.path.join(os.path.dirname(os.path.dirname(__file__)), "data")
DEFAULT_DATABASE_URL = f"sqlite+aiosqlite:///{os.path.join(DATA_DIR, 'flowstream.db')}"


class Settings(BaseSettings):
    # Database
    database_url: str = DEFAULT_DATABASE_URL

    # Server configuration
    host: str = "0.0.0.0"
    port: int = 8000
    debug: bool = False

    # Subscriber endpoint polling (1 poll/second, 5 minutes max)
    poll_interval_seconds: float = 1.0
    max_polls: int = 300

    # In-process live stream
    live_heartbeat_seconds: float = 30.0
    channel_buffer_size: int = 1000
    # False = last subscriber wins (previous channel is closed)
    stream_fan_out: bool = True

    # User session settings
    user_token_expiry_hours: int = 24

    # Cost analytics
    monthly_budget_limit: float = 50.0

    # Optional user created at startup (development convenience)
    seed_username: Optional[str] = None
    seed_password: Optional[str] = None

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"


def ensure_data_dir():
    """Create the default data directory when the default SQLite path is in use."""
    if settings.database_url == DEFAULT_DATABASE_URL:
        os.makedirs(DATA_DIR, exist_ok=True)


settings = Settings()
