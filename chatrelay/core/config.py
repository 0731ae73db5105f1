# chatrelay/core/config.py

import logging
import sys
import os

# Check if running in cloud environment (like Azure)
# If not, assume local development and try to load .env
if os.getenv("WEBSITE_SITE_NAME") is None:
    try:
        from dotenv import load_dotenv

        # Load environment variables from .env file in the project root
        dotenv_path = os.path.join(os.path.dirname(__file__), "..", "..", ".env")
        load_dotenv(dotenv_path=dotenv_path)
    except ImportError:
        print(
            "python-dotenv not found, skipping load_dotenv(). Relying on system environment variables."
        )


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None or value == "":
        return default
    try:
        return int(value)
    except ValueError:
        logging.warning(f"{name}={value!r} is not an integer, using default {default}")
        return default


def _env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    if value is None or value == "":
        return default
    try:
        return float(value)
    except ValueError:
        logging.warning(f"{name}={value!r} is not a number, using default {default}")
        return default


class BreakerSettings:
    """Tuning for one circuit breaker, read from <PREFIX>_CB_* variables"""

    def __init__(self, prefix: str, threshold: int, timeout: float, reset_timeout: float):
        self.threshold = _env_int(f"{prefix}_CB_THRESHOLD", threshold)
        self.timeout = _env_float(f"{prefix}_CB_TIMEOUT", timeout)
        self.reset_timeout = _env_float(f"{prefix}_CB_RESET_TIMEOUT", reset_timeout)


class Settings:
    """Simple settings object to hold configuration values"""

    def __init__(self):
        self.DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./chatrelay.db")
        self.LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

        # Secrets are checked where they are used, not here
        self.AUTH_SECRET = os.getenv("AUTH_SECRET")
        self.CRON_SECRET = os.getenv("CRON_SECRET")
        self.WHATSAPP_GATEWAY_SECRET = os.getenv("WHATSAPP_GATEWAY_SECRET")
        self.TELEGRAM_GATEWAY_SECRET = os.getenv("TELEGRAM_GATEWAY_SECRET")
        self.ADMIN_API_KEY = os.getenv("ADMIN_API_KEY")

        # Chat platforms
        self.WHATSAPP_VERIFY_TOKEN = os.getenv("WHATSAPP_VERIFY_TOKEN")
        self.WHATSAPP_API_VERSION = os.getenv("WHATSAPP_API_VERSION", "v22.0")
        self.TELEGRAM_BOT_TOKEN = os.getenv("TELEGRAM_BOT_TOKEN", "")
        self.HTTP_TIMEOUT = _env_float("HTTP_TIMEOUT", 10.0)

        # AI backend
        self.OPENAI_API_KEY = os.getenv("OPENAI_API_KEY")
        self.OPENAI_MODEL = os.getenv("OPENAI_MODEL", "gpt-4o-mini")

        # Queue
        self.QUEUE_BACKEND = os.getenv("QUEUE_BACKEND", "database")
        self.QUEUE_MAX_ATTEMPTS = _env_int("QUEUE_MAX_ATTEMPTS", 5)
        self.QUEUE_BACKOFF_BASE = _env_float("QUEUE_BACKOFF_BASE", 2.0)
        self.QUEUE_BACKOFF_MAX = _env_float("QUEUE_BACKOFF_MAX", 300.0)
        self.QUEUE_BATCH_SIZE = _env_int("QUEUE_BATCH_SIZE", 20)

        # Analytics
        self.ANALYTICS_RETENTION_DAYS = _env_int("ANALYTICS_RETENTION_DAYS", 90)

        # Circuit breakers
        self.WHATSAPP_API_BREAKER = BreakerSettings("WHATSAPP_API", 5, 60.0, 30.0)
        self.AI_PROCESSING_BREAKER = BreakerSettings("AI_PROCESSING", 3, 30.0, 30.0)
        self.DATABASE_BREAKER = BreakerSettings("DATABASE", 5, 60.0, 30.0)

        if not self.OPENAI_API_KEY:
            logging.warning("OPENAI_API_KEY environment variable not set.")


def configure_logging(level: str = None):
    """Configure application logging"""
    # Quiet the HTTP client, it logs every request at INFO
    logging.getLogger("httpx").setLevel(logging.WARNING)

    logging.basicConfig(
        level=(level or os.getenv("LOG_LEVEL", "INFO")).upper(),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        stream=sys.stdout,
    )


def get_settings() -> Settings:
    """Build settings from the current environment."""
    return Settings()


# Create global settings instance
settings = Settings()
