"""
Courier Configuration

Configuration class for the Courier notification delivery engine.
"""
import os
from pathlib import Path
from urllib.parse import quote_plus
from dotenv import load_dotenv

# Load .env file from project root
_env_path = Path(__file__).parent.parent.parent / ".env"
load_dotenv(_env_path)


def _parse_channel_limits(value: str) -> dict:
    """Parse 'email=10,sms=5' into {'email': 10, 'sms': 5}"""
    limits = {}
    for pair in value.split(","):
        name, _, limit = pair.partition("=")
        if name.strip() and limit.strip().isdigit():
            limits[name.strip().lower()] = int(limit)
    return limits


class Config:
    """Configuration class for Courier engine"""

    # Base paths
    BASE_DIR = Path(__file__).parent.parent.parent

    # Database settings
    DB_HOST = os.getenv("DB_HOST", "localhost")
    DB_PORT = os.getenv("DB_PORT", "5432")
    DB_NAME = os.getenv("DB_NAME", "courier")
    DB_USER = os.getenv("DB_USER", "postgres")
    DB_PASSWORD = os.getenv("DB_PASSWORD", "")

    # Redis settings (arq broker)
    REDIS_HOST = os.getenv("REDIS_HOST", "localhost")
    REDIS_PORT = os.getenv("REDIS_PORT", "6379")
    REDIS_DB = os.getenv("REDIS_DB", "0")
    REDIS_URL = os.getenv("REDIS_URL", f"redis://{REDIS_HOST}:{REDIS_PORT}/{REDIS_DB}")

    # API settings
    API_HOST = os.getenv("API_HOST", "127.0.0.1")
    API_PORT = int(os.getenv("API_PORT", "8200"))

    # Queue settings
    QUEUE_BROKER = os.getenv("QUEUE_BROKER", "inline").lower()   # 'inline' or 'arq'
    QUEUE_NAME = os.getenv("QUEUE_NAME", "courier:notifications")
    PROCESSING_CONCURRENCY = int(os.getenv("PROCESSING_CONCURRENCY", "5"))
    MAX_RETRY_ATTEMPTS = int(os.getenv("MAX_RETRY_ATTEMPTS", "3"))
    BACKOFF_DELAY_MS = int(os.getenv("BACKOFF_DELAY_MS", "2000"))
    # false when consumers run as a separate `arq courier.worker.WorkerSettings` process
    QUEUE_CONSUME_IN_PROCESS = os.getenv("QUEUE_CONSUME_IN_PROCESS", "true").lower() == "true"

    # Sweep (periodic drain of queued rows into the broker)
    SWEEP_ENABLED = os.getenv("SWEEP_ENABLED", "true").lower() == "true"
    SWEEP_INTERVAL = int(os.getenv("SWEEP_INTERVAL", "30"))
    SWEEP_LIMIT = int(os.getenv("SWEEP_LIMIT", "100"))

    # Automatic batch collection of queued normal/low traffic
    BATCH_COLLECTION_ENABLED = os.getenv("BATCH_COLLECTION_ENABLED", "false").lower() == "true"
    BATCH_COLLECTION_INTERVAL = int(os.getenv("BATCH_COLLECTION_INTERVAL", "60"))
    BATCH_SIZE = int(os.getenv("BATCH_SIZE", "50"))
    # "channel=limit" pairs, e.g. "email=10,sms=5"
    BATCH_CHANNEL_CONCURRENCY = _parse_channel_limits(os.getenv("BATCH_CHANNEL_CONCURRENCY", ""))

    # Delivery timing (seconds)
    SEND_TIMEOUT = float(os.getenv("SEND_TIMEOUT", "30"))
    STUCK_PROCESSING_TIMEOUT = int(os.getenv("STUCK_PROCESSING_TIMEOUT", "120"))
    DELIVERY_CONFIRMATION = os.getenv("DELIVERY_CONFIRMATION", "timer").lower()   # 'timer' or 'webhook'
    DELIVERY_CONFIRMATION_DELAY = float(os.getenv("DELIVERY_CONFIRMATION_DELAY", "3"))

    # SMTP (email channel)
    SMTP_HOST = os.getenv("SMTP_HOST", "")
    SMTP_PORT = int(os.getenv("SMTP_PORT", "587"))
    SMTP_USER = os.getenv("SMTP_USER", "")
    SMTP_PASSWORD = os.getenv("SMTP_PASSWORD", "")
    SMTP_FROM_NAME = os.getenv("SMTP_FROM_NAME", "Courier")

    # Twilio (SMS channel)
    TWILIO_ACCOUNT_SID = os.getenv("TWILIO_ACCOUNT_SID", "")
    TWILIO_AUTH_TOKEN = os.getenv("TWILIO_AUTH_TOKEN", "")
    TWILIO_FROM_NUMBER = os.getenv("TWILIO_FROM_NUMBER", "")

    # Firebase Cloud Messaging (push channel)
    FCM_SERVER_KEY = os.getenv("FCM_SERVER_KEY", "")

    # Slack (chat channel)
    SLACK_BOT_TOKEN = os.getenv("SLACK_BOT_TOKEN", "")

    # Outbound webhooks
    WEBHOOK_TIMEOUT = float(os.getenv("WEBHOOK_TIMEOUT", "10"))
    WEBHOOK_SECRET = os.getenv("WEBHOOK_SECRET", "")

    @staticmethod
    def get_postgres_dsn() -> str:
        """Get PostgreSQL DSN with password handling"""
        dsn = os.getenv("POSTGRES_DSN")
        if dsn:
            return dsn
        if Config.DB_PASSWORD:
            password = quote_plus(Config.DB_PASSWORD)
            return f"postgresql://{Config.DB_USER}:{password}@{Config.DB_HOST}:{Config.DB_PORT}/{Config.DB_NAME}"
        return f"postgresql://{Config.DB_USER}@{Config.DB_HOST}:{Config.DB_PORT}/{Config.DB_NAME}"
