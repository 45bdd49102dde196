import os
from typing import List

from dotenv import load_dotenv

load_dotenv()


def _csv(value: str) -> List[str]:
    return [v.strip() for v in (value or "").split(",") if v.strip()]


class Settings:
    """Environment-backed configuration, read once at import."""

    def __init__(self) -> None:
        self.SNAPSPLIT_VERSION = os.getenv("SNAPSPLIT_VERSION", "0.1.0")
        self.SNAPSPLIT_HOST = os.getenv("SNAPSPLIT_HOST", "0.0.0.0")
        self.SNAPSPLIT_PORT = int(os.getenv("PORT", "8000"))

        # CORS: "off" or "allowlist"
        self.CORS_MODE = os.getenv("CORS_MODE", "off").lower()
        self.CORS_ALLOW_ORIGINS = _csv(os.getenv("CORS_ALLOW_ORIGINS", ""))

        # Storage: "memory" or "supabase"
        self.BILL_STORE = os.getenv("BILL_STORE", "memory").lower()
        self.SUPABASE_URL = os.getenv("SUPABASE_URL")
        self.SUPABASE_SERVICE_ROLE_KEY = os.getenv("SUPABASE_SERVICE_ROLE_KEY")

        self.NOTIFY_WEBHOOK_URL = os.getenv("NOTIFY_WEBHOOK_URL")
        self.HTTP_TIMEOUT_SECONDS = float(os.getenv("SNAPSPLIT_HTTP_TIMEOUT_SECONDS", "10"))

        # Client sync queue
        self.SYNC_BASE_DELAY_SECONDS = float(os.getenv("SYNC_BASE_DELAY_SECONDS", "1"))
        self.SYNC_MAX_DELAY_SECONDS = float(os.getenv("SYNC_MAX_DELAY_SECONDS", "60"))
        self.SYNC_MAX_RETRIES = int(os.getenv("SYNC_MAX_RETRIES", "5"))


settings = Settings()
