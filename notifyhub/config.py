from __future__ import annotations

import os
from functools import lru_cache
from typing import List, Optional

from dotenv import load_dotenv
from pydantic import BaseModel

# Load env before anything else
load_dotenv()


def _env_list(name: str) -> List[str]:
    raw = os.getenv(name, "")
    return [item.strip() for item in raw.split(",") if item.strip()]


def _env_bool(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


class Settings(BaseModel):
    """Process-wide configuration, built once at start-up.

    Provider adapters receive this object in their constructor instead of
    reading the environment themselves, so tests can hand them fake
    credentials.
    """

    database_url: str = "sqlite+aiosqlite:///:memory:"
    supabase_url: str = ""
    supabase_service_role_key: str = ""

    frontend_url: str = "http://localhost:3000"
    cors_origins: List[str] = []
    public_base_url: str = "http://localhost:8000"

    google_client_id: str = ""
    google_client_secret: str = ""
    gmail_pubsub_topic: str = ""
    slack_client_id: str = ""
    slack_client_secret: str = ""
    slack_signing_secret: str = ""
    hubspot_client_id: str = ""
    hubspot_client_secret: str = ""

    token_encryption_key: str = ""

    http_timeout_seconds: float = 15.0
    refresh_margin_seconds: int = 300
    refresh_max_failures: int = 3
    refresh_interval_seconds: int = 3600
    refresh_loop_enabled: bool = False
    sync_page_size: int = 20
    webhook_page_size: int = 10
    cron_secret: Optional[str] = None

    @property
    def default_redirect_uri(self) -> str:
        return f"{self.frontend_url.rstrip('/')}/auth/callback"

    @property
    def allowed_origins(self) -> List[str]:
        origins = [self.frontend_url, "http://localhost:3000", *self.cors_origins]
        return list(dict.fromkeys(origins))

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            database_url=os.getenv("DATABASE_URL", "sqlite+aiosqlite:///:memory:"),
            supabase_url=os.getenv("SUPABASE_URL", ""),
            supabase_service_role_key=os.getenv("SUPABASE_SERVICE_ROLE_KEY", ""),
            frontend_url=os.getenv("FRONTEND_URL", "http://localhost:3000"),
            cors_origins=_env_list("CORS_ORIGINS"),
            public_base_url=os.getenv("PUBLIC_BASE_URL", "http://localhost:8000"),
            google_client_id=os.getenv("GOOGLE_CLIENT_ID", ""),
            google_client_secret=os.getenv("GOOGLE_CLIENT_SECRET", ""),
            gmail_pubsub_topic=os.getenv("GMAIL_PUBSUB_TOPIC", ""),
            slack_client_id=os.getenv("SLACK_CLIENT_ID", ""),
            slack_client_secret=os.getenv("SLACK_CLIENT_SECRET", ""),
            slack_signing_secret=os.getenv("SLACK_SIGNING_SECRET", ""),
            hubspot_client_id=os.getenv("HUBSPOT_CLIENT_ID", ""),
            hubspot_client_secret=os.getenv("HUBSPOT_CLIENT_SECRET", ""),
            token_encryption_key=os.getenv("TOKEN_ENCRYPTION_KEY", ""),
            http_timeout_seconds=float(os.getenv("HTTP_TIMEOUT_SECONDS", "15")),
            refresh_margin_seconds=int(os.getenv("REFRESH_MARGIN_SECONDS", "300")),
            refresh_max_failures=int(os.getenv("REFRESH_MAX_FAILURES", "3")),
            refresh_interval_seconds=int(os.getenv("REFRESH_INTERVAL_SECONDS", "3600")),
            refresh_loop_enabled=_env_bool("REFRESH_LOOP_ENABLED"),
            sync_page_size=int(os.getenv("SYNC_PAGE_SIZE", "20")),
            webhook_page_size=int(os.getenv("WEBHOOK_PAGE_SIZE", "10")),
            cron_secret=os.getenv("CRON_SECRET") or None,
        )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """FastAPI dependency returning the process settings."""
    return Settings.from_env()
