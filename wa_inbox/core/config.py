"""Runtime settings loaded from the environment."""

from __future__ import annotations

import dataclasses
import os
from functools import lru_cache


def _env_bool(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).strip().lower() in {"1", "true", "yes", "on"}


@dataclasses.dataclass(frozen=True)
class Settings:
    """Configuration shared by the API, webhooks and background jobs."""

    database_url: str | None = None
    twilio_account_sid: str | None = None
    twilio_auth_token: str | None = None
    twilio_whatsapp_number: str | None = None
    twilio_api_base: str = "https://api.twilio.com/2010-04-01"
    twilio_validate_signature: bool = False
    public_base_url: str | None = None
    cron_secret: str | None = None
    window_hours: int = 24
    campaign_batch_size: int = 50
    campaign_batch_delay_ms: int = 1000
    dispatch_max_workers: int = 4
    upload_dir: str = "tmp/uploads"
    media_max_size: int = 20 * 1024 * 1024  # 20MB

    @property
    def status_callback_url(self) -> str | None:
        if not self.public_base_url:
            return None
        return f"{self.public_base_url.rstrip('/')}/api/webhooks/twilio/status"


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Load settings from the environment with development defaults."""

    return Settings(
        database_url=os.getenv("DATABASE_URL"),
        twilio_account_sid=os.getenv("TWILIO_ACCOUNT_SID"),
        twilio_auth_token=os.getenv("TWILIO_AUTH_TOKEN"),
        twilio_whatsapp_number=os.getenv("TWILIO_WHATSAPP_NUMBER"),
        twilio_api_base=os.getenv(
            "TWILIO_API_BASE", "https://api.twilio.com/2010-04-01"
        ),
        twilio_validate_signature=_env_bool("TWILIO_VALIDATE_SIGNATURE"),
        public_base_url=os.getenv("PUBLIC_BASE_URL"),
        cron_secret=os.getenv("CRON_SECRET") or None,
        window_hours=int(os.getenv("CONVERSATION_WINDOW_HOURS", "24")),
        campaign_batch_size=int(os.getenv("CAMPAIGN_BATCH_SIZE", "50")),
        campaign_batch_delay_ms=int(os.getenv("CAMPAIGN_BATCH_DELAY_MS", "1000")),
        dispatch_max_workers=int(os.getenv("DISPATCH_MAX_WORKERS", "4")),
        upload_dir=os.getenv("UPLOAD_DIR", "tmp/uploads"),
        media_max_size=int(os.getenv("MEDIA_MAX_SIZE", str(20 * 1024 * 1024))),
    )


def reset_settings_cache() -> None:
    """Clear cached settings; useful in tests when env vars change."""

    get_settings.cache_clear()
