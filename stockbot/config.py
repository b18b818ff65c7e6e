from __future__ import annotations

import os
from dataclasses import dataclass


@dataclass(frozen=True)
class Settings:
    """Configuration container for platform credentials, database access, and the sheet sink."""
    line_channel_access_token: str
    line_channel_secret: str
    line_api_base: str
    supabase_url: str
    supabase_service_role_key: str
    default_branch: str
    sheet_webhook_url: str
    sheet_webhook_secret: str
    notify_timezone: str
    change_source_tag: str
    http_timeout: float
    log_level: str


def load_settings() -> Settings:
    """Purpose: Load configuration from environment variables and defaults.
    Inputs/Outputs: No inputs; returns a Settings instance.
    Side Effects / State: Reads environment variables.
    Dependencies: Uses os.getenv; app.py loads .env before calling this.
    Failure Modes: Invalid HTTP_TIMEOUT env value raises ValueError.
    If Removed: App cannot build its clients and fails at startup.
    Testing Notes: Verify defaults and overrides via environment variables.
    """
    # Credentials are validated by the clients that need them, not here.
    return Settings(
        line_channel_access_token=os.getenv("LINE_CHANNEL_ACCESS_TOKEN", ""),
        line_channel_secret=os.getenv("LINE_CHANNEL_SECRET", ""),
        line_api_base=os.getenv("LINE_API_BASE", "https://api.line.me").rstrip("/"),
        supabase_url=os.getenv("SUPABASE_URL", "").rstrip("/"),
        supabase_service_role_key=os.getenv("SUPABASE_SERVICE_ROLE_KEY", ""),
        default_branch=os.getenv("DEFAULT_BRANCH", "").strip(),
        sheet_webhook_url=os.getenv("SHEET_WEBHOOK_URL", "").strip(),
        sheet_webhook_secret=os.getenv("SHEET_WEBHOOK_SECRET", "").strip(),
        notify_timezone=os.getenv("NOTIFY_TIMEZONE", "Asia/Taipei"),
        change_source_tag=os.getenv("CHANGE_SOURCE_TAG", "LINE"),
        http_timeout=float(os.getenv("HTTP_TIMEOUT", "10")),
        log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
    )
