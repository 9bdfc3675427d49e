"""
Configuration - process-wide settings resolved once at startup.

Values come from the environment after loading .env.local and .env.
Every client receives what it needs through its constructor; nothing
below reads the environment after load_settings() returns.
"""

import os
from dataclasses import dataclass
from typing import Optional
from dotenv import load_dotenv


# Apify LinkedIn Profile Scraper
DEFAULT_PROFILE_ACTOR_ID = "yZnhB5JewWf9xSmoM"

PDL_API_BASE = "https://api.peopledatalabs.com/v5"

DEFAULT_SCORING_MODEL = "gpt-5-mini"


def _get_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    return int(raw)


def _get_optional(name: str) -> Optional[str]:
    value = os.getenv(name)
    if value is None:
        return None
    value = value.strip()
    return value or None


@dataclass(frozen=True)
class Settings:
    supabase_url: Optional[str] = None
    supabase_key: Optional[str] = None

    apify_api_token: Optional[str] = None
    apify_profile_actor_id: str = DEFAULT_PROFILE_ACTOR_ID
    apify_webhook_url: Optional[str] = None
    apify_run_timeout_secs: int = 1800

    pdl_api_key: Optional[str] = None
    pdl_base_url: str = PDL_API_BASE

    openai_api_key: Optional[str] = None
    scoring_model: str = DEFAULT_SCORING_MODEL
    pass_threshold: int = 70

    # No delivery after this many hours fails the job
    scrape_timeout_hours: int = 6

    queue_visibility_timeout: int = 300
    queue_max_attempts: int = 8
    queue_backoff_base: int = 30
    queue_backoff_max: int = 900
    worker_poll_interval: int = 5
    # Re-check interval for scrapes that are still running
    delivery_check_interval: int = 120
    # A qualifying job untouched for this long is taken over by another worker
    qualify_lease_seconds: int = 900

    webhook_secret: Optional[str] = None
    log_level: str = "INFO"


def load_settings() -> Settings:
    """Build Settings from the environment (.env.local takes precedence over .env)."""
    load_dotenv(".env.local")
    load_dotenv()

    return Settings(
        supabase_url=_get_optional("SUPABASE_URL"),
        supabase_key=_get_optional("SUPABASE_KEY"),
        apify_api_token=_get_optional("APIFY_API_TOKEN"),
        apify_profile_actor_id=os.getenv("APIFY_PROFILE_ACTOR_ID") or DEFAULT_PROFILE_ACTOR_ID,
        apify_webhook_url=_get_optional("APIFY_WEBHOOK_URL"),
        apify_run_timeout_secs=_get_int("APIFY_RUN_TIMEOUT_SECS", 1800),
        pdl_api_key=_get_optional("PDL_API_KEY"),
        pdl_base_url=os.getenv("PDL_BASE_URL") or PDL_API_BASE,
        openai_api_key=_get_optional("OPENAI_API_KEY"),
        scoring_model=os.getenv("SCORING_MODEL") or DEFAULT_SCORING_MODEL,
        pass_threshold=_get_int("PASS_THRESHOLD", 70),
        scrape_timeout_hours=_get_int("SCRAPE_TIMEOUT_HOURS", 6),
        queue_visibility_timeout=_get_int("QUEUE_VISIBILITY_TIMEOUT", 300),
        queue_max_attempts=_get_int("QUEUE_MAX_ATTEMPTS", 8),
        queue_backoff_base=_get_int("QUEUE_BACKOFF_BASE", 30),
        queue_backoff_max=_get_int("QUEUE_BACKOFF_MAX", 900),
        worker_poll_interval=_get_int("WORKER_POLL_INTERVAL", 5),
        delivery_check_interval=_get_int("DELIVERY_CHECK_INTERVAL", 120),
        qualify_lease_seconds=_get_int("QUALIFY_LEASE_SECONDS", 900),
        webhook_secret=_get_optional("WEBHOOK_SECRET"),
        log_level=os.getenv("LOG_LEVEL") or "INFO",
    )
