"""Relay configuration loaded from the environment (and ``.env``)."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from typing import Dict, Optional

from dotenv import load_dotenv

from feedrelay.delivery.discord import WEBHOOK_PREFIXES

logger = logging.getLogger(__name__)

STORE_BACKENDS = ("sqlite", "postgres", "memory")

# source id -> environment variable holding its webhook URL
WEBHOOK_ENV = {
    "gnn": "DISCORD_WEBHOOK_GNN",
    "4gamers": "DISCORD_WEBHOOK_4GAMERS",
    "ffxiv-fb": "FFXIV_WEBHOOK",
    "ffxiv-tw-news": "DISCORD_WEBHOOK_FFXIV_TW_NEWS",
    "bahamut-forum": "DISCORD_WEBHOOK_BAHAMUT",
    "plurk-anonymous": "DISCORD_WEBHOOK_PLURK",
    "ptt-lifeismoney": "DISCORD_WEBHOOK_LIFEISMONEY",
}

DAY = 24 * 60 * 60


@dataclass
class Config:
    """Relay settings with validation"""

    # State store
    store_backend: str = "sqlite"
    sqlite_path: str = "state/relay_state.db"
    pg_dsn: str = ""

    # Delivery
    send_limit: int = 5
    delivery_delay_seconds: float = 1.0
    webhooks: Dict[str, str] = field(default_factory=dict)

    # Retention
    ledger_max_entries: int = 500
    ledger_ttl_days: int = 365
    daily_bucket_ttl_days: int = 2
    snapshot_bucket_ttl_days: int = 30

    # Fetching
    request_timeout: int = 30
    ffxiv_fb_feed_url: str = "https://fetchrss.com/feed/aQGiGCKvQd7yaQGh04DO3kVC.rss"
    ffxiv_news_key: str = "ffxiv_news_v3"
    ffxiv_news_scrape: bool = True

    # Runtime
    schedule_minutes: int = 60
    log_file: str = "relay.log"

    @classmethod
    def from_env(cls, load_env_file: bool = True) -> 'Config':
        """Load and validate configuration from environment variables"""
        if load_env_file:
            load_dotenv()
        config = cls(
            store_backend=os.getenv('STORE_BACKEND', 'sqlite').lower().strip(),
            sqlite_path=os.getenv('SQLITE_PATH', 'state/relay_state.db'),
            pg_dsn=os.getenv('PG_DSN', '').strip(),

            send_limit=int(os.getenv('SEND_LIMIT', '5')),
            delivery_delay_seconds=float(os.getenv('DELIVERY_DELAY_SECONDS', '1.0')),
            webhooks={sid: os.getenv(env, '').strip() for sid, env in WEBHOOK_ENV.items()},

            ledger_max_entries=int(os.getenv('LEDGER_MAX_ENTRIES', '500')),
            ledger_ttl_days=int(os.getenv('LEDGER_TTL_DAYS', '365')),
            daily_bucket_ttl_days=int(os.getenv('DAILY_BUCKET_TTL_DAYS', '2')),
            snapshot_bucket_ttl_days=int(os.getenv('SNAPSHOT_BUCKET_TTL_DAYS', '30')),

            request_timeout=int(os.getenv('REQUEST_TIMEOUT', '30')),
            ffxiv_fb_feed_url=os.getenv('FFXIV_FB_FEED_URL', cls.ffxiv_fb_feed_url),
            ffxiv_news_key=os.getenv('FFXIV_NEWS_KEY', 'ffxiv_news_v3'),
            ffxiv_news_scrape=os.getenv('FFXIV_NEWS_SCRAPE', 'true').lower() in ('true', '1', 'yes'),

            schedule_minutes=int(os.getenv('SCHEDULE_MINUTES', '60')),
            log_file=os.getenv('LOG_FILE', 'relay.log'),
        )

        config._validate()
        return config

    def webhook_for(self, source_id: str) -> Optional[str]:
        return self.webhooks.get(source_id) or None

    @property
    def ledger_ttl_seconds(self) -> int:
        return self.ledger_ttl_days * DAY

    @property
    def daily_bucket_ttl_seconds(self) -> int:
        return self.daily_bucket_ttl_days * DAY

    @property
    def snapshot_bucket_ttl_seconds(self) -> int:
        return self.snapshot_bucket_ttl_days * DAY

    def _validate(self):
        """Validate configuration values"""
        errors = []

        if self.store_backend not in STORE_BACKENDS:
            errors.append(f"STORE_BACKEND must be one of {', '.join(STORE_BACKENDS)}")
        elif self.store_backend == "postgres" and not self.pg_dsn:
            errors.append("STORE_BACKEND=postgres requires PG_DSN")
        elif self.store_backend == "sqlite" and not self.sqlite_path:
            errors.append("STORE_BACKEND=sqlite requires SQLITE_PATH")

        for source_id, url in self.webhooks.items():
            if url and not url.startswith(WEBHOOK_PREFIXES):
                errors.append(f"Invalid Discord webhook URL format in {WEBHOOK_ENV.get(source_id, source_id)}")

        if self.send_limit < 1 or self.send_limit > 50:
            errors.append("SEND_LIMIT should be between 1 and 50")

        if self.delivery_delay_seconds < 0:
            errors.append("DELIVERY_DELAY_SECONDS must not be negative")

        if self.ledger_max_entries < 1:
            errors.append("LEDGER_MAX_ENTRIES must be positive")

        if min(self.ledger_ttl_days, self.daily_bucket_ttl_days, self.snapshot_bucket_ttl_days) < 1:
            errors.append("TTL settings must be at least one day")

        if self.request_timeout < 5 or self.request_timeout > 300:
            errors.append("REQUEST_TIMEOUT should be between 5 and 300 seconds")

        if self.schedule_minutes < 1:
            errors.append("SCHEDULE_MINUTES must be positive")

        if errors:
            error_msg = "Configuration validation failed:\n" + "\n".join(f"  - {error}" for error in errors)
            raise ValueError(error_msg)

        configured = [sid for sid, url in self.webhooks.items() if url]
        logger.info(f"Configuration validated successfully. Webhooks configured for: {', '.join(configured) or 'none'}")
