"""Discord webhook delivery."""

from __future__ import annotations

import logging
from typing import Any, Callable, Dict, Optional

import requests

from feedrelay.ingestion.text_utils import limit_plain_text
from feedrelay.state.bucket import TrackedItem
from feedrelay.state.timeutil import to_iso, utc_now

logger = logging.getLogger(__name__)

# Discord embed limits
# Reference: https://discord.com/developers/docs/resources/message#embed-object-embed-limits
EMBED_TITLE_LIMIT = 256
EMBED_DESCRIPTION_LIMIT = 4096
EMBED_FOOTER_LIMIT = 2048

WEBHOOK_PREFIXES = ("https://discord.com/api/webhooks/", "https://discordapp.com/api/webhooks/")

PayloadBuilder = Callable[[TrackedItem], Dict[str, Any]]


def build_embed(item: TrackedItem, *, source_name: str, color: Optional[int] = None) -> Dict[str, Any]:
    """Standard embed: title link, short description, large image, source footer."""
    embed: Dict[str, Any] = {
        "title": limit_plain_text(item.title or "No Title", EMBED_TITLE_LIMIT),
        "timestamp": item.published_at or to_iso(utc_now()),
        "footer": {"text": limit_plain_text(source_name, EMBED_FOOTER_LIMIT)},
    }
    if item.link:
        embed["url"] = item.link
    if item.description:
        embed["description"] = limit_plain_text(item.description, EMBED_DESCRIPTION_LIMIT)
    if color is not None:
        embed["color"] = color
    if item.thumbnail:
        embed["image"] = {"url": item.thumbnail}
    return embed


class DiscordWebhookSink:
    """Posts one item per webhook call and reports acceptance.

    Ordinary rejections (HTTP errors, rate limiting, network failures) return
    False; the caller decides what a failed item means.
    """

    def __init__(
        self,
        webhook_url: str,
        formatter: PayloadBuilder,
        *,
        session: Optional[requests.Session] = None,
        timeout: int = 30,
    ):
        self.webhook_url = webhook_url
        self.formatter = formatter
        self.session = session or requests.Session()
        self.timeout = timeout

    def deliver(self, item: TrackedItem) -> bool:
        payload = self.formatter(item)
        return self.post(payload, label=item.title or item.identity)

    def post(self, payload: Dict[str, Any], *, label: str = "") -> bool:
        try:
            response = self.session.post(self.webhook_url, json=payload, timeout=self.timeout)
        except requests.exceptions.RequestException as e:
            logger.error(f"Discord request failed for {label!r}: {e}")
            return False

        if response.status_code == 429:
            retry_after = response.headers.get("Retry-After", "?")
            logger.warning(f"Discord rate limited {label!r} (retry after {retry_after}s)")
            return False
        if response.status_code == 404:
            logger.error("Discord webhook not found - check URL")
            return False
        if response.status_code >= 400:
            logger.error(f"Failed to send to Discord: {response.status_code} - {response.text[:500]}")
            return False

        logger.info(f"Discord message sent: {label}")
        return True
