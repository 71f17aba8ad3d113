"""The configured relay jobs: which sources go to which webhooks."""

from __future__ import annotations

import logging
from datetime import timedelta
from typing import Iterable, List, Optional

import requests

from feedrelay.config import WEBHOOK_ENV, Config
from feedrelay.delivery.discord import DiscordWebhookSink
from feedrelay.ingestion.news_scraper import NewsScraper
from feedrelay.ingestion.sources import (
    ContentRewriter,
    ForumSource,
    NewsSnapshotSource,
    PlurkSource,
    PttSource,
    RSSSource,
    SourceAdapter,
)
from feedrelay.pipeline.cycle import CyclePolicy, RelayJob
from feedrelay.storage.kv_store import KVStore

logger = logging.getLogger(__name__)

FORUM_MIN_INTERVAL_SECONDS = 24 * 60 * 60


def default_sources(
    config: Config,
    store: KVStore,
    session: Optional[requests.Session] = None,
    rewriter: Optional[ContentRewriter] = None,
) -> List[SourceAdapter]:
    session = session or requests.Session()
    timeout = config.request_timeout
    return [
        RSSSource(
            feed_url="https://gnn.gamer.com.tw/rss.xml",
            name="巴哈姆特 GNN 新聞網",
            source_id="gnn",
            base_url="https://gnn.gamer.com.tw",
            color=0x009CAD,
            timeout=timeout,
            session=session,
        ),
        RSSSource(
            feed_url="https://www.4gamers.com.tw/rss/latest-news",
            name="4Gamers",
            source_id="4gamers",
            base_url="https://www.4gamers.com.tw",
            color=0x3A94CB,
            timeout=timeout,
            session=session,
        ),
        RSSSource(
            feed_url=config.ffxiv_fb_feed_url,
            name="FFXIV 官方 FB 粉絲團",
            source_id="ffxiv-fb",
            base_url="https://www.facebook.com",
            color=0x0866FF,
            rewriter=rewriter,
            timeout=timeout,
            session=session,
        ),
        NewsSnapshotSource(
            store=store,
            news_key=config.ffxiv_news_key,
            scraper=NewsScraper(timeout=timeout, session=session) if config.ffxiv_news_scrape else None,
        ),
        ForumSource(max_age=timedelta(days=7), timeout=timeout, session=session),
        PlurkSource(timeout=timeout, session=session),
        PttSource(timeout=timeout, session=session),
    ]


def policy_for(source: SourceAdapter, config: Config) -> CyclePolicy:
    policy = CyclePolicy(
        send_limit=config.send_limit,
        delay_seconds=config.delivery_delay_seconds,
        ledger_ttl_seconds=config.ledger_ttl_seconds,
        ledger_max_entries=config.ledger_max_entries,
    )
    if isinstance(source, NewsSnapshotSource):
        policy.seed_on_first_run = True
    if source.scope.kind == "daily":
        policy.bucket_ttl_seconds = config.daily_bucket_ttl_seconds
    else:
        policy.bucket_ttl_seconds = config.snapshot_bucket_ttl_seconds
    if isinstance(source, ForumSource):
        policy.send_limit = 1
        policy.min_interval_seconds = FORUM_MIN_INTERVAL_SECONDS
    return policy


def build_jobs(
    config: Config,
    sources: Iterable[SourceAdapter],
    *,
    only: Optional[Iterable[str]] = None,
    session: Optional[requests.Session] = None,
    require_webhook: bool = True,
) -> List[RelayJob]:
    """Pair each source with its webhook; sources without one are skipped.

    With ``require_webhook=False`` (state inspection) such sources get no sink.
    """
    sources = list(sources)
    wanted = set(only) if only else None
    session = session or requests.Session()
    jobs = []
    for source in sources:
        if wanted is not None and source.source_id not in wanted:
            continue
        webhook = config.webhook_for(source.source_id)
        if not webhook and not require_webhook:
            jobs.append(RelayJob(source=source, sink=None, policy=policy_for(source, config)))
            continue
        if not webhook:
            env_name = WEBHOOK_ENV.get(source.source_id, source.source_id)
            logger.warning(f"Missing webhook for {source.name}: set {env_name}")
            continue
        sink = DiscordWebhookSink(webhook, source.format_payload, session=session, timeout=config.request_timeout)
        jobs.append(RelayJob(source=source, sink=sink, policy=policy_for(source, config)))
    if wanted:
        unknown = wanted - {source.source_id for source in sources}
        if unknown:
            logger.warning(f"Unknown source ids ignored: {', '.join(sorted(unknown))}")
    return jobs


def default_jobs(
    config: Config,
    store: KVStore,
    *,
    only: Optional[Iterable[str]] = None,
    session: Optional[requests.Session] = None,
    require_webhook: bool = True,
) -> List[RelayJob]:
    session = session or requests.Session()
    sources = default_sources(config, store, session)
    return build_jobs(config, sources, only=only, session=session, require_webhook=require_webhook)
