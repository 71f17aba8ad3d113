#!/usr/bin/env python3
"""Feed relay worker.

Runs one relay cycle (or scheduled cycles) over every configured source:
- RSS feeds (GNN, 4Gamers, FFXIV Facebook page via fetchrss)
- FFXIV TW official news list (scraped into the state store, then relayed)
- Bahamut forum board (most popular thread, once a day)
- Plurk anonymous hot list (top 5)
- PTT Lifeismoney board (today's posts with at least 30 pushes)

New items are posted to each source's Discord webhook, oldest first, and
recorded in the state store so they are never announced twice.

Modes (``--mode`` or env ``RELAY_MODE``):
  once       one production cycle (default)
  scheduled  run every SCHEDULE_MINUTES
  test       one newest item per source, no run gate
  replay     post everything the sources show right now, touch no state
  status     print stored state per source as JSON
  clear      delete current bucket, ledger and run gate per source
"""

from __future__ import annotations

import argparse
import json
import logging
import os
import sys
import time
from typing import List, Optional

import requests
import schedule

from feedrelay.catalog import default_jobs
from feedrelay.config import Config
from feedrelay.delivery.recent_cache import RecentDeliveryCache
from feedrelay.pipeline.cycle import MODE_PRODUCTION, MODE_REPLAY, MODE_TEST, clear_state, run_all, status
from feedrelay.storage.kv_store import StoreError, make_store

logger = logging.getLogger("relay_worker")

MODES = ("once", "scheduled", "daemon", "test", "replay", "status", "clear")

# Survives between scheduled runs within one process.
_recent_cache = RecentDeliveryCache()


def configure_logging(log_file: str) -> None:
    log_dir = os.path.dirname(log_file)
    if log_dir:
        os.makedirs(log_dir, exist_ok=True)
    logging.basicConfig(
        level=logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        handlers=[
            logging.FileHandler(log_file),
            logging.StreamHandler(sys.stdout)
        ]
    )


def run_once(config: Config, mode: str = MODE_PRODUCTION, only: Optional[List[str]] = None) -> None:
    try:
        store = make_store(config)
    except (StoreError, OSError) as e:
        logger.error(f"[relay] state store unavailable, skipping this run: {e}")
        return
    session = requests.Session()
    jobs = default_jobs(config, store, only=only, session=session)
    if not jobs:
        logger.warning("No source has a webhook configured; nothing to do")
        return

    reports = run_all(jobs, store, mode=mode, recent_cache=_recent_cache)
    delivered = sum(r.delivered for r in reports)
    skipped = [r.source_id for r in reports if r.skipped]
    logger.info(f"[relay] mode={mode} sources={len(reports)} delivered={delivered} skipped={skipped or 'none'}")


def run_scheduled(config: Config, only: Optional[List[str]] = None) -> None:
    logger.info(f"Scheduling relay every {config.schedule_minutes} minutes")
    run_once(config, only=only)
    schedule.every(config.schedule_minutes).minutes.do(run_once, config, only=only)
    while True:
        schedule.run_pending()
        time.sleep(5)


def show_status(config: Config, only: Optional[List[str]] = None) -> None:
    store = make_store(config)
    jobs = default_jobs(config, store, only=only, require_webhook=False)
    print(json.dumps(status(jobs, store), ensure_ascii=False, indent=2))


def clear(config: Config, only: Optional[List[str]] = None) -> None:
    store = make_store(config)
    jobs = default_jobs(config, store, only=only, require_webhook=False)
    cleared = {job.source_id: clear_state(job, store) for job in jobs}
    print(json.dumps(cleared, ensure_ascii=False, indent=2))


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Relay new feed items to Discord webhooks")
    parser.add_argument(
        "--mode",
        choices=MODES,
        default=(os.environ.get("RELAY_MODE") or "once").lower().strip(),
        help="Run mode (default: env RELAY_MODE or 'once')",
    )
    parser.add_argument("--source", action="append", dest="sources", help="Restrict to this source id (repeatable)")
    args = parser.parse_args(argv)

    config = Config.from_env()
    configure_logging(config.log_file)

    if args.mode in ("scheduled", "daemon"):
        run_scheduled(config, only=args.sources)
    elif args.mode == "test":
        run_once(config, mode=MODE_TEST, only=args.sources)
    elif args.mode == "replay":
        run_once(config, mode=MODE_REPLAY, only=args.sources)
    elif args.mode == "status":
        show_status(config, only=args.sources)
    elif args.mode == "clear":
        clear(config, only=args.sources)
    else:
        run_once(config, only=args.sources)
    return 0


if __name__ == "__main__":
    sys.exit(main())
