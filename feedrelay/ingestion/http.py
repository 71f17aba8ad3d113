"""HTTP fetching with retry for source adapters."""

from __future__ import annotations

import logging
import random
import time
from functools import wraps
from typing import Any, Callable, Dict, Optional, Tuple, Type

import requests

logger = logging.getLogger(__name__)

DEFAULT_HEADERS = {
    "User-Agent": "Mozilla/5.0 (compatible; feedrelay/1.0)",
    "Accept-Language": "zh-TW,zh;q=0.9,en;q=0.8",
}


class FetchError(Exception):
    """A source could not be fetched or its response could not be parsed."""
    pass


class _RetryableStatus(Exception):
    def __init__(self, status_code: int):
        super().__init__(f"HTTP {status_code}")
        self.status_code = status_code


def retry_with_backoff(
    max_retries: int = 3,
    base_delay: float = 1.0,
    max_delay: float = 10.0,
    retry_on: Tuple[Type[BaseException], ...] = (Exception,),
    sleep: Callable[[float], None] = time.sleep,
):
    """Decorator for retry logic with exponential backoff"""
    def decorator(func):
        @wraps(func)
        def wrapper(*args, **kwargs):
            for attempt in range(max_retries):
                try:
                    return func(*args, **kwargs)
                except retry_on as e:
                    if attempt == max_retries - 1:
                        logger.error(f"{func.__name__} failed after {max_retries} attempts: {e}")
                        raise

                    delay = min(base_delay * (2 ** attempt) + random.uniform(0, 1), max_delay)
                    logger.warning(f"{func.__name__} attempt {attempt + 1} failed: {e}. Retrying in {delay:.1f}s")
                    sleep(delay)

        return wrapper
    return decorator


def get_with_retry(
    session: requests.Session,
    url: str,
    *,
    params: Optional[Dict[str, Any]] = None,
    headers: Optional[Dict[str, str]] = None,
    timeout: int = 30,
    max_retries: int = 3,
    sleep: Callable[[float], None] = time.sleep,
) -> requests.Response:
    """GET ``url``; retry network errors and 5xx, fail fast on 4xx.

    Any final failure is raised as ``FetchError``.
    """
    @retry_with_backoff(
        max_retries=max_retries,
        retry_on=(requests.exceptions.ConnectionError, requests.exceptions.Timeout, _RetryableStatus),
        sleep=sleep,
    )
    def _get() -> requests.Response:
        resp = session.get(url, params=params, headers=headers or DEFAULT_HEADERS, timeout=timeout)
        if resp.status_code >= 500:
            raise _RetryableStatus(resp.status_code)
        return resp

    try:
        resp = _get()
    except (requests.exceptions.RequestException, _RetryableStatus) as e:
        raise FetchError(f"GET {url} failed: {e}") from e
    if resp.status_code >= 400:
        raise FetchError(f"GET {url} failed: HTTP {resp.status_code}")
    return resp
