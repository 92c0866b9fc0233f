# services/coingecko_client.py
from __future__ import annotations
import time, random
from typing import List, Optional
import requests
from email.utils import parsedate_to_datetime
from datetime import datetime, timezone

from core.errors import FeedError
from core.market import MarketAsset
from utils.logging import get_logger

log = get_logger("coingecko")

MARKETS_URL = "https://api.coingecko.com/api/v3/coins/markets"
VS_CURRENCY = "usd"
DEFAULT_PER_PAGE = 50

# Resilience tuning
MAX_RETRIES = 5                 # total attempts (first try + 4 retries)
BASE_BACKOFF = 0.6              # seconds (exponential)
MAX_BACKOFF = 8.0               # cap seconds
JITTER_RANGE = (0.0, 0.35)      # random jitter added to backoff


def _parse_retry_after(header_val: Optional[str]) -> float:
    """
    Returns seconds to wait per RFC7231 Retry-After:
      - if number: seconds
      - if HTTP-date: difference from now
      - else: 0
    """
    if not header_val:
        return 0.0
    header_val = header_val.strip()
    if header_val.isdigit():
        return float(int(header_val))
    try:
        dt = parsedate_to_datetime(header_val)
    except (TypeError, ValueError):
        return 0.0
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    delta = (dt - datetime.now(timezone.utc)).total_seconds()
    return max(0.0, delta)


def _sleep_backoff(attempt: int, retry_after_hdr: Optional[str]) -> None:
    # Prefer server's Retry-After if present and non-zero
    ra = _parse_retry_after(retry_after_hdr)
    if ra > 0:
        time.sleep(min(ra, MAX_BACKOFF * 4))
        return
    delay = min(MAX_BACKOFF, BASE_BACKOFF * (2 ** attempt))
    delay += random.uniform(*JITTER_RANGE)
    time.sleep(delay)


def parse_markets(data) -> List[MarketAsset]:
    """Turn the coins/markets JSON array into assets, skipping malformed rows."""
    if not isinstance(data, list):
        raise FeedError(f"Unexpected markets payload type {type(data).__name__}")
    out: List[MarketAsset] = []
    for i, row in enumerate(data):
        try:
            out.append(MarketAsset.from_feed_row(row))
        except (KeyError, TypeError, ValueError) as e:
            log.warning("Skipping malformed market row #%d: %s", i, e)
    return out


def get_markets(per_page: int = DEFAULT_PER_PAGE, page: int = 1,
                session: Optional[requests.Session] = None,
                timeout: tuple[float, float] = (3.0, 10.0)) -> List[MarketAsset]:
    """
    Top-N assets by market cap (USD) with retry on 429/5xx/timeouts.
    Raises FeedError once retries are exhausted or on a non-retryable status.
    """
    params = {
        "vs_currency": VS_CURRENCY,
        "order": "market_cap_desc",
        "per_page": per_page,
        "page": page,
        "sparkline": "false",
        "price_change_percentage": "24h",
    }
    sess = session or requests.Session()

    last_err: Optional[str] = None
    for attempt in range(MAX_RETRIES):
        t0 = time.perf_counter()
        try:
            r = sess.get(MARKETS_URL, params=params, timeout=timeout)
        except requests.Timeout as e:
            last_err = type(e).__name__
            log.warning("Timeout on attempt %d. Retrying...", attempt + 1)
            _sleep_backoff(attempt, None)
            continue
        except requests.RequestException as e:
            last_err = type(e).__name__
            log.warning("RequestException on attempt %d: %s. Retrying...", attempt + 1, last_err)
            _sleep_backoff(attempt, None)
            continue

        elapsed_ms = (time.perf_counter() - t0) * 1000.0

        # Rate limited
        if r.status_code == 429:
            ra = r.headers.get("Retry-After")
            last_err = "HTTP 429"
            log.warning("429 Too Many Requests (%.1f ms). Retry-After=%s", elapsed_ms, ra)
            _sleep_backoff(attempt, ra)
            continue

        # Transient 5xx
        if 500 <= r.status_code < 600:
            last_err = f"HTTP {r.status_code}"
            log.warning("%s on attempt %d (%.1f ms). Retrying...",
                        r.status_code, attempt + 1, elapsed_ms)
            _sleep_backoff(attempt, r.headers.get("Retry-After"))
            continue

        # Other errors are not worth retrying
        try:
            r.raise_for_status()
            data = r.json()
        except (requests.RequestException, ValueError) as e:
            log.error("Markets request failed (%.1f ms): %s", elapsed_ms, e)
            raise FeedError(f"Markets request failed: {e}") from e

        assets = parse_markets(data)
        log.info("Fetched %d markets in %.1f ms (status %d).",
                 len(assets), elapsed_ms, r.status_code)
        return assets

    # Exhausted retries
    msg = f"Markets fetch failed after {MAX_RETRIES} attempts."
    if last_err:
        msg += f" Last error: {last_err}"
    log.error(msg)
    raise FeedError(msg)
