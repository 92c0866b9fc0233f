# services/price_feed.py
from __future__ import annotations
import threading
from typing import Callable, Dict, List, Optional

from core.errors import FeedError
from core.market import MarketAsset, build_snapshot
from services import coingecko_client
from storage import json_store
from utils.logging import get_logger
from utils.timeutils import utc_now_iso

log = get_logger("price_feed")


class PriceFeed:
    """
    In-memory market snapshot. Each successful refresh replaces it (last
    write wins); a failed refresh keeps the previous data and records
    the error for the caller to show.
    """

    def __init__(self, fetch: Optional[Callable[[], List[MarketAsset]]] = None,
                 per_page: int = coingecko_client.DEFAULT_PER_PAGE,
                 timeout: float = 10.0, use_cache: bool = True):
        self._fetch = fetch or (lambda: coingecko_client.get_markets(per_page=per_page, timeout=(3.0, timeout)))
        self._use_cache = use_cache
        self._lock = threading.Lock()
        self._assets: List[MarketAsset] = []
        self._snapshot: Dict[str, MarketAsset] = {}
        self.fetched_at: Optional[str] = None
        self.from_cache = False
        self.last_error: Optional[FeedError] = None
        if use_cache:
            self._seed_from_cache()

    @property
    def assets(self) -> List[MarketAsset]:
        return list(self._assets)

    @property
    def snapshot(self) -> Dict[str, MarketAsset]:
        return dict(self._snapshot)

    def _replace(self, assets: List[MarketAsset], ts: Optional[str], from_cache: bool):
        with self._lock:
            self._assets = list(assets)
            self._snapshot = build_snapshot(assets)
            self.fetched_at = ts
            self.from_cache = from_cache

    def _seed_from_cache(self):
        cache = json_store.read_cache()
        assets = []
        for row in cache["assets"]:
            try:
                assets.append(MarketAsset.from_feed_row(row))
            except (KeyError, TypeError, ValueError):
                continue
        if assets:
            self._replace(assets, cache.get("last_fetch_ts"), from_cache=True)
            log.info("Seeded %d assets from cache (%s).", len(assets), self.fetched_at)

    def refresh(self) -> bool:
        """Fetch a new snapshot. Returns False (keeping prior data) on FeedError."""
        try:
            assets = self._fetch()
        except FeedError as e:
            self.last_error = e
            log.warning("Price fetch failed (%s). Keeping last known prices.", e)
            return False

        ts = utc_now_iso()
        self._replace(assets, ts, from_cache=False)
        self.last_error = None
        if self._use_cache:
            try:
                json_store.write_cache([a.to_feed_row() for a in assets], ts)
            except OSError as e:
                log.warning("Could not write price cache: %s", e)
        return True
