# core/market.py
from __future__ import annotations
import math
from dataclasses import dataclass, asdict
from typing import Any, Dict, Iterable, List, Mapping, Optional

SORT_KEYS = ("rank", "name", "price", "change", "market_cap")


@dataclass(frozen=True)
class MarketAsset:
    id: str
    symbol: str
    name: str
    image: str
    current_price: float
    market_cap: Optional[float] = None
    market_cap_rank: Optional[int] = None
    price_change_24h: Optional[float] = None
    price_change_percentage_24h: Optional[float] = None

    @classmethod
    def from_feed_row(cls, row: Mapping[str, Any]) -> "MarketAsset":
        """
        Build from one CoinGecko coins/markets row.
        Raises ValueError/TypeError/KeyError when id or current_price is unusable.
        """
        asset_id = row["id"]
        if not isinstance(asset_id, str) or not asset_id:
            raise ValueError("asset id must be a non-empty string")
        price = float(row["current_price"])
        if not math.isfinite(price) or price < 0:
            raise ValueError(f"bad current_price {price!r}")
        return cls(
            id=asset_id,
            symbol=str(row.get("symbol") or ""),
            name=str(row.get("name") or asset_id),
            image=str(row.get("image") or ""),
            current_price=price,
            market_cap=_opt_float(row.get("market_cap")),
            market_cap_rank=_opt_int(row.get("market_cap_rank")),
            price_change_24h=_opt_float(row.get("price_change_24h")),
            price_change_percentage_24h=_opt_float(row.get("price_change_percentage_24h")),
        )

    def to_feed_row(self) -> Dict[str, Any]:
        return asdict(self)


def _opt_float(v) -> Optional[float]:
    if v is None:
        return None
    try:
        f = float(v)
    except (TypeError, ValueError):
        return None
    return f if math.isfinite(f) else None


def _opt_int(v) -> Optional[int]:
    f = _opt_float(v)
    return None if f is None else int(f)


def build_snapshot(assets: Iterable[MarketAsset]) -> Dict[str, MarketAsset]:
    """id -> asset, keeping feed (rank) order. Later duplicates win."""
    return {a.id: a for a in assets}


def search_assets(assets: Iterable[MarketAsset], query: str | None) -> List[MarketAsset]:
    q = (query or "").strip().lower()
    if not q:
        return list(assets)
    return [a for a in assets if q in a.name.lower() or q in a.symbol.lower()]


def sort_assets(assets: Iterable[MarketAsset], key: str = "rank", descending: bool = False) -> List[MarketAsset]:
    if key not in SORT_KEYS:
        raise ValueError(f"Unknown sort key '{key}'. Allowed: {', '.join(SORT_KEYS)}")

    getters = {
        "rank": lambda a: a.market_cap_rank,
        "name": lambda a: a.name.lower(),
        "price": lambda a: a.current_price,
        "change": lambda a: a.price_change_percentage_24h,
        "market_cap": lambda a: a.market_cap,
    }
    get = getters[key]
    assets = list(assets)
    present = [a for a in assets if get(a) is not None]
    missing = [a for a in assets if get(a) is None]
    # rows without the field always go last
    return sorted(present, key=get, reverse=descending) + missing


def resolve_asset(snapshot: Mapping[str, MarketAsset], symbol_or_id: str) -> Optional[MarketAsset]:
    """Exact id match first, then the best-ranked asset with that symbol."""
    key = symbol_or_id.strip().lower()
    if key in snapshot:
        return snapshot[key]
    for asset in snapshot.values():
        if asset.symbol.lower() == key:
            return asset
    return None
