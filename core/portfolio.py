# core/portfolio.py
from __future__ import annotations
from dataclasses import dataclass
from typing import Dict, Iterable, List

from core.transactions import Transaction

HOLDING_SORT_KEYS = ("value", "profit", "profit_pct", "quantity", "name")


@dataclass(frozen=True)
class Holding:
    asset_id: str
    asset_symbol: str
    asset_name: str
    asset_image: str
    total_quantity: float
    total_investment: float
    current_unit_price: float
    average_purchase_price: float
    current_value: float
    profit: float
    profit_percent: float
    transaction_count: int


@dataclass(frozen=True)
class PortfolioSummary:
    total_investment: float = 0.0
    total_current_value: float = 0.0
    total_profit: float = 0.0
    total_profit_percent: float = 0.0


def _pct(profit: float, investment: float) -> float:
    return profit / investment * 100.0 if investment > 0 else 0.0


def _created_order(t: Transaction):
    # ids are millisecond counters; shorter string means smaller number
    return (len(t.id), t.id)


class _Acc:
    __slots__ = ("first", "latest", "quantity", "investment", "count")

    def __init__(self, t: Transaction):
        self.first = t
        self.latest = t
        self.quantity = 0.0
        self.investment = 0.0
        self.count = 0


def compute_holdings(transactions: Iterable[Transaction]) -> List[Holding]:
    """
    Group transactions by asset id and value each group at the latest
    known price. Order follows the first appearance of each asset id.
    """
    groups: Dict[str, _Acc] = {}
    for t in transactions:
        acc = groups.get(t.asset_id)
        if acc is None:
            acc = groups[t.asset_id] = _Acc(t)
        acc.quantity += t.quantity
        acc.investment += t.quantity * t.purchase_unit_price
        acc.count += 1
        if _created_order(t) > _created_order(acc.latest):
            acc.latest = t

    out = []
    for asset_id, acc in groups.items():
        price = acc.latest.price_at_record_time
        value = price * acc.quantity
        profit = value - acc.investment
        out.append(Holding(
            asset_id=asset_id,
            asset_symbol=acc.first.asset_symbol,
            asset_name=acc.first.asset_name,
            asset_image=acc.first.asset_image,
            total_quantity=acc.quantity,
            total_investment=acc.investment,
            current_unit_price=price,
            average_purchase_price=acc.investment / acc.quantity if acc.quantity > 0 else 0.0,
            current_value=value,
            profit=profit,
            profit_percent=_pct(profit, acc.investment),
            transaction_count=acc.count,
        ))
    return out


def compute_summary(transactions: Iterable[Transaction]) -> PortfolioSummary:
    """Totals over every transaction, independent of how holdings are grouped."""
    investment = 0.0
    current = 0.0
    for t in transactions:
        investment += t.purchase_unit_price * t.quantity
        current += t.price_at_record_time * t.quantity
    profit = current - investment
    return PortfolioSummary(
        total_investment=investment,
        total_current_value=current,
        total_profit=profit,
        total_profit_percent=_pct(profit, investment),
    )


def sort_holdings(holdings: Iterable[Holding], key: str = "value", descending: bool = True) -> List[Holding]:
    getters = {
        "value": lambda h: h.current_value,
        "profit": lambda h: h.profit,
        "profit_pct": lambda h: h.profit_percent,
        "quantity": lambda h: h.total_quantity,
        "name": lambda h: h.asset_name.lower(),
    }
    if key not in getters:
        raise ValueError(f"Unknown sort key '{key}'. Allowed: {', '.join(HOLDING_SORT_KEYS)}")
    return sorted(holdings, key=getters[key], reverse=descending)
