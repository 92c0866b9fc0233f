# utils/formatting.py
"""Display helpers. Core values stay unrounded; only these functions round."""
from typing import Optional


def format_currency(value: float) -> str:
    """USD with 4-6 decimals below $1, 2 decimals otherwise."""
    sign = "-" if value < 0 else ""
    v = abs(value)
    if v < 1:
        text = f"{v:,.6f}"
        # trim to at least 4 fraction digits
        whole, frac = text.split(".")
        frac = frac.rstrip("0").ljust(4, "0")
        text = f"{whole}.{frac}"
    else:
        text = f"{v:,.2f}"
    return f"{sign}${text}"


def format_market_cap(value: Optional[float]) -> str:
    if value is None:
        return "–"
    if value >= 1e12:
        return f"${value / 1e12:.2f}T"
    if value >= 1e9:
        return f"${value / 1e9:.2f}B"
    if value >= 1e6:
        return f"${value / 1e6:.2f}M"
    return format_currency(value)


def format_percent(value: Optional[float], signed: bool = False) -> str:
    if value is None:
        return "–"
    return f"{value:+.2f}%" if signed else f"{value:.2f}%"


def format_quantity(value: float) -> str:
    return f"{value:.6f}"


def pl_style(value: float) -> str:
    """Rich style for a profit/loss number."""
    return "green" if value >= 0 else "red"
