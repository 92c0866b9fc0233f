# cli.py
import argparse
import json

from rich.console import Console
from rich.table import Table

from core.errors import NotFoundError, ValidationError
from core.market import SORT_KEYS, resolve_asset, search_assets, sort_assets
from core.portfolio import HOLDING_SORT_KEYS, compute_holdings, compute_summary, sort_holdings
from core.transactions import TransactionStore, transactions_for
from services.price_feed import PriceFeed
from storage.json_store import (
    JsonFileKeyValueStore, read_config, write_config, ensure_config_exists, validate_config_value
)
from utils.formatting import format_currency, format_market_cap, format_percent, format_quantity, pl_style
from utils.logging import get_logger
from utils.timeutils import today_iso

log = get_logger("cli")

SAVE_FAILED = "Could not save transactions (see log)."


def _open_store() -> TransactionStore:
    store = TransactionStore(JsonFileKeyValueStore())
    store.load()
    return store


def _open_feed(cfg: dict, offline: bool = False) -> PriceFeed:
    feed = PriceFeed(per_page=cfg["per_page"], timeout=cfg["request_timeout_sec"])
    if offline:
        return feed
    if not feed.refresh():
        note = "Using cached prices" if feed.from_cache else "No cached prices available"
        print(f"Price feed unavailable ({feed.last_error}). {note}.")
    return feed


def _sync_prices(store: TransactionStore, feed: PriceFeed) -> int:
    snapshot = feed.snapshot
    if not snapshot:
        return 0
    return store.refresh_prices(snapshot)


def _print_summary(store: TransactionStore):
    s = compute_summary(store.transactions)
    t = Table(title="Portfolio")
    t.add_column("Total Investment", justify="right")
    t.add_column("Current Value", justify="right")
    t.add_column("Total Profit/Loss", justify="right")
    t.add_column("Profit/Loss %", justify="right")
    style = pl_style(s.total_profit)
    t.add_row(
        format_currency(s.total_investment),
        format_currency(s.total_current_value),
        f"[{style}]{format_currency(s.total_profit)}[/{style}]",
        f"[{style}]{format_percent(s.total_profit_percent)}[/{style}]",
    )
    Console().print(t)


# -------- Commands --------

def cmd_markets(args: argparse.Namespace):
    cfg = read_config()
    feed = _open_feed(cfg, offline=args.offline)
    assets = feed.assets
    if not assets:
        print("No market data. Check your connection and try `crypto markets` again.")
        return 1

    rows = sort_assets(search_assets(assets, args.query), key=args.sort, descending=args.desc)
    if args.limit:
        rows = rows[:args.limit]

    title = "Cryptocurrency Prices"
    if feed.fetched_at:
        title += f"  (as of {feed.fetched_at}{', cached' if feed.from_cache else ''})"
    t = Table(title=title)
    t.add_column("#", justify="right")
    t.add_column("Name", justify="left")
    t.add_column("Symbol", justify="left")
    t.add_column("Price", justify="right")
    t.add_column("24h %", justify="right")
    t.add_column("Market Cap", justify="right")
    for a in rows:
        change = a.price_change_percentage_24h
        change_txt = format_percent(change, signed=True)
        if change is not None:
            style = pl_style(change)
            change_txt = f"[{style}]{change_txt}[/{style}]"
        t.add_row(
            str(a.market_cap_rank or ""),
            a.name,
            a.symbol.upper(),
            format_currency(a.current_price),
            change_txt,
            format_market_cap(a.market_cap),
        )
    Console().print(t)
    if not rows:
        print(f"No cryptocurrencies match '{args.query}'.")
    return 0


def cmd_add(args: argparse.Namespace):
    cfg = read_config()
    store = _open_store()
    feed = _open_feed(cfg, offline=args.offline)

    asset = resolve_asset(feed.snapshot, args.asset)
    if asset is None:
        print(f"Invalid cryptocurrency '{args.asset}'. Run `crypto markets` to see available assets.")
        return 1

    try:
        tx = store.add_from_market(asset, args.qty, args.price, args.date or today_iso())
    except ValidationError as e:
        print(f"Missing or invalid information: {e}")
        return 1

    _sync_prices(store, feed)
    if not store.persisted:
        print(SAVE_FAILED)
        return 1
    print(f"Added {format_quantity(tx.quantity)} {tx.asset_symbol.upper()} to your portfolio (id {tx.id}).")
    _print_summary(store)
    return 0


def cmd_rm(args: argparse.Namespace):
    store = _open_store()
    try:
        tx = store.remove(args.id)
    except NotFoundError as e:
        print(str(e))
        return 1
    if not store.persisted:
        print(SAVE_FAILED)
        return 1
    print(f"Removed transaction {tx.id} ({tx.asset_symbol.upper()}).")
    return 0


def cmd_txs(args: argparse.Namespace):
    cfg = read_config()
    store = _open_store()
    _sync_prices(store, _open_feed(cfg, offline=args.offline))

    txs = store.transactions
    if args.asset:
        txs = transactions_for(txs, args.asset.lower())
    if not txs:
        print("No transactions yet. Add one with `crypto add <symbol> <qty> <price>`.")
        return 0

    t = Table(title="Transactions")
    t.add_column("ID", justify="left")
    t.add_column("Date", justify="left")
    t.add_column("Asset", justify="left")
    t.add_column("Quantity", justify="right")
    t.add_column("Purchase Price", justify="right")
    t.add_column("Total Cost", justify="right")
    t.add_column("Current Value", justify="right")
    t.add_column("Profit/Loss", justify="right")
    for tx in txs:
        style = pl_style(tx.profit)
        t.add_row(
            tx.id,
            tx.purchase_date.isoformat(),
            f"{tx.asset_name} ({tx.asset_symbol.upper()})",
            format_quantity(tx.quantity),
            format_currency(tx.purchase_unit_price),
            format_currency(tx.cost),
            format_currency(tx.current_value),
            f"[{style}]{format_currency(tx.profit)} ({format_percent(tx.profit_percent)})[/{style}]",
        )
    Console().print(t)
    return 0


def cmd_holdings(args: argparse.Namespace):
    cfg = read_config()
    store = _open_store()
    _sync_prices(store, _open_feed(cfg, offline=args.offline))

    _print_summary(store)
    holdings = sort_holdings(compute_holdings(store.transactions), key=args.sort, descending=not args.asc)
    if not holdings:
        print("No holdings yet. Add a transaction with `crypto add`.")
        return 0

    t = Table(title="Holdings")
    t.add_column("Asset", justify="left")
    t.add_column("Quantity", justify="right")
    t.add_column("Avg. Purchase Price", justify="right")
    t.add_column("Current Price", justify="right")
    t.add_column("Current Value", justify="right")
    t.add_column("Profit/Loss", justify="right")
    t.add_column("P/L %", justify="right")
    for h in holdings:
        style = pl_style(h.profit)
        t.add_row(
            f"{h.asset_name} ({h.asset_symbol.upper()})",
            format_quantity(h.total_quantity),
            format_currency(h.average_purchase_price),
            format_currency(h.current_unit_price),
            format_currency(h.current_value),
            f"[{style}]{format_currency(h.profit)}[/{style}]",
            f"[{style}]{format_percent(h.profit_percent)}[/{style}]",
        )
    Console().print(t)
    return 0


def cmd_refresh(args: argparse.Namespace):
    cfg = read_config()
    store = _open_store()
    feed = _open_feed(cfg)
    if feed.last_error is not None:
        return 1
    n = _sync_prices(store, feed)
    if not store.persisted:
        print(SAVE_FAILED)
        return 1
    print(f"Fetched {len(feed.assets)} assets; updated prices on {n} transaction(s).")
    _print_summary(store)
    return 0


def _parse_kv_list(pairs: list[str]) -> dict:
    out = {}
    for item in pairs or []:
        if "=" not in item:
            raise ValueError(f"Expected key=value, got '{item}'")
        k, v = item.split("=", 1)
        out[k.strip()] = v.strip()
    return out


def cmd_config(args: argparse.Namespace):
    # Always ensure there is a config file to work with
    ensure_config_exists()
    cfg = read_config()

    if args.path:
        from storage.json_store import CONFIG_PATH
        print(CONFIG_PATH)
        return 0

    if args.set:
        try:
            for k, v in _parse_kv_list(args.set).items():
                cfg[k] = validate_config_value(k, v)
        except ValueError as e:
            print(str(e))
            return 1
        write_config(cfg)
        print("Config updated.")

    if args.show or not args.set:
        print(json.dumps(read_config(), indent=2, ensure_ascii=False))
    return 0


# -------- Parser --------

def build_parser():
    p = argparse.ArgumentParser(prog="crypto", description="Crypto portfolio tracker")
    sub = p.add_subparsers(dest="cmd", required=True)

    p_mk = sub.add_parser("markets", help="Top cryptocurrencies by market cap")
    p_mk.add_argument("--query", "-q", help="Filter by name or symbol, e.g. 'bit'")
    p_mk.add_argument("--sort", choices=SORT_KEYS, default="rank", help="Sort column (default rank)")
    p_mk.add_argument("--desc", action="store_true", help="Sort descending")
    p_mk.add_argument("--limit", type=int, help="Show at most N rows")
    p_mk.add_argument("--offline", action="store_true", help="Use cached prices, no network")
    p_mk.set_defaults(func=cmd_markets)

    p_add = sub.add_parser("add", help="Record a purchase")
    p_add.add_argument("asset", help="Symbol or CoinGecko id, e.g. btc or bitcoin")
    p_add.add_argument("qty", help="Quantity bought")
    p_add.add_argument("price", help="Purchase price per unit (USD)")
    p_add.add_argument("--date", help="Purchase date YYYY-MM-DD (default today)")
    p_add.add_argument("--offline", action="store_true", help="Resolve the asset from cached prices")
    p_add.set_defaults(func=cmd_add)

    p_rm = sub.add_parser("rm", help="Delete a transaction by id")
    p_rm.add_argument("id", help="Transaction id (see `crypto txs`)")
    p_rm.set_defaults(func=cmd_rm)

    p_tx = sub.add_parser("txs", help="List transactions")
    p_tx.add_argument("--asset", help="Only this asset id, e.g. bitcoin")
    p_tx.add_argument("--offline", action="store_true", help="Use cached prices, no network")
    p_tx.set_defaults(func=cmd_txs)

    p_h = sub.add_parser("holdings", help="Portfolio summary and per-asset holdings")
    p_h.add_argument("--sort", choices=HOLDING_SORT_KEYS, default="value", help="Sort column (default value)")
    p_h.add_argument("--asc", action="store_true", help="Sort ascending")
    p_h.add_argument("--offline", action="store_true", help="Use cached prices, no network")
    p_h.set_defaults(func=cmd_holdings)

    p_ref = sub.add_parser("refresh", help="Fetch prices and update stored transactions")
    p_ref.set_defaults(func=cmd_refresh)

    p_cfg = sub.add_parser("config", help="Show or edit configuration")
    p_cfg.add_argument("--show", action="store_true", help="Show current config")
    p_cfg.add_argument("--set", nargs="*", help="Set key=value (per_page, request_timeout_sec). Ex: --set per_page=100")
    p_cfg.add_argument("--path", action="store_true", help="Print the config file path and exit")
    p_cfg.set_defaults(func=cmd_config)

    return p


def main(argv=None):
    parser = build_parser()
    args = parser.parse_args(argv)
    return args.func(args) or 0


if __name__ == "__main__":
    raise SystemExit(main())
