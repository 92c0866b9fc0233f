import threading
import time
from datetime import date

import pytest

from core.errors import InvalidValueError, MissingFieldError, NotFoundError, PersistenceError
from core.market import MarketAsset
from core.portfolio import compute_holdings
from core.transactions import STORAGE_KEY, TransactionStore
from storage.json_store import InMemoryKeyValueStore

BTC = MarketAsset(id="bitcoin", symbol="btc", name="Bitcoin", image="btc.png", current_price=30000.0)
ETH = MarketAsset(id="ethereum", symbol="eth", name="Ethereum", image="eth.png", current_price=2000.0)


class BrokenBackend:
    def get(self, key):
        raise PersistenceError("disk on fire")

    def set(self, key, value):
        raise PersistenceError("disk on fire")


def _store(initial=None):
    backend = InMemoryKeyValueStore(initial)
    return TransactionStore(backend), backend


def test_add_assigns_unique_ids_and_persists():
    store, backend = _store()
    t1 = store.add_from_market(BTC, 1, 20000, "2024-01-02")
    t2 = store.add_from_market(BTC, "0.5", "25000", date(2024, 2, 3))

    assert t1.id != t2.id
    assert int(t2.id) > int(t1.id)
    assert [t.id for t in store.transactions] == [t1.id, t2.id]
    assert t1.price_at_record_time == 30000.0
    assert t2.quantity == 0.5
    assert t2.purchase_date == date(2024, 2, 3)

    stored = backend.get(STORAGE_KEY)
    assert [r["id"] for r in stored] == [t1.id, t2.id]
    assert stored[0]["cryptoId"] == "bitcoin"
    assert stored[0]["purchaseDate"] == "2024-01-02"


@pytest.mark.parametrize("field,kwargs", [
    ("asset_id", dict(asset_id="", quantity=1, purchase_unit_price=1, purchase_date="2024-01-01")),
    ("quantity", dict(asset_id="bitcoin", quantity=None, purchase_unit_price=1, purchase_date="2024-01-01")),
    ("purchase_unit_price", dict(asset_id="bitcoin", quantity=1, purchase_unit_price="", purchase_date="2024-01-01")),
    ("purchase_date", dict(asset_id="bitcoin", quantity=1, purchase_unit_price=1, purchase_date=None)),
])
def test_add_missing_field(field, kwargs):
    store, backend = _store()
    with pytest.raises(MissingFieldError) as ei:
        store.add(**kwargs)
    assert ei.value.field == field
    assert len(store) == 0
    assert backend.get(STORAGE_KEY) is None


@pytest.mark.parametrize("qty,price,day", [
    (0, 10, "2024-01-01"),
    (-1, 10, "2024-01-01"),
    ("abc", 10, "2024-01-01"),
    (float("nan"), 10, "2024-01-01"),
    (1, -0.01, "2024-01-01"),
    (1, 10, "01/02/2024"),
])
def test_add_invalid_value(qty, price, day):
    store, _ = _store()
    with pytest.raises(InvalidValueError):
        store.add("bitcoin", qty, price, day)
    assert store.transactions == ()


def test_zero_purchase_price_is_allowed():
    store, _ = _store()
    tx = store.add("airdrop", 5, 0, "2024-01-01")
    assert tx.purchase_unit_price == 0.0


def test_remove_only_transaction_drops_holding():
    store, backend = _store()
    btc = store.add_from_market(BTC, 1, 20000, "2024-01-01")
    store.add_from_market(ETH, 2, 1500, "2024-01-01")

    store.remove(btc.id)

    assert [h.asset_id for h in compute_holdings(store.transactions)] == ["ethereum"]
    assert [r["cryptoId"] for r in backend.get(STORAGE_KEY)] == ["ethereum"]


def test_remove_unknown_id_leaves_others():
    store, _ = _store()
    store.add_from_market(BTC, 1, 20000, "2024-01-01")
    before = store.transactions
    with pytest.raises(NotFoundError):
        store.remove("nope")
    assert store.transactions == before


def test_refresh_prices_keeps_unknown_assets():
    store, backend = _store()
    store.add_from_market(BTC, 1, 20000, "2024-01-01")
    store.add_from_market(ETH, 1, 1000, "2024-01-01")
    eth_before = compute_holdings(store.transactions)[1]

    new_btc = MarketAsset(id="bitcoin", symbol="btc", name="Bitcoin", image="", current_price=41000.0)
    updated = store.refresh_prices({"bitcoin": new_btc})

    assert updated == 1
    btc_h, eth_h = compute_holdings(store.transactions)
    assert btc_h.current_unit_price == 41000.0
    assert eth_h == eth_before
    assert backend.get(STORAGE_KEY)[0]["currentPrice"] == 41000.0


def test_refresh_ignores_zero_quote():
    store, _ = _store()
    store.add_from_market(BTC, 1, 20000, "2024-01-01")
    zero = MarketAsset(id="bitcoin", symbol="btc", name="Bitcoin", image="", current_price=0.0)
    assert store.refresh_prices({"bitcoin": zero}) == 0
    assert store.transactions[0].price_at_record_time == 30000.0


def test_load_round_trip_and_ids_not_reused():
    store, backend = _store()
    a = store.add_from_market(BTC, 1, 20000, "2024-01-01")
    b = store.add_from_market(ETH, 3, 1000, "2024-01-05")

    reloaded = TransactionStore(backend)
    assert reloaded.load() == 2
    assert reloaded.transactions == store.transactions

    c = reloaded.add_from_market(BTC, 1, 1, "2024-01-06")
    assert c.id not in {a.id, b.id}
    assert int(c.id) > int(b.id)


def test_load_drops_malformed_records():
    good = {"id": "1", "cryptoId": "bitcoin", "cryptoName": "Bitcoin", "cryptoSymbol": "btc",
            "cryptoImage": "", "quantity": 1, "purchasePrice": 100, "purchaseDate": "2024-01-01",
            "currentPrice": 150}
    bad_qty = dict(good, id="2", quantity=-3)
    no_asset = dict(good, id="3")
    del no_asset["cryptoId"]
    dup = dict(good)
    store, _ = _store({STORAGE_KEY: [good, bad_qty, no_asset, "junk", dup]})

    assert store.load() == 1
    assert store.transactions[0].id == "1"
    assert store.transactions[0].price_at_record_time == 150


def test_load_non_list_is_empty():
    store, _ = _store({STORAGE_KEY: {"not": "a list"}})
    assert store.load() == 0
    assert store.transactions == ()


def test_broken_backend_degrades_to_memory():
    store = TransactionStore(BrokenBackend())
    assert store.load() == 0
    tx = store.add_from_market(BTC, 1, 20000, "2024-01-01")
    assert store.transactions == (tx,)
    assert store.save() is False


class SlowFirstWriteBackend(InMemoryKeyValueStore):
    """First write stalls so a second writer can try to overtake it."""

    def __init__(self):
        super().__init__()
        self.entered = threading.Event()
        self.writes = 0

    def set(self, key, value):
        self.writes += 1
        if self.writes == 1:
            self.entered.set()
            time.sleep(0.3)
        super().set(key, value)


def test_concurrent_adds_persist_latest_list():
    backend = SlowFirstWriteBackend()
    store = TransactionStore(backend)

    worker = threading.Thread(target=store.add_from_market, args=(BTC, 1, 20000, "2024-01-01"))
    worker.start()
    assert backend.entered.wait(2.0)
    store.add_from_market(ETH, 2, 1500, "2024-01-02")
    worker.join(5.0)

    assert len(store) == 2
    assert len(backend.get(STORAGE_KEY)) == len(store)
    assert [r["cryptoId"] for r in backend.get(STORAGE_KEY)] == ["bitcoin", "ethereum"]


def test_failed_save_is_reported_on_persisted():
    store = TransactionStore(BrokenBackend())
    store.add_from_market(BTC, 1, 20000, "2024-01-01")
    assert store.persisted is False

    ok = TransactionStore(InMemoryKeyValueStore())
    ok.add_from_market(BTC, 1, 20000, "2024-01-01")
    assert ok.persisted is True


@pytest.mark.parametrize("stale", [-5, "n/a", float("inf")])
def test_bad_stored_current_price_falls_back_to_purchase_price(stale):
    rec = {"id": "7", "cryptoId": "bitcoin", "cryptoName": "Bitcoin", "cryptoSymbol": "btc",
           "cryptoImage": "", "quantity": 2, "purchasePrice": 100, "purchaseDate": "2024-01-01",
           "currentPrice": stale}
    store, _ = _store({STORAGE_KEY: [rec]})

    assert store.load() == 1
    assert store.transactions[0].price_at_record_time == 100.0
