# core/transactions.py
from __future__ import annotations
import math
import threading
from dataclasses import dataclass, replace
from datetime import date
from typing import Any, Dict, Iterable, List, Mapping, Optional, Protocol, Tuple

from core.errors import InvalidValueError, MissingFieldError, NotFoundError, PersistenceError, ValidationError
from core.market import MarketAsset
from utils.logging import get_logger
from utils.timeutils import now_ms

log = get_logger("transactions")

STORAGE_KEY = "cryptoTransactions"


@dataclass(frozen=True)
class Transaction:
    id: str
    asset_id: str
    asset_symbol: str
    asset_name: str
    asset_image: str
    quantity: float
    purchase_unit_price: float
    purchase_date: date
    price_at_record_time: float

    @property
    def cost(self) -> float:
        return self.quantity * self.purchase_unit_price

    @property
    def current_value(self) -> float:
        return self.quantity * self.price_at_record_time

    @property
    def profit(self) -> float:
        return self.current_value - self.cost

    @property
    def profit_percent(self) -> float:
        cost = self.cost
        return self.profit / cost * 100.0 if cost > 0 else 0.0

    def to_record(self) -> Dict[str, Any]:
        """Stored layout, same keys the web app kept in localStorage."""
        return {
            "id": self.id,
            "cryptoId": self.asset_id,
            "cryptoName": self.asset_name,
            "cryptoSymbol": self.asset_symbol,
            "cryptoImage": self.asset_image,
            "quantity": self.quantity,
            "purchasePrice": self.purchase_unit_price,
            "purchaseDate": self.purchase_date.isoformat(),
            "currentPrice": self.price_at_record_time,
        }

    @classmethod
    def from_record(cls, rec: Mapping[str, Any]) -> "Transaction":
        """
        Parse then validate one stored record.
        Raises ValidationError naming the first bad field.
        """
        if not isinstance(rec, Mapping):
            raise InvalidValueError("record", rec, "expected an object")
        tx_id = rec.get("id")
        if tx_id is None or str(tx_id).strip() == "":
            raise MissingFieldError("id")
        quantity, price, purchase_date = validate_purchase(
            rec.get("cryptoId"), rec.get("quantity"), rec.get("purchasePrice"), rec.get("purchaseDate")
        )
        current = rec.get("currentPrice")
        if current is None:
            current = price
        else:
            try:
                current = _parse_price("currentPrice", current)
            except InvalidValueError as e:
                # derived snapshot field; the purchase itself is still good
                log.warning("Record %s: %s Using purchase price.", tx_id, e)
                current = price
        return cls(
            id=str(tx_id),
            asset_id=str(rec["cryptoId"]),
            asset_symbol=str(rec.get("cryptoSymbol") or ""),
            asset_name=str(rec.get("cryptoName") or rec["cryptoId"]),
            asset_image=str(rec.get("cryptoImage") or ""),
            quantity=quantity,
            purchase_unit_price=price,
            purchase_date=purchase_date,
            price_at_record_time=current,
        )


def _is_blank(v) -> bool:
    return v is None or (isinstance(v, str) and v.strip() == "")


def _parse_number(field: str, v) -> float:
    if isinstance(v, bool):
        raise InvalidValueError(field, v, "not a number")
    try:
        f = float(v)
    except (TypeError, ValueError):
        raise InvalidValueError(field, v, "not a number")
    if not math.isfinite(f):
        raise InvalidValueError(field, v, "not finite")
    return f


def _parse_price(field: str, v) -> float:
    f = _parse_number(field, v)
    if f < 0:
        raise InvalidValueError(field, v, "must be >= 0")
    return f


def _parse_date(v) -> date:
    if isinstance(v, date):
        return v
    try:
        return date.fromisoformat(str(v).strip())
    except ValueError:
        raise InvalidValueError("purchase_date", v, "expected YYYY-MM-DD")


def validate_purchase(asset_id, quantity, purchase_unit_price, purchase_date) -> Tuple[float, float, date]:
    """Check the caller-supplied fields; returns (quantity, price, date) normalized."""
    for name, value in (
        ("asset_id", asset_id),
        ("quantity", quantity),
        ("purchase_unit_price", purchase_unit_price),
        ("purchase_date", purchase_date),
    ):
        if _is_blank(value):
            raise MissingFieldError(name)

    qty = _parse_number("quantity", quantity)
    if qty <= 0:
        raise InvalidValueError("quantity", quantity, "must be > 0")
    price = _parse_price("purchase_unit_price", purchase_unit_price)
    return qty, price, _parse_date(purchase_date)


class KeyValueBackend(Protocol):
    def get(self, key: str) -> Any: ...

    def set(self, key: str, value: Any) -> None: ...


class TransactionStore:
    """
    Ordered list of purchases persisted under STORAGE_KEY.
    Writers are serialized by a lock; readers get an immutable tuple.
    """

    def __init__(self, backend: KeyValueBackend, key: str = STORAGE_KEY):
        self._backend = backend
        self._key = key
        self._lock = threading.RLock()
        self._items: Tuple[Transaction, ...] = ()
        self._last_id = 0
        self.persisted = True

    @property
    def transactions(self) -> Tuple[Transaction, ...]:
        return self._items

    def __len__(self) -> int:
        return len(self._items)

    # -------- persistence --------

    def load(self) -> int:
        """Replace in-memory state from the backend. Never raises; returns count loaded."""
        try:
            raw = self._backend.get(self._key)
        except PersistenceError as e:
            log.warning("Could not read stored transactions (%s). Starting empty.", e)
            raw = None

        if raw is not None and not isinstance(raw, list):
            log.warning("Stored transactions are not a list (%s). Starting empty.", type(raw).__name__)
            raw = None

        loaded: List[Transaction] = []
        seen = set()
        for i, rec in enumerate(raw or []):
            try:
                tx = Transaction.from_record(rec)
            except ValidationError as e:
                log.warning("Dropping stored record #%d: %s", i, e)
                continue
            if tx.id in seen:
                log.warning("Dropping stored record #%d: duplicate id %s", i, tx.id)
                continue
            seen.add(tx.id)
            loaded.append(tx)

        with self._lock:
            self._items = tuple(loaded)
            self._last_id = max((_id_number(t.id) for t in loaded), default=0)
        return len(loaded)

    def save(self) -> bool:
        """
        Write the full ordered list under the writer lock. Failures are
        logged and kept in `persisted`; in-memory state is kept.
        """
        with self._lock:
            payload = [t.to_record() for t in self._items]
            try:
                self._backend.set(self._key, payload)
            except PersistenceError as e:
                log.error("Could not persist %d transactions: %s", len(payload), e)
                self.persisted = False
                return False
            self.persisted = True
            return True

    # -------- mutations --------

    def _next_id(self) -> str:
        nid = max(now_ms(), self._last_id + 1)
        self._last_id = nid
        return str(nid)

    def add(self, asset_id, quantity, purchase_unit_price, purchase_date,
            asset_symbol: str = "", asset_name: str = "", asset_image: str = "",
            price_at_record_time: Optional[float] = None) -> Transaction:
        qty, price, pdate = validate_purchase(asset_id, quantity, purchase_unit_price, purchase_date)
        current = price if price_at_record_time is None else _parse_price("price_at_record_time", price_at_record_time)
        asset_id = str(asset_id).strip()

        with self._lock:
            tx = Transaction(
                id=self._next_id(),
                asset_id=asset_id,
                asset_symbol=asset_symbol,
                asset_name=asset_name or asset_id,
                asset_image=asset_image,
                quantity=qty,
                purchase_unit_price=price,
                purchase_date=pdate,
                price_at_record_time=current,
            )
            self._items = self._items + (tx,)
            self.save()
        log.info("Added transaction %s: %s x %s @ %s", tx.id, tx.asset_id, qty, price)
        return tx

    def add_from_market(self, asset: MarketAsset, quantity, purchase_unit_price, purchase_date) -> Transaction:
        return self.add(
            asset.id, quantity, purchase_unit_price, purchase_date,
            asset_symbol=asset.symbol,
            asset_name=asset.name,
            asset_image=asset.image,
            price_at_record_time=asset.current_price,
        )

    def remove(self, tx_id: str) -> Transaction:
        with self._lock:
            target = next((t for t in self._items if t.id == tx_id), None)
            if target is None:
                raise NotFoundError(tx_id)
            self._items = tuple(t for t in self._items if t.id != tx_id)
            self.save()
        log.info("Removed transaction %s (%s)", tx_id, target.asset_id)
        return target

    def refresh_prices(self, snapshot: Mapping[str, MarketAsset]) -> int:
        """
        Copy current prices from `snapshot` onto matching transactions.
        Assets missing from the snapshot keep their last known price.
        """
        updated = 0
        with self._lock:
            out = []
            for t in self._items:
                asset = snapshot.get(t.asset_id)
                price = asset.current_price if asset is not None else None
                # a zero/absent quote never overwrites a known price
                if price and price > 0 and price != t.price_at_record_time:
                    t = replace(t, price_at_record_time=price)
                    updated += 1
                out.append(t)
            self._items = tuple(out)
            if updated:
                self.save()
        return updated


def _id_number(tx_id: str) -> int:
    try:
        return int(tx_id)
    except ValueError:
        return 0


def transactions_for(transactions: Iterable[Transaction], asset_id: str) -> List[Transaction]:
    return [t for t in transactions if t.asset_id == asset_id]
