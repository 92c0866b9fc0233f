# storage/json_store.py
import io
import json
import os
import tempfile
from typing import Any, Dict, List

from core.errors import PersistenceError
from utils.logging import get_logger

log = get_logger("json_store")

HOME_DIR = os.environ.get("CRYPTO_TRACKER_HOME") or os.path.expanduser("~/.crypto_tracker")
CACHE_PATH = os.path.join(HOME_DIR, "cache.json")
CONFIG_PATH = os.path.join(HOME_DIR, "config.json")
STORAGE_PATH = os.path.join(HOME_DIR, "storage.json")


def ensure_home():
    os.makedirs(HOME_DIR, exist_ok=True)


def _atomic_write_text(path: str, text: str):
    ensure_home()
    directory = os.path.dirname(str(path))
    os.makedirs(directory, exist_ok=True)
    fd, tmp = tempfile.mkstemp(dir=directory, prefix=".tmp-", text=True)
    try:
        with io.open(fd, "w", encoding="utf-8") as f:
            f.write(text)
        os.replace(tmp, path)
    finally:
        if os.path.exists(tmp):
            os.remove(tmp)


def write_json(path: str, data: Any):
    _atomic_write_text(path, json.dumps(data, ensure_ascii=False))


def read_json(path: str, default: Dict[str, Any] | None = None) -> Dict[str, Any]:
    if not os.path.exists(path):
        return default or {}
    with open(path, "r", encoding="utf-8") as f:
        return json.load(f)


# ---- Key-value backends ----

class JsonFileKeyValueStore:
    """
    Key-value store kept as one JSON object on disk (like browser localStorage).
    Read/write failures surface as PersistenceError.
    """

    def __init__(self, path: str | None = None):
        self.path = path or STORAGE_PATH

    def _read_all(self) -> Dict[str, Any]:
        try:
            data = read_json(self.path, {})
        except (OSError, ValueError) as e:
            raise PersistenceError(f"cannot read {self.path}: {e}") from e
        if not isinstance(data, dict):
            raise PersistenceError(f"{self.path} does not hold a JSON object")
        return data

    def get(self, key: str) -> Any:
        return self._read_all().get(key)

    def set(self, key: str, value: Any) -> None:
        try:
            data = self._read_all()
        except PersistenceError as e:
            # keep the unreadable file next to the fresh one for recovery
            backup = f"{self.path}.corrupt"
            try:
                os.replace(self.path, backup)
            except OSError as move_err:
                raise PersistenceError(f"cannot move unreadable {self.path} aside: {move_err}") from e
            log.warning("Moved unreadable store to %s: %s", backup, e)
            data = {}
        data[key] = value
        try:
            write_json(self.path, data)
        except (OSError, TypeError, ValueError) as e:
            raise PersistenceError(f"cannot write {self.path}: {e}") from e


class InMemoryKeyValueStore:
    def __init__(self, initial: Dict[str, Any] | None = None):
        self.data: Dict[str, Any] = {}
        for k, v in (initial or {}).items():
            self.set(k, v)

    def get(self, key: str) -> Any:
        raw = self.data.get(key)
        return None if raw is None else json.loads(raw)

    def set(self, key: str, value: Any) -> None:
        # keep serialized text so callers can't mutate stored state
        self.data[key] = json.dumps(value)


# ---- Price cache ----

def write_cache(assets: List[Dict[str, Any]], last_fetch_ts: str):
    write_json(CACHE_PATH, {"assets": assets, "last_fetch_ts": last_fetch_ts})


def read_cache() -> Dict[str, Any]:
    """Last fetched market rows; a missing or corrupt cache reads as empty."""
    empty = {"assets": [], "last_fetch_ts": None}
    try:
        data = read_json(CACHE_PATH, empty)
    except (OSError, ValueError) as e:
        log.warning("Ignoring unreadable price cache %s: %s", CACHE_PATH, e)
        return empty
    if not isinstance(data, dict) or not isinstance(data.get("assets"), list):
        return empty
    return data


# ---- Config helpers ----

DEFAULT_CONFIG = {
    "per_page": 50,
    "request_timeout_sec": 10.0,
}


def read_config() -> Dict[str, Any]:
    # Defaults if user hasn't created config.json
    cfg = dict(DEFAULT_CONFIG)
    try:
        disk = read_json(CONFIG_PATH, {})
    except (OSError, ValueError) as e:
        log.warning("Ignoring unreadable config %s: %s", CONFIG_PATH, e)
        disk = {}
    if isinstance(disk, dict):
        cfg.update(disk)
    for key, default in DEFAULT_CONFIG.items():
        try:
            cfg[key] = validate_config_value(key, cfg[key])
        except ValueError as e:
            log.warning("Config %s: %s Using default %r.", CONFIG_PATH, e, default)
            cfg[key] = default
    return cfg


def validate_config_value(key: str, value: Any) -> Any:
    if key == "per_page":
        try:
            n = int(value)
        except (TypeError, ValueError):
            raise ValueError("per_page must be an integer.")
        if not 1 <= n <= 250:
            raise ValueError("per_page must be between 1 and 250.")
        return n
    if key == "request_timeout_sec":
        try:
            sec = float(value)
        except (TypeError, ValueError):
            raise ValueError("request_timeout_sec must be a number.")
        if sec <= 0:
            raise ValueError("request_timeout_sec must be > 0.")
        return sec
    raise ValueError(f"Unknown key '{key}'. Allowed: {', '.join(DEFAULT_CONFIG)}")


def write_config(cfg: dict):
    """Atomic write of config.json."""
    # keep only known top-level keys; ignore accidental extras
    clean = {k: validate_config_value(k, cfg.get(k, v)) for k, v in DEFAULT_CONFIG.items()}
    write_json(CONFIG_PATH, clean)


def ensure_config_exists():
    """Create config.json with defaults if missing."""
    if not os.path.exists(CONFIG_PATH):
        write_config(DEFAULT_CONFIG.copy())
