# utils/timeutils.py
import time
from datetime import date, datetime, timezone


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def today_iso() -> str:
    return date.today().isoformat()


def now_ms() -> int:
    return time.time_ns() // 1_000_000
