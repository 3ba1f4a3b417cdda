from __future__ import annotations

import calendar
import os
from datetime import datetime, timezone


def _env_str(name: str, default: str = "") -> str:
    return (os.getenv(name) or default).strip()


def _env_bool(name: str, default: bool) -> bool:
    raw = (os.getenv(name) or "").strip().lower()
    if not raw:
        return bool(default)
    return raw in ("1", "true", "yes", "on")


def _env_int(name: str, default: int, *, minimum: int = 1, maximum: int = 100000) -> int:
    raw = (os.getenv(name) or "").strip()
    if not raw:
        value = int(default)
    else:
        try:
            value = int(raw)
        except Exception:
            value = int(default)
    if value < minimum:
        value = minimum
    if value > maximum:
        value = maximum
    return value


def _env_float(name: str, default: float, *, minimum: float = 0.0) -> float:
    raw = (os.getenv(name) or "").strip()
    try:
        value = float(raw) if raw else float(default)
    except Exception:
        value = float(default)
    return max(float(minimum), value)


def _env_datetime(name: str) -> datetime | None:
    raw = (os.getenv(name) or "").strip()
    if not raw:
        return None
    try:
        parsed = datetime.fromisoformat(raw.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


def app_env() -> str:
    return _env_str("CLASSIFIEDS_ENV", "dev").lower()


def listing_lifespan_days() -> int:
    return _env_int("DEFAULT_LISTING_LIFESPAN_DAYS", 30, minimum=1, maximum=3650)


def default_city() -> str:
    return _env_str("DEFAULT_LISTING_CITY", "Seattle")


def default_state() -> str:
    return _env_str("DEFAULT_LISTING_STATE", "WA")


def search_default_page_size() -> int:
    return _env_int("SEARCH_DEFAULT_PAGE_SIZE", 10, minimum=1, maximum=1000)


def search_max_page_size() -> int:
    return _env_int("SEARCH_MAX_PAGE_SIZE", 100, minimum=1, maximum=1000)


def max_listing_distance_km() -> float:
    return _env_float("MAX_LISTING_DISTANCE_KM", 0.0)


def reconcile_page_size() -> int:
    return _env_int("SEARCH_RECONCILE_PAGE_SIZE", 200, minimum=1, maximum=2000)


def expiry_interval_seconds() -> int:
    return _env_int("LISTING_EXPIRY_INTERVAL_SECONDS", 86400, minimum=60, maximum=7 * 86400)


def expiry_max_run_seconds() -> int:
    return _env_int("LISTING_EXPIRY_MAX_RUN_SECONDS", 300, minimum=1, maximum=86400)


def first_post_approval_until() -> datetime | None:
    explicit = _env_datetime("FIRST_POST_APPROVAL_ACTIVE_UNTIL")
    if explicit is not None:
        return explicit
    rollout = _env_datetime("FIRST_POST_APPROVAL_ROLLOUT_AT")
    months = _env_int("FIRST_POST_APPROVAL_ACTIVE_MONTHS", 0, minimum=0, maximum=1200)
    if rollout is None or months <= 0:
        return None
    return add_months(rollout, months)


def add_months(value: datetime, months: int) -> datetime:
    month_index = value.month - 1 + int(months)
    year = value.year + month_index // 12
    month = month_index % 12 + 1
    last_day = calendar.monthrange(year, month)[1]
    return value.replace(year=year, month=month, day=min(value.day, last_day))


def search_sync_retry_async() -> bool:
    return _env_bool("SEARCH_SYNC_RETRY_ASYNC", False)
