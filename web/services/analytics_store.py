from __future__ import annotations

import json
import logging
from datetime import date, datetime, timedelta, timezone
from typing import Any, Dict, Optional

from services.local_storage import LocalStorage, QuotaExceededError
from services.records import parse_timestamp


logger = logging.getLogger(__name__)


STORAGE_KEY = "siteAnalytics"
MAX_RECORDS = 10000
RETENTION_DAYS = 90
CLEANUP_INTERVAL_DAYS = 7


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def utc_date_str(now: datetime) -> str:
    return now.astimezone(timezone.utc).date().isoformat()


def new_state(now: Optional[datetime] = None) -> Dict[str, Any]:
    return {
        "totalViews": 0,
        "dailyViews": {},
        "pageViews": {},
        "records": [],
        "lastCleanup": utc_date_str(now or _utcnow()),
    }


def apply_retention(state: Dict[str, Any], now: datetime) -> Dict[str, Any]:
    """Drop records and daily counters older than the retention window (in place)."""

    cutoff = now - timedelta(days=RETENTION_DAYS)
    cutoff_str = utc_date_str(cutoff)

    kept = []
    for record in state.get("records") or []:
        ts = parse_timestamp(record.get("timestamp") if isinstance(record, dict) else None)
        if ts is not None and ts >= cutoff:
            kept.append(record)
    state["records"] = kept

    daily = state.get("dailyViews") or {}
    state["dailyViews"] = {d: n for d, n in daily.items() if str(d) >= cutoff_str}
    state["lastCleanup"] = utc_date_str(now)
    return state


class AnalyticsStore:
    """Local cache of page-view counters and raw visit records.

    The whole state is one JSON blob under ``siteAnalytics`` so it stays
    readable by the browser widget that shares the key.
    """

    def __init__(self, storage: LocalStorage):
        self.storage = storage
        self.init_storage()

    def init_storage(self) -> None:
        if self.storage.get_item(STORAGE_KEY) is None:
            self.write(new_state())

    def read(self) -> Optional[Dict[str, Any]]:
        raw = self.storage.get_item(STORAGE_KEY)
        if raw is None:
            return None
        try:
            state = json.loads(raw)
            if not isinstance(state, dict):
                raise ValueError("analytics state is not an object")
        except ValueError:
            logger.exception("Failed to read analytics state; reinitialising")
            self.storage.remove_item(STORAGE_KEY)
            self.init_storage()
            fresh = self.storage.get_item(STORAGE_KEY)
            return json.loads(fresh) if fresh else None
        if not isinstance(state.get("totalViews"), int):
            state["totalViews"] = 0
        for key in ("dailyViews", "pageViews"):
            if not isinstance(state.get(key), dict):
                state[key] = {}
        if not isinstance(state.get("records"), list):
            state["records"] = []
        return state

    def write(self, state: Dict[str, Any]) -> None:
        records = state.get("records") or []
        if len(records) > MAX_RECORDS:
            state["records"] = records[-MAX_RECORDS:]
        try:
            self.storage.set_item(STORAGE_KEY, json.dumps(state, ensure_ascii=False))
        except QuotaExceededError:
            logger.warning("Analytics storage quota exceeded; pruning records older than %s days", RETENTION_DAYS)
            apply_retention(state, _utcnow())
            try:
                self.storage.set_item(STORAGE_KEY, json.dumps(state, ensure_ascii=False))
            except Exception:
                logger.exception("Failed to save analytics state after cleanup")
        except Exception:
            logger.exception("Failed to save analytics state")

    def reset(self) -> None:
        self.storage.remove_item(STORAGE_KEY)
        self.init_storage()

    def cleanup_old_records(self, now: Optional[datetime] = None) -> None:
        state = self.read()
        if state is None:
            return
        self.write(apply_retention(state, now or _utcnow()))

    def cleanup_old_records_if_needed(self, now: Optional[datetime] = None) -> bool:
        """Run retention when the last cleanup is at least a week old. Returns True if it ran."""

        state = self.read()
        if state is None:
            return False
        current = now or _utcnow()
        try:
            last = date.fromisoformat(str(state.get("lastCleanup") or "2000-01-01"))
        except ValueError:
            last = date(2000, 1, 1)
        if (current.astimezone(timezone.utc).date() - last).days >= CLEANUP_INTERVAL_DAYS:
            self.cleanup_old_records(current)
            return True
        return False
