from __future__ import annotations

import copy
import json
import logging
import re
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from services.http_client import join_url, post_json_in_background, request_json, site_api_base
from services.local_storage import LocalStorage
from services.records import DEFAULT_FILTERS, default_config, iso_timestamp


logger = logging.getLogger(__name__)


FILTERS_KEY = "contentFilters"
ENABLED_KEY = "filterEnabled"
STATS_KEY = "filterStats"
BLOCKED_LOG_KEY = "blockedContentLog"
CONFIG_CACHE_KEY = "systemConfigCache"
CONFIG_CACHE_TIME_KEY = "systemConfigCacheTime"

CONFIG_TTL_SECONDS = 5 * 60
BLOCKED_LOG_MAX = 100


def _now_ms() -> int:
    return int(time.time() * 1000)


def _empty_stats() -> Dict[str, Any]:
    return {"totalBlocked": 0, "blockedByCategory": {}, "lastBlocked": None}


@dataclass(frozen=True)
class FilterMatch:
    word: str
    category: str
    is_regex: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {"word": self.word, "category": self.category, "isRegex": self.is_regex}


@dataclass
class DetectionResult:
    detected: bool = False
    matches: List[FilterMatch] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {"detected": self.detected, "matches": [m.to_dict() for m in self.matches]}


def _regex_body(word: str) -> Optional[str]:
    # The pattern keeps its case so escapes like \D stay distinct from \d. Bare "/" and
    # "//" have no pattern and only get the substring test.
    if len(word) > 2 and word.startswith("/") and word.endswith("/"):
        return word[1:-1]
    return None


def match_rules(text: str, rules: List[Dict[str, Any]]) -> List[FilterMatch]:
    """Evaluate every enabled rule against `text`.

    A rule contributes a substring match and, for /pattern/ words, an
    independent regex match; all rules run even after the first hit.
    """
    matches: List[FilterMatch] = []
    source = text or ""
    lowered = source.lower()

    for rule in rules:
        if not isinstance(rule, dict) or not rule.get("enabled"):
            continue
        word = str(rule.get("word") or "")
        if not word:
            continue
        category = str(rule.get("category") or "general")

        if word.lower() in lowered:
            matches.append(FilterMatch(word=word, category=category))

        pattern = _regex_body(word)
        if pattern is None:
            continue
        try:
            if re.search(pattern, source, re.IGNORECASE):
                matches.append(FilterMatch(word=word, category=category, is_regex=True))
        except re.error as e:
            logger.warning("Invalid filter regex %r: %s", word, e)

    return matches


class ContentFilter:
    """Blocklist checks for free-text form input, with locally cached rules."""

    def __init__(
        self,
        storage: LocalStorage,
        api_base: Optional[str] = None,
        fetch_timeout_seconds: float = 5.0,
    ):
        self.storage = storage
        self.api_base = (api_base if api_base is not None else site_api_base()).strip()
        self.fetch_timeout_seconds = float(fetch_timeout_seconds)
        self._refresh_lock = threading.Lock()
        self.init_storage()

    def init_storage(self) -> None:
        if self.storage.get_item(FILTERS_KEY) is None:
            self.save_filters(copy.deepcopy(DEFAULT_FILTERS))
        if self.storage.get_item(ENABLED_KEY) is None:
            self.storage.set_item(ENABLED_KEY, "true")
        if self.storage.get_item(STATS_KEY) is None:
            self.storage.set_item(STATS_KEY, json.dumps(_empty_stats()))

    # Rules

    def get_filters(self) -> List[Dict[str, Any]]:
        try:
            raw = self.storage.get_item(FILTERS_KEY)
            data = json.loads(raw) if raw else []
            return data if isinstance(data, list) else []
        except ValueError:
            logger.exception("Failed to read filter rules")
            return []

    def save_filters(self, filters: List[Dict[str, Any]]) -> None:
        try:
            self.storage.set_item(FILTERS_KEY, json.dumps(filters, ensure_ascii=False))
        except Exception:
            logger.exception("Failed to save filter rules")

    def add_filter(self, word: str, category: str = "general") -> int:
        filters = self.get_filters()
        ids = [int(f.get("id") or 0) for f in filters if isinstance(f, dict)]
        new_id = max(ids) + 1 if ids else 1
        filters.append({"id": new_id, "word": (word or "").strip(), "category": category, "enabled": True})
        self.save_filters(filters)
        return new_id

    def remove_filter(self, filter_id: int) -> bool:
        filters = self.get_filters()
        kept = [f for f in filters if f.get("id") != filter_id]
        self.save_filters(kept)
        return len(kept) < len(filters)

    def update_filter(self, filter_id: int, updates: Dict[str, Any]) -> bool:
        filters = self.get_filters()
        for i, f in enumerate(filters):
            if f.get("id") == filter_id:
                filters[i] = {**f, **(updates or {})}
                self.save_filters(filters)
                return True
        return False

    def is_enabled(self) -> bool:
        return self.storage.get_item(ENABLED_KEY) == "true"

    def set_enabled(self, enabled: bool) -> None:
        self.storage.set_item(ENABLED_KEY, "true" if enabled else "false")

    # Detection

    def detect(self, text: str) -> DetectionResult:
        if not self.is_enabled():
            return DetectionResult()
        matches = match_rules(text, self.get_filters())
        return DetectionResult(detected=len(matches) > 0, matches=matches)

    # Statistics

    def record_block(self, category: str, now: Optional[datetime] = None) -> None:
        try:
            raw = self.storage.get_item(STATS_KEY)
            stats = json.loads(raw) if raw else {}
            if not isinstance(stats, dict):
                stats = {}
            stats["totalBlocked"] = int(stats.get("totalBlocked") or 0) + 1
            by_cat = stats.get("blockedByCategory") or {}
            by_cat[category] = int(by_cat.get(category) or 0) + 1
            stats["blockedByCategory"] = by_cat
            stats["lastBlocked"] = iso_timestamp(now or datetime.now(timezone.utc))
            self.storage.set_item(STATS_KEY, json.dumps(stats, ensure_ascii=False))
        except Exception:
            logger.exception("Failed to record filter statistics")

    def get_stats(self) -> Dict[str, Any]:
        try:
            raw = self.storage.get_item(STATS_KEY)
            stats = json.loads(raw) if raw else None
            return stats if isinstance(stats, dict) else _empty_stats()
        except ValueError:
            return _empty_stats()

    def reset_stats(self) -> None:
        self.storage.set_item(STATS_KEY, json.dumps(_empty_stats()))

    # Blocked-content log

    def get_blocked_log(self) -> List[Dict[str, Any]]:
        try:
            raw = self.storage.get_item(BLOCKED_LOG_KEY)
            data = json.loads(raw) if raw else []
            return data if isinstance(data, list) else []
        except ValueError:
            return []

    def log_blocked_locally(self, entry: Dict[str, Any]) -> None:
        entries = [entry] + self.get_blocked_log()
        try:
            self.storage.set_item(BLOCKED_LOG_KEY, json.dumps(entries[:BLOCKED_LOG_MAX], ensure_ascii=False))
        except Exception:
            logger.exception("Failed to save blocked-content log")

    def report_blocked(
        self,
        path: str,
        name: str,
        message: str,
        matches: List[FilterMatch],
        now: Optional[datetime] = None,
    ) -> None:
        """Record a rejected submission locally and forward it to log-blocked."""

        current = now or datetime.now(timezone.utc)
        for m in matches:
            self.record_block(m.category, now=current)
        match_dicts = [m.to_dict() for m in matches]
        self.log_blocked_locally(
            {
                "timestamp": iso_timestamp(current),
                "page": path,
                "name": name,
                "message": message,
                "matches": match_dicts,
            }
        )
        url = join_url(self.api_base, "log-blocked")
        if url:
            post_json_in_background(
                url,
                {"path": path, "name": name, "message": message, "matches": match_dicts},
                timeout_seconds=self.fetch_timeout_seconds,
                name="log-blocked",
            )

    # Remote configuration

    def _cached_config(self) -> Optional[Dict[str, Any]]:
        try:
            raw = self.storage.get_item(CONFIG_CACHE_KEY)
            data = json.loads(raw) if raw else None
        except ValueError:
            return None
        return data if isinstance(data, dict) else None

    def _cache_age_seconds(self) -> Optional[float]:
        raw = self.storage.get_item(CONFIG_CACHE_TIME_KEY)
        try:
            return (_now_ms() - int(raw or "")) / 1000.0
        except ValueError:
            return None

    def apply_config(self, config: Dict[str, Any]) -> None:
        """Cache a fetched config and mirror its switch and rules into the local keys."""

        try:
            self.storage.set_item(CONFIG_CACHE_KEY, json.dumps(config, ensure_ascii=False))
            self.storage.set_item(CONFIG_CACHE_TIME_KEY, str(_now_ms()))
        except Exception:
            logger.exception("Failed to cache system config")
        if "filterEnabled" in config:
            self.set_enabled(bool(config.get("filterEnabled")))
        if isinstance(config.get("filters"), list):
            self.save_filters(config["filters"])

    def fetch_config(self) -> Optional[Dict[str, Any]]:
        """GET the remote config. Returns None on any failure."""

        url = join_url(self.api_base, "get-config")
        if not url:
            return None
        try:
            status, payload = request_json("GET", url, timeout_seconds=self.fetch_timeout_seconds)
        except Exception as e:
            logger.info("Config fetch failed: %s", e)
            return None
        if status != 200 or not isinstance(payload, dict) or not isinstance(payload.get("config"), dict):
            logger.info("Config fetch returned status %s", status)
            return None
        config = payload["config"]
        self.apply_config(config)
        return config

    def get_config(self) -> Dict[str, Any]:
        cached = self._cached_config()
        age = self._cache_age_seconds()
        if cached is not None and age is not None and age < CONFIG_TTL_SECONDS:
            return cached

        fetched = self.fetch_config()
        if fetched is not None:
            return fetched
        if cached is not None:
            return cached
        return default_config()

    def refresh_config_in_background(self) -> Optional[threading.Thread]:
        """Refresh the cached config off-thread; at most one refresh runs at a time."""

        if not self._refresh_lock.acquire(blocking=False):
            return None

        def run() -> None:
            try:
                self.fetch_config()
            finally:
                self._refresh_lock.release()

        t = threading.Thread(target=run, name="config-refresh", daemon=True)
        t.start()
        return t
