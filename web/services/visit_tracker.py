from __future__ import annotations

import csv
import io
import json
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from services.analytics_store import AnalyticsStore, utc_date_str
from services.http_client import join_url, post_json_in_background, site_api_base
from services.local_storage import SessionStorage
from services.records import DIRECT_REFERRER, iso_timestamp
from services.visit_stats import empty_hour_distribution, window_totals


logger = logging.getLogger(__name__)


LAST_PAGE_VIEW_KEY = "lastPageView"
LAST_VIEW_TIME_KEY = "lastViewTime"


class VisitTracker:
    """Counts page views into the local cache and forwards them to track-visit."""

    def __init__(
        self,
        store: AnalyticsStore,
        session: SessionStorage,
        api_base: Optional[str] = None,
        user_agent: str = "",
        post_timeout_seconds: float = 10.0,
    ):
        self.store = store
        self.session = session
        self.api_base = (api_base if api_base is not None else site_api_base()).strip()
        self.user_agent = user_agent
        self.post_timeout_seconds = float(post_timeout_seconds)

    def track_page_view(
        self,
        path: str,
        referrer: Optional[str] = None,
        user_agent: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> bool:
        """Record one view of `path`. Returns False when skipped as a same-session repeat."""

        if self.session.get_item(LAST_PAGE_VIEW_KEY) == path:
            return False

        state = self.store.read()
        if state is None:
            return False

        current = now or datetime.now(timezone.utc)
        date_str = utc_date_str(current)
        time_str = iso_timestamp(current)

        state["records"].append(
            {
                "timestamp": time_str,
                "date": date_str,
                "path": path,
                "referrer": referrer or "direct",
                "userAgent": user_agent or self.user_agent or "",
                "hour": current.astimezone().hour,
            }
        )
        state["totalViews"] = int(state.get("totalViews") or 0) + 1
        state["dailyViews"][date_str] = int(state["dailyViews"].get(date_str) or 0) + 1
        state["pageViews"][path] = int(state["pageViews"].get(path) or 0) + 1
        self.store.write(state)

        self.session.set_item(LAST_PAGE_VIEW_KEY, path)
        self.session.set_item(LAST_VIEW_TIME_KEY, time_str)

        self.store.cleanup_old_records_if_needed(current)
        self._send(path, referrer)
        return True

    def _send(self, path: str, referrer: Optional[str]) -> None:
        url = join_url(self.api_base, "track-visit")
        if not url:
            return
        post_json_in_background(
            url,
            {"path": path, "referrer": referrer or DIRECT_REFERRER},
            timeout_seconds=self.post_timeout_seconds,
            name="track-visit",
        )

    def get_stats(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        state = self.store.read()
        if state is None:
            return {
                "totalViews": 0,
                "todayViews": 0,
                "weekViews": 0,
                "monthViews": 0,
                "pageViews": {},
                "dailyViews": {},
            }

        current = now or datetime.now(timezone.utc)
        daily = state.get("dailyViews") or {}
        hours = empty_hour_distribution()
        for record in state.get("records") or []:
            hour = record.get("hour") if isinstance(record, dict) else None
            if isinstance(hour, int) and 0 <= hour < 24:
                hours[hour] += 1

        out: Dict[str, Any] = {"totalViews": int(state.get("totalViews") or 0)}
        out.update(window_totals(daily, current.astimezone(timezone.utc).date()))
        out.update(
            {
                "pageViews": state.get("pageViews") or {},
                "dailyViews": daily,
                "hourDistribution": hours,
                "records": state.get("records") or [],
            }
        )
        return out

    def get_daily_views_for_chart(self, days: int = 30, now: Optional[datetime] = None) -> List[Dict[str, Any]]:
        state = self.store.read()
        if state is None:
            return []
        current = now or datetime.now(timezone.utc)
        daily = state.get("dailyViews") or {}
        out = []
        for i in range(days - 1, -1, -1):
            d = utc_date_str(current - timedelta(days=i))
            out.append({"date": d, "views": int(daily.get(d) or 0)})
        return out

    def export_csv(self) -> str:
        state = self.store.read()
        records = (state or {}).get("records") or []
        if not records:
            return ""
        buf = io.StringIO()
        writer = csv.writer(buf, quoting=csv.QUOTE_ALL, lineterminator="\n")
        buf.write(",".join(["時間", "日期", "頁面", "來源", "時段"]) + "\n")
        for r in records:
            writer.writerow(
                [
                    r.get("timestamp", ""),
                    r.get("date", ""),
                    r.get("path", ""),
                    r.get("referrer", ""),
                    f"{r.get('hour', '')}:00",
                ]
            )
        return buf.getvalue().rstrip("\n")

    def export_json(self) -> str:
        return json.dumps(self.store.read(), ensure_ascii=False, indent=2)

    def reset(self) -> None:
        self.store.reset()
