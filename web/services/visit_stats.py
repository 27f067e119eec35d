from __future__ import annotations

import logging
import os
from datetime import date, datetime, timedelta, tzinfo
from typing import Any, Dict, Iterable, List, Optional

from services.records import VisitRecord, parse_timestamp


logger = logging.getLogger(__name__)


_DEFAULT_BASE_PATH = "oldfish-profile"


def site_base_path() -> str:
    return (os.environ.get("SITE_BASE_PATH", _DEFAULT_BASE_PATH) or "").strip().strip("/")


def stats_timezone() -> Optional[tzinfo]:
    """Zone used for day/hour bucketing. None means the server's local zone."""

    name = (os.environ.get("STATS_TIMEZONE") or "").strip()
    if not name:
        return None
    try:
        from zoneinfo import ZoneInfo

        return ZoneInfo(name)
    except Exception:
        logger.warning("Unknown STATS_TIMEZONE %r; using server local time", name)
        return None


def normalize_path(p: Optional[str], *, base_path: Optional[str] = None) -> str:
    """Collapse the ways one page shows up in visit records.

    /<base>/about.html -> /about.html (only when something follows the base),
    /index.html -> /, /blog/index.html -> /blog, /blog/ -> /blog.
    """
    if not p:
        return "/"
    path = str(p).strip()
    base = site_base_path() if base_path is None else base_path.strip("/")

    parts = [s for s in path.split("/") if s]
    if base and len(parts) >= 2 and parts[0] == base:
        path = "/" + "/".join(parts[1:])
    if path == "/index.html":
        return "/"
    if path.endswith("/index.html"):
        return path[: -len("/index.html")] or "/"
    if len(path) > 1 and path.endswith("/"):
        path = path[:-1]
    return path or "/"


def months_ago(d: date, months: int) -> date:
    y = d.year
    m = d.month - months
    while m <= 0:
        m += 12
        y -= 1
    # Clamp to the last day of the target month.
    day = d.day
    while True:
        try:
            return date(y, m, day)
        except ValueError:
            day -= 1


def window_totals(daily_views: Dict[str, int], today: date) -> Dict[str, int]:
    """today/week/month totals from a {YYYY-MM-DD: count} map.

    Week covers the last 7 calendar days including today; month covers the
    days after the same day one month ago.
    """
    week_start = today - timedelta(days=7)
    month_start = months_ago(today, 1)
    week = 0
    month = 0
    for key, count in (daily_views or {}).items():
        try:
            d = date.fromisoformat(str(key))
        except ValueError:
            continue
        n = int(count or 0)
        if d > week_start:
            week += n
        if d > month_start:
            month += n
    return {
        "todayViews": int((daily_views or {}).get(today.isoformat(), 0) or 0),
        "weekViews": week,
        "monthViews": month,
    }


def empty_hour_distribution() -> Dict[int, int]:
    return {h: 0 for h in range(24)}


def _local(dt: datetime, tz: Optional[tzinfo]) -> datetime:
    return dt.astimezone(tz) if tz is not None else dt.astimezone()


def visit_to_dict(v: VisitRecord, *, tz: Optional[tzinfo] = None) -> Dict[str, Any]:
    d = v.date
    ts = parse_timestamp(v.timestamp)
    if ts is not None:
        d = _local(ts, tz).date().isoformat()
    return {
        "id": v.number,
        "timestamp": v.timestamp,
        "date": d,
        "path": normalize_path(v.path),
        "referrer": v.referrer,
        "ip": v.client_address,
        "country": v.country,
        "region": v.region,
        "city": v.city,
        "issueUrl": v.issue_url,
        "issueNumber": v.number,
    }


def aggregate_visits(issues: Iterable[Dict[str, Any]], *, now: Optional[datetime] = None) -> Dict[str, Any]:
    """Decode visit issues and build the statistics payload for get-visits."""

    tz = stats_timezone()
    current = _local(now or datetime.now().astimezone(), tz)
    today = current.date()

    visits: List[Dict[str, Any]] = []
    daily: Dict[str, int] = {}
    pages: Dict[str, int] = {}
    countries: Dict[str, int] = {}
    hours = empty_hour_distribution()

    for issue in issues:
        record = VisitRecord.from_issue(issue)
        item = visit_to_dict(record, tz=tz)
        visits.append(item)

        if item["date"]:
            daily[item["date"]] = daily.get(item["date"], 0) + 1
        pages[item["path"]] = pages.get(item["path"], 0) + 1
        countries[item["country"]] = countries.get(item["country"], 0) + 1

        ts = parse_timestamp(record.timestamp)
        if ts is not None:
            hours[_local(ts, tz).hour] += 1

    out: Dict[str, Any] = {"totalViews": len(visits)}
    out.update(window_totals(daily, today))
    out.update(
        {
            "visits": visits,
            "dailyViews": daily,
            "pageViews": pages,
            "countryStats": countries,
            "hourDistribution": hours,
        }
    )
    return out


def empty_visit_stats() -> Dict[str, Any]:
    return {
        "totalViews": 0,
        "todayViews": 0,
        "weekViews": 0,
        "monthViews": 0,
        "visits": [],
        "dailyViews": {},
        "pageViews": {},
        "countryStats": {},
        "hourDistribution": empty_hour_distribution(),
    }
