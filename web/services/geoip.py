from __future__ import annotations

import ipaddress
import logging
import os
from dataclasses import dataclass
from typing import Optional
from urllib.parse import quote

from services.http_client import request_json
from services.logutil import log_warning_throttled


logger = logging.getLogger(__name__)


UNKNOWN = "未知"

_DEFAULT_URL = "http://ip-api.com/json/{ip}?fields=status,country,regionName,city"


@dataclass(frozen=True)
class GeoLocation:
    country: str = UNKNOWN
    region: str = UNKNOWN
    city: str = UNKNOWN


def is_private_address(ip: Optional[str]) -> bool:
    """True when a lookup would be pointless: private, loopback or not an IP at all."""

    s = (ip or "").strip()
    if not s or s == "unknown":
        return True
    try:
        addr = ipaddress.ip_address(s)
    except ValueError:
        return True
    if isinstance(addr, ipaddress.IPv6Address) and addr.ipv4_mapped is not None:
        addr = addr.ipv4_mapped
    return bool(
        addr.is_private
        or addr.is_loopback
        or addr.is_link_local
        or addr.is_unspecified
        or addr.is_reserved
        or addr.is_multicast
    )


def _lookup_url(ip: str) -> str:
    template = (os.environ.get("GEOIP_URL") or "").strip() or _DEFAULT_URL
    return template.replace("{ip}", quote(ip, safe=""))


def _timeout_seconds(default: float) -> float:
    v = (os.environ.get("GEOIP_TIMEOUT_SECONDS") or "").strip()
    if not v:
        return default
    try:
        return max(0.1, float(v))
    except ValueError:
        return default


def lookup_geo(ip: Optional[str], *, timeout_seconds: float = 3.0) -> GeoLocation:
    """Best-effort reverse lookup of a client address. Never raises."""

    if is_private_address(ip):
        return GeoLocation()

    addr = str(ip).strip()
    try:
        status, payload = request_json("GET", _lookup_url(addr), timeout_seconds=_timeout_seconds(timeout_seconds))
    except Exception as e:
        log_warning_throttled(
            logger,
            "geoip.lookup",
            addr,
            e,
            interval_seconds=60.0,
            message="Geolocation lookup failed for %s: %s",
        )
        return GeoLocation()

    if status != 200 or not isinstance(payload, dict) or payload.get("status") != "success":
        return GeoLocation()

    return GeoLocation(
        country=str(payload.get("country") or "") or UNKNOWN,
        region=str(payload.get("regionName") or "") or UNKNOWN,
        city=str(payload.get("city") or "") or UNKNOWN,
    )
