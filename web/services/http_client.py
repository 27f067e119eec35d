from __future__ import annotations

import json
import logging
import os
import threading
import urllib.error
import urllib.request
from typing import Any, Dict, Optional, Tuple
from urllib.parse import urlparse


logger = logging.getLogger(__name__)


USER_AGENT = "whisper-box/1.0"


def site_api_base() -> str:
    """Base URL of the site API used by the client widgets (SITE_API_BASE)."""
    return (os.environ.get("SITE_API_BASE") or "").strip()


def join_url(base: str, path: str) -> str:
    b = (base or "").strip().rstrip("/")
    p = (path or "").strip().lstrip("/")
    if not b:
        return ""
    return f"{b}/{p}" if p else b


def request_json(
    method: str,
    url: str,
    *,
    headers: Optional[Dict[str, str]] = None,
    body: Optional[Any] = None,
    timeout_seconds: float = 10.0,
) -> Tuple[int, Any]:
    """Send one HTTP request and decode a JSON response.

    Returns (status, payload). Non-2xx responses are returned, not raised;
    payload is None for an empty body and {"error": ...} for a non-JSON one.
    Connection failures and timeouts propagate as OSError (URLError,
    socket.timeout).
    """
    u = urlparse(url or "")
    if u.scheme not in ("http", "https"):
        raise ValueError("Only http/https URLs are supported.")

    data: Optional[bytes] = None
    req_headers = {"Accept": "application/json", "User-Agent": USER_AGENT}
    if body is not None:
        data = json.dumps(body, ensure_ascii=False).encode("utf-8")
        req_headers["Content-Type"] = "application/json"
    if headers:
        req_headers.update(headers)

    req = urllib.request.Request(url, data=data, headers=req_headers, method=method.upper())
    try:
        with urllib.request.urlopen(req, timeout=timeout_seconds) as resp:
            status = int(resp.status)
            raw = resp.read()
    except urllib.error.HTTPError as exc:
        status = int(exc.code)
        try:
            raw = exc.read() or b""
        except Exception:
            raw = b""

    if not raw.strip():
        return status, None
    try:
        return status, json.loads(raw.decode("utf-8", errors="replace"))
    except json.JSONDecodeError:
        snippet = raw[:240].decode("utf-8", errors="replace").strip()
        return status, {"error": f"non_json_response: {snippet}" if snippet else "non_json_response"}


def post_json_in_background(url: str, body: Any, *, timeout_seconds: float = 10.0, name: str = "post") -> threading.Thread:
    """Fire-and-forget POST. Failures are logged at debug level and never raised."""

    def run() -> None:
        try:
            status, _payload = request_json("POST", url, body=body, timeout_seconds=timeout_seconds)
            if status >= 400:
                logger.debug("Background POST to %s returned %s", url, status)
        except Exception as e:
            logger.debug("Background POST to %s failed (ignored): %s", url, e)

    t = threading.Thread(target=run, name=f"bg-{name}", daemon=True)
    t.start()
    return t
