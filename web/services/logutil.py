from __future__ import annotations

import threading
import time
from typing import Dict


_lock = threading.Lock()
_last_log: Dict[str, float] = {}


def should_log(key: str, *, interval_seconds: float) -> bool:
    now = time.monotonic()
    with _lock:
        last = _last_log.get(key)
        if last is not None and (now - last) < float(interval_seconds):
            return False
        _last_log[key] = now
        return True


def log_warning_throttled(logger, key: str, *args, interval_seconds: float, message: str) -> None:
    """Log a warning at most once per interval per key.

    Used on best-effort paths (geolocation lookups) where a flaky upstream
    would otherwise log on every request.
    """
    try:
        if should_log(key, interval_seconds=interval_seconds):
            logger.warning(message, *args)
    except Exception:
        # Never let logging break the caller.
        pass


def reset_throttle() -> None:
    with _lock:
        _last_log.clear()
