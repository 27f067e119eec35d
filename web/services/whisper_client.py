from __future__ import annotations

import json
import logging
import random
import time
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from services.http_client import join_url, request_json, site_api_base
from services.local_storage import LocalStorage
from services.records import iso_timestamp


logger = logging.getLogger(__name__)


MESSAGES_KEY = "whisperMessages"
MAX_LOCAL_MESSAGES = 1000


class WhisperClient:
    """Submits the whisper form to create-issue.

    Without an API base (local development) messages are kept in
    ``whisperMessages`` instead.
    """

    def __init__(self, storage: LocalStorage, api_base: Optional[str] = None, timeout_seconds: float = 10.0):
        self.storage = storage
        self.api_base = (api_base if api_base is not None else site_api_base()).strip()
        self.timeout_seconds = float(timeout_seconds)

    def submit(self, name: str, message: str, email: str = "") -> Dict[str, Any]:
        n = (name or "").strip()
        m = (message or "").strip()
        if not n or not m:
            raise ValueError("請填寫所有欄位")

        url = join_url(self.api_base, "create-issue")
        if not url:
            logger.warning("No API endpoint configured; storing whisper message locally")
            return self._store_locally(n, m)

        body: Dict[str, Any] = {"name": n, "message": m}
        if email.strip():
            body["email"] = email.strip()
        status, payload = request_json("POST", url, body=body, timeout_seconds=self.timeout_seconds)
        if status != 200 or not isinstance(payload, dict) or not payload.get("success"):
            err = payload.get("error") if isinstance(payload, dict) else None
            raise RuntimeError(err or "提交失敗")
        return payload

    def local_messages(self) -> List[Dict[str, Any]]:
        try:
            raw = self.storage.get_item(MESSAGES_KEY)
            data = json.loads(raw) if raw else []
        except ValueError:
            return []
        return data if isinstance(data, list) else []

    def _store_locally(self, name: str, message: str) -> Dict[str, Any]:
        entry = {
            "id": time.time() * 1000 + random.random(),
            "name": name,
            "message": message,
            "timestamp": iso_timestamp(datetime.now(timezone.utc)),
            "read": False,
        }
        messages = [entry] + self.local_messages()
        self.storage.set_item(MESSAGES_KEY, json.dumps(messages[:MAX_LOCAL_MESSAGES], ensure_ascii=False))
        return {"success": True, "local": True, "message": entry}
