"""Encoding of site records into GitHub issue text, and back.

Every record is one issue. Its body is a fixed Markdown template of
``**Label：** value`` lines (full-width colon) and the body is the only
source of truth: on every read the fields are recovered by line-anchored
regular expressions, falling back to issue metadata when a line is missing.

Single-line values are flattened before encoding so that a value can never
start a new labeled line. Free-text blocks (message content) are kept
verbatim; a block containing a blank line followed by ``---`` will be cut
short on decode.
"""

from __future__ import annotations

import copy
import json
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Sequence

from services.geoip import UNKNOWN


VISIT_LABELS = ("analytics", "visit-track")
BLOCKED_LABELS = ("analytics", "blocked-content")
MESSAGE_LABELS = ("whisper", "自動提交")
MESSAGE_LIST_LABELS = ("whisper",)
CONFIG_LABELS = ("system-config",)

CONFIG_TITLE = "SYSTEM_CONFIG"
DIRECT_REFERRER = "直接訪問"
NOT_PROVIDED = "未提供"
DELETED_TITLE = "[已刪除]"
DELETED_BODY = "*此訊息已被刪除*"

DEFAULT_FILTERS: List[Dict[str, Any]] = [
    {"id": 1, "word": "垃圾", "category": "spam", "enabled": True},
    {"id": 2, "word": "廣告", "category": "spam", "enabled": True},
    {"id": 3, "word": "詐騙", "category": "fraud", "enabled": True},
]


def default_config() -> Dict[str, Any]:
    return {
        "whisperEnabled": True,
        "filterEnabled": True,
        "filters": copy.deepcopy(DEFAULT_FILTERS),
    }


@dataclass(frozen=True)
class IssueDraft:
    title: str
    body: str
    labels: Sequence[str]


def iso_timestamp(dt: datetime) -> str:
    """UTC timestamp with millisecond precision and a trailing Z."""

    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    u = dt.astimezone(timezone.utc)
    return u.strftime("%Y-%m-%dT%H:%M:%S.") + f"{u.microsecond // 1000:03d}Z"


def parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    s = (value or "").strip()
    if not s:
        return None
    if s.endswith("Z"):
        s = s[:-1] + "+00:00"
    try:
        dt = datetime.fromisoformat(s)
    except ValueError:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def _one_line(value: Any) -> str:
    return re.sub(r"[\r\n]+", " ", str(value if value is not None else "")).strip()


def labeled_line(label: str, value: Any) -> str:
    return f"**{label}：** {_one_line(value)}"


def extract_field(body: str, label: str) -> Optional[str]:
    # Labeled lines start at column 0; flattened values never do.
    m = re.search(r"^\*\*" + re.escape(label) + r"：\*\* (.+)$", body or "", re.MULTILINE)
    if not m:
        return None
    return m.group(1).strip()


def extract_block(body: str, label: str) -> Optional[str]:
    """Free text following a ``**Label：**`` heading, up to the next ``---`` rule."""

    m = re.search(r"^\*\*" + re.escape(label) + r"：\*\*[ \t]*\n\n([\s\S]*?)\n\n---", body or "", re.MULTILINE)
    if not m:
        return None
    return m.group(1).strip()


def _title_stamp(now: datetime) -> str:
    local = now.astimezone() if now.tzinfo is not None else now
    return f"{local.strftime('%Y-%m-%d')} {local.strftime('%H')}:{local.strftime('%M')}"


def _created_date(issue: Dict[str, Any]) -> str:
    return str(issue.get("created_at") or "").split("T")[0]


# Visits


@dataclass
class VisitRecord:
    timestamp: str
    path: str = "/"
    referrer: str = DIRECT_REFERRER
    client_address: str = "unknown"
    country: str = UNKNOWN
    region: str = UNKNOWN
    city: str = UNKNOWN
    user_agent: str = "unknown"
    date: str = ""
    number: Optional[int] = None
    issue_url: str = ""

    def to_issue(self, now: datetime) -> IssueDraft:
        body = "\n".join(
            [
                "## 網站訪問記錄",
                "",
                labeled_line("時間", self.timestamp),
                labeled_line("頁面", self.path or "/"),
                labeled_line("來源", self.referrer or DIRECT_REFERRER),
                labeled_line("IP", self.client_address),
                labeled_line("國家/地區", self.country),
                labeled_line("區域", self.region),
                labeled_line("城市", self.city),
                labeled_line("用戶代理", self.user_agent),
                "",
                "---",
                "*此記錄由網站自動生成*",
            ]
        )
        return IssueDraft(title=f"訪問記錄：{_title_stamp(now)}", body=body, labels=VISIT_LABELS)

    @classmethod
    def from_issue(cls, issue: Dict[str, Any]) -> "VisitRecord":
        body = str(issue.get("body") or "")
        return cls(
            timestamp=extract_field(body, "時間") or str(issue.get("created_at") or ""),
            path=extract_field(body, "頁面") or "/",
            referrer=extract_field(body, "來源") or DIRECT_REFERRER,
            client_address=extract_field(body, "IP") or "unknown",
            country=extract_field(body, "國家/地區") or UNKNOWN,
            region=extract_field(body, "區域") or UNKNOWN,
            city=extract_field(body, "城市") or UNKNOWN,
            user_agent=extract_field(body, "用戶代理") or "unknown",
            date=_created_date(issue),
            number=issue.get("number"),
            issue_url=str(issue.get("html_url") or ""),
        )


# Blocked content


@dataclass
class BlockedContentRecord:
    timestamp: str
    message: str
    page: str = "/"
    name: str = ""
    matched_words: List[str] = field(default_factory=list)
    client_address: str = "unknown"
    country: str = UNKNOWN
    region: str = UNKNOWN
    city: str = UNKNOWN
    user_agent: str = "unknown"
    number: Optional[int] = None
    issue_url: str = ""

    @property
    def words_text(self) -> str:
        words = [_one_line(w) for w in self.matched_words if _one_line(w)]
        return "、".join(words) if words else UNKNOWN

    def to_issue(self, now: datetime) -> IssueDraft:
        body = "\n".join(
            [
                "## 內容攔截紀錄",
                "",
                labeled_line("時間", self.timestamp),
                labeled_line("頁面", self.page or "/"),
                labeled_line("姓名", self.name or NOT_PROVIDED),
                labeled_line("觸發詞", self.words_text),
                labeled_line("IP", self.client_address),
                labeled_line("國家/地區", self.country),
                labeled_line("區域", self.region),
                labeled_line("城市", self.city),
                labeled_line("用戶代理", self.user_agent),
                "",
                "---",
                "",
                "**被攔截內容：**",
                "",
                self.message,
                "",
                "---",
                "*此記錄由網站自動生成*",
            ]
        )
        title = f"攔截紀錄：{_title_stamp(now)}（{self.words_text}）"
        return IssueDraft(title=title, body=body, labels=BLOCKED_LABELS)

    @classmethod
    def from_issue(cls, issue: Dict[str, Any]) -> "BlockedContentRecord":
        body = str(issue.get("body") or "")
        words = extract_field(body, "觸發詞") or ""
        matched = [w for w in words.split("、") if w] if words and words != UNKNOWN else []
        return cls(
            timestamp=extract_field(body, "時間") or str(issue.get("created_at") or ""),
            message=extract_block(body, "被攔截內容") or "",
            page=extract_field(body, "頁面") or "/",
            name=extract_field(body, "姓名") or "",
            matched_words=matched,
            client_address=extract_field(body, "IP") or "unknown",
            country=extract_field(body, "國家/地區") or UNKNOWN,
            region=extract_field(body, "區域") or UNKNOWN,
            city=extract_field(body, "城市") or UNKNOWN,
            user_agent=extract_field(body, "用戶代理") or "unknown",
            number=issue.get("number"),
            issue_url=str(issue.get("html_url") or ""),
        )

    def to_log_entry(self) -> Dict[str, Any]:
        return {
            "id": self.number,
            "timestamp": self.timestamp,
            "page": self.page,
            "name": self.name,
            "words": "、".join(self.matched_words),
            "matchedWords": list(self.matched_words),
            "country": self.country,
            "message": self.message,
            "issueUrl": self.issue_url,
        }


# Whisper messages


@dataclass
class MessageRecord:
    name: str
    message: str
    email: str = NOT_PROVIDED
    timestamp: str = ""
    read: bool = False
    number: Optional[int] = None
    issue_url: str = ""

    def to_issue(self) -> IssueDraft:
        body = "\n".join(
            [
                "## 悄悄話訊息",
                "",
                labeled_line("姓名", self.name),
                labeled_line("Email", self.email or NOT_PROVIDED),
                labeled_line("時間", self.timestamp),
                "",
                "---",
                "",
                "**訊息內容：**",
                "",
                self.message,
                "",
                "---",
                "",
                "*此訊息由網站表單自動提交*",
            ]
        )
        return IssueDraft(title=f"悄悄話：來自 {_one_line(self.name)}", body=body, labels=MESSAGE_LABELS)

    @classmethod
    def from_issue(cls, issue: Dict[str, Any]) -> "MessageRecord":
        body = str(issue.get("body") or "")
        content = extract_block(body, "訊息內容")
        return cls(
            name=extract_field(body, "姓名") or UNKNOWN,
            email=extract_field(body, "Email") or UNKNOWN,
            message=content if content is not None else body,
            timestamp=str(issue.get("created_at") or ""),
            read=issue.get("state") == "closed",
            number=issue.get("number"),
            issue_url=str(issue.get("html_url") or ""),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.number,
            "name": self.name,
            "email": self.email,
            "message": self.message,
            "timestamp": self.timestamp,
            "read": self.read,
            "issueUrl": self.issue_url,
            "issueNumber": self.number,
        }


# System configuration


def normalize_config_update(payload: Dict[str, Any]) -> Dict[str, Any]:
    """Config as stored by update-config: missing switches default on, filters must be a list."""

    whisper = payload.get("whisperEnabled")
    filt = payload.get("filterEnabled")
    filters = payload.get("filters")
    return {
        "whisperEnabled": whisper if whisper is not None else True,
        "filterEnabled": filt if filt is not None else True,
        "filters": filters if isinstance(filters, list) else [],
    }


def encode_config(config: Dict[str, Any]) -> str:
    config_json = json.dumps(config, ensure_ascii=False, indent=2)
    return "\n".join(
        [
            "## 系統配置",
            "",
            "此 Issue 用於存儲網站系統配置，請勿手動修改。",
            "",
            "```json",
            config_json,
            "```",
            "",
            "---",
            "*此配置由管理後台自動更新*",
        ]
    )


def decode_config(body: Optional[str]) -> Optional[Dict[str, Any]]:
    """Stored config merged over the defaults, or None when the body holds no valid JSON object."""

    m = re.search(r"```json\s*([\s\S]*?)\s*```", body or "")
    if not m:
        return None
    try:
        stored = json.loads(m.group(1))
    except json.JSONDecodeError:
        return None
    if not isinstance(stored, dict):
        return None
    merged = default_config()
    merged.update(stored)
    return merged
