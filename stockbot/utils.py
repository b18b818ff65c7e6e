from __future__ import annotations

import re
import unicodedata
from datetime import datetime, timezone
from typing import Any, Optional
from zoneinfo import ZoneInfo

LABEL_MAX_CHARS = 20


def normalize_command_text(text: Optional[str]) -> str:
    """Purpose: Normalize raw chat text before command matching.
    Inputs/Outputs: Input is a raw string; output is NFKC-normalized text with
        whitespace collapsed and trimmed.
    Side Effects / State: None; pure function.
    Dependencies: Uses unicodedata and regex; called by the command parser.
    Failure Modes: Returns an empty string when input is falsy.
    If Removed: Full-width digits, colons and parentheses typed on mobile
        keyboards stop matching the command patterns.
    Testing Notes: Verify "出２箱" becomes "出2箱" and "（" becomes "(".
    """
    # Fold full-width forms to ASCII without touching letter case.
    if not text:
        return ""
    return collapse_whitespace(unicodedata.normalize("NFKC", text))


def collapse_whitespace(text: Optional[str]) -> str:
    """Trim and collapse runs of whitespace; characters are otherwise kept as typed."""
    if not text:
        return ""
    return re.sub(r"\s+", " ", text).strip()


def truncate_label(text: str, limit: int = LABEL_MAX_CHARS) -> str:
    """Purpose: Clamp a quick-reply label to the platform's display limit.
    Inputs/Outputs: Input is label text and a limit; output is at most `limit` chars.
    Side Effects / State: None.
    Dependencies: Used by the reply composer.
    Failure Modes: None; short labels are returned unchanged.
    If Removed: The reply API rejects messages with over-long labels.
    Testing Notes: A 25-char label returns 20 chars ending in an ellipsis.
    """
    # Keep room for the ellipsis when truncating.
    if len(text) <= limit:
        return text
    return text[: limit - 1] + "…"


def mask_user_id(value: Optional[str]) -> str:
    """Shorten an external user id for logs."""
    if not value:
        return "-"
    if len(value) <= 8:
        return "***"
    return value[:4] + "***" + value[-4:]


def escape_like(keyword: str) -> str:
    """Escape LIKE wildcards for a plain-column ilike filter; other characters pass through."""
    return keyword.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_").strip()


def as_int(value: Any) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return 0


def as_float(value: Any) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        return 0.0


def format_local_timestamp(moment: Optional[datetime], tz_name: str) -> str:
    """Purpose: Render a timestamp in a fixed local zone with an explicit offset.
    Inputs/Outputs: Inputs are an aware or naive-UTC datetime (None means now) and a
        zone name; output looks like "2026-10-18 14:03:22+08:00".
    Side Effects / State: Reads the clock when moment is None.
    Dependencies: Uses zoneinfo; called by the notifier payload builder.
    Failure Modes: Unknown zone names raise ZoneInfoNotFoundError.
    If Removed: The sheet receives ambiguous timestamps.
    Testing Notes: 2026-01-01T00:00Z in Asia/Taipei renders 08:00:00+08:00.
    """
    # Treat naive datetimes as UTC before converting.
    moment = moment or datetime.now(timezone.utc)
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    local = moment.astimezone(ZoneInfo(tz_name))
    offset = local.strftime("%z")
    return local.strftime("%Y-%m-%d %H:%M:%S") + f"{offset[:3]}:{offset[3:]}"
