"""Chat command parsing.

Turns a raw chat line into one of the intent records below, or None when the
text is not a command. Matching is case-sensitive on the keyword prefixes and
follows a fixed priority: barcode, SKU (編號 / #), query (查 / 查詢), then the
in/out quantity pattern. The help keywords are checked last. Full-width forms
are folded for matching, but a query keyword is passed on as typed.

Recognized forms:
    條碼 4710018000104 / 條碼4710018000104 / 條碼：4710018000104
    編號 AG030 / 編號AG030 / 編號：AG030 / #AG030
    查 可樂 / 查可樂 / 查詢 可樂
    入庫3箱2件 / 入3箱 / 出2件 / 出庫1箱 / 出2箱1件@總倉 / 出1箱(倉庫=總倉)
    指令 / 說明 / help
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Optional, Union

from .utils import collapse_whitespace, normalize_command_text

ACTION_IN = "in"
ACTION_OUT = "out"

BARCODE_RE = re.compile(r"^條碼:?\s*(.+)$")
SKU_RE = re.compile(r"^編號[:#]?\s*(.+)$")
HASH_SKU_RE = re.compile(r"^#\s*(.+)$")
QUERY_RE = re.compile(r"^查(?:詢)?\s*(.+)$")
CHANGE_RE = re.compile(
    r"^(入庫|入|出庫|出)\s*"
    r"(?:(\d+)\s*箱)?\s*"
    r"(?:(\d+)\s*件)?\s*"
    r"(?:@\s*(.+?)|\(\s*(?:倉庫|warehouse)\s*=\s*(.+?)\s*\))?$"
)
HELP_WORDS = {"指令", "說明", "help"}


@dataclass(frozen=True)
class QueryIntent:
    keyword: str


@dataclass(frozen=True)
class BarcodeIntent:
    code: str


@dataclass(frozen=True)
class SkuIntent:
    code: str

    @property
    def sku(self) -> str:
        return self.code


@dataclass(frozen=True)
class ChangeIntent:
    action: str
    box: int = 0
    piece: int = 0
    warehouse: Optional[str] = None

    @property
    def is_empty(self) -> bool:
        return self.box == 0 and self.piece == 0

    def to_command(self, warehouse: Optional[str] = None) -> str:
        """Render the intent back to chat text, optionally pinning a warehouse."""
        verb = "入" if self.action == ACTION_IN else "出"
        parts = [verb]
        if self.box:
            parts.append(f"{self.box}箱")
        if self.piece:
            parts.append(f"{self.piece}件")
        target = warehouse or self.warehouse
        if target:
            parts.append(f"@{target}")
        return "".join(parts)


@dataclass(frozen=True)
class HelpIntent:
    pass


Intent = Union[QueryIntent, BarcodeIntent, SkuIntent, ChangeIntent, HelpIntent]


def parse_command(text: Optional[str]) -> Optional[Intent]:
    """Purpose: Classify a chat line into a structured intent.
    Inputs/Outputs: Input is raw message text; output is an intent record or None.
    Side Effects / State: None; pure function with no I/O.
    Dependencies: Uses normalize_command_text and the module-level patterns.
    Failure Modes: Malformed quantity strings return None rather than raising.
    If Removed: The bot cannot tell commands from chatter and never replies.
    Testing Notes: "出2箱1件@總倉" -> ChangeIntent("out", 2, 1, "總倉");
        "查 可樂" -> QueryIntent("可樂"); "#AG030" -> SkuIntent("AG030").
    """
    # First match wins, in priority order.
    t = normalize_command_text(text)
    if not t:
        return None

    match = BARCODE_RE.match(t)
    if match:
        return BarcodeIntent(code=match.group(1).strip())

    match = SKU_RE.match(t) or HASH_SKU_RE.match(t)
    if match:
        return SkuIntent(code=match.group(1).strip())

    # The search keyword keeps its original width so names like 可樂（大） still match.
    raw = collapse_whitespace(text)
    if raw not in ("查", "查詢"):
        match = QUERY_RE.match(raw)
        if match:
            return QueryIntent(keyword=match.group(1).strip())

    match = CHANGE_RE.match(t)
    if match:
        verb, box, piece, at_warehouse, kv_warehouse = match.groups()
        warehouse = (at_warehouse or kv_warehouse or "").strip() or None
        return ChangeIntent(
            action=ACTION_IN if verb.startswith("入") else ACTION_OUT,
            box=int(box) if box else 0,
            piece=int(piece) if piece else 0,
            warehouse=warehouse,
        )

    if t in HELP_WORDS:
        return HelpIntent()
    return None
