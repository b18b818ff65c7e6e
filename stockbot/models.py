from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, List, Optional

from pydantic import BaseModel, Field

ROLE_USER = "user"
ROLE_MANAGER = "manager"


class EventSource(BaseModel):
    """Sender descriptor of an inbound platform event."""
    type: str = "user"
    user_id: Optional[str] = Field(default=None, alias="userId")
    group_id: Optional[str] = Field(default=None, alias="groupId")
    room_id: Optional[str] = Field(default=None, alias="roomId")


class EventMessage(BaseModel):
    """Message body of an inbound event; only text messages are handled."""
    type: str = ""
    text: Optional[str] = None


class LineEvent(BaseModel):
    """Single webhook event."""
    type: str = ""
    message: Optional[EventMessage] = None
    source: EventSource = Field(default_factory=EventSource)
    reply_token: Optional[str] = Field(default=None, alias="replyToken")


class WebhookBody(BaseModel):
    """Webhook envelope; events stay raw and are decoded one by one by the bot."""
    destination: Optional[str] = None
    events: List[Any] = Field(default_factory=list)


@dataclass(frozen=True)
class Identity:
    """Sender identity derived from an event; never persisted."""
    external_user_id: Optional[str]
    is_group_context: bool
    group_or_room_id: Optional[str]

    @classmethod
    def from_event(cls, event: LineEvent) -> "Identity":
        source = event.source
        is_group = source.type in ("group", "room")
        return cls(
            external_user_id=source.user_id,
            is_group_context=is_group,
            group_or_room_id=(source.group_id or source.room_id) if is_group else None,
        )


@dataclass(frozen=True)
class UserRecord:
    user_id: str
    role: str = ROLE_USER
    blacklisted: bool = False
    branch: Optional[str] = None

    @property
    def is_manager(self) -> bool:
        return self.role == ROLE_MANAGER


@dataclass(frozen=True)
class Product:
    """Catalog entry decoded from the products table."""
    name: str
    sku: str
    units_per_box: float = 0
    unit_price: float = 0
    barcode: str = ""


@dataclass(frozen=True)
class StockLevel:
    box: int = 0
    piece: int = 0

    @property
    def is_empty(self) -> bool:
        return self.box <= 0 and self.piece <= 0


@dataclass(frozen=True)
class WarehouseStock:
    """Summed lot quantities for one warehouse of a (branch, sku)."""
    warehouse: str
    box: int = 0
    piece: int = 0

    @property
    def has_stock(self) -> bool:
        return self.box > 0 or self.piece > 0


@dataclass(frozen=True)
class QuickReplyOption:
    label: str
    text: str


@dataclass
class Reply:
    """Outbound reply: plain text, optionally with quick-reply buttons."""
    text: str
    quick_replies: List[QuickReplyOption] = field(default_factory=list)
