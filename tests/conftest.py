"""
Pytest fixtures for stockbot tests.

Provides an in-memory repository with a small catalog for one branch, fake
reply and notification sinks, and the assembled bot.
"""

from datetime import datetime, timezone
from typing import Dict, List, Optional, Set, Tuple

import pytest

from stockbot.bot import InventoryBot
from stockbot.identity import IdentityResolver
from stockbot.last_product_store import LastProductStore
from stockbot.models import ROLE_MANAGER, ROLE_USER, LineEvent, Product, StockLevel, UserRecord, WarehouseStock
from stockbot.product_lookup import ProductLookup
from stockbot.repository import UOM_BOX, ConsumeResult, UnmappedUserError
from stockbot.stock_workflow import StockMutationWorkflow
from stockbot.supabase_client import ApiError

BRANCH = "台北店"
MANAGER_ID = "Umanager000000001"
USER_ID = "Uuser0000000000001"
BLOCKED_ID = "Ublocked000000001"
GROUP_ID = "Cgroup00000000001"
FIXED_NOW = datetime(2026, 10, 18, 6, 30, tzinfo=timezone.utc)


class FakeRepository:
    """In-memory stand-in for InventoryRepository."""

    def __init__(self) -> None:
        self.users: Dict[str, UserRecord] = {}
        self.groups: Dict[str, str] = {}
        self.products: List[Product] = []
        self.stock: Dict[Tuple[str, str], StockLevel] = {}
        self.lots: Dict[Tuple[str, str], Dict[str, List[int]]] = {}
        self.last: Dict[Tuple[str, str], Tuple[str, datetime]] = {}
        self.user_map: Dict[str, str] = {}
        self.settings: Dict[str, str] = {}
        self.registered: List[str] = []
        self.calls: List[tuple] = []
        self.echo_change = True
        self.fail_consume_uom: Optional[str] = None
        self.fail_change = False
        self.raise_on_get_user: Optional[str] = None

    async def get_user(self, user_id: str) -> Optional[UserRecord]:
        self.calls.append(("get_user", user_id))
        if self.raise_on_get_user and user_id == self.raise_on_get_user:
            raise RuntimeError("boom")
        return self.users.get(user_id)

    async def register_user(self, user_id: str) -> None:
        self.registered.append(user_id)
        self.users[user_id] = UserRecord(user_id=user_id)

    async def get_group_branch(self, group_id: str) -> Optional[str]:
        return self.groups.get(group_id)

    async def find_products_by_name(self, keyword: str, limit: int) -> List[Product]:
        self.calls.append(("find_products_by_name", keyword, limit))
        needle = keyword.lower()
        return [p for p in self.products if needle in p.name.lower()][:limit]

    async def find_products_by_sku_like(self, code: str, limit: int) -> List[Product]:
        self.calls.append(("find_products_by_sku_like", code, limit))
        needle = code.lower()
        return [p for p in self.products if needle in p.sku.lower()][:limit]

    async def find_product_by_barcode(self, code: str) -> Optional[Product]:
        return next((p for p in self.products if p.barcode == code), None)

    async def find_product_by_sku(self, code: str) -> Optional[Product]:
        return next((p for p in self.products if p.sku == code), None)

    async def get_stock(self, branch: str, sku: str) -> StockLevel:
        return self.stock.get((branch, sku), StockLevel())

    async def in_stock_skus(self, branch: str, skus) -> Set[str]:
        candidates = set(skus)
        self.calls.append(("in_stock_skus", branch, frozenset(candidates)))
        return {
            sku for (b, sku), level in self.stock.items() if b == branch and sku in candidates and not level.is_empty
        }

    async def warehouse_stock(self, branch: str, sku: str) -> List[WarehouseStock]:
        self.calls.append(("warehouse_stock", branch, sku))
        lots = self.lots.get((branch, sku), {})
        return [WarehouseStock(name, box, piece) for name, (box, piece) in sorted(lots.items())]

    async def find_last_sku(self, user_id: str, branch: str) -> Optional[str]:
        entry = self.last.get((user_id, branch))
        return entry[0] if entry else None

    async def last_selection_exists(self, user_id: str, branch: str) -> bool:
        return (user_id, branch) in self.last

    async def update_last_selection(self, user_id: str, branch: str, sku: str, at: datetime) -> None:
        self.calls.append(("update_last_selection", user_id, branch, sku))
        self.last[(user_id, branch)] = (sku, at)

    async def insert_last_selection(self, user_id: str, branch: str, sku: str, at: datetime) -> None:
        self.calls.append(("insert_last_selection", user_id, branch, sku))
        self.last[(user_id, branch)] = (sku, at)

    async def change_inventory(self, branch, sku, delta_box, delta_piece, user_id, source) -> Optional[StockLevel]:
        self.calls.append(("change_inventory", branch, sku, delta_box, delta_piece, user_id, source))
        if self.fail_change:
            raise ApiError("permission denied for function", status=403)
        current = self.stock.get((branch, sku), StockLevel())
        updated = StockLevel(current.box + delta_box, current.piece + delta_piece)
        self.stock[(branch, sku)] = updated
        return updated if self.echo_change else None

    async def resolve_backing_user(self, line_user_id: str) -> str:
        backing = self.user_map.get(line_user_id)
        if not backing:
            raise UnmappedUserError("此 LINE 帳號尚未對應系統使用者，無法扣庫存")
        return backing

    async def consume_fifo(self, branch, sku, uom, quantity, warehouse, actor_uuid, source, at=None) -> ConsumeResult:
        self.calls.append(("consume_fifo", branch, sku, uom, quantity, warehouse, actor_uuid, source))
        if self.fail_consume_uom == uom:
            raise ApiError("庫存不足", status=400)
        current = self.stock.get((branch, sku), StockLevel())
        if uom == UOM_BOX:
            self.stock[(branch, sku)] = StockLevel(current.box - quantity, current.piece)
        else:
            self.stock[(branch, sku)] = StockLevel(current.box, current.piece - quantity)
        bucket = self.lots.get((branch, sku), {}).get(warehouse)
        if bucket is not None:
            bucket[0 if uom == UOM_BOX else 1] -= quantity
        return ConsumeResult(consumed=quantity, cost=quantity * 10.0)

    async def fetch_settings(self) -> Dict[str, str]:
        return dict(self.settings)

    def call_names(self) -> List[str]:
        return [call[0] for call in self.calls]


class FakeMessenger:
    def __init__(self) -> None:
        self.sent: List[tuple] = []
        self.fail_tokens: Set[str] = set()

    async def reply(self, reply_token, reply) -> None:
        if reply_token in self.fail_tokens:
            raise ApiError("Invalid reply token", status=400)
        self.sent.append((reply_token, reply))

    def texts(self) -> List[str]:
        return [reply.text for _, reply in self.sent]


class FakeNotifier:
    def __init__(self) -> None:
        self.payloads: List[dict] = []

    def notify(self, payload: dict) -> None:
        self.payloads.append(payload)


@pytest.fixture
def repo():
    """Repository seeded with one branch, four products and two warehouses."""
    repository = FakeRepository()
    repository.users = {
        MANAGER_ID: UserRecord(MANAGER_ID, ROLE_MANAGER, False, BRANCH),
        USER_ID: UserRecord(USER_ID, ROLE_USER, False, BRANCH),
        BLOCKED_ID: UserRecord(BLOCKED_ID, ROLE_USER, True, BRANCH),
    }
    repository.groups = {GROUP_ID: BRANCH}
    repository.products = [
        Product("可口可樂 330ml", "AG030", 24, 15, "4710018000104"),
        Product("可樂果 原味", "AG031", 12, 20, "4710088410139"),
        Product("百事可樂 600ml", "AG032", 24, 25, ""),
        Product("綠茶 無糖", "BT100", 24, 18, "4710018100105"),
    ]
    repository.stock = {
        (BRANCH, "AG030"): StockLevel(5, 3),
        (BRANCH, "AG031"): StockLevel(2, 0),
        (BRANCH, "AG032"): StockLevel(0, 0),
        (BRANCH, "BT100"): StockLevel(1, 0),
    }
    repository.lots = {
        (BRANCH, "AG030"): {"總倉": [3, 1], "門市倉": [2, 2]},
        (BRANCH, "BT100"): {"總倉": [1, 0]},
    }
    repository.user_map = {MANAGER_ID: "7a6f0c1e-0000-4000-8000-000000000001", USER_ID: "7a6f0c1e-0000-4000-8000-000000000002"}
    return repository


@pytest.fixture
def messenger():
    return FakeMessenger()


@pytest.fixture
def notifier():
    return FakeNotifier()


@pytest.fixture
def last_products(repo):
    return LastProductStore(repo, clock=lambda: FIXED_NOW)


@pytest.fixture
def workflow(repo, last_products, notifier):
    return StockMutationWorkflow(repo, last_products, notifier, source_tag="LINE", clock=lambda: FIXED_NOW)


@pytest.fixture
def bot(repo, last_products, workflow, messenger):
    return InventoryBot(
        repository=repo,
        resolver=IdentityResolver(repo),
        lookup=ProductLookup(repo),
        last_products=last_products,
        workflow=workflow,
        messenger=messenger,
    )


@pytest.fixture
def make_event():
    """Factory for text message events in 1:1 or group context."""

    def _make(text, user_id=USER_ID, group_id=None, token="reply-token", event_type="message"):
        source = {"type": "group", "groupId": group_id, "userId": user_id} if group_id else {"type": "user", "userId": user_id}
        return LineEvent(
            **{
                "type": event_type,
                "message": {"type": "text", "text": text},
                "source": source,
                "replyToken": token,
            }
        )

    return _make
