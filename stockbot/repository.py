"""Typed data-access boundary over the inventory database.

The database schema labels most columns in Chinese. Every row is decoded here
into the dataclasses from models.py so nothing above this module touches a raw
column label.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Set

from .models import ROLE_MANAGER, ROLE_USER, Product, StockLevel, UserRecord, WarehouseStock
from .supabase_client import ApiError, SupabaseClient, eq, ilike, in_list
from .utils import as_float, as_int, escape_like, mask_user_id

logger = logging.getLogger("stockbot.db")

USERS_TABLE = "users"
GROUPS_TABLE = "line_groups"
PRODUCTS_TABLE = "products"
INVENTORY_TABLE = "inventory"
LOTS_TABLE = "inventory_lots"
LAST_PRODUCT_TABLE = "user_last_product"
USER_MAP_TABLE = "line_user_map"

RPC_CHANGE_INVENTORY = "exec_change_inventory_by_group_sku"
RPC_CONSUME_FIFO = "fifo_consume_inventory_lots"
RPC_APP_SETTINGS = "get_app_settings"

COL_BRANCH = "群組"
COL_ROLE = "角色"
COL_BLACKLIST = "黑名單"
COL_NAME = "貨品名稱"
COL_SKU = "貨品編號"
COL_BARCODE = "條碼"
COL_UNITS_PER_BOX = "箱入數"
COL_UNIT_PRICE = "單價"
COL_STOCK_BOX = "庫存箱數"
COL_STOCK_PIECE = "庫存散數"
COL_WAREHOUSE = "倉庫"
COL_LOT_BOX = "箱數"
COL_LOT_PIECE = "散數"
COL_CREATED_AT = "建立時間"

PRODUCT_COLUMNS = ",".join([COL_NAME, COL_SKU, COL_BARCODE, COL_UNITS_PER_BOX, COL_UNIT_PRICE])
MANAGER_ROLE_VALUES = {ROLE_MANAGER, "主管", "admin"}
TRUE_VALUES = {"true", "1", "yes", "y", "是"}

UOM_BOX = "box"
UOM_PIECE = "piece"


class UnmappedUserError(ApiError):
    """The chat identity has no backing-system user for lot consumption."""


@dataclass(frozen=True)
class ConsumeResult:
    consumed: float
    cost: float


def decode_user(row: Dict[str, Any]) -> UserRecord:
    role_raw = str(row.get(COL_ROLE) or "").strip().lower()
    blacklist_raw = row.get(COL_BLACKLIST)
    if isinstance(blacklist_raw, str):
        blacklisted = blacklist_raw.strip().lower() in TRUE_VALUES
    else:
        blacklisted = bool(blacklist_raw)
    return UserRecord(
        user_id=str(row.get("user_id") or ""),
        role=ROLE_MANAGER if role_raw in MANAGER_ROLE_VALUES else ROLE_USER,
        blacklisted=blacklisted,
        branch=(str(row.get(COL_BRANCH)).strip() or None) if row.get(COL_BRANCH) else None,
    )


def decode_product(row: Dict[str, Any]) -> Product:
    return Product(
        name=str(row.get(COL_NAME) or ""),
        sku=str(row.get(COL_SKU) or ""),
        units_per_box=as_float(row.get(COL_UNITS_PER_BOX)),
        unit_price=as_float(row.get(COL_UNIT_PRICE)),
        barcode=str(row.get(COL_BARCODE) or ""),
    )


def decode_stock(row: Optional[Dict[str, Any]]) -> StockLevel:
    if not row:
        return StockLevel()
    return StockLevel(box=as_int(row.get(COL_STOCK_BOX)), piece=as_int(row.get(COL_STOCK_PIECE)))


def _first_row(data: Any) -> Optional[Dict[str, Any]]:
    # RPCs answer with either a single object or a one-row set.
    if isinstance(data, list):
        return data[0] if data and isinstance(data[0], dict) else None
    return data if isinstance(data, dict) else None


class InventoryRepository:
    """Reads and writes the inventory schema through SupabaseClient."""

    def __init__(self, client: SupabaseClient) -> None:
        self._client = client

    async def get_user(self, user_id: str) -> Optional[UserRecord]:
        """Sender row by chat user id, or None when the sender is unknown."""
        rows = await self._client.select(
            USERS_TABLE,
            columns=f"user_id,{COL_ROLE},{COL_BLACKLIST},{COL_BRANCH}",
            filters={"user_id": eq(user_id)},
            limit=1,
        )
        return decode_user(rows[0]) if rows else None

    async def register_user(self, user_id: str) -> None:
        """Insert the default row for a first-contact individual sender."""
        await self._client.insert(
            USERS_TABLE,
            {"user_id": user_id, COL_ROLE: ROLE_USER, COL_BLACKLIST: False, COL_BRANCH: None},
        )
        logger.info("event=user_registered user=%s", mask_user_id(user_id))

    async def get_group_branch(self, group_id: str) -> Optional[str]:
        """Branch bound to a group or room, or None when unbound."""
        rows = await self._client.select(
            GROUPS_TABLE,
            columns=COL_BRANCH,
            filters={"line_group_id": eq(group_id)},
            limit=1,
        )
        if not rows:
            return None
        return str(rows[0].get(COL_BRANCH) or "").strip() or None

    async def find_products_by_name(self, keyword: str, limit: int) -> List[Product]:
        """Case-insensitive substring match on the product name, at most `limit` rows."""
        rows = await self._client.select(
            PRODUCTS_TABLE,
            columns=PRODUCT_COLUMNS,
            filters={COL_NAME: ilike(escape_like(keyword))},
            limit=limit,
        )
        return [decode_product(row) for row in rows]

    async def find_products_by_sku_like(self, code: str, limit: int) -> List[Product]:
        rows = await self._client.select(
            PRODUCTS_TABLE,
            columns=PRODUCT_COLUMNS,
            filters={COL_SKU: ilike(escape_like(code))},
            limit=limit,
        )
        return [decode_product(row) for row in rows]

    async def find_product_by_barcode(self, code: str) -> Optional[Product]:
        rows = await self._client.select(
            PRODUCTS_TABLE, columns=PRODUCT_COLUMNS, filters={COL_BARCODE: eq(code)}, limit=1
        )
        return decode_product(rows[0]) if rows else None

    async def find_product_by_sku(self, code: str) -> Optional[Product]:
        """Exact SKU match."""
        rows = await self._client.select(
            PRODUCTS_TABLE, columns=PRODUCT_COLUMNS, filters={COL_SKU: eq(code)}, limit=1
        )
        return decode_product(rows[0]) if rows else None

    async def get_stock(self, branch: str, sku: str) -> StockLevel:
        """Aggregate stock for (branch, sku); a missing row reads as zero/zero."""
        rows = await self._client.select(
            INVENTORY_TABLE,
            columns=f"{COL_STOCK_BOX},{COL_STOCK_PIECE}",
            filters={COL_BRANCH: eq(branch), COL_SKU: eq(sku)},
            limit=1,
        )
        return decode_stock(rows[0] if rows else None)

    async def in_stock_skus(self, branch: str, skus: Iterable[str]) -> Set[str]:
        """Purpose: Tell which of the candidate SKUs hold stock in the branch.
        Inputs/Outputs: Inputs are the branch code and candidate SKUs; output is
            the subset with box > 0 or piece > 0.
        Side Effects / State: None; read fresh on every call.
        Dependencies: Reads the inventory table with an `in.(...)` SKU filter.
        Failure Modes: ApiError on remote failure.
        If Removed: Regular users would see products their branch cannot sell.
        Testing Notes: The request carries 貨品編號=in.("A","B") and no query is
            sent for an empty candidate list.
        """
        # Bounded by the candidates, so the server's row cap never truncates it.
        candidates = sorted({sku for sku in skus if sku})
        if not candidates:
            return set()
        rows = await self._client.select(
            INVENTORY_TABLE,
            columns=COL_SKU,
            filters={COL_BRANCH: eq(branch), COL_SKU: in_list(candidates)},
            or_filter=f"({COL_STOCK_BOX}.gt.0,{COL_STOCK_PIECE}.gt.0)",
        )
        return {str(row.get(COL_SKU)) for row in rows if row.get(COL_SKU)}

    async def warehouse_stock(self, branch: str, sku: str) -> List[WarehouseStock]:
        """Purpose: Sum lot quantities per warehouse for one (branch, sku).
        Inputs/Outputs: Inputs are branch code and SKU; output is one WarehouseStock
            per warehouse, sorted by warehouse name.
        Side Effects / State: None; read-only aggregation.
        Dependencies: Reads the lots table.
        Failure Modes: ApiError on remote failure.
        If Removed: The workflow cannot decide whether to ask which warehouse.
        Testing Notes: Two lots in the same warehouse collapse into one entry.
        """
        # Aggregate lot rows in memory; the lot set per SKU is small.
        rows = await self._client.select(
            LOTS_TABLE,
            columns=f"{COL_WAREHOUSE},{COL_LOT_BOX},{COL_LOT_PIECE}",
            filters={COL_BRANCH: eq(branch), COL_SKU: eq(sku)},
        )
        totals: Dict[str, List[int]] = {}
        for row in rows:
            name = str(row.get(COL_WAREHOUSE) or "").strip() or "未指定"
            bucket = totals.setdefault(name, [0, 0])
            bucket[0] += as_int(row.get(COL_LOT_BOX))
            bucket[1] += as_int(row.get(COL_LOT_PIECE))
        return [WarehouseStock(warehouse=name, box=box, piece=piece) for name, (box, piece) in sorted(totals.items())]

    async def find_last_sku(self, user_id: str, branch: str) -> Optional[str]:
        """Most recent remembered SKU for (user, branch)."""
        rows = await self._client.select(
            LAST_PRODUCT_TABLE,
            columns=COL_SKU,
            filters={"user_id": eq(user_id), COL_BRANCH: eq(branch)},
            order=f"{COL_CREATED_AT}.desc",
            limit=1,
        )
        if not rows:
            return None
        return str(rows[0].get(COL_SKU) or "") or None

    async def last_selection_exists(self, user_id: str, branch: str) -> bool:
        rows = await self._client.select(
            LAST_PRODUCT_TABLE,
            columns="id",
            filters={"user_id": eq(user_id), COL_BRANCH: eq(branch)},
            limit=1,
        )
        return bool(rows)

    async def update_last_selection(self, user_id: str, branch: str, sku: str, at: datetime) -> None:
        await self._client.update(
            LAST_PRODUCT_TABLE,
            {COL_SKU: sku, COL_CREATED_AT: at.isoformat()},
            filters={"user_id": eq(user_id), COL_BRANCH: eq(branch)},
        )

    async def insert_last_selection(self, user_id: str, branch: str, sku: str, at: datetime) -> None:
        await self._client.insert(
            LAST_PRODUCT_TABLE,
            {"user_id": user_id, COL_BRANCH: branch, COL_SKU: sku, COL_CREATED_AT: at.isoformat()},
        )

    async def change_inventory(
        self, branch: str, sku: str, delta_box: int, delta_piece: int, user_id: str, source: str
    ) -> Optional[StockLevel]:
        """Purpose: Apply a signed box/piece adjustment to the branch aggregate.
        Inputs/Outputs: Inputs are branch, SKU, the two deltas, the acting chat
            user id and a source tag; output is the new StockLevel when the
            procedure echoes it, else None.
        Side Effects / State: Calls exec_change_inventory_by_group_sku, which
            writes the aggregate row and its change log.
        Dependencies: SupabaseClient.rpc.
        Failure Modes: ApiError with the procedure's message (permission, missing
            row); httpx.HTTPError on transport failure.
        If Removed: "in" commands cannot add stock.
        Testing Notes: A 204 reply decodes to None so the caller re-reads stock.
        """
        # Lots are not touched here; inbound stock is aggregate-only.
        data = await self._client.rpc(
            RPC_CHANGE_INVENTORY,
            {
                "p_group": branch,
                "p_sku": sku,
                "p_delta_box": delta_box,
                "p_delta_piece": delta_piece,
                "p_user_id": user_id,
                "p_source": source,
            },
        )
        row = _first_row(data)
        if not row or "new_box" not in row:
            return None
        return StockLevel(box=as_int(row.get("new_box")), piece=as_int(row.get("new_piece")))

    async def resolve_backing_user(self, line_user_id: str) -> str:
        """Purpose: Map a chat user id to the backing-system user that owns lot moves.
        Inputs/Outputs: Input is the chat user id; output is the backing user UUID.
        Side Effects / State: None; read-only.
        Dependencies: Reads the line_user_map table.
        Failure Modes: Raises UnmappedUserError when no mapping exists; ApiError
            on remote failure.
        If Removed: FIFO consumption has no actor and "out" cannot run.
        Testing Notes: An empty result set raises UnmappedUserError.
        """
        # An empty auth_user_id counts as unmapped.
        rows = await self._client.select(
            USER_MAP_TABLE,
            columns="auth_user_id",
            filters={"line_user_id": eq(line_user_id)},
            limit=1,
        )
        backing = str(rows[0].get("auth_user_id") or "") if rows else ""
        if not backing:
            raise UnmappedUserError("此 LINE 帳號尚未對應系統使用者，無法扣庫存")
        return backing

    async def consume_fifo(
        self,
        branch: str,
        sku: str,
        uom: str,
        quantity: int,
        warehouse: str,
        actor_uuid: str,
        source: str,
        at: Optional[datetime] = None,
    ) -> ConsumeResult:
        """Purpose: Consume `quantity` of one unit of measure from the oldest lots first.
        Inputs/Outputs: Inputs are branch, SKU, unit ("box" or "piece"), quantity,
            warehouse, backing user UUID, source tag and an optional timestamp;
            output is a ConsumeResult with consumed quantity and cost.
        Side Effects / State: Calls fifo_consume_inventory_lots, which reduces
            lots and the aggregate in one server-side transaction.
        Dependencies: SupabaseClient.rpc.
        Failure Modes: ApiError when stock is insufficient or the warehouse is
            unknown; httpx.HTTPError on transport failure.
        If Removed: "out" commands cannot remove stock.
        Testing Notes: Inspect p_uom, p_qty, p_warehouse and p_at in the posted JSON.
        """
        # One call per unit; callers sequence box before piece.
        moment = at or datetime.now(timezone.utc)
        data = await self._client.rpc(
            RPC_CONSUME_FIFO,
            {
                "p_group": branch,
                "p_sku": sku,
                "p_uom": uom,
                "p_qty": quantity,
                "p_warehouse": warehouse,
                "p_user_id": actor_uuid,
                "p_source": source,
                "p_at": moment.isoformat(),
            },
        )
        row = _first_row(data) or {}
        return ConsumeResult(consumed=as_float(row.get("consumed")), cost=as_float(row.get("cost")))

    async def fetch_settings(self) -> Dict[str, str]:
        """Key/value settings stored server-side."""
        data = await self._client.rpc(RPC_APP_SETTINGS, {})
        settings: Dict[str, str] = {}
        if isinstance(data, dict):
            data = [{"key": key, "value": value} for key, value in data.items()]
        for row in data or []:
            if isinstance(row, dict) and row.get("key"):
                settings[str(row["key"])] = "" if row.get("value") is None else str(row["value"])
        return settings
