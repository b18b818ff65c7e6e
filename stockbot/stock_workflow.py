"""Stock mutation workflow for in/out chat commands.

Gates run in a fixed order and each one can end the command with a reply:
    1. permission   - only managers may add stock ("in")
    2. quantity     - box and piece cannot both be zero
    3. last product - the SKU comes from the user's last lookup in this branch;
                      senders without a platform user id are told to add the bot
    4. warehouse    - "out" without a warehouse asks when several hold stock
    5. mutation     - "out" consumes lots FIFO per unit, "in" adjusts the aggregate
    6. confirmation - reply with the moved quantity and the resulting stock
    7. notification - "out" events are pushed to the sheet without waiting

"out" issues one consumption call per nonzero unit (box, then piece). The two
calls are not atomic: if the second fails after the first succeeded the
outcome is "partial" and nothing is rolled back.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, List, Optional, Tuple

import httpx

from . import replies
from .command_parser import ACTION_IN, ChangeIntent
from .identity import Resolution
from .last_product_store import LastProductStore
from .models import Product, Reply, StockLevel
from .notifier import SheetNotifier, build_stock_event
from .repository import UOM_BOX, UOM_PIECE, InventoryRepository
from .supabase_client import ApiError
from .utils import mask_user_id

logger = logging.getLogger("stockbot.workflow")

UNSPECIFIED_WAREHOUSE = "未指定"
OUTCOME_OK = "ok"
OUTCOME_PARTIAL = "partial"
OUTCOME_FAILED = "failed"
UOM_LABELS = {UOM_BOX: "箱", UOM_PIECE: "件"}

MUTATION_ERRORS = (ApiError, httpx.HTTPError)


@dataclass
class MutationOutcome:
    """Result of the mutation step; "partial" means some calls were applied."""
    status: str
    stock: Optional[StockLevel] = None
    applied: List[Tuple[str, int]] = field(default_factory=list)
    failed: List[Tuple[str, int]] = field(default_factory=list)
    message: str = ""

    @property
    def moved(self) -> bool:
        return bool(self.applied)


def _error_text(exc: BaseException) -> str:
    return str(exc) or exc.__class__.__name__


def _describe(parts: List[Tuple[str, int]]) -> str:
    return "、".join(f"{qty} {UOM_LABELS.get(uom, uom)}" for uom, qty in parts)


class StockMutationWorkflow:
    def __init__(
        self,
        repository: InventoryRepository,
        last_products: LastProductStore,
        notifier: SheetNotifier,
        source_tag: str = "LINE",
        tz_name: str = "Asia/Taipei",
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        """Purpose: Wire the workflow to its data access, memory and notifier.
        Inputs/Outputs: Inputs are collaborators plus the source tag and sheet time
            zone; no return value.
        Side Effects / State: None at init.
        Dependencies: InventoryRepository, LastProductStore, SheetNotifier.
        Failure Modes: None at init.
        If Removed: In/out commands have no handler.
        Testing Notes: Build with in-memory fakes from tests/conftest.py.
        """
        # Keep collaborators; the clock stamps FIFO calls and sheet events.
        self._repository = repository
        self._last_products = last_products
        self._notifier = notifier
        self._source_tag = source_tag
        self._tz_name = tz_name
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    async def run(self, intent: ChangeIntent, resolution: Resolution) -> Reply:
        """Purpose: Execute an in/out command for the resolved sender.
        Inputs/Outputs: Inputs are a ChangeIntent and a bound Resolution; output is
            the Reply to send.
        Side Effects / State: Mutates remote stock; may schedule a sheet push.
        Dependencies: Gate order documented in the module docstring.
        Failure Modes: Mutation RPC errors become failure replies; lookups before
            the mutation propagate to the event boundary.
        If Removed: Stock cannot be adjusted from chat.
        Testing Notes: A non-manager "in" is rejected before any data access.
        """
        # Gates 1-3 need no remote writes.
        branch = resolution.branch or ""
        user_id = resolution.user_key
        if intent.action == ACTION_IN and not resolution.is_manager:
            return replies.text_reply(replies.PERMISSION_IN_TEXT)
        if intent.is_empty:
            return replies.text_reply(replies.NEED_QUANTITY_TEXT)
        if not user_id:
            return replies.text_reply(replies.NO_USER_TEXT)
        sku = await self._last_products.get_last(user_id, branch)
        if not sku:
            return replies.text_reply(replies.NEED_PRODUCT_TEXT)
        product = await self._repository.find_product_by_sku(sku) or Product(name=sku, sku=sku)

        if intent.action == ACTION_IN:
            outcome = await self._adjust(branch, product, intent, user_id)
            if outcome.status != OUTCOME_OK:
                return replies.failure(outcome.message)
            return replies.in_confirmation(product, intent.box, intent.piece, outcome.stock)

        warehouse = intent.warehouse
        if not warehouse:
            stocked = [item for item in await self._repository.warehouse_stock(branch, sku) if item.has_stock]
            if len(stocked) >= 2:
                logger.info("user=%s sku=%s warehouses=%d ask=warehouse", mask_user_id(user_id), sku, len(stocked))
                return replies.warehouse_choices(product, intent, stocked)
            warehouse = stocked[0].warehouse if stocked else UNSPECIFIED_WAREHOUSE

        outcome = await self._consume(branch, product, intent, warehouse, user_id)
        if outcome.moved:
            self._notify(branch, product, outcome, warehouse)
        if outcome.status == OUTCOME_OK:
            return replies.out_confirmation(product, intent.box, intent.piece, warehouse, outcome.stock)
        if outcome.status == OUTCOME_PARTIAL:
            return replies.partial_failure(
                product, _describe(outcome.applied), _describe(outcome.failed), outcome.message, outcome.stock
            )
        return replies.failure(outcome.message)

    async def _adjust(self, branch: str, product: Product, intent: ChangeIntent, user_id: str) -> MutationOutcome:
        # Inbound stock bypasses the lot model: one aggregate adjustment.
        try:
            echoed = await self._repository.change_inventory(
                branch, product.sku, intent.box, intent.piece, user_id, self._source_tag
            )
        except MUTATION_ERRORS as exc:
            logger.error(
                "user=%s branch=%s sku=%s action=in box=%d piece=%d error=%s",
                mask_user_id(user_id), branch, product.sku, intent.box, intent.piece, exc,
            )
            return MutationOutcome(status=OUTCOME_FAILED, message=_error_text(exc))
        stock = echoed if echoed is not None else await self._reread(branch, product.sku)
        logger.info("user=%s branch=%s sku=%s action=in box=%d piece=%d", mask_user_id(user_id), branch, product.sku, intent.box, intent.piece)
        return MutationOutcome(
            status=OUTCOME_OK,
            stock=stock,
            applied=[(UOM_BOX, intent.box), (UOM_PIECE, intent.piece)],
        )

    async def _consume(
        self, branch: str, product: Product, intent: ChangeIntent, warehouse: str, user_id: str
    ) -> MutationOutcome:
        """Purpose: Consume box then piece quantities from FIFO lots.
        Inputs/Outputs: Inputs are branch, product, intent, warehouse and sender;
            output is a MutationOutcome (ok, partial or failed).
        Side Effects / State: One remote consumption call per nonzero unit.
        Dependencies: repository.resolve_backing_user and consume_fifo.
        Failure Modes: An unmapped sender fails before any call; a failure after
            a successful call yields "partial" with re-read stock.
        If Removed: Stock-out commands do nothing.
        Testing Notes: Fail the piece call and check box stays consumed.
        """
        # The acting chat identity must map to a backing-system user.
        try:
            actor = await self._repository.resolve_backing_user(user_id)
        except MUTATION_ERRORS as exc:
            logger.error("user=%s action=out error=%s", mask_user_id(user_id), exc)
            return MutationOutcome(status=OUTCOME_FAILED, message=_error_text(exc))

        planned = [(uom, qty) for uom, qty in ((UOM_BOX, intent.box), (UOM_PIECE, intent.piece)) if qty > 0]
        applied: List[Tuple[str, int]] = []
        for index, (uom, qty) in enumerate(planned):
            try:
                await self._repository.consume_fifo(
                    branch, product.sku, uom, qty, warehouse, actor, self._source_tag, self._clock()
                )
            except MUTATION_ERRORS as exc:
                logger.error(
                    "user=%s branch=%s sku=%s action=out uom=%s qty=%d warehouse=%s applied=%s error=%s",
                    mask_user_id(user_id), branch, product.sku, uom, qty, warehouse, applied, exc,
                )
                if not applied:
                    return MutationOutcome(status=OUTCOME_FAILED, message=_error_text(exc))
                return MutationOutcome(
                    status=OUTCOME_PARTIAL,
                    stock=await self._reread(branch, product.sku),
                    applied=applied,
                    failed=planned[index:],
                    message=_error_text(exc),
                )
            applied.append((uom, qty))

        logger.info(
            "user=%s branch=%s sku=%s action=out box=%d piece=%d warehouse=%s",
            mask_user_id(user_id), branch, product.sku, intent.box, intent.piece, warehouse,
        )
        return MutationOutcome(status=OUTCOME_OK, stock=await self._reread(branch, product.sku), applied=applied)

    async def _reread(self, branch: str, sku: str) -> Optional[StockLevel]:
        # The mutation already happened; a failed re-read must not hide that.
        try:
            return await self._repository.get_stock(branch, sku)
        except MUTATION_ERRORS as exc:
            logger.warning("branch=%s sku=%s stock_reread_failed error=%s", branch, sku, exc)
            return None

    def _notify(self, branch: str, product: Product, outcome: MutationOutcome, warehouse: str) -> None:
        moved = dict(outcome.applied)
        payload = build_stock_event(
            branch,
            product,
            out_box=moved.get(UOM_BOX, 0),
            out_piece=moved.get(UOM_PIECE, 0),
            stock=outcome.stock or StockLevel(),
            warehouse=warehouse,
            tz_name=self._tz_name,
            moment=self._clock(),
        )
        self._notifier.notify(payload)
