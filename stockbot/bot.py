"""Per-event handling for the inventory bot.

Flow for one event:
    Parse:    text -> intent; non-text or non-command events stop silently.
    Resolve:  sender -> role + branch; blocked senders stop with no reply,
              unbound senders get the "not yet bound" reply.
    Dispatch: lookups (query / barcode / SKU) or the stock mutation workflow.
    Send:     at most one reply, addressed by the event's reply token.

A batch is processed sequentially and each event is decoded on its own, so a
malformed event is logged and skipped without touching its siblings. An
exception while handling is logged, a generic reply is attempted, and the
next event still runs.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional

from pydantic import ValidationError

from . import replies
from .command_parser import BarcodeIntent, ChangeIntent, HelpIntent, Intent, QueryIntent, SkuIntent, parse_command
from .identity import IdentityResolver, Resolution
from .last_product_store import LastProductStore
from .line_client import LineReplyClient
from .models import LineEvent, Product, Reply
from .pipeline import Step, StepRunner
from .product_lookup import ProductLookup
from .repository import InventoryRepository
from .stock_workflow import StockMutationWorkflow
from .utils import mask_user_id

logger = logging.getLogger("stockbot.bot")


@dataclass
class EventContext:
    """Mutable state passed through the event steps."""
    event: LineEvent
    text: str = ""
    intent: Optional[Intent] = None
    resolution: Optional[Resolution] = None
    reply: Optional[Reply] = None
    done: bool = False
    trace: List[Dict[str, str]] = field(default_factory=list)

    def log(self, step: str, detail: str) -> None:
        self.trace.append({"step": step, "detail": detail})

    def finish(self, reply: Optional[Reply] = None) -> None:
        self.reply = reply
        self.done = True


class InventoryBot:
    def __init__(
        self,
        repository: InventoryRepository,
        resolver: IdentityResolver,
        lookup: ProductLookup,
        last_products: LastProductStore,
        workflow: StockMutationWorkflow,
        messenger: LineReplyClient,
    ) -> None:
        """Purpose: Assemble the event pipeline from its collaborators.
        Inputs/Outputs: Inputs are the repository, resolver, lookup, last-product
            store, mutation workflow and reply sender; no return value.
        Side Effects / State: Builds the StepRunner.
        Dependencies: pipeline.StepRunner and the step methods below.
        Failure Modes: None at init.
        If Removed: The webhook has nothing to dispatch events to.
        Testing Notes: Build with fakes and feed LineEvent objects.
        """
        # The send step always runs so halted steps can still answer.
        self._repository = repository
        self._resolver = resolver
        self._lookup = lookup
        self._last_products = last_products
        self._workflow = workflow
        self._messenger = messenger
        self._runner = StepRunner(
            [
                Step("parse", self._step_parse),
                Step("resolve", self._step_resolve),
                Step("dispatch", self._step_dispatch),
                Step("send", self._step_send, always_run=True),
            ]
        )

    async def handle_batch(self, events: Iterable[Any]) -> int:
        """Purpose: Process every event of a webhook batch in order.
        Inputs/Outputs: Input is an iterable of raw event dicts or LineEvent
            objects; output is the number of events that completed without an
            exception.
        Side Effects / State: Remote reads/writes and replies per event.
        Dependencies: handle_event; the reply sender for the fallback reply.
        Failure Modes: Never raises for per-event errors. Undecodable events are
            logged and skipped; handling errors are logged and a generic reply is
            attempted.
        If Removed: One failing event would abort the rest of the batch.
        Testing Notes: Make the second of three events raise (or be malformed) and
            check the first and third still reply.
        """
        # Per-event isolation: one failure never blocks its siblings.
        handled = 0
        for index, raw in enumerate(events):
            try:
                event = raw if isinstance(raw, LineEvent) else LineEvent.model_validate(raw)
            except ValidationError as exc:
                logger.warning("event=%d rejected errors=%d detail=%s", index, exc.error_count(), exc.errors()[:1])
                continue
            try:
                await self.handle_event(event)
                handled += 1
            except Exception:
                logger.exception("event handling failed user=%s", mask_user_id(event.source.user_id))
                await self._reply_error(event)
        return handled

    async def handle_event(self, event: LineEvent) -> EventContext:
        context = EventContext(event=event)
        await self._runner.run(context)
        return context

    async def _reply_error(self, event: LineEvent) -> None:
        if not event.reply_token:
            return
        try:
            await self._messenger.reply(event.reply_token, replies.text_reply(replies.GENERIC_ERROR_TEXT))
        except Exception:
            logger.exception("fallback reply failed user=%s", mask_user_id(event.source.user_id))

    async def _step_parse(self, context: EventContext) -> None:
        event = context.event
        if event.type != "message" or event.message is None or event.message.type != "text":
            context.finish()
            return
        context.text = event.message.text or ""
        context.intent = parse_command(context.text)
        if context.intent is None:
            logger.debug("user=%s not_a_command", mask_user_id(event.source.user_id))
            context.finish()
            return
        context.log("parse", type(context.intent).__name__)

    async def _step_resolve(self, context: EventContext) -> None:
        """Purpose: Resolve the sender and stop for blocked or unbound senders.
        Inputs/Outputs: Input is the EventContext; sets context.resolution.
        Side Effects / State: May auto-register a 1:1 sender via the resolver.
        Dependencies: IdentityResolver.
        Failure Modes: Lookup errors propagate to handle_batch.
        If Removed: Commands run without a branch scope.
        Testing Notes: Blocked senders produce no reply; unbound ones do.
        """
        # Blocked is silent to the sender but visible in the log.
        resolution = await self._resolver.resolve(context.event)
        context.resolution = resolution
        if resolution.blocked:
            logger.info("user=%s dropped=blocked", mask_user_id(resolution.identity.external_user_id))
            context.finish()
            return
        if isinstance(context.intent, HelpIntent):
            context.finish(replies.text_reply(replies.HELP_TEXT))
            return
        if not resolution.branch:
            logger.info("user=%s unbound group=%s", mask_user_id(resolution.user_key), resolution.identity.is_group_context)
            context.finish(replies.text_reply(resolution.unbound_message))
            return
        context.log("resolve", f"branch={resolution.branch} role={resolution.role}")

    async def _step_dispatch(self, context: EventContext) -> None:
        intent = context.intent
        resolution = context.resolution
        logger.info(
            "user=%s branch=%s role=%s intent=%s",
            mask_user_id(resolution.user_key), resolution.branch, resolution.role, type(intent).__name__,
        )
        if isinstance(intent, ChangeIntent):
            context.reply = await self._workflow.run(intent, resolution)
        elif isinstance(intent, QueryIntent):
            products = await self._lookup.by_name(intent.keyword, resolution.branch, resolution.is_manager)
            context.reply = await self._present(products, "query", resolution)
        elif isinstance(intent, BarcodeIntent):
            products = await self._lookup.by_barcode(intent.code, resolution.branch, resolution.is_manager)
            context.reply = await self._present(products, "barcode", resolution)
        elif isinstance(intent, SkuIntent):
            products = await self._lookup.by_sku(intent.code, resolution.branch, resolution.is_manager)
            context.reply = await self._present(products, "sku", resolution)
        context.done = True

    async def _step_send(self, context: EventContext) -> None:
        if context.reply is None or not context.event.reply_token:
            return
        await self._messenger.reply(context.event.reply_token, context.reply)
        context.log("send", context.reply.text.splitlines()[0] if context.reply.text else "")

    async def _present(self, products: List[Product], kind: str, resolution: Resolution) -> Reply:
        """Purpose: Turn lookup results into a reply and remember a single hit.
        Inputs/Outputs: Inputs are the visible products, the lookup kind and the
            resolution; output is the Reply.
        Side Effects / State: Upserts the last selected product for one visible,
            displayable result.
        Dependencies: repository.get_stock, LastProductStore.upsert, replies.
        Failure Modes: ApiError propagates to handle_batch.
        If Removed: Lookups return nothing and in/out commands lose their target.
        Testing Notes: A regular user sees "no stock" for a zero/zero product and
            the last product is not updated.
        """
        # Zero -> not found, many -> selection prompt, one -> detail.
        if not products:
            return replies.not_found(kind, resolution.is_manager)
        if len(products) > 1:
            return replies.product_choices(products)
        product = products[0]
        stock = await self._repository.get_stock(resolution.branch, product.sku)
        if not resolution.is_manager and stock.is_empty:
            return replies.text_reply(replies.NO_STOCK_TEXT)
        detail = replies.product_detail(product, stock, show_price=resolution.is_manager)
        if not resolution.user_key:
            # Nothing to key the selection on; show the detail without remembering it.
            detail.text += "\n" + replies.NO_USER_TEXT
            return detail
        await self._last_products.upsert(resolution.user_key, resolution.branch, product.sku)
        return detail
