from __future__ import annotations

import logging
import os
from contextlib import asynccontextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

import httpx
import uvicorn
from dotenv import load_dotenv
from fastapi import FastAPI, Request
from fastapi.responses import PlainTextResponse

from .bot import InventoryBot
from .config import Settings, load_settings
from .identity import IdentityResolver
from .last_product_store import LastProductStore
from .line_client import SIGNATURE_HEADER, LineReplyClient, verify_signature
from .models import WebhookBody
from .notifier import SheetNotifier, SinkEndpointResolver
from .product_lookup import ProductLookup
from .repository import InventoryRepository
from .stock_workflow import StockMutationWorkflow
from .supabase_client import SupabaseClient

BASE_DIR = Path(__file__).resolve().parent
ENV_PATH = BASE_DIR / ".." / ".env"
if ENV_PATH.exists():
    load_dotenv(ENV_PATH, override=True)

log_level_name = os.getenv("LOG_LEVEL", "INFO").upper()
log_level = getattr(logging, log_level_name, logging.INFO)
if not logging.getLogger().handlers:
    logging.basicConfig(
        level=log_level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )

logging.getLogger("stockbot").setLevel(log_level)
logger = logging.getLogger("stockbot.app")


@dataclass
class Components:
    bot: InventoryBot
    notifier: SheetNotifier


def build_components(settings: Settings, http: httpx.AsyncClient) -> Components:
    """Purpose: Construct the bot and its collaborators from settings.
    Inputs/Outputs: Inputs are Settings and the shared AsyncClient; output is Components.
    Side Effects / State: None beyond object construction.
    Dependencies: Every stockbot service module.
    Failure Modes: Missing LINE or Supabase credentials raise ValueError.
    If Removed: The webhook has no bot to dispatch to.
    Testing Notes: Pass a MockTransport-backed client and fake credentials.
    """
    # The sink endpoint falls back to server-side settings when not configured.
    database = SupabaseClient(settings.supabase_url, settings.supabase_service_role_key, http)
    repository = InventoryRepository(database)
    resolver = SinkEndpointResolver(
        static_url=settings.sheet_webhook_url,
        static_secret=settings.sheet_webhook_secret,
        settings_loader=repository.fetch_settings,
    )
    notifier = SheetNotifier(http, resolver, timeout=settings.http_timeout)
    last_products = LastProductStore(repository)
    workflow = StockMutationWorkflow(
        repository,
        last_products,
        notifier,
        source_tag=settings.change_source_tag,
        tz_name=settings.notify_timezone,
    )
    bot = InventoryBot(
        repository=repository,
        resolver=IdentityResolver(repository, default_branch=settings.default_branch),
        lookup=ProductLookup(repository),
        last_products=last_products,
        workflow=workflow,
        messenger=LineReplyClient(http, settings.line_channel_access_token, settings.line_api_base),
    )
    return Components(bot=bot, notifier=notifier)


def create_app(settings: Optional[Settings] = None, bot: Optional[InventoryBot] = None) -> FastAPI:
    """Build the FastAPI app; a prebuilt `bot` skips client construction (tests)."""
    settings = settings or load_settings()
    if not settings.line_channel_secret:
        logger.warning("LINE_CHANNEL_SECRET is not set; every webhook POST will be rejected")

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if bot is not None:
            app.state.bot = bot
            yield
            return
        async with httpx.AsyncClient(timeout=settings.http_timeout, follow_redirects=True) as http:
            components = build_components(settings, http)
            app.state.bot = components.bot
            logger.info("stockbot ready default_branch=%s", settings.default_branch or "-")
            yield
            await components.notifier.drain()

    app = FastAPI(title="Stock Bot Webhook", lifespan=lifespan)

    @app.get("/", response_class=PlainTextResponse)
    @app.get("/health", response_class=PlainTextResponse)
    async def health() -> str:
        return "OK"

    @app.get("/webhook", response_class=PlainTextResponse)
    async def webhook_check() -> str:
        return "OK"

    @app.post("/webhook", response_class=PlainTextResponse)
    async def webhook(request: Request) -> PlainTextResponse:
        """Purpose: Receive a batch of platform events and process them in order.
        Inputs/Outputs: Input is the raw request; output is "OK" with 200 for any
            signed request, 401 for an unsigned or mis-signed one.
        Side Effects / State: Runs InventoryBot.handle_batch.
        Dependencies: verify_signature; WebhookBody for the envelope; app.state.bot.
        Failure Modes: Undecodable bodies are logged and still acknowledged so the
            platform does not redeliver the batch.
        If Removed: The bot receives no messages.
        Testing Notes: Post three signed events where the second fails; expect 200
            and full handling of the first and third.
        """
        # Signature first; nothing is decoded or dispatched for a forged body.
        raw = await request.body()
        if not verify_signature(raw, request.headers.get(SIGNATURE_HEADER), settings.line_channel_secret):
            logger.warning("webhook signature rejected bytes=%d", len(raw))
            return PlainTextResponse("Invalid signature", status_code=401)
        try:
            body = WebhookBody.model_validate_json(raw)
        except ValueError as exc:
            logger.warning("webhook body rejected error=%s", exc)
            return PlainTextResponse("OK")
        handled = await request.app.state.bot.handle_batch(body.events)
        logger.debug("webhook events=%d handled=%d", len(body.events), handled)
        return PlainTextResponse("OK")

    return app


app = create_app()


if __name__ == "__main__":
    uvicorn.run("stockbot.app:app", host="0.0.0.0", port=int(os.getenv("PORT", "3000")))
