"""Fire-and-forget push of stock events to the spreadsheet webhook."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, Optional, Set

import httpx

from .models import Product, StockLevel
from .utils import format_local_timestamp

logger = logging.getLogger("stockbot.notifier")

UNRESOLVED = object()
URL_SETTING_KEYS = ("sheet_webhook_url", "SHEET_WEBHOOK_URL")
SECRET_SETTING_KEYS = ("sheet_webhook_secret", "SHEET_WEBHOOK_SECRET")

SettingsLoader = Callable[[], Awaitable[Dict[str, str]]]


@dataclass(frozen=True)
class SinkEndpoint:
    url: str
    secret: str


def _first_value(settings: Dict[str, str], keys: tuple) -> str:
    for key in keys:
        value = (settings.get(key) or "").strip()
        if value:
            return value
    return ""


class SinkEndpointResolver:
    """Resolves the sink URL and secret at most once per process.

    Static configuration wins. When the URL is not configured statically the
    server-side settings are fetched once. A missing result is remembered, so
    the "disabled" warning is logged a single time.
    """

    def __init__(
        self,
        static_url: str = "",
        static_secret: str = "",
        settings_loader: Optional[SettingsLoader] = None,
    ) -> None:
        self._static_url = static_url
        self._static_secret = static_secret
        self._settings_loader = settings_loader
        self._state: Any = UNRESOLVED
        self._lock = asyncio.Lock()

    @property
    def is_resolved(self) -> bool:
        return self._state is not UNRESOLVED

    async def resolve(self) -> Optional[SinkEndpoint]:
        """Purpose: Return the cached endpoint, resolving it on first use.
        Inputs/Outputs: No inputs; output is a SinkEndpoint or None when disabled.
        Side Effects / State: Caches the result for the process lifetime.
        Dependencies: Optional async settings loader (repository.fetch_settings).
        Failure Modes: Loader errors are logged and treated as "not configured".
        If Removed: The notifier cannot find its target.
        Testing Notes: Two resolve() calls invoke the loader once.
        """
        # Double-checked under the lock so concurrent callers share one fetch.
        if self._state is not UNRESOLVED:
            return self._state
        async with self._lock:
            if self._state is UNRESOLVED:
                self._state = await self._load()
        return self._state

    async def _load(self) -> Optional[SinkEndpoint]:
        url, secret = self._static_url, self._static_secret
        if not url and self._settings_loader is not None:
            try:
                remote = await self._settings_loader()
            except Exception as exc:
                logger.warning("sink settings fetch failed error=%s", exc)
                remote = {}
            url = _first_value(remote, URL_SETTING_KEYS)
            secret = secret or _first_value(remote, SECRET_SETTING_KEYS)
        if not url:
            logger.warning("sheet sink not configured; stock events will not be pushed")
            return None
        return SinkEndpoint(url=url, secret=secret)


def build_stock_event(
    branch: str,
    product: Product,
    out_box: int,
    out_piece: int,
    stock: StockLevel,
    warehouse: str,
    tz_name: str,
    moment: Optional[datetime] = None,
    in_box: int = 0,
    in_piece: int = 0,
) -> Dict[str, Any]:
    """Structured record sent to the sheet for one stock movement."""
    return {
        "branch": branch,
        "sku": product.sku,
        "product_name": product.name,
        "units_per_box": product.units_per_box,
        "unit_price": product.unit_price,
        "in_box": in_box,
        "in_piece": in_piece,
        "out_box": out_box,
        "out_piece": out_piece,
        "stock_box": stock.box,
        "stock_piece": stock.piece,
        "warehouse": warehouse,
        "timestamp": format_local_timestamp(moment, tz_name),
    }


class SheetNotifier:
    """Posts stock events in background tasks; never raises, never blocks."""

    def __init__(self, http: httpx.AsyncClient, resolver: SinkEndpointResolver, timeout: float = 10.0) -> None:
        self._http = http
        self._resolver = resolver
        self._timeout = timeout
        self._tasks: Set[asyncio.Task] = set()

    def notify(self, payload: Dict[str, Any]) -> None:
        """Purpose: Schedule a push of `payload` and return immediately.
        Inputs/Outputs: Input is the event dict; no return value.
        Side Effects / State: Creates a background task held until it finishes.
        Dependencies: Requires a running event loop.
        Failure Modes: Never raises; without a loop the event is logged and dropped.
        If Removed: The sheet stops receiving stock-out events.
        Testing Notes: Call notify() then drain() and inspect the mock transport.
        """
        # Keep a strong reference so the task is not collected mid-flight.
        try:
            task = asyncio.get_running_loop().create_task(self._send(payload))
        except RuntimeError:
            logger.warning("no running loop; dropped sheet event sku=%s", payload.get("sku"))
            return
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def drain(self) -> None:
        """Wait for in-flight pushes (used on shutdown and in tests)."""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def _send(self, payload: Dict[str, Any]) -> None:
        try:
            endpoint = await self._resolver.resolve()
            if endpoint is None:
                return
            resp = await self._http.post(
                endpoint.url,
                params={"secret": endpoint.secret},
                json=payload,
                timeout=self._timeout,
            )
            if resp.status_code >= 400:
                logger.warning("sheet push rejected status=%s sku=%s", resp.status_code, payload.get("sku"))
            else:
                logger.debug("sheet push ok sku=%s", payload.get("sku"))
        except Exception as exc:
            logger.warning("sheet push failed sku=%s error=%s", payload.get("sku"), exc)
