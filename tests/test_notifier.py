import json
from datetime import datetime, timezone

import httpx

from stockbot.models import Product, StockLevel
from stockbot.notifier import SheetNotifier, SinkEndpoint, SinkEndpointResolver, build_stock_event


def make_event():
    return build_stock_event(
        "台北店",
        Product("可口可樂 330ml", "AG030", 24, 15),
        out_box=1,
        out_piece=2,
        stock=StockLevel(4, 1),
        warehouse="總倉",
        tz_name="Asia/Taipei",
        moment=datetime(2026, 1, 1, 0, 0, tzinfo=timezone.utc),
    )


def test_stock_event_fields():
    payload = make_event()
    assert payload == {
        "branch": "台北店",
        "sku": "AG030",
        "product_name": "可口可樂 330ml",
        "units_per_box": 24,
        "unit_price": 15,
        "in_box": 0,
        "in_piece": 0,
        "out_box": 1,
        "out_piece": 2,
        "stock_box": 4,
        "stock_piece": 1,
        "warehouse": "總倉",
        "timestamp": "2026-01-01 08:00:00+08:00",
    }


async def test_static_endpoint_skips_loader():
    calls = []

    async def loader():
        calls.append(1)
        return {}

    resolver = SinkEndpointResolver("https://sheet.example/exec", "s3cret", loader)
    assert await resolver.resolve() == SinkEndpoint("https://sheet.example/exec", "s3cret")
    assert calls == []


async def test_remote_settings_are_fetched_once():
    calls = []

    async def loader():
        calls.append(1)
        return {"SHEET_WEBHOOK_URL": "https://sheet.example/exec", "sheet_webhook_secret": "abc"}

    resolver = SinkEndpointResolver(settings_loader=loader)
    assert not resolver.is_resolved
    first = await resolver.resolve()
    second = await resolver.resolve()
    assert first == second == SinkEndpoint("https://sheet.example/exec", "abc")
    assert calls == [1]


async def test_missing_endpoint_is_cached_as_disabled(caplog):
    calls = []

    async def loader():
        calls.append(1)
        raise httpx.ConnectError("down")

    resolver = SinkEndpointResolver(settings_loader=loader)
    assert await resolver.resolve() is None
    assert await resolver.resolve() is None
    assert resolver.is_resolved
    assert calls == [1]
    assert sum("not configured" in record.getMessage() for record in caplog.records) == 1


async def test_notify_posts_payload_with_secret():
    seen = []

    def handler(request):
        seen.append(request)
        return httpx.Response(200, text="ok")

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as http:
        notifier = SheetNotifier(http, SinkEndpointResolver("https://sheet.example/exec", "s3cret"))
        notifier.notify(make_event())
        await notifier.drain()

    assert len(seen) == 1
    assert seen[0].url.params["secret"] == "s3cret"
    assert json.loads(seen[0].content)["sku"] == "AG030"


async def test_sink_errors_never_propagate():
    def handler(request):
        raise httpx.ConnectTimeout("timed out")

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as http:
        notifier = SheetNotifier(http, SinkEndpointResolver("https://sheet.example/exec", "s3cret"))
        notifier.notify(make_event())
        await notifier.drain()


async def test_disabled_sink_sends_nothing():
    seen = []

    async with httpx.AsyncClient(transport=httpx.MockTransport(lambda request: seen.append(request))) as http:
        notifier = SheetNotifier(http, SinkEndpointResolver())
        notifier.notify(make_event())
        await notifier.drain()

    assert seen == []


def test_notify_without_loop_drops_event():
    notifier = SheetNotifier(httpx.AsyncClient(), SinkEndpointResolver("https://sheet.example/exec", ""))
    notifier.notify(make_event())
    assert notifier._tasks == set()
