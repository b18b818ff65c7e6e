from conftest import BRANCH, MANAGER_ID, USER_ID

from stockbot import replies
from stockbot.command_parser import ACTION_IN, ACTION_OUT, ChangeIntent
from stockbot.identity import Resolution
from stockbot.models import ROLE_MANAGER, ROLE_USER, Identity, StockLevel
from stockbot.repository import UOM_BOX, UOM_PIECE


def resolution_for(user_id, role):
    return Resolution(Identity(user_id, False, None), BRANCH, role)


MANAGER = resolution_for(MANAGER_ID, ROLE_MANAGER)
USER = resolution_for(USER_ID, ROLE_USER)


async def test_in_requires_manager_before_any_data_access(repo, workflow):
    reply = await workflow.run(ChangeIntent(ACTION_IN, 0, 0), USER)
    assert reply.text == replies.PERMISSION_IN_TEXT
    assert repo.calls == []


async def test_empty_quantity_is_rejected(repo, workflow):
    reply = await workflow.run(ChangeIntent(ACTION_OUT, 0, 0), USER)
    assert reply.text == replies.NEED_QUANTITY_TEXT
    assert repo.calls == []


async def test_mutation_needs_a_last_product(repo, workflow):
    reply = await workflow.run(ChangeIntent(ACTION_OUT, 1, 0), USER)
    assert reply.text == replies.NEED_PRODUCT_TEXT
    assert "consume_fifo" not in repo.call_names()


async def test_in_adjusts_aggregate_and_echoes_stock(repo, last_products, workflow, notifier):
    await last_products.upsert(MANAGER_ID, BRANCH, "AG030")
    reply = await workflow.run(ChangeIntent(ACTION_IN, 3, 2), MANAGER)

    assert ("change_inventory", BRANCH, "AG030", 3, 2, MANAGER_ID, "LINE") in repo.calls
    assert reply.text.startswith("✅ 入庫完成")
    assert "箱 +3、件 +2" in reply.text
    assert "目前庫存：箱 8、件 5" in reply.text
    assert notifier.payloads == []


async def test_in_rereads_stock_when_not_echoed(repo, last_products, workflow):
    repo.echo_change = False
    await last_products.upsert(MANAGER_ID, BRANCH, "BT100")
    reply = await workflow.run(ChangeIntent(ACTION_IN, 0, 6), MANAGER)
    assert "目前庫存：箱 1、件 6" in reply.text


async def test_in_failure_reports_server_message(repo, last_products, workflow):
    repo.fail_change = True
    await last_products.upsert(MANAGER_ID, BRANCH, "AG030")
    reply = await workflow.run(ChangeIntent(ACTION_IN, 1, 0), MANAGER)
    assert reply.text == "操作失敗：permission denied for function"
    assert repo.stock[(BRANCH, "AG030")] == StockLevel(5, 3)


async def test_out_with_several_warehouses_asks_first(repo, last_products, workflow, notifier):
    await last_products.upsert(USER_ID, BRANCH, "AG030")
    reply = await workflow.run(ChangeIntent(ACTION_OUT, 2, 1), USER)

    assert "consume_fifo" not in repo.call_names()
    assert [option.text for option in reply.quick_replies] == ["出2箱1件@總倉", "出2箱1件@門市倉"]
    assert all(len(option.label) <= 20 for option in reply.quick_replies)
    assert notifier.payloads == []


async def test_out_with_explicit_warehouse_consumes_box_then_piece(repo, last_products, workflow, notifier):
    await last_products.upsert(USER_ID, BRANCH, "AG030")
    reply = await workflow.run(ChangeIntent(ACTION_OUT, 2, 1, "總倉"), USER)

    consumed = [call for call in repo.calls if call[0] == "consume_fifo"]
    assert [(call[3], call[4], call[5]) for call in consumed] == [(UOM_BOX, 2, "總倉"), (UOM_PIECE, 1, "總倉")]
    assert consumed[0][6] == repo.user_map[USER_ID]
    assert reply.text.startswith("✅ 出庫完成")
    assert "倉庫：總倉" in reply.text
    assert "目前庫存：箱 3、件 2" in reply.text

    assert len(notifier.payloads) == 1
    payload = notifier.payloads[0]
    assert payload["out_box"] == 2 and payload["out_piece"] == 1
    assert payload["stock_box"] == 3 and payload["stock_piece"] == 2
    assert payload["warehouse"] == "總倉"
    assert payload["timestamp"] == "2026-10-18 14:30:00+08:00"


async def test_out_auto_selects_the_only_stocked_warehouse(repo, last_products, workflow):
    await last_products.upsert(USER_ID, BRANCH, "BT100")
    reply = await workflow.run(ChangeIntent(ACTION_OUT, 1, 0), USER)
    assert "倉庫：總倉" in reply.text
    assert ("consume_fifo", BRANCH, "BT100", UOM_BOX, 1, "總倉") == repo.calls[-1][:6]


async def test_out_without_lots_uses_unspecified_warehouse(repo, last_products, workflow):
    await last_products.upsert(USER_ID, BRANCH, "AG031")
    reply = await workflow.run(ChangeIntent(ACTION_OUT, 0, 2), USER)
    assert "倉庫：未指定" in reply.text


async def test_unmapped_sender_cannot_consume(repo, last_products, workflow, notifier):
    del repo.user_map[USER_ID]
    await last_products.upsert(USER_ID, BRANCH, "BT100")
    reply = await workflow.run(ChangeIntent(ACTION_OUT, 1, 0), USER)
    assert reply.text == "操作失敗：此 LINE 帳號尚未對應系統使用者，無法扣庫存"
    assert "consume_fifo" not in repo.call_names()
    assert notifier.payloads == []


async def test_piece_failure_after_box_is_partial(repo, last_products, workflow, notifier):
    repo.fail_consume_uom = UOM_PIECE
    await last_products.upsert(USER_ID, BRANCH, "AG030")
    reply = await workflow.run(ChangeIntent(ACTION_OUT, 1, 2, "總倉"), USER)

    assert "操作失敗：庫存不足" in reply.text
    assert "部分完成" in reply.text
    assert "已出庫 1 箱，2 件 未出庫" in reply.text
    assert repo.stock[(BRANCH, "AG030")] == StockLevel(4, 3)
    assert [p["out_box"] for p in notifier.payloads] == [1]
    assert notifier.payloads[0]["out_piece"] == 0


async def test_first_call_failure_is_plain_failure(repo, last_products, workflow, notifier):
    repo.fail_consume_uom = UOM_BOX
    await last_products.upsert(USER_ID, BRANCH, "AG030")
    reply = await workflow.run(ChangeIntent(ACTION_OUT, 1, 2, "總倉"), USER)
    assert reply.text == "操作失敗：庫存不足"
    assert notifier.payloads == []
    assert repo.call_names().count("consume_fifo") == 1


async def test_unknown_catalog_sku_still_mutates(repo, last_products, workflow):
    await last_products.upsert(MANAGER_ID, BRANCH, "ZZ999")
    reply = await workflow.run(ChangeIntent(ACTION_IN, 1, 0), MANAGER)
    assert "商品：ZZ999（ZZ999）" in reply.text


async def test_sender_without_user_id_is_asked_to_add_the_bot(repo, workflow):
    anonymous = Resolution(Identity(None, True, "Cgroup00000000001"), BRANCH, ROLE_USER)
    reply = await workflow.run(ChangeIntent(ACTION_OUT, 1, 0), anonymous)
    assert reply.text == replies.NO_USER_TEXT
    assert repo.calls == []
