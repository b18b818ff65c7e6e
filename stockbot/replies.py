"""Reply composer: user-facing texts and quick-reply message building."""

from __future__ import annotations

from typing import Any, Dict, List, Optional, Sequence

from .command_parser import ChangeIntent
from .models import Product, QuickReplyOption, Reply, StockLevel, WarehouseStock
from .utils import truncate_label

MAX_QUICK_REPLIES = 12

HELP_TEXT = "\n".join(
    [
        "指令：",
        "• 查 可樂 / 查可樂（依名稱）",
        "• 條碼123456 / 編號ABC123 / #ABC123",
        "• 入庫3箱2件 / 入3箱 / 入3件（主管）",
        "• 出庫1箱 / 出2件 / 出1箱@總倉",
    ]
)
GROUP_UNBOUND_TEXT = "此群組尚未綁定門市，請聯絡管理員設定。"
USER_UNBOUND_TEXT = "您的帳號尚未綁定門市，請聯絡管理員設定。"
NOT_FOUND_TEXTS = {
    "query": "查無此商品",
    "barcode": "查無此條碼商品",
    "sku": "查無此貨品編號",
}
NOT_FOUND_USER_SUFFIX = "，或本門市目前無庫存"
NO_STOCK_TEXT = "此商品本門市目前無庫存。"
PERMISSION_IN_TEXT = "只有主管可以入庫。"
NEED_QUANTITY_TEXT = "數量為 0，請輸入箱或件。"
NEED_PRODUCT_TEXT = "請先用「查 商品」或「條碼123 / 編號ABC」選定商品後再入/出庫。"
NO_USER_TEXT = "無法取得您的 LINE 帳號，請先加入本帳號好友後再選定商品與入/出庫。"
GENERIC_ERROR_TEXT ="系統暫時無法處理，請稍後再試。"


def text_reply(text: str) -> Reply:
    return Reply(text=text)


def not_found(kind: str, is_manager: bool) -> Reply:
    text = NOT_FOUND_TEXTS.get(kind, NOT_FOUND_TEXTS["query"])
    if not is_manager:
        text += NOT_FOUND_USER_SUFFIX
    return Reply(text=text)


def format_stock(stock: Optional[StockLevel]) -> str:
    if stock is None:
        return "讀取失敗，請重新查詢"
    return f"箱 {stock.box}、件 {stock.piece}"


def _number(value: float) -> str:
    return str(int(value)) if float(value).is_integer() else f"{value:g}"


def _signed(value: int) -> str:
    return f"+{value}" if value >= 0 else str(value)


def product_title(product: Product) -> str:
    return f"{product.name}（{product.barcode}）" if product.barcode else product.name


def product_detail(product: Product, stock: StockLevel, show_price: bool = False) -> Reply:
    """Purpose: Build the single-product detail reply.
    Inputs/Outputs: Inputs are the product, its branch stock and a price flag;
        output is a text Reply.
    Side Effects / State: None.
    Dependencies: Used by the bot after a lookup resolves to one product.
    Failure Modes: None.
    If Removed: Users cannot see stock for a selected product.
    Testing Notes: Barcode appears in parentheses only when present.
    """
    # Price is shown to managers only.
    lines = [product_title(product), f"編號：{product.sku}"]
    if product.units_per_box:
        lines.append(f"箱入數：{_number(product.units_per_box)}")
    if show_price and product.unit_price:
        lines.append(f"單價：{_number(product.unit_price)}")
    lines.append(f"庫存：{format_stock(stock)}")
    return Reply(text="\n".join(lines))


def product_choices(products: Sequence[Product]) -> Reply:
    """List several matches and offer each as a `#SKU` quick reply."""
    shown = list(products)[:MAX_QUICK_REPLIES]
    lines = [f"找到 {len(products)} 筆商品，請選擇："]
    lines.extend(f"• {product.name}（{product.sku}）" for product in shown)
    options = [QuickReplyOption(label=truncate_label(p.name or p.sku), text=f"#{p.sku}") for p in shown]
    return Reply(text="\n".join(lines), quick_replies=options)


def warehouse_choices(product: Product, intent: ChangeIntent, warehouses: Sequence[WarehouseStock]) -> Reply:
    """Ask which warehouse to take stock from; each option replays the command."""
    shown = list(warehouses)[:MAX_QUICK_REPLIES]
    lines = [f"{product_title(product)} 有多個倉庫有庫存，請選擇出庫倉庫："]
    options: List[QuickReplyOption] = []
    for item in shown:
        lines.append(f"• {item.warehouse}：箱 {item.box}、件 {item.piece}")
        label = truncate_label(f"{item.warehouse} {item.box}箱{item.piece}件")
        options.append(QuickReplyOption(label=label, text=intent.to_command(warehouse=item.warehouse)))
    return Reply(text="\n".join(lines), quick_replies=options)


def in_confirmation(product: Product, box: int, piece: int, stock: Optional[StockLevel]) -> Reply:
    return Reply(
        text="\n".join(
            [
                "✅ 入庫完成",
                f"商品：{product.name}（{product.sku}）",
                f"變動：箱 {_signed(box)}、件 {_signed(piece)}",
                f"目前庫存：{format_stock(stock)}",
            ]
        )
    )


def out_confirmation(product: Product, box: int, piece: int, warehouse: str, stock: Optional[StockLevel]) -> Reply:
    return Reply(
        text="\n".join(
            [
                "✅ 出庫完成",
                f"商品：{product.name}（{product.sku}）",
                f"變動：箱 {_signed(-box)}、件 {_signed(-piece)}",
                f"倉庫：{warehouse}",
                f"目前庫存：{format_stock(stock)}",
            ]
        )
    )


def failure(message: Optional[str]) -> Reply:
    return Reply(text=f"操作失敗：{message or '未知錯誤'}")


def partial_failure(
    product: Product, applied: str, failed: str, message: Optional[str], stock: Optional[StockLevel]
) -> Reply:
    """Box succeeded but piece failed (or the reverse); nothing is rolled back."""
    lines = [
        f"操作失敗：{message or '未知錯誤'}",
        f"⚠️ 部分完成：{product.name}（{product.sku}）已出庫 {applied}，{failed} 未出庫。",
    ]
    if stock is not None:
        lines.append(f"目前庫存：{format_stock(stock)}")
    return Reply(text="\n".join(lines))


def to_message(reply: Reply) -> Dict[str, Any]:
    """Purpose: Serialize a Reply into the platform's text message object.
    Inputs/Outputs: Input is a Reply; output is a JSON-ready dict.
    Side Effects / State: None.
    Dependencies: Used by LineReplyClient.
    Failure Modes: None; labels are clamped again here.
    If Removed: Replies cannot be sent.
    Testing Notes: Quick replies become message actions with label and text.
    """
    # Text message plus optional quickReply block.
    message: Dict[str, Any] = {"type": "text", "text": reply.text}
    if reply.quick_replies:
        message["quickReply"] = {
            "items": [
                {
                    "type": "action",
                    "action": {"type": "message", "label": truncate_label(option.label), "text": option.text},
                }
                for option in reply.quick_replies[:MAX_QUICK_REPLIES]
            ]
        }
    return message
