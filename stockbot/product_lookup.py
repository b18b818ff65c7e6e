from __future__ import annotations

import logging
from typing import List, Sequence

from .models import Product
from .repository import InventoryRepository

logger = logging.getLogger("stockbot.lookup")

RAW_MATCH_LIMIT = 20
RESULT_LIMIT = 10


class ProductLookup:
    """Catalog search by name, barcode or SKU with role-based stock visibility.

    Managers see every match. Regular users only see SKUs that currently hold
    stock (box > 0 or piece > 0) in their branch. Stock is read fresh for each
    lookup, restricted to the matched SKUs. Substring searches fetch at most RAW_MATCH_LIMIT rows
    before the visibility filter and return at most RESULT_LIMIT, so sparse
    in-stock matches can under-return for regular users.
    """

    def __init__(self, repository: InventoryRepository) -> None:
        self._repository = repository

    async def by_name(self, keyword: str, branch: str, is_manager: bool) -> List[Product]:
        matches = await self._repository.find_products_by_name(keyword, RAW_MATCH_LIMIT)
        visible = await self._visible(matches, branch, is_manager)
        logger.debug("lookup=name keyword=%s raw=%d visible=%d", keyword, len(matches), len(visible))
        return visible[:RESULT_LIMIT]

    async def by_barcode(self, code: str, branch: str, is_manager: bool) -> List[Product]:
        product = await self._repository.find_product_by_barcode(code)
        if product is None:
            return []
        return await self._visible([product], branch, is_manager)

    async def by_sku(self, code: str, branch: str, is_manager: bool) -> List[Product]:
        """Purpose: Resolve a SKU, preferring an exact hit over substring matches.
        Inputs/Outputs: Inputs are the code, branch and role flag; output is a list
            of visible products (exact hit alone, or up to RESULT_LIMIT partials).
        Side Effects / State: None; read-only.
        Dependencies: Repository exact and ilike SKU queries, in-stock set.
        Failure Modes: ApiError propagates to the event boundary.
        If Removed: "#SKU" commands and quick-reply selections stop working.
        Testing Notes: An exact visible hit returns without a substring query;
            an exact hit hidden by visibility falls back to substring search.
        """
        # Exact match short-circuits only when it passes visibility.
        exact = await self._repository.find_product_by_sku(code)
        if exact is not None and await self._visible([exact], branch, is_manager):
            return [exact]
        matches = await self._repository.find_products_by_sku_like(code, RAW_MATCH_LIMIT)
        visible = await self._visible(matches, branch, is_manager)
        return visible[:RESULT_LIMIT]

    async def _visible(self, products: Sequence[Product], branch: str, is_manager: bool) -> List[Product]:
        # Stock is checked only for these candidates, never the whole branch.
        if is_manager or not products:
            return list(products)
        in_stock = await self._repository.in_stock_skus(branch, [product.sku for product in products])
        return [product for product in products if product.sku in in_stock]
