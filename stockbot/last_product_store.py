from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Callable, Optional

from .repository import InventoryRepository
from .utils import mask_user_id

logger = logging.getLogger("stockbot.store")


class LastProductStore:
    """Per (user, branch) memory of the most recently shown SKU.

    The write path is read-then-write (look up the row, then update or insert).
    It is not atomic: two concurrent messages for the same (user, branch) key
    can both miss the row and insert twice, after which the newest row wins on
    read. This race is accepted because one person typing chat messages is
    effectively serial.
    """

    def __init__(
        self,
        repository: InventoryRepository,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        """Purpose: Bind the store to the repository and a clock.
        Inputs/Outputs: Inputs are the repository and an optional clock; no return value.
        Side Effects / State: None at init.
        Dependencies: InventoryRepository last-selection methods.
        Failure Modes: None at init.
        If Removed: In/out commands have no product to act on.
        Testing Notes: Inject a fixed clock to assert stored timestamps.
        """
        # Default to UTC wall time for the stored timestamp.
        self._repository = repository
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    async def upsert(self, user_id: str, branch: str, sku: str) -> None:
        """Purpose: Record `sku` as the last selected product for (user, branch).
        Inputs/Outputs: Inputs are user id, branch code and SKU; no return value.
        Side Effects / State: Updates the existing row or inserts a new one.
        Dependencies: Uses repository.last_selection_exists/update/insert.
        Failure Modes: ApiError from the repository propagates to the caller.
        If Removed: Lookups stop setting context for following in/out commands.
        Testing Notes: Upsert twice and verify a single row holds the last SKU.
        """
        # Look up first, then update or insert.
        now = self._clock()
        if await self._repository.last_selection_exists(user_id, branch):
            await self._repository.update_last_selection(user_id, branch, sku, now)
        else:
            await self._repository.insert_last_selection(user_id, branch, sku, now)
        logger.debug("user=%s branch=%s last_sku=%s", mask_user_id(user_id), branch, sku)

    async def get_last(self, user_id: str, branch: str) -> Optional[str]:
        return await self._repository.find_last_sku(user_id, branch)
