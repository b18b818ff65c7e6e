from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from .models import ROLE_MANAGER, ROLE_USER, Identity, LineEvent, UserRecord
from .replies import GROUP_UNBOUND_TEXT, USER_UNBOUND_TEXT
from .repository import InventoryRepository
from .supabase_client import ApiError
from .utils import mask_user_id

logger = logging.getLogger("stockbot.identity")


@dataclass(frozen=True)
class Resolution:
    """Outcome of resolving a sender: role, branch, and whether to drop the event."""
    identity: Identity
    branch: Optional[str]
    role: str = ROLE_USER
    blocked: bool = False
    unbound_message: str = USER_UNBOUND_TEXT

    @property
    def is_manager(self) -> bool:
        return self.role == ROLE_MANAGER

    @property
    def user_key(self) -> Optional[str]:
        """Key for per-user state; None when the platform withheld the sender id."""
        return self.identity.external_user_id or None


class IdentityResolver:
    """Maps an inbound event's sender to a role and an organizational branch."""

    def __init__(self, repository: InventoryRepository, default_branch: str = "") -> None:
        self._repository = repository
        self._default_branch = default_branch or None

    async def resolve(self, event: LineEvent) -> Resolution:
        """Purpose: Resolve role, blocked flag and branch for an event's sender.
        Inputs/Outputs: Input is a LineEvent; output is a Resolution.
        Side Effects / State: Inserts a default user row for first-contact 1:1 senders.
        Dependencies: InventoryRepository user, group and registration methods.
        Failure Modes: ApiError from lookups propagates; a failed auto-registration
            is logged and the resolution continues.
        If Removed: No event can be scoped to a branch and every command fails.
        Testing Notes: Group senders without a user row get role=user and the
            group's branch; unknown 1:1 senders are registered and unbound.
        """
        # Group context takes the branch from the group binding, not the sender.
        identity = Identity.from_event(event)
        user_id = identity.external_user_id
        record: Optional[UserRecord] = await self._repository.get_user(user_id) if user_id else None
        role = record.role if record else ROLE_USER
        blocked = record.blacklisted if record else False

        if identity.is_group_context:
            unbound_message = GROUP_UNBOUND_TEXT
            if blocked:
                return Resolution(identity, None, role, True, unbound_message)
            branch = None
            if identity.group_or_room_id:
                branch = await self._repository.get_group_branch(identity.group_or_room_id)
        else:
            unbound_message = USER_UNBOUND_TEXT
            if blocked:
                return Resolution(identity, None, role, True, unbound_message)
            if record is None and user_id:
                await self._register(user_id)
            branch = record.branch if record else None

        return Resolution(identity, branch or self._default_branch, role, False, unbound_message)

    async def _register(self, user_id: str) -> None:
        try:
            await self._repository.register_user(user_id)
        except ApiError as exc:
            logger.warning("user=%s auto_register_failed error=%s", mask_user_id(user_id), exc)
