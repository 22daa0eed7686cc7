"""Creates the 1:1 rooms that carry a new SMS conversation."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from mautrix.types import RoomCreatePreset

if TYPE_CHECKING:
    from mautrix.appservice import AppService

    from .virtual_users import VirtualUserManager

log = logging.getLogger(__name__)

ADMIN_POWER = 100
MODERATOR_POWER = 50


def direct_chat_power_levels(*admins: str) -> dict:
    """Power levels for a bridged 1:1 room.

    The given users get level 100; the rest follows what Matrix clients use
    for a private chat (state changes need 50, messages need 0).
    """
    return {
        "users": {user_id: ADMIN_POWER for user_id in admins},
        "users_default": 0,
        "events_default": 0,
        "state_default": MODERATOR_POWER,
        "invite": 0,
        "kick": MODERATOR_POWER,
        "ban": MODERATOR_POWER,
        "redact": MODERATOR_POWER,
        "events": {
            "m.room.name": MODERATOR_POWER,
            "m.room.avatar": MODERATOR_POWER,
            "m.room.canonical_alias": MODERATOR_POWER,
            "m.room.power_levels": ADMIN_POWER,
            "m.room.history_visibility": ADMIN_POWER,
        },
    }


class DirectChatProvisioner:
    """Creates a private room between a human and an external number.

    Args:
        appservice: The mautrix :class:`AppService` instance.
        virtual_users: Source of virtual user intents.
    """

    def __init__(self, appservice: AppService, virtual_users: VirtualUserManager) -> None:
        self._appservice = appservice
        self._virtual_users = virtual_users

    async def create_direct_chat(self, external_number: str, owner_user_id: str) -> str:
        """Create a room for *external_number* and invite *owner_user_id*.

        The room is created by the number's virtual user and the service
        identity is invited alongside the owner.  Not idempotent: calling
        this twice creates two rooms.

        Returns:
            The new room ID.
        """
        intent = await self._virtual_users.get_intent(external_number)
        bot_mxid = self._appservice.bot_mxid
        virtual_mxid = self._virtual_users.mxid_for(external_number)

        room_id = await intent.create_room(
            preset=RoomCreatePreset.PRIVATE,
            is_direct=True,
            invitees=[owner_user_id, bot_mxid],
            power_level_override=direct_chat_power_levels(
                owner_user_id, bot_mxid, virtual_mxid,
            ),
        )
        log.info(
            "Created room %s for %s with %s", room_id, external_number, owner_user_id,
        )

        # The invite event may arrive late (or never); accept it ourselves.
        try:
            await self._appservice.intent.ensure_joined(room_id)
        except Exception:
            log.warning("Bot could not join %s yet, waiting for the invite", room_id)

        return room_id
