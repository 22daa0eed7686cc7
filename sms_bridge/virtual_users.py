"""Virtual user management for the SMS bridge.

Every phone number the bridge talks to is represented in Matrix by a
virtual user, so that texts appear as sent by the number itself rather than
by a single bot account.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from .identity import normalize_number, virtual_mxid_for

if TYPE_CHECKING:
    from mautrix.appservice import AppService
    from mautrix.appservice.api import IntentAPI

log = logging.getLogger(__name__)


def display_name_for(number: str) -> str:
    """The display name shown for a number's virtual user."""
    return f"{normalize_number(number)} (SMS)"


class VirtualUserManager:
    """Hands out intents for virtual users.

    Each number gets the deterministic MXID ``@_sms_{digits}:{domain}``.
    Intents are cached so the user is only registered and named once per
    process.
    """

    def __init__(self, appservice: AppService, domain: str) -> None:
        self._appservice = appservice
        self._domain = domain
        # Cache: virtual mxid -> IntentAPI
        self._intents: dict[str, IntentAPI] = {}

    def mxid_for(self, number: str) -> str:
        return virtual_mxid_for(number, self._domain)

    async def get_intent(self, number: str, *, room_id: str | None = None) -> IntentAPI:
        """Return an :class:`IntentAPI` for *number*'s virtual user.

        On first use the user is registered on the homeserver and given the
        display name ``"+15550001111 (SMS)"``.  If *room_id* is given the
        user is also made to join it (no-op when already joined).
        """
        mxid = self.mxid_for(number)

        intent = self._intents.get(mxid)
        if intent is None:
            intent = self._appservice.intent.user(mxid)
            await intent.ensure_registered()
            await intent.set_displayname(display_name_for(number))
            self._intents[mxid] = intent
            log.debug("Prepared virtual user %s", mxid)

        if room_id:
            await intent.ensure_joined(room_id)

        return intent
