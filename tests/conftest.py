"""Shared fixtures and fake Matrix objects for bridge tests."""

from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock

import pytest
from mautrix.types import EventType, Membership, MessageType

from sms_bridge.registry import IdentityRegistry

# Canonical IDs used throughout the test suite.
DOMAIN = "example.com"
BOT_MXID = "@_sms:example.com"
ALICE = "@alice:example.com"
BOB = "@bob:example.com"
ALICE_NUMBER = "+15550002222"
EXTERNAL_NUMBER = "+15550001111"
EXTERNAL_MXID = "@_sms_15550001111:example.com"
OTHER_EXTERNAL_MXID = "@_sms_15550009999:example.com"
ROOM = "!dm:example.com"
NEW_ROOM = "!new:example.com"


# ---------------------------------------------------------------------------
# Builders
# ---------------------------------------------------------------------------


def make_appservice(
    joined_members: dict[str, list[str]] | None = None,
) -> tuple[MagicMock, AsyncMock]:
    """Build a mock ``AppService``.

    Returns ``(appservice, virtual_intent)``.  ``appservice.intent`` is the
    bot intent; ``appservice.intent.user()`` always returns *virtual_intent*.
    ``get_joined_members`` answers from *joined_members* and raises for
    rooms it doesn't know.
    """
    members = joined_members if joined_members is not None else {}

    appservice = MagicMock()
    appservice.bot_mxid = BOT_MXID
    appservice.intent = AsyncMock()

    async def _get_joined_members(room_id: str):
        if room_id not in members:
            raise Exception(f"Not in room {room_id}")
        return {user_id: MagicMock() for user_id in members[room_id]}

    appservice.intent.get_joined_members = AsyncMock(side_effect=_get_joined_members)

    virtual_intent = AsyncMock()
    virtual_intent.create_room = AsyncMock(return_value=NEW_ROOM)
    virtual_intent.upload_media = AsyncMock(return_value="mxc://example.com/media1")
    appservice.intent.user = MagicMock(return_value=virtual_intent)

    return appservice, virtual_intent


def make_message_event(
    sender: str,
    room_id: str,
    body: str = "",
    *,
    msgtype: MessageType = MessageType.TEXT,
    url: str | None = None,
    event_id: str = "$evt1",
) -> MagicMock:
    """Build a mock mautrix ``MessageEvent``."""
    event = MagicMock()
    event.type = EventType.ROOM_MESSAGE
    event.sender = sender
    event.room_id = room_id
    event.event_id = event_id
    event.content.msgtype = msgtype
    event.content.body = body
    event.content.url = url
    return event


def make_member_event(
    state_key: str,
    room_id: str,
    membership: Membership,
    sender: str = ALICE,
) -> MagicMock:
    """Build a mock mautrix ``StateEvent`` for ``m.room.member``."""
    event = MagicMock()
    event.type = EventType.ROOM_MEMBER
    event.sender = sender
    event.room_id = room_id
    event.event_id = "$member1"
    event.state_key = state_key
    event.content.membership = membership
    return event


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture()
def registry() -> IdentityRegistry:
    """A fresh, empty registry."""
    return IdentityRegistry()


@pytest.fixture()
def alice_registry(registry: IdentityRegistry) -> IdentityRegistry:
    """A registry where ``ALICE_NUMBER`` is a user number owned by Alice."""
    registry.register_number(ALICE_NUMBER, "user", ALICE)
    return registry
