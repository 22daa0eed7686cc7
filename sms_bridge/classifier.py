"""Decides what a Matrix room is to the bridge.

A room the bridge is in is one of:

- an **admin room**: the bot and exactly one human, used to talk to the
  bridge itself and never routed to SMS;
- a **bridged 1:1 room**: one human, the bot and one virtual user, carrying
  an SMS conversation;
- an **unsupported** room: anything with more parties (group SMS isn't
  implemented).

Classification runs when the bridge is invited somewhere and for every
joined room at startup.  It never raises: each branch either records a
mapping, logs why it didn't, or waits for more information.
"""

from __future__ import annotations

import enum
import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Awaitable, Callable

from mautrix.types import RoomCreatePreset

from .errors import InvalidNumberKind, UnsupportedTopology
from .identity import IdentityKind, classify_identity, number_for_virtual_user

if TYPE_CHECKING:
    from mautrix.appservice import AppService

    from .registry import IdentityRegistry

log = logging.getLogger(__name__)

WELCOME_MESSAGE = (
    "Hello! This room can be used to manage various aspects of the bridge. "
    "Although this currently doesn't do anything, it will be more active in "
    "the future."
)


class RoomClassification(enum.Enum):
    ADMIN = "admin"
    BRIDGED_DIRECT = "bridged_1:1"
    UNSUPPORTED_MULTI = "unsupported_multi"
    UNKNOWN = "unknown"


@dataclass(frozen=True)
class AdminRoom:
    room_id: str
    owner_user_id: str


@dataclass(frozen=True)
class NumberNeeded:
    """A bridged room whose human has no phone number registered yet."""

    room_id: str
    owner_user_id: str
    external_number: str


NumberNeededCallback = Callable[[NumberNeeded], Awaitable[None]]


class RoomClassifier:
    """Classifies rooms from their membership and keeps track of admin rooms.

    Args:
        appservice: The mautrix :class:`AppService` instance.
        registry: The identity registry that bridged rooms are recorded in.
        domain: The homeserver domain virtual users live on.
        on_number_needed: Awaited when a bridged room's human has no number.
    """

    def __init__(
        self,
        appservice: AppService,
        registry: IdentityRegistry,
        domain: str,
        on_number_needed: NumberNeededCallback | None = None,
    ) -> None:
        self._appservice = appservice
        self._registry = registry
        self._domain = domain
        self._on_number_needed = on_number_needed
        # room_id -> AdminRoom, in the order they were found
        self._admin_rooms: dict[str, AdminRoom] = {}

    # ------------------------------------------------------------------
    # Admin rooms
    # ------------------------------------------------------------------

    def is_admin_room(self, room_id: str) -> bool:
        return room_id in self._admin_rooms

    def admin_room_for(self, room_id: str) -> AdminRoom | None:
        return self._admin_rooms.get(room_id)

    def get_admin_room(self, owner_user_id: str) -> AdminRoom | None:
        """The first admin room found for *owner_user_id*, if any."""
        for admin_room in self._admin_rooms.values():
            if admin_room.owner_user_id == owner_user_id:
                return admin_room
        return None

    def remove_admin_room(self, room_id: str) -> AdminRoom | None:
        """Forget an admin room.  The bot stays in it."""
        admin_room = self._admin_rooms.pop(room_id, None)
        if admin_room:
            log.info(
                "Removed admin room %s of %s", room_id, admin_room.owner_user_id,
            )
        return admin_room

    async def get_or_create_admin_room(self, user_id: str) -> AdminRoom:
        """Return *user_id*'s admin room, creating one if they have none."""
        existing = self.get_admin_room(user_id)
        if existing:
            return existing

        log.info("Creating admin room for %s", user_id)
        room_id = await self._appservice.intent.create_room(
            preset=RoomCreatePreset.TRUSTED_PRIVATE,
            is_direct=True,
            invitees=[user_id],
        )
        admin_room = self._bind_admin_room(room_id, user_id)
        await self._send_welcome(room_id)
        return admin_room

    async def try_classify_as_admin(
        self,
        room_id: str,
        is_newly_created: bool = False,
    ) -> AdminRoom | None:
        """Register *room_id* as an admin room if its membership allows it.

        The room must hold exactly the bot and one human, and must not
        already carry an SMS route.  Membership is read on every call, so an
        admin room that gained members stops being one.  A welcome notice is
        sent when a new room is first bound.

        Returns:
            The :class:`AdminRoom`, or ``None`` if the room doesn't qualify.
        """
        if self._registry.get_number_for_room(room_id):
            self.remove_admin_room(room_id)
            return None

        member_ids = await self._joined_member_ids(room_id)
        if member_ids is None:
            return None

        bot_mxid = self._appservice.bot_mxid
        if len(member_ids) != 2 or bot_mxid not in member_ids:
            log.debug("Room %s is not viable as an admin room", room_id)
            self.remove_admin_room(room_id)
            return None

        other = next(user_id for user_id in member_ids if user_id != bot_mxid)
        if self._kind_of(other) is not IdentityKind.HUMAN:
            log.debug("Room %s is the bot and a virtual user, not an admin room", room_id)
            self.remove_admin_room(room_id)
            return None

        existing = self._admin_rooms.get(room_id)
        if existing and existing.owner_user_id == other:
            return existing

        admin_room = self._bind_admin_room(room_id, other)
        if is_newly_created:
            await self._send_welcome(room_id)
        return admin_room

    # ------------------------------------------------------------------
    # Bridged rooms
    # ------------------------------------------------------------------

    async def classify_bridged_room(self, room_id: str) -> RoomClassification:
        """Classify *room_id* as a bridged 1:1 room and record its route.

        When the human has a registered number the room is added to the
        registry.  When they don't, ``on_number_needed`` is notified.  A room
        bound to its own room number keeps that route untouched.
        """
        room_number = self._registry.get_room_number_for_room(room_id)
        if room_number:
            log.debug("Room %s already sends as room number %s", room_id, room_number)
            return RoomClassification.BRIDGED_DIRECT

        member_ids = await self._joined_member_ids(room_id)
        if member_ids is None:
            return RoomClassification.UNKNOWN

        if len(member_ids) < 3:
            log.debug(
                "Room %s has %d members, waiting for more before bridging",
                room_id, len(member_ids),
            )
            return RoomClassification.UNKNOWN

        try:
            human, virtual = self._split_direct_members(member_ids)
        except UnsupportedTopology as exc:
            log.warning("Room %s is not bridgeable: %s", room_id, exc)
            return RoomClassification.UNSUPPORTED_MULTI

        external_number = number_for_virtual_user(virtual)
        internal_number = self._registry.get_number_for_owner(human)

        if not internal_number:
            log.info(
                "Room %s needs a phone number for %s before it can be bridged",
                room_id, human,
            )
            await self._notify_number_needed(
                NumberNeeded(
                    room_id=room_id,
                    owner_user_id=human,
                    external_number=external_number,
                ),
            )
            return RoomClassification.BRIDGED_DIRECT

        if room_id not in self._registry.find_user_rooms(external_number, internal_number):
            try:
                self._registry.add_user_number(internal_number, external_number, room_id)
            except InvalidNumberKind as exc:
                log.warning("Cannot route room %s: %s", room_id, exc)
        return RoomClassification.BRIDGED_DIRECT

    async def classify_room(
        self,
        room_id: str,
        is_newly_created: bool = False,
    ) -> RoomClassification:
        """Try the room as an admin room first, then as a bridged room."""
        log.info("Classifying room %s", room_id)
        if await self.try_classify_as_admin(room_id, is_newly_created):
            return RoomClassification.ADMIN
        return await self.classify_bridged_room(room_id)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _kind_of(self, user_id: str) -> IdentityKind:
        return classify_identity(user_id, self._appservice.bot_mxid, self._domain)

    def _split_direct_members(self, member_ids: list[str]) -> tuple[str, str]:
        """Return ``(human, virtual)`` for a bot + human + virtual room."""
        by_kind: dict[IdentityKind, list[str]] = {kind: [] for kind in IdentityKind}
        for user_id in member_ids:
            by_kind[self._kind_of(user_id)].append(user_id)

        virtual = by_kind[IdentityKind.VIRTUAL]
        humans = by_kind[IdentityKind.HUMAN]
        if (
            len(member_ids) != 3
            or len(virtual) != 1
            or len(humans) != 1
            or not by_kind[IdentityKind.SERVICE]
        ):
            raise UnsupportedTopology(
                f"{len(member_ids)} members with {len(virtual)} virtual users "
                "(group SMS is not supported)"
            )
        return humans[0], virtual[0]

    async def _joined_member_ids(self, room_id: str) -> list[str] | None:
        try:
            members = await self._appservice.intent.get_joined_members(room_id)
        except Exception:
            log.exception("Failed to get joined members of %s", room_id)
            return None
        return list(members)

    def _bind_admin_room(self, room_id: str, owner_user_id: str) -> AdminRoom:
        admin_room = AdminRoom(room_id=room_id, owner_user_id=owner_user_id)
        self._admin_rooms[room_id] = admin_room
        log.info("Room %s is an admin room for %s", room_id, owner_user_id)
        return admin_room

    async def _send_welcome(self, room_id: str) -> None:
        try:
            await self._appservice.intent.send_notice(room_id, WELCOME_MESSAGE)
        except Exception:
            log.exception("Failed to send welcome message to %s", room_id)

    async def _notify_number_needed(self, notice: NumberNeeded) -> None:
        if self._on_number_needed is None:
            return
        try:
            await self._on_number_needed(notice)
        except Exception:
            log.exception("Number-needed handler failed for %s", notice.room_id)
