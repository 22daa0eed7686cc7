"""In-memory mapping between phone numbers, their owners and rooms.

The registry answers two questions for the router:

- *Inbound*: which room(s) does an SMS from ``external`` to ``internal``
  belong in?
- *Outbound*: which owned number should a message from a room be sent as?

It does no I/O.  Lookups that find nothing return ``None`` or an empty set.
Every number argument is normalized before use.
"""

from __future__ import annotations

import enum
import logging
from dataclasses import dataclass

from .errors import InvalidNumberKind
from .identity import normalize_number

log = logging.getLogger(__name__)


class NumberKind(str, enum.Enum):
    """What an owned number is attached to."""

    USER = "user"
    ROOM = "room"


@dataclass(frozen=True)
class NumberRegistration:
    """Who owns a number and how.

    Frozen so a registration handed out by the registry can't be used to
    alter the registry.
    """

    number: str
    kind: NumberKind
    owner_id: str


class IdentityRegistry:
    """Mappings between phone numbers, owners (users or rooms) and rooms.

    Re-registering a number and re-binding a room number both overwrite the
    previous entry (last write wins); the only signal is a log line.
    """

    def __init__(self) -> None:
        # number -> NumberRegistration
        self._registrations: dict[str, NumberRegistration] = {}
        # owner_id -> number
        self._owned_numbers: dict[str, str] = {}
        # internal number -> external number -> {room_id}
        self._user_rooms: dict[str, dict[str, set[str]]] = {}
        # room number -> room_id
        self._room_numbers: dict[str, str] = {}
        # room_id -> owned number, and room number -> room_id
        self._room_owned: dict[str, str] = {}

    # ------------------------------------------------------------------
    # Registrations
    # ------------------------------------------------------------------

    def register_number(
        self,
        number: str,
        kind: NumberKind | str,
        owner_id: str,
    ) -> NumberRegistration:
        """Register *number* as a *kind* number owned by *owner_id*.

        Overwrites any earlier registration of the number.  If the number
        used to belong to someone else, that owner loses its reverse link.

        Raises:
            ValueError: *kind* isn't ``"user"`` or ``"room"``.
        """
        number = normalize_number(number)
        kind = NumberKind(kind)

        previous = self._registrations.get(number)
        if previous and previous.owner_id != owner_id:
            if self._owned_numbers.get(previous.owner_id) == number:
                del self._owned_numbers[previous.owner_id]
            log.warning(
                "Re-registering %s from %s to %s", number, previous.owner_id, owner_id,
            )

        registration = NumberRegistration(number=number, kind=kind, owner_id=owner_id)
        self._registrations[number] = registration
        self._owned_numbers[owner_id] = number
        log.info(
            "Registered %s as a %s number owned by %s", number, kind.value, owner_id,
        )
        return registration

    def get_number_for_owner(self, owner_id: str) -> str | None:
        return self._owned_numbers.get(owner_id)

    def get_number_registration(self, number: str) -> NumberRegistration | None:
        return self._registrations.get(normalize_number(number))

    # ------------------------------------------------------------------
    # Room bindings
    # ------------------------------------------------------------------

    def add_user_number(
        self,
        internal_number: str,
        external_number: str,
        room_id: str,
    ) -> None:
        """Bind *room_id* to the 1:1 conversation ``internal <-> external``.

        Several rooms may carry the same conversation; all of them are kept.
        Adding the same room twice only logs a warning.

        Raises:
            InvalidNumberKind: *internal_number* isn't a registered user
                number, or *room_id* is already bound to a room number.
        """
        internal_number = normalize_number(internal_number)
        external_number = normalize_number(external_number)
        self._require_kind(internal_number, NumberKind.USER)

        room_number = self.get_room_number_for_room(room_id)
        if room_number:
            raise InvalidNumberKind(
                f"Room {room_id} is bound to room number {room_number}"
            )

        rooms = self._user_rooms.setdefault(internal_number, {}).setdefault(
            external_number, set(),
        )
        if room_id in rooms:
            log.warning(
                "User number %s with external %s is already mapped to %s",
                internal_number, external_number, room_id,
            )
        else:
            rooms.add(room_id)
            log.info(
                "Mapped user number %s with external %s to room %s",
                internal_number, external_number, room_id,
            )
        self._room_owned[room_id] = internal_number

    def add_room_number(self, number: str, room_id: str) -> None:
        """Bind a room-kind *number* to *room_id*, replacing any earlier room.

        Raises:
            InvalidNumberKind: *number* isn't a registered room number.
        """
        number = normalize_number(number)
        self._require_kind(number, NumberKind.ROOM)

        existing = self._room_numbers.get(number)
        if existing and existing != room_id:
            log.warning(
                "Overwriting room number %s from room %s to room %s",
                number, existing, room_id,
            )
            self._room_owned.pop(existing, None)
        self._room_numbers[number] = room_id
        self._room_owned[room_id] = number
        self._room_owned[number] = room_id
        log.info("Mapped room number %s to room %s", number, room_id)

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    def find_user_rooms(self, external_number: str, internal_number: str) -> set[str]:
        """Rooms carrying the conversation between the two numbers (a copy)."""
        by_external = self._user_rooms.get(normalize_number(internal_number), {})
        return set(by_external.get(normalize_number(external_number), ()))

    def find_room(self, number: str) -> str | None:
        return self._room_numbers.get(normalize_number(number))

    def get_number_for_room(self, room_id_or_number: str) -> str | None:
        """Combined reverse index used for outbound routing.

        For a room ID this is the owned number the room sends as.  For a
        room-kind number it's the room bound to it.
        """
        value = self._room_owned.get(room_id_or_number)
        if value is None and not room_id_or_number.startswith("!"):
            value = self._room_owned.get(normalize_number(room_id_or_number))
        return value

    def get_room_number_for_room(self, room_id: str) -> str | None:
        """The room-kind number bound to *room_id*, if it has one."""
        number = self._room_owned.get(room_id)
        if number and self._room_numbers.get(number) == room_id:
            return number
        return None

    def _require_kind(self, number: str, kind: NumberKind) -> None:
        registration = self._registrations.get(number)
        if registration is None or registration.kind is not kind:
            raise InvalidNumberKind(f"Phone number {number} is not a {kind.value} number")
