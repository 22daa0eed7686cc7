"""Unit tests for the identity registry.

The registry is pure in-memory state, so every test builds a fresh one.
Overwrites are last-write-wins: tests assert the overwrite rather than a
rejection.
"""

from __future__ import annotations

import dataclasses
import logging

import pytest

from sms_bridge.errors import InvalidNumberKind
from sms_bridge.registry import IdentityRegistry, NumberKind, NumberRegistration

from tests.conftest import ALICE, ALICE_NUMBER, BOB, EXTERNAL_NUMBER

ROOM_A = "!a:example.com"
ROOM_B = "!b:example.com"
GROUP_ROOM = "!group:example.com"
ROOM_NUMBER = "+15550003333"


# ---------------------------------------------------------------------------
# register_number / get_number_for_owner
# ---------------------------------------------------------------------------


class TestRegisterNumber:

    @pytest.mark.parametrize("kind,owner", [
        ("user", ALICE),
        (NumberKind.USER, BOB),
        ("room", GROUP_ROOM),
    ])
    def test_owner_reverse_lookup(self, registry: IdentityRegistry, kind, owner):
        registry.register_number(ALICE_NUMBER, kind, owner)
        assert registry.get_number_for_owner(owner) == ALICE_NUMBER

    def test_number_normalized_before_storage(self, registry: IdentityRegistry):
        registry.register_number("15550002222", "user", ALICE)

        assert registry.get_number_for_owner(ALICE) == ALICE_NUMBER
        assert registry.get_number_registration("+15550002222") is not None

    def test_registration_contents(self, registry: IdentityRegistry):
        registry.register_number(ALICE_NUMBER, "user", ALICE)

        registration = registry.get_number_registration(ALICE_NUMBER)

        assert registration == NumberRegistration(ALICE_NUMBER, NumberKind.USER, ALICE)

    def test_registration_cannot_be_mutated(self, registry: IdentityRegistry):
        registry.register_number(ALICE_NUMBER, "user", ALICE)
        registration = registry.get_number_registration(ALICE_NUMBER)

        with pytest.raises(dataclasses.FrozenInstanceError):
            registration.owner_id = BOB

        assert registry.get_number_registration(ALICE_NUMBER).owner_id == ALICE

    def test_unknown_number(self, registry: IdentityRegistry):
        assert registry.get_number_registration(ALICE_NUMBER) is None
        assert registry.get_number_for_owner(ALICE) is None

    def test_invalid_kind_rejected(self, registry: IdentityRegistry):
        with pytest.raises(ValueError):
            registry.register_number(ALICE_NUMBER, "group", ALICE)

    def test_reregister_overwrites(self, registry: IdentityRegistry):
        registry.register_number(ALICE_NUMBER, "user", ALICE)
        registry.register_number(ALICE_NUMBER, "user", BOB)

        assert registry.get_number_registration(ALICE_NUMBER).owner_id == BOB
        assert registry.get_number_for_owner(BOB) == ALICE_NUMBER

    def test_reregister_removes_old_owner_link(self, registry: IdentityRegistry):
        registry.register_number(ALICE_NUMBER, "user", ALICE)
        registry.register_number(ALICE_NUMBER, "user", BOB)

        assert registry.get_number_for_owner(ALICE) is None

    def test_kind_change_is_allowed(self, registry: IdentityRegistry):
        registry.register_number(ALICE_NUMBER, "user", ALICE)
        registry.register_number(ALICE_NUMBER, "room", GROUP_ROOM)

        assert registry.get_number_registration(ALICE_NUMBER).kind is NumberKind.ROOM


# ---------------------------------------------------------------------------
# add_user_number / find_user_rooms
# ---------------------------------------------------------------------------


class TestUserNumbers:

    def test_add_and_find(self, alice_registry: IdentityRegistry):
        alice_registry.add_user_number(ALICE_NUMBER, EXTERNAL_NUMBER, ROOM_A)

        assert alice_registry.find_user_rooms(EXTERNAL_NUMBER, ALICE_NUMBER) == {ROOM_A}

    def test_add_twice_is_idempotent(self, alice_registry: IdentityRegistry, caplog):
        alice_registry.add_user_number(ALICE_NUMBER, EXTERNAL_NUMBER, ROOM_A)
        with caplog.at_level(logging.WARNING):
            alice_registry.add_user_number(ALICE_NUMBER, EXTERNAL_NUMBER, ROOM_A)

        assert alice_registry.find_user_rooms(EXTERNAL_NUMBER, ALICE_NUMBER) == {ROOM_A}
        assert "already mapped" in caplog.text

    def test_multiple_rooms_all_kept(self, alice_registry: IdentityRegistry):
        alice_registry.add_user_number(ALICE_NUMBER, EXTERNAL_NUMBER, ROOM_A)
        alice_registry.add_user_number(ALICE_NUMBER, EXTERNAL_NUMBER, ROOM_B)

        assert alice_registry.find_user_rooms(EXTERNAL_NUMBER, ALICE_NUMBER) == {ROOM_A, ROOM_B}

    def test_find_returns_copy(self, alice_registry: IdentityRegistry):
        alice_registry.add_user_number(ALICE_NUMBER, EXTERNAL_NUMBER, ROOM_A)

        alice_registry.find_user_rooms(EXTERNAL_NUMBER, ALICE_NUMBER).add(ROOM_B)

        assert alice_registry.find_user_rooms(EXTERNAL_NUMBER, ALICE_NUMBER) == {ROOM_A}

    def test_find_unknown_pair_is_empty(self, alice_registry: IdentityRegistry):
        assert alice_registry.find_user_rooms(EXTERNAL_NUMBER, ALICE_NUMBER) == set()

    def test_find_normalizes_numbers(self, alice_registry: IdentityRegistry):
        alice_registry.add_user_number("15550002222", "15550001111", ROOM_A)

        assert alice_registry.find_user_rooms("+15550001111", "+15550002222") == {ROOM_A}

    def test_room_maps_back_to_internal_number(self, alice_registry: IdentityRegistry):
        alice_registry.add_user_number(ALICE_NUMBER, EXTERNAL_NUMBER, ROOM_A)

        assert alice_registry.get_number_for_room(ROOM_A) == ALICE_NUMBER

    def test_room_kind_number_rejected(self, registry: IdentityRegistry):
        registry.register_number(ROOM_NUMBER, "room", GROUP_ROOM)

        with pytest.raises(InvalidNumberKind):
            registry.add_user_number(ROOM_NUMBER, EXTERNAL_NUMBER, ROOM_A)

        assert registry.find_user_rooms(EXTERNAL_NUMBER, ROOM_NUMBER) == set()
        assert registry.get_number_for_room(ROOM_A) is None

    def test_unregistered_number_rejected(self, registry: IdentityRegistry):
        with pytest.raises(InvalidNumberKind):
            registry.add_user_number(ALICE_NUMBER, EXTERNAL_NUMBER, ROOM_A)


# ---------------------------------------------------------------------------
# add_room_number / find_room
# ---------------------------------------------------------------------------


class TestRoomNumbers:

    @pytest.fixture()
    def room_registry(self, registry: IdentityRegistry) -> IdentityRegistry:
        registry.register_number(ROOM_NUMBER, "room", GROUP_ROOM)
        return registry

    def test_add_and_find(self, room_registry: IdentityRegistry):
        room_registry.add_room_number(ROOM_NUMBER, GROUP_ROOM)

        assert room_registry.find_room(ROOM_NUMBER) == GROUP_ROOM

    def test_combined_reverse_index(self, room_registry: IdentityRegistry):
        room_registry.add_room_number(ROOM_NUMBER, GROUP_ROOM)

        assert room_registry.get_number_for_room(GROUP_ROOM) == ROOM_NUMBER
        assert room_registry.get_number_for_room(ROOM_NUMBER) == GROUP_ROOM

    def test_overwrite_last_write_wins(self, room_registry: IdentityRegistry, caplog):
        room_registry.add_room_number(ROOM_NUMBER, GROUP_ROOM)
        with caplog.at_level(logging.WARNING):
            room_registry.add_room_number(ROOM_NUMBER, ROOM_B)

        assert room_registry.find_room(ROOM_NUMBER) == ROOM_B
        assert room_registry.get_number_for_room(ROOM_B) == ROOM_NUMBER
        assert room_registry.get_number_for_room(GROUP_ROOM) is None
        assert "Overwriting" in caplog.text

    def test_user_kind_number_rejected(self, alice_registry: IdentityRegistry):
        with pytest.raises(InvalidNumberKind):
            alice_registry.add_room_number(ALICE_NUMBER, GROUP_ROOM)

        assert alice_registry.find_room(ALICE_NUMBER) is None

    def test_room_number_room_not_rebound_to_user_number(
        self, room_registry: IdentityRegistry,
    ):
        room_registry.register_number(ALICE_NUMBER, "user", ALICE)
        room_registry.add_room_number(ROOM_NUMBER, GROUP_ROOM)

        with pytest.raises(InvalidNumberKind):
            room_registry.add_user_number(ALICE_NUMBER, EXTERNAL_NUMBER, GROUP_ROOM)

        assert room_registry.get_number_for_room(GROUP_ROOM) == ROOM_NUMBER
        assert room_registry.find_user_rooms(EXTERNAL_NUMBER, ALICE_NUMBER) == set()

    def test_room_number_for_room(self, room_registry: IdentityRegistry):
        room_registry.add_room_number(ROOM_NUMBER, GROUP_ROOM)

        assert room_registry.get_room_number_for_room(GROUP_ROOM) == ROOM_NUMBER
        assert room_registry.get_room_number_for_room(ROOM_A) is None

    def test_user_routed_room_has_no_room_number(self, alice_registry: IdentityRegistry):
        alice_registry.add_user_number(ALICE_NUMBER, EXTERNAL_NUMBER, ROOM_A)

        assert alice_registry.get_room_number_for_room(ROOM_A) is None

    def test_find_unknown(self, registry: IdentityRegistry):
        assert registry.find_room(ROOM_NUMBER) is None
        assert registry.get_number_for_room(GROUP_ROOM) is None
