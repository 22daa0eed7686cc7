"""Errors raised and handled inside the bridge.

None of these escape an event handler; each is caught at the component
boundary where it happens and logged.
"""

from __future__ import annotations


class BridgeError(Exception):
    """Base class for bridge routing errors."""


class UnregisteredNumber(BridgeError):
    """An inbound message was addressed to a number nobody owns."""


class InvalidNumberKind(BridgeError):
    """A number was bound under the wrong kind (user vs. room)."""


class NoRouteForRoom(BridgeError):
    """An outbound message came from a room with no owned number."""


class UnsupportedTopology(BridgeError):
    """A room's membership isn't one human, the bot and one virtual identity."""


class DeliveryFailure(BridgeError):
    """The SMS gateway or the chat network refused a send."""
