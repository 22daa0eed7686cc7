"""Identity helpers for the SMS bridge.

Three kinds of Matrix users show up in bridged rooms:

1. **Service identity**: the appservice bot itself (``@_sms:domain``).
2. **Virtual identities**: one per phone number, controlled by the bridge
   (``@_sms_15550001111:domain``).
3. **Humans**: everybody else.

All functions here are pure and operate on plain strings.
"""

from __future__ import annotations

import enum
import re

# Virtual identity MXID prefix (created by this appservice).
VIRTUAL_USER_PREFIX = "_sms_"

_NON_DIGITS = re.compile(r"\D")


class IdentityKind(enum.Enum):
    SERVICE = "service"
    VIRTUAL = "virtual"
    HUMAN = "human"


def normalize_number(number: str) -> str:
    """Return the canonical ``+<digits>`` form of *number*.

    Anything that isn't a digit is dropped, so ``"1 (555) 000-1111"``,
    ``"15550001111"`` and ``"+15550001111"`` all normalize to the same key.
    Normalizing an already normalized number returns it unchanged.
    """
    return "+" + _NON_DIGITS.sub("", number or "")


def localpart(user_id: str) -> str:
    """Return the localpart of a Matrix user ID (``@alice:ex.com`` -> ``alice``)."""
    return user_id.split(":")[0].lstrip("@")


def virtual_mxid_for(number: str, domain: str) -> str:
    """Return the virtual identity MXID for *number* on *domain*.

    The MXID is ``@_sms_{digits}:{domain}``; the leading ``+`` is dropped
    because it isn't allowed in a localpart.
    """
    digits = normalize_number(number)[1:]
    return f"@{VIRTUAL_USER_PREFIX}{digits}:{domain}"


def is_virtual_user(user_id: str, domain: str) -> bool:
    """True if *user_id* is one of our virtual identities on *domain*."""
    return (
        localpart(user_id).startswith(VIRTUAL_USER_PREFIX)
        and user_id.endswith(f":{domain}")
    )


def number_for_virtual_user(user_id: str) -> str:
    """Return the phone number a virtual identity fronts for."""
    return normalize_number(localpart(user_id)[len(VIRTUAL_USER_PREFIX):])


def classify_identity(user_id: str, bot_mxid: str, domain: str) -> IdentityKind:
    """Decide whether *user_id* is the service identity, a virtual one or a human."""
    if user_id == bot_mxid:
        return IdentityKind.SERVICE
    if is_virtual_user(user_id, domain):
        return IdentityKind.VIRTUAL
    return IdentityKind.HUMAN


def is_bridge_managed(user_id: str, bot_mxid: str, domain: str) -> bool:
    """True for the service identity and every virtual identity."""
    return classify_identity(user_id, bot_mxid, domain) is not IdentityKind.HUMAN
