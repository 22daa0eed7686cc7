"""Configuration parsed from environment variables."""

from __future__ import annotations

import logging
import os
import sys
from dataclasses import dataclass, field

from .identity import normalize_number
from .registry import NumberKind

log = logging.getLogger(__name__)

DEFAULT_BOT_AVATAR_URL = (
    "https://t2bot.io/_matrix/media/v1/download/t2l.io/SOZlqpJCUoecxNFZGGnDEhEy"
)


@dataclass(frozen=True)
class OwnedNumber:
    number: str
    kind: NumberKind
    owner_id: str


@dataclass(frozen=True)
class BridgeConfig:
    """SMS bridge configuration.

    All values are read from environment variables via :meth:`from_env`.

    Environment variables:
        SMS_HOMESERVER_URL: Matrix homeserver URL (e.g. ``http://synapse:8008``)
        SMS_DOMAIN: Matrix server domain (e.g. ``yourdomain.com``)
        SMS_AS_TOKEN: Appservice token from ``registration.yaml``
        SMS_HS_TOKEN: Homeserver token from ``registration.yaml``
        SMS_TWILIO_ACCOUNT_SID: Twilio account SID
        SMS_TWILIO_AUTH_TOKEN: Twilio auth token
        SMS_OWNED_NUMBERS: Owned numbers as
            ``+15550002222=@alice:domain,+15550003333=!room:domain``
        SMS_WEBHOOK_SECRET: Secret path segment of the Twilio webhook URL
        SMS_ALLOWED_USERS: Comma-separated users allowed to send texts
            (default: everyone)
        SMS_BOT_LOCALPART: Bot localpart (default: ``_sms``)
        SMS_BOT_DISPLAYNAME: Bot display name (default: ``SMS Bridge``)
        SMS_BOT_AVATAR_URL: HTTP URL of the bot avatar
        SMS_MEDIA_URL: Public homeserver URL for outbound MMS media
            (default: ``SMS_HOMESERVER_URL``)
        SMS_DB_PATH: SQLite database path (default: ``/data/sms.db``)
        SMS_LISTEN_HOST: Listen address (default: ``0.0.0.0``)
        SMS_LISTEN_PORT: Listen port (default: ``8009``)
        SMS_LOG_LEVEL: Logging level (default: ``INFO``)
    """

    homeserver_url: str
    domain: str
    as_token: str
    hs_token: str
    twilio_account_sid: str
    twilio_auth_token: str
    owned_numbers: tuple[OwnedNumber, ...]
    webhook_secret: str = "SET_A_SECRET"
    allowed_users: frozenset[str] = field(default_factory=frozenset)
    bot_localpart: str = "_sms"
    bot_displayname: str = "SMS Bridge"
    bot_avatar_url: str = DEFAULT_BOT_AVATAR_URL
    media_url: str = ""
    db_path: str = "/data/sms.db"
    listen_host: str = "0.0.0.0"
    listen_port: int = 8009
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> BridgeConfig:
        """Parse configuration from environment variables.

        Exits the process if required variables are missing or invalid.
        """
        homeserver_url = _require("SMS_HOMESERVER_URL")
        domain = _require("SMS_DOMAIN")
        as_token = _require("SMS_AS_TOKEN")
        hs_token = _require("SMS_HS_TOKEN")
        twilio_account_sid = _require("SMS_TWILIO_ACCOUNT_SID")
        twilio_auth_token = _require("SMS_TWILIO_AUTH_TOKEN")
        owned_numbers = _parse_owned_numbers()
        allowed_users = frozenset(
            user.strip()
            for user in os.environ.get("SMS_ALLOWED_USERS", "").split(",")
            if user.strip()
        )

        return cls(
            homeserver_url=homeserver_url,
            domain=domain,
            as_token=as_token,
            hs_token=hs_token,
            twilio_account_sid=twilio_account_sid,
            twilio_auth_token=twilio_auth_token,
            owned_numbers=owned_numbers,
            webhook_secret=_optional("SMS_WEBHOOK_SECRET", "SET_A_SECRET"),
            allowed_users=allowed_users,
            bot_localpart=_optional("SMS_BOT_LOCALPART", "_sms"),
            bot_displayname=_optional("SMS_BOT_DISPLAYNAME", "SMS Bridge"),
            bot_avatar_url=_optional("SMS_BOT_AVATAR_URL", DEFAULT_BOT_AVATAR_URL),
            media_url=_optional("SMS_MEDIA_URL", homeserver_url),
            db_path=_optional("SMS_DB_PATH", "/data/sms.db"),
            listen_host=_optional("SMS_LISTEN_HOST", "0.0.0.0"),
            listen_port=_parse_port(),
            log_level=_optional("SMS_LOG_LEVEL", "INFO").upper(),
        )


def _require(var: str) -> str:
    """Return the stripped value of *var*, or exit if empty/missing."""
    value = os.environ.get(var, "").strip()
    if not value:
        log.error("%s is required", var)
        sys.exit(1)
    return value


def _optional(var: str, default: str) -> str:
    return os.environ.get(var, "").strip() or default


def _parse_port() -> int:
    raw = _optional("SMS_LISTEN_PORT", "8009")
    try:
        port = int(raw)
    except ValueError:
        port = 0
    if not 0 < port < 65536:
        log.error("SMS_LISTEN_PORT must be a port number, got %r", raw)
        sys.exit(1)
    return port


def _parse_owned_numbers() -> tuple[OwnedNumber, ...]:
    """Parse ``SMS_OWNED_NUMBERS`` into :class:`OwnedNumber` entries.

    Owners starting with ``@`` own a user number, owners starting with
    ``!`` own a room number.
    """
    raw = os.environ.get("SMS_OWNED_NUMBERS", "").strip()
    if not raw:
        log.error("SMS_OWNED_NUMBERS is required")
        sys.exit(1)

    owned: list[OwnedNumber] = []
    for entry in raw.split(","):
        entry = entry.strip()
        if not entry:
            continue
        number, _, owner_id = entry.partition("=")
        number = number.strip()
        owner_id = owner_id.strip()
        if owner_id.startswith("@"):
            kind = NumberKind.USER
        elif owner_id.startswith("!"):
            kind = NumberKind.ROOM
        else:
            log.error(
                "SMS_OWNED_NUMBERS entry %r needs a user or room owner "
                "(expected '+15551234567=@user:domain' or '…=!room:domain')",
                entry,
            )
            sys.exit(1)
        if not any(char.isdigit() for char in number):
            log.error("SMS_OWNED_NUMBERS entry %r has no phone number", entry)
            sys.exit(1)
        owned.append(OwnedNumber(normalize_number(number), kind, owner_id))

    if not owned:
        log.error("SMS_OWNED_NUMBERS is required")
        sys.exit(1)

    return tuple(owned)
