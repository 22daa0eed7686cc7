"""Twilio side of the bridge: inbound webhook payloads and outbound sends.

The Twilio SDK is synchronous, so sends run in a worker thread via
:func:`asyncio.to_thread`.  Media is downloaded with ``aiohttp``.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Mapping, Sequence

import aiohttp
from twilio.base.exceptions import TwilioException
from twilio.rest import Client

from .errors import DeliveryFailure
from .identity import normalize_number

log = logging.getLogger(__name__)

# Twilio attaches at most this many media items to one message.
MAX_MEDIA = 10


@dataclass(frozen=True)
class MediaAttachment:
    url: str
    content_type: str


@dataclass(frozen=True)
class InboundSms:
    """An SMS/MMS received from Twilio."""

    from_number: str
    to_number: str
    body: str
    media: tuple[MediaAttachment, ...] = ()


def parse_inbound_form(form: Mapping[str, str]) -> InboundSms:
    """Build an :class:`InboundSms` from Twilio's webhook form fields.

    Raises:
        ValueError: ``To``/``From`` are missing or ``NumMedia`` isn't a number.
    """
    to_number = (form.get("To") or "").strip()
    from_number = (form.get("From") or "").strip()
    if not to_number or not from_number:
        raise ValueError("To and From are required")

    num_media = int(form.get("NumMedia") or 0)
    if num_media > MAX_MEDIA:
        log.warning("NumMedia is %d, only reading the first %d", num_media, MAX_MEDIA)
        num_media = MAX_MEDIA
    media = []
    for index in range(num_media):
        url = form.get(f"MediaUrl{index}")
        if not url:
            log.warning("Media %d announced but MediaUrl%d is missing", index, index)
            continue
        content_type = form.get(f"MediaContentType{index}") or "application/octet-stream"
        media.append(MediaAttachment(url=url, content_type=content_type))

    return InboundSms(
        from_number=normalize_number(from_number),
        to_number=normalize_number(to_number),
        body=form.get("Body") or "",
        media=tuple(media),
    )


async def download(url: str, *, auth: aiohttp.BasicAuth | None = None) -> bytes:
    """Fetch *url* and return the response body.

    Raises:
        DeliveryFailure: The request failed or returned an error status.
    """
    try:
        async with aiohttp.ClientSession(auth=auth) as session:
            async with session.get(url) as response:
                response.raise_for_status()
                return await response.read()
    except aiohttp.ClientError as exc:
        raise DeliveryFailure(f"Failed to download {url}: {exc}") from exc


class TwilioGateway:
    """Sends SMS/MMS through Twilio and fetches inbound media.

    Args:
        client: Configured Twilio REST client.
        account_sid: Used with *auth_token* to authenticate media downloads.
        auth_token: Twilio auth token.
    """

    def __init__(self, client: Client, account_sid: str, auth_token: str) -> None:
        self._client = client
        self._media_auth = aiohttp.BasicAuth(account_sid, auth_token)

    @classmethod
    def from_credentials(cls, account_sid: str, auth_token: str) -> TwilioGateway:
        return cls(Client(account_sid, auth_token), account_sid, auth_token)

    async def send_sms(
        self,
        *,
        from_number: str,
        to_number: str,
        body: str,
        media_urls: Sequence[str] = (),
    ) -> str:
        """Send a text (or MMS when *media_urls* is set).

        Returns:
            The Twilio message SID.

        Raises:
            DeliveryFailure: Twilio rejected the message or couldn't be reached.
        """
        from_number = normalize_number(from_number)
        to_number = normalize_number(to_number)
        params = {"body": body, "to": to_number, "from_": from_number}
        if media_urls:
            params["media_url"] = list(media_urls)

        log.info("Sending text message to %s from %s", to_number, from_number)
        try:
            message = await asyncio.to_thread(self._client.messages.create, **params)
        except (TwilioException, OSError) as exc:
            raise DeliveryFailure(
                f"Twilio could not send from {from_number} to {to_number}: {exc}"
            ) from exc
        log.info("Sent message to %s from %s", to_number, from_number)
        return message.sid

    async def fetch_media(self, url: str) -> bytes:
        """Download an inbound MMS attachment."""
        return await download(url, auth=self._media_auth)
