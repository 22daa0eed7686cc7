"""Core routing between SMS and Matrix.

Inbound texts are delivered into the room(s) the identity registry maps the
``(from, to)`` pair to, creating a direct chat when there is none yet.
Outbound Matrix messages are sent to every virtual user's number in the
room, as the room's owned number.
"""

from __future__ import annotations

import asyncio
import logging
from collections import Counter, defaultdict
from typing import TYPE_CHECKING, Collection
from urllib.parse import urlsplit

from mautrix.types import FileInfo, MediaMessageEventContent, MessageType

from .errors import DeliveryFailure, NoRouteForRoom, UnregisteredNumber
from .identity import (
    IdentityKind,
    classify_identity,
    is_bridge_managed,
    normalize_number,
    number_for_virtual_user,
)
from .registry import NumberKind

if TYPE_CHECKING:
    from mautrix.appservice import AppService

    from .gateway import InboundSms, MediaAttachment, TwilioGateway
    from .provisioner import DirectChatProvisioner
    from .registry import IdentityRegistry
    from .virtual_users import VirtualUserManager

log = logging.getLogger(__name__)

SEND_ERROR_NOTICE = (
    "There was an error sending your text message. Please try again later "
    "or contact the bridge operator."
)

# Message types whose body is sent as the SMS text.
_TEXT_MSGTYPES = frozenset({MessageType.TEXT, MessageType.NOTICE, MessageType.EMOTE})
# Message types forwarded as an MMS attachment.
_MEDIA_MSGTYPES = frozenset({
    MessageType.IMAGE, MessageType.VIDEO, MessageType.AUDIO, MessageType.FILE,
})


def msgtype_for(content_type: str) -> MessageType:
    """Pick the Matrix message type for a MIME type."""
    if content_type.startswith("video/"):
        return MessageType.VIDEO
    if content_type.startswith("image/"):
        return MessageType.IMAGE
    return MessageType.FILE


def media_download_url(media_base_url: str, mxc_uri: str) -> str | None:
    """Turn ``mxc://server/id`` into a plain HTTP download URL."""
    if not mxc_uri or not mxc_uri.startswith("mxc://"):
        return None
    server_and_id = mxc_uri[len("mxc://"):]
    return f"{media_base_url.rstrip('/')}/_matrix/media/v3/download/{server_and_id}"


class MessageRouter:
    """Moves messages between Twilio and Matrix rooms.

    Args:
        appservice: The mautrix :class:`AppService` instance.
        registry: Number/room mappings.
        virtual_users: Source of virtual user intents.
        provisioner: Creates rooms for conversations that have none.
        gateway: Sends SMS and fetches inbound media.
        domain: The homeserver domain virtual users live on.
        media_base_url: Public homeserver URL used for outbound MMS media.
        allowed_users: If non-empty, only these users may send texts.
    """

    def __init__(
        self,
        appservice: AppService,
        registry: IdentityRegistry,
        virtual_users: VirtualUserManager,
        provisioner: DirectChatProvisioner,
        gateway: TwilioGateway,
        domain: str,
        media_base_url: str = "",
        allowed_users: Collection[str] = (),
    ) -> None:
        self._appservice = appservice
        self._registry = registry
        self._virtual_users = virtual_users
        self._provisioner = provisioner
        self._gateway = gateway
        self._domain = domain
        self._media_base_url = media_base_url
        self._allowed_users = frozenset(allowed_users)
        # (internal, external) -> lock held while checking for / creating a room
        self._provision_locks: defaultdict[tuple[str, str], asyncio.Lock] = (
            defaultdict(asyncio.Lock)
        )
        # (internal, external) -> tasks holding or waiting for that lock
        self._provision_users: Counter[tuple[str, str]] = Counter()

    # ------------------------------------------------------------------
    # SMS -> Matrix
    # ------------------------------------------------------------------

    async def handle_inbound_sms(self, sms: InboundSms) -> None:
        """Deliver an inbound text into every room it routes to."""
        from_number = normalize_number(sms.from_number)
        to_number = normalize_number(sms.to_number)
        log.info("Processing SMS from %s to %s", from_number, to_number)

        try:
            room_ids = await self._resolve_rooms(from_number, to_number)
        except UnregisteredNumber as exc:
            log.warning("Dropping SMS from %s: %s", from_number, exc)
            return
        except Exception:
            log.exception("Failed to get rooms for %s to %s", from_number, to_number)
            return

        if not room_ids:
            log.warning(
                "Message from %s to %s did not route to any rooms",
                from_number, to_number,
            )
            return

        for room_id in sorted(room_ids):
            try:
                await self._deliver(from_number, room_id, sms)
            except Exception:
                log.exception(
                    "Failed to deliver SMS from %s to %s into %s",
                    from_number, to_number, room_id,
                )

    async def _resolve_rooms(self, from_number: str, to_number: str) -> set[str]:
        registration = self._registry.get_number_registration(to_number)
        if registration is None:
            raise UnregisteredNumber(f"Phone number {to_number} is not registered")

        if registration.kind is NumberKind.ROOM:
            room_id = self._registry.find_room(to_number)
            if not room_id:
                log.warning("Room number %s is not bound to a room", to_number)
                return set()
            return {room_id}

        key = (to_number, from_number)
        self._provision_users[key] += 1
        try:
            async with self._provision_locks[key]:
                room_ids = self._registry.find_user_rooms(from_number, to_number)
                if room_ids:
                    return room_ids
                room_id = await self._provisioner.create_direct_chat(
                    from_number, registration.owner_id,
                )
                self._registry.add_user_number(to_number, from_number, room_id)
                return {room_id}
        finally:
            self._provision_users[key] -= 1
            if not self._provision_users[key]:
                del self._provision_users[key]
                del self._provision_locks[key]

    async def _deliver(self, from_number: str, room_id: str, sms: InboundSms) -> None:
        intent = await self._virtual_users.get_intent(from_number, room_id=room_id)

        for attachment in sms.media:
            try:
                await self._deliver_media(intent, room_id, attachment)
            except Exception:
                log.exception("Failed to bridge media %s into %s", attachment.url, room_id)

        if sms.body:
            await intent.send_text(room_id, sms.body)
            log.info("Sent text from %s to room %s", from_number, room_id)

    async def _deliver_media(self, intent, room_id: str, attachment: MediaAttachment) -> None:
        data = await self._gateway.fetch_media(attachment.url)
        filename = urlsplit(attachment.url).path.rsplit("/", 1)[-1] or "attachment"
        mxc = await intent.upload_media(
            data, mime_type=attachment.content_type, filename=filename,
        )
        content = MediaMessageEventContent(
            msgtype=msgtype_for(attachment.content_type),
            body=filename,
            url=mxc,
            info=FileInfo(mimetype=attachment.content_type, size=len(data)),
        )
        await intent.send_message(room_id, content)
        log.info("Sent %s media to room %s", attachment.content_type, room_id)

    # ------------------------------------------------------------------
    # Matrix -> SMS
    # ------------------------------------------------------------------

    async def handle_outbound_message(self, event) -> None:
        """Text a Matrix message to every virtual user's number in the room."""
        room_id: str = event.room_id
        sender: str = event.sender

        if is_bridge_managed(sender, self._appservice.bot_mxid, self._domain):
            return
        if self._allowed_users and sender not in self._allowed_users:
            log.debug("Ignoring message from %s: not allowed to send texts", sender)
            return

        try:
            owned_number = self._owned_number_for(room_id)
        except NoRouteForRoom as exc:
            log.warning(
                "Failed to process event %s (sender: %s): %s",
                event.event_id, sender, exc,
            )
            return

        body, media_urls = self._outbound_content(event.content)
        if not body and not media_urls:
            log.debug("Event %s has nothing to text", event.event_id)
            return

        try:
            members = await self._appservice.intent.get_joined_members(room_id)
        except Exception:
            log.exception("Failed to get joined members of %s", room_id)
            return

        for number in self._external_numbers(members):
            await self._send_sms(owned_number, number, body, media_urls, event)

    def _owned_number_for(self, room_id: str) -> str:
        number = self._registry.get_number_for_room(room_id)
        if not number:
            raise NoRouteForRoom(f"Room {room_id} has no routed phone number")
        return number

    def _external_numbers(self, member_ids) -> list[str]:
        return [
            number_for_virtual_user(user_id)
            for user_id in member_ids
            if self._kind_of(user_id) is IdentityKind.VIRTUAL
        ]

    def _outbound_content(self, content) -> tuple[str, list[str]]:
        msgtype = content.msgtype
        if msgtype in _MEDIA_MSGTYPES:
            url = media_download_url(self._media_base_url, content.url)
            return "", [url] if url else []
        if msgtype in _TEXT_MSGTYPES:
            return content.body or "", []
        return "", []

    async def _send_sms(
        self,
        from_number: str,
        to_number: str,
        body: str,
        media_urls: list[str],
        event,
    ) -> None:
        room_id: str = event.room_id
        try:
            await self._gateway.send_sms(
                from_number=from_number,
                to_number=to_number,
                body=body,
                media_urls=media_urls,
            )
        except DeliveryFailure:
            log.exception(
                "Error sending SMS from %s to %s in room %s",
                from_number, to_number, room_id,
            )
            try:
                intent = await self._virtual_users.get_intent(to_number)
                await intent.send_notice(room_id, SEND_ERROR_NOTICE)
            except Exception:
                log.exception("Failed to post send error notice in %s", room_id)
            return

        try:
            intent = await self._virtual_users.get_intent(to_number)
            await intent.mark_read(room_id, event.event_id)
        except Exception:
            log.exception("Failed to send read receipt in %s", room_id)

    def _kind_of(self, user_id: str) -> IdentityKind:
        return classify_identity(user_id, self._appservice.bot_mxid, self._domain)
