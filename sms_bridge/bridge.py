"""Top-level bridge context.

:class:`SmsBridge` owns every component (registry, classifier, router,
provisioner, webhook) and wires Matrix events to them.  Nothing here is a
module-level singleton, so tests build a fresh bridge per case.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from mautrix.types import EventType, Membership

from .classifier import NumberNeeded, RoomClassifier
from .gateway import download
from .identity import IdentityKind, classify_identity, number_for_virtual_user
from .provisioner import DirectChatProvisioner
from .registry import IdentityRegistry, NumberKind
from .router import MessageRouter
from .virtual_users import VirtualUserManager
from .webhook import SmsWebhook

if TYPE_CHECKING:
    from mautrix.appservice import AppService

    from .config import BridgeConfig
    from .gateway import TwilioGateway
    from .store import AccountDataStore

log = logging.getLogger(__name__)

# Account data object holding the bot's profile state.
BOT_PROFILE_OBJECT = "bridge"


class SmsBridge:
    """Routes events between Matrix and Twilio.

    Args:
        appservice: The mautrix :class:`AppService` instance.
        config: Bridge configuration.
        gateway: Twilio gateway used for sends and media downloads.
        store: Account data store for the bot profile.
    """

    def __init__(
        self,
        appservice: AppService,
        config: BridgeConfig,
        gateway: TwilioGateway,
        store: AccountDataStore,
    ) -> None:
        self._appservice = appservice
        self._config = config
        self._store = store
        self._number_requests: set[str] = set()

        self.registry = IdentityRegistry()
        self.virtual_users = VirtualUserManager(appservice, config.domain)
        self.classifier = RoomClassifier(
            appservice,
            self.registry,
            config.domain,
            on_number_needed=self._on_number_needed,
        )
        self.provisioner = DirectChatProvisioner(appservice, self.virtual_users)
        self.router = MessageRouter(
            appservice,
            self.registry,
            self.virtual_users,
            self.provisioner,
            gateway,
            domain=config.domain,
            media_base_url=config.media_url,
            allowed_users=config.allowed_users,
        )
        self.webhook = SmsWebhook(self.router, config.webhook_secret)

    # ------------------------------------------------------------------
    # Startup
    # ------------------------------------------------------------------

    def register_owned_numbers(self) -> None:
        """Load the configured owned numbers into the registry."""
        for owned in self._config.owned_numbers:
            self.registry.register_number(owned.number, owned.kind, owned.owner_id)
            if owned.kind is NumberKind.ROOM:
                self.registry.add_room_number(owned.number, owned.owner_id)

    async def start(self) -> None:
        self.register_owned_numbers()
        await self.update_bot_profile()
        await self.bridge_known_rooms()

    async def update_bot_profile(self) -> None:
        """Bring the bot's display name and avatar in line with the config."""
        bot = self._appservice.intent
        bot_mxid = self._appservice.bot_mxid

        desired_avatar = self._config.bot_avatar_url
        try:
            profile = await self._store.get_account_data(BOT_PROFILE_OBJECT)
            if desired_avatar and profile.get("avatar_url") != desired_avatar:
                log.info("Updating avatar for bridge bot")
                data = await download(desired_avatar)
                mxc = await bot.upload_media(data, filename="avatar")
                await bot.set_avatar_url(mxc)
                profile["avatar_url"] = desired_avatar
                await self._store.set_account_data(BOT_PROFILE_OBJECT, profile)
        except Exception:
            log.exception("Failed to update bot avatar")

        desired_name = self._config.bot_displayname
        try:
            current_name = await bot.get_displayname(bot_mxid)
            if current_name != desired_name:
                log.info(
                    "Updating display name from %r to %r", current_name, desired_name,
                )
                await bot.set_displayname(desired_name)
        except Exception:
            log.exception("Failed to update bot display name")

    async def bridge_known_rooms(self) -> None:
        """Classify every room the bot is already in."""
        try:
            room_ids = await self._appservice.intent.get_joined_rooms()
        except Exception:
            log.exception("Failed to list joined rooms")
            return
        for room_id in room_ids:
            try:
                await self.classifier.classify_room(room_id)
            except Exception:
                log.exception("Failed to classify %s", room_id)

    # ------------------------------------------------------------------
    # Matrix events
    # ------------------------------------------------------------------

    async def handle_event(self, event) -> None:
        """Dispatch a Matrix event.  Errors are logged, never raised."""
        try:
            if event.type == EventType.ROOM_MEMBER:
                await self.handle_member(event)
            elif event.type == EventType.ROOM_MESSAGE:
                await self.handle_message(event)
        except Exception:
            log.exception("Failed to handle %s in %s", event.type, event.room_id)

    async def handle_member(self, event) -> None:
        room_id: str = event.room_id
        user_id: str = event.state_key
        membership = event.content.membership

        if membership == Membership.INVITE:
            if self._kind_of(user_id) is not IdentityKind.HUMAN:
                await self._accept_invite(room_id, user_id)
        elif membership in (Membership.LEAVE, Membership.BAN):
            admin_room = self.classifier.admin_room_for(room_id)
            if admin_room and admin_room.owner_user_id == user_id:
                log.info("%s left their admin room %s", user_id, room_id)
                self.classifier.remove_admin_room(room_id)

    async def handle_message(self, event) -> None:
        if self.classifier.is_admin_room(event.room_id):
            log.debug("Not texting admin room message %s", event.event_id)
            return
        await self.router.handle_outbound_message(event)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _accept_invite(self, room_id: str, user_id: str) -> None:
        log.info("%s received invite to room %s", user_id, room_id)
        bot = self._appservice.intent

        if self._kind_of(user_id) is IdentityKind.VIRTUAL:
            intent = await self.virtual_users.get_intent(
                number_for_virtual_user(user_id), room_id=room_id,
            )
            # The bot has to be in the room for it to be bridged.
            try:
                await intent.invite_user(room_id, self._appservice.bot_mxid)
            except Exception:
                log.debug("Could not invite the bot to %s, it may already be there", room_id)
            await bot.ensure_joined(room_id)
        else:
            await bot.ensure_joined(room_id)

        await self.classifier.classify_room(room_id, is_newly_created=True)

    async def _on_number_needed(self, notice: NumberNeeded) -> None:
        """Ask the owner, in their admin room, to get a number registered."""
        if notice.room_id in self._number_requests:
            return
        self._number_requests.add(notice.room_id)

        admin_room = await self.classifier.get_or_create_admin_room(notice.owner_user_id)
        await self._appservice.intent.send_notice(
            admin_room.room_id,
            f"Room {notice.room_id} with {notice.external_number} can't be "
            "bridged because you don't have a phone number yet. Ask the bridge "
            "operator to register one for you.",
        )

    def _kind_of(self, user_id: str) -> IdentityKind:
        return classify_identity(user_id, self._appservice.bot_mxid, self._config.domain)
