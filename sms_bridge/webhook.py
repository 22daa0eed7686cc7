"""HTTP endpoint Twilio posts inbound texts to.

Mounted on the appservice's own ``aiohttp`` application, so the bridge
serves Matrix transactions and Twilio webhooks from the same port.
"""

from __future__ import annotations

import hmac
import logging
import secrets
from typing import TYPE_CHECKING

from aiohttp import web
from twilio.twiml.messaging_response import MessagingResponse

from .gateway import parse_inbound_form

if TYPE_CHECKING:
    from .router import MessageRouter

log = logging.getLogger(__name__)

DEFAULT_SECRET = "SET_A_SECRET"
SMS_PATH = "/api/v1/twilio/{secret}/sms"


def empty_twiml() -> web.Response:
    """An empty ``<Response/>``: Twilio sends no automatic reply."""
    return web.Response(text=str(MessagingResponse()), content_type="text/xml")


class SmsWebhook:
    """Receives Twilio webhooks and hands texts straight to the router.

    Args:
        router: The message router inbound texts are delivered through.
        secret: Path secret Twilio must include in the webhook URL.  The
            placeholder ``SET_A_SECRET`` is replaced by a random value.
    """

    def __init__(self, router: MessageRouter, secret: str) -> None:
        self._router = router
        if secret == DEFAULT_SECRET:
            log.warning(
                "Default webhook secret found in configuration. Using a random "
                "value instead; set SMS_WEBHOOK_SECRET to something else.",
            )
            secret = secrets.token_urlsafe(24)
        self._secret = secret

    def register(self, app: web.Application) -> None:
        app.router.add_post(SMS_PATH, self.handle_sms)

    async def handle_sms(self, request: web.Request) -> web.Response:
        given = request.match_info["secret"].encode()
        if not hmac.compare_digest(given, self._secret.encode()):
            log.warning("Received invalid SMS post: secret did not match")
            return web.Response(status=401)

        form = await request.post()
        try:
            sms = parse_inbound_form(form)
        except ValueError as exc:
            log.warning("Ignoring malformed SMS post: %s", exc)
            return empty_twiml()

        try:
            await self._router.handle_inbound_sms(sms)
        except Exception:
            log.exception("Failed to process SMS from %s", sms.from_number)
        return empty_twiml()
