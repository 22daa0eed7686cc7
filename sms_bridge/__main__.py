"""Entry point for the SMS bridge appservice.

Usage::

    python -m sms_bridge
"""

from __future__ import annotations

import asyncio
import logging

from mautrix.appservice import AppService

from .bridge import SmsBridge
from .config import BridgeConfig
from .gateway import TwilioGateway
from .store import AccountDataStore

log = logging.getLogger("sms_bridge")


async def main() -> None:
    """Create the :class:`AppService`, mount the webhook and start serving."""
    config = BridgeConfig.from_env()
    logging.basicConfig(
        level=config.log_level,
        format="%(asctime)s [%(levelname)s] %(name)s — %(message)s",
    )
    log.info("Owned numbers: %s", [owned.number for owned in config.owned_numbers])

    store = AccountDataStore(config.db_path)
    await store.open()

    appservice = AppService(
        server=config.homeserver_url,
        domain=config.domain,
        as_token=config.as_token,
        hs_token=config.hs_token,
        bot_localpart=config.bot_localpart,
        id="sms-bridge",
    )
    gateway = TwilioGateway.from_credentials(
        config.twilio_account_sid, config.twilio_auth_token,
    )
    bridge = SmsBridge(appservice, config, gateway, store)
    bridge.webhook.register(appservice.app)

    @appservice.matrix_event_handler
    async def on_event(event) -> None:
        """Dispatch incoming Matrix events to the bridge."""
        await bridge.handle_event(event)

    log.info("Starting appservice on %s:%d", config.listen_host, config.listen_port)
    await appservice.start(host=config.listen_host, port=config.listen_port)

    await bridge.start()

    try:
        await asyncio.Event().wait()
    except (KeyboardInterrupt, asyncio.CancelledError):
        log.info("Shutting down")
    finally:
        await appservice.stop()
        await store.close()


def run() -> None:
    asyncio.run(main())


if __name__ == "__main__":
    run()
