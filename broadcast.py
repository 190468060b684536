# broadcast.py
import random
import asyncio
import logging
from typing import Awaitable, Callable, Optional, Union

from guardians import GuardianRegistry
from transport import InboundMessage, MediaDescriptor, Transport

logger = logging.getLogger("broadcast")

PACE_MIN_SECONDS = 5
PACE_MAX_SECONDS = 20


async def human_pause() -> None:
    """Random 5-20s pause between sends so the channel is not throttled."""
    await asyncio.sleep(random.uniform(PACE_MIN_SECONDS, PACE_MAX_SECONDS))


BroadcastContent = Union[str, InboundMessage]


def _resolve(content: BroadcastContent) -> Optional[Union[str, MediaDescriptor]]:
    """Pick what to send for a broadcast: text, media, or None when unsupported."""
    if isinstance(content, str):
        return content or None
    if not isinstance(content, InboundMessage):
        return None
    msg = content.quoted if content.quoted is not None else content
    if msg.media is not None:
        return msg.media
    if msg.text:
        return msg.text
    return None


class Broadcaster:
    def __init__(self, transport: Transport, registry: GuardianRegistry,
                 pace: Callable[[], Awaitable[None]] = human_pause):
        self.transport = transport
        self.registry = registry
        self.pace = pace

    async def broadcast(self, content: BroadcastContent) -> int:
        """Send content to every registered guardian, one at a time. Returns successful sends."""
        payload = _resolve(content)
        recipients = self.registry.guardians()
        logger.info("Broadcast recipients: %s", ", ".join(recipients))
        if payload is None:
            logger.warning("Unsupported message for broadcast, skipping all %d recipients.", len(recipients))
            return 0

        ok, fail = 0, 0
        for recipient in recipients:
            try:
                if isinstance(payload, MediaDescriptor):
                    await self.transport.send_media(recipient, payload)
                else:
                    await self.transport.send_text(recipient, payload)
                ok += 1
                logger.debug("Mensaje enviado a %s", recipient)
            except Exception as e:
                fail += 1
                logger.error("Error enviando mensaje a %s: %s", recipient, e)
            await self.pace()
        logger.info("Broadcast done. sent=%d failed=%d", ok, fail)
        return ok
