"""Delivery: permission checks and the actual send.

Channels (WhatsApp newsletters / broadcast lists) are only posted to when
the transport confirms the destination is a channel and we hold posting
rights on it; anything else fails closed. Ordinary chats are sent to
directly.

Retries are not done here. The dispatcher calls an injected ``send``
coroutine; ``retrying_send`` builds the default one from the transport.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Awaitable, Callable

import config
from utils import retry_async

log = logging.getLogger(__name__)

SendFunc = Callable[[str, str], Awaitable[object]]


class ChannelPermissionError(PermissionError):
    """The destination is not a channel we may post to."""


@dataclass
class DestinationInfo:
    """What the transport knows about a destination's posting rights."""

    chat_id: str
    is_channel: bool
    is_read_only: bool
    name: str = ""


@dataclass
class DeliveryResult:
    sent: bool
    sent_to: str | None = None
    error: str | None = None
    message_id: str | None = None


def should_send(has_new_message: bool | None, policy: str | None = None) -> bool:
    """Apply the sendability policy to a stage-2 ``hasNewMessage`` value.

    ``permissive``: anything but an explicit False is sendable.
    ``strict``: only an explicit True is sendable.
    """
    policy = policy or config.SEND_POLICY
    if has_new_message is False:
        return False
    if policy == "strict":
        return has_new_message is True
    return True


def retrying_send(transport, *, attempts: int | None = None, delay: float | None = None) -> SendFunc:
    attempts = config.SEND_RETRIES if attempts is None else attempts
    delay = config.SEND_RETRY_DELAY if delay is None else delay

    async def _send(chat_id: str, text: str):
        return await retry_async(
            lambda: transport.send_message(chat_id, text),
            attempts=attempts,
            delay=delay,
            label=f"send to {chat_id}",
        )

    return _send


class DeliveryDispatcher:
    def __init__(self, transport, send: SendFunc | None = None):
        self.transport = transport
        self.send = send or retrying_send(transport)

    async def ensure_channel_postable(self, chat_id: str):
        info = await self.transport.get_destination_info(chat_id)
        if not info.is_channel:
            raise ChannelPermissionError("Not a channel")
        if info.is_read_only:
            raise ChannelPermissionError("Not a channel admin")

    async def deliver(self, automation, message: str) -> DeliveryResult:
        """Send ``message`` to the automation's destination. Never raises."""
        destination = "channel" if automation.is_channel else "chat"
        try:
            if automation.is_channel:
                await self.ensure_channel_postable(automation.chat_id)
            message_id = await self.send(automation.chat_id, message)
        except ChannelPermissionError as exc:
            log.warning("Refusing to post to %s (%s): %s", automation.chat_name, automation.chat_id, exc)
            return DeliveryResult(sent=False, error=str(exc))
        except Exception as exc:
            log.error(
                "Failed to send to %s %s: %s", destination, automation.chat_name, exc,
            )
            return DeliveryResult(sent=False, error=str(exc) or type(exc).__name__)

        log.info("Sent automation message to %s %s", destination, automation.chat_name)
        return DeliveryResult(
            sent=True,
            sent_to=destination,
            message_id=message_id if isinstance(message_id, str) else None,
        )
