"""Chat channel boundary and a console transport for local use."""

from __future__ import annotations

import asyncio
import json
import logging
import sys
from datetime import datetime, timezone
from typing import AsyncIterator, Protocol, TextIO

from nanoclaw.models import Message

LOGGER = logging.getLogger(__name__)


class ChatChannel(Protocol):
    """What the host needs from a chat network."""

    def poll_messages(self) -> AsyncIterator[Message]:
        """Yield inbound messages until the channel closes."""
        ...

    async def send_message(self, jid: str, text: str) -> None:
        ...

    async def sync_group_metadata(self) -> None:
        """Refresh the list of known chats."""
        ...


class ConsoleChannel:
    """Reads inbound messages as JSON lines and prints outbound ones.

    Each input line is ``{"chatJid": ..., "sender": ..., "text": ..., "chatName": ...}``.
    """

    def __init__(self, stdin: TextIO | None = None, stdout: TextIO | None = None) -> None:
        self._stdin = stdin or sys.stdin
        self._stdout = stdout or sys.stdout

    async def poll_messages(self) -> AsyncIterator[Message]:
        loop = asyncio.get_running_loop()
        while True:
            line = await loop.run_in_executor(None, self._stdin.readline)
            if not line:
                LOGGER.info("Console input closed")
                return
            line = line.strip()
            if not line:
                continue
            try:
                message = _to_message(json.loads(line))
            except (json.JSONDecodeError, KeyError, TypeError, ValueError) as exc:
                LOGGER.warning("Ignoring malformed console input: %s", exc)
                continue
            if message is not None:
                yield message

    async def send_message(self, jid: str, text: str) -> None:
        LOGGER.info("Outbound message to %s (%d chars)", jid, len(text))
        self._stdout.write(json.dumps({"chatJid": jid, "text": text}) + "\n")
        self._stdout.flush()

    async def sync_group_metadata(self) -> None:
        # Console chats are only known from their messages.
        LOGGER.debug("Console channel has no group metadata to sync")


def _to_message(payload: dict[str, object]) -> Message | None:
    text = payload.get("text")
    text = text.strip() if isinstance(text, str) else ""
    if not text:
        return None
    chat_jid = payload["chatJid"]
    if not isinstance(chat_jid, str) or not chat_jid:
        raise ValueError("chatJid must be a non-empty string")
    chat_name = payload.get("chatName")
    return Message(
        chat_jid=chat_jid,
        sender_id=str(payload.get("sender") or "unknown"),
        text=text,
        timestamp=datetime.now(timezone.utc),
        chat_name=chat_name if isinstance(chat_name, str) else None,
    )
