import logging
from dataclasses import dataclass

log = logging.getLogger(__name__)

NO_HISTORY_PLACEHOLDER = "(No chat history available)"


@dataclass
class Transcript:
    text: str
    message_count: int = 0
    error: str = ""

    @property
    def degraded(self) -> bool:
        return bool(self.error)


def render_transcript(messages: list[dict]) -> str:
    lines = []
    for msg in messages:
        role = "Me" if msg.get("from_self") else "User"
        lines.append(f"{role}: {msg.get('body') or ''}")
    return "\n".join(lines)


async def assemble_transcript(transport, chat_id: str, limit: int = 100) -> Transcript:
    """Render the last ``limit`` messages of a chat as a flat dialogue.

    Never raises: a transport failure yields the placeholder text and the
    error message, and the caller carries on with degraded context.
    """
    try:
        messages = await transport.fetch_recent_messages(chat_id, limit)
    except Exception as exc:
        log.error("Failed to get chat history for %s: %s", chat_id, exc)
        return Transcript(text=NO_HISTORY_PLACEHOLDER, error=str(exc) or type(exc).__name__)

    messages = list(messages or [])[-limit:]
    return Transcript(text=render_transcript(messages), message_count=len(messages))
