import asyncio
import logging
from datetime import datetime, timezone
from typing import Callable

from neonize import NewClient
from neonize.proto.Neonize_pb2 import Connected, Message as MessageEv
from neonize.utils import extract_text
from neonize.utils.jid import Jid2String, build_jid

from database import Database
from dispatcher import DestinationInfo

log = logging.getLogger(__name__)

_POSTING_ROLES = {"owner", "admin"}


def _resolve_sender_name(sender_jid: str, pushname: str) -> str:
    """Resolve a sender name using pushname → phone fallback."""
    if pushname:
        return pushname
    return sender_jid.split("@")[0]


def _enum_name(message, field_name: str) -> str:
    """Lower-cased name of a protobuf field that may be an enum or a string."""
    value = getattr(message, field_name, "")
    if isinstance(value, str):
        return value.strip().lower()
    field = message.DESCRIPTOR.fields_by_name.get(field_name)
    if field is not None and field.enum_type is not None:
        enum_value = field.enum_type.values_by_number.get(int(value))
        if enum_value is not None:
            return enum_value.name.lower()
    return str(value).lower()


class WhatsAppClient:
    """Neonize WhatsApp client wrapper.

    Runs synchronously (call connect() from a thread).
    Fires message_callback on incoming messages from the neonize thread;
    caller is responsible for thread-safe bridging (e.g. asyncio.Queue).
    """

    def __init__(self, auth_dir, message_callback: Callable | None = None):
        auth_dir.mkdir(parents=True, exist_ok=True)
        self.client = NewClient(str(auth_dir / "herald.db"))
        self._message_callback = message_callback
        self.connected = False
        self._setup_events()

    def _setup_events(self):
        @self.client.event(Connected)
        def on_connected(client: NewClient, event: Connected):
            self.connected = True
            log.info("WhatsApp connected (device: %s)", client.me)

        @self.client.event(MessageEv)
        def on_message(client: NewClient, event: MessageEv):
            try:
                self._handle_message_event(event)
            except Exception:
                log.error("Error handling WhatsApp message", exc_info=True)

    def _handle_message_event(self, event: MessageEv):
        info = event.Info
        raw_ts = info.Timestamp
        timestamp = raw_ts.isoformat() if hasattr(raw_ts, "isoformat") else str(raw_ts)

        content = extract_text(event.Message)
        if not content:
            return

        sender_jid = Jid2String(info.MessageSource.Sender)
        if self._message_callback:
            self._message_callback(
                {
                    "msg_id": info.ID,
                    "chat_jid": Jid2String(info.MessageSource.Chat),
                    "sender_jid": sender_jid,
                    "sender_name": _resolve_sender_name(sender_jid, info.Pushname or ""),
                    "content": content,
                    "timestamp": timestamp,
                    "is_from_me": info.MessageSource.IsFromMe,
                }
            )

    @staticmethod
    def _parse_jid(jid_str: str):
        """Convert 'user@server' string back to a neonize JID protobuf."""
        if not isinstance(jid_str, str) or "@" not in jid_str:
            raise ValueError(f"Not a WhatsApp address: {jid_str!r}")
        user, server = jid_str.split("@", 1)
        if not user or not server:
            raise ValueError(f"Not a WhatsApp address: {jid_str!r}")
        return build_jid(user, server)

    def send_message(self, chat_jid: str, text: str) -> str:
        """Send a text message and return its message ID. Raises on failure."""
        if not self.connected:
            raise RuntimeError("WhatsApp not connected")
        if not (text or "").strip():
            raise ValueError("Refusing to send an empty message")
        resp = self.client.send_message(self._parse_jid(chat_jid), text)
        msg_id = getattr(resp, "ID", "") if resp else ""
        if not msg_id:
            raise RuntimeError(f"WhatsApp returned no message ID for {chat_jid}")
        return msg_id

    def get_destination_info(self, chat_jid: str) -> DestinationInfo:
        """Resolve whether ``chat_jid`` is a channel and whether we may post to it."""
        jid = self._parse_jid(chat_jid)
        if not chat_jid.endswith("@newsletter"):
            return DestinationInfo(chat_id=chat_jid, is_channel=False, is_read_only=False)

        meta = self.client.get_newsletter_info(jid)
        role = _enum_name(meta.ViewerMeta, "Role")
        name = ""
        thread_meta = getattr(meta, "ThreadMeta", None)
        if thread_meta is not None and getattr(thread_meta, "Name", None) is not None:
            name = getattr(thread_meta.Name, "Text", "") or ""
        return DestinationInfo(
            chat_id=chat_jid,
            is_channel=True,
            is_read_only=role not in _POSTING_ROLES,
            name=name,
        )

    def connect(self):
        """Blocking. Run in a background thread."""
        log.info("Connecting to WhatsApp...")
        self.client.connect()


class WhatsAppTransport:
    """Async transport used by the automation pipeline.

    Bridges the synchronous neonize client and the local message store onto
    the event loop with ``asyncio.to_thread``.
    """

    def __init__(self, wa: WhatsAppClient, db: Database):
        self.wa = wa
        self.db = db

    @property
    def ready(self) -> bool:
        return bool(self.wa and self.wa.connected)

    async def fetch_recent_messages(self, chat_id: str, limit: int) -> list[dict]:
        rows = await asyncio.to_thread(self.db.get_recent_messages, chat_id, limit)
        return [
            {"from_self": bool(row.get("is_from_me")), "body": row.get("content") or ""}
            for row in rows
        ]

    async def get_destination_info(self, chat_id: str) -> DestinationInfo:
        return await asyncio.to_thread(self.wa.get_destination_info, chat_id)

    async def send_message(self, chat_id: str, text: str) -> str:
        msg_id = await asyncio.to_thread(self.wa.send_message, chat_id, text)
        try:
            await asyncio.to_thread(
                self.db.store_message,
                msg_id,
                chat_id,
                "me",
                "",
                text,
                datetime.now(timezone.utc).isoformat(),
                True,
            )
        except Exception:
            log.warning("Failed to record sent message %s in %s", msg_id, chat_id, exc_info=True)
        return msg_id
