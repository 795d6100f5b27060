import asyncio
import itertools
import logging
from typing import Any, Dict, Optional, Set

import aiohttp

from .cover import render_cover_thumbnail
from .errors import DeliveryError, SessionError, StateSourceError
from .models import EventKind, NotificationEvent, PrinterSnapshot

logger = logging.getLogger(__name__)


def format_time_remaining(minutes_val: Optional[int]) -> str:
    if minutes_val is None or minutes_val < 0:
        return "n/a"
    hrs, mins = divmod(int(minutes_val), 60)
    if hrs > 0:
        return f"{hrs}h {mins}m"
    return f"{mins}m"


def summarize_snapshot(snapshot: PrinterSnapshot) -> str:
    bits = []
    if snapshot.filename:
        bits.append(f"File: {snapshot.filename}")
    bits.append(f"Progress: {snapshot.progress}%")
    if snapshot.total_layers:
        bits.append(f"Layer: {snapshot.current_layer}/{snapshot.total_layers}")
    if snapshot.remaining_minutes:
        bits.append(f"ETA: {format_time_remaining(snapshot.remaining_minutes)}")
    bits.append(f"State: {snapshot.status.value}")
    return " | ".join(bits)


def format_event_message(event: NotificationEvent) -> str:
    s = event.snapshot
    pid = event.printer_id
    if event.kind is EventKind.STARTED:
        head = f"🖨️ [{pid}] Print started: {s.filename}"
        if s.remaining_minutes:
            head += f"\nEstimated time: {format_time_remaining(s.remaining_minutes)}"
        return head
    if event.kind is EventKind.PAUSED:
        return f"⏸️ [{pid}] Print paused at {s.progress}%\n{summarize_snapshot(s)}"
    if event.kind is EventKind.RESUMED:
        return f"▶️ [{pid}] Print resumed at {s.progress}%\n{summarize_snapshot(s)}"
    if event.kind is EventKind.COMPLETED:
        return f"✅ [{pid}] Print completed: {s.filename}\n{summarize_snapshot(s)}"
    if event.kind is EventKind.FAILED:
        msg = f"❗ [{pid}] Print failed: {s.filename}. Check your printer."
        if s.hms_errors:
            msg += f"\nHMS: {s.hms_errors}"
        return msg
    msg = f"⏳ [{pid}] Progress: {event.milestone}%"
    if s.remaining_minutes:
        msg += f" • ETA {format_time_remaining(s.remaining_minutes)}"
    if s.total_layers:
        msg += f" • Layer {s.current_layer}/{s.total_layers}"
    return msg


# -----------------------------------------------------------------------------
# Notifiers
# -----------------------------------------------------------------------------
class LogNotifier:
    """Writes events to the log; used when no Telegram chat is configured."""

    async def notify(self, event: NotificationEvent) -> None:
        logger.info("%s", format_event_message(event))


class TelegramClient:
    def __init__(
        self,
        bot_token: str,
        chat_id: str,
        thread_id: Optional[str] = None,
        session: Optional[aiohttp.ClientSession] = None,
        api_base: str = "https://api.telegram.org",
    ) -> None:
        self.bot_token = bot_token
        self.chat_id = chat_id
        self.thread_id = thread_id
        self.api_base = api_base.rstrip("/")
        self._session = session
        self._owns_session = session is None

    async def ensure_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=30, connect=10)
            )
            self._owns_session = True
        return self._session

    async def close(self) -> None:
        if self._owns_session and self._session and not self._session.closed:
            await self._session.close()
        self._session = None

    def _url(self, method: str) -> str:
        return f"{self.api_base}/bot{self.bot_token}/{method}"

    def _base_payload(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"chat_id": self.chat_id}
        if self.thread_id:
            payload["message_thread_id"] = int(self.thread_id)
        return payload

    async def _call(self, method: str, json: Optional[Dict[str, Any]] = None, data: Any = None) -> Any:
        session = await self.ensure_session()
        try:
            async with session.post(self._url(method), json=json, data=data) as resp:
                if resp.status != 200:
                    body = await resp.text()
                    raise DeliveryError(
                        f"Telegram {method} failed: {resp.status} {body[:200]}",
                        status=resp.status,
                    )
                payload = await resp.json(content_type=None)
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise DeliveryError(f"Telegram {method} failed: {e}") from e
        if not isinstance(payload, dict) or not payload.get("ok", False):
            raise DeliveryError(f"Telegram {method} rejected: {payload}")
        return payload.get("result")

    async def send_message(self, text: str) -> int:
        payload = self._base_payload()
        payload.update({"text": text, "disable_web_page_preview": True})
        result = await self._call("sendMessage", json=payload)
        return int(result["message_id"])

    async def edit_message(self, message_id: int, text: str) -> None:
        await self._call(
            "editMessageText",
            json={"chat_id": self.chat_id, "message_id": message_id, "text": text},
        )

    async def pin_message(self, message_id: int) -> None:
        await self._call(
            "pinChatMessage",
            json={
                "chat_id": self.chat_id,
                "message_id": message_id,
                "disable_notification": True,
            },
        )

    async def unpin_message(self, message_id: int) -> None:
        await self._call(
            "unpinChatMessage", json={"chat_id": self.chat_id, "message_id": message_id}
        )

    async def send_photo(self, image_bytes: bytes, caption: str = "") -> None:
        form = aiohttp.FormData()
        form.add_field("chat_id", str(self.chat_id))
        if self.thread_id:
            form.add_field("message_thread_id", str(int(self.thread_id)))
        if caption:
            form.add_field("caption", caption)
        form.add_field("photo", image_bytes, filename="cover.jpg", content_type="image/jpeg")
        await self._call("sendPhoto", data=form)


class TelegramNotifier:
    """Sends each event as a chat message; completions carry the cover image."""

    def __init__(self, client: TelegramClient, image_source=None) -> None:
        self.client = client
        self.image_source = image_source

    async def notify(self, event: NotificationEvent) -> None:
        text = format_event_message(event)
        if event.kind is EventKind.COMPLETED:
            try:
                if await self._send_cover(event, text):
                    return
            except DeliveryError as e:
                logger.warning("[%s] Telegram photo failed, sending text: %s", event.printer_id, e)
        try:
            await self.client.send_message(text)
        except DeliveryError as e:
            logger.warning("[%s] Telegram delivery failed: %s", event.printer_id, e)

    async def _send_cover(self, event: NotificationEvent, caption: str) -> bool:
        url = event.snapshot.cover_image_url
        if not url or self.image_source is None:
            return False
        try:
            raw = await self.image_source.fetch_bytes(url)
        except StateSourceError as e:
            logger.warning("[%s] Cover image download failed: %s", event.printer_id, e)
            return False
        thumb = render_cover_thumbnail(raw, event.snapshot)
        await self.client.send_photo(thumb, caption)
        return True


# -----------------------------------------------------------------------------
# Live session backends
# -----------------------------------------------------------------------------
def render_session_text(
    attributes: Dict[str, Any], state: Optional[Dict[str, Any]], final: bool = False
) -> str:
    name = attributes.get("display_name") or attributes.get("printer_id") or "Printer"
    filename = attributes.get("filename") or ""
    lines = [f"🖨️ {name}: {filename}" if filename else f"🖨️ {name}"]
    if state:
        progress = state.get("progress", 0)
        filled = max(0, min(10, int(progress) // 10))
        lines.append(f"{'▓' * filled}{'░' * (10 - filled)} {progress}%")
        if state.get("total_layers"):
            lines.append(f"Layer {state.get('current_layer', 0)}/{state['total_layers']}")
        if not final and state.get("remaining_minutes"):
            lines.append(f"ETA {format_time_remaining(state['remaining_minutes'])}")
        lines.append(
            f"Nozzle {state.get('nozzle_temp', 0):.0f}°C • Bed {state.get('bed_temp', 0):.0f}°C"
        )
        if state.get("current_stage"):
            lines.append(f"Stage: {state['current_stage']}")
        lines.append(f"State: {state.get('status', 'unknown')}")
    if final:
        lines.append("Session ended.")
    return "\n".join(lines)


class LoggingSessionBackend:
    """In-process session backend: opaque handles, no external surface."""

    def __init__(self) -> None:
        self._counter = itertools.count(1)
        self.active: Set[str] = set()
        self.started = 0
        self.ended = 0

    async def start(self, attributes: Dict[str, Any], initial_state: Dict[str, Any]) -> str:
        handle = f"session-{next(self._counter)}"
        self.active.add(handle)
        self.started += 1
        logger.info("Session %s started for %s", handle, attributes.get("printer_id"))
        return handle

    async def update(self, handle: str, state: Dict[str, Any]) -> None:
        if handle not in self.active:
            raise SessionError(f"Unknown session handle: {handle}")
        logger.debug("Session %s update: %s%% %s", handle, state.get("progress"), state.get("status"))

    async def end(self, handle: str, final_state: Optional[Dict[str, Any]] = None) -> None:
        if handle not in self.active:
            return
        self.active.discard(handle)
        self.ended += 1
        logger.info("Session %s ended", handle)


class TelegramLiveSession:
    """A pinned chat message kept up to date as the live surface of a print."""

    def __init__(self, client: TelegramClient) -> None:
        self.client = client
        self._attributes: Dict[str, Dict[str, Any]] = {}
        self._pinned: Set[str] = set()

    async def start(self, attributes: Dict[str, Any], initial_state: Dict[str, Any]) -> str:
        try:
            message_id = await self.client.send_message(render_session_text(attributes, initial_state))
        except DeliveryError as e:
            raise SessionError(str(e)) from e
        handle = str(message_id)
        try:
            await self.client.pin_message(message_id)
            self._pinned.add(handle)
        except DeliveryError as e:
            # The message was sent; it stays the session surface, unpinned.
            logger.warning("Pinning live session message %s failed: %s", message_id, e)
        self._attributes[handle] = dict(attributes)
        return handle

    async def update(self, handle: str, state: Dict[str, Any]) -> None:
        attributes = self._attributes.get(handle, {})
        try:
            await self.client.edit_message(int(handle), render_session_text(attributes, state))
        except DeliveryError as e:
            # Telegram refuses edits that change nothing.
            if e.status == 400 and "not modified" in str(e):
                return
            raise SessionError(str(e)) from e

    async def end(self, handle: str, final_state: Optional[Dict[str, Any]] = None) -> None:
        attributes = self._attributes.pop(handle, {})
        try:
            await self.client.edit_message(
                int(handle), render_session_text(attributes, final_state, final=True)
            )
            if handle in self._pinned:
                self._pinned.discard(handle)
                await self.client.unpin_message(int(handle))
        except DeliveryError as e:
            raise SessionError(str(e)) from e
