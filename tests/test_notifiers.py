import io

import pytest
from aiohttp import web
from aiohttp.test_utils import TestServer
from PIL import Image

from tests.helpers import FakeStateSource
from ha_printer_bridge.cover import render_cover_thumbnail
from ha_printer_bridge.errors import SessionError
from ha_printer_bridge.models import EventKind, NotificationEvent, PrinterSnapshot, PrintStatus
from ha_printer_bridge.notifiers import (
    LoggingSessionBackend,
    LogNotifier,
    TelegramClient,
    TelegramLiveSession,
    TelegramNotifier,
    format_event_message,
    format_time_remaining,
    render_session_text,
)

BOT = "123456-test"


def snap(**kwargs) -> PrinterSnapshot:
    defaults = dict(
        prefix="x1c",
        status=PrintStatus.RUNNING,
        progress=50,
        current_layer=100,
        total_layers=200,
        remaining_minutes=75,
        filename="benchy.3mf",
        connected=True,
    )
    defaults.update(kwargs)
    return PrinterSnapshot(**defaults)


def png_bytes(size=(1200, 900)) -> bytes:
    out = io.BytesIO()
    Image.new("RGBA", size, (0, 174, 66, 128)).save(out, format="PNG")
    return out.getvalue()


class FakeBotApi:
    """Records Bot API calls; ``fail`` maps a method name to an HTTP status."""

    def __init__(self) -> None:
        self.calls = []
        self.fail = {}
        self.next_message_id = 100

    async def handle(self, request):
        method = request.match_info["method"]
        if request.content_type == "application/json":
            payload = await request.json()
        else:
            form = await request.post()
            payload = {k: v for k, v in form.items()}
        self.calls.append((method, payload))
        if method in self.fail:
            status = self.fail[method]
            return web.json_response({"ok": False, "description": "Bad Request: message is not modified"}, status=status)
        if method == "sendMessage":
            self.next_message_id += 1
            return web.json_response({"ok": True, "result": {"message_id": self.next_message_id}})
        return web.json_response({"ok": True, "result": True})

    def methods(self):
        return [m for m, _ in self.calls]


async def start_bot():
    api = FakeBotApi()
    app = web.Application()
    app.router.add_post(f"/bot{BOT}/{{method}}", api.handle)
    server = TestServer(app)
    await server.start_server()
    client = TelegramClient(BOT, "-100200", thread_id="7", api_base=str(server.make_url("")))
    return api, server, client


class TestFormatting:
    def test_time_remaining(self):
        assert format_time_remaining(75) == "1h 15m"
        assert format_time_remaining(5) == "5m"
        assert format_time_remaining(None) == "n/a"
        assert format_time_remaining(-1) == "n/a"

    def test_messages_name_the_printer(self):
        for kind in EventKind:
            event = NotificationEvent(kind, snap(), milestone=50 if kind is EventKind.MILESTONE else None)
            assert "[x1c]" in format_event_message(event)

    def test_started_has_eta(self):
        text = format_event_message(NotificationEvent(EventKind.STARTED, snap()))
        assert "benchy.3mf" in text
        assert "1h 15m" in text

    def test_milestone_includes_layer(self):
        text = format_event_message(NotificationEvent(EventKind.MILESTONE, snap(), milestone=50))
        assert "Progress: 50%" in text
        assert "Layer 100/200" in text

    def test_failed_includes_hms(self):
        text = format_event_message(
            NotificationEvent(EventKind.FAILED, snap(status=PrintStatus.FAILED, hms_errors="0300-0100"))
        )
        assert "HMS: 0300-0100" in text

    def test_session_text(self):
        text = render_session_text({"display_name": "X1C", "filename": "cube.3mf"}, snap().content_state())
        assert text.splitlines()[0] == "🖨️ X1C: cube.3mf"
        assert "50%" in text
        assert "Layer 100/200" in text
        final = render_session_text({"printer_id": "x1c"}, None, final=True)
        assert final.endswith("Session ended.")


class TestTelegramNotifier:
    @pytest.mark.asyncio
    async def test_sends_message_to_thread(self):
        api, server, client = await start_bot()
        try:
            await TelegramNotifier(client).notify(NotificationEvent(EventKind.PAUSED, snap()))
            method, payload = api.calls[0]
            assert method == "sendMessage"
            assert payload["chat_id"] == "-100200"
            assert payload["message_thread_id"] == 7
            assert "paused" in payload["text"]
        finally:
            await client.close()
            await server.close()

    @pytest.mark.asyncio
    async def test_completion_sends_cover_photo(self):
        api, server, client = await start_bot()
        source = FakeStateSource()
        source.images["/api/image_proxy/cover"] = png_bytes()
        try:
            event = NotificationEvent(
                EventKind.COMPLETED,
                snap(status=PrintStatus.FINISHED, progress=100, cover_image_url="/api/image_proxy/cover"),
            )
            await TelegramNotifier(client, image_source=source).notify(event)
            assert api.methods() == ["sendPhoto"]
            assert "completed" in api.calls[0][1]["caption"]
        finally:
            await client.close()
            await server.close()

    @pytest.mark.asyncio
    async def test_completion_without_image_falls_back_to_text(self):
        api, server, client = await start_bot()
        try:
            event = NotificationEvent(
                EventKind.COMPLETED,
                snap(status=PrintStatus.FINISHED, cover_image_url="/api/image_proxy/missing"),
            )
            await TelegramNotifier(client, image_source=FakeStateSource()).notify(event)
            assert api.methods() == ["sendMessage"]
        finally:
            await client.close()
            await server.close()

    @pytest.mark.asyncio
    async def test_delivery_failure_is_logged_not_raised(self):
        api, server, client = await start_bot()
        api.fail["sendMessage"] = 500
        try:
            await TelegramNotifier(client).notify(NotificationEvent(EventKind.STARTED, snap()))
            assert api.methods() == ["sendMessage"]
        finally:
            await client.close()
            await server.close()

    @pytest.mark.asyncio
    async def test_log_notifier(self, caplog):
        caplog.set_level("INFO")
        await LogNotifier().notify(NotificationEvent(EventKind.STARTED, snap()))
        assert "Print started" in caplog.text


class TestTelegramLiveSession:
    @pytest.mark.asyncio
    async def test_lifecycle(self):
        api, server, client = await start_bot()
        backend = TelegramLiveSession(client)
        try:
            handle = await backend.start({"printer_id": "x1c", "filename": "cube.3mf"}, snap().content_state())
            assert handle == "101"
            await backend.update(handle, snap(progress=60).content_state())
            await backend.end(handle, snap(progress=100, status=PrintStatus.FINISHED).content_state())
            assert api.methods() == [
                "sendMessage",
                "pinChatMessage",
                "editMessageText",
                "editMessageText",
                "unpinChatMessage",
            ]
            assert "60%" in api.calls[2][1]["text"]
            assert "Session ended." in api.calls[3][1]["text"]
        finally:
            await client.close()
            await server.close()

    @pytest.mark.asyncio
    async def test_refusal_raises_session_error(self):
        api, server, client = await start_bot()
        api.fail["sendMessage"] = 403
        try:
            with pytest.raises(SessionError):
                await TelegramLiveSession(client).start({"printer_id": "x1c"}, snap().content_state())
        finally:
            await client.close()
            await server.close()

    @pytest.mark.asyncio
    async def test_unchanged_edit_is_ignored(self):
        api, server, client = await start_bot()
        api.fail["editMessageText"] = 400
        try:
            await TelegramLiveSession(client).update("101", snap().content_state())
        finally:
            await client.close()
            await server.close()

    @pytest.mark.asyncio
    async def test_pin_failure_keeps_message_as_session(self):
        api, server, client = await start_bot()
        api.fail["pinChatMessage"] = 400
        backend = TelegramLiveSession(client)
        try:
            handle = await backend.start({"printer_id": "x1c"}, snap().content_state())
            assert handle == "101"
            await backend.end(handle, snap(status=PrintStatus.FINISHED).content_state())
            assert api.methods() == ["sendMessage", "pinChatMessage", "editMessageText"]
        finally:
            await client.close()
            await server.close()


class TestLoggingSessionBackend:
    @pytest.mark.asyncio
    async def test_handles_are_tracked(self):
        backend = LoggingSessionBackend()
        handle = await backend.start({"printer_id": "x1c"}, {})
        assert backend.active == {handle}
        await backend.update(handle, {"progress": 10})
        await backend.end(handle)
        await backend.end(handle)
        assert backend.active == set()
        assert backend.ended == 1

    @pytest.mark.asyncio
    async def test_update_unknown_handle(self):
        with pytest.raises(SessionError):
            await LoggingSessionBackend().update("nope", {})


def test_cover_thumbnail_is_small_jpeg():
    thumb = render_cover_thumbnail(png_bytes(), snap())
    img = Image.open(io.BytesIO(thumb))
    assert img.format == "JPEG"
    assert max(img.size) <= 640
    assert "benchy.3mf" in img.getexif()[0x010E]


def test_cover_thumbnail_returns_input_on_garbage():
    assert render_cover_thumbnail(b"not an image", snap()) == b"not an image"
