import asyncio
import logging
from typing import Any, Dict, List, Optional

import uvicorn
from fastapi import APIRouter, Body, FastAPI, HTTPException, Response
from fastapi.responses import JSONResponse, PlainTextResponse
from prometheus_client import CONTENT_TYPE_LATEST, REGISTRY, generate_latest
from pydantic import BaseModel

from ha_printer_bridge import metrics
from ha_printer_bridge.config import (
    HA_BASE_URL,
    HA_REQUEST_TIMEOUT_SECONDS,
    HA_TOKEN,
    HA_VERIFY_SSL,
    LIVE_SESSION_BACKEND,
    PORT,
    TELEGRAM_BOT_TOKEN,
    TELEGRAM_CHAT_ID,
    TELEGRAM_THREAD_ID,
    MonitorSettings,
    NotificationSettings,
    clamp_poll_interval,
    setup_logging,
)
from ha_printer_bridge.controls import ACTIONS, PrinterControls, probe_sensors
from ha_printer_bridge.discovery import discover_from_source, feeder_units_for
from ha_printer_bridge.errors import (
    BridgeError,
    DiscoveryError,
    StateSourceError,
    Unauthorized,
)
from ha_printer_bridge.ha_client import HomeAssistantClient
from ha_printer_bridge.models import DiscoveredFeederUnit, DiscoveryResult
from ha_printer_bridge.notifiers import (
    LoggingSessionBackend,
    LogNotifier,
    TelegramClient,
    TelegramLiveSession,
    TelegramNotifier,
)
from ha_printer_bridge.scheduler import PrinterMonitor
from ha_printer_bridge.state_machine import LiveSessionManager, PrintStateMachine
from ha_printer_bridge.sync import PrinterContext, SyncEngine

# -----------------------------------------------------------------------------
# Logging
# -----------------------------------------------------------------------------
setup_logging()
logger = logging.getLogger("ha-printer-bridge")


# -----------------------------------------------------------------------------
# App State
# -----------------------------------------------------------------------------
class AppState:
    def __init__(self) -> None:
        # Global lock only for high-level structures
        self.lock = asyncio.Lock()

        self.monitor_settings = MonitorSettings.from_env()
        self.notification_settings = NotificationSettings.from_env()

        self.source: Optional[Any] = None
        self.engine: Optional[SyncEngine] = None
        self.state_machine: Optional[PrintStateMachine] = None
        self.telegram: Optional[TelegramClient] = None

        self.monitors: Dict[str, PrinterMonitor] = {}
        self.last_discovery: Optional[DiscoveryResult] = None

    @property
    def poll_interval(self) -> int:
        return self.monitor_settings.poll_interval


state = AppState()

app = FastAPI(title="Home Assistant Printer Bridge", version="1.0.0")
router = APIRouter(prefix="/api")


# -----------------------------------------------------------------------------
# Wiring
# -----------------------------------------------------------------------------
def telegram_is_enabled() -> bool:
    return bool(TELEGRAM_BOT_TOKEN and TELEGRAM_CHAT_ID)


def build_session_backend(telegram: Optional[TelegramClient]):
    if LIVE_SESSION_BACKEND == "none":
        return None
    if LIVE_SESSION_BACKEND == "telegram":
        if telegram is None:
            logger.warning("LIVE_SESSION_BACKEND=telegram but Telegram is not configured; using log backend")
            return LoggingSessionBackend()
        return TelegramLiveSession(telegram)
    return LoggingSessionBackend()


def configure(source, notifier=None, session_backend=None) -> None:
    """Attach a state source and build the engines that use it."""
    state.source = source
    state.engine = SyncEngine(
        source,
        max_concurrency=state.monitor_settings.max_concurrent_reads,
        fetch_cover_image=state.monitor_settings.fetch_cover_image,
    )
    sessions = LiveSessionManager(session_backend) if session_backend is not None else None
    state.state_machine = PrintStateMachine(
        state.notification_settings, notifier or LogNotifier(), sessions
    )


async def start_monitor(
    prefix: str,
    display_name: str = "",
    feeder_units: Optional[List[DiscoveredFeederUnit]] = None,
) -> PrinterMonitor:
    if state.engine is None:
        raise RuntimeError("No state source configured")
    async with state.lock:
        monitor = state.monitors.get(prefix)
        if monitor is not None:
            if feeder_units:
                monitor.ctx.feeder_units = list(feeder_units)
            return monitor
        ctx = PrinterContext(
            prefix=prefix,
            display_name=display_name,
            feeder_units=list(feeder_units or []),
        )
        monitor = PrinterMonitor(
            ctx,
            state.engine,
            state.state_machine,
            snapshot_sinks=[metrics.publish],
            event_sinks=[metrics.record_event],
            poll_interval=state.poll_interval,
            monitor_feeders=state.monitor_settings.monitor_feeders,
        )
        state.monitors[prefix] = monitor
    monitor.start()
    logger.info("[%s] Monitoring started (%s)", prefix, ctx.display_name)
    return monitor


async def run_discovery(monitor: bool = False) -> DiscoveryResult:
    result = await discover_from_source(state.source)
    state.last_discovery = result
    names = {p.prefix: p.display_name for p in result.printers}
    async with state.lock:
        existing = list(state.monitors.values())
    # Discovery may find feeders for printers that were configured by hand.
    for m in existing:
        units = feeder_units_for(m.prefix, result)
        if units:
            m.ctx.feeder_units = units
    if monitor:
        for p in result.printers:
            await start_monitor(p.prefix, names[p.prefix], feeder_units_for(p.prefix, result))
    return result


def get_monitor_or_404(prefix: str) -> PrinterMonitor:
    monitor = state.monitors.get(prefix)
    if monitor is None:
        raise HTTPException(status_code=404, detail="Unknown printer.")
    return monitor


def require_source():
    if state.source is None:
        raise HTTPException(status_code=503, detail="Home Assistant is not configured.")
    return state.source


# -----------------------------------------------------------------------------
# Prometheus Exporter
# -----------------------------------------------------------------------------
@app.get("/metrics")
async def metrics_endpoint():
    content = generate_latest(REGISTRY)
    return Response(content=content, media_type=CONTENT_TYPE_LATEST)


# -----------------------------------------------------------------------------
# API Routes (all under /api prefix)
# -----------------------------------------------------------------------------
class PollIntervalRequest(BaseModel):
    seconds: int


@router.get("/", response_class=PlainTextResponse)
async def root():
    return "OK"


@router.get("/printers")
async def list_printers():
    async with state.lock:
        monitors = list(state.monitors.values())
    printers = [
        {
            "prefix": m.prefix,
            "display_name": m.ctx.display_name,
            "model": m.ctx.snapshot.model.value if m.ctx.snapshot.model else None,
            "connected": m.ctx.snapshot.connected,
            "status": m.ctx.snapshot.status.value,
            "progress": m.ctx.snapshot.progress,
            "polling": m.scheduler.running,
            "session_active": m.ctx.session_handle is not None,
            "feeder_units": [u.prefix for u in m.ctx.feeder_units],
            "last_error": m.ctx.last_error,
        }
        for m in monitors
    ]
    return JSONResponse(printers)


@router.get("/printer/{prefix}")
async def get_printer_status(prefix: str):
    monitor = get_monitor_or_404(prefix)
    ctx = monitor.ctx
    async with ctx.lock:
        payload = {
            "prefix": ctx.prefix,
            "display_name": ctx.display_name,
            "snapshot": ctx.snapshot.to_dict(),
            "formatted_time_remaining": ctx.snapshot.formatted_time_remaining,
            "last_error": ctx.last_error,
            "last_session_error": ctx.last_session_error,
        }
    return JSONResponse(payload)


@router.get("/printer/{prefix}/feeders")
async def get_printer_feeders(prefix: str):
    monitor = get_monitor_or_404(prefix)
    return JSONResponse([unit.to_dict() for unit in monitor.ctx.feeders])


@router.post("/discover")
async def discover(monitor: bool = False):
    require_source()
    try:
        result = await run_discovery(monitor=monitor)
    except Unauthorized as e:
        raise HTTPException(status_code=401, detail=str(e))
    except DiscoveryError as e:
        raise HTTPException(status_code=502, detail=str(e))
    return JSONResponse(
        {
            "printers": [
                {
                    "prefix": p.prefix,
                    "display_name": p.display_name,
                    "model": p.model.value if p.model else None,
                    "matched_entity_count": p.matched_entity_count,
                }
                for p in result.printers
            ],
            "feeder_units": [
                {
                    "prefix": u.prefix,
                    "display_name": u.display_name,
                    "slot_entity_ids": list(u.slot_entity_ids),
                    "humidity_entity_id": u.humidity_entity_id,
                    "temperature_entity_id": u.temperature_entity_id,
                }
                for u in result.feeder_units
            ],
        }
    )


@router.post("/poll-interval")
async def set_poll_interval(request: PollIntervalRequest):
    interval = clamp_poll_interval(request.seconds)
    state.monitor_settings.poll_interval = interval
    async with state.lock:
        monitors = list(state.monitors.values())
    for m in monitors:
        await m.restart(interval)
    logger.info("Poll interval set to %ss for %d printer(s)", interval, len(monitors))
    return JSONResponse({"poll_interval": interval})


@router.post("/printer/{prefix}/action/{name}")
async def run_printer_action(prefix: str, name: str, value: Optional[Any] = Body(None, embed=True)):
    source = require_source()
    if name not in ACTIONS:
        raise HTTPException(status_code=404, detail=f"Unknown action: {name}")
    try:
        await PrinterControls(source, prefix).run(name, value)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except Unauthorized as e:
        raise HTTPException(status_code=401, detail=str(e))
    except StateSourceError as e:
        raise HTTPException(status_code=502, detail=str(e))
    return JSONResponse({"prefix": prefix, "action": name, "ok": True})


@router.get("/debug/sensors/{prefix}")
async def debug_sensors(prefix: str):
    """Probe every polled sensor for a prefix and report what answered."""
    source = require_source()
    probes = await probe_sensors(source, prefix)
    return JSONResponse([p.to_dict() for p in probes])


app.include_router(router)


# -----------------------------------------------------------------------------
# Lifecycle
# -----------------------------------------------------------------------------
@app.on_event("startup")
async def on_startup():
    settings = state.monitor_settings
    logger.info(
        "Starting app. HA_BASE_URL=%s | ENTITY_PREFIXES=%s | POLL_INTERVAL=%ss | LIVE_SESSION_BACKEND=%s",
        HA_BASE_URL or "<unset>",
        settings.entity_prefixes,
        settings.poll_interval,
        LIVE_SESSION_BACKEND,
    )
    if not HA_BASE_URL:
        logger.warning("HA_BASE_URL is not set; monitoring disabled.")
        return

    client = HomeAssistantClient(
        HA_BASE_URL,
        HA_TOKEN,
        timeout=HA_REQUEST_TIMEOUT_SECONDS,
        verify_ssl=HA_VERIFY_SSL,
    )
    ok, message = await client.check_connection()
    if ok:
        logger.info("Home Assistant: %s", message)
    else:
        logger.warning("Home Assistant: %s", message)

    notifier = None
    if telegram_is_enabled():
        state.telegram = TelegramClient(TELEGRAM_BOT_TOKEN, TELEGRAM_CHAT_ID, TELEGRAM_THREAD_ID)
        notifier = TelegramNotifier(state.telegram, image_source=client)
    configure(client, notifier, build_session_backend(state.telegram))

    result: Optional[DiscoveryResult] = None
    if settings.auto_discover:
        try:
            result = await run_discovery()
        except BridgeError as e:
            logger.warning("Startup discovery failed: %s", e)

    prefixes = list(settings.entity_prefixes)
    if not prefixes and result and result.printers:
        # Richest printer first
        prefixes = [result.printers[0].prefix]
    if not prefixes:
        logger.warning("No printer prefix configured or discovered; nothing to monitor.")

    names = {p.prefix: p.display_name for p in result.printers} if result else {}
    for prefix in prefixes:
        units = feeder_units_for(prefix, result) if result else []
        await start_monitor(prefix, names.get(prefix, ""), units)


@app.on_event("shutdown")
async def on_shutdown():
    logger.info("Shutting down...")
    async with state.lock:
        monitors = list(state.monitors.values())
    for m in monitors:
        await m.stop()
    if isinstance(state.source, HomeAssistantClient):
        await state.source.close()
    if state.telegram is not None:
        await state.telegram.close()


# -----------------------------------------------------------------------------
# Entrypoint
# -----------------------------------------------------------------------------
if __name__ == "__main__":
    uvicorn.run("app:app", host="0.0.0.0", port=PORT, reload=False)
