import asyncio
import logging
import re
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Dict, List, Optional, Tuple

from .errors import EntityNotFound, StateSourceError, Unauthorized
from .models import (
    NEUTRAL_COLOR,
    NO_PRINT_FILENAME,
    STARTING_FILENAME,
    DiscoveredFeederUnit,
    FeederSlotReading,
    FeederUnitReading,
    PrinterSnapshot,
    PrintStatus,
    RawEntity,
    detect_model,
    now_utc,
)
from .parsers import (
    coerce_bool,
    is_blank,
    parse_duration_minutes,
    parse_mass_grams,
    parse_number,
    parse_speed_percent,
    to_float,
    to_int,
)

logger = logging.getLogger(__name__)

# Snapshot field -> sensor suffix under "sensor.<prefix>_".
TICK_SENSORS: Dict[str, str] = {
    "progress": "print_progress",
    "current_layer": "current_layer",
    "total_layers": "total_layer_count",
    "remaining_time": "remaining_time",
    "status": "print_status",
    "filename": "subtask_name",
    "speed": "speed_profile",
    "filament_used": "filament_used",
    "nozzle_temp": "nozzle_temperature",
    "nozzle_target_temp": "target_nozzle_temperature",
    "bed_temp": "bed_temperature",
    "bed_target_temp": "target_bed_temperature",
    "chamber_temp": "chamber_temperature",
    "current_stage": "current_stage",
    "print_weight": "print_weight",
    "print_length": "print_length",
    "bed_type": "print_bed_type",
    "start_time": "start_time",
    "end_time": "end_time",
    "aux_fan": "aux_fan",
    "chamber_fan": "chamber_fan",
    "cooling_fan": "cooling_fan",
    "online": "online",
    "wifi_signal": "wifi_signal",
    "hms_errors": "hms_errors",
}

_TRAY_INDEX = re.compile(r"_tray_(\d+)$")
_NON_MATERIAL = {"empty", "unknown"}


def sensor_entity_id(prefix: str, suffix: str) -> str:
    return f"sensor.{prefix}_{suffix}"


def cover_image_entity_id(prefix: str) -> str:
    return f"image.{prefix}_cover_image"


def parse_iso8601(ts: Optional[str]) -> Optional[datetime]:
    if not ts:
        return None
    try:
        # Replace trailing Z with explicit UTC offset to support older Python formats
        return datetime.fromisoformat(ts.strip().replace("Z", "+00:00"))
    except ValueError:
        return None


def _percent(value: str) -> int:
    return max(0, min(100, to_int(value)))


# -----------------------------------------------------------------------------
# Per-printer context
# -----------------------------------------------------------------------------
@dataclass
class PrinterContext:
    """All mutable memory for one monitored printer.

    Nothing is shared between printers; every engine call takes the context
    explicitly.
    """

    prefix: str
    display_name: str = ""
    feeder_units: List[DiscoveredFeederUnit] = field(default_factory=list)

    snapshot: Optional[PrinterSnapshot] = None
    feeders: Tuple[FeederUnitReading, ...] = ()
    last_known_filename: str = ""
    last_error: Optional[str] = None

    # Transition tracking
    previous_status: Optional[PrintStatus] = None
    previous_progress: int = 0
    milestone_watermark: int = 0

    # Live session
    session_handle: Optional[str] = None
    last_session_error: Optional[str] = None

    lock: asyncio.Lock = field(default_factory=asyncio.Lock, repr=False)
    transition_lock: asyncio.Lock = field(default_factory=asyncio.Lock, repr=False)

    def __post_init__(self) -> None:
        if self.snapshot is None:
            self.snapshot = PrinterSnapshot.placeholder(self.prefix)
        if not self.display_name:
            self.display_name = self.prefix.replace("_", " ").title()


def resolve_filename(ctx: PrinterContext, raw_filename: str, status: PrintStatus) -> str:
    """Apply the filename continuity rule and update the context's memory."""
    if raw_filename.strip():
        ctx.last_known_filename = raw_filename.strip()
        return ctx.last_known_filename
    if status.is_active:
        return ctx.last_known_filename or STARTING_FILENAME
    ctx.last_known_filename = ""
    return NO_PRINT_FILENAME


def build_snapshot(
    ctx: PrinterContext, raw: Dict[str, str], cover_image_url: Optional[str] = None
) -> PrinterSnapshot:
    def value(key: str) -> str:
        return raw.get(key) or ""

    status = PrintStatus.parse(value("status"))
    return PrinterSnapshot(
        prefix=ctx.prefix,
        progress=_percent(value("progress")),
        current_layer=max(0, to_int(value("current_layer"))),
        total_layers=max(0, to_int(value("total_layers"))),
        remaining_minutes=parse_duration_minutes(value("remaining_time")),
        status=status,
        filename=resolve_filename(ctx, value("filename"), status),
        print_speed=parse_speed_percent(value("speed")),
        filament_used_g=parse_mass_grams(value("filament_used")),
        nozzle_temp=to_float(value("nozzle_temp")),
        nozzle_target_temp=to_float(value("nozzle_target_temp")),
        bed_temp=to_float(value("bed_temp")),
        bed_target_temp=to_float(value("bed_target_temp")),
        chamber_temp=to_float(value("chamber_temp")),
        current_stage=value("current_stage"),
        print_weight_g=to_float(value("print_weight")),
        print_length_m=to_float(value("print_length")),
        bed_type=value("bed_type"),
        start_time=parse_iso8601(value("start_time")),
        end_time=parse_iso8601(value("end_time")),
        aux_fan_speed=_percent(value("aux_fan")),
        chamber_fan_speed=_percent(value("chamber_fan")),
        cooling_fan_speed=_percent(value("cooling_fan")),
        connected=True,
        printer_online=coerce_bool(value("online")) is True,
        wifi_signal=to_int(value("wifi_signal")),
        hms_errors=value("hms_errors"),
        cover_image_url=cover_image_url,
        model=detect_model(ctx.prefix),
        updated_at=now_utc(),
    )


# -----------------------------------------------------------------------------
# Feeder slot heuristics
# -----------------------------------------------------------------------------
def slot_index_from_entity_id(entity_id: str, default: int = 1) -> int:
    match = _TRAY_INDEX.search(entity_id)
    return int(match.group(1)) if match else default


def _has_material(material_type: str) -> bool:
    return not is_blank(material_type) and material_type.strip().lower() not in _NON_MATERIAL


def _has_color(color: str) -> bool:
    normalized = color.strip().lower().lstrip("#")
    return bool(normalized) and normalized != NEUTRAL_COLOR.lstrip("#")


def slot_is_empty(
    explicit_empty: Optional[bool],
    remaining: float,
    material_type: str,
    name: str,
    color: str,
) -> bool:
    """Multi-signal emptiness check; no single attribute is authoritative."""
    if explicit_empty is True:
        return not (remaining > 0 or _has_material(material_type))
    if explicit_empty is False:
        return False
    return not (
        _has_material(material_type)
        or not is_blank(name)
        or remaining > 0
        or _has_color(color)
    )


def slot_identity_verified(k_value: float, remaining: float) -> bool:
    return k_value > 0 or 0 < remaining <= 100


def slot_reading_from_entity(entity: RawEntity, slot_index: Optional[int] = None) -> FeederSlotReading:
    attrs = entity.attributes
    remaining = attrs.get_float("remaining")
    if remaining is None:
        remaining = attrs.get_float("remain")
    if remaining is None:
        remaining = -1.0
    material_type = attrs.get_str("type") or entity.state
    name = attrs.get_str("name") or ""
    color = attrs.get_str("color") or ""
    k_value = attrs.get_float("k") or 0.0

    is_empty = slot_is_empty(attrs.get_bool("empty"), remaining, material_type, name, color)
    is_active = attrs.get_bool("active")
    if is_active is None:
        is_active = entity.state.strip().lower() == "active"

    color_hex = color.strip() or NEUTRAL_COLOR
    if not color_hex.startswith("#"):
        color_hex = f"#{color_hex}"

    return FeederSlotReading(
        slot_index=slot_index if slot_index is not None else slot_index_from_entity_id(entity.entity_id),
        color_hex=color_hex,
        is_empty=is_empty,
        material_type="Empty" if is_empty else material_type,
        remaining_percent=max(0.0, min(100.0, remaining)),
        nozzle_temp_range=(
            attrs.get_int("nozzle_temp_min") or 0,
            attrs.get_int("nozzle_temp_max") or 0,
        ),
        is_active=is_active,
        has_verified_identity=slot_identity_verified(k_value, remaining),
        name=name,
        k_value=k_value,
        entity_id=entity.entity_id,
    )


# -----------------------------------------------------------------------------
# Engine
# -----------------------------------------------------------------------------
class SyncEngine:
    """Polls one printer's sensors per tick and assembles a PrinterSnapshot."""

    def __init__(self, source, max_concurrency: int = 8, fetch_cover_image: bool = True) -> None:
        self.source = source
        self.max_concurrency = max(1, max_concurrency)
        self.fetch_cover_image = fetch_cover_image

    async def _read_state(self, entity_id: str, semaphore: asyncio.Semaphore) -> str:
        async with semaphore:
            try:
                entity = await self.source.read_entity(entity_id)
            except EntityNotFound:
                logger.debug("Entity %s not found; treating as empty", entity_id)
                return ""
        return entity.state

    async def _read_cover(self, prefix: str, semaphore: asyncio.Semaphore) -> Optional[str]:
        async with semaphore:
            try:
                entity = await self.source.read_entity(cover_image_entity_id(prefix))
            except Unauthorized:
                raise
            except StateSourceError as e:
                logger.debug("[%s] Cover image unavailable: %s", prefix, e)
                return None
        return entity.attributes.get_str("entity_picture")

    async def fetch_raw(self, prefix: str) -> Tuple[Dict[str, str], Optional[str]]:
        """Read every tick sensor concurrently; returns (raw values, cover reference)."""
        semaphore = asyncio.Semaphore(self.max_concurrency)
        keys = list(TICK_SENSORS)
        coros = [
            self._read_state(sensor_entity_id(prefix, TICK_SENSORS[k]), semaphore)
            for k in keys
        ]
        if self.fetch_cover_image:
            coros.append(self._read_cover(prefix, semaphore))

        results = await asyncio.gather(*coros, return_exceptions=True)

        errors = [r for r in results if isinstance(r, BaseException)]
        for err in errors:
            if isinstance(err, asyncio.CancelledError):
                raise err
        for err in errors:
            if isinstance(err, Unauthorized):
                raise err
        if errors:
            raise errors[0]

        raw = dict(zip(keys, results[: len(keys)]))
        cover = results[len(keys)] if self.fetch_cover_image else None
        return raw, cover

    def _degrade(self, ctx: PrinterContext, reason: str) -> PrinterSnapshot:
        ctx.last_error = reason
        ctx.snapshot = replace(ctx.snapshot, connected=False)
        return ctx.snapshot

    async def sync(self, ctx: PrinterContext) -> PrinterSnapshot:
        """Run one tick. Never raises for source errors; returns the snapshot to publish."""
        try:
            raw, cover = await self.fetch_raw(ctx.prefix)
        except Unauthorized as e:
            logger.warning("[%s] Unauthorized; keeping last snapshot: %s", ctx.prefix, e)
            async with ctx.lock:
                return self._degrade(ctx, str(e))
        except StateSourceError as e:
            logger.warning("[%s] Poll failed; keeping last snapshot: %s", ctx.prefix, e)
            async with ctx.lock:
                return self._degrade(ctx, str(e))

        async with ctx.lock:
            ctx.snapshot = build_snapshot(ctx, raw, cover)
            ctx.last_error = None
            logger.debug(
                "[%s] status=%s progress=%s%% file=%s",
                ctx.prefix,
                ctx.snapshot.status.value,
                ctx.snapshot.progress,
                ctx.snapshot.filename,
            )
            return ctx.snapshot

    # -------------------------------------------------------------------------
    # Feeder units
    # -------------------------------------------------------------------------
    async def read_feeder_slot_by_entity(self, entity_id: str) -> FeederSlotReading:
        entity = await self.source.read_entity(entity_id)
        return slot_reading_from_entity(entity)

    async def read_feeder_slot(self, prefix: str, slot_index: int, unit: int = 1) -> FeederSlotReading:
        candidates = [
            sensor_entity_id(prefix, f"ams_{unit}_tray_{slot_index}"),
            sensor_entity_id(prefix, f"ams_tray_{slot_index}"),
        ]
        last_error: StateSourceError = EntityNotFound(f"feeder slot {slot_index}")
        for entity_id in candidates:
            try:
                entity = await self.source.read_entity(entity_id)
            except EntityNotFound as e:
                last_error = e
                continue
            return slot_reading_from_entity(entity, slot_index)
        raise last_error

    async def _read_optional_number(self, entity_id: Optional[str]) -> Optional[float]:
        if not entity_id:
            return None
        try:
            entity = await self.source.read_entity(entity_id)
        except EntityNotFound:
            return None
        return parse_number(entity.state)

    async def _read_optional_slot(self, entity_id: str) -> Optional[FeederSlotReading]:
        try:
            return await self.read_feeder_slot_by_entity(entity_id)
        except EntityNotFound:
            logger.debug("Feeder slot %s disappeared", entity_id)
            return None

    async def read_feeder_unit(self, unit: DiscoveredFeederUnit) -> FeederUnitReading:
        slot_results = await asyncio.gather(
            *(self._read_optional_slot(entity_id) for entity_id in unit.slot_entity_ids)
        )
        humidity, temperature = await asyncio.gather(
            self._read_optional_number(unit.humidity_entity_id),
            self._read_optional_number(unit.temperature_entity_id),
        )
        return FeederUnitReading(
            prefix=unit.prefix,
            display_name=unit.display_name,
            slots=tuple(s for s in slot_results if s is not None),
            humidity=humidity,
            temperature=temperature,
        )
