from collections.abc import Mapping
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, NamedTuple, Optional, Tuple

from .errors import MalformedEntityId
from .parsers import Attributes

NO_PRINT_FILENAME = "No print"
STARTING_FILENAME = "Starting..."
NEUTRAL_COLOR = "#808080"


def now_utc() -> datetime:
    return datetime.now(timezone.utc)


def split_entity_id(entity_id: Any) -> Tuple[str, str]:
    """Split "sensor.h2s_print_progress" into ("sensor", "h2s_print_progress")."""
    if not isinstance(entity_id, str) or not entity_id:
        raise MalformedEntityId(entity_id)
    category, sep, object_id = entity_id.partition(".")
    if not sep or not category or not object_id:
        raise MalformedEntityId(entity_id)
    return category, object_id


# -----------------------------------------------------------------------------
# Raw state source records
# -----------------------------------------------------------------------------
@dataclass(frozen=True)
class RawEntity:
    entity_id: str
    state: str = ""
    attributes: Attributes = field(default_factory=Attributes, hash=False)

    def __post_init__(self) -> None:
        if not isinstance(self.attributes, Attributes):
            object.__setattr__(self, "attributes", Attributes(self.attributes))

    @classmethod
    def from_api(cls, payload: Mapping[str, Any]) -> "RawEntity":
        entity_id = payload.get("entity_id")
        state = payload.get("state")
        attributes = payload.get("attributes")
        return cls(
            entity_id=entity_id if isinstance(entity_id, str) else "",
            state="" if state is None else str(state),
            attributes=Attributes(attributes if isinstance(attributes, Mapping) else {}),
        )

    @property
    def friendly_name(self) -> Optional[str]:
        return self.attributes.get_str("friendly_name")


# -----------------------------------------------------------------------------
# Enums
# -----------------------------------------------------------------------------
class PrintStatus(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    PAUSED = "pause"
    FINISHED = "finish"
    FAILED = "failed"
    PREPARING = "prepare"
    SLICING = "slicing"
    UNKNOWN = "unknown"

    @classmethod
    def parse(cls, raw: Optional[str]) -> "PrintStatus":
        """Case-insensitive match on the value or member name; misses map to UNKNOWN."""
        if not raw:
            return cls.UNKNOWN
        key = str(raw).strip().lower()
        for member in cls:
            if key == member.value or key == member.name.lower():
                return member
        return cls.UNKNOWN

    @property
    def is_active(self) -> bool:
        return self in ACTIVE_STATUSES


ACTIVE_STATUSES = frozenset(
    {PrintStatus.RUNNING, PrintStatus.PAUSED, PrintStatus.PREPARING}
)


class PrinterModel(str, Enum):
    X1C = "X1 Carbon"
    X1E = "X1E"
    P1P = "P1P"
    P1S = "P1S"
    A1 = "A1"
    A1_MINI = "A1 Mini"
    H2S = "H2S"
    H2D = "H2D"


# Evaluated top to bottom; narrower tokens must precede broader ones
# ("a1 mini" before "a1"). H2S and H2D are separate models and are checked
# first so a prefix such as "h2d_x1c_farm" resolves to the H2 machine.
MODEL_RULES: List[Tuple[PrinterModel, Tuple[str, ...], Tuple[str, ...]]] = [
    (PrinterModel.H2S, ("h2s",), ()),
    (PrinterModel.H2D, ("h2d",), ()),
    (PrinterModel.X1C, ("x1c", "x1_c", "x1carbon"), ()),
    (PrinterModel.X1E, ("x1e",), ()),
    (PrinterModel.P1P, ("p1p",), ()),
    (PrinterModel.P1S, ("p1s",), ()),
    (PrinterModel.A1_MINI, ("a1mini", "a1_mini", "a1 mini"), ()),
    (PrinterModel.A1, ("a1",), ("ams",)),
]


def detect_model(prefix: Optional[str]) -> Optional[PrinterModel]:
    lower = (prefix or "").lower()
    if not lower:
        return None
    for model, tokens, excludes in MODEL_RULES:
        if any(t in lower for t in tokens) and not any(x in lower for x in excludes):
            return model
    return None


# -----------------------------------------------------------------------------
# Discovery results
# -----------------------------------------------------------------------------
@dataclass(frozen=True)
class DiscoveredPrinter:
    prefix: str
    display_name: str
    model: Optional[PrinterModel] = None
    matched_entity_count: int = 0


@dataclass(frozen=True)
class DiscoveredFeederUnit:
    prefix: str
    display_name: str
    slot_entity_ids: Tuple[str, ...] = ()
    humidity_entity_id: Optional[str] = None
    temperature_entity_id: Optional[str] = None

    @property
    def slot_count(self) -> int:
        return len(self.slot_entity_ids)


class DiscoveryResult(NamedTuple):
    printers: List[DiscoveredPrinter]
    feeder_units: List[DiscoveredFeederUnit]


# -----------------------------------------------------------------------------
# Snapshots
# -----------------------------------------------------------------------------
def _jsonable(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, dict):
        return {k: _jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_jsonable(v) for v in value]
    return value


@dataclass(frozen=True)
class PrinterSnapshot:
    prefix: str = ""
    progress: int = 0
    current_layer: int = 0
    total_layers: int = 0
    remaining_minutes: int = 0
    status: PrintStatus = PrintStatus.UNKNOWN
    filename: str = NO_PRINT_FILENAME
    print_speed: int = 100
    filament_used_g: float = 0.0

    nozzle_temp: float = 0.0
    nozzle_target_temp: float = 0.0
    bed_temp: float = 0.0
    bed_target_temp: float = 0.0
    chamber_temp: float = 0.0

    current_stage: str = ""
    print_weight_g: float = 0.0
    print_length_m: float = 0.0
    bed_type: str = ""
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None

    aux_fan_speed: int = 0
    chamber_fan_speed: int = 0
    cooling_fan_speed: int = 0

    # connected: the state source answered this tick; printer_online: the
    # printer itself reports being online.
    connected: bool = False
    printer_online: bool = False
    wifi_signal: int = 0
    hms_errors: str = ""

    cover_image_url: Optional[str] = None
    model: Optional[PrinterModel] = None
    updated_at: Optional[datetime] = None

    @classmethod
    def placeholder(cls, prefix: str = "") -> "PrinterSnapshot":
        return cls(prefix=prefix, model=detect_model(prefix))

    @property
    def formatted_time_remaining(self) -> str:
        hours, minutes = divmod(max(0, self.remaining_minutes), 60)
        if hours > 0:
            return f"{hours}h {minutes}m"
        return f"{minutes}m"

    def to_dict(self) -> Dict[str, Any]:
        return _jsonable(asdict(self))

    def content_state(self) -> Dict[str, Any]:
        """The subset of fields rendered by a live session surface."""
        return {
            "progress": self.progress,
            "current_layer": self.current_layer,
            "total_layers": self.total_layers,
            "remaining_minutes": self.remaining_minutes,
            "status": self.status.value,
            "nozzle_temp": self.nozzle_temp,
            "nozzle_target_temp": self.nozzle_target_temp,
            "bed_temp": self.bed_temp,
            "bed_target_temp": self.bed_target_temp,
            "chamber_temp": self.chamber_temp,
            "current_stage": self.current_stage,
            "cover_image_url": self.cover_image_url,
        }


@dataclass(frozen=True)
class FeederSlotReading:
    slot_index: int
    color_hex: str = NEUTRAL_COLOR
    is_empty: bool = True
    material_type: str = "Empty"
    remaining_percent: float = 0.0
    nozzle_temp_range: Tuple[int, int] = (0, 0)
    is_active: bool = False
    has_verified_identity: bool = False
    name: str = ""
    k_value: float = 0.0
    entity_id: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return _jsonable(asdict(self))


@dataclass(frozen=True)
class FeederUnitReading:
    prefix: str
    display_name: str = ""
    slots: Tuple[FeederSlotReading, ...] = ()
    humidity: Optional[float] = None
    temperature: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        return _jsonable(asdict(self))


# -----------------------------------------------------------------------------
# Notification events
# -----------------------------------------------------------------------------
class EventKind(str, Enum):
    STARTED = "started"
    PAUSED = "paused"
    RESUMED = "resumed"
    COMPLETED = "completed"
    FAILED = "failed"
    MILESTONE = "milestone"


@dataclass(frozen=True)
class NotificationEvent:
    kind: EventKind
    snapshot: PrinterSnapshot
    milestone: Optional[int] = None

    @property
    def printer_id(self) -> str:
        return self.snapshot.prefix

    def __str__(self) -> str:
        if self.kind is EventKind.MILESTONE:
            return f"milestone({self.milestone})"
        return self.kind.value
