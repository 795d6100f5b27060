import logging
import time
from dataclasses import asdict, dataclass
from typing import Any, Dict, List, Optional

from .errors import EntityNotFound, StateSourceError
from .sync import TICK_SENSORS, sensor_entity_id

logger = logging.getLogger(__name__)


class PrinterControls:
    """Thin wrappers over Home Assistant service calls for one printer."""

    def __init__(self, source, prefix: str) -> None:
        self.source = source
        self.prefix = prefix

    async def _press(self, button: str) -> None:
        entity_id = f"button.{self.prefix}_{button}"
        logger.info("[%s] Pressing %s", self.prefix, entity_id)
        await self.source.call_action("button", "press", {"entity_id": entity_id})

    async def pause(self) -> None:
        await self._press("pause")

    async def resume(self) -> None:
        await self._press("resume")

    async def stop(self) -> None:
        await self._press("stop")

    async def set_nozzle_temperature(self, temperature: float) -> None:
        await self.source.call_action(
            "number",
            "set_value",
            {"entity_id": f"number.{self.prefix}_nozzle_target_temperature", "value": temperature},
        )

    async def set_bed_temperature(self, temperature: float) -> None:
        await self.source.call_action(
            "number",
            "set_value",
            {"entity_id": f"number.{self.prefix}_bed_target_temperature", "value": temperature},
        )

    async def set_chamber_light(self, on: bool) -> None:
        action = "turn_on" if on else "turn_off"
        await self.source.call_action(
            "light", action, {"entity_id": f"light.{self.prefix}_chamber_light"}
        )

    async def run(self, name: str, value: Optional[Any] = None) -> None:
        """Dispatch an action by name, as used by the HTTP surface."""
        if name == "pause":
            await self.pause()
        elif name == "resume":
            await self.resume()
        elif name == "stop":
            await self.stop()
        elif name == "nozzle_temperature":
            await self.set_nozzle_temperature(_require_number(name, value))
        elif name == "bed_temperature":
            await self.set_bed_temperature(_require_number(name, value))
        elif name == "chamber_light":
            await self.set_chamber_light(bool(value))
        else:
            raise ValueError(f"Unknown action: {name}")


ACTIONS = (
    "pause",
    "resume",
    "stop",
    "nozzle_temperature",
    "bed_temperature",
    "chamber_light",
)


def _require_number(name: str, value: Any) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValueError(f"Action {name} needs a numeric value")
    return float(value)


# -----------------------------------------------------------------------------
# Sensor diagnostics
# -----------------------------------------------------------------------------
@dataclass
class SensorProbe:
    entity_id: str
    result: str
    value: Optional[str] = None
    error: Optional[str] = None
    response_ms: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


async def probe_sensors(source, prefix: str) -> List[SensorProbe]:
    """Read each tick sensor one at a time and time the round trip."""
    probes = []
    for suffix in TICK_SENSORS.values():
        entity_id = sensor_entity_id(prefix, suffix)
        started = time.monotonic()
        try:
            entity = await source.read_entity(entity_id)
            probe = SensorProbe(entity_id, "success", value=entity.state)
        except EntityNotFound:
            probe = SensorProbe(entity_id, "not_found")
        except StateSourceError as e:
            probe = SensorProbe(entity_id, "error", error=str(e))
        probe.response_ms = int((time.monotonic() - started) * 1000)
        probes.append(probe)
    found = sum(1 for p in probes if p.result == "success")
    logger.info("[%s] Sensor probe: %d/%d found", prefix, found, len(probes))
    return probes
