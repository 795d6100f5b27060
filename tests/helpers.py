import asyncio
from typing import Any, Dict, Iterable, List, Optional, Tuple

from ha_printer_bridge.errors import EntityNotFound, StateSourceError
from ha_printer_bridge.models import RawEntity


def make_entity(entity_id: str, state: Any = "", **attributes) -> RawEntity:
    """Build a RawEntity the way the REST client would."""
    return RawEntity.from_api(
        {"entity_id": entity_id, "state": state, "attributes": attributes}
    )


def printer_entities(prefix: str, **values) -> List[RawEntity]:
    """Sensor entities for one printer; keyword names are sensor suffixes."""
    return [make_entity(f"sensor.{prefix}_{suffix}", value) for suffix, value in values.items()]


class FakeStateSource:
    """In-memory state source with per-entity failure injection."""

    def __init__(self, entities: Iterable[RawEntity] = ()) -> None:
        self.entities: Dict[str, RawEntity] = {e.entity_id: e for e in entities}
        self.errors: Dict[Any, Exception] = {}
        self.list_error: Optional[Exception] = None
        self.reads: List[str] = []
        self.actions: List[Tuple[str, str, Dict[str, Any]]] = []
        self.images: Dict[str, bytes] = {}
        self.delay = 0.0
        self.in_flight = 0
        self.max_in_flight = 0

    def set(self, entity_id: str, state: Any = "", **attributes) -> None:
        self.entities[entity_id] = make_entity(entity_id, state, **attributes)

    def set_printer(self, prefix: str, **values) -> None:
        for entity in printer_entities(prefix, **values):
            self.entities[entity.entity_id] = entity

    async def read_entity(self, entity_id: str) -> RawEntity:
        self.reads.append(entity_id)
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
            if entity_id in self.errors:
                raise self.errors[entity_id]
            if entity_id not in self.entities:
                raise EntityNotFound(entity_id)
            return self.entities[entity_id]
        finally:
            self.in_flight -= 1

    async def read_all_entities(self) -> List[RawEntity]:
        if self.list_error is not None:
            raise self.list_error
        return list(self.entities.values())

    async def call_action(self, category: str, action: str, params: Optional[Dict[str, Any]] = None) -> None:
        if ("action", category, action) in self.errors:
            raise self.errors[("action", category, action)]
        self.actions.append((category, action, params or {}))

    async def fetch_bytes(self, path_or_url: str) -> bytes:
        if path_or_url not in self.images:
            raise StateSourceError(f"no image at {path_or_url}", status=404)
        return self.images[path_or_url]
