"""Infer printers and feeder (AMS) units from a flat Home Assistant entity list.

Nothing here is told which devices exist. Printer prefixes fall out of a
closed list of sensor suffixes; feeder prefixes fall out of ``*_tray_<n>``
sensors. The same prefix may show up as both a printer and a feeder root.
"""

import logging
import re
from typing import Dict, Iterable, List, Optional, Set

from .errors import DiscoveryError, MalformedEntityId, StateSourceError, Unauthorized
from .models import (
    DiscoveredFeederUnit,
    DiscoveredPrinter,
    DiscoveryResult,
    RawEntity,
    detect_model,
    split_entity_id,
)

logger = logging.getLogger(__name__)

SENSOR_CATEGORY = "sensor"

PRINTER_SENSOR_SUFFIXES = (
    "print_progress",
    "print_status",
    "current_layer",
    "total_layer_count",
    "remaining_time",
    "subtask_name",
    "nozzle_temperature",
    "bed_temperature",
    "current_stage",
)

FEEDER_SLOT_PATTERN = re.compile(r"_tray_\d+$")
FEEDER_HUMIDITY_SUFFIXES = ("humidity", "humidity_index")
FEEDER_TEMPERATURE_SUFFIXES = ("temperature", "ams_temperature")

# Slots beyond 4 are never probed. Feeder units with more physical slots are
# reported truncated; widening this needs a product decision.
MAX_FEEDER_SLOTS = 4

_PRINT_STATUS_LABEL = re.compile(r"\s+print status$", re.IGNORECASE)
_FIRST_TRAY_LABEL = re.compile(r"\s+tray 1$", re.IGNORECASE)


def _index_entities(entities: Iterable[RawEntity]) -> Dict[str, RawEntity]:
    index: Dict[str, RawEntity] = {}
    for entity in entities:
        try:
            split_entity_id(entity.entity_id)
        except MalformedEntityId:
            logger.debug("Skipping malformed entity id %r", entity.entity_id)
            continue
        index[entity.entity_id] = entity
    return index


def printer_prefix_for(object_id: str) -> Optional[str]:
    for suffix in PRINTER_SENSOR_SUFFIXES:
        tail = f"_{suffix}"
        if object_id.endswith(tail):
            prefix = object_id[: -len(tail)]
            return prefix or None
    return None


def feeder_prefix_for(object_id: str) -> Optional[str]:
    match = FEEDER_SLOT_PATTERN.search(object_id)
    if not match:
        return None
    return object_id[: match.start()] or None


def count_prefixed_entities(entity_ids: Iterable[str], prefix: str) -> int:
    """Count entities in any category whose object id starts with ``<prefix>_``."""
    count = 0
    for entity_id in entity_ids:
        _, object_id = split_entity_id(entity_id)
        if object_id.startswith(f"{prefix}_"):
            count += 1
    return count


def printer_display_name(index: Dict[str, RawEntity], prefix: str) -> str:
    status_entity = index.get(f"{SENSOR_CATEGORY}.{prefix}_print_status")
    label = status_entity.friendly_name if status_entity else None
    if label and label.strip():
        return _PRINT_STATUS_LABEL.sub("", label.strip())
    return prefix.replace("_", " ").title()


def feeder_display_name(index: Dict[str, RawEntity], prefix: str, slot_ids: List[str]) -> str:
    if slot_ids:
        label = index[slot_ids[0]].friendly_name
        if label and label.strip():
            return _FIRST_TRAY_LABEL.sub("", label.strip())
    return prefix.replace("_", " ").upper()


def _first_present(index: Dict[str, RawEntity], prefix: str, suffixes: Iterable[str]) -> Optional[str]:
    for suffix in suffixes:
        entity_id = f"{SENSOR_CATEGORY}.{prefix}_{suffix}"
        if entity_id in index:
            return entity_id
    return None


def discover_devices(entities: Iterable[RawEntity]) -> DiscoveryResult:
    """Run one discovery pass over a bulk entity listing.

    Pure and order-independent: printers are sorted by matched entity count,
    feeder units by slot count, both descending with the prefix as tie-break.
    """
    index = _index_entities(entities)

    printer_prefixes: Set[str] = set()
    feeder_prefixes: Set[str] = set()
    for entity_id in index:
        category, object_id = split_entity_id(entity_id)
        if category != SENSOR_CATEGORY:
            continue
        prefix = printer_prefix_for(object_id)
        if prefix:
            printer_prefixes.add(prefix)
        prefix = feeder_prefix_for(object_id)
        if prefix:
            feeder_prefixes.add(prefix)

    printers = [
        DiscoveredPrinter(
            prefix=prefix,
            display_name=printer_display_name(index, prefix),
            model=detect_model(prefix),
            matched_entity_count=count_prefixed_entities(index, prefix),
        )
        for prefix in printer_prefixes
    ]

    feeder_units = []
    for prefix in feeder_prefixes:
        slot_ids = [
            f"{SENSOR_CATEGORY}.{prefix}_tray_{n}"
            for n in range(1, MAX_FEEDER_SLOTS + 1)
            if f"{SENSOR_CATEGORY}.{prefix}_tray_{n}" in index
        ]
        if not slot_ids:
            continue
        feeder_units.append(
            DiscoveredFeederUnit(
                prefix=prefix,
                display_name=feeder_display_name(index, prefix, slot_ids),
                slot_entity_ids=tuple(slot_ids),
                humidity_entity_id=_first_present(index, prefix, FEEDER_HUMIDITY_SUFFIXES),
                temperature_entity_id=_first_present(index, prefix, FEEDER_TEMPERATURE_SUFFIXES),
            )
        )

    printers.sort(key=lambda p: (-p.matched_entity_count, p.prefix))
    feeder_units.sort(key=lambda u: (-u.slot_count, u.prefix))
    return DiscoveryResult(printers=printers, feeder_units=feeder_units)


async def discover_from_source(source) -> DiscoveryResult:
    """Fetch the bulk listing from ``source`` and discover devices.

    Failures are all-or-nothing: an auth error propagates as ``Unauthorized``,
    anything else from the source as ``DiscoveryError``.
    """
    try:
        entities = await source.read_all_entities()
    except Unauthorized:
        raise
    except StateSourceError as e:
        raise DiscoveryError(f"Entity listing failed: {e}") from e

    result = discover_devices(entities)
    logger.info(
        "Discovery found %d printer(s) %s and %d feeder unit(s) %s",
        len(result.printers),
        [p.prefix for p in result.printers],
        len(result.feeder_units),
        [u.prefix for u in result.feeder_units],
    )
    return result


def feeder_units_for(printer_prefix: str, result: DiscoveryResult) -> List[DiscoveredFeederUnit]:
    """Feeder units that belong to ``printer_prefix``.

    A unit belongs to a printer when its prefix extends the printer's
    (``h2s_ams_1`` under ``h2s``). Units no printer claims go to the printer
    only when it is the single one discovered.
    """
    printers = [p.prefix for p in result.printers]
    owned = []
    for unit in result.feeder_units:
        owners = [p for p in printers if unit.prefix.startswith(f"{p}_")]
        if owners:
            # Longest matching prefix wins ("x1c_2" over "x1c").
            if max(owners, key=len) == printer_prefix:
                owned.append(unit)
        elif printers == [printer_prefix]:
            owned.append(unit)
    return owned
