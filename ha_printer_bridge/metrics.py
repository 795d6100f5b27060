from datetime import datetime
from typing import Iterable, Optional

from prometheus_client import REGISTRY, CollectorRegistry, Counter, Gauge

from .models import FeederUnitReading, NotificationEvent, PrinterSnapshot


def _unregister_metric_if_exists(
    metric_name: str, registry: CollectorRegistry = REGISTRY
):
    if metric_name in registry._names_to_collectors:
        registry.unregister(registry._names_to_collectors[metric_name])


def _gauge(name: str, documentation: str, labels=("printer_id",)) -> Gauge:
    _unregister_metric_if_exists(name)
    return Gauge(name, documentation, list(labels))


PRINTER_CONNECTED = _gauge(
    "ha_printer_connected",
    "Whether the last poll reached Home Assistant (1=yes,0=no)",
)
PRINTER_ONLINE = _gauge(
    "ha_printer_online", "Printer online flag as reported by its integration"
)
PRINT_ACTIVE = _gauge(
    "ha_printer_print_active", "Whether a print is running, paused or preparing"
)
LAST_SNAPSHOT_TIMESTAMP = _gauge(
    "ha_printer_last_snapshot_timestamp_seconds",
    "Unix timestamp of the last successful snapshot for this printer",
)
PROGRESS_PERCENT = _gauge("ha_printer_progress_percent", "Current print progress percent")
REMAINING_MINUTES = _gauge(
    "ha_printer_remaining_time_minutes", "Reported remaining time in minutes"
)
LAYER = _gauge("ha_printer_layer_number", "Current layer number")
TOTAL_LAYERS = _gauge("ha_printer_total_layers", "Total layers in the print")
NOZZLE_TEMP = _gauge("ha_printer_nozzle_temperature_celsius", "Current nozzle temperature in Celsius")
NOZZLE_TARGET_TEMP = _gauge(
    "ha_printer_nozzle_target_temperature_celsius", "Target nozzle temperature in Celsius"
)
BED_TEMP = _gauge("ha_printer_bed_temperature_celsius", "Current bed temperature in Celsius")
BED_TARGET_TEMP = _gauge(
    "ha_printer_bed_target_temperature_celsius", "Target bed temperature in Celsius"
)
CHAMBER_TEMP = _gauge("ha_printer_chamber_temperature_celsius", "Current chamber temperature in Celsius")
PRINT_SPEED = _gauge("ha_printer_print_speed_percent", "Print speed percentage")
FILAMENT_USED = _gauge("ha_printer_filament_used_grams", "Filament used by the current print in grams")
FAN_SPEED = _gauge(
    "ha_printer_fan_speed_percent", "Fan speed percentage", labels=("printer_id", "fan")
)
WIFI_SIGNAL = _gauge("ha_printer_wifi_signal_dbm", "WiFi signal strength in dBm")

FEEDER_SLOT_REMAINING = _gauge(
    "ha_printer_feeder_slot_remaining_percent",
    "Remaining filament percent in a feeder slot",
    labels=("feeder", "slot"),
)
FEEDER_SLOT_EMPTY = _gauge(
    "ha_printer_feeder_slot_empty",
    "Whether a feeder slot is judged empty (1=empty)",
    labels=("feeder", "slot"),
)
FEEDER_HUMIDITY = _gauge(
    "ha_printer_feeder_humidity", "Feeder unit humidity reading", labels=("feeder",)
)

_unregister_metric_if_exists("ha_printer_notification_events")
NOTIFICATION_EVENTS = Counter(
    "ha_printer_notification_events",
    "Notification events emitted, by kind",
    ["printer_id", "kind"],
)


def _to_epoch_seconds(dt: Optional[datetime]) -> float:
    if not dt:
        return 0.0
    return dt.timestamp()


def record_snapshot(snapshot: PrinterSnapshot) -> None:
    pid = snapshot.prefix
    PRINTER_CONNECTED.labels(printer_id=pid).set(1 if snapshot.connected else 0)
    if not snapshot.connected:
        # Values below are the last good ones; leave them as they were.
        return
    PRINTER_ONLINE.labels(printer_id=pid).set(1 if snapshot.printer_online else 0)
    PRINT_ACTIVE.labels(printer_id=pid).set(1 if snapshot.status.is_active else 0)
    LAST_SNAPSHOT_TIMESTAMP.labels(printer_id=pid).set(_to_epoch_seconds(snapshot.updated_at))
    PROGRESS_PERCENT.labels(printer_id=pid).set(snapshot.progress)
    REMAINING_MINUTES.labels(printer_id=pid).set(snapshot.remaining_minutes)
    LAYER.labels(printer_id=pid).set(snapshot.current_layer)
    TOTAL_LAYERS.labels(printer_id=pid).set(snapshot.total_layers)
    NOZZLE_TEMP.labels(printer_id=pid).set(snapshot.nozzle_temp)
    NOZZLE_TARGET_TEMP.labels(printer_id=pid).set(snapshot.nozzle_target_temp)
    BED_TEMP.labels(printer_id=pid).set(snapshot.bed_temp)
    BED_TARGET_TEMP.labels(printer_id=pid).set(snapshot.bed_target_temp)
    CHAMBER_TEMP.labels(printer_id=pid).set(snapshot.chamber_temp)
    PRINT_SPEED.labels(printer_id=pid).set(snapshot.print_speed)
    FILAMENT_USED.labels(printer_id=pid).set(snapshot.filament_used_g)
    FAN_SPEED.labels(printer_id=pid, fan="aux").set(snapshot.aux_fan_speed)
    FAN_SPEED.labels(printer_id=pid, fan="chamber").set(snapshot.chamber_fan_speed)
    FAN_SPEED.labels(printer_id=pid, fan="cooling").set(snapshot.cooling_fan_speed)
    WIFI_SIGNAL.labels(printer_id=pid).set(snapshot.wifi_signal)


def record_feeders(units: Iterable[FeederUnitReading]) -> None:
    for unit in units:
        for slot in unit.slots:
            labels = {"feeder": unit.prefix, "slot": str(slot.slot_index)}
            FEEDER_SLOT_REMAINING.labels(**labels).set(slot.remaining_percent)
            FEEDER_SLOT_EMPTY.labels(**labels).set(1 if slot.is_empty else 0)
        if unit.humidity is not None:
            FEEDER_HUMIDITY.labels(feeder=unit.prefix).set(unit.humidity)


def record_event(event: NotificationEvent) -> None:
    NOTIFICATION_EVENTS.labels(printer_id=event.printer_id, kind=event.kind.value).inc()


def publish(snapshot: PrinterSnapshot, feeders: Iterable[FeederUnitReading] = ()) -> None:
    record_snapshot(snapshot)
    record_feeders(feeders)
