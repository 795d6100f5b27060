import pytest

from ha_printer_bridge.controls import PrinterControls, probe_sensors
from ha_printer_bridge.errors import StateSourceError, Unauthorized
from ha_printer_bridge.sync import TICK_SENSORS


class TestPrinterControls:
    @pytest.mark.asyncio
    async def test_buttons(self, source):
        controls = PrinterControls(source, "x1c")
        await controls.pause()
        await controls.resume()
        await controls.stop()
        assert source.actions == [
            ("button", "press", {"entity_id": "button.x1c_pause"}),
            ("button", "press", {"entity_id": "button.x1c_resume"}),
            ("button", "press", {"entity_id": "button.x1c_stop"}),
        ]

    @pytest.mark.asyncio
    async def test_temperatures(self, source):
        controls = PrinterControls(source, "x1c")
        await controls.set_nozzle_temperature(220)
        await controls.set_bed_temperature(60.5)
        assert source.actions == [
            ("number", "set_value", {"entity_id": "number.x1c_nozzle_target_temperature", "value": 220}),
            ("number", "set_value", {"entity_id": "number.x1c_bed_target_temperature", "value": 60.5}),
        ]

    @pytest.mark.asyncio
    async def test_chamber_light(self, source):
        controls = PrinterControls(source, "x1c")
        await controls.set_chamber_light(True)
        await controls.set_chamber_light(False)
        assert [a[1] for a in source.actions] == ["turn_on", "turn_off"]
        assert source.actions[0][2] == {"entity_id": "light.x1c_chamber_light"}

    @pytest.mark.asyncio
    async def test_run_dispatches_by_name(self, source):
        controls = PrinterControls(source, "x1c")
        await controls.run("nozzle_temperature", 215)
        assert source.actions[-1][2]["value"] == 215.0
        with pytest.raises(ValueError):
            await controls.run("nozzle_temperature", "hot")
        with pytest.raises(ValueError):
            await controls.run("self_destruct")

    @pytest.mark.asyncio
    async def test_source_errors_propagate(self, source):
        source.errors[("action", "button", "press")] = Unauthorized()
        with pytest.raises(Unauthorized):
            await PrinterControls(source, "x1c").pause()


@pytest.mark.asyncio
async def test_probe_sensors(source):
    source.set_printer("x1c", print_status="running", print_progress="12")
    source.errors["sensor.x1c_current_layer"] = StateSourceError("HTTP Error: 500", status=500)
    probes = {p.entity_id: p for p in await probe_sensors(source, "x1c")}

    assert len(probes) == len(TICK_SENSORS)
    assert probes["sensor.x1c_print_status"].result == "success"
    assert probes["sensor.x1c_print_status"].value == "running"
    assert probes["sensor.x1c_current_layer"].result == "error"
    assert "500" in probes["sensor.x1c_current_layer"].error
    assert probes["sensor.x1c_remaining_time"].result == "not_found"
    assert all(p.response_ms >= 0 for p in probes.values())
