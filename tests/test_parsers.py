import pytest

from ha_printer_bridge.parsers import (
    FILAMENT_GRAMS_PER_METER,
    Attributes,
    coerce_bool,
    parse_duration_minutes,
    parse_mass_grams,
    parse_number,
    parse_speed_percent,
    to_int,
)


class TestDuration:
    @pytest.mark.parametrize("raw", ["1h 30m", "1h30m", "90", "1H 30M", " 1h   30m "])
    def test_ninety_minutes_spellings(self, raw):
        assert parse_duration_minutes(raw) == 90

    @pytest.mark.parametrize("raw", ["", "   ", "garbage", None, "h", "30s"])
    def test_unparsable_is_zero(self, raw):
        assert parse_duration_minutes(raw) == 0

    def test_decimal_truncates(self):
        assert parse_duration_minutes("45.7") == 45
        assert parse_duration_minutes("0.9") == 0

    def test_hours_or_minutes_alone(self):
        assert parse_duration_minutes("2h") == 120
        assert parse_duration_minutes("15m") == 15

    def test_negative_and_non_finite(self):
        assert parse_duration_minutes("-5") == 0
        assert parse_duration_minutes("nan") == 0
        assert parse_duration_minutes("inf") == 0


class TestMass:
    def test_meters_are_converted(self):
        assert parse_mass_grams("10m") == pytest.approx(29.6, abs=0.01)
        assert parse_mass_grams("1 m") == pytest.approx(FILAMENT_GRAMS_PER_METER)

    def test_millimeters_are_not_converted(self):
        assert parse_mass_grams("100mm") == 100.0

    @pytest.mark.parametrize("raw", ["100g", "100", "100 grams", "100gram", "100.0 G"])
    def test_grams(self, raw):
        assert parse_mass_grams(raw) == 100.0

    @pytest.mark.parametrize("raw", ["", None, "abc", "10kg", "m"])
    def test_unparsable_is_zero(self, raw):
        assert parse_mass_grams(raw) == 0.0


class TestCoerceBool:
    @pytest.mark.parametrize(
        "value,expected",
        [
            (True, True),
            (False, False),
            ("true", True),
            ("TRUE", True),
            ("false", False),
            ("1", True),
            ("0", False),
            (1, True),
            (0, False),
            (-3, True),
            ("on", True),
            ("off", False),
        ],
    )
    def test_recognized(self, value, expected):
        assert coerce_bool(value) is expected

    @pytest.mark.parametrize("value", [None, "maybe", "", [], {}])
    def test_not_reported(self, value):
        assert coerce_bool(value) is None


def test_speed_profiles():
    assert parse_speed_percent("sport") == 124
    assert parse_speed_percent("Ludicrous") == 166
    assert parse_speed_percent("silent") == 50
    assert parse_speed_percent("80") == 80
    assert parse_speed_percent("fast") == 100
    assert parse_speed_percent(None) == 100
    assert parse_speed_percent("") == 100


def test_parse_number_extracts_leading_value():
    assert parse_number("-59dBm") == -59.0
    assert parse_number("25.5 °C") == 25.5
    assert parse_number("abc") is None
    assert parse_number(".") is None
    assert parse_number("nan") is None
    assert to_int("unavailable", default=-1) == -1


class TestAttributes:
    def test_typed_getters_fail_soft(self):
        attrs = Attributes({"remain": "42", "k": 0.02, "empty": "true", "name": 7, "flag": True})
        assert attrs.get_int("remain") == 42
        assert attrs.get_float("k") == pytest.approx(0.02)
        assert attrs.get_bool("empty") is True
        assert attrs.get_str("name") is None
        assert attrs.get_float("flag") is None
        assert attrs.get_int("missing") is None
        assert attrs.get_bool("missing") is None

    def test_is_a_read_only_mapping(self):
        attrs = Attributes({"a": 1})
        assert dict(attrs) == {"a": 1}
        assert len(attrs) == 1
        with pytest.raises(TypeError):
            attrs["a"] = 2  # type: ignore[index]
