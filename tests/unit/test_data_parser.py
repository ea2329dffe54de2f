"""Unit tests for fuel type mapping and station row parsing."""

from __future__ import annotations

import pytest

from fuelintel.pipeline.data_parser import DataParser, composite_municipio_id
from fuelintel.pipeline.fuel_types import (
    FuelType,
    is_diesel,
    is_gasoline,
    map_subproducto_to_fuel_type,
    validate_fuel_type,
)
from fuelintel.pipeline.types import ParsedPrice

REGULAR = "Regular (con un índice de octano ([RON+MON]/2) mínimo de 87)"
PREMIUM = "Premium (con un índice de octano ([RON+MON]/2) mínimo de 91)"


class TestFuelTypeMapping:
    """SubProducto label mapping."""

    @pytest.mark.parametrize(
        "label, expected",
        [
            (REGULAR, FuelType.REGULAR),
            ("Regular (con un índice de octano ([RON+MON]/2) menos de 92)", FuelType.REGULAR),
            (PREMIUM, FuelType.PREMIUM),
            ("premium 92", FuelType.PREMIUM),
            ("Diésel", FuelType.DIESEL),
            ("Diesel Automotriz", FuelType.DIESEL),
        ],
    )
    def test_known_labels(self, label, expected):
        assert map_subproducto_to_fuel_type(label) is expected

    @pytest.mark.parametrize("label", [None, "", "Gas LP", "Turbosina"])
    def test_unknown_labels(self, label):
        assert map_subproducto_to_fuel_type(label) is None

    def test_product_helpers(self):
        assert is_gasoline("Gasolinas")
        assert not is_gasoline("Diésel")
        assert is_diesel("Diésel")
        assert not is_diesel("")

    def test_validate_fuel_type(self):
        assert validate_fuel_type("regular")
        assert validate_fuel_type(FuelType.DIESEL)
        assert not validate_fuel_type("magna")


class TestParseStationPrices:
    """Grouping raw rows into stations."""

    def test_groups_rows_by_station(self, price_row_factory):
        rows = [
            price_row_factory("E001", REGULAR, 22.499),
            price_row_factory("E001", PREMIUM, "24.10"),
            price_row_factory("E002", "Diésel", 24.30),
        ]

        stations = DataParser().parse_station_prices(rows, estado_id=9, municipio_id=15)

        assert [s.station.station_id for s in stations] == ["E001", "E002"]
        first = stations[0]
        assert first.station.region_id == 9
        assert first.station.subregion_id == 9015
        assert [(p.fuel_type, p.price) for p in first.prices] == [
            (FuelType.REGULAR, 22.50),
            (FuelType.PREMIUM, 24.10),
        ]
        assert first.prices[0].raw_label == REGULAR

    def test_first_price_per_fuel_type_kept(self, price_row_factory):
        rows = [
            price_row_factory("E001", REGULAR, 22.50),
            price_row_factory("E001", "Regular (con un índice de octano ([RON+MON]/2) menos de 92)", 23.00),
        ]

        stations = DataParser().parse_station_prices(rows, 9, 15)

        assert [p.price for p in stations[0].prices] == [22.50]

    def test_unknown_fuel_and_bad_prices_dropped(self, price_row_factory):
        rows = [
            price_row_factory("E001", "Gas LP", 11.0),
            price_row_factory("E001", REGULAR, 0),
            price_row_factory("E001", PREMIUM, "n/a"),
            price_row_factory("E001", "Diésel", -1),
        ]

        stations = DataParser().parse_station_prices(rows, 9, 15)

        assert len(stations) == 1
        assert stations[0].prices == []

    def test_rows_without_numero_skipped(self, price_row_factory):
        row = price_row_factory("", REGULAR, 22.0)

        assert DataParser().parse_station_prices([row], 9, 15) == []

    def test_composite_municipio_id(self):
        assert composite_municipio_id(19, "39") == 19039


class TestValidation:
    """Station and price validation."""

    def test_valid_station(self, station_factory):
        assert DataParser.validate_station(station_factory("E001"))

    @pytest.mark.parametrize(
        "field, value",
        [
            ("station_id", " "),
            ("name", ""),
            ("region_id", 0),
            ("subregion_id", 0),
            ("latitude", 95.0),
            ("longitude", -181.0),
        ],
    )
    def test_invalid_station(self, station_factory, field, value):
        station = station_factory("E001")
        setattr(station, field, value)

        assert not DataParser.validate_station(station)

    def test_missing_coordinates_allowed(self, station_factory):
        station = station_factory("E001")
        station.latitude = None
        station.longitude = None

        assert DataParser.validate_station(station)

    @pytest.mark.parametrize("price, expected", [(22.5, True), (100.0, True), (100.01, False), (0.0, False)])
    def test_validate_price_bounds(self, price, expected):
        parsed = ParsedPrice("E001", FuelType.REGULAR, REGULAR, price)

        assert DataParser(max_valid_price=100.0).validate_price(parsed) is expected

    def test_filter_valid_drops_bad_stations_and_prices(self, price_row_factory):
        parser = DataParser(max_valid_price=50.0)
        rows = [
            price_row_factory("E001", REGULAR, 22.5),
            price_row_factory("E001", PREMIUM, 75.0),
            price_row_factory("E002", REGULAR, 22.5, nombre=""),
        ]

        valid = parser.filter_valid(parser.parse_station_prices(rows, 9, 15))

        assert [s.station.station_id for s in valid] == ["E001"]
        assert [p.fuel_type for p in valid[0].prices] == [FuelType.REGULAR]

    def test_summarize(self, price_row_factory):
        parser = DataParser()
        rows = [
            price_row_factory("E001", REGULAR, 22.5),
            price_row_factory("E001", "Diésel", 24.0),
            price_row_factory("E002", REGULAR, 22.7),
        ]

        summary = parser.summarize(parser.parse_station_prices(rows, 9, 15))

        assert summary["total_stations"] == 2
        assert summary["total_prices"] == 3
        assert summary["fuel_type_counts"] == {"regular": 2, "premium": 0, "diesel": 1}
        assert summary["average_prices_per_station"] == 1.5
