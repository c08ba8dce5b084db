"""
Tests for the data catalogue.
"""

from decimal import Decimal

import pytest

from datamarket.catalog import Catalog, Resource
from datamarket.errors import ConfigError, UnknownResourceError


def _resource(**overrides) -> Resource:
    data = dict(
        id="weather_daily",
        name="Daily Weather Archive",
        description="Daily observations",
        format="CSV",
        size="1 MB",
        list_price=Decimal("5"),
        minimum_price=Decimal("3"),
        category="weather",
    )
    data.update(overrides)
    return Resource(**data)


class TestCatalog:
    """Lookup and loading."""

    def test_default_catalogue(self, catalog):
        """Three reference resources with list and floor prices."""
        assert len(catalog) == 3
        prices = {r.id: (r.list_price, r.minimum_price) for r in catalog}
        assert prices == {
            "housing_inventory_2024": (Decimal("10"), Decimal("8")),
            "spy_ticker_365d": (Decimal("12"), Decimal("10")),
            "llm_benchmark_paper": (Decimal("13"), Decimal("12")),
        }

    def test_minimum_prices_are_configurable(self):
        catalog = Catalog.default({"housing": Decimal("9")})
        assert catalog.get("housing_inventory_2024").minimum_price == Decimal("9")
        assert catalog.get("spy_ticker_365d").minimum_price == Decimal("10")

    def test_default_floors_come_from_settings_defaults(self, monkeypatch):
        """Catalogue and Settings share one table of default floors."""
        from datamarket import config

        monkeypatch.setitem(config.DEFAULT_MIN_PRICES, "housing", Decimal("7"))

        assert Catalog.default().get("housing_inventory_2024").minimum_price == Decimal("7")
        assert config.Settings().min_prices["housing"] == Decimal("7")

    @pytest.mark.parametrize("query, expected", [
        ("I need housing market inventory data", "housing_inventory_2024"),
        ("anything on Real Estate?", "housing_inventory_2024"),
        ("ticker prices on S&P 500", "spy_ticker_365d"),
        ("SPY minute bars", "spy_ticker_365d"),
        ("papers about LLMs", "llm_benchmark_paper"),
        ("large language model benchmarks", "llm_benchmark_paper"),
    ])
    def test_find_by_keyword(self, catalog, query, expected):
        assert catalog.find(query).id == expected

    def test_find_no_match(self, catalog):
        assert catalog.find("satellite imagery") is None

    def test_find_falls_back_to_category(self):
        catalog = Catalog([_resource()])
        assert catalog.find("do you have weather data?").id == "weather_daily"

    def test_get_unknown_resource(self, catalog):
        with pytest.raises(UnknownResourceError) as exc:
            catalog.get("nope")
        assert exc.value.code == -32004
        assert exc.value.message == "Resource not found: nope"

    def test_public_listing_hides_minimum(self, catalog):
        for entry in catalog.to_public_dict():
            assert "minimum_price" not in entry
            assert entry["list_price"] > 0

    def test_describe_lists_prices(self, catalog):
        text = catalog.describe()
        assert "US Housing Market Inventory 2024" in text
        assert "List price: $10" in text
        assert "$8" not in text

    def test_minimum_above_list_rejected(self):
        with pytest.raises(ConfigError):
            _resource(minimum_price=Decimal("6"))

    def test_duplicate_ids_rejected(self):
        with pytest.raises(ConfigError):
            Catalog([_resource(), _resource()])


class TestCatalogFile:
    """YAML catalogue loading."""

    def test_from_yaml_list(self, tmp_path):
        path = tmp_path / "catalog.yaml"
        path.write_text(
            "- id: weather_daily\n"
            "  name: Daily Weather Archive\n"
            "  list_price: 5\n"
            "  minimum_price: 3.5\n"
            "  category: weather\n"
        )
        catalog = Catalog.from_yaml(path)
        resource = catalog.get("weather_daily")
        assert resource.minimum_price == Decimal("3.5")
        assert resource.format == ""

    def test_from_yaml_mapping(self, tmp_path):
        path = tmp_path / "catalog.yaml"
        path.write_text(
            "resources:\n"
            "  - {id: a, name: A, list_price: 2, minimum_price: 1, category: x}\n"
            "  - {id: b, name: B, list_price: 4, minimum_price: 3, category: y}\n"
        )
        assert [r.id for r in Catalog.from_yaml(path)] == ["a", "b"]

    def test_from_yaml_missing_field(self, tmp_path):
        path = tmp_path / "catalog.yaml"
        path.write_text("- {id: a, name: A, list_price: 2, category: x}\n")
        with pytest.raises(ConfigError, match="minimum_price"):
            Catalog.from_yaml(path)

    def test_from_yaml_missing_file(self, tmp_path):
        with pytest.raises(ConfigError):
            Catalog.from_yaml(tmp_path / "absent.yaml")
