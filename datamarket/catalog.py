"""Datamarket catalogue.

Immutable data resources the seller can sell, each with a list price and
a floor (minimum acceptable) price.

Example:
    from datamarket.catalog import Catalog

    catalog = Catalog.default()
    resource = catalog.find("I need housing market inventory data")
    print(resource.id, resource.list_price)

    catalog = Catalog.from_yaml("catalog.yaml")
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from pathlib import Path
from typing import Iterator, Mapping, Optional

import yaml

from .config import DEFAULT_MIN_PRICES
from .errors import ConfigError, UnknownResourceError


@dataclass(frozen=True)
class Resource:
    """A catalogue entry. Never mutated after start-up."""
    id: str
    name: str
    description: str
    format: str
    size: str
    list_price: Decimal
    minimum_price: Decimal
    category: str

    def __post_init__(self):
        if self.minimum_price > self.list_price:
            raise ConfigError(
                f"{self.id}: minimum price {self.minimum_price} exceeds list price {self.list_price}"
            )

    def to_public_dict(self) -> dict:
        """Buyer-facing view (the floor price stays private)."""
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "format": self.format,
            "size": self.size,
            "list_price": float(self.list_price),
            "category": self.category,
        }

    def to_dict(self) -> dict:
        return {**self.to_public_dict(), "minimum_price": float(self.minimum_price)}

    @classmethod
    def from_dict(cls, data: Mapping) -> "Resource":
        try:
            return cls(
                id=data["id"],
                name=data["name"],
                description=data.get("description", ""),
                format=data.get("format", ""),
                size=data.get("size", ""),
                list_price=Decimal(str(data["list_price"])),
                minimum_price=Decimal(str(data["minimum_price"])),
                category=data["category"],
            )
        except KeyError as e:
            raise ConfigError(f"Catalogue entry missing field: {e.args[0]}") from None


# Free-text keywords -> category
_KEYWORDS = {
    "housing": ("housing", "real estate"),
    "ticker": ("ticker", "spy", "s&p"),
    "llm_paper": ("llm", "language model"),
}


class Catalog:
    """Lookup over an immutable set of resources."""

    def __init__(self, resources: list[Resource]):
        self._resources = {r.id: r for r in resources}
        if len(self._resources) != len(resources):
            raise ConfigError("Duplicate resource ids in catalogue")

    def __iter__(self) -> Iterator[Resource]:
        return iter(self._resources.values())

    def __len__(self) -> int:
        return len(self._resources)

    def __contains__(self, resource_id: str) -> bool:
        return resource_id in self._resources

    def get(self, resource_id: str) -> Resource:
        """Get a resource by id.

        Raises:
            UnknownResourceError: If no resource has this id
        """
        try:
            return self._resources[resource_id]
        except KeyError:
            raise UnknownResourceError(resource_id) from None

    def by_category(self, category: str) -> Optional[Resource]:
        for resource in self._resources.values():
            if resource.category == category:
                return resource
        return None

    def find(self, query: str) -> Optional[Resource]:
        """Find the resource matching a free-text research request."""
        q = query.lower()

        for category, keywords in _KEYWORDS.items():
            if any(k in q for k in keywords):
                resource = self.by_category(category)
                if resource:
                    return resource

        # Fall back to ids, categories and names mentioned verbatim
        for resource in self._resources.values():
            if resource.id.lower() in q or resource.category.lower() in q or resource.name.lower() in q:
                return resource
        return None

    def describe(self) -> str:
        """Catalogue summary for LLM prompts (list prices only)."""
        return "\n".join(
            f"- {r.name}: {r.description} ({r.format}, {r.size}) - List price: ${r.list_price}"
            for r in self._resources.values()
        )

    def to_public_dict(self) -> list[dict]:
        return [r.to_public_dict() for r in self._resources.values()]

    @classmethod
    def default(cls, min_prices: Optional[Mapping[str, Decimal]] = None) -> "Catalog":
        """The reference catalogue: housing, SPY ticker and an LLM paper."""
        mins = dict(DEFAULT_MIN_PRICES)
        if min_prices:
            mins.update({k: Decimal(str(v)) for k, v in min_prices.items()})

        return cls([
            Resource(
                id="housing_inventory_2024",
                name="US Housing Market Inventory 2024",
                description="Comprehensive housing inventory data across all US metropolitan areas for 2024",
                format="CSV",
                size="12 MB",
                list_price=Decimal("10"),
                minimum_price=mins["housing"],
                category="housing",
            ),
            Resource(
                id="spy_ticker_365d",
                name="SPY Minute-Level Ticker Data (365 days)",
                description="Minute-by-minute ticker data for SPDR S&P 500 ETF (SPY) for the last 365 days",
                format="CSV",
                size="5 MB",
                list_price=Decimal("12"),
                minimum_price=mins["ticker"],
                category="ticker",
            ),
            Resource(
                id="llm_benchmark_paper",
                name="Comprehensive LLM Benchmarking Study 2024",
                description="Academic paper analyzing performance benchmarks of major LLMs with detailed methodology",
                format="PDF",
                size="2.5 MB",
                list_price=Decimal("13"),
                minimum_price=mins["llm_paper"],
                category="llm_paper",
            ),
        ])

    @classmethod
    def from_yaml(cls, path: str | Path) -> "Catalog":
        """Load a catalogue file.

        The file holds either a list of resources or `{"resources": [...]}`.
        """
        path = Path(path)
        if not path.exists():
            raise ConfigError(f"Catalogue file not found: {path}")

        with open(path) as f:
            data = yaml.safe_load(f) or []

        if isinstance(data, dict):
            data = data.get("resources", [])
        if not isinstance(data, list):
            raise ConfigError(f"Catalogue file must contain a list of resources: {path}")

        return cls([Resource.from_dict(entry) for entry in data])
