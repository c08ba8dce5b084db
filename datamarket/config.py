"""Datamarket configuration.

All knobs come from the environment; a `.env` file in the working
directory (or any parent) is loaded first.

Example:
    from datamarket.config import Settings

    settings = Settings.from_env()
    print(settings.buyer_budget, settings.seller_url)
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from typing import Optional

from dotenv import find_dotenv, load_dotenv

from .errors import ConfigError


DEFAULT_MODEL = "claude-sonnet-4-20250514"

# Minimum acceptable prices per catalogue category
DEFAULT_MIN_PRICES = {
    "housing": Decimal("8"),
    "ticker": Decimal("10"),
    "llm_paper": Decimal("12"),
}

RESOLVERS = ("token", "receipt")
SETTLEMENTS = ("local", "onchain")


@dataclass
class HealthCheck:
    """Readiness probing used by the CLI drivers."""
    max_retries: int = 10
    retry_delay: float = 1.0
    timeout: float = 2.0


@dataclass
class Settings:
    """Process-wide settings for both agent roles."""

    buyer_budget: Decimal = Decimal("10")
    host: str = "localhost"
    buyer_port: int = 7576
    seller_port: int = 7577
    model: str = DEFAULT_MODEL
    buyer_max_steps: int = 12
    seller_max_steps: int = 8
    min_prices: dict[str, Decimal] = field(default_factory=lambda: dict(DEFAULT_MIN_PRICES))
    resolver: str = "receipt"
    settlement: str = "local"
    network: str = "base-sepolia"
    buyer_private_key: Optional[str] = None
    seller_private_key: Optional[str] = None
    artifact_ttl_hours: int = 48
    download_base_url: str = "https://data-provider.example.com"
    decode_jwt: bool = True
    opening_offer_pct: Decimal = Decimal("0.80")
    buyer_max_rounds: int = 3
    catalog_path: Optional[str] = None
    health: HealthCheck = field(default_factory=HealthCheck)

    def __post_init__(self):
        if self.resolver not in RESOLVERS:
            raise ConfigError(f"Unknown resolver: {self.resolver}. Supported: {list(RESOLVERS)}")
        if self.settlement not in SETTLEMENTS:
            raise ConfigError(f"Unknown settlement: {self.settlement}. Supported: {list(SETTLEMENTS)}")
        if self.buyer_budget <= 0:
            raise ConfigError("BUYER_BUDGET must be positive")
        if not Decimal("0") < self.opening_offer_pct <= Decimal("1"):
            raise ConfigError("OPENING_OFFER_PCT must be in (0, 1]")
        if self.artifact_ttl_hours <= 0:
            raise ConfigError("ARTIFACT_TTL_HOURS must be positive")

    @property
    def buyer_url(self) -> str:
        return f"http://{self.host}:{self.buyer_port}"

    @property
    def seller_url(self) -> str:
        return f"http://{self.host}:{self.seller_port}"

    @classmethod
    def from_env(cls, dotenv: bool = True) -> "Settings":
        """Build settings from environment variables.

        Args:
            dotenv: Load a `.env` file first (existing variables win)

        Raises:
            ConfigError: If a variable is present but malformed
        """
        if dotenv:
            load_dotenv(find_dotenv(usecwd=True), override=False)

        env = os.environ
        min_prices = {
            "housing": _decimal(env, "MIN_PRICE_HOUSING", DEFAULT_MIN_PRICES["housing"]),
            "ticker": _decimal(env, "MIN_PRICE_TICKER", DEFAULT_MIN_PRICES["ticker"]),
            "llm_paper": _decimal(env, "MIN_PRICE_LLM_PAPER", DEFAULT_MIN_PRICES["llm_paper"]),
        }

        return cls(
            buyer_budget=_decimal(env, "BUYER_BUDGET", Decimal("10")),
            host=env.get("DATAMARKET_HOST", "localhost"),
            buyer_port=_int(env, "BUYER_PORT", 7576),
            seller_port=_int(env, "SELLER_PORT", 7577),
            model=env.get("DATAMARKET_MODEL", DEFAULT_MODEL),
            min_prices=min_prices,
            resolver=env.get("DATAMARKET_RESOLVER", "receipt").lower(),
            settlement=env.get("DATAMARKET_SETTLEMENT", "local").lower(),
            network=env.get("DATAMARKET_NETWORK", "base-sepolia"),
            buyer_private_key=env.get("BUYER_PRIVATE_KEY") or None,
            seller_private_key=env.get("SELLER_PRIVATE_KEY") or None,
            artifact_ttl_hours=_int(env, "ARTIFACT_TTL_HOURS", 48),
            download_base_url=env.get("DOWNLOAD_BASE_URL", "https://data-provider.example.com").rstrip("/"),
            decode_jwt=_bool(env, "DECODE_JWT", True),
            opening_offer_pct=_decimal(env, "OPENING_OFFER_PCT", Decimal("0.80")),
            buyer_max_rounds=_int(env, "BUYER_MAX_ROUNDS", 3),
            catalog_path=env.get("DATAMARKET_CATALOG") or None,
        )


def _decimal(env, name: str, default: Decimal) -> Decimal:
    raw = env.get(name)
    if raw is None or raw == "":
        return default
    try:
        return Decimal(raw)
    except InvalidOperation:
        raise ConfigError(f"{name} must be a number, got {raw!r}") from None


def _int(env, name: str, default: int) -> int:
    raw = env.get(name)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError:
        raise ConfigError(f"{name} must be an integer, got {raw!r}") from None


def _bool(env, name: str, default: bool) -> bool:
    raw = env.get(name)
    if raw is None or raw == "":
        return default
    return raw.strip().lower() not in ("0", "false", "no", "off")
