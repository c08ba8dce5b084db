"""
Shared fixtures for datamarket tests.

Agents are wired in-process: the seller app is reached through
httpx.ASGITransport, payments run through LocalGateway keys generated
per test, and LLM clients are scripted fakes.
"""

import httpx
import pytest
import pytest_asyncio

from datamarket.agent import SellerAgent
from datamarket.catalog import Catalog
from datamarket.config import Settings
from datamarket.negotiation import SessionStore
from datamarket.payments.gateway import LocalGateway
from datamarket.server import create_app

from tests.fixtures.agents import SELLER_URL


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    """Keep developer .env files and shell variables out of the tests."""
    for name in (
        "BUYER_BUDGET", "BUYER_PORT", "SELLER_PORT", "DATAMARKET_HOST", "DATAMARKET_MODEL",
        "MIN_PRICE_HOUSING", "MIN_PRICE_TICKER", "MIN_PRICE_LLM_PAPER", "DATAMARKET_RESOLVER",
        "DATAMARKET_SETTLEMENT", "DATAMARKET_NETWORK", "BUYER_PRIVATE_KEY", "SELLER_PRIVATE_KEY",
        "ARTIFACT_TTL_HOURS", "DOWNLOAD_BASE_URL", "DECODE_JWT", "OPENING_OFFER_PCT",
        "BUYER_MAX_ROUNDS", "DATAMARKET_CATALOG",
    ):
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def catalog():
    return Catalog.default()


@pytest.fixture
def store():
    return SessionStore()


@pytest.fixture
def settings():
    return Settings(resolver="receipt")


@pytest.fixture
def seller_gateway():
    return LocalGateway()


@pytest.fixture
def buyer_gateway():
    return LocalGateway()


@pytest.fixture
def seller(catalog, seller_gateway, settings):
    return SellerAgent(catalog=catalog, gateway=seller_gateway, settings=settings)


@pytest.fixture
def token_seller(catalog, seller_gateway):
    return SellerAgent(catalog=catalog, gateway=seller_gateway, settings=Settings(resolver="token"))


@pytest_asyncio.fixture
async def seller_http(seller):
    transport = httpx.ASGITransport(app=create_app(seller))
    async with httpx.AsyncClient(transport=transport, base_url=SELLER_URL) as client:
        yield client

