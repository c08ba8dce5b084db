"""Datamarket - agent-to-agent data marketplace.

A seller agent owns a catalogue of data resources and negotiates prices
with buyer agents; an agreed price is settled through signed payment
requests and receipts, and the seller releases a time-limited download
URL exactly once per payment.

Deterministic purchase:
    from datamarket import Settings, create_buyer

    async with create_buyer(Settings.from_env()) as buyer:
        result = await buyer.purchase(resource_id="housing_inventory_2024")
        print(result.final_price, result.artifact["download_url"])

Serving agents:
    from datamarket import create_seller, create_app, serve

    serve(create_app(create_seller()), port=7577)

Payments:
    from datamarket.payments import LocalGateway, WalletGateway, Wallet

    gateway = WalletGateway(Wallet.from_env("BUYER_PRIVATE_KEY"))
"""

# Catalogue and handshake
from .catalog import Catalog, Resource
from .negotiation import (
    Outcome,
    Evaluation,
    NegotiationSession,
    CompletedTransaction,
    SessionStore,
    OfferEvaluator,
    evaluate_offer,
)
from .settlement import (
    Artifact,
    PaymentRequestIssuer,
    ArtifactResolver,
    TokenResolver,
    ReceiptResolver,
    create_resolver,
)
from .strategy import BuyerStrategy, Decision

# Agents
from .agent import SellerAgent, create_seller
from .buyer import Buyer, PurchaseResult, create_buyer

# Client and HTTP
from .client import Client, RpcError
from .server import create_app, serve, serve_many

# Configuration and errors
from .config import Settings
from .errors import MarketError, ConfigError
from .log import configure_logging

# Payments
from .payments import LocalGateway, WalletGateway, PaymentGateway

__all__ = [
    # Catalogue
    "Catalog",
    "Resource",

    # Handshake
    "Outcome",
    "Evaluation",
    "NegotiationSession",
    "CompletedTransaction",
    "SessionStore",
    "OfferEvaluator",
    "evaluate_offer",
    "Artifact",
    "PaymentRequestIssuer",
    "ArtifactResolver",
    "TokenResolver",
    "ReceiptResolver",
    "create_resolver",
    "BuyerStrategy",
    "Decision",

    # Agents
    "SellerAgent",
    "create_seller",
    "Buyer",
    "PurchaseResult",
    "create_buyer",

    # Client and HTTP
    "Client",
    "RpcError",
    "create_app",
    "serve",
    "serve_many",

    # Config
    "Settings",
    "MarketError",
    "ConfigError",
    "configure_logging",

    # Payments
    "LocalGateway",
    "WalletGateway",
    "PaymentGateway",
]

__version__ = "0.1.0"
