"""Datamarket Payments - signed payment requests, receipts and settlement.

Example:
    from datamarket.payments import LocalGateway, WalletGateway, Wallet

    # Seller mints, buyer pays
    seller_gw = LocalGateway()
    buyer_gw = LocalGateway()
    request = await seller_gw.mint_payment_request(800, "Purchase: Housing data")
    receipt = await buyer_gw.execute_payment(request.token)

    # Real USDC transfer on Base Sepolia
    buyer_gw = WalletGateway(Wallet.from_env("BUYER_PRIVATE_KEY"))
"""

from .gateway import (
    PaymentGateway,
    PaymentRequest,
    Receipt,
    LocalGateway,
    WalletGateway,
    create_gateway,
)
from .tokens import (
    TokenError,
    encode_token,
    decode_payload,
    verify_token,
    find_tokens,
    receipt_payment_token,
)
from .wallet import Wallet, TransferResult
from .config import (
    get_network,
    get_explorer_url,
    NetworkConfig,
    NETWORKS,
    DEFAULT_NETWORK,
    CURRENCY,
)

__all__ = [
    # Gateways
    "PaymentGateway",
    "PaymentRequest",
    "Receipt",
    "LocalGateway",
    "WalletGateway",
    "create_gateway",

    # Tokens
    "TokenError",
    "encode_token",
    "decode_payload",
    "verify_token",
    "find_tokens",
    "receipt_payment_token",

    # On-chain
    "Wallet",
    "TransferResult",

    # Config
    "get_network",
    "get_explorer_url",
    "NetworkConfig",
    "NETWORKS",
    "DEFAULT_NETWORK",
    "CURRENCY",
]
