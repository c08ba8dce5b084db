"""Datamarket payment gateways.

The handshake only needs two capabilities from a payment system:

    mint_payment_request(amount_minor_units, description) -> PaymentRequest
    execute_payment(token) -> Receipt

Both are treated as opaque, fallible remote calls; any failure surfaces as
UpstreamError with the diagnostic payload attached.

Gateways:
- LocalGateway: signed payment requests and receipts, no funds move
- WalletGateway: same credentials, plus a USDC transfer on-chain

Example:
    seller_gw = LocalGateway()
    buyer_gw = LocalGateway()

    request = await seller_gw.mint_payment_request(800, "Purchase: Housing data")
    receipt = await buyer_gw.execute_payment(request.token)
"""

from __future__ import annotations

import asyncio
import time
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Iterable, Optional, TYPE_CHECKING

from eth_account import Account
from eth_account.signers.local import LocalAccount

from ..errors import ConfigError, UpstreamError
from ..log import log
from .config import CURRENCY, PAYMENT_REQUEST_TTL_SECONDS
from .tokens import TokenError, encode_token, verify_token

if TYPE_CHECKING:
    from ..config import Settings
    from .wallet import Wallet


@dataclass
class PaymentRequest:
    """A minted, payable request."""
    token: str
    amount_minor_units: int
    description: str
    url: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "payment_token": self.token,
            "payment_request_url": self.url or self.token,
            "amount_minor_units": self.amount_minor_units,
            "description": self.description,
        }


@dataclass
class Receipt:
    """Proof of a completed payment."""
    token: str
    payment_token: str
    url: Optional[str] = None
    tx_hash: Optional[str] = None
    explorer_url: Optional[str] = None

    @property
    def receipt_id(self) -> str:
        """What the buyer hands to the seller: the URL if any, else the token."""
        return self.url or self.token

    def to_dict(self) -> dict:
        data = {"receipt": self.token, "receipt_url": self.receipt_id}
        if self.tx_hash:
            data["tx_hash"] = self.tx_hash
            data["explorer_url"] = self.explorer_url
        return data


class PaymentGateway(ABC):
    """Payment SDK boundary."""

    @abstractmethod
    async def mint_payment_request(self, amount_minor_units: int, description: str) -> PaymentRequest:
        ...

    @abstractmethod
    async def execute_payment(self, token: str) -> Receipt:
        ...


class LocalGateway(PaymentGateway):
    """Signs payment requests and receipts with a local key.

    The same instance can act for a seller (minting) and a buyer (paying).
    A request this gateway has already paid is never paid twice.
    """

    def __init__(
        self,
        account: Optional[LocalAccount] = None,
        trusted_issuers: Optional[Iterable[str]] = None,
        request_ttl: int = PAYMENT_REQUEST_TTL_SECONDS,
    ):
        self.account = account or Account.create()
        self.trusted_issuers = {a.lower() for a in trusted_issuers} if trusted_issuers else None
        self.request_ttl = request_ttl
        self._paid: dict[str, Receipt] = {}
        self._lock = asyncio.Lock()

    @property
    def address(self) -> str:
        return self.account.address

    async def mint_payment_request(self, amount_minor_units: int, description: str) -> PaymentRequest:
        if isinstance(amount_minor_units, bool) or not isinstance(amount_minor_units, int) or amount_minor_units <= 0:
            raise UpstreamError(
                "Payment amount must be a positive integer number of minor units",
                details={"amount_minor_units": amount_minor_units},
            )

        now = int(time.time())
        token = encode_token({
            "sub": "payment-request",
            "jti": uuid.uuid4().hex,
            "amount": amount_minor_units,
            "currency": CURRENCY,
            "description": description,
            "payTo": self.account.address,
            "iat": now,
            "exp": now + self.request_ttl,
        }, self.account)

        log.transaction("Payment request minted", {
            "Amount": f"${amount_minor_units / 100:.2f}",
            "Description": description,
        })
        return PaymentRequest(token=token, amount_minor_units=amount_minor_units, description=description)

    async def execute_payment(self, token: str) -> Receipt:
        try:
            request = verify_token(token)
        except TokenError as e:
            raise UpstreamError("Invalid payment request token", details=str(e)) from e

        if request.get("sub") != "payment-request":
            raise UpstreamError("Token is not a payment request", details={"sub": request.get("sub")})
        if self.trusted_issuers is not None and str(request.get("iss", "")).lower() not in self.trusted_issuers:
            raise UpstreamError("Payment request issuer is not trusted", details={"iss": request.get("iss")})
        if int(request.get("exp", 0)) < time.time():
            raise UpstreamError("Payment request expired", details={"exp": request.get("exp")})

        async with self._lock:
            if token in self._paid:
                raise UpstreamError(
                    "Payment request already paid",
                    details={"receipt": self._paid[token].token},
                )

            settlement = await self._settle(request)

            receipt_token = encode_token({
                "sub": "payment-receipt",
                "jti": uuid.uuid4().hex,
                "iat": int(time.time()),
                "vc": {
                    "type": ["VerifiableCredential", "PaymentReceiptCredential"],
                    "credentialSubject": {
                        "paymentToken": token,
                        "amount": request.get("amount"),
                        "currency": request.get("currency", CURRENCY),
                        "payer": self.account.address,
                        "payee": request.get("payTo"),
                        **settlement,
                    },
                },
            }, self.account)

            receipt = Receipt(
                token=receipt_token,
                payment_token=token,
                tx_hash=settlement.get("txHash"),
                explorer_url=settlement.get("explorerUrl"),
            )
            self._paid[token] = receipt

        log.success("Payment successful!", f"${int(request.get('amount', 0)) / 100:.2f} to {request.get('payTo')}")
        return receipt

    async def _settle(self, request: dict) -> dict:
        """Move funds for a verified request. Returns extra receipt claims."""
        return {}


class WalletGateway(LocalGateway):
    """LocalGateway that also pays on-chain in USDC."""

    def __init__(self, wallet: "Wallet", **kwargs):
        super().__init__(account=wallet.account, **kwargs)
        self.wallet = wallet

    async def _settle(self, request: dict) -> dict:
        pay_to = request.get("payTo")
        if not pay_to:
            raise UpstreamError("Payment request has no payTo address")

        result = await self.wallet.transfer(to=pay_to, amount_minor_units=int(request["amount"]))
        if not result.success:
            raise UpstreamError(
                "On-chain settlement failed",
                details={"error": result.error, "tx_hash": result.tx_hash},
            )
        return {
            "txHash": result.tx_hash,
            "network": self.wallet.network,
            "explorerUrl": result.explorer_url,
        }


def create_gateway(settings: "Settings", role: str) -> PaymentGateway:
    """Build the configured gateway for the buyer or seller role."""
    if role not in ("buyer", "seller"):
        raise ValueError(f"Unknown role: {role}")
    key = settings.buyer_private_key if role == "buyer" else settings.seller_private_key

    if settings.settlement == "onchain":
        from .wallet import Wallet

        if not key:
            raise ConfigError(f"{role.upper()}_PRIVATE_KEY is required for on-chain settlement")
        return WalletGateway(Wallet.from_private_key(key, settings.network))

    if key:
        if not key.startswith("0x"):
            key = "0x" + key
        return LocalGateway(Account.from_key(key))
    return LocalGateway()
