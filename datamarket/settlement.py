"""Datamarket settlement - seller side of the payment handshake.

Flow:
    1. Price agreed -> PaymentRequestIssuer mints a payment token
    2. Buyer pays through its own gateway -> receipt
    3. ArtifactResolver correlates the evidence with a live session
    4. Download artifact released exactly once per payment token

Two resolvers share the release logic and differ only in the evidence
they accept:
- TokenResolver: the payment token and a receipt id, supplied directly
- ReceiptResolver: a receipt URL (fetched) or receipt token (decoded)
  carrying the payment token in vc.credentialSubject.paymentToken

Example:
    issuer = PaymentRequestIssuer(catalog, store, gateway)
    request = await issuer.issue("housing_inventory_2024", 8, session_id="s1")

    resolver = ReceiptResolver(store, download_base_url="https://data.example.com")
    artifact = await resolver.resolve(receipt=receipt.token)
"""

from __future__ import annotations

import secrets
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from decimal import ROUND_HALF_UP, Decimal
from typing import Callable, Optional

import httpx

from .catalog import Catalog, Resource
from .errors import (
    AlreadyCompletedError,
    ArtifactExpiredError,
    InvalidAccessKeyError,
    InvalidParamsError,
    InvalidReceiptError,
    MarketError,
    PriceBelowMinimumError,
    TokenNotFoundError,
    UpstreamError,
)
from .log import log
from .negotiation import CompletedTransaction, SessionStore, to_price
from .payments.gateway import PaymentGateway, PaymentRequest
from .payments.tokens import receipt_payment_token


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class Artifact:
    """Download locator and access key released after payment."""
    resource: Resource
    download_url: str
    access_key: str
    issued_at: datetime
    expires_at: datetime
    payment_token: str
    receipt_id: str
    final_price: Decimal

    def to_dict(self) -> dict:
        return {
            "success": True,
            "download_url": self.download_url,
            "resource": {
                "id": self.resource.id,
                "name": self.resource.name,
                "format": self.resource.format,
                "size": self.resource.size,
            },
            "access_details": {
                "url": self.download_url,
                "valid_until": self.expires_at.isoformat(),
                "access_key": self.access_key,
            },
            "final_price": float(self.final_price),
            "receipt_url": self.receipt_id,
            "message": "Payment confirmed. Here is your direct download URL for the data.",
        }


class PaymentRequestIssuer:
    """Mints payment requests for agreed prices and binds them to sessions."""

    def __init__(self, catalog: Catalog, store: SessionStore, gateway: PaymentGateway):
        self.catalog = catalog
        self.store = store
        self.gateway = gateway

    async def issue(self, resource_id: str, price, session_id: str) -> PaymentRequest:
        """Mint a payment request for `price * 100` minor units.

        Raises:
            UnknownResourceError: If resource_id is not in the catalogue
            PriceBelowMinimumError: If price is under the resource floor
            UpstreamError: If the payment gateway fails
        """
        resource = self.catalog.get(resource_id)
        price = to_price(price)
        if price < resource.minimum_price:
            raise PriceBelowMinimumError(
                f"Agreed price ${price} is below the minimum of ${resource.minimum_price} for {resource.name}"
            )

        amount = int((price * 100).to_integral_value(rounding=ROUND_HALF_UP))
        log.transaction("Creating payment request", {
            "Resource": resource.name,
            "Agreed price": f"${price}",
        })

        async with self.store.lock(session_id):
            try:
                request = await self.gateway.mint_payment_request(amount, f"Purchase: {resource.name}")
            except MarketError:
                raise
            except Exception as e:
                raise UpstreamError("Payment request failed", details=str(e)) from e

            session = self.store.get(session_id)
            if session is None or session.resource.id != resource.id:
                session = self.store.open(session_id, resource, price)
            session.agreed_price = price
            self.store.attach_token(session_id, request.token, price)
            session.log("seller", "payment_request", price)

        log.info("Payment request generated", request.url or f"{request.token[:32]}...")
        return request


class ArtifactResolver(ABC):
    """Releases a download artifact for proven payment, once per token."""

    def __init__(
        self,
        store: SessionStore,
        download_base_url: str = "https://data-provider.example.com",
        ttl: timedelta = timedelta(hours=48),
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.store = store
        self.download_base_url = download_base_url.rstrip("/")
        self.ttl = ttl
        self.clock = clock

    @abstractmethod
    async def payment_token(self, **evidence) -> tuple[str, str]:
        """Recover (payment_token, receipt_id) from the caller's evidence."""

    async def resolve(self, **evidence) -> Artifact:
        """Release the artifact for a paid session.

        Raises:
            AlreadyCompletedError: If this token was already redeemed
            TokenNotFoundError: If no live session carries the token
        """
        token, receipt_id = await self.payment_token(**evidence)

        async with self.store.release_lock:
            if self.store.completed(token):
                raise AlreadyCompletedError()

            session = self.store.session_for_token(token)
            if session is None:
                raise TokenNotFoundError()

            async with self.store.lock(session.session_id):
                # The session may have been renegotiated while we waited
                session = self.store.session_for_token(token)
                if session is None:
                    raise TokenNotFoundError()

                resource = session.resource
                access_key = secrets.token_urlsafe(32)
                download_url = f"{self.download_base_url}/download/{resource.id}?token={access_key}"
                issued_at = self.clock()
                expires_at = issued_at + self.ttl
                final_price = session.sale_price

                session.log("seller", "release", final_price)
                self.store.complete(CompletedTransaction(
                    payment_token=token,
                    session_id=session.session_id,
                    resource_id=resource.id,
                    final_price=final_price,
                    access_key=access_key,
                    download_url=download_url,
                    issued_at=issued_at,
                    expires_at=expires_at,
                ))

        log.success("Download URL generated", download_url)
        return Artifact(
            resource=resource,
            download_url=download_url,
            access_key=access_key,
            issued_at=issued_at,
            expires_at=expires_at,
            payment_token=token,
            receipt_id=receipt_id,
            final_price=final_price,
        )


class TokenResolver(ArtifactResolver):
    """Evidence is the payment token itself plus a receipt id."""

    async def payment_token(
        self,
        payment_token: Optional[str] = None,
        receipt_id: Optional[str] = None,
        **_,
    ) -> tuple[str, str]:
        if not payment_token or not receipt_id:
            raise InvalidParamsError("payment_token and receipt_id are required")
        return payment_token, receipt_id


class ReceiptResolver(ArtifactResolver):
    """Evidence is a receipt URL or receipt token embedding the payment token."""

    def __init__(self, *args, http: Optional[httpx.AsyncClient] = None, fetch_timeout: float = 10.0, **kwargs):
        super().__init__(*args, **kwargs)
        self.http = http
        self.fetch_timeout = fetch_timeout

    async def payment_token(
        self,
        receipt: Optional[str] = None,
        receipt_url: Optional[str] = None,
        **_,
    ) -> tuple[str, str]:
        evidence = (receipt or receipt_url or "").strip()
        if not evidence:
            raise InvalidParamsError("receipt is required")

        receipt_token = evidence
        if evidence.startswith(("http://", "https://")):
            receipt_token = await self._fetch(evidence)

        token = receipt_payment_token(receipt_token)
        if not token:
            raise InvalidReceiptError("Invalid receipt or missing payment token in receipt")
        return token, evidence

    async def _fetch(self, url: str) -> str:
        try:
            if self.http is not None:
                response = await self.http.get(url, timeout=self.fetch_timeout)
            else:
                async with httpx.AsyncClient(timeout=self.fetch_timeout) as client:
                    response = await client.get(url)
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            raise UpstreamError(
                "Receipt fetch failed",
                details={"status": e.response.status_code, "body": e.response.text[:500]},
            ) from e
        except httpx.HTTPError as e:
            raise UpstreamError("Receipt fetch failed", details=str(e)) from e
        return response.text.strip()


def create_resolver(kind: str, store: SessionStore, **kwargs) -> ArtifactResolver:
    """Build the resolver variant named by configuration."""
    if kind == "token":
        return TokenResolver(store, **kwargs)
    if kind == "receipt":
        return ReceiptResolver(store, **kwargs)
    raise ValueError(f"Unknown resolver: {kind}")


def redeem(
    store: SessionStore,
    resource_id: str,
    access_key: str,
    now: Optional[datetime] = None,
) -> CompletedTransaction:
    """Check a download request against the released artifacts.

    Raises:
        InvalidAccessKeyError: If the key is unknown or for another resource
        ArtifactExpiredError: If the validity window has passed
    """
    record = store.by_access_key(access_key) if access_key else None
    if record is None or record.resource_id != resource_id:
        raise InvalidAccessKeyError("Access key not recognised for this resource")

    now = now or _utcnow()
    if now >= record.expires_at:
        raise ArtifactExpiredError(f"Access expired at {record.expires_at.isoformat()}")
    return record
