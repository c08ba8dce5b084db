"""Datamarket Buyer - budget-constrained buyer agent.

Two ways to buy:

- purchase(): deterministic handshake over the seller's JSON-RPC endpoint,
  no LLM involved
- chat(): LLM loop that talks to the seller's /chat endpoint in natural
  language and pays with its own gateway

Example:
    from datamarket import Settings, create_buyer

    buyer = create_buyer(Settings(buyer_budget=Decimal("10")))

    async with buyer:
        result = await buyer.purchase(query="housing market inventory")

        if result.success:
            print(f"Paid ${result.final_price}")
            print(result.artifact["download_url"])
"""

from __future__ import annotations

import random
import uuid
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Optional

import httpx

from .client import Client
from .config import DEFAULT_MODEL, Settings
from .errors import InvalidParamsError, MarketError, UnknownResourceError, UpstreamError
from .llm import Tool, run_tools
from .log import log
from .payments.gateway import PaymentGateway, Receipt, create_gateway
from .payments.tokens import decode_payload
from .strategy import BuyerStrategy


RESEARCH_TOPICS = [
    "housing market inventory",
    "ticker prices on S&P 500",
    "papers about LLMs",
]

BUYER_PROMPT = """You are a marketplace buyer agent looking for data resources.

You are currently looking for: {topic}
Your budget is: ${budget}

When you find a suitable resource:
1. Express interest in the resource
2. If the price is over your budget, negotiate by offering something reasonable but under budget
3. Be willing to meet in the middle during negotiations
4. Once you agree on a price, pay using the payment request URL provided
5. Give the marketplace seller the receipt URL
6. You'll receive an access URL for the data

Negotiation strategy:
- Start by offering about 80-85% of the list price if it's over budget
- Be willing to go up to your budget limit
- If they counter-offer at or below your budget, accept it

IMPORTANT: Always use the exact payment request URL provided by the marketplace seller for payment.
After payment, only provide the receipt URL between <receipt_url> and </receipt_url> markers."""


@dataclass
class PurchaseResult:
    """Result of a negotiation and payment."""
    success: bool
    resource_id: Optional[str] = None
    final_price: Optional[Decimal] = None
    rounds: int = 0
    history: list[dict] = field(default_factory=list)
    error: Optional[str] = None
    error_code: Optional[int] = None

    # Payment fields
    payment_token: Optional[str] = None
    receipt: Optional[Receipt] = None
    artifact: Optional[dict] = None


@dataclass
class Buyer:
    """Marketplace buyer with a budget, an offer strategy and a payment gateway."""

    seller_url: str
    strategy: BuyerStrategy
    gateway: PaymentGateway
    model: str = DEFAULT_MODEL
    max_steps: int = 12
    decode_jwt: bool = True
    name: str = "Agent A (Marketplace Buyer)"

    # Internal
    _http: Optional[httpx.AsyncClient] = None
    _owns_http: bool = False
    _llm_client: Any = None

    async def __aenter__(self):
        if self._http is None:
            self._http = httpx.AsyncClient(timeout=60.0)
            self._owns_http = True
        return self

    async def __aexit__(self, *args):
        if self._http and self._owns_http:
            await self._http.aclose()
            self._http = None

    @property
    def budget(self) -> Decimal:
        return self.strategy.budget

    @property
    def client(self) -> Client:
        return Client(self.seller_url, _http=self._http)

    async def purchase(
        self,
        resource_id: Optional[str] = None,
        query: Optional[str] = None,
        session_id: Optional[str] = None,
    ) -> PurchaseResult:
        """Negotiate, pay and collect the artifact for one resource.

        Args:
            resource_id: Catalogue id to buy
            query: Free-text request, used when resource_id is not given
            session_id: Negotiation session id (random if omitted)

        Returns:
            PurchaseResult; market failures are reported in `error`, not raised
        """
        session_id = session_id or uuid.uuid4().hex
        history: list[dict] = []
        round_num = 0
        client = self.client

        try:
            resource = await self._locate(client, resource_id, query)
            resource_id = resource["id"]
            list_price = Decimal(str(resource["list_price"]))
            offer = self.strategy.opening_offer(list_price)

            log.agent("Opening negotiation", f"{resource['name']} - list ${list_price}, budget ${self.budget}")

            while True:
                round_num += 1
                history.append({"party": "buyer", "amount": offer, "round": round_num})
                result = await client.negotiate(session_id, resource_id, offer)

                if result["accepted"]:
                    price = Decimal(str(result["final_price"]))
                    history.append({"party": "seller", "amount": price, "round": round_num, "action": "accept"})
                    log.success(f"Seller accepted ${price}")
                    break

                counter = Decimal(str(result["counter_offer"]))
                history.append({"party": "seller", "amount": counter, "round": round_num, "action": "counter"})
                log.market("Counter-offer", {"Round": round_num, "Offered": f"${offer}", "Counter": f"${counter}"})

                decision = self.strategy.decide(offer, counter, round_num)
                if decision.action == "accept":
                    price = counter
                    log.agent("Accepting counter", decision.reason)
                    break
                if decision.action == "counter":
                    offer = decision.price
                    log.agent("Raising offer", decision.reason)
                    continue

                log.warn("Walking away", decision.reason)
                return PurchaseResult(
                    success=False,
                    resource_id=resource_id,
                    rounds=round_num,
                    history=history,
                    error=decision.reason,
                )

            payment = await client.request_payment(session_id, resource_id, price)
            token = await self._payment_token(payment["payment_request_url"])
            receipt = await self.gateway.execute_payment(token)

            artifact = await client.release(
                payment_token=token,
                receipt_id=receipt.receipt_id,
                receipt=receipt.receipt_id,
            )

        except MarketError as e:
            log.error("Purchase failed", e.message)
            return PurchaseResult(
                success=False,
                resource_id=resource_id,
                rounds=round_num,
                history=history,
                error=e.message,
                error_code=e.code,
            )

        return PurchaseResult(
            success=True,
            resource_id=resource_id,
            final_price=price,
            rounds=round_num,
            history=history,
            payment_token=token,
            receipt=receipt,
            artifact=artifact,
        )

    async def _locate(self, client: Client, resource_id: Optional[str], query: Optional[str]) -> dict:
        if resource_id:
            listing = await client.discover()
            for resource in listing.get("resources", []):
                if resource["id"] == resource_id:
                    return resource
            raise UnknownResourceError(resource_id)

        if not query:
            raise InvalidParamsError("Either resource_id or query is required")
        found = await client.find(query)
        if not found.get("found"):
            raise InvalidParamsError(found.get("message", "No matching resource"))
        return found["resource"]

    async def _payment_token(self, payment_request: str) -> str:
        """Resolve a payment request URL (or the raw token) to the token."""
        payment_request = payment_request.strip()
        if not payment_request.startswith(("http://", "https://")):
            return payment_request
        try:
            response = await self._http.get(payment_request)
            response.raise_for_status()
        except httpx.HTTPError as e:
            raise UpstreamError("Could not fetch payment request", details=str(e)) from e
        return response.text.strip()

    async def call_seller(self, message: str) -> str:
        log.agent("Calling marketplace seller", message)
        reply = await self.client.chat(message)
        log.incoming("Marketplace seller response", reply, preview=True)
        return reply

    async def execute_payment(self, payment_request: str) -> Receipt:
        token = await self._payment_token(payment_request)
        log.transaction("Executing payment", {"url": payment_request[:60]})
        if self.decode_jwt:
            payload = decode_payload(token)
            if payload:
                log.debug("Payment token being executed", payload)
            else:
                log.warn("Could not decode payment token")
        return await self.gateway.execute_payment(token)

    # ─── Chat ─────────────────────────────────────────────────────────────────

    def system_prompt(self, topic: Optional[str] = None) -> str:
        return BUYER_PROMPT.format(topic=topic or random.choice(RESEARCH_TOPICS), budget=self.budget)

    def tools(self) -> list[Tool]:
        async def call_seller(args: dict) -> dict:
            message = args.get("message")
            if not message:
                raise InvalidParamsError("message is required")
            return {"text": await self.call_seller(str(message))}

        async def execute_payment(args: dict) -> dict:
            payment_request = args.get("payment_request_url")
            if not payment_request:
                raise InvalidParamsError("payment_request_url is required")
            receipt = await self.execute_payment(str(payment_request))
            return {
                "success": True,
                "receipt_url": receipt.receipt_id,
                "message": "Payment completed successfully",
            }

        return [
            Tool(
                name="call_seller",
                description="Call the marketplace seller agent to request data or negotiate",
                parameters={
                    "type": "object",
                    "properties": {"message": {"type": "string"}},
                    "required": ["message"],
                },
                handler=call_seller,
            ),
            Tool(
                name="execute_payment",
                description="Execute payment for data purchase",
                parameters={
                    "type": "object",
                    "properties": {
                        "payment_request_url": {
                            "type": "string",
                            "description": "The payment request URL received from the marketplace seller",
                        },
                    },
                    "required": ["payment_request_url"],
                },
                handler=execute_payment,
            ),
        ]

    async def chat(self, message: str) -> str:
        return await run_tools(
            model=self.model,
            system=self.system_prompt(),
            prompt=message,
            tools=self.tools(),
            max_steps=self.max_steps,
            client=self._llm_client,
        )


def create_buyer(
    settings: Optional[Settings] = None,
    gateway: Optional[PaymentGateway] = None,
    seller_url: Optional[str] = None,
    llm_client: Any = None,
) -> Buyer:
    """Create a buyer from settings.

    Args:
        settings: Process settings (environment if omitted)
        gateway: Payment gateway (built from settings if omitted)
        seller_url: Seller base URL (settings.seller_url if omitted)
        llm_client: Async Anthropic/OpenAI client for chat

    Example:
        async with create_buyer(Settings(buyer_budget=Decimal("12"))) as buyer:
            result = await buyer.purchase(resource_id="spy_ticker_365d")
    """
    settings = settings or Settings.from_env()
    return Buyer(
        seller_url=seller_url or settings.seller_url,
        strategy=BuyerStrategy(
            budget=settings.buyer_budget,
            opening_pct=settings.opening_offer_pct,
            max_rounds=settings.buyer_max_rounds,
        ),
        gateway=gateway or create_gateway(settings, "buyer"),
        model=settings.model,
        max_steps=settings.buyer_max_steps,
        decode_jwt=settings.decode_jwt,
        _llm_client=llm_client,
    )
