"""Datamarket Seller - marketplace seller agent.

Owns the catalogue, the handshake state and the payment boundary, and
exposes the handshake three ways:

- Python: find / negotiate / request_payment / release / redeem
- JSON-RPC 2.0: market/discover, market/find, market/negotiate,
  market/payment_request, market/release
- Natural language: chat(message), an LLM loop over the same operations

Example:
    from datamarket import Settings, create_seller

    seller = create_seller(Settings.from_env())

    evaluation = await seller.negotiate("s1", "housing_inventory_2024", 7)
    if not evaluation.accepted:
        evaluation = await seller.negotiate("s1", "housing_inventory_2024", evaluation.counter_offer)

    request = await seller.request_payment("housing_inventory_2024", evaluation.final_price, "s1")
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any, Optional

from .catalog import Catalog, Resource
from .config import Settings
from .errors import InvalidParamsError, MarketError
from .llm import Tool, run_tools
from .log import log
from .negotiation import CompletedTransaction, Evaluation, OfferEvaluator, SessionStore
from .payments.gateway import PaymentGateway, PaymentRequest, create_gateway
from .settlement import (
    Artifact,
    ArtifactResolver,
    PaymentRequestIssuer,
    TokenResolver,
    create_resolver,
    redeem,
)


SELLER_PROMPT = """You are a marketplace seller agent with a catalogue of data resources.

Your available resources are:
{catalogue}

WORKFLOW:
1. When someone requests data: Use find_matching_resource to identify which resource matches their needs
2. Present the resource with its list price and ask if they want to proceed
3. If they negotiate: Use negotiate_price with a stable negotiation_id for the conversation. You can go down to minimum price but no lower
4. Once price is agreed: Use create_payment_request to generate a payment request URL
5. CRITICAL - When buyer confirms payment with a receipt:
   a. Use provide_access_url with {evidence}
   b. Share the resulting download URL with the buyer

DO NOT apologize for technical difficulties or say there's an issue with validation.

Minimum prices: {minimums}

Payment request URL should be provided between <payment_request_url> and </payment_request_url> markers.
Receipt URL should be provided between <receipt_url> and </receipt_url> markers."""


def _require(params: dict, *names: str) -> list:
    missing = [n for n in names if params.get(n) in (None, "")]
    if missing:
        raise InvalidParamsError(f"Missing params: {', '.join(missing)}")
    return [params[n] for n in names]


@dataclass
class SellerAgent:
    """Marketplace seller with handshake state and an LLM chat surface."""

    catalog: Catalog
    gateway: PaymentGateway
    settings: Settings = field(default_factory=Settings)
    store: SessionStore = field(default_factory=SessionStore)
    resolver: Optional[ArtifactResolver] = None
    name: str = "Agent B (Marketplace Seller)"

    # Internal
    _llm_client: Any = None

    def __post_init__(self):
        self.evaluator = OfferEvaluator(self.catalog, self.store)
        self.issuer = PaymentRequestIssuer(self.catalog, self.store, self.gateway)
        if self.resolver is None:
            self.resolver = create_resolver(
                self.settings.resolver,
                self.store,
                download_base_url=self.settings.download_base_url,
                ttl=timedelta(hours=self.settings.artifact_ttl_hours),
            )

    # ─── Handshake ────────────────────────────────────────────────────────────

    def find(self, query: str) -> Optional[Resource]:
        log.process("Searching catalogue", {"query": query})
        resource = self.catalog.find(query)
        if resource:
            log.success("Found matching resource", resource.name)
        return resource

    async def negotiate(self, session_id: str, resource_id: str, offer) -> Evaluation:
        return await self.evaluator.evaluate(session_id, resource_id, offer)

    async def request_payment(self, resource_id: str, price, session_id: str) -> PaymentRequest:
        return await self.issuer.issue(resource_id, price, session_id)

    async def release(self, **evidence) -> Artifact:
        """Release the download artifact for a payment.

        Evidence is `payment_token` + `receipt_id` for the token resolver,
        `receipt` (URL or receipt token) for the receipt resolver.
        """
        return await self.resolver.resolve(**evidence)

    def redeem(self, resource_id: str, access_key: str) -> CompletedTransaction:
        return redeem(self.store, resource_id, access_key, now=self.resolver.clock())

    def discover(self) -> dict:
        return {
            "agent": {"name": self.name},
            "resources": self.catalog.to_public_dict(),
            "payment": {
                "currency": "USD",
                "settlement": self.settings.settlement,
                "resolver": self.settings.resolver,
            },
        }

    # ─── JSON-RPC ─────────────────────────────────────────────────────────────

    async def handle(self, request: Any) -> dict:
        """Handle a JSON-RPC 2.0 market request."""
        if not isinstance(request, dict) or not isinstance(request.get("method"), str):
            return self._make_error(None, -32600, "Invalid request")

        method = request["method"]
        params = request.get("params") or {}
        request_id = request.get("id")

        if not isinstance(params, dict):
            return self._make_error(request_id, -32602, "params must be an object")

        try:
            if method == "market/discover":
                return self._make_response(request_id, self.discover())

            elif method == "market/find":
                (query,) = _require(params, "query")
                return self._make_response(request_id, self._find_result(str(query)))

            elif method == "market/negotiate":
                resource_id, offer = _require(params, "resource_id", "offer")
                session_id = params.get("session_id") or uuid.uuid4().hex
                evaluation = await self.negotiate(session_id, resource_id, offer)
                return self._make_response(request_id, {**evaluation.to_dict(), "session_id": session_id})

            elif method == "market/payment_request":
                session_id, resource_id, price = _require(params, "session_id", "resource_id", "price")
                payment = await self.request_payment(resource_id, price, session_id)
                return self._make_response(request_id, self._payment_result(resource_id, payment))

            elif method == "market/release":
                artifact = await self.release(**params)
                return self._make_response(request_id, artifact.to_dict())

            else:
                return self._make_error(request_id, -32601, f"Method not found: {method}")

        except MarketError as e:
            log.warn(f"{method} failed", e.message)
            return self._make_error(request_id, e.code, e.message, e.details)
        except Exception as e:
            log.error(f"{method} crashed", e)
            return self._make_error(request_id, -32603, str(e))

    def _make_response(self, request_id: Any, result: dict) -> dict:
        return {
            "jsonrpc": "2.0",
            "id": request_id,
            "result": result,
        }

    def _make_error(self, request_id: Any, code: int, message: str, data: Any = None) -> dict:
        error = {"code": code, "message": message}
        if data is not None:
            error["data"] = data
        return {
            "jsonrpc": "2.0",
            "id": request_id,
            "error": error,
        }

    def _find_result(self, query: str) -> dict:
        resource = self.find(query)
        if resource:
            return {"found": True, "resource": resource.to_public_dict()}
        return {"found": False, "message": "No matching resources found in our catalogue"}

    def _payment_result(self, resource_id: str, request: PaymentRequest) -> dict:
        resource = self.catalog.get(resource_id)
        amount = request.amount_minor_units / 100
        return {
            **request.to_dict(),
            "amount": amount,
            "resource": {"name": resource.name, "format": resource.format, "size": resource.size},
            "instruction": (
                f"Please pay ${amount:.2f} using this payment request URL to receive access to the data"
            ),
        }

    # ─── Chat ─────────────────────────────────────────────────────────────────

    def system_prompt(self) -> str:
        if isinstance(self.resolver, TokenResolver):
            evidence = "the payment token you issued and the receipt URL the buyer provided"
        else:
            evidence = "the receipt URL the buyer provided"
        minimums = ", ".join(f"{r.name} ${r.minimum_price}" for r in self.catalog)
        return SELLER_PROMPT.format(catalogue=self.catalog.describe(), evidence=evidence, minimums=minimums)

    def tools(self) -> list[Tool]:
        async def find_matching_resource(args: dict) -> dict:
            return self._find_result(str(args.get("query", "")))

        async def negotiate_price(args: dict) -> dict:
            resource_id, offer, session_id = _require(args, "resource_id", "offered_price", "negotiation_id")
            evaluation = await self.negotiate(str(session_id), resource_id, offer)
            return evaluation.to_dict()

        async def create_payment_request(args: dict) -> dict:
            resource_id, price, session_id = _require(args, "resource_id", "agreed_price", "negotiation_id")
            request = await self.request_payment(resource_id, price, str(session_id))
            return self._payment_result(resource_id, request)

        async def provide_access_url(args: dict) -> dict:
            artifact = await self.release(**args)
            return artifact.to_dict()

        if isinstance(self.resolver, TokenResolver):
            release_params = {
                "type": "object",
                "properties": {
                    "payment_token": {"type": "string", "description": "The payment token from the payment request"},
                    "receipt_id": {"type": "string", "description": "The receipt URL the buyer provided"},
                },
                "required": ["payment_token", "receipt_id"],
            }
        else:
            release_params = {
                "type": "object",
                "properties": {
                    "receipt": {"type": "string", "description": "The receipt URL the buyer provided"},
                },
                "required": ["receipt"],
            }

        return [
            Tool(
                name="find_matching_resource",
                description="Find a resource that matches the user's research needs",
                parameters={
                    "type": "object",
                    "properties": {"query": {"type": "string", "description": "What the user is looking for"}},
                    "required": ["query"],
                },
                handler=find_matching_resource,
            ),
            Tool(
                name="negotiate_price",
                description="Handle price negotiation for a resource",
                parameters={
                    "type": "object",
                    "properties": {
                        "resource_id": {"type": "string", "description": "ID of the resource being negotiated"},
                        "offered_price": {"type": "number", "description": "Price offered by the buyer"},
                        "negotiation_id": {"type": "string", "description": "Unique ID for this negotiation session"},
                    },
                    "required": ["resource_id", "offered_price", "negotiation_id"],
                },
                handler=negotiate_price,
            ),
            Tool(
                name="create_payment_request",
                description="Create a payment request for agreed data purchase",
                parameters={
                    "type": "object",
                    "properties": {
                        "resource_id": {"type": "string", "description": "ID of the resource being purchased"},
                        "agreed_price": {"type": "number", "description": "Final agreed price"},
                        "negotiation_id": {"type": "string", "description": "Negotiation session ID"},
                    },
                    "required": ["resource_id", "agreed_price", "negotiation_id"],
                },
                handler=create_payment_request,
            ),
            Tool(
                name="provide_access_url",
                description="Generates direct download URL for confirmed payment",
                parameters=release_params,
                handler=provide_access_url,
            ),
        ]

    async def chat(self, message: str) -> str:
        return await run_tools(
            model=self.settings.model,
            system=self.system_prompt(),
            prompt=message,
            tools=self.tools(),
            max_steps=self.settings.seller_max_steps,
            client=self._llm_client,
        )


def create_seller(
    settings: Optional[Settings] = None,
    catalog: Optional[Catalog] = None,
    gateway: Optional[PaymentGateway] = None,
    llm_client: Any = None,
) -> SellerAgent:
    """Create a seller from settings.

    Args:
        settings: Process settings (environment if omitted)
        catalog: Catalogue (DATAMARKET_CATALOG file or the default one)
        gateway: Payment gateway (built from settings if omitted)
        llm_client: Async Anthropic/OpenAI client for chat

    Example:
        seller = create_seller(Settings(resolver="token"))
        app = create_app(seller)
    """
    settings = settings or Settings.from_env()
    if catalog is None:
        if settings.catalog_path:
            catalog = Catalog.from_yaml(settings.catalog_path)
        else:
            catalog = Catalog.default(settings.min_prices)

    seller = SellerAgent(
        catalog=catalog,
        gateway=gateway or create_gateway(settings, "seller"),
        settings=settings,
    )
    seller._llm_client = llm_client
    return seller
