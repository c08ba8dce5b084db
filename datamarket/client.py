"""Datamarket Client - talk to running marketplace agents.

Example:
    from datamarket import Client

    async with Client("http://localhost:7577") as client:
        listing = await client.discover()
        result = await client.negotiate("s1", "housing_inventory_2024", 8)

        reply = await client.chat("Start looking for data resources", url="http://localhost:7576")
"""

from __future__ import annotations

import asyncio
import uuid
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Optional

import httpx

from .errors import MarketError, UpstreamError
from .log import log


class RpcError(MarketError):
    """Structured JSON-RPC error returned by the seller."""

    def __init__(self, code: int, message: str, details: Any = None):
        super().__init__(message, details)
        self.code = code


def _amount(value) -> float:
    return float(value) if isinstance(value, Decimal) else value


@dataclass
class Client:
    """Seller JSON-RPC client plus chat and readiness checks."""

    seller_url: str
    timeout: float = 60.0
    _http: Optional[httpx.AsyncClient] = None
    _owns_http: bool = False

    async def __aenter__(self):
        if self._http is None:
            self._http = httpx.AsyncClient(timeout=self.timeout)
            self._owns_http = True
        return self

    async def __aexit__(self, *args):
        if self._http and self._owns_http:
            await self._http.aclose()
            self._http = None

    async def _post(self, url: str, payload: dict) -> httpx.Response:
        try:
            response = await self._http.post(url, json=payload)
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            raise UpstreamError(
                f"{url} returned {e.response.status_code}",
                details={"status": e.response.status_code, "body": e.response.text[:500]},
            ) from e
        except httpx.HTTPError as e:
            raise UpstreamError(f"Request to {url} failed", details=str(e)) from e
        return response

    async def rpc(self, method: str, params: Optional[dict] = None) -> dict:
        """Call a seller method.

        Raises:
            RpcError: If the seller answered with a JSON-RPC error
            UpstreamError: If the seller could not be reached
        """
        response = await self._post(f"{self.seller_url}/rpc", {
            "jsonrpc": "2.0",
            "id": str(uuid.uuid4()),
            "method": method,
            "params": params or {},
        })
        body = response.json()

        if "error" in body:
            error = body["error"]
            raise RpcError(error.get("code", -32603), error.get("message", "Unknown error"), error.get("data"))
        return body.get("result", {})

    async def discover(self) -> dict:
        return await self.rpc("market/discover")

    async def find(self, query: str) -> dict:
        return await self.rpc("market/find", {"query": query})

    async def negotiate(self, session_id: str, resource_id: str, offer) -> dict:
        return await self.rpc("market/negotiate", {
            "session_id": session_id,
            "resource_id": resource_id,
            "offer": _amount(offer),
        })

    async def request_payment(self, session_id: str, resource_id: str, price) -> dict:
        return await self.rpc("market/payment_request", {
            "session_id": session_id,
            "resource_id": resource_id,
            "price": _amount(price),
        })

    async def release(self, **evidence) -> dict:
        return await self.rpc("market/release", evidence)

    async def chat(self, message: str, url: Optional[str] = None) -> str:
        """Send a chat message to an agent (the seller unless url is given)."""
        response = await self._post(f"{url or self.seller_url}/chat", {"message": message})
        return response.json()["text"]

    async def is_healthy(self, url: str, timeout: float = 2.0) -> bool:
        try:
            response = await self._http.get(f"{url}/health", timeout=timeout)
        except httpx.HTTPError:
            return False
        return response.status_code == 200

    async def wait_for_agents(
        self,
        urls: dict[str, str],
        retries: int = 10,
        delay: float = 1.0,
        timeout: float = 2.0,
    ) -> bool:
        """Poll agents until all are healthy.

        Args:
            urls: Agent name -> base URL
            retries: Maximum polls
            delay: Seconds between polls
            timeout: Per-request timeout

        Returns:
            True once every agent answered, False after the last retry
        """
        log.info("Checking if agents are running...")

        for attempt in range(retries):
            status = {name: await self.is_healthy(url, timeout) for name, url in urls.items()}
            if all(status.values()):
                log.success("All agents are live and ready!")
                return True

            if attempt == 0:
                log.warn("Waiting for agents to be ready...", "Start them with: datamarket serve")
            marks = ", ".join(f"{name}: {'✓' if ok else '✗'}" for name, ok in status.items())
            log.info(f"Retry {attempt + 1}/{retries}", marks)

            if attempt < retries - 1:
                await asyncio.sleep(delay)

        return False
