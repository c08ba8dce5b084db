"""Datamarket errors.

Every failure the handshake can report is a MarketError with a JSON-RPC
error code, so the same exception renders as an RPC error, a tool result
for the LLM, or a PurchaseResult error without extra mapping.

Example:
    try:
        seller.release(payment_token=token, receipt_id=receipt)
    except AlreadyCompletedError as e:
        print(e.to_dict())   # {"code": -32011, "message": "..."}
"""

from typing import Any


class MarketError(Exception):
    """Base class for structured marketplace errors."""

    code: int = -32603

    def __init__(self, message: str, details: Any = None):
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self) -> dict:
        data = {"code": self.code, "message": self.message}
        if self.details is not None:
            data["data"] = self.details
        return data


class InvalidParamsError(MarketError):
    code = -32602


class UnknownResourceError(MarketError):
    code = -32004

    def __init__(self, resource_id: str):
        super().__init__(f"Resource not found: {resource_id}")
        self.resource_id = resource_id


class InvalidOfferError(MarketError):
    code = -32005


class PriceBelowMinimumError(MarketError):
    code = -32006


class TokenNotFoundError(MarketError):
    code = -32010

    def __init__(self, message: str = "Payment token not found or invalid"):
        super().__init__(message)


class AlreadyCompletedError(MarketError):
    code = -32011

    def __init__(self, message: str = "This transaction has already been completed"):
        super().__init__(message)


class InvalidReceiptError(MarketError):
    code = -32012


class InvalidAccessKeyError(MarketError):
    code = -32013


class ArtifactExpiredError(MarketError):
    code = -32014


class UpstreamError(MarketError):
    """A payment SDK or peer agent call failed.

    `details` carries whatever diagnostic payload the upstream exposed
    (response body, status code, original exception text).
    """
    code = -32020


class ConfigError(ValueError):
    """Invalid environment configuration."""
