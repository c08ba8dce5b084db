"""
Helpers for wiring a buyer to the in-process seller app.
"""

from decimal import Decimal

import httpx

from datamarket.buyer import Buyer
from datamarket.payments.gateway import LocalGateway
from datamarket.strategy import BuyerStrategy


SELLER_URL = "http://seller.test"


def make_buyer(http: httpx.AsyncClient, gateway: LocalGateway, budget: str = "10", **kwargs) -> Buyer:
    """Buyer whose HTTP client is already bound to the seller transport."""
    return Buyer(
        seller_url=SELLER_URL,
        strategy=BuyerStrategy(budget=Decimal(budget)),
        gateway=gateway,
        _http=http,
        **kwargs,
    )
