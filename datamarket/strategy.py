"""Buyer offer strategy.

Bounded-rationality heuristic for a budget-constrained buyer:
- list price within budget: offer list price outright
- otherwise: open at floor(list * opening_pct), never above budget
- any counter at or under budget: accept
- counter over budget: raise to the full budget once, then walk away
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import ROUND_FLOOR, Decimal
from typing import Literal, Optional

from .errors import ConfigError


@dataclass
class Decision:
    """Buyer response to a seller counter-offer."""
    action: Literal["accept", "counter", "reject"]
    price: Optional[Decimal] = None
    reason: Optional[str] = None


@dataclass
class BuyerStrategy:
    """Opening offer and counter handling for a fixed budget."""

    budget: Decimal
    opening_pct: Decimal = Decimal("0.80")
    max_rounds: int = 3

    def __post_init__(self):
        self.budget = Decimal(str(self.budget))
        self.opening_pct = Decimal(str(self.opening_pct))
        if self.budget <= 0:
            raise ConfigError("Budget must be positive")
        if self.max_rounds < 1:
            raise ConfigError("max_rounds must be at least 1")

    def opening_offer(self, list_price) -> Decimal:
        list_price = Decimal(str(list_price))
        if list_price <= self.budget:
            return list_price
        opening = (list_price * self.opening_pct).to_integral_value(rounding=ROUND_FLOOR)
        return min(opening, self.budget)

    def accepts(self, counter) -> bool:
        return Decimal(str(counter)) <= self.budget

    def decide(self, my_offer, counter, round_num: int) -> Decision:
        """Decide how to answer a counter-offer.

        Args:
            my_offer: The buyer's last offer
            counter: The seller's counter-offer
            round_num: Rounds played so far (1-based)
        """
        my_offer = Decimal(str(my_offer))
        counter = Decimal(str(counter))

        if self.accepts(counter):
            return Decision(action="accept", price=counter, reason="That works for me. Deal!")

        if my_offer < self.budget and round_num < self.max_rounds:
            return Decision(
                action="counter",
                price=self.budget,
                reason=f"${self.budget} is the most I can spend.",
            )

        return Decision(
            action="reject",
            reason=f"No deal: ${counter} exceeds my budget of ${self.budget}.",
        )
