"""Datamarket Negotiation Engine.

Seller-side offer evaluation over a fixed list/minimum price pair:
- offer >= list price: accept at list price (never above)
- minimum <= offer < list price: accept at the offer
- offer < minimum: counter at max(minimum, floor((offer + list) / 2))

Counters never drop below the floor and never exceed list price, so a
buyer that keeps raising its offer converges on a deal.

Features:
- Per-session state owned by an injected SessionStore
- Per-session locks so interleaved requests on one session serialize
- Hash-chained transcript for dispute resolution
"""

from __future__ import annotations

import asyncio
import hashlib
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import ROUND_FLOOR, Decimal, InvalidOperation
from enum import Enum
from typing import AsyncIterator, Optional

from .catalog import Catalog, Resource
from .errors import InvalidOfferError
from .log import log


class Outcome(Enum):
    """Result of evaluating one offer."""
    ACCEPT_LIST = "accept_list"
    ACCEPT_OFFER = "accept_offer"
    COUNTER = "counter"

    @property
    def accepted(self) -> bool:
        return self is not Outcome.COUNTER


@dataclass
class Evaluation:
    """Seller decision on a buyer offer."""
    outcome: Outcome
    offer: Decimal
    final_price: Optional[Decimal] = None
    counter_offer: Optional[Decimal] = None
    minimum_price: Optional[Decimal] = None
    round: int = 1
    message: str = ""

    @property
    def accepted(self) -> bool:
        return self.outcome.accepted

    def to_dict(self) -> dict:
        data = {
            "accepted": self.accepted,
            "outcome": self.outcome.value,
            "round": self.round,
            "message": self.message,
        }
        if self.accepted:
            data["final_price"] = float(self.final_price)
        else:
            data["counter_offer"] = float(self.counter_offer)
            data["minimum_price"] = float(self.minimum_price)
        return data


@dataclass
class TranscriptEntry:
    """Immutable record of negotiation event."""
    party: str
    action: str
    price: Optional[Decimal]
    timestamp: datetime
    hash: str


@dataclass
class NegotiationSession:
    """Live negotiation keyed by a caller-supplied session id."""
    session_id: str
    resource: Resource
    current_offer: Decimal
    round: int = 1
    payment_token: Optional[str] = None
    payment_price: Optional[Decimal] = None
    agreed_price: Optional[Decimal] = None
    transcript: list[TranscriptEntry] = field(default_factory=list)

    @property
    def final_price(self) -> Decimal:
        return self.agreed_price if self.agreed_price is not None else self.current_offer

    @property
    def sale_price(self) -> Decimal:
        """What the live payment token charges, falling back to the negotiated price."""
        return self.payment_price if self.payment_price is not None else self.final_price

    def log(self, party: str, action: str, price: Optional[Decimal]):
        """Append a transcript entry chained to the previous one."""
        prev_hash = self.transcript[-1].hash if self.transcript else "0"
        ts = datetime.now(timezone.utc)
        payload = f"{prev_hash}:{party}:{action}:{price}:{ts.isoformat()}"

        self.transcript.append(TranscriptEntry(
            party=party,
            action=action,
            price=price,
            timestamp=ts,
            hash=hashlib.sha256(payload.encode()).hexdigest()[:16],
        ))


@dataclass
class _SessionLock:
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    users: int = 0


@dataclass(frozen=True)
class CompletedTransaction:
    """Sale record keyed by payment token. Created once, never mutated."""
    payment_token: str
    session_id: str
    resource_id: str
    final_price: Decimal
    access_key: str
    download_url: str
    issued_at: datetime
    expires_at: datetime


def to_price(value) -> Decimal:
    """Coerce a caller-supplied amount into a positive finite Decimal."""
    if isinstance(value, bool):
        raise InvalidOfferError(f"Invalid price: {value!r}")
    try:
        price = Decimal(str(value))
    except (InvalidOperation, ValueError):
        raise InvalidOfferError(f"Invalid price: {value!r}") from None
    if not price.is_finite() or price <= 0:
        raise InvalidOfferError(f"Price must be a positive number, got {value!r}")
    return price


def counter_price(resource: Resource, offer: Decimal) -> Decimal:
    """Midpoint between offer and list price, floored, never below minimum."""
    midpoint = ((offer + resource.list_price) / 2).to_integral_value(rounding=ROUND_FLOOR)
    return max(resource.minimum_price, midpoint)


def evaluate_offer(resource: Resource, offer: Decimal, round: int = 1) -> Evaluation:
    """Evaluate an offer against a resource's list and minimum price."""
    if offer >= resource.list_price:
        return Evaluation(
            outcome=Outcome.ACCEPT_LIST,
            offer=offer,
            final_price=resource.list_price,
            round=round,
            message="Offer accepted at list price",
        )

    if offer >= resource.minimum_price:
        return Evaluation(
            outcome=Outcome.ACCEPT_OFFER,
            offer=offer,
            final_price=offer,
            round=round,
            message="Offer accepted",
        )

    counter = counter_price(resource, offer)
    return Evaluation(
        outcome=Outcome.COUNTER,
        offer=offer,
        counter_offer=counter,
        minimum_price=resource.minimum_price,
        round=round,
        message=(
            f"Cannot accept ${offer}. Minimum price is ${resource.minimum_price}. "
            f"Would you accept ${counter}?"
        ),
    )


class SessionStore:
    """Handshake state for one seller instance.

    Active sessions by session id, completed transactions by payment token,
    and the indexes needed to correlate tokens and access keys.
    """

    def __init__(self):
        self._sessions: dict[str, NegotiationSession] = {}
        self._token_index: dict[str, str] = {}
        self._completed: dict[str, CompletedTransaction] = {}
        self._access_keys: dict[str, str] = {}
        self._locks: dict[str, _SessionLock] = {}
        self.release_lock = asyncio.Lock()

    def __len__(self) -> int:
        return len(self._sessions)

    @asynccontextmanager
    async def lock(self, session_id: str) -> AsyncIterator[None]:
        """Serialize read-modify-write on one session.

        The lock is dropped once its last holder or waiter leaves.
        """
        entry = self._locks.setdefault(session_id, _SessionLock())
        entry.users += 1
        try:
            async with entry.lock:
                yield
        finally:
            entry.users -= 1
            if entry.users == 0:
                del self._locks[session_id]

    @property
    def active_locks(self) -> int:
        return len(self._locks)

    def get(self, session_id: str) -> Optional[NegotiationSession]:
        return self._sessions.get(session_id)

    def open(self, session_id: str, resource: Resource, offer: Decimal) -> NegotiationSession:
        """Create (or restart) a session at round 1."""
        self.discard(session_id)
        session = NegotiationSession(session_id=session_id, resource=resource, current_offer=offer)
        self._sessions[session_id] = session
        return session

    def discard(self, session_id: str) -> Optional[NegotiationSession]:
        session = self._sessions.pop(session_id, None)
        if session and session.payment_token:
            self._token_index.pop(session.payment_token, None)
        return session

    def attach_token(self, session_id: str, token: str, price: Decimal):
        """Bind a payment token minted for `price`, replacing any earlier one."""
        session = self._sessions[session_id]
        if session.payment_token:
            self._token_index.pop(session.payment_token, None)
        session.payment_token = token
        session.payment_price = price
        self._token_index[token] = session_id

    def session_for_token(self, token: str) -> Optional[NegotiationSession]:
        session_id = self._token_index.get(token)
        if session_id is None:
            return None
        return self._sessions.get(session_id)

    def completed(self, token: str) -> Optional[CompletedTransaction]:
        return self._completed.get(token)

    def complete(self, record: CompletedTransaction):
        """Record a sale and retire its session."""
        if record.payment_token in self._completed:
            raise RuntimeError(f"Transaction already recorded for token {record.payment_token[:16]}...")
        self._completed[record.payment_token] = record
        self._access_keys[record.access_key] = record.payment_token
        self.discard(record.session_id)

    def by_access_key(self, access_key: str) -> Optional[CompletedTransaction]:
        token = self._access_keys.get(access_key)
        if token is None:
            return None
        return self._completed.get(token)

    @property
    def completed_count(self) -> int:
        return len(self._completed)


class OfferEvaluator:
    """Seller-side negotiation engine over a catalogue and a session store."""

    def __init__(self, catalog: Catalog, store: SessionStore):
        self.catalog = catalog
        self.store = store

    async def evaluate(self, session_id: str, resource_id: str, offer) -> Evaluation:
        """Process a buyer offer for a session.

        Creates the session on first contact, otherwise replaces the current
        offer and increments the round. A session renegotiated for a
        different resource starts over at round 1.

        Raises:
            UnknownResourceError: If resource_id is not in the catalogue
            InvalidOfferError: If the offer is not a positive number
        """
        resource = self.catalog.get(resource_id)
        price = to_price(offer)

        async with self.store.lock(session_id):
            session = self.store.get(session_id)
            if session is None or session.resource.id != resource.id:
                session = self.store.open(session_id, resource, price)
            else:
                session.current_offer = price
                session.round += 1

            session.log("buyer", "offer", price)
            evaluation = evaluate_offer(resource, price, session.round)

            if evaluation.accepted:
                session.agreed_price = evaluation.final_price
                session.log("seller", "accept", evaluation.final_price)
            else:
                session.agreed_price = None
                session.log("seller", "counter", evaluation.counter_offer)

        log.market("Negotiation", {
            "Resource": resource.name,
            "Offered": f"${price}",
            "List price": f"${resource.list_price}",
            "Minimum": f"${resource.minimum_price}",
            "Round": session.round,
        })
        return evaluation
