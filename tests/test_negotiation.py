"""
Tests for seller-side offer evaluation and session state.
"""

import asyncio
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from datamarket.catalog import Catalog, Resource
from datamarket.errors import InvalidOfferError, UnknownResourceError
from datamarket.negotiation import (
    CompletedTransaction,
    OfferEvaluator,
    Outcome,
    SessionStore,
    evaluate_offer,
    to_price,
)
from datamarket.payments.gateway import PaymentGateway, PaymentRequest
from datamarket.settlement import PaymentRequestIssuer


def _completed(token="tok", session_id="s1", access_key="key") -> CompletedTransaction:
    now = datetime.now(timezone.utc)
    return CompletedTransaction(
        payment_token=token,
        session_id=session_id,
        resource_id="housing_inventory_2024",
        final_price=Decimal("8"),
        access_key=access_key,
        download_url="https://example.com/download/housing_inventory_2024?token=key",
        issued_at=now,
        expires_at=now + timedelta(hours=48),
    )


class TestEvaluateOffer:
    """Pure offer evaluation."""

    @pytest.mark.parametrize("resource_id, offer, outcome, price", [
        ("housing_inventory_2024", "12", Outcome.ACCEPT_LIST, "10"),
        ("housing_inventory_2024", "10", Outcome.ACCEPT_LIST, "10"),
        ("housing_inventory_2024", "9", Outcome.ACCEPT_OFFER, "9"),
        ("housing_inventory_2024", "8", Outcome.ACCEPT_OFFER, "8"),
        ("housing_inventory_2024", "5", Outcome.COUNTER, "8"),      # max(8, floor(7.5))
        ("spy_ticker_365d", "9", Outcome.COUNTER, "10"),            # floor(10.5)
        ("spy_ticker_365d", "11.5", Outcome.ACCEPT_OFFER, "11.5"),
        ("llm_benchmark_paper", "10", Outcome.COUNTER, "12"),       # max(12, floor(11.5))
    ])
    def test_outcomes(self, catalog, resource_id, offer, outcome, price):
        evaluation = evaluate_offer(catalog.get(resource_id), Decimal(offer))
        assert evaluation.outcome is outcome
        if outcome.accepted:
            assert evaluation.final_price == Decimal(price)
            assert evaluation.counter_offer is None
        else:
            assert evaluation.counter_offer == Decimal(price)
            assert evaluation.final_price is None

    def test_counter_message(self, catalog):
        evaluation = evaluate_offer(catalog.get("housing_inventory_2024"), Decimal("5"))
        assert evaluation.message == "Cannot accept $5. Minimum price is $8. Would you accept $8?"
        assert evaluation.to_dict() == {
            "accepted": False,
            "outcome": "counter",
            "round": 1,
            "message": evaluation.message,
            "counter_offer": 8.0,
            "minimum_price": 8.0,
        }

    def test_price_bounds_hold_for_any_offer(self, catalog):
        """Final price never exceeds list; counters stay within [minimum, list]."""
        for resource in catalog:
            offer = Decimal("0.5")
            while offer <= resource.list_price * 2:
                evaluation = evaluate_offer(resource, offer)
                if evaluation.accepted:
                    assert evaluation.final_price <= resource.list_price
                    assert evaluation.final_price >= resource.minimum_price
                else:
                    assert resource.minimum_price <= evaluation.counter_offer <= resource.list_price
                    assert offer < resource.minimum_price
                offer += Decimal("0.5")

    def test_accepting_the_counter_closes_the_deal(self, catalog):
        resource = catalog.get("spy_ticker_365d")
        counter = evaluate_offer(resource, Decimal("3")).counter_offer
        assert evaluate_offer(resource, counter).accepted


class TestToPrice:

    @pytest.mark.parametrize("value", [0, -1, "abc", True, float("nan"), "Infinity", None, [5]])
    def test_rejects_invalid(self, value):
        with pytest.raises(InvalidOfferError):
            to_price(value)

    def test_accepts_numbers(self):
        assert to_price(8) == Decimal("8")
        assert to_price(8.5) == Decimal("8.5")
        assert to_price("9.25") == Decimal("9.25")


class TestSessionStore:

    def test_new_token_replaces_old(self, catalog, store):
        store.open("s1", catalog.get("housing_inventory_2024"), Decimal("8"))
        store.attach_token("s1", "first", Decimal("8"))
        store.attach_token("s1", "second", Decimal("9"))
        assert store.session_for_token("first") is None
        assert store.session_for_token("second").session_id == "s1"

    def test_reopen_drops_token(self, catalog, store):
        store.open("s1", catalog.get("housing_inventory_2024"), Decimal("8"))
        store.attach_token("s1", "tok", Decimal("8"))
        store.open("s1", catalog.get("spy_ticker_365d"), Decimal("10"))
        assert store.session_for_token("tok") is None
        assert store.get("s1").round == 1

    def test_complete_retires_session(self, catalog, store):
        store.open("s1", catalog.get("housing_inventory_2024"), Decimal("8"))
        store.attach_token("s1", "tok", Decimal("8"))
        store.complete(_completed())

        assert store.get("s1") is None
        assert store.session_for_token("tok") is None
        assert store.completed("tok").final_price == Decimal("8")
        assert store.by_access_key("key").payment_token == "tok"
        assert store.completed_count == 1

    def test_complete_is_once_per_token(self, store):
        store.complete(_completed())
        with pytest.raises(RuntimeError):
            store.complete(_completed(access_key="other"))


class TestOfferEvaluator:
    """Session-tracking negotiation engine."""

    @pytest.mark.asyncio
    async def test_rounds_increment(self, catalog, store):
        evaluator = OfferEvaluator(catalog, store)
        first = await evaluator.evaluate("s1", "spy_ticker_365d", 6)
        second = await evaluator.evaluate("s1", "spy_ticker_365d", 9)
        third = await evaluator.evaluate("s1", "spy_ticker_365d", 10)

        assert (first.round, second.round, third.round) == (1, 2, 3)
        assert not second.accepted
        assert third.accepted
        assert store.get("s1").agreed_price == Decimal("10")

    @pytest.mark.asyncio
    async def test_counter_clears_agreed_price(self, catalog, store):
        evaluator = OfferEvaluator(catalog, store)
        await evaluator.evaluate("s1", "housing_inventory_2024", 9)
        await evaluator.evaluate("s1", "housing_inventory_2024", 3)
        session = store.get("s1")
        assert session.agreed_price is None
        assert session.current_offer == Decimal("3")

    @pytest.mark.asyncio
    async def test_other_resource_restarts_session(self, catalog, store):
        evaluator = OfferEvaluator(catalog, store)
        await evaluator.evaluate("s1", "housing_inventory_2024", 5)
        await evaluator.evaluate("s1", "housing_inventory_2024", 6)
        evaluation = await evaluator.evaluate("s1", "spy_ticker_365d", 6)

        assert evaluation.round == 1
        assert store.get("s1").resource.id == "spy_ticker_365d"

    @pytest.mark.asyncio
    async def test_unknown_resource(self, catalog, store):
        with pytest.raises(UnknownResourceError):
            await OfferEvaluator(catalog, store).evaluate("s1", "nope", 5)
        assert store.get("s1") is None

    @pytest.mark.asyncio
    async def test_invalid_offer(self, catalog, store):
        with pytest.raises(InvalidOfferError):
            await OfferEvaluator(catalog, store).evaluate("s1", "housing_inventory_2024", -2)

    @pytest.mark.asyncio
    async def test_offer_waits_for_inflight_payment_request(self, catalog, store):
        """An offer cannot slip between minting a token and binding it."""
        gate = asyncio.Event()

        class SlowGateway(PaymentGateway):
            async def mint_payment_request(self, amount_minor_units, description):
                await gate.wait()
                return PaymentRequest(token="tok-1", amount_minor_units=amount_minor_units, description=description)

            async def execute_payment(self, token):
                raise NotImplementedError

        evaluator = OfferEvaluator(catalog, store)
        issuer = PaymentRequestIssuer(catalog, store, SlowGateway())
        await evaluator.evaluate("s1", "housing_inventory_2024", 9)

        issuing = asyncio.create_task(issuer.issue("housing_inventory_2024", 9, "s1"))
        await asyncio.sleep(0)
        offering = asyncio.create_task(evaluator.evaluate("s1", "housing_inventory_2024", 5))
        for _ in range(5):
            await asyncio.sleep(0)
        assert not offering.done()

        gate.set()
        await issuing
        evaluation = await offering

        session = store.get("s1")
        assert evaluation.outcome == Outcome.COUNTER
        assert session.round == 2
        assert session.payment_token == "tok-1"
        assert session.payment_price == Decimal("9")
        assert [e.action for e in session.transcript] == ["offer", "accept", "payment_request", "offer", "counter"]

    @pytest.mark.asyncio
    async def test_counters_converge(self):
        """Rising offers under the floor get non-decreasing counters, and meeting one closes the deal."""
        resource = Resource(
            id="r",
            name="R",
            description="",
            format="CSV",
            size="1 MB",
            list_price=Decimal("100"),
            minimum_price=Decimal("30"),
            category="x",
        )
        evaluator = OfferEvaluator(Catalog([resource]), SessionStore())

        counters = []
        for offer in (1, 7, 13, 22, "29.5"):
            evaluation = await evaluator.evaluate("s1", "r", offer)
            assert evaluation.outcome == Outcome.COUNTER
            counters.append(evaluation.counter_offer)

        assert counters == sorted(counters)
        assert all(Decimal("30") <= c <= Decimal("100") for c in counters)

        final = await evaluator.evaluate("s1", "r", counters[-1])
        assert final.accepted
        assert final.final_price == counters[-1]
        assert final.round == 6

    @pytest.mark.asyncio
    async def test_locks_are_dropped_after_use(self, catalog, store):
        evaluator = OfferEvaluator(catalog, store)
        await asyncio.gather(*(
            evaluator.evaluate(f"s{i % 3}", "housing_inventory_2024", 5) for i in range(12)
        ))
        assert store.active_locks == 0
        assert store.get("s0").round == 4

    @pytest.mark.asyncio
    async def test_transcript_is_hash_chained(self, catalog, store):
        evaluator = OfferEvaluator(catalog, store)
        await evaluator.evaluate("s1", "housing_inventory_2024", 5)
        await evaluator.evaluate("s1", "housing_inventory_2024", 8)

        transcript = store.get("s1").transcript
        assert [e.action for e in transcript] == ["offer", "counter", "offer", "accept"]
        assert len({e.hash for e in transcript}) == len(transcript)
