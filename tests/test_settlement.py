"""
Tests for payment request issuing, artifact release and redemption.
"""

import asyncio
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import httpx
import pytest

from datamarket.errors import (
    AlreadyCompletedError,
    ArtifactExpiredError,
    InvalidAccessKeyError,
    InvalidParamsError,
    InvalidReceiptError,
    PriceBelowMinimumError,
    TokenNotFoundError,
    UnknownResourceError,
    UpstreamError,
)
from datamarket.negotiation import OfferEvaluator
from datamarket.payments.gateway import PaymentGateway
from datamarket.settlement import (
    PaymentRequestIssuer,
    ReceiptResolver,
    TokenResolver,
    create_resolver,
    redeem,
)


class BrokenGateway(PaymentGateway):
    async def mint_payment_request(self, amount_minor_units, description):
        raise RuntimeError("payment service unavailable")

    async def execute_payment(self, token):
        raise RuntimeError("payment service unavailable")


@pytest.fixture
def issuer(catalog, store, seller_gateway):
    return PaymentRequestIssuer(catalog, store, seller_gateway)


async def _paid(issuer, buyer_gateway, session_id="s1", resource_id="housing_inventory_2024", price=8):
    request = await issuer.issue(resource_id, price, session_id)
    receipt = await buyer_gateway.execute_payment(request.token)
    return request, receipt


class TestPaymentRequestIssuer:

    @pytest.mark.asyncio
    async def test_issue_binds_token(self, issuer, store):
        request = await issuer.issue("housing_inventory_2024", 8, "s1")

        assert request.amount_minor_units == 800
        assert request.description == "Purchase: US Housing Market Inventory 2024"
        session = store.session_for_token(request.token)
        assert session.session_id == "s1"
        assert session.agreed_price == Decimal("8")

    @pytest.mark.asyncio
    async def test_fractional_price(self, issuer):
        request = await issuer.issue("spy_ticker_365d", "11.5", "s1")
        assert request.amount_minor_units == 1150

    @pytest.mark.asyncio
    async def test_below_minimum(self, issuer, store):
        with pytest.raises(PriceBelowMinimumError) as exc:
            await issuer.issue("housing_inventory_2024", 7, "s1")
        assert exc.value.code == -32006
        assert store.get("s1") is None

    @pytest.mark.asyncio
    async def test_unknown_resource(self, issuer):
        with pytest.raises(UnknownResourceError):
            await issuer.issue("nope", 8, "s1")

    @pytest.mark.asyncio
    async def test_reissue_replaces_token(self, issuer, store):
        first = await issuer.issue("housing_inventory_2024", 8, "s1")
        second = await issuer.issue("housing_inventory_2024", 9, "s1")

        assert store.session_for_token(first.token) is None
        assert store.session_for_token(second.token).agreed_price == Decimal("9")

    @pytest.mark.asyncio
    async def test_gateway_failure(self, catalog, store):
        issuer = PaymentRequestIssuer(catalog, store, BrokenGateway())
        with pytest.raises(UpstreamError) as exc:
            await issuer.issue("housing_inventory_2024", 8, "s1")
        assert exc.value.details == "payment service unavailable"
        assert store.get("s1") is None

    @pytest.mark.asyncio
    async def test_issue_without_negotiation(self, issuer, store):
        """A request for an unseen session opens it at the requested price."""
        request = await issuer.issue("housing_inventory_2024", 9, "fresh")

        session = store.get("fresh")
        assert session.round == 1
        assert session.agreed_price == Decimal("9")
        assert session.payment_price == Decimal("9")
        assert session.payment_token == request.token
        assert store.session_for_token(request.token) is session
        assert [e.action for e in session.transcript] == ["payment_request"]


class TestTokenResolver:

    @pytest.mark.asyncio
    async def test_release(self, issuer, store, buyer_gateway):
        request, receipt = await _paid(issuer, buyer_gateway)
        resolver = TokenResolver(store)

        artifact = await resolver.resolve(payment_token=request.token, receipt_id=receipt.receipt_id)

        assert artifact.download_url == (
            f"https://data-provider.example.com/download/housing_inventory_2024?token={artifact.access_key}"
        )
        assert len(artifact.access_key) >= 32
        assert artifact.expires_at - artifact.issued_at == timedelta(hours=48)
        assert artifact.final_price == Decimal("8")
        assert artifact.to_dict()["receipt_url"] == receipt.receipt_id
        assert store.get("s1") is None
        assert store.completed(request.token).access_key == artifact.access_key

    @pytest.mark.asyncio
    async def test_release_charges_minted_price(self, catalog, issuer, store, buyer_gateway):
        """A later offer on the session does not change what the paid token bought."""
        evaluator = OfferEvaluator(catalog, store)
        await evaluator.evaluate("s1", "housing_inventory_2024", 8)
        request = await issuer.issue("housing_inventory_2024", 8, "s1")
        await evaluator.evaluate("s1", "housing_inventory_2024", 5)
        receipt = await buyer_gateway.execute_payment(request.token)

        artifact = await TokenResolver(store).resolve(payment_token=request.token, receipt_id=receipt.receipt_id)

        assert artifact.final_price == Decimal("8")
        assert store.completed(request.token).final_price == Decimal("8")

    @pytest.mark.asyncio
    async def test_many_sales_leave_no_state(self, issuer, store, buyer_gateway):
        resolver = TokenResolver(store)
        for i in range(50):
            request, receipt = await _paid(issuer, buyer_gateway, session_id=f"s{i}")
            await resolver.resolve(payment_token=request.token, receipt_id=receipt.receipt_id)

        assert store.completed_count == 50
        assert len(store) == 0
        assert store.active_locks == 0

    @pytest.mark.asyncio
    async def test_second_release_is_already_completed(self, issuer, store, buyer_gateway):
        request, receipt = await _paid(issuer, buyer_gateway)
        resolver = TokenResolver(store)
        await resolver.resolve(payment_token=request.token, receipt_id=receipt.receipt_id)

        with pytest.raises(AlreadyCompletedError) as exc:
            await resolver.resolve(payment_token=request.token, receipt_id=receipt.receipt_id)
        assert exc.value.message == "This transaction has already been completed"

    @pytest.mark.asyncio
    async def test_concurrent_release_happens_once(self, issuer, store, buyer_gateway):
        request, receipt = await _paid(issuer, buyer_gateway)
        resolver = TokenResolver(store)

        results = await asyncio.gather(
            *(resolver.resolve(payment_token=request.token, receipt_id=receipt.receipt_id) for _ in range(5)),
            return_exceptions=True,
        )
        released = [r for r in results if not isinstance(r, Exception)]
        assert len(released) == 1
        assert all(isinstance(r, AlreadyCompletedError) for r in results if isinstance(r, Exception))
        assert store.completed_count == 1

    @pytest.mark.asyncio
    async def test_unknown_token(self, store):
        with pytest.raises(TokenNotFoundError) as exc:
            await TokenResolver(store).resolve(payment_token="eyJunknown.x.y", receipt_id="r")
        assert exc.value.message == "Payment token not found or invalid"

    @pytest.mark.asyncio
    async def test_superseded_token(self, issuer, store, buyer_gateway):
        first = await issuer.issue("housing_inventory_2024", 8, "s1")
        await issuer.issue("housing_inventory_2024", 8, "s1")
        with pytest.raises(TokenNotFoundError):
            await TokenResolver(store).resolve(payment_token=first.token, receipt_id="r")

    @pytest.mark.asyncio
    async def test_missing_evidence(self, store):
        with pytest.raises(InvalidParamsError):
            await TokenResolver(store).resolve(payment_token="abc")

    @pytest.mark.asyncio
    async def test_custom_base_url_and_ttl(self, issuer, store, buyer_gateway):
        request, receipt = await _paid(issuer, buyer_gateway)
        resolver = TokenResolver(store, download_base_url="https://cdn.example.org/", ttl=timedelta(hours=1))
        artifact = await resolver.resolve(payment_token=request.token, receipt_id=receipt.receipt_id)

        assert artifact.download_url.startswith("https://cdn.example.org/download/housing_inventory_2024?token=")
        assert artifact.expires_at - artifact.issued_at == timedelta(hours=1)


class TestReceiptResolver:

    @pytest.mark.asyncio
    async def test_release_from_receipt_token(self, issuer, store, buyer_gateway):
        request, receipt = await _paid(issuer, buyer_gateway)
        artifact = await ReceiptResolver(store).resolve(receipt=receipt.token)

        assert artifact.payment_token == request.token
        assert artifact.receipt_id == receipt.token

    @pytest.mark.asyncio
    async def test_release_from_receipt_url(self, issuer, store, buyer_gateway):
        request, receipt = await _paid(issuer, buyer_gateway)

        def handler(http_request: httpx.Request) -> httpx.Response:
            assert http_request.url.path == "/receipts/42"
            return httpx.Response(200, text=receipt.token + "\n")

        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as http:
            resolver = ReceiptResolver(store, http=http)
            artifact = await resolver.resolve(receipt="https://pay.example.com/receipts/42")

        assert artifact.payment_token == request.token
        assert artifact.to_dict()["receipt_url"] == "https://pay.example.com/receipts/42"

    @pytest.mark.asyncio
    async def test_receipt_url_not_found(self, store):
        transport = httpx.MockTransport(lambda r: httpx.Response(404, text="no such receipt"))
        async with httpx.AsyncClient(transport=transport) as http:
            with pytest.raises(UpstreamError) as exc:
                await ReceiptResolver(store, http=http).resolve(receipt="https://pay.example.com/receipts/1")
        assert exc.value.details == {"status": 404, "body": "no such receipt"}

    @pytest.mark.asyncio
    async def test_undecodable_receipt(self, store):
        with pytest.raises(InvalidReceiptError) as exc:
            await ReceiptResolver(store).resolve(receipt="not-a-receipt")
        assert exc.value.code == -32012

    @pytest.mark.asyncio
    async def test_payment_request_is_not_a_receipt(self, issuer, store):
        request = await issuer.issue("housing_inventory_2024", 8, "s1")
        with pytest.raises(InvalidReceiptError):
            await ReceiptResolver(store).resolve(receipt=request.token)

    @pytest.mark.asyncio
    async def test_missing_receipt(self, store):
        with pytest.raises(InvalidParamsError):
            await ReceiptResolver(store).resolve(payment_token="abc")


class TestRedeem:

    @pytest.mark.asyncio
    async def test_redeem_lifecycle(self, issuer, store, buyer_gateway):
        start = datetime(2025, 1, 1, tzinfo=timezone.utc)
        request, receipt = await _paid(issuer, buyer_gateway)
        resolver = TokenResolver(store, clock=lambda: start)
        artifact = await resolver.resolve(payment_token=request.token, receipt_id=receipt.receipt_id)

        record = redeem(store, "housing_inventory_2024", artifact.access_key, now=start + timedelta(hours=47))
        assert record.payment_token == request.token

        with pytest.raises(ArtifactExpiredError):
            redeem(store, "housing_inventory_2024", artifact.access_key, now=start + timedelta(hours=48))

    @pytest.mark.asyncio
    async def test_redeem_wrong_resource(self, issuer, store, buyer_gateway):
        request, receipt = await _paid(issuer, buyer_gateway)
        artifact = await TokenResolver(store).resolve(payment_token=request.token, receipt_id=receipt.receipt_id)

        with pytest.raises(InvalidAccessKeyError):
            redeem(store, "spy_ticker_365d", artifact.access_key)

    @pytest.mark.parametrize("key", ["", "guess"])
    def test_redeem_unknown_key(self, store, key):
        with pytest.raises(InvalidAccessKeyError):
            redeem(store, "housing_inventory_2024", key)


def test_create_resolver(store):
    assert isinstance(create_resolver("token", store), TokenResolver)
    assert isinstance(create_resolver("receipt", store), ReceiptResolver)
    with pytest.raises(ValueError):
        create_resolver("magic", store)
