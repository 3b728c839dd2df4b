"""HTTP adapters for the ledger, identity provider and payment interface."""
import json
from datetime import date
from decimal import Decimal

import httpx
import pytest

from clearance.core.exceptions import ExternalFailureError
from clearance.integrations.earnings_ledger import EarningsQuery, HttpEarningsLedger
from clearance.integrations.identity_provider import HttpIdentityProvider
from clearance.integrations.payment_gateway import HttpPaymentGateway, SandboxPaymentGateway


@pytest.fixture
def mock_http(monkeypatch):
    """Route every httpx.AsyncClient through a handler; returns the captured requests."""
    captured = []
    responses = {}
    real_client = httpx.AsyncClient

    def handler(request: httpx.Request) -> httpx.Response:
        captured.append(request)
        respond = responses.get(request.url.path)
        if respond is None:
            return httpx.Response(404, json={"message": "not found"})
        return respond(request)

    def client_factory(**kwargs):
        return real_client(transport=httpx.MockTransport(handler), **kwargs)

    monkeypatch.setattr(httpx, "AsyncClient", client_factory)
    return captured, responses


async def test_ledger_sends_query_and_parses_rows(mock_http):
    captured, responses = mock_http
    responses["/affiliates/unpaid-earnings"] = lambda request: httpx.Response(
        200,
        json={"items": [
            {"affiliate_id": 7, "display_name": "Aegean Travel", "contract_type": "AGENCY",
             "unpaid_count": 2, "unpaid_amount": "120.50", "is_fake": False},
        ]},
    )
    ledger = HttpEarningsLedger("https://ledger.example/", api_key="k-1")

    rows = await ledger.list_unpaid_earnings(EarningsQuery(as_of=date(2024, 1, 1), booking_category=1))

    assert rows[0].affiliate_id == 7
    assert rows[0].unpaid_amount == Decimal("120.50")
    request = captured[0]
    assert request.method == "GET"
    assert request.url.params["as_of"] == "2024-01-01"
    assert request.url.params["booking_category"] == "1"
    assert request.headers["X-API-Key"] == "k-1"


async def test_ledger_http_error_is_external_failure(mock_http):
    _, responses = mock_http
    responses["/affiliates/unpaid-earnings"] = lambda request: httpx.Response(503, text="maintenance")
    ledger = HttpEarningsLedger("https://ledger.example")

    with pytest.raises(ExternalFailureError) as exc_info:
        await ledger.list_unpaid_earnings(EarningsQuery(as_of=date(2024, 1, 1), booking_category=1))
    assert exc_info.value.details["status_code"] == 503


async def test_ledger_malformed_row_is_external_failure(mock_http):
    _, responses = mock_http
    responses["/affiliates/unpaid-earnings"] = lambda request: httpx.Response(
        200, json={"items": [{"display_name": "no id"}]}
    )
    ledger = HttpEarningsLedger("https://ledger.example")

    with pytest.raises(ExternalFailureError):
        await ledger.list_unpaid_earnings(EarningsQuery(as_of=date(2024, 1, 1), booking_category=1))


async def test_identity_provider_defaults_missing_ids_to_none(mock_http):
    captured, responses = mock_http
    responses["/affiliates/id-expirations"] = lambda request: httpx.Response(
        200, json={"items": [{"affiliate_id": 7, "expiration_date": "2030-05-01"}]}
    )
    identity = HttpIdentityProvider("https://identity.example")

    result = await identity.get_id_expiration_dates([7, 9])

    assert result == {7: date(2030, 5, 1), 9: None}
    assert json.loads(captured[0].content) == {"affiliate_ids": [7, 9]}


async def test_identity_provider_skips_call_for_empty_ids(mock_http):
    captured, _ = mock_http
    identity = HttpIdentityProvider("https://identity.example")
    assert await identity.get_id_expiration_dates([]) == {}
    assert captured == []


async def test_gateway_success_sends_idempotency_key(mock_http):
    captured, responses = mock_http
    responses["/payouts"] = lambda request: httpx.Response(
        200, json={"status": "paid", "payment_reference": "PAY-991"}
    )
    gateway = HttpPaymentGateway("https://pay.example")

    outcome = await gateway.settle_payment(7, Decimal("120.00"), "crit:7")

    assert outcome.success
    assert outcome.reference == "PAY-991"
    assert captured[0].headers["Idempotency-Key"] == "crit:7"
    assert json.loads(captured[0].content)["amount"] == "120.00"


async def test_gateway_decline_and_http_error_are_failed_outcomes(mock_http):
    _, responses = mock_http
    gateway = HttpPaymentGateway("https://pay.example")

    responses["/payouts"] = lambda request: httpx.Response(
        200, json={"status": "REJECTED", "message": "account closed"}
    )
    declined = await gateway.settle_payment(7, Decimal("1"), "crit:7")
    assert not declined.success
    assert declined.detail == "account closed"

    responses["/payouts"] = lambda request: httpx.Response(500, text="boom")
    errored = await gateway.settle_payment(7, Decimal("1"), "crit:7")
    assert not errored.success
    assert "HTTP 500" in errored.detail


async def test_transport_error_is_external_failure(mock_http):
    _, responses = mock_http

    def refuse(request):
        raise httpx.ConnectError("connection refused", request=request)

    responses["/affiliates/unpaid-earnings"] = refuse
    ledger = HttpEarningsLedger("https://ledger.example")

    with pytest.raises(ExternalFailureError):
        await ledger.list_unpaid_earnings(EarningsQuery(as_of=date(2024, 1, 1), booking_category=1))


def test_http_adapters_require_url():
    with pytest.raises(ValueError):
        HttpEarningsLedger("")
    with pytest.raises(ValueError):
        HttpPaymentGateway("")


async def test_sandbox_gateway_same_reference_same_payout():
    gateway = SandboxPaymentGateway()

    first = await gateway.settle_payment(7, Decimal("10"), "ref-7")
    second = await gateway.settle_payment(7, Decimal("10"), "ref-7")
    other = await gateway.settle_payment(9, Decimal("10"), "ref-9")

    assert first.reference == second.reference
    assert other.reference != first.reference
    assert gateway.calls_for(7) == 2
