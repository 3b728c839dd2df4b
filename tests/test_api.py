"""HTTP surface: routing, auth, error rendering and a full period walkthrough."""
from datetime import timedelta
from decimal import Decimal

import pytest
from httpx import ASGITransport, AsyncClient

from clearance.core.clock import business_today
from clearance.core.security import create_access_token, verify_access_token
from clearance.database import get_db, get_session_factory
from clearance.integrations.earnings_ledger import get_earnings_ledger
from clearance.integrations.identity_provider import get_identity_provider
from clearance.integrations.payment_gateway import get_payment_gateway
from clearance.main import app
from clearance.services.cache_service import get_eligibility_cache


@pytest.fixture
async def client(session_factory, standard_ledger, identity, gateway, cache):
    async def override_get_db():
        async with session_factory() as session:
            yield session
            await session.commit()

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_session_factory] = lambda: session_factory
    app.dependency_overrides[get_earnings_ledger] = lambda: standard_ledger
    app.dependency_overrides[get_identity_provider] = lambda: identity
    app.dependency_overrides[get_payment_gateway] = lambda: gateway
    app.dependency_overrides[get_eligibility_cache] = lambda: cache

    headers = {"Authorization": f"Bearer {create_access_token('operator-1')}"}
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test", headers=headers) as ac:
        yield ac

    app.dependency_overrides.clear()


async def lock(client, cutoff="2024-01-01", threshold="50"):
    return await client.post(
        "/api/v1/clearance/criteria/lock",
        json={"cutoff_date": cutoff, "minimum_amount_threshold": threshold},
    )


# ==================== Auth ====================

def test_access_token_round_trip():
    token = create_access_token("operator-9")
    assert verify_access_token(token) == "operator-9"
    assert verify_access_token("not-a-token") is None


def test_expired_and_non_access_tokens_are_rejected():
    expired = create_access_token("operator-9", expires_delta=timedelta(seconds=-5))
    refresh = create_access_token("operator-9", additional_claims={"type": "refresh"})
    assert verify_access_token(expired) is None
    assert verify_access_token(refresh) is None


async def test_missing_token_is_rejected(client):
    response = await client.get("/api/v1/clearance/criteria", headers={"Authorization": ""})
    assert response.status_code in (401, 403)


async def test_invalid_token_is_unauthorized(client):
    response = await client.get(
        "/api/v1/clearance/criteria", headers={"Authorization": "Bearer garbage"}
    )
    assert response.status_code == 401


# ==================== Criteria ====================

async def test_get_criteria_creates_open_default(client):
    response = await client.get("/api/v1/clearance/criteria")

    assert response.status_code == 200
    body = response.json()
    assert body["lifecycle_status"] == "OPEN"
    assert body["period_number"] == 1
    assert body["is_ready"] is False
    assert body["cutoff_date"] is None


async def test_lock_and_money_serialisation(client):
    response = await lock(client, threshold="50.5")

    assert response.status_code == 200
    body = response.json()
    assert body["lifecycle_status"] == "LOCKED"
    assert body["minimum_amount_threshold"] == "50.50"
    assert body["locked_by"] == "operator-1"
    assert body["is_ready"] is True


async def test_future_cutoff_renders_invalid_input(client):
    tomorrow = (business_today() + timedelta(days=1)).isoformat()

    response = await lock(client, cutoff=tomorrow)

    assert response.status_code == 422
    body = response.json()
    assert body["error"] == "INVALID_INPUT"
    assert body["path"] == "/api/v1/clearance/criteria/lock"
    assert body["method"] == "POST"


async def test_malformed_body_renders_invalid_input(client):
    response = await client.post(
        "/api/v1/clearance/criteria/lock",
        json={"cutoff_date": "yesterday", "minimum_amount_threshold": "fifty"},
    )
    assert response.status_code == 422
    assert response.json()["error"] == "INVALID_INPUT"
    assert response.json()["details"]["errors"]


async def test_double_lock_is_conflict(client):
    await lock(client)
    response = await lock(client)

    assert response.status_code == 409
    assert response.json()["error"] == "INVALID_TRANSITION"


async def test_draft_patch(client):
    response = await client.patch(
        "/api/v1/clearance/criteria", json={"minimum_amount_threshold": "12.30"}
    )
    assert response.status_code == 200
    assert response.json()["minimum_amount_threshold"] == "12.30"
    assert response.json()["lifecycle_status"] == "OPEN"


async def test_complete_with_unsettled_is_precondition_failed(client):
    criteria = (await lock(client)).json()

    response = await client.post("/api/v1/clearance/criteria/complete", json={"id": criteria["id"]})

    assert response.status_code == 412
    body = response.json()
    assert body["error"] == "PRECONDITION_FAILED"
    assert body["details"]["unsettled_affiliate_ids"] == [7, 9, 19, 21]


async def test_complete_unknown_criteria_is_not_found(client):
    await lock(client)
    response = await client.post(
        "/api/v1/clearance/criteria/complete",
        json={"id": "00000000-0000-0000-0000-000000000000"},
    )
    assert response.status_code == 404
    assert response.json()["error"] == "NOT_FOUND"


# ==================== Eligible Affiliates ====================

async def test_eligible_affiliates_not_ready_while_open(client):
    response = await client.get("/api/v1/clearance/eligible-affiliates")

    assert response.status_code == 409
    assert response.json()["error"] == "NOT_READY"


async def test_eligible_affiliates_grid(client):
    await lock(client)

    response = await client.get(
        "/api/v1/clearance/eligible-affiliates",
        params={"sort_by": "unpaid_amount", "sort_dir": "desc", "page_size": 2, "booking_category": 0},
    )

    assert response.status_code == 200
    body = response.json()
    assert body["total"] == 4
    assert body["booking_category"] == 1
    assert [item["affiliate_id"] for item in body["items"]] == [7, 9]
    assert Decimal(body["items"][0]["unpaid_amount"]) == Decimal("120.00")


async def test_eligible_affiliates_rejects_bad_params(client):
    await lock(client)

    negative = await client.get(
        "/api/v1/clearance/eligible-affiliates", params={"min_amount_override": "-1"}
    )
    unknown_category = await client.get(
        "/api/v1/clearance/eligible-affiliates", params={"booking_category": 9}
    )
    future = await client.get(
        "/api/v1/clearance/eligible-affiliates",
        params={"clearance_date_override": (business_today() + timedelta(days=2)).isoformat()},
    )

    for response in (negative, unknown_category, future):
        assert response.status_code == 422
        assert response.json()["error"] == "INVALID_INPUT"


# ==================== Status / Payments ====================

async def test_status_override_outside_set_is_not_found(client):
    await lock(client)
    response = await client.post(
        "/api/v1/clearance/affiliates/11/status", json={"status": "excluded"}
    )
    assert response.status_code == 404
    assert response.json()["error"] == "NOT_FOUND"


async def test_schedule_while_open_is_conflict(client):
    response = await client.post(
        "/api/v1/clearance/payments/schedule", json={"affiliate_ids": [7]}
    )
    assert response.status_code == 409
    assert response.json()["error"] == "INVALID_TRANSITION"


async def test_empty_batch_is_invalid_input(client):
    await lock(client)
    response = await client.post("/api/v1/clearance/payments/schedule", json={"affiliate_ids": []})
    assert response.status_code == 422


async def test_full_period_walkthrough(client, gateway):
    criteria = (await lock(client)).json()

    for affiliate_id in (19, 21):
        excluded = await client.post(
            f"/api/v1/clearance/affiliates/{affiliate_id}/status", json={"status": "EXCLUDED"}
        )
        assert excluded.status_code == 200
        assert excluded.json()["individual_clearance_status"] == "EXCLUDED"

    scheduled = await client.post(
        "/api/v1/clearance/payments/schedule", json={"affiliate_ids": [7, 9, 9, 19]}
    )
    assert scheduled.status_code == 200
    assert [(r["affiliate_id"], r["outcome"], r["error_code"]) for r in scheduled.json()] == [
        (7, "SUCCEEDED", None),
        (9, "SUCCEEDED", None),
        (19, "FAILED", "NOT_ELIGIBLE"),
    ]

    gateway.failing_ids.add(9)
    settled = await client.post("/api/v1/clearance/payments/settle", json={"affiliate_ids": [7, 9]})
    assert settled.status_code == 200
    assert [(r["outcome"], r["payment_batch_state"]) for r in settled.json()] == [
        ("SUCCEEDED", "SETTLED"),
        ("FAILED", "SCHEDULED"),
    ]

    blocked = await client.post("/api/v1/clearance/criteria/complete", json={"id": criteria["id"]})
    assert blocked.status_code == 412

    gateway.failing_ids.clear()
    retried = await client.post("/api/v1/clearance/payments/settle", json={"affiliate_ids": [7, 9]})
    assert [r["outcome"] for r in retried.json()] == ["SUCCEEDED", "SUCCEEDED"]
    assert gateway.calls_for(7) == 1

    completed = await client.post("/api/v1/clearance/criteria/complete", json={"id": criteria["id"]})
    assert completed.status_code == 200
    assert completed.json()["lifecycle_status"] == "COMPLETED"
    assert completed.json()["forced_completion"] is False

    new_period = await client.post("/api/v1/clearance/criteria/new-period")
    assert new_period.status_code == 200
    assert new_period.json()["period_number"] == 2

    history = await client.get("/api/v1/clearance/criteria/history")
    assert history.json()["total"] == 2

    events = await client.get(
        "/api/v1/clearance/events", params={"criteria_id": criteria["id"], "limit": 200}
    )
    assert events.status_code == 200
    event_types = {item["event_type"] for item in events.json()["items"]}
    assert {
        "CRITERIA_LOCKED",
        "STATUS_OVERRIDDEN",
        "PAYMENTS_SCHEDULED",
        "PAYMENTS_SETTLED",
        "CRITERIA_COMPLETED",
    } <= event_types
    assert all(item["operator"] in ("operator-1", None) for item in events.json()["items"])


async def test_events_filter_by_type(client):
    await lock(client)
    response = await client.get("/api/v1/clearance/events", params={"event_type": "CRITERIA_LOCKED"})

    assert response.status_code == 200
    assert response.json()["total"] == 1
    assert response.json()["items"][0]["event_type"] == "CRITERIA_LOCKED"


async def test_root_endpoint(client):
    response = await client.get("/")
    assert response.status_code == 200
    assert response.json()["docs"] == "/docs"
