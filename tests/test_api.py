"""API endpoint tests for AumOS usage metering.

Runs the real application (lifespan included) against a SQLite file.
The billing provider is swapped for an in-memory fake where a test
triggers reconciliation.
"""

import asyncio
import uuid
from collections.abc import Iterator
from decimal import Decimal
from typing import Any

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.ext.asyncio import create_async_engine

from aumos_usage_metering.adapters.repositories import TenantAccountRepository, UsageEventRepository
from aumos_usage_metering.core.models import month_start, utc_now
from aumos_usage_metering.core.reconciler import Reconciler
from aumos_usage_metering.database import Base, get_session_factory
from aumos_usage_metering.errors import PermanentSyncError
from aumos_usage_metering.main import create_app
from aumos_usage_metering.settings import Settings

PREFIX = "/api/v1/metering"


async def _create_schema(database_url: str) -> None:
    engine = create_async_engine(database_url)
    async with engine.begin() as connection:
        await connection.run_sync(Base.metadata.create_all)
    await engine.dispose()


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def client(settings: Settings) -> Iterator[TestClient]:
    asyncio.run(_create_schema(settings.database_url))
    app = create_app(settings)
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def auth_headers(tenant_id: str) -> dict[str, str]:
    """Tenant header for test requests."""
    return {"X-Tenant-ID": tenant_id}


@pytest.fixture
def fake_reconciler(client: TestClient, provider: Any, settings: Settings) -> Reconciler:
    """Point the app's reconciler at the in-memory provider."""
    reconciler = Reconciler(
        session_factory=get_session_factory(),
        provider=provider,
        settings=settings,
        event_repo_factory=UsageEventRepository,
        account_repo_factory=TenantAccountRepository,
    )
    client.app.state.reconciler = reconciler  # type: ignore[attr-defined]
    return reconciler


# ---------------------------------------------------------------------------
# Health
# ---------------------------------------------------------------------------


class TestHealth:
    def test_health(self, client: TestClient) -> None:
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json()["status"] == "ok"


# ---------------------------------------------------------------------------
# Usage endpoints
# ---------------------------------------------------------------------------


class TestUsageEndpoints:
    """Tests for /api/v1/metering/usage and /events."""

    def test_record_usage_returns_201_with_pending_event(
        self,
        client: TestClient,
        auth_headers: dict[str, str],
        tenant_id: str,
    ) -> None:
        response = client.post(f"{PREFIX}/usage", json={"kind": "sms", "quantity": 3}, headers=auth_headers)

        assert response.status_code == 201
        body = response.json()
        assert body["tenant_id"] == tenant_id
        assert body["kind"] == "sms"
        assert body["quantity"] == 3
        assert body["sync_state"] == "pending"
        assert Decimal(body["unit_cost"]) == Decimal("0.0075")
        assert Decimal(body["total_cost"]) == Decimal("0.0225")
        uuid.UUID(body["id"])

    def test_quantity_defaults_to_one(self, client: TestClient, auth_headers: dict[str, str]) -> None:
        response = client.post(f"{PREFIX}/usage", json={"kind": "email"}, headers=auth_headers)
        assert response.status_code == 201
        assert response.json()["quantity"] == 1

    def test_unknown_kind_is_422(self, client: TestClient, auth_headers: dict[str, str]) -> None:
        response = client.post(f"{PREFIX}/usage", json={"kind": "badkind"}, headers=auth_headers)

        assert response.status_code == 422
        assert response.json()["error_code"] == "INVALID_EVENT"
        assert client.get(f"{PREFIX}/events", headers=auth_headers).json() == []

    def test_zero_quantity_is_422(self, client: TestClient, auth_headers: dict[str, str]) -> None:
        response = client.post(f"{PREFIX}/usage", json={"kind": "sms", "quantity": 0}, headers=auth_headers)

        assert response.status_code == 422
        assert response.json()["error_code"] == "INVALID_EVENT"

    def test_missing_tenant_header_is_rejected(self, client: TestClient) -> None:
        response = client.post(f"{PREFIX}/usage", json={"kind": "sms"})
        assert response.status_code == 422

    def test_list_events_filters_by_sync_state(self, client: TestClient, auth_headers: dict[str, str]) -> None:
        for kind in ("sms", "email"):
            client.post(f"{PREFIX}/usage", json={"kind": kind}, headers=auth_headers)

        pending = client.get(f"{PREFIX}/events", params={"sync_state": "pending"}, headers=auth_headers)
        synced = client.get(f"{PREFIX}/events", params={"sync_state": "synced"}, headers=auth_headers)

        assert pending.status_code == 200
        assert {event["kind"] for event in pending.json()} == {"sms", "email"}
        assert synced.json() == []

    def test_list_events_rejects_unknown_sync_state(self, client: TestClient, auth_headers: dict[str, str]) -> None:
        response = client.get(f"{PREFIX}/events", params={"sync_state": "lost"}, headers=auth_headers)
        assert response.status_code == 422

    def test_events_are_tenant_scoped(self, client: TestClient, auth_headers: dict[str, str]) -> None:
        client.post(f"{PREFIX}/usage", json={"kind": "sms"}, headers=auth_headers)

        other = client.get(f"{PREFIX}/events", headers={"X-Tenant-ID": "someone-else"})

        assert other.json() == []


# ---------------------------------------------------------------------------
# Summary and limits endpoints
# ---------------------------------------------------------------------------


class TestSummaryEndpoints:
    """Tests for /summaries/{month} and /limits."""

    def test_summary_reflects_recorded_usage(self, client: TestClient, auth_headers: dict[str, str]) -> None:
        for quantity in (2, 5):
            client.post(
                f"{PREFIX}/usage",
                json={"kind": "sms", "quantity": quantity, "occurred_at": "2026-03-15T12:00:00Z"},
                headers=auth_headers,
            )

        response = client.get(f"{PREFIX}/summaries/2026-03", headers=auth_headers)

        assert response.status_code == 200
        body = response.json()
        assert body["billing_month"] == "2026-03-01"
        assert body["tier"] == "free"
        kinds = {entry["kind"]: entry for entry in body["kinds"]}
        assert kinds["sms"]["count"] == 7
        assert kinds["sms"]["limit"] == 50
        assert kinds["sms"]["exceeded"] is False
        assert kinds["email"]["count"] == 0
        assert Decimal(body["total_cost"]) == Decimal("0.0525")

    def test_missing_summary_is_404(self, client: TestClient, auth_headers: dict[str, str]) -> None:
        response = client.get(f"{PREFIX}/summaries/2025-01", headers=auth_headers)

        assert response.status_code == 404
        assert response.json()["error_code"] == "NOT_FOUND"

    @pytest.mark.parametrize("month", ["2026-13", "march", "2026-03-01"])
    def test_malformed_month_is_422(self, client: TestClient, auth_headers: dict[str, str], month: str) -> None:
        response = client.get(f"{PREFIX}/summaries/{month}", headers=auth_headers)
        assert response.status_code == 422

    def test_limits_report_every_kind(self, client: TestClient, auth_headers: dict[str, str]) -> None:
        client.put(f"{PREFIX}/account", json={"tier": "starter"}, headers=auth_headers)
        client.post(f"{PREFIX}/usage", json={"kind": "ai_query", "quantity": 201}, headers=auth_headers)

        response = client.get(f"{PREFIX}/limits", headers=auth_headers)

        assert response.status_code == 200
        body = response.json()
        assert body["billing_month"] == month_start(utc_now()).isoformat()
        limits = {entry["kind"]: entry for entry in body["limits"]}
        assert set(limits) == {"invitation", "sms", "ai_query", "whatsapp", "email"}
        assert limits["ai_query"]["current"] == 201
        assert limits["ai_query"]["limit"] == 200
        assert limits["ai_query"]["exceeded"] is True
        assert limits["ai_query"]["in_grace_period"] is True
        assert limits["ai_query"]["overage_units"] == 1
        assert limits["sms"]["exceeded"] is False


# ---------------------------------------------------------------------------
# Account endpoint
# ---------------------------------------------------------------------------


class TestAccountEndpoint:
    def test_set_account(self, client: TestClient, auth_headers: dict[str, str], tenant_id: str) -> None:
        response = client.put(
            f"{PREFIX}/account",
            json={"tier": "professional", "external_customer_ref": "cus_9"},
            headers=auth_headers,
        )

        assert response.status_code == 200
        assert response.json()["tier"] == "professional"
        assert response.json()["external_customer_ref"] == "cus_9"

        kept = client.put(f"{PREFIX}/account", json={"tier": "starter"}, headers=auth_headers)
        assert kept.json()["external_customer_ref"] == "cus_9"

    def test_unknown_tier_is_422(self, client: TestClient, auth_headers: dict[str, str]) -> None:
        response = client.put(f"{PREFIX}/account", json={"tier": "platinum"}, headers=auth_headers)
        assert response.status_code == 422


# ---------------------------------------------------------------------------
# Reconciliation endpoints
# ---------------------------------------------------------------------------


class TestReconcileEndpoints:
    """Tests for /reconcile and the dead-letter view."""

    def test_reconcile_syncs_pending_events(
        self,
        client: TestClient,
        fake_reconciler: Reconciler,
        provider: Any,
        auth_headers: dict[str, str],
    ) -> None:
        client.put(f"{PREFIX}/account", json={"tier": "starter", "external_customer_ref": "cus_1"}, headers=auth_headers)
        client.post(f"{PREFIX}/usage", json={"kind": "sms"}, headers=auth_headers)

        response = client.post(f"{PREFIX}/reconcile", json={"max_n": 5})

        assert response.status_code == 200
        assert response.json() == {"claimed": 1, "synced": 1, "failed": 0, "dead_lettered": 0, "deferred": 0}
        events = client.get(f"{PREFIX}/events", headers=auth_headers).json()
        assert events[0]["sync_state"] == "synced"
        assert events[0]["external_ref"] == "ur_1"
        assert len(provider.charges) == 1

    def test_dead_letter_and_requeue(
        self,
        client: TestClient,
        fake_reconciler: Reconciler,
        provider: Any,
        auth_headers: dict[str, str],
    ) -> None:
        client.put(f"{PREFIX}/account", json={"tier": "starter", "external_customer_ref": "cus_1"}, headers=auth_headers)
        event_id = client.post(f"{PREFIX}/usage", json={"kind": "sms"}, headers=auth_headers).json()["id"]
        provider.failures = [PermanentSyncError("HTTP 400: bad payload", status_code=400)]

        client.post(f"{PREFIX}/reconcile")
        dead_letters = client.get(f"{PREFIX}/dead-letters").json()

        assert [entry["id"] for entry in dead_letters] == [event_id]
        assert dead_letters[0]["last_error"] == "HTTP 400: bad payload"

        requeued = client.post(f"{PREFIX}/dead-letters/{event_id}/requeue")
        assert requeued.status_code == 200
        assert requeued.json()["sync_state"] == "pending"
        assert requeued.json()["attempt_count"] == 0

        again = client.post(f"{PREFIX}/dead-letters/{event_id}/requeue")
        assert again.status_code == 422

    def test_requeue_unknown_event_is_404(self, client: TestClient, fake_reconciler: Reconciler) -> None:
        response = client.post(f"{PREFIX}/dead-letters/{uuid.uuid4()}/requeue")
        assert response.status_code == 404
