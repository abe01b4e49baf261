from __future__ import annotations

from collections.abc import Generator
from decimal import Decimal

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from app import audit, events
from app.core.auth import issue_token
from app.core.config import get_settings
from app.core.database import Base, get_db
from app.main import app


@pytest.fixture()
def db_session() -> Generator[Session, None, None]:
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False)
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture(autouse=True)
def clear_stubs() -> Generator[None, None, None]:
    audit.audit_entries.clear()
    events.published_events.clear()
    get_settings.cache_clear()
    yield
    audit.audit_entries.clear()
    events.published_events.clear()
    get_settings.cache_clear()


@pytest.fixture()
def client(db_session: Session) -> Generator[TestClient, None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def _admin_headers() -> dict[str, str]:
    return {"Authorization": f"Bearer {issue_token('platform-admin', ['platform.admin'])}"}


def _bootstrap(client: TestClient, name: str = "Acme") -> dict[str, str]:
    organization = client.post("/api/platform/organizations", json={"name": name}, headers=_admin_headers())
    assert organization.status_code == 201
    organization_id = organization.json()["public_id"]

    user = client.post(
        f"/api/platform/organizations/{organization_id}/users",
        json={"name": f"{name} Rep", "email": f"rep@{name.lower()}.example.com"},
        headers=_admin_headers(),
    )
    assert user.status_code == 201
    return {
        "Authorization": f"Bearer {issue_token(user.json()['public_id'])}",
        "X-Organization-Id": organization_id,
    }


def _create_deal(client: TestClient, headers: dict[str, str]) -> dict:
    created_client = client.post(
        "/api/sales/clients",
        json={"name": "Acme Corp", "email": "buyer@acme.example.com"},
        headers=headers,
    )
    assert created_client.status_code == 201

    deal = client.post(
        "/api/sales/pipelines",
        json={
            "title": "Acme rollout",
            "amount": "5000",
            "client_id": created_client.json()["public_id"],
            "products": [{"name": "Widget", "quantity": 2, "price": "100"}],
        },
        headers=headers,
    )
    assert deal.status_code == 201
    return deal.json()


def test_tenancy_bootstrap_requires_platform_admin(client: TestClient) -> None:
    anonymous = client.post("/api/platform/organizations", json={"name": "Acme"})
    assert anonymous.status_code == 403

    user_token = {"Authorization": f"Bearer {issue_token('someone')}"}
    forbidden = client.post("/api/platform/organizations", json={"name": "Acme"}, headers=user_token)
    assert forbidden.status_code == 403


def test_sales_routes_require_authenticated_actor(client: TestClient) -> None:
    headers = _bootstrap(client)

    missing_token = client.get("/api/sales/leads", headers={"X-Organization-Id": headers["X-Organization-Id"]})
    assert missing_token.status_code == 401

    missing_organization = client.get("/api/sales/leads", headers={"Authorization": headers["Authorization"]})
    assert missing_organization.status_code == 401

    other = _bootstrap(client, "Globex")
    wrong_organization = client.get(
        "/api/sales/leads",
        headers={"Authorization": headers["Authorization"], "X-Organization-Id": other["X-Organization-Id"]},
    )
    assert wrong_organization.status_code == 401


def test_allocate_identifier_route(client: TestClient) -> None:
    headers = _bootstrap(client)

    first = client.post("/api/sales/identifiers/project", headers=headers)
    second = client.post("/api/sales/identifiers/projectId", headers=headers)

    assert first.status_code == 201
    assert first.json()["public_id"] == "PRJ000000001"
    assert second.json()["public_id"] == "PRJ000000002"

    unknown = client.post("/api/sales/identifiers/invoice", headers=headers)
    assert unknown.status_code == 422
    body = unknown.json()
    assert body["code"] == "sales_identifier_allocate_failed"
    assert body["kind"] == "validation"
    assert body["details"] == {"entity_type": "invoice"}


def test_closed_won_route_creates_quote_and_customer(client: TestClient) -> None:
    headers = _bootstrap(client)
    deal = _create_deal(client, headers)

    response = client.post(
        f"/api/sales/pipelines/{deal['public_id']}/stage",
        json={"stage": "ClosedWon"},
        headers=headers,
    )

    assert response.status_code == 200
    body = response.json()
    assert body["pipeline"]["stage"] == "ClosedWon"
    assert body["quote_created"] is True

    quote = client.get(f"/api/sales/quotes/{body['quote_id']}", headers=headers)
    assert quote.status_code == 200
    assert quote.json()["status"] == "Accepted"
    assert Decimal(quote.json()["total"]) == Decimal("5000")
    assert quote.json()["items"][0]["name"] == "Widget"

    customers = client.get("/api/sales/customers", headers=headers)
    assert customers.status_code == 200
    assert len(customers.json()) == 1
    assert Decimal(customers.json()[0]["total_value"]) == Decimal("5000")


def test_invalid_stage_returns_error_envelope(client: TestClient) -> None:
    headers = _bootstrap(client)
    deal = _create_deal(client, headers)

    response = client.post(
        f"/api/sales/pipelines/{deal['public_id']}/stage",
        json={"stage": "Won"},
        headers={**headers, "X-Correlation-Id": "corr-stage-invalid"},
    )

    assert response.status_code == 422
    body = response.json()
    assert body["code"] == "sales_pipeline_stage_change_failed"
    assert body["kind"] == "validation"
    assert body["message"] == "invalid stage"
    assert body["details"]["stage"] == "Won"
    assert "ClosedWon" in body["details"]["allowed"]
    assert body["correlation_id"] == "corr-stage-invalid"
    assert response.headers["x-correlation-id"] == "corr-stage-invalid"


def test_foreign_pipeline_is_not_found(client: TestClient) -> None:
    acme = _bootstrap(client, "Acme")
    globex = _bootstrap(client, "Globex")
    deal = _create_deal(client, acme)

    foreign = client.get(f"/api/sales/pipelines/{deal['public_id']}", headers=globex)
    missing = client.get("/api/sales/pipelines/PIP999999999", headers=globex)

    assert foreign.status_code == missing.status_code == 404
    assert foreign.json()["message"] == missing.json()["message"] == "pipeline not found"
    assert foreign.json()["kind"] == "not_found"


def test_accept_quote_route_is_idempotent(client: TestClient) -> None:
    headers = _bootstrap(client)
    deal = _create_deal(client, headers)
    quote_id = client.post(
        f"/api/sales/pipelines/{deal['public_id']}/stage",
        json={"stage": "ClosedLost"},
        headers=headers,
    ).json()["quote_id"]

    pending = client.post(f"/api/sales/quotes/{quote_id}/status", json={"status": "Pending"}, headers=headers)
    assert pending.status_code == 200
    assert pending.json()["status"] == "Pending"

    accepted = client.post(f"/api/sales/quotes/{quote_id}/accept", headers=headers)
    again = client.post(f"/api/sales/quotes/{quote_id}/accept", headers=headers)

    assert accepted.status_code == 200
    assert accepted.json()["ledger_applied"] is True
    assert accepted.json()["customer_created"] is True
    assert again.status_code == 200
    assert again.json()["ledger_applied"] is False

    customer = client.get(f"/api/sales/customers/{accepted.json()['customer_id']}", headers=headers)
    assert Decimal(customer.json()["total_value"]) == Decimal("5000")

    locked = client.post(f"/api/sales/quotes/{quote_id}/status", json={"status": "Declined"}, headers=headers)
    assert locked.status_code == 409
    assert locked.json()["kind"] == "conflict"


def test_bulk_convert_and_delete_lead_routes(client: TestClient) -> None:
    headers = _bootstrap(client)
    lead = client.post("/api/sales/leads", json={"name": "Acme Corp", "budget": "750"}, headers=headers)
    assert lead.status_code == 201
    lead_id = lead.json()["public_id"]

    converted = client.post("/api/sales/leads/bulk-convert", json={"lead_ids": [lead_id]}, headers=headers)
    assert converted.status_code == 200
    pipeline_id = converted.json()["created_pipeline_ids"][0]

    rerun = client.post("/api/sales/leads/bulk-convert", json={"lead_ids": [lead_id]}, headers=headers)
    assert rerun.json()["created_pipeline_ids"] == []
    assert rerun.json()["skipped_lead_ids"] == [lead_id]

    leads = client.get("/api/sales/leads", params={"status": "Converted"}, headers=headers)
    assert [item["public_id"] for item in leads.json()] == [lead_id]

    pipelines = client.get("/api/sales/pipelines", params={"stage": "Qualified"}, headers=headers)
    assert pipelines.json()[0]["title"] == "Acme Corp"

    deleted = client.delete(f"/api/sales/leads/{lead_id}", headers=headers)
    assert deleted.status_code == 200
    assert deleted.json()["deleted_pipeline_ids"] == [pipeline_id]

    assert client.get(f"/api/sales/leads/{lead_id}", headers=headers).status_code == 404
    assert client.get(f"/api/sales/pipelines/{pipeline_id}", headers=headers).status_code == 404


def test_bulk_convert_rejects_empty_and_closed_stage(client: TestClient) -> None:
    headers = _bootstrap(client)

    empty = client.post("/api/sales/leads/bulk-convert", json={"lead_ids": []}, headers=headers)
    assert empty.status_code == 422

    lead_id = client.post("/api/sales/leads", json={"name": "Acme Corp"}, headers=headers).json()["public_id"]
    closed = client.post(
        "/api/sales/leads/bulk-convert",
        json={"lead_ids": [lead_id], "stage": "ClosedWon"},
        headers=headers,
    )
    assert closed.status_code == 422
    assert closed.json()["code"] == "sales_lead_bulk_convert_failed"
