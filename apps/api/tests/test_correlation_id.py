from __future__ import annotations

import uuid
from collections.abc import Generator

import pytest
from fastapi import Request
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from app import audit, events
from app.company.api import get_caller_context
from app.company.models import Company
from app.core.config import get_settings
from app.core.database import Base, get_db
from app.main import app
from app.middleware.rate_limit import reset_rate_limiter
from app.platform.security.context import CallerContext


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
def clear_stubs(monkeypatch: pytest.MonkeyPatch) -> Generator[None, None, None]:
    monkeypatch.setenv("RATE_LIMIT_DISABLED", "true")
    audit.audit_entries.clear()
    events.published_events.clear()
    reset_rate_limiter()
    get_settings.cache_clear()
    yield
    audit.audit_entries.clear()
    events.published_events.clear()
    reset_rate_limiter()
    get_settings.cache_clear()


@pytest.fixture()
def company_id(db_session: Session) -> uuid.UUID:
    company = Company(name="Corr Co")
    db_session.add(company)
    db_session.commit()
    return company.id


@pytest.fixture()
def client(db_session: Session) -> Generator[TestClient, None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    def override_get_caller_context(request: Request) -> CallerContext:
        return CallerContext.of(
            "admin@example.com",
            ["ADMIN"],
            correlation_id=getattr(request.state, "correlation_id", None),
        )

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_caller_context] = override_get_caller_context
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def test_generated_correlation_id_returned_in_header_and_error_envelope(client: TestClient) -> None:
    response = client.get(f"/api/companies/{uuid.uuid4()}")
    assert response.status_code == 404
    header_value = response.headers.get("x-correlation-id")
    assert header_value
    body = response.json()
    assert body["code"] == "not_found"
    assert body["correlation_id"] == header_value


def test_correlation_id_respected_when_provided(client: TestClient) -> None:
    response = client.get(f"/api/companies/{uuid.uuid4()}/contacts", headers={"X-Correlation-Id": "abc-123"})
    assert response.status_code == 404
    assert response.headers.get("x-correlation-id") == "abc-123"
    assert response.json() == {
        "code": "not_found",
        "message": "company not found",
        "details": None,
        "correlation_id": "abc-123",
    }


@pytest.mark.parametrize("raw", ["   ", "x" * 129])
def test_unusable_correlation_id_is_replaced(client: TestClient, raw: str) -> None:
    response = client.get(f"/api/companies/{uuid.uuid4()}", headers={"X-Correlation-Id": raw})
    header_value = response.headers.get("x-correlation-id")
    assert header_value
    assert header_value != raw
    assert uuid.UUID(header_value)
    assert response.json()["correlation_id"] == header_value


def test_validation_envelope_carries_correlation_id(client: TestClient, company_id: uuid.UUID) -> None:
    response = client.post(
        f"/api/companies/{company_id}/projects",
        json={"description": "missing name"},
        headers={"X-Correlation-Id": "corr-invalid-1"},
    )
    assert response.status_code == 422
    body = response.json()
    assert body["code"] == "invalid_input"
    assert body["correlation_id"] == "corr-invalid-1"
    assert any(error["loc"][-1] == "name" for error in body["details"])


def test_audit_uses_request_correlation_id(client: TestClient, company_id: uuid.UUID) -> None:
    response = client.post(
        f"/api/companies/{company_id}/contacts",
        json={"first_name": "Jane", "last_name": "Doe"},
        headers={"X-Correlation-Id": "corr-audit-1"},
    )
    assert response.status_code == 201

    contact_audits = audit.entries_for("company.contact", response.json()["id"])
    assert contact_audits
    assert contact_audits[-1]["correlation_id"] == "corr-audit-1"


def test_event_envelope_includes_correlation_id(client: TestClient, company_id: uuid.UUID) -> None:
    response = client.post(
        f"/api/companies/{company_id}/projects",
        json={"name": "Corr Project"},
        headers={"X-Correlation-Id": "corr-event-1"},
    )
    assert response.status_code == 201

    created_events = [item for item in events.published_events if item.get("event_type") == "company.project.created"]
    assert created_events
    assert created_events[-1].get("correlation_id") == "corr-event-1"
    assert created_events[-1]["company_id"] == str(company_id)
    assert created_events[-1]["actor"] == "admin@example.com"


def test_rate_limited_response_includes_correlation_id(
    client: TestClient,
    company_id: uuid.UUID,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    monkeypatch.setenv("RATE_LIMIT_DISABLED", "false")
    monkeypatch.setenv("RATE_LIMIT_MUTATIONS_PER_MINUTE", "1")
    get_settings.cache_clear()
    reset_rate_limiter()

    first = client.post(
        f"/api/companies/{company_id}/contacts",
        json={"first_name": "Rate", "last_name": "One"},
        headers={"X-Correlation-Id": "corr-rate-1"},
    )
    assert first.status_code == 201

    second = client.post(
        f"/api/companies/{company_id}/contacts",
        json={"first_name": "Rate", "last_name": "Two"},
        headers={"X-Correlation-Id": "corr-rate-1"},
    )
    assert second.status_code == 429
    payload = second.json()
    assert payload["correlation_id"] == "corr-rate-1"
    assert second.headers.get("x-correlation-id") == "corr-rate-1"
