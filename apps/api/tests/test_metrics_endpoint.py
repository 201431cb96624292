from __future__ import annotations

import uuid
from collections.abc import Callable, Generator

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from app.company.api import get_caller_context
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
def configure_env(monkeypatch: pytest.MonkeyPatch) -> Generator[None, None, None]:
    monkeypatch.setenv("METRICS_ENABLED", "true")
    monkeypatch.setenv("RATE_LIMIT_DISABLED", "true")
    get_settings.cache_clear()
    reset_rate_limiter()
    yield
    get_settings.cache_clear()
    reset_rate_limiter()


@pytest.fixture()
def client(db_session: Session) -> Generator[tuple[TestClient, Callable[[CallerContext], None]], None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    state = {"caller": CallerContext.of("metrics-admin@example.com", ["ADMIN"])}

    def override_get_caller_context() -> CallerContext:
        return state["caller"]

    def set_caller(caller: CallerContext) -> None:
        state["caller"] = caller

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_caller_context] = override_get_caller_context

    with TestClient(app) as test_client:
        yield test_client, set_caller

    app.dependency_overrides.clear()


def test_metrics_endpoint_exposes_http_and_invariant_metrics(
    client: tuple[TestClient, Callable[[CallerContext], None]],
) -> None:
    test_client, _ = client
    assert test_client.get("/health").status_code == 200

    company = test_client.post("/api/companies", json={"name": "Metrics Co"})
    assert company.status_code == 201
    projects_path = f"/api/companies/{company.json()['id']}/projects"
    assert test_client.post(projects_path, json={"name": "Alpha"}).status_code == 201
    assert test_client.post(projects_path, json={"name": "ALPHA"}).status_code == 409

    contacts_path = f"/api/companies/{company.json()['id']}/contacts"
    assert test_client.post(contacts_path, json={"first_name": "A", "last_name": "Lee", "is_primary": True}).status_code == 201
    assert test_client.post(contacts_path, json={"first_name": "B", "last_name": "Lee", "is_primary": True}).status_code == 201

    metrics = test_client.get("/metrics")
    assert metrics.status_code == 200
    body = metrics.text

    assert "http_requests_total" in body
    assert "http_request_duration_seconds" in body
    assert 'path="/health"' in body
    assert 'path="/api/companies/{id}/projects"' in body
    assert 'company_invariant_conflicts_total{resource="company.project",reason="duplicate_name"}' in body
    assert "company_primary_contact_demotions_total" in body


def test_metrics_endpoint_requires_admin(client: tuple[TestClient, Callable[[CallerContext], None]]) -> None:
    test_client, set_caller = client

    set_caller(CallerContext.of("user@example.com", ["USER"]))
    forbidden = test_client.get("/metrics")
    assert forbidden.status_code == 403
    assert forbidden.json()["code"] == "forbidden"

    set_caller(CallerContext.of(""))
    assert test_client.get("/metrics").status_code == 401


def test_metrics_endpoint_hidden_when_disabled(
    client: tuple[TestClient, Callable[[CallerContext], None]],
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    test_client, _ = client
    monkeypatch.setenv("METRICS_ENABLED", "false")
    get_settings.cache_clear()

    response = test_client.get("/metrics")
    assert response.status_code == 404
    assert response.json()["code"] == "not_found"


def test_access_denials_are_counted(client: tuple[TestClient, Callable[[CallerContext], None]]) -> None:
    test_client, set_caller = client

    set_caller(CallerContext.of("user@example.com", ["USER"]))
    assert test_client.post(f"/api/companies/{uuid.uuid4()}/projects", json={"name": "Nope"}).status_code == 403

    set_caller(CallerContext.of("metrics-admin@example.com", ["ADMIN"]))
    body = test_client.get("/metrics").text
    assert 'access_denied_total{resource="company.project",action="create",reason="role"}' in body
