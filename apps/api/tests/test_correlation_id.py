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
from app.clients.api import ADMIN_PERMISSIONS, get_current_user as clients_get_current_user
from app.clients.service import ActorUser
from app.core.config import get_settings
from app.core.database import Base, get_db
from app.main import app
from app.middleware.rate_limit import reset_rate_limiter


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
    reset_rate_limiter()
    get_settings.cache_clear()
    yield
    audit.audit_entries.clear()
    events.published_events.clear()
    reset_rate_limiter()
    get_settings.cache_clear()


@pytest.fixture()
def client(db_session: Session) -> Generator[TestClient, None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    def override_get_current_user(request: Request) -> ActorUser:
        return ActorUser(
            user_id="user-1",
            permissions=set(ADMIN_PERMISSIONS),
            is_admin=True,
            correlation_id=getattr(request.state, "correlation_id", None),
        )

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[clients_get_current_user] = override_get_current_user
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def _create_submission(client: TestClient, correlation_id: str) -> dict:
    response = client.post(
        "/api/intake/submissions",
        json={"first_name": "Corr", "last_name": "Client", "email": "corr@x.com", "dog_name": "Rex"},
        headers={"X-Correlation-Id": correlation_id},
    )
    assert response.status_code == 201
    return response.json()


def test_generated_correlation_id_returned_in_header_and_error_envelope(client: TestClient) -> None:
    response = client.get(f"/api/admin/submissions/{uuid.uuid4()}")
    assert response.status_code == 404
    header_value = response.headers.get("x-correlation-id")
    assert header_value
    body = response.json()
    assert body["correlation_id"] == header_value


def test_correlation_id_respected_when_provided(client: TestClient) -> None:
    response = client.get(f"/api/admin/submissions/{uuid.uuid4()}", headers={"X-Correlation-Id": "abc-123"})
    assert response.status_code == 404
    assert response.headers.get("x-correlation-id") == "abc-123"
    assert response.json()["correlation_id"] == "abc-123"


def test_request_id_header_is_accepted_as_correlation_id(client: TestClient) -> None:
    response = client.get(f"/api/admin/submissions/{uuid.uuid4()}", headers={"X-Request-Id": "req-456"})
    assert response.headers.get("x-correlation-id") == "req-456"
    assert response.headers.get("x-request-surface") == "admin"


def test_malformed_correlation_id_is_replaced(client: TestClient) -> None:
    response = client.get(f"/api/admin/submissions/{uuid.uuid4()}", headers={"X-Correlation-Id": "bad id with spaces"})
    generated = response.headers.get("x-correlation-id")
    assert generated is not None
    assert generated != "bad id with spaces"
    assert response.json()["correlation_id"] == generated


def test_audit_uses_request_correlation_id(client: TestClient) -> None:
    _create_submission(client, "corr-audit-1")

    submission_audits = [entry for entry in audit.audit_entries if entry.get("entity_type") == "clients.submission"]
    assert submission_audits
    assert submission_audits[-1]["correlation_id"] == "corr-audit-1"


def test_event_envelope_includes_correlation_id(client: TestClient) -> None:
    submission = _create_submission(client, "corr-event-0")

    response = client.post(
        f"/api/admin/submissions/{submission['id']}/status",
        json={"status": "converted"},
        headers={"X-Correlation-Id": "corr-event-1"},
    )
    assert response.status_code == 200

    converted = [item for item in events.published_events if item.get("event_type") == "clients.submission.converted"]
    assert converted
    assert converted[-1].get("correlation_id") == "corr-event-1"
    assert converted[-1]["meta"]["source"] == "studio-portal-api"
