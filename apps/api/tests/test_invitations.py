from __future__ import annotations

import uuid
from collections.abc import Generator
from datetime import datetime, timedelta, timezone
from urllib.parse import parse_qs, urlsplit

import pytest
from fastapi import Request
from fastapi.testclient import TestClient
from sqlalchemy import create_engine, select
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from app import audit, events
from app.clients.api import ADMIN_PERMISSIONS, get_current_user as clients_get_current_user
from app.clients.errors import NotFound, ValidationError
from app.clients.lifecycle import LifecycleController
from app.clients.models import ContactSubmission, SignupInvitation
from app.clients.schemas import InvitationCreate
from app.clients.service import ActorUser, SubmissionService
from app.core.config import get_settings
from app.core.database import Base, get_db
from app.main import app
from app.middleware.rate_limit import reset_rate_limiter


ACTOR = ActorUser(user_id="admin-1", is_admin=True, correlation_id="corr-invite")


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
def client(db_session: Session) -> Generator[TestClient, None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    def override_get_current_user(request: Request) -> ActorUser:
        return ActorUser(
            user_id="admin-1",
            permissions=set(ADMIN_PERMISSIONS),
            is_admin=True,
            correlation_id=getattr(request.state, "correlation_id", None),
        )

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[clients_get_current_user] = override_get_current_user
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def _submission(db_session: Session, status: str = "converted") -> ContactSubmission:
    submission = ContactSubmission(
        first_name="Ann",
        last_name="Walker",
        email="a@x.com",
        phone="555-0100",
        dog_name="Rex",
        message="Pulls on the leash",
        status=status,
    )
    db_session.add(submission)
    db_session.commit()
    return submission


def test_create_invitation_for_submission_uses_its_email(db_session: Session, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("PORTAL_SIGNUP_URL", "https://portal.test/signup")
    monkeypatch.setenv("INVITATION_TTL_DAYS", "3")
    get_settings.cache_clear()
    submission = _submission(db_session)

    invitation = SubmissionService().create_invitation(db_session, ACTOR, InvitationCreate(submission_id=submission.id))

    assert invitation.submission_id == submission.id
    assert invitation.email == "a@x.com"
    assert invitation.used_at is None
    remaining = invitation.expires_at - datetime.now(timezone.utc)
    assert timedelta(days=2, hours=23) < remaining <= timedelta(days=3)
    url = urlsplit(invitation.signup_url or "")
    assert f"{url.scheme}://{url.netloc}{url.path}" == "https://portal.test/signup"
    assert parse_qs(url.query) == {"token": [invitation.invitation_token], "email": ["a@x.com"]}

    entry = audit.audit_entries[-1]
    assert entry["entity_type"] == "clients.invitation"
    assert entry["action"] == "create"
    assert invitation.invitation_token not in str(entry["after"])
    assert events.published_events[-1]["event_type"] == "clients.invitation.created"


def test_create_invitation_requires_an_email_source(db_session: Session) -> None:
    with pytest.raises(ValidationError):
        SubmissionService().create_invitation(db_session, ACTOR, InvitationCreate())


def test_create_invitation_for_missing_submission_raises(db_session: Session) -> None:
    with pytest.raises(NotFound):
        SubmissionService().create_invitation(db_session, ACTOR, InvitationCreate(submission_id=uuid.uuid4()))


def test_get_invitation_prefills_from_submission(db_session: Session) -> None:
    submission = _submission(db_session)
    service = SubmissionService()
    invitation = service.create_invitation(db_session, ACTOR, InvitationCreate(submission_id=submission.id))

    prefill = service.get_invitation(db_session, invitation.invitation_token)

    assert prefill.email == "a@x.com"
    assert prefill.first_name == "Ann"
    assert prefill.dog_name == "Rex"
    assert prefill.message == "Pulls on the leash"


def test_mark_invitation_used_consumes_the_token(db_session: Session) -> None:
    service = SubmissionService()
    invitation = service.create_invitation(db_session, ACTOR, InvitationCreate(email="walk-in@x.com"))

    used = service.mark_invitation_used(db_session, ACTOR, invitation.invitation_token)

    assert used.used_at is not None
    with pytest.raises(NotFound) as exc_info:
        service.get_invitation(db_session, invitation.invitation_token)
    assert exc_info.value.details["reason"] == "used"
    with pytest.raises(NotFound):
        service.mark_invitation_used(db_session, ACTOR, invitation.invitation_token)
    assert [entry["action"] for entry in audit.audit_entries] == ["create", "use"]


def test_expired_and_unknown_tokens_are_rejected(db_session: Session) -> None:
    db_session.add(
        SignupInvitation(
            email="late@x.com",
            invitation_token="invite-expired",
            expires_at=datetime.now(timezone.utc) - timedelta(minutes=1),
        )
    )
    db_session.commit()
    service = SubmissionService()

    with pytest.raises(NotFound) as expired:
        service.get_invitation(db_session, "invite-expired")
    with pytest.raises(NotFound) as unknown:
        service.get_invitation(db_session, "invite-unknown")

    assert expired.value.details["reason"] == "expired"
    assert unknown.value.details["reason"] == "unknown"


def test_list_invitations_filters_outstanding(db_session: Session) -> None:
    submission = _submission(db_session)
    service = SubmissionService()
    used = service.create_invitation(db_session, ACTOR, InvitationCreate(submission_id=submission.id))
    service.mark_invitation_used(db_session, ACTOR, used.invitation_token)
    fresh = service.create_invitation(db_session, ACTOR, InvitationCreate(submission_id=submission.id))
    service.create_invitation(db_session, ACTOR, InvitationCreate(email="other@x.com"))

    everything = service.list_invitations(db_session)
    outstanding = service.list_invitations(db_session, submission_id=submission.id, outstanding_only=True)

    assert len(everything) == 3
    assert [item.id for item in outstanding] == [fresh.id]


def test_leaving_converted_reports_invitation_issued_by_service(db_session: Session) -> None:
    submission = _submission(db_session)
    SubmissionService().create_invitation(db_session, ACTOR, InvitationCreate(submission_id=submission.id))

    outcome = LifecycleController().request_status_change(db_session, ACTOR, submission.id, "contacted")

    assert outcome.ok is True
    assert outcome.outstanding_invitation is True


def test_invitation_endpoints_issue_read_and_consume(client: TestClient, db_session: Session) -> None:
    submission = _submission(db_session)

    created = client.post("/api/admin/invitations", json={"submission_id": str(submission.id)})
    assert created.status_code == 201
    token = created.json()["invitation_token"]

    listed = client.get("/api/admin/invitations", params={"outstanding": "true"})
    assert listed.status_code == 200
    assert [item["invitation_token"] for item in listed.json()] == [token]

    prefill = client.get(f"/api/intake/invitations/{token}")
    assert prefill.status_code == 200
    assert prefill.json()["first_name"] == "Ann"

    used = client.post(f"/api/intake/invitations/{token}/use")
    assert used.status_code == 200
    assert used.json()["used_at"] is not None

    again = client.get(f"/api/intake/invitations/{token}")
    assert again.status_code == 404
    assert again.json()["code"] == "not_found"
    assert again.json()["details"]["reason"] == "used"

    stored = db_session.scalar(select(SignupInvitation).where(SignupInvitation.invitation_token == token))
    assert stored is not None and stored.used_at is not None


def test_invitation_endpoints_require_permissions(db_session: Session) -> None:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    def override_get_current_user(request: Request) -> ActorUser:
        return ActorUser(user_id="staff-1", permissions={"clients.submissions.read"})

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[clients_get_current_user] = override_get_current_user
    try:
        with TestClient(app) as test_client:
            created = test_client.post("/api/admin/invitations", json={"email": "a@x.com"})
            listed = test_client.get("/api/admin/invitations")
    finally:
        app.dependency_overrides.clear()

    assert created.status_code == 403
    assert created.json()["code"] == "invitation_create_failed"
    assert listed.status_code == 403
