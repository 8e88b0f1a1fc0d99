from __future__ import annotations

import uuid
from collections.abc import Generator
from datetime import datetime, timedelta, timezone
from typing import Any

import pytest
from sqlalchemy import create_engine, func, select
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from app import audit, events
from app.clients.conversion import ConversionEngine
from app.clients.errors import AlreadyConverted, ConfirmationRequired, ExternalServiceUnavailable, NotFound, PartialFailure, ValidationError
from app.clients.lifecycle import LifecycleController, find_live_profile
from app.clients.models import ClientProfile, ContactSubmission, Dog, SignupInvitation, UserAccount
from app.clients.repositories import ClientProfileRepository
from app.clients.service import ActorUser
from app.core.database import Base
from app.identity.client import IdentityRecord, IdentityServiceUnavailable
from app.identity.models import AuthIdentity


ACTOR = ActorUser(user_id="admin-1", is_admin=True, correlation_id="corr-lifecycle")


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
    yield
    audit.audit_entries.clear()
    events.published_events.clear()


def _submission(db_session: Session, **overrides: Any) -> ContactSubmission:
    values: dict[str, Any] = {
        "first_name": "Ann",
        "last_name": "Walker",
        "email": "a@x.com",
        "dog_name": "Rex",
        "message": "Pulls on the leash",
        "status": "new",
    }
    values.update(overrides)
    submission = ContactSubmission(**values)
    db_session.add(submission)
    db_session.commit()
    return submission


def _count(db_session: Session, model: type) -> int:
    return int(db_session.scalar(select(func.count()).select_from(model)) or 0)


class _UnreachableIdentityClient:
    def create_identity(self, email: str, credential: str, metadata: dict[str, Any]) -> IdentityRecord:
        raise IdentityServiceUnavailable("identity service timed out")

    def delete_identity(self, identity_id: uuid.UUID) -> None:
        raise IdentityServiceUnavailable("identity service timed out")


def test_plain_transition_updates_status(db_session: Session) -> None:
    submission = _submission(db_session)

    outcome = LifecycleController().request_status_change(db_session, ACTOR, submission.id, "contacted")

    assert outcome.ok is True
    assert outcome.previous_status == "new"
    assert outcome.status == "contacted"
    assert outcome.action == "none"
    db_session.refresh(submission)
    assert submission.status == "contacted"
    status_audit = audit.entries_for("clients.submission", str(submission.id), "status_change")
    assert status_audit[-1]["changed"] == ["status"]
    changed = [item for item in events.published_events if item["event_type"] == "clients.submission.status_changed"]
    assert changed[-1]["payload"]["to_status"] == "contacted"


def test_same_status_is_a_no_op(db_session: Session) -> None:
    submission = _submission(db_session, status="contacted")

    outcome = LifecycleController().request_status_change(db_session, ACTOR, submission.id, "contacted")

    assert outcome.ok is True
    assert outcome.no_op is True
    assert outcome.notices
    assert audit.audit_entries == []
    assert events.published_events == []


def test_invalid_status_is_reported_in_outcome(db_session: Session) -> None:
    submission = _submission(db_session)

    outcome = LifecycleController().request_status_change(db_session, ACTOR, submission.id, "archived")

    assert outcome.ok is False
    assert isinstance(outcome.error, ValidationError)
    db_session.refresh(submission)
    assert submission.status == "new"


def test_invalid_resolution_is_reported_in_outcome(db_session: Session) -> None:
    submission = _submission(db_session)

    outcome = LifecycleController().request_status_change(db_session, ACTOR, submission.id, "new", resolution="archive")

    assert isinstance(outcome.error, ValidationError)
    assert outcome.error.details["allowed"] == ["deactivate", "delete"]


def test_missing_submission_is_reported_in_outcome(db_session: Session) -> None:
    outcome = LifecycleController().request_status_change(db_session, ACTOR, uuid.uuid4(), "contacted")

    assert outcome.ok is False
    assert isinstance(outcome.error, NotFound)
    assert outcome.previous_status is None


def test_moving_to_converted_provisions_the_client(db_session: Session) -> None:
    submission = _submission(db_session, status="contacted")

    outcome = LifecycleController().request_status_change(db_session, ACTOR, submission.id, "converted")

    assert outcome.ok is True
    assert outcome.action == "convert"
    assert outcome.conversion is not None
    assert outcome.conversion.temporary_credential_issued is True
    db_session.refresh(submission)
    assert submission.status == "converted"
    assert submission.assigned_profile_id == outcome.conversion.profile_id


def test_conversion_failure_leaves_status_unchanged(db_session: Session) -> None:
    submission = _submission(db_session, status="contacted")
    controller = LifecycleController(
        conversion_engine=ConversionEngine(identity_client_factory=lambda session: _UnreachableIdentityClient())
    )

    outcome = controller.request_status_change(db_session, ACTOR, submission.id, "converted")

    assert outcome.ok is False
    assert outcome.status == "contacted"
    assert isinstance(outcome.error, ExternalServiceUnavailable)
    assert outcome.error.retryable is True
    db_session.refresh(submission)
    assert submission.status == "contacted"
    assert submission.assigned_profile_id is None


class _LockedProfileRepository(ClientProfileRepository):
    def get_active(self, session: Session, profile_id: uuid.UUID) -> ClientProfile | None:
        raise OperationalError("SELECT client_profile", {}, Exception("database is locked"))


def test_profile_lookup_failure_is_reported_in_outcome(db_session: Session) -> None:
    submission = _submission(db_session)
    converted = LifecycleController().request_status_change(db_session, ACTOR, submission.id, "converted")
    assert converted.ok is True

    controller = LifecycleController(profile_repository=_LockedProfileRepository())
    outcome = controller.request_status_change(db_session, ACTOR, submission.id, "contacted")

    assert outcome.ok is False
    assert outcome.status == "converted"
    assert isinstance(outcome.error, PartialFailure)
    assert outcome.error.stage == "profile_lookup"
    assert outcome.error.retryable is True
    db_session.expire_all()
    refreshed = db_session.get(ContactSubmission, submission.id)
    assert refreshed is not None
    assert refreshed.status == "converted"
    assert refreshed.assigned_profile_id == converted.conversion.profile_id


def test_leaving_converted_with_live_profile_requires_confirmation(db_session: Session) -> None:
    submission = _submission(db_session)
    controller = LifecycleController()
    converted = controller.request_status_change(db_session, ACTOR, submission.id, "converted")
    audit.audit_entries.clear()

    outcome = controller.request_status_change(db_session, ACTOR, submission.id, "new")

    assert outcome.ok is False
    assert outcome.requires_confirmation is True
    assert isinstance(outcome.error, ConfirmationRequired)
    assert outcome.error.details["profile"]["profile_id"] == str(converted.conversion.profile_id)
    assert outcome.error.details["options"] == ["deactivate", "delete"]
    assert outcome.status == "converted"
    assert audit.audit_entries == []

    db_session.refresh(submission)
    assert submission.status == "converted"
    profile = db_session.get(ClientProfile, converted.conversion.profile_id)
    assert profile is not None and profile.is_active is True


def test_deactivate_resolution_keeps_link_and_data(db_session: Session) -> None:
    submission = _submission(db_session)
    controller = LifecycleController()
    converted = controller.request_status_change(db_session, ACTOR, submission.id, "converted")

    outcome = controller.request_status_change(db_session, ACTOR, submission.id, "contacted", resolution="deactivate")

    assert outcome.ok is True
    assert outcome.action == "deactivate"
    assert outcome.account is not None and outcome.account.is_active is False
    db_session.expire_all()
    refreshed = db_session.get(ContactSubmission, submission.id)
    assert refreshed.status == "contacted"
    assert refreshed.assigned_profile_id == converted.conversion.profile_id
    assert db_session.get(ClientProfile, converted.conversion.profile_id).is_active is False
    assert _count(db_session, Dog) == 1


def test_delete_resolution_removes_client_and_unlinks(db_session: Session) -> None:
    submission = _submission(db_session)
    controller = LifecycleController()
    controller.request_status_change(db_session, ACTOR, submission.id, "converted")

    outcome = controller.request_status_change(db_session, ACTOR, submission.id, "removed", resolution="delete")

    assert outcome.ok is True
    assert outcome.action == "delete"
    assert outcome.deletion is not None
    assert outcome.deletion.identity_deleted is True
    db_session.expire_all()
    refreshed = db_session.get(ContactSubmission, submission.id)
    assert refreshed.status == "removed"
    assert refreshed.assigned_profile_id is None
    assert _count(db_session, ClientProfile) == 0
    assert _count(db_session, UserAccount) == 0
    assert _count(db_session, Dog) == 0


def test_leaving_converted_without_profile_reports_outstanding_invitation(db_session: Session) -> None:
    submission = _submission(db_session, status="converted")
    db_session.add(
        SignupInvitation(
            submission_id=submission.id,
            email=submission.email,
            invitation_token="invite-outstanding",
            expires_at=datetime.now(timezone.utc) + timedelta(days=7),
        )
    )
    db_session.commit()

    outcome = LifecycleController().request_status_change(db_session, ACTOR, submission.id, "new")

    assert outcome.ok is True
    assert outcome.requires_confirmation is False
    assert outcome.outstanding_invitation is True
    assert len(outcome.notices) == 2
    db_session.refresh(submission)
    assert submission.status == "new"


def test_leaving_converted_without_profile_ignores_resolution(db_session: Session) -> None:
    submission = _submission(db_session, status="converted")

    outcome = LifecycleController().request_status_change(db_session, ACTOR, submission.id, "new", resolution="delete")

    assert outcome.ok is True
    assert outcome.action == "none"
    assert outcome.outstanding_invitation is False
    assert outcome.deletion is None


def test_find_live_profile_by_assigned_link_then_email(db_session: Session) -> None:
    converted_submission = _submission(db_session)
    controller = LifecycleController()
    outcome = controller.request_status_change(db_session, ACTOR, converted_submission.id, "converted")
    later_submission = _submission(db_session, first_name="Annie", email="A@X.com ")

    _, by_link = controller.find_live_profile(db_session, converted_submission.id)
    _, by_email = controller.find_live_profile(db_session, later_submission.id)

    assert by_link is not None and by_link.matched_by == "assigned_profile"
    assert by_email is not None and by_email.matched_by == "email"
    assert by_link.profile_id == by_email.profile_id == outcome.conversion.profile_id
    assert by_link.account_email == "a@x.com"


def test_find_live_profile_skips_inactive_profile(db_session: Session) -> None:
    submission = _submission(db_session)
    controller = LifecycleController()
    controller.request_status_change(db_session, ACTOR, submission.id, "converted")
    controller.request_status_change(db_session, ACTOR, submission.id, "contacted", resolution="deactivate")

    db_session.refresh(submission)
    assert find_live_profile(db_session, submission) is None


def test_find_live_profile_missing_submission_raises(db_session: Session) -> None:
    with pytest.raises(NotFound):
        LifecycleController().find_live_profile(db_session, uuid.uuid4())


def test_reconverting_after_deactivation_relinks_same_profile(db_session: Session) -> None:
    submission = _submission(db_session)
    controller = LifecycleController()
    first = controller.request_status_change(db_session, ACTOR, submission.id, "converted")
    controller.request_status_change(db_session, ACTOR, submission.id, "new", resolution="deactivate")

    again = controller.request_status_change(db_session, ACTOR, submission.id, "converted")

    assert again.ok is True
    assert again.conversion.profile_id == first.conversion.profile_id
    assert again.conversion.linked_existing is True
    assert again.conversion.temporary_credential is None
    db_session.expire_all()
    assert db_session.get(ClientProfile, first.conversion.profile_id).is_active is True
    assert db_session.get(UserAccount, first.conversion.user_id).is_active is True
    assert _count(db_session, ClientProfile) == 1


def test_full_client_lifecycle(db_session: Session) -> None:
    submission = _submission(db_session)
    controller = LifecycleController()

    converted = controller.request_status_change(db_session, ACTOR, submission.id, "converted")
    assert converted.ok is True
    profile_id = converted.conversion.profile_id
    assert converted.conversion.temporary_credential is not None
    profile = db_session.get(ClientProfile, profile_id)
    assert [dog["name"] for dog in profile.onboarding_data["dogInfo"]["dogs"]] == ["Rex"]

    with pytest.raises(AlreadyConverted):
        controller.conversion_engine.convert(db_session, ACTOR, submission.id)
    assert _count(db_session, ClientProfile) == 1

    pending = controller.request_status_change(db_session, ACTOR, submission.id, "new")
    assert pending.requires_confirmation is True

    deactivated = controller.request_status_change(db_session, ACTOR, submission.id, "new", resolution="deactivate")
    assert deactivated.ok is True
    db_session.expire_all()
    assert db_session.get(ClientProfile, profile_id).is_active is False
    assert db_session.get(ContactSubmission, submission.id).status == "new"
    assert db_session.scalar(select(Dog).where(Dog.name == "Rex")) is not None

    report = controller.deconversion_engine.delete_completely(db_session, ACTOR, "a@x.com")
    assert report.profile_id == profile_id
    db_session.expire_all()
    assert db_session.scalar(select(Dog).where(Dog.name == "Rex")) is None
    assert _count(db_session, UserAccount) == 0
    assert _count(db_session, AuthIdentity) == 0
