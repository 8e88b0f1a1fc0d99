from __future__ import annotations

import uuid
from collections.abc import Generator
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any

import pytest
from sqlalchemy import create_engine, func, select
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from app import audit, events
from app.clients.conversion import ConversionEngine, ConversionResult
from app.clients.deconversion import DELETION_STAGES, DeconversionEngine
from app.clients.errors import NotFound, PartialFailure
from app.clients.models import (
    ClientNote,
    ClientProfile,
    ContactSubmission,
    Dog,
    Message,
    MessageReadReceipt,
    Payment,
    Referral,
    SignupInvitation,
    TrainingSession,
    UserAccount,
)
from app.clients.repositories import (
    ClientNoteRepository,
    DogRepository,
    MessageReadReceiptRepository,
    MessageRepository,
    PaymentRepository,
    ReferralRepository,
    TrainingSessionRepository,
    UserAccountRepository,
)
from app.clients.service import ActorUser
from app.core.database import Base
from app.identity.client import IdentityRecord, IdentityServiceUnavailable, StubIdentityClient
from app.identity.models import AuthIdentity


ACTOR = ActorUser(user_id="admin-1", is_admin=True, correlation_id="corr-deconvert")
DEPENDENT_MODELS = (TrainingSession, Dog, ClientNote, Message, MessageReadReceipt, Referral, Payment, SignupInvitation)


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


def _count(db_session: Session, model: type) -> int:
    return int(db_session.scalar(select(func.count()).select_from(model)) or 0)


def _converted_client(db_session: Session, email: str = "a@x.com") -> tuple[ContactSubmission, ConversionResult]:
    submission = ContactSubmission(first_name="Ann", last_name="Walker", email=email, dog_name="Rex", status="contacted")
    db_session.add(submission)
    db_session.commit()
    result = ConversionEngine().convert(db_session, ACTOR, submission.id)
    return submission, result


def _seed_dependents(db_session: Session, result: ConversionResult) -> None:
    dog = db_session.scalar(select(Dog).where(Dog.owner_id == result.profile_id))
    assert dog is not None
    message = Message(sender_id=result.profile_id, recipient_id=None, subject="Welcome", body="See you Monday")
    db_session.add(message)
    db_session.flush()
    db_session.add_all(
        [
            TrainingSession(
                profile_id=result.profile_id,
                dog_id=dog.id,
                scheduled_at=datetime.now(timezone.utc) + timedelta(days=3),
            ),
            ClientNote(profile_id=result.profile_id, title="Intake call", content="Reactive on walks"),
            MessageReadReceipt(message_id=message.id, user_id=result.user_id),
            Referral(referrer_id=result.profile_id, referral_code="ANN-10"),
            Payment(profile_id=result.profile_id, amount=Decimal("120.00")),
            SignupInvitation(
                profile_id=result.profile_id,
                email=result.email,
                invitation_token=f"invite-{uuid.uuid4()}",
                expires_at=datetime.now(timezone.utc) + timedelta(days=7),
            ),
        ]
    )
    db_session.commit()


class _FailingNoteRepository(ClientNoteRepository):
    def delete_by_owner(self, session: Session, profile_id: uuid.UUID) -> int:
        raise OperationalError("DELETE FROM client_note", {}, Exception("database is locked"))


class _FailingAccountRepository(UserAccountRepository):
    def delete_by_id(self, session: Session, user_id: uuid.UUID) -> int:
        raise OperationalError("DELETE FROM user_account", {}, Exception("database is locked"))


class _UnreachableIdentityClient:
    def create_identity(self, email: str, credential: str, metadata: dict[str, Any]) -> IdentityRecord:
        raise IdentityServiceUnavailable("identity service timed out")

    def delete_identity(self, identity_id: uuid.UUID) -> None:
        raise IdentityServiceUnavailable("identity service timed out")


def test_deactivate_flips_flags_and_keeps_rows(db_session: Session) -> None:
    _, result = _converted_client(db_session)
    _seed_dependents(db_session, result)

    outcome = DeconversionEngine().deactivate(db_session, ACTOR, "A@X.com")

    assert outcome.is_active is False
    assert outcome.profile_id == result.profile_id
    db_session.expire_all()
    account = db_session.get(UserAccount, result.user_id)
    profile = db_session.get(ClientProfile, result.profile_id)
    assert account is not None and account.is_active is False
    assert profile is not None and profile.is_active is False
    for model in DEPENDENT_MODELS:
        assert _count(db_session, model) == 1
    assert db_session.get(AuthIdentity, result.user_id) is not None
    assert audit.entries_for("clients.account", str(result.user_id), "deactivate")


def test_reactivate_restores_flags(db_session: Session) -> None:
    _, result = _converted_client(db_session)
    engine = DeconversionEngine()
    engine.deactivate(db_session, ACTOR, "a@x.com")

    outcome = engine.reactivate(db_session, ACTOR, "a@x.com")

    assert outcome.is_active is True
    db_session.expire_all()
    assert db_session.get(UserAccount, result.user_id).is_active is True
    assert db_session.get(ClientProfile, result.profile_id).is_active is True
    assert any(item["event_type"] == "clients.account.reactivated" for item in events.published_events)


def _history_sizes(db_session: Session, result: ConversionResult) -> dict[str, int]:
    profile_id = result.profile_id
    return {
        "dogs": len(DogRepository().list_by_owner(db_session, profile_id)),
        "training_sessions": len(TrainingSessionRepository().list_by_profile(db_session, profile_id)),
        "client_notes": len(ClientNoteRepository().list_by_profile(db_session, profile_id)),
        "messages": len(MessageRepository().list_for_profile(db_session, profile_id)),
        "read_receipts": len(MessageReadReceiptRepository().list_by_user(db_session, result.user_id)),
        "referrals": len(ReferralRepository().list_by_referrer(db_session, profile_id)),
        "payments": len(PaymentRepository().list_by_profile(db_session, profile_id)),
    }


def test_client_history_survives_deactivation_but_not_deletion(db_session: Session) -> None:
    _, result = _converted_client(db_session)
    _seed_dependents(db_session, result)
    engine = DeconversionEngine()

    engine.deactivate(db_session, ACTOR, "a@x.com")
    assert set(_history_sizes(db_session, result).values()) == {1}

    engine.delete_completely(db_session, ACTOR, "a@x.com")
    db_session.expire_all()
    assert set(_history_sizes(db_session, result).values()) == {0}


def test_deactivate_unknown_email_raises_not_found(db_session: Session) -> None:
    with pytest.raises(NotFound):
        DeconversionEngine().deactivate(db_session, ACTOR, "nobody@x.com")


def test_delete_completely_removes_every_dependent(db_session: Session) -> None:
    submission, result = _converted_client(db_session)
    _seed_dependents(db_session, result)

    report = DeconversionEngine().delete_completely(db_session, ACTOR, "a@x.com")

    assert report.profile_id == result.profile_id
    assert report.user_id == result.user_id
    assert report.identity_deleted is True
    assert report.warnings == []
    assert list(report.deleted) == list(DELETION_STAGES[:-1])
    assert report.deleted["dogs"] == 1
    assert report.deleted["client_profile"] == 1
    assert report.deleted["user_account"] == 1

    db_session.expire_all()
    for model in DEPENDENT_MODELS:
        assert _count(db_session, model) == 0
    assert db_session.get(ClientProfile, result.profile_id) is None
    assert db_session.scalar(select(UserAccount).where(UserAccount.email == "a@x.com")) is None
    assert db_session.get(AuthIdentity, result.user_id) is None

    refreshed = db_session.get(ContactSubmission, submission.id)
    assert refreshed is not None
    assert refreshed.assigned_profile_id is None
    assert any(item["event_type"] == "clients.account.deleted" for item in events.published_events)


def test_delete_completely_resolves_through_submission_when_account_missing(db_session: Session) -> None:
    _, result = _converted_client(db_session)
    db_session.execute(UserAccount.__table__.delete().where(UserAccount.id == result.user_id))
    db_session.commit()

    report = DeconversionEngine().delete_completely(db_session, ACTOR, "a@x.com")

    assert report.profile_id == result.profile_id
    assert report.user_id == result.user_id
    assert report.deleted["user_account"] == 0
    db_session.expire_all()
    assert db_session.get(ClientProfile, result.profile_id) is None
    assert _count(db_session, Dog) == 0


def test_delete_completely_unknown_email_raises_not_found(db_session: Session) -> None:
    with pytest.raises(NotFound):
        DeconversionEngine().delete_completely(db_session, ACTOR, "nobody@x.com")


def _admin_account(db_session: Session, email: str = "boss@x.com") -> uuid.UUID:
    admin_id = uuid.uuid4()
    db_session.add(AuthIdentity(id=admin_id, email=email, credential_hash="x", user_metadata={}))
    db_session.add(UserAccount(id=admin_id, email=email, role="admin", is_active=True))
    db_session.commit()
    return admin_id


def test_delete_completely_refuses_admin_account(db_session: Session) -> None:
    admin_id = _admin_account(db_session)

    with pytest.raises(NotFound):
        DeconversionEngine().delete_completely(db_session, ACTOR, "Boss@X.com")

    db_session.expire_all()
    admin = db_session.get(UserAccount, admin_id)
    assert admin is not None
    assert admin.role == "admin"
    assert db_session.get(AuthIdentity, admin_id) is not None
    assert not any(item["event_type"] == "clients.account.deleted" for item in events.published_events)


def test_delete_completely_refuses_converted_admin(db_session: Session) -> None:
    admin_id = _admin_account(db_session, "a@x.com")
    _, result = _converted_client(db_session, "a@x.com")
    assert result.user_id == admin_id

    with pytest.raises(NotFound):
        DeconversionEngine().delete_completely(db_session, ACTOR, "a@x.com")

    db_session.expire_all()
    assert db_session.get(UserAccount, admin_id) is not None
    assert db_session.get(ClientProfile, result.profile_id) is not None
    assert db_session.get(AuthIdentity, admin_id) is not None


def test_deactivate_refuses_admin_account(db_session: Session) -> None:
    admin_id = _admin_account(db_session)

    with pytest.raises(NotFound):
        DeconversionEngine().deactivate(db_session, ACTOR, "boss@x.com")

    db_session.expire_all()
    admin = db_session.get(UserAccount, admin_id)
    assert admin is not None and admin.is_active is True


def test_delete_stage_failure_reports_stage_and_resumes(db_session: Session) -> None:
    _, result = _converted_client(db_session)
    _seed_dependents(db_session, result)

    with pytest.raises(PartialFailure) as exc_info:
        DeconversionEngine(note_repository=_FailingNoteRepository()).delete_completely(db_session, ACTOR, "a@x.com")

    error = exc_info.value
    assert error.stage == "client_notes"
    assert error.last_completed_stage == "dogs"
    assert error.retryable is False
    assert error.details["operation"] == "delete"

    db_session.expire_all()
    assert _count(db_session, TrainingSession) == 0
    assert _count(db_session, Dog) == 0
    assert _count(db_session, ClientNote) == 1
    assert db_session.get(ClientProfile, result.profile_id) is not None

    report = DeconversionEngine().delete_completely(db_session, ACTOR, "a@x.com")

    assert report.deleted["dogs"] == 0
    assert report.deleted["client_notes"] == 1
    db_session.expire_all()
    assert _count(db_session, ClientNote) == 0
    assert _count(db_session, UserAccount) == 0


def test_delete_resumes_after_profile_stage(db_session: Session) -> None:
    _, result = _converted_client(db_session)

    with pytest.raises(PartialFailure) as exc_info:
        DeconversionEngine(account_repository=_FailingAccountRepository()).delete_completely(db_session, ACTOR, "a@x.com")

    assert exc_info.value.stage == "user_account"
    assert exc_info.value.last_completed_stage == "client_profile"

    report = DeconversionEngine().delete_completely(db_session, ACTOR, "a@x.com")

    assert report.profile_id is None
    assert report.deleted["user_account"] == 1
    assert report.identity_deleted is True
    db_session.expire_all()
    assert _count(db_session, UserAccount) == 0
    assert _count(db_session, AuthIdentity) == 0


def test_identity_failure_is_a_warning(db_session: Session) -> None:
    _, result = _converted_client(db_session)
    engine = DeconversionEngine(identity_client_factory=lambda session: _UnreachableIdentityClient())

    report = engine.delete_completely(db_session, ACTOR, "a@x.com")

    assert report.identity_deleted is False
    assert len(report.warnings) == 1
    assert str(result.user_id) in report.warnings[0]
    db_session.expire_all()
    assert _count(db_session, UserAccount) == 0
    assert _count(db_session, ClientProfile) == 0
    assert db_session.get(AuthIdentity, result.user_id) is not None


def test_stub_identity_delete_tolerates_missing_identity(db_session: Session) -> None:
    StubIdentityClient(db_session).delete_identity(uuid.uuid4())
