from __future__ import annotations

import uuid
from collections.abc import Sequence
from datetime import datetime, timezone
from typing import Any, ClassVar

from sqlalchemy import and_, delete, or_, select, update
from sqlalchemy.orm import Session

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


class BaseRepository:
    model: ClassVar[type[Any]]

    def get(self, session: Session, record_id: uuid.UUID) -> Any | None:
        return session.get(self.model, record_id)

    def add(self, session: Session, record: Any) -> Any:
        session.add(record)
        session.flush()
        return record

    def _delete_where(self, session: Session, *criteria: Any) -> int:
        result = session.execute(delete(self.model).where(*criteria))
        return int(result.rowcount or 0)


class SubmissionRepository(BaseRepository):
    model = ContactSubmission

    def list(self, session: Session, *, status: str | None = None, limit: int = 100, offset: int = 0) -> Sequence[ContactSubmission]:
        stmt = select(ContactSubmission)
        if status:
            stmt = stmt.where(ContactSubmission.status == status)
        stmt = stmt.order_by(ContactSubmission.created_at.desc()).offset(offset).limit(limit)
        return session.scalars(stmt).all()

    def converted_by_email(self, session: Session, email: str) -> Sequence[ContactSubmission]:
        return session.scalars(
            select(ContactSubmission)
            .where(
                and_(
                    ContactSubmission.email == email,
                    ContactSubmission.status == "converted",
                    ContactSubmission.assigned_profile_id.is_not(None),
                )
            )
            .order_by(ContactSubmission.updated_at.desc())
        ).all()

    def list_by_ids(self, session: Session, ids: Sequence[uuid.UUID]) -> Sequence[ContactSubmission]:
        if not ids:
            return []
        return session.scalars(select(ContactSubmission).where(ContactSubmission.id.in_(list(ids)))).all()

    def unlink_profile(self, session: Session, profile_id: uuid.UUID) -> int:
        result = session.execute(
            update(ContactSubmission)
            .where(ContactSubmission.assigned_profile_id == profile_id)
            .values(assigned_profile_id=None)
        )
        return int(result.rowcount or 0)

    def delete_by_ids(self, session: Session, ids: Sequence[uuid.UUID]) -> int:
        return self._delete_where(session, ContactSubmission.id.in_(list(ids)))


class UserAccountRepository(BaseRepository):
    model = UserAccount

    def get_by_email(self, session: Session, email: str) -> UserAccount | None:
        return session.scalar(select(UserAccount).where(UserAccount.email == email))

    def upsert(self, session: Session, *, user_id: uuid.UUID, email: str, role: str, is_active: bool) -> UserAccount:
        account = session.get(UserAccount, user_id)
        if account is None:
            account = UserAccount(id=user_id, email=email, role=role, is_active=is_active)
            session.add(account)
        else:
            account.email = email
            account.role = role
            account.is_active = is_active
        session.flush()
        return account

    def set_active(self, session: Session, user_id: uuid.UUID, is_active: bool) -> int:
        result = session.execute(update(UserAccount).where(UserAccount.id == user_id).values(is_active=is_active))
        return int(result.rowcount or 0)

    def delete_by_id(self, session: Session, user_id: uuid.UUID) -> int:
        return self._delete_where(session, UserAccount.id == user_id)


class ClientProfileRepository(BaseRepository):
    model = ClientProfile

    def get_by_user_id(self, session: Session, user_id: uuid.UUID) -> ClientProfile | None:
        return session.scalar(select(ClientProfile).where(ClientProfile.user_id == user_id))

    def get_active(self, session: Session, profile_id: uuid.UUID) -> ClientProfile | None:
        return session.scalar(
            select(ClientProfile).where(and_(ClientProfile.id == profile_id, ClientProfile.is_active.is_(True)))
        )

    def find_active_by_email(self, session: Session, email: str) -> ClientProfile | None:
        return session.scalar(
            select(ClientProfile)
            .join(UserAccount, UserAccount.id == ClientProfile.user_id)
            .where(and_(UserAccount.email == email, ClientProfile.is_active.is_(True)))
            .order_by(ClientProfile.created_at.asc())
            .limit(1)
        )

    def list_active_clients(self, session: Session, *, limit: int = 100, offset: int = 0) -> Sequence[ClientProfile]:
        return session.scalars(
            select(ClientProfile)
            .join(UserAccount, UserAccount.id == ClientProfile.user_id)
            .where(
                and_(
                    ClientProfile.is_active.is_(True),
                    UserAccount.is_active.is_(True),
                    UserAccount.role == "client",
                )
            )
            .order_by(ClientProfile.profile_completed.desc(), ClientProfile.first_name.asc())
            .offset(offset)
            .limit(limit)
        ).all()

    def set_active_for_user(self, session: Session, user_id: uuid.UUID, is_active: bool) -> int:
        result = session.execute(
            update(ClientProfile).where(ClientProfile.user_id == user_id).values(is_active=is_active)
        )
        return int(result.rowcount or 0)

    def delete_by_id(self, session: Session, profile_id: uuid.UUID) -> int:
        return self._delete_where(session, ClientProfile.id == profile_id)


class DogRepository(BaseRepository):
    model = Dog

    def list_by_owner(self, session: Session, owner_id: uuid.UUID) -> Sequence[Dog]:
        return session.scalars(select(Dog).where(Dog.owner_id == owner_id).order_by(Dog.created_at.asc())).all()

    def exists_from_submission(self, session: Session, owner_id: uuid.UUID, submission_id: uuid.UUID) -> bool:
        found = session.scalar(
            select(Dog.id).where(and_(Dog.owner_id == owner_id, Dog.source_submission_id == submission_id)).limit(1)
        )
        return found is not None

    def delete_by_owner(self, session: Session, owner_id: uuid.UUID) -> int:
        return self._delete_where(session, Dog.owner_id == owner_id)


class TrainingSessionRepository(BaseRepository):
    model = TrainingSession

    def list_by_profile(self, session: Session, profile_id: uuid.UUID) -> Sequence[TrainingSession]:
        return session.scalars(select(TrainingSession).where(TrainingSession.profile_id == profile_id)).all()

    def delete_by_owner(self, session: Session, profile_id: uuid.UUID) -> int:
        return self._delete_where(
            session,
            or_(
                TrainingSession.profile_id == profile_id,
                TrainingSession.dog_id.in_(select(Dog.id).where(Dog.owner_id == profile_id)),
            ),
        )


class ClientNoteRepository(BaseRepository):
    model = ClientNote

    def list_by_profile(self, session: Session, profile_id: uuid.UUID) -> Sequence[ClientNote]:
        return session.scalars(select(ClientNote).where(ClientNote.profile_id == profile_id)).all()

    def delete_by_owner(self, session: Session, profile_id: uuid.UUID) -> int:
        return self._delete_where(session, ClientNote.profile_id == profile_id)


class MessageRepository(BaseRepository):
    model = Message

    def list_for_profile(self, session: Session, profile_id: uuid.UUID) -> Sequence[Message]:
        return session.scalars(
            select(Message).where(or_(Message.sender_id == profile_id, Message.recipient_id == profile_id))
        ).all()

    def delete_by_owner(self, session: Session, profile_id: uuid.UUID) -> int:
        message_ids = select(Message.id).where(or_(Message.sender_id == profile_id, Message.recipient_id == profile_id))
        session.execute(delete(MessageReadReceipt).where(MessageReadReceipt.message_id.in_(message_ids)))
        return self._delete_where(session, or_(Message.sender_id == profile_id, Message.recipient_id == profile_id))


class MessageReadReceiptRepository(BaseRepository):
    model = MessageReadReceipt

    def list_by_user(self, session: Session, user_id: uuid.UUID) -> Sequence[MessageReadReceipt]:
        return session.scalars(select(MessageReadReceipt).where(MessageReadReceipt.user_id == user_id)).all()

    def delete_by_user(self, session: Session, user_id: uuid.UUID) -> int:
        return self._delete_where(session, MessageReadReceipt.user_id == user_id)


class ReferralRepository(BaseRepository):
    model = Referral

    def list_by_referrer(self, session: Session, profile_id: uuid.UUID) -> Sequence[Referral]:
        return session.scalars(select(Referral).where(Referral.referrer_id == profile_id)).all()

    def delete_by_owner(self, session: Session, profile_id: uuid.UUID) -> int:
        return self._delete_where(session, Referral.referrer_id == profile_id)


class PaymentRepository(BaseRepository):
    model = Payment

    def list_by_profile(self, session: Session, profile_id: uuid.UUID) -> Sequence[Payment]:
        return session.scalars(select(Payment).where(Payment.profile_id == profile_id)).all()

    def delete_by_owner(self, session: Session, profile_id: uuid.UUID) -> int:
        return self._delete_where(session, Payment.profile_id == profile_id)


class SignupInvitationRepository(BaseRepository):
    model = SignupInvitation

    def outstanding_for_submission(self, session: Session, submission_id: uuid.UUID) -> SignupInvitation | None:
        now = datetime.now(timezone.utc)
        return session.scalar(
            select(SignupInvitation)
            .where(
                and_(
                    SignupInvitation.submission_id == submission_id,
                    SignupInvitation.used_at.is_(None),
                    SignupInvitation.expires_at > now,
                )
            )
            .order_by(SignupInvitation.expires_at.desc())
            .limit(1)
        )

    def delete_by_owner(self, session: Session, profile_id: uuid.UUID) -> int:
        return self._delete_where(session, SignupInvitation.profile_id == profile_id)

    def delete_by_submissions(self, session: Session, submission_ids: Sequence[uuid.UUID]) -> int:
        return self._delete_where(session, SignupInvitation.submission_id.in_(list(submission_ids)))

    def get_by_token(self, session: Session, token: str) -> SignupInvitation | None:
        return session.scalar(select(SignupInvitation).where(SignupInvitation.invitation_token == token))

    def list(
        self,
        session: Session,
        *,
        submission_id: uuid.UUID | None = None,
        outstanding_only: bool = False,
        limit: int = 100,
        offset: int = 0,
    ) -> Sequence[SignupInvitation]:
        stmt = select(SignupInvitation)
        if submission_id is not None:
            stmt = stmt.where(SignupInvitation.submission_id == submission_id)
        if outstanding_only:
            stmt = stmt.where(
                SignupInvitation.used_at.is_(None),
                SignupInvitation.expires_at > datetime.now(timezone.utc),
            )
        return session.scalars(stmt.order_by(SignupInvitation.created_at.desc()).limit(limit).offset(offset)).all()
