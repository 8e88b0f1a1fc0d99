from __future__ import annotations

import logging
import secrets
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any
from urllib.parse import urlencode

from sqlalchemy.orm import Session

from app import audit, events
from app.clients.errors import NotFound, ValidationError
from app.clients.models import SUBMISSION_STATUSES, ClientProfile, ContactSubmission, SignupInvitation
from app.clients.repositories import (
    ClientProfileRepository,
    SignupInvitationRepository,
    SubmissionRepository,
)
from app.clients.schemas import (
    InvitationCreate,
    InvitationPrefillRead,
    InvitationRead,
    SubmissionCreate,
    SubmissionRead,
)
from app.core.config import get_settings


logger = logging.getLogger("app.clients.service")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def normalize_email(value: str | None) -> str:
    return (value or "").strip().lower()


def as_utc(value: datetime) -> datetime:
    # SQLite hands back naive datetimes even for timezone-aware columns.
    return value if value.tzinfo is not None else value.replace(tzinfo=timezone.utc)


@dataclass
class ActorUser:
    user_id: str
    permissions: set[str] = field(default_factory=set)
    is_admin: bool = False
    correlation_id: str | None = None


PUBLIC_INTAKE_ACTOR = ActorUser(user_id="public-intake")


def publish_event(event_type: str, actor_user: ActorUser, payload: dict[str, Any]) -> None:
    events.publish(
        {
            "event_id": str(uuid.uuid4()),
            "event_type": event_type,
            "occurred_at": utcnow().isoformat(),
            "actor_user_id": actor_user.user_id,
            "correlation_id": actor_user.correlation_id,
            "version": 1,
            "payload": payload,
        }
    )


@dataclass(slots=True)
class SubmissionService:
    entity_type = "clients.submission"

    submission_repository: SubmissionRepository = field(default_factory=SubmissionRepository)
    invitation_repository: SignupInvitationRepository = field(default_factory=SignupInvitationRepository)
    profile_repository: ClientProfileRepository = field(default_factory=ClientProfileRepository)

    def create_submission(self, session: Session, actor_user: ActorUser, dto: SubmissionCreate) -> SubmissionRead:
        email = normalize_email(str(dto.email))
        if not email:
            raise ValidationError("email is required")

        submission = ContactSubmission(
            first_name=dto.first_name.strip(),
            last_name=dto.last_name.strip(),
            email=email,
            phone=dto.phone,
            dog_name=(dto.dog_name or "").strip() or None,
            dog_breed=dto.dog_breed,
            dog_birth_date=dto.dog_birth_date,
            dog_sex=dto.dog_sex,
            message=dto.message,
            status="new",
        )
        self.submission_repository.add(session, submission)
        read = SubmissionRead.model_validate(submission)
        audit.record(
            actor_user_id=actor_user.user_id,
            entity_type=self.entity_type,
            entity_id=str(submission.id),
            action="create",
            before=None,
            after=read.model_dump(mode="json"),
            correlation_id=actor_user.correlation_id,
        )
        publish_event("clients.submission.created", actor_user, {"submission_id": str(submission.id)})
        session.commit()
        return SubmissionRead.model_validate(submission)

    def list_submissions(
        self,
        session: Session,
        *,
        status: str | None = None,
        limit: int = 100,
        offset: int = 0,
    ) -> list[SubmissionRead]:
        if status is not None and status not in SUBMISSION_STATUSES:
            raise ValidationError(f"invalid submission status: {status}")
        rows = self.submission_repository.list(session, status=status, limit=limit, offset=offset)
        return [SubmissionRead.model_validate(row) for row in rows]

    def get_submission(self, session: Session, submission_id: uuid.UUID) -> SubmissionRead:
        submission = self.submission_repository.get(session, submission_id)
        if submission is None:
            raise NotFound("submission not found", details={"submission_id": str(submission_id)})
        return SubmissionRead.model_validate(submission)

    def delete_removed(self, session: Session, actor_user: ActorUser, ids: list[uuid.UUID]) -> int:
        """Hard-delete submissions; every id must exist and already be `removed`."""
        unique_ids = list(dict.fromkeys(ids))
        rows = self.submission_repository.list_by_ids(session, unique_ids)
        found = {row.id: row for row in rows}
        missing = [str(item) for item in unique_ids if item not in found]
        if missing:
            raise NotFound("submissions not found", details={"ids": missing})
        not_removed = [str(row.id) for row in rows if row.status != "removed"]
        if not_removed:
            raise ValidationError(
                "only submissions in 'removed' status can be permanently deleted",
                details={"ids": not_removed},
            )

        self.invitation_repository.delete_by_submissions(session, unique_ids)
        deleted = self.submission_repository.delete_by_ids(session, unique_ids)
        for submission_id in unique_ids:
            audit.record(
                actor_user_id=actor_user.user_id,
                entity_type=self.entity_type,
                entity_id=str(submission_id),
                action="delete",
                before={"status": "removed"},
                after=None,
                correlation_id=actor_user.correlation_id,
            )
        session.commit()
        logger.info("submission.bulk_deleted", extra={"count": deleted})
        return deleted

    def create_invitation(self, session: Session, actor_user: ActorUser, dto: InvitationCreate) -> InvitationRead:
        """Issue a signup link for a submission, an existing profile, or a bare email address."""
        submission: ContactSubmission | None = None
        if dto.submission_id is not None:
            submission = self.submission_repository.get(session, dto.submission_id)
            if submission is None:
                raise NotFound("submission not found", details={"submission_id": str(dto.submission_id)})
        profile: ClientProfile | None = None
        if dto.profile_id is not None:
            profile = self.profile_repository.get(session, dto.profile_id)
            if profile is None:
                raise NotFound("client profile not found", details={"profile_id": str(dto.profile_id)})

        email = normalize_email(str(dto.email) if dto.email else None)
        if not email and submission is not None:
            email = normalize_email(submission.email)
        if not email and profile is not None and profile.user_account is not None:
            email = normalize_email(profile.user_account.email)
        if not email:
            raise ValidationError("email is required when no submission or profile supplies one")

        settings = get_settings()
        invitation = SignupInvitation(
            submission_id=submission.id if submission is not None else None,
            profile_id=profile.id if profile is not None else None,
            email=email,
            invitation_token=secrets.token_urlsafe(32),
            expires_at=utcnow() + timedelta(days=settings.invitation_ttl_days),
        )
        self.invitation_repository.add(session, invitation)
        audit.record(
            actor_user_id=actor_user.user_id,
            entity_type="clients.invitation",
            entity_id=str(invitation.id),
            action="create",
            before=None,
            after={
                "email": email,
                "submission_id": str(invitation.submission_id) if invitation.submission_id else None,
                "profile_id": str(invitation.profile_id) if invitation.profile_id else None,
                "expires_at": invitation.expires_at.isoformat(),
            },
            correlation_id=actor_user.correlation_id,
        )
        publish_event(
            "clients.invitation.created",
            actor_user,
            {
                "invitation_id": str(invitation.id),
                "submission_id": str(invitation.submission_id) if invitation.submission_id else None,
            },
        )
        session.commit()
        logger.info(
            "invitation.created",
            extra={
                "invitation_id": str(invitation.id),
                "submission_id": str(invitation.submission_id) if invitation.submission_id else None,
            },
        )
        return self._invitation_read(invitation)

    def list_invitations(
        self,
        session: Session,
        *,
        submission_id: uuid.UUID | None = None,
        outstanding_only: bool = False,
        limit: int = 100,
        offset: int = 0,
    ) -> list[InvitationRead]:
        rows = self.invitation_repository.list(
            session,
            submission_id=submission_id,
            outstanding_only=outstanding_only,
            limit=limit,
            offset=offset,
        )
        return [self._invitation_read(row) for row in rows]

    def get_invitation(self, session: Session, token: str) -> InvitationPrefillRead:
        """Resolve a signup token into the details the signup page pre-fills."""
        invitation = self._usable_invitation(session, token)
        prefill = InvitationPrefillRead(email=invitation.email, expires_at=as_utc(invitation.expires_at))
        if invitation.submission_id is not None:
            submission = self.submission_repository.get(session, invitation.submission_id)
            if submission is not None:
                prefill = prefill.model_copy(
                    update={
                        "first_name": submission.first_name,
                        "last_name": submission.last_name,
                        "phone": submission.phone,
                        "dog_name": submission.dog_name,
                        "dog_breed": submission.dog_breed,
                        "dog_birth_date": submission.dog_birth_date,
                        "message": submission.message,
                    }
                )
        return prefill

    def mark_invitation_used(self, session: Session, actor_user: ActorUser, token: str) -> InvitationRead:
        invitation = self._usable_invitation(session, token)
        invitation.used_at = utcnow()
        audit.record(
            actor_user_id=actor_user.user_id,
            entity_type="clients.invitation",
            entity_id=str(invitation.id),
            action="use",
            before={"used_at": None},
            after={"used_at": invitation.used_at.isoformat()},
            correlation_id=actor_user.correlation_id,
        )
        publish_event("clients.invitation.used", actor_user, {"invitation_id": str(invitation.id)})
        session.commit()
        logger.info("invitation.used", extra={"invitation_id": str(invitation.id)})
        return self._invitation_read(invitation)

    def _usable_invitation(self, session: Session, token: str) -> SignupInvitation:
        invitation = self.invitation_repository.get_by_token(session, token.strip()) if token.strip() else None
        if invitation is None:
            raise NotFound("invitation is invalid or has expired", details={"reason": "unknown"})
        if invitation.used_at is not None:
            raise NotFound("invitation is invalid or has expired", details={"reason": "used"})
        if as_utc(invitation.expires_at) <= utcnow():
            raise NotFound("invitation is invalid or has expired", details={"reason": "expired"})
        return invitation

    @staticmethod
    def _invitation_read(invitation: SignupInvitation) -> InvitationRead:
        query = urlencode({"token": invitation.invitation_token, "email": invitation.email})
        read = InvitationRead.model_validate(invitation)
        return read.model_copy(
            update={
                "expires_at": as_utc(read.expires_at),
                "signup_url": f"{get_settings().portal_signup_url}?{query}",
            }
        )


@dataclass(slots=True)
class ClientDirectoryService:
    profile_repository: ClientProfileRepository = field(default_factory=ClientProfileRepository)

    def list_active_clients(self, session: Session, *, limit: int = 100, offset: int = 0) -> list[ClientProfile]:
        return list(self.profile_repository.list_active_clients(session, limit=limit, offset=offset))
