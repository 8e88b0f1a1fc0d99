from __future__ import annotations

import logging
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from opentelemetry import trace
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app import audit
from app.clients.errors import NotFound, PartialFailure, ValidationError
from app.clients.models import UserAccount
from app.clients.repositories import (
    ClientNoteRepository,
    ClientProfileRepository,
    DogRepository,
    MessageReadReceiptRepository,
    MessageRepository,
    PaymentRepository,
    ReferralRepository,
    SignupInvitationRepository,
    SubmissionRepository,
    TrainingSessionRepository,
    UserAccountRepository,
)
from app.clients.service import ActorUser, normalize_email, publish_event
from app.identity.client import IdentityClient, IdentityServiceError, get_identity_client
from app.metrics import observe_deconversion, observe_delete_stage_failure
from app.otel import mark_lifecycle_failure


logger = logging.getLogger("app.clients.deconversion")
tracer = trace.get_tracer("app.clients.deconversion")

DELETION_STAGES = (
    "training_sessions",
    "dogs",
    "client_notes",
    "messages",
    "message_read_receipts",
    "referrals",
    "payments",
    "signup_invitations",
    "client_profile",
    "user_account",
    "identity",
)


@dataclass
class AccountStatusResult:
    email: str
    user_id: uuid.UUID
    profile_id: uuid.UUID | None
    is_active: bool

    def to_dict(self) -> dict[str, Any]:
        return {
            "email": self.email,
            "user_id": self.user_id,
            "profile_id": self.profile_id,
            "is_active": self.is_active,
        }


@dataclass
class DeletionReport:
    email: str
    profile_id: uuid.UUID | None
    user_id: uuid.UUID
    deleted: dict[str, int] = field(default_factory=dict)
    identity_deleted: bool = False
    warnings: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "email": self.email,
            "profile_id": self.profile_id,
            "user_id": self.user_id,
            "deleted": dict(self.deleted),
            "identity_deleted": self.identity_deleted,
            "warnings": list(self.warnings),
        }


@dataclass
class _DeletionTarget:
    email: str
    user_id: uuid.UUID
    profile_id: uuid.UUID | None
    resolved_by: str


@dataclass
class DeconversionEngine:
    """Reverses a conversion: flips a client inactive, back to active, or removes it entirely.

    `delete_completely` walks DELETION_STAGES in order and commits after each
    one. A rerun after a failed stage resumes, since completed stages simply
    delete nothing.
    """

    entity_type = "clients.account"

    identity_client_factory: Callable[[Session], IdentityClient] = get_identity_client
    submission_repository: SubmissionRepository = field(default_factory=SubmissionRepository)
    account_repository: UserAccountRepository = field(default_factory=UserAccountRepository)
    profile_repository: ClientProfileRepository = field(default_factory=ClientProfileRepository)
    dog_repository: DogRepository = field(default_factory=DogRepository)
    session_repository: TrainingSessionRepository = field(default_factory=TrainingSessionRepository)
    note_repository: ClientNoteRepository = field(default_factory=ClientNoteRepository)
    message_repository: MessageRepository = field(default_factory=MessageRepository)
    receipt_repository: MessageReadReceiptRepository = field(default_factory=MessageReadReceiptRepository)
    referral_repository: ReferralRepository = field(default_factory=ReferralRepository)
    payment_repository: PaymentRepository = field(default_factory=PaymentRepository)
    invitation_repository: SignupInvitationRepository = field(default_factory=SignupInvitationRepository)

    def deactivate(self, session: Session, actor_user: ActorUser, email: str) -> AccountStatusResult:
        return self._set_active(session, actor_user, email, is_active=False)

    def reactivate(self, session: Session, actor_user: ActorUser, email: str) -> AccountStatusResult:
        return self._set_active(session, actor_user, email, is_active=True)

    def _set_active(self, session: Session, actor_user: ActorUser, email: str, *, is_active: bool) -> AccountStatusResult:
        action = "reactivate" if is_active else "deactivate"
        normalized = normalize_email(email)
        if not normalized:
            raise ValidationError("email is required")

        with tracer.start_as_current_span(f"clients.{action}") as span:
            account = self.account_repository.get_by_email(session, normalized)
            if account is None or account.role != "client":
                observe_deconversion(action, "not_found")
                raise NotFound("no client account found for email", details={"email": normalized})
            span.set_attribute("user_id", str(account.id))

            profile = self.profile_repository.get_by_user_id(session, account.id)
            before = {"account_active": account.is_active, "profile_active": profile.is_active if profile else None}
            try:
                self.account_repository.set_active(session, account.id, is_active)
                self.profile_repository.set_active_for_user(session, account.id, is_active)
                session.commit()
            except SQLAlchemyError as exc:
                session.rollback()
                observe_deconversion(action, "failed")
                logger.error(f"client.{action}.failed", extra={"user_id": str(account.id), "error": str(exc)})
                raise PartialFailure(action, "user_account", None, retryable=True, cause=str(exc)[:500]) from exc

            result = AccountStatusResult(
                email=normalized,
                user_id=account.id,
                profile_id=profile.id if profile else None,
                is_active=is_active,
            )
            audit.record(
                actor_user_id=actor_user.user_id,
                entity_type=self.entity_type,
                entity_id=str(account.id),
                action=action,
                before=before,
                after={"account_active": is_active, "profile_active": is_active if profile else None},
                correlation_id=actor_user.correlation_id,
            )
            publish_event(
                f"clients.account.{action}d",
                actor_user,
                {"user_id": str(account.id), "profile_id": str(result.profile_id) if result.profile_id else None},
            )
            observe_deconversion(action, "ok")
            logger.info(
                f"client.{action}d",
                extra={"user_id": str(account.id), "profile_id": str(result.profile_id) if result.profile_id else None},
            )
            return result

    def _resolve_deletion_target(self, session: Session, email: str) -> _DeletionTarget:
        account = self.account_repository.get_by_email(session, email)
        if account is not None and account.role != "client":
            logger.warning("client.delete.refused_non_client", extra={"user_id": str(account.id), "role": account.role})
            raise NotFound("no client account found for email", details={"email": email, "role": account.role})
        if account is not None:
            profile = self.profile_repository.get_by_user_id(session, account.id)
            if profile is not None:
                return _DeletionTarget(email=account.email, user_id=account.id, profile_id=profile.id, resolved_by="account")

        for submission in self.submission_repository.converted_by_email(session, email):
            if submission.assigned_profile_id is None:
                continue
            profile = self.profile_repository.get(session, submission.assigned_profile_id)
            if profile is None:
                continue
            linked_account: UserAccount | None = session.get(UserAccount, profile.user_id)
            if linked_account is not None and linked_account.role != "client":
                continue
            return _DeletionTarget(
                email=linked_account.email if linked_account is not None else email,
                user_id=profile.user_id,
                profile_id=profile.id,
                resolved_by="submission",
            )

        if account is not None:
            # A previous run stopped after the profile stage; finish the account.
            return _DeletionTarget(email=account.email, user_id=account.id, profile_id=None, resolved_by="account")

        raise NotFound("no client account or converted submission found for email", details={"email": email})

    def delete_completely(self, session: Session, actor_user: ActorUser, email: str) -> DeletionReport:
        normalized = normalize_email(email)
        if not normalized:
            raise ValidationError("email is required")

        with tracer.start_as_current_span("clients.delete_completely") as span:
            try:
                target = self._resolve_deletion_target(session, normalized)
            except NotFound:
                observe_deconversion("delete", "not_found")
                raise
            span.set_attribute("user_id", str(target.user_id))
            if target.profile_id is not None:
                span.set_attribute("profile_id", str(target.profile_id))
            logger.info(
                "client.delete.started",
                extra={
                    "user_id": str(target.user_id),
                    "profile_id": str(target.profile_id) if target.profile_id else None,
                    "resolved_by": target.resolved_by,
                },
            )

            report = DeletionReport(email=target.email, profile_id=target.profile_id, user_id=target.user_id)
            last_completed: str | None = None
            for stage, step in self._relational_stages(session, target):
                try:
                    report.deleted[stage] = step()
                    session.commit()
                except SQLAlchemyError as exc:
                    session.rollback()
                    observe_delete_stage_failure(stage)
                    observe_deconversion("delete", "partial_failure")
                    logger.error(
                        "client.delete.stage_failed",
                        extra={
                            "user_id": str(target.user_id),
                            "profile_id": str(target.profile_id) if target.profile_id else None,
                            "stage": stage,
                            "last_completed_stage": last_completed,
                            "error": str(exc),
                        },
                    )
                    failure = PartialFailure("delete", stage, last_completed, retryable=False, cause=str(exc)[:500])
                    mark_lifecycle_failure(span, failure)
                    raise failure from exc
                last_completed = stage

            self._delete_identity(session, target, report)
            self._record(actor_user, target, report)
            observe_deconversion("delete", "ok" if report.identity_deleted else "identity_warning")
            return report

    def _relational_stages(self, session: Session, target: _DeletionTarget) -> list[tuple[str, Callable[[], int]]]:
        profile_id = target.profile_id
        user_id = target.user_id

        def for_profile(func: Callable[[Session, uuid.UUID], int]) -> Callable[[], int]:
            if profile_id is None:
                return lambda: 0
            return lambda: func(session, profile_id)

        def delete_profile() -> int:
            if profile_id is None:
                return 0
            self.submission_repository.unlink_profile(session, profile_id)
            return self.profile_repository.delete_by_id(session, profile_id)

        return [
            ("training_sessions", for_profile(self.session_repository.delete_by_owner)),
            ("dogs", for_profile(self.dog_repository.delete_by_owner)),
            ("client_notes", for_profile(self.note_repository.delete_by_owner)),
            ("messages", for_profile(self.message_repository.delete_by_owner)),
            ("message_read_receipts", lambda: self.receipt_repository.delete_by_user(session, user_id)),
            ("referrals", for_profile(self.referral_repository.delete_by_owner)),
            ("payments", for_profile(self.payment_repository.delete_by_owner)),
            ("signup_invitations", for_profile(self.invitation_repository.delete_by_owner)),
            ("client_profile", delete_profile),
            ("user_account", lambda: self.account_repository.delete_by_id(session, user_id)),
        ]

    def _delete_identity(self, session: Session, target: _DeletionTarget, report: DeletionReport) -> None:
        try:
            self.identity_client_factory(session).delete_identity(target.user_id)
        except (IdentityServiceError, SQLAlchemyError) as exc:
            if isinstance(exc, SQLAlchemyError):
                session.rollback()
            logger.warning(
                "client.delete.identity_failed",
                extra={"user_id": str(target.user_id), "stage": "identity", "error": str(exc)},
            )
            report.warnings.append(
                f"login identity {target.user_id} was not removed and must be deleted manually: {str(exc)[:200]}"
            )
            return
        report.identity_deleted = True

    def _record(self, actor_user: ActorUser, target: _DeletionTarget, report: DeletionReport) -> None:
        audit.record(
            actor_user_id=actor_user.user_id,
            entity_type=self.entity_type,
            entity_id=str(target.user_id),
            action="delete",
            before={"email": target.email, "profile_id": str(target.profile_id) if target.profile_id else None},
            after=None,
            correlation_id=actor_user.correlation_id,
        )
        publish_event(
            "clients.account.deleted",
            actor_user,
            {
                "user_id": str(target.user_id),
                "profile_id": str(target.profile_id) if target.profile_id else None,
                "deleted": dict(report.deleted),
                "identity_deleted": report.identity_deleted,
            },
        )
        logger.info(
            "client.deleted",
            extra={
                "user_id": str(target.user_id),
                "profile_id": str(target.profile_id) if target.profile_id else None,
                "identity_deleted": report.identity_deleted,
            },
        )
