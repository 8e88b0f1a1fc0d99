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
from app.clients.conversion import ConversionEngine, ConversionResult
from app.clients.deconversion import AccountStatusResult, DeconversionEngine, DeletionReport
from app.clients.errors import ConfirmationRequired, LifecycleError, NotFound, PartialFailure, ValidationError
from app.clients.models import SUBMISSION_STATUSES, ContactSubmission
from app.clients.repositories import ClientProfileRepository, SignupInvitationRepository, SubmissionRepository
from app.clients.service import ActorUser, normalize_email, publish_event
from app.metrics import observe_status_transition
from app.otel import mark_lifecycle_failure


logger = logging.getLogger("app.clients.lifecycle")
tracer = trace.get_tracer("app.clients.lifecycle")

RESOLUTIONS = ("deactivate", "delete")


@dataclass
class ProfileMatch:
    profile_id: uuid.UUID
    user_id: uuid.UUID
    first_name: str | None
    last_name: str | None
    account_email: str | None
    matched_by: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "profile_id": str(self.profile_id),
            "user_id": str(self.user_id),
            "first_name": self.first_name,
            "last_name": self.last_name,
            "account_email": self.account_email,
            "matched_by": self.matched_by,
        }


def find_live_profile(
    session: Session,
    submission: ContactSubmission,
    profile_repository: ClientProfileRepository | None = None,
) -> ProfileMatch | None:
    """Return the active profile a submission leads to, if any.

    The submission's own link wins; otherwise the profile is matched through
    its mirror account's email.
    """
    repository = profile_repository or ClientProfileRepository()
    if submission.assigned_profile_id is not None:
        profile = repository.get_active(session, submission.assigned_profile_id)
        matched_by = "assigned_profile"
    else:
        profile = repository.find_active_by_email(session, normalize_email(submission.email))
        matched_by = "email"
    if profile is None:
        return None
    account = profile.user_account
    return ProfileMatch(
        profile_id=profile.id,
        user_id=profile.user_id,
        first_name=profile.first_name,
        last_name=profile.last_name,
        account_email=account.email if account is not None else None,
        matched_by=matched_by,
    )


@dataclass
class StatusChangeOutcome:
    submission_id: uuid.UUID
    previous_status: str | None
    status: str | None
    ok: bool
    no_op: bool = False
    action: str = "none"
    requires_confirmation: bool = False
    outstanding_invitation: bool = False
    conversion: ConversionResult | None = None
    deletion: DeletionReport | None = None
    account: AccountStatusResult | None = None
    error: LifecycleError | None = None
    notices: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "submission_id": self.submission_id,
            "previous_status": self.previous_status,
            "status": self.status,
            "ok": self.ok,
            "no_op": self.no_op,
            "action": self.action,
            "requires_confirmation": self.requires_confirmation,
            "outstanding_invitation": self.outstanding_invitation,
            "conversion": self.conversion.to_dict() if self.conversion else None,
            "deletion": self.deletion.to_dict() if self.deletion else None,
            "account": self.account.to_dict() if self.account else None,
            "error": self.error.to_dict() if self.error else None,
            "notices": list(self.notices),
        }


@dataclass
class LifecycleController:
    """Single entry point for moving a submission between statuses.

    Side effects (conversion, deactivation, deletion) run before the status is
    written; any failure leaves the status as it was and comes back inside the
    outcome rather than as an exception.
    """

    entity_type = "clients.submission"

    conversion_engine: ConversionEngine = field(default_factory=ConversionEngine)
    deconversion_engine: DeconversionEngine = field(default_factory=DeconversionEngine)
    submission_repository: SubmissionRepository = field(default_factory=SubmissionRepository)
    profile_repository: ClientProfileRepository = field(default_factory=ClientProfileRepository)
    invitation_repository: SignupInvitationRepository = field(default_factory=SignupInvitationRepository)

    def find_live_profile(self, session: Session, submission_id: uuid.UUID) -> tuple[ContactSubmission, ProfileMatch | None]:
        submission = self.submission_repository.get(session, submission_id)
        if submission is None:
            raise NotFound("submission not found", details={"submission_id": str(submission_id)})
        return submission, find_live_profile(session, submission, self.profile_repository)

    def request_status_change(
        self,
        session: Session,
        actor_user: ActorUser,
        submission_id: uuid.UUID,
        new_status: str,
        resolution: str | None = None,
    ) -> StatusChangeOutcome:
        with tracer.start_as_current_span("clients.request_status_change") as span:
            span.set_attribute("submission_id", str(submission_id))
            span.set_attribute("to_status", new_status)
            outcome = StatusChangeOutcome(submission_id=submission_id, previous_status=None, status=None, ok=False)
            try:
                self._apply_guarded(session, actor_user, submission_id, new_status, resolution, outcome)
            except LifecycleError as exc:
                outcome.ok = False
                outcome.error = exc
                outcome.requires_confirmation = isinstance(exc, ConfirmationRequired)
                outcome.status = outcome.previous_status
                mark_lifecycle_failure(span, exc)
                logger.warning(
                    "submission.status_change_failed",
                    extra={
                        "submission_id": str(submission_id),
                        "from_status": outcome.previous_status,
                        "to_status": new_status,
                        "resolution": resolution,
                        "error": exc.message,
                    },
                )
            observe_status_transition(
                outcome.previous_status,
                new_status,
                "no_op" if outcome.no_op else ("ok" if outcome.ok else outcome.error.code if outcome.error else "failed"),
            )
            return outcome

    def _apply_guarded(
        self,
        session: Session,
        actor_user: ActorUser,
        submission_id: uuid.UUID,
        new_status: str,
        resolution: str | None,
        outcome: StatusChangeOutcome,
    ) -> None:
        try:
            self._apply(session, actor_user, submission_id, new_status, resolution, outcome)
        except SQLAlchemyError as exc:
            session.rollback()
            stage = outcome.action if outcome.action != "none" else "submission_status"
            raise PartialFailure("status_change", stage, None, retryable=True, cause=str(exc)[:500]) from exc

    def _apply(
        self,
        session: Session,
        actor_user: ActorUser,
        submission_id: uuid.UUID,
        new_status: str,
        resolution: str | None,
        outcome: StatusChangeOutcome,
    ) -> None:
        if new_status not in SUBMISSION_STATUSES:
            raise ValidationError(
                f"invalid submission status: {new_status}",
                details={"allowed": list(SUBMISSION_STATUSES)},
            )
        if resolution is not None and resolution not in RESOLUTIONS:
            raise ValidationError(
                f"invalid resolution: {resolution}",
                details={"allowed": list(RESOLUTIONS)},
            )

        submission = self._read(session, "submission", lambda: self.submission_repository.get(session, submission_id))
        if submission is None:
            raise NotFound("submission not found", details={"submission_id": str(submission_id)})
        previous_status = submission.status
        outcome.previous_status = previous_status

        if previous_status == new_status:
            outcome.ok = True
            outcome.no_op = True
            outcome.status = previous_status
            outcome.notices.append(f"submission is already '{new_status}'")
            return

        if new_status == "converted":
            outcome.action = "convert"
            outcome.conversion = self.conversion_engine.convert(session, actor_user, submission_id)
            outcome.notices.extend(outcome.conversion.warnings)
            self._finish(actor_user, submission, previous_status, new_status, outcome)
            return

        if previous_status == "converted":
            self._leave_converted(session, actor_user, submission, new_status, resolution, outcome)
            return

        self._persist_status(session, actor_user, submission, previous_status, new_status, last_completed=None)
        self._finish(actor_user, submission, previous_status, new_status, outcome)

    def _leave_converted(
        self,
        session: Session,
        actor_user: ActorUser,
        submission: ContactSubmission,
        new_status: str,
        resolution: str | None,
        outcome: StatusChangeOutcome,
    ) -> None:
        previous_status = submission.status
        match = self._read(session, "profile_lookup", lambda: find_live_profile(session, submission, self.profile_repository))

        if match is None:
            invitation = self._read(
                session,
                "invitation_lookup",
                lambda: self.invitation_repository.outstanding_for_submission(session, submission.id),
            )
            outcome.outstanding_invitation = invitation is not None
            outcome.notices.append("no client profile exists for this submission")
            if invitation is not None:
                outcome.notices.append("an outstanding signup invitation remains valid")
            self._persist_status(session, actor_user, submission, previous_status, new_status, last_completed=None)
            self._finish(actor_user, submission, previous_status, new_status, outcome)
            return

        if resolution is None:
            raise ConfirmationRequired(match.to_dict())

        email = match.account_email or submission.email
        if resolution == "deactivate":
            outcome.action = "deactivate"
            outcome.account = self.deconversion_engine.deactivate(session, actor_user, email)
            self._persist_status(session, actor_user, submission, previous_status, new_status, last_completed="deactivate")
        else:
            outcome.action = "delete"
            outcome.deletion = self.deconversion_engine.delete_completely(session, actor_user, email)
            outcome.notices.extend(outcome.deletion.warnings)
            self._persist_status(
                session,
                actor_user,
                submission,
                previous_status,
                new_status,
                last_completed="delete",
                unlink_profile=True,
            )
        self._finish(actor_user, submission, previous_status, new_status, outcome)

    def _read(self, session: Session, stage: str, query: Callable[[], Any]) -> Any:
        try:
            return query()
        except SQLAlchemyError as exc:
            session.rollback()
            raise PartialFailure("status_change", stage, None, retryable=True, cause=str(exc)[:500]) from exc

    def _persist_status(
        self,
        session: Session,
        actor_user: ActorUser,
        submission: ContactSubmission,
        previous_status: str,
        new_status: str,
        *,
        last_completed: str | None,
        unlink_profile: bool = False,
    ) -> None:
        before = {"status": previous_status, "assigned_profile_id": _str_or_none(submission.assigned_profile_id)}
        try:
            submission.status = new_status
            if unlink_profile:
                submission.assigned_profile_id = None
            session.commit()
        except SQLAlchemyError as exc:
            session.rollback()
            raise PartialFailure(
                "status_change",
                "submission_status",
                last_completed,
                retryable=True,
                cause=str(exc)[:500],
            ) from exc
        audit.record(
            actor_user_id=actor_user.user_id,
            entity_type=self.entity_type,
            entity_id=str(submission.id),
            action="status_change",
            before=before,
            after={"status": new_status, "assigned_profile_id": _str_or_none(submission.assigned_profile_id)},
            correlation_id=actor_user.correlation_id,
        )

    def _finish(
        self,
        actor_user: ActorUser,
        submission: ContactSubmission,
        previous_status: str,
        new_status: str,
        outcome: StatusChangeOutcome,
    ) -> None:
        outcome.ok = True
        outcome.status = new_status
        publish_event(
            "clients.submission.status_changed",
            actor_user,
            {
                "submission_id": str(submission.id),
                "from_status": previous_status,
                "to_status": new_status,
                "action": outcome.action,
            },
        )
        logger.info(
            "submission.status_changed",
            extra={
                "submission_id": str(submission.id),
                "from_status": previous_status,
                "to_status": new_status,
                "resolution": outcome.action if outcome.action in RESOLUTIONS else None,
            },
        )


def _str_or_none(value: uuid.UUID | None) -> str | None:
    return str(value) if value is not None else None
