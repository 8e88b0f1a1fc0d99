from __future__ import annotations

import logging
import secrets
import string
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from opentelemetry import trace
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app import audit
from app.clients.errors import AlreadyConverted, ExternalServiceUnavailable, NotFound, PartialFailure, ValidationError
from app.clients.models import ClientProfile, ContactSubmission, Dog
from app.clients.repositories import (
    ClientProfileRepository,
    DogRepository,
    SubmissionRepository,
    UserAccountRepository,
)
from app.clients.service import ActorUser, normalize_email, publish_event
from app.core.config import get_settings
from app.identity.client import IdentityClient, IdentityServiceError, IdentityServiceUnavailable, get_identity_client
from app.metrics import observe_conversion
from app.otel import mark_lifecycle_failure


logger = logging.getLogger("app.clients.conversion")
tracer = trace.get_tracer("app.clients.conversion")

HOW_HEARD_CONTACT_FORM = "Contact Form"
_CREDENTIAL_ALPHABET = string.ascii_lowercase + string.digits


def generate_temporary_credential(prefix: str | None = None, length: int = 10) -> str:
    word = prefix if prefix is not None else get_settings().temporary_credential_prefix
    suffix = "".join(secrets.choice(_CREDENTIAL_ALPHABET) for _ in range(length))
    return f"{word}{suffix}!"


def build_onboarding_data(submission: ContactSubmission) -> dict[str, Any]:
    dogs: list[dict[str, Any]] = []
    if submission.dog_name:
        dogs.append(
            {
                "name": submission.dog_name,
                "breed": submission.dog_breed or "Unknown",
                "birthDate": submission.dog_birth_date.isoformat() if submission.dog_birth_date else "",
                "sex": submission.dog_sex or "",
                "spayedNeutered": False,
                "weight": "",
                "medicalConditions": "",
                "medications": "",
                "behavioralNotes": "",
                "trainingGoals": "",
            }
        )
    return {
        "personalInfo": {
            "firstName": submission.first_name,
            "lastName": submission.last_name,
            "email": submission.email,
            "phone": submission.phone or "",
            "address": "",
            "emergencyContact": "",
            "emergencyPhone": "",
        },
        "dogInfo": {"dogs": dogs},
        "trainingInfo": {
            "previousTraining": "",
            "trainingGoals": submission.message or "",
            "specificIssues": "",
            "howHeardAboutUs": HOW_HEARD_CONTACT_FORM,
        },
    }


def _conversion_notes(submission: ContactSubmission) -> str:
    submitted_on = submission.created_at.date().isoformat() if submission.created_at else "unknown date"
    return f"Converted from contact form submission on {submitted_on}.\nOriginal message: {submission.message or ''}"


@dataclass
class ConversionResult:
    user_id: uuid.UUID
    profile_id: uuid.UUID
    email: str
    temporary_credential: str | None
    temporary_credential_issued: bool
    dog_created: bool
    linked_existing: bool
    login_url: str
    warnings: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "user_id": self.user_id,
            "profile_id": self.profile_id,
            "email": self.email,
            "temporary_credential": self.temporary_credential,
            "temporary_credential_issued": self.temporary_credential_issued,
            "dog_created": self.dog_created,
            "linked_existing": self.linked_existing,
            "login_url": self.login_url,
            "warnings": list(self.warnings),
        }


@dataclass
class ConversionEngine:
    """Turns a contact submission into a login, a mirror account, a profile and a dog.

    Every step commits on its own; the existence checks before each insert
    make a retry (or a concurrent second attempt) converge on the same rows.
    """

    entity_type = "clients.submission"
    operation = "convert"

    identity_client_factory: Callable[[Session], IdentityClient] = get_identity_client
    submission_repository: SubmissionRepository = field(default_factory=SubmissionRepository)
    account_repository: UserAccountRepository = field(default_factory=UserAccountRepository)
    profile_repository: ClientProfileRepository = field(default_factory=ClientProfileRepository)
    dog_repository: DogRepository = field(default_factory=DogRepository)

    def convert(self, session: Session, actor_user: ActorUser, submission_id: uuid.UUID) -> ConversionResult:
        with tracer.start_as_current_span("clients.convert") as span:
            span.set_attribute("submission_id", str(submission_id))
            try:
                result = self._convert(session, actor_user, submission_id)
            except AlreadyConverted:
                observe_conversion("already_converted")
                raise
            except (PartialFailure, ExternalServiceUnavailable) as exc:
                observe_conversion(exc.code)
                mark_lifecycle_failure(span, exc)
                raise
            observe_conversion("linked" if result.linked_existing else "created")
            span.set_attribute("profile_id", str(result.profile_id))
            return result

    def _convert(self, session: Session, actor_user: ActorUser, submission_id: uuid.UUID) -> ConversionResult:
        settings = get_settings()
        submission = self._read(session, "submission", None, lambda: self.submission_repository.get(session, submission_id))
        if submission is None:
            raise NotFound("submission not found", details={"submission_id": str(submission_id)})

        email = normalize_email(submission.email)
        if not email:
            raise ValidationError("submission has no email address", details={"submission_id": str(submission_id)})

        if submission.status == "converted" and submission.assigned_profile_id is not None:
            assigned_id = submission.assigned_profile_id
            live_profile = self._read(
                session, "submission", None, lambda: self.profile_repository.get_active(session, assigned_id)
            )
            if live_profile is not None:
                raise AlreadyConverted(submission.id, live_profile.id, live_profile.user_id)

        before_status = submission.status
        credential = generate_temporary_credential(settings.temporary_credential_prefix)
        identity_client = self.identity_client_factory(session)
        try:
            identity = identity_client.create_identity(
                email,
                credential,
                {"role": "client", "created_from_contact_form": True},
            )
        except IdentityServiceUnavailable as exc:
            raise ExternalServiceUnavailable(
                "identity service unavailable; nothing was written",
                details={"stage": "identity", "cause": str(exc)},
            ) from exc
        except IdentityServiceError as exc:
            # The service answered and refused; repeating the same request gets the same answer.
            raise PartialFailure(self.operation, "identity", None, retryable=False, cause=str(exc)[:500]) from exc

        user_id = identity.id
        credential_issued = not identity.already_existed
        logger.info(
            "client.identity_resolved",
            extra={"submission_id": str(submission.id), "user_id": str(user_id), "already_existed": identity.already_existed},
        )

        mirror = self._read(session, "user_account", "identity", lambda: self.account_repository.get_by_email(session, email))
        if mirror is not None and mirror.id != user_id:
            logger.warning(
                "client.convert.identity_mismatch",
                extra={"submission_id": str(submission.id), "user_id": str(mirror.id), "identity_id": str(user_id)},
            )
            raise PartialFailure(
                self.operation,
                "user_account",
                "identity",
                retryable=False,
                cause=f"mirror account {mirror.id} for {email} belongs to a different login identity ({user_id})",
            )

        role = "client"
        if mirror is not None and mirror.role == "admin":
            role = "admin"
            logger.warning(
                "client.convert.admin_role_kept",
                extra={"submission_id": str(submission.id), "user_id": str(mirror.id)},
            )

        self._commit_step(
            session,
            "user_account",
            "identity",
            lambda: self.account_repository.upsert(session, user_id=user_id, email=email, role=role, is_active=True),
        )

        existing_profile = self._read(
            session, "client_profile", "user_account", lambda: self.profile_repository.get_by_user_id(session, user_id)
        )
        if identity.already_existed and existing_profile is not None:
            profile_id = existing_profile.id
            self._commit_step(
                session,
                "submission_link",
                "user_account",
                lambda: self._link(existing_profile, submission, reactivate=True),
            )
            result = ConversionResult(
                user_id=user_id,
                profile_id=profile_id,
                email=email,
                temporary_credential=None,
                temporary_credential_issued=False,
                dog_created=False,
                linked_existing=True,
                login_url=settings.portal_login_url,
            )
            self._record(actor_user, submission, before_status, result)
            return result

        profile = self._commit_step(
            session,
            "client_profile",
            "user_account",
            lambda: self._upsert_profile(session, user_id, existing_profile, submission),
        )
        profile_id = profile.id
        self._commit_step(
            session,
            "submission_link",
            "client_profile",
            lambda: self._link(profile, submission, reactivate=False),
        )

        warnings: list[str] = []
        dog_created = self._create_dog(session, profile_id, submission, warnings)
        result = ConversionResult(
            user_id=user_id,
            profile_id=profile_id,
            email=email,
            temporary_credential=credential if credential_issued else None,
            temporary_credential_issued=credential_issued,
            dog_created=dog_created,
            linked_existing=existing_profile is not None,
            login_url=settings.portal_login_url,
            warnings=warnings,
        )
        self._record(actor_user, submission, before_status, result)
        return result

    def _read(self, session: Session, stage: str, last_completed: str | None, query: Callable[[], Any]) -> Any:
        try:
            return query()
        except SQLAlchemyError as exc:
            session.rollback()
            logger.error("client.convert.read_failed", extra={"stage": stage, "error": str(exc)})
            raise PartialFailure(self.operation, stage, last_completed, retryable=True, cause=str(exc)[:500]) from exc

    def _commit_step(self, session: Session, stage: str, last_completed: str, step: Callable[[], Any]) -> Any:
        try:
            value = step()
            session.commit()
            return value
        except SQLAlchemyError as exc:
            session.rollback()
            logger.error(
                "client.convert.stage_failed",
                extra={"stage": stage, "error": str(exc)},
            )
            raise PartialFailure(
                self.operation,
                stage,
                last_completed,
                retryable=True,
                cause=str(exc)[:500],
            ) from exc

    def _upsert_profile(
        self,
        session: Session,
        user_id: uuid.UUID,
        existing: ClientProfile | None,
        submission: ContactSubmission,
    ) -> ClientProfile:
        onboarding_data = build_onboarding_data(submission)
        notes = _conversion_notes(submission)
        if existing is not None:
            existing.first_name = submission.first_name
            existing.last_name = submission.last_name
            existing.phone = submission.phone
            existing.notes = notes
            existing.created_from_contact_form = True
            existing.how_heard_about_us = HOW_HEARD_CONTACT_FORM
            existing.onboarding_data = onboarding_data
            existing.is_active = True
            session.add(existing)
            session.flush()
            return existing

        profile = ClientProfile(
            user_id=user_id,
            role="client",
            first_name=submission.first_name,
            last_name=submission.last_name,
            phone=submission.phone,
            notes=notes,
            created_from_contact_form=True,
            how_heard_about_us=HOW_HEARD_CONTACT_FORM,
            profile_completed=False,
            onboarding_step=0,
            onboarding_data=onboarding_data,
            is_active=True,
        )
        return self.profile_repository.add(session, profile)

    def _link(self, profile: ClientProfile, submission: ContactSubmission, *, reactivate: bool) -> None:
        if reactivate:
            profile.is_active = True
            profile.user_account.is_active = True
        submission.assigned_profile_id = profile.id
        submission.status = "converted"

    def _create_dog(
        self,
        session: Session,
        profile_id: uuid.UUID,
        submission: ContactSubmission,
        warnings: list[str],
    ) -> bool:
        if not submission.dog_name:
            return False
        try:
            if self.dog_repository.exists_from_submission(session, profile_id, submission.id):
                return False
            message = submission.message or None
            self.dog_repository.add(
                session,
                Dog(
                    owner_id=profile_id,
                    name=submission.dog_name,
                    breed=submission.dog_breed or "Unknown",
                    birth_date=submission.dog_birth_date,
                    sex=submission.dog_sex,
                    behavioral_notes=f"Initial inquiry: {message}" if message else None,
                    training_goals=message,
                    source_submission_id=submission.id,
                ),
            )
            session.commit()
            return True
        except SQLAlchemyError as exc:
            session.rollback()
            logger.warning(
                "client.convert.dog_failed",
                extra={"submission_id": str(submission.id), "profile_id": str(profile_id), "error": str(exc)},
            )
            warnings.append(f"dog record for '{submission.dog_name}' was not created: {str(exc)[:200]}")
            return False

    def _record(
        self,
        actor_user: ActorUser,
        submission: ContactSubmission,
        before_status: str,
        result: ConversionResult,
    ) -> None:
        audit.record(
            actor_user_id=actor_user.user_id,
            entity_type=self.entity_type,
            entity_id=str(submission.id),
            action="convert",
            before={"status": before_status},
            after={
                "status": "converted",
                "assigned_profile_id": str(result.profile_id),
                "user_id": str(result.user_id),
                "linked_existing": result.linked_existing,
            },
            correlation_id=actor_user.correlation_id,
        )
        publish_event(
            "clients.submission.converted",
            actor_user,
            {
                "submission_id": str(submission.id),
                "profile_id": str(result.profile_id),
                "user_id": str(result.user_id),
                "temporary_credential_issued": result.temporary_credential_issued,
                "dog_created": result.dog_created,
            },
        )
        logger.info(
            "client.converted",
            extra={
                "submission_id": str(submission.id),
                "profile_id": str(result.profile_id),
                "user_id": str(result.user_id),
            },
        )
