from __future__ import annotations

import uuid
from typing import Any


class LifecycleError(Exception):
    """Base error for client lifecycle operations.

    `retryable` tells the caller whether repeating the same request is safe
    and expected to make progress without manual cleanup.
    """

    code = "lifecycle_error"
    status_code = 500
    retryable = False

    def __init__(self, message: str, *, details: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        return {
            "code": self.code,
            "message": self.message,
            "retryable": self.retryable,
            "details": self.details,
        }


class ValidationError(LifecycleError):
    code = "validation_error"
    status_code = 422
    retryable = True


class NotFound(LifecycleError):
    code = "not_found"
    status_code = 404


class AlreadyInState(LifecycleError):
    code = "already_in_state"
    status_code = 200
    retryable = True


class AlreadyConverted(AlreadyInState):
    code = "already_converted"
    status_code = 409

    def __init__(self, submission_id: uuid.UUID, profile_id: uuid.UUID, user_id: uuid.UUID | None) -> None:
        super().__init__(
            "submission has already been converted to a client",
            details={
                "submission_id": str(submission_id),
                "profile_id": str(profile_id),
                "user_id": str(user_id) if user_id else None,
            },
        )
        self.submission_id = submission_id
        self.profile_id = profile_id
        self.user_id = user_id


class ConfirmationRequired(LifecycleError):
    code = "confirmation_required"
    status_code = 409
    retryable = True

    def __init__(self, profile: dict[str, Any]) -> None:
        super().__init__(
            "a live client profile exists; choose 'deactivate' or 'delete' to continue",
            details={"profile": profile, "options": ["deactivate", "delete"]},
        )


class PartialFailure(LifecycleError):
    """A multi-step operation stopped after committing some of its steps."""

    code = "partial_failure"
    status_code = 500

    def __init__(
        self,
        operation: str,
        stage: str,
        last_completed_stage: str | None,
        *,
        retryable: bool,
        cause: str | None = None,
    ) -> None:
        super().__init__(
            f"{operation} failed at stage '{stage}'",
            details={
                "operation": operation,
                "stage": stage,
                "last_completed_stage": last_completed_stage,
                "cause": cause,
            },
        )
        self.operation = operation
        self.stage = stage
        self.last_completed_stage = last_completed_stage
        self.retryable = retryable


class ExternalServiceUnavailable(LifecycleError):
    code = "external_service_unavailable"
    status_code = 503
    retryable = True
