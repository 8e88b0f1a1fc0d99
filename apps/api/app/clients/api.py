from __future__ import annotations

import uuid
from dataclasses import dataclass, replace
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from app.clients.conversion import ConversionEngine
from app.clients.deconversion import DeconversionEngine
from app.clients.errors import LifecycleError
from app.clients.lifecycle import LifecycleController
from app.clients.schemas import (
    AccountStatusRead,
    BulkDeleteRead,
    BulkDeleteRequest,
    ClientEmailRequest,
    ClientProfileRead,
    ConversionRead,
    DeletionReportRead,
    InvitationCreate,
    InvitationPrefillRead,
    InvitationRead,
    ProfileMatchRead,
    StatusChangeRead,
    StatusChangeRequest,
    SubmissionCreate,
    SubmissionRead,
)
from app.clients.service import PUBLIC_INTAKE_ACTOR, ActorUser, ClientDirectoryService, SubmissionService
from app.context import get_correlation_id
from app.core.auth import AuthUser, get_current_user as get_auth_user
from app.core.database import get_db

intake_router = APIRouter(prefix="/api/intake", tags=["clients.intake"])
submissions_router = APIRouter(prefix="/api/admin/submissions", tags=["clients.submissions"])
clients_router = APIRouter(prefix="/api/admin/clients", tags=["clients.accounts"])
invitations_router = APIRouter(prefix="/api/admin/invitations", tags=["clients.invitations"])

ADMIN_PERMISSIONS = frozenset(
    {
        "clients.submissions.read",
        "clients.submissions.write",
        "clients.submissions.delete",
        "clients.convert",
        "clients.accounts.read",
        "clients.accounts.write",
        "clients.accounts.delete",
        "clients.invitations.read",
        "clients.invitations.write",
    }
)

submission_service = SubmissionService()
directory_service = ClientDirectoryService()
conversion_engine = ConversionEngine()
deconversion_engine = DeconversionEngine()
lifecycle_controller = LifecycleController(
    conversion_engine=conversion_engine,
    deconversion_engine=deconversion_engine,
)


@dataclass
class ErrorEnvelope:
    code: str
    message: str
    details: Any
    correlation_id: str | None


def error_response(
    request: Request,
    *,
    status_code: int,
    code: str,
    message: str,
    details: Any = None,
) -> JSONResponse:
    correlation_id = get_correlation_id() or getattr(request.state, "correlation_id", None)
    payload = ErrorEnvelope(
        code=code,
        message=message,
        details=jsonable_encoder(details),
        correlation_id=correlation_id,
    )
    return JSONResponse(status_code=status_code, content=payload.__dict__)


def lifecycle_error_response(request: Request, exc: LifecycleError) -> JSONResponse:
    return error_response(
        request,
        status_code=exc.status_code,
        code=exc.code,
        message=exc.message,
        details={**exc.details, "retryable": exc.retryable},
    )


def get_current_user(request: Request, auth_user: AuthUser = Depends(get_auth_user)) -> ActorUser:
    correlation_id = get_correlation_id() or getattr(request.state, "correlation_id", None)
    normalized_roles = {str(role).lower() for role in auth_user.roles}
    is_admin = "admin" in normalized_roles
    permissions = set(auth_user.roles)
    if is_admin:
        permissions |= ADMIN_PERMISSIONS
    return ActorUser(
        user_id=auth_user.sub,
        permissions=permissions,
        is_admin=is_admin,
        correlation_id=correlation_id,
    )


def require_permission(user: ActorUser, permission: str) -> None:
    if permission not in user.permissions:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=f"Missing permission: {permission}")


@intake_router.post("/submissions", response_model=SubmissionRead, status_code=status.HTTP_201_CREATED)
def create_submission(
    request: Request,
    dto: SubmissionCreate,
    db: Session = Depends(get_db),
) -> SubmissionRead | JSONResponse:
    actor = replace(PUBLIC_INTAKE_ACTOR, correlation_id=get_correlation_id())
    try:
        return submission_service.create_submission(db, actor, dto)
    except LifecycleError as exc:
        return lifecycle_error_response(request, exc)


@intake_router.get("/invitations/{token}", response_model=InvitationPrefillRead)
def get_invitation(
    request: Request,
    token: str,
    db: Session = Depends(get_db),
) -> InvitationPrefillRead | JSONResponse:
    try:
        return submission_service.get_invitation(db, token)
    except LifecycleError as exc:
        return lifecycle_error_response(request, exc)


@intake_router.post("/invitations/{token}/use", response_model=InvitationRead)
def use_invitation(
    request: Request,
    token: str,
    db: Session = Depends(get_db),
) -> InvitationRead | JSONResponse:
    actor = replace(PUBLIC_INTAKE_ACTOR, correlation_id=get_correlation_id())
    try:
        return submission_service.mark_invitation_used(db, actor, token)
    except LifecycleError as exc:
        return lifecycle_error_response(request, exc)


@submissions_router.get("", response_model=list[SubmissionRead])
def list_submissions(
    request: Request,
    status_filter: str | None = Query(default=None, alias="status"),
    limit: int = Query(default=100, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[SubmissionRead] | JSONResponse:
    try:
        require_permission(user, "clients.submissions.read")
        return submission_service.list_submissions(db, status=status_filter, limit=limit, offset=offset)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="submission_list_failed",
            message=str(exc.detail),
            details=exc.detail,
        )
    except LifecycleError as exc:
        return lifecycle_error_response(request, exc)


@submissions_router.post("/bulk-delete", response_model=BulkDeleteRead)
def bulk_delete_submissions(
    request: Request,
    dto: BulkDeleteRequest,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> BulkDeleteRead | JSONResponse:
    try:
        require_permission(user, "clients.submissions.delete")
        deleted = submission_service.delete_removed(db, user, dto.ids)
        return BulkDeleteRead(deleted=deleted)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="submission_bulk_delete_failed",
            message=str(exc.detail),
            details=exc.detail,
        )
    except LifecycleError as exc:
        return lifecycle_error_response(request, exc)


@submissions_router.get("/{submission_id}", response_model=SubmissionRead)
def get_submission(
    request: Request,
    submission_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> SubmissionRead | JSONResponse:
    try:
        require_permission(user, "clients.submissions.read")
        return submission_service.get_submission(db, submission_id)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="submission_read_failed",
            message=str(exc.detail),
            details=exc.detail,
        )
    except LifecycleError as exc:
        return lifecycle_error_response(request, exc)


@submissions_router.get("/{submission_id}/client-profile", response_model=ProfileMatchRead)
def get_submission_client_profile(
    request: Request,
    submission_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> ProfileMatchRead | JSONResponse:
    try:
        require_permission(user, "clients.submissions.read")
        submission, match = lifecycle_controller.find_live_profile(db, submission_id)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="submission_profile_lookup_failed",
            message=str(exc.detail),
            details=exc.detail,
        )
    except LifecycleError as exc:
        return lifecycle_error_response(request, exc)

    if match is None:
        return ProfileMatchRead(has_profile=False, submission_email=submission.email)
    return ProfileMatchRead(
        has_profile=True,
        submission_email=submission.email,
        profile_id=match.profile_id,
        user_id=match.user_id,
        first_name=match.first_name,
        last_name=match.last_name,
        account_email=match.account_email,
        matched_by=match.matched_by,
    )


@submissions_router.post("/{submission_id}/status", response_model=StatusChangeRead)
def change_submission_status(
    request: Request,
    submission_id: uuid.UUID,
    dto: StatusChangeRequest,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> StatusChangeRead | JSONResponse:
    try:
        require_permission(user, "clients.submissions.write")
        if dto.status == "converted":
            require_permission(user, "clients.convert")
        if dto.resolution == "delete":
            require_permission(user, "clients.accounts.delete")
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="submission_status_change_failed",
            message=str(exc.detail),
            details=exc.detail,
        )

    outcome = lifecycle_controller.request_status_change(db, user, submission_id, dto.status, dto.resolution)
    body = StatusChangeRead.model_validate(outcome.to_dict())
    if outcome.error is not None:
        return JSONResponse(status_code=outcome.error.status_code, content=jsonable_encoder(body))
    return body


@submissions_router.post("/{submission_id}/convert", response_model=ConversionRead)
def convert_submission(
    request: Request,
    submission_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> ConversionRead | JSONResponse:
    try:
        require_permission(user, "clients.convert")
        result = conversion_engine.convert(db, user, submission_id)
        return ConversionRead.model_validate(result.to_dict())
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="submission_convert_failed",
            message=str(exc.detail),
            details=exc.detail,
        )
    except LifecycleError as exc:
        return lifecycle_error_response(request, exc)


@clients_router.get("", response_model=list[ClientProfileRead])
def list_clients(
    request: Request,
    limit: int = Query(default=100, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[ClientProfileRead] | JSONResponse:
    try:
        require_permission(user, "clients.accounts.read")
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="client_list_failed",
            message=str(exc.detail),
            details=exc.detail,
        )
    rows = directory_service.list_active_clients(db, limit=limit, offset=offset)
    return [ClientProfileRead.model_validate(row) for row in rows]


@clients_router.post("/deactivate", response_model=AccountStatusRead)
def deactivate_client(
    request: Request,
    dto: ClientEmailRequest,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> AccountStatusRead | JSONResponse:
    try:
        require_permission(user, "clients.accounts.write")
        result = deconversion_engine.deactivate(db, user, str(dto.email))
        return AccountStatusRead.model_validate(result.to_dict())
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="client_deactivate_failed",
            message=str(exc.detail),
            details=exc.detail,
        )
    except LifecycleError as exc:
        return lifecycle_error_response(request, exc)


@clients_router.post("/reactivate", response_model=AccountStatusRead)
def reactivate_client(
    request: Request,
    dto: ClientEmailRequest,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> AccountStatusRead | JSONResponse:
    try:
        require_permission(user, "clients.accounts.write")
        result = deconversion_engine.reactivate(db, user, str(dto.email))
        return AccountStatusRead.model_validate(result.to_dict())
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="client_reactivate_failed",
            message=str(exc.detail),
            details=exc.detail,
        )
    except LifecycleError as exc:
        return lifecycle_error_response(request, exc)


@clients_router.post("/delete", response_model=DeletionReportRead)
def delete_client(
    request: Request,
    dto: ClientEmailRequest,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> DeletionReportRead | JSONResponse:
    try:
        require_permission(user, "clients.accounts.delete")
        report = deconversion_engine.delete_completely(db, user, str(dto.email))
        return DeletionReportRead.model_validate(report.to_dict())
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="client_delete_failed",
            message=str(exc.detail),
            details=exc.detail,
        )
    except LifecycleError as exc:
        return lifecycle_error_response(request, exc)


@invitations_router.post("", response_model=InvitationRead, status_code=status.HTTP_201_CREATED)
def create_invitation(
    request: Request,
    dto: InvitationCreate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> InvitationRead | JSONResponse:
    try:
        require_permission(user, "clients.invitations.write")
        return submission_service.create_invitation(db, user, dto)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="invitation_create_failed",
            message=str(exc.detail),
            details=exc.detail,
        )
    except LifecycleError as exc:
        return lifecycle_error_response(request, exc)


@invitations_router.get("", response_model=list[InvitationRead])
def list_invitations(
    request: Request,
    submission_id: uuid.UUID | None = Query(default=None),
    outstanding: bool = Query(default=False),
    limit: int = Query(default=100, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[InvitationRead] | JSONResponse:
    try:
        require_permission(user, "clients.invitations.read")
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="invitation_list_failed",
            message=str(exc.detail),
            details=exc.detail,
        )
    return submission_service.list_invitations(
        db,
        submission_id=submission_id,
        outstanding_only=outstanding,
        limit=limit,
        offset=offset,
    )
