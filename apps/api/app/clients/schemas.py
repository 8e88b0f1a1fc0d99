from __future__ import annotations

from datetime import date, datetime
from typing import Any, Literal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, EmailStr, Field


SubmissionStatus = Literal["new", "contacted", "converted", "removed"]
Resolution = Literal["deactivate", "delete"]


class SubmissionCreate(BaseModel):
    first_name: str = Field(min_length=1)
    last_name: str = ""
    email: EmailStr
    phone: str | None = None
    dog_name: str | None = None
    dog_breed: str | None = None
    dog_birth_date: date | None = None
    dog_sex: str | None = None
    message: str | None = None


class SubmissionRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    first_name: str
    last_name: str
    email: str
    phone: str | None
    dog_name: str | None
    dog_breed: str | None
    dog_birth_date: date | None
    dog_sex: str | None
    message: str | None
    status: str
    assigned_profile_id: UUID | None
    created_at: datetime
    updated_at: datetime


class StatusChangeRequest(BaseModel):
    status: str = Field(min_length=1)
    resolution: str | None = None


class ConversionRead(BaseModel):
    user_id: UUID
    profile_id: UUID
    email: str
    temporary_credential: str | None
    temporary_credential_issued: bool
    dog_created: bool
    linked_existing: bool
    login_url: str
    warnings: list[str] = Field(default_factory=list)


class LifecycleErrorRead(BaseModel):
    code: str
    message: str
    retryable: bool
    details: dict[str, Any] = Field(default_factory=dict)


class StatusChangeRead(BaseModel):
    submission_id: UUID
    previous_status: str | None
    status: str | None
    ok: bool
    no_op: bool
    action: str
    requires_confirmation: bool
    outstanding_invitation: bool
    conversion: ConversionRead | None = None
    deletion: DeletionReportRead | None = None
    account: AccountStatusRead | None = None
    error: LifecycleErrorRead | None = None
    notices: list[str] = Field(default_factory=list)


class ClientEmailRequest(BaseModel):
    email: EmailStr


class AccountStatusRead(BaseModel):
    email: str
    user_id: UUID
    profile_id: UUID | None
    is_active: bool


class DeletionReportRead(BaseModel):
    email: str
    profile_id: UUID | None
    user_id: UUID
    deleted: dict[str, int] = Field(default_factory=dict)
    identity_deleted: bool
    warnings: list[str] = Field(default_factory=list)


class ProfileMatchRead(BaseModel):
    has_profile: bool
    submission_email: str
    profile_id: UUID | None = None
    user_id: UUID | None = None
    first_name: str | None = None
    last_name: str | None = None
    account_email: str | None = None
    matched_by: str | None = None


class ClientProfileRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    user_id: UUID
    first_name: str | None
    last_name: str | None
    phone: str | None
    how_heard_about_us: str | None
    profile_completed: bool
    onboarding_step: int
    onboarding_data: dict[str, Any]
    is_active: bool
    created_at: datetime


class BulkDeleteRequest(BaseModel):
    ids: list[UUID] = Field(min_length=1)


class BulkDeleteRead(BaseModel):
    deleted: int


class InvitationCreate(BaseModel):
    submission_id: UUID | None = None
    profile_id: UUID | None = None
    email: EmailStr | None = None


class InvitationRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    submission_id: UUID | None
    profile_id: UUID | None
    email: str
    invitation_token: str
    expires_at: datetime
    used_at: datetime | None
    created_at: datetime
    signup_url: str | None = None


class InvitationPrefillRead(BaseModel):
    """What the signup page needs to greet an invited visitor."""

    email: str
    expires_at: datetime
    first_name: str | None = None
    last_name: str | None = None
    phone: str | None = None
    dog_name: str | None = None
    dog_breed: str | None = None
    dog_birth_date: date | None = None
    message: str | None = None


StatusChangeRead.model_rebuild()
