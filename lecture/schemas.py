"""Request bodies accepted by the JSON endpoints.

Unknown keys are rejected so malformed payloads never reach the handlers.
"""

from __future__ import annotations

import datetime as dt
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from .models import PLATFORMS, USER_STATUSES

EMAIL_PATTERN = r"^[^@\s]+@[^@\s]+\.[^@\s]+$"


class StrictModel(BaseModel):
    model_config = ConfigDict(extra="forbid", populate_by_name=True, str_strip_whitespace=True)


class CredentialsModel(StrictModel):
    """Passwords are taken verbatim; only the identity fields are trimmed."""

    model_config = ConfigDict(str_strip_whitespace=False)

    @field_validator("name", "email", mode="before", check_fields=False)
    @classmethod
    def _trim_identity(cls, value: object) -> object:
        return value.strip() if isinstance(value, str) else value


class RegisterRequest(CredentialsModel):
    name: str = Field(..., min_length=2, max_length=50)
    email: str = Field(..., pattern=EMAIL_PATTERN, max_length=254)
    password: str = Field(..., min_length=6, max_length=256)


class LoginRequest(CredentialsModel):
    email: str = Field(..., pattern=EMAIL_PATTERN, max_length=254)
    password: str = Field(..., min_length=1, max_length=256)


class UpdateProfileRequest(StrictModel):
    name: Optional[str] = Field(None, min_length=2, max_length=50)
    email: Optional[str] = Field(None, pattern=EMAIL_PATTERN, max_length=254)
    avatar: Optional[str] = Field(None, max_length=500)


class ChangePasswordRequest(CredentialsModel):
    current_password: str = Field(..., alias="currentPassword", min_length=1)
    new_password: str = Field(..., alias="newPassword", min_length=6, max_length=256)


class UpdateUserStatusRequest(StrictModel):
    status: str

    @field_validator("status")
    @classmethod
    def _known_status(cls, value: str) -> str:
        normalized = value.upper()
        if normalized not in USER_STATUSES:
            raise ValueError(f"status must be one of {', '.join(USER_STATUSES)}")
        return normalized


class UpdateBookRequest(StrictModel):
    title: Optional[str] = Field(None, min_length=1, max_length=200)
    author: Optional[str] = Field(None, min_length=1, max_length=100)
    description: Optional[str] = Field(None, max_length=1000)
    total_pages: Optional[int] = Field(None, alias="totalPages", ge=1)


class CreateSharedReadingRequest(StrictModel):
    title: str = Field(..., min_length=3, max_length=200)
    description: Optional[str] = Field(None, max_length=1000)
    book_id: str = Field(..., alias="bookId", min_length=1)
    start_date: dt.datetime = Field(..., alias="startDate")
    end_date: dt.datetime = Field(..., alias="endDate")
    is_public: bool = Field(True, alias="isPublic")

    @model_validator(mode="after")
    def _dates_ordered(self) -> "CreateSharedReadingRequest":
        start = self.start_date if self.start_date.tzinfo else self.start_date.replace(tzinfo=dt.timezone.utc)
        end = self.end_date if self.end_date.tzinfo else self.end_date.replace(tzinfo=dt.timezone.utc)
        if end <= start:
            raise ValueError("endDate must be after startDate")
        return self


class UpdateSharedReadingRequest(StrictModel):
    title: Optional[str] = Field(None, min_length=3, max_length=200)
    description: Optional[str] = Field(None, max_length=1000)
    book_id: Optional[str] = Field(None, alias="bookId", min_length=1)
    start_date: Optional[dt.datetime] = Field(None, alias="startDate")
    end_date: Optional[dt.datetime] = Field(None, alias="endDate")


class JoinRequest(StrictModel):
    invite_code: Optional[str] = Field(None, alias="inviteCode", max_length=64)


class ParticipantsRequest(StrictModel):
    user_ids: List[str] = Field(..., alias="userIds")


class ProgressRequest(StrictModel):
    progress: float
    cfi: Optional[str] = Field(None, max_length=2000)


class CreateAnnotationRequest(StrictModel):
    shared_reading_id: str = Field(..., alias="sharedReadingId", min_length=1)
    content: str = Field(..., min_length=1, max_length=1000)
    cfi: str = Field(..., min_length=1, max_length=2000)
    selected_text: str = Field(..., alias="selectedText", min_length=1, max_length=500)
    page: int = Field(..., ge=1)
    is_public: bool = Field(True, alias="isPublic")


class UpdateAnnotationRequest(StrictModel):
    content: str = Field(..., min_length=1, max_length=1000)


class CiteRequest(StrictModel):
    platforms: List[str] = Field(default_factory=list)

    @field_validator("platforms")
    @classmethod
    def _known_platforms(cls, value: List[str]) -> List[str]:
        for item in value:
            if item.strip().upper() not in PLATFORMS:
                raise ValueError(f"platforms must be among {', '.join(PLATFORMS)}")
        return value
