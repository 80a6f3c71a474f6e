from __future__ import annotations

from typing import Any, Optional, Union
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field


class ErrorBody(BaseModel):
    code: str
    message: str
    details: Optional[Any] = None


class Envelope(BaseModel):
    """Response envelope shared by every route."""

    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


class UserParams(BaseModel):
    email: str = Field(..., max_length=320)
    password: str = Field(..., max_length=1024)
    persistent_session: Optional[Union[bool, str]] = None

    model_config = ConfigDict(extra="ignore")


class LoginRequest(BaseModel):
    user: UserParams


class SessionResponse(BaseModel):
    user_id: str
    message: Optional[str] = None


class ResetPasswordParams(BaseModel):
    email: str = Field(..., max_length=320)

    model_config = ConfigDict(extra="ignore")


class ResetPasswordRequest(BaseModel):
    user: ResetPasswordParams


class NewPasswordParams(BaseModel):
    password: str = Field(..., max_length=1024)
    password_confirmation: Optional[str] = Field(default=None, max_length=1024)

    model_config = ConfigDict(extra="ignore")


class NewPasswordRequest(BaseModel):
    user: NewPasswordParams
