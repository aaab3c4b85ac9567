"""
API request and response models for credgate REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in auth/models.py, which
own the internal domain representation. Route handlers map between the two.

Every response is an envelope: {success, message, ...data}. Wire names follow
what the frontend reads (userId, newPassword, profilepicture, isEmailVerified);
Python attributes stay snake_case.
"""

from typing import Annotated, Any, Optional

from pydantic import BaseModel, ConfigDict, EmailStr, Field

from auth.models import Account

# ---------------------------------------------------------------------------
# Field constraints
# ---------------------------------------------------------------------------

Username = Annotated[str, Field(min_length=5, max_length=12)]
Password = Annotated[str, Field(min_length=6, max_length=12)]


# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------


class VerifyEmailRequest(BaseModel):
    otp: int


class LoginRequest(BaseModel):
    username: Username
    password: Password


class EmailRequest(BaseModel):
    """Body for POST /sendOtp and POST /forgot-password."""

    email: EmailStr


class VerifyOtpRequest(BaseModel):
    email: EmailStr
    otp: int


class ResetPasswordRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    token: str = Field(min_length=1, max_length=128)
    new_password: Password = Field(alias="newPassword")


# ---------------------------------------------------------------------------
# Response models
# ---------------------------------------------------------------------------


class AccountOut(BaseModel):
    """Sanitized account: no password hash, codes or tokens, ever."""

    model_config = ConfigDict(frozen=True)

    id: int
    username: str
    email: str
    fullname: str
    profile_picture: Optional[str] = Field(default=None, serialization_alias="profilepicture")
    email_verified: bool = Field(serialization_alias="isEmailVerified")

    @classmethod
    def from_account(cls, account: Account) -> "AccountOut":
        return cls(
            id=account.id,
            username=account.username,
            email=account.email,
            fullname=account.fullname,
            profile_picture=account.profile_picture,
            email_verified=account.email_verified,
        )


class Envelope(BaseModel):
    """Base response envelope."""

    success: bool = True
    message: str


class RegisterResponse(Envelope):
    user_id: int = Field(serialization_alias="userId")


class AccountResponse(Envelope):
    user: AccountOut


class ErrorResponse(Envelope):
    """Envelope returned on 4xx/5xx responses. error carries optional detail."""

    success: bool = False
    error: Optional[Any] = None


class HealthResponse(BaseModel):
    """Response for GET /api/v1/health."""

    model_config = ConfigDict(frozen=True)

    status: str = "healthy"
    version: str
    components: dict[str, str]
