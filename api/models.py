"""
API request and response models for the campus auth REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in auth/models.py, which
own the internal domain representation. Route handlers map between the two.
"""

from typing import Optional

from pydantic import BaseModel, ConfigDict, EmailStr, Field

from auth.models import SignInResult, TokenPair, UserInfo

# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------


class SignupRequest(BaseModel):
    """Request body for POST /api/v1/auth/signup."""

    model_config = ConfigDict(str_strip_whitespace=True)

    email: EmailStr
    mobile: bool = False


class CompleteSignupRequest(BaseModel):
    """Request body for POST /api/v1/auth/signup/complete.

    token is the completion JWT delivered by the verify redirect. Password is
    capped at 72 characters because bcrypt ignores anything beyond 72 bytes.
    """

    model_config = ConfigDict(str_strip_whitespace=True)

    token: str = Field(min_length=1)
    password: str = Field(min_length=6, max_length=72)
    first_name: Optional[str] = Field(default=None, max_length=255)
    last_name: Optional[str] = Field(default=None, max_length=255)
    phone_number: Optional[str] = Field(default=None, max_length=32)
    dormitory: Optional[str] = Field(default=None, max_length=255)
    building: Optional[str] = Field(default=None, max_length=255)
    room: Optional[str] = Field(default=None, max_length=32)


class SignInRequest(BaseModel):
    """Request body for POST /api/v1/auth/signin."""

    email: str = Field(min_length=3, max_length=255)
    password: str = Field(min_length=1, max_length=255)


class GoogleSignInRequest(BaseModel):
    """Request body for POST /api/v1/auth/google."""

    id_token: str = Field(min_length=1)


class RefreshTokenRequest(BaseModel):
    """Request body for POST /api/v1/auth/refresh and POST /api/v1/auth/signout."""

    refresh_token: str = Field(min_length=1)


# ---------------------------------------------------------------------------
# Response models
# ---------------------------------------------------------------------------


class MessageResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    message: str


class TokenPairResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    access_token: str
    refresh_token: str
    token_type: str = "bearer"

    @classmethod
    def from_pair(cls, pair: TokenPair) -> "TokenPairResponse":
        return cls(access_token=pair.access_token, refresh_token=pair.refresh_token)


class UserInfoResponse(BaseModel):
    """User projection returned on sign-in. Role-specific fields are flattened in."""

    model_config = ConfigDict(frozen=True)

    id: str
    email: str
    role: str
    verified: bool
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    phone_number: Optional[str] = None
    photo_url: Optional[str] = None
    created_at: Optional[str] = None
    dormitory: Optional[str] = None
    building: Optional[str] = None
    room: Optional[str] = None

    @classmethod
    def from_info(cls, info: UserInfo) -> "UserInfoResponse":
        return cls(
            id=info.id,
            email=info.email,
            role=info.role,
            verified=info.verified,
            first_name=info.first_name,
            last_name=info.last_name,
            phone_number=info.phone_number,
            photo_url=info.photo_url,
            created_at=info.created_at,
            **info.profile,
        )


class SignInResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    user_info: UserInfoResponse

    @classmethod
    def from_result(cls, result: SignInResult) -> "SignInResponse":
        return cls(
            access_token=result.access_token,
            refresh_token=result.refresh_token,
            user_info=UserInfoResponse.from_info(result.user_info),
        )


class MeResponse(BaseModel):
    """Claims of the access token presented on GET /api/v1/auth/me."""

    model_config = ConfigDict(frozen=True)

    id: str
    email: str
    role: str


class ErrorDetail(BaseModel):
    """Machine-readable error payload."""

    model_config = ConfigDict(frozen=True)

    code: str
    message: str
    detail: Optional[str] = None


class ErrorResponse(BaseModel):
    """Top-level error envelope returned on 4xx/5xx responses."""

    model_config = ConfigDict(frozen=True)

    error: ErrorDetail


class HealthResponse(BaseModel):
    """Response for GET /api/v1/health."""

    model_config = ConfigDict(frozen=True)

    status: str = "healthy"
    version: str
    components: dict[str, str] = Field(default_factory=dict)
