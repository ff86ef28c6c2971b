"""
API request and response models for ScholarGate REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in auth/models.py, which
own the internal domain representation. Route handlers map between the two.

No response model has a credential_hash field, so a hash can never leak into a
response body even if a route passes an unredacted Principal by mistake.
"""

from datetime import date
from typing import Annotated, Optional

from pydantic import AfterValidator, BaseModel, ConfigDict, EmailStr, Field, field_validator

from auth.credentials import MAX_PASSWORD_BYTES
from auth.models import Principal, PrincipalKind

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

PHONE_PATTERN = r"^\+?[0-9 ()\-]{6,20}$"
PASSWORD_MIN = 8


def _check_password_bytes(value: str) -> str:
    if len(value.encode("utf-8")) > MAX_PASSWORD_BYTES:
        raise ValueError(f"password must be at most {MAX_PASSWORD_BYTES} bytes")
    return value


# Applies the length bounds and the bcrypt byte limit to every new password.
NewPassword = Annotated[
    str,
    Field(min_length=PASSWORD_MIN, max_length=MAX_PASSWORD_BYTES),
    AfterValidator(_check_password_bytes),
]


# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------


class StudentRegistration(BaseModel):
    """Request body for POST /api/v1/auth/register/student."""

    model_config = ConfigDict(str_strip_whitespace=True)

    email: EmailStr
    password: NewPassword
    first_name: str = Field(min_length=1, max_length=100)
    last_name: str = Field(min_length=1, max_length=100)
    birth_date: date
    nationality: str = Field(min_length=2, max_length=100)
    phone: str = Field(pattern=PHONE_PATTERN)

    @field_validator("birth_date")
    @classmethod
    def birth_date_in_past(cls, value: date) -> date:
        if value >= date.today():
            raise ValueError("birth_date must be in the past")
        return value

    def attributes(self) -> dict:
        """Kind-specific attributes as persisted on the principal."""
        return {
            "first_name": self.first_name,
            "last_name": self.last_name,
            "birth_date": self.birth_date.isoformat(),
            "nationality": self.nationality,
            "phone": self.phone,
        }


class LoginRequest(BaseModel):
    """Request body for POST /api/v1/auth/login."""

    model_config = ConfigDict(str_strip_whitespace=True)

    email: EmailStr
    password: str = Field(min_length=1, max_length=255)
    kind: PrincipalKind


class ForgotPasswordRequest(BaseModel):
    """Request body for POST /api/v1/auth/forgot-password."""

    model_config = ConfigDict(str_strip_whitespace=True)

    email: EmailStr
    kind: PrincipalKind


class ResetPasswordRequest(BaseModel):
    """Request body for POST /api/v1/auth/reset-password/{token}."""

    password: NewPassword
    kind: PrincipalKind


# ---------------------------------------------------------------------------
# Response models
# ---------------------------------------------------------------------------


class PrincipalResponse(BaseModel):
    """Client-facing view of an account. Never carries the credential hash."""

    model_config = ConfigDict(frozen=True)

    id: str
    kind: PrincipalKind
    email: str
    verified: bool
    attributes: dict
    created_at: str

    @classmethod
    def from_principal(cls, principal: Principal) -> "PrincipalResponse":
        return cls(
            id=principal.id or "",
            kind=principal.kind,
            email=principal.email,
            verified=principal.verified,
            attributes=dict(principal.attributes),
            created_at=principal.created_at or "",
        )


class RegistrationResponse(BaseModel):
    """Response for both registration endpoints.

    verification_email_sent=False is a degraded success: the account exists
    but the link did not go out. Logging in later re-sends it.
    """

    model_config = ConfigDict(frozen=True)

    message: str
    principal: PrincipalResponse
    verification_email_sent: bool


class LoginResponse(BaseModel):
    """Response for POST /auth/login and POST /auth/refresh.

    The refresh assertion is deliberately absent -- it only travels as a cookie.
    """

    model_config = ConfigDict(frozen=True)

    access_token: str
    token_type: str = "bearer"
    expires_in: int


class MessageResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    message: str


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
