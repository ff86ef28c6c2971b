"""
api/routes/v1/auth.py -- Registration, verification, session and recovery endpoints.

Routes:
  POST /api/v1/auth/register/student                    -- JSON registration; mails verification link
  POST /api/v1/auth/register/university                 -- multipart registration with documents
  POST /api/v1/auth/verify/{kind}/{principal_id}/{token} -- consume verification link
  POST /api/v1/auth/login                               -- access token in body, refresh cookie
  POST /api/v1/auth/refresh                             -- new access token from refresh cookie
  POST /api/v1/auth/logout                              -- clears refresh cookie (idempotent)
  POST /api/v1/auth/forgot-password                     -- mails reset link (uniform response)
  POST /api/v1/auth/reset-password/{token}              -- consume reset link, set new password
  GET  /api/v1/auth/me                                  -- current principal (Bearer access token)

Every route is a thin adapter: it pulls the services off app.state, calls one
workflow operation, and shapes the response. Workflow failures are AuthError
subclasses handled centrally in api/main.py.

Security:
  Login, registration and forgot-password are rate-limited per IP.
  Cache-Control: no-store on every response that carries a credential.
  The refresh assertion is only ever written as a cookie, never to a body.
"""

from __future__ import annotations

from typing import Annotated, Optional

from fastapi import APIRouter, Depends, File, Form, Path, Request, Response, UploadFile
from fastapi.responses import JSONResponse
from pydantic import EmailStr

from api.limiter import limiter
from api.models import (
    PHONE_PATTERN,
    ForgotPasswordRequest,
    LoginRequest,
    LoginResponse,
    MessageResponse,
    PrincipalResponse,
    RegistrationResponse,
    ResetPasswordRequest,
    StudentRegistration,
)
from auth.credentials import MAX_PASSWORD_BYTES
from auth.dependencies import get_current_principal
from auth.errors import Conflict, ValidationFailed
from auth.models import Principal, PrincipalKind
from auth.recovery import RecoveryWorkflow
from auth.sessions import SessionService
from auth.tokens import clear_refresh_cookie, set_refresh_cookie
from auth.verification import Registration, VerificationWorkflow
from core.config import Settings
from storage.objects import ObjectStore

# Auth policy:
# - everything under /auth is public except GET /auth/me (get_current_principal)
router = APIRouter()

_REGISTERED_MESSAGE = "Email sent to your account, please verify."
_RECOVERY_MESSAGE = "If an account with that email exists, a recovery email has been sent."

_LinkToken = Annotated[str, Path(min_length=16, max_length=128, pattern=r"^[A-Za-z0-9_-]+$")]


def _registration_response(registration: Registration) -> JSONResponse:
    return JSONResponse(
        status_code=201,
        content=RegistrationResponse(
            message=_REGISTERED_MESSAGE,
            principal=PrincipalResponse.from_principal(registration.principal),
            verification_email_sent=registration.verification_email_sent,
        ).model_dump(mode="json"),
    )


# ---------------------------------------------------------------------------
# Registration and verification
# ---------------------------------------------------------------------------


@limiter.limit("5/minute")
@router.post("/auth/register/student", response_model=RegistrationResponse, status_code=201)
def register_student(request: Request, body: StudentRegistration) -> JSONResponse:
    """Create an unverified student account and mail the verification link."""
    verification: VerificationWorkflow = request.app.state.verification
    registration = verification.register(PrincipalKind.STUDENT, body.email, body.password, body.attributes())
    return _registration_response(registration)


@limiter.limit("5/minute")
@router.post("/auth/register/university", response_model=RegistrationResponse, status_code=201)
def register_university(
    request: Request,
    email: Annotated[EmailStr, Form()],
    password: Annotated[str, Form(min_length=8, max_length=72)],
    name: Annotated[str, Form(min_length=1, max_length=200)],
    province: Annotated[str, Form(min_length=1, max_length=100)],
    postal_code: Annotated[str, Form(min_length=3, max_length=12)],
    phone: Annotated[str, Form(pattern=PHONE_PATTERN)],
    documents: Annotated[Optional[list[UploadFile]], File()] = None,
) -> JSONResponse:
    """Create an unverified university account with its supporting documents.

    The password byte limit and the email are checked before any document
    is stored so a rejected registration does not leave orphaned uploads
    behind. Documents are read with a hard size cap; the first oversized one
    fails the whole request.
    """
    settings: Settings = request.app.state.settings
    verification: VerificationWorkflow = request.app.state.verification
    objects: ObjectStore = request.app.state.objects

    # Form(max_length) counts characters; bcrypt's limit is in bytes.
    if len(password.encode("utf-8")) > MAX_PASSWORD_BYTES:
        raise ValidationFailed(f"Password must be at most {MAX_PASSWORD_BYTES} bytes.")
    if not documents:
        raise ValidationFailed("No document attached to the request.")
    if len(documents) > settings.max_documents:
        raise ValidationFailed(f"At most {settings.max_documents} documents may be attached.")
    if not verification.email_available(PrincipalKind.UNIVERSITY, email):
        raise Conflict()

    payloads: list[tuple[str, bytes]] = []
    for doc in documents:
        data = doc.file.read(settings.max_document_bytes + 1)
        if not data:
            raise ValidationFailed(f"Document {doc.filename!r} is empty.")
        if len(data) > settings.max_document_bytes:
            raise ValidationFailed(f"Document {doc.filename!r} exceeds {settings.max_document_bytes} bytes.")
        payloads.append((doc.filename or "document", data))
    references = [objects.store(filename, data) for filename, data in payloads]

    registration = verification.register(
        PrincipalKind.UNIVERSITY,
        email,
        password,
        {
            "name": name.strip(),
            "province": province.strip(),
            "postal_code": postal_code.strip(),
            "phone": phone.strip(),
            "documents": references,
        },
    )
    return _registration_response(registration)


@router.post("/auth/verify/{kind}/{principal_id}/{token}", response_model=MessageResponse)
def verify_email(
    request: Request,
    kind: PrincipalKind,
    principal_id: Annotated[str, Path(min_length=1, max_length=64)],
    token: _LinkToken,
) -> MessageResponse:
    """Consume a verification link. Unknown, used, or expired links are all InvalidLink."""
    verification: VerificationWorkflow = request.app.state.verification
    verification.verify(principal_id, token, kind)
    return MessageResponse(message="Email verified successfully!")


# ---------------------------------------------------------------------------
# Sessions
# ---------------------------------------------------------------------------


@limiter.limit("10/minute")
@router.post("/auth/login", response_model=LoginResponse)
def login(request: Request, body: LoginRequest) -> JSONResponse:
    """Authenticate with email, password and account kind.

    Returns the access assertion in the body and sets the refresh assertion
    as an httpOnly cookie. An unverified account gets 403 pending_verification
    and, if it has no live link, a fresh verification email.
    """
    settings: Settings = request.app.state.settings
    sessions: SessionService = request.app.state.sessions
    tokens = sessions.login(body.email, body.password, body.kind)

    resp = JSONResponse(
        content=LoginResponse(access_token=tokens.access_token, expires_in=tokens.expires_in).model_dump(),
    )
    set_refresh_cookie(resp, tokens.refresh_token, settings)
    resp.headers["Cache-Control"] = "no-store"
    return resp


@router.post("/auth/refresh", response_model=LoginResponse)
def refresh(request: Request) -> JSONResponse:
    """Mint a new access assertion from the refresh cookie."""
    settings: Settings = request.app.state.settings
    sessions: SessionService = request.app.state.sessions
    grant = sessions.refresh(request.cookies.get(settings.refresh_cookie_name))
    resp = JSONResponse(
        content=LoginResponse(access_token=grant.access_token, expires_in=grant.expires_in).model_dump(),
    )
    resp.headers["Cache-Control"] = "no-store"
    return resp


@router.post("/auth/logout")
def logout(request: Request) -> Response:
    """Clear the refresh cookie. 204 when there was nothing to clear."""
    settings: Settings = request.app.state.settings
    sessions: SessionService = request.app.state.sessions
    had_session = sessions.logout(request.cookies.get(settings.refresh_cookie_name))
    resp: Response
    if had_session:
        resp = JSONResponse(content=MessageResponse(message="Cookie cleared.").model_dump())
    else:
        resp = Response(status_code=204)
    clear_refresh_cookie(resp, settings)
    return resp


@router.get("/auth/me", response_model=PrincipalResponse)
def me(principal: Principal = Depends(get_current_principal)) -> PrincipalResponse:
    """Return the account the Bearer access token belongs to."""
    return PrincipalResponse.from_principal(principal)


# ---------------------------------------------------------------------------
# Password recovery
# ---------------------------------------------------------------------------


@limiter.limit("5/minute")
@router.post("/auth/forgot-password", response_model=MessageResponse, status_code=202)
def forgot_password(request: Request, body: ForgotPasswordRequest) -> JSONResponse:
    """Mail a password reset link.

    The response is identical whether or not the email belongs to an account,
    and whether or not the mail went out.
    """
    recovery: RecoveryWorkflow = request.app.state.recovery
    recovery.request_reset(body.email, body.kind)
    return JSONResponse(status_code=202, content=MessageResponse(message=_RECOVERY_MESSAGE).model_dump())


@router.post("/auth/reset-password/{token}", response_model=MessageResponse)
def reset_password(request: Request, token: _LinkToken, body: ResetPasswordRequest) -> JSONResponse:
    """Consume a reset link and store the new password."""
    recovery: RecoveryWorkflow = request.app.state.recovery
    recovery.perform_reset(token, body.password, body.kind)
    resp = JSONResponse(content=MessageResponse(message="Password updated successfully!").model_dump())
    resp.headers["Cache-Control"] = "no-store"
    return resp
