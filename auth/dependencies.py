"""
auth/dependencies.py -- FastAPI Depends() helpers for authentication.

Access assertions arrive in the "Authorization: Bearer <token>" header. The
refresh cookie is never accepted here; it is only good for /auth/refresh.

try_get_current_principal() is the soft variant (returns None on failure).
get_current_principal() wraps it and raises HTTP 401 if unauthenticated.

Layer rule: this module may import from fastapi (for HTTPException/Request)
because it is part of the FastAPI dependency injection system.
"""

from __future__ import annotations

from fastapi import HTTPException, Request

from auth.models import Principal
from auth.sessions import SessionService


def try_get_current_principal(request: Request) -> Principal | None:
    """Authenticate the request via its Bearer access assertion.

    Returns the redacted Principal on success, None on any failure.
    Never raises.
    """
    auth_header = request.headers.get("Authorization", "")
    if not auth_header.startswith("Bearer "):
        return None
    sessions: SessionService = request.app.state.sessions
    return sessions.resolve_access(auth_header[7:])


def get_current_principal(request: Request) -> Principal:
    """Require authentication. Raises HTTP 401 if the request is not authenticated.

    Use as a FastAPI dependency:
        @router.get("/protected")
        def route(principal: Principal = Depends(get_current_principal)): ...
    """
    principal = try_get_current_principal(request)
    if principal is None:
        raise HTTPException(
            status_code=401,
            detail={"code": "unauthorized", "message": "Authentication required."},
            headers={"WWW-Authenticate": "Bearer"},
        )
    return principal
