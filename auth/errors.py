"""
auth/errors.py -- Error taxonomy for the credential and session workflows.

Every workflow failure is one of these kinds. Each carries a stable machine
code, the HTTP status the API layer maps it to, and a human-readable message
that is safe to show to the caller (no store error codes, no stack traces).

api/main.py registers a single exception handler for AuthError; route
handlers never translate these by hand.

InvalidLink deliberately covers "unknown", "already used" and "expired" so the
caller cannot tell them apart.

DeliveryError is reserved for callers that treat a failed notification as
fatal. The built-in workflows never raise it: registration reports a degraded
success and recovery keeps its uniform response.
"""

from __future__ import annotations


class AuthError(Exception):
    code = "auth_error"
    status_code = 400
    default_message = "Request could not be completed."

    def __init__(self, message: str | None = None) -> None:
        self.message = message or self.default_message
        super().__init__(self.message)


class NotFound(AuthError):
    code = "not_found"
    status_code = 404
    default_message = "Account not found."


class Conflict(AuthError):
    code = "conflict"
    status_code = 409
    default_message = "An account with that email already exists."


class Unauthorized(AuthError):
    code = "unauthorized"
    status_code = 401
    default_message = "Invalid email or password."


class Forbidden(AuthError):
    code = "forbidden"
    status_code = 403
    default_message = "Forbidden."


class PendingVerification(AuthError):
    code = "pending_verification"
    status_code = 403
    default_message = "Please verify your email before logging in."


class InvalidLink(AuthError):
    code = "invalid_link"
    status_code = 400
    default_message = "Invalid link."


class ValidationFailed(AuthError):
    code = "validation_failed"
    status_code = 422
    default_message = "Request validation failed."


class DeliveryError(AuthError):
    code = "delivery_failed"
    status_code = 502
    default_message = "Notification could not be delivered."


class Internal(AuthError):
    code = "store_unavailable"
    status_code = 503
    default_message = "Service temporarily unavailable. Please retry."
