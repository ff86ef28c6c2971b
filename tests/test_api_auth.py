"""
tests/test_api_auth.py -- Integration tests for the /api/v1/auth routes.

These run through the real ASGI stack (TrustedHost, CORS, SlowAPI, exception
handlers) with test services wired by the api_client fixture.

Coverage:
  - Student registration (JSON) and university registration (multipart)
  - Verification link consumption and its single-use / 400 behavior
  - Login: body shape, refresh cookie attributes, 403 pending_verification
  - Refresh from cookie, logout 200/204, GET /auth/me with Bearer
  - Forgot-password uniform 202, reset-password single use
  - Error envelope: 422 validation_failed never echoes submitted passwords,
    503 store_unavailable with Retry-After, 502 delivery_failed

Cookies are sent through an explicit Cookie header after clearing the client
jar: the refresh cookie is path-scoped and the test host has no dot, and the
header form keeps the assertions independent of cookie-jar domain rules.
"""

from __future__ import annotations

from fastapi.testclient import TestClient
from sqlalchemy.exc import OperationalError

from auth.errors import DeliveryError
from auth.models import PrincipalKind
from auth.tokens import AssertionSigner

PASSWORD = "Sup3r-secret!"

STUDENT = {
    "email": "ada@example.com",
    "password": PASSWORD,
    "first_name": "Ada",
    "last_name": "Lovelace",
    "birth_date": "2001-12-10",
    "nationality": "British",
    "phone": "+44 20 7946 0958",
}

UNIVERSITY = {
    "email": "admissions@uni.example",
    "password": PASSWORD,
    "name": "Example University",
    "province": "Ontario",
    "postal_code": "K1A 0B1",
    "phone": "+1 613 555 0100",
}


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _register_student(client: TestClient, **overrides):
    return client.post("/api/v1/auth/register/student", json={**STUDENT, **overrides})


def _follow_verification_link(client: TestClient, link: str, frontend_url: str):
    # {frontend}/auth/{id}/{kind}/verify/{secret}
    _, _, principal_id, kind, _, secret = link[len(frontend_url) :].split("/")
    return client.post(f"/api/v1/auth/verify/{kind}/{principal_id}/{secret}")


def _set_cookie(resp, name: str = "refresh_token") -> str | None:
    for header in resp.headers.get_list("set-cookie"):
        if header.startswith(f"{name}="):
            return header
    return None


def _cookie_value(header: str) -> str:
    return header.split(";", 1)[0].split("=", 1)[1].strip('"')


def _login(client: TestClient, email: str = STUDENT["email"], password: str = PASSWORD, kind: str = "student"):
    return client.post("/api/v1/auth/login", json={"email": email, "password": password, "kind": kind})


def _verified_student(client: TestClient, gateway, settings):
    assert _register_student(client).status_code == 201
    assert _follow_verification_link(client, gateway.last.link, settings.frontend_url).status_code == 200


def _post_with_cookie(client: TestClient, path: str, token: str | None):
    client.cookies.clear()
    headers = {"Cookie": f"refresh_token={token}"} if token else {}
    return client.post(path, headers=headers)


# ---------------------------------------------------------------------------
# Registration
# ---------------------------------------------------------------------------


class TestStudentRegistration:
    def test_register_returns_201_and_mails_link(self, api_client, gateway):
        resp = _register_student(api_client)
        assert resp.status_code == 201
        data = resp.json()
        assert data["message"] == "Email sent to your account, please verify."
        assert data["verification_email_sent"] is True
        assert data["principal"]["kind"] == "student"
        assert data["principal"]["verified"] is False
        assert data["principal"]["attributes"]["birth_date"] == "2001-12-10"
        assert "credential_hash" not in data["principal"]
        assert PASSWORD not in resp.text
        assert len(gateway.sent) == 1

    def test_duplicate_is_409(self, api_client):
        _register_student(api_client)
        resp = _register_student(api_client, email="ADA@example.com")
        assert resp.status_code == 409
        assert resp.json()["error"]["code"] == "conflict"

    def test_mail_outage_is_degraded_success(self, api_client, gateway):
        gateway.fail = True
        resp = _register_student(api_client)
        assert resp.status_code == 201
        assert resp.json()["verification_email_sent"] is False

    def test_short_password_422_without_echo(self, api_client):
        resp = _register_student(api_client, password="tiny123")
        assert resp.status_code == 422
        body = resp.json()
        assert body["error"]["code"] == "validation_failed"
        assert "password" in body["error"]["detail"]
        assert "tiny123" not in resp.text

    def test_invalid_email_422(self, api_client):
        resp = _register_student(api_client, email="not-an-email")
        assert resp.status_code == 422

    def test_future_birth_date_422(self, api_client):
        resp = _register_student(api_client, birth_date="2999-01-01")
        assert resp.status_code == 422

    def test_over_long_utf8_password_422(self, api_client):
        # 40 characters, 80 bytes: passes the length check, fails the byte check.
        resp = _register_student(api_client, password="é" * 40)
        assert resp.status_code == 422


class TestUniversityRegistration:
    def test_register_with_documents(self, api_client, gateway, objects):
        resp = api_client.post(
            "/api/v1/auth/register/university",
            data=UNIVERSITY,
            files=[
                ("documents", ("accreditation.pdf", b"%PDF-1.4 accreditation", "application/pdf")),
                ("documents", ("charter.pdf", b"%PDF-1.4 charter", "application/pdf")),
            ],
        )
        assert resp.status_code == 201
        principal = resp.json()["principal"]
        assert principal["kind"] == "university"
        assert principal["attributes"]["name"] == "Example University"
        assert len(principal["attributes"]["documents"]) == 2
        assert all(ref.startswith("memory://documents/") for ref in principal["attributes"]["documents"])
        assert sorted(objects.blobs.values()) == [b"%PDF-1.4 accreditation", b"%PDF-1.4 charter"]
        assert "/university/verify/" in gateway.last.link

    def test_no_documents_422(self, api_client, objects):
        resp = api_client.post("/api/v1/auth/register/university", data=UNIVERSITY)
        assert resp.status_code == 422
        assert resp.json()["error"]["code"] == "validation_failed"
        assert objects.blobs == {}

    def test_empty_document_422(self, api_client, objects):
        resp = api_client.post(
            "/api/v1/auth/register/university",
            data=UNIVERSITY,
            files=[("documents", ("empty.pdf", b"", "application/pdf"))],
        )
        assert resp.status_code == 422
        assert objects.blobs == {}

    def test_oversized_document_422(self, api_client, objects, settings, monkeypatch):
        monkeypatch.setattr(settings, "max_document_bytes", 8)
        resp = api_client.post(
            "/api/v1/auth/register/university",
            data=UNIVERSITY,
            files=[("documents", ("big.pdf", b"0123456789", "application/pdf"))],
        )
        assert resp.status_code == 422
        assert objects.blobs == {}

    def test_over_long_utf8_password_stores_nothing(self, api_client, objects):
        # 40 characters, 80 bytes: within the form's character limit, over bcrypt's byte limit.
        resp = api_client.post(
            "/api/v1/auth/register/university",
            data={**UNIVERSITY, "password": "é" * 40},
            files=[("documents", ("a.pdf", b"%PDF-1", "application/pdf"))],
        )
        assert resp.status_code == 422
        assert resp.json()["error"]["code"] == "validation_failed"
        assert objects.blobs == {}

    def test_duplicate_email_stores_nothing(self, api_client, objects):
        files = [("documents", ("a.pdf", b"first", "application/pdf"))]
        assert api_client.post("/api/v1/auth/register/university", data=UNIVERSITY, files=files).status_code == 201
        resp = api_client.post(
            "/api/v1/auth/register/university",
            data=UNIVERSITY,
            files=[("documents", ("b.pdf", b"second", "application/pdf"))],
        )
        assert resp.status_code == 409
        assert list(objects.blobs.values()) == [b"first"]

    def test_same_email_as_student_allowed(self, api_client):
        _register_student(api_client, email=UNIVERSITY["email"])
        resp = api_client.post(
            "/api/v1/auth/register/university",
            data=UNIVERSITY,
            files=[("documents", ("a.pdf", b"doc", "application/pdf"))],
        )
        assert resp.status_code == 201


# ---------------------------------------------------------------------------
# Verification
# ---------------------------------------------------------------------------


class TestVerification:
    def test_link_verifies_once(self, api_client, gateway, settings):
        _register_student(api_client)
        first = _follow_verification_link(api_client, gateway.last.link, settings.frontend_url)
        assert first.status_code == 200
        assert first.json()["message"] == "Email verified successfully!"

        again = _follow_verification_link(api_client, gateway.last.link, settings.frontend_url)
        assert again.status_code == 400
        assert again.json()["error"]["code"] == "invalid_link"

    def test_unknown_token_400(self, api_client, gateway):
        body = _register_student(api_client).json()
        resp = api_client.post(f"/api/v1/auth/verify/student/{body['principal']['id']}/{'0' * 64}")
        assert resp.status_code == 400

    def test_unknown_kind_422(self, api_client, gateway):
        _register_student(api_client)
        resp = api_client.post(f"/api/v1/auth/verify/admin/{'a' * 32}/{gateway.last.secret}")
        assert resp.status_code == 422

    def test_malformed_token_422(self, api_client):
        resp = api_client.post(f"/api/v1/auth/verify/student/{'a' * 32}/short")
        assert resp.status_code == 422


# ---------------------------------------------------------------------------
# Sessions
# ---------------------------------------------------------------------------


class TestLogin:
    def test_login_returns_access_token_and_refresh_cookie(self, api_client, gateway, settings):
        _verified_student(api_client, gateway, settings)
        resp = _login(api_client)
        assert resp.status_code == 200
        data = resp.json()
        assert data["access_token"]
        assert data["token_type"] == "bearer"
        assert data["expires_in"] == 3600
        assert "refresh_token" not in data
        assert resp.headers["cache-control"] == "no-store"

        cookie = _set_cookie(resp)
        assert cookie is not None
        lowered = cookie.lower()
        assert "httponly" in lowered
        assert "samesite=strict" in lowered
        assert "path=/api/v1/auth" in lowered
        assert "max-age=86400" in lowered

    def test_unverified_login_403_pending(self, api_client):
        _register_student(api_client)
        resp = _login(api_client)
        assert resp.status_code == 403
        assert resp.json()["error"]["code"] == "pending_verification"
        assert _set_cookie(resp) is None

    def test_pending_message_does_not_claim_a_mail_was_sent(self, api_client, gateway):
        # The live link from registration is kept, so this login sends nothing.
        _register_student(api_client)
        resp = _login(api_client)
        assert len(gateway.sent) == 1
        assert resp.json()["error"]["message"] == "Please verify your email before logging in."

    def test_unknown_email_404(self, api_client):
        resp = _login(api_client, email="nobody@example.com")
        assert resp.status_code == 404
        assert resp.json()["error"]["code"] == "not_found"

    def test_wrong_password_401(self, api_client, gateway, settings):
        _verified_student(api_client, gateway, settings)
        resp = _login(api_client, password="wrong-password")
        assert resp.status_code == 401
        assert resp.json()["error"]["code"] == "unauthorized"

    def test_invalid_kind_422(self, api_client):
        assert _login(api_client, kind="admin").status_code == 422


class TestRefreshAndLogout:
    def test_refresh_mints_new_access_token(self, api_client, gateway, settings):
        _verified_student(api_client, gateway, settings)
        refresh_token = _cookie_value(_set_cookie(_login(api_client)))
        resp = _post_with_cookie(api_client, "/api/v1/auth/refresh", refresh_token)
        assert resp.status_code == 200
        assert resp.json()["access_token"]
        assert resp.headers["cache-control"] == "no-store"

    def test_refresh_without_cookie_403(self, api_client):
        resp = _post_with_cookie(api_client, "/api/v1/auth/refresh", None)
        assert resp.status_code == 403
        assert resp.json()["error"]["code"] == "forbidden"

    def test_refresh_with_access_token_403(self, api_client, gateway, settings):
        _verified_student(api_client, gateway, settings)
        access_token = _login(api_client).json()["access_token"]
        assert _post_with_cookie(api_client, "/api/v1/auth/refresh", access_token).status_code == 403

    def test_refresh_with_expired_cookie_403(self, api_client, gateway, settings, settings_factory):
        _verified_student(api_client, gateway, settings)
        stale = AssertionSigner(
            settings_factory(
                access_secret_key=settings.access_secret_key,
                refresh_secret_key=settings.refresh_secret_key,
                refresh_token_expire_seconds=-30,
            )
        ).mint_refresh("ada@example.com", PrincipalKind.STUDENT)
        resp = _post_with_cookie(api_client, "/api/v1/auth/refresh", stale)
        assert resp.status_code == 403
        assert resp.json()["error"]["code"] == "forbidden"

    def test_refresh_with_tampered_cookie_403(self, api_client, gateway, settings):
        _verified_student(api_client, gateway, settings)
        head, _, sig = _cookie_value(_set_cookie(_login(api_client))).split(".")
        forged_body = AssertionSigner(settings).mint_refresh("root@example.com", PrincipalKind.UNIVERSITY).split(".")[1]
        resp = _post_with_cookie(api_client, "/api/v1/auth/refresh", f"{head}.{forged_body}.{sig}")
        assert resp.status_code == 403

    def test_logout_with_cookie_200_and_clears(self, api_client, gateway, settings):
        _verified_student(api_client, gateway, settings)
        refresh_token = _cookie_value(_set_cookie(_login(api_client)))
        resp = _post_with_cookie(api_client, "/api/v1/auth/logout", refresh_token)
        assert resp.status_code == 200
        assert resp.json()["message"] == "Cookie cleared."
        cleared = _set_cookie(resp)
        assert cleared is not None
        assert "max-age=0" in cleared.lower()

    def test_logout_without_cookie_204(self, api_client):
        resp = _post_with_cookie(api_client, "/api/v1/auth/logout", None)
        assert resp.status_code == 204
        assert resp.content == b""


class TestMe:
    def test_me_with_bearer(self, api_client, gateway, settings):
        _verified_student(api_client, gateway, settings)
        access_token = _login(api_client).json()["access_token"]
        resp = api_client.get("/api/v1/auth/me", headers={"Authorization": f"Bearer {access_token}"})
        assert resp.status_code == 200
        data = resp.json()
        assert data["email"] == "ada@example.com"
        assert data["verified"] is True
        assert "credential_hash" not in data

    def test_me_without_token_401(self, api_client):
        resp = api_client.get("/api/v1/auth/me")
        assert resp.status_code == 401
        assert resp.json()["error"]["code"] == "unauthorized"
        assert resp.headers["www-authenticate"] == "Bearer"

    def test_me_rejects_refresh_token(self, api_client, gateway, settings):
        _verified_student(api_client, gateway, settings)
        refresh_token = _cookie_value(_set_cookie(_login(api_client)))
        api_client.cookies.clear()
        resp = api_client.get("/api/v1/auth/me", headers={"Authorization": f"Bearer {refresh_token}"})
        assert resp.status_code == 401


# ---------------------------------------------------------------------------
# Password recovery
# ---------------------------------------------------------------------------


class TestRecovery:
    def test_forgot_password_uniform_response(self, api_client, gateway, settings):
        _verified_student(api_client, gateway, settings)
        known = api_client.post("/api/v1/auth/forgot-password", json={"email": "ada@example.com", "kind": "student"})
        unknown = api_client.post(
            "/api/v1/auth/forgot-password", json={"email": "nobody@example.com", "kind": "student"}
        )
        assert known.status_code == unknown.status_code == 202
        assert known.json() == unknown.json()
        assert "/auth/reset/" in gateway.last.link

    def test_forgot_password_uniform_on_mail_outage(self, api_client, gateway, settings):
        _verified_student(api_client, gateway, settings)
        gateway.fail = True
        resp = api_client.post("/api/v1/auth/forgot-password", json={"email": "ada@example.com", "kind": "student"})
        assert resp.status_code == 202

    def test_reset_password_flow(self, api_client, gateway, settings):
        _verified_student(api_client, gateway, settings)
        api_client.post("/api/v1/auth/forgot-password", json={"email": "ada@example.com", "kind": "student"})
        secret = gateway.last.secret

        resp = api_client.post(
            f"/api/v1/auth/reset-password/{secret}", json={"password": "Brand-new-passw0rd", "kind": "student"}
        )
        assert resp.status_code == 200
        assert resp.json()["message"] == "Password updated successfully!"

        assert _login(api_client).status_code == 401
        assert _login(api_client, password="Brand-new-passw0rd").status_code == 200

        reused = api_client.post(
            f"/api/v1/auth/reset-password/{secret}", json={"password": "Another-passw0rd", "kind": "student"}
        )
        assert reused.status_code == 400
        assert reused.json()["error"]["code"] == "invalid_link"

    def test_reset_short_password_422(self, api_client):
        resp = api_client.post(
            f"/api/v1/auth/reset-password/{'a' * 64}", json={"password": "short", "kind": "student"}
        )
        assert resp.status_code == 422
        assert resp.json()["error"]["code"] == "validation_failed"


# ---------------------------------------------------------------------------
# Store outages
# ---------------------------------------------------------------------------


def test_store_outage_is_503_with_retry_after(api_client, monkeypatch):
    def locked(*args, **kwargs):
        raise OperationalError("SELECT", {}, Exception("database is locked"))

    monkeypatch.setattr(api_client.app.state.sessions, "login", locked)
    resp = _login(api_client)
    assert resp.status_code == 503
    assert resp.headers["retry-after"] == "5"
    body = resp.json()
    assert body["error"]["code"] == "store_unavailable"
    assert "locked" not in resp.text


def test_delivery_error_maps_to_502(api_client, monkeypatch):
    def mail_down(*args, **kwargs):
        raise DeliveryError()

    monkeypatch.setattr(api_client.app.state.recovery, "request_reset", mail_down)
    resp = api_client.post("/api/v1/auth/forgot-password", json={"email": "ada@example.com", "kind": "student"})
    assert resp.status_code == 502
    assert resp.json()["error"] == {
        "code": "delivery_failed",
        "message": "Notification could not be delivered.",
        "detail": None,
    }
