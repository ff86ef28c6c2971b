"""
notify/gateway.py -- Notification gateways that deliver a link by email.

The workflows only need one operation:

    deliver(to_address, subject, link) -> DeliveryResult

Gateways never raise for transport problems. A failed delivery comes back as
DeliveryResult(ok=False, error=...) and the calling workflow decides how to
surface it (registration reports a degraded success, recovery keeps its
uniform response). Nothing is retried here; retry policy belongs to the
caller.

Backends (selected by MAIL_BACKEND):
  log  -- development: logs the message instead of sending it.
  smtp -- smtplib with STARTTLS (SMTP_USE_TLS=true) or implicit TLS.
  http -- JSON POST to a transactional mail API (MAIL_API_URL / MAIL_API_KEY).

Every network call carries NOTIFICATION_TIMEOUT_SECONDS so a slow mail server
fails the delivery instead of hanging the request.
"""

from __future__ import annotations

import logging
import smtplib
import ssl
from dataclasses import dataclass
from email.message import EmailMessage
from typing import Protocol

import requests

from core.config import Settings
from core.logsafe import redact_email

logger = logging.getLogger("scholargate.notify")


@dataclass(frozen=True)
class DeliveryResult:
    ok: bool
    error: str | None = None


class NotificationGateway(Protocol):
    def deliver(self, to_address: str, subject: str, link: str) -> DeliveryResult: ...


def render_body(subject: str, link: str, sender_name: str) -> str:
    """Plain-text body shared by every backend."""
    return (
        f"{subject}\n\n"
        "Open the link below to continue:\n\n"
        f"{link}\n\n"
        "If you did not request this, you can safely ignore this email.\n\n"
        f"---\n{sender_name}\n"
    )


class LogGateway:
    """Development gateway: records the delivery in the log and reports success."""

    def __init__(self, sender_name: str = "ScholarGate") -> None:
        self.sender_name = sender_name

    def deliver(self, to_address: str, subject: str, link: str) -> DeliveryResult:
        # The link is a live credential; it is logged only in this dev backend.
        logger.info("Mail (dev mode) to=%s subject=%r link=%s", redact_email(to_address), subject, link)
        return DeliveryResult(ok=True)


class SmtpGateway:
    """Sends plain-text mail over SMTP."""

    def __init__(
        self,
        host: str,
        port: int,
        from_address: str,
        from_name: str = "ScholarGate",
        user: str = "",
        password: str = "",
        use_tls: bool = True,
        timeout: float = 5.0,
    ) -> None:
        self.host = host
        self.port = port
        self.from_address = from_address
        self.from_name = from_name
        self.user = user
        self.password = password
        self.use_tls = use_tls
        self.timeout = timeout

    def _build_message(self, to_address: str, subject: str, link: str) -> EmailMessage:
        msg = EmailMessage()
        msg["Subject"] = subject
        msg["From"] = f"{self.from_name} <{self.from_address}>"
        msg["To"] = to_address
        msg.set_content(render_body(subject, link, self.from_name))
        return msg

    def deliver(self, to_address: str, subject: str, link: str) -> DeliveryResult:
        msg = self._build_message(to_address, subject, link)
        context = ssl.create_default_context()
        try:
            if self.use_tls:
                with smtplib.SMTP(self.host, self.port, timeout=self.timeout) as server:
                    server.starttls(context=context)
                    if self.user and self.password:
                        server.login(self.user, self.password)
                    server.send_message(msg)
            else:
                with smtplib.SMTP_SSL(self.host, self.port, context=context, timeout=self.timeout) as server:
                    if self.user and self.password:
                        server.login(self.user, self.password)
                    server.send_message(msg)
        except (smtplib.SMTPException, ssl.SSLError, OSError) as exc:
            logger.error(
                "SMTP delivery failed to=%s host=%s error_type=%s",
                redact_email(to_address),
                self.host,
                type(exc).__name__,
            )
            return DeliveryResult(ok=False, error=type(exc).__name__)
        logger.info("Mail sent to=%s subject=%r", redact_email(to_address), subject)
        return DeliveryResult(ok=True)


class HttpGateway:
    """Sends mail through a transactional mail provider's JSON API.

    Payload: {"from", "to", "subject", "text"} with a Bearer API key. Any
    non-2xx status or transport error is a failed delivery.
    """

    def __init__(
        self,
        api_url: str,
        api_key: str,
        from_address: str,
        from_name: str = "ScholarGate",
        timeout: float = 5.0,
        session: requests.Session | None = None,
    ) -> None:
        self.api_url = api_url
        self.api_key = api_key
        self.from_address = from_address
        self.from_name = from_name
        self.timeout = timeout
        self._session = session or requests.Session()
        # Mail APIs are fixed endpoints; a long redirect chain means something is wrong.
        self._session.max_redirects = 3

    def deliver(self, to_address: str, subject: str, link: str) -> DeliveryResult:
        payload = {
            "from": f"{self.from_name} <{self.from_address}>",
            "to": to_address,
            "subject": subject,
            "text": render_body(subject, link, self.from_name),
        }
        try:
            resp = self._session.post(
                self.api_url,
                json=payload,
                headers={"Authorization": f"Bearer {self.api_key}"},
                timeout=self.timeout,
            )
            resp.raise_for_status()
        except requests.RequestException as exc:
            logger.error(
                "HTTP mail delivery failed to=%s error_type=%s",
                redact_email(to_address),
                type(exc).__name__,
            )
            return DeliveryResult(ok=False, error=type(exc).__name__)
        logger.info("Mail accepted by provider to=%s subject=%r", redact_email(to_address), subject)
        return DeliveryResult(ok=True)


def build_gateway(settings: Settings) -> NotificationGateway:
    """Return the gateway selected by MAIL_BACKEND.

    Falls back to LogGateway (with a warning) when the selected backend is
    missing its required settings, so a dev box without mail config still runs.
    """
    if settings.mail_backend == "smtp":
        if settings.smtp_host:
            return SmtpGateway(
                host=settings.smtp_host,
                port=settings.smtp_port,
                from_address=settings.mail_from,
                from_name=settings.mail_from_name,
                user=settings.smtp_user,
                password=settings.smtp_password,
                use_tls=settings.smtp_use_tls,
                timeout=settings.notification_timeout_seconds,
            )
        logger.warning("MAIL_BACKEND=smtp but SMTP_HOST is empty -- falling back to log delivery")
    elif settings.mail_backend == "http":
        if settings.mail_api_url and settings.mail_api_key:
            return HttpGateway(
                api_url=settings.mail_api_url,
                api_key=settings.mail_api_key,
                from_address=settings.mail_from,
                from_name=settings.mail_from_name,
                timeout=settings.notification_timeout_seconds,
            )
        logger.warning("MAIL_BACKEND=http but MAIL_API_URL/MAIL_API_KEY missing -- falling back to log delivery")
    return LogGateway(sender_name=settings.mail_from_name)
