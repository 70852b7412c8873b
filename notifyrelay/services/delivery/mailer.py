from __future__ import annotations

from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from email.utils import formatdate, make_msgid
from html import escape
import logging
import time
from typing import Any, Protocol

import aiosmtplib

from notifyrelay.core.config import Settings, get_settings
from notifyrelay.core.errors import DispatchError, ProviderConfigError, TransientDispatchError
from notifyrelay.domain.state import DispatchResult, JobRecord
from notifyrelay.services.telemetry import record_external_call


logger = logging.getLogger(__name__)


class EmailAddressResolver(Protocol):
    async def resolve(self, user_id: str) -> str | None: ...


class StaticEmailAddressResolver:
    # Stand-in for the user directory: every user maps to one configured mailbox.
    def __init__(self, address: str | None) -> None:
        self._address = address

    async def resolve(self, user_id: str) -> str | None:
        return self._address


class EmailTransport(Protocol):
    integration: str

    @property
    def configured(self) -> bool: ...

    async def send(self, message: MIMEMultipart) -> str: ...


class SmtpEmailTransport:
    integration = "email.smtp"

    def __init__(
        self,
        *,
        host: str | None,
        port: int = 587,
        username: str | None = None,
        password: str | None = None,
        start_tls: bool = True,
        timeout_s: float = 10.0,
    ) -> None:
        self._host = host
        self._port = port
        self._username = username
        self._password = password
        self._start_tls = start_tls
        self._timeout_s = timeout_s

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> "SmtpEmailTransport":
        settings = settings or get_settings()
        return cls(
            host=settings.smtp_host,
            port=settings.smtp_port,
            username=settings.smtp_user,
            password=settings.smtp_password,
            start_tls=settings.smtp_start_tls,
            timeout_s=float(settings.smtp_timeout_s),
        )

    @property
    def configured(self) -> bool:
        return bool(self._host)

    async def send(self, message: MIMEMultipart) -> str:
        try:
            errors, response = await aiosmtplib.send(
                message,
                hostname=self._host,
                port=self._port,
                username=self._username or None,
                password=self._password or None,
                start_tls=self._start_tls,
                timeout=self._timeout_s,
            )
        except aiosmtplib.SMTPRecipientsRefused as exc:
            raise DispatchError(f"all recipients refused: {exc}") from exc
        except aiosmtplib.SMTPAuthenticationError as exc:
            raise DispatchError(f"SMTP authentication failed ({exc.code})") from exc
        except aiosmtplib.SMTPException as exc:
            raise TransientDispatchError(f"SMTP error: {exc}") from exc
        if errors:
            raise DispatchError(f"recipients rejected: {', '.join(sorted(errors))}")
        return response


def single_line(value: str) -> str:
    # Header values must not carry CR/LF; line breaks collapse to single spaces.
    return " ".join(part.strip() for part in value.splitlines() if part.strip())


def build_email_message(payload: dict[str, Any], *, sender: str, recipient: str) -> MIMEMultipart:
    title = str(payload.get("title") or "")
    body = str(payload.get("body") or "")
    url = str(payload.get("url") or "")
    message = MIMEMultipart("alternative")
    message["From"] = sender
    message["To"] = recipient
    message["Subject"] = single_line(title)
    message["Date"] = formatdate(localtime=False)
    message["Message-ID"] = make_msgid()
    message.attach(MIMEText(f"{body}\n\nLink: {url}", "plain", "utf-8"))
    html = f'<h3>{escape(title)}</h3><p>{escape(body)}</p><a href="{escape(url, quote=True)}">View</a>'
    message.attach(MIMEText(html, "html", "utf-8"))
    return message


class EmailDispatcher:
    def __init__(
        self,
        *,
        transport: EmailTransport,
        addresses: EmailAddressResolver,
        sender: str,
    ) -> None:
        self._transport = transport
        self._addresses = addresses
        self._sender = sender

    async def dispatch(self, job: JobRecord) -> DispatchResult:
        if not self._transport.configured:
            raise ProviderConfigError("SMTP host is not configured")
        recipient = await self._addresses.resolve(job.user_id)
        if not recipient:
            return DispatchResult(success=False, response="No email address for user")
        message = build_email_message(job.payload, sender=self._sender, recipient=recipient)
        started = time.monotonic()
        try:
            response = await self._transport.send(message)
        except Exception:
            self._record(started, success=False)
            raise
        self._record(started, success=True)
        logger.info("notify_email_sent job_id=%s", job.id)
        return DispatchResult(success=True, response=response or "accepted")

    def _record(self, started: float, *, success: bool) -> None:
        record_external_call(
            integration=self._transport.integration,
            latency_ms=(time.monotonic() - started) * 1000.0,
            success=success,
        )
