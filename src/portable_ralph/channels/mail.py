"""Email channel with three transports: SMTP, SendGrid's HTTP API, and the AWS SES CLI.

Email is the only batching channel: non-critical events are collected into a
digest window by the dispatcher and arrive here as a single digest event.
"""

from __future__ import annotations

import html
import json
import os
import re
import smtplib
import ssl
import subprocess
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Any, Callable

import httpx

from ..config import EmailConfig
from ..constants import DEFAULT_SMTP_TIMEOUT_SECONDS, RETRYABLE_PROVIDER_CODES
from ..errors import FatalDeliveryError, TransientDeliveryError, ValidationError
from ..models import NotificationEvent
from ..validation import validate_email
from .base import HttpChannel, replace_emoji

SENDGRID_ENDPOINT = "https://api.sendgrid.com/v3/mail/send"

_BOLD_RE = re.compile(r"(?<!\*)\*([^*\n]+)\*(?!\*)")
_FENCE_RE = re.compile(r"```")

SmtpFactory = Callable[..., smtplib.SMTP]
SesRunner = Callable[..., "subprocess.CompletedProcess[str]"]


def email_subject(event: NotificationEvent) -> str:
    headline = event.title or (event.message.splitlines()[0] if event.message else "")
    return f"[Ralph] {event.severity.value.upper()}: {replace_emoji(headline)}".strip()


def email_text_body(event: NotificationEvent) -> str:
    text = replace_emoji(event.render_text())
    text = _BOLD_RE.sub(r"\1", text)
    return _FENCE_RE.sub("\n", text).strip() + "\n"


def email_html_body(event: NotificationEvent) -> str:
    return (
        "<html><body>"
        f"<pre style=\"font-family: monospace\">{html.escape(email_text_body(event))}</pre>"
        "</body></html>"
    )


class EmailChannel(HttpChannel):
    """Send events by email through the configured transport.

    Args:
        config: Email settings; `config.method` picks the transport.
        client: Shared HTTP client, used by the SendGrid transport.
        smtp_factory: Builds the SMTP connection. Tests pass a fake.
        ses_runner: Runs the `aws` CLI. Tests pass a fake.
        timeout: Per-send time bound for SMTP and SES.
    """

    name = "email"
    supports_batching = True

    def __init__(
        self,
        config: EmailConfig,
        client: httpx.Client,
        *,
        resolve_dns: bool = True,
        smtp_factory: SmtpFactory = smtplib.SMTP,
        ses_runner: SesRunner = subprocess.run,
        timeout: float = DEFAULT_SMTP_TIMEOUT_SECONDS,
    ):
        super().__init__(client, resolve_dns=resolve_dns)
        self.config = config
        self._smtp_factory = smtp_factory
        self._ses_runner = ses_runner
        self._timeout = timeout

    def validate(self) -> None:
        for label, address in (("EMAIL_TO", self.config.to_address), ("EMAIL_FROM", self.config.from_address)):
            ok, reason = validate_email(address)
            if not ok:
                raise ValidationError(f"{label}: {reason}")
        method = self.config.method
        if method == "smtp" and not self.config.smtp_host:
            raise ValidationError("SMTP transport selected but SMTP_HOST is not set")
        if method == "sendgrid" and not self.config.sendgrid_api_key:
            raise ValidationError("SendGrid transport selected but SENDGRID_API_KEY is not set")
        if method == "ses" and not (
            self.config.ses_region and self.config.aws_access_key_id and self.config.aws_secret_key
        ):
            raise ValidationError("SES transport needs AWS_SES_REGION, AWS_ACCESS_KEY_ID and AWS_SECRET_KEY")
        if method not in ("smtp", "sendgrid", "ses"):
            raise ValidationError(f"unknown email method: {method!r}")

    def secrets(self) -> tuple[str, ...]:
        values = (
            self.config.smtp_password,
            self.config.sendgrid_api_key,
            self.config.aws_access_key_id,
            self.config.aws_secret_key,
        )
        return tuple(value for value in values if value)

    def deliver(self, event: NotificationEvent) -> str:
        if self.config.method == "sendgrid":
            return self._send_sendgrid(event)
        if self.config.method == "ses":
            return self._send_ses(event)
        return self._send_smtp(event)

    def build_message(self, event: NotificationEvent) -> MIMEMultipart:
        message = MIMEMultipart("alternative")
        message["Subject"] = email_subject(event)
        message["From"] = self.config.from_address
        message["To"] = self.config.to_address
        message.attach(MIMEText(email_text_body(event), "plain", "utf-8"))
        if self.config.html:
            message.attach(MIMEText(email_html_body(event), "html", "utf-8"))
        return message

    def _send_smtp(self, event: NotificationEvent) -> str:
        message = self.build_message(event)
        try:
            with self._smtp_factory(self.config.smtp_host, self.config.smtp_port, timeout=self._timeout) as server:
                if self.config.smtp_tls:
                    server.starttls(context=ssl.create_default_context())
                if self.config.smtp_user and self.config.smtp_password:
                    server.login(self.config.smtp_user, self.config.smtp_password)
                server.sendmail(self.config.from_address, [self.config.to_address], message.as_string())
        except (smtplib.SMTPAuthenticationError, smtplib.SMTPRecipientsRefused, smtplib.SMTPSenderRefused) as exc:
            raise FatalDeliveryError(f"email: SMTP rejected the message: {exc.__class__.__name__}") from exc
        except smtplib.SMTPResponseException as exc:
            if 400 <= exc.smtp_code < 500:
                raise TransientDeliveryError(f"email: SMTP {exc.smtp_code}") from exc
            raise FatalDeliveryError(f"email: SMTP {exc.smtp_code}") from exc
        except (smtplib.SMTPException, OSError) as exc:
            raise TransientDeliveryError(f"email: SMTP {exc.__class__.__name__}: {exc}") from exc
        return f"smtp {self.config.smtp_host}:{self.config.smtp_port}"

    def build_sendgrid_payload(self, event: NotificationEvent) -> dict[str, Any]:
        content = [{"type": "text/plain", "value": email_text_body(event)}]
        if self.config.html:
            content.append({"type": "text/html", "value": email_html_body(event)})
        return {
            "personalizations": [{"to": [{"email": self.config.to_address}]}],
            "from": {"email": self.config.from_address},
            "subject": email_subject(event),
            "content": content,
        }

    def _send_sendgrid(self, event: NotificationEvent) -> str:
        response = self._post_json(
            SENDGRID_ENDPOINT,
            self.build_sendgrid_payload(event),
            headers={"Authorization": f"Bearer {self.config.sendgrid_api_key}"},
        )
        return f"sendgrid HTTP {response.status_code}"

    def _send_ses(self, event: NotificationEvent) -> str:
        body: dict[str, Any] = {"Text": {"Data": email_text_body(event), "Charset": "UTF-8"}}
        if self.config.html:
            body["Html"] = {"Data": email_html_body(event), "Charset": "UTF-8"}
        content = {"Simple": {"Subject": {"Data": email_subject(event), "Charset": "UTF-8"}, "Body": body}}
        command = [
            "aws",
            "sesv2",
            "send-email",
            "--region",
            self.config.ses_region,
            "--from-email-address",
            self.config.from_address,
            "--destination",
            json.dumps({"ToAddresses": [self.config.to_address]}),
            "--content",
            json.dumps(content),
            "--output",
            "json",
        ]
        env = dict(os.environ)
        env.update(
            {
                "AWS_ACCESS_KEY_ID": self.config.aws_access_key_id,
                "AWS_SECRET_ACCESS_KEY": self.config.aws_secret_key,
                "AWS_DEFAULT_REGION": self.config.ses_region,
            }
        )
        try:
            result = self._ses_runner(
                command,
                capture_output=True,
                text=True,
                env=env,
                timeout=self._timeout,
                check=False,
            )
        except FileNotFoundError as exc:
            raise FatalDeliveryError("email: the aws CLI is not installed") from exc
        except subprocess.TimeoutExpired as exc:
            raise TransientDeliveryError(f"email: aws sesv2 timed out after {self._timeout:g}s") from exc
        if result.returncode == 0:
            return "ses ok"
        stderr = (result.stderr or "").strip()
        if any(code in stderr for code in RETRYABLE_PROVIDER_CODES):
            raise TransientDeliveryError(f"email: SES throttled or unavailable: {stderr[-200:]}")
        raise FatalDeliveryError(f"email: SES exited {result.returncode}: {stderr[-200:]}")
