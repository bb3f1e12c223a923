from __future__ import annotations

import inspect
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional, Protocol, Union

import httpx

from horizonauth.config import EmailProvider, Settings
from horizonauth.logging import get_logger, redact_email

logger = get_logger(__name__)

EmailCallback = Callable[[str, str, str], Union[None, Awaitable[None]]]

RESEND_API_URL = "https://api.resend.com/emails"
SENDGRID_API_URL = "https://api.sendgrid.com/v3/mail/send"


@dataclass(frozen=True)
class EmailMessage:
    to: str
    subject: str
    html: str
    text: str


class EmailTransport(Protocol):
    name: str

    async def send(self, message: EmailMessage) -> None: ...


class ConsoleEmailProvider:
    """Development transport: writes the message to the log instead of sending it."""

    name = "console"

    async def send(self, message: EmailMessage) -> None:
        logger.info(
            "email_dev_mode",
            to=redact_email(message.to),
            subject=message.subject,
            body_preview=message.text[:300],
        )


class CallbackEmailProvider:
    """Hands each message to an application callable ``(to, subject, html)``."""

    name = "custom"

    def __init__(self, callback: EmailCallback) -> None:
        self.callback = callback

    async def send(self, message: EmailMessage) -> None:
        result = self.callback(message.to, message.subject, message.html)
        if inspect.isawaitable(result):
            await result


class _HttpEmailProvider:
    api_url: str

    def __init__(
        self,
        api_key: str,
        from_address: str,
        from_name: str,
        *,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        if not api_key:
            raise ValueError(f"{self.name} email provider requires EMAIL_API_KEY")
        self.api_key = api_key
        self.from_address = from_address
        self.from_name = from_name
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=httpx.Timeout(30.0, connect=10.0),
                headers={"Authorization": f"Bearer {self.api_key}"},
                transport=self._transport,
            )
        return self._client

    def _payload(self, message: EmailMessage) -> dict[str, Any]:
        raise NotImplementedError

    async def send(self, message: EmailMessage) -> None:
        response = await self._get_client().post(self.api_url, json=self._payload(message))
        response.raise_for_status()

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None


class ResendEmailProvider(_HttpEmailProvider):
    name = "resend"
    api_url = RESEND_API_URL

    def _payload(self, message: EmailMessage) -> dict[str, Any]:
        return {
            "from": f"{self.from_name} <{self.from_address}>",
            "to": [message.to],
            "subject": message.subject,
            "html": message.html,
            "text": message.text,
        }


class SendGridEmailProvider(_HttpEmailProvider):
    name = "sendgrid"
    api_url = SENDGRID_API_URL

    def _payload(self, message: EmailMessage) -> dict[str, Any]:
        return {
            "personalizations": [{"to": [{"email": message.to}]}],
            "from": {"email": self.from_address, "name": self.from_name},
            "subject": message.subject,
            "content": [
                {"type": "text/plain", "value": message.text},
                {"type": "text/html", "value": message.html},
            ],
        }


_STYLE = """
        body { font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, sans-serif; line-height: 1.6; color: #1f2933; }
        .container { max-width: 600px; margin: 0 auto; padding: 40px 20px; }
        .button { display: inline-block; background: #2563eb; color: white; padding: 12px 24px; border-radius: 8px; text-decoration: none; font-weight: 600; }
        .footer { margin-top: 40px; font-size: 12px; color: #5b6470; }
"""


def _render_html(title: str, intro: str, link: str, button: str, notes: list[str], product: str) -> str:
    note_html = "\n".join(f"        <p>{note}</p>" for note in notes)
    return f"""
<!DOCTYPE html>
<html>
<head>
    <meta charset="utf-8">
    <style>{_STYLE}    </style>
</head>
<body>
    <div class="container">
        <h1>{title}</h1>
        <p>{intro}</p>
        <p style="margin: 30px 0;">
            <a href="{link}" class="button">{button}</a>
        </p>
{note_html}
        <div class="footer">
            <p>{product}</p>
            <p>If the button doesn't work, copy and paste this URL: {link}</p>
        </div>
    </div>
</body>
</html>
"""


def _render_text(title: str, intro: str, link: str, notes: list[str], product: str) -> str:
    body = "\n\n".join(notes)
    return f"{title}\n\n{intro}\n\n{link}\n\n{body}\n\n---\n{product}\n"


class EmailDispatcher:
    """Transactional auth emails over one configured transport.

    Delivery failures are logged and reported as ``False``; they never
    propagate into the calling auth flow.
    """

    def __init__(
        self,
        transport: EmailTransport,
        *,
        base_url: str = "http://localhost:3000",
        product_name: str = "Horizon Auth",
    ) -> None:
        self.transport = transport
        self.base_url = base_url.rstrip("/")
        self.product_name = product_name

    async def _deliver(self, message: EmailMessage) -> bool:
        try:
            await self.transport.send(message)
        except httpx.HTTPStatusError as exc:
            logger.error(
                "email_api_error",
                provider=self.transport.name,
                to=redact_email(message.to),
                status_code=exc.response.status_code,
            )
            return False
        except httpx.HTTPError as exc:
            logger.error(
                "email_transport_error",
                provider=self.transport.name,
                to=redact_email(message.to),
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return False
        except Exception as exc:
            logger.error(
                "email_send_failed",
                provider=self.transport.name,
                to=redact_email(message.to),
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return False
        logger.info(
            "email_sent",
            provider=self.transport.name,
            to=redact_email(message.to),
            subject=message.subject,
        )
        return True

    def password_reset_message(self, email: str, token: str) -> EmailMessage:
        link = f"{self.base_url}/reset-password?token={token}"
        title = "Reset your password"
        intro = (
            "We received a request to reset your password. "
            "Use the link below to choose a new password:"
        )
        notes = [
            "This link will expire in 1 hour.",
            "If you didn't request this, you can safely ignore this email.",
        ]
        return EmailMessage(
            to=email,
            subject="Password Reset Request",
            html=_render_html(title, intro, link, "Reset Password", notes, self.product_name),
            text=_render_text(title, intro, link, notes, self.product_name),
        )

    def email_verification_message(self, email: str, token: str) -> EmailMessage:
        link = f"{self.base_url}/verify-email?token={token}"
        title = "Verify your email"
        intro = "Thanks for signing up! Please verify your email address using the link below:"
        notes = ["If you didn't create an account, you can safely ignore this email."]
        return EmailMessage(
            to=email,
            subject="Verify Your Email Address",
            html=_render_html(title, intro, link, "Verify Email", notes, self.product_name),
            text=_render_text(title, intro, link, notes, self.product_name),
        )

    async def send_password_reset_email(self, email: str, token: str) -> bool:
        return await self._deliver(self.password_reset_message(email, token))

    async def send_email_verification_email(self, email: str, token: str) -> bool:
        return await self._deliver(self.email_verification_message(email, token))


def build_email_dispatcher(
    settings: Settings,
    callback: Optional[EmailCallback] = None,
    *,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> EmailDispatcher:
    """Pick the transport named by ``EMAIL_PROVIDER``.

    ``transport`` is passed to the HTTP providers' client (tests use
    ``httpx.MockTransport``).
    """
    provider = settings.email_provider
    sender: EmailTransport
    if provider == EmailProvider.CUSTOM:
        if callback is None:
            raise ValueError("EMAIL_PROVIDER=custom requires a callback")
        sender = CallbackEmailProvider(callback)
    elif provider == EmailProvider.RESEND:
        sender = ResendEmailProvider(
            settings.email_api_key or "",
            settings.email_from,
            settings.email_from_name,
            transport=transport,
        )
    elif provider == EmailProvider.SENDGRID:
        sender = SendGridEmailProvider(
            settings.email_api_key or "",
            settings.email_from,
            settings.email_from_name,
            transport=transport,
        )
    else:
        sender = ConsoleEmailProvider()
    logger.info("email_provider_selected", provider=sender.name)
    return EmailDispatcher(
        sender, base_url=settings.app_base_url, product_name=settings.email_from_name
    )
