from __future__ import annotations

import html
from typing import Optional

import httpx

from cozyauth.logging import get_logger
from cozyauth.service.errors import EmailDeliveryError, NotConfiguredError

logger = get_logger(__name__)


class EmailService:
    """Transactional email over the Resend HTTP API."""

    def __init__(
        self,
        *,
        api_key: Optional[str] = None,
        api_url: str = "https://api.resend.com/emails",
        from_email: str = "hello@cozyartzmedia.com",
        from_name: str = "Cozyartz Media Group",
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.api_key = api_key
        self.api_url = api_url
        self.from_email = from_email
        self.from_name = from_name
        self.timeout = timeout
        self._transport = transport

    @property
    def is_configured(self) -> bool:
        return bool(self.api_key)

    def _redact_email(self, email: str) -> str:
        """Redact an email address for logging to avoid PII leakage."""
        if "@" not in email:
            return "redacted"
        local, domain = email.split("@", 1)
        return f"{local[:2]}***@{domain}"

    async def _send_email(self, to_email: str, subject: str, html_body: str, text_body: str) -> None:
        """POST one message to the provider; raises EmailDeliveryError on non-2xx."""
        if not self.is_configured:
            raise NotConfiguredError("Email service not configured")

        message = {
            "from": f"{self.from_name} <{self.from_email}>",
            "to": [to_email],
            "subject": subject,
            "html": html_body,
            "text": text_body,
        }
        headers = {"Authorization": f"Bearer {self.api_key}"}
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                response = await client.post(self.api_url, json=message, headers=headers)
        except httpx.HTTPError as exc:
            logger.error(
                "email_request_failed",
                to=self._redact_email(to_email),
                error_type=type(exc).__name__,
            )
            raise EmailDeliveryError("Failed to send magic link") from exc

        if not response.is_success:
            logger.error(
                "email_rejected",
                to=self._redact_email(to_email),
                status_code=response.status_code,
                body_preview=response.text[:200],
            )
            raise EmailDeliveryError(
                "Failed to send magic link", detail={"provider_status": response.status_code}
            )
        logger.info("email_sent", to=self._redact_email(to_email), subject=subject)

    async def send_magic_link(self, to_email: str, link: str, *, ttl_minutes: int = 15) -> None:
        safe_link = html.escape(link, quote=True)
        subject = "Sign in to your account"

        html_body = f"""
<div style="font-family: system-ui, -apple-system, sans-serif; max-width: 600px; margin: 0 auto; padding: 20px;">
  <div style="text-align: center; margin-bottom: 30px;">
    <img src="https://cozyartzmedia.com/cmgLogo.png" alt="Cozyartz Media Group" style="height: 60px;">
  </div>
  <h1 style="color: #14b8a6; text-align: center; margin-bottom: 30px;">Sign in to your account</h1>
  <p style="font-size: 16px; line-height: 1.6; color: #374151; margin-bottom: 30px;">
    Click the button below to sign in to your account. This link will expire in {ttl_minutes} minutes.
  </p>
  <div style="text-align: center; margin: 40px 0;">
    <a href="{safe_link}"
       style="background: #14b8a6; color: white; padding: 15px 30px; text-decoration: none; border-radius: 8px; font-weight: 600; display: inline-block;">
      Sign In Securely
    </a>
  </div>
  <p style="font-size: 14px; color: #6b7280; margin-top: 30px;">
    If you didn't request this sign-in link, you can safely ignore this email. The link will expire automatically.
  </p>
  <div style="border-top: 1px solid #e5e7eb; margin-top: 40px; padding-top: 20px; text-align: center; color: #6b7280; font-size: 14px;">
    <p>{html.escape(self.from_name)}</p>
  </div>
</div>
"""

        text_body = f"""Sign in to your account

Visit the link below to sign in. This link will expire in {ttl_minutes} minutes.

{link}

If you didn't request this sign-in link, you can safely ignore this email.

---
{self.from_name}
"""

        await self._send_email(to_email, subject, html_body, text_body)
