# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Email transports used to deliver confirmations and newsletter issues.

Two concrete transports are provided:

- :class:`HttpEmailClient` posts a JSON payload to an email API
  (``POST {base_url}/email``) authenticated with a bearer token.
- :class:`SmtpEmailClient` sends a multipart/alternative message through a
  pooled SMTP connection.

Both raise :class:`EmailDeliveryError` for any failure the caller may retry.
"""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from email.message import EmailMessage
from typing import Any, Dict, Optional

import aiohttp
import aiosmtplib

from .domain import SubscriberEmail
from .logger import get_logger
from .smtp_pool import SMTPPool


class EmailDeliveryError(Exception):
    """The transport did not accept the message."""


class EmailClient(ABC):
    """Abstract capability to deliver one email to one recipient."""

    @abstractmethod
    async def send(
        self, recipient: SubscriberEmail, subject: str, html_body: str, text_body: str
    ) -> None:
        """Deliver the message or raise :class:`EmailDeliveryError`."""
        ...

    async def cleanup(self) -> None:
        """Close idle resources that are no longer usable."""

    async def close(self) -> None:
        """Release transport resources."""


class HttpEmailClient(EmailClient):
    def __init__(
        self,
        base_url: str,
        sender: SubscriberEmail,
        authorization_token: str,
        *,
        timeout: float = 10.0,
        logger=None,
    ):
        self.base_url = base_url.rstrip("/")
        self.sender = sender
        self._authorization_token = authorization_token
        self._timeout = aiohttp.ClientTimeout(total=timeout)
        self._session: Optional[aiohttp.ClientSession] = None
        self.logger = logger or get_logger()

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=self._timeout)
        return self._session

    async def send(
        self, recipient: SubscriberEmail, subject: str, html_body: str, text_body: str
    ) -> None:
        url = f"{self.base_url}/email"
        payload = {
            "From": str(self.sender),
            "To": str(recipient),
            "Subject": subject,
            "HtmlBody": html_body,
            "TextBody": text_body,
        }
        headers = {"Authorization": f"Bearer {self._authorization_token}"}
        try:
            async with self._get_session().post(url, json=payload, headers=headers) as resp:
                resp.raise_for_status()
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            raise EmailDeliveryError(f"Email API rejected message to {recipient}: {exc}") from exc
        self.logger.debug("Email API accepted message to %s", recipient)

    async def close(self) -> None:
        if self._session is not None:
            await self._session.close()
            self._session = None


class SmtpEmailClient(EmailClient):
    def __init__(
        self,
        host: str,
        port: int,
        sender: SubscriberEmail,
        *,
        user: Optional[str] = None,
        password: Optional[str] = None,
        use_tls: Optional[bool] = None,
        timeout: float = 30.0,
        pool: Optional[SMTPPool] = None,
        logger=None,
    ):
        self.host = host
        self.port = int(port)
        self.sender = sender
        self.user = user
        self.password = password
        self.use_tls = self.port == 465 if use_tls is None else bool(use_tls)
        self.timeout = timeout
        self.pool = pool or SMTPPool()
        self.logger = logger or get_logger()

    def build_message(
        self, recipient: SubscriberEmail, subject: str, html_body: str, text_body: str
    ) -> EmailMessage:
        msg = EmailMessage()
        msg["From"] = str(self.sender)
        msg["To"] = str(recipient)
        msg["Subject"] = subject
        msg.set_content(text_body)
        msg.add_alternative(html_body, subtype="html")
        return msg

    async def send(
        self, recipient: SubscriberEmail, subject: str, html_body: str, text_body: str
    ) -> None:
        msg = self.build_message(recipient, subject, html_body, text_body)
        try:
            async with self.pool.connection(
                self.host, self.port, self.user, self.password, use_tls=self.use_tls
            ) as smtp:
                async with asyncio.timeout(self.timeout):
                    await smtp.send_message(msg, sender=str(self.sender))
        except (aiosmtplib.SMTPException, OSError, asyncio.TimeoutError) as exc:
            raise EmailDeliveryError(f"SMTP delivery to {recipient} failed: {exc}") from exc
        self.logger.debug("SMTP server accepted message to %s", recipient)

    async def cleanup(self) -> None:
        await self.pool.cleanup()

    async def close(self) -> None:
        await self.pool.close()


def create_email_client(settings: Dict[str, Any], logger=None) -> EmailClient:
    """Build the transport selected by ``settings["email_backend"]``."""
    backend = (settings.get("email_backend") or "http").lower()
    sender = SubscriberEmail.parse(settings["email_sender"])
    timeout = float(settings.get("email_timeout") or 10.0)
    if backend == "http":
        return HttpEmailClient(
            settings["email_api_url"],
            sender,
            settings.get("email_api_token") or "",
            timeout=timeout,
            logger=logger,
        )
    if backend == "smtp":
        return SmtpEmailClient(
            settings["smtp_host"],
            int(settings.get("smtp_port") or 25),
            sender,
            user=settings.get("smtp_user"),
            password=settings.get("smtp_password"),
            use_tls=settings.get("smtp_use_tls"),
            timeout=timeout,
            logger=logger,
        )
    raise ValueError(f"Unknown email backend: '{backend}'. Supported: http, smtp")
