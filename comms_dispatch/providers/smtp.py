# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Email delivery through an SMTP server."""

from __future__ import annotations

from email.message import EmailMessage
from email.utils import make_msgid
from typing import Any

import aiosmtplib

from ..errors import ProviderError
from ..models import Communication
from ..retry import RetryStrategy
from ..smtp_pool import SMTPPool, SmtpEndpoint
from .base import ProviderAdapter, SendResult


class SmtpEmailProvider(ProviderAdapter):
    """Send email through a pooled aiosmtplib connection.

    Configuration keys: ``host``, ``port``, ``user``, ``password``,
    ``use_tls`` (defaults to ``port == 465``), ``start_tls``,
    ``from_address``, ``reply_to``.
    """

    channel = "email"

    def __init__(
        self,
        name: str,
        config: dict[str, Any] | None = None,
        *,
        rate_limits: dict[str, Any] | None = None,
        pool: SMTPPool | None = None,
    ):
        super().__init__(name, config, rate_limits=rate_limits)
        port = int(self.config.get("port", 25))
        use_tls = self.config.get("use_tls")
        self.endpoint = SmtpEndpoint(
            host=self.config.get("host", "localhost"),
            port=port,
            user=self.config.get("user"),
            password=self.config.get("password"),
            use_tls=port == 465 if use_tls is None else bool(use_tls),
            start_tls=bool(self.config.get("start_tls", False)),
        )
        self.from_address = self.config.get("from_address") or self.config.get("from")
        self.reply_to = self.config.get("reply_to")
        self.pool = pool or SMTPPool()

    def build_message(self, message: Communication) -> EmailMessage:
        """Translate a communication into an :class:`EmailMessage`."""
        if not self.from_address:
            raise ProviderError(
                f"Provider {self.name} has no from_address configured",
                code="missing_sender",
                temporary=False,
                provider=self.name,
            )
        content = message.content
        msg = EmailMessage()
        msg["From"] = self.from_address
        msg["To"] = ", ".join(message.to)
        msg["Subject"] = content.subject or ""
        if self.reply_to:
            msg["Reply-To"] = self.reply_to
        domain = self.from_address.rsplit("@", 1)[-1] if "@" in self.from_address else None
        msg["Message-ID"] = make_msgid(idstring=message.id.replace("-", ""), domain=domain)
        msg["X-Communication-ID"] = message.id
        msg.set_content(content.text or content.body or "")
        if content.html:
            msg.add_alternative(content.html, subtype="html")
        return msg

    async def send(self, message: Communication) -> SendResult:
        msg = self.build_message(message)
        try:
            smtp = await self.pool.get_connection(self.endpoint)
            await smtp.send_message(msg, sender=self.from_address)
        except (aiosmtplib.SMTPException, OSError, TimeoutError) as exc:
            await self.pool.discard()
            raise RetryStrategy().to_provider_error(exc, self.name) from exc
        return SendResult(provider_message_id=msg["Message-ID"].strip("<>"))

    async def close(self) -> None:
        await self.pool.close_all()


__all__ = ["SmtpEmailProvider"]
