# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Retry policy for failed deliveries.

Attempts are spaced by a fixed interval (``retry_interval`` expressed in
``retry_unit_seconds``, minutes by default). Only temporary errors are
retried, and never more than ``max_retries`` times after the first attempt.
"""

from __future__ import annotations

import asyncio

import aiohttp
import aiosmtplib

from .errors import ProviderError, TemplateNotFound, ValidationError

DEFAULT_MAX_RETRIES = 3
DEFAULT_RETRY_INTERVAL = 5
DEFAULT_RETRY_UNIT_SECONDS = 60

TEMPORARY_PATTERNS = (
    "421",  # Service not available
    "450",  # Mailbox unavailable
    "451",  # Local error in processing
    "452",  # Insufficient system storage
    "timeout",
    "timed out",
    "connection refused",
    "connection reset",
    "temporarily unavailable",
    "try again",
    "throttl",
    "rate limit",
)

# Configuration problems that will not fix themselves on retry.
PERMANENT_PATTERNS = (
    "wrong_version_number",
    "certificate verify failed",
    "ssl handshake",
    "certificate_unknown",
    "unknown_ca",
    "certificate has expired",
    "self signed certificate",
    "authentication failed",
    "invalid phone",
    "invalid recipient",
    "unsubscribed",
    "535",
    "534",
    "530",
)


class RetryStrategy:
    """Decide whether and when a failed attempt is tried again."""

    def __init__(
        self,
        *,
        max_retries: int = DEFAULT_MAX_RETRIES,
        retry_unit_seconds: int = DEFAULT_RETRY_UNIT_SECONDS,
    ):
        self.max_retries = max(0, int(max_retries))
        self.retry_unit_seconds = max(0, int(retry_unit_seconds))

    def calculate_delay(self, retry_interval: float | None = None) -> int:
        """Return the delay in seconds before the next attempt."""
        interval = DEFAULT_RETRY_INTERVAL if retry_interval is None else float(retry_interval)
        return max(0, int(round(interval * self.retry_unit_seconds)))

    def next_attempt_ts(self, now_ts: int, retry_interval: float | None = None) -> int:
        return int(now_ts) + self.calculate_delay(retry_interval)

    def should_retry(self, attempt: int, exc: BaseException, max_retries: int | None = None) -> bool:
        """Return ``True`` when ``exc`` is temporary and attempts remain.

        ``attempt`` is the zero-based number of the attempt that just failed.
        """
        limit = self.max_retries if max_retries is None else max(0, int(max_retries))
        if attempt >= limit:
            return False
        is_temporary, _ = self.classify_error(exc)
        return is_temporary

    @staticmethod
    def classify_error(exc: BaseException) -> tuple[bool, int | str | None]:
        """Classify an error as temporary or permanent.

        Returns:
            tuple: (is_temporary, code) where ``code`` is the provider/SMTP/HTTP
            code when one is available.
        """
        if isinstance(exc, ProviderError):
            return exc.temporary, exc.provider_code
        if isinstance(exc, (TemplateNotFound, ValidationError)):
            return False, None

        code: int | str | None = None
        if isinstance(exc, aiosmtplib.SMTPResponseException):
            code = exc.code
        elif isinstance(exc, aiohttp.ClientResponseError):
            code = exc.status
            if exc.status == 429 or exc.status >= 500:
                return True, code
            return False, code

        if isinstance(exc, (asyncio.TimeoutError, TimeoutError, ConnectionError, aiohttp.ClientConnectionError)):
            return True, code

        if isinstance(code, int):
            if 400 <= code < 500:
                return True, code
            if 500 <= code < 600:
                return False, code

        if isinstance(exc, OSError):
            return True, code

        message = str(exc).lower()
        for pattern in TEMPORARY_PATTERNS:
            if pattern in message:
                return True, code
        for pattern in PERMANENT_PATTERNS:
            if pattern in message:
                return False, code
        # Unknown errors are retried.
        return True, code

    def to_provider_error(self, exc: BaseException, provider: str | None = None) -> ProviderError:
        """Wrap any adapter failure into a :class:`ProviderError`."""
        if isinstance(exc, ProviderError):
            if exc.provider is None:
                exc.provider = provider
            return exc
        is_temporary, code = self.classify_error(exc)
        if isinstance(exc, (asyncio.TimeoutError, TimeoutError)):
            message = "Provider call timed out"
            error_code = "timeout"
        else:
            message = str(exc) or exc.__class__.__name__
            error_code = "provider_error"
        return ProviderError(
            message,
            code=error_code,
            temporary=is_temporary,
            provider=provider,
            provider_code=code,
        )


__all__ = [
    "DEFAULT_MAX_RETRIES",
    "DEFAULT_RETRY_INTERVAL",
    "DEFAULT_RETRY_UNIT_SECONDS",
    "RetryStrategy",
]
