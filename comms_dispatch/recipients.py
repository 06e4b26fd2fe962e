# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Recipient normalization.

Turns the heterogeneous ``to`` input accepted by the API (a single string,
a list of strings or a list of structured recipients) into a flat,
de-duplicated list of addresses valid for the target channel.

Invalid entries are dropped rather than rejected: a bulk batch is sent to
whoever is valid. :class:`NoValidRecipients` is raised only when nothing
survives.
"""

from __future__ import annotations

import re
from collections.abc import Iterable
from dataclasses import dataclass, field
from typing import Any
from urllib.parse import urlparse

from .errors import NoValidRecipients
from .logger import get_logger
from .models import CommType, Recipient

EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
PHONE_RE = re.compile(r"^\+\d{8,15}$")
DEFAULT_COUNTRY_CODE = "254"

logger = get_logger("CommsDispatch.recipients")


@dataclass
class NormalizedRecipients:
    """Result of :meth:`RecipientNormalizer.normalize`.

    ``records`` is aligned with ``addresses`` (one structured record per
    surviving address, synthesised for plain string input).
    """

    addresses: list[str] = field(default_factory=list)
    records: list[Recipient] = field(default_factory=list)
    dropped: list[str] = field(default_factory=list)

    def __len__(self) -> int:
        return len(self.addresses)


class RecipientNormalizer:
    """Channel aware recipient validation and de-duplication."""

    def __init__(self, default_country_code: str = DEFAULT_COUNTRY_CODE):
        self.default_country_code = default_country_code.lstrip("+")

    # ----------------------------------------------------------------- address
    def normalize_email(self, value: str) -> str | None:
        candidate = value.strip()
        if not EMAIL_RE.match(candidate):
            return None
        return candidate.lower()

    def normalize_phone(self, value: str) -> str | None:
        """Return an E.164 number, assuming the default country for ``0`` prefixes."""
        digits = re.sub(r"[^\d+]", "", value.strip())
        if not digits:
            return None
        if digits.startswith("00"):
            digits = f"+{digits[2:]}"
        elif digits.startswith("0"):
            digits = f"+{self.default_country_code}{digits[1:]}"
        elif not digits.startswith("+"):
            digits = f"+{digits}"
        if "+" in digits[1:]:
            return None
        return digits if PHONE_RE.match(digits) else None

    @staticmethod
    def normalize_token(value: str) -> str | None:
        candidate = value.strip()
        if len(candidate) < 8 or any(ch.isspace() for ch in candidate):
            return None
        return candidate

    @staticmethod
    def normalize_url(value: str) -> str | None:
        candidate = value.strip()
        parsed = urlparse(candidate)
        if parsed.scheme not in ("http", "https") or not parsed.netloc:
            return None
        return candidate

    def normalize_address(self, value: str, channel: str) -> str | None:
        """Validate a single address for ``channel``; ``None`` when invalid."""
        if channel == CommType.EMAIL:
            return self.normalize_email(value)
        if channel == CommType.SMS:
            return self.normalize_phone(value)
        if channel == CommType.PUSH:
            return self.normalize_token(value)
        if channel == CommType.WEBHOOK:
            return self.normalize_url(value)
        raise ValueError(f"Unknown channel '{channel}'")

    # ------------------------------------------------------------------ inputs
    @staticmethod
    def _address_of(record: Recipient, channel: str) -> str | None:
        if channel == CommType.EMAIL:
            return record.email
        if channel == CommType.SMS:
            return record.phone_number
        if channel == CommType.PUSH:
            return record.token
        if channel == CommType.WEBHOOK:
            return record.url
        return None

    @staticmethod
    def _iter_inputs(to: Any) -> Iterable[Any]:
        if to is None:
            return []
        if isinstance(to, str):
            return [part for part in to.split(",") if part.strip()]
        if isinstance(to, (Recipient, dict)):
            return [to]
        if isinstance(to, (list, tuple, set)):
            return list(to)
        return [str(to)]

    def normalize(self, to: Any, channel: str) -> NormalizedRecipients:
        """Return the canonical recipient list for ``channel``.

        Raises:
            NoValidRecipients: when no entry passes validation.
        """
        result = NormalizedRecipients()
        seen: set[str] = set()
        for item in self._iter_inputs(to):
            if isinstance(item, dict):
                item = Recipient.model_validate(item)
            if isinstance(item, Recipient):
                raw = self._address_of(item, channel)
                record = item
            elif item:
                raw = str(item)
                record = None
            else:
                continue
            address = self.normalize_address(raw, channel) if raw else None
            if address is None:
                result.dropped.append(str(raw) if raw else "-")
                continue
            if address in seen:
                continue
            seen.add(address)
            if record is None:
                record = self._record_for(address, channel)
            result.addresses.append(address)
            result.records.append(record)

        if result.dropped:
            logger.debug("Dropped %d invalid %s recipient(s): %s", len(result.dropped), channel, result.dropped)
        if not result.addresses:
            raise NoValidRecipients(f"No valid {channel} recipients")
        return result

    @staticmethod
    def _record_for(address: str, channel: str) -> Recipient:
        if channel == CommType.EMAIL:
            return Recipient(email=address)
        if channel == CommType.SMS:
            return Recipient(phone_number=address)
        if channel == CommType.PUSH:
            return Recipient(token=address)
        return Recipient(url=address)


__all__ = ["NormalizedRecipients", "RecipientNormalizer"]
