# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Exception taxonomy of the dispatch engine.

Every error carries a machine readable ``code`` so callers (and the HTTP
layer) can report failures without parsing messages.
"""

from __future__ import annotations


class CommsError(RuntimeError):
    """Base class for errors raised by the dispatch engine."""

    code = "comms_error"

    def __init__(self, message: str | None = None, *, code: str | None = None):
        super().__init__(message or self.__class__.__doc__ or self.code)
        if code is not None:
            self.code = code


class ValidationError(CommsError):
    """The send request is not acceptable and was not enqueued."""

    code = "validation_error"


class NoValidRecipients(ValidationError):
    """No valid recipient remained after normalization."""

    code = "no_valid_recipients"


class ProviderNotFound(ValidationError):
    """No provider adapter is registered for the requested channel/name."""

    code = "provider_not_found"


class ProviderError(CommsError):
    """A provider adapter failed to hand over the message.

    ``temporary`` tells the worker whether a retry has a chance to succeed.
    """

    code = "provider_error"

    def __init__(
        self,
        message: str | None = None,
        *,
        code: str | None = None,
        temporary: bool = True,
        provider: str | None = None,
        provider_code: str | int | None = None,
    ):
        super().__init__(message, code=code)
        self.temporary = temporary
        self.provider = provider
        self.provider_code = provider_code


class TemplateNotFound(CommsError):
    """The referenced template does not exist; retrying cannot fix it."""

    code = "template_not_found"


class UnknownCorrelation(CommsError):
    """A webhook references a message this service does not know."""

    code = "unknown_correlation"


class StaleTransition(CommsError):
    """A status change would move a communication backwards."""

    code = "stale_transition"

    def __init__(self, communication_id: str, current: str, target: str):
        super().__init__(
            f"Communication {communication_id} is {current}; refusing transition to {target}"
        )
        self.communication_id = communication_id
        self.current = current
        self.target = target


class CommunicationNotFound(CommsError):
    """Lookup by id did not match any communication."""

    code = "communication_not_found"


class BulkNotFound(CommsError):
    """Lookup by id did not match any bulk communication."""

    code = "bulk_not_found"


__all__ = [
    "BulkNotFound",
    "CommsError",
    "CommunicationNotFound",
    "NoValidRecipients",
    "ProviderError",
    "ProviderNotFound",
    "StaleTransition",
    "TemplateNotFound",
    "UnknownCorrelation",
    "ValidationError",
]
