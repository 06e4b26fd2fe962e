import asyncio

import aiohttp
import aiosmtplib
import pytest

from comms_dispatch.errors import ProviderError, TemplateNotFound
from comms_dispatch.retry import RetryStrategy


@pytest.fixture
def strategy():
    return RetryStrategy(max_retries=3, retry_unit_seconds=60)


def test_provider_errors_carry_their_own_classification(strategy):
    assert strategy.classify_error(ProviderError("busy", temporary=True, provider_code="503")) == (True, "503")
    assert strategy.classify_error(ProviderError("invalid", temporary=False, provider_code=403)) == (False, 403)
    assert strategy.classify_error(TemplateNotFound("nope")) == (False, None)


def test_smtp_codes(strategy):
    assert strategy.classify_error(aiosmtplib.SMTPResponseException(451, "try later")) == (True, 451)
    assert strategy.classify_error(aiosmtplib.SMTPResponseException(550, "no such user")) == (False, 550)


@pytest.mark.parametrize("status, temporary", [(429, True), (503, True), (400, False), (404, False)])
def test_http_statuses(strategy, status, temporary):
    exc = aiohttp.ClientResponseError(None, (), status=status)
    assert strategy.classify_error(exc) == (temporary, status)


def test_network_failures_are_temporary(strategy):
    assert strategy.classify_error(asyncio.TimeoutError())[0] is True
    assert strategy.classify_error(ConnectionResetError())[0] is True


def test_message_patterns(strategy):
    assert strategy.classify_error(RuntimeError("Service temporarily unavailable"))[0] is True
    assert strategy.classify_error(RuntimeError("SSL: WRONG_VERSION_NUMBER"))[0] is False
    assert strategy.classify_error(RuntimeError("Authentication failed"))[0] is False
    assert strategy.classify_error(RuntimeError("something odd"))[0] is True


def test_calculate_delay_uses_fixed_interval():
    strategy = RetryStrategy(retry_unit_seconds=60)
    assert strategy.calculate_delay(5) == 300
    assert strategy.calculate_delay(0.5) == 30
    assert strategy.calculate_delay() == 300
    assert strategy.next_attempt_ts(1_000, 1) == 1_060
    assert RetryStrategy(retry_unit_seconds=0).calculate_delay(5) == 0


def test_should_retry_respects_budget(strategy):
    temporary = ProviderError("busy", temporary=True)
    permanent = ProviderError("bad", temporary=False)

    assert strategy.should_retry(0, temporary)
    assert strategy.should_retry(2, temporary)
    assert not strategy.should_retry(3, temporary)
    assert not strategy.should_retry(0, permanent)
    assert not strategy.should_retry(0, temporary, max_retries=0)
    assert strategy.should_retry(4, temporary, max_retries=5)


def test_to_provider_error(strategy):
    wrapped = strategy.to_provider_error(asyncio.TimeoutError(), provider="mailer")
    assert wrapped.code == "timeout"
    assert wrapped.temporary is True
    assert wrapped.provider == "mailer"

    original = ProviderError("x", temporary=False)
    assert strategy.to_provider_error(original, provider="sms") is original
    assert original.provider == "sms"

    smtp = strategy.to_provider_error(aiosmtplib.SMTPResponseException(550, "rejected"))
    assert smtp.temporary is False
    assert smtp.provider_code == 550
