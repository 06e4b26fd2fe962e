import pytest

from comms_dispatch.errors import NoValidRecipients, ValidationError
from comms_dispatch.models import Recipient
from comms_dispatch.recipients import RecipientNormalizer


@pytest.fixture
def normalizer():
    return RecipientNormalizer(default_country_code="254")


def test_email_addresses_are_lowercased_and_deduplicated(normalizer):
    result = normalizer.normalize("Ada@Example.com, ada@example.com ,bob@example.org", "email")

    assert result.addresses == ["ada@example.com", "bob@example.org"]
    assert [r.email for r in result.records] == ["ada@example.com", "bob@example.org"]
    assert result.dropped == []


def test_invalid_entries_are_dropped(normalizer):
    result = normalizer.normalize(["a@example.com", "not-an-email", "b@example.com"], "email")

    assert len(result) == 2
    assert result.dropped == ["not-an-email"]


@pytest.mark.parametrize(
    "raw, expected",
    [
        ("0712345678", "+254712345678"),
        ("+254 712-345-678", "+254712345678"),
        ("254712345678", "+254712345678"),
        ("00254712345678", "+254712345678"),
        ("(0712) 345 678", "+254712345678"),
    ],
)
def test_phone_numbers_become_e164(normalizer, raw, expected):
    assert normalizer.normalize_phone(raw) == expected


@pytest.mark.parametrize("raw", ["12345", "abc", "+25471234567812345", "+254+712345678"])
def test_invalid_phone_numbers(normalizer, raw):
    assert normalizer.normalize_phone(raw) is None


def test_structured_recipients_keep_their_metadata(normalizer):
    result = normalizer.normalize(
        [{"phoneNumber": "0712345678", "name": "Ada", "metadata": {"plan": "pro"}}, Recipient(email="x@y.z")],
        "sms",
    )

    assert result.addresses == ["+254712345678"]
    assert result.records[0].name == "Ada"
    assert result.records[0].metadata == {"plan": "pro"}
    assert result.dropped == ["-"]


def test_push_tokens_and_webhook_urls(normalizer):
    assert normalizer.normalize(["device-token-123", "short"], "push").addresses == ["device-token-123"]
    urls = normalizer.normalize(["https://hooks.example.com/a", "ftp://nope", "http://"], "webhook")
    assert urls.addresses == ["https://hooks.example.com/a"]


def test_nothing_valid_raises(normalizer):
    with pytest.raises(NoValidRecipients) as excinfo:
        normalizer.normalize(["", "nope"], "email")
    assert isinstance(excinfo.value, ValidationError)
    assert excinfo.value.code == "no_valid_recipients"


def test_unknown_channel(normalizer):
    with pytest.raises(ValueError):
        normalizer.normalize("a@example.com", "fax")
