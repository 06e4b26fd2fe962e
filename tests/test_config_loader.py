"""Tests for provider and template loading from config.ini."""

import pytest

from comms_dispatch.config_loader import ProviderConfigLoader, load_from_config
from comms_dispatch.providers import HttpSmsProvider, SmtpEmailProvider


def test_parse_providers_from_config(tmp_path):
    """Test parsing providers from config.ini [providers] section."""
    config_file = tmp_path / "test_config.ini"
    config_file.write_text("""
[providers]
provider.mailer.type = smtp
provider.mailer.config = {"host": "smtp.example.com", "port": 587, "from_address": "noreply@example.com"}
provider.mailer.limit_per_minute = 60

provider.at.type = AfricasTalking
provider.at.config = {"username": "acme", "api_key": "k"}
provider.at.default = true
provider.at.limit_per_day = 1000
provider.at.colour = blue
""")

    loader = ProviderConfigLoader(str(config_file))
    loader.load_config()
    providers = loader.parse_providers()

    assert len(providers) == 2

    mailer = next(p for p in providers if p["name"] == "mailer")
    assert mailer["type"] == "smtp"
    assert mailer["config"]["port"] == 587
    assert mailer["default"] is False
    assert mailer["rate_limits"] == {"per_minute": 60}

    at = next(p for p in providers if p["name"] == "at")
    assert at["type"] == "africastalking"
    assert at["default"] is True
    assert at["rate_limits"] == {"per_day": 1000}


def test_build_registry(tmp_path):
    config_file = tmp_path / "registry.ini"
    config_file.write_text("""
[providers]
provider.mailer.type = smtp
provider.mailer.config = {"from_address": "noreply@example.com"}
provider.mailer.limit_per_hour = 100
provider.sms.type = http_sms
""")

    loader = ProviderConfigLoader(str(config_file))
    loader.load_config()
    registry = loader.build_registry()

    mailer = registry.get("mailer")
    assert isinstance(mailer, SmtpEmailProvider)
    assert mailer.rate_limits == {"per_hour": 100}
    assert isinstance(registry.default("sms"), HttpSmsProvider)


@pytest.mark.parametrize(
    "body, message",
    [
        ("provider.x.config = {not json}", "Invalid JSON"),
        ('provider.x.config = {"a": 1}', "missing required field"),
        ("provider.x.type = pigeon", "unknown type"),
    ],
)
def test_invalid_provider_definitions(tmp_path, body, message):
    config_file = tmp_path / "bad.ini"
    config_file.write_text(f"[providers]\n{body}\n")

    loader = ProviderConfigLoader(str(config_file))
    loader.load_config()
    with pytest.raises(ValueError, match=message):
        loader.parse_providers()


def test_invalid_keys_are_ignored(tmp_path):
    config_file = tmp_path / "keys.ini"
    config_file.write_text("""
[providers]
mailer.type = smtp
provider.incomplete = smtp
""")

    loader = ProviderConfigLoader(str(config_file))
    loader.load_config()
    assert loader.parse_providers() == []


def test_parse_templates(tmp_path):
    config_file = tmp_path / "templates.ini"
    config_file.write_text("""
[templates]
template.welcome.subject = Welcome {{ name }}
template.welcome.body = Hello {{ name }}
template.promo.title = Sale
template.promo.data = {"sku": "{{ sku }}"}
template.promo.footer = ignored
""")

    loader = ProviderConfigLoader(str(config_file))
    loader.load_config()
    templates = loader.parse_templates()

    assert templates["welcome"] == {"subject": "Welcome {{ name }}", "body": "Hello {{ name }}"}
    assert templates["promo"] == {"title": "Sale", "data": {"sku": "{{ sku }}"}}


def test_missing_config_file(tmp_path):
    loader = ProviderConfigLoader(str(tmp_path / "missing.ini"))
    with pytest.raises(FileNotFoundError):
        loader.load_config()

    registry, templates = load_from_config(str(tmp_path / "missing.ini"))
    assert list(registry) == []
    assert templates.ids() == []


def test_load_from_config(tmp_path):
    config_file = tmp_path / "full.ini"
    config_file.write_text("""
[providers]
provider.hook.type = webhook
provider.hook.config = {"secret": "s"}

[templates]
template.ping.body = ping {{ n }}
""")

    registry, templates = load_from_config(str(config_file))

    assert "hook" in registry
    assert templates.get("ping") == {"body": "ping {{ n }}"}
