# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Configuration loader for providers and templates."""

from __future__ import annotations

import configparser
import json
from pathlib import Path
from typing import Any

from .logger import get_logger
from .providers import PROVIDER_TYPES, ProviderRegistry, build_provider
from .templates import TemplateStore

logger = get_logger("CommsDispatch.config")

LIMIT_FIELDS = {
    "limit_per_minute": "per_minute",
    "limit_per_hour": "per_hour",
    "limit_per_day": "per_day",
}
TEMPLATE_FIELDS = ("subject", "body", "html", "text", "title", "data")


class ProviderConfigLoader:
    """Load provider and template definitions from config.ini."""

    def __init__(self, config_path: str):
        """Initialize with path to config.ini file."""
        self.config_path = config_path
        self.config = configparser.ConfigParser(interpolation=None)

    def load_config(self) -> None:
        """Load the configuration file."""
        if not Path(self.config_path).exists():
            raise FileNotFoundError(f"Config file not found: {self.config_path}")
        self.config.read(self.config_path)

    @staticmethod
    def _split_key(key: str, prefix: str) -> tuple[str, str] | None:
        if not key.startswith(f"{prefix}."):
            logger.warning("Ignoring invalid key %s (expected %s.<name>.<field>)", key, prefix)
            return None
        parts = key.split(".", 2)
        if len(parts) != 3:
            logger.warning("Invalid %s key format: %s", prefix, key)
            return None
        return parts[1], parts[2]

    def parse_providers(self) -> list[dict[str, Any]]:
        """Parse providers from the [providers] section.

        Expected format in config.ini:
        ```ini
        [providers]
        provider.mailer.type = smtp
        provider.mailer.config = {"host": "smtp.example.com", "port": 587, "from_address": "noreply@example.com"}
        provider.mailer.default = true
        provider.mailer.limit_per_minute = 60

        provider.africastalking.type = africastalking
        provider.africastalking.config = {"username": "acme", "api_key": "..."}
        ```

        Returns:
            List of provider dictionaries with keys: name, type, config, default, rate_limits
        """
        if not self.config.has_section("providers"):
            logger.info("No [providers] section found in config file")
            return []

        providers: dict[str, dict[str, Any]] = {}
        for key, value in self.config.items("providers"):
            parsed = self._split_key(key, "provider")
            if parsed is None:
                continue
            name, field = parsed
            entry = providers.setdefault(name, {"name": name, "config": {}, "default": False, "rate_limits": {}})
            if field == "type":
                entry["type"] = value.strip().lower()
            elif field == "config":
                try:
                    entry["config"] = json.loads(value)
                except json.JSONDecodeError as exc:
                    raise ValueError(f"Invalid JSON in provider.{name}.config: {exc}") from exc
            elif field == "default":
                entry["default"] = value.strip().lower() in {"1", "true", "yes", "on"}
            elif field in LIMIT_FIELDS:
                entry["rate_limits"][LIMIT_FIELDS[field]] = int(value)
            else:
                logger.warning("Unknown provider field: %s (in %s)", field, key)

        result: list[dict[str, Any]] = []
        for name, entry in providers.items():
            if "type" not in entry:
                raise ValueError(f"Provider '{name}' missing required field 'type'")
            if entry["type"] not in PROVIDER_TYPES:
                raise ValueError(f"Provider '{name}' has unknown type '{entry['type']}'")
            result.append(entry)
        logger.info("Parsed %d provider(s) from config", len(result))
        return result

    def parse_templates(self) -> dict[str, dict[str, Any]]:
        """Parse templates from the [templates] section.

        ```ini
        [templates]
        template.welcome.subject = Welcome {{ name }}
        template.welcome.body = Hello {{ name }}, your account is ready.
        ```
        """
        if not self.config.has_section("templates"):
            return {}
        templates: dict[str, dict[str, Any]] = {}
        for key, value in self.config.items("templates"):
            parsed = self._split_key(key, "template")
            if parsed is None:
                continue
            template_id, field = parsed
            if field not in TEMPLATE_FIELDS:
                logger.warning("Unknown template field: %s (in %s)", field, key)
                continue
            templates.setdefault(template_id, {})[field] = json.loads(value) if field == "data" else value
        return templates

    def build_registry(self, registry: ProviderRegistry | None = None) -> ProviderRegistry:
        """Instantiate every configured provider into ``registry``."""
        registry = registry or ProviderRegistry()
        for definition in self.parse_providers():
            adapter = build_provider(definition)
            if definition["rate_limits"]:
                adapter.rate_limits.update(definition["rate_limits"])
            registry.register(adapter, default=definition["default"])
        return registry


def load_from_config(config_path: str) -> tuple[ProviderRegistry, TemplateStore]:
    """Convenience function returning the provider registry and template store.

    A missing file yields an empty registry and store.
    """
    loader = ProviderConfigLoader(config_path)
    try:
        loader.load_config()
    except FileNotFoundError:
        logger.warning("Config file %s not found; no providers configured", config_path)
        return ProviderRegistry(), TemplateStore()
    return loader.build_registry(), TemplateStore(loader.parse_templates())


__all__ = ["ProviderConfigLoader", "load_from_config"]
