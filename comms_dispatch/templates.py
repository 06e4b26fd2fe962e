# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Template resolution.

Templates are looked up by id in a :class:`TemplateStore` (loaded from the
``[templates]`` section of the configuration) or supplied inline with the
request; inline templates win. Fields are Jinja2 templates rendered in a
sandbox, so ``{{ user.first_name }}`` reaches into the template data.
Unknown placeholders render as an empty string. Only the ``html`` field is
autoescaped.
"""

from __future__ import annotations

from typing import Any

from jinja2 import ChainableUndefined, TemplateError
from jinja2.sandbox import SandboxedEnvironment

from .errors import TemplateNotFound
from .models import CommContent

RENDERED_FIELDS = ("subject", "body", "html", "text", "title")


def _environment(autoescape: bool) -> SandboxedEnvironment:
    env = SandboxedEnvironment(
        autoescape=autoescape,
        undefined=ChainableUndefined,
        trim_blocks=True,
        lstrip_blocks=True,
        keep_trailing_newline=True,
    )
    env.globals.update({"len": len, "str": str, "int": int, "float": float})
    return env


TEXT_ENV = _environment(autoescape=False)
HTML_ENV = _environment(autoescape=True)


def render_text(text: str | None, data: dict[str, Any], *, html: bool = False) -> str | None:
    """Render ``text`` as a template against ``data``.

    Raises:
        TemplateNotFound: with code ``invalid_template`` when the source
            does not compile or the sandbox refuses it.
    """
    if text is None:
        return None
    env = HTML_ENV if html else TEXT_ENV
    try:
        return env.from_string(text).render(**data)
    except TemplateError as exc:
        raise TemplateNotFound(f"Template cannot be rendered: {exc}", code="invalid_template") from exc


class TemplateStore:
    """In-memory registry of templates keyed by id."""

    def __init__(self, templates: dict[str, dict[str, Any]] | None = None):
        self._templates: dict[str, dict[str, Any]] = {}
        for template_id, template in (templates or {}).items():
            self.register(template_id, template)

    def register(self, template_id: str, template: dict[str, Any]) -> None:
        self._templates[template_id] = dict(template)

    def get(self, template_id: str) -> dict[str, Any]:
        try:
            return self._templates[template_id]
        except KeyError:
            raise TemplateNotFound(f"Template '{template_id}' not found") from None

    def __contains__(self, template_id: str) -> bool:
        return template_id in self._templates

    def ids(self) -> list[str]:
        return sorted(self._templates)


class TemplateResolver:
    """Turn a template reference plus data into concrete content."""

    def __init__(self, store: TemplateStore | None = None):
        self.store = store or TemplateStore()

    def source_for(self, template: dict[str, Any]) -> dict[str, Any]:
        """Return the raw template, preferring the inline one."""
        inline = template.get("inline")
        if inline:
            return inline
        template_id = template.get("template_id")
        if not template_id:
            raise TemplateNotFound("Template reference has neither id nor inline body")
        return self.store.get(template_id)

    def resolve(self, template: dict[str, Any], base: CommContent | dict[str, Any] | None = None) -> CommContent:
        """Render ``template`` into :class:`CommContent`.

        Fields already present in ``base`` are kept when the template does
        not define them.

        Raises:
            TemplateNotFound: when the referenced template id is unknown.
        """
        source = self.source_for(template)
        data = template.get("data") or {}
        if isinstance(base, CommContent):
            content = base.model_dump()
        else:
            content = dict(base or {})
        for field_name in RENDERED_FIELDS:
            if source.get(field_name) is not None:
                content[field_name] = render_text(str(source[field_name]), data, html=field_name == "html")
        if source.get("data") is not None:
            content["data"] = {
                key: render_text(value, data) if isinstance(value, str) else value
                for key, value in source["data"].items()
            }
        content.setdefault("body", "")
        if content.get("body") is None:
            content["body"] = ""
        return CommContent.model_validate(content)


__all__ = ["TemplateNotFound", "TemplateResolver", "TemplateStore", "render_text"]
