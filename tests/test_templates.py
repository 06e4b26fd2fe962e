import pytest

from comms_dispatch.errors import TemplateNotFound
from comms_dispatch.models import CommContent
from comms_dispatch.templates import TemplateResolver, TemplateStore, render_text


def test_render_text_with_dotted_paths():
    data = {"user": {"first_name": "Ada"}, "code": 1234}
    assert render_text("Hi {{ user.first_name }}, code {{code}}", data) == "Hi Ada, code 1234"
    assert render_text("Hi {{ user.last_name }}!", data) == "Hi !"
    assert render_text(None, data) is None


def test_store_lookup():
    store = TemplateStore({"welcome": {"subject": "Welcome"}})
    assert "welcome" in store
    assert store.ids() == ["welcome"]
    with pytest.raises(TemplateNotFound):
        store.get("missing")


def test_resolver_renders_stored_template():
    resolver = TemplateResolver(
        TemplateStore({"otp": {"body": "Your code is {{ code }}", "data": {"kind": "{{ kind }}", "n": 1}}})
    )

    content = resolver.resolve({"template_id": "otp", "data": {"code": "9876", "kind": "login"}})

    assert isinstance(content, CommContent)
    assert content.body == "Your code is 9876"
    assert content.data == {"kind": "login", "n": 1}


def test_inline_template_wins_over_store():
    resolver = TemplateResolver(TemplateStore({"t": {"body": "stored"}}))

    content = resolver.resolve({"template_id": "t", "inline": {"subject": "Hi {{ name }}", "body": "inline"},
                                "data": {"name": "Bob"}})

    assert content.subject == "Hi Bob"
    assert content.body == "inline"


def test_base_content_is_kept_when_template_is_silent():
    resolver = TemplateResolver(TemplateStore({"t": {"subject": "New subject"}}))

    content = resolver.resolve({"template_id": "t"}, CommContent(subject="old", body="keep me"))

    assert content.subject == "New subject"
    assert content.body == "keep me"


def test_unknown_or_empty_reference():
    resolver = TemplateResolver()
    with pytest.raises(TemplateNotFound):
        resolver.resolve({"template_id": "nope"})
    with pytest.raises(TemplateNotFound):
        resolver.resolve({})


def test_missing_nested_values_render_empty():
    assert render_text("Dear {{ tenant.profile.name }}.", {}) == "Dear ."


def test_only_html_is_escaped():
    resolver = TemplateResolver(
        TemplateStore({"note": {"subject": "From {{ name }}", "html": "<p>{{ name }}</p>", "body": "{{ name }}"}})
    )

    content = resolver.resolve({"template_id": "note", "data": {"name": "<b>Eve & co</b>"}})

    assert content.html == "<p>&lt;b&gt;Eve &amp; co&lt;/b&gt;</p>"
    assert content.subject == "From <b>Eve & co</b>"
    assert content.body == "<b>Eve & co</b>"


def test_template_logic_is_supported():
    text = "{% for item in items %}{{ item }};{% endfor %} total {{ len(items) }}"
    assert render_text(text, {"items": ["rent", "water"]}) == "rent;water; total 2"


def test_broken_template_is_not_retryable():
    with pytest.raises(TemplateNotFound) as excinfo:
        render_text("Hello {{ name ", {"name": "x"})
    assert excinfo.value.code == "invalid_template"
