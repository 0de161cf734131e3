"""Tests for placeholder resolution."""

from flowgate.core.templates import (
    MISSING,
    resolve_expression,
    resolve_path,
    resolve_string,
    resolve_template,
    stringify,
    unresolved_placeholders,
)
from flowgate.models.context import ExecutionContext


class TestResolvePath:
    """Test cases for path lookup."""

    def test_nested_path(self):
        """Dotted paths walk into nested mappings."""
        context = {"user": {"profile": {"name": "Ada"}}}
        assert resolve_path("user.profile.name", context) == "Ada"

    def test_list_index(self):
        context = {"items": [{"sku": "a"}, {"sku": "b"}]}
        assert resolve_path("items.1.sku", context) == "b"
        assert resolve_path("items.5.sku", context) is MISSING

    def test_verbatim_key_with_dots(self):
        """A key containing dots wins over walking the path."""
        context = {"step.one": 1, "step": {"one": 2}}
        assert resolve_path("step.one", context) == 1

    def test_missing_path(self):
        assert resolve_path("a.b", {"a": {}}) is MISSING
        assert resolve_path("a.b", {"a": "text"}) is MISSING


class TestResolveString:
    """Test cases for string substitution."""

    def test_substitutes_values(self):
        context = {"name": "Ada", "count": 3}
        assert resolve_string("Hello {{name}}, you have {{ count }} items", context) == \
            "Hello Ada, you have 3 items"

    def test_nested_number_is_stringified(self):
        assert resolve_string("{{a.b}}", {"a": {"b": 5}}) == "5"

    def test_unresolved_placeholder_stays_verbatim(self):
        assert resolve_string("Hi {{missing}}!", {}) == "Hi {{missing}}!"

    def test_structured_values_render_as_json(self):
        context = {"data": {"a": 1}, "flag": True, "nothing": None}
        assert resolve_string("{{data}}", context) == '{"a": 1}'
        assert resolve_string("{{flag}}", context) == "true"
        assert resolve_string("{{nothing}}", context) == "null"

    def test_fallback_chain(self):
        """Alternatives are tried in order, skipping empty values, ending in a literal."""
        context = {"empty": "", "nickname": "Ace"}
        assert resolve_string("{{empty || nickname || 'anon'}}", context) == "Ace"
        assert resolve_string("{{missing || 'anon'}}", context) == "anon"

    def test_node_output_reference(self):
        context = ExecutionContext().with_output("fetch", {"status": 200}).view()
        assert resolve_string("{{fetch.output.status}}", context) == "200"
        assert resolve_string("{{previousOutput.status}}", context) == "200"

    def test_environment_fallback(self, monkeypatch):
        monkeypatch.setenv("FLOWGATE_TEST_TOKEN", "secret")
        assert resolve_string("Bearer {{FLOWGATE_TEST_TOKEN}}", {}, env_fallback=True) == "Bearer secret"
        assert resolve_string("Bearer {{FLOWGATE_TEST_TOKEN}}", {}) == "Bearer {{FLOWGATE_TEST_TOKEN}}"


class TestResolveTemplate:
    """Test cases for structural resolution."""

    def test_recurses_into_structures(self):
        value = {"greeting": "Hi {{name}}", "tags": ["{{name}}", 7], "limit": 10}
        resolved = resolve_template(value, {"name": "Ada"})
        assert resolved == {"greeting": "Hi Ada", "tags": ["Ada", 7], "limit": 10}

    def test_does_not_mutate_input(self):
        value = {"a": "{{x}}"}
        resolve_template(value, {"x": 1})
        assert value == {"a": "{{x}}"}

    def test_never_raises(self):
        assert resolve_template("{{a}}", None) == "{{a}}"
        assert resolve_template(None, {}) is None


def test_resolve_expression_returns_raw_value():
    assert resolve_expression("items", {"items": [1, 2]}) == [1, 2]


def test_stringify_keeps_strings():
    assert stringify("plain") == "plain"
    assert stringify(2.5) == "2.5"


def test_unresolved_placeholders():
    assert unresolved_placeholders("{{a}} and {{ b.c }}") == ["a", "b.c"]
    assert unresolved_placeholders(None) == []
