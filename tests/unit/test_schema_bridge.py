"""Tests for compiling tool input schemas into validators."""

import pytest

from mcp_bridge.errors import ToolValidationError
from mcp_bridge.schema_bridge import (
    AnyNode,
    ArrayNode,
    BooleanNode,
    NullNode,
    NumberNode,
    ObjectNode,
    StringNode,
    UnionNode,
    compile_schema,
    parse_schema,
)


TOPIC_SCHEMA = {
    "type": "object",
    "properties": {"topic": {"type": "string"}},
    "required": ["topic"],
}


class TestParseSchema:
    def test_primitives(self):
        assert parse_schema({"type": "string"}) == StringNode()
        assert parse_schema({"type": "number"}) == NumberNode(integer=False)
        assert parse_schema({"type": "integer"}) == NumberNode(integer=True)
        assert parse_schema({"type": "boolean"}) == BooleanNode()
        assert parse_schema({"type": "null"}) == NullNode()

    def test_string_enum(self):
        assert parse_schema({"type": "string", "enum": ["a", "b"]}) == StringNode(enum=("a", "b"))

    def test_object_properties_and_required(self):
        node = parse_schema(TOPIC_SCHEMA)

        assert isinstance(node, ObjectNode)
        assert node.properties == (("topic", StringNode()),)
        assert node.required == frozenset({"topic"})

    def test_object_without_properties_accepts_any_mapping(self):
        assert parse_schema({"type": "object"}) == ObjectNode(properties=None)

    def test_array_items_tuple_becomes_union(self):
        node = parse_schema({"type": "array", "items": [{"type": "string"}, {"type": "number"}]})

        assert node == ArrayNode(items=UnionNode((StringNode(), NumberNode())))

    def test_single_branch_collapses(self):
        assert parse_schema({"oneOf": [{"type": "string"}]}) == StringNode()

    def test_several_branches_become_union(self):
        node = parse_schema({"anyOf": [{"type": "string"}, {"type": "boolean"}]})

        assert node == UnionNode((StringNode(), BooleanNode()))

    def test_no_usable_branch_falls_back_to_parent_type(self):
        assert parse_schema({"anyOf": [True], "type": "boolean"}) == BooleanNode()
        assert parse_schema({"oneOf": [False]}) == AnyNode()

    def test_type_list_becomes_union(self):
        assert parse_schema({"type": ["string", "null"]}) == UnionNode((StringNode(), NullNode()))

    @pytest.mark.parametrize("raw", [
        None,
        42,
        "object",
        [],
        {},
        {"type": "tuple"},
        {"type": 7},
        {"type": ["string", 5]},
    ])
    def test_unclassifiable_is_any(self, raw):
        assert parse_schema(raw) == AnyNode()


class TestCompileNeverRaises:
    @pytest.mark.parametrize("raw", [
        None,
        "nonsense",
        {"type": "object", "properties": "not-a-dict"},
        {"type": "object", "properties": {"x": "not-a-schema"}, "required": "x"},
        {"type": "object", "properties": {"tags": {"type": "array", "items": 12}}},
        {"oneOf": [True, False]},
        {"type": "object", "properties": {"level": {"type": "string", "enum": [1, 2]}}},
        {"type": "object", "properties": {"model_config": {"type": "string"}, "a-b": {"type": "integer"}}},
    ])
    def test_malformed_schema_compiles(self, raw):
        validator = compile_schema(raw, "broken_tool")

        assert validator.validate({"anything": 1}) is not None

    def test_unknown_schema_accepts_anything(self):
        validator = compile_schema({"type": "mystery"})

        assert validator.accepts_anything
        assert validator.validate({"a": [1, 2]}) == {"a": [1, 2]}


class TestValidate:
    def test_topic_round_trip(self):
        validator = compile_schema(TOPIC_SCHEMA, "search")

        assert validator.validate({"topic": "x"}) == {"topic": "x"}
        with pytest.raises(ToolValidationError) as exc_info:
            validator.validate({})

        assert "topic" in str(exc_info.value)
        assert exc_info.value.tool_name == "search"
        assert exc_info.value.errors

    def test_extra_properties_pass_through(self):
        validator = compile_schema(TOPIC_SCHEMA)

        assert validator.validate({"topic": "x", "lang": "en"}) == {"topic": "x", "lang": "en"}

    def test_absent_optional_not_added(self):
        schema = {
            "type": "object",
            "properties": {"topic": {"type": "string"}, "limit": {"type": "integer"}},
            "required": ["topic"],
        }
        validator = compile_schema(schema)

        assert validator.validate({"topic": "x"}) == {"topic": "x"}
        assert validator.validate({"topic": "x", "limit": 3}) == {"topic": "x", "limit": 3}

    def test_types_are_not_coerced(self):
        schema = {
            "type": "object",
            "properties": {"limit": {"type": "integer"}, "verbose": {"type": "boolean"}},
        }
        validator = compile_schema(schema)

        with pytest.raises(ToolValidationError):
            validator.validate({"limit": "5"})
        with pytest.raises(ToolValidationError):
            validator.validate({"verbose": "true"})

    def test_number_accepts_int_and_float(self):
        validator = compile_schema({"type": "object", "properties": {"score": {"type": "number"}}})

        assert validator.validate({"score": 2}) == {"score": 2}
        assert validator.validate({"score": 1.5}) == {"score": 1.5}

    def test_enum_is_closed(self):
        schema = {"type": "object", "properties": {"mode": {"type": "string", "enum": ["fast", "slow"]}}}
        validator = compile_schema(schema)

        assert validator.validate({"mode": "fast"}) == {"mode": "fast"}
        with pytest.raises(ToolValidationError):
            validator.validate({"mode": "medium"})

    def test_array_items_checked(self):
        schema = {"type": "object", "properties": {"tags": {"type": "array", "items": {"type": "string"}}}}
        validator = compile_schema(schema)

        assert validator.validate({"tags": ["a", "b"]}) == {"tags": ["a", "b"]}
        with pytest.raises(ToolValidationError) as exc_info:
            validator.validate({"tags": ["a", 1]})

        assert "tags.1" in str(exc_info.value)

    def test_union_branches(self):
        schema = {"type": "object", "properties": {"id": {"oneOf": [{"type": "string"}, {"type": "integer"}]}}}
        validator = compile_schema(schema)

        assert validator.validate({"id": "abc"}) == {"id": "abc"}
        assert validator.validate({"id": 7}) == {"id": 7}
        with pytest.raises(ToolValidationError):
            validator.validate({"id": [1]})

    def test_nested_objects_keep_property_names(self):
        schema = {
            "type": "object",
            "properties": {
                "webhook": {
                    "type": "object",
                    "properties": {"url": {"type": "string"}, "retry-count": {"type": "integer"}},
                    "required": ["url"],
                },
                "json": {"type": "string"},
            },
        }
        validator = compile_schema(schema, "crawl-url")

        args = {"webhook": {"url": "https://example.com/hook", "headers": {"X-Key": "k"}}, "json": "yes"}
        assert validator.validate(args) == args
        with pytest.raises(ToolValidationError) as exc_info:
            validator.validate({"webhook": {"retry-count": 2}})

        assert "webhook.url" in str(exc_info.value)

    def test_none_args_treated_as_empty(self):
        validator = compile_schema({"type": "object", "properties": {"q": {"type": "string"}}})

        assert validator.validate(None) == {}
