"""
Schema bridge: JSON-Schema-like tool input schemas to pydantic validators

The raw schema is first parsed into a closed set of node types, then each
node maps to a pydantic annotation. Parsing and compilation never raise;
anything unrecognised degrades to an accept-anything node.
"""

import itertools
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Literal, Optional, Tuple, Union

from pydantic import (
    ConfigDict,
    Field,
    StrictBool,
    StrictFloat,
    StrictInt,
    StrictStr,
    TypeAdapter,
    ValidationError,
    create_model,
)

from .errors import ToolValidationError

logger = logging.getLogger(__name__)

_model_counter = itertools.count(1)


# ===== SCHEMA NODES =====

@dataclass(frozen=True)
class StringNode:
    enum: Optional[Tuple[str, ...]] = None


@dataclass(frozen=True)
class NumberNode:
    integer: bool = False


@dataclass(frozen=True)
class BooleanNode:
    pass


@dataclass(frozen=True)
class NullNode:
    pass


@dataclass(frozen=True)
class AnyNode:
    pass


@dataclass(frozen=True)
class ArrayNode:
    items: "SchemaNode" = field(default_factory=AnyNode)


@dataclass(frozen=True)
class ObjectNode:
    # None means no declared properties: any mapping is accepted
    properties: Optional[Tuple[Tuple[str, "SchemaNode"], ...]] = None
    required: frozenset = frozenset()


@dataclass(frozen=True)
class UnionNode:
    branches: Tuple["SchemaNode", ...] = ()


SchemaNode = Union[StringNode, NumberNode, BooleanNode, NullNode, AnyNode, ArrayNode, ObjectNode, UnionNode]


# ===== PARSING =====

def parse_schema(raw: Any) -> SchemaNode:
    """Classify a raw schema; never raises"""
    try:
        return _parse(raw)
    except Exception as e:
        logger.debug(f"Unclassifiable schema, accepting anything: {e}")
        return AnyNode()


def _union(branches: List[SchemaNode]) -> SchemaNode:
    if not branches:
        return AnyNode()
    if len(branches) == 1:
        return branches[0]
    if any(isinstance(branch, AnyNode) for branch in branches):
        return AnyNode()
    return UnionNode(tuple(branches))


def _parse(raw: Any) -> SchemaNode:
    if not isinstance(raw, dict):
        return AnyNode()

    combinator = raw.get("oneOf") or raw.get("anyOf")
    if isinstance(combinator, list):
        branches = [_parse(branch) for branch in combinator if isinstance(branch, dict)]
        if branches:
            return _union(branches)
        # no usable branch: fall back to the parent's own type
        return _parse_typed(raw) if "type" in raw else AnyNode()

    return _parse_typed(raw)


def _parse_typed(raw: Dict[str, Any]) -> SchemaNode:
    schema_type = raw.get("type")
    if isinstance(schema_type, list):
        return _union([_parse_typed({**raw, "type": t}) for t in schema_type])

    if schema_type == "string":
        enum = raw.get("enum")
        if isinstance(enum, list) and enum and all(isinstance(v, str) for v in enum):
            return StringNode(enum=tuple(enum))
        return StringNode()
    if schema_type in ("number", "integer"):
        return NumberNode(integer=schema_type == "integer")
    if schema_type == "boolean":
        return BooleanNode()
    if schema_type == "null":
        return NullNode()
    if schema_type == "array":
        items = raw.get("items")
        if isinstance(items, list):
            return ArrayNode(items=_union([_parse(item) for item in items]))
        return ArrayNode(items=_parse(items) if items is not None else AnyNode())
    if schema_type == "object":
        properties = raw.get("properties")
        if not isinstance(properties, dict):
            return ObjectNode()
        required = raw.get("required")
        required = frozenset(r for r in required if isinstance(r, str)) if isinstance(required, list) else frozenset()
        parsed = tuple((str(key), _parse(value)) for key, value in properties.items())
        return ObjectNode(properties=parsed, required=required)

    if schema_type is not None:
        logger.debug(f"Using default schema for type: {schema_type}")
    return AnyNode()


# ===== ANNOTATIONS =====

def to_annotation(node: SchemaNode, model_name: str = "ToolArguments") -> Any:
    """Map a schema node to a pydantic-compatible annotation"""
    if isinstance(node, StringNode):
        if node.enum:
            return Literal[node.enum]
        return StrictStr
    if isinstance(node, NumberNode):
        return StrictInt if node.integer else Union[StrictInt, StrictFloat]
    if isinstance(node, BooleanNode):
        return StrictBool
    if isinstance(node, NullNode):
        return type(None)
    if isinstance(node, ArrayNode):
        return List[to_annotation(node.items, f"{model_name}Item")]
    if isinstance(node, UnionNode):
        members = tuple(
            to_annotation(branch, f"{model_name}Option{i}") for i, branch in enumerate(node.branches)
        )
        return Union[members]
    if isinstance(node, ObjectNode):
        if node.properties is None:
            return Dict[str, Any]
        return _object_model(node, model_name)
    return Any


def _object_model(node: ObjectNode, model_name: str):
    # Property names can be anything (dashes, keywords, BaseModel attributes),
    # so fields get synthetic names and keep the property name as alias
    fields = {}
    for index, (key, child) in enumerate(node.properties):
        annotation = to_annotation(child, f"{model_name}_{index}")
        if key in node.required:
            fields[f"field_{index}"] = (annotation, Field(..., alias=key))
        else:
            fields[f"field_{index}"] = (annotation, Field(default=None, alias=key))
    return create_model(
        f"{model_name}{next(_model_counter)}",
        __config__=ConfigDict(extra="allow"),
        **fields,
    )


# ===== VALIDATORS =====

class Validator:
    """Compiled argument validator for one tool"""

    def __init__(self, node: SchemaNode, adapter: Optional[TypeAdapter] = None, tool_name: str = ""):
        self.node = node
        self.tool_name = tool_name
        self._adapter = adapter

    @property
    def accepts_anything(self) -> bool:
        return self._adapter is None

    def validate(self, args: Optional[Dict[str, Any]]) -> Dict[str, Any]:
        if args is None:
            args = {}
        if self._adapter is None:
            return args
        try:
            value = self._adapter.validate_python(args)
        except ValidationError as e:
            problems = []
            for err in e.errors():
                location = ".".join(str(part) for part in err.get("loc", ())) or "(root)"
                problems.append(f"{location}: {err.get('msg')}")
            raise ToolValidationError(
                f"Invalid arguments for tool {self.tool_name or '(unnamed)'}: " + "; ".join(problems),
                self.tool_name,
                problems,
            ) from e
        return self._adapter.dump_python(value, by_alias=True, exclude_unset=True)


def compile_schema(schema: Any, tool_name: str = "") -> Validator:
    """Compile a tool input schema; degrades to accept-anything instead of raising"""
    node = parse_schema(schema)
    if isinstance(node, AnyNode):
        return Validator(node, None, tool_name)
    try:
        annotation = to_annotation(node, _model_base_name(tool_name))
        return Validator(node, TypeAdapter(annotation), tool_name)
    except Exception as e:
        logger.debug(f"Error converting schema for {tool_name or 'tool'}: {e}")
        return Validator(AnyNode(), None, tool_name)


def _model_base_name(tool_name: str) -> str:
    cleaned = "".join(part.capitalize() for part in "".join(
        ch if ch.isalnum() else " " for ch in tool_name
    ).split())
    return f"{cleaned or 'Tool'}Arguments"
