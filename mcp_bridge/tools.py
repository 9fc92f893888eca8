"""
Tool descriptors, call results and the validated proxies exposed to callers
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional

from .errors import ToolValidationError
from .schema_bridge import Validator, compile_schema

logger = logging.getLogger(__name__)


@dataclass
class ToolDescriptor:
    """One tool advertised by an upstream server"""
    name: str
    description: str = ""
    input_schema: Dict[str, Any] = field(default_factory=dict)
    output_schema: Optional[Dict[str, Any]] = None

    @classmethod
    def from_mcp(cls, tool: Any) -> "ToolDescriptor":
        """Build from an mcp.types.Tool (or a plain dict in the same shape)"""
        if isinstance(tool, dict):
            return cls(
                name=tool["name"],
                description=tool.get("description") or "",
                input_schema=tool.get("inputSchema") or {},
                output_schema=tool.get("outputSchema"),
            )
        return cls(
            name=tool.name,
            description=getattr(tool, "description", None) or "",
            input_schema=getattr(tool, "inputSchema", None) or {},
            output_schema=getattr(tool, "outputSchema", None),
        )

    def to_dict(self) -> Dict[str, Any]:
        entry = {
            "name": self.name,
            "description": self.description,
            "inputSchema": self.input_schema,
        }
        if self.output_schema is not None:
            entry["outputSchema"] = self.output_schema
        return entry


@dataclass
class ToolCallResult:
    """Uniform invocation result; failures are reported in-band"""
    content: List[Dict[str, Any]] = field(default_factory=list)
    is_error: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {"content": self.content, "isError": self.is_error}

    @classmethod
    def error(cls, message: str) -> "ToolCallResult":
        return cls(content=[{"type": "text", "text": message}], is_error=True)

    @classmethod
    def from_mcp(cls, result: Any) -> "ToolCallResult":
        """Convert an mcp CallToolResult"""
        if isinstance(result, dict):
            return cls(content=list(result.get("content") or []), is_error=bool(result.get("isError")))
        content = []
        for item in getattr(result, "content", None) or []:
            if hasattr(item, "model_dump"):
                content.append(item.model_dump(mode="json", by_alias=True, exclude_none=True))
            elif isinstance(item, dict):
                content.append(item)
            else:
                content.append({"type": "text", "text": str(item)})
        return cls(content=content, is_error=bool(getattr(result, "isError", False)))

    @property
    def text(self) -> str:
        return "\n".join(item.get("text", "") for item in self.content if item.get("type") == "text")


ToolCaller = Callable[[str, str, Dict[str, Any]], Awaitable[ToolCallResult]]


class ToolProxy:
    """Callable stand-in for an upstream tool with local argument validation"""

    def __init__(
        self,
        server_name: str,
        descriptor: ToolDescriptor,
        caller: ToolCaller,
        validator: Optional[Validator] = None,
    ):
        self.server_name = server_name
        self.descriptor = descriptor
        self.validator = validator or compile_schema(descriptor.input_schema, descriptor.name)
        self._caller = caller

    @property
    def name(self) -> str:
        return self.descriptor.name

    @property
    def description(self) -> str:
        return self.descriptor.description

    def to_dict(self) -> Dict[str, Any]:
        entry = self.descriptor.to_dict()
        entry["server"] = self.server_name
        return entry

    def validate(self, args: Optional[Dict[str, Any]]) -> Dict[str, Any]:
        return self.validator.validate(args)

    async def invoke(self, args: Optional[Dict[str, Any]] = None) -> ToolCallResult:
        try:
            validated = self.validate(args)
        except ToolValidationError as e:
            logger.debug(f"Rejected call to {self.server_name}/{self.name}: {e}")
            return ToolCallResult.error(str(e))

        logger.debug(f"Executing {self.server_name}/{self.name} with args: {validated}")
        try:
            return await self._caller(self.server_name, self.name, validated)
        except Exception as e:
            logger.error(f"Error executing {self.server_name}/{self.name}: {e}")
            return ToolCallResult.error(f"Error executing {self.name}: {e}")

    __call__ = invoke

    def __repr__(self):
        return f"ToolProxy({self.server_name}/{self.name})"
