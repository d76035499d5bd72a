"""Shared dataclasses for tool discovery and function-call dispatch."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Mapping

__all__ = ["ToolDescriptor", "ToolsMap", "FunctionCallStatus", "FunctionCallResult"]


@dataclass(slots=True)
class ToolDescriptor:
    """A remote tool and the endpoint that serves it."""

    name: str
    source_endpoint: str
    description: str | None = None
    input_schema: Dict[str, Any] = field(default_factory=dict)
    reachable: bool = True

    @classmethod
    def from_tool(cls, tool: Any, endpoint: str) -> "ToolDescriptor":
        """Build a descriptor from an MCP ``Tool`` (or anything shaped like one)."""

        schema = getattr(tool, "inputSchema", None)
        return cls(
            name=str(getattr(tool, "name")),
            source_endpoint=endpoint,
            description=getattr(tool, "description", None),
            input_schema=dict(schema) if isinstance(schema, Mapping) else {},
        )

    def to_prompt_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"name": self.name}
        if self.description:
            payload["description"] = self.description
        payload["inputSchema"] = self.input_schema
        return payload


ToolsMap = Dict[str, ToolDescriptor]


class FunctionCallStatus(Enum):
    NO_FUNCTION_CALL = "no_function_call"
    EXECUTED = "executed"
    ERROR = "error"


@dataclass(slots=True, frozen=True)
class FunctionCallResult:
    """Outcome of scanning model output for a function call."""

    status: FunctionCallStatus
    output: str = ""
    tool_name: str | None = None

    @classmethod
    def no_call(cls) -> "FunctionCallResult":
        return cls(FunctionCallStatus.NO_FUNCTION_CALL)

    @classmethod
    def executed(cls, tool_name: str, output: str) -> "FunctionCallResult":
        return cls(FunctionCallStatus.EXECUTED, output, tool_name)

    @classmethod
    def error(cls, message: str, tool_name: str | None = None) -> "FunctionCallResult":
        return cls(FunctionCallStatus.ERROR, message, tool_name)

    @property
    def is_error(self) -> bool:
        return self.status is FunctionCallStatus.ERROR
