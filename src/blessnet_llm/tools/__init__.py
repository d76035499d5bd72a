"""Tool bridge: discovery, prompting and function-call dispatch."""

from .discovery import discover_tools, normalize_endpoint
from .function_call import (
    ToolCallError,
    call_tool,
    extract_json_candidate,
    parse_function_call,
    process_function_call,
    validate_arguments,
)
from .prompt import DEFAULT_SYSTEM_MESSAGE, build_system_prompt
from .transport import McpSseTransport, ToolSession, ToolTransport
from .types import FunctionCallResult, FunctionCallStatus, ToolDescriptor, ToolsMap

__all__ = [
    "discover_tools",
    "normalize_endpoint",
    "ToolCallError",
    "call_tool",
    "extract_json_candidate",
    "parse_function_call",
    "process_function_call",
    "validate_arguments",
    "DEFAULT_SYSTEM_MESSAGE",
    "build_system_prompt",
    "McpSseTransport",
    "ToolSession",
    "ToolTransport",
    "FunctionCallResult",
    "FunctionCallStatus",
    "ToolDescriptor",
    "ToolsMap",
]
