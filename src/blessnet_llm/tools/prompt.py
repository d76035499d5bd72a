"""System prompt construction."""

from __future__ import annotations

import json
import logging
from datetime import datetime
from typing import Mapping

from .types import ToolDescriptor

__all__ = ["DEFAULT_SYSTEM_MESSAGE", "build_system_prompt", "FUNCTION_CALL_EXAMPLE"]

LOGGER = logging.getLogger(__name__)

DEFAULT_SYSTEM_MESSAGE = "You are a helpful AI assistant."

FUNCTION_CALL_EXAMPLE = (
    '<function>{ "name": "example_function_name", "arguments": { "example_name": "example_value" } }</function>'
)

_TOOL_ASSISTANT_INSTRUCTIONS = """
# Assistant Instructions
You are a helpful AI assistant that can leverage tools to provide accurate and up-to-date information. \
You excel at understanding when and how to use the right tools to solve user requests efficiently.
"""

_TOOL_INSTRUCTIONS = """
# Tool Instructions
You have access to external tools that can provide real-time information, perform calculations, \
and execute specific actions. Always consider using these tools when:
- The user asks for real-time or up-to-date information
- The user's request requires external data that may not be in your training
- A specialized capability would provide a more accurate or detailed response
- You need to verify facts or check current information

Available functions:
{functions}

Function calling protocol:
```
{example}
```

Critical requirements for function calls:
- Function calls MUST be enclosed in BOTH <function> and </function> tags
- All required parameters MUST be specified in the arguments object
- When calling a function, respond ONLY with the function call JSON object
- Keep the entire function call on a single line
- Call only one function at a time
- Include exact parameter names as specified in the function definition
- When using search results in non-function responses, always cite your sources

For complex requests, use a step-by-step approach:
1. Analyze what tool is most appropriate for the request
2. Call the function with precise parameters
3. Use the returned data to formulate your complete response

When explicitly asked to use MCP (Model Context Protocol), you MUST use the functions provided to you.
"""


def build_system_prompt(
    system_message: str | None,
    tools: Mapping[str, ToolDescriptor] | None,
    *,
    now: datetime | None = None,
) -> str:
    """Render the system prompt for a session.

    Args:
        system_message: Caller-supplied instructions, if any.
        tools: Discovered tools; ``None`` or empty yields the plain prompt.
        now: Clock override used for the leading date line.

    Returns:
        The prompt text, always starting with ``Today Date: <Month DD, YYYY>``.
    """

    today = (now or datetime.now()).strftime("%B %d, %Y")
    prompt = f"Today Date: {today}\n"

    if not tools:
        return prompt + f"# Assistant Instructions\n{system_message or DEFAULT_SYSTEM_MESSAGE}"

    prompt += _TOOL_ASSISTANT_INSTRUCTIONS
    if system_message:
        prompt += f"{system_message}\n"
    functions = json.dumps([tool.to_prompt_dict() for tool in tools.values()], indent=2, ensure_ascii=False)
    prompt += _TOOL_INSTRUCTIONS.format(functions=functions, example=FUNCTION_CALL_EXAMPLE)
    LOGGER.debug("System prompt with %s tool(s):\n%s", len(tools), prompt)
    return prompt
