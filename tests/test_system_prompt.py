"""Tests for system prompt construction."""

from __future__ import annotations

import json
from datetime import datetime

from blessnet_llm.tools.prompt import DEFAULT_SYSTEM_MESSAGE, FUNCTION_CALL_EXAMPLE, build_system_prompt
from blessnet_llm.tools.types import ToolDescriptor

from tests.helpers import ADD_SCHEMA

NOW = datetime(2025, 3, 7, 12, 0, 0)


def _tools() -> dict[str, ToolDescriptor]:
    return {
        "add": ToolDescriptor(
            name="add",
            source_endpoint="http://localhost:3001/sse",
            description="Add two numbers",
            input_schema=ADD_SCHEMA,
        )
    }


def test_plain_prompt_uses_default_message() -> None:
    prompt = build_system_prompt(None, None, now=NOW)

    assert prompt == f"Today Date: March 07, 2025\n# Assistant Instructions\n{DEFAULT_SYSTEM_MESSAGE}"


def test_plain_prompt_uses_caller_message() -> None:
    prompt = build_system_prompt("Answer in French.", {}, now=NOW)

    assert prompt == "Today Date: March 07, 2025\n# Assistant Instructions\nAnswer in French."


def test_tool_prompt_lists_schemas_and_protocol() -> None:
    prompt = build_system_prompt("Answer in French.", _tools(), now=NOW)

    assert prompt.startswith("Today Date: March 07, 2025\n\n# Assistant Instructions\n")
    assert "leverage tools" in prompt
    assert "Answer in French.\n\n# Tool Instructions" in prompt
    functions = json.dumps(
        [{"name": "add", "description": "Add two numbers", "inputSchema": ADD_SCHEMA}],
        indent=2,
    )
    assert f"Available functions:\n{functions}\n" in prompt
    assert FUNCTION_CALL_EXAMPLE in prompt
    assert "Call only one function at a time" in prompt
    assert "always cite your sources" in prompt


def test_tool_prompt_without_caller_message() -> None:
    prompt = build_system_prompt(None, _tools(), now=NOW)

    assert DEFAULT_SYSTEM_MESSAGE not in prompt
    assert "efficiently.\n\n# Tool Instructions" in prompt
