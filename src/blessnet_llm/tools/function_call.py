"""Detect a function call in model output and dispatch it to its tool."""

from __future__ import annotations

import json
import logging
from typing import Any, Mapping, Tuple

import jsonschema

from .transport import ToolTransport
from .types import FunctionCallResult, ToolsMap

__all__ = [
    "ToolCallError",
    "extract_json_candidate",
    "parse_function_call",
    "validate_arguments",
    "call_tool",
    "process_function_call",
]

LOGGER = logging.getLogger(__name__)


class ToolCallError(Exception):
    """Raised when a detected function call cannot be executed."""


def extract_json_candidate(content: str) -> str | None:
    """Return the text from the first ``{`` through the last ``}``.

    Without a closing brace the remainder after ``{`` is returned so the
    JSON parser gets to reject it. ``None`` when there is no ``{`` at all.
    """

    start = content.find("{")
    if start < 0:
        return None
    end = content.rfind("}")
    if end > start:
        return content[start : end + 1]
    return content[start:]


def parse_function_call(candidate: str) -> Tuple[str, Any] | None:
    """Return ``(name, arguments)`` when ``candidate`` is a function-call object."""

    try:
        payload = json.loads(candidate)
    except json.JSONDecodeError as exc:
        LOGGER.debug("Function call candidate is not JSON: %s", exc)
        return None
    if not isinstance(payload, dict):
        return None
    name = payload.get("name")
    if not isinstance(name, str) or "arguments" not in payload:
        return None
    return name, payload["arguments"]


def validate_arguments(arguments: Mapping[str, Any], schema: Mapping[str, Any]) -> None:
    """Check ``arguments`` against a tool's ``inputSchema``.

    Raises :class:`ToolCallError` on a mismatch. A schema that is itself
    invalid is logged and skipped; the tool is left to reject the call.
    """

    if not schema:
        return
    validator_cls = jsonschema.validators.validator_for(schema, default=jsonschema.Draft202012Validator)
    try:
        validator_cls.check_schema(schema)
    except jsonschema.exceptions.SchemaError as exc:
        LOGGER.warning("Tool input schema is invalid; skipping argument validation: %s", exc.message)
        return
    error = jsonschema.exceptions.best_match(validator_cls(schema).iter_errors(dict(arguments)))
    if error is not None:
        path = ".".join(str(part) for part in error.absolute_path)
        detail = f"{path}: {error.message}" if path else error.message
        raise ToolCallError(f"Invalid arguments: {detail}")


async def call_tool(name: str, arguments: Any, tools: ToolsMap, transport: ToolTransport) -> str:
    """Invoke ``name`` over a fresh transport session and return its text output."""

    descriptor = tools.get(name)
    if descriptor is None or not descriptor.reachable:
        raise ToolCallError(f"Tool {name} not found")

    call_arguments = dict(arguments) if isinstance(arguments, Mapping) else None
    validate_arguments(call_arguments or {}, descriptor.input_schema)

    LOGGER.info("Calling tool %s at %s", name, descriptor.source_endpoint)
    LOGGER.debug("Tool %s arguments: %s", name, call_arguments)
    try:
        async with transport.connect(descriptor.source_endpoint) as session:
            result = await session.call_tool(name, call_arguments)
    except Exception as exc:  # transport and protocol failures all surface as a call error
        raise ToolCallError(f"Transport failure: {exc}") from exc

    if getattr(result, "isError", False):
        raise ToolCallError(f"Tool {name} returned an error")

    texts = [
        item.text
        for item in getattr(result, "content", None) or []
        if getattr(item, "type", "text") == "text" and isinstance(getattr(item, "text", None), str)
    ]
    return " ".join(texts)


async def process_function_call(content: str, tools: ToolsMap, transport: ToolTransport) -> FunctionCallResult:
    """Classify ``content`` and execute the function call it carries, if any.

    Returns:
        ``NO_FUNCTION_CALL`` for prose or malformed JSON, ``EXECUTED`` with the
        tool output, or ``ERROR`` when a well-formed call could not be run.
    """

    LOGGER.debug("Scanning model output for a function call: %s", content)
    candidate = extract_json_candidate(content)
    if candidate is None:
        return FunctionCallResult.no_call()
    parsed = parse_function_call(candidate)
    if parsed is None:
        return FunctionCallResult.no_call()

    name, arguments = parsed
    LOGGER.info("Detected function call: %s", name)
    try:
        output = await call_tool(name, arguments, tools, transport)
    except ToolCallError as exc:
        message = f"Error calling function '{name}': {exc}"
        LOGGER.warning("%s", message)
        return FunctionCallResult.error(message, name)
    LOGGER.debug("Function %s returned: %s", name, output)
    return FunctionCallResult.executed(name, output)
