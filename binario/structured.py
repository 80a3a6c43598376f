"""Structured output: pull a JSON value out of model text and validate it."""
from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Iterable, Mapping

from pydantic import BaseModel

from binario.errors import SchemaValidationError, StructuredOutputParseError
from binario.gateway import Gateway, coerce_messages, merge_options
from binario.messages import ChatOptions, Message, Usage
from binario.schema import Schema, as_schema

logger = logging.getLogger(__name__)

_FENCED_BLOCK = re.compile(r"```(?:json)?\s*([\s\S]*?)```")

DEFAULT_STRUCTURED_TEMPERATURE = 0.3
DEFAULT_STRUCTURED_MAX_TOKENS = 2048


def extract_json_payload(content: str) -> str:
    """Return the first fenced code block's body, or the whole content."""
    match = _FENCED_BLOCK.search(content)
    if match:
        return match.group(1).strip()
    return content.strip()


def parse_structured_output(content: str, schema: Schema | type[BaseModel] | Mapping[str, Any]) -> Any:
    resolved = as_schema(schema)
    payload = extract_json_payload(content)
    try:
        parsed = json.loads(payload)
    except ValueError as exc:
        raise StructuredOutputParseError(f"Failed to parse JSON: {exc}", raw=content) from exc
    try:
        return resolved.validate(parsed)
    except SchemaValidationError as exc:
        raise StructuredOutputParseError(
            f"Schema validation failed: {', '.join(exc.errors)}", raw=content, errors=exc.errors
        ) from exc


def schema_instructions(json_schema: Mapping[str, Any]) -> str:
    return (
        "You must respond with valid JSON that strictly conforms to this schema:\n"
        f"{json.dumps(json_schema, indent=2)}\n\n"
        "IMPORTANT:\n"
        "- Output ONLY valid JSON, no markdown code blocks\n"
        "- Follow all type constraints exactly\n"
        "- Include all required fields\n"
        "- Do not add fields not in the schema"
    )


def inject_schema_instructions(
    messages: list[Message],
    json_schema: Mapping[str, Any],
    system_prompt: str | None = None,
) -> list[Message]:
    """Extend the leading system message with the schema, or prepend one.

    ``system_prompt`` seeds the prepended message when the conversation has none.
    """
    instructions = schema_instructions(json_schema)
    if messages and messages[0].role == "system":
        first = messages[0]
        return [Message(role="system", content=f"{first.content}\n\n{instructions}", name=first.name), *messages[1:]]
    if system_prompt:
        instructions = f"{system_prompt}\n\n{instructions}"
    return [Message(role="system", content=instructions), *messages]


@dataclass(slots=True)
class StructuredResult:
    data: Any
    raw: str
    attempts: int
    usage: Usage = field(default_factory=Usage)
    model: str = ""
    provider: str = ""


async def generate_structured(
    gateway: Gateway,
    messages: Iterable[Message | Mapping[str, Any]],
    schema: Schema | type[BaseModel] | Mapping[str, Any],
    options: ChatOptions | None = None,
    *,
    retries: int = 2,
) -> StructuredResult:
    """Ask for JSON matching ``schema``, feeding validation errors back for up to ``retries`` repairs.

    Dispatcher errors are not retried here; only unparseable or invalid replies are.
    """
    resolved = as_schema(schema)
    opts = merge_options(options, {})
    overrides: dict[str, Any] = {}
    if opts.temperature is None:
        overrides["temperature"] = DEFAULT_STRUCTURED_TEMPERATURE
    if opts.max_tokens is None:
        overrides["max_tokens"] = DEFAULT_STRUCTURED_MAX_TOKENS
    history = coerce_messages(messages)
    if opts.system_prompt and not any(m.role == "system" for m in history):
        # Folded into the injected system message below.
        conversation = inject_schema_instructions(history, resolved.json_schema, opts.system_prompt)
        overrides["system_prompt"] = None
    else:
        conversation = inject_schema_instructions(history, resolved.json_schema)
    opts = merge_options(opts, overrides)
    usage = Usage()
    last_error: StructuredOutputParseError | None = None
    repair: list[Message] = []

    for attempt in range(1, max(0, retries) + 2):
        response = await gateway.chat([*conversation, *repair], opts)
        usage = usage + response.usage
        try:
            data = parse_structured_output(response.content, resolved)
        except StructuredOutputParseError as exc:
            last_error = exc
            logger.info("structured output attempt %d failed: %s", attempt, exc.message)
            repair = [
                Message(role="assistant", content=response.content),
                Message(
                    role="user",
                    content=f"Your previous response was invalid: {exc.message}. Please try again with valid JSON.",
                ),
            ]
            continue
        return StructuredResult(
            data=data,
            raw=response.content,
            attempts=attempt,
            usage=usage,
            model=response.model,
            provider=response.provider,
        )

    assert last_error is not None
    raise StructuredOutputParseError(
        f"Failed to generate valid structured output after {max(0, retries) + 1} attempts: {last_error.message}",
        raw=last_error.raw,
        errors=last_error.errors,
    )
