from __future__ import annotations

import pytest
from pydantic import BaseModel

from binario.errors import SchemaValidationError, StructuredOutputParseError
from binario.messages import ChatOptions
from binario.schema import Schema, as_schema
from binario.structured import extract_json_payload, generate_structured, parse_structured_output


class Address(BaseModel):
    city: str


class Person(BaseModel):
    name: str
    age: int
    address: Address


def test_pydantic_schema_is_inlined_and_untitled():
    document = Schema.from_model(Person).json_schema

    assert "$defs" not in document
    assert "title" not in document
    assert document["properties"]["address"]["properties"]["city"] == {"type": "string"}
    assert document["required"] == ["name", "age", "address"]


def test_pydantic_schema_validates_to_model_instance():
    person = Schema.from_model(Person).validate({"name": "Ada", "age": "36", "address": {"city": "London"}})
    assert isinstance(person, Person)
    assert person.age == 36


def test_pydantic_schema_reports_every_error():
    with pytest.raises(SchemaValidationError) as excinfo:
        Schema.from_model(Person).validate({"name": "Ada", "address": {}})
    assert len(excinfo.value.errors) == 2
    assert excinfo.value.status_code == 422


def test_json_schema_document_validation():
    schema = as_schema({"type": "object", "properties": {"n": {"type": "integer", "minimum": 0}}, "required": ["n"]})
    assert schema.validate({"n": 3}) == {"n": 3}
    with pytest.raises(SchemaValidationError, match="n"):
        schema.validate({"n": -1})


def test_invalid_json_schema_document_is_rejected():
    with pytest.raises(SchemaValidationError):
        Schema.from_json_schema({"type": "not-a-type"})


def test_from_fields_builds_a_model():
    schema = Schema.from_fields("Query", q=(str, ...), limit=(int, 10))
    assert schema.validate({"q": "x"}).limit == 10


def test_extract_json_payload():
    assert extract_json_payload('```json\n{"a": 1}\n```') == '{"a": 1}'
    assert extract_json_payload('text ```\n[1, 2]\n``` more') == "[1, 2]"
    assert extract_json_payload('  {"a": 1}  ') == '{"a": 1}'


def test_parse_structured_output_failures_are_typed():
    schema = {"type": "object", "required": ["value"]}
    with pytest.raises(StructuredOutputParseError, match="Failed to parse JSON"):
        parse_structured_output("not json", schema)
    with pytest.raises(StructuredOutputParseError, match="Schema validation failed") as excinfo:
        parse_structured_output("{}", schema)
    assert excinfo.value.raw == "{}"


@pytest.mark.asyncio
async def test_generate_structured_repairs_invalid_reply(backend, make_gateway, completion):
    backend.reply_json(completion("I think it is forty-two", prompt_tokens=5, completion_tokens=5))
    backend.reply_json(completion('{"value": 42}', prompt_tokens=5, completion_tokens=5))
    schema = {"type": "object", "properties": {"value": {"type": "number"}}, "required": ["value"]}

    result = await generate_structured(make_gateway(), [{"role": "user", "content": "number?"}], schema)

    assert result.data == {"value": 42}
    assert result.attempts == 2
    assert result.usage.total_tokens == 20

    first = backend.sent_json(0)
    assert first["temperature"] == 0.3
    assert first["max_tokens"] == 2048
    assert first["messages"][0]["role"] == "system"
    assert '"required"' in first["messages"][0]["content"]

    repair = backend.sent_json(1)["messages"]
    assert repair[-2] == {"role": "assistant", "content": "I think it is forty-two"}
    assert repair[-1]["role"] == "user"
    assert repair[-1]["content"].startswith("Your previous response was invalid")


@pytest.mark.asyncio
async def test_generate_structured_extends_existing_system_message(backend, make_gateway, completion):
    backend.reply_json(completion('{"ok": true}'))
    messages = [{"role": "system", "content": "You are precise."}, {"role": "user", "content": "go"}]

    await generate_structured(make_gateway(), messages, {"type": "object"}, retries=0)

    sent = backend.sent_json()["messages"]
    assert [m["role"] for m in sent] == ["system", "user"]
    assert sent[0]["content"].startswith("You are precise.\n\nYou must respond with valid JSON")


@pytest.mark.asyncio
async def test_generate_structured_keeps_system_prompt_option(backend, make_gateway, completion):
    backend.reply_json(completion('{"ok": true}'))

    await generate_structured(
        make_gateway(),
        [{"role": "user", "content": "go"}],
        {"type": "object"},
        ChatOptions(system_prompt="You are Ada, answer tersely."),
        retries=0,
    )

    sent = backend.sent_json()["messages"]
    system = [m for m in sent if m["role"] == "system"]
    assert len(system) == 1
    assert system[0]["content"].startswith("You are Ada, answer tersely.\n\nYou must respond with valid JSON")
    assert sent[-1] == {"role": "user", "content": "go"}


@pytest.mark.asyncio
async def test_generate_structured_gives_up_after_retries(backend, make_gateway, completion):
    backend.reply_json(completion("nope"))
    backend.reply_json(completion("still nope"))

    with pytest.raises(StructuredOutputParseError, match="after 2 attempts"):
        await generate_structured(make_gateway(), [{"role": "user", "content": "x"}], {"type": "object"}, retries=1)
    assert backend.calls == 2
