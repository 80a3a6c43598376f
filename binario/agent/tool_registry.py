"""Tool registry: definitions, schema export, and dispatch."""
from __future__ import annotations

import asyncio
import inspect
import json
import logging
from dataclasses import dataclass
from types import MappingProxyType
from typing import Any, Callable, Iterable, Iterator, Mapping

from pydantic import BaseModel

from binario.errors import SchemaValidationError
from binario.messages import ToolCall, ToolSchema
from binario.schema import Schema, as_schema, dump_value

logger = logging.getLogger(__name__)


class MissingDependencyError(KeyError):
    """A tool asked for a dependency the agent was not configured with."""


class Dependencies(Mapping[str, Any]):
    """Read-only dependency map; an absent key is a programming error and raises."""

    __slots__ = ("_values",)

    def __init__(self, values: Mapping[str, Any] | None = None) -> None:
        self._values = MappingProxyType(dict(values or {}))

    def __getitem__(self, key: str) -> Any:
        try:
            return self._values[key]
        except KeyError:
            raise MissingDependencyError(key) from None

    def __iter__(self) -> Iterator[str]:
        return iter(self._values)

    def __len__(self) -> int:
        return len(self._values)


@dataclass(slots=True, frozen=True)
class ToolContext:
    context: Any
    deps: Dependencies
    call_id: str = ""
    iteration: int = 0


@dataclass(slots=True, frozen=True)
class Tool:
    name: str
    description: str
    parameters: Schema
    execute: Callable[..., Any]
    # True when ``execute`` takes the arguments as keywords instead of ``(args, ctx)``.
    keyword_arguments: bool = False

    def to_schema(self) -> ToolSchema:
        return ToolSchema(name=self.name, description=self.description, parameters=self.parameters.json_schema)

    async def invoke(self, args: Any, ctx: ToolContext) -> Any:
        if self.keyword_arguments:
            if isinstance(args, BaseModel):
                kwargs = {key: getattr(args, key) for key in type(args).model_fields}
            else:
                kwargs = dict(args)
            if _accepts_context(self.execute):
                kwargs["ctx"] = ctx
            call = (lambda: self.execute(**kwargs))
        else:
            call = (lambda: self.execute(args, ctx))

        if inspect.iscoroutinefunction(self.execute):
            return await call()
        result = await asyncio.to_thread(call)
        if inspect.isawaitable(result):
            return await result
        return result


def define_tool(
    execute: Callable[..., Any] | None = None,
    *,
    name: str | None = None,
    description: str | None = None,
    parameters: Schema | type[BaseModel] | Mapping[str, Any] | None = None,
) -> Any:
    """Create a ``Tool``. Works as a plain call or as a decorator.

    With ``parameters`` the function is called as ``execute(args, ctx)``, where
    ``args`` is the validated value. Without it the schema is read from the
    function signature and the arguments are passed as keywords, plus ``ctx``
    when the function declares it.
    """

    def build(func: Callable[..., Any]) -> Tool:
        tool_name = name or func.__name__
        tool_description = description or inspect.getdoc(func) or ""
        if parameters is None:
            return Tool(
                name=tool_name,
                description=tool_description,
                parameters=Schema.from_function(func),
                execute=func,
                keyword_arguments=True,
            )
        return Tool(name=tool_name, description=tool_description, parameters=as_schema(parameters), execute=func)

    if execute is not None:
        return build(execute)
    return build


@dataclass(slots=True)
class ToolExecution:
    call_id: str
    name: str
    args: Any
    success: bool
    result: Any
    content: str


class ToolRegistry:
    def __init__(self, tools: Iterable[Tool] = ()) -> None:
        self._tools: dict[str, Tool] = {}
        for tool in tools:
            self.register(tool)

    def register(self, tool: Tool) -> None:
        if tool.name in self._tools:
            raise ValueError(f"duplicate tool name: {tool.name}")
        self._tools[tool.name] = tool

    def get(self, name: str) -> Tool | None:
        return self._tools.get(name)

    def __contains__(self, name: object) -> bool:
        return name in self._tools

    def __len__(self) -> int:
        return len(self._tools)

    @property
    def tools(self) -> list[Tool]:
        return list(self._tools.values())

    def to_schemas(self) -> tuple[ToolSchema, ...]:
        return tuple(tool.to_schema() for tool in self._tools.values())

    async def execute(self, call: ToolCall, ctx: ToolContext) -> ToolExecution:
        """Run one tool call. Every failure except a missing dependency becomes a result string."""
        tool = self._tools.get(call.name)
        if tool is None:
            return _failure(call, _loose_args(call.raw_arguments), f'Tool "{call.name}" not found')

        try:
            parsed = json.loads(call.raw_arguments or "{}")
        except ValueError as exc:
            return _failure(call, call.raw_arguments, f"Invalid JSON arguments: {exc}")

        try:
            validated = tool.parameters.validate(parsed)
        except SchemaValidationError as exc:
            return _failure(call, parsed, exc.message)

        try:
            result = await tool.invoke(validated, ctx)
        except MissingDependencyError:
            raise
        except Exception as exc:  # noqa: BLE001
            logger.debug("tool %s raised", call.name, exc_info=True, extra={"tool_name": call.name})
            return _failure(call, parsed, str(exc) or exc.__class__.__name__)

        result = dump_value(result)
        content = result if isinstance(result, str) else json.dumps(result, ensure_ascii=False, default=str)
        return ToolExecution(call_id=call.id, name=call.name, args=parsed, success=True, result=result, content=content)


def _failure(call: ToolCall, args: Any, message: str) -> ToolExecution:
    return ToolExecution(
        call_id=call.id,
        name=call.name,
        args=args,
        success=False,
        result=message,
        content=f"Error: {message}",
    )


def _loose_args(raw_arguments: str) -> Any:
    try:
        return json.loads(raw_arguments or "{}")
    except ValueError:
        return raw_arguments


def _accepts_context(func: Callable[..., Any]) -> bool:
    try:
        return "ctx" in inspect.signature(func).parameters
    except (TypeError, ValueError):
        return False
