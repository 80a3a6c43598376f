"""
loop.py: Agentic tool-calling loop

Each iteration calls the gateway with the accumulated history and the full tool
list. A reply without tool calls is the final answer; otherwise every requested
tool runs and its result is appended as a ``tool`` message before the next turn.
"""
from __future__ import annotations

import asyncio
import dataclasses
import inspect
import logging
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Awaitable, Callable, Iterable, Mapping, Sequence

from pydantic import BaseModel

from binario.agent.tool_registry import Dependencies, Tool, ToolContext, ToolExecution, ToolRegistry
from binario.cancellation import AbortSignal
from binario.gateway import Gateway, coerce_messages
from binario.memory.buffer import ConversationMemory
from binario.messages import ChatOptions, ChatResponse, Message, ToolCall, Usage
from binario.observability.hooks import ToolCallEvent
from binario.schema import Schema
from binario.structured import parse_structured_output

logger = logging.getLogger(__name__)

DEFAULT_MAX_ITERATIONS = 10

ToolObserver = Callable[[str, Any, Any], Awaitable[None] | None]
ThinkingObserver = Callable[[str], Awaitable[None] | None]


@dataclass(slots=True)
class AgentConfig:
    provider: str | None = None
    model: str | None = None
    # A static prompt, or a function of the agent's context.
    system_prompt: str | Callable[[Any], str] | None = None
    tools: Sequence[Tool] = ()
    max_iterations: int = DEFAULT_MAX_ITERATIONS
    dependencies: Mapping[str, Any] = field(default_factory=dict)
    temperature: float | None = None
    max_tokens: int | None = None
    parallel_tool_calls: bool = True

    def __post_init__(self) -> None:
        _check_iteration_limit(self.max_iterations)


@dataclass(slots=True)
class ToolCallRecord:
    tool: str
    args: Any
    result: Any
    call_id: str
    success: bool = True
    iteration: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "tool": self.tool,
            "args": self.args,
            "result": self.result,
            "call_id": self.call_id,
            "success": self.success,
            "iteration": self.iteration,
        }


@dataclass(slots=True)
class AgentRunResult:
    output: Any
    iterations: int
    tool_calls: list[ToolCallRecord] = field(default_factory=list)
    usage: Usage = field(default_factory=Usage)
    messages: list[Message] = field(default_factory=list)
    max_iterations_reached: bool = False


@dataclass(slots=True, frozen=True)
class AgentEvent:
    type: str  # "token" | "tool_call" | "complete"
    content: str = ""
    data: dict[str, Any] | None = None


class Agent:
    """Tool-calling agent bound to one gateway. Safe to share across concurrent runs."""

    def __init__(self, gateway: Gateway, config: AgentConfig | None = None, context: Any = None) -> None:
        self._gateway = gateway
        self._config = config or AgentConfig()
        self._context = context
        self._registry = ToolRegistry(self._config.tools)
        self._deps = Dependencies(self._config.dependencies)

    @property
    def config(self) -> AgentConfig:
        return self._config

    @property
    def context(self) -> Any:
        return self._context

    @property
    def tools(self) -> ToolRegistry:
        return self._registry

    def with_context(self, context: Any) -> Agent:
        return Agent(self._gateway, self._config, context)

    def system_prompt(self) -> str | None:
        prompt = self._config.system_prompt
        if callable(prompt):
            return prompt(self._context)
        return prompt

    def _initial_messages(
        self,
        user_input: str,
        history: Iterable[Message | Mapping[str, Any]] | None,
    ) -> list[Message]:
        messages: list[Message] = []
        prompt = self.system_prompt()
        if prompt:
            messages.append(Message(role="system", content=prompt))
        if history:
            messages.extend(coerce_messages(history))
        messages.append(Message(role="user", content=user_input))
        return messages

    async def _prepare(
        self,
        user_input: str,
        history: Iterable[Message | Mapping[str, Any]] | None,
        memory: ConversationMemory | None,
    ) -> list[Message]:
        if memory is None:
            return self._initial_messages(user_input, history)
        prior = await memory.get_messages()
        return self._initial_messages(user_input, [*prior, *coerce_messages(history or ())])

    def _iteration_limit(self, max_iterations: int | None) -> int:
        if max_iterations is None:
            return self._config.max_iterations
        return _check_iteration_limit(max_iterations)

    def _chat_options(self, signal: AbortSignal | None) -> ChatOptions:
        tools = self._registry.to_schemas()
        return ChatOptions(
            provider=self._config.provider,
            model=self._config.model,
            temperature=self._config.temperature,
            max_tokens=self._config.max_tokens,
            tools=tools,
            tool_choice="auto" if tools else None,
            signal=signal,
        )

    async def run(
        self,
        user_input: str,
        *,
        max_iterations: int | None = None,
        on_tool_call: ToolObserver | None = None,
        on_thinking: ThinkingObserver | None = None,
        signal: AbortSignal | None = None,
        history: Iterable[Message | Mapping[str, Any]] | None = None,
        memory: ConversationMemory | None = None,
    ) -> AgentRunResult:
        """Run the tool loop for one user turn.

        With ``memory``, its stored turns precede ``history`` and the user input
        plus the final output are appended to it once the run returns.
        """
        limit = self._iteration_limit(max_iterations)
        messages = await self._prepare(user_input, history, memory)
        options = self._chat_options(signal)
        records: list[ToolCallRecord] = []
        usage = Usage()
        output = ""

        for iteration in range(1, limit + 1):
            if signal is not None:
                signal.raise_if_aborted()

            logger.debug("agent iteration %d", iteration, extra={"iteration": iteration})
            response = await self._gateway.chat(messages, options)
            usage = usage + response.usage
            output = response.content
            messages.append(_assistant_message(response))

            if not response.tool_calls:
                if on_thinking is not None:
                    await _call_maybe_async(on_thinking, output)
                await _remember(memory, user_input, output)
                return AgentRunResult(
                    output=output,
                    iterations=iteration,
                    tool_calls=records,
                    usage=usage,
                    messages=messages,
                )

            for record in await self._run_tools(response.tool_calls, iteration, messages):
                records.append(record)
                if on_tool_call is not None:
                    await _call_maybe_async(on_tool_call, record.tool, record.args, record.result)

        logger.warning("agent hit max_iterations=%d", limit, extra={"iteration": limit})
        await _remember(memory, user_input, output)
        return AgentRunResult(
            output=output,
            iterations=limit,
            tool_calls=records,
            usage=usage,
            messages=messages,
            max_iterations_reached=True,
        )

    async def run_structured(
        self,
        user_input: str,
        schema: Schema | type[BaseModel] | Mapping[str, Any],
        **kwargs: Any,
    ) -> AgentRunResult:
        """Run the loop, then parse the final content against ``schema``.

        Raises ``StructuredOutputParseError`` if the content is not valid JSON or
        does not validate.
        """
        result = await self.run(user_input, **kwargs)
        return dataclasses.replace(result, output=parse_structured_output(result.output, schema))

    async def stream(
        self,
        user_input: str,
        *,
        max_iterations: int | None = None,
        signal: AbortSignal | None = None,
        history: Iterable[Message | Mapping[str, Any]] | None = None,
        memory: ConversationMemory | None = None,
    ) -> AsyncIterator[AgentEvent]:
        limit = self._iteration_limit(max_iterations)
        messages = await self._prepare(user_input, history, memory)
        options = self._chat_options(signal)
        usage = Usage()
        output = ""

        for iteration in range(1, limit + 1):
            if signal is not None:
                signal.raise_if_aborted()

            logger.debug("agent stream iteration %d", iteration, extra={"iteration": iteration})
            chat_stream = self._gateway.stream_chat(messages, options)
            async for token in chat_stream:
                yield AgentEvent(type="token", content=token)
            response = chat_stream.response
            assert response is not None
            usage = usage + response.usage
            output = response.content
            messages.append(_assistant_message(response))

            if not response.tool_calls:
                await _remember(memory, user_input, output)
                yield AgentEvent(
                    type="complete",
                    content=output,
                    data={"iterations": iteration, "usage": usage.to_dict(), "max_iterations_reached": False},
                )
                return

            for record in await self._run_tools(response.tool_calls, iteration, messages):
                yield AgentEvent(type="tool_call", content=record.tool, data=record.to_dict())

        logger.warning("agent stream hit max_iterations=%d", limit, extra={"iteration": limit})
        await _remember(memory, user_input, output)
        yield AgentEvent(
            type="complete",
            content=output,
            data={"iterations": limit, "usage": usage.to_dict(), "max_iterations_reached": True},
        )

    async def _run_tools(
        self,
        tool_calls: Sequence[ToolCall],
        iteration: int,
        messages: list[Message],
    ) -> list[ToolCallRecord]:
        """Execute one turn's tool calls and append their results in issue order."""
        contexts = [
            ToolContext(context=self._context, deps=self._deps, call_id=call.id, iteration=iteration)
            for call in tool_calls
        ]
        if self._config.parallel_tool_calls:
            # A failing tool cancels its siblings before the run fails.
            try:
                async with asyncio.TaskGroup() as group:
                    tasks = [
                        group.create_task(self._registry.execute(call, ctx))
                        for call, ctx in zip(tool_calls, contexts)
                    ]
            except BaseExceptionGroup as failures:
                raise failures.exceptions[0] from None
            executions: list[ToolExecution] = [task.result() for task in tasks]
        else:
            executions = [await self._registry.execute(call, ctx) for call, ctx in zip(tool_calls, contexts)]

        records: list[ToolCallRecord] = []
        for call, execution in zip(tool_calls, executions):
            messages.append(
                Message(role="tool", content=execution.content, name=call.name, tool_call_id=call.id)
            )
            if not execution.success:
                logger.warning(
                    "tool_call %s failed: %s",
                    call.name,
                    execution.result,
                    extra={"tool_name": call.name, "iteration": iteration, "outcome": "error"},
                )
            self._gateway.metrics.increment_tool_call(call.name)
            await self._gateway.hooks.emit(
                "on_tool_call",
                ToolCallEvent(
                    tool_name=call.name,
                    args=execution.args,
                    result=execution.result,
                    call_id=call.id,
                    iteration=iteration,
                ),
            )
            records.append(
                ToolCallRecord(
                    tool=call.name,
                    args=execution.args,
                    result=execution.result,
                    call_id=call.id,
                    success=execution.success,
                    iteration=iteration,
                )
            )
        return records


async def _remember(memory: ConversationMemory | None, user_input: str, output: str) -> None:
    # Tool turns stay out of memory so trimming never orphans a tool result.
    if memory is not None:
        await memory.add_many([Message(role="user", content=user_input), Message(role="assistant", content=output)])


def _check_iteration_limit(value: int) -> int:
    if value < 1:
        raise ValueError(f"max_iterations must be at least 1, got {value}")
    return value


def _assistant_message(response: ChatResponse) -> Message:
    return Message(role="assistant", content=response.content, tool_calls=list(response.tool_calls))


async def _call_maybe_async(fn: Callable, *args):
    result = fn(*args)
    if inspect.isawaitable(result):
        return await result
    return result
