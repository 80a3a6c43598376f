"""Conversation memory: token estimates, stores, buffer/summary memory and agent wiring."""
from __future__ import annotations

import pytest

from binario.agent.loop import Agent, AgentConfig
from binario.agent.tool_registry import define_tool
from binario.memory.buffer import BufferMemory
from binario.memory.store import InMemoryStore, StoredMessage
from binario.memory.summary import SUMMARY_PREFIX, SummaryMemory, gateway_summarizer
from binario.memory.tokens import (
    count_message_tokens,
    count_tokens,
    truncate_messages,
    truncate_messages_by_count,
)
from binario.messages import Message, ToolCall


def _user(content: str) -> Message:
    return Message(role="user", content=content)


def test_count_tokens_estimates():
    assert count_tokens("") == 0
    assert count_tokens("abcd efgh") == 3
    assert count_tokens("x" * 14) == 4


def test_count_message_tokens_includes_overhead_name_and_tool_calls():
    plain = count_message_tokens(_user("hello"))
    assert plain == 4 + count_tokens("hello")

    with_call = Message(role="assistant", tool_calls=[ToolCall("c1", "add", '{"a": 1}')])
    assert count_message_tokens(with_call) == 4 + count_tokens("add") + count_tokens('{"a": 1}') + 10


def test_truncate_by_count_keeps_system_messages():
    messages = [Message(role="system", content="rules"), *(_user(f"m{i}") for i in range(5))]

    kept = truncate_messages_by_count(messages, 3)

    assert [m.content for m in kept] == ["rules", "m3", "m4"]
    assert [m.content for m in truncate_messages_by_count(messages, 2, keep_system_messages=False)] == ["m3", "m4"]


def test_truncate_by_tokens_drops_oldest_first():
    messages = [_user(f"m{i}") for i in range(5)]
    per_message = count_message_tokens(messages[0])

    kept = truncate_messages(messages, per_message * 2)

    assert [m.content for m in kept] == ["m3", "m4"]


@pytest.mark.asyncio
async def test_in_memory_store_isolates_conversations_and_metadata():
    store = InMemoryStore()
    first = StoredMessage.create(_user("a"), "conv-1")
    await store.add_message(first)
    await store.add_message(StoredMessage.create(_user("b"), "conv-2"))
    await store.set_metadata("conv-1", {"summary": "s"})

    await store.update_message(first.id, metadata={"pinned": True})
    assert (await store.get_messages("conv-1"))[0].metadata == {"pinned": True}
    assert (await store.get_messages("conv-1"))[0].token_count == count_message_tokens(_user("a"))

    await store.clear("conv-1")
    assert await store.get_messages("conv-1") == []
    assert await store.get_metadata("conv-1") is None
    assert [s.message.content for s in await store.get_messages("conv-2")] == ["b"]

    other = (await store.get_messages("conv-2"))[0]
    await store.delete_message(other.id)
    assert await store.get_messages("conv-2") == []


@pytest.mark.asyncio
async def test_buffer_memory_slides_by_count_and_keeps_system():
    memory = BufferMemory(max_messages=3)
    await memory.add(Message(role="system", content="rules"))
    for i in range(4):
        await memory.add(_user(f"m{i}"))

    assert [m.content for m in await memory.get_messages()] == ["rules", "m2", "m3"]
    assert await memory.message_count() == 3


@pytest.mark.asyncio
async def test_buffer_memory_slides_by_tokens():
    per_message = count_message_tokens(_user("m0"))
    memory = BufferMemory(max_tokens=per_message * 3)

    await memory.add_many(_user(f"m{i}") for i in range(5))

    assert [m.content for m in await memory.get_messages()] == ["m2", "m3", "m4"]
    assert await memory.token_count() == per_message * 3
    window = await memory.get_context_window(per_message * 2)
    assert [m.content for m in window.messages] == ["m3", "m4"]
    assert window.message_count == 2


@pytest.mark.asyncio
async def test_buffer_memories_share_a_store_without_mixing():
    store = InMemoryStore()
    alice = BufferMemory(store=store, conversation_id="alice")
    bob = BufferMemory(store=store, conversation_id="bob")

    await alice.add({"role": "user", "content": "hi from alice"})
    await bob.add(_user("hi from bob"))
    await alice.clear()

    assert await alice.get_messages() == []
    assert [m.content for m in await bob.get_messages()] == ["hi from bob"]
    assert sorted(store.conversation_ids()) == ["bob"]


@pytest.mark.asyncio
async def test_summary_memory_folds_older_turns():
    prompts: list[str] = []

    async def summarizer(messages, prompt):
        prompts.append(prompt)
        return f"S{len(prompts)}"

    memory = SummaryMemory(summarizer=summarizer, summarize_threshold=20)
    await memory.add_many(_user(f"m{i}") for i in range(6))

    assert await memory.get_summary() == "S1"
    messages = await memory.get_messages()
    assert messages[0] == Message(role="system", content=f"{SUMMARY_PREFIX}S1")
    assert [m.content for m in messages[1:]] == ["m2", "m3", "m4", "m5"]
    assert "USER: m0" in prompts[0] and "USER: m1" in prompts[0]
    assert "m2" not in prompts[0]

    await memory.add_many([_user("m6"), _user("m7")])

    assert await memory.get_summary() == "S2"
    assert "EARLIER SUMMARY: S1" in prompts[1]
    context = await memory.get_context()
    assert context.summary == "S2"
    assert [m.content for m in context.messages[1:]] == ["m4", "m5", "m6", "m7"]


@pytest.mark.asyncio
async def test_summary_memory_without_summarizer_keeps_everything():
    memory = SummaryMemory(summarize_threshold=1)
    await memory.add_many(_user(f"m{i}") for i in range(6))

    assert await memory.message_count() == 6
    with pytest.raises(RuntimeError, match="summarizer"):
        await memory.summarize()


@pytest.mark.asyncio
async def test_gateway_summarizer_sends_prompt_as_user_turn(backend, make_gateway, completion):
    backend.reply_json(completion("  They said hello.  "))
    memory = SummaryMemory(summarizer=gateway_summarizer(make_gateway(), temperature=0))
    await memory.add(_user("hello"))

    summary = await memory.summarize()

    assert summary == "They said hello."
    sent = backend.sent_json()
    assert sent["temperature"] == 0
    assert [m["role"] for m in sent["messages"]] == ["user"]
    assert "USER: hello" in sent["messages"][0]["content"]
    assert await memory.message_count() == 1


@pytest.mark.asyncio
async def test_agent_run_reads_and_extends_memory(backend, make_gateway, completion):
    backend.reply_json(completion("first answer"))
    backend.reply_json(completion("second answer"))
    agent = Agent(make_gateway(), AgentConfig(system_prompt="Be kind."))
    memory = BufferMemory()

    await agent.run("hi", memory=memory)
    await agent.run("again", memory=memory, history=[{"role": "user", "content": "extra"}])

    sent = [(m["role"], m["content"]) for m in backend.sent_json(1)["messages"]]
    assert sent == [
        ("system", "Be kind."),
        ("user", "hi"),
        ("assistant", "first answer"),
        ("user", "extra"),
        ("user", "again"),
    ]
    assert [m.content for m in await memory.get_messages()] == ["hi", "first answer", "again", "second answer"]


@pytest.mark.asyncio
async def test_agent_memory_skips_tool_turns(backend, make_gateway, completion):
    def echo(args, ctx):
        return "echoed"

    backend.reply_json(completion(tool_calls=[("c1", "echo", {})]))
    backend.reply_json(completion("done"))
    agent = Agent(make_gateway(), AgentConfig(tools=[define_tool(echo, parameters={"type": "object"})]))
    memory = BufferMemory()

    await agent.run("go", memory=memory)

    assert [(m.role, m.content) for m in await memory.get_messages()] == [("user", "go"), ("assistant", "done")]


@pytest.mark.asyncio
async def test_agent_stream_extends_memory(backend, make_gateway):
    backend.reply_sse({"choices": [{"delta": {"content": "streamed"}}]})
    agent = Agent(make_gateway())
    memory = BufferMemory()

    events = [event async for event in agent.stream("hi", memory=memory)]

    assert events[-1].type == "complete"
    assert [m.content for m in await memory.get_messages()] == ["hi", "streamed"]
