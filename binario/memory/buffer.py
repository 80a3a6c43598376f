"""
buffer.py: Conversation memory over a message store

``ConversationMemory`` owns one conversation id on a ``MemoryStore`` and hands
back prior turns for ``Agent.run(memory=...)``. ``BufferMemory`` keeps a
sliding window bounded by message count and estimated tokens.
"""
from __future__ import annotations

import asyncio
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Iterable, Mapping

from binario.memory.store import InMemoryStore, MemoryStore, StoredMessage
from binario.memory.tokens import count_messages_tokens, truncate_messages, truncate_messages_by_count
from binario.messages import Message

DEFAULT_MAX_MESSAGES = 50
DEFAULT_MAX_TOKENS = 4000


@dataclass(slots=True)
class ConversationContext:
    messages: list[Message] = field(default_factory=list)
    summary: str | None = None
    token_count: int = 0
    message_count: int = 0

    @classmethod
    def build(cls, messages: list[Message], summary: str | None = None) -> ConversationContext:
        return cls(
            messages=messages,
            summary=summary,
            token_count=count_messages_tokens(messages),
            message_count=len(messages),
        )


def _coerce(message: Message | Mapping[str, Any]) -> Message:
    return message if isinstance(message, Message) else Message.from_dict(dict(message))


class ConversationMemory(ABC):
    kind: str = ""

    def __init__(
        self,
        *,
        store: MemoryStore | None = None,
        conversation_id: str | None = None,
        include_system_messages: bool = True,
    ) -> None:
        self.store = store or InMemoryStore()
        self.conversation_id = conversation_id or uuid.uuid4().hex
        self.include_system_messages = include_system_messages
        self._lock = asyncio.Lock()

    async def add(self, message: Message | Mapping[str, Any]) -> None:
        await self.add_many([message])

    async def add_many(self, messages: Iterable[Message | Mapping[str, Any]]) -> None:
        async with self._lock:
            for message in messages:
                await self.store.add_message(StoredMessage.create(_coerce(message), self.conversation_id))
            await self._compact()

    async def get_messages(self) -> list[Message]:
        return [stored.message for stored in await self.store.get_messages(self.conversation_id)]

    async def get_context(self) -> ConversationContext:
        return ConversationContext.build(await self.get_messages())

    async def get_context_window(self, max_tokens: int) -> ConversationContext:
        messages = truncate_messages(
            await self.get_messages(), max_tokens, keep_system_messages=self.include_system_messages
        )
        return ConversationContext.build(messages)

    async def clear(self) -> None:
        async with self._lock:
            await self.store.clear(self.conversation_id)

    async def message_count(self) -> int:
        return len(await self.store.get_messages(self.conversation_id))

    async def token_count(self) -> int:
        return count_messages_tokens(await self.get_messages())

    @abstractmethod
    async def _compact(self) -> None:
        """Bring the stored conversation back within bounds. Called under the lock."""
        raise NotImplementedError


class BufferMemory(ConversationMemory):
    """Sliding window of the most recent messages."""

    kind = "buffer"

    def __init__(
        self,
        *,
        max_messages: int = DEFAULT_MAX_MESSAGES,
        max_tokens: int = DEFAULT_MAX_TOKENS,
        store: MemoryStore | None = None,
        conversation_id: str | None = None,
        include_system_messages: bool = True,
    ) -> None:
        super().__init__(
            store=store,
            conversation_id=conversation_id,
            include_system_messages=include_system_messages,
        )
        self.max_messages = max_messages
        self.max_tokens = max_tokens

    async def _compact(self) -> None:
        stored = await self.store.get_messages(self.conversation_id)
        messages = [s.message for s in stored]
        kept = truncate_messages_by_count(
            messages, self.max_messages, keep_system_messages=self.include_system_messages
        )
        kept = truncate_messages(kept, self.max_tokens, keep_system_messages=self.include_system_messages)
        if len(kept) == len(messages):
            return
        kept_ids = {id(m) for m in kept}
        for entry in stored:
            if id(entry.message) not in kept_ids:
                await self.store.delete_message(entry.id)
