"""Conversation message stores."""
from __future__ import annotations

import dataclasses
import time
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any

from binario.memory.tokens import count_message_tokens
from binario.messages import Message


@dataclass(slots=True)
class StoredMessage:
    message: Message
    conversation_id: str
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    timestamp: float = field(default_factory=time.time)
    token_count: int = 0
    metadata: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def create(cls, message: Message, conversation_id: str, **metadata: Any) -> StoredMessage:
        return cls(
            message=message,
            conversation_id=conversation_id,
            token_count=count_message_tokens(message),
            metadata=metadata,
        )


class MemoryStore(ABC):
    """Persistence seam for conversation memory. Messages come back in insertion order."""

    @abstractmethod
    async def get_messages(self, conversation_id: str) -> list[StoredMessage]:
        raise NotImplementedError

    @abstractmethod
    async def add_message(self, message: StoredMessage) -> None:
        raise NotImplementedError

    @abstractmethod
    async def update_message(self, message_id: str, **changes: Any) -> None:
        raise NotImplementedError

    @abstractmethod
    async def delete_message(self, message_id: str) -> None:
        raise NotImplementedError

    @abstractmethod
    async def clear(self, conversation_id: str) -> None:
        """Drop a conversation's messages and metadata."""
        raise NotImplementedError

    @abstractmethod
    async def get_metadata(self, conversation_id: str) -> dict[str, Any] | None:
        raise NotImplementedError

    @abstractmethod
    async def set_metadata(self, conversation_id: str, metadata: dict[str, Any]) -> None:
        raise NotImplementedError


class InMemoryStore(MemoryStore):
    """Process-local store; contents are lost on exit."""

    def __init__(self) -> None:
        self._messages: dict[str, list[StoredMessage]] = {}
        self._metadata: dict[str, dict[str, Any]] = {}

    async def get_messages(self, conversation_id: str) -> list[StoredMessage]:
        return list(self._messages.get(conversation_id, ()))

    async def add_message(self, message: StoredMessage) -> None:
        self._messages.setdefault(message.conversation_id, []).append(message)

    async def update_message(self, message_id: str, **changes: Any) -> None:
        for messages in self._messages.values():
            for index, stored in enumerate(messages):
                if stored.id == message_id:
                    messages[index] = dataclasses.replace(stored, **changes)
                    return

    async def delete_message(self, message_id: str) -> None:
        for conversation_id, messages in self._messages.items():
            remaining = [m for m in messages if m.id != message_id]
            if len(remaining) != len(messages):
                self._messages[conversation_id] = remaining
                return

    async def clear(self, conversation_id: str) -> None:
        self._messages.pop(conversation_id, None)
        self._metadata.pop(conversation_id, None)

    async def get_metadata(self, conversation_id: str) -> dict[str, Any] | None:
        metadata = self._metadata.get(conversation_id)
        return dict(metadata) if metadata is not None else None

    async def set_metadata(self, conversation_id: str, metadata: dict[str, Any]) -> None:
        self._metadata[conversation_id] = dict(metadata)

    def conversation_ids(self) -> list[str]:
        return list(self._messages)

    def clear_all(self) -> None:
        self._messages.clear()
        self._metadata.clear()
