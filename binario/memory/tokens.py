"""Character-based token estimates and history truncation."""
from __future__ import annotations

import math
from typing import Sequence

from binario.messages import Message

MESSAGE_OVERHEAD_TOKENS = 4
TOOL_CALL_OVERHEAD_TOKENS = 10


def count_tokens(text: str) -> int:
    """Roughly 4 characters per token, 3.5 for long-word (code-like) text."""
    if not text:
        return 0
    words = text.split()
    avg_chars_per_word = len(text) / max(len(words), 1)
    ratio = 3.5 if avg_chars_per_word > 6 else 4
    return math.ceil(len(text) / ratio)


def count_message_tokens(message: Message) -> int:
    tokens = MESSAGE_OVERHEAD_TOKENS + count_tokens(message.content)
    if message.name:
        tokens += count_tokens(message.name) + 1
    for call in message.tool_calls:
        tokens += count_tokens(call.name) + count_tokens(call.raw_arguments) + TOOL_CALL_OVERHEAD_TOKENS
    return tokens


def count_messages_tokens(messages: Sequence[Message]) -> int:
    return sum(count_message_tokens(m) for m in messages)


def _keep_newest(messages: Sequence[Message], max_tokens: int) -> list[Message]:
    kept: list[Message] = []
    total = 0
    for message in reversed(messages):
        tokens = count_message_tokens(message)
        if total + tokens > max_tokens:
            break
        total += tokens
        kept.append(message)
    kept.reverse()
    return kept


def truncate_messages(
    messages: Sequence[Message],
    max_tokens: int,
    *,
    keep_system_messages: bool = True,
) -> list[Message]:
    """Drop the oldest messages until the estimate fits ``max_tokens``.

    System messages are kept ahead of the window unless they alone exceed it.
    """
    if not keep_system_messages:
        return _keep_newest(messages, max_tokens)

    system = [m for m in messages if m.role == "system"]
    others = [m for m in messages if m.role != "system"]
    remaining = max_tokens - count_messages_tokens(system)
    if remaining <= 0:
        return _keep_newest(messages, max_tokens)
    return [*system, *_keep_newest(others, remaining)]


def truncate_messages_by_count(
    messages: Sequence[Message],
    max_messages: int,
    *,
    keep_system_messages: bool = True,
) -> list[Message]:
    if len(messages) <= max_messages:
        return list(messages)
    if max_messages <= 0:
        return []
    if not keep_system_messages:
        return list(messages[-max_messages:])

    system = [m for m in messages if m.role == "system"]
    others = [m for m in messages if m.role != "system"]
    slots = max_messages - len(system)
    if slots <= 0:
        return system[-max_messages:]
    return [*system, *others[-slots:]]
