"""Conversation memory that folds older turns into a running summary."""
from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Sequence

from binario.memory.buffer import ConversationContext, ConversationMemory
from binario.memory.store import MemoryStore, StoredMessage
from binario.memory.tokens import count_messages_tokens, truncate_messages
from binario.messages import ChatOptions, Message

if TYPE_CHECKING:
    from binario.gateway import Gateway

logger = logging.getLogger(__name__)

DEFAULT_SUMMARIZE_THRESHOLD = 2000
MIN_KEPT_MESSAGES = 4
SUMMARY_PREFIX = "Previous conversation summary:\n"

DEFAULT_SUMMARY_PROMPT = """Summarize the following conversation concisely, preserving key information, decisions, and context that would be useful for continuing the conversation. Focus on:
- Main topics discussed
- Key decisions or conclusions
- Important user preferences or requirements
- Any pending questions or tasks

Conversation:
{conversation}

Summary:"""

Summarizer = Callable[[Sequence[Message], str], Awaitable[str]]


def format_conversation(messages: Sequence[Message], previous_summary: str | None = None) -> str:
    lines = [f"EARLIER SUMMARY: {previous_summary}"] if previous_summary else []
    lines.extend(f"{m.role.upper()}: {m.content}" for m in messages if m.role != "system")
    return "\n\n".join(lines)


def gateway_summarizer(gateway: Gateway, options: ChatOptions | None = None, **overrides: Any) -> Summarizer:
    """A summarizer that sends the filled-in prompt as one user turn."""

    async def summarize(messages: Sequence[Message], prompt: str) -> str:
        response = await gateway.chat([Message(role="user", content=prompt)], options, **overrides)
        return response.content.strip()

    return summarize


class SummaryMemory(ConversationMemory):
    """Once the estimate passes ``summarize_threshold`` tokens, older turns are
    replaced by a summary; the most recent quarter (at least four) stay verbatim."""

    kind = "summary"

    def __init__(
        self,
        *,
        summarizer: Summarizer | None = None,
        summarize_threshold: int = DEFAULT_SUMMARIZE_THRESHOLD,
        summary_prompt: str = DEFAULT_SUMMARY_PROMPT,
        store: MemoryStore | None = None,
        conversation_id: str | None = None,
        include_system_messages: bool = True,
    ) -> None:
        super().__init__(
            store=store,
            conversation_id=conversation_id,
            include_system_messages=include_system_messages,
        )
        self.summarizer = summarizer
        self.summarize_threshold = summarize_threshold
        self.summary_prompt = summary_prompt

    async def get_summary(self) -> str | None:
        metadata = await self.store.get_metadata(self.conversation_id)
        summary = (metadata or {}).get("summary")
        return summary if isinstance(summary, str) and summary else None

    async def get_messages(self) -> list[Message]:
        messages = await super().get_messages()
        summary = await self.get_summary()
        if summary is None:
            return messages
        return [Message(role="system", content=f"{SUMMARY_PREFIX}{summary}"), *messages]

    async def get_context(self) -> ConversationContext:
        return ConversationContext.build(await self.get_messages(), await self.get_summary())

    async def get_context_window(self, max_tokens: int) -> ConversationContext:
        messages = truncate_messages(
            await self.get_messages(), max_tokens, keep_system_messages=self.include_system_messages
        )
        return ConversationContext.build(messages, await self.get_summary())

    async def summarize(self) -> str:
        """Summarize the whole stored conversation without dropping any turns."""
        summarizer = self._require_summarizer()
        async with self._lock:
            messages = await super().get_messages()
            if not messages:
                return ""
            summary = await summarizer(messages, self._prompt(messages, None))
            await self.store.set_metadata(self.conversation_id, {"summary": summary})
        return summary

    async def _compact(self) -> None:
        if self.summarizer is None:
            return
        if count_messages_tokens(await self.get_messages()) <= self.summarize_threshold:
            return

        stored = await self.store.get_messages(self.conversation_id)
        keep = max(MIN_KEPT_MESSAGES, len(stored) // 4)
        older, recent = stored[:-keep], stored[-keep:]
        if not older:
            return

        previous = await self.get_summary()
        older_messages = [s.message for s in older]
        summary = await self.summarizer(older_messages, self._prompt(older_messages, previous))
        logger.debug("summarized %d messages", len(older))

        await self.store.clear(self.conversation_id)
        await self.store.set_metadata(self.conversation_id, {"summary": summary})
        for entry in recent:
            await self.store.add_message(StoredMessage.create(entry.message, self.conversation_id))

    def _prompt(self, messages: Sequence[Message], previous_summary: str | None) -> str:
        return self.summary_prompt.replace("{conversation}", format_conversation(messages, previous_summary))

    def _require_summarizer(self) -> Summarizer:
        if self.summarizer is None:
            raise RuntimeError("SummaryMemory has no summarizer configured")
        return self.summarizer
