from __future__ import annotations

import codecs
import json
from typing import Any, AsyncIterable, Iterator

from binario.errors import StreamDecodeError

DONE_SENTINEL = "[DONE]"


class SSEDecoder:
    """Incremental ``text/event-stream`` decoder yielding parsed JSON ``data:`` payloads.

    Bytes are decoded as UTF-8 across chunk boundaries and framed on ``\\n``. A
    ``data:`` payload that is not yet valid JSON is held as pending and joined with
    the next data line before parsing again; after ``max_pending_retries`` failed
    joins the stream is considered corrupt and ``StreamDecodeError`` is raised.
    """

    def __init__(self, max_pending_retries: int = 8) -> None:
        self.max_pending_retries = max(0, max_pending_retries)
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._buffer = ""
        self._pending = ""
        self._pending_failures = 0
        self.done = False

    @property
    def pending(self) -> str:
        return self._pending

    def feed(self, chunk: bytes | str) -> list[Any]:
        text = chunk if isinstance(chunk, str) else self._decoder.decode(chunk)
        self._buffer += text
        events: list[Any] = []
        while "\n" in self._buffer:
            line, self._buffer = self._buffer.split("\n", 1)
            events.extend(self._handle_line(line))
        return events

    def close(self) -> list[Any]:
        """Flush the trailing partial line; raise if unparsed data is left over."""
        self._buffer += self._decoder.decode(b"", final=True)
        events: list[Any] = []
        if self._buffer:
            line, self._buffer = self._buffer, ""
            events.extend(self._handle_line(line))
        if self._pending and not self.done:
            raise StreamDecodeError("Stream ended with an incomplete event payload", pending=self._pending)
        return events

    def _handle_line(self, line: str) -> Iterator[Any]:
        line = line.rstrip("\r")
        if self.done or not line or line.startswith(":"):
            return
        if not line.startswith("data:"):
            # event:, id:, retry: carry nothing the adapters need
            return
        data = line[5:]
        if data.startswith(" "):
            data = data[1:]
        data = data.strip()
        if not data:
            return
        if data == DONE_SENTINEL:
            self.done = True
            if self._pending:
                raise StreamDecodeError("Stream finished with an unparseable event payload", pending=self._pending)
            return

        candidate = f"{self._pending}\n{data}" if self._pending else data
        try:
            parsed = json.loads(candidate)
        except ValueError:
            if self._pending:
                self._pending_failures += 1
                if self._pending_failures > self.max_pending_retries:
                    raise StreamDecodeError(
                        f"Event payload still unparseable after {self._pending_failures} retries",
                        pending=candidate,
                    ) from None
            self._pending = candidate
            return
        self._pending = ""
        self._pending_failures = 0
        yield parsed


async def iter_sse_json(chunks: AsyncIterable[bytes], max_pending_retries: int = 8):
    """Yield JSON payloads from an async byte stream until ``[DONE]`` or EOF."""
    decoder = SSEDecoder(max_pending_retries)
    async for chunk in chunks:
        for event in decoder.feed(chunk):
            yield event
        if decoder.done:
            return
    for event in decoder.close():
        yield event
