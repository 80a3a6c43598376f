from __future__ import annotations

import threading

from binario.errors import AbortedError


class AbortSignal:
    """Cooperative cancellation flag shared between a caller and a running request or agent."""

    __slots__ = ("_event", "reason")

    def __init__(self) -> None:
        self._event = threading.Event()
        self.reason: str | None = None

    @property
    def aborted(self) -> bool:
        return self._event.is_set()

    def abort(self, reason: str | None = None) -> None:
        if not self._event.is_set():
            self.reason = reason
            self._event.set()

    def raise_if_aborted(self, message: str = "Agent run aborted") -> None:
        if self._event.is_set():
            raise AbortedError(f"{message}: {self.reason}" if self.reason else message)
