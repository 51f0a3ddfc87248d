"""
Cooperative cancellation for a run.

An AbortSignal is shared between the caller and everything the loop
calls into. Only the caller triggers it; the loop, the engine and the
verification function observe it at their suspension points and unwind.
"""

import threading


class GenerationCancelled(Exception):
    """Raised by an engine (or verifier) that noticed the abort signal."""
    pass


class AbortSignal:
    """Thread-safe, one-way cancellation flag."""

    def __init__(self) -> None:
        self._event = threading.Event()
        self._reason: str | None = None

    def abort(self, reason: str = "aborted") -> None:
        """Trigger cancellation. Later calls keep the first reason."""
        if not self._event.is_set():
            self._reason = reason
            self._event.set()

    @property
    def aborted(self) -> bool:
        return self._event.is_set()

    @property
    def reason(self) -> str | None:
        return self._reason

    def raise_if_aborted(self) -> None:
        if self._event.is_set():
            raise GenerationCancelled(self._reason or "aborted")

    def wait(self, timeout: float | None = None) -> bool:
        """Block until aborted or timeout; returns whether it fired."""
        return self._event.wait(timeout)
