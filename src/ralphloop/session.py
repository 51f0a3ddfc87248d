"""
Session - the per-run unit of state.

A session owns everything one run of the loop needs beyond its
configuration: the queue of pending user turns, free-form metadata, and
any resources handed to the run (a sandbox handle, an HTTP client).
Nothing lives at module level; two runs never share a session.

When the session closes, attached resources are released in reverse
order of attachment and all state is discarded. The loop closes its
session on every exit path: verified, stopped, aborted, or error.
"""

import logging
import uuid
from collections import deque
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, Protocol

logger = logging.getLogger(__name__)


class Closeable(Protocol):
    """Anything with a close() method."""
    def close(self) -> None: ...


@dataclass
class Session:
    """
    A single run's state.

    Feedback between the verification function and the next generation
    call travels through an explicit FIFO queue, so the order of user
    turns is auditable after the fact via `turns`.
    """

    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    metadata: dict[str, Any] = field(default_factory=dict)
    turns: list[str] = field(default_factory=list)
    _pending: deque[str] = field(default_factory=deque, repr=False)
    _resources: list[Closeable] = field(default_factory=list, repr=False)
    _closed: bool = field(default=False, repr=False)

    def push_turn(self, content: str) -> None:
        """Queue a user turn for the next generation call."""
        self._check_not_closed()
        self._pending.append(content)

    def next_turn(self) -> str:
        """
        Take the oldest queued user turn.

        Raises:
            IndexError: if nothing is queued
        """
        self._check_not_closed()
        if not self._pending:
            raise IndexError(f"Session {self.id} has no pending user turn")
        content = self._pending.popleft()
        self.turns.append(content)
        return content

    @property
    def pending_turns(self) -> int:
        return len(self._pending)

    def attach(self, resource: Closeable) -> Closeable:
        """Hand a resource to the session; it is closed with the session."""
        self._check_not_closed()
        self._resources.append(resource)
        return resource

    def close(self) -> None:
        """
        Release attached resources and discard all state.

        A resource that fails to close is logged and the rest are still
        closed. Closing twice is a no-op.
        """
        if self._closed:
            return
        self._closed = True
        while self._resources:
            resource = self._resources.pop()
            try:
                resource.close()
            except Exception:
                logger.exception(f"Session {self.id}: failed to close {type(resource).__name__}")
        self._pending.clear()
        self.metadata.clear()
        logger.debug(f"Session {self.id} closed")

    def _check_not_closed(self) -> None:
        """Raise an error if the session is closed."""
        if self._closed:
            raise RuntimeError(f"Session {self.id} is closed. All state has been discarded.")

    @property
    def is_closed(self) -> bool:
        return self._closed

    def __enter__(self) -> "Session":
        return self

    def __exit__(self, *args: Any) -> None:
        self.close()
