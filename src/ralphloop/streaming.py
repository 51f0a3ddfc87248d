"""
Streaming Adapter - incremental output for the final iteration.

Iterations before the terminal one are not streamed: their output only
feeds the next iteration, and whether an iteration is terminal is only
known after verification. So the adapter runs the loop in blocking mode
to its end, then re-issues the terminal iteration's request in
streaming mode and surfaces that text chunk by chunk.

The streamed text becomes the result's text and the streamed call's
usage is added to the totals. Aborting while streaming ends the stream
and reports the run as aborted, keeping the text received so far.
"""

import logging
from collections.abc import Iterator
from dataclasses import replace
from typing import TYPE_CHECKING

from ralphloop.abort import AbortSignal, GenerationCancelled
from ralphloop.types import CompletionReason, LoopResult, LoopStatus
from ralphloop.usage import Usage

if TYPE_CHECKING:
    from ralphloop.loop import AgentLoop

logger = logging.getLogger(__name__)


class LoopStream:
    """
    Handle returned by AgentLoop.stream().

    text_stream yields text chunks of the final iteration and can be
    consumed once. result() drains whatever has not been consumed and
    returns the LoopResult, whose text and last_record.text are the
    streamed text. The record in result.history is left as the
    blocking call produced it.
    """

    def __init__(self, agent: "AgentLoop", prompt: str, abort_signal: AbortSignal | None = None) -> None:
        self._agent = agent
        self._prompt = prompt
        self._abort_signal = abort_signal or AbortSignal()
        self._result: LoopResult | None = None
        self._chunks: list[str] = []
        self._iterator = self._produce()

    @property
    def text_stream(self) -> Iterator[str]:
        return self._iterator

    @property
    def text(self) -> str:
        """Text streamed so far."""
        return "".join(self._chunks)

    def result(self) -> LoopResult:
        """Run to the end (if not already) and return the final result."""
        for _ in self._iterator:
            pass
        if self._result is None:
            raise RuntimeError("Stream ended without a result")
        return self._result

    def _produce(self) -> Iterator[str]:
        agent = self._agent
        with agent.session:
            blocking = agent.run(self._prompt, self._abort_signal)
            request = agent.last_request
            if blocking.completion_reason is CompletionReason.ABORTED or request is None:
                self._result = blocking
                return

            usage = Usage()
            reason = blocking.completion_reason
            explanation = blocking.reason
            try:
                for chunk in agent.engine.stream(request, self._abort_signal):
                    if chunk.usage is not None:
                        usage = usage + chunk.usage
                    if chunk.delta:
                        self._chunks.append(chunk.delta)
                        yield chunk.delta
            except GenerationCancelled as e:
                logger.info(f"Final stream cancelled: {e}")
                reason = CompletionReason.ABORTED
                explanation = self._abort_signal.reason or str(e)
            except Exception:
                if not self._abort_signal.aborted:
                    raise
                reason = CompletionReason.ABORTED
                explanation = self._abort_signal.reason

            if reason is CompletionReason.ABORTED:
                agent.status = LoopStatus.ABORTED
            total_usage = blocking.total_usage + usage
            agent.total_usage = total_usage
            last_record = blocking.last_record
            if last_record is not None:
                last_record = replace(last_record, text=self.text)
            self._result = replace(
                blocking,
                text=self.text,
                last_record=last_record,
                completion_reason=reason,
                reason=explanation,
                total_usage=total_usage,
            )
            agent.result = self._result
