"""
Scripted generation engine for deterministic runs.

ScriptedEngine replays a fixed sequence of results instead of calling a
model, and records every request it was given. It lets the loop, the
budget manager and the streaming adapter be exercised without a
backend, including mid-call cancellation.

Summarization requests are answered separately (from summary_text) so
they never consume the scripted iteration results.
"""

import logging
from collections.abc import Iterable, Iterator

from ralphloop.abort import AbortSignal, GenerationCancelled
from ralphloop.engine import GenerationRequest, GenerationResult
from ralphloop.llm import StreamChunk
from ralphloop.memory import SUMMARY_INSTRUCTIONS
from ralphloop.usage import Usage

logger = logging.getLogger(__name__)

ScriptStep = GenerationResult | str | Exception


class ScriptedEngine:
    """
    GenerationEngine that returns scripted results in order.

    Each script step is a GenerationResult, a plain string (turned into
    a result with default_usage), or an exception to raise. Once the
    script runs out, the last step repeats.

    abort_on_call fires the abort signal during the given generate()
    call (1-based). With cancel_in_flight the call then raises
    GenerationCancelled; without it the in-flight call still completes.
    """

    def __init__(
        self,
        script: Iterable[ScriptStep] = (),
        default_usage: Usage | None = None,
        summary_text: str = "Summary of earlier progress.",
        summary_usage: Usage | None = None,
        abort_on_call: int | None = None,
        cancel_in_flight: bool = True,
        stream_chunk_size: int = 8,
        stream_usage: Usage | None = None,
    ) -> None:
        self.script = list(script)
        self.default_usage = default_usage or Usage.from_counts(100, 50)
        self.summary_text = summary_text
        self.summary_usage = summary_usage or Usage()
        self.abort_on_call = abort_on_call
        self.cancel_in_flight = cancel_in_flight
        self.stream_chunk_size = stream_chunk_size
        self.stream_usage = stream_usage

        self.requests: list[GenerationRequest] = []
        self.summary_requests: list[GenerationRequest] = []
        self.stream_requests: list[GenerationRequest] = []
        self._index = 0
        self._last_text = ""

    @property
    def calls(self) -> int:
        return len(self.requests)

    def _next_step(self) -> ScriptStep:
        if not self.script:
            return GenerationResult(text="", usage=self.default_usage)
        step = self.script[min(self._index, len(self.script) - 1)]
        self._index += 1
        return step

    def _to_result(self, step: ScriptStep, request: GenerationRequest) -> GenerationResult:
        if isinstance(step, str):
            return GenerationResult(text=step, usage=self.default_usage)
        if isinstance(step, GenerationResult):
            result = GenerationResult(
                text=step.text,
                tool_calls=list(step.tool_calls),
                tool_results=list(step.tool_results),
                usage=step.usage,
                steps=step.steps,
            )
            if result.tool_calls and not result.tool_results and request.tools is not None:
                result.tool_results = [request.tools.execute(call) for call in result.tool_calls]
            return result
        raise TypeError(f"Unsupported script step: {step!r}")

    def generate(self, request: GenerationRequest, abort_signal: AbortSignal | None = None) -> GenerationResult:
        if request.instructions == SUMMARY_INSTRUCTIONS:
            self.summary_requests.append(request)
            if abort_signal is not None:
                abort_signal.raise_if_aborted()
            return GenerationResult(text=self.summary_text, usage=self.summary_usage)

        self.requests.append(request)
        if abort_signal is not None:
            abort_signal.raise_if_aborted()

        step = self._next_step()
        if self.abort_on_call is not None and self.calls == self.abort_on_call and abort_signal is not None:
            logger.debug(f"Scripted abort during call {self.calls}")
            abort_signal.abort("scripted abort")
            if self.cancel_in_flight:
                raise GenerationCancelled("scripted abort")

        if isinstance(step, Exception):
            raise step
        result = self._to_result(step, request)
        self._last_text = result.text
        return result

    def stream(self, request: GenerationRequest, abort_signal: AbortSignal | None = None) -> Iterator[StreamChunk]:
        """Stream the text of the most recent generate() result in fixed-size chunks."""
        self.stream_requests.append(request)
        text = self._last_text
        size = max(1, self.stream_chunk_size)
        for start in range(0, len(text), size):
            if abort_signal is not None:
                abort_signal.raise_if_aborted()
            yield StreamChunk(delta=text[start:start + size])
        if self.stream_usage is not None:
            yield StreamChunk(usage=self.stream_usage)
