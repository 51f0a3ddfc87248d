"""
Agent Loop - the verification-gated iteration controller.

One run repeatedly calls the generation engine until the task is
verified, a stop condition fires, or the caller aborts:

1. Take the next user turn from the session and prepare context
   (compacting or truncating history when over budget)
2. Call the engine; record the iteration and merge its usage, then
   compact the history back to one summary plus the recent iterations
3. Evaluate stop conditions against the new totals
4. Ask the verification function whether the task is done
5. Done -> verified. Stop condition fired -> max-iterations.
   Otherwise the verifier's reason becomes the next user turn.

The loop is single-use: one AgentLoop serves exactly one run. Engine
and verification errors propagate to the caller; cancellation never
does, it is reported as an aborted result with the history so far.
"""

import logging
import time
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from typing import Any

from ralphloop.abort import AbortSignal, GenerationCancelled
from ralphloop.config import LoopConfig, TieBreak
from ralphloop.context import CompactionResult, ContextBudgetManager, PreparedContext
from ralphloop.engine import GenerationEngine, GenerationRequest
from ralphloop.memory import Summarizer
from ralphloop.session import Closeable, Session
from ralphloop.stop_conditions import LoopState, StopCondition, any_stop_condition, iteration_count_is
from ralphloop.streaming import LoopStream
from ralphloop.types import (
    CompletionReason,
    IterationRecord,
    LoopHistory,
    LoopResult,
    LoopStatus,
    TruncationEvent,
)
from ralphloop.usage import TokenRates, Usage, format_usage_report
from ralphloop.verification import VerifyContext, VerifyResult

logger = logging.getLogger(__name__)

_TERMINAL_STATUS = {
    CompletionReason.VERIFIED: LoopStatus.COMPLETED,
    CompletionReason.MAX_ITERATIONS: LoopStatus.STOPPED,
    CompletionReason.ABORTED: LoopStatus.ABORTED,
}


class LoopStateError(RuntimeError):
    """An AgentLoop was started twice."""
    pass


@dataclass
class IterationStartEvent:
    iteration: int


@dataclass
class IterationEndEvent:
    iteration: int
    duration: float
    result: IterationRecord


@dataclass
class ContextSummarizedEvent:
    iteration: int
    summarized_iterations: int
    tokens_saved: int


@dataclass
class LoopHooks:
    """
    Observer callbacks, invoked synchronously inline.

    A hook that raises is logged and ignored; it cannot change the
    outcome of the run.
    """
    on_iteration_start: Callable[[IterationStartEvent], Any] | None = None
    on_iteration_end: Callable[[IterationEndEvent], Any] | None = None
    on_context_summarized: Callable[[ContextSummarizedEvent], Any] | None = None


class AgentLoop:
    """
    Drives one verification-gated run.

    The loop owns a fresh Session for its run. Resources passed in are
    attached to that session and closed when the run ends, whatever the
    outcome.
    """

    def __init__(
        self,
        engine: GenerationEngine,
        config: LoopConfig | None = None,
        context_manager: ContextBudgetManager | None = None,
        hooks: LoopHooks | None = None,
        resources: Iterable[Closeable] = (),
        rates: TokenRates | None = None,
    ) -> None:
        """Initialize the loop.

        Args:
            engine: Generation engine driven by the loop (and, by default,
                used for summarization)
            config: Loop configuration; loaded from the environment if omitted
            context_manager: Budget manager; built from config.context if omitted
            hooks: Observer callbacks
            resources: Handles owned by this run, closed when it ends
            rates: Optional pricing, only used to report cost in logs
        """
        self.engine = engine
        self.config = config or LoopConfig.from_env()
        self.context_manager = context_manager or ContextBudgetManager(
            self.config.context,
            Summarizer(engine, max_summary_chars=self.config.context.max_summary_chars),
        )
        self.hooks = hooks or LoopHooks()
        self.rates = rates

        self.stop_conditions: list[StopCondition] = list(self.config.stop_when)
        if not self.stop_conditions:
            self.stop_conditions = [iteration_count_is(self.config.max_iterations)]

        self.session = Session()
        for resource in resources:
            self.session.attach(resource)

        self.status = LoopStatus.IDLE
        self.history = LoopHistory()
        self.total_usage = Usage()
        self.truncation_events: list[TruncationEvent] = []
        self.last_request: GenerationRequest | None = None
        self.result: LoopResult | None = None
        self._completed = 0

    def loop(self, prompt: str, abort_signal: AbortSignal | None = None) -> LoopResult:
        """
        Run to completion and return the result.

        Raises:
            LoopStateError: if this loop has already been started
            LLMError: if the engine fails (propagated, not retried here)
        """
        self.start()
        with self.session:
            return self.run(prompt, abort_signal)

    def stream(self, prompt: str, abort_signal: AbortSignal | None = None) -> LoopStream:
        """
        Run the loop, then stream the final call's output.

        The returned LoopStream is lazy: nothing runs until text_stream is
        iterated or result() is called.
        """
        self.start()
        return LoopStream(self, prompt, abort_signal)

    def start(self) -> None:
        """Claim this loop for a run. Fails on any second attempt."""
        if self.status is not LoopStatus.IDLE:
            raise LoopStateError(
                f"AgentLoop is {self.status.value}; one instance serves exactly one run"
            )
        self.status = LoopStatus.RUNNING

    def run(self, prompt: str, abort_signal: AbortSignal | None = None) -> LoopResult:
        """Iterate until a terminal outcome. The caller owns the session lifecycle."""
        signal = abort_signal or AbortSignal()
        self.session.metadata["original_prompt"] = prompt
        self.session.push_turn(prompt)
        logger.info(f"Run {self.session.id} started")

        iteration = 0
        while True:
            if signal.aborted:
                return self._finish(CompletionReason.ABORTED, signal.reason)

            iteration += 1
            self.status = LoopStatus.RUNNING
            turn = self.session.next_turn()
            logger.info(f"Iteration {iteration} starting")
            self._emit("on_iteration_start", IterationStartEvent(iteration=iteration))

            try:
                prepared = self.context_manager.prepare_context(
                    self.history,
                    instructions=self.config.instructions,
                    prompt=turn,
                    original_prompt=prompt,
                    tools=self.config.tools,
                    abort_signal=signal,
                )
            except GenerationCancelled as e:
                logger.info(f"Aborted during context compaction: {e}")
                return self._finish(CompletionReason.ABORTED, signal.reason or str(e))
            self._absorb_context_events(iteration, prepared)

            request = GenerationRequest(
                instructions=self.config.instructions,
                prompt=turn,
                context=prepared.messages,
                tools=self.config.tools,
            )
            self.last_request = request

            started = time.monotonic()
            try:
                generated = self.engine.generate(request, signal)
            except GenerationCancelled as e:
                logger.info(f"Iteration {iteration} cancelled: {e}")
                return self._finish(CompletionReason.ABORTED, signal.reason or str(e))
            except Exception:
                if signal.aborted:
                    logger.info(f"Iteration {iteration} failed after abort; treating as cancelled")
                    return self._finish(CompletionReason.ABORTED, signal.reason)
                raise

            record = IterationRecord(
                index=iteration,
                prompt=turn,
                text=generated.text,
                tool_calls=tuple(generated.tool_calls),
                tool_results=tuple(generated.tool_results),
                usage=generated.usage,
                duration=time.monotonic() - started,
            )
            self.history.append(record)
            self._completed = iteration
            self.total_usage = self.total_usage + generated.usage
            self._emit("on_iteration_end", IterationEndEvent(
                iteration=iteration,
                duration=record.duration,
                result=record,
            ))
            logger.info(format_usage_report(self.total_usage, self.rates, label=f"Iteration {iteration} totals"))

            compaction = self.context_manager.settle(
                self.history,
                instructions=self.config.instructions,
                original_prompt=prompt,
                tools=self.config.tools,
                abort_signal=signal,
            )
            if compaction is not None:
                self._absorb_compaction(iteration, compaction)

            if signal.aborted:
                return self._finish(CompletionReason.ABORTED, signal.reason)

            fired = any_stop_condition(
                self.stop_conditions,
                LoopState(iteration=iteration, usage=self.total_usage),
            )
            if fired is not None and self.config.tie_break is TieBreak.STOP_CONDITION:
                return self._finish(CompletionReason.MAX_ITERATIONS, self._stop_reason(fired))

            self.status = LoopStatus.VERIFYING
            try:
                verdict = self._verify(record, iteration, prompt, signal)
            except GenerationCancelled as e:
                logger.info(f"Verification cancelled: {e}")
                return self._finish(CompletionReason.ABORTED, signal.reason or str(e))
            except Exception:
                if signal.aborted:
                    return self._finish(CompletionReason.ABORTED, signal.reason)
                raise

            if verdict.usage is not None:
                self.total_usage = self.total_usage + verdict.usage

            if signal.aborted:
                return self._finish(CompletionReason.ABORTED, signal.reason)
            if verdict.complete:
                return self._finish(CompletionReason.VERIFIED, verdict.reason)
            if fired is not None:
                return self._finish(CompletionReason.MAX_ITERATIONS, self._stop_reason(fired))

            logger.info(f"Iteration {iteration} not verified: {(verdict.reason or '')[:150]}")
            self.session.push_turn(verdict.reason or self.config.continue_message)

    def _verify(self, record: IterationRecord, iteration: int, prompt: str, signal: AbortSignal) -> VerifyResult:
        if self.config.verify_completion is None:
            return VerifyResult(complete=True)
        return self.config.verify_completion(VerifyContext(
            result=record,
            iteration=iteration,
            history=self.history,
            original_prompt=prompt,
            abort_signal=signal,
        ))

    def _absorb_context_events(self, iteration: int, prepared: PreparedContext) -> None:
        if prepared.truncation is not None:
            self.truncation_events.append(prepared.truncation)
        if prepared.compaction is not None:
            self._absorb_compaction(iteration, prepared.compaction)

    def _absorb_compaction(self, iteration: int, compaction: CompactionResult) -> None:
        self.total_usage = self.total_usage + compaction.usage
        self._emit("on_context_summarized", ContextSummarizedEvent(
            iteration=iteration,
            summarized_iterations=compaction.summarized_iterations,
            tokens_saved=compaction.tokens_saved,
        ))

    def _stop_reason(self, condition: StopCondition) -> str:
        return f"Stop condition reached: {getattr(condition, '__name__', repr(condition))}"

    def _emit(self, hook_name: str, event: Any) -> None:
        hook = getattr(self.hooks, hook_name)
        if hook is None:
            return
        try:
            hook(event)
        except Exception:
            logger.exception(f"{hook_name} hook failed; continuing")

    def _finish(self, reason: CompletionReason, explanation: str | None = None) -> LoopResult:
        self.status = _TERMINAL_STATUS[reason]
        latest = self.history.latest
        self.result = LoopResult(
            text=latest.text if latest is not None else "",
            iterations=self._completed,
            completion_reason=reason,
            history=self.history,
            total_usage=self.total_usage,
            reason=explanation,
            last_record=latest,
        )
        logger.info(
            f"Run {self.session.id} finished: {reason.value} after {self._completed} iterations. "
            f"{format_usage_report(self.total_usage, self.rates, label='Total')}"
        )
        return self.result
