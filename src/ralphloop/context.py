"""
Context Budget Manager - keeps each request under a token ceiling.

Before every generation call the manager renders the loop history into
conversation messages and estimates the size of the whole request
(instructions, tool schemas, summary, verbatim iterations, current
turn). When the estimate exceeds max_context_tokens:

- with summarization enabled, every iteration except the most recent
  recent_iterations_to_keep is folded, together with the previous
  summary, into a new SummaryRecord that replaces it;
- with summarization disabled, the oldest iterations are dropped from
  the request (not from history) until it fits. Cheaper, and lossier.

After each iteration is appended, settle() compacts the history itself,
so once a summary exists the history never holds more than
recent_iterations_to_keep verbatim records between iterations.

High-volume content is capped while rendering, before anything is
counted: each tool result is cut to max_file_chars, file-read output
shares file_context_budget (newest first), and the log of files changed
shares change_log_budget.

Budget management is best-effort. If the minimum content still does
not fit, the request is sent anyway and the backend's own error
surfaces. If the request cannot be measured, it is sent unmodified.
"""

import json
import logging
from dataclasses import dataclass, replace
from typing import Any

from ralphloop.abort import AbortSignal, GenerationCancelled
from ralphloop.config import ContextConfig
from ralphloop.memory import Summarizer, describe_tool_call, truncate
from ralphloop.tools import ToolRegistry
from ralphloop.types import IterationRecord, LoopHistory, Message, Role, SummaryRecord, TruncationEvent
from ralphloop.usage import Usage

logger = logging.getLogger(__name__)

FILE_CONTENT_OMITTED = "[file content omitted: file context budget exhausted]"
PATH_ARGUMENT_KEYS = ("path", "file_path", "filePath", "filename")


@dataclass
class ContextBudget:
    """Tracks token budget usage."""
    total_budget: int
    used: int
    available: int


@dataclass
class CompactionResult:
    """What one compaction did."""
    summary: SummaryRecord
    summarized_iterations: int
    tokens_before: int
    tokens_after: int

    @property
    def tokens_saved(self) -> int:
        return max(0, self.tokens_before - self.tokens_after)

    @property
    def usage(self) -> Usage:
        return self.summary.usage


@dataclass
class PreparedContext:
    """Context to send for one iteration."""
    messages: list[Message]
    budget: ContextBudget | None
    compaction: CompactionResult | None = None
    truncation: TruncationEvent | None = None

    @property
    def over_budget(self) -> bool:
        return self.budget is not None and self.budget.available < 0


def _changed_path(arguments: dict[str, Any]) -> str | None:
    for key in PATH_ARGUMENT_KEYS:
        value = arguments.get(key)
        if isinstance(value, str) and value:
            return value
    return None


class ContextBudgetManager:
    """
    Decides what history goes into each request.

    The manager holds no run state of its own: everything it needs lives
    in the LoopHistory it is handed, so preparing twice with an unchanged
    history produces identical output.
    """

    def __init__(
        self,
        config: ContextConfig | None = None,
        summarizer: Summarizer | None = None,
    ) -> None:
        self.config = config or ContextConfig.from_env()
        self.summarizer = summarizer or Summarizer(max_summary_chars=self.config.max_summary_chars)

    # ------------------------------------------------------------------
    # Estimation
    # ------------------------------------------------------------------

    def estimate_tokens(self, text: str) -> int:
        """Approximate tokens as chars / chars_per_token."""
        return int(len(text) / self.config.chars_per_token)

    def estimate_message_tokens(self, message: Message) -> int:
        """Estimate tokens for a single message."""
        tokens = self.estimate_tokens(message.content)
        tokens += 4
        if message.name:
            tokens += self.estimate_tokens(message.name)
        if message.tool_calls:
            tokens += self.estimate_tokens(json.dumps(message.tool_calls))
        return tokens

    def estimate_request(
        self,
        instructions: str,
        tools: ToolRegistry | None,
        messages: list[Message],
        prompt: str,
    ) -> int:
        """
        Estimate the full request size.

        Raises TypeError/ValueError when some content cannot be
        serialized for measurement.
        """
        tokens = self.estimate_tokens(instructions) + 4
        if tools is not None and len(tools) > 0:
            tokens += self.estimate_tokens(json.dumps(tools.get_schemas()))
        tokens += sum(self.estimate_message_tokens(m) for m in messages)
        tokens += self.estimate_tokens(prompt) + 4
        return tokens

    def _budget(self, used: int) -> ContextBudget:
        total = self.config.max_context_tokens
        return ContextBudget(total_budget=total, used=used, available=total - used)

    # ------------------------------------------------------------------
    # Rendering
    # ------------------------------------------------------------------

    def _file_read_allowance(self, records: list[IterationRecord]) -> set[tuple[int, int]]:
        """
        Which file-read results fit the shared file context budget.

        Walks newest to oldest so the freshest file contents survive.
        Returns (record index, result position) pairs that may be shown.
        """
        allowed: set[tuple[int, int]] = set()
        remaining = self.config.file_context_budget
        for record in reversed(records):
            for position in range(len(record.tool_results) - 1, -1, -1):
                result = record.tool_results[position]
                if result.tool_name not in self.config.file_read_tools:
                    continue
                size = min(len(result.content), self.config.max_file_chars)
                if size <= remaining:
                    allowed.add((record.index, position))
                    remaining -= size
        return allowed

    def _render_record(self, record: IterationRecord, file_reads: set[tuple[int, int]]) -> list[Message]:
        lines: list[str] = []
        if record.text:
            lines.append(record.text)
        for position, result in enumerate(record.tool_results):
            call = record.tool_calls[position] if position < len(record.tool_calls) else None
            header = describe_tool_call(call) if call is not None else result.tool_name
            if result.tool_name in self.config.file_read_tools and (record.index, position) not in file_reads:
                content = FILE_CONTENT_OMITTED
            else:
                content = truncate(result.content, self.config.max_file_chars)
            status = "" if result.success else " (failed)"
            lines.append(f"[tool] {header}{status}\n{content}")
        return [
            Message(role=Role.USER, content=record.prompt),
            Message(role=Role.ASSISTANT, content="\n\n".join(lines) or "(no output)"),
        ]

    def change_log(self, history: LoopHistory) -> list[str]:
        """Files changed across the run, oldest first, one entry per path."""
        entries: dict[str, str] = {}
        if history.summary is not None:
            for entry in history.summary.changed_files:
                entries[entry] = entry
        for record in history.records:
            for call in record.tool_calls:
                if call.name not in self.config.file_write_tools:
                    continue
                path = _changed_path(call.arguments)
                if path is None:
                    continue
                entries.pop(path, None)
                entries[path] = path
        return list(entries.values())

    def _render_change_log(self, history: LoopHistory) -> Message | None:
        paths = self.change_log(history)
        if not paths:
            return None
        kept: list[str] = []
        used = 0
        for path in reversed(paths):
            line = f"- {path}"
            if used + len(line) + 1 > self.config.change_log_budget:
                break
            kept.insert(0, line)
            used += len(line) + 1
        omitted = len(paths) - len(kept)
        header = "[FILES CHANGED]"
        if omitted:
            header += f"\n[... {omitted} earlier changes omitted ...]"
        return Message(role=Role.ASSISTANT, content=header + "\n" + "\n".join(kept))

    def render(self, history: LoopHistory, original_prompt: str, drop_oldest: int = 0) -> list[Message]:
        """
        Render history into messages.

        The original task is restated whenever the first iteration is no
        longer shown verbatim (after compaction or truncation).
        """
        records = history.records[drop_oldest:]
        messages: list[Message] = []

        shows_first_iteration = bool(records) and records[0].index == 1
        if (history.summary is not None or records) and not shows_first_iteration:
            messages.append(Message(role=Role.USER, content=f"Original task:\n{original_prompt}"))

        if history.summary is not None:
            summary = history.summary
            messages.append(Message(
                role=Role.ASSISTANT,
                content=(
                    f"[PROGRESS SUMMARY - iterations {summary.first_iteration}-{summary.last_iteration}]\n"
                    f"{summary.text}"
                ),
            ))

        change_log = self._render_change_log(history)
        if change_log is not None:
            messages.append(change_log)

        file_reads = self._file_read_allowance(records)
        for record in records:
            messages.extend(self._render_record(record, file_reads))
        return messages

    # ------------------------------------------------------------------
    # Preparation
    # ------------------------------------------------------------------

    def prepare_context(
        self,
        history: LoopHistory,
        *,
        instructions: str,
        prompt: str,
        original_prompt: str,
        tools: ToolRegistry | None = None,
        abort_signal: AbortSignal | None = None,
    ) -> PreparedContext:
        """
        Build the context for the next generation call.

        May compact `history` in place (summarization enabled). That is
        the only side effect, and it happens at most once per call.
        """
        messages = self.render(history, original_prompt)
        try:
            estimate = self.estimate_request(instructions, tools, messages, prompt)
        except (TypeError, ValueError) as e:
            logger.warning(f"Could not estimate context size ({e}); sending unmodified context")
            return PreparedContext(messages=messages, budget=None)

        if estimate <= self.config.max_context_tokens:
            return PreparedContext(messages=messages, budget=self._budget(estimate))

        if self.config.enable_summarization:
            prepared = self._compact(history, messages, estimate, instructions, prompt, original_prompt, tools, abort_signal)
        else:
            prepared = self._truncate(history, messages, estimate, instructions, prompt, original_prompt, tools)

        if prepared.over_budget:
            logger.warning(
                f"Context still over budget after management "
                f"({prepared.budget.used}/{self.config.max_context_tokens} tokens); sending anyway"
            )
        return prepared

    def settle(
        self,
        history: LoopHistory,
        *,
        instructions: str,
        original_prompt: str,
        tools: ToolRegistry | None = None,
        abort_signal: AbortSignal | None = None,
    ) -> CompactionResult | None:
        """
        Compact `history` right after an iteration was appended.

        Once a summary exists the verbatim records are held at exactly
        recent_iterations_to_keep; before that, records are folded as soon
        as the history alone no longer fits the budget. When the run is
        already aborted, or the summarization call is cancelled, the
        heuristic summary is used so the history is still left compacted.
        """
        keep = self.config.recent_iterations_to_keep
        if not self.config.enable_summarization or len(history.records) <= keep:
            return None

        messages = self.render(history, original_prompt)
        try:
            estimate = self.estimate_request(instructions, tools, messages, "")
        except (TypeError, ValueError) as e:
            logger.warning(f"Could not estimate history size ({e}); leaving history as is")
            return None
        if history.summary is None and estimate <= self.config.max_context_tokens:
            return None

        offline = abort_signal is not None and abort_signal.aborted
        try:
            _, compaction = self._fold(
                history, estimate, instructions, "", original_prompt, tools, abort_signal, offline
            )
        except GenerationCancelled as e:
            logger.info(f"Summarization cancelled ({e}); using heuristic summary")
            _, compaction = self._fold(
                history, estimate, instructions, "", original_prompt, tools, None, offline=True
            )
        return compaction

    def _compact(
        self,
        history: LoopHistory,
        messages: list[Message],
        estimate: int,
        instructions: str,
        prompt: str,
        original_prompt: str,
        tools: ToolRegistry | None,
        abort_signal: AbortSignal | None,
    ) -> PreparedContext:
        if len(history.records) <= self.config.recent_iterations_to_keep:
            return PreparedContext(messages=messages, budget=self._budget(estimate))

        messages, compaction = self._fold(history, estimate, instructions, prompt, original_prompt, tools, abort_signal)
        return PreparedContext(messages=messages, budget=self._budget(compaction.tokens_after), compaction=compaction)

    def _fold(
        self,
        history: LoopHistory,
        estimate: int,
        instructions: str,
        prompt: str,
        original_prompt: str,
        tools: ToolRegistry | None,
        abort_signal: AbortSignal | None,
        offline: bool = False,
    ) -> tuple[list[Message], CompactionResult]:
        keep = self.config.recent_iterations_to_keep
        to_fold = history.records[:-keep] if keep > 0 else list(history.records)
        summary = self.summarizer.summarize(history.summary, to_fold, abort_signal, offline=offline)
        folded_history = LoopHistory(summary=history.summary, records=to_fold)
        summary = replace(summary, changed_files=tuple(self.change_log(folded_history)))
        history.compact(summary, keep)

        messages = self.render(history, original_prompt)
        after = self.estimate_request(instructions, tools, messages, prompt)
        compaction = CompactionResult(
            summary=summary,
            summarized_iterations=len(to_fold),
            tokens_before=estimate,
            tokens_after=after,
        )
        logger.info(
            f"Context compacted: {len(to_fold)} iterations summarized, "
            f"~{compaction.tokens_saved} tokens saved ({estimate} -> {after})"
        )
        return messages, compaction

    def _truncate(
        self,
        history: LoopHistory,
        messages: list[Message],
        estimate: int,
        instructions: str,
        prompt: str,
        original_prompt: str,
        tools: ToolRegistry | None,
    ) -> PreparedContext:
        current_messages = messages
        current = estimate
        dropped = 0
        # The latest iteration is always sent.
        for drop in range(1, len(history.records)):
            current_messages = self.render(history, original_prompt, drop_oldest=drop)
            current = self.estimate_request(instructions, tools, current_messages, prompt)
            dropped = drop
            if current <= self.config.max_context_tokens:
                break

        if dropped == 0:
            return PreparedContext(messages=messages, budget=self._budget(estimate))

        event = TruncationEvent(
            iteration=history.total_iterations + 1,
            iterations_dropped=dropped,
            tokens_dropped=max(0, estimate - current),
        )
        logger.warning(
            f"Context truncation: dropped {dropped} iterations "
            f"(~{event.tokens_dropped} tokens) from the request. Information has been LOST."
        )
        return PreparedContext(messages=current_messages, budget=self._budget(current), truncation=event)
