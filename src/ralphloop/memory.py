"""
Summarizer - compresses older iterations into a single SummaryRecord.

When the context budget is under pressure, the budget manager folds the
previous summary plus the iterations being dropped from verbatim history
into a new summary. Summaries are re-derived each time, never chained:
the previous summary text is an input to the new one, and the new
record replaces it.

The summary is produced by a dedicated, smaller generation call. If
that call fails for any reason other than cancellation, a heuristic
summary built from the tool activity is used instead, so a flaky
summarization pass never kills the run.
"""

import json
import logging
import re

from ralphloop.abort import AbortSignal, GenerationCancelled
from ralphloop.engine import GenerationEngine, GenerationRequest
from ralphloop.types import IterationRecord, SummaryRecord, ToolCall
from ralphloop.usage import Usage

logger = logging.getLogger(__name__)

SUMMARY_INSTRUCTIONS = """You compress the progress log of an autonomous agent.
Write a concise summary that preserves:
- What the task is and what has been accomplished so far
- Decisions made and why
- Files created or modified
- Errors encountered and outstanding issues
- Feedback received that has not yet been addressed
Use plain prose and short bullet points. Do not invent details."""

MAX_RECORD_CHARS_IN_SUMMARY_PROMPT = 2000
TRUNCATION_MARKER = "[... truncated {omitted} chars ...]"

_ERROR_PATTERN = re.compile(r'(?:error|failed|exception)[:\s]+(.{10,100})', re.IGNORECASE)


def truncate(text: str, max_chars: int) -> str:
    """Cut text to max_chars, appending an explicit truncation marker."""
    if max_chars <= 0 or len(text) <= max_chars:
        return text
    omitted = len(text) - max_chars
    return text[:max_chars] + "\n" + TRUNCATION_MARKER.format(omitted=omitted)


def describe_tool_call(call: ToolCall, max_chars: int = 200) -> str:
    """Compact one-line rendering of a tool call."""
    try:
        args = json.dumps(call.arguments, ensure_ascii=False, default=str)
    except (TypeError, ValueError):
        args = str(call.arguments)
    if len(args) > max_chars:
        args = args[:max_chars] + "..."
    return f"{call.name}({args})"


class Summarizer:
    """Builds SummaryRecords, via the engine when one is available."""

    def __init__(
        self,
        engine: GenerationEngine | None = None,
        max_summary_chars: int = 4000,
    ) -> None:
        self.engine = engine
        self.max_summary_chars = max_summary_chars

    def build_prompt(self, previous: SummaryRecord | None, records: list[IterationRecord]) -> str:
        parts: list[str] = []
        if previous is not None:
            parts.append(
                f"Summary of iterations {previous.first_iteration}-{previous.last_iteration}:\n"
                f"{previous.text}"
            )
        for record in records:
            lines = [f"Iteration {record.index}", f"Input: {truncate(record.prompt, 500)}"]
            for call, result in zip(record.tool_calls, record.tool_results, strict=False):
                status = "ok" if result.success else "failed"
                lines.append(f"- {describe_tool_call(call)} -> {status}: {truncate(result.content, 300)}")
            lines.append(f"Response: {truncate(record.text, MAX_RECORD_CHARS_IN_SUMMARY_PROMPT)}")
            parts.append("\n".join(lines))
        parts.append("Write the updated summary now.")
        return "\n\n".join(parts)

    def summarize(
        self,
        previous: SummaryRecord | None,
        records: list[IterationRecord],
        abort_signal: AbortSignal | None = None,
        offline: bool = False,
    ) -> SummaryRecord:
        """
        Fold previous + records into one new SummaryRecord.

        With offline=True no model call is made and the heuristic summary
        is used.

        Raises:
            ValueError: if there is nothing to fold
            GenerationCancelled: if the abort signal fires during the call
        """
        if not records:
            raise ValueError("summarize() needs at least one record to fold")

        first = previous.first_iteration if previous else records[0].index
        last = records[-1].index
        usage = Usage()

        if self.engine is None or offline:
            text = self.summarize_heuristic(previous, records)
        else:
            request = GenerationRequest(
                instructions=SUMMARY_INSTRUCTIONS,
                prompt=self.build_prompt(previous, records),
            )
            try:
                result = self.engine.generate(request, abort_signal)
                text = result.text.strip() or self.summarize_heuristic(previous, records)
                usage = result.usage
            except GenerationCancelled:
                raise
            except Exception as e:
                logger.warning(f"LLM summarization failed: {e}, using heuristic")
                text = self.summarize_heuristic(previous, records)

        logger.info(f"Summarized iterations {first}-{last} ({len(records)} newly folded)")
        return SummaryRecord(
            text=truncate(text, self.max_summary_chars),
            first_iteration=first,
            last_iteration=last,
            usage=usage,
        )

    def summarize_heuristic(self, previous: SummaryRecord | None, records: list[IterationRecord]) -> str:
        """Generate a summary from tool activity, without any model call."""
        tool_calls = sum(len(r.tool_calls) for r in records)
        failures = sum(1 for r in records for res in r.tool_results if not res.success)

        tools_used: list[str] = []
        for record in records:
            for call in record.tool_calls:
                if call.name not in tools_used:
                    tools_used.append(call.name)

        errors: list[str] = []
        for record in records:
            for result in record.tool_results:
                for match in _ERROR_PATTERN.findall(result.content):
                    error_text = match.strip()[:100]
                    if error_text not in errors:
                        errors.append(error_text)

        parts: list[str] = []
        if previous is not None:
            parts.append(previous.text)
        parts.append(
            f"Iterations {records[0].index}-{records[-1].index}: "
            f"{tool_calls} tool calls ({failures} failed)."
        )
        if tools_used:
            parts.append(f"Tools used: {', '.join(tools_used[:10])}.")
        if errors:
            parts.append(f"Errors: {'; '.join(errors[-3:])}.")
        latest_text = records[-1].text.strip()
        if latest_text:
            parts.append(f"Last response: {latest_text[:300]}")
        return "\n".join(parts)
