"""
Tests for the Summarizer - folding older iterations into one summary.
"""

import pytest

from ralphloop.abort import AbortSignal, GenerationCancelled
from ralphloop.engine import GenerationRequest, GenerationResult
from ralphloop.memory import SUMMARY_INSTRUCTIONS, Summarizer, describe_tool_call, truncate
from ralphloop.simulator import ScriptedEngine
from ralphloop.types import IterationRecord, SummaryRecord, ToolCall, ToolResult
from ralphloop.usage import Usage


def make_records(count: int, start: int = 1) -> list[IterationRecord]:
    records = []
    for i in range(start, start + count):
        call = ToolCall(id=f"c{i}", name="run_command", arguments={"command": f"step {i}"})
        result = ToolResult(
            tool_call_id=f"c{i}",
            content="Error: build failed because module xyz is missing" if i == start else "ok",
            tool_name="run_command",
            success=i != start,
        )
        records.append(IterationRecord(
            index=i,
            prompt=f"prompt {i}",
            text=f"response {i}",
            tool_calls=(call,),
            tool_results=(result,),
        ))
    return records


class FailingEngine:
    def generate(self, request: GenerationRequest, abort_signal: AbortSignal | None = None) -> GenerationResult:
        raise RuntimeError("backend down")

    def stream(self, request, abort_signal=None):
        return iter(())


class CancellingEngine:
    def generate(self, request: GenerationRequest, abort_signal: AbortSignal | None = None) -> GenerationResult:
        raise GenerationCancelled("stop")

    def stream(self, request, abort_signal=None):
        return iter(())


class TestTruncate:
    def test_short_text_unchanged(self) -> None:
        """Test that short text is unchanged."""
        assert truncate("hello", 10) == "hello"

    def test_long_text_gets_marker(self) -> None:
        """Test the truncation marker."""
        assert truncate("a" * 15, 10) == "a" * 10 + "\n[... truncated 5 chars ...]"

    def test_non_positive_limit_disables_cap(self) -> None:
        """Test that a limit of zero disables the cap."""
        assert truncate("abc", 0) == "abc"


class TestDescribeToolCall:
    def test_renders_name_and_arguments(self) -> None:
        """Test tool call rendering."""
        call = ToolCall(id="1", name="read_file", arguments={"path": "a.py"})
        assert describe_tool_call(call) == 'read_file({"path": "a.py"})'

    def test_long_arguments_are_cut(self) -> None:
        """Test that long arguments are shortened."""
        call = ToolCall(id="1", name="write_file", arguments={"content": "x" * 500})
        rendered = describe_tool_call(call, max_chars=20)
        assert rendered.endswith("...)")
        assert len(rendered) < 50


class TestHeuristicSummary:
    """Summaries built without any model call."""

    def test_summary_spans_folded_iterations(self) -> None:
        """Test the iteration span of a summary."""
        summary = Summarizer().summarize(None, make_records(3))

        assert summary.first_iteration == 1
        assert summary.last_iteration == 3
        assert summary.usage == Usage()
        assert "Iterations 1-3: 3 tool calls (1 failed)." in summary.text
        assert "run_command" in summary.text
        assert "response 3" in summary.text

    def test_errors_are_extracted(self) -> None:
        """Test that errors appear in the heuristic summary."""
        summary = Summarizer().summarize(None, make_records(2))
        assert "Errors:" in summary.text
        assert "module xyz is missing" in summary.text

    def test_previous_summary_is_folded_in(self) -> None:
        """Test that the previous summary is kept."""
        previous = SummaryRecord(text="earlier work", first_iteration=1, last_iteration=2)

        summary = Summarizer().summarize(previous, make_records(2, start=3))

        assert summary.first_iteration == 1
        assert summary.last_iteration == 4
        assert summary.text.startswith("earlier work")

    def test_summary_is_capped(self) -> None:
        """Test the summary length cap."""
        summary = Summarizer(max_summary_chars=20).summarize(None, make_records(3))
        assert "[... truncated" in summary.text

    def test_nothing_to_fold_raises(self) -> None:
        """Test that summarizing nothing raises."""
        with pytest.raises(ValueError):
            Summarizer().summarize(None, [])


class TestEngineSummary:
    """Summaries produced by a dedicated generation call."""

    def test_uses_engine_and_reports_usage(self) -> None:
        """Test LLM summarization and its usage."""
        engine = ScriptedEngine(summary_text="Compressed progress.", summary_usage=Usage.from_counts(40, 10))

        summary = Summarizer(engine).summarize(None, make_records(2))

        assert summary.text == "Compressed progress."
        assert summary.usage == Usage.from_counts(40, 10)
        assert len(engine.summary_requests) == 1
        request = engine.summary_requests[0]
        assert request.instructions == SUMMARY_INSTRUCTIONS
        assert "Iteration 1" in request.prompt
        assert "run_command" in request.prompt

    def test_prompt_includes_previous_summary(self) -> None:
        """Test that the prompt carries the previous summary."""
        previous = SummaryRecord(text="old notes", first_iteration=1, last_iteration=2)
        prompt = Summarizer().build_prompt(previous, make_records(1, start=3))
        assert prompt.startswith("Summary of iterations 1-2:\nold notes")

    def test_empty_engine_answer_falls_back_to_heuristic(self) -> None:
        """Test the fallback on an empty answer."""
        engine = ScriptedEngine(summary_text="   ")
        summary = Summarizer(engine).summarize(None, make_records(2))
        assert "Iterations 1-2" in summary.text

    def test_engine_failure_falls_back_to_heuristic(self) -> None:
        """Test the fallback on a backend failure."""
        summary = Summarizer(FailingEngine()).summarize(None, make_records(2))
        assert "Iterations 1-2" in summary.text
        assert summary.usage == Usage()

    def test_cancellation_propagates(self) -> None:
        """Test that cancellation is not swallowed."""
        with pytest.raises(GenerationCancelled):
            Summarizer(CancellingEngine()).summarize(None, make_records(2))
