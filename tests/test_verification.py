"""
Tests for verification helpers and the LLM judge.
"""

from ralphloop.engine import GenerationResult
from ralphloop.simulator import ScriptedEngine
from ralphloop.tools import ToolRegistry
from ralphloop.types import IterationRecord, LoopHistory, ToolCall, ToolResult
from ralphloop.usage import Usage
from ralphloop.verification import (
    APPROVE_TOOL,
    REQUEST_CHANGES_TOOL,
    LLMJudge,
    VerifyContext,
    text_contains,
    tool_was_called,
)


def make_context(text: str = "", results: list[ToolResult] | None = None, calls: list[ToolCall] | None = None) -> VerifyContext:
    record = IterationRecord(
        index=1,
        prompt="task",
        text=text,
        tool_calls=tuple(calls or []),
        tool_results=tuple(results or []),
    )
    history = LoopHistory()
    history.append(record)
    return VerifyContext(result=record, iteration=1, history=history, original_prompt="Write a haiku")


class TestToolWasCalled:
    def test_complete_when_tool_succeeded(self) -> None:
        """Test completion after a successful tool call."""
        ctx = make_context(results=[ToolResult(tool_call_id="1", content="all done", tool_name="mark_complete")])

        verdict = tool_was_called("mark_complete")(ctx)

        assert verdict.complete
        assert "all done" in (verdict.reason or "")

    def test_failed_call_does_not_count(self) -> None:
        """Test that a failed call does not count by default."""
        ctx = make_context(results=[
            ToolResult(tool_call_id="1", content="Error", tool_name="mark_complete", success=False),
        ])

        assert not tool_was_called("mark_complete")(ctx).complete
        assert tool_was_called("mark_complete", require_success=False)(ctx).complete

    def test_feedback_when_not_called(self) -> None:
        """Test the default feedback."""
        verdict = tool_was_called("mark_complete")(make_context())

        assert not verdict.complete
        assert verdict.reason == "The task is not complete yet. Call mark_complete when you are done."

    def test_custom_feedback(self) -> None:
        """Test custom feedback."""
        verdict = tool_was_called("mark_complete", feedback="Run the tests first.")(make_context())
        assert verdict.reason == "Run the tests first."


class TestTextContains:
    def test_case_insensitive_by_default(self) -> None:
        """Test the case-insensitive default."""
        assert text_contains("TASK COMPLETE")(make_context("ok, task complete.")).complete

    def test_case_sensitive(self) -> None:
        """Test case-sensitive matching."""
        verify = text_contains("DONE", case_sensitive=True)
        assert not verify(make_context("done")).complete
        assert verify(make_context("DONE")).complete

    def test_feedback_names_the_marker(self) -> None:
        """Test that feedback names the marker."""
        verdict = text_contains("DONE")(make_context("working"))
        assert not verdict.complete
        assert "'DONE'" in (verdict.reason or "")


class TestLLMJudge:
    """The judge's verdict comes from the tool it calls."""

    def test_approval(self) -> None:
        """Test an approving judge."""
        engine = ScriptedEngine([GenerationResult(
            text="",
            tool_calls=[ToolCall(id="j1", name=APPROVE_TOOL, arguments={"reason": "All criteria met"})],
            usage=Usage.from_counts(200, 20),
        )])

        verdict = LLMJudge(engine)(make_context("An old silent pond"))

        assert verdict.complete
        assert verdict.reason == "All criteria met"
        assert verdict.usage == Usage.from_counts(200, 20)

    def test_request_changes_becomes_feedback(self) -> None:
        """Test that requested changes become feedback."""
        engine = ScriptedEngine([GenerationResult(
            text="",
            tool_calls=[ToolCall(
                id="j1",
                name=REQUEST_CHANGES_TOOL,
                arguments={"issues": ["Wrong syllable count"], "suggestions": ["Use 5-7-5"]},
            )],
        )])

        verdict = LLMJudge(engine)(make_context("too many words here"))

        assert not verdict.complete
        assert verdict.reason == (
            "The reviewer requested changes:\n"
            "- Wrong syllable count\n"
            "Suggestions:\n"
            "- Use 5-7-5"
        )

    def test_no_verdict_is_not_complete(self) -> None:
        """Test a judge that gives no verdict."""
        engine = ScriptedEngine(["I think it is fine"])

        verdict = LLMJudge(engine)(make_context("draft"))

        assert not verdict.complete
        assert "I think it is fine" in (verdict.reason or "")
        assert verdict.usage == engine.default_usage

    def test_prompt_carries_task_and_evidence(self) -> None:
        """Test the judge prompt."""
        engine = ScriptedEngine(["no verdict"])
        ctx = make_context(
            "wrote it",
            calls=[ToolCall(id="1", name="write_file", arguments={"path": "poem.txt"})],
            results=[ToolResult(tool_call_id="1", content="saved", tool_name="write_file")],
        )

        LLMJudge(engine)(ctx)

        prompt = engine.requests[0].prompt
        assert "Original task:\nWrite a haiku" in prompt
        assert "wrote it" in prompt
        assert 'write_file({"path": "poem.txt"})' in prompt

    def test_judge_offers_verdict_and_review_tools(self) -> None:
        """Test the tools offered to the judge."""
        review = ToolRegistry()
        review.register_function("list_files", "List files", {"type": "object", "properties": {}}, lambda: "a.py")
        engine = ScriptedEngine(["no verdict"])

        LLMJudge(engine, review_tools=review)(make_context())

        offered = engine.requests[0].tools
        assert offered is not None
        assert set(offered.tool_names) == {APPROVE_TOOL, REQUEST_CHANGES_TOOL, "list_files"}
