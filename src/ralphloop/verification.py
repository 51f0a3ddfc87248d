"""
Verification - deciding whether the task is actually finished.

A verification function is called after every iteration with a
VerifyContext and answers with a VerifyResult. When it is not complete,
its reason becomes the next user turn, so a useful reason is specific
feedback rather than a bare "no".

Verification may make its own generation calls (see LLMJudge). Any
usage it reports on the VerifyResult is merged into the run totals.
"""

import logging
from collections.abc import Callable
from dataclasses import dataclass

from ralphloop.abort import AbortSignal
from ralphloop.engine import GenerationEngine, GenerationRequest
from ralphloop.memory import describe_tool_call, truncate
from ralphloop.tools import ToolRegistry
from ralphloop.types import IterationRecord, LoopHistory, ToolCall
from ralphloop.usage import Usage

logger = logging.getLogger(__name__)

APPROVE_TOOL = "approve_task"
REQUEST_CHANGES_TOOL = "request_changes"

JUDGE_INSTRUCTIONS = """You are an independent reviewer checking another agent's work.
Decide whether the original task has been fully completed.
Inspect the evidence you are given (and any tools you have) before deciding.
Call approve_task only if every success criterion is met.
Otherwise call request_changes with specific issues and concrete suggestions.
You must call exactly one of the two tools."""


@dataclass
class VerifyContext:
    """What a verification function sees after an iteration."""
    result: IterationRecord
    iteration: int
    history: LoopHistory
    original_prompt: str
    abort_signal: AbortSignal | None = None


@dataclass
class VerifyResult:
    """Verdict of a verification function."""
    complete: bool
    reason: str | None = None
    usage: Usage | None = None


VerifyCompletion = Callable[[VerifyContext], VerifyResult]


def tool_was_called(name: str, require_success: bool = True, feedback: str | None = None) -> VerifyCompletion:
    """
    Complete once the latest iteration called the tool `name`.

    Useful with a "mark_complete" style tool the agent calls when it
    believes it is done.
    """
    def verify(ctx: VerifyContext) -> VerifyResult:
        results = ctx.result.results_for(name)
        if require_success:
            results = [r for r in results if r.success]
        if results:
            return VerifyResult(complete=True, reason=f"{name} was called: {truncate(results[-1].content, 500)}")
        return VerifyResult(
            complete=False,
            reason=feedback or f"The task is not complete yet. Call {name} when you are done.",
        )
    return verify


def text_contains(marker: str, case_sensitive: bool = False, feedback: str | None = None) -> VerifyCompletion:
    """Complete once the latest response text contains `marker`."""
    def verify(ctx: VerifyContext) -> VerifyResult:
        text = ctx.result.text
        found = marker in text if case_sensitive else marker.lower() in text.lower()
        if found:
            return VerifyResult(complete=True, reason=f"Response contains {marker!r}")
        return VerifyResult(
            complete=False,
            reason=feedback or f"Keep going. Reply with {marker!r} once the task is complete.",
        )
    return verify


def _verdict_tools() -> ToolRegistry:
    registry = ToolRegistry()
    registry.register_function(
        name=APPROVE_TOOL,
        description="Approve the task as complete - all success criteria are met",
        parameters={
            "type": "object",
            "properties": {
                "reason": {
                    "type": "string",
                    "description": "Why the task is complete and meets all criteria",
                },
            },
            "required": ["reason"],
        },
        handler=lambda reason: {"approved": True, "reason": reason},
    )
    registry.register_function(
        name=REQUEST_CHANGES_TOOL,
        description="Request changes - the task is NOT complete or has issues",
        parameters={
            "type": "object",
            "properties": {
                "issues": {
                    "type": "array",
                    "items": {"type": "string"},
                    "description": "List of specific issues that need to be fixed",
                },
                "suggestions": {
                    "type": "array",
                    "items": {"type": "string"},
                    "description": "Specific suggestions for the agent",
                },
            },
            "required": ["issues"],
        },
        handler=lambda issues, suggestions=None: {
            "approved": False,
            "issues": issues,
            "suggestions": suggestions or [],
        },
    )
    return registry


def _format_changes(call: ToolCall) -> str:
    issues = call.arguments.get("issues") or []
    suggestions = call.arguments.get("suggestions") or []
    lines = ["The reviewer requested changes:"]
    lines.extend(f"- {issue}" for issue in issues)
    if suggestions:
        lines.append("Suggestions:")
        lines.extend(f"- {s}" for s in suggestions)
    return "\n".join(lines)


class LLMJudge:
    """
    Independent judgment pass over the latest iteration.

    Calls the engine with approve_task / request_changes tools (plus any
    read-only review tools the caller passes in) and turns whichever one
    it called last into a VerifyResult. The judge's own token usage is
    reported so the run totals include it.
    """

    def __init__(
        self,
        engine: GenerationEngine,
        review_tools: ToolRegistry | None = None,
        instructions: str = JUDGE_INSTRUCTIONS,
        max_evidence_chars: int = 8000,
    ) -> None:
        self.engine = engine
        self.instructions = instructions
        self.max_evidence_chars = max_evidence_chars
        self.tools = _verdict_tools()
        if review_tools is not None:
            for name in review_tools.tool_names:
                tool = review_tools.get(name)
                if tool is not None:
                    self.tools.register(tool)

    def build_prompt(self, ctx: VerifyContext) -> str:
        record = ctx.result
        evidence = [f"Agent response:\n{record.text}"]
        for call, result in zip(record.tool_calls, record.tool_results, strict=False):
            evidence.append(f"[tool] {describe_tool_call(call)}\n{truncate(result.content, 1000)}")
        return (
            f"Original task:\n{ctx.original_prompt}\n\n"
            f"Iteration {ctx.iteration} evidence:\n"
            f"{truncate(chr(10).join(evidence), self.max_evidence_chars)}\n\n"
            "Review the work and call approve_task or request_changes."
        )

    def __call__(self, ctx: VerifyContext) -> VerifyResult:
        request = GenerationRequest(
            instructions=self.instructions,
            prompt=self.build_prompt(ctx),
            tools=self.tools,
        )
        result = self.engine.generate(request, ctx.abort_signal)

        verdict: ToolCall | None = None
        for call in result.tool_calls:
            if call.name in (APPROVE_TOOL, REQUEST_CHANGES_TOOL):
                verdict = call

        if verdict is None:
            logger.warning(f"Judge gave no verdict at iteration {ctx.iteration}")
            reason = "The reviewer could not confirm the task is complete."
            if result.text:
                reason += f"\n\n{result.text}"
            return VerifyResult(complete=False, reason=reason, usage=result.usage)

        if verdict.name == APPROVE_TOOL:
            logger.info(f"Judge approved the task at iteration {ctx.iteration}")
            return VerifyResult(
                complete=True,
                reason=str(verdict.arguments.get("reason", "")),
                usage=result.usage,
            )

        logger.info(f"Judge requested changes at iteration {ctx.iteration}")
        return VerifyResult(complete=False, reason=_format_changes(verdict), usage=result.usage)
