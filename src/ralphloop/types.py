"""
Core types for the iteration loop.

These types represent the data that flows through the loop: the
conversation messages handed to the generation engine, the immutable
record of each iteration, the bounded history those records live in,
and the terminal result of a run.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from ralphloop.usage import Usage


class Role(str, Enum):
    """Message roles in the conversation."""
    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"
    TOOL = "tool"


@dataclass
class Message:
    """A single message in the conversation sent to the engine."""
    role: Role
    content: str
    name: str | None = None
    tool_call_id: str | None = None
    tool_calls: list[dict[str, Any]] | None = None

    def to_dict(self) -> dict[str, Any]:
        """Convert to OpenAI API format."""
        result: dict[str, Any] = {
            "role": self.role.value,
            "content": self.content,
        }
        if self.name is not None:
            result["name"] = self.name
        if self.tool_call_id is not None:
            result["tool_call_id"] = self.tool_call_id
        if self.tool_calls is not None:
            result["tool_calls"] = self.tool_calls
        return result


@dataclass(frozen=True)
class ToolCall:
    """A request from the model to execute a tool."""
    id: str
    name: str
    arguments: dict[str, Any]


@dataclass(frozen=True)
class ToolResult:
    """
    The result of executing a tool.

    The loop treats tool execution as opaque; it only records which
    tools ran and what they returned.
    """
    tool_call_id: str
    content: str
    tool_name: str = ""
    success: bool = True
    error: str | None = None


@dataclass(frozen=True)
class IterationRecord:
    """
    Immutable snapshot of one completed generation call.

    index is 1-based and counts iterations over the whole run, including
    those later folded into a summary.
    """
    index: int
    prompt: str
    text: str
    tool_calls: tuple[ToolCall, ...] = ()
    tool_results: tuple[ToolResult, ...] = ()
    usage: Usage = field(default_factory=Usage)
    duration: float = 0.0

    def results_for(self, tool_name: str) -> list[ToolResult]:
        return [r for r in self.tool_results if r.tool_name == tool_name]


@dataclass(frozen=True)
class SummaryRecord:
    """Compressed stand-in for iterations first_iteration..last_iteration."""
    text: str
    first_iteration: int
    last_iteration: int
    usage: Usage = field(default_factory=Usage)
    changed_files: tuple[str, ...] = ()

    @property
    def iterations_covered(self) -> int:
        return self.last_iteration - self.first_iteration + 1


@dataclass
class LoopHistory:
    """
    Ordered iteration history with at most one leading summary.

    Compaction replaces the summary outright and trims the verbatim
    records to the most recent ones; summaries are never chained.
    """
    summary: SummaryRecord | None = None
    records: list[IterationRecord] = field(default_factory=list)

    def append(self, record: IterationRecord) -> None:
        self.records.append(record)

    def compact(self, summary: SummaryRecord, keep: int) -> list[IterationRecord]:
        """
        Install a new summary and keep only the last `keep` records.

        Returns the records that were folded into the summary.
        """
        if keep > 0:
            folded, kept = self.records[:-keep], self.records[-keep:]
        else:
            folded, kept = list(self.records), []
        self.summary = summary
        self.records = kept
        return folded

    @property
    def total_iterations(self) -> int:
        covered = self.summary.iterations_covered if self.summary else 0
        return covered + len(self.records)

    @property
    def latest(self) -> IterationRecord | None:
        return self.records[-1] if self.records else None

    def __len__(self) -> int:
        return len(self.records) + (1 if self.summary else 0)


class CompletionReason(str, Enum):
    """Why a run terminated."""
    VERIFIED = "verified"
    MAX_ITERATIONS = "max-iterations"
    ABORTED = "aborted"


class LoopStatus(str, Enum):
    """Lifecycle states of one loop instance."""
    IDLE = "idle"
    RUNNING = "running"
    VERIFYING = "verifying"
    COMPLETED = "completed"
    STOPPED = "stopped"
    ABORTED = "aborted"

    @property
    def is_terminal(self) -> bool:
        return self in (LoopStatus.COMPLETED, LoopStatus.STOPPED, LoopStatus.ABORTED)


@dataclass
class LoopResult:
    """Terminal artifact of a run. Produced exactly once."""
    text: str
    iterations: int
    completion_reason: CompletionReason
    history: LoopHistory
    total_usage: Usage
    reason: str | None = None
    last_record: IterationRecord | None = None


@dataclass
class TruncationEvent:
    """
    Records when iterations were dropped from a request without summary.

    This makes information loss observable when summarization is
    disabled.
    """
    iteration: int
    iterations_dropped: int
    tokens_dropped: int
    reason: str = "context_budget_exceeded"
