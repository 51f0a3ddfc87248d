"""
Configuration for the iteration loop.

All configuration can be loaded from environment variables. This keeps
the loop usable across different OpenAI-compatible backends (vLLM,
Ollama, Venice, OpenAI) without hardcoding any specific values.

The context budget is configurable, and it is best-effort: when even
the minimum content does not fit, the request is sent anyway and the
backend's own error surfaces.
"""

import os
from collections.abc import Sequence
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from ralphloop.stop_conditions import StopCondition
    from ralphloop.tools import ToolRegistry
    from ralphloop.verification import VerifyCompletion


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes", "on")


@dataclass
class LLMConfig:
    """Configuration for the LLM client."""
    base_url: str
    api_key: str
    model: str
    temperature: float = 0.7
    max_tokens: int = 4096
    max_tool_rounds: int = 20

    @classmethod
    def from_env(cls) -> "LLMConfig":
        """Load configuration from environment variables."""
        return cls(
            base_url=os.getenv("LLM_BASE_URL", "http://localhost:8000/v1"),
            api_key=os.getenv("LLM_API_KEY", ""),
            model=os.getenv("LLM_MODEL", ""),
            temperature=float(os.getenv("LLM_TEMPERATURE", "0.7")),
            max_tokens=int(os.getenv("LLM_MAX_TOKENS", "4096")),
            max_tool_rounds=int(os.getenv("LLM_MAX_TOOL_ROUNDS", "20")),
        )


@dataclass(frozen=True)
class ContextConfig:
    """
    Configuration for context budget management.

    max_context_tokens is the ceiling for one generation request. When
    exceeded, older iterations are summarized (or, with summarization
    disabled, dropped from the request). The most recent
    recent_iterations_to_keep iterations are always sent verbatim.

    The three character budgets cap high-volume content classes so a
    single large tool result cannot alone blow the token budget.

    Note: tokens are approximated as chars/4. The budget is an estimate,
    not an exact tokenizer count.
    """
    max_context_tokens: int = 180_000
    enable_summarization: bool = True
    recent_iterations_to_keep: int = 2
    chars_per_token: float = 4.0
    max_file_chars: int = 30_000
    change_log_budget: int = 8_000
    file_context_budget: int = 60_000
    max_summary_chars: int = 4_000
    file_read_tools: frozenset[str] = frozenset({"read_file", "readFile", "Read", "fs_read_file"})
    file_write_tools: frozenset[str] = frozenset({"write_file", "writeFile", "edit_file", "editFile", "Edit", "Write"})

    @classmethod
    def from_env(cls) -> "ContextConfig":
        """Load configuration from environment variables."""
        return cls(
            max_context_tokens=int(os.getenv("CONTEXT_MAX_TOKENS", "180000")),
            enable_summarization=_env_bool("CONTEXT_ENABLE_SUMMARIZATION", "true"),
            recent_iterations_to_keep=int(os.getenv("CONTEXT_RECENT_ITERATIONS", "2")),
            chars_per_token=float(os.getenv("CONTEXT_CHARS_PER_TOKEN", "4.0")),
            max_file_chars=int(os.getenv("CONTEXT_MAX_FILE_CHARS", "30000")),
            change_log_budget=int(os.getenv("CONTEXT_CHANGE_LOG_BUDGET", "8000")),
            file_context_budget=int(os.getenv("CONTEXT_FILE_CONTEXT_BUDGET", "60000")),
            max_summary_chars=int(os.getenv("CONTEXT_MAX_SUMMARY_CHARS", "4000")),
        )


class TieBreak(str, Enum):
    """Which outcome wins when verification passes on the same iteration a stop condition fires."""
    VERIFICATION = "verification"
    STOP_CONDITION = "stop_condition"


@dataclass(frozen=True)
class LoopConfig:
    """
    Configuration for one loop instance.

    max_iterations is the safety net used when no stop condition is
    supplied: a verification function that never completes must still
    terminate.
    """
    instructions: str = ""
    tools: "ToolRegistry | None" = None
    stop_when: "Sequence[StopCondition]" = ()
    verify_completion: "VerifyCompletion | None" = None
    context: ContextConfig = field(default_factory=ContextConfig)
    max_iterations: int = 10
    tie_break: TieBreak = TieBreak.VERIFICATION
    continue_message: str = "Continue working on the task."

    @classmethod
    def from_env(cls, **overrides: object) -> "LoopConfig":
        """Load configuration from environment variables; keyword overrides win."""
        values: dict[str, object] = {
            "context": ContextConfig.from_env(),
            "max_iterations": int(os.getenv("LOOP_MAX_ITERATIONS", "10")),
            "tie_break": TieBreak(os.getenv("LOOP_TIE_BREAK", TieBreak.VERIFICATION.value)),
        }
        values.update(overrides)
        return cls(**values)  # type: ignore[arg-type]
