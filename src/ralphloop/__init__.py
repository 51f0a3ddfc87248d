"""
ralphloop - a verification-gated iteration loop for LLM agents.

A single generation call rarely finishes a real task. The loop keeps
calling the model until an independent check says the work is done:

1. Verification gates completion: the task ends when a verification
   function says so, and its feedback drives the next iteration
2. Stop conditions bound the run: iteration, token and cost ceilings
3. Context stays within budget: older iterations are summarized, the
   most recent ones are kept verbatim
4. Cancellation is cooperative: an abort yields a result, not an error
"""

__version__ = "0.1.0"

from ralphloop.abort import AbortSignal, GenerationCancelled
from ralphloop.config import ContextConfig, LLMConfig, LoopConfig, TieBreak
from ralphloop.context import ContextBudgetManager
from ralphloop.engine import ChatEngine, GenerationEngine, GenerationRequest, GenerationResult
from ralphloop.llm import LLMClient, LLMError
from ralphloop.loop import (
    AgentLoop,
    ContextSummarizedEvent,
    IterationEndEvent,
    IterationStartEvent,
    LoopHooks,
    LoopStateError,
)
from ralphloop.memory import Summarizer
from ralphloop.session import Session
from ralphloop.simulator import ScriptedEngine
from ralphloop.stop_conditions import (
    LoopState,
    cost_is,
    input_token_count_is,
    iteration_count_is,
    output_token_count_is,
    token_count_is,
)
from ralphloop.streaming import LoopStream
from ralphloop.tools import Tool, ToolRegistry, create_mock_tools
from ralphloop.types import (
    CompletionReason,
    IterationRecord,
    LoopHistory,
    LoopResult,
    LoopStatus,
    SummaryRecord,
)
from ralphloop.usage import PriceTable, TokenRates, Usage, calculate_cost, merge_usage
from ralphloop.verification import LLMJudge, VerifyContext, VerifyResult, text_contains, tool_was_called

__all__ = [
    "AgentLoop",
    "LoopHooks",
    "LoopStateError",
    "IterationStartEvent",
    "IterationEndEvent",
    "ContextSummarizedEvent",
    "LoopStream",
    "AbortSignal",
    "GenerationCancelled",
    "LLMConfig",
    "ContextConfig",
    "LoopConfig",
    "TieBreak",
    "ContextBudgetManager",
    "Summarizer",
    "GenerationEngine",
    "GenerationRequest",
    "GenerationResult",
    "ChatEngine",
    "ScriptedEngine",
    "LLMClient",
    "LLMError",
    "Session",
    "LoopState",
    "iteration_count_is",
    "token_count_is",
    "input_token_count_is",
    "output_token_count_is",
    "cost_is",
    "Tool",
    "ToolRegistry",
    "create_mock_tools",
    "CompletionReason",
    "IterationRecord",
    "LoopHistory",
    "LoopResult",
    "LoopStatus",
    "SummaryRecord",
    "Usage",
    "TokenRates",
    "PriceTable",
    "calculate_cost",
    "merge_usage",
    "VerifyContext",
    "VerifyResult",
    "LLMJudge",
    "tool_was_called",
    "text_contains",
]
