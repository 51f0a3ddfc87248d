"""
Stop-Condition Evaluator - resource limits that end a run.

A stop condition is a pure predicate over LoopState. Conditions are
evaluated fresh after every iteration against the then-current totals
and are OR-combined: any one firing stops the loop, independent of
whether the task has been verified.

Conditions must be monotonic in iteration count and usage. A condition
that could flip from true back to false as usage grows is a caller
error and is not handled specially.
"""

import logging
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field

from ralphloop.usage import PriceTable, TokenRates, Usage, calculate_cost

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class LoopState:
    """What a stop condition can see."""
    iteration: int
    usage: Usage = field(default_factory=Usage)


StopCondition = Callable[[LoopState], bool]


def iteration_count_is(max_iterations: int) -> StopCondition:
    """Stop once max_iterations iterations have completed."""
    def condition(state: LoopState) -> bool:
        return state.iteration >= max_iterations
    condition.__name__ = f"iteration_count_is({max_iterations})"
    return condition


def token_count_is(max_tokens: int) -> StopCondition:
    """Stop once cumulative input + output tokens reach max_tokens."""
    def condition(state: LoopState) -> bool:
        return state.usage.input_tokens + state.usage.output_tokens >= max_tokens
    condition.__name__ = f"token_count_is({max_tokens})"
    return condition


def input_token_count_is(max_tokens: int) -> StopCondition:
    def condition(state: LoopState) -> bool:
        return state.usage.input_tokens >= max_tokens
    condition.__name__ = f"input_token_count_is({max_tokens})"
    return condition


def output_token_count_is(max_tokens: int) -> StopCondition:
    def condition(state: LoopState) -> bool:
        return state.usage.output_tokens >= max_tokens
    condition.__name__ = f"output_token_count_is({max_tokens})"
    return condition


def cost_is(
    max_cost: float,
    rates: TokenRates | None = None,
    model: str | None = None,
    price_table: PriceTable | None = None,
) -> StopCondition:
    """
    Stop once the cumulative cost reaches max_cost (USD).

    Either pass explicit rates, or a model name together with a
    caller-supplied price table. The rates are resolved once, here, so
    a missing model fails at configuration time rather than mid-run.
    """
    if rates is None:
        if model is None or price_table is None:
            raise ValueError("cost_is requires either rates or both model and price_table")
        rates = price_table.rates_for(model)
    resolved = rates

    def condition(state: LoopState) -> bool:
        return calculate_cost(state.usage, resolved) >= max_cost
    condition.__name__ = f"cost_is({max_cost})"
    return condition


def any_stop_condition(conditions: Iterable[StopCondition], state: LoopState) -> StopCondition | None:
    """
    Evaluate conditions in order; return the first one that holds.

    Every condition sees the same state, so the order only affects which
    one is reported.
    """
    for condition in conditions:
        if condition(state):
            logger.info(
                f"Stop condition {getattr(condition, '__name__', condition)!s} fired "
                f"at iteration {state.iteration}"
            )
            return condition
    return None
