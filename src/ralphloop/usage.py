"""
Usage Accumulator - token and cost bookkeeping.

Every generation call reports a Usage snapshot. The loop folds those
snapshots into a running total with merge_usage(), which is plain
field-wise summation: associative and commutative, so usage from nested
calls (a verification pass that itself calls the engine) composes the
same way regardless of fold order.

Pricing is never built in. Callers inject TokenRates, either directly
or through a PriceTable keyed by model name.
"""

from collections.abc import Iterable, Mapping
from dataclasses import dataclass, fields
from typing import Any

TOKENS_PER_PRICE_UNIT = 1_000_000


def _add_optional(a: int | None, b: int | None) -> int | None:
    if a is None and b is None:
        return None
    return (a or 0) + (b or 0)


@dataclass(frozen=True)
class Usage:
    """
    Token usage for one call, or a cumulative total.

    The cache breakdown is optional: backends that do not report it
    leave it as None, and None + None stays None.
    """
    input_tokens: int = 0
    output_tokens: int = 0
    total_tokens: int = 0
    cache_read_tokens: int | None = None
    cache_write_tokens: int | None = None

    def __add__(self, other: "Usage") -> "Usage":
        if not isinstance(other, Usage):
            return NotImplemented
        return merge_usage(self, other)

    @classmethod
    def from_counts(
        cls,
        input_tokens: int,
        output_tokens: int,
        cache_read_tokens: int | None = None,
        cache_write_tokens: int | None = None,
    ) -> "Usage":
        """Build a snapshot whose total is input + output."""
        return cls(
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            total_tokens=input_tokens + output_tokens,
            cache_read_tokens=cache_read_tokens,
            cache_write_tokens=cache_write_tokens,
        )

    @classmethod
    def from_api_usage(cls, data: Mapping[str, Any] | None) -> "Usage":
        """Parse the `usage` object of an OpenAI-compatible response."""
        if not data:
            return cls()
        input_tokens = int(data.get("prompt_tokens") or 0)
        output_tokens = int(data.get("completion_tokens") or 0)
        total = data.get("total_tokens")
        details = data.get("prompt_tokens_details") or {}
        cache_read = details.get("cached_tokens")
        cache_write = data.get("cache_creation_input_tokens")
        return cls(
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            total_tokens=int(total) if total is not None else input_tokens + output_tokens,
            cache_read_tokens=int(cache_read) if cache_read is not None else None,
            cache_write_tokens=int(cache_write) if cache_write is not None else None,
        )

    def to_dict(self) -> dict[str, int]:
        return {f.name: getattr(self, f.name) for f in fields(self) if getattr(self, f.name) is not None}


def merge_usage(a: Usage, b: Usage) -> Usage:
    """Field-wise sum of two usage records."""
    return Usage(
        input_tokens=a.input_tokens + b.input_tokens,
        output_tokens=a.output_tokens + b.output_tokens,
        total_tokens=a.total_tokens + b.total_tokens,
        cache_read_tokens=_add_optional(a.cache_read_tokens, b.cache_read_tokens),
        cache_write_tokens=_add_optional(a.cache_write_tokens, b.cache_write_tokens),
    )


def sum_usage(records: Iterable[Usage]) -> Usage:
    """Fold any number of usage records into one total."""
    total = Usage()
    for record in records:
        total = merge_usage(total, record)
    return total


@dataclass(frozen=True)
class TokenRates:
    """Prices in USD per million tokens."""
    input: float
    output: float
    cache_read: float | None = None
    cache_write: float | None = None


class PriceTable:
    """Caller-supplied mapping of model name to TokenRates."""

    def __init__(self, rates: Mapping[str, TokenRates] | None = None) -> None:
        self._rates: dict[str, TokenRates] = dict(rates or {})

    def register(self, model: str, rates: TokenRates) -> None:
        self._rates[model] = rates

    def rates_for(self, model: str) -> TokenRates:
        """
        Look up rates for a model.

        Provider-prefixed names ("anthropic/some-model") fall back to the
        bare model name.
        """
        if model in self._rates:
            return self._rates[model]
        bare = model.split("/", 1)[-1]
        if bare in self._rates:
            return self._rates[bare]
        raise KeyError(f"No pricing registered for model: {model}")

    def __contains__(self, model: object) -> bool:
        if not isinstance(model, str):
            return False
        try:
            self.rates_for(model)
        except KeyError:
            return False
        return True


def calculate_cost(usage: Usage, rates: TokenRates) -> float:
    """
    Cost of a usage record in USD.

    Cached input tokens are billed at the cache rates when both the
    count and the rate are known; the remainder of input tokens is
    billed at the normal input rate.
    """
    billable_input = usage.input_tokens
    cost = 0.0
    if usage.cache_read_tokens and rates.cache_read is not None:
        billable_input -= usage.cache_read_tokens
        cost += usage.cache_read_tokens * rates.cache_read
    if usage.cache_write_tokens and rates.cache_write is not None:
        billable_input -= usage.cache_write_tokens
        cost += usage.cache_write_tokens * rates.cache_write
    cost += max(billable_input, 0) * rates.input
    cost += usage.output_tokens * rates.output
    return cost / TOKENS_PER_PRICE_UNIT


def format_usage_report(usage: Usage, rates: TokenRates | None = None, label: str = "Usage") -> str:
    """One-line human-readable usage summary for logs."""
    parts = [
        f"in={usage.input_tokens}",
        f"out={usage.output_tokens}",
        f"total={usage.total_tokens}",
    ]
    if usage.cache_read_tokens is not None:
        parts.append(f"cache_read={usage.cache_read_tokens}")
    if usage.cache_write_tokens is not None:
        parts.append(f"cache_write={usage.cache_write_tokens}")
    if rates is not None:
        parts.append(f"cost=${calculate_cost(usage, rates):.4f}")
    return f"{label}: " + " ".join(parts)
