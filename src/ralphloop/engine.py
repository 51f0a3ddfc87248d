"""
Generation Engine - the one external capability the loop drives.

The loop only depends on the GenerationEngine protocol: given
instructions, tools, prepared context and the current user turn, produce
an answer, possibly after invoking tools. It comes in a blocking mode
(generate) and a streaming mode (stream), and both honour the shared
abort signal.

ChatEngine is the concrete engine over an OpenAI-compatible LLMClient.
One generate() call may span several tool-calling rounds with the model;
together they form a single iteration of the loop.
"""

import json
import logging
from collections.abc import Iterator
from dataclasses import dataclass, field
from typing import Protocol

from ralphloop.abort import AbortSignal
from ralphloop.llm import LLMClient, StreamChunk
from ralphloop.tools import ToolRegistry
from ralphloop.types import Message, Role, ToolCall, ToolResult
from ralphloop.usage import Usage

logger = logging.getLogger(__name__)


@dataclass
class GenerationRequest:
    """Everything one generation call sees."""
    instructions: str
    prompt: str
    context: list[Message] = field(default_factory=list)
    tools: ToolRegistry | None = None

    def to_messages(self) -> list[Message]:
        """System instructions, then prepared context, then the current user turn."""
        messages: list[Message] = []
        if self.instructions:
            messages.append(Message(role=Role.SYSTEM, content=self.instructions))
        messages.extend(self.context)
        messages.append(Message(role=Role.USER, content=self.prompt))
        return messages


@dataclass
class GenerationResult:
    """Outcome of one generation call."""
    text: str
    tool_calls: list[ToolCall] = field(default_factory=list)
    tool_results: list[ToolResult] = field(default_factory=list)
    usage: Usage = field(default_factory=Usage)
    steps: int = 1


class GenerationEngine(Protocol):
    """Contract the loop consumes."""

    def generate(self, request: GenerationRequest, abort_signal: AbortSignal | None = None) -> GenerationResult: ...

    def stream(self, request: GenerationRequest, abort_signal: AbortSignal | None = None) -> Iterator[StreamChunk]: ...


class ChatEngine:
    """
    GenerationEngine over an OpenAI-compatible chat completions API.

    The abort signal is checked before every model round and before every
    tool execution; a cancelled call raises GenerationCancelled.
    """

    def __init__(self, llm: LLMClient, max_tool_rounds: int | None = None) -> None:
        self.llm = llm
        self.max_tool_rounds = max_tool_rounds or llm.config.max_tool_rounds

    def generate(self, request: GenerationRequest, abort_signal: AbortSignal | None = None) -> GenerationResult:
        messages = [m.to_dict() for m in request.to_messages()]
        tools = request.tools
        schemas = tools.get_schemas() if tools is not None and len(tools) > 0 else None

        usage = Usage()
        all_calls: list[ToolCall] = []
        all_results: list[ToolResult] = []
        text = ""

        for step in range(1, self.max_tool_rounds + 1):
            if abort_signal is not None:
                abort_signal.raise_if_aborted()

            response = self.llm.chat(messages, tools=schemas, abort_signal=abort_signal)
            usage = usage + response.usage
            text = response.content or text

            if not response.has_tool_calls or tools is None:
                return GenerationResult(
                    text=text,
                    tool_calls=all_calls,
                    tool_results=all_results,
                    usage=usage,
                    steps=step,
                )

            messages.append(Message(
                role=Role.ASSISTANT,
                content=response.content,
                tool_calls=[
                    {
                        "id": tc.id,
                        "type": "function",
                        "function": {
                            "name": tc.name,
                            "arguments": json.dumps(tc.arguments),
                        },
                    }
                    for tc in response.tool_calls
                ],
            ).to_dict())

            for tool_call in response.tool_calls:
                if abort_signal is not None:
                    abort_signal.raise_if_aborted()
                result = tools.execute(tool_call)
                all_calls.append(tool_call)
                all_results.append(result)
                messages.append(Message(
                    role=Role.TOOL,
                    content=result.content,
                    tool_call_id=tool_call.id,
                ).to_dict())

        logger.warning(f"Generation stopped after {self.max_tool_rounds} tool rounds")
        return GenerationResult(
            text=text,
            tool_calls=all_calls,
            tool_results=all_results,
            usage=usage,
            steps=self.max_tool_rounds,
        )

    def stream(self, request: GenerationRequest, abort_signal: AbortSignal | None = None) -> Iterator[StreamChunk]:
        """Stream the text of one call. Tools are not offered in streaming mode."""
        messages = [m.to_dict() for m in request.to_messages()]
        yield from self.llm.chat_stream(messages, abort_signal=abort_signal)
