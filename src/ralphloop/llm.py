"""
LLM Client - Abstraction over OpenAI-compatible backends.

This client works with any OpenAI-compatible API:
- vLLM (http://localhost:8000/v1)
- Ollama (http://localhost:11434/v1)
- Venice.ai
- OpenAI itself

The abstraction is intentionally thin: it makes the backend swappable
via configuration and reports token usage for every call.

Includes timeout and retry logic for resilience against API hangs, and
an SSE streaming mode that checks the abort signal between chunks.
"""

import json
import logging
import time
from collections.abc import Iterator
from dataclasses import dataclass
from typing import Any

import httpx

from ralphloop.abort import AbortSignal, GenerationCancelled
from ralphloop.config import LLMConfig
from ralphloop.types import ToolCall
from ralphloop.usage import Usage

logger = logging.getLogger(__name__)

# Default timeout configuration (in seconds)
DEFAULT_CONNECT_TIMEOUT = 10.0
DEFAULT_READ_TIMEOUT = 180.0  # LLM responses can take a while
DEFAULT_WRITE_TIMEOUT = 10.0
DEFAULT_POOL_TIMEOUT = 10.0

# Retry configuration
DEFAULT_MAX_RETRIES = 3
DEFAULT_RETRY_DELAY = 60.0

SSE_DATA_PREFIX = "data:"
SSE_DONE = "[DONE]"


class LLMError(Exception):
    """Error from the LLM client."""
    pass


class LLMClient:
    """
    Synchronous client for OpenAI-compatible LLM APIs.

    Retries timeouts, 429 (honouring Retry-After), 503 and transport
    errors. Any other HTTP error is raised immediately as LLMError.
    """

    def __init__(
        self,
        config: LLMConfig | None = None,
        max_retries: int = DEFAULT_MAX_RETRIES,
        retry_delay: float = DEFAULT_RETRY_DELAY,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        """Initialize the client with configuration.

        Args:
            config: LLM configuration (model, API key, etc.)
            max_retries: Maximum number of retries for timeout/network errors
            retry_delay: Seconds to wait before retrying after a timeout
            transport: Optional httpx transport (used to mock the backend)
        """
        self.config = config or LLMConfig.from_env()
        self.max_retries = max_retries
        self.retry_delay = retry_delay

        timeout = httpx.Timeout(
            connect=DEFAULT_CONNECT_TIMEOUT,
            read=DEFAULT_READ_TIMEOUT,
            write=DEFAULT_WRITE_TIMEOUT,
            pool=DEFAULT_POOL_TIMEOUT,
        )

        self._client = httpx.Client(
            base_url=self.config.base_url,
            headers={
                "Authorization": f"Bearer {self.config.api_key}",
                "Content-Type": "application/json",
            },
            timeout=timeout,
            transport=transport,
        )

    def _build_payload(
        self,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]] | None,
        tool_choice: str | dict[str, Any] | None,
    ) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "model": self.config.model,
            "messages": messages,
            "temperature": self.config.temperature,
            "max_tokens": self.config.max_tokens,
        }
        if tools:
            payload["tools"] = tools
            if tool_choice:
                payload["tool_choice"] = tool_choice
        return payload

    def _wait(self, seconds: float, abort_signal: AbortSignal | None) -> None:
        if abort_signal is None:
            time.sleep(seconds)
            return
        if abort_signal.wait(seconds):
            raise GenerationCancelled(abort_signal.reason or "aborted")

    def chat(
        self,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]] | None = None,
        tool_choice: str | dict[str, Any] | None = None,
        abort_signal: AbortSignal | None = None,
    ) -> "ChatResponse":
        """
        Send a chat completion request with automatic retry on timeout.

        Args:
            messages: The conversation history in OpenAI format
            tools: Optional list of tool definitions
            tool_choice: Optional tool choice constraint
            abort_signal: Checked before each attempt and during retry waits

        Returns:
            ChatResponse with the assistant's response

        Raises:
            LLMError: If all retries are exhausted or a non-retryable error occurs
            GenerationCancelled: If the abort signal fires
        """
        payload = self._build_payload(messages, tools, tool_choice)
        last_error: Exception | None = None

        for attempt in range(self.max_retries + 1):
            if attempt > 0:
                logger.info(f"Retry attempt {attempt}/{self.max_retries} after {self.retry_delay}s delay...")
                self._wait(self.retry_delay, abort_signal)
            if abort_signal is not None:
                abort_signal.raise_if_aborted()

            logger.debug(f"Sending chat request with {len(messages)} messages (attempt {attempt + 1})")

            try:
                response = self._client.post("/chat/completions", json=payload)
                response.raise_for_status()
                return ChatResponse.from_api_response(response.json())

            except httpx.TimeoutException as e:
                logger.warning(f"Request timed out (attempt {attempt + 1}): {e}")
                last_error = e
                continue

            except httpx.HTTPStatusError as e:
                if e.response.status_code == 429:
                    self._wait(self._retry_after(e.response), abort_signal)
                    last_error = e
                    continue

                if e.response.status_code == 503:
                    logger.warning(f"Service unavailable (attempt {attempt + 1}): {e}")
                    last_error = e
                    continue

                logger.error(f"HTTP error: {e.response.status_code} - {e.response.text}")
                raise LLMError(f"HTTP {e.response.status_code}: {e.response.text}") from e

            except httpx.RequestError as e:
                logger.warning(f"Request error (attempt {attempt + 1}): {e}")
                last_error = e
                continue

        logger.error(f"All {self.max_retries + 1} attempts failed. Last error: {last_error}")
        raise LLMError(f"Request failed after {self.max_retries + 1} attempts: {last_error}") from last_error

    def _retry_after(self, response: httpx.Response) -> float:
        retry_after = response.headers.get("Retry-After")
        if retry_after:
            try:
                wait_time = float(retry_after)
                logger.warning(f"Rate limited. Waiting {wait_time}s (from Retry-After header)")
                return wait_time
            except ValueError:
                pass
        logger.warning(f"Rate limited. Waiting {self.retry_delay}s")
        return self.retry_delay

    def chat_stream(
        self,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]] | None = None,
        abort_signal: AbortSignal | None = None,
    ) -> Iterator["StreamChunk"]:
        """
        Stream a chat completion as server-sent events.

        Streaming is not retried: once chunks have been surfaced to the
        caller a retry would duplicate output. The abort signal is
        checked between chunks; when it fires the response is closed and
        GenerationCancelled is raised.
        """
        payload = self._build_payload(messages, tools, None)
        payload["stream"] = True
        payload["stream_options"] = {"include_usage": True}

        if abort_signal is not None:
            abort_signal.raise_if_aborted()

        try:
            with self._client.stream("POST", "/chat/completions", json=payload) as response:
                if response.is_error:
                    response.read()
                    logger.error(f"HTTP error: {response.status_code} - {response.text}")
                    raise LLMError(f"HTTP {response.status_code}: {response.text}")
                for line in response.iter_lines():
                    if abort_signal is not None:
                        abort_signal.raise_if_aborted()
                    chunk = StreamChunk.from_sse_line(line)
                    if chunk is None:
                        continue
                    if chunk.done:
                        break
                    yield chunk
        except httpx.RequestError as e:
            logger.error(f"Streaming request failed: {e}")
            raise LLMError(f"Streaming request failed: {e}") from e

    def close(self) -> None:
        """Close the HTTP client."""
        self._client.close()

    def __enter__(self) -> "LLMClient":
        return self

    def __exit__(self, *args: Any) -> None:
        self.close()


class ChatResponse:
    """
    Response from a chat completion request.

    This wraps the API response and provides convenient access to
    the content, any tool calls, and the reported token usage.
    """

    def __init__(
        self,
        content: str | None,
        tool_calls: list[ToolCall] | None,
        finish_reason: str,
        raw_response: dict[str, Any],
        usage: Usage | None = None,
    ) -> None:
        self.content = content or ""
        self.tool_calls = tool_calls or []
        self.finish_reason = finish_reason
        self.raw_response = raw_response
        self.usage = usage or Usage()

    @classmethod
    def from_api_response(cls, data: dict[str, Any]) -> "ChatResponse":
        """Parse an API response into a ChatResponse."""
        choice = data["choices"][0]
        message = choice["message"]

        content = message.get("content")
        finish_reason = choice.get("finish_reason") or "stop"

        tool_calls: list[ToolCall] = []
        for tc in message.get("tool_calls") or []:
            try:
                arguments = json.loads(tc["function"]["arguments"] or "{}")
            except json.JSONDecodeError:
                arguments = {"raw": tc["function"]["arguments"]}
            if not isinstance(arguments, dict):
                arguments = {"value": arguments}

            tool_calls.append(ToolCall(
                id=tc["id"],
                name=tc["function"]["name"],
                arguments=arguments,
            ))

        return cls(
            content=content,
            tool_calls=tool_calls,
            finish_reason=finish_reason,
            raw_response=data,
            usage=Usage.from_api_usage(data.get("usage")),
        )

    @property
    def has_tool_calls(self) -> bool:
        """Check if the response includes tool calls."""
        return len(self.tool_calls) > 0

    @property
    def is_complete(self) -> bool:
        """Check if this is a complete response (no tool calls pending)."""
        return not self.has_tool_calls and self.finish_reason == "stop"


@dataclass(frozen=True)
class StreamChunk:
    """One parsed server-sent event from a streaming completion."""
    delta: str = ""
    usage: Usage | None = None
    done: bool = False

    @classmethod
    def from_sse_line(cls, line: str) -> "StreamChunk | None":
        """Parse one SSE line; blank lines, comments and malformed data yield None."""
        line = line.strip()
        if not line.startswith(SSE_DATA_PREFIX):
            return None
        data = line[len(SSE_DATA_PREFIX):].strip()
        if data == SSE_DONE:
            return cls(done=True)
        try:
            event = json.loads(data)
        except json.JSONDecodeError:
            logger.debug(f"Skipping malformed SSE payload: {data[:100]}")
            return None

        delta = ""
        choices = event.get("choices") or []
        if choices:
            delta = (choices[0].get("delta") or {}).get("content") or ""
        usage = Usage.from_api_usage(event["usage"]) if event.get("usage") else None
        return cls(delta=delta, usage=usage)
