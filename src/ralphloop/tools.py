"""
Tool System - invocable capabilities handed to the generation engine.

Each tool exposes a declared JSON input schema and a handler. The loop
treats tool execution as opaque: it only passes the schemas to the
engine and observes the calls and results recorded in each
IterationRecord.
"""

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Protocol

from ralphloop.types import ToolCall, ToolResult

logger = logging.getLogger(__name__)


class ToolHandler(Protocol):
    """Protocol for tool handler functions."""
    def __call__(self, **kwargs: Any) -> Any: ...


def _stringify(value: Any) -> str:
    if isinstance(value, str):
        return value
    try:
        return json.dumps(value, ensure_ascii=False, default=str)
    except (TypeError, ValueError):
        return str(value)


@dataclass
class Tool:
    """
    Definition of a tool that the engine may call.

    Handlers may return a string or any JSON-serializable structure;
    structured results are serialized to JSON for the conversation.
    """
    name: str
    description: str
    parameters: dict[str, Any]
    handler: ToolHandler

    def to_openai_schema(self) -> dict[str, Any]:
        """Convert to OpenAI tool format."""
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.parameters,
            },
        }

    def execute(self, arguments: dict[str, Any], tool_call_id: str = "") -> ToolResult:
        """Run the handler, capturing failures as an unsuccessful result."""
        try:
            result = self.handler(**arguments)
            return ToolResult(
                tool_call_id=tool_call_id,
                content=_stringify(result),
                tool_name=self.name,
                success=True,
            )
        except Exception as e:
            logger.error(f"Tool {self.name} failed: {e}")
            return ToolResult(
                tool_call_id=tool_call_id,
                content=f"Error: {e}",
                tool_name=self.name,
                success=False,
                error=str(e),
            )


@dataclass
class ToolRegistry:
    """
    Registry of available tools.

    An empty registry is legal: answer-only tasks need no tools.
    """

    _tools: dict[str, Tool] = field(default_factory=dict)

    def register(self, tool: Tool) -> None:
        """Register a tool."""
        if tool.name in self._tools:
            logger.warning(f"Overwriting existing tool: {tool.name}")
        self._tools[tool.name] = tool
        logger.debug(f"Registered tool: {tool.name}")

    def register_function(
        self,
        name: str,
        description: str,
        parameters: dict[str, Any],
        handler: ToolHandler,
    ) -> Tool:
        """Convenience method to register a function as a tool."""
        tool = Tool(
            name=name,
            description=description,
            parameters=parameters,
            handler=handler,
        )
        self.register(tool)
        return tool

    def get(self, name: str) -> Tool | None:
        """Get a tool by name."""
        return self._tools.get(name)

    def execute(self, tool_call: ToolCall) -> ToolResult:
        """Execute a tool call by name."""
        tool = self._tools.get(tool_call.name)
        if tool is None:
            return ToolResult(
                tool_call_id=tool_call.id,
                content=f"Error: Unknown tool '{tool_call.name}'",
                tool_name=tool_call.name,
                success=False,
                error=f"Unknown tool: {tool_call.name}",
            )

        logger.info(f"Executing tool: {tool_call.name}")
        return tool.execute(tool_call.arguments, tool_call_id=tool_call.id)

    def get_schemas(self) -> list[dict[str, Any]]:
        """Get OpenAI-format schemas for all registered tools."""
        return [tool.to_openai_schema() for tool in self._tools.values()]

    @property
    def tool_names(self) -> list[str]:
        """List of registered tool names."""
        return list(self._tools.keys())

    def __len__(self) -> int:
        return len(self._tools)

    def __contains__(self, name: str) -> bool:
        return name in self._tools


def create_mock_tools() -> ToolRegistry:
    """
    Create a registry with mock file and shell tools.

    The handlers have no side effects; they only echo what they would
    have done. Useful for wiring up a loop before real tools exist.
    """
    registry = ToolRegistry()

    registry.register_function(
        name="read_file",
        description="Read the contents of a file",
        parameters={
            "type": "object",
            "properties": {
                "path": {
                    "type": "string",
                    "description": "The path to the file to read",
                },
            },
            "required": ["path"],
        },
        handler=lambda path: f"[MOCK] Would read file: {path}",
    )

    registry.register_function(
        name="write_file",
        description="Write content to a file",
        parameters={
            "type": "object",
            "properties": {
                "path": {
                    "type": "string",
                    "description": "The path to the file to write",
                },
                "content": {
                    "type": "string",
                    "description": "The content to write to the file",
                },
            },
            "required": ["path", "content"],
        },
        handler=lambda path, content: {"written": True, "path": path, "chars": len(content)},
    )

    registry.register_function(
        name="run_command",
        description="Run a shell command",
        parameters={
            "type": "object",
            "properties": {
                "command": {
                    "type": "string",
                    "description": "The command to run",
                },
            },
            "required": ["command"],
        },
        handler=lambda command: f"[MOCK] Would run: {command}",
    )

    return registry
