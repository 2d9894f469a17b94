"""
Tools System
============

Tools are capabilities the model can call (send an email, search the web,
look up a calendar). Each tool has a name, a description and a JSON Schema
for its arguments; names are namespaced by provider prefix, e.g.
`gmail_send_email`.

The pipeline talks to tools only through the ToolBackend contract:

    list_tools(agent_id, user_id)                     -> [ToolDefinition]
    dispatch(tool_name, arguments, auth_context)      -> ToolOutcome

Two backends ship:
- ToolRegistry: in-process tools (MCPTool) with per-agent allowlists and
  JSON Schema argument validation (jsonschema)
- HttpToolBackend (tools.http_backend): a remote tool service over httpx

ToolOutcome carries an optional `error_code`; the tool executor uses it to
decide whether the model should retry with corrected arguments.
"""

import json
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable

from jsonschema import Draft7Validator

from orchestrator.utils.logger import Logger

logger = Logger("Tools")


class ToolErrorCode:
    """Error codes a backend may attach to a failed outcome."""
    INVALID_ARGUMENTS = "invalid_arguments"
    UPSTREAM_ERROR = "upstream_error"
    TIMEOUT = "timeout"
    PERMISSION_DENIED = "permission_denied"
    TOOL_DISABLED = "tool_disabled"
    UNKNOWN_TOOL = "unknown_tool"
    RATE_LIMITED = "rate_limited"
    AUTHENTICATION = "authentication"


@dataclass(frozen=True)
class ToolDefinition:
    """
    A tool as presented to the model.

    Attributes:
        name: Unique, provider-prefixed name
        description: What the tool does (shown to the model)
        parameters: JSON Schema for the arguments
    """
    name: str
    description: str
    parameters: dict = field(default_factory=lambda: {"type": "object", "properties": {}})

    @property
    def required(self) -> list[str]:
        return list(self.parameters.get("required", []))

    def to_openai_function(self) -> dict:
        """
        Convert to OpenAI function calling format.

        Returns:
            Dict in the format expected by OpenAI's API
        """
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.parameters,
            },
        }

    @classmethod
    def from_dict(cls, data: dict) -> "ToolDefinition":
        function = data.get("function", data)
        return cls(
            name=function["name"],
            description=function.get("description", ""),
            parameters=function.get("parameters") or function.get("input_schema") or {"type": "object", "properties": {}},
        )


@dataclass
class ToolOutcome:
    """
    Standardized result of a dispatch.

    Attributes:
        success: Whether the tool executed successfully
        payload: The result data (varies by tool)
        error: Error message if success is False
        error_code: Optional machine-readable failure class (ToolErrorCode)
    """
    success: bool
    payload: Any = None
    error: str | None = None
    error_code: str | None = None

    def to_dict(self) -> dict:
        return {
            "success": self.success,
            "payload": self.payload,
            "error": self.error,
            "error_code": self.error_code,
        }

    def to_message(self) -> str:
        """Format as a message for the LLM."""
        if self.success:
            return json.dumps(self.payload, default=str)
        return f"Error: {self.error}"


class ToolBackend:
    """Tool discovery and dispatch contract."""

    async def list_tools(self, agent_id: str, user_id: str | None = None) -> list[ToolDefinition]:  # pragma: no cover
        raise NotImplementedError

    async def dispatch(
        self,
        tool_name: str,
        arguments: dict[str, Any],
        auth_context: dict[str, Any] | None = None
    ) -> ToolOutcome:  # pragma: no cover
        raise NotImplementedError


ToolHandler = Callable[[dict, dict], Awaitable[ToolOutcome]]


@dataclass
class MCPTool:
    """
    An in-process tool.

    Attributes:
        definition: Name, description and parameter schema
        execute: Async handler `(arguments, auth_context) -> ToolOutcome`
        agents: Agents allowed to use the tool (None = every agent)
        enabled: Disabled tools are listed for nobody and refuse dispatch

    Example:
        async def send_email(params: dict, auth: dict) -> ToolOutcome:
            ...
            return ToolOutcome(success=True, payload={"message_id": "123"})

        tool = MCPTool(
            definition=ToolDefinition(
                name="email_send",
                description="Send an email",
                parameters={
                    "type": "object",
                    "properties": {
                        "recipient": {"type": "string", "description": "Email address"},
                        "subject": {"type": "string"},
                        "body": {"type": "string"}
                    },
                    "required": ["recipient", "subject"]
                }
            ),
            execute=send_email
        )
    """
    definition: ToolDefinition
    execute: ToolHandler
    agents: frozenset[str] | None = None
    enabled: bool = True

    @property
    def name(self) -> str:
        return self.definition.name

    def available_to(self, agent_id: str) -> bool:
        return self.enabled and (self.agents is None or agent_id in self.agents)


def validate_arguments(schema: dict, arguments: dict) -> list[str]:
    """
    Validate tool arguments against a JSON Schema.

    Missing required properties are reported as "missing required field: X"
    so the executor can back-fill or guide the model.

    Returns:
        Problem messages (empty when valid)
    """
    problems = []
    validator = Draft7Validator(schema)
    for error in sorted(validator.iter_errors(arguments), key=lambda e: list(e.path)):
        if error.validator == "required":
            present = error.instance if isinstance(error.instance, dict) else {}
            for name in error.validator_value:
                if name not in present:
                    problems.append(f"missing required field: {name}")
        else:
            location = ".".join(str(p) for p in error.path)
            problems.append(f"{location}: {error.message}" if location else error.message)
    return problems


class ToolRegistry(ToolBackend):
    """
    In-process ToolBackend.

    Example:
        registry = ToolRegistry()
        registry.register(my_tool)

        tools = await registry.list_tools("agent-1")
        outcome = await registry.dispatch("email_send", {"recipient": "a@b.c", "subject": "Hi"})
    """

    def __init__(self):
        self._tools: dict[str, MCPTool] = {}

    def register(self, tool: MCPTool) -> None:
        """
        Register a tool.

        Raises:
            ValueError: If a tool with this name already exists
        """
        if tool.name in self._tools:
            raise ValueError(f"Tool '{tool.name}' is already registered")
        self._tools[tool.name] = tool
        logger.debug(f"Registered tool: {tool.name}")

    def get(self, name: str) -> MCPTool | None:
        return self._tools.get(name)

    def set_enabled(self, name: str, enabled: bool) -> None:
        tool = self._tools.get(name)
        if tool is not None:
            tool.enabled = enabled

    def list_names(self) -> list[str]:
        return list(self._tools.keys())

    async def list_tools(self, agent_id: str, user_id: str | None = None) -> list[ToolDefinition]:
        return [t.definition for t in self._tools.values() if t.available_to(agent_id)]

    async def dispatch(
        self,
        tool_name: str,
        arguments: dict[str, Any],
        auth_context: dict[str, Any] | None = None
    ) -> ToolOutcome:
        """
        Validate and run a tool.

        Returns a failed outcome (never raises) for unknown, disabled,
        forbidden or invalid calls and for handler exceptions.
        """
        auth_context = auth_context or {}
        tool = self.get(tool_name)
        if tool is None:
            return ToolOutcome(success=False, error=f"Tool '{tool_name}' not found", error_code=ToolErrorCode.UNKNOWN_TOOL)
        if not tool.enabled:
            return ToolOutcome(success=False, error=f"Tool '{tool_name}' is disabled", error_code=ToolErrorCode.TOOL_DISABLED)

        agent_id = auth_context.get("agent_id")
        if tool.agents is not None and agent_id not in tool.agents:
            return ToolOutcome(
                success=False,
                error=f"Agent '{agent_id}' is not permitted to use '{tool_name}'",
                error_code=ToolErrorCode.PERMISSION_DENIED,
            )

        problems = validate_arguments(tool.definition.parameters, arguments)
        if problems:
            return ToolOutcome(success=False, error="; ".join(problems), error_code=ToolErrorCode.INVALID_ARGUMENTS)

        try:
            logger.info(f"Executing tool: {tool_name}")
            return await tool.execute(arguments, auth_context)
        except Exception as e:
            logger.error(f"Tool execution failed: {tool_name}", e)
            return ToolOutcome(success=False, error=str(e), error_code=ToolErrorCode.UPSTREAM_ERROR)


__all__ = [
    "MCPTool",
    "ToolBackend",
    "ToolDefinition",
    "ToolErrorCode",
    "ToolHandler",
    "ToolOutcome",
    "ToolRegistry",
    "validate_arguments",
]
