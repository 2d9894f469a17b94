"""
Error Taxonomy
==============

Every failure that can reach a caller is an OrchestratorError with a stable
`kind` string. The message processor attaches the failing stage name and
turns the error into the wire envelope with `to_dict()`.

    kind                    raised by                       handling
    ----------------------  ------------------------------  -----------------------------
    validation_error        request parsing/validation      fatal, reported verbatim
    configuration_error     router, credential store        fatal
    provider_error          provider adapters               backoff retry, then fatal
    context_overflow        provider adapters               retried with less history
    tool_execution_error    tool executor                   retryable ones drive the loop
    timeout                 message processor deadline      partial results returned
    internal_error          anything unexpected in a stage  fatal
"""

from typing import Any


class OrchestratorError(Exception):
    """Base exception for pipeline errors."""

    kind = "internal_error"

    def __init__(
        self,
        message: str,
        *,
        stage: str | None = None,
        details: dict[str, Any] | None = None
    ):
        super().__init__(message)
        self.message = message
        self.stage = stage
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        """Serialize for the response envelope."""
        data: dict[str, Any] = {"kind": self.kind, "message": self.message}
        if self.stage:
            data["stage"] = self.stage
        if self.details:
            data["details"] = self.details
        return data


class ValidationError(OrchestratorError):
    """The request does not have a valid shape."""

    kind = "validation_error"

    def __init__(self, errors: list[dict[str, Any]], *, stage: str | None = None):
        summary = "; ".join(
            f"{'.'.join(str(p) for p in e.get('path', [])) or '<root>'}: {e.get('message')}"
            for e in errors
        )
        super().__init__(f"Invalid request: {summary}", stage=stage, details={"errors": errors})
        self.errors = errors


class ConfigurationError(OrchestratorError):
    """Missing or disabled agent, provider, or credential configuration."""

    kind = "configuration_error"


class ProviderError(OrchestratorError):
    """An upstream model call failed."""

    kind = "provider_error"

    def __init__(
        self,
        message: str,
        *,
        provider: str | None = None,
        status_code: int | None = None,
        retryable: bool = False,
        stage: str | None = None
    ):
        details: dict[str, Any] = {"retryable": retryable}
        if provider:
            details["provider"] = provider
        if status_code is not None:
            details["status_code"] = status_code
        super().__init__(message, stage=stage, details=details)
        self.provider = provider
        self.status_code = status_code
        self.retryable = retryable


class ContextOverflowError(OrchestratorError):
    """The assembled prompt exceeds the model's context window."""

    kind = "context_overflow"


class ToolExecutionError(OrchestratorError):
    """A tool call failed; `retryable` decides whether the model is asked to retry."""

    kind = "tool_execution_error"

    def __init__(
        self,
        message: str,
        *,
        tool_name: str | None = None,
        retryable: bool = False,
        stage: str | None = None
    ):
        super().__init__(
            message,
            stage=stage,
            details={"tool_name": tool_name, "retryable": retryable}
        )
        self.tool_name = tool_name
        self.retryable = retryable


class PipelineTimeoutError(OrchestratorError, TimeoutError):
    """The turn exceeded its deadline."""

    kind = "timeout"
