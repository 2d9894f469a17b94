"""
HTTP Tool Backend
=================

ToolBackend over a remote tool service (the integration layer that holds
OAuth tokens for email, calendar, search and so on).

Endpoints:
    GET  {base_url}/agents/{agent_id}/tools?user_id=...
         -> {"tools": [{"name", "description", "parameters"}, ...]}
    POST {base_url}/tools/{tool_name}/dispatch
         body {"arguments": {...}, "auth_context": {...}}
         -> {"success": bool, "payload": ..., "error": str, "error_code": str}

HTTP failures are mapped onto ToolErrorCode values so the executor can
classify them like in-process failures.
"""

from typing import Any

import httpx

from orchestrator.tools import ToolBackend, ToolDefinition, ToolErrorCode, ToolOutcome
from orchestrator.utils.logger import Logger

logger = Logger("HttpTools")

_STATUS_CODES = {
    400: ToolErrorCode.INVALID_ARGUMENTS,
    401: ToolErrorCode.AUTHENTICATION,
    403: ToolErrorCode.PERMISSION_DENIED,
    404: ToolErrorCode.UNKNOWN_TOOL,
    408: ToolErrorCode.TIMEOUT,
    422: ToolErrorCode.INVALID_ARGUMENTS,
    429: ToolErrorCode.RATE_LIMITED,
}


def error_code_for_status(status_code: int) -> str:
    if status_code in _STATUS_CODES:
        return _STATUS_CODES[status_code]
    return ToolErrorCode.UPSTREAM_ERROR


class HttpToolBackend(ToolBackend):
    """
    Example:
        backend = HttpToolBackend("https://tools.internal", api_key="...")
        tools = await backend.list_tools("agent-1", "user-9")
        outcome = await backend.dispatch("gmail_send_email", {...}, {"agent_id": "agent-1"})
    """

    def __init__(
        self,
        base_url: str,
        api_key: str | None = None,
        timeout_seconds: float = 20.0,
        client: httpx.AsyncClient | None = None
    ):
        self.base_url = base_url.rstrip("/")
        self.headers = {"Accept": "application/json"}
        if api_key:
            self.headers["Authorization"] = f"Bearer {api_key}"
        self.client = client or httpx.AsyncClient(timeout=timeout_seconds)

    async def list_tools(self, agent_id: str, user_id: str | None = None) -> list[ToolDefinition]:
        params = {"user_id": user_id} if user_id else None
        response = await self.client.get(
            f"{self.base_url}/agents/{agent_id}/tools",
            headers=self.headers,
            params=params,
        )
        response.raise_for_status()
        return [ToolDefinition.from_dict(t) for t in response.json().get("tools", [])]

    async def dispatch(
        self,
        tool_name: str,
        arguments: dict[str, Any],
        auth_context: dict[str, Any] | None = None
    ) -> ToolOutcome:
        try:
            response = await self.client.post(
                f"{self.base_url}/tools/{tool_name}/dispatch",
                headers=self.headers,
                json={"arguments": arguments, "auth_context": auth_context or {}},
            )
        except httpx.TimeoutException:
            return ToolOutcome(success=False, error=f"Tool '{tool_name}' timed out", error_code=ToolErrorCode.TIMEOUT)
        except httpx.HTTPError as e:
            return ToolOutcome(success=False, error=str(e), error_code=ToolErrorCode.UPSTREAM_ERROR)

        try:
            data = response.json()
        except ValueError:
            data = {}

        if response.status_code >= 400:
            logger.warning(f"Tool service error: {response.status_code}", {"tool": tool_name})
            return ToolOutcome(
                success=False,
                error=data.get("error") or f"HTTP {response.status_code}: {response.text[:200]}",
                error_code=data.get("error_code") or error_code_for_status(response.status_code),
            )

        return ToolOutcome(
            success=bool(data.get("success", True)),
            payload=data.get("payload"),
            error=data.get("error"),
            error_code=data.get("error_code"),
        )

    async def aclose(self) -> None:
        await self.client.aclose()
