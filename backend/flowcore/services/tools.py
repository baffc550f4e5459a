"""
Tool executors - the side-effect boundary of the flow engine.

Every integration (registry lookups, signups, notifications) is reached
through `execute(tool_name, payload, context) -> ToolResult`. Failures are
returned as results, never raised, so the error policy can route them.
"""
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional, Protocol

import httpx

from ..core.config import settings
from ..core.exceptions import ToolNotFoundError
from ..models.flow import ToolResult

logger = logging.getLogger(__name__)

TOOL_NOT_FOUND = "TOOL_NOT_FOUND"
TIMEOUT = "TIMEOUT"
HTTP_ERROR = "HTTP_ERROR"
TOOL_EXCEPTION = "TOOL_EXCEPTION"

ToolHandler = Callable[[Dict[str, Any], Dict[str, Any]], Awaitable[ToolResult]]


class ToolExecutor(Protocol):
    """Contract between the executor and side-effecting integrations"""

    async def execute(self, tool_name: str, payload: Dict[str, Any], context: Dict[str, Any]) -> ToolResult:
        ...

    def tool_names(self) -> List[str]:
        ...


class ToolRegistry:
    """
    In-process tools registered by name.

    Usage:
        registry = ToolRegistry()

        @registry.tool("lookup_company")
        async def lookup_company(payload, context):
            return ToolResult.ok({"name": "..."})
    """

    def __init__(self):
        self._handlers: Dict[str, ToolHandler] = {}

    def register(self, name: str, handler: ToolHandler) -> None:
        if name in self._handlers:
            logger.warning(f"Tool '{name}' registered twice, replacing the previous handler")
        self._handlers[name] = handler

    def tool(self, name: str) -> Callable[[ToolHandler], ToolHandler]:
        """Decorator form of register()"""
        def decorator(handler: ToolHandler) -> ToolHandler:
            self.register(name, handler)
            return handler
        return decorator

    def get(self, name: str) -> ToolHandler:
        handler = self._handlers.get(name)
        if handler is None:
            raise ToolNotFoundError(name)
        return handler

    def tool_names(self) -> List[str]:
        return sorted(self._handlers)

    async def execute(self, tool_name: str, payload: Dict[str, Any], context: Dict[str, Any]) -> ToolResult:
        """
        Run a registered tool.

        Returns:
            The tool's ToolResult; unknown tools and raised exceptions become failed results
        """
        try:
            handler = self.get(tool_name)
        except ToolNotFoundError as e:
            logger.error(str(e))
            return ToolResult.fail(str(e), error_code=TOOL_NOT_FOUND)

        try:
            result = await handler(payload, context)
        except Exception as e:
            logger.exception(f"Tool '{tool_name}' raised: {e}")
            return ToolResult.fail(f"Tool exception: {e}", error_code=TOOL_EXCEPTION)

        if not result.success:
            logger.warning(f"Tool '{tool_name}' failed: code={result.error_code} error={result.error}")
        return result


class HttpToolExecutor:
    """
    Tools served over HTTP.

    POSTs `{tool, payload, context}` to `<base_url>/<tool>` and expects a
    ToolResult-shaped JSON body.
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
        tool_names: Optional[List[str]] = None,
        headers: Optional[Dict[str, str]] = None,
    ):
        self.base_url = (base_url or settings.TOOL_WEBHOOK_BASE_URL or "").rstrip("/")
        self.timeout = timeout or settings.TOOL_TIMEOUT_SECONDS
        self._tool_names = list(tool_names or [])
        self.headers = headers or {"Content-Type": "application/json"}

    def tool_names(self) -> List[str]:
        return list(self._tool_names)

    async def execute(self, tool_name: str, payload: Dict[str, Any], context: Dict[str, Any]) -> ToolResult:
        if not self.base_url:
            return ToolResult.fail("Tool webhook base URL is not configured", error_code=TOOL_NOT_FOUND)
        if self._tool_names and tool_name not in self._tool_names:
            return ToolResult.fail(f"Tool '{tool_name}' is not registered", error_code=TOOL_NOT_FOUND)

        url = f"{self.base_url}/{tool_name}"
        body = {"tool": tool_name, "payload": payload, "context": context}

        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.post(url, json=body, headers=self.headers)

            logger.debug(f"Tool '{tool_name}' response: {response.status_code} - {response.text[:500]}")

            if response.status_code == 404:
                return ToolResult.fail(f"Tool '{tool_name}' is not registered", error_code=TOOL_NOT_FOUND, status=404)
            if response.status_code >= 400:
                return ToolResult.fail(
                    f"HTTP {response.status_code} from tool '{tool_name}'",
                    error_code=HTTP_ERROR,
                    status=response.status_code,
                )
            return ToolResult.model_validate(response.json())

        except httpx.TimeoutException:
            logger.error(f"Timeout calling tool '{tool_name}'")
            return ToolResult.fail("Request timeout", error_code=TIMEOUT)
        except Exception as e:
            logger.exception(f"Error calling tool '{tool_name}': {e}")
            return ToolResult.fail(f"Connection error: {e}", error_code=HTTP_ERROR)
