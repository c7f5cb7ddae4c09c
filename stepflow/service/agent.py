from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Protocol

import httpx
from openai import AsyncOpenAI, OpenAIError

from stepflow.logging import get_logger

logger = get_logger(__name__)

RUNNER_INSTRUCTIONS = (
    "Execute workflow steps exactly. Use tools when needed. "
    "Return raw results as JSON when possible."
)


class AgentError(Exception):
    """The tool router or the model call failed."""


class Agent(Protocol):
    """Runs one instruction with the given integrations available."""

    async def run(
        self, *, user_id: str, toolkits: List[str], instruction: str
    ) -> Any: ...


@dataclass
class ToolRouterSession:
    url: str
    headers: Dict[str, str] = field(default_factory=dict)


def _coerce_output(text: Optional[str]) -> Any:
    if text is None:
        return None
    stripped = text.strip()
    if stripped[:1] in ("{", "["):
        try:
            return json.loads(stripped)
        except ValueError:
            return text
    return text


class ToolRouterAgent:
    """Agent backed by a hosted tool router and the OpenAI Responses API.

    A router session is opened per call so that only the integrations the
    step asks for are exposed to the model. The session's MCP endpoint is
    then handed to the model as a hosted MCP tool.
    """

    def __init__(
        self,
        *,
        api_key: str,
        model: str = "gpt-4o-mini",
        base_url: Optional[str] = None,
        tool_router_url: str,
        tool_router_api_key: Optional[str] = None,
        mcp_config_id: Optional[str] = None,
        timeout: float = 120.0,
    ) -> None:
        self.model = model
        self.tool_router_url = tool_router_url.rstrip("/")
        self.tool_router_api_key = tool_router_api_key
        self.mcp_config_id = mcp_config_id
        self.timeout = timeout
        self._openai = AsyncOpenAI(api_key=api_key, base_url=base_url, timeout=timeout)
        self._http: Optional[httpx.AsyncClient] = None

    async def _get_client(self) -> httpx.AsyncClient:
        if self._http is None:
            headers = {}
            if self.tool_router_api_key:
                headers["x-api-key"] = self.tool_router_api_key
            self._http = httpx.AsyncClient(
                timeout=httpx.Timeout(self.timeout, connect=10.0), headers=headers
            )
        return self._http

    async def create_session(
        self, user_id: str, toolkits: List[str]
    ) -> ToolRouterSession:
        payload: Dict[str, Any] = {"user_id": user_id}
        if toolkits:
            payload["toolkits"] = [kit.lower() for kit in toolkits]
        if self.mcp_config_id:
            payload["mcp_config_id"] = self.mcp_config_id
        client = await self._get_client()
        try:
            response = await client.post(f"{self.tool_router_url}/session", json=payload)
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            body = exc.response.text
            logger.error(
                "tool_router_session_failed",
                user_id=user_id,
                toolkits=toolkits,
                status_code=exc.response.status_code,
            )
            if "Invalid toolkit slugs" in body:
                raise AgentError(
                    f"Invalid integration: {', '.join(toolkits)}. "
                    "Please check if this app is supported and correctly spelled."
                ) from exc
            raise AgentError(
                f"tool router session failed: {exc.response.status_code}"
            ) from exc
        except httpx.HTTPError as exc:
            logger.error(
                "tool_router_unreachable", user_id=user_id, error=str(exc)
            )
            raise AgentError(f"tool router unreachable: {exc}") from exc

        data = response.json()
        mcp = data.get("mcp") or data
        url = mcp.get("url")
        if not url:
            raise AgentError("tool router session did not return an MCP url")
        headers = dict(mcp.get("headers") or {})
        if self.tool_router_api_key:
            headers.setdefault("x-api-key", self.tool_router_api_key)
        return ToolRouterSession(url=url, headers=headers)

    async def run(
        self, *, user_id: str, toolkits: List[str], instruction: str
    ) -> Any:
        session = await self.create_session(user_id, toolkits)
        try:
            response = await self._openai.responses.create(
                model=self.model,
                instructions=RUNNER_INSTRUCTIONS,
                input=instruction,
                tools=[
                    {
                        "type": "mcp",
                        "server_label": "tool_router",
                        "server_url": session.url,
                        "headers": session.headers,
                        "require_approval": "never",
                    }
                ],
            )
        except OpenAIError as exc:
            logger.error(
                "agent_model_call_failed",
                user_id=user_id,
                model=self.model,
                error_type=type(exc).__name__,
            )
            raise AgentError(str(exc)) from exc
        return _coerce_output(response.output_text)

    async def close(self) -> None:
        if self._http is not None:
            await self._http.aclose()
            self._http = None
        await self._openai.close()


class StubAgent:
    """Deterministic echo agent for tests and unconfigured deployments."""

    async def run(
        self, *, user_id: str, toolkits: List[str], instruction: str
    ) -> Any:
        return {"status": "stubbed", "toolkits": list(toolkits), "instruction": instruction}

    async def close(self) -> None:
        return None
