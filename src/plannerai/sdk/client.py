"""HTTPX-based PlannerAI REST SDK."""

from __future__ import annotations

from typing import Any

import httpx

from plannerai.sdk.types import (
    LogsResponse,
    ToolCallResultPayload,
    ToolListResponse,
    TurnCall,
    TurnResponse,
)


class PlannerClient:
    """Minimal sync REST client for the PlannerAI API.

    ``user_id`` and ``conversation_id`` given here are used for every call
    unless overridden per call.
    """

    def __init__(
        self,
        base_url: str = "http://127.0.0.1:8000",
        api_key: str | None = None,
        timeout: float = 10.0,
        *,
        user_id: str = "",
        conversation_id: str = "",
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.user_id = user_id
        self.conversation_id = conversation_id
        headers = {}
        if api_key:
            headers["Authorization"] = f"Bearer {api_key}"
        self._client = httpx.Client(
            base_url=self.base_url,
            headers=headers,
            timeout=timeout,
            trust_env=False,
            transport=transport,
        )

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> PlannerClient:
        return self

    def __exit__(self, *_exc_info: object) -> None:
        self.close()

    def health(self) -> dict[str, Any]:
        return self._request("GET", "/health")

    def list_tools(self, *, function_format: bool = False) -> ToolListResponse:
        return self._request(
            "GET",
            "/api/v1/tools",
            params={"format": "function" if function_format else "plain"},
        )

    def dispatch(
        self,
        tool_name: str,
        parameters: dict[str, Any] | None = None,
        *,
        user_id: str | None = None,
        conversation_id: str | None = None,
    ) -> ToolCallResultPayload:
        payload = {
            "toolName": tool_name,
            "parameters": parameters or {},
            "userId": user_id if user_id is not None else self.user_id,
            "conversationId": conversation_id if conversation_id is not None else self.conversation_id,
        }
        return self._request("POST", "/api/v1/tools/dispatch", json=payload)

    def dispatch_turn(
        self,
        calls: list[TurnCall],
        *,
        user_id: str | None = None,
        conversation_id: str | None = None,
    ) -> TurnResponse:
        payload = {
            "calls": calls,
            "userId": user_id if user_id is not None else self.user_id,
            "conversationId": conversation_id if conversation_id is not None else self.conversation_id,
        }
        return self._request("POST", "/api/v1/tools/dispatch-turn", json=payload)

    def logs(
        self,
        *,
        tool_name: str | None = None,
        conversation_id: str | None = None,
        level: str | None = None,
        source: str = "memory",
        limit: int = 100,
    ) -> LogsResponse:
        params: dict[str, Any] = {"source": source, "limit": limit}
        if tool_name:
            params["tool_name"] = tool_name
        if conversation_id:
            params["conversation_id"] = conversation_id
        if level:
            params["level"] = level
        return self._request("GET", "/api/v1/logs", params=params)

    def replay(
        self,
        conversation_id: str,
        *,
        user_id: str | None = None,
        target_conversation_id: str | None = None,
        include_mutations: bool = False,
    ) -> dict[str, Any]:
        payload = {
            "userId": user_id if user_id is not None else self.user_id,
            "conversationId": conversation_id,
            "targetConversationId": target_conversation_id,
            "includeMutations": include_mutations,
        }
        return self._request("POST", "/api/v1/replay", json=payload)

    def _request(self, method: str, path: str, **kwargs: Any) -> Any:
        resp = self._client.request(method, path, **kwargs)
        try:
            resp.raise_for_status()
        except httpx.HTTPStatusError as exc:
            try:
                detail = resp.json()
            except ValueError:
                detail = resp.text
            raise httpx.HTTPStatusError(
                f"{exc}. response={detail}",
                request=exc.request,
                response=exc.response,
            ) from exc
        return resp.json()
