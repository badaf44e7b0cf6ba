import json
import logging
from typing import Any, Dict, List, Optional

import httpx

from .errors import ConfigurationError, GatewayError, QuotaExceededError, RateLimitError


logger = logging.getLogger("uvicorn.error")

ALLOWED_ROLES = {"system", "user", "assistant", "tool"}


class GatewayClient:
    """OpenAI-compatible chat-completions client for the hosted AI gateway."""

    def __init__(self, base_url: str, api_key: Optional[str], timeout: float = 120.0):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.client = httpx.AsyncClient(
            timeout=timeout,
            limits=httpx.Limits(max_connections=32, max_keepalive_connections=16),
        )

    @property
    def configured(self) -> bool:
        return bool(self.api_key)

    def _headers(self) -> Dict[str, str]:
        if not self.api_key:
            raise ConfigurationError("Gateway API key is not configured")
        return {"Authorization": f"Bearer {self.api_key}", "Content-Type": "application/json"}

    def _sanitize_messages(self, messages: Any) -> List[Dict[str, Any]]:
        if not isinstance(messages, list):
            return []
        sanitized: List[Dict[str, Any]] = []
        for msg in messages:
            if not isinstance(msg, dict):
                continue
            role = msg.get("role")
            if role not in ALLOWED_ROLES:
                continue
            content = msg.get("content")
            entry: Dict[str, Any] = {"role": role}
            if role == "assistant" and msg.get("tool_calls"):
                entry["content"] = content if isinstance(content, str) else ""
                entry["tool_calls"] = msg["tool_calls"]
                sanitized.append(entry)
                continue
            if role == "tool":
                entry["content"] = content if isinstance(content, str) else json.dumps(content, ensure_ascii=False)
                entry["tool_call_id"] = msg.get("tool_call_id")
                sanitized.append(entry)
                continue
            if content is None:
                continue
            if isinstance(content, str):
                if not content.strip():
                    continue
                entry["content"] = content
            elif isinstance(content, list):
                cleaned_items = [
                    item
                    for item in content
                    if isinstance(item, dict)
                    and item.get("type")
                    and (item.get("text") or item.get("image_url"))
                ]
                if not cleaned_items:
                    continue
                entry["content"] = cleaned_items
            else:
                entry["content"] = json.dumps(content, ensure_ascii=False)
            sanitized.append(entry)
        return sanitized

    def _build_payload(
        self,
        model: str,
        messages: List[Dict[str, Any]],
        stream: bool,
        temperature: Optional[float] = None,
        tools: Optional[List[Dict[str, Any]]] = None,
    ) -> Dict[str, Any]:
        cleaned = self._sanitize_messages(messages)
        if not cleaned:
            raise ValueError("messages must include at least one non-empty entry")
        if not model:
            raise ValueError("model is required")
        payload: Dict[str, Any] = {"model": model, "messages": cleaned, "stream": stream}
        if temperature is not None:
            payload["temperature"] = temperature
        if tools:
            payload["tools"] = tools
        return payload

    def _extract_error_detail(self, response: httpx.Response) -> str:
        try:
            data = response.json()
            if isinstance(data, dict):
                return json.dumps(data, ensure_ascii=True)
        except Exception:
            pass
        try:
            return response.text
        except Exception:
            return ""

    def _raise_for_status(self, response: httpx.Response) -> None:
        if response.is_success:
            return
        status = response.status_code
        detail = self._extract_error_detail(response)
        if status == 429:
            raise RateLimitError(status_code=status, detail=detail)
        if status == 402:
            raise QuotaExceededError(status_code=status, detail=detail)
        logger.error("AI gateway error: %s %s", status, detail[:500])
        raise GatewayError(status_code=status, detail=detail)

    async def chat_completion(
        self,
        model: str,
        messages: List[Dict[str, Any]],
        temperature: Optional[float] = None,
        tools: Optional[List[Dict[str, Any]]] = None,
    ) -> Dict[str, Any]:
        url = f"{self.base_url}/chat/completions"
        payload = self._build_payload(model, messages, stream=False, temperature=temperature, tools=tools)
        try:
            resp = await self.client.post(url, json=payload, headers=self._headers())
        except httpx.RequestError as exc:
            raise GatewayError(f"Gateway request failed: {exc}") from exc
        self._raise_for_status(resp)
        try:
            data = resp.json()
        except ValueError as exc:
            logger.error("AI gateway returned invalid JSON: %s", resp.text[:200])
            raise GatewayError("Gateway returned invalid JSON") from exc
        if not isinstance(data, dict):
            raise GatewayError("Gateway returned a non-object response")
        return data

    async def open_stream(
        self,
        model: str,
        messages: List[Dict[str, Any]],
        temperature: Optional[float] = None,
    ) -> httpx.Response:
        """Start a streaming completion; the caller owns the returned response and must close it."""
        url = f"{self.base_url}/chat/completions"
        payload = self._build_payload(model, messages, stream=True, temperature=temperature)
        request = self.client.build_request("POST", url, json=payload, headers=self._headers())
        try:
            resp = await self.client.send(request, stream=True)
        except httpx.RequestError as exc:
            raise GatewayError(f"Gateway request failed: {exc}") from exc
        if not resp.is_success:
            try:
                await resp.aread()
            finally:
                await resp.aclose()
            self._raise_for_status(resp)
        return resp

    async def close(self) -> None:
        if not self.client.is_closed:
            await self.client.aclose()


def first_message(data: Dict[str, Any]) -> Dict[str, Any]:
    choices = data.get("choices") or []
    if not choices or not isinstance(choices[0], dict):
        return {}
    message = choices[0].get("message") or {}
    return message if isinstance(message, dict) else {}
