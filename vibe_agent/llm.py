from __future__ import annotations

import asyncio
import json
import logging
import random
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Dict, List, Optional, Protocol, Sequence

import httpx


class LLMError(Exception):
    """Transport or protocol failure talking to the language model."""


@dataclass(frozen=True)
class ToolCall:
    id: str
    name: str
    args: Dict[str, Any]


@dataclass(frozen=True)
class ToolResponse:
    id: str
    name: str
    result: str


@dataclass(frozen=True)
class Usage:
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0

    def __add__(self, other: "Usage") -> "Usage":
        return Usage(
            self.prompt_tokens + other.prompt_tokens,
            self.completion_tokens + other.completion_tokens,
            self.total_tokens + other.total_tokens,
        )

    @classmethod
    def from_payload(cls, payload: Optional[Dict[str, Any]]) -> Optional["Usage"]:
        if not payload:
            return None
        return cls(
            prompt_tokens=int(payload.get("prompt_tokens") or 0),
            completion_tokens=int(payload.get("completion_tokens") or 0),
            total_tokens=int(payload.get("total_tokens") or 0),
        )


@dataclass
class LLMResponse:
    text: str = ""
    tool_calls: List[ToolCall] = field(default_factory=list)
    usage: Optional[Usage] = None


@dataclass(frozen=True)
class StreamChunk:
    text: str
    usage: Optional[Usage] = None


class ChatSession(Protocol):
    """An ongoing conversation. Calls must be awaited one at a time."""

    async def send_message(
        self, text: str, tool_responses: Optional[Sequence[ToolResponse]] = None
    ) -> LLMResponse:
        ...

    def send_message_stream(self, text: str) -> AsyncIterator[StreamChunk]:
        ...


class LLMClient(Protocol):
    def create_session(self, system_prompt: str, *, tools: Optional[List[Dict[str, Any]]] = None) -> ChatSession:
        ...

    async def generate_text(
        self,
        prompt: str,
        *,
        temperature: float = 0.2,
        max_tokens: Optional[int] = None,
        json_mode: bool = False,
    ) -> str:
        ...


_RETRYABLE_STATUS = {408, 429, 500, 502, 503, 504}


class _Transport:
    """Shared httpx client with retry/backoff for one OpenAI-compatible endpoint."""

    def __init__(
        self,
        *,
        api_base: str,
        api_key: str,
        timeout_s: float = 120.0,
        max_retries: int = 3,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.api_base = api_base.rstrip("/")
        self.api_key = api_key
        self.timeout_s = float(timeout_s)
        self._max_retries = max(1, int(max_retries))
        self._client = client
        self._lock = asyncio.Lock()

    @property
    def headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    async def _get_client(self) -> httpx.AsyncClient:
        async with self._lock:
            if self._client is None:
                timeout = httpx.Timeout(connect=10.0, read=self.timeout_s, write=10.0, pool=10.0)
                limits = httpx.Limits(max_connections=10, max_keepalive_connections=5)
                self._client = httpx.AsyncClient(timeout=timeout, limits=limits)
            return self._client

    async def post_json(self, path: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        url = f"{self.api_base}{path}"
        for attempt in range(self._max_retries):
            client = await self._get_client()
            try:
                resp = await client.post(url, headers=self.headers, json=payload)
                if resp.status_code in _RETRYABLE_STATUS:
                    raise httpx.HTTPStatusError("Retryable response", request=resp.request, response=resp)
                resp.raise_for_status()
                return resp.json()
            except (httpx.TimeoutException, httpx.NetworkError, httpx.HTTPStatusError) as exc:
                retryable = not isinstance(exc, httpx.HTTPStatusError) or exc.response.status_code in _RETRYABLE_STATUS
                if not retryable or attempt >= self._max_retries - 1:
                    raise LLMError(f"LLM request failed: {exc}") from exc
                backoff = 0.5 * (2 ** attempt) + random.random() * 0.1
                await asyncio.sleep(backoff)
            except ValueError as exc:
                raise LLMError(f"LLM returned a non-JSON body: {exc}") from exc
        raise LLMError("Retry loop exited unexpectedly.")

    async def stream_lines(self, path: str, payload: Dict[str, Any]) -> AsyncIterator[str]:
        client = await self._get_client()
        try:
            async with client.stream("POST", f"{self.api_base}{path}", headers=self.headers, json=payload) as resp:
                if resp.status_code >= 400:
                    body = await resp.aread()
                    raise LLMError(f"LLM stream error {resp.status_code}: {body[:500]!r}")
                async for line in resp.aiter_lines():
                    yield line
        except httpx.HTTPError as exc:
            raise LLMError(f"LLM stream failed: {exc}") from exc

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None


def _parse_tool_calls(message: Dict[str, Any]) -> List[ToolCall]:
    calls: List[ToolCall] = []
    for raw in message.get("tool_calls") or []:
        fn = raw.get("function") or {}
        arguments = fn.get("arguments") or "{}"
        try:
            args = json.loads(arguments) if isinstance(arguments, str) else dict(arguments)
        except json.JSONDecodeError:
            logging.warning("Tool call %s carried malformed JSON arguments", fn.get("name"))
            args = {"_malformed_arguments": arguments}
        if not isinstance(args, dict):
            args = {"_malformed_arguments": arguments}
        calls.append(ToolCall(id=str(raw.get("id") or ""), name=str(fn.get("name") or ""), args=args))
    return calls


def _first_message(data: Dict[str, Any]) -> Dict[str, Any]:
    try:
        return data["choices"][0]["message"] or {}
    except (KeyError, IndexError, TypeError) as exc:
        raise LLMError(f"Malformed completion response: {str(data)[:200]}") from exc


class OpenAIChatSession:
    """Conversation against an OpenAI-compatible /chat/completions endpoint."""

    def __init__(
        self,
        transport: _Transport,
        *,
        model: str,
        system_prompt: str,
        tools: Optional[List[Dict[str, Any]]] = None,
        temperature: float = 0.2,
    ) -> None:
        self._transport = transport
        self.model = model
        self.tools = tools
        self.temperature = temperature
        self.messages: List[Dict[str, Any]] = [{"role": "system", "content": system_prompt}]

    def _pending_messages(self, text: str, tool_responses: Optional[Sequence[ToolResponse]]) -> List[Dict[str, Any]]:
        out: List[Dict[str, Any]] = []
        # Tool results must directly follow the assistant turn that requested them.
        for tr in tool_responses or ():
            out.append({"role": "tool", "tool_call_id": tr.id, "content": tr.result})
        if text and text.strip():
            out.append({"role": "user", "content": text})
        return out

    async def send_message(
        self, text: str, tool_responses: Optional[Sequence[ToolResponse]] = None
    ) -> LLMResponse:
        pending = self._pending_messages(text, tool_responses)
        payload: Dict[str, Any] = {
            "model": self.model,
            "messages": self.messages + pending,
            "temperature": self.temperature,
        }
        if self.tools:
            payload["tools"] = self.tools
            payload["tool_choice"] = "auto"
        data = await self._transport.post_json("/chat/completions", payload)
        message = _first_message(data)
        calls = _parse_tool_calls(message)

        assistant: Dict[str, Any] = {"role": "assistant", "content": message.get("content") or ""}
        if message.get("tool_calls"):
            assistant["tool_calls"] = message["tool_calls"]
        self.messages.extend(pending)
        self.messages.append(assistant)
        return LLMResponse(
            text=message.get("content") or "",
            tool_calls=calls,
            usage=Usage.from_payload(data.get("usage")),
        )

    async def send_message_stream(self, text: str) -> AsyncIterator[StreamChunk]:
        pending = self._pending_messages(text, None)
        payload = {
            "model": self.model,
            "messages": self.messages + pending,
            "temperature": self.temperature,
            "stream": True,
            "stream_options": {"include_usage": True},
        }
        parts: List[str] = []
        async for line in self._transport.stream_lines("/chat/completions", payload):
            if not line.startswith("data: "):
                continue
            data = line[len("data: "):].strip()
            if data == "[DONE]":
                break
            try:
                parsed = json.loads(data)
            except json.JSONDecodeError:
                logging.debug("Skipping malformed stream line: %s", data[:200])
                continue
            choices = parsed.get("choices") or []
            delta = (choices[0].get("delta") or {}).get("content") if choices else None
            if delta:
                parts.append(delta)
                yield StreamChunk(text=delta)
            usage = Usage.from_payload(parsed.get("usage"))
            if usage is not None:
                yield StreamChunk(text="", usage=usage)
        self.messages.extend(pending)
        self.messages.append({"role": "assistant", "content": "".join(parts)})


class OpenAIClient:
    """Factory for chat sessions plus one-shot text generation."""

    def __init__(
        self,
        *,
        model: str,
        api_base: str = "https://api.openai.com/v1",
        api_key: str = "",
        timeout_s: float = 120.0,
        max_retries: int = 3,
        temperature: float = 0.2,
        http_client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.model = model
        self.temperature = temperature
        self._transport = _Transport(
            api_base=api_base,
            api_key=api_key,
            timeout_s=timeout_s,
            max_retries=max_retries,
            client=http_client,
        )

    def create_session(self, system_prompt: str, *, tools: Optional[List[Dict[str, Any]]] = None) -> OpenAIChatSession:
        return OpenAIChatSession(
            self._transport,
            model=self.model,
            system_prompt=system_prompt,
            tools=tools,
            temperature=self.temperature,
        )

    async def generate_text(
        self,
        prompt: str,
        *,
        temperature: float = 0.2,
        max_tokens: Optional[int] = None,
        json_mode: bool = False,
    ) -> str:
        payload: Dict[str, Any] = {
            "model": self.model,
            "messages": [{"role": "user", "content": prompt}],
            "temperature": temperature,
        }
        if max_tokens:
            payload["max_tokens"] = int(max_tokens)
        if json_mode:
            payload["response_format"] = {"type": "json_object"}
        data = await self._transport.post_json("/chat/completions", payload)
        return _first_message(data).get("content") or ""

    async def close(self) -> None:
        await self._transport.close()
