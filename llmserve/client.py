"""
Async client for an llmserve (or any chat-completions compatible) endpoint.

    async with LLMServeClient("http://localhost:8000") as client:
        reply = await client.chat([{"role": "user", "content": "write a poem"}])
        async for text in client.stream_chat(messages, max_tokens=64):
            print(text, end="")
"""

import json
import logging
from typing import Any, AsyncIterator, Dict, Iterable, List, Optional, Union

import aiohttp

from llmserve.errors import APIError
from llmserve.serve.schemas import ChatCompletionResponse, ChatMessage, GenerateResponse
from llmserve.serve.sse import DONE, iter_sse_data

logger = logging.getLogger(__name__)

MessageLike = Union[ChatMessage, Dict[str, str]]


def _message_dict(message: MessageLike) -> Dict[str, str]:
    if isinstance(message, ChatMessage):
        return message.model_dump()
    return {"role": message["role"], "content": message["content"]}


class LLMServeClient:
    """Thin aiohttp wrapper around the gateway's HTTP routes."""

    def __init__(
        self,
        base_url: str = "http://localhost:8000",
        timeout: float = 300.0,
        api_key: Optional[str] = None,
        session: Optional[aiohttp.ClientSession] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = aiohttp.ClientTimeout(total=timeout)
        self.headers = {"Content-Type": "application/json"}
        if api_key:
            self.headers["Authorization"] = f"Bearer {api_key}"
        self._session = session
        self._owns_session = session is None

    async def __aenter__(self) -> "LLMServeClient":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    @property
    def session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=self.timeout, headers=self.headers)
            self._owns_session = True
        return self._session

    async def close(self) -> None:
        if self._session is not None and self._owns_session and not self._session.closed:
            await self._session.close()

    @staticmethod
    async def _raise_for_status(response: aiohttp.ClientResponse) -> None:
        if response.status < 400:
            return
        body = await response.text()
        message, error_type = body, None
        try:
            error = json.loads(body).get("error")
        except (ValueError, AttributeError):
            error = None
        if isinstance(error, dict):
            message = error.get("message", body)
            error_type = error.get("type")
        elif isinstance(error, str):
            message = error
        raise APIError(response.status, message, error_type)

    @staticmethod
    def _chat_payload(messages: Iterable[MessageLike], stream: bool, **options) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "messages": [_message_dict(m) for m in messages],
            "stream": stream,
        }
        payload.update({k: v for k, v in options.items() if v is not None})
        return payload

    async def chat(
        self,
        messages: Iterable[MessageLike],
        *,
        model: Optional[str] = None,
        max_tokens: Optional[int] = None,
        temperature: Optional[float] = None,
        top_p: Optional[float] = None,
        stop: Optional[Union[str, List[str]]] = None,
        seed: Optional[int] = None,
    ) -> ChatCompletionResponse:
        """Request a full chat completion."""
        payload = self._chat_payload(
            messages, False, model=model, max_tokens=max_tokens,
            temperature=temperature, top_p=top_p, stop=stop, seed=seed,
        )
        async with self.session.post(f"{self.base_url}/v1/chat/completions", json=payload) as response:
            await self._raise_for_status(response)
            return ChatCompletionResponse.model_validate(await response.json())

    async def stream_chat(
        self,
        messages: Iterable[MessageLike],
        *,
        model: Optional[str] = None,
        max_tokens: Optional[int] = None,
        temperature: Optional[float] = None,
        top_p: Optional[float] = None,
        stop: Optional[Union[str, List[str]]] = None,
        seed: Optional[int] = None,
    ) -> AsyncIterator[str]:
        """Stream a chat completion, yielding content deltas as they arrive."""
        payload = self._chat_payload(
            messages, True, model=model, max_tokens=max_tokens,
            temperature=temperature, top_p=top_p, stop=stop, seed=seed,
        )
        async with self.session.post(f"{self.base_url}/v1/chat/completions", json=payload) as response:
            await self._raise_for_status(response)
            async for data in iter_sse_data(response.content.iter_any()):
                if data == DONE:
                    return
                event = json.loads(data)
                error = event.get("error")
                if isinstance(error, dict):
                    raise APIError(response.status, error.get("message", str(error)), error.get("type"))
                if error:
                    raise APIError(response.status, str(error))
                for choice in event.get("choices", []):
                    content = choice.get("delta", {}).get("content")
                    if content:
                        yield content

    async def generate(self, inputs: str, **parameters) -> GenerateResponse:
        """Call the native single-prompt route."""
        payload = {"inputs": inputs, "parameters": {k: v for k, v in parameters.items() if v is not None}}
        async with self.session.post(f"{self.base_url}/generate", json=payload) as response:
            await self._raise_for_status(response)
            return GenerateResponse.model_validate(await response.json())

    async def models(self) -> List[str]:
        async with self.session.get(f"{self.base_url}/v1/models") as response:
            await self._raise_for_status(response)
            data = await response.json()
        return [model["id"] for model in data.get("data", [])]

    async def health(self) -> Dict[str, Any]:
        """Return the health payload; a 503 is reported, not raised."""
        async with self.session.get(f"{self.base_url}/health") as response:
            if response.status not in (200, 503):
                await self._raise_for_status(response)
            return await response.json()
