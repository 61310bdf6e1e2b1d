"""
Backend that forwards generation to a running Text Generation Inference server.

Batching, sharding and attention kernels all live in the remote server; this
module only speaks its HTTP API.
"""

import asyncio
import json
import logging
from contextlib import contextmanager
from typing import Any, AsyncIterator, Dict, Optional

import aiohttp

from llmserve.backends.base import (
    FINISH_LENGTH,
    FINISH_STOP,
    Backend,
    GenerationParams,
    GenerationResult,
    TokenDelta,
)
from llmserve.errors import BackendError, BackendUnavailableError
from llmserve.serve.sse import DONE, iter_sse_data

logger = logging.getLogger(__name__)

# TGI reports why generation ended with its own vocabulary
FINISH_REASONS = {
    "length": FINISH_LENGTH,
    "eos_token": FINISH_STOP,
    "stop_sequence": FINISH_STOP,
}


def map_finish_reason(reason: Optional[str]) -> str:
    return FINISH_REASONS.get(reason or "", FINISH_STOP)


class TGIBackend(Backend):
    """Client for the TGI `/generate`, `/generate_stream`, `/info` and `/health` routes."""

    name = "tgi"

    def __init__(
        self,
        endpoint: str,
        model_id: Optional[str] = None,
        timeout: float = 300.0,
        session: Optional[aiohttp.ClientSession] = None,
    ):
        super().__init__(model_id)
        self.endpoint = endpoint.rstrip("/")
        self.timeout = aiohttp.ClientTimeout(total=timeout)
        self._session = session
        self._owns_session = session is None

    @property
    def session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=self.timeout)
            self._owns_session = True
        return self._session

    def _parameters(self, params: GenerationParams) -> Dict[str, Any]:
        parameters: Dict[str, Any] = {
            "max_new_tokens": params.max_new_tokens,
            "do_sample": params.do_sample,
            "details": True,
        }
        if params.do_sample:
            parameters["temperature"] = params.temperature
            if params.top_p < 1.0:
                parameters["top_p"] = params.top_p
            if params.top_k:
                parameters["top_k"] = params.top_k
        if params.stop:
            parameters["stop"] = list(params.stop)
        if params.seed is not None:
            parameters["seed"] = params.seed
        if params.repetition_penalty:
            parameters["repetition_penalty"] = params.repetition_penalty
        return parameters

    @contextmanager
    def _translate_errors(self, route: str):
        """Turn transport failures on `route` into backend errors."""
        try:
            yield
        except asyncio.TimeoutError as e:
            raise BackendUnavailableError(
                f"TGI at {self.endpoint} timed out after {self.timeout.total}s on {route}"
            ) from e
        except aiohttp.ClientConnectionError as e:
            raise BackendUnavailableError(f"Cannot reach TGI at {self.endpoint}: {e}") from e
        except aiohttp.ContentTypeError as e:
            raise BackendError(f"TGI returned a non-JSON response on {route}: {e.message}") from e
        except json.JSONDecodeError as e:
            raise BackendError(f"TGI returned malformed JSON on {route}: {e}") from e

    async def _raise_for_status(self, response: aiohttp.ClientResponse) -> None:
        if response.status < 400:
            return
        body = await response.text()
        try:
            message = json.loads(body).get("error", body)
        except (ValueError, AttributeError):
            message = body
        logger.warning("TGI returned %s: %s", response.status, message)
        raise BackendError(f"TGI error {response.status}: {message}")

    async def fetch_info(self) -> Dict[str, Any]:
        with self._translate_errors("/info"):
            async with self.session.get(f"{self.endpoint}/info") as response:
                await self._raise_for_status(response)
                return await response.json()

    async def discover_model(self) -> str:
        """Fill in model_id from the server when it was not configured."""
        if not self.model_id:
            info = await self.fetch_info()
            self.model_id = info.get("model_id", "tgi")
            logger.info("TGI at %s serves %s", self.endpoint, self.model_id)
        return self.model_id

    async def start(self) -> None:
        try:
            await self.discover_model()
        except BackendError as e:
            # The server may come up later; requests will report it
            logger.warning("%s", e)

    async def generate(self, prompt: str, params: GenerationParams) -> GenerationResult:
        payload = {"inputs": prompt, "parameters": self._parameters(params)}
        with self._translate_errors("/generate"):
            async with self.session.post(f"{self.endpoint}/generate", json=payload) as response:
                await self._raise_for_status(response)
                data = await response.json()

        if isinstance(data, list):
            data = data[0]
        details = data.get("details") or {}
        return GenerationResult(
            text=data.get("generated_text", ""),
            finish_reason=map_finish_reason(details.get("finish_reason")),
            prompt_tokens=len(details.get("prefill") or []),
            completion_tokens=details.get("generated_tokens", 0),
        )

    async def stream(self, prompt: str, params: GenerationParams) -> AsyncIterator[TokenDelta]:
        payload = {"inputs": prompt, "parameters": self._parameters(params), "stream": True}
        tokens = 0
        with self._translate_errors("/generate_stream"):
            async with self.session.post(f"{self.endpoint}/generate_stream", json=payload) as response:
                await self._raise_for_status(response)
                async for data in iter_sse_data(response.content.iter_any()):
                    if data == DONE:
                        break
                    event = json.loads(data)
                    if "error" in event:
                        raise BackendError(f"TGI stream error: {event['error']}")

                    token = event.get("token") or {}
                    tokens += 1
                    details = event.get("details")
                    text = "" if token.get("special") else token.get("text", "")

                    if details is not None:
                        if text:
                            yield TokenDelta(text=text, completion_tokens=tokens)
                        yield TokenDelta(
                            text="",
                            finish_reason=map_finish_reason(details.get("finish_reason")),
                            completion_tokens=details.get("generated_tokens", tokens),
                            prompt_tokens=len(details.get("prefill") or []),
                        )
                        return
                    if text:
                        yield TokenDelta(text=text, completion_tokens=tokens)

        # Stream closed without a details event
        yield TokenDelta(text="", finish_reason=FINISH_STOP, completion_tokens=tokens)

    async def health(self) -> bool:
        try:
            async with self.session.get(f"{self.endpoint}/health") as response:
                return response.status == 200
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.warning("TGI health check failed: %s", e)
            return False

    async def close(self) -> None:
        if self._session is not None and self._owns_session and not self._session.closed:
            await self._session.close()
