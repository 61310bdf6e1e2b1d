"""
Inference gateway exposing chat-completion and native generation routes.

Generation itself is delegated to a backend: an in-process transformers
pipeline or a remote TGI server. This module owns request validation,
streaming, concurrency limits, error mapping and metrics.
"""

import asyncio
import logging
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import AsyncIterator, Awaitable, Callable, Dict, Optional, Tuple

import uvicorn
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response, StreamingResponse
from rich.console import Console

from llmserve.backends import Backend, GenerationParams, create_backend
from llmserve.config import ServerConfig
from llmserve.errors import (
    CapacityError,
    InvalidRequestError,
    LLMServeError,
    ModelNotFoundError,
)
from llmserve.metrics import HealthManager, HealthStatus, ObservabilityManager
from llmserve.serve.middleware import RequestLoggingMiddleware
from llmserve.serve.schemas import (
    ChatChoice,
    ChatChunkChoice,
    ChatCompletionChunk,
    ChatCompletionRequest,
    ChatCompletionResponse,
    ChatMessage,
    DeltaMessage,
    GenerateDetails,
    GenerateRequest,
    GenerateResponse,
    ModelCard,
    ModelList,
    Usage,
    new_completion_id,
)
from llmserve.serve.sse import format_done, format_event

console = Console()
logger = logging.getLogger(__name__)

ROUTE_CHAT = "/v1/chat/completions"
ROUTE_GENERATE = "/generate"
ROUTE_GENERATE_STREAM = "/generate_stream"

SSE_HEADERS = {"Cache-Control": "no-cache", "X-Accel-Buffering": "no"}


@dataclass
class StreamState:
    """Token accounting for a response that is still streaming."""
    completion_tokens: int = 0


def _validation_message(exc: RequestValidationError) -> str:
    parts = []
    for error in exc.errors():
        location = ".".join(str(part) for part in error.get("loc", ())[1:])
        message = error.get("msg", "invalid value")
        parts.append(f"{location}: {message}" if location else message)
    return "; ".join(parts) or "Invalid request body"


def _error_event(exc: Exception) -> Dict:
    error = exc if isinstance(exc, LLMServeError) else LLMServeError(str(exc))
    return error.to_dict()


def _tgi_error_event(exc: Exception) -> Dict:
    error = exc if isinstance(exc, LLMServeError) else LLMServeError(str(exc))
    return {"error": error.message, "error_type": error.error_type}


class InferenceServer:
    """Main inference server with FastAPI integration."""

    def __init__(self, config: ServerConfig, backend: Optional[Backend] = None):
        self.config = config
        self.host = config.host
        self.port = config.port
        self.max_concurrent = config.max_concurrent

        self.backend = backend or create_backend(config)
        self.observability = ObservabilityManager(
            enable_prometheus=config.enable_metrics,
            otlp_endpoint=config.otlp_endpoint,
        )
        self.health_manager = HealthManager(
            stats_provider=self.observability.get_summary,
            max_active=config.max_concurrent,
        )
        self.active_requests = 0

        self.app = FastAPI(title="llmserve", lifespan=self._lifespan)
        self.app.add_middleware(RequestLoggingMiddleware)
        self.app.add_middleware(
            CORSMiddleware,
            allow_origins=config.cors_origins,
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
        )

        self._setup_exception_handlers()
        self._setup_routes()

    @property
    def model_name(self) -> str:
        return self.backend.model_id or self.config.model or self.backend.name

    @asynccontextmanager
    async def _lifespan(self, app: FastAPI):
        logger.info("Starting %s backend for %s", self.backend.name, self.model_name)
        await self.backend.start()
        try:
            yield
        finally:
            await self.backend.close()
            self.observability.shutdown()
            logger.info("Backend closed")

    def _setup_exception_handlers(self):
        @self.app.exception_handler(LLMServeError)
        async def handle_llmserve_error(request: Request, exc: LLMServeError):
            return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

        @self.app.exception_handler(RequestValidationError)
        async def handle_validation_error(request: Request, exc: RequestValidationError):
            error = InvalidRequestError(_validation_message(exc))
            return JSONResponse(status_code=error.status_code, content=error.to_dict())

        @self.app.exception_handler(Exception)
        async def handle_unexpected_error(request: Request, exc: Exception):
            logger.exception("Unhandled error on %s", request.url.path)
            return JSONResponse(status_code=500, content=LLMServeError(str(exc)).to_dict())

    def _setup_routes(self):
        """Setup FastAPI routes."""

        @self.app.post(ROUTE_CHAT)
        async def create_chat_completion(request: ChatCompletionRequest):
            return await self.handle_chat_request(request)

        @self.app.post(ROUTE_GENERATE, response_model=GenerateResponse)
        async def generate(request: GenerateRequest):
            if request.stream:
                return self.handle_generate_stream_request(request)
            return await self.handle_generate_request(request)

        @self.app.post(ROUTE_GENERATE_STREAM)
        async def generate_stream(request: GenerateRequest):
            return self.handle_generate_stream_request(request)

        @self.app.get("/v1/models", response_model=ModelList)
        async def list_models():
            return ModelList(data=[
                ModelCard(
                    id=self.model_name,
                    backend=self.backend.name,
                    launch_options=self.config.launch_options(),
                )
            ])

        @self.app.get("/health")
        async def health_check():
            return await self.health_payload()

        @self.app.get("/metrics")
        async def metrics():
            prometheus = self.observability.prometheus
            if prometheus is None:
                error = LLMServeError("Metrics are disabled", code="metrics_disabled")
                return JSONResponse(status_code=404, content=error.to_dict())
            return Response(content=prometheus.render(), media_type=prometheus.content_type)

    # Request preparation

    def _check_model(self, requested: Optional[str]):
        if requested and requested not in {self.model_name, self.backend.name}:
            raise ModelNotFoundError(
                f"Model '{requested}' is not served here; available: {self.model_name}",
                code="model_not_found",
            )

    def _max_tokens(self, requested: Optional[int]) -> int:
        if requested is None:
            return self.config.default_max_tokens
        if requested > self.config.max_new_tokens_limit:
            raise InvalidRequestError(
                f"max_tokens {requested} exceeds the limit of {self.config.max_new_tokens_limit}",
                code="max_tokens_exceeded",
            )
        return requested

    def _chat_params(self, request: ChatCompletionRequest) -> Tuple[str, GenerationParams]:
        if not request.messages:
            raise InvalidRequestError("messages must not be empty", code="empty_messages")
        if not any(message.content.strip() for message in request.messages):
            raise InvalidRequestError("messages must contain non-empty content", code="empty_messages")
        self._check_model(request.model)

        params = GenerationParams(
            max_new_tokens=self._max_tokens(request.max_tokens),
            temperature=1.0 if request.temperature is None else request.temperature,
            top_p=1.0 if request.top_p is None else request.top_p,
            stop=request.stop_sequences(),
            seed=request.seed,
        )
        return self.backend.render(request.messages), params

    def _generate_params(self, request: GenerateRequest) -> GenerationParams:
        parameters = request.parameters
        return GenerationParams(
            max_new_tokens=self._max_tokens(parameters.max_new_tokens),
            temperature=1.0 if parameters.temperature is None else parameters.temperature,
            top_p=1.0 if parameters.top_p is None else parameters.top_p,
            top_k=parameters.top_k,
            stop=parameters.stop,
            seed=parameters.seed,
            repetition_penalty=parameters.repetition_penalty,
        )

    # Concurrency and accounting

    def _acquire(self):
        if self.active_requests >= self.max_concurrent:
            raise CapacityError("Server at capacity", code="server_overloaded")
        self.active_requests += 1
        self.observability.request_started()

    def _release(self, route: str, status: int, start: float, generated_tokens: int):
        self.active_requests = max(self.active_requests - 1, 0)
        self.observability.request_finished(route, status, time.perf_counter() - start, generated_tokens)

    async def _run_tracked(self, route: str, handler: Callable[[], Awaitable[Tuple[object, int]]]):
        """Run a non-streaming handler under the concurrency limit.

        Unexpected exceptions are turned into a 500 carrying their message.
        """
        self._acquire()
        start = time.perf_counter()
        status = 200
        tokens = 0
        try:
            response, tokens = await handler()
            return response
        except LLMServeError as e:
            status = e.status_code
            logger.warning("%s failed: %s", route, e.message)
            raise
        except Exception as e:
            status = 500
            logger.exception("%s failed", route)
            raise LLMServeError(str(e)) from e
        finally:
            self._release(route, status, start, tokens)

    def _stream_tracked(
        self,
        route: str,
        events: Callable[[StreamState], AsyncIterator[str]],
        on_error: Callable[[Exception], Dict],
        terminate: bool,
    ) -> StreamingResponse:
        """Wrap an SSE event generator under the concurrency limit.

        Errors after the first byte cannot change the HTTP status, so they are
        sent as a final error event.
        """
        self._acquire()
        start = time.perf_counter()

        async def body():
            state = StreamState()
            status = 200
            try:
                async for event in events(state):
                    yield event
            except Exception as e:
                status = e.status_code if isinstance(e, LLMServeError) else 500
                logger.exception("%s stream failed", route)
                yield format_event(on_error(e))
                if terminate:
                    yield format_done()
            finally:
                self._release(route, status, start, state.completion_tokens)

        return StreamingResponse(body(), media_type="text/event-stream", headers=SSE_HEADERS)

    # Handlers

    async def handle_chat_request(self, request: ChatCompletionRequest):
        """Handle a chat-completion request, streamed or not."""
        prompt, params = self._chat_params(request)

        if request.stream:
            return self._stream_tracked(
                ROUTE_CHAT,
                lambda state: self._chat_events(prompt, params, state),
                on_error=_error_event,
                terminate=True,
            )

        async def run():
            result = await self.backend.generate(prompt, params)
            response = ChatCompletionResponse(
                model=self.model_name,
                choices=[ChatChoice(
                    message=ChatMessage(role="assistant", content=result.text),
                    finish_reason=result.finish_reason,
                )],
                usage=Usage.from_counts(result.prompt_tokens, result.completion_tokens),
            )
            return response, result.completion_tokens

        return await self._run_tracked(ROUTE_CHAT, run)

    async def _chat_events(self, prompt: str, params: GenerationParams, state: StreamState) -> AsyncIterator[str]:
        completion_id = new_completion_id()
        created = int(time.time())

        def chunk(delta: DeltaMessage, finish_reason: Optional[str] = None) -> str:
            data = ChatCompletionChunk(
                id=completion_id,
                created=created,
                model=self.model_name,
                choices=[ChatChunkChoice(delta=delta, finish_reason=finish_reason)],
            ).model_dump()
            data["choices"][0]["delta"] = delta.model_dump(exclude_none=True)
            return format_event(data)

        yield chunk(DeltaMessage(role="assistant"))
        async for delta in self.backend.stream(prompt, params):
            state.completion_tokens = delta.completion_tokens
            if delta.text:
                yield chunk(DeltaMessage(content=delta.text))
            if delta.finish_reason is not None:
                yield chunk(DeltaMessage(), finish_reason=delta.finish_reason)
                break
        yield format_done()

    async def handle_generate_request(self, request: GenerateRequest) -> GenerateResponse:
        """Handle a native, single-prompt generation request."""
        params = self._generate_params(request)

        async def run():
            result = await self.backend.generate(request.inputs, params)
            response = GenerateResponse(
                generated_text=result.text,
                details=GenerateDetails(
                    finish_reason=result.finish_reason,
                    generated_tokens=result.completion_tokens,
                    prompt_tokens=result.prompt_tokens,
                ),
            )
            return response, result.completion_tokens

        return await self._run_tracked(ROUTE_GENERATE, run)

    def handle_generate_stream_request(self, request: GenerateRequest) -> StreamingResponse:
        """Stream a native generation using TGI's event shape."""
        params = self._generate_params(request)

        async def events(state: StreamState) -> AsyncIterator[str]:
            generated = []
            index = 0
            async for delta in self.backend.stream(request.inputs, params):
                state.completion_tokens = delta.completion_tokens
                if delta.text:
                    generated.append(delta.text)
                    yield format_event({
                        "index": index,
                        "token": {"id": index, "text": delta.text, "logprob": None, "special": False},
                        "generated_text": None,
                        "details": None,
                    })
                    index += 1
                if delta.finish_reason is not None:
                    yield format_event({
                        "index": index,
                        "token": {"id": index, "text": "", "logprob": None, "special": True},
                        "generated_text": "".join(generated),
                        "details": {
                            "finish_reason": delta.finish_reason,
                            "generated_tokens": delta.completion_tokens,
                            "prompt_tokens": delta.prompt_tokens,
                        },
                    })
                    break

        return self._stream_tracked(ROUTE_GENERATE_STREAM, events, on_error=_tgi_error_event, terminate=False)

    async def health_payload(self) -> JSONResponse:
        """Report backend liveness plus system and inference health."""
        try:
            backend_ok = await self.backend.health()
        except Exception as e:
            logger.warning("Backend health check raised: %s", e)
            backend_ok = False

        reports = await asyncio.to_thread(self.health_manager.get_current_health)
        overall = self.health_manager.get_overall_status(reports)
        if not backend_ok:
            overall = HealthStatus.CRITICAL

        payload = {
            "status": overall.value,
            "backend": self.backend.name,
            "backend_healthy": backend_ok,
            "model": self.model_name,
            "active_requests": self.active_requests,
            "components": {name: report.to_dict() for name, report in reports.items()},
        }
        return JSONResponse(status_code=200 if backend_ok else 503, content=payload)

    async def start_server(self):
        """Start the inference server."""
        console.print(f"[blue]Initializing inference server ({self.backend.name} backend)...[/blue]")
        console.print(f"[green]✓ Server starting on {self.host}:{self.port}[/green]")

        config = uvicorn.Config(
            self.app,
            host=self.host,
            port=self.port,
            log_level=self.config.log_level.lower(),
        )
        server = uvicorn.Server(config)
        await server.serve()


def create_inference_server(config: ServerConfig, backend: Optional[Backend] = None) -> InferenceServer:
    """Factory function to create an inference server."""
    return InferenceServer(config, backend=backend)
