"""
Shared fixtures: a deterministic backend and a gateway built around it.
"""

import threading
import time

import pytest
import uvicorn
from fastapi.testclient import TestClient

from llmserve.backends.base import (
    FINISH_LENGTH,
    FINISH_STOP,
    Backend,
    GenerationResult,
    TokenDelta,
)
from llmserve.config import ServerConfig
from llmserve.serve.server import InferenceServer


class FakeBackend(Backend):
    """Replies with a fixed list of chunks; can be told to fail."""

    name = "fake"

    def __init__(self, chunks=("Hello", ", ", "world", "!"), model_id="fake-model"):
        super().__init__(model_id)
        self.chunks = list(chunks)
        self.fail_with = None
        self.fail_after = None
        self.healthy = True
        self.started = False
        self.closed = False
        self.calls = []

    async def start(self):
        self.started = True

    def _finish(self, params):
        return FINISH_LENGTH if len(self.chunks) >= params.max_new_tokens else FINISH_STOP

    async def generate(self, prompt, params):
        self.calls.append((prompt, params))
        if self.fail_with is not None:
            raise self.fail_with
        chunks = self.chunks[:params.max_new_tokens]
        return GenerationResult(
            text="".join(chunks),
            finish_reason=self._finish(params),
            prompt_tokens=len(prompt.split()),
            completion_tokens=len(chunks),
        )

    async def stream(self, prompt, params):
        self.calls.append((prompt, params))
        chunks = self.chunks[:params.max_new_tokens]
        for i, chunk in enumerate(chunks, 1):
            if self.fail_after is not None and i > self.fail_after:
                raise self.fail_with or RuntimeError("stream broke")
            yield TokenDelta(text=chunk, completion_tokens=i)
        if self.fail_with is not None and self.fail_after is None:
            raise self.fail_with
        yield TokenDelta(
            text="",
            finish_reason=self._finish(params),
            completion_tokens=len(chunks),
            prompt_tokens=len(prompt.split()),
        )

    async def health(self):
        return self.healthy

    async def close(self):
        self.closed = True


@pytest.fixture
def fake_backend():
    return FakeBackend()


@pytest.fixture
def config():
    return ServerConfig(backend="tgi", model="fake-model", max_concurrent=4, max_new_tokens_limit=64, default_max_tokens=16)


@pytest.fixture
def server(config, fake_backend):
    return InferenceServer(config, backend=fake_backend)


@pytest.fixture
def client(server):
    with TestClient(server.app) as test_client:
        yield test_client


@pytest.fixture
def live_server(server):
    """Run the gateway on a real socket for aiohttp clients. Yields the base URL."""
    config = uvicorn.Config(server.app, host="127.0.0.1", port=0, log_level="warning", lifespan="on")
    uv_server = uvicorn.Server(config)
    thread = threading.Thread(target=uv_server.run, daemon=True)
    thread.start()

    deadline = time.time() + 10
    while not uv_server.started:
        if time.time() > deadline:
            raise RuntimeError("uvicorn did not start")
        time.sleep(0.01)

    port = uv_server.servers[0].sockets[0].getsockname()[1]
    yield f"http://127.0.0.1:{port}"

    uv_server.should_exit = True
    thread.join(timeout=10)
