"""
Tests for the TGI backend against an in-process stand-in for the TGI HTTP API.
"""

import asyncio
import json

import pytest
from aiohttp import web
from aiohttp.test_utils import TestServer

from llmserve.backends.base import GenerationParams
from llmserve.backends.tgi import TGIBackend, map_finish_reason
from llmserve.errors import BackendError, BackendUnavailableError


def make_tgi_app(received):
    async def info(request):
        return web.json_response({"model_id": "bigscience/bloom-560m", "max_total_tokens": 2048})

    async def health(request):
        return web.Response(status=200)

    async def generate(request):
        body = await request.json()
        received.append(body)
        if body["inputs"] == "slow":
            await asyncio.sleep(2)
        if body["inputs"] == "html":
            return web.Response(text="<html>bad gateway</html>", content_type="text/html")
        if body["inputs"] == "explode":
            return web.json_response({"error": "Input validation error", "error_type": "validation"}, status=422)
        return web.json_response({
            "generated_text": " a poem",
            "details": {
                "finish_reason": "length",
                "generated_tokens": 2,
                "prefill": [{"id": 1, "text": "write"}, {"id": 2, "text": " me"}],
            },
        })

    async def generate_stream(request):
        body = await request.json()
        received.append(body)
        response = web.StreamResponse(headers={"Content-Type": "text/event-stream"})
        await response.prepare(request)
        events = [
            {"token": {"id": 1, "text": "Roses", "special": False}, "generated_text": None, "details": None},
            {"token": {"id": 2, "text": " are", "special": False}, "generated_text": None, "details": None},
            {"token": {"id": 3, "text": "</s>", "special": True}, "generated_text": "Roses are",
             "details": {"finish_reason": "eos_token", "generated_tokens": 3}},
        ]
        for event in events:
            if body["inputs"] == "slow":
                await asyncio.sleep(2)
            await response.write(f"data:{json.dumps(event)}\n\n".encode())
        await response.write_eof()
        return response

    app = web.Application()
    app.router.add_get("/info", info)
    app.router.add_get("/health", health)
    app.router.add_post("/generate", generate)
    app.router.add_post("/generate_stream", generate_stream)
    return app


def run_with_tgi(scenario, timeout=300.0):
    """Start the stand-in TGI server and run `scenario(backend, received)`."""
    received = []

    async def main():
        async with TestServer(make_tgi_app(received)) as server:
            backend = TGIBackend(str(server.make_url("")), timeout=timeout)
            try:
                return await scenario(backend, received)
            finally:
                await backend.close()

    return asyncio.run(main())


def test_finish_reason_mapping():
    assert map_finish_reason("length") == "length"
    assert map_finish_reason("eos_token") == "stop"
    assert map_finish_reason("stop_sequence") == "stop"
    assert map_finish_reason(None) == "stop"


def test_start_discovers_model_id():
    async def scenario(backend, received):
        await backend.start()
        return backend.model_id

    assert run_with_tgi(scenario) == "bigscience/bloom-560m"


def test_generate():
    async def scenario(backend, received):
        params = GenerationParams(max_new_tokens=2, temperature=0.8, top_p=0.9, stop=["\n"], seed=1)
        return await backend.generate("write me", params), received

    result, received = run_with_tgi(scenario)
    assert result.text == " a poem"
    assert result.finish_reason == "length"
    assert result.prompt_tokens == 2
    assert result.completion_tokens == 2

    parameters = received[0]["parameters"]
    assert received[0]["inputs"] == "write me"
    assert parameters["max_new_tokens"] == 2
    assert parameters["do_sample"] is True
    assert parameters["temperature"] == 0.8
    assert parameters["top_p"] == 0.9
    assert parameters["stop"] == ["\n"]
    assert parameters["seed"] == 1
    assert parameters["details"] is True


def test_greedy_omits_sampling_parameters():
    async def scenario(backend, received):
        await backend.generate("write me", GenerationParams(temperature=0))
        return received[0]["parameters"]

    parameters = run_with_tgi(scenario)
    assert parameters["do_sample"] is False
    assert "temperature" not in parameters


def test_generate_error_raises_backend_error():
    async def scenario(backend, received):
        await backend.generate("explode", GenerationParams())

    with pytest.raises(BackendError, match="Input validation error"):
        run_with_tgi(scenario)


def test_stream_skips_special_tokens():
    async def scenario(backend, received):
        return [d async for d in backend.stream("poem", GenerationParams())]

    deltas = run_with_tgi(scenario)
    assert [d.text for d in deltas[:-1]] == ["Roses", " are"]
    assert deltas[-1].finish_reason == "stop"
    assert deltas[-1].completion_tokens == 3


def test_health():
    async def scenario(backend, received):
        return await backend.health()

    assert run_with_tgi(scenario) is True


def test_unreachable_server():
    async def main():
        backend = TGIBackend("http://127.0.0.1:9", timeout=5)
        try:
            assert await backend.health() is False
            with pytest.raises(BackendUnavailableError):
                await backend.generate("hi", GenerationParams())
            # start() tolerates a server that is not up yet
            await backend.start()
            assert backend.model_id is None
        finally:
            await backend.close()

    asyncio.run(main())


def test_generate_timeout_is_backend_unavailable():
    async def scenario(backend, received):
        await backend.generate("slow", GenerationParams())

    with pytest.raises(BackendUnavailableError, match="timed out after 0.3s on /generate"):
        run_with_tgi(scenario, timeout=0.3)


def test_stream_timeout_is_backend_unavailable():
    async def scenario(backend, received):
        return [d async for d in backend.stream("slow", GenerationParams())]

    with pytest.raises(BackendUnavailableError, match="timed out"):
        run_with_tgi(scenario, timeout=0.3)


def test_non_json_response_is_backend_error():
    async def scenario(backend, received):
        await backend.generate("html", GenerationParams())

    with pytest.raises(BackendError, match="non-JSON response on /generate") as excinfo:
        run_with_tgi(scenario)
    assert not isinstance(excinfo.value, BackendUnavailableError)
