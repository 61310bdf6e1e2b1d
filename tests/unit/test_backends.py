"""
Tests for the backend base helpers and the pipeline backend.
"""

import asyncio
import time

import pytest
import torch

from llmserve.backends import create_backend
from llmserve.backends.base import (
    GenerationParams,
    partial_stop_length,
    render_chat_prompt,
    truncate_at_stop,
)
from llmserve.backends.pipeline import PipelineBackend
from llmserve.backends.tgi import TGIBackend
from llmserve.config import ServerConfig
from llmserve.errors import BackendError, BackendUnavailableError, InvalidRequestError
from llmserve.serve.schemas import ChatMessage


class FakeTokenizer:
    """Whitespace tokenizer standing in for a real one."""

    pad_token = "<pad>"
    pad_token_id = 0
    eos_token = "</s>"

    def __init__(self, chat_template=None):
        self.chat_template = chat_template
        self.vocab = []

    def encode(self, text, add_special_tokens=True):
        return text.split()

    def token_id(self, word):
        if word not in self.vocab:
            self.vocab.append(word)
        return self.vocab.index(word)

    def decode(self, ids, skip_special_tokens=False):
        return " ".join(self.vocab[int(i)] for i in ids)

    def apply_chat_template(self, conversation, tokenize=False, add_generation_prompt=False):
        rendered = "".join(f"<|{turn['role']}|>{turn['content']}" for turn in conversation)
        return rendered + ("<|assistant|>" if add_generation_prompt else "")


class FakePipe:
    """Callable mimicking a text-generation pipeline, one word per token.

    Honours `stopping_criteria` after every word the way `generate` does.
    """

    def __init__(self, output, tokenizer=None, fail=None, delay=0.0):
        self.output = output
        self.tokenizer = tokenizer or FakeTokenizer()
        self.fail = fail
        self.delay = delay
        self.calls = []
        self.emitted = []

    def _words(self, prompt, criteria):
        ids = [self.tokenizer.token_id(word) for word in prompt.split()]
        for word in self.output.split(" "):
            ids.append(self.tokenizer.token_id(word))
            self.emitted.append(word)
            yield word
            time.sleep(self.delay)
            input_ids = torch.tensor([ids])
            if any(bool(c(input_ids, None).all()) for c in criteria):
                return

    def __call__(self, prompt, **kwargs):
        self.calls.append((prompt, kwargs))
        streamer = kwargs.get("streamer")
        criteria = kwargs.get("stopping_criteria") or []
        if self.fail is not None:
            raise self.fail
        if streamer is not None:
            for word in self._words(prompt, criteria):
                streamer.on_finalized_text(word + " ")
            streamer.end()
            return None
        return [{"generated_text": " ".join(self._words(prompt, criteria))}]


async def collect(iterator):
    return [delta async for delta in iterator]


def test_generation_params_validation():
    assert GenerationParams(temperature=0).do_sample is False
    assert GenerationParams(temperature=0.7).do_sample is True
    with pytest.raises(InvalidRequestError):
        GenerationParams(max_new_tokens=0)
    with pytest.raises(InvalidRequestError):
        GenerationParams(top_p=0)


def test_truncate_at_stop_uses_earliest_match():
    assert truncate_at_stop("abc END def STOP", ["STOP", "END"]) == ("abc ", True)
    assert truncate_at_stop("no stops here", ["END"]) == ("no stops here", False)
    assert truncate_at_stop("text", ["", "x"]) == ("te", True)


def test_partial_stop_length():
    assert partial_stop_length("hello EN", ["END"]) == 2
    assert partial_stop_length("hello E", ["END", "EOF"]) == 1
    assert partial_stop_length("hello", ["END"]) == 0
    assert partial_stop_length("hello", []) == 0


def test_render_chat_prompt_plain_transcript():
    messages = [ChatMessage(role="system", content="be brief"), {"role": "user", "content": "hi"}]
    assert render_chat_prompt(messages) == "system: be brief\nuser: hi\nassistant:"


def test_render_chat_prompt_uses_chat_template():
    tokenizer = FakeTokenizer(chat_template="{{ messages }}")
    prompt = render_chat_prompt([{"role": "user", "content": "hi"}], tokenizer)
    assert prompt == "<|user|>hi<|assistant|>"


def test_create_backend():
    assert isinstance(create_backend(ServerConfig(backend="pipeline", model="gpt2", device="cpu")), PipelineBackend)
    tgi = create_backend(ServerConfig(backend="tgi", endpoint="http://tgi:80/"))
    assert isinstance(tgi, TGIBackend)
    assert tgi.endpoint == "http://tgi:80"


def test_pipeline_generate():
    pipe = FakePipe("one two three four")
    backend = PipelineBackend("fake", device="cpu", pipe=pipe)

    result = asyncio.run(backend.generate("say numbers", GenerationParams(max_new_tokens=4, temperature=0)))
    assert result.text == "one two three four"
    assert result.finish_reason == "length"
    assert result.prompt_tokens == 2
    assert result.completion_tokens == 4

    _, kwargs = pipe.calls[0]
    assert kwargs["return_full_text"] is False
    assert kwargs["do_sample"] is False
    assert "temperature" not in kwargs


def test_pipeline_generate_stops_at_stop_sequence():
    pipe = FakePipe("one two END three")
    backend = PipelineBackend("fake", device="cpu", pipe=pipe)
    result = asyncio.run(backend.generate("x", GenerationParams(max_new_tokens=10, stop=["END"])))
    assert result.text == "one two "
    assert result.finish_reason == "stop"
    assert result.completion_tokens == 2
    assert "three" not in pipe.emitted


def test_pipeline_sampling_kwargs():
    pipe = FakePipe("ok")
    backend = PipelineBackend("fake", device="cpu", pipe=pipe)
    asyncio.run(backend.generate("x", GenerationParams(temperature=0.5, top_p=0.9, top_k=40, seed=3)))

    _, kwargs = pipe.calls[0]
    assert kwargs["do_sample"] is True
    assert kwargs["temperature"] == 0.5
    assert kwargs["top_p"] == 0.9
    assert kwargs["top_k"] == 40


def test_pipeline_requires_loaded_model():
    backend = PipelineBackend("fake", device="cpu")
    with pytest.raises(BackendUnavailableError):
        asyncio.run(backend.generate("x", GenerationParams()))


def test_pipeline_stream():
    backend = PipelineBackend("fake", device="cpu", pipe=FakePipe("alpha beta gamma"))
    deltas = asyncio.run(collect(backend.stream("go", GenerationParams(max_new_tokens=10))))

    text = "".join(d.text for d in deltas)
    assert text == "alpha beta gamma "
    assert deltas[-1].finish_reason == "stop"
    assert deltas[-1].completion_tokens == 3
    assert all(d.finish_reason is None for d in deltas[:-1])


def test_pipeline_stream_stop_sequence_not_leaked():
    backend = PipelineBackend("fake", device="cpu", pipe=FakePipe("alpha beta STOP gamma"))
    deltas = asyncio.run(collect(backend.stream("go", GenerationParams(stop=["STOP"]))))

    assert "".join(d.text for d in deltas) == "alpha beta "
    assert deltas[-1].finish_reason == "stop"


def test_pipeline_stream_failure_raises_backend_error():
    backend = PipelineBackend("fake", device="cpu", pipe=FakePipe("x", fail=RuntimeError("CUDA error")))
    with pytest.raises(BackendError, match="CUDA error"):
        asyncio.run(collect(backend.stream("go", GenerationParams())))


def test_pipeline_stream_stop_sequence_ends_generation():
    tail = " ".join(f"w{i}" for i in range(20))
    pipe = FakePipe(f"a STOP {tail}", delay=0.02)
    backend = PipelineBackend("fake", device="cpu", pipe=pipe)

    deltas = asyncio.run(collect(backend.stream("go", GenerationParams(max_new_tokens=50, stop=["STOP"]))))

    assert "".join(d.text for d in deltas) == "a "
    assert deltas[-1].finish_reason == "stop"
    assert pipe.emitted == ["a", "STOP"]
    assert not backend._lock.locked()


def test_pipeline_stream_closed_early_releases_lock():
    words = [f"w{i}" for i in range(40)]
    pipe = FakePipe(" ".join(words), delay=0.02)
    backend = PipelineBackend("fake", device="cpu", pipe=pipe)

    async def scenario():
        deltas = backend.stream("go", GenerationParams(max_new_tokens=50))
        first = await deltas.__anext__()
        await deltas.aclose()
        return first

    first = asyncio.run(scenario())
    assert first.text == "w0 "
    assert len(pipe.emitted) < len(words)
    assert not backend._lock.locked()
