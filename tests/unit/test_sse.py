"""Tests for server-sent event framing."""

import asyncio

from llmserve.serve.sse import SSEDecoder, format_done, format_event, iter_sse_data


def test_format_event_json():
    assert format_event({"a": 1}) == 'data: {"a":1}\n\n'
    assert format_done() == "data: [DONE]\n\n"


def test_format_event_multiline_string():
    assert format_event("line one\nline two") == "data: line one\ndata: line two\n\n"


def test_decoder_handles_split_chunks():
    decoder = SSEDecoder()
    assert list(decoder.feed("data: {\"x\"")) == []
    assert list(decoder.feed(": 1}\n")) == []
    assert list(decoder.feed("\n")) == ['{"x": 1}']


def test_decoder_ignores_comments_and_other_fields():
    decoder = SSEDecoder()
    events = decoder.feed(": keep-alive\nevent: message\nid: 4\ndata:first\r\ndata: second\r\n\r\n")
    assert list(events) == ["first\nsecond"]


def test_decoder_flushes_unterminated_event():
    decoder = SSEDecoder()
    assert list(decoder.feed("data: tail")) == []
    assert decoder.flush() == "tail"
    assert decoder.flush() is None


def test_iter_sse_data_across_multibyte_boundary():
    payload = format_event({"text": "café"}).encode("utf-8") + format_done().encode("utf-8")
    split = payload.index("é".encode("utf-8")) + 1

    async def chunks():
        yield payload[:split]
        yield payload[split:]

    async def collect():
        return [event async for event in iter_sse_data(chunks())]

    assert asyncio.run(collect()) == ['{"text":"café"}', "[DONE]"]
