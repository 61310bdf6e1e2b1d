"""
Server-sent event framing used by the streaming routes, the client and the TGI backend.
"""

import codecs
import json
from typing import Any, AsyncIterator, Dict, Iterable, Optional, Union

DONE = "[DONE]"


def format_event(data: Union[str, Dict[str, Any]]) -> str:
    """Encode one SSE event carrying a single data field."""
    if not isinstance(data, str):
        data = json.dumps(data, ensure_ascii=False, separators=(",", ":"))
    lines = data.splitlines() or [""]
    return "".join(f"data: {line}\n" for line in lines) + "\n"


def format_done() -> str:
    return format_event(DONE)


class SSEDecoder:
    """Incremental decoder turning raw text into event payloads.

    Only `data` fields are kept; comments, `event`, `id` and `retry` fields are
    ignored. A payload is emitted at each blank line.
    """

    def __init__(self):
        self._buffer = ""
        self._data = []

    def feed(self, chunk: str) -> Iterable[str]:
        self._buffer += chunk
        events = []
        while True:
            newline = self._buffer.find("\n")
            if newline < 0:
                break
            line = self._buffer[:newline].rstrip("\r")
            self._buffer = self._buffer[newline + 1:]
            event = self._process_line(line)
            if event is not None:
                events.append(event)
        return events

    def flush(self) -> Optional[str]:
        """Return a trailing event that was not terminated by a blank line."""
        if self._buffer:
            self._process_line(self._buffer.rstrip("\r"))
            self._buffer = ""
        if self._data:
            event = "\n".join(self._data)
            self._data = []
            return event
        return None

    def _process_line(self, line: str) -> Optional[str]:
        if not line:
            if not self._data:
                return None
            event = "\n".join(self._data)
            self._data = []
            return event
        if line.startswith(":"):
            return None
        name, _, value = line.partition(":")
        if value.startswith(" "):
            value = value[1:]
        if name == "data":
            self._data.append(value)
        return None


async def iter_sse_data(chunks: AsyncIterator[bytes]) -> AsyncIterator[str]:
    """Yield SSE data payloads from an async stream of raw bytes."""
    decoder = SSEDecoder()
    text = codecs.getincrementaldecoder("utf-8")()
    async for chunk in chunks:
        for event in decoder.feed(text.decode(chunk)):
            yield event
    tail = decoder.flush()
    if tail is not None:
        yield tail
