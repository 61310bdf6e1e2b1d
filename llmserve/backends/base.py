"""
Backend interface shared by the in-process pipeline and the remote TGI server.
"""

import asyncio
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Dict, List, Optional, Sequence, Tuple

from llmserve.errors import InvalidRequestError

FINISH_STOP = "stop"
FINISH_LENGTH = "length"


@dataclass
class GenerationParams:
    """Sampling parameters passed through to the generation backend."""

    max_new_tokens: int = 256
    temperature: float = 1.0
    top_p: float = 1.0
    top_k: Optional[int] = None
    stop: List[str] = field(default_factory=list)
    seed: Optional[int] = None
    repetition_penalty: Optional[float] = None

    def __post_init__(self):
        if self.max_new_tokens < 1:
            raise InvalidRequestError("max_new_tokens must be at least 1")
        if self.temperature < 0:
            raise InvalidRequestError("temperature must be non-negative")
        if not 0 < self.top_p <= 1:
            raise InvalidRequestError("top_p must be in (0, 1]")

    @property
    def do_sample(self) -> bool:
        # Temperature 0 means greedy decoding
        return self.temperature > 0


@dataclass
class GenerationResult:
    """A finished, non-streamed generation."""

    text: str
    finish_reason: str
    prompt_tokens: int = 0
    completion_tokens: int = 0


@dataclass
class TokenDelta:
    """One increment of a streamed generation."""

    text: str
    finish_reason: Optional[str] = None
    completion_tokens: int = 0
    prompt_tokens: int = 0


def truncate_at_stop(text: str, stop: Sequence[str]) -> Tuple[str, bool]:
    """Cut text at the earliest stop sequence. Returns (text, stopped)."""
    cut = -1
    for sequence in stop:
        if not sequence:
            continue
        index = text.find(sequence)
        if index >= 0 and (cut < 0 or index < cut):
            cut = index
    if cut < 0:
        return text, False
    return text[:cut], True


def partial_stop_length(text: str, stop: Sequence[str]) -> int:
    """Length of the longest suffix of text that could still grow into a stop sequence."""
    longest = 0
    for sequence in stop:
        for size in range(min(len(sequence) - 1, len(text)), longest, -1):
            if text.endswith(sequence[:size]):
                longest = size
                break
    return longest


def render_chat_prompt(messages: Sequence[Any], tokenizer: Any = None) -> str:
    """Render chat messages into a single prompt string.

    Uses the tokenizer chat template when the tokenizer has one, otherwise
    falls back to a plain transcript that ends with an open assistant turn.
    """
    conversation: List[Dict[str, str]] = [
        {"role": m["role"], "content": m["content"]} if isinstance(m, dict)
        else {"role": m.role, "content": m.content}
        for m in messages
    ]

    if tokenizer is not None and getattr(tokenizer, "chat_template", None):
        return tokenizer.apply_chat_template(
            conversation, tokenize=False, add_generation_prompt=True
        )

    lines = [f"{turn['role']}: {turn['content']}" for turn in conversation]
    lines.append("assistant:")
    return "\n".join(lines)


class Backend(ABC):
    """Abstract generation backend."""

    name: str = "base"

    def __init__(self, model_id: Optional[str] = None):
        self.model_id = model_id

    def load(self) -> None:
        """Prepare resources. Safe to call more than once."""

    async def start(self) -> None:
        """Called once by the server before it accepts requests."""
        await asyncio.to_thread(self.load)

    def render(self, messages: Sequence[Any]) -> str:
        return render_chat_prompt(messages)

    @abstractmethod
    async def generate(self, prompt: str, params: GenerationParams) -> GenerationResult:
        """Run a full generation and return the finished text."""

    @abstractmethod
    def stream(self, prompt: str, params: GenerationParams) -> AsyncIterator[TokenDelta]:
        """Yield text increments; the last one carries the finish reason."""

    async def health(self) -> bool:
        return True

    async def close(self) -> None:
        """Release resources."""
