"""
In-process backend built on the transformers text-generation pipeline.
"""

import asyncio
import logging
import threading
from typing import Any, AsyncIterator, Dict, Optional, Sequence

import torch
from transformers import (
    StoppingCriteria,
    StoppingCriteriaList,
    TextIteratorStreamer,
    pipeline,
    set_seed,
)

from llmserve.backends.base import (
    FINISH_LENGTH,
    FINISH_STOP,
    Backend,
    GenerationParams,
    GenerationResult,
    TokenDelta,
    partial_stop_length,
    render_chat_prompt,
    truncate_at_stop,
)
from llmserve.errors import BackendError, BackendUnavailableError

logger = logging.getLogger(__name__)


class CancelCriteria(StoppingCriteria):
    """Ends generation once `cancelled` is set or a stop string shows up in the new text."""

    def __init__(self, cancelled: threading.Event, tokenizer: Any = None, stop: Optional[Sequence[str]] = None):
        self.cancelled = cancelled
        self.tokenizer = tokenizer
        self.stop = [s for s in (stop or ()) if s]
        self._start: Optional[int] = None

    def _hit_stop(self, input_ids) -> bool:
        if not self.stop or self.tokenizer is None:
            return False
        if self._start is None:
            # Called after the first new token has been appended
            self._start = input_ids.shape[-1] - 1
        text = self.tokenizer.decode(input_ids[0, self._start:], skip_special_tokens=True)
        return any(s in text for s in self.stop)

    def __call__(self, input_ids, scores, **kwargs):
        done = self.cancelled.is_set() or self._hit_stop(input_ids)
        return torch.full((input_ids.shape[0],), done, dtype=torch.bool, device=input_ids.device)


class PipelineBackend(Backend):
    """Runs generation with `transformers.pipeline("text-generation")`.

    The pipeline holds a single model, so calls into it are serialised with a
    lock and executed on worker threads to keep the event loop responsive.
    """

    name = "pipeline"

    def __init__(
        self,
        model_id: str,
        device: str = "auto",
        pipe: Any = None,
        stream_timeout: Optional[float] = None,
    ):
        super().__init__(model_id)
        self.device = self._get_device(device)
        self.pipe = pipe
        self.stream_timeout = stream_timeout
        self._lock = threading.Lock()

    def _get_device(self, device: str) -> str:
        """Determine the best device to use."""
        if device == "auto":
            return "cuda" if torch.cuda.is_available() else "cpu"
        return device

    @property
    def tokenizer(self):
        return self.pipe.tokenizer if self.pipe is not None else None

    def load(self) -> None:
        if self.pipe is not None:
            return

        logger.info("Loading pipeline for %s on %s", self.model_id, self.device)
        try:
            self.pipe = pipeline(
                "text-generation",
                model=self.model_id,
                device=self.device,
                torch_dtype=torch.float16 if self.device == "cuda" else torch.float32,
            )
        except Exception as e:
            logger.error("Failed to load model %s: %s", self.model_id, e)
            raise BackendUnavailableError(f"Failed to load model {self.model_id}: {e}") from e

        if self.pipe.tokenizer.pad_token is None:
            self.pipe.tokenizer.pad_token = self.pipe.tokenizer.eos_token
        logger.info("Pipeline ready for %s", self.model_id)

    def render(self, messages: Sequence[Any]) -> str:
        return render_chat_prompt(messages, self.tokenizer)

    def _require_pipe(self):
        if self.pipe is None:
            raise BackendUnavailableError("Model is not loaded")
        return self.pipe

    def _count_tokens(self, text: str) -> int:
        if not text:
            return 0
        return len(self.tokenizer.encode(text, add_special_tokens=False))

    def _generate_kwargs(self, params: GenerationParams) -> Dict[str, Any]:
        kwargs: Dict[str, Any] = {
            "max_new_tokens": params.max_new_tokens,
            "do_sample": params.do_sample,
            "return_full_text": False,
            "pad_token_id": self.tokenizer.pad_token_id,
        }
        if params.do_sample:
            kwargs["temperature"] = params.temperature
            kwargs["top_p"] = params.top_p
            if params.top_k:
                kwargs["top_k"] = params.top_k
        if params.repetition_penalty:
            kwargs["repetition_penalty"] = params.repetition_penalty
        return kwargs

    def _finish_reason(self, completion_tokens: int, stopped: bool, params: GenerationParams) -> str:
        if stopped:
            return FINISH_STOP
        if completion_tokens >= params.max_new_tokens:
            return FINISH_LENGTH
        return FINISH_STOP

    def _call_pipe(self, prompt: str, params: GenerationParams, cancelled: Optional[threading.Event] = None, **extra):
        pipe = self._require_pipe()
        if cancelled is None:
            cancelled = threading.Event()
        criteria = CancelCriteria(cancelled, self.tokenizer, params.stop)
        with self._lock:
            if params.seed is not None:
                set_seed(params.seed)
            return pipe(
                prompt,
                stopping_criteria=StoppingCriteriaList([criteria]),
                **self._generate_kwargs(params),
                **extra,
            )

    def _run(self, prompt: str, params: GenerationParams) -> GenerationResult:
        outputs = self._call_pipe(prompt, params)
        raw = outputs[0]["generated_text"]
        text, stopped = truncate_at_stop(raw, params.stop)

        completion_tokens = self._count_tokens(raw)
        return GenerationResult(
            text=text,
            finish_reason=self._finish_reason(completion_tokens, stopped, params),
            prompt_tokens=self._count_tokens(prompt),
            completion_tokens=self._count_tokens(text) if stopped else completion_tokens,
        )

    async def generate(self, prompt: str, params: GenerationParams) -> GenerationResult:
        self._require_pipe()
        return await asyncio.to_thread(self._run, prompt, params)

    def _make_streamer(self) -> TextIteratorStreamer:
        return TextIteratorStreamer(
            self.tokenizer,
            skip_prompt=True,
            skip_special_tokens=True,
            timeout=self.stream_timeout,
        )

    async def stream(self, prompt: str, params: GenerationParams) -> AsyncIterator[TokenDelta]:
        self._require_pipe()
        streamer = self._make_streamer()
        cancelled = threading.Event()
        errors = []

        def worker():
            try:
                self._call_pipe(prompt, params, cancelled=cancelled, streamer=streamer)
            except Exception as e:
                logger.exception("Streaming generation failed")
                errors.append(e)
                streamer.end()

        thread = threading.Thread(target=worker, name="llmserve-stream", daemon=True)
        thread.start()

        loop = asyncio.get_running_loop()
        generated = ""
        sent = 0
        chunks = 0
        stopped = False

        try:
            while True:
                chunk = await loop.run_in_executor(None, next, streamer, None)
                if chunk is None:
                    break
                if not chunk:
                    continue
                chunks += 1
                generated += chunk

                visible, stopped = truncate_at_stop(generated, params.stop)
                if not stopped:
                    visible = visible[:len(visible) - partial_stop_length(visible, params.stop)]
                if len(visible) > sent:
                    yield TokenDelta(text=visible[sent:], completion_tokens=chunks)
                    sent = len(visible)
                if stopped:
                    generated = visible
                    break
        finally:
            # Also reached when the consumer goes away mid-stream
            cancelled.set()
            await asyncio.to_thread(thread.join)

        if errors:
            raise BackendError(f"Generation failed: {errors[0]}") from errors[0]

        if not stopped and len(generated) > sent:
            # Held back as a possible stop prefix but generation ended
            yield TokenDelta(text=generated[sent:], completion_tokens=chunks)

        completion_tokens = self._count_tokens(generated)
        yield TokenDelta(
            text="",
            finish_reason=self._finish_reason(completion_tokens, stopped, params),
            completion_tokens=completion_tokens,
            prompt_tokens=self._count_tokens(prompt),
        )
