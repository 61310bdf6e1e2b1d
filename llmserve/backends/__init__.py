"""Backends module - transformers pipeline and remote TGI generation"""

from llmserve.backends.base import (
    Backend,
    GenerationParams,
    GenerationResult,
    TokenDelta,
    render_chat_prompt,
)
from llmserve.config import ServerConfig
from llmserve.errors import ConfigError


def create_backend(config: ServerConfig) -> Backend:
    """Factory function to create the backend named by the config."""
    if config.backend == "pipeline":
        from llmserve.backends.pipeline import PipelineBackend

        return PipelineBackend(config.model, device=config.device)
    if config.backend == "tgi":
        from llmserve.backends.tgi import TGIBackend

        return TGIBackend(config.endpoint, model_id=config.model, timeout=config.request_timeout)
    raise ConfigError(f"Unknown backend: {config.backend}")


__all__ = [
    "Backend",
    "GenerationParams",
    "GenerationResult",
    "TokenDelta",
    "render_chat_prompt",
    "create_backend",
]
