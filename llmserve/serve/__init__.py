"""Serving module - chat-completions gateway, wire schemas, SSE framing"""

from .server import InferenceServer, create_inference_server

__all__ = ["InferenceServer", "create_inference_server"]
