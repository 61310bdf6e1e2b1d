"""
Error taxonomy shared by the server, the backends and the client.
"""

from typing import Any, Dict, Optional


class LLMServeError(Exception):
    """Base class for all llmserve errors."""

    status_code: int = 500
    error_type: str = "internal_error"

    def __init__(self, message: str, *, code: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.code = code

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error": {
                "message": self.message,
                "type": self.error_type,
                "code": self.code,
            }
        }


class ConfigError(LLMServeError):
    error_type = "config_error"


class InvalidRequestError(LLMServeError):
    status_code = 400
    error_type = "invalid_request_error"


class ModelNotFoundError(LLMServeError):
    status_code = 404
    error_type = "model_not_found"


class CapacityError(LLMServeError):
    status_code = 503
    error_type = "server_overloaded"


class BackendError(LLMServeError):
    """The generation backend answered, but with an error."""

    status_code = 502
    error_type = "backend_error"


class BackendUnavailableError(BackendError):
    """The generation backend could not be reached."""

    status_code = 503
    error_type = "backend_unavailable"


class APIError(Exception):
    """Raised by the client when the server replies with an error."""

    def __init__(self, status: int, message: str, error_type: Optional[str] = None):
        super().__init__(f"[{status}] {message}")
        self.status = status
        self.message = message
        self.error_type = error_type
