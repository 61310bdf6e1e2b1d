"""
Server configuration loaded from TOML files, environment and CLI overrides.
"""

import os
from dataclasses import MISSING, dataclass, field, fields, replace
from pathlib import Path
from typing import Any, Dict, List, Optional

import toml

from llmserve.errors import ConfigError

ENV_PREFIX = "LLMSERVE_"

BACKENDS = ("pipeline", "tgi")

LOG_LEVELS = ("debug", "info", "warning", "error", "critical")

# Optional fields whose environment values are integers
OPTIONAL_INT_FIELDS = {"num_shard": 0, "max_batch_total_tokens": 0}


@dataclass
class ServerConfig:
    """Configuration for the inference gateway."""

    # Backend selection
    backend: str = "pipeline"
    model: Optional[str] = None
    endpoint: str = "http://localhost:8080"
    device: str = "auto"

    # HTTP server
    host: str = "0.0.0.0"
    port: int = 8000
    cors_origins: List[str] = field(default_factory=lambda: ["*"])

    # Request limits
    max_concurrent: int = 128
    max_new_tokens_limit: int = 4096
    default_max_tokens: int = 256
    request_timeout: float = 300.0

    # Observability
    enable_metrics: bool = True
    otlp_endpoint: Optional[str] = None
    log_level: str = "info"

    # Launch options of the remote serving toolkit, reported only
    num_shard: Optional[int] = None
    max_batch_total_tokens: Optional[int] = None
    quantize: Optional[str] = None

    def __post_init__(self):
        self.validate()

    def validate(self):
        if self.backend not in BACKENDS:
            raise ConfigError(
                f"Unknown backend '{self.backend}', expected one of: {', '.join(BACKENDS)}"
            )
        if self.backend == "pipeline" and not self.model:
            raise ConfigError("The pipeline backend requires a model name or path")
        if self.max_concurrent < 1:
            raise ConfigError("max_concurrent must be at least 1")
        if self.default_max_tokens < 1 or self.max_new_tokens_limit < 1:
            raise ConfigError("Token limits must be at least 1")
        if self.default_max_tokens > self.max_new_tokens_limit:
            raise ConfigError("default_max_tokens cannot exceed max_new_tokens_limit")
        if self.log_level.lower() not in LOG_LEVELS:
            raise ConfigError(
                f"Invalid log_level '{self.log_level}', expected one of: {', '.join(LOG_LEVELS)}"
            )

    def merge(self, **overrides) -> "ServerConfig":
        """Return a copy with every non-None override applied."""
        known = {f.name for f in fields(self)}
        unknown = set(overrides) - known
        if unknown:
            raise ConfigError(f"Unknown config keys: {', '.join(sorted(unknown))}")
        changes = {k: v for k, v in overrides.items() if v is not None}
        return replace(self, **changes)

    def launch_options(self) -> Dict[str, Any]:
        """TGI launch options as reported by the models endpoint."""
        options = {
            "num_shard": self.num_shard,
            "max_batch_total_tokens": self.max_batch_total_tokens,
            "quantize": self.quantize,
        }
        return {k: v for k, v in options.items() if v is not None}


def _coerce(value: str, template: Any) -> Any:
    """Convert an environment string to the type of a config default."""
    if isinstance(template, bool):
        return value.strip().lower() in {"1", "true", "yes", "on"}
    if isinstance(template, int):
        return int(value)
    if isinstance(template, float):
        return float(value)
    if isinstance(template, list):
        return [item.strip() for item in value.split(",") if item.strip()]
    return value


def _env_overrides(environ: Optional[Dict[str, str]] = None) -> Dict[str, Any]:
    environ = os.environ if environ is None else environ
    overrides = {}
    for f in fields(ServerConfig):
        key = ENV_PREFIX + f.name.upper()
        if key not in environ:
            continue
        template = f.default_factory() if f.default_factory is not MISSING else f.default
        if template is None:
            template = OPTIONAL_INT_FIELDS.get(f.name, "")
        try:
            overrides[f.name] = _coerce(environ[key], template)
        except ValueError as e:
            raise ConfigError(f"Invalid value for {key}: {e}") from e
    return overrides


def load_config(
    path: Optional[Path] = None,
    environ: Optional[Dict[str, str]] = None,
    **overrides,
) -> ServerConfig:
    """Build a ServerConfig from a TOML file, LLMSERVE_* variables and overrides.

    Precedence, lowest first: dataclass defaults, file, environment, overrides.
    """
    values: Dict[str, Any] = {}

    if path is not None:
        path = Path(path)
        if not path.exists():
            raise ConfigError(f"Config file not found: {path}")
        try:
            data = toml.load(path)
        except toml.TomlDecodeError as e:
            raise ConfigError(f"Invalid TOML in {path}: {e}") from e
        values.update(data.get("server", {k: v for k, v in data.items() if not isinstance(v, dict)}))

    values.update(_env_overrides(environ))
    values.update({k: v for k, v in overrides.items() if v is not None})

    known = {f.name for f in fields(ServerConfig)}
    unknown = set(values) - known
    if unknown:
        raise ConfigError(f"Unknown config keys: {', '.join(sorted(unknown))}")

    return ServerConfig(**values)
