"""Gateway configuration."""

import os
from dataclasses import dataclass, field, replace
from types import MappingProxyType
from typing import Any, Dict, Mapping, Optional

from dotenv import load_dotenv

# Load .env from the working directory before any defaults are read
load_dotenv()

REASONING_ROLE = "deepseek"
GENERATION_ROLE = "anthropic"

WIRE_FORMATS = ("openai", "anthropic")
PIPELINE_MODES = ("plain", "full")


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes", "on")


def _frozen(mapping: Optional[Mapping[str, Any]]) -> Mapping[str, Any]:
    return MappingProxyType(dict(mapping or {}))


@dataclass(frozen=True)
class ProviderConfig:
    """
    Settings for one upstream provider slot.

    Process-wide defaults are built once at startup. Per-request overrides
    go through merged(), which returns a new snapshot and never writes
    through to the shared instance.
    """
    role: str
    endpoint: str
    wire_format: str
    api_key: str
    model: str
    headers: Mapping[str, str] = field(default_factory=lambda: _frozen(None))
    body: Mapping[str, Any] = field(default_factory=lambda: _frozen(None))
    stream: bool = True
    connect_timeout: float = 10.0
    read_timeout: float = 300.0
    max_retries: int = 3
    retry_backoff: float = 0.5
    close_grace: float = 2.0

    def __post_init__(self):
        # Freeze whatever mappings the caller handed in
        object.__setattr__(self, "headers", _frozen(self.headers))
        object.__setattr__(self, "body", _frozen(self.body))

    @property
    def usable(self) -> bool:
        """A provider needs both an endpoint and a credential."""
        return bool(self.endpoint and self.api_key)

    def merged(
        self,
        headers: Optional[Mapping[str, str]] = None,
        body: Optional[Mapping[str, Any]] = None,
    ) -> "ProviderConfig":
        """
        Return a copy with request-scoped overrides applied.

        Shallow merge, key by key: override keys win, unspecified keys keep
        their defaults. A "model" key in the body also replaces the model.
        """
        merged_headers: Dict[str, str] = dict(self.headers)
        merged_headers.update(headers or {})
        merged_body: Dict[str, Any] = dict(self.body)
        merged_body.update(body or {})

        model = merged_body.get("model") or self.model
        return replace(
            self,
            headers=merged_headers,
            body=merged_body,
            model=str(model),
        )


def _provider_from_env(
    role: str,
    prefix: str,
    url: str,
    model: str,
    wire_format: str,
) -> ProviderConfig:
    return ProviderConfig(
        role=role,
        endpoint=os.getenv(f"{prefix}_API_URL", url),
        wire_format=os.getenv(f"{prefix}_WIRE_FORMAT", wire_format).strip().lower(),
        api_key=os.getenv(f"{prefix}_API_KEY", ""),
        model=os.getenv(f"{prefix}_MODEL", model),
        stream=_env_bool(f"{prefix}_STREAM", "true"),
        connect_timeout=float(os.getenv("UPSTREAM_CONNECT_TIMEOUT", "10")),
        read_timeout=float(os.getenv("UPSTREAM_READ_TIMEOUT", "300")),
        max_retries=int(os.getenv("UPSTREAM_MAX_RETRIES", "3")),
        retry_backoff=float(os.getenv("UPSTREAM_RETRY_BACKOFF", "0.5")),
        close_grace=float(os.getenv("UPSTREAM_CLOSE_GRACE", "2")),
    )


@dataclass
class Config:
    """Configuration loaded from environment variables."""

    # Server
    host: str = field(default_factory=lambda: os.getenv("GATEWAY_HOST", "0.0.0.0"))
    port: int = field(default_factory=lambda: int(os.getenv("GATEWAY_PORT", "1337")))
    log_level: str = field(default_factory=lambda: os.getenv("LOG_LEVEL", "INFO").upper())

    # Client access
    api_token: str = field(default_factory=lambda: os.getenv("API_TOKEN", ""))

    # Pipeline
    mode: str = field(default_factory=lambda: os.getenv("PIPELINE_MODE", "plain").strip().lower())
    plan_visibility: str = field(default_factory=lambda: os.getenv("PLAN_VISIBILITY", "reasoning").strip().lower())
    include_reasoning: bool = field(default_factory=lambda: _env_bool("INCLUDE_REASONING", "true"))

    # Providers
    reasoning: ProviderConfig = field(default_factory=lambda: _provider_from_env(
        REASONING_ROLE,
        "DEEPSEEK",
        "https://api.deepseek.com/v1/chat/completions",
        "deepseek-reasoner",
        "openai",
    ))
    generation: ProviderConfig = field(default_factory=lambda: _provider_from_env(
        GENERATION_ROLE,
        "ANTHROPIC",
        "https://api.anthropic.com/v1/messages",
        "claude-3-5-sonnet-20241022",
        "anthropic",
    ))

    def provider(self, role: str) -> ProviderConfig:
        """Default settings for a provider role."""
        if role == REASONING_ROLE:
            return self.reasoning
        if role == GENERATION_ROLE:
            return self.generation
        raise KeyError(role)

    @property
    def model_id(self) -> str:
        """Composite model name reported to clients."""
        return f"{self.reasoning.model}_{self.generation.model}"


# Global config instance
config = Config()
