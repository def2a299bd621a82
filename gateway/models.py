"""Data models for the gateway."""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, Field


# ============================================================================
# OpenAI-Compatible Request Models
# ============================================================================

class ChatMessage(BaseModel):
    """OpenAI chat message format."""
    role: Literal["system", "user", "assistant"]
    content: str


class ProviderOverride(BaseModel):
    """Per-request headers/body merged onto a provider's defaults."""
    headers: Dict[str, str] = Field(default_factory=dict)
    body: Dict[str, Any] = Field(default_factory=dict)


class ChatCompletionRequest(BaseModel):
    """OpenAI chat completion request with gateway extensions."""
    model: Optional[str] = None
    messages: List[ChatMessage]
    stream: bool = False
    verbose: bool = False
    system: Optional[str] = None
    # Extensions: reasoning-provider and generation-provider overrides
    deepseek_config: ProviderOverride = Field(default_factory=ProviderOverride)
    anthropic_config: ProviderOverride = Field(default_factory=ProviderOverride)

    def system_prompt(self) -> Optional[str]:
        """The system prompt from the field, else from the first system message."""
        if self.system:
            return self.system
        for message in self.messages:
            if message.role == "system":
                return message.content
        return None

    def conversation(self) -> List[Dict[str, str]]:
        """Non-system messages as plain dicts."""
        return [
            {"role": m.role, "content": m.content}
            for m in self.messages
            if m.role != "system"
        ]


# ============================================================================
# Internal State Models
# ============================================================================

class Phase(str, Enum):
    """Which half of the answer a piece of text belongs to."""
    REASONING = "reasoning"
    CONTENT = "content"


class FinishReason(str, Enum):
    """Why a stage (or the whole session) ended."""
    STOP = "stop"
    LENGTH = "length"
    ERROR = "error"


class PipelineState(str, Enum):
    """Orchestrator state."""
    IDLE = "idle"
    RUNNING = "running"
    STAGE_COMPLETE = "stage_complete"
    DONE = "done"
    FAILED = "failed"
    CANCELLED = "cancelled"


# ============================================================================
# Canonical Events
# ============================================================================

@dataclass(frozen=True)
class Delta:
    """A piece of generated text."""
    phase: Phase
    text: str


@dataclass(frozen=True)
class Usage:
    """Token counts reported by one or more upstream calls."""
    input_tokens: int = 0
    output_tokens: int = 0
    reasoning_tokens: int = 0
    cached_tokens: int = 0
    cache_write_tokens: int = 0

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens

    def __add__(self, other: "Usage") -> "Usage":
        return Usage(
            input_tokens=self.input_tokens + other.input_tokens,
            output_tokens=self.output_tokens + other.output_tokens,
            reasoning_tokens=self.reasoning_tokens + other.reasoning_tokens,
            cached_tokens=self.cached_tokens + other.cached_tokens,
            cache_write_tokens=self.cache_write_tokens + other.cache_write_tokens,
        )

    def to_dict(self) -> Dict[str, Any]:
        """OpenAI usage object."""
        return {
            "prompt_tokens": self.input_tokens,
            "completion_tokens": self.output_tokens,
            "total_tokens": self.total_tokens,
            "prompt_tokens_details": {
                "cached_tokens": self.cached_tokens,
                "cache_write_tokens": self.cache_write_tokens,
            },
            "completion_tokens_details": {"reasoning_tokens": self.reasoning_tokens},
        }


@dataclass(frozen=True)
class StageEnd:
    """End of one provider call. usage is metadata and not part of equality."""
    phase: Phase
    reason: FinishReason = FinishReason.STOP
    usage: Optional[Usage] = field(default=None, compare=False)


@dataclass(frozen=True)
class ErrorEvent:
    """Terminal failure inside a provider call or the pipeline."""
    kind: str
    message: str
    code: Optional[str] = None


CanonicalEvent = Union[Delta, StageEnd, ErrorEvent]


@dataclass(frozen=True)
class Prompt:
    """What one stage sends upstream: a system prompt and chat messages."""
    messages: List[Dict[str, str]]
    system: Optional[str] = None


# ============================================================================
# Outgoing Frames
# ============================================================================

@dataclass(frozen=True)
class OutgoingFrame:
    """One client-visible chunk. id/created/model are fixed per session."""
    id: str
    created: int
    model: str
    reasoning_content: Optional[str] = None
    content: Optional[str] = None
    role: Optional[str] = None
    finish_reason: Optional[FinishReason] = None
    error: Optional[Dict[str, Any]] = None
    usage: Optional[Usage] = None

    def to_chunk(self) -> Dict[str, Any]:
        """OpenAI chat.completion.chunk dict."""
        delta: Dict[str, Any] = {}
        if self.role is not None:
            delta["role"] = self.role
        if self.reasoning_content is not None:
            delta["reasoning_content"] = self.reasoning_content
        if self.content is not None:
            delta["content"] = self.content

        chunk: Dict[str, Any] = {
            "id": self.id,
            "object": "chat.completion.chunk",
            "created": self.created,
            "model": self.model,
            "choices": [{
                "index": 0,
                "delta": delta,
                "finish_reason": self.finish_reason.value if self.finish_reason else None,
            }],
        }
        if self.error is not None:
            chunk["error"] = self.error
        if self.usage is not None:
            chunk["usage"] = self.usage.to_dict()
        return chunk
