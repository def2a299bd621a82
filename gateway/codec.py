"""
Wire codecs.

Each upstream wire format gets one WireCodec subclass that knows how to
build a request body and headers and how to turn the provider's reply,
streamed or not, into canonical events. A codec instance is created per
upstream call because stream decoding tracks the current phase.

The outward-facing OpenAI encoding (chunks, terminal sentinel, aggregate
completion) lives at the bottom of this module.
"""

import json
import logging
from typing import Any, Dict, List, Optional, Type

from .config import ProviderConfig
from .errors import UpstreamProtocolError
from .models import (
    CanonicalEvent,
    Delta,
    ErrorEvent,
    FinishReason,
    OutgoingFrame,
    Phase,
    Prompt,
    StageEnd,
    Usage,
)

logger = logging.getLogger(__name__)

SSE_DONE = "[DONE]"
ANTHROPIC_VERSION = "2023-06-01"

# Request keys owned by the gateway; overrides cannot replace them
PROTECTED_BODY_KEYS = ("messages", "stream", "system")

_FINISH_REASONS = {
    "stop": FinishReason.STOP,
    "end_turn": FinishReason.STOP,
    "stop_sequence": FinishReason.STOP,
    "length": FinishReason.LENGTH,
    "max_tokens": FinishReason.LENGTH,
    "error": FinishReason.ERROR,
}

_ERROR_KINDS = {
    "rate_limit_error": "upstream_rate_limited",
    "overloaded_error": "upstream_rate_limited",
    "timeout_error": "upstream_timeout",
}


def map_finish_reason(value: Optional[str]) -> FinishReason:
    """Map a provider stop reason onto the canonical enum."""
    return _FINISH_REASONS.get(value or "stop", FinishReason.STOP)


def _count(source: Dict[str, Any], key: str) -> int:
    value = source.get(key)
    return value if isinstance(value, int) else 0


def openai_usage(raw: Dict[str, Any]) -> Usage:
    """
    Usage from an OpenAI-style `usage` object.

    DeepSeek reports cache hits as `prompt_cache_hit_tokens`; OpenAI nests
    them under `prompt_tokens_details`.
    """
    prompt_details = raw.get("prompt_tokens_details") or {}
    completion_details = raw.get("completion_tokens_details") or {}
    return Usage(
        input_tokens=_count(raw, "prompt_tokens"),
        output_tokens=_count(raw, "completion_tokens"),
        reasoning_tokens=_count(completion_details, "reasoning_tokens"),
        cached_tokens=_count(raw, "prompt_cache_hit_tokens") or _count(prompt_details, "cached_tokens"),
    )


def anthropic_usage(raw: Dict[str, Any], previous: Optional[Usage] = None) -> Usage:
    """
    Usage from an Anthropic `usage` object.

    Streams report input counts on message_start and a cumulative output
    count on message_delta, so missing keys keep their previous values.
    """
    previous = previous or Usage()
    return Usage(
        input_tokens=_count(raw, "input_tokens") or previous.input_tokens,
        output_tokens=_count(raw, "output_tokens") or previous.output_tokens,
        cached_tokens=_count(raw, "cache_read_input_tokens") or previous.cached_tokens,
        cache_write_tokens=_count(raw, "cache_creation_input_tokens") or previous.cache_write_tokens,
    )



def _sse_data(line: str) -> Optional[str]:
    """Payload of an SSE data line, or None for anything else."""
    line = line.strip()
    if not line.startswith("data:"):
        # Blank keep-alives, comments and "event:" lines carry nothing for us
        return None
    return line[5:].strip()


def _parse_json(data: str, role: Optional[str] = None) -> Dict[str, Any]:
    try:
        payload = json.loads(data)
    except json.JSONDecodeError as e:
        raise UpstreamProtocolError(f"Unparseable upstream payload: {data[:100]}", role=role) from e
    if not isinstance(payload, dict):
        raise UpstreamProtocolError(f"Unexpected upstream payload: {data[:100]}", role=role)
    return payload


class WireCodec:
    """
    Base class for upstream wire formats.

    Subclasses implement request encoding and both decoding paths. The
    streaming path is driven one complete line at a time; line buffering
    across network reads happens in the provider adapter.
    """

    name = ""

    def __init__(self, role: Optional[str] = None):
        self.role = role
        self._phase = Phase.REASONING
        self._finished = False
        self.usage: Optional[Usage] = None

    @property
    def finished(self) -> bool:
        """True once a terminal event or the sentinel has been decoded."""
        return self._finished

    def build_headers(self, provider: ProviderConfig, stream: bool) -> Dict[str, str]:
        raise NotImplementedError

    def encode_request(self, provider: ProviderConfig, prompt: Prompt, stream: bool) -> Dict[str, Any]:
        raise NotImplementedError

    def decode_stream_line(self, line: str) -> List[CanonicalEvent]:
        """
        Decode one complete upstream line.

        Returns the events it carries, usually zero or one; a chunk holding
        text and a finish marker together may yield both, in order. Lines after
        the sentinel are ignored. Raises UpstreamProtocolError for a data
        line that is not valid JSON.
        """
        if self._finished:
            return []
        data = _sse_data(line)
        if data is None or not data:
            return []
        if data == SSE_DONE:
            return self._end(FinishReason.STOP)
        return self._decode_chunk(_parse_json(data, self.role))

    def decode_aggregate(self, raw: str) -> List[CanonicalEvent]:
        raise NotImplementedError

    def flush(self) -> List[CanonicalEvent]:
        """Events still owed when the upstream body ends without a sentinel."""
        return []

    def _decode_chunk(self, payload: Dict[str, Any]) -> List[CanonicalEvent]:
        raise NotImplementedError

    def _delta(self, phase: Phase, text: Optional[str]) -> List[CanonicalEvent]:
        if not text:
            return []
        self._phase = phase
        return [Delta(phase=phase, text=text)]

    def _end(self, reason: FinishReason) -> List[CanonicalEvent]:
        self._finished = True
        return [StageEnd(phase=self._phase, reason=reason, usage=self.usage)]

    def _error(self, error: Any) -> List[CanonicalEvent]:
        self._finished = True
        if isinstance(error, dict):
            kind = _ERROR_KINDS.get(str(error.get("type", "")), "upstream_error")
            message = str(error.get("message") or error)
        else:
            kind, message = "upstream_error", str(error)
        return [ErrorEvent(kind=kind, message=message)]

    @staticmethod
    def _apply_body(request: Dict[str, Any], provider: ProviderConfig) -> Dict[str, Any]:
        for key, value in provider.body.items():
            if key not in PROTECTED_BODY_KEYS:
                request[key] = value
        return request


class OpenAICodec(WireCodec):
    """
    OpenAI-compatible chat completions.

    Reasoning text arrives as `reasoning_content` (DeepSeek) or `reasoning`
    (other compatible servers); answer text as `content`.
    """

    name = "openai"

    def __init__(self, role: Optional[str] = None):
        super().__init__(role)
        # finish_reason seen; the usage chunk may still follow before [DONE]
        self._pending: Optional[FinishReason] = None

    def build_headers(self, provider: ProviderConfig, stream: bool) -> Dict[str, str]:
        headers = {
            "Authorization": f"Bearer {provider.api_key}",
            "Content-Type": "application/json",
            "Accept": "text/event-stream" if stream else "application/json",
        }
        headers.update(provider.headers)
        return headers

    def encode_request(self, provider: ProviderConfig, prompt: Prompt, stream: bool) -> Dict[str, Any]:
        messages: List[Dict[str, str]] = []
        if prompt.system:
            messages.append({"role": "system", "content": prompt.system})
        messages.extend(dict(m) for m in prompt.messages)

        request = {
            "model": provider.model,
            "messages": messages,
            "stream": stream,
        }
        if stream:
            request["stream_options"] = {"include_usage": True}
        return self._apply_body(request, provider)

    def decode_stream_line(self, line: str) -> List[CanonicalEvent]:
        if not self._finished and _sse_data(line) == SSE_DONE:
            return self._end(self._pending or FinishReason.STOP)
        return super().decode_stream_line(line)

    def flush(self) -> List[CanonicalEvent]:
        if self._finished or self._pending is None:
            return []
        return self._end(self._pending)

    def _decode_chunk(self, payload: Dict[str, Any]) -> List[CanonicalEvent]:
        if "error" in payload:
            return self._error(payload["error"])
        if payload.get("usage"):
            self.usage = openai_usage(payload["usage"])

        choices = payload.get("choices") or []
        if not choices:
            # Usage-only or keep-alive chunk
            return []
        choice = choices[0]
        delta = choice.get("delta") or {}

        events: List[CanonicalEvent] = []
        events += self._delta(Phase.REASONING, delta.get("reasoning_content") or delta.get("reasoning"))
        events += self._delta(Phase.CONTENT, delta.get("content"))
        if choice.get("finish_reason"):
            self._pending = map_finish_reason(choice["finish_reason"])
        return events

    def decode_aggregate(self, raw: str) -> List[CanonicalEvent]:
        payload = _parse_json(raw, self.role)
        if "error" in payload:
            return self._error(payload["error"])
        if payload.get("usage"):
            self.usage = openai_usage(payload["usage"])

        choices = payload.get("choices")
        if not choices:
            raise UpstreamProtocolError("Upstream response has no choices", role=self.role)
        choice = choices[0]
        message = choice.get("message") or {}

        events: List[CanonicalEvent] = []
        events += self._delta(Phase.REASONING, message.get("reasoning_content") or message.get("reasoning"))
        events += self._delta(Phase.CONTENT, message.get("content"))
        events += self._end(map_finish_reason(choice.get("finish_reason")))
        return events


class AnthropicCodec(WireCodec):
    """Anthropic native messages API."""

    name = "anthropic"

    def __init__(self, role: Optional[str] = None):
        super().__init__(role)
        self._stop_reason: Optional[str] = None

    def build_headers(self, provider: ProviderConfig, stream: bool) -> Dict[str, str]:
        headers = {
            "x-api-key": provider.api_key,
            "anthropic-version": ANTHROPIC_VERSION,
            "content-type": "application/json",
            "accept": "text/event-stream" if stream else "application/json",
        }
        headers.update(provider.headers)
        return headers

    def encode_request(self, provider: ProviderConfig, prompt: Prompt, stream: bool) -> Dict[str, Any]:
        # The messages API takes the system prompt separately and rejects blank turns
        messages = [
            {"role": m["role"], "content": m["content"]}
            for m in prompt.messages
            if m["role"] != "system" and m["content"].strip()
        ]
        max_tokens = 4096 if "claude-3-opus" in provider.model else 8192

        request: Dict[str, Any] = {
            "model": provider.model,
            "messages": messages,
            "stream": stream,
            "max_tokens": max_tokens,
            "temperature": 0.7,
            "top_p": 0.95,
        }
        if prompt.system:
            request["system"] = prompt.system
        return self._apply_body(request, provider)

    def _decode_chunk(self, payload: Dict[str, Any]) -> List[CanonicalEvent]:
        event_type = payload.get("type")

        if event_type == "content_block_delta":
            delta = payload.get("delta") or {}
            if delta.get("type") == "thinking_delta":
                return self._delta(Phase.REASONING, delta.get("thinking"))
            return self._delta(Phase.CONTENT, delta.get("text"))

        if event_type == "message_start":
            usage = (payload.get("message") or {}).get("usage")
            if usage:
                self.usage = anthropic_usage(usage, self.usage)
            return []

        if event_type == "message_delta":
            self._stop_reason = (payload.get("delta") or {}).get("stop_reason") or self._stop_reason
            if payload.get("usage"):
                self.usage = anthropic_usage(payload["usage"], self.usage)
            return []

        if event_type == "message_stop":
            return self._end(map_finish_reason(self._stop_reason))

        if event_type == "error":
            return self._error(payload.get("error") or payload)

        # content_block_start/stop, ping and unknown types
        return []

    def decode_aggregate(self, raw: str) -> List[CanonicalEvent]:
        payload = _parse_json(raw, self.role)
        if payload.get("type") == "error":
            return self._error(payload.get("error") or payload)
        if payload.get("usage"):
            self.usage = anthropic_usage(payload["usage"])

        blocks = payload.get("content")
        if not isinstance(blocks, list):
            raise UpstreamProtocolError("Upstream response has no content blocks", role=self.role)

        events: List[CanonicalEvent] = []
        for block in blocks:
            if block.get("type") == "thinking":
                events += self._delta(Phase.REASONING, block.get("thinking"))
            elif block.get("type") == "text":
                events += self._delta(Phase.CONTENT, block.get("text"))
        events += self._end(map_finish_reason(payload.get("stop_reason")))
        return events


CODECS: Dict[str, Type[WireCodec]] = {
    OpenAICodec.name: OpenAICodec,
    AnthropicCodec.name: AnthropicCodec,
}


def get_codec(wire_format: str, role: Optional[str] = None) -> WireCodec:
    """Fresh codec instance for one upstream call."""
    try:
        return CODECS[wire_format](role)
    except KeyError:
        raise ValueError(f"Unknown wire format: {wire_format}") from None


# =============================================================================
# Outgoing (client-facing) encoding
# =============================================================================

def encode_outgoing(frame: OutgoingFrame) -> str:
    """Format a frame as one SSE event."""
    return f"data: {json.dumps(frame.to_chunk(), ensure_ascii=False)}\n\n"


def encode_terminal() -> str:
    """The stream termination sentinel."""
    return f"data: {SSE_DONE}\n\n"


def encode_completion(
    id: str,
    created: int,
    model: str,
    content: str,
    reasoning: Optional[str] = None,
    finish_reason: FinishReason = FinishReason.STOP,
    usage: Optional[Usage] = None,
) -> Dict[str, Any]:
    """Non-streaming chat.completion document."""
    message: Dict[str, Any] = {"role": "assistant", "content": content}
    if reasoning is not None:
        message["reasoning_content"] = reasoning

    document = {
        "id": id,
        "object": "chat.completion",
        "created": created,
        "model": model,
        "choices": [{
            "index": 0,
            "message": message,
            "finish_reason": finish_reason.value,
        }],
    }
    if usage is not None:
        document["usage"] = usage.to_dict()
    return document
