"""Tests for the wire codecs and the outgoing encoders."""
import json

import pytest

from conftest import anthropic_sse, make_provider, openai_sse
from gateway.codec import (
    AnthropicCodec,
    OpenAICodec,
    encode_completion,
    encode_outgoing,
    encode_terminal,
    get_codec,
)
from gateway.errors import UpstreamProtocolError
from gateway.models import (
    Delta,
    ErrorEvent,
    FinishReason,
    OutgoingFrame,
    Phase,
    Prompt,
    StageEnd,
    Usage,
)


def decode_all(codec, body: bytes):
    events = []
    for line in body.decode().splitlines():
        events += codec.decode_stream_line(line)
    return events


# ============================================================================
# OpenAI-compatible
# ============================================================================

def test_openai_stream_maps_reasoning_and_content():
    """reasoning_content and content land in their own phases, in order."""
    codec = OpenAICodec("deepseek")
    events = decode_all(codec, openai_sse(reasoning=["Let me ", "think."], content=["Hi", "!"]))

    assert events == [
        Delta(Phase.REASONING, "Let me "),
        Delta(Phase.REASONING, "think."),
        Delta(Phase.CONTENT, "Hi"),
        Delta(Phase.CONTENT, "!"),
        StageEnd(Phase.CONTENT, FinishReason.STOP),
    ]
    assert codec.finished


def test_openai_stream_accepts_reasoning_field_name():
    codec = OpenAICodec()
    line = 'data: {"choices":[{"delta":{"reasoning":"hmm"},"finish_reason":null}]}'
    assert codec.decode_stream_line(line) == [Delta(Phase.REASONING, "hmm")]


def test_openai_finish_is_held_until_the_sentinel():
    codec = OpenAICodec()
    line = 'data: {"choices":[{"delta":{"content":"end"},"finish_reason":"length"}]}'
    assert codec.decode_stream_line(line) == [Delta(Phase.CONTENT, "end")]
    assert not codec.finished
    assert codec.decode_stream_line("data: [DONE]") == [StageEnd(Phase.CONTENT, FinishReason.LENGTH)]


def test_openai_usage_chunk_after_finish_is_reported():
    usage = {
        "prompt_tokens": 10,
        "completion_tokens": 20,
        "prompt_cache_hit_tokens": 4,
        "completion_tokens_details": {"reasoning_tokens": 15},
    }
    codec = OpenAICodec("deepseek")
    events = decode_all(codec, openai_sse(reasoning=["a"], content=["b"], usage=usage))

    assert events[-1] == StageEnd(Phase.CONTENT, FinishReason.STOP)
    assert events[-1].usage == Usage(input_tokens=10, output_tokens=20, reasoning_tokens=15, cached_tokens=4)
    assert events[-1].usage.total_tokens == 30


def test_openai_finish_without_sentinel_is_flushed():
    codec = OpenAICodec()
    codec.decode_stream_line('data: {"choices":[{"delta":{},"finish_reason":"stop"}]}')

    assert codec.flush() == [StageEnd(Phase.REASONING, FinishReason.STOP)]
    assert codec.finished
    assert codec.flush() == []
    assert OpenAICodec().flush() == []



def test_sentinel_ends_stream_and_later_lines_are_ignored():
    codec = OpenAICodec()
    assert codec.decode_stream_line("data: [DONE]") == [StageEnd(Phase.REASONING, FinishReason.STOP)]
    assert codec.decode_stream_line("data: not json at all") == []


def test_non_data_lines_are_skipped():
    codec = OpenAICodec()
    for line in ("", ": keep-alive", "event: message", "id: 7", "retry: 100"):
        assert codec.decode_stream_line(line) == []


def test_unparseable_data_line_is_a_protocol_error():
    codec = OpenAICodec("deepseek")
    with pytest.raises(UpstreamProtocolError):
        codec.decode_stream_line("data: {broken")


def test_openai_error_payload_becomes_error_event():
    codec = OpenAICodec()
    line = 'data: {"error":{"type":"rate_limit_error","message":"slow down"}}'
    assert codec.decode_stream_line(line) == [ErrorEvent("upstream_rate_limited", "slow down")]
    assert codec.finished


def test_openai_aggregate_response():
    codec = OpenAICodec()
    raw = json.dumps({
        "choices": [{
            "message": {"role": "assistant", "reasoning_content": "why", "content": "because"},
            "finish_reason": "stop",
        }],
        "usage": {"prompt_tokens": 5, "completion_tokens": 7, "prompt_tokens_details": {"cached_tokens": 2}},
    })
    events = codec.decode_aggregate(raw)
    assert events == [
        Delta(Phase.REASONING, "why"),
        Delta(Phase.CONTENT, "because"),
        StageEnd(Phase.CONTENT, FinishReason.STOP),
    ]
    assert events[-1].usage == Usage(input_tokens=5, output_tokens=7, cached_tokens=2)


def test_openai_aggregate_without_choices_is_protocol_error():
    with pytest.raises(UpstreamProtocolError):
        OpenAICodec().decode_aggregate('{"id": "x"}')


def test_openai_request_body_and_headers():
    provider = make_provider(
        headers={"X-Trace": "1"},
        body={"temperature": 0.2, "messages": "ignored", "stream": "ignored"},
    )
    prompt = Prompt(messages=[{"role": "user", "content": "hi"}], system="be brief")
    codec = OpenAICodec()

    body = codec.encode_request(provider, prompt, stream=True)
    assert body["model"] == "deepseek-reasoner"
    assert body["stream"] is True
    assert body["stream_options"] == {"include_usage": True}
    assert body["temperature"] == 0.2
    assert body["messages"] == [
        {"role": "system", "content": "be brief"},
        {"role": "user", "content": "hi"},
    ]

    headers = codec.build_headers(provider, stream=True)
    assert headers["Authorization"] == "Bearer deepseek-key"
    assert headers["X-Trace"] == "1"


# ============================================================================
# Anthropic
# ============================================================================

def test_anthropic_stream_decodes_text_deltas():
    codec = AnthropicCodec("anthropic")
    events = decode_all(codec, anthropic_sse(["Hello", " world"], stop_reason="max_tokens", input_tokens=30))

    assert events == [
        Delta(Phase.CONTENT, "Hello"),
        Delta(Phase.CONTENT, " world"),
        StageEnd(Phase.CONTENT, FinishReason.LENGTH),
    ]
    # Input counts come from message_start, the cumulative output count from message_delta
    assert events[-1].usage == Usage(input_tokens=30, output_tokens=3)


def test_anthropic_thinking_delta_is_reasoning():
    codec = AnthropicCodec()
    line = 'data: {"type":"content_block_delta","delta":{"type":"thinking_delta","thinking":"plan"}}'
    assert codec.decode_stream_line(line) == [Delta(Phase.REASONING, "plan")]


def test_anthropic_error_event():
    codec = AnthropicCodec()
    line = 'data: {"type":"error","error":{"type":"overloaded_error","message":"Overloaded"}}'
    assert codec.decode_stream_line(line) == [ErrorEvent("upstream_rate_limited", "Overloaded")]


def test_anthropic_aggregate_response():
    raw = json.dumps({
        "type": "message",
        "content": [{"type": "thinking", "thinking": "hm"}, {"type": "text", "text": "done"}],
        "stop_reason": "end_turn",
        "usage": {"input_tokens": 9, "output_tokens": 4, "cache_read_input_tokens": 6},
    })
    events = AnthropicCodec().decode_aggregate(raw)
    assert events == [
        Delta(Phase.REASONING, "hm"),
        Delta(Phase.CONTENT, "done"),
        StageEnd(Phase.CONTENT, FinishReason.STOP),
    ]
    assert events[-1].usage == Usage(input_tokens=9, output_tokens=4, cached_tokens=6)


def test_anthropic_request_moves_system_out_of_messages():
    provider = make_provider("anthropic", "anthropic", body={"max_tokens": 1000})
    prompt = Prompt(
        messages=[
            {"role": "user", "content": "hi"},
            {"role": "assistant", "content": "   "},
            {"role": "assistant", "content": "<thinking>\nx</thinking>"},
        ],
        system="rules",
    )
    codec = AnthropicCodec()
    body = codec.encode_request(provider, prompt, stream=False)

    assert body["system"] == "rules"
    assert body["max_tokens"] == 1000
    assert body["stream"] is False
    assert [m["role"] for m in body["messages"]] == ["user", "assistant"]

    headers = codec.build_headers(provider, stream=False)
    assert headers["x-api-key"] == "anthropic-key"
    assert headers["anthropic-version"] == "2023-06-01"


def test_get_codec_rejects_unknown_format():
    assert isinstance(get_codec("anthropic"), AnthropicCodec)
    with pytest.raises(ValueError):
        get_codec("grpc")


# ============================================================================
# Outgoing
# ============================================================================

def test_encode_outgoing_frame():
    frame = OutgoingFrame(id="chatcmpl-1", created=10, model="m", reasoning_content="r")
    line = encode_outgoing(frame)

    assert line.startswith("data: ") and line.endswith("\n\n")
    chunk = json.loads(line[6:])
    assert chunk["object"] == "chat.completion.chunk"
    assert chunk["choices"][0]["delta"] == {"reasoning_content": "r"}
    assert chunk["choices"][0]["finish_reason"] is None
    assert encode_terminal() == "data: [DONE]\n\n"


def test_encode_completion():
    document = encode_completion("chatcmpl-1", 10, "m", content="answer", reasoning="why")
    assert document["object"] == "chat.completion"
    assert document["choices"][0]["message"] == {
        "role": "assistant",
        "content": "answer",
        "reasoning_content": "why",
    }
    assert document["choices"][0]["finish_reason"] == "stop"


def test_encode_completion_with_usage():
    usage = Usage(input_tokens=10, output_tokens=20, reasoning_tokens=15) + Usage(input_tokens=5, output_tokens=2)
    document = encode_completion("chatcmpl-1", 10, "m", content="answer", usage=usage)

    assert document["usage"]["prompt_tokens"] == 15
    assert document["usage"]["completion_tokens"] == 22
    assert document["usage"]["total_tokens"] == 37
    assert document["usage"]["completion_tokens_details"] == {"reasoning_tokens": 15}
    assert "usage" not in encode_completion("chatcmpl-1", 10, "m", content="answer")
