"""Pytest fixtures for gateway tests."""
import asyncio
import json
import os
from typing import Any, Dict, Iterable, List, Optional

import httpx
import pytest

# Seed the environment before gateway.config is imported
os.environ.update({
    "API_TOKEN": "test-token",
    "PIPELINE_MODE": "plain",
    "DEEPSEEK_API_KEY": "ds-key",
    "DEEPSEEK_API_URL": "http://reasoner.test/v1/chat/completions",
    "DEEPSEEK_MODEL": "deepseek-reasoner",
    "DEEPSEEK_WIRE_FORMAT": "openai",
    "ANTHROPIC_API_KEY": "an-key",
    "ANTHROPIC_API_URL": "http://generator.test/v1/messages",
    "ANTHROPIC_MODEL": "claude-3-5-sonnet-20241022",
    "ANTHROPIC_WIRE_FORMAT": "anthropic",
    "UPSTREAM_MAX_RETRIES": "3",
    "UPSTREAM_RETRY_BACKOFF": "0",
    "UPSTREAM_CLOSE_GRACE": "1",
})

from fastapi.testclient import TestClient  # noqa: E402

from gateway.config import ProviderConfig, config  # noqa: E402
from gateway.main import app  # noqa: E402

REASONER_URL = os.environ["DEEPSEEK_API_URL"]
GENERATOR_URL = os.environ["ANTHROPIC_API_URL"]
AUTH = {"Authorization": "Bearer test-token"}


# ============================================================================
# Upstream stubs
# ============================================================================

def openai_sse(
    reasoning: Iterable[str] = (),
    content: Iterable[str] = (),
    finish: str = "stop",
    usage: Optional[Dict[str, Any]] = None,
) -> bytes:
    """A DeepSeek-style chat.completion.chunk stream, with a trailing usage chunk if given."""
    def chunk(delta: Dict[str, Any], finish_reason: Optional[str] = None) -> str:
        payload = {
            "id": "up-1",
            "object": "chat.completion.chunk",
            "choices": [{"index": 0, "delta": delta, "finish_reason": finish_reason}],
        }
        return f"data: {json.dumps(payload)}\n\n"

    lines = [chunk({"role": "assistant"})]
    lines += [chunk({"reasoning_content": text, "content": None}) for text in reasoning]
    lines += [chunk({"content": text}) for text in content]
    lines.append(chunk({}, finish))
    if usage is not None:
        lines.append(f"data: {json.dumps({'id': 'up-1', 'choices': [], 'usage': usage})}\n\n")
    lines.append("data: [DONE]\n\n")
    return "".join(lines).encode()


def anthropic_sse(text: Iterable[str] = (), stop_reason: str = "end_turn", input_tokens: int = 12) -> bytes:
    """An Anthropic messages API event stream."""
    start = {
        "id": "msg_1",
        "role": "assistant",
        "content": [],
        "usage": {"input_tokens": input_tokens, "output_tokens": 1},
    }
    events: List[Dict[str, Any]] = [
        {"type": "message_start", "message": start},
        {"type": "content_block_start", "index": 0, "content_block": {"type": "text", "text": ""}},
        {"type": "ping"},
    ]
    events += [
        {"type": "content_block_delta", "index": 0, "delta": {"type": "text_delta", "text": piece}}
        for piece in text
    ]
    events += [
        {"type": "content_block_stop", "index": 0},
        {"type": "message_delta", "delta": {"stop_reason": stop_reason}, "usage": {"output_tokens": 3}},
        {"type": "message_stop"},
    ]
    return "".join(f"event: {e['type']}\ndata: {json.dumps(e)}\n\n" for e in events).encode()


def sse_response(body: bytes) -> httpx.Response:
    return httpx.Response(200, content=body, headers={"content-type": "text/event-stream"})


class ScriptedStream(httpx.AsyncByteStream):
    """
    Response body delivered in fixed network-sized pieces.

    After the pieces it can raise an error or block until cancelled, and it
    records whether the client closed it.
    """

    def __init__(self, chunks: Iterable[bytes], fail: Optional[Exception] = None, hang: bool = False):
        self.chunks = list(chunks)
        self.fail = fail
        self.hang = hang
        self.sent = 0
        self.closed = False

    async def __aiter__(self):
        for chunk in self.chunks:
            self.sent += 1
            yield chunk
        if self.fail is not None:
            raise self.fail
        if self.hang:
            await asyncio.Event().wait()

    async def aclose(self):
        self.closed = True


def make_provider(role: str = "deepseek", wire_format: str = "openai", **overrides) -> ProviderConfig:
    """ProviderConfig with test-friendly retry settings."""
    settings = {
        "role": role,
        "endpoint": REASONER_URL if role == "deepseek" else GENERATOR_URL,
        "wire_format": wire_format,
        "api_key": f"{role}-key",
        "model": "deepseek-reasoner" if role == "deepseek" else "claude-3-5-sonnet-20241022",
        "max_retries": 3,
        "retry_backoff": 0,
        "close_grace": 1,
    }
    settings.update(overrides)
    return ProviderConfig(**settings)


def mock_client(handler) -> httpx.AsyncClient:
    """AsyncClient whose requests are answered by handler(request)."""
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


# ============================================================================
# Fixtures
# ============================================================================

@pytest.fixture
def test_client():
    """TestClient for the gateway FastAPI app."""
    return TestClient(app)


@pytest.fixture
def auth_headers():
    return dict(AUTH)


@pytest.fixture
def full_mode(monkeypatch):
    """Switch the process config to the architect/editor pipeline."""
    monkeypatch.setattr(config, "mode", "full")
    monkeypatch.setattr(config, "plan_visibility", "reasoning")
    return config
