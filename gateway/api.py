"""
OpenAI-compatible API endpoints.

Provides /v1/chat/completions and /v1/models. Every chat request passes
the gate in order: bearer token, request shape, provider override merge,
pipeline construction. Any failure there is answered with an error body
before an upstream call is made.
"""

import asyncio
import json
import logging
import secrets
import time
from typing import Any, AsyncIterator, Dict

from fastapi import APIRouter, Request
from fastapi.responses import StreamingResponse
from pydantic import ValidationError as PydanticValidationError

from .config import GENERATION_ROLE, REASONING_ROLE, ProviderConfig, config
from .errors import AuthError, ValidationError
from .models import ChatCompletionRequest
from .multiplexer import StreamMultiplexer
from .pipeline import Orchestrator, build_stages
from .state import tracker

logger = logging.getLogger(__name__)

router = APIRouter()


# ============================================================================
# Gate
# ============================================================================

def authenticate(authorization: str):
    """Check the bearer token against the configured one."""
    scheme, _, token = (authorization or "").partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        raise AuthError("Missing bearer token")
    if not config.api_token or not secrets.compare_digest(token.strip(), config.api_token):
        raise AuthError("Invalid bearer token")


def parse_request(body: Any) -> ChatCompletionRequest:
    """Validate the request body into a ChatCompletionRequest."""
    if not isinstance(body, dict):
        raise ValidationError("Request body must be a JSON object")

    try:
        chat = ChatCompletionRequest.model_validate(body)
    except PydanticValidationError as e:
        first = e.errors()[0]
        location = ".".join(str(part) for part in first.get("loc", ()))
        raise ValidationError(f"Invalid request: {location}: {first.get('msg')}") from None

    if not chat.messages:
        raise ValidationError("messages must not be empty")
    if not any(m.role == "user" for m in chat.messages):
        raise ValidationError("messages must contain at least one user message")
    if chat.system and any(m.role == "system" for m in chat.messages):
        raise ValidationError("system prompt given both as a field and as a system message")

    return chat


def merge_providers(chat: ChatCompletionRequest) -> Dict[str, ProviderConfig]:
    """Request-scoped provider snapshots; process defaults are left untouched."""
    return {
        REASONING_ROLE: config.reasoning.merged(
            headers=chat.deepseek_config.headers,
            body=chat.deepseek_config.body,
        ),
        GENERATION_ROLE: config.generation.merged(
            headers=chat.anthropic_config.headers,
            body=chat.anthropic_config.body,
        ),
    }


# ============================================================================
# Endpoints
# ============================================================================

@router.get("/v1/models")
async def list_models(request: Request):
    """
    List available models (OpenAI-compatible).

    The gateway serves a single composite model.
    """
    authenticate(request.headers.get("Authorization", ""))

    return {
        "object": "list",
        "data": [{
            "id": config.model_id,
            "object": "model",
            "created": int(time.time()),
            "owned_by": "reasoning-gateway",
        }],
    }


@router.post("/v1/chat/completions")
async def chat_completions(request: Request):
    """
    OpenAI-compatible chat completions.

    With stream=true the answer is relayed as SSE while the upstream calls
    are still running. Otherwise the whole pipeline runs first and a single
    chat.completion document is returned.
    """
    authenticate(request.headers.get("Authorization", ""))

    try:
        body = await request.json()
    except (json.JSONDecodeError, UnicodeDecodeError):
        raise ValidationError("Request body must be valid JSON") from None

    chat = parse_request(body)
    providers = merge_providers(chat)
    orchestrator = Orchestrator(chat, providers, build_stages(config.mode, config.plan_visibility))
    mux = StreamMultiplexer(
        model=chat.model or config.model_id,
        include_reasoning=config.include_reasoning,
    )

    logger.info(f"Chat completion: id={mux.id}, mode={config.mode}, "
                f"messages={len(chat.messages)}, stream={chat.stream}")

    if chat.stream:
        return StreamingResponse(
            _stream_session(orchestrator, mux),
            media_type="text/event-stream",
            headers={
                "X-Request-ID": mux.id,
                "Cache-Control": "no-cache",
                "Connection": "keep-alive",
            },
        )

    tracker.open(mux.id, orchestrator, stream=False)
    try:
        document = await mux.aggregate(orchestrator.run())
    finally:
        tracker.close(mux.id)

    if chat.verbose:
        document["x_stages"] = [output.summary() for output in orchestrator.context.outputs]
    return document


async def _stream_session(orchestrator: Orchestrator, mux: StreamMultiplexer) -> AsyncIterator[str]:
    """
    Relay one session's frames to the client.

    If the response is torn down early (client disconnect), the cancellation
    token is signalled so in-flight upstream reads stop and their
    connections are closed. The session is tracked only while this body
    is actually being served.
    """
    tracker.open(mux.id, orchestrator, stream=True)
    frames = mux.stream(orchestrator.run())
    try:
        async for frame in frames:
            yield frame
    finally:
        if mux.finish_reason is None:
            orchestrator.cancel()
            logger.info(f"Client left session {mux.id} after {mux.frames_written} frames")
        try:
            # Server-side cancellation must not cut the upstream close short
            await asyncio.shield(frames.aclose())
        finally:
            tracker.close(mux.id)
