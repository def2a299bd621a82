"""Turns the orchestrator's event sequence into the client-facing response."""

import logging
import time
import uuid
from contextlib import aclosing
from typing import Any, AsyncGenerator, AsyncIterator, Dict, List, Optional

from .codec import encode_completion, encode_outgoing, encode_terminal
from .errors import ClientDisconnected, error_from_kind
from .models import (
    CanonicalEvent,
    Delta,
    ErrorEvent,
    FinishReason,
    OutgoingFrame,
    Phase,
    StageEnd,
    Usage,
)

logger = logging.getLogger(__name__)


class StreamMultiplexer:
    """
    Emits one request's canonical events as an SSE session or as a single
    chat.completion document.

    id, created and model are fixed here and never change afterwards, no
    matter how many upstream calls feed the session.
    """

    def __init__(
        self,
        model: str,
        include_reasoning: bool = True,
        completion_id: Optional[str] = None,
        created: Optional[int] = None,
    ):
        self.id = completion_id or f"chatcmpl-{uuid.uuid4().hex}"
        self.created = created if created is not None else int(time.time())
        self.model = model
        self.include_reasoning = include_reasoning
        self.frames_written = 0
        self.finish_reason: Optional[FinishReason] = None
        self.usage: Optional[Usage] = None

    def _frame(self, **fields: Any) -> OutgoingFrame:
        return OutgoingFrame(id=self.id, created=self.created, model=self.model, **fields)

    def _emit(self, frame: OutgoingFrame) -> str:
        self.frames_written += 1
        return encode_outgoing(frame)

    async def stream(self, events: AsyncGenerator[CanonicalEvent, None]) -> AsyncIterator[str]:
        """
        Incremental mode: one SSE frame per event, written as it arrives.

        Ends with a finish_reason frame and the [DONE] sentinel on both
        success and failure. If the event sequence stops without a terminal
        event (cancellation), nothing more is written.
        """
        async with aclosing(events):
            yield self._emit(self._frame(role="assistant"))

            async for event in events:
                if isinstance(event, Delta):
                    if event.phase == Phase.REASONING:
                        yield self._emit(self._frame(reasoning_content=event.text))
                    else:
                        yield self._emit(self._frame(content=event.text))

                elif isinstance(event, StageEnd):
                    self.finish_reason = event.reason
                    self.usage = event.usage
                    yield self._emit(self._frame(finish_reason=event.reason, usage=event.usage))
                    yield encode_terminal()
                    return

                elif isinstance(event, ErrorEvent):
                    self.finish_reason = FinishReason.ERROR
                    logger.warning(f"Session {self.id} terminated with {event.kind}: {event.message}")
                    yield self._emit(self._frame(
                        finish_reason=FinishReason.ERROR,
                        error=self._error_body(event),
                    ))
                    yield encode_terminal()
                    return

        logger.info(f"Session {self.id} ended without a terminal event")

    async def aggregate(self, events: AsyncGenerator[CanonicalEvent, None]) -> Dict[str, Any]:
        """
        Aggregate mode: consume everything, then build one document.

        Raises the classified error if the pipeline failed; nothing has been
        written at that point, so the caller can still answer with a clean
        error response.
        """
        reasoning: List[str] = []
        content: List[str] = []

        async with aclosing(events):
            async for event in events:
                if isinstance(event, Delta):
                    if event.phase == Phase.REASONING:
                        reasoning.append(event.text)
                    else:
                        content.append(event.text)
                elif isinstance(event, StageEnd):
                    self.finish_reason = event.reason
                    self.usage = event.usage
                elif isinstance(event, ErrorEvent):
                    self.finish_reason = FinishReason.ERROR
                    raise error_from_kind(event.kind, event.message, event.code)

        if self.finish_reason is None:
            raise ClientDisconnected(f"Session {self.id} was cancelled")

        return encode_completion(
            id=self.id,
            created=self.created,
            model=self.model,
            content="".join(content),
            reasoning="".join(reasoning) if self.include_reasoning else None,
            finish_reason=self.finish_reason,
            usage=self.usage,
        )

    @staticmethod
    def _error_body(event: ErrorEvent) -> Dict[str, Any]:
        body = {"message": event.message, "type": event.kind}
        if event.code is not None:
            body["code"] = event.code
        return body
