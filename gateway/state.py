"""In-flight request tracking."""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict

from .models import PipelineState
from .pipeline import Orchestrator

logger = logging.getLogger(__name__)


@dataclass
class RequestRecord:
    """One in-flight request and the orchestrator serving it."""
    request_id: str
    orchestrator: Orchestrator
    stream: bool
    started_at: datetime = field(default_factory=datetime.now)


class RequestTracker:
    """
    Tracks requests across the process.

    Handles:
    - Request counters for /health
    - Cancelling every in-flight orchestrator on shutdown

    Only touched from the event loop, so updates have a single writer and
    need no lock.
    """

    def __init__(self):
        self._active: Dict[str, RequestRecord] = {}
        self.total = 0
        self.completed = 0
        self.failed = 0
        self.cancelled = 0

    def open(self, request_id: str, orchestrator: Orchestrator, stream: bool) -> RequestRecord:
        """Register a request that is about to run."""
        record = RequestRecord(request_id=request_id, orchestrator=orchestrator, stream=stream)
        self._active[request_id] = record
        self.total += 1
        return record

    def close(self, request_id: str):
        """Forget a finished request and count its outcome."""
        record = self._active.pop(request_id, None)
        if record is None:
            return

        state = record.orchestrator.state
        if state == PipelineState.DONE:
            self.completed += 1
        elif state == PipelineState.FAILED:
            self.failed += 1
        else:
            self.cancelled += 1

        elapsed = (datetime.now() - record.started_at).total_seconds()
        logger.info(f"Request {request_id} finished: state={state.value}, elapsed={elapsed:.2f}s")

    def cancel_all(self) -> int:
        """Signal cancellation to every in-flight orchestrator."""
        for record in self._active.values():
            record.orchestrator.cancel()
        return len(self._active)

    @property
    def active_count(self) -> int:
        """Number of in-flight requests."""
        return len(self._active)

    def snapshot(self) -> Dict[str, int]:
        return {
            "total": self.total,
            "active": self.active_count,
            "completed": self.completed,
            "failed": self.failed,
            "cancelled": self.cancelled,
        }


# Global instance
tracker = RequestTracker()
