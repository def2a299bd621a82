"""
Reasoning Gateway

OpenAI-compatible chat completions served by chaining a reasoning model
and a generation model.

Components:
- codec: Upstream wire formats and the outgoing OpenAI encoding
- provider: Upstream calls as canonical event sequences
- pipeline: Stage descriptors and the orchestrator that runs them
- multiplexer: SSE or aggregate response assembly
- api: OpenAI-compatible endpoints and the request gate
- state: In-flight request tracking
"""

__version__ = "0.1.0"

from .main import app
