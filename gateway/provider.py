"""Provider adapter: one upstream call turned into canonical events."""

import asyncio
import logging
from typing import AsyncIterator, Optional

import httpx
from tenacity import AsyncRetrying, retry_if_exception, stop_after_attempt, wait_exponential

from .codec import WireCodec, get_codec
from .config import ProviderConfig
from .errors import (
    UpstreamError,
    UpstreamHTTPError,
    UpstreamProtocolError,
    UpstreamRateLimited,
    UpstreamTimeout,
)
from .models import CanonicalEvent, ErrorEvent, Prompt

logger = logging.getLogger(__name__)


def _is_retryable(exception: BaseException) -> bool:
    """Only classified timeout / rate-limit / connect failures are retried."""
    return isinstance(exception, UpstreamError) and exception.retryable


class ProviderAdapter:
    """
    Async client for one provider role.

    Handles:
    - Request encoding through the configured wire codec
    - Fail-fast classification of pre-first-byte failures, with bounded
      retries for the retryable ones
    - Streaming and aggregate upstream replies, both surfaced as the same
      lazy sequence of canonical events
    - Mid-stream failures, surfaced as a terminal ErrorEvent
    """

    def __init__(self, provider: ProviderConfig, client: Optional[httpx.AsyncClient] = None):
        self.provider = provider
        self._owns_client = client is None
        self.client = client or httpx.AsyncClient(
            timeout=httpx.Timeout(provider.read_timeout, connect=provider.connect_timeout)
        )
        self.calls = 0

    @property
    def role(self) -> str:
        return self.provider.role

    async def close(self):
        """Close HTTP client."""
        if self._owns_client:
            await self.client.aclose()

    async def events(self, prompt: Prompt) -> AsyncIterator[CanonicalEvent]:
        """
        Run one upstream call and yield its canonical events.

        Finite and single-pass; a second read needs a new call. Raises a
        classified UpstreamError before yielding anything if the call cannot
        be opened. Once events have been produced, failures arrive as a final
        ErrorEvent instead.
        """
        codec = get_codec(self.provider.wire_format, self.role)
        stream = self.provider.stream
        self.calls += 1

        logger.info(f"Starting {self.role} call: model={self.provider.model}, "
                    f"messages={len(prompt.messages)}, stream={stream}")

        response = await self._open(codec, prompt, stream)
        try:
            if not stream:
                for event in codec.decode_aggregate(response.text):
                    yield event
                return

            async for line in response.aiter_lines():
                for event in codec.decode_stream_line(line):
                    yield event
                if codec.finished:
                    return

            for event in codec.flush():
                yield event
            if codec.finished:
                return

            logger.warning(f"{self.role} stream ended without a terminal event")
            yield ErrorEvent(
                kind=UpstreamProtocolError.error_type,
                message=f"{self.role} stream ended without a terminal event",
            )

        except UpstreamProtocolError as e:
            logger.error(f"{self.role} protocol error: {e.message}")
            yield ErrorEvent(kind=e.error_type, message=e.message)
        except httpx.TimeoutException as e:
            logger.error(f"{self.role} read timeout mid-stream: {e!r}")
            yield ErrorEvent(kind=UpstreamTimeout.error_type, message=f"{self.role} read timed out")
        except httpx.HTTPError as e:
            logger.error(f"{self.role} stream error: {e!r}")
            yield ErrorEvent(kind=UpstreamError.error_type, message=f"{self.role} connection lost: {e}")
        finally:
            await self._release(response)

    async def _open(self, codec: WireCodec, prompt: Prompt, stream: bool) -> httpx.Response:
        """Send the request, retrying classified retryable failures."""
        body = codec.encode_request(self.provider, prompt, stream)
        headers = codec.build_headers(self.provider, stream)

        retrying = AsyncRetrying(
            stop=stop_after_attempt(max(1, self.provider.max_retries)),
            wait=wait_exponential(multiplier=self.provider.retry_backoff, max=10),
            retry=retry_if_exception(_is_retryable),
            before_sleep=self._log_retry,
            reraise=True,
        )
        async for attempt in retrying:
            with attempt:
                request = self.client.build_request(
                    "POST", self.provider.endpoint, json=body, headers=headers
                )
                return await self._send(request, stream)

    async def _send(self, request: httpx.Request, stream: bool) -> httpx.Response:
        try:
            response = await self.client.send(request, stream=True)
        except httpx.TimeoutException as e:
            raise UpstreamTimeout(f"{self.role} timed out before responding", role=self.role) from e
        except httpx.ConnectError as e:
            raise UpstreamTimeout(f"{self.role} connection failed: {e}", role=self.role) from e
        except httpx.HTTPError as e:
            raise UpstreamError(f"{self.role} request failed: {e}", role=self.role) from e

        if not response.is_success:
            detail = await self._error_detail(response)
            await response.aclose()
            status = response.status_code
            logger.error(f"{self.role} HTTP error: {status} - {detail}")
            message = f"{self.role} returned {status}: {detail}"
            if status == 429:
                raise UpstreamRateLimited(message, code=str(status), role=self.role)
            if status in (408, 504):
                raise UpstreamTimeout(message, code=str(status), role=self.role)
            raise UpstreamHTTPError(message, status=status, role=self.role)

        if not stream:
            try:
                await response.aread()
            except httpx.TimeoutException as e:
                await response.aclose()
                raise UpstreamTimeout(f"{self.role} timed out reading response", role=self.role) from e
            except httpx.HTTPError as e:
                await response.aclose()
                raise UpstreamError(f"{self.role} connection lost: {e}", role=self.role) from e

        logger.debug(f"{self.role} responded {response.status_code}")
        return response

    async def _release(self, response: httpx.Response):
        """Close the upstream response, bounded by the grace period."""
        try:
            await asyncio.wait_for(response.aclose(), timeout=self.provider.close_grace)
        except asyncio.TimeoutError:
            logger.warning(f"{self.role} response did not close within {self.provider.close_grace}s")

    @staticmethod
    async def _error_detail(response: httpx.Response) -> str:
        try:
            return (await response.aread()).decode("utf-8", "replace")[:500]
        except httpx.HTTPError:
            return "<unreadable body>"

    def _log_retry(self, retry_state):
        exc = retry_state.outcome.exception()
        logger.warning(f"{self.role} attempt {retry_state.attempt_number} failed ({exc}), retrying...")
