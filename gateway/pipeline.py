"""
Pipeline orchestration.

A mode is a list of StageSpec descriptors consumed by one generic loop in
Orchestrator.run():

- Stages run strictly in sequence; stage N+1 starts only after stage N
  reached its StageEnd.
- Every upstream event has two readers: the PipelineContext, which keeps
  the stage's text for later prompts, and the client-facing relay, which
  re-tags it according to the stage's exposure policy (or drops it).
- Only the final stage's StageEnd is forwarded. Failures end the sequence
  with an ErrorEvent; cancellation ends it silently.
"""

import asyncio
import logging
from contextlib import aclosing
from dataclasses import dataclass, field
from typing import AsyncGenerator, AsyncIterator, Callable, Dict, List, Mapping, Optional, Tuple

from .config import GENERATION_ROLE, PIPELINE_MODES, REASONING_ROLE, ProviderConfig
from .errors import ClientDisconnected, ConfigError, UpstreamError
from .models import (
    CanonicalEvent,
    ChatCompletionRequest,
    Delta,
    ErrorEvent,
    FinishReason,
    Phase,
    PipelineState,
    Prompt,
    StageEnd,
    Usage,
)
from .provider import ProviderAdapter

logger = logging.getLogger(__name__)

ARCHITECT_PROMPT = (
    "Act as an expert architect engineer.\n"
    "Study the request and the reasoning you were given, then describe clearly and "
    "completely how to answer it: what must be written or changed, and in what order.\n"
    "Do not write the final answer yourself. An editor will carry out your plan."
)

EDITOR_PROMPT = (
    "Act as an expert software developer who edits source code.\n"
    "You are diligent and tireless!\n"
    "Carry out the plan you were given and implement it completely.\n"
    "You NEVER describe a change without making it.\n"
    "Reply with the finished answer only."
)

PLAN_VISIBILITIES = ("reasoning", "hidden")


# ============================================================================
# Context
# ============================================================================

@dataclass
class StageOutput:
    """Text one stage produced, kept for the stages after it."""
    name: str
    role: str
    model: str
    reasoning: List[str] = field(default_factory=list)
    content: List[str] = field(default_factory=list)
    finish_reason: Optional[FinishReason] = None
    usage: Optional[Usage] = None

    @property
    def reasoning_text(self) -> str:
        return "".join(self.reasoning)

    @property
    def content_text(self) -> str:
        return "".join(self.content)

    def summary(self) -> Dict[str, object]:
        return {
            "name": self.name,
            "provider": self.role,
            "model": self.model,
            "finish_reason": self.finish_reason.value if self.finish_reason else None,
            "reasoning_chars": len(self.reasoning_text),
            "content_chars": len(self.content_text),
            "usage": self.usage.to_dict() if self.usage else None,
        }


@dataclass
class PipelineContext:
    """Per-request accumulation of stage output. Owned by one Orchestrator."""
    request: ChatCompletionRequest
    outputs: List[StageOutput] = field(default_factory=list)
    capture: Tuple[Phase, ...] = ()

    @property
    def system(self) -> Optional[str]:
        return self.request.system_prompt()

    @property
    def conversation(self) -> List[Dict[str, str]]:
        return self.request.conversation()

    @property
    def previous(self) -> StageOutput:
        """Last stage begun; while a prompt is built, the last finished one."""
        return self.outputs[-1]

    @property
    def usage(self) -> Optional[Usage]:
        """Token counts summed over the stages that reported any."""
        reported = [o.usage for o in self.outputs if o.usage is not None]
        return sum(reported[1:], reported[0]) if reported else None

    def begin(self, stage: "StageSpec", model: str) -> StageOutput:
        output = StageOutput(name=stage.name, role=stage.role, model=model)
        self.outputs.append(output)
        self.capture = stage.capture
        return output

    def record(self, event: CanonicalEvent):
        """Context-side reader of a stage's event sequence."""
        if not self.outputs:
            return
        current = self.outputs[-1]
        if isinstance(event, Delta) and event.phase in self.capture:
            if event.phase == Phase.REASONING:
                current.reasoning.append(event.text)
            else:
                current.content.append(event.text)
        elif isinstance(event, StageEnd):
            current.finish_reason = event.reason
            current.usage = event.usage


# ============================================================================
# Stage descriptors and modes
# ============================================================================

# Upstream phase -> client phase; None hides the text from the client
Exposure = Mapping[Phase, Optional[Phase]]


@dataclass(frozen=True)
class StageSpec:
    """One step of a pipeline mode."""
    name: str
    role: str
    expose: Exposure
    capture: Tuple[Phase, ...]
    build_prompt: Callable[[PipelineContext], Prompt]


def _thinking(text: str) -> Dict[str, str]:
    return {"role": "assistant", "content": f"<thinking>\n{text}</thinking>"}


def _combine_system(prefix: str, user_system: Optional[str]) -> str:
    return f"{prefix}\n\n{user_system}" if user_system else prefix


def reasoning_prompt(ctx: PipelineContext) -> Prompt:
    """The user's conversation as-is."""
    return Prompt(messages=ctx.conversation, system=ctx.system)


def answer_prompt(ctx: PipelineContext) -> Prompt:
    """Conversation plus the previous stage's reasoning as hidden context."""
    messages = ctx.conversation
    reasoning = ctx.previous.reasoning_text
    if reasoning.strip():
        messages.append(_thinking(reasoning))
    return Prompt(messages=messages, system=ctx.system)


def architect_prompt(ctx: PipelineContext) -> Prompt:
    """Conversation plus everything the reasoning stage produced."""
    previous = ctx.previous
    parts = []
    if previous.reasoning_text.strip():
        parts.append(previous.reasoning_text)
    if previous.content_text.strip():
        parts.append(f"Draft answer:\n{previous.content_text.strip()}")

    messages = ctx.conversation
    if parts:
        messages.append(_thinking("\n\n".join(parts)))
    return Prompt(messages=messages, system=_combine_system(ARCHITECT_PROMPT, ctx.system))


def editor_prompt(ctx: PipelineContext) -> Prompt:
    """Conversation plus the architect's plan."""
    messages = ctx.conversation
    plan = ctx.previous.content_text.strip()
    if plan:
        messages.append(_thinking(f"Plan:\n{plan}"))
    return Prompt(messages=messages, system=_combine_system(EDITOR_PROMPT, ctx.system))


def build_stages(mode: str, plan_visibility: str = "reasoning") -> List[StageSpec]:
    """Stage list for a pipeline mode."""
    if mode not in PIPELINE_MODES:
        raise ConfigError(f"Unknown pipeline mode: {mode}")

    reason = StageSpec(
        name="reason",
        role=REASONING_ROLE,
        expose={Phase.REASONING: Phase.REASONING, Phase.CONTENT: None},
        capture=(Phase.REASONING,) if mode == "plain" else (Phase.REASONING, Phase.CONTENT),
        build_prompt=reasoning_prompt,
    )

    if mode == "plain":
        return [
            reason,
            StageSpec(
                name="answer",
                role=GENERATION_ROLE,
                expose={Phase.REASONING: None, Phase.CONTENT: Phase.CONTENT},
                capture=(Phase.CONTENT,),
                build_prompt=answer_prompt,
            ),
        ]

    if plan_visibility not in PLAN_VISIBILITIES:
        raise ConfigError(f"Unknown plan visibility: {plan_visibility}")
    plan_phase = Phase.REASONING if plan_visibility == "reasoning" else None

    return [
        reason,
        StageSpec(
            name="architect",
            role=GENERATION_ROLE,
            expose={Phase.REASONING: None, Phase.CONTENT: plan_phase},
            capture=(Phase.CONTENT,),
            build_prompt=architect_prompt,
        ),
        StageSpec(
            name="editor",
            role=GENERATION_ROLE,
            expose={Phase.REASONING: None, Phase.CONTENT: Phase.CONTENT},
            capture=(Phase.CONTENT,),
            build_prompt=editor_prompt,
        ),
    ]


_PHASE_ORDER = {Phase.REASONING: 0, Phase.CONTENT: 1}


def validate_stages(stages: List[StageSpec]):
    """
    Reject stage lists that could emit reasoning after content.

    Within a call reasoning precedes content, so each stage's exposures must
    be non-decreasing in that order, and no stage may expose reasoning once
    an earlier stage exposed content. The final stage must expose content.
    """
    if not stages:
        raise ConfigError("A pipeline needs at least one stage")

    highest = 0
    for stage in stages:
        exposed = [
            _PHASE_ORDER[stage.expose[phase]]
            for phase in (Phase.REASONING, Phase.CONTENT)
            if stage.expose.get(phase) is not None
        ]
        if exposed != sorted(exposed) or (exposed and exposed[0] < highest):
            raise ConfigError(f"Stage '{stage.name}' would emit reasoning after content")
        if exposed:
            highest = max(exposed)

    if Phase.CONTENT not in stages[-1].expose.values():
        raise ConfigError(f"Final stage '{stages[-1].name}' exposes no content")


# ============================================================================
# Orchestrator
# ============================================================================

class Orchestrator:
    """
    Runs one request's pipeline and yields its client-visible event sequence.

    One instance per request. It owns its provider adapters and closes them
    on completion, failure or cancellation. Already-forwarded events are
    never retracted; failure and cancellation only decide what comes next.
    """

    def __init__(
        self,
        request: ChatCompletionRequest,
        providers: Mapping[str, ProviderConfig],
        stages: List[StageSpec],
        adapter_factory: Callable[[ProviderConfig], ProviderAdapter] = ProviderAdapter,
    ):
        validate_stages(stages)
        for stage in stages:
            provider = providers.get(stage.role)
            if provider is None or not provider.usable:
                raise ConfigError(
                    f"Stage '{stage.name}' needs the {stage.role} provider, "
                    f"which has no usable endpoint or credential"
                )

        self.request = request
        self.providers = providers
        self.stages = stages
        self.context = PipelineContext(request=request)
        self.state = PipelineState.IDLE
        self.stage_index = -1
        self.forwarded = 0
        self.finish_reason: Optional[FinishReason] = None
        self._adapter_factory = adapter_factory
        self._adapters: Dict[str, ProviderAdapter] = {}
        self._cancelled = asyncio.Event()

    def cancel(self):
        """Signal the per-request cancellation token."""
        self._cancelled.set()

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    async def run(self) -> AsyncIterator[CanonicalEvent]:
        """
        Run every stage in order.

        Yields re-tagged Deltas, then either the final stage's StageEnd or a
        single ErrorEvent. Nothing follows a cancellation.
        """
        try:
            for index, stage in enumerate(self.stages):
                if self.cancelled:
                    self._mark_cancelled()
                    return

                self.stage_index = index
                self.state = PipelineState.RUNNING
                provider = self.providers[stage.role]
                # Before begin(): `previous` must still be the last finished stage
                prompt = stage.build_prompt(self.context)
                output = self.context.begin(stage, provider.model)

                logger.info(f"Stage {index + 1}/{len(self.stages)} '{stage.name}' "
                            f"running on {stage.role} ({provider.model})")

                end: Optional[StageEnd] = None
                async with aclosing(self._stage_events(stage, provider, prompt)) as events:
                    async for event in events:
                        # Two readers of one event: the context, then the client relay
                        self.context.record(event)

                        if isinstance(event, Delta):
                            phase = stage.expose.get(event.phase)
                            if phase is not None:
                                self.forwarded += 1
                                yield Delta(phase=phase, text=event.text)

                        elif isinstance(event, StageEnd):
                            end = event

                        elif isinstance(event, ErrorEvent):
                            self._mark_failed(stage, event.message)
                            yield event
                            return

                if self.cancelled:
                    self._mark_cancelled()
                    return

                if end is None or end.reason == FinishReason.ERROR:
                    message = f"{stage.role} ended stage '{stage.name}' with an error"
                    self._mark_failed(stage, message)
                    yield ErrorEvent(kind=UpstreamError.error_type, message=message)
                    return

                if end.reason == FinishReason.LENGTH and index < len(self.stages) - 1:
                    logger.warning(f"Stage '{stage.name}' hit its length limit; continuing with truncated output")

                self.state = PipelineState.STAGE_COMPLETE
                logger.info(f"Stage '{stage.name}' complete: {len(output.reasoning_text)} reasoning chars, "
                            f"{len(output.content_text)} content chars")

                if index == len(self.stages) - 1:
                    self.finish_reason = end.reason
                    self.state = PipelineState.DONE
                    yield StageEnd(phase=Phase.CONTENT, reason=end.reason, usage=self.context.usage)

        except (asyncio.CancelledError, GeneratorExit):
            if self.state not in (PipelineState.DONE, PipelineState.FAILED):
                self._mark_cancelled()
            raise
        finally:
            await self._close_adapters()

    async def _stage_events(
        self,
        stage: StageSpec,
        provider: ProviderConfig,
        prompt: Prompt,
    ) -> AsyncGenerator[CanonicalEvent, None]:
        """One stage's upstream events, with pre-first-byte failures folded in."""
        adapter = self._adapter_for(provider)
        events = adapter.events(prompt)
        try:
            while True:
                try:
                    event = await self._next_event(events)
                except ClientDisconnected:
                    return
                except UpstreamError as e:
                    yield ErrorEvent(kind=e.error_type, message=e.message, code=e.code)
                    return
                if event is None:
                    return
                yield event
        finally:
            await events.aclose()

    async def _next_event(self, events: AsyncIterator[CanonicalEvent]) -> Optional[CanonicalEvent]:
        """
        Await the next upstream event or the cancellation token, whichever
        comes first. Returns None when the call is exhausted.
        """
        if self.cancelled:
            raise ClientDisconnected("Request cancelled")

        async def pull() -> Optional[CanonicalEvent]:
            try:
                return await events.__anext__()
            except StopAsyncIteration:
                return None

        read = asyncio.ensure_future(pull())
        token = asyncio.ensure_future(self._cancelled.wait())
        try:
            await asyncio.wait({read, token}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            token.cancel()
            if not read.done():
                # Cancels the in-flight read; the adapter closes its socket
                read.cancel()
                await asyncio.gather(read, return_exceptions=True)

        if read.cancelled():
            raise ClientDisconnected("Request cancelled")
        return read.result()

    def _adapter_for(self, provider: ProviderConfig) -> ProviderAdapter:
        adapter = self._adapters.get(provider.role)
        if adapter is None:
            adapter = self._adapter_factory(provider)
            self._adapters[provider.role] = adapter
        return adapter

    async def _close_adapters(self):
        for adapter in self._adapters.values():
            try:
                await adapter.close()
            except Exception as e:
                logger.warning(f"Failed to close {adapter.role} adapter: {e}")
        self._adapters.clear()

    def _mark_failed(self, stage: StageSpec, message: str):
        self.state = PipelineState.FAILED
        self.finish_reason = FinishReason.ERROR
        logger.error(f"Stage '{stage.name}' failed: {message}")

    def _mark_cancelled(self):
        if self.state != PipelineState.CANCELLED:
            self.state = PipelineState.CANCELLED
            logger.info(f"Pipeline cancelled at stage {self.stage_index + 1}/{len(self.stages)}")
