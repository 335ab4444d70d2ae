import asyncio
import logging
from collections.abc import AsyncIterator
from contextlib import aclosing
from dataclasses import dataclass, field

from palaver.accounting import Usage, UsageSink
from palaver.config import TurnConfig
from palaver.coordinator import ToolExecutionCoordinator
from palaver.errors import DecodeError, LoopBoundExceeded, PalaverError, ProviderError
from palaver.events import (
    EventListener,
    LifecycleEvent,
    StreamEvent,
    TextDelta,
    ToolsDispatched,
    TurnComplete,
    TurnErrored,
    TurnFinished,
    TurnStarted,
)
from palaver.extraction import ToolCallExtractor
from palaver.instrumentation import completion_span, record_error, record_usage, turn_span
from palaver.message import (
    Message,
    TextContent,
    ToolCallRequestMessage,
    ToolCallResultMessage,
)
from palaver.provider import ChatRequest, ModelProvider
from palaver.session import ConversationStore
from palaver.state import TERMINAL_PHASES, TurnPhase, TurnState, join_text
from palaver.streaming import DecodedResponse
from palaver.tools import ToolExecutor, ToolRegistry

logger = logging.getLogger(__name__)


@dataclass
class TurnResult:
    """The result of a single TurnOrchestrator.run() invocation.

    ``text`` is the final assistant answer, or everything streamed so far
    when the turn failed.  ``messages`` are the messages this turn added
    to the conversation.
    """

    text: str
    phase: TurnPhase
    usage: Usage = field(default_factory=Usage)
    iterations: int = 0
    messages: list[Message] = field(default_factory=list)
    events: list[LifecycleEvent] = field(default_factory=list)
    loop_bound_exceeded: bool = False
    error: PalaverError | None = None

    @property
    def ok(self) -> bool:
        return self.error is None

    def raise_for_error(self, strict: bool = False) -> None:
        """Re-raise the turn's failure.

        With *strict*, hitting the tool-call loop bound also raises
        :class:`LoopBoundExceeded`.
        """
        if self.error is not None:
            raise self.error
        if strict and self.loop_bound_exceeded:
            raise LoopBoundExceeded(
                f"Tool-call loop stopped after {self.iterations} iterations"
            )


class TurnOrchestrator:
    """Drives one user turn through a provider and the tool boundary.

    Each round sends the conversation to the provider, streams the reply,
    extracts tool calls, runs them through the coordinator and sends the
    results back, until the model answers without tools or the iteration
    bound is reached.

    ``run()`` drains ``iter()``.  ``iter()`` is the streaming entry point.

    Args:
        provider: Backend adapter.
        model: Model identifier passed to the provider.
        tools: Tool boundary.  A :class:`ToolRegistry` also supplies the
            tool descriptions offered to the model.
        tool_schemas: Tool descriptions for executors that cannot
            describe themselves.
        config: Iteration bound, concurrency, timeouts, system prompt.
        listener: Receives lifecycle events.
        usage_sink: Receives the usage of every completed turn.
    """

    def __init__(
        self,
        provider: ModelProvider,
        model: str,
        tools: ToolExecutor | None = None,
        tool_schemas: list[dict] | None = None,
        config: TurnConfig | None = None,
        listener: EventListener | None = None,
        usage_sink: UsageSink | None = None,
    ):
        self.provider = provider
        self.model = model
        self.tools = tools if tools is not None else ToolRegistry()
        if tool_schemas is None:
            schemas = getattr(self.tools, "schemas", None)
            tool_schemas = schemas() if callable(schemas) else []
        self.tool_schemas = tool_schemas
        self.config = config or TurnConfig()
        self.listener = listener
        self.usage_sink = usage_sink

    async def run(
        self,
        store: ConversationStore,
        user_message: Message | str,
        state: TurnState | None = None,
    ) -> TurnResult:
        """Run the turn until a final answer, the loop bound, or an error."""
        result: TurnResult | None = None
        async for event in self.iter(store, user_message, state):
            if isinstance(event, TurnComplete):
                result = event.result
        if result is None:
            raise RuntimeError("iter() ended without emitting TurnComplete")
        return result

    async def iter(
        self,
        store: ConversationStore,
        user_message: Message | str,
        state: TurnState | None = None,
    ) -> AsyncIterator[StreamEvent]:
        """Run the turn, yielding events as execution proceeds."""
        state = state if state is not None else TurnState()
        if state.phase is not TurnPhase.IDLE:
            raise RuntimeError("TurnState has already been used")
        if isinstance(user_message, str):
            user_message = Message.user(user_message)

        events: list[LifecycleEvent] = []

        def emit(event: LifecycleEvent) -> None:
            events.append(event)
            if self.listener is not None:
                self.listener(event)

        cfg = self.config
        provider_id = self.provider.provider_id
        extractor = ToolCallExtractor(
            self.provider.capabilities, [s["name"] for s in self.tool_schemas],
        )
        coordinator = ToolExecutionCoordinator(
            self.tools,
            max_concurrency=cfg.max_parallel_tools,
            timeout=cfg.tool_timeout,
            retries=cfg.tool_retries,
            listener=emit,
        )

        state.messages = store.history()
        state.append(user_message)
        emit(TurnStarted(provider=provider_id, model=self.model))
        yield events[-1]

        async with turn_span(provider_id, self.model) as span:
            try:
                loop_bound_exceeded = False
                while True:
                    state.transition(TurnPhase.SENT)
                    state.start_round()

                    decoded = None
                    async with aclosing(self._round(state)) as round_events:
                        async for delta in round_events:
                            if isinstance(delta, DecodedResponse):
                                decoded = delta
                            else:
                                yield delta
                    state.usage = state.usage + decoded.usage

                    extraction = extractor.extract(decoded.text, decoded.tool_calls)
                    if not extraction.requests:
                        state.transition(TurnPhase.FINALIZING)
                        final_text = extraction.text
                        break

                    state.transition(TurnPhase.TOOLS_PENDING)
                    if state.iteration >= cfg.max_iterations:
                        logger.warning(
                            f"Tool-call loop bound ({cfg.max_iterations}) reached; "
                            f"dropping {len(extraction.requests)} pending call(s)"
                        )
                        loop_bound_exceeded = True
                        state.transition(TurnPhase.FINALIZING)
                        final_text = join_text(extraction.text, cfg.truncation_notice)
                        break

                    state.text = join_text(state.text, extraction.text)
                    state.append(ToolCallRequestMessage(
                        content=_text_items(decoded.text),
                        tool_calls=extraction.requests,
                    ))
                    emit(ToolsDispatched(
                        count=len(extraction.requests), iteration=state.iteration + 1,
                    ))
                    yield events[-1]

                    seen = len(events)
                    results = await coordinator.execute_all(extraction.requests)
                    for event in events[seen:]:
                        yield event
                    for r in results:
                        state.append(ToolCallResultMessage(
                            content=_text_items(r.content),
                            tool_call_id=r.id,
                            name=r.name,
                            success=r.success,
                        ))
                    state.iteration += 1
            except (ProviderError, DecodeError) as e:
                logger.error(f"Turn failed in phase {state.phase.value}: {e}")
                record_error(span, e)
                state.error = e
                partial = state.partial_text
                state.transition(TurnPhase.ERRORED)
                emit(TurnErrored(error=str(e), partial_text=partial))
                yield events[-1]
                yield TurnComplete(result=TurnResult(
                    text=partial,
                    phase=state.phase,
                    usage=state.usage,
                    iterations=state.iteration,
                    events=list(events),
                    error=e,
                ))
                return
            except asyncio.CancelledError as e:
                logger.info(f"Turn cancelled in phase {state.phase.value}")
                if state.phase not in TERMINAL_PHASES:
                    state.error = e
                    state.transition(TurnPhase.ERRORED)
                raise

            state.append(Message.assistant(final_text))
            state.text = join_text(state.text, final_text)
            state.transition(TurnPhase.DONE)
            record_usage(span, state.usage)

        store.extend(state.new_messages)
        if self.usage_sink is not None:
            self.usage_sink.record(state.usage)
        emit(TurnFinished(usage=state.usage, loop_bound_exceeded=loop_bound_exceeded))
        yield events[-1]
        yield TurnComplete(result=TurnResult(
            text=final_text,
            phase=state.phase,
            usage=state.usage,
            iterations=state.iteration,
            messages=list(state.new_messages),
            events=list(events),
            loop_bound_exceeded=loop_bound_exceeded,
        ))

    async def _round(self, state: TurnState) -> AsyncIterator[TextDelta | DecodedResponse]:
        """One provider round: text deltas, then the decoded response."""
        cfg = self.config
        request = ChatRequest(
            model=self.model,
            messages=list(state.messages),
            tools=self.tool_schemas,
            system_prompt=cfg.system_prompt,
            temperature=cfg.temperature,
            max_tokens=cfg.max_tokens,
        )
        async with completion_span(self.provider.provider_id, self.model) as span:
            if self.provider.capabilities.supports_streaming:
                async with aclosing(self.provider.stream(request)) as stream:
                    async for chunk in stream:
                        if state.phase is TurnPhase.SENT:
                            state.transition(TurnPhase.STREAMING)
                        state.decoder.feed(chunk)
                        if chunk.text_delta:
                            yield TextDelta(content=chunk.text_delta)
                decoded = state.decoder.finalize()
            else:
                decoded = await self.provider.complete(request)
                state.decoder.text = decoded.text
                if decoded.text:
                    yield TextDelta(content=decoded.text)
            record_usage(span, decoded.usage, decoded.finish_reason)
        yield decoded


def _text_items(text: str) -> list[TextContent]:
    return [TextContent(text=text)] if text else []
