"""End-to-end turns through TurnOrchestrator with a scripted provider."""

import asyncio

import pytest

from palaver.accounting import SessionUsage, Usage
from palaver.capabilities import ProviderCapabilities
from palaver.config import DEFAULT_TRUNCATION_NOTICE, TurnConfig
from palaver.errors import DecodeError, LoopBoundExceeded, ProviderError, ProviderErrorKind
from palaver.events import (
    TextDelta,
    ToolCompleted,
    ToolsDispatched,
    TurnComplete,
    TurnErrored,
    TurnFinished,
    TurnStarted,
)
from palaver.message import (
    Message,
    MessageRole,
    ToolCallRequestMessage,
    ToolCallResultMessage,
)
from palaver.orchestrator import TurnOrchestrator
from palaver.state import TurnPhase, TurnState
from palaver.streaming import StreamChunk, ToolCallFragment
from palaver.tools import ToolRegistry, tool

from tests.conftest import (
    FakeStore,
    MockProvider,
    text_chunks,
    tool_call_chunks,
)


def _tool_events(events):
    return [e for e in events if isinstance(e, (ToolsDispatched, ToolCompleted))]


# ---------------------------------------------------------------------------
# Tool round trip
# ---------------------------------------------------------------------------


class TestWeatherScenario:
    @pytest.mark.asyncio
    async def test_single_tool_round(self, mock_provider, registry, session, listener):
        mock_provider.scripts = [
            tool_call_chunks([("get_weather", {"city": "Athens"}, "c1")]),
            text_chunks("It's 22°C in Athens."),
        ]
        orchestrator = TurnOrchestrator(
            mock_provider, "mock-model", tools=registry, listener=listener,
        )

        result = await orchestrator.run(session, "what's the weather")

        assert result.text == "It's 22°C in Athens."
        assert result.phase is TurnPhase.DONE
        assert result.iterations == 1
        assert len(_tool_events(result.events)) == 2
        assert result.events == listener.events
        assert result.usage == Usage(30, 13, 43)

    @pytest.mark.asyncio
    async def test_results_paired_with_requests(self, mock_provider, registry, session):
        mock_provider.scripts = [
            tool_call_chunks([("get_weather", {"city": "Athens"}, "c1")]),
            text_chunks("It's 22°C in Athens."),
        ]
        await TurnOrchestrator(mock_provider, "mock-model", tools=registry).run(
            session, "what's the weather",
        )

        second = mock_provider.requests[1].messages
        assert isinstance(second[-2], ToolCallRequestMessage)
        assert second[-2].tool_calls[0].id == "c1"
        assert isinstance(second[-1], ToolCallResultMessage)
        assert second[-1].tool_call_id == "c1"
        assert second[-1].text == "22C"

    @pytest.mark.asyncio
    async def test_transcript_updated_on_done(self, mock_provider, registry, session):
        mock_provider.scripts = [
            tool_call_chunks([("get_weather", {"city": "Athens"}, "c1")]),
            text_chunks("It's 22°C in Athens."),
        ]
        result = await TurnOrchestrator(mock_provider, "mock-model", tools=registry).run(
            session, "what's the weather",
        )

        roles = [m.role for m in session.transcript]
        assert roles == [
            MessageRole.USER, MessageRole.ASSISTANT, MessageRole.TOOL, MessageRole.ASSISTANT,
        ]
        assert session.transcript[-1].text == "It's 22°C in Athens."
        assert result.messages == session.transcript

    @pytest.mark.asyncio
    async def test_usage_recorded_once(self, mock_provider, registry, session):
        sink = SessionUsage()
        mock_provider.scripts = [
            tool_call_chunks([("get_weather", {"city": "Athens"}, "c1")]),
            text_chunks("Sunny."),
        ]
        await TurnOrchestrator(
            mock_provider, "mock-model", tools=registry, usage_sink=sink,
        ).run(session, "weather?")

        assert sink.turns == 1
        assert sink.total == Usage(30, 13, 43)

    @pytest.mark.asyncio
    async def test_history_sent_before_user_message(self, mock_provider):
        store = FakeStore([Message.user("earlier"), Message.assistant("reply")])
        mock_provider.scripts = [text_chunks("Hi again.")]
        await TurnOrchestrator(mock_provider, "mock-model").run(store, "hello")

        sent = mock_provider.requests[0].messages
        assert [m.text for m in sent] == ["earlier", "reply", "hello"]
        assert len(store.extended) == 1
        assert [m.text for m in store.extended[0]] == ["hello", "Hi again."]

    @pytest.mark.asyncio
    async def test_unknown_tool_reported_to_model(self, mock_provider, registry, session):
        mock_provider.scripts = [
            tool_call_chunks([("launch_rocket", {}, "c1")]),
            text_chunks("I can't do that."),
        ]
        result = await TurnOrchestrator(mock_provider, "mock-model", tools=registry).run(
            session, "launch",
        )

        assert result.phase is TurnPhase.DONE
        reply = mock_provider.requests[1].messages[-1]
        assert reply.success is False
        assert "not found" in reply.text

    @pytest.mark.asyncio
    async def test_config_reaches_request(self, mock_provider, session):
        mock_provider.scripts = [text_chunks("ok")]
        config = TurnConfig(system_prompt="Be brief.", temperature=0.2, max_tokens=64)
        await TurnOrchestrator(mock_provider, "mock-model", config=config).run(session, "hi")

        request = mock_provider.requests[0]
        assert request.system_prompt == "Be brief."
        assert request.temperature == 0.2
        assert request.max_tokens == 64


class TestParallelTools:
    @pytest.mark.asyncio
    async def test_timeout_does_not_abort_turn(self, mock_provider, session):
        @tool
        async def slow_lookup(key: str):
            """Never answers in time."""
            await asyncio.sleep(5)
            return "late"

        @tool
        def fast_lookup(key: str):
            """Answers immediately."""
            return f"value for {key}"

        registry = ToolRegistry([slow_lookup, fast_lookup])
        mock_provider.scripts = [
            tool_call_chunks([
                ("slow_lookup", {"key": "a"}, "c1"),
                ("fast_lookup", {"key": "b"}, "c2"),
            ]),
            text_chunks("Only b was available."),
        ]
        state = TurnState()
        orchestrator = TurnOrchestrator(
            mock_provider, "mock-model", tools=registry,
            config=TurnConfig(tool_timeout=0.1),
        )
        result = await orchestrator.run(session, "look up a and b", state)

        assert len(mock_provider.requests) == 2
        results = [m for m in mock_provider.requests[1].messages
                   if isinstance(m, ToolCallResultMessage)]
        assert len(results) == 2
        assert {r.tool_call_id for r in results} == {"c1", "c2"}
        by_id = {r.tool_call_id: r for r in results}
        assert by_id["c1"].success is False
        assert "timed out" in by_id["c1"].text
        assert by_id["c2"].success is True
        assert result.text == "Only b was available."
        assert state.phase is TurnPhase.DONE

    @pytest.mark.asyncio
    async def test_configured_retries_reach_coordinator(self, mock_provider, session):
        attempts = 0

        @tool
        def flaky_lookup(key: str):
            """Fails on the first attempt."""
            nonlocal attempts
            attempts += 1
            if attempts == 1:
                raise ConnectionError("busy")
            return f"value for {key}"

        mock_provider.scripts = [
            tool_call_chunks([("flaky_lookup", {"key": "a"}, "c1")]),
            text_chunks("Got it."),
        ]
        await TurnOrchestrator(
            mock_provider, "mock-model", tools=ToolRegistry([flaky_lookup]),
            config=TurnConfig(tool_retries=1),
        ).run(session, "look up a")

        result_message = mock_provider.requests[1].messages[-1]
        assert attempts == 2
        assert result_message.success is True
        assert result_message.text == "value for a"


# ---------------------------------------------------------------------------
# Loop bound
# ---------------------------------------------------------------------------


class TestLoopBound:
    @pytest.mark.asyncio
    async def test_stops_after_configured_iterations(self, mock_provider, registry, session):
        mock_provider.scripts = [
            tool_call_chunks([("get_weather", {"city": "Athens"}, f"c{i}")])
            for i in range(3)
        ]
        result = await TurnOrchestrator(
            mock_provider, "mock-model", tools=registry,
            config=TurnConfig(max_iterations=2),
        ).run(session, "loop forever")

        assert len(mock_provider.requests) == 3
        assert result.iterations == 2
        assert result.loop_bound_exceeded is True
        assert result.phase is TurnPhase.DONE
        assert result.text == DEFAULT_TRUNCATION_NOTICE
        assert len([e for e in result.events if isinstance(e, ToolsDispatched)]) == 2
        assert result.events[-1].loop_bound_exceeded is True
        with pytest.raises(LoopBoundExceeded):
            result.raise_for_error(strict=True)
        result.raise_for_error()

    @pytest.mark.asyncio
    async def test_zero_iterations_never_runs_tools(self, mock_provider, session):
        calls = []

        @tool
        def record(x: str):
            """Records calls."""
            calls.append(x)
            return "ok"

        mock_provider.scripts = [
            tool_call_chunks([("record", {"x": "1"}, "c1")], text="Trying."),
        ]
        result = await TurnOrchestrator(
            mock_provider, "mock-model", tools=ToolRegistry([record]),
            config=TurnConfig(max_iterations=0, truncation_notice="[cut]"),
        ).run(session, "go")

        assert calls == []
        assert result.text == "Trying.\n\n[cut]"
        assert session.transcript[-1].text == "Trying.\n\n[cut]"


# ---------------------------------------------------------------------------
# Failures
# ---------------------------------------------------------------------------


class TestErrors:
    @pytest.mark.asyncio
    async def test_mid_stream_error_keeps_partial_text(self, mock_provider, session, listener):
        mock_provider.scripts = [[
            StreamChunk(text_delta="Partial "),
            StreamChunk(text_delta="answer"),
            ProviderError(ProviderErrorKind.NETWORK, "connection reset", "mock"),
        ]]
        result = await TurnOrchestrator(mock_provider, "mock-model", listener=listener).run(
            session, "hi",
        )

        assert result.phase is TurnPhase.ERRORED
        assert result.text == "Partial answer"
        assert result.error.kind is ProviderErrorKind.NETWORK
        assert mock_provider.closed == 1
        assert session.transcript == []
        errored = listener.of_type(TurnErrored)
        assert errored[0].partial_text == "Partial answer"
        assert listener.of_type(TurnFinished) == []
        with pytest.raises(ProviderError):
            result.raise_for_error()

    @pytest.mark.asyncio
    async def test_error_before_first_chunk(self, mock_provider, session):
        mock_provider.scripts = [
            ProviderError(ProviderErrorKind.AUTHENTICATION, "bad key", "mock"),
        ]
        result = await TurnOrchestrator(mock_provider, "mock-model").run(session, "hi")

        assert result.phase is TurnPhase.ERRORED
        assert result.text == ""
        assert result.error.kind is ProviderErrorKind.AUTHENTICATION

    @pytest.mark.asyncio
    async def test_error_in_later_round_keeps_earlier_prose(
        self, mock_provider, registry, session,
    ):
        mock_provider.scripts = [
            tool_call_chunks([("get_weather", {"city": "Athens"}, "c1")], text="Looking it up."),
            ProviderError(ProviderErrorKind.RATE_LIMIT, "slow down", "mock"),
        ]
        result = await TurnOrchestrator(mock_provider, "mock-model", tools=registry).run(
            session, "weather?",
        )

        assert result.phase is TurnPhase.ERRORED
        assert result.text == "Looking it up."
        assert result.iterations == 1

    @pytest.mark.asyncio
    async def test_partial_text_separates_rounds(self, mock_provider, registry, session):
        mock_provider.scripts = [
            tool_call_chunks([("get_weather", {"city": "Athens"}, "c1")], text="Looking it up."),
            [
                StreamChunk(text_delta="It is"),
                ProviderError(ProviderErrorKind.NETWORK, "connection reset", "mock"),
            ],
        ]
        result = await TurnOrchestrator(mock_provider, "mock-model", tools=registry).run(
            session, "weather?",
        )

        assert result.phase is TurnPhase.ERRORED
        assert result.text == "Looking it up.\n\nIt is"

    @pytest.mark.asyncio
    async def test_malformed_tool_arguments(self, mock_provider, registry, session):
        mock_provider.scripts = [[
            StreamChunk(text_delta="Hmm."),
            StreamChunk(tool_call_fragments=[
                ToolCallFragment(index=0, id_delta="c1", name_delta="get_weather",
                                 arguments_delta='{"city": '),
            ]),
        ]]
        result = await TurnOrchestrator(mock_provider, "mock-model", tools=registry).run(
            session, "weather?",
        )

        assert result.phase is TurnPhase.ERRORED
        assert isinstance(result.error, DecodeError)
        assert result.text == "Hmm."

    @pytest.mark.asyncio
    async def test_state_cannot_be_reused(self, mock_provider, session):
        mock_provider.scripts = [text_chunks("one")]
        state = TurnState()
        orchestrator = TurnOrchestrator(mock_provider, "mock-model")
        await orchestrator.run(session, "first", state)

        with pytest.raises(RuntimeError):
            await orchestrator.run(session, "second", state)


class TestCancellation:
    @pytest.mark.asyncio
    async def test_cancel_mid_stream(self, mock_provider, session):
        mock_provider.delay = 0.05
        mock_provider.scripts = [text_chunks("x" * 40)]
        state = TurnState()
        task = asyncio.create_task(
            TurnOrchestrator(mock_provider, "mock-model").run(session, "hi", state)
        )
        await asyncio.sleep(0.12)
        task.cancel()

        with pytest.raises(asyncio.CancelledError):
            await task
        assert state.phase is TurnPhase.ERRORED
        assert mock_provider.closed == 1
        assert session.transcript == []

    @pytest.mark.asyncio
    async def test_cancel_during_tools(self, mock_provider, session):
        started = asyncio.Event()
        cancelled = asyncio.Event()

        @tool
        async def hang():
            """Waits forever."""
            started.set()
            try:
                await asyncio.sleep(10)
            except asyncio.CancelledError:
                cancelled.set()
                raise

        mock_provider.scripts = [tool_call_chunks([("hang", {}, "c1")])]
        state = TurnState()
        task = asyncio.create_task(TurnOrchestrator(
            mock_provider, "mock-model", tools=ToolRegistry([hang]),
            config=TurnConfig(tool_timeout=None),
        ).run(session, "wait", state))
        await started.wait()
        task.cancel()

        with pytest.raises(asyncio.CancelledError):
            await task
        assert cancelled.is_set()
        assert state.phase is TurnPhase.ERRORED


# ---------------------------------------------------------------------------
# Backend variants
# ---------------------------------------------------------------------------


class TestBackendVariants:
    @pytest.mark.asyncio
    async def test_non_streaming_backend(self, session, registry):
        provider = MockProvider(ProviderCapabilities(supports_tools=True, supports_streaming=False))
        provider.scripts = [
            tool_call_chunks([("get_weather", {"city": "Athens"}, "c1")]),
            text_chunks("It's 22°C in Athens."),
        ]
        orchestrator = TurnOrchestrator(provider, "mock-model", tools=registry)
        events = [e async for e in orchestrator.iter(session, "weather?")]

        deltas = [e.content for e in events if isinstance(e, TextDelta)]
        assert deltas == ["It's 22°C in Athens."]
        assert events[-1].result.text == "It's 22°C in Athens."
        assert provider.closed == 0

    @pytest.mark.asyncio
    async def test_inline_tagged_backend(self, session, registry, inline_capabilities):
        provider = MockProvider(inline_capabilities)
        provider.scripts = [
            text_chunks("Let me check.\n<get_weather>\n<city>Athens</city>\n</get_weather>"),
            text_chunks("It's 22°C in Athens."),
        ]
        result = await TurnOrchestrator(provider, "mock-model", tools=registry).run(
            session, "weather?",
        )

        assert result.text == "It's 22°C in Athens."
        first, second = provider.requests
        assert first.tools == []
        assert "<city>" in first.system_prompt
        last = second.messages[-1]
        assert last.role is MessageRole.USER
        assert 'status="ok"' in last.text
        assert "22C" in last.text

    @pytest.mark.asyncio
    async def test_tools_dropped_for_backend_without_tools(self, session, registry):
        provider = MockProvider(ProviderCapabilities(supports_tools=False))
        provider.scripts = [text_chunks("No tools here.")]
        result = await TurnOrchestrator(provider, "mock-model", tools=registry).run(
            session, "weather?",
        )

        assert provider.requests[0].tools == []
        assert result.text == "No tools here."


class TestIter:
    @pytest.mark.asyncio
    async def test_event_order(self, mock_provider, registry, session):
        mock_provider.scripts = [
            tool_call_chunks([("get_weather", {"city": "Athens"}, "c1")]),
            text_chunks("It's 22°C in Athens."),
        ]
        orchestrator = TurnOrchestrator(mock_provider, "mock-model", tools=registry)
        events = [e async for e in orchestrator.iter(session, "weather?")]

        kinds = [type(e) for e in events if not isinstance(e, TextDelta)]
        assert kinds == [
            TurnStarted, ToolsDispatched, ToolCompleted, TurnFinished, TurnComplete,
        ]
        streamed = "".join(e.content for e in events if isinstance(e, TextDelta))
        assert streamed == "It's 22°C in Athens."
        assert isinstance(events[-1], TurnComplete)
