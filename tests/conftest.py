import asyncio
import json

import pytest

from palaver.accounting import Usage
from palaver.capabilities import ProviderCapabilities, ToolCallFormat
from palaver.provider import ChatRequest, ModelProvider
from palaver.session import Session
from palaver.streaming import DecodedResponse, StreamChunk, ToolCallFragment, decode
from palaver.tools import ToolRegistry, tool


# ---------------------------------------------------------------------------
# Mock provider
# ---------------------------------------------------------------------------

class MockProvider(ModelProvider):
    """Provider that replays pre-queued chunk scripts. No network calls.

    Each entry of ``scripts`` is one round: a list of StreamChunks, or an
    exception to raise.  A ProviderError placed inside a chunk list is
    raised mid-stream, after the chunks before it were yielded.
    """

    provider_id = "mock"

    def __init__(self, capabilities: ProviderCapabilities | None = None):
        super().__init__(capabilities or ProviderCapabilities(supports_tools=True))
        self.scripts: list = []
        self.requests: list[ChatRequest] = []
        self.closed = 0
        self.delay: float = 0.0

    def _next(self, request: ChatRequest):
        self.requests.append(self.prepare_request(request))
        script = self.scripts.pop(0)
        if isinstance(script, Exception):
            raise script
        return script

    async def stream(self, request):
        script = self._next(request)
        try:
            for item in script:
                if isinstance(item, Exception):
                    raise item
                if self.delay:
                    await asyncio.sleep(self.delay)
                yield item
        finally:
            self.closed += 1

    async def complete(self, request) -> DecodedResponse:
        script = self._next(request)
        return decode([c for c in script if isinstance(c, StreamChunk)])


# ---------------------------------------------------------------------------
# Chunk builder helpers
# ---------------------------------------------------------------------------

def text_chunks(text: str, size: int = 4, usage: Usage | None = None) -> list[StreamChunk]:
    """Split *text* into streamed deltas, ending with a stop chunk."""
    chunks = [
        StreamChunk(text_delta=text[i:i + size])
        for i in range(0, len(text), size)
    ]
    chunks.append(StreamChunk(
        usage=usage or Usage.of(10, 5), finish_reason="stop",
    ))
    return chunks


def tool_call_chunks(
    calls: list[tuple[str, dict, str]],
    text: str | None = None,
    usage: Usage | None = None,
) -> list[StreamChunk]:
    """Stream tool calls the way OpenAI-style backends fragment them.

    Each item in *calls* is ``(name, args, call_id)``.  Arguments are
    split in two to exercise reassembly.
    """
    chunks: list[StreamChunk] = []
    if text:
        chunks.append(StreamChunk(text_delta=text))
    for index, (name, args, call_id) in enumerate(calls):
        raw = json.dumps(args)
        half = len(raw) // 2
        chunks.append(StreamChunk(tool_call_fragments=[
            ToolCallFragment(index=index, id_delta=call_id, name_delta=name),
        ]))
        chunks.append(StreamChunk(tool_call_fragments=[
            ToolCallFragment(index=index, arguments_delta=raw[:half]),
        ]))
        chunks.append(StreamChunk(tool_call_fragments=[
            ToolCallFragment(index=index, arguments_delta=raw[half:]),
        ]))
    chunks.append(StreamChunk(
        usage=usage or Usage.of(20, 8), finish_reason="tool_calls",
    ))
    return chunks


WEATHER_TOOL = {
    "name": "get_weather",
    "description": "Current weather.",
    "parameters": {
        "type": "object",
        "properties": {"city": {"type": "string", "description": "City name."}},
        "required": ["city"],
    },
}


class FakeStream:
    """Async iterable standing in for an SDK stream object."""

    def __init__(self, items, error: Exception | None = None):
        self.items = list(items)
        self.error = error
        self.closed = False

    def __aiter__(self):
        return self._iter()

    async def _iter(self):
        for item in self.items:
            yield item
        if self.error is not None:
            raise self.error

    async def close(self):
        self.closed = True


class RecordingListener:
    """Collects lifecycle events."""

    def __init__(self):
        self.events = []

    def __call__(self, event):
        self.events.append(event)

    def of_type(self, cls):
        return [e for e in self.events if isinstance(e, cls)]


class FakeStore:
    """ConversationStore test double that is not a pydantic model."""

    def __init__(self, history=None):
        self._history = list(history or [])
        self.extended = []

    def history(self):
        return list(self._history)

    def extend(self, messages):
        self.extended.append(list(messages))
        self._history.extend(messages)


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def mock_provider():
    return MockProvider()


@pytest.fixture
def session():
    return Session(session_id="s1")


@pytest.fixture
def listener():
    return RecordingListener()


@pytest.fixture
def weather_tool():
    @tool
    def get_weather(city: str):
        """Current weather for a city.

        Args:
            city: City name.
        """
        return "22C"
    return get_weather


@pytest.fixture
def registry(weather_tool):
    return ToolRegistry([weather_tool])


@pytest.fixture
def inline_capabilities():
    return ProviderCapabilities(
        supports_tools=True, tool_call_format=ToolCallFormat.INLINE_TAGGED,
    )
