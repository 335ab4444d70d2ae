"""Server-Sent Events adapter for turn events."""

from __future__ import annotations

import json
from collections.abc import AsyncIterator
from dataclasses import asdict

from palaver.events import StreamEvent, TurnComplete


async def sse_generator(
    event_stream: AsyncIterator[StreamEvent],
) -> AsyncIterator[str]:
    """Convert a StreamEvent async iterator into SSE-formatted strings."""
    async for event in event_stream:
        event_type = type(event).__name__
        if isinstance(event, TurnComplete):
            result = event.result
            data = json.dumps({
                "phase": result.phase.value,
                "loop_bound_exceeded": result.loop_bound_exceeded,
            }) if result is not None else "{}"
        else:
            data = json.dumps(asdict(event))
        yield f"event: {event_type}\ndata: {data}\n\n"
    yield "event: done\ndata: {}\n\n"
