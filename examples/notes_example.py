"""Interactive example: a note-taking assistant.

Demonstrates:
- Defining tools with @tool and collecting them in a ToolRegistry
- Picking a backend by id with create_provider
- Streaming a turn with TurnOrchestrator.iter()
- Tracking token usage across turns with SessionUsage

Usage:
    uv run --env-file=.env examples/notes_example.py --provider openai --model gpt-4o-mini --trace
    uv run examples/notes_example.py --provider ollama --model qwen3:8b
    uv run examples/notes_example.py --provider llamacpp --url http://localhost:8080/v1 --model local
"""

import argparse
import asyncio
import logging
import uuid

from palaver.accounting import SessionUsage
from palaver.config import TurnConfig
from palaver.events import TextDelta, ToolCompleted, TurnComplete
from palaver.factory import create_provider
from palaver.log import configure_logging
from palaver.orchestrator import TurnOrchestrator
from palaver.session import Session
from palaver.tools import ToolRegistry, tool

NOTES: dict[str, str] = {}


def setup_tracing(service_name: str):
    from opentelemetry import trace
    from opentelemetry.sdk.resources import SERVICE_NAME, Resource
    from opentelemetry.sdk.trace import TracerProvider
    from opentelemetry.sdk.trace.export import (
        SimpleSpanProcessor, ConsoleSpanExporter,
    )
    from palaver.instrumentation import instrument

    provider = TracerProvider(
        resource=Resource({SERVICE_NAME: service_name})
    )
    provider.add_span_processor(SimpleSpanProcessor(ConsoleSpanExporter()))
    trace.set_tracer_provider(provider)
    instrument()


@tool
def add_note(title: str, content: str):
    """Save a note with the given title and content."""
    NOTES[title] = content
    return f"Saved note '{title}'."


@tool
def get_note(title: str):
    """Retrieve a note by title."""
    return NOTES.get(title, f"No note found with title '{title}'.")


@tool
def list_notes():
    """List all saved note titles."""
    return ", ".join(NOTES) or "No notes yet."


@tool
def delete_note(title: str):
    """Delete a note by title."""
    if NOTES.pop(title, None) is None:
        return f"No note found with title '{title}'."
    return f"Deleted note '{title}'."


async def main():
    parser = argparse.ArgumentParser(description="Notes assistant")
    parser.add_argument("--provider", default="openai")
    parser.add_argument("--model", default="gpt-4o-mini")
    parser.add_argument("--url", default=None)
    parser.add_argument("--trace", action="store_true")
    parser.add_argument("--verbose", action="store_true")
    args = parser.parse_args()

    configure_logging(logging.DEBUG if args.verbose else logging.WARNING)
    if args.trace:
        setup_tracing("notes-assistant")

    usage = SessionUsage()
    orchestrator = TurnOrchestrator(
        create_provider(args.provider, base_url=args.url),
        args.model,
        tools=ToolRegistry([add_note, get_note, list_notes, delete_note]),
        config=TurnConfig.from_env(
            system_prompt=(
                "You are a helpful note-taking assistant. "
                "Use the provided tools to manage the user's notes."
            ),
        ),
        usage_sink=usage,
    )
    session = Session(session_id=str(uuid.uuid4()))

    print("Notes assistant ready. Type 'quit' to exit.\n")
    while True:
        try:
            user_input = input("You: ").strip()
        except (EOFError, KeyboardInterrupt):
            break
        if not user_input or user_input.lower() in ("quit", "exit"):
            break

        print("Assistant: ", end="", flush=True)
        async for event in orchestrator.iter(session, user_input):
            if isinstance(event, TextDelta):
                print(event.content, end="", flush=True)
            elif isinstance(event, ToolCompleted):
                status = "ok" if event.success else "failed"
                print(f"\n  [{event.name} {status}]", flush=True)
            elif isinstance(event, TurnComplete) and not event.result.ok:
                print(f"\n  [error: {event.result.error}]", end="")
        print()

    total = usage.total
    print(
        f"\n{usage.turns} turn(s), {total.prompt_tokens} prompt + "
        f"{total.completion_tokens} completion tokens"
    )


if __name__ == "__main__":
    asyncio.run(main())
