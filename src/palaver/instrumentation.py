"""Optional OpenTelemetry spans for turns, provider rounds and tools.

Tracing stays off until :func:`instrument` is called; every span helper
then yields ``None`` and the record helpers do nothing.  Attribute names
follow the OpenTelemetry GenAI semantic conventions.
"""

import importlib.util
import logging
from contextlib import asynccontextmanager

logger = logging.getLogger(__name__)

_tracer = None


def instrument(*, tracer_name: str = "palaver") -> None:
    """Start emitting spans through the global TracerProvider.

    Configure the TracerProvider first; ``pip install palaver[otel]``
    provides the API package.

    Raises:
        ImportError: ``opentelemetry-api`` is not installed.
    """
    global _tracer
    if importlib.util.find_spec("opentelemetry.trace") is None:
        raise ImportError(
            "opentelemetry-api is required for tracing; "
            "install it with: pip install palaver[otel]"
        )
    from opentelemetry import trace
    _tracer = trace.get_tracer(tracer_name)
    if isinstance(_tracer, trace.NoOpTracer):
        logger.info("Tracing enabled without a TracerProvider; spans are dropped")
    else:
        logger.info("Tracing enabled")


def uninstrument() -> None:
    global _tracer
    _tracer = None


@asynccontextmanager
async def _span(name: str, operation: str, client: bool = False, **attributes):
    if _tracer is None:
        yield None
        return
    kwargs = {}
    if client:
        from opentelemetry.trace import SpanKind
        kwargs["kind"] = SpanKind.CLIENT
    attributes["gen_ai.operation.name"] = operation
    with _tracer.start_as_current_span(name, attributes=attributes, **kwargs) as span:
        yield span


def turn_span(provider: str, model: str):
    """One orchestrated turn, covering every round and tool call."""
    return _span(
        f"invoke_agent {provider}", "invoke_agent",
        **{"gen_ai.provider.name": provider, "gen_ai.request.model": model},
    )


def completion_span(provider: str, model: str):
    """One request/response round with the backend."""
    return _span(
        f"chat {model}", "chat", client=True,
        **{"gen_ai.provider.name": provider, "gen_ai.request.model": model},
    )


def tool_span(tool_name: str, call_id: str):
    return _span(
        f"execute_tool {tool_name}", "execute_tool",
        **{"gen_ai.tool.name": tool_name, "gen_ai.tool.call.id": call_id},
    )


def record_usage(span, usage, finish_reason: str | None = None) -> None:
    if span is None or usage is None:
        return
    span.set_attribute("gen_ai.usage.input_tokens", usage.prompt_tokens)
    span.set_attribute("gen_ai.usage.output_tokens", usage.completion_tokens)
    if finish_reason:
        span.set_attribute("gen_ai.response.finish_reasons", [finish_reason])


def record_error(span, exception: BaseException) -> None:
    """Mark *span* failed with *exception*; no-op when tracing is off."""
    if span is None:
        return
    from opentelemetry.trace import StatusCode

    span.set_status(StatusCode.ERROR, str(exception))
    span.record_exception(exception)
    span.set_attribute("error.type", type(exception).__qualname__)
