"""Events emitted while a turn runs.

Lifecycle events (:class:`TurnStarted`, :class:`ToolsDispatched`,
:class:`ToolCompleted`, :class:`TurnFinished`, :class:`TurnErrored`) go
to the injected listener and are recorded on the turn result.
:class:`TextDelta` and :class:`TurnComplete` are only yielded by
``TurnOrchestrator.iter()``.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Callable

from palaver.accounting import Usage


@dataclass
class StreamEvent:
    """Base for all streaming events."""


@dataclass
class LifecycleEvent(StreamEvent):
    """Base for events delivered to the observability listener."""


@dataclass
class TurnStarted(LifecycleEvent):
    provider: str = ""
    model: str = ""


@dataclass
class TextDelta(StreamEvent):
    """Token-level delta from the provider stream."""

    content: str = ""


@dataclass
class ToolsDispatched(LifecycleEvent):
    count: int = 0
    iteration: int = 0


@dataclass
class ToolCompleted(LifecycleEvent):
    id: str = ""
    name: str = ""
    success: bool = True


@dataclass
class TurnFinished(LifecycleEvent):
    usage: Usage = field(default_factory=Usage)
    loop_bound_exceeded: bool = False


@dataclass
class TurnErrored(LifecycleEvent):
    error: str = ""
    partial_text: str = ""


@dataclass
class TurnComplete(StreamEvent):
    """Final event, always the last one yielded."""

    result: Any = None


EventListener = Callable[[LifecycleEvent], None]
