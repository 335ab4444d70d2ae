"""Per-turn state machine."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum

from palaver.accounting import Usage
from palaver.message import Message
from palaver.streaming import StreamDecoder


class TurnPhase(Enum):
    IDLE = "idle"
    SENT = "sent"
    STREAMING = "streaming"
    TOOLS_PENDING = "tools_pending"
    FINALIZING = "finalizing"
    DONE = "done"
    ERRORED = "errored"


_TRANSITIONS: dict[TurnPhase, set[TurnPhase]] = {
    TurnPhase.IDLE: {TurnPhase.SENT},
    TurnPhase.SENT: {TurnPhase.STREAMING, TurnPhase.TOOLS_PENDING, TurnPhase.FINALIZING},
    TurnPhase.STREAMING: {TurnPhase.TOOLS_PENDING, TurnPhase.FINALIZING},
    TurnPhase.TOOLS_PENDING: {TurnPhase.SENT, TurnPhase.FINALIZING},
    TurnPhase.FINALIZING: {TurnPhase.DONE},
    TurnPhase.DONE: set(),
    TurnPhase.ERRORED: set(),
}

TERMINAL_PHASES = frozenset({TurnPhase.DONE, TurnPhase.ERRORED})


@dataclass
class TurnState:
    """Mutable accumulator for a single turn.

    Owned by one orchestrator call; never shared between turns.
    ``text`` collects assistant prose across every round, while the
    ``decoder`` holds only the round in flight.
    """

    phase: TurnPhase = TurnPhase.IDLE
    text: str = ""
    decoder: StreamDecoder = field(default_factory=StreamDecoder)
    iteration: int = 0
    usage: Usage = field(default_factory=Usage)
    messages: list[Message] = field(default_factory=list)
    new_messages: list[Message] = field(default_factory=list)
    error: BaseException | None = None

    def transition(self, phase: TurnPhase) -> None:
        """Move to *phase*.

        Raises:
            RuntimeError: The move is not an edge of the state machine.
        """
        if phase is TurnPhase.ERRORED:
            if self.phase in TERMINAL_PHASES:
                raise RuntimeError(f"Cannot fail a turn that is already {self.phase.value}")
        elif phase not in _TRANSITIONS[self.phase]:
            raise RuntimeError(
                f"Illegal turn transition {self.phase.value} -> {phase.value}"
            )
        self.phase = phase

    def start_round(self) -> None:
        self.decoder = StreamDecoder()

    def append(self, message: Message) -> None:
        self.messages.append(message)
        self.new_messages.append(message)

    @property
    def partial_text(self) -> str:
        """Text produced so far, including the unfinished round."""
        return join_text(self.text, self.decoder.text)


def join_text(first: str, second: str) -> str:
    """Join two pieces of prose with a blank line, skipping empty ones."""
    if first and second:
        return f"{first}\n\n{second}"
    return first or second
