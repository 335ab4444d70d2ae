from typing import Protocol, runtime_checkable

from pydantic import BaseModel, Field

from palaver.message import Message


@runtime_checkable
class ConversationStore(Protocol):
    """Where prior messages come from and finished exchanges go."""

    def history(self) -> list[Message]:
        ...

    def extend(self, messages: list[Message]) -> None:
        ...


class Session(BaseModel):
    """In-memory :class:`ConversationStore`."""

    session_id: str
    transcript: list[Message] = Field(default_factory=list)

    def history(self) -> list[Message]:
        return list(self.transcript)

    def extend(self, messages: list[Message]) -> None:
        self.transcript.extend(messages)
