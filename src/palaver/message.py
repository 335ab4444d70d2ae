from __future__ import annotations

from enum import Enum
from typing import Annotated, Literal, Union

from pydantic import BaseModel, Field, field_serializer

from palaver.tools import ToolCallRequest


class MessageRole(Enum):
    SYSTEM = "system"
    ASSISTANT = "assistant"
    USER = "user"
    TOOL = "tool"


class TextContent(BaseModel):
    type: Literal["text"] = "text"
    text: str


class ImageContent(BaseModel):
    type: Literal["image"] = "image"
    image_ref: str


ContentItem = Annotated[
    Union[TextContent, ImageContent], Field(discriminator="type"),
]


class Message(BaseModel):
    role: MessageRole
    content: list[ContentItem] = Field(default_factory=list)

    @field_serializer('role')
    def serialize_role(self, role: MessageRole, _info) -> str:
        return role.value

    @property
    def text(self) -> str:
        """All text items joined, images skipped."""
        return "".join(
            item.text for item in self.content
            if isinstance(item, TextContent)
        )

    @property
    def images(self) -> list[str]:
        return [
            item.image_ref for item in self.content
            if isinstance(item, ImageContent)
        ]

    @classmethod
    def user(cls, text: str, images: list[str] | None = None) -> Message:
        content: list = [TextContent(text=text)] if text else []
        content.extend(ImageContent(image_ref=ref) for ref in images or [])
        return cls(role=MessageRole.USER, content=content)

    @classmethod
    def assistant(cls, text: str) -> Message:
        return cls(role=MessageRole.ASSISTANT, content=_text_items(text))

    @classmethod
    def system(cls, text: str) -> Message:
        return cls(role=MessageRole.SYSTEM, content=_text_items(text))


class ToolCallRequestMessage(Message):
    """Assistant message that issued one or more tool calls."""

    role: MessageRole = MessageRole.ASSISTANT
    tool_calls: list[ToolCallRequest]

    @field_serializer("tool_calls")
    def serialize_tool_calls(self, tool_calls: list[ToolCallRequest]) -> list[dict]:
        return [
            {"id": t.id, "name": t.name, "arguments": t.arguments}
            for t in tool_calls
        ]


class ToolCallResultMessage(Message):
    """Result of one tool call, paired with its request by ``tool_call_id``."""

    role: MessageRole = MessageRole.TOOL
    tool_call_id: str
    name: str
    success: bool = True


def _text_items(text: str) -> list:
    return [TextContent(text=text)] if text else []
