from enum import Enum
from pydantic import BaseModel, field_serializer


class MessageRole(Enum):
    SYSTEM = "system"
    ASSISTANT = "assistant"
    USER = "user"
    TOOL = "tool"


class Message(BaseModel):
    role: MessageRole
    content: str

    @field_serializer('role')
    def serialize_role(self, role: MessageRole, _info) -> str:
        return role.value


def system(content: str) -> Message:
    return Message(role=MessageRole.SYSTEM, content=content)


def user(content: str) -> Message:
    return Message(role=MessageRole.USER, content=content)


def dump_messages(messages: list) -> list[dict]:
    """Serialise a mix of :class:`Message` objects and plain dicts."""
    return [m.model_dump() if isinstance(m, Message) else dict(m) for m in messages]
