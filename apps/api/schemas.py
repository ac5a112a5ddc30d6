# schemas.py
import json
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator


class TextPart(BaseModel):
    type: Literal["text"] = "text"
    text: str


class ImagePart(BaseModel):
    type: Literal["image"] = "image"
    url: str


class FilePart(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    type: Literal["file"] = "file"
    url: str
    mime_type: str = Field(alias="mimeType")


ContentPart = Annotated[Union[TextPart, ImagePart, FilePart], Field(discriminator="type")]


class ChatMessage(BaseModel):
    role: Literal["system", "user", "assistant"]
    content: Union[str, List[ContentPart]]

    @field_validator("content")
    @classmethod
    def _parts_not_empty(cls, v):
        if isinstance(v, list) and not v:
            raise ValueError("structured content must contain at least one part")
        return v

    def content_as_text(self) -> str:
        """Plain string for string content, JSON for structured content."""
        if isinstance(self.content, str):
            return self.content
        return json_dumps([p.model_dump(by_alias=True) for p in self.content])


class ChatRequest(BaseModel):
    model_config = ConfigDict(frozen=True)

    messages: List[ChatMessage]
    model: str
    temperature: Optional[float] = None
    max_tokens: Optional[int] = None
    stream: bool = False
    reasoning_effort: Optional[Literal["low", "medium", "high"]] = None


class Usage(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    prompt_tokens: int = Field(default=0, alias="promptTokens")
    completion_tokens: int = Field(default=0, alias="completionTokens")
    total_tokens: int = Field(default=0, alias="totalTokens")


class ChatResponse(BaseModel):
    id: str
    content: str
    role: Literal["assistant"] = "assistant"
    usage: Usage = Field(default_factory=Usage)


StreamEventType = Literal["text", "error", "usage", "stop", "done"]
TERMINAL_EVENT_TYPES = ("stop", "error", "done")


class StreamEvent(BaseModel):
    """
    One normalized stream event. `data` holds the text delta for `text`,
    the message string for `error`, a Usage dict for `usage`, and is
    absent for `stop` / `done`.
    """

    type: StreamEventType
    data: Any = None

    @classmethod
    def text(cls, payload: str) -> "StreamEvent":
        return cls(type="text", data=payload)

    @classmethod
    def error(cls, message: str) -> "StreamEvent":
        return cls(type="error", data=message)

    @classmethod
    def usage(cls, usage: Usage) -> "StreamEvent":
        return cls(type="usage", data=usage.model_dump(by_alias=True))

    @classmethod
    def stop(cls) -> "StreamEvent":
        return cls(type="stop")

    @property
    def is_terminal(self) -> bool:
        return self.type in TERMINAL_EVENT_TYPES

    def to_payload(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"type": self.type}
        if self.data is not None:
            payload["data"] = self.data
        return payload


def json_dumps(obj: Any) -> str:
    return json.dumps(obj, ensure_ascii=False, separators=(",", ":"))
