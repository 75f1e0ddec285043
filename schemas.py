# schemas.py
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field

from appconfig import ModelInfo


class Message(BaseModel):
    role: Literal["user", "assistant", "system"]
    content: str


class ImageData(BaseModel):
    mime: str
    base64: str


class ChatRequest(BaseModel):
    preset_id: Optional[str] = None
    messages: List[Message] = Field(default_factory=list)
    image: Optional[ImageData] = None
    model_override: Optional[str] = None
    stream: Optional[bool] = None

    @property
    def wants_stream(self) -> bool:
        return True if self.stream is None else bool(self.stream)


class ModelsResponse(BaseModel):
    text_default: str
    vision_default: str
    models: List[ModelInfo]


class MemoryStoreRequest(BaseModel):
    type: str
    payload: Any = None


class MemoryStoreResponse(BaseModel):
    id: str
    stored_at: str


class MemoryQueryRequest(BaseModel):
    query: str
    limit: Optional[int] = Field(default=None, le=2**63 - 1)


class MemoryItem(BaseModel):
    type: str
    payload: Dict[str, Any]


class MemoryQueryResponse(BaseModel):
    items: List[MemoryItem]
    took_ms: int
